"""High-level async client composing connectivity, cache, sync and aggregation."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

import aiohttp

from mandisync import geo, stats
from mandisync.cache.backends import FileBackend, KeyValueBackend, MemoryBackend
from mandisync.cache.store import TTLCacheStore
from mandisync.config import SyncConfig
from mandisync.connectivity import ConnectivityMonitor, ConnectivityProbe, HttpConnectivityProbe
from mandisync.exceptions import SyncError
from mandisync.ingestion.records import dedupe_records, dump_records, parse_records
from mandisync.models.cache import CacheInfo
from mandisync.models.record import Coordinates, Record
from mandisync.models.results import FetchResult, UpdateMeta
from mandisync.models.statistics import MarketSnapshot, PricePoint, RadiusSummary
from mandisync.orchestrator import OfflineFetcher
from mandisync.realtime import RealtimeCacheManager
from mandisync.sources.base import RecordSource, Unsubscribe
from mandisync.sources.http import HttpRecordSource
from mandisync.sources.mqtt import MqttBroker, MqttRecordSource

_logger = logging.getLogger(__name__)

RecordsCallback = Callable[[list[Record], UpdateMeta], Any]


class MarketDataClient:
    """Async client for market price records.

    Owns the HTTP session (unless one is passed in), the connectivity
    monitor, the cache store, the real-time manager and the fetch
    orchestrator for the duration of the ``async with`` block.

    Usage::

        async with MarketDataClient(SyncConfig.from_env()) as client:
            records = await client.get_records("crops/farmers")
            summary = await client.nearby_summary("crops/farmers", center, 10, commodity="onion")
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        probe: ConnectivityProbe | None = None,
        backend: KeyValueBackend | None = None,
        source: RecordSource | None = None,
        start_monitor: bool = True,
    ) -> None:
        self._config = config or SyncConfig()
        self._external_session = session is not None
        self._http_session = session
        self._probe = probe
        self._backend = backend
        self._source = source
        self._start_monitor = start_monitor
        self._monitor: ConnectivityMonitor | None = None
        self._store: TTLCacheStore | None = None
        self._manager: RealtimeCacheManager | None = None
        self._fetcher: OfflineFetcher | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> MarketDataClient:
        config = self._config
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()

        probe = self._probe or HttpConnectivityProbe(
            config.probe_url,
            http_session=self._http_session,
            timeout=config.probe_timeout,
        )
        self._monitor = ConnectivityMonitor(probe, interval=config.probe_interval)
        if self._start_monitor:
            await self._monitor.start()

        backend = self._backend
        if backend is None:
            backend = FileBackend(config.cache_dir) if config.cache_dir else MemoryBackend()
        self._store = TTLCacheStore(backend)
        self._manager = RealtimeCacheManager(self._store, self._monitor, config)
        self._fetcher = OfflineFetcher(self._store, self._monitor, config)

        if self._source is None:
            source: RecordSource = HttpRecordSource(
                config.api_base_url,
                self._http_session,
                timeout=config.request_timeout,
            )
            if config.mqtt_enabled:
                source = MqttRecordSource(source, MqttBroker.from_config(config))
            self._source = source
        _logger.debug("Market data client ready base_url=%s mqtt=%s", config.api_base_url, config.mqtt_enabled)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._manager is not None:
            await self._manager.aclose()
            self._manager = None
        if self._monitor is not None:
            await self._monitor.stop()
            self._monitor = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._fetcher = None
        self._store = None

    def _require_started(self) -> tuple[RealtimeCacheManager, OfflineFetcher, RecordSource]:
        if self._manager is None or self._fetcher is None or self._source is None:
            raise SyncError("Client not initialized. Use 'async with MarketDataClient(...) as client:'")
        return self._manager, self._fetcher, self._source

    @property
    def monitor(self) -> ConnectivityMonitor:
        if self._monitor is None:
            raise SyncError("Client not initialized. Use 'async with MarketDataClient(...) as client:'")
        return self._monitor

    @property
    def store(self) -> TTLCacheStore:
        if self._store is None:
            raise SyncError("Client not initialized. Use 'async with MarketDataClient(...) as client:'")
        return self._store

    @property
    def manager(self) -> RealtimeCacheManager:
        return self._require_started()[0]

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    async def fetch_collection(
        self,
        path: str,
        *,
        key: str | None = None,
        max_age: float | None = None,
        force_refresh: bool = False,
        fallback_to_cache: bool = True,
    ) -> FetchResult:
        """Fetch *path* through the offline-capable cache.

        ``data`` of the result is the JSON-ready list of record payloads.
        """
        _, fetcher, source = self._require_started()

        async def _fetch() -> list[dict[str, Any]]:
            return dump_records(await source.fetch_collection(path))

        return await fetcher.fetch_with_cache(
            _fetch,
            key or path,
            max_age=max_age,
            force_refresh=force_refresh,
            fallback_to_cache=fallback_to_cache,
        )

    async def get_records(self, path: str, **kwargs: Any) -> list[Record]:
        """Deduplicated records of *path* (see :meth:`fetch_collection`)."""
        result = await self.fetch_collection(path, **kwargs)
        return dedupe_records(parse_records(result.data))

    async def watch(
        self,
        path: str,
        on_records: RecordsCallback,
        *,
        key: str | None = None,
        max_age: float | None = None,
        enable_offline_sync: bool = True,
        sync_interval: float | None = None,
    ) -> Unsubscribe:
        """Keep *path* in sync and call *on_records* on every update.

        Returns a callable that stops watching.
        """
        manager, _, source = self._require_started()
        cache_key = key or path

        def _on_update(data: Any, meta: UpdateMeta) -> Any:
            return on_records(dedupe_records(parse_records(data)), meta)

        await manager.setup(
            cache_key,
            source,
            path,
            on_data_update=_on_update,
            max_age=max_age,
            enable_offline_sync=enable_offline_sync,
            sync_interval=sync_interval,
        )

        def _stop() -> None:
            manager.cleanup(cache_key)

        return _stop

    async def cache_info(self) -> dict[str, CacheInfo]:
        return await self.store.info()

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    async def nearby(
        self,
        path: str,
        center: Coordinates,
        radius_km: float,
        *,
        commodity: str | None = None,
    ) -> list[Record]:
        records = await self.get_records(path)
        return geo.filter_by_radius(records, center, radius_km, commodity)

    async def nearby_summary(
        self,
        path: str,
        center: Coordinates,
        radius_km: float,
        *,
        commodity: str | None = None,
    ) -> RadiusSummary:
        """Count and average price of *commodity* records within the radius."""
        return stats.summarize_radius(await self.nearby(path, center, radius_km, commodity=commodity), commodity)

    async def price_series(
        self,
        path: str,
        commodity: str,
        *,
        bucket_fn: Callable[[datetime], str] = stats.day_label,
        center: Coordinates | None = None,
        radius_km: float | None = None,
    ) -> list[PricePoint]:
        """Chart series for *commodity*, optionally limited to a radius."""
        records = await self.get_records(path)
        if center is not None and radius_km is not None:
            records = geo.filter_by_radius(records, center, radius_km, commodity)
        return stats.build_price_series(records, commodity, bucket_fn=bucket_fn)

    async def market_snapshot(
        self,
        path: str,
        *,
        commodity: str | None = None,
        now: datetime | None = None,
    ) -> MarketSnapshot:
        """Today / yesterday / week statistics, optionally for one commodity."""
        records = await self.get_records(path)
        if commodity:
            wanted = commodity.casefold()
            records = [record for record in records if record.commodity_name.casefold() == wanted]
        return stats.market_snapshot(records, now=now)

"""Offline-capable fetch orchestration over the TTL cache."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from mandisync.cache.store import TTLCacheStore
from mandisync.config import SyncConfig
from mandisync.connectivity import ConnectivityMonitor
from mandisync.exceptions import FetchFailure, NoDataAvailable
from mandisync.models.results import FetchResult

_logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[Any]]


class OfflineFetcher:
    """Decide between cached and fresh data for a fetch.

    Decision order:

    1. Unless *force_refresh*, a cache entry no older than *max_age* is
       served while online.
    2. Online: call *fetch_fn* and write the result through.  On failure,
       fall back to a cache entry of any age (with ``error`` set) when
       *fallback_to_cache* allows it, else raise :class:`FetchFailure`.
    3. Offline: serve a cache entry of any age, else raise
       :class:`NoDataAvailable`.

    Freshness is judged on the entry's age without evicting it, so an
    expired entry still backs the failure and offline fallbacks.
    """

    def __init__(
        self,
        store: TTLCacheStore,
        monitor: ConnectivityMonitor,
        config: SyncConfig | None = None,
    ) -> None:
        self._store = store
        self._monitor = monitor
        self._config = config or SyncConfig()

    async def fetch_with_cache(
        self,
        fetch_fn: FetchFn,
        key: str,
        *,
        max_age: float | None = None,
        force_refresh: bool = False,
        fallback_to_cache: bool = True,
    ) -> FetchResult:
        """Return data for *key* from the cache or from *fetch_fn*.

        Raises
        ------
        FetchFailure
            The fetch failed and no cached payload could stand in.
        NoDataAvailable
            Offline with nothing cached.
        """
        limit = self._config.default_max_age if max_age is None else max_age
        if limit < 0:
            raise ValueError("max_age must be >= 0")

        online = (await self._monitor.get_status()).is_online
        entry = await self._store.get_entry(key)

        if not force_refresh and online and entry is not None and entry.age(self._store.now()) <= limit:
            _logger.debug("Using cached data for key=%s", key)
            return FetchResult(data=entry.payload, from_cache=True)

        if not online:
            if entry is None:
                raise NoDataAvailable(key=key)
            _logger.debug("Offline; using cached data for key=%s", key)
            return FetchResult(data=entry.payload, from_cache=True, offline=True)

        _logger.debug("Fetching fresh data for key=%s", key)
        try:
            data = await fetch_fn()
        except Exception as exc:
            _logger.warning("Fetching fresh data for key=%s failed: %s", key, exc)
            if fallback_to_cache and entry is not None:
                _logger.debug("Falling back to cached data for key=%s", key)
                return FetchResult(data=entry.payload, from_cache=True, error=exc)
            raise FetchFailure(f"Failed to fetch data for {key}: {exc}", key=key) from exc

        stored = await self._store.set(key, data)
        return FetchResult(data=stored, from_cache=False)

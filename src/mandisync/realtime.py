"""Real-time cache manager.

Layers live subscriptions, offline polling and background refresh on top
of :class:`~mandisync.cache.TTLCacheStore`.

Every registered key owns a small actor: a FIFO queue drained by one
worker task.  Cache hits, live pushes, subscription errors, poll ticks and
refresh results are all queued there, so a key's consumer sees
notifications in the order the events happened.  Each registration gets a
generation number; queued events and in-flight refresh results from an
older generation (or arriving after teardown) are dropped.

Phases::

    COLD -> BOOTSTRAPPING -> LIVE | POLLING
    LIVE -> DEGRADED          (subscription failure)
    LIVE -> POLLING           (connectivity lost)
    POLLING | DEGRADED -> LIVE (connectivity back / resubscribe)
    any -> TORN_DOWN          (cleanup)
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from mandisync.cache.store import TTLCacheStore
from mandisync.config import SyncConfig
from mandisync.connectivity import ConnectivityMonitor
from mandisync.exceptions import FetchFailure, NoDataAvailable
from mandisync.ingestion.apply import merge_live_update, to_live_update
from mandisync.ingestion.apply import update_item as _apply_item_update
from mandisync.ingestion.records import dump_records, normalize_live_update, record_patch
from mandisync.models.results import KeyPhase, LiveUpdate, RealtimeReadResult, UpdateMeta
from mandisync.sources.base import RecordSource, Unsubscribe

_logger = logging.getLogger(__name__)

DataCallback = Callable[[Any, UpdateMeta], Any]
FetchFn = Callable[[], Awaitable[Any]]
_Handler = Callable[[], Awaitable[None]]


@dataclass
class _KeyState:
    """Bookkeeping for one registered key."""

    key: str
    source: RecordSource
    path: str
    generation: int
    on_data_update: DataCallback | None
    enable_offline_sync: bool
    sync_interval: float
    phase: KeyPhase = KeyPhase.COLD
    unsubscribe: Unsubscribe | None = None
    subscription_token: object | None = None
    poll_task: asyncio.Task[None] | None = None
    worker: asyncio.Task[None] | None = None
    queue: asyncio.Queue[tuple[int, _Handler]] = field(default_factory=asyncio.Queue)


class RealtimeCacheManager:
    """Per-key live/polling cache synchronisation.

    Usage::

        async with RealtimeCacheManager(store, monitor, config) as manager:
            cached = await manager.setup("crops", source, "crops/farmers", on_data_update=render)
            ...
            manager.cleanup("crops")
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
        self._keys: dict[str, _KeyState] = {}
        self._generations = itertools.count(1)
        self._refreshes: dict[str, asyncio.Task[None]] = {}
        self._retired: set[asyncio.Task[None]] = set()
        self._unsubscribe_monitor: Unsubscribe | None = monitor.subscribe(self._on_connectivity_change)

    async def __aenter__(self) -> RealtimeCacheManager:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def phase(self, key: str) -> KeyPhase:
        """Current phase of *key*; unregistered keys are ``COLD``."""
        state = self._keys.get(key)
        return state.phase if state is not None else KeyPhase.COLD

    def active_keys(self) -> list[str]:
        return list(self._keys)

    # ------------------------------------------------------------------
    # Actor plumbing
    # ------------------------------------------------------------------

    def _is_current(self, state: _KeyState, generation: int | None = None) -> bool:
        if self._keys.get(state.key) is not state:
            return False
        return generation is None or generation == state.generation

    def _enqueue(self, state: _KeyState, handler: _Handler) -> None:
        if self._is_current(state):
            state.queue.put_nowait((state.generation, handler))

    async def _worker(self, state: _KeyState) -> None:
        while True:
            generation, handler = await state.queue.get()
            if not self._is_current(state, generation):
                continue
            try:
                await handler()
            except Exception:
                _logger.warning("Event handler for key=%s failed", state.key, exc_info=True)

    def _set_phase(self, state: _KeyState, phase: KeyPhase) -> None:
        if state.phase is not phase:
            _logger.debug("Key %s phase %s -> %s", state.key, state.phase, phase)
            state.phase = phase

    async def _notify(
        self,
        state: _KeyState,
        data: Any,
        *,
        from_cache: bool = False,
        realtime: bool = False,
        offline: bool = False,
        stale: bool = False,
        error: bool = False,
        exception: BaseException | None = None,
    ) -> None:
        callback = state.on_data_update
        if callback is None:
            return
        meta = UpdateMeta(
            from_cache=from_cache,
            realtime=realtime,
            offline=offline,
            stale=stale,
            error=error,
            phase=state.phase,
            exception=exception,
        )
        try:
            result = callback(data, meta)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.warning("on_data_update callback for key=%s failed", state.key, exc_info=True)

    async def _online(self) -> bool:
        return (await self._monitor.get_status()).is_online

    # ------------------------------------------------------------------
    # Subscription and polling
    # ------------------------------------------------------------------

    def _release_subscription(self, state: _KeyState) -> None:
        unsubscribe = state.unsubscribe
        state.unsubscribe = None
        state.subscription_token = None
        if unsubscribe is None:
            return
        try:
            unsubscribe()
        except Exception:
            _logger.warning("Unsubscribe for key=%s failed", state.key, exc_info=True)

    def _cancel_poll(self, state: _KeyState) -> None:
        task = state.poll_task
        state.poll_task = None
        if task is not None and not task.done():
            task.cancel()

    def _start_poll(self, state: _KeyState) -> None:
        if not state.enable_offline_sync:
            return
        if state.poll_task is not None and not state.poll_task.done():
            return
        state.poll_task = asyncio.create_task(self._poll_loop(state), name=f"mandisync-poll-{state.key}")
        _logger.debug("Poll timer started for key=%s interval=%.1fs", state.key, state.sync_interval)

    async def _poll_loop(self, state: _KeyState) -> None:
        while self._is_current(state):
            await asyncio.sleep(state.sync_interval)
            self._enqueue(state, lambda: self._poll_tick(state))

    async def _poll_tick(self, state: _KeyState) -> None:
        if state.phase not in (KeyPhase.POLLING, KeyPhase.DEGRADED):
            return
        if await self._online():
            _logger.debug("Network back for key=%s; reattaching live feed", state.key)
            self._go_live(state)
            return
        cached = await self._store.get(state.key)
        if cached is not None:
            await self._notify(state, cached, from_cache=True, offline=True)

    def _go_live(self, state: _KeyState) -> bool:
        """Attach the live feed for *state*.  Returns whether one was attached.

        Synchronous subscription errors are queued like asynchronous ones.
        """
        if state.unsubscribe is not None:
            return True

        subscribe = getattr(state.source, "subscribe", None)
        if subscribe is None:
            self._cancel_poll(state)
            self._set_phase(state, KeyPhase.LIVE)
            self._enqueue(state, lambda: self._fetch_once(state))
            return True

        token = object()
        generation = state.generation

        def on_change(update: LiveUpdate) -> None:
            if self._is_current(state, generation) and state.subscription_token is token:
                self._enqueue(state, lambda: self._apply_push(state, token, update))

        def on_error(exc: BaseException) -> None:
            if self._is_current(state, generation) and state.subscription_token is token:
                self._enqueue(state, lambda: self._on_subscription_error(state, token, exc))

        state.subscription_token = token
        try:
            state.unsubscribe = subscribe(state.path, on_change, on_error)
        except Exception as exc:
            _logger.warning("Subscribing key=%s to %s failed: %s", state.key, state.path, exc)
            self._enqueue(state, lambda: self._on_subscription_error(state, token, exc))
            return False

        self._cancel_poll(state)
        self._set_phase(state, KeyPhase.LIVE)
        _logger.debug("Live subscription attached key=%s path=%s", state.key, state.path)
        return True

    async def _fetch_once(self, state: _KeyState) -> None:
        try:
            records = await state.source.fetch_collection(state.path)
        except Exception as exc:
            _logger.warning("Fetching %s for key=%s failed: %s", state.path, state.key, exc)
            await self._degrade(state, exc)
            return
        payload = await self._store.set(state.key, dump_records(records))
        await self._notify(state, payload)

    async def _apply_push(self, state: _KeyState, token: object, update: Any) -> None:
        if state.subscription_token is not token:
            return
        change = normalize_live_update(to_live_update(update))
        data = await self._store.update(state.key, lambda current: merge_live_update(current, change))
        await self._notify(state, data, realtime=True)

    async def _on_subscription_error(self, state: _KeyState, token: object, exc: BaseException) -> None:
        if state.subscription_token is not token:
            return
        _logger.warning("Live subscription for key=%s failed: %s", state.key, exc)
        await self._degrade(state, exc)

    async def _degrade(self, state: _KeyState, exc: BaseException) -> None:
        self._release_subscription(state)
        self._set_phase(state, KeyPhase.DEGRADED)
        cached = await self._store.get(state.key)
        if cached is not None and state.enable_offline_sync:
            await self._notify(state, cached, from_cache=True, error=True, exception=exc)
        self._start_poll(state)

    async def _downgrade(self, state: _KeyState) -> None:
        if state.phase is not KeyPhase.LIVE:
            return
        self._release_subscription(state)
        self._set_phase(state, KeyPhase.POLLING)
        self._start_poll(state)

    async def _recover(self, state: _KeyState) -> None:
        if state.phase in (KeyPhase.POLLING, KeyPhase.DEGRADED):
            self._go_live(state)

    def _on_connectivity_change(self, online: bool) -> None:
        for state in list(self._keys.values()):
            if online:
                self._enqueue(state, lambda s=state: self._recover(s))
            else:
                self._enqueue(state, lambda s=state: self._downgrade(s))

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def setup(
        self,
        key: str,
        source: RecordSource,
        path: str,
        *,
        on_data_update: DataCallback | None = None,
        max_age: float | None = None,
        enable_offline_sync: bool = True,
        sync_interval: float | None = None,
    ) -> Any | None:
        """Register *key* and start keeping it in sync with *source*.

        Any cached payload no older than *max_age* is emitted first with
        ``from_cache=True`` and returned.  Online, a live subscription is
        attached; offline (with *enable_offline_sync*) the poll timer
        starts.  Calling ``setup`` again for an active key replaces the
        previous registration.
        """
        self.cleanup(key)
        state = _KeyState(
            key=key,
            source=source,
            path=path,
            generation=next(self._generations),
            on_data_update=on_data_update,
            enable_offline_sync=enable_offline_sync,
            sync_interval=self._config.sync_interval if sync_interval is None else sync_interval,
            phase=KeyPhase.BOOTSTRAPPING,
        )
        self._keys[key] = state
        state.worker = asyncio.create_task(self._worker(state), name=f"mandisync-key-{key}")
        _logger.debug("Setting up key=%s path=%s generation=%d", key, path, state.generation)

        limit = self._config.realtime_max_age if max_age is None else max_age
        # Older entries are skipped but kept: they still back the degraded fallback.
        entry = await self._store.get_entry(key)
        cached = entry.payload if entry is not None and entry.age(self._store.now()) <= limit else None
        if cached is not None:
            self._enqueue(state, lambda: self._notify(state, cached, from_cache=True))

        online = await self._online()
        if not self._is_current(state):
            return cached

        if online:
            self._go_live(state)
        else:
            self._set_phase(state, KeyPhase.POLLING)
            self._start_poll(state)
        return cached

    async def resubscribe(self, key: str) -> bool:
        """Retry the live feed for a polling or degraded key.

        Returns whether a subscription is attached afterwards.  Unknown
        keys return ``False``.
        """
        state = self._keys.get(key)
        if state is None:
            return False
        if state.phase is KeyPhase.LIVE and state.unsubscribe is not None:
            return True
        if not await self._online():
            return False
        return self._go_live(state)

    def cleanup(self, key: str) -> None:
        """Tear *key* down: unsubscribe, stop its timer and worker.  Idempotent."""
        state = self._keys.pop(key, None)
        if state is None:
            return
        self._release_subscription(state)
        self._cancel_poll(state)
        if state.worker is not None and not state.worker.done():
            state.worker.cancel()
            self._retired.add(state.worker)
            state.worker.add_done_callback(self._retired.discard)
        state.phase = KeyPhase.TORN_DOWN
        _logger.debug("Key %s torn down", key)

    def cleanup_all(self) -> None:
        for key in list(self._keys):
            self.cleanup(key)

    async def aclose(self) -> None:
        """Tear down every key and stop listening to connectivity changes."""
        if self._unsubscribe_monitor is not None:
            self._unsubscribe_monitor()
            self._unsubscribe_monitor = None
        self.cleanup_all()
        pending = list(self._retired) + list(self._refreshes.values())
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._refreshes.clear()

    # ------------------------------------------------------------------
    # Reads and writes
    # ------------------------------------------------------------------

    async def get_realtime_data(
        self,
        key: str,
        fetch_fn: FetchFn,
        *,
        max_stale_time: float | None = None,
        background_refresh: bool | None = None,
    ) -> RealtimeReadResult:
        """Serve *key* with staleness detection.

        Fresh cache is returned as is.  Stale cache is returned flagged
        ``stale`` and, when online, refreshed in the background (one refresh
        per key at a time).  Without a cache the call fetches when online.

        Raises
        ------
        FetchFailure
            Nothing cached and *fetch_fn* failed.
        NoDataAvailable
            Nothing cached and offline.
        """
        stale_after = self._config.max_stale_time if max_stale_time is None else max_stale_time
        refresh = self._config.background_refresh if background_refresh is None else background_refresh

        entry = await self._store.get_entry(key)
        if entry is not None:
            if entry.age(self._store.now()) < stale_after:
                return RealtimeReadResult(data=entry.payload, from_cache=True, fresh=True)
            if refresh and await self._online():
                self._refresh_in_background(key, fetch_fn)
            return RealtimeReadResult(data=entry.payload, from_cache=True, stale=True)

        if not await self._online():
            raise NoDataAvailable(key=key)

        try:
            data = await fetch_fn()
        except Exception as exc:
            raise FetchFailure(f"Failed to fetch real-time data for {key}: {exc}", key=key) from exc
        stored = await self._store.set(key, data)
        return RealtimeReadResult(data=stored, from_cache=False)

    def _refresh_in_background(self, key: str, fetch_fn: FetchFn) -> None:
        running = self._refreshes.get(key)
        if running is not None and not running.done():
            _logger.debug("Background refresh already running for key=%s", key)
            return

        state = self._keys.get(key)
        generation = state.generation if state is not None else None
        task = asyncio.create_task(self._refresh(key, fetch_fn, generation), name=f"mandisync-refresh-{key}")
        self._refreshes[key] = task

        def _done(finished: asyncio.Task[None]) -> None:
            if self._refreshes.get(key) is finished:
                del self._refreshes[key]

        task.add_done_callback(_done)

    async def _refresh(self, key: str, fetch_fn: FetchFn, generation: int | None) -> None:
        _logger.debug("Background refresh for key=%s", key)
        try:
            data = await fetch_fn()
        except Exception:
            _logger.warning("Background refresh failed for key=%s", key, exc_info=True)
            return

        state = self._keys.get(key)
        if generation is None:
            if state is None:
                await self._store.set(key, data)
                return
        elif state is None or state.generation != generation:
            _logger.debug("Dropping background refresh for key=%s from an old registration", key)
            return

        async def _apply() -> None:
            await self._notify(state, await self._store.set(key, data))

        self._enqueue(state, _apply)

    async def invalidate(self, key: str) -> None:
        await self._store.invalidate(key)

    async def update_item(self, key: str, item_id: str, fields: dict[str, Any]) -> bool:
        """Merge *fields* into one cached item and notify the key's consumer.

        *fields* go through the record adapter first, so upstream spellings
        such as ``pricePerUnit`` land on the normalized field; keys that are
        not record fields are dropped.  Returns ``False`` when nothing is
        cached or no item has *item_id*.
        """
        patch = record_patch({**fields, "id": item_id})
        del patch["id"]
        written = await self._store.update(key, lambda current: _apply_item_update(current, item_id, patch))
        if written is None:
            return False
        state = self._keys.get(key)
        if state is not None:
            self._enqueue(state, lambda: self._notify(state, written, from_cache=True))
        return True

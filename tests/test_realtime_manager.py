from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from mandisync.cache import TTLCacheStore
from mandisync.config import SyncConfig
from mandisync.connectivity import ConnectivityMonitor, StaticConnectivityProbe
from mandisync.exceptions import FetchFailure, NoDataAvailable, SubscriptionFailure
from mandisync.ingestion.records import dump_records, parse_records
from mandisync.models.connectivity import ConnectivityState
from mandisync.models.record import Record
from mandisync.models.results import KeyPhase, LiveUpdate, RealtimeReadResult, UpdateMeta
from mandisync.realtime import RealtimeCacheManager
from mandisync.sources.mqtt import decode_live_message


class _Clock:
    def __init__(self) -> None:
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now


class _Subscription:
    def __init__(
        self,
        path: str,
        on_change: Callable[[LiveUpdate], None],
        on_error: Callable[[BaseException], None],
    ) -> None:
        self.path = path
        self.on_change = on_change
        self.on_error = on_error
        self.closed = 0

    def close(self) -> None:
        self.closed += 1


class _LiveSource:
    """In-memory record source with controllable live subscriptions."""

    def __init__(self, payloads: list[dict[str, Any]] | None = None) -> None:
        self.payloads = payloads or []
        self.subscriptions: list[_Subscription] = []
        self.fetches = 0

    async def fetch_collection(self, path: str) -> list[Record]:
        self.fetches += 1
        return parse_records(self.payloads)

    def subscribe(
        self,
        path: str,
        on_change: Callable[[LiveUpdate], None],
        on_error: Callable[[BaseException], None],
    ) -> Callable[[], None]:
        subscription = _Subscription(path, on_change, on_error)
        self.subscriptions.append(subscription)
        return subscription.close

    @property
    def active(self) -> list[_Subscription]:
        return [subscription for subscription in self.subscriptions if not subscription.closed]


class _FetchOnlySource:
    def __init__(self, payloads: list[dict[str, Any]]) -> None:
        self.payloads = payloads

    async def fetch_collection(self, path: str) -> list[Record]:
        return parse_records(self.payloads)


class _Recorder:
    def __init__(self) -> None:
        self.calls: list[tuple[Any, UpdateMeta]] = []

    def __call__(self, data: Any, meta: UpdateMeta) -> None:
        self.calls.append((data, meta))


def _parts(online: bool, clock: _Clock | None = None) -> tuple[TTLCacheStore, ConnectivityMonitor]:
    state = ConnectivityState.online() if online else ConnectivityState.offline()
    monitor = ConnectivityMonitor(StaticConnectivityProbe(state))
    store = TTLCacheStore(clock=clock or _Clock())
    return store, monitor


async def _drain() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


# ------------------------------------------------------------------
# setup / live
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_setup_emits_cached_data_first_then_goes_live() -> None:
    store, monitor = _parts(online=True)
    await store.set("crops", [{"id": "a", "price": 1}])
    source = _LiveSource()
    recorder = _Recorder()

    async with RealtimeCacheManager(store, monitor) as manager:
        cached = await manager.setup("crops", source, "crops/farmers", on_data_update=recorder)
        await _drain()

        assert cached == [{"id": "a", "price": 1}]
        assert manager.phase("crops") is KeyPhase.LIVE
        assert [subscription.path for subscription in source.active] == ["crops/farmers"]
        assert len(recorder.calls) == 1
        data, meta = recorder.calls[0]
        assert data == [{"id": "a", "price": 1}]
        assert meta.from_cache
        assert not meta.realtime


@pytest.mark.asyncio
async def test_setup_skips_cache_older_than_max_age() -> None:
    clock = _Clock()
    store, monitor = _parts(online=True, clock=clock)
    await store.set("crops", [{"id": "a"}])
    clock.now += 301
    recorder = _Recorder()

    async with RealtimeCacheManager(store, monitor) as manager:
        cached = await manager.setup("crops", _LiveSource(), "crops", on_data_update=recorder)
        await _drain()

    assert cached is None
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_live_push_is_written_through_before_later_events() -> None:
    store, monitor = _parts(online=True)
    source = _LiveSource()
    recorder = _Recorder()

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("crops/farmers", source, "crops/farmers", on_data_update=recorder)
        subscription = source.active[0]

        subscription.on_change(LiveUpdate(changes=[{"id": "x", "price": 42}]))
        subscription.on_error(SubscriptionFailure("feed dropped"))
        await _drain()

        assert await store.get("crops/farmers") == [{"id": "x", "price": 42}]
        assert len(recorder.calls) == 2
        pushed, push_meta = recorder.calls[0]
        assert pushed == [{"id": "x", "price": 42}]
        assert push_meta.realtime
        assert not push_meta.from_cache
        assert push_meta.phase is KeyPhase.LIVE

        fallback, error_meta = recorder.calls[1]
        assert fallback == [{"id": "x", "price": 42}]
        assert error_meta.error
        assert error_meta.from_cache


@pytest.mark.asyncio
async def test_incremental_push_merges_by_id() -> None:
    store, monitor = _parts(online=True)
    await store.set("crops", [{"id": "a", "price": 1}, {"id": "b", "price": 2}])
    source = _LiveSource()

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("crops", source, "crops")
        source.active[0].on_change(LiveUpdate(changes=[{"id": "b", "price": 5}, {"id": "c", "price": 7}]))
        await _drain()

    assert await store.get("crops") == [
        {"id": "a", "price": 1},
        {"id": "b", "price": 5},
        {"id": "c", "price": 7},
    ]


@pytest.mark.asyncio
async def test_snapshot_push_replaces_collection() -> None:
    store, monitor = _parts(online=True)
    await store.set("crops", [{"id": "a", "price": 1}])
    source = _LiveSource()

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("crops", source, "crops")
        source.active[0].on_change(LiveUpdate(changes=[{"id": "z", "price": 9}], snapshot=True))
        await _drain()

    assert await store.get("crops") == [{"id": "z", "price": 9}]


@pytest.mark.asyncio
async def test_source_without_subscribe_is_fetched_once() -> None:
    store, monitor = _parts(online=True)
    recorder = _Recorder()
    source = _FetchOnlySource([{"id": "a", "name": "Onion", "pricePerUnit": "12"}])

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("crops", source, "crops", on_data_update=recorder)
        await _drain()

        assert manager.phase("crops") is KeyPhase.LIVE

    cached = await store.get("crops")
    assert cached[0]["id"] == "a"
    assert cached[0]["price"] == 12.0
    assert len(recorder.calls) == 1
    data, meta = recorder.calls[0]
    assert data == cached
    assert not meta.realtime
    assert not meta.from_cache


# ------------------------------------------------------------------
# degraded / polling
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_subscription_error_degrades_and_retries_when_online() -> None:
    store, monitor = _parts(online=True)
    await store.set("crops", [{"id": "a"}])
    source = _LiveSource()
    recorder = _Recorder()

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("crops", source, "crops", on_data_update=recorder, sync_interval=0.01)
        first = source.active[0]
        failure = SubscriptionFailure("broker gone")
        first.on_error(failure)
        await _drain()

        assert first.closed == 1
        assert manager.phase("crops") is KeyPhase.DEGRADED
        _, meta = recorder.calls[-1]
        assert meta.error
        assert meta.exception is failure
        assert meta.phase is KeyPhase.DEGRADED

        await _wait_for(lambda: manager.phase("crops") is KeyPhase.LIVE)
        assert len(source.subscriptions) == 2
        assert len(source.active) == 1


@pytest.mark.asyncio
async def test_synchronous_subscribe_failure_degrades() -> None:
    class _Refusing(_LiveSource):
        def subscribe(self, *_args: Any) -> Callable[[], None]:
            raise ConnectionRefusedError("no broker")

    store, monitor = _parts(online=True)

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("crops", _Refusing(), "crops")
        await _drain()

        assert manager.phase("crops") is KeyPhase.DEGRADED


@pytest.mark.asyncio
async def test_offline_setup_polls_cached_data() -> None:
    store, monitor = _parts(online=False)
    await store.set("crops", [{"id": "a"}])
    source = _LiveSource()
    recorder = _Recorder()

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("crops", source, "crops", on_data_update=recorder, sync_interval=0.01)
        assert manager.phase("crops") is KeyPhase.POLLING
        assert source.subscriptions == []

        await _wait_for(lambda: any(meta.offline for _, meta in recorder.calls))

    first_meta = recorder.calls[0][1]
    assert first_meta.from_cache and not first_meta.offline
    offline_data, offline_meta = next(call for call in recorder.calls if call[1].offline)
    assert offline_data == [{"id": "a"}]
    assert offline_meta.from_cache


@pytest.mark.asyncio
async def test_connectivity_recovery_attaches_live_feed() -> None:
    store, monitor = _parts(online=False)
    source = _LiveSource()

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("crops", source, "crops")
        assert manager.phase("crops") is KeyPhase.POLLING

        monitor.update(ConnectivityState.online())
        await _drain()

        assert manager.phase("crops") is KeyPhase.LIVE
        assert len(source.active) == 1


@pytest.mark.asyncio
async def test_connectivity_loss_releases_live_feed() -> None:
    store, monitor = _parts(online=True)
    source = _LiveSource()

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("crops", source, "crops")
        await monitor.get_status()
        monitor.update(ConnectivityState.offline())
        await _drain()

        assert manager.phase("crops") is KeyPhase.POLLING
        assert source.active == []


@pytest.mark.asyncio
async def test_resubscribe_unknown_key_is_false() -> None:
    store, monitor = _parts(online=True)

    async with RealtimeCacheManager(store, monitor) as manager:
        assert not await manager.resubscribe("nope")


# ------------------------------------------------------------------
# teardown
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cleanup_twice_is_safe_and_drops_late_events() -> None:
    store, monitor = _parts(online=True)
    source = _LiveSource()
    recorder = _Recorder()

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("crops", source, "crops", on_data_update=recorder)
        subscription = source.active[0]

        manager.cleanup("crops")
        manager.cleanup("crops")
        subscription.on_change(LiveUpdate(changes=[{"id": "late"}]))
        await _drain()

        assert subscription.closed == 1
        assert source.active == []
        assert manager.active_keys() == []
        assert manager.phase("crops") is KeyPhase.COLD
        assert recorder.calls == []
        assert await store.get("crops") is None


@pytest.mark.asyncio
async def test_setup_again_replaces_previous_registration() -> None:
    store, monitor = _parts(online=True)
    source = _LiveSource()
    first_recorder = _Recorder()
    second_recorder = _Recorder()

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("crops", source, "crops", on_data_update=first_recorder)
        old = source.active[0]
        await manager.setup("crops", source, "crops", on_data_update=second_recorder)

        old.on_change(LiveUpdate(changes=[{"id": "stale"}]))
        source.active[0].on_change(LiveUpdate(changes=[{"id": "fresh"}]))
        await _drain()

    assert old.closed == 1
    assert first_recorder.calls == []
    assert [data for data, _ in second_recorder.calls] == [[{"id": "fresh"}]]


@pytest.mark.asyncio
async def test_cleanup_all_releases_every_key() -> None:
    store, monitor = _parts(online=True)
    source = _LiveSource()

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("a", source, "a")
        await manager.setup("b", source, "b")
        manager.cleanup_all()

        assert manager.active_keys() == []
        assert source.active == []


# ------------------------------------------------------------------
# get_realtime_data
# ------------------------------------------------------------------


class _Fetch:
    def __init__(self, result: Any = None, exc: BaseException | None = None) -> None:
        self.result = result
        self.exc = exc
        self.calls = 0
        self.gate: asyncio.Event | None = None

    async def __call__(self) -> Any:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.exc is not None:
            raise self.exc
        return self.result


@pytest.mark.asyncio
async def test_offline_stale_cache_returned_without_fetching() -> None:
    clock = _Clock()
    store, monitor = _parts(online=False, clock=clock)
    await store.set("prices", {"price": 50})
    clock.now += 10 * 60
    fetch = _Fetch({"price": 99})

    async with RealtimeCacheManager(store, monitor) as manager:
        result = await manager.get_realtime_data("prices", fetch, max_stale_time=120)
        await _drain()

    assert result == RealtimeReadResult(data={"price": 50}, from_cache=True, stale=True)
    assert fetch.calls == 0


@pytest.mark.asyncio
async def test_fresh_cache_returned_as_fresh() -> None:
    store, monitor = _parts(online=True)
    await store.set("prices", {"price": 50})
    fetch = _Fetch({"price": 99})

    async with RealtimeCacheManager(store, monitor) as manager:
        result = await manager.get_realtime_data("prices", fetch)

    assert result.fresh
    assert not result.stale
    assert fetch.calls == 0


@pytest.mark.asyncio
async def test_stale_cache_triggers_single_background_refresh() -> None:
    clock = _Clock()
    store, monitor = _parts(online=True, clock=clock)
    await store.set("prices", {"price": 50})
    clock.now += 600
    fetch = _Fetch({"price": 60})
    fetch.gate = asyncio.Event()

    async with RealtimeCacheManager(store, monitor) as manager:
        first = await manager.get_realtime_data("prices", fetch)
        second = await manager.get_realtime_data("prices", fetch)
        await _drain()

        assert first.stale and second.stale
        assert first.data == {"price": 50}
        assert fetch.calls == 1

        fetch.gate.set()
        await _drain()

        assert await store.get("prices") == {"price": 60}


@pytest.mark.asyncio
async def test_background_refresh_notifies_registered_consumer() -> None:
    clock = _Clock()
    store, monitor = _parts(online=True, clock=clock)
    await store.set("crops", [{"id": "a", "price": 1}])
    clock.now += 600
    recorder = _Recorder()

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("crops", _LiveSource(), "crops", on_data_update=recorder)
        await manager.get_realtime_data("crops", _Fetch([{"id": "a", "price": 3}]))
        await _drain()

    assert recorder.calls[-1][0] == [{"id": "a", "price": 3}]
    assert not recorder.calls[-1][1].from_cache


@pytest.mark.asyncio
async def test_missing_cache_online_fetches_and_caches() -> None:
    store, monitor = _parts(online=True)
    fetch = _Fetch({"price": 70})

    async with RealtimeCacheManager(store, monitor) as manager:
        result = await manager.get_realtime_data("prices", fetch)

    assert result == RealtimeReadResult(data={"price": 70}, from_cache=False)
    assert await store.get("prices") == {"price": 70}


@pytest.mark.asyncio
async def test_missing_cache_fetch_failure_raises() -> None:
    store, monitor = _parts(online=True)
    boom = RuntimeError("500")

    async with RealtimeCacheManager(store, monitor) as manager:
        with pytest.raises(FetchFailure) as exc_info:
            await manager.get_realtime_data("prices", _Fetch(exc=boom))

    assert exc_info.value.__cause__ is boom


@pytest.mark.asyncio
async def test_missing_cache_offline_raises_no_data() -> None:
    store, monitor = _parts(online=False)

    async with RealtimeCacheManager(store, monitor) as manager:
        with pytest.raises(NoDataAvailable):
            await manager.get_realtime_data("prices", _Fetch({"price": 1}))


# ------------------------------------------------------------------
# selective updates
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_item_writes_and_notifies() -> None:
    store, monitor = _parts(online=True)
    await store.set("crops", [{"id": "a", "price": 1}])
    recorder = _Recorder()

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("crops", _LiveSource(), "crops", on_data_update=recorder)
        assert await manager.update_item("crops", "a", {"price": 2})
        assert not await manager.update_item("crops", "missing", {"price": 2})
        await _drain()

    assert await store.get("crops") == [{"id": "a", "price": 2}]
    assert recorder.calls[-1][0] == [{"id": "a", "price": 2}]


@pytest.mark.asyncio
async def test_invalidate_removes_cached_payload() -> None:
    store, monitor = _parts(online=True)
    await store.set("crops", [1])

    async with RealtimeCacheManager(store, monitor, SyncConfig()) as manager:
        await manager.invalidate("crops")

    assert await store.get("crops") is None


@pytest.mark.asyncio
async def test_upstream_shaped_push_overwrites_normalized_cache() -> None:
    store, monitor = _parts(online=True)
    fetched = parse_records([{"id": "a", "name": "onion", "pricePerUnit": 40, "lat": 20.0, "lng": 73.8}])
    await store.set("crops", dump_records(fetched))
    source = _LiveSource()
    recorder = _Recorder()

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("crops", source, "crops", on_data_update=recorder)
        source.active[0].on_change(decode_live_message(b'{"id": "a", "pricePerUnit": 55, "name": "Onion"}'))
        await _drain()

    pushed, meta = recorder.calls[-1]
    assert meta.realtime
    [record] = parse_records(pushed)
    assert record.price == 55.0
    assert record.commodity_name == "Onion"
    assert record.coordinates == fetched[0].coordinates
    assert "pricePerUnit" not in pushed[0]
    assert parse_records(await store.get("crops"))[0].price == 55.0


@pytest.mark.asyncio
async def test_snapshot_push_is_normalized_before_caching() -> None:
    store, monitor = _parts(online=True)
    source = _LiveSource()

    async with RealtimeCacheManager(store, monitor) as manager:
        await manager.setup("crops", source, "crops")
        source.active[0].on_change(
            decode_live_message(b'[{"_id": "b", "commodity": "Tomato", "price": "15.5"}, {"name": "no id"}]')
        )
        await _drain()

    assert await store.get("crops") == [{"id": "b", "commodity_name": "Tomato", "price": 15.5}]


@pytest.mark.asyncio
async def test_update_item_normalizes_field_names() -> None:
    store, monitor = _parts(online=True)
    await store.set("crops", [{"id": "a", "commodity_name": "Onion", "price": 40.0}])

    async with RealtimeCacheManager(store, monitor) as manager:
        assert await manager.update_item("crops", "a", {"pricePerUnit": "42"})

    assert await store.get("crops") == [{"id": "a", "commodity_name": "Onion", "price": 42.0}]

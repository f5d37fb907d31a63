from __future__ import annotations

import asyncio

import aiohttp
import pytest

from mandisync.connectivity import (
    ConnectivityMonitor,
    HttpConnectivityProbe,
    StaticConnectivityProbe,
    SubscriberRegistry,
)
from mandisync.models.connectivity import ConnectivityState, TransportType


class _FailingSession:
    """Stands in for aiohttp.ClientSession; every request fails."""

    def __init__(self, exc: BaseException) -> None:
        self._exc = exc
        self.calls = 0

    def head(self, *_args: object, **_kwargs: object) -> _FailingSession:
        self.calls += 1
        return self

    async def __aenter__(self) -> None:
        raise self._exc

    async def __aexit__(self, *exc: object) -> None:
        return None


class _Response:
    status = 204


class _OkSession:
    def head(self, *_args: object, **_kwargs: object) -> _OkSession:
        return self

    async def __aenter__(self) -> _Response:
        return _Response()

    async def __aexit__(self, *exc: object) -> None:
        return None


def test_state_validates_from_platform_payload() -> None:
    state = ConnectivityState.model_validate({"isConnected": True, "type": "WIFI", "isInternetReachable": None})

    assert state.transport_type is TransportType.WIFI
    assert state.is_reachable is None
    assert state.is_online


def test_state_unreachable_is_offline_even_when_connected() -> None:
    state = ConnectivityState.model_validate({"isConnected": True, "type": "cellular", "isInternetReachable": False})

    assert not state.is_online


def test_unknown_transport_type_maps_to_other() -> None:
    state = ConnectivityState.model_validate({"isConnected": True, "type": "bluetooth"})

    assert state.transport_type is TransportType.OTHER


def test_registry_contains_failing_callbacks() -> None:
    registry: SubscriberRegistry[int] = SubscriberRegistry("test")
    seen: list[int] = []

    def _boom(_value: int) -> None:
        raise RuntimeError("listener bug")

    registry.subscribe(_boom)
    unsubscribe = registry.subscribe(seen.append)
    registry.publish(1)
    unsubscribe()
    unsubscribe()
    registry.publish(2)

    assert seen == [1]
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_get_status_probes_once_until_refresh() -> None:
    probe = StaticConnectivityProbe(ConnectivityState.offline())
    monitor = ConnectivityMonitor(probe)

    assert not (await monitor.get_status()).is_online
    probe.set_online(True)
    assert not (await monitor.get_status()).is_online
    assert probe.calls == 1

    assert (await monitor.get_status(refresh=True)).is_online
    assert probe.calls == 2


@pytest.mark.asyncio
async def test_listeners_fire_once_per_transition() -> None:
    monitor = ConnectivityMonitor(StaticConnectivityProbe())
    transitions: list[bool] = []
    monitor.subscribe(transitions.append)

    monitor.update(ConnectivityState.online(TransportType.WIFI))
    monitor.update(ConnectivityState.offline())
    monitor.update({"isConnected": False, "type": "none", "isInternetReachable": False})
    monitor.update({"isConnected": True, "type": "cellular", "isInternetReachable": True})
    monitor.update(ConnectivityState.online(TransportType.WIFI))

    assert transitions == [False, True]
    assert monitor.is_online()
    assert monitor.state is not None
    assert monitor.state.transport_type is TransportType.WIFI


@pytest.mark.asyncio
async def test_background_loop_probes_and_stops_idempotently() -> None:
    probe = StaticConnectivityProbe(ConnectivityState.offline())
    monitor = ConnectivityMonitor(probe, interval=0.01)
    transitions: list[bool] = []
    monitor.subscribe(transitions.append)

    await monitor.start()
    await monitor.start()
    await asyncio.sleep(0.005)
    probe.set_online(True)
    for _ in range(100):
        if transitions == [False, True]:
            break
        await asyncio.sleep(0.01)
    await monitor.stop()
    await monitor.stop()

    assert transitions == [False, True]
    assert not monitor.is_running


@pytest.mark.asyncio
async def test_probe_exception_counts_as_offline() -> None:
    class _Exploding:
        async def probe(self) -> ConnectivityState:
            raise RuntimeError("no radio")

    monitor = ConnectivityMonitor(_Exploding())

    assert not (await monitor.get_status()).is_online


@pytest.mark.asyncio
@pytest.mark.parametrize("exc", [aiohttp.ClientConnectionError("refused"), TimeoutError()])
async def test_http_probe_failure_is_offline(exc: BaseException) -> None:
    session = _FailingSession(exc)
    probe = HttpConnectivityProbe("https://probe.invalid/204", http_session=session)  # type: ignore[arg-type]

    state = await probe.probe()

    assert not state.is_online
    assert session.calls == 1


@pytest.mark.asyncio
async def test_http_probe_any_response_is_online() -> None:
    probe = HttpConnectivityProbe("https://probe.invalid/204", http_session=_OkSession())  # type: ignore[arg-type]

    assert (await probe.probe()).is_online

"""Network-state monitoring with transition notifications."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from collections.abc import Callable
from typing import Any, Generic, Protocol, TypeVar

import aiohttp

from mandisync.models.connectivity import ConnectivityState, TransportType

_logger = logging.getLogger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class SubscriberRegistry(Generic[T]):
    """Ordered callback registry with explicit unsubscribe tokens.

    A callback that raises is logged and skipped; the remaining callbacks
    still run.
    """

    def __init__(self, name: str = "subscriber") -> None:
        self._name = name
        self._callbacks: dict[int, Callable[[T], None]] = {}
        self._tokens = itertools.count()

    def __len__(self) -> int:
        return len(self._callbacks)

    def subscribe(self, callback: Callable[[T], None]) -> Unsubscribe:
        token = next(self._tokens)
        self._callbacks[token] = callback

        def _unsubscribe() -> None:
            self._callbacks.pop(token, None)

        return _unsubscribe

    def publish(self, value: T) -> None:
        for callback in list(self._callbacks.values()):
            try:
                callback(value)
            except Exception:
                _logger.warning("%s callback failed", self._name, exc_info=True)

    def clear(self) -> None:
        self._callbacks.clear()


# ------------------------------------------------------------------
# Probes
# ------------------------------------------------------------------


class ConnectivityProbe(Protocol):
    """Structural interface of a connectivity probe."""

    async def probe(self) -> ConnectivityState:
        ...


class HttpConnectivityProbe:
    """Probe reachability with a HEAD request to a well-known URL.

    Any HTTP response counts as reachable.  Network errors and timeouts
    count as offline.
    """

    def __init__(
        self,
        url: str,
        *,
        http_session: aiohttp.ClientSession | None = None,
        timeout: float = 5.0,
    ) -> None:
        self._url = url
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _head(self, session: aiohttp.ClientSession) -> int:
        async with session.head(self._url, timeout=self._timeout, allow_redirects=False) as resp:
            return resp.status

    async def probe(self) -> ConnectivityState:
        try:
            if self._http is not None:
                status = await self._head(self._http)
            else:
                async with aiohttp.ClientSession() as session:
                    status = await self._head(session)
        except (aiohttp.ClientError, TimeoutError) as exc:
            _logger.debug("Connectivity probe to %s failed: %s", self._url, exc)
            return ConnectivityState.offline()
        _logger.debug("Connectivity probe to %s answered status=%s", self._url, status)
        return ConnectivityState.online(TransportType.UNKNOWN)


class StaticConnectivityProbe:
    """Probe returning a settable state.

    Useful for tests and for embedders that push platform state through
    :meth:`ConnectivityMonitor.update` instead of probing.
    """

    def __init__(self, state: ConnectivityState | None = None) -> None:
        self.state = state if state is not None else ConnectivityState.online()
        self.calls = 0

    def set_online(self, online: bool) -> None:
        self.state = ConnectivityState.online() if online else ConnectivityState.offline()

    async def probe(self) -> ConnectivityState:
        self.calls += 1
        return self.state


# ------------------------------------------------------------------
# Monitor
# ------------------------------------------------------------------


class ConnectivityMonitor:
    """Tracks online/offline state and notifies on transitions.

    The monitor starts out assuming the device is online until the first
    probe or platform update says otherwise.  Subscribers receive the new
    ``is_online`` value once per actual transition.

    Usage::

        async with ConnectivityMonitor(HttpConnectivityProbe(url)) as monitor:
            unsubscribe = monitor.subscribe(lambda online: ...)
    """

    def __init__(self, probe: ConnectivityProbe, *, interval: float = 15.0) -> None:
        self._probe = probe
        self._interval = interval
        self._state: ConnectivityState | None = None
        self._online = True
        self._subscribers: SubscriberRegistry[bool] = SubscriberRegistry("connectivity")
        self._task: asyncio.Task[None] | None = None
        self._probe_lock = asyncio.Lock()

    async def __aenter__(self) -> ConnectivityMonitor:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    @property
    def state(self) -> ConnectivityState | None:
        """Last observed state, ``None`` before the first probe or update."""
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_online(self) -> bool:
        """Last known online flag; never blocks."""
        return self._online

    def subscribe(self, callback: Callable[[bool], None]) -> Unsubscribe:
        """Register *callback* for online/offline transitions."""
        return self._subscribers.subscribe(callback)

    def update(self, state: ConnectivityState | dict[str, Any]) -> bool:
        """Record an observed state and notify on a transition.

        Accepts a :class:`ConnectivityState` or a raw platform payload.
        Returns whether the online flag changed.
        """
        if not isinstance(state, ConnectivityState):
            state = ConnectivityState.model_validate(state)
        self._state = state
        was_online = self._online
        self._online = state.is_online
        _logger.debug(
            "Network state connected=%s type=%s reachable=%s",
            state.is_connected,
            state.transport_type,
            state.is_reachable,
        )
        if was_online == self._online:
            return False
        _logger.debug("Connectivity changed online=%s", self._online)
        self._subscribers.publish(self._online)
        return True

    async def _probe_once(self) -> ConnectivityState:
        try:
            return await self._probe.probe()
        except Exception:
            _logger.warning("Connectivity probe raised; assuming offline", exc_info=True)
            return ConnectivityState.offline()

    async def get_status(self, *, refresh: bool = False) -> ConnectivityState:
        """Return the current state, probing on first use or when *refresh* is set."""
        async with self._probe_lock:
            state = self._state
            if state is None or refresh:
                state = await self._probe_once()
                self.update(state)
            return state

    async def _run(self) -> None:
        while True:
            await self.get_status(refresh=True)
            await asyncio.sleep(self._interval)

    async def start(self) -> None:
        """Start the background probe loop (no-op when already running)."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="mandisync-connectivity")
        _logger.debug("Connectivity monitor started interval=%.1fs", self._interval)

    async def stop(self) -> None:
        """Stop the probe loop.  Safe to call repeatedly."""
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        _logger.debug("Connectivity monitor stopped")

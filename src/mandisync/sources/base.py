"""Record source interfaces.

A record source is the backing data store seen through two operations:
fetching a whole collection, and (optionally) subscribing to its live
changes.  Subscription callbacks are always invoked on the event loop.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol, runtime_checkable

from mandisync.models.record import Record
from mandisync.models.results import LiveUpdate

Unsubscribe = Callable[[], None]
ChangeCallback = Callable[[LiveUpdate], None]
ErrorCallback = Callable[[BaseException], None]


class RecordSource(Protocol):
    """Structural interface of a collection fetcher."""

    async def fetch_collection(self, path: str) -> list[Record]:
        ...


@runtime_checkable
class LiveRecordSource(Protocol):
    """A record source that can also push live changes."""

    async def fetch_collection(self, path: str) -> list[Record]:
        ...

    def subscribe(self, path: str, on_change: ChangeCallback, on_error: ErrorCallback) -> Unsubscribe:
        ...

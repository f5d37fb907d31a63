"""Result and notification types handed back to consumers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mandisync.ingestion.normalize import prune_patch


class KeyPhase(StrEnum):
    """Lifecycle phase of a key registered with the real-time cache manager."""

    COLD = "cold"
    BOOTSTRAPPING = "bootstrapping"
    LIVE = "live"
    POLLING = "polling"
    DEGRADED = "degraded"
    TORN_DOWN = "torn_down"


@dataclass(frozen=True)
class UpdateMeta:
    """Flags delivered with every ``on_data_update`` notification.

    They let the presentation layer decide whether to show a cached,
    stale or offline indicator.
    """

    from_cache: bool = False
    realtime: bool = False
    offline: bool = False
    stale: bool = False
    error: bool = False
    phase: KeyPhase = KeyPhase.COLD
    exception: BaseException | None = None


@dataclass(frozen=True)
class FetchResult:
    """Outcome of :meth:`OfflineFetcher.fetch_with_cache`."""

    data: Any
    from_cache: bool
    offline: bool = False
    error: BaseException | None = None


@dataclass(frozen=True)
class RealtimeReadResult:
    """Outcome of :meth:`RealtimeCacheManager.get_realtime_data`."""

    data: Any
    from_cache: bool
    fresh: bool = False
    stale: bool = False


class LiveUpdate(BaseModel):
    """A change set pushed by a live subscription.

    ``snapshot=True`` means *changes* is the complete collection and
    replaces whatever is cached.  Otherwise each change is merged into the
    cached collection by ``id``.
    """

    model_config = ConfigDict(frozen=True)

    changes: list[dict[str, Any]] = Field(default_factory=list)
    snapshot: bool = False

    @field_validator("changes", mode="before")
    @classmethod
    def _prune_changes(cls, value: Any) -> Any:
        if isinstance(value, dict):
            value = [value]
        if not isinstance(value, list):
            return value
        return [prune_patch(item) for item in value if isinstance(item, dict)]

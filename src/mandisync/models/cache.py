"""Persisted cache envelope models."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

#: Schema version written into every persisted envelope.
CACHE_SCHEMA_VERSION = "1.0"


class CacheEnvelope(BaseModel):
    """On-disk shape of a cache entry: ``{data, timestamp, version}``.

    ``timestamp`` is epoch milliseconds.
    """

    model_config = ConfigDict(extra="ignore")

    data: Any = None
    timestamp: int
    version: str = CACHE_SCHEMA_VERSION


class CacheEntry(BaseModel):
    """A cache entry as returned by the store."""

    model_config = ConfigDict(frozen=True)

    key: str
    payload: Any = None
    stored_at: float = Field(description="Epoch seconds the payload was written.")
    schema_version: str = CACHE_SCHEMA_VERSION

    @classmethod
    def from_envelope(cls, key: str, envelope: CacheEnvelope) -> CacheEntry:
        return cls(
            key=key,
            payload=envelope.data,
            stored_at=envelope.timestamp / 1000.0,
            schema_version=envelope.version,
        )

    def age(self, now: float) -> float:
        return max(0.0, now - self.stored_at)


class CacheInfo(BaseModel):
    """Bookkeeping for one key, as reported by :meth:`TTLCacheStore.info`."""

    model_config = ConfigDict(frozen=True)

    key: str
    last_updated: datetime
    age_seconds: float

    @classmethod
    def from_entry(cls, entry: CacheEntry, now: float) -> CacheInfo:
        return cls(
            key=entry.key,
            last_updated=datetime.fromtimestamp(entry.stored_at, tz=UTC),
            age_seconds=entry.age(now),
        )

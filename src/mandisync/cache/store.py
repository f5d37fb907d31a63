"""Persisted TTL key/value cache.

The cache is an optimization, not a source of truth: every storage-layer
failure is logged and reported as a miss (or a dropped write), never
raised to the caller.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import math
import time
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any

from pydantic import ValidationError

from mandisync.cache.backends import KeyValueBackend, MemoryBackend
from mandisync.ingestion.apply import update_item as _apply_item_update
from mandisync.models.cache import CACHE_SCHEMA_VERSION, CacheEntry, CacheEnvelope, CacheInfo

_logger = logging.getLogger(__name__)


class TTLCacheStore:
    """Key → payload store with per-entry age checks.

    Entries are persisted as ``{"data": ..., "timestamp": <epoch-ms>,
    "version": "1.0"}`` JSON envelopes through a :class:`KeyValueBackend`.
    Mutations of one key are serialized with a per-key lock; unrelated keys
    never contend.
    """

    def __init__(
        self,
        backend: KeyValueBackend | None = None,
        *,
        clock: Callable[[], float] = time.time,
        schema_version: str = CACHE_SCHEMA_VERSION,
    ) -> None:
        self._backend: KeyValueBackend = backend if backend is not None else MemoryBackend()
        self._clock = clock
        self._schema_version = schema_version
        # key -> (lock, number of tasks holding or waiting on it)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    def now(self) -> float:
        """Current time on the store clock, epoch seconds."""
        return self._clock()

    @contextlib.asynccontextmanager
    async def _lock(self, key: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            _, users = self._locks[key]
            if users > 1:
                self._locks[key] = (lock, users - 1)
            else:
                del self._locks[key]

    # ------------------------------------------------------------------
    # Unlocked primitives (callers hold the key lock)
    # ------------------------------------------------------------------

    async def _read_entry(self, key: str) -> CacheEntry | None:
        try:
            text = await self._backend.get_item(key)
        except Exception:
            _logger.warning("Cache read failed for key=%s", key, exc_info=True)
            return None
        if text is None:
            return None

        try:
            envelope = CacheEnvelope.model_validate_json(text)
        except ValidationError:
            _logger.warning("Discarding corrupt cache entry for key=%s", key, exc_info=True)
            await self._remove(key)
            return None

        if envelope.version != self._schema_version:
            _logger.debug(
                "Discarding cache entry key=%s with version=%s (expected %s)",
                key,
                envelope.version,
                self._schema_version,
            )
            await self._remove(key)
            return None
        return CacheEntry.from_envelope(key, envelope)

    async def _write(self, key: str, payload: Any) -> Any:
        """Persist *payload* and return it as later reads will see it.

        The timestamp is rounded up to the millisecond so a fresh entry
        never reads as older than it is.
        """
        envelope = CacheEnvelope(
            data=payload,
            timestamp=math.ceil(self._clock() * 1000),
            version=self._schema_version,
        )
        try:
            text = envelope.model_dump_json()
        except Exception:
            _logger.warning("Cache write failed for key=%s: payload is not JSON serializable", key, exc_info=True)
            return payload
        try:
            await self._backend.set_item(key, text)
        except Exception:
            _logger.warning("Cache write failed for key=%s", key, exc_info=True)
        else:
            _logger.debug("Cached key=%s", key)
        return json.loads(text)["data"]

    async def _remove(self, key: str) -> None:
        try:
            await self._backend.remove_item(key)
        except Exception:
            _logger.warning("Cache removal failed for key=%s", key, exc_info=True)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def set(self, key: str, payload: Any) -> Any:
        """Store *payload* under *key* stamped with the current time.

        Returns the JSON-decoded copy that cache reads of *key* return, so
        callers can hand out one shape whether data is fresh or cached.
        """
        async with self._lock(key):
            return await self._write(key, payload)

    async def get_entry(self, key: str, max_age: float = math.inf) -> CacheEntry | None:
        """Return the entry if it is at most *max_age* seconds old.

        An entry older than *max_age* is evicted.  ``math.inf`` accepts any
        age.
        """
        if max_age < 0:
            raise ValueError("max_age must be >= 0")
        async with self._lock(key):
            entry = await self._read_entry(key)
            if entry is None:
                _logger.debug("Cache miss for key=%s", key)
                return None
            age = entry.age(self._clock())
            if age > max_age:
                _logger.debug("Cache expired for key=%s age=%.1fs max_age=%.1fs", key, age, max_age)
                await self._remove(key)
                return None
            _logger.debug("Cache hit for key=%s age=%.1fs", key, age)
            return entry

    async def get(self, key: str, max_age: float = math.inf) -> Any | None:
        """Return the payload for *key*, or ``None`` on a miss."""
        entry = await self.get_entry(key, max_age)
        return entry.payload if entry is not None else None

    async def age(self, key: str) -> float | None:
        """Seconds since *key* was written, ``None`` if absent."""
        async with self._lock(key):
            entry = await self._read_entry(key)
        if entry is None:
            return None
        return entry.age(self._clock())

    async def update(self, key: str, transform: Callable[[Any], Any]) -> Any | None:
        """Atomically rewrite the payload of *key*.

        *transform* receives the current payload (any age, ``None`` when
        absent) and returns the new one; returning ``None`` leaves the entry
        untouched.  Returns what was written.
        """
        async with self._lock(key):
            entry = await self._read_entry(key)
            current = entry.payload if entry is not None else None
            replacement = transform(current)
            if replacement is None:
                return None
            return await self._write(key, replacement)

    async def update_item(self, key: str, item_id: str, fields: dict[str, Any]) -> bool:
        """Merge *fields* into the cached list item whose ``id`` is *item_id*."""
        written = await self.update(key, lambda current: _apply_item_update(current, item_id, fields))
        return written is not None

    async def invalidate(self, key: str) -> None:
        async with self._lock(key):
            await self._remove(key)
        _logger.debug("Cache invalidated for key=%s", key)

    async def keys(self) -> list[str]:
        try:
            return await self._backend.keys()
        except Exception:
            _logger.warning("Listing cache keys failed", exc_info=True)
            return []

    async def clear(self) -> None:
        try:
            await self._backend.clear()
        except Exception:
            _logger.warning("Clearing cache failed", exc_info=True)
        _logger.debug("Cache cleared")

    async def info(self, keys: Iterable[str] | None = None) -> dict[str, CacheInfo]:
        """Last-updated time and age for each present key."""
        selected = list(keys) if keys is not None else await self.keys()
        now = self._clock()
        result: dict[str, CacheInfo] = {}
        for key in selected:
            async with self._lock(key):
                entry = await self._read_entry(key)
            if entry is not None:
                result[key] = CacheInfo.from_entry(entry, now)
        return result

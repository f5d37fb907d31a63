"""Key/value persistence backends for the TTL cache store."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, TypeVar

from mandisync.exceptions import CacheStorageError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyValueBackend(Protocol):
    """Structural interface of an on-device string key/value store.

    Values are opaque strings (serialized envelopes).  Implementations
    signal failures with :class:`CacheStorageError` (or any other
    exception); the cache store absorbs them.
    """

    async def get_item(self, key: str) -> str | None: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def remove_item(self, key: str) -> None: ...

    async def keys(self) -> list[str]: ...

    async def clear(self) -> None: ...


class MemoryBackend:
    """Process-local backend; contents vanish with the process."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    async def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    async def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self._items)

    async def clear(self) -> None:
        self._items.clear()


class FileBackend:
    """One file per key under *directory*.

    File names are the SHA-1 of the key; the key itself is stored on the
    first line so :meth:`keys` can list them.  Writes go to a temporary file
    that atomically replaces the previous one.  Blocking file I/O runs in
    the loop's default executor.
    """

    _SUFFIX = ".cache.json"

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, key: str) -> Path:
        digest = hashlib.sha1(key.encode("utf-8"), usedforsecurity=False).hexdigest()
        return self._directory / f"{digest}{self._SUFFIX}"

    async def _run(self, fn: Callable[..., T], *args: Any, key: str = "") -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except OSError as exc:
            raise CacheStorageError(f"Cache file operation failed: {exc}", key=key) from exc

    def _read(self, key: str) -> str | None:
        path = self._path(key)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        stored_key, _, value = text.partition("\n")
        if stored_key != key:
            # SHA-1 collision or foreign file; treat as absent.
            return None
        return value

    def _write(self, key: str, value: str) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self._directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(f"{key}\n{value}")
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def _keys(self) -> list[str]:
        if not self._directory.is_dir():
            return []
        found: list[str] = []
        for path in sorted(self._directory.glob(f"*{self._SUFFIX}")):
            try:
                with path.open(encoding="utf-8") as handle:
                    found.append(handle.readline().rstrip("\n"))
            except OSError:
                _logger.debug("Unreadable cache file %s", path, exc_info=True)
        return found

    def _clear(self) -> None:
        if not self._directory.is_dir():
            return
        for path in self._directory.glob(f"*{self._SUFFIX}"):
            path.unlink(missing_ok=True)

    async def get_item(self, key: str) -> str | None:
        return await self._run(self._read, key, key=key)

    async def set_item(self, key: str, value: str) -> None:
        await self._run(self._write, key, value, key=key)

    async def remove_item(self, key: str) -> None:
        await self._run(self._remove, key, key=key)

    async def keys(self) -> list[str]:
        return await self._run(self._keys)

    async def clear(self) -> None:
        await self._run(self._clear)

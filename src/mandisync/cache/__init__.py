"""TTL cache store and its persistence backends."""

from mandisync.cache.backends import FileBackend, KeyValueBackend, MemoryBackend
from mandisync.cache.store import TTLCacheStore

__all__ = ["FileBackend", "KeyValueBackend", "MemoryBackend", "TTLCacheStore"]

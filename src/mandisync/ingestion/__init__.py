"""Ingestion layer.

Adapters that turn loosely shaped record-source payloads into normalized
records and cache patches.
"""

__all__: list[str] = []

"""Typed models shared across mandisync."""

from mandisync.models.cache import CACHE_SCHEMA_VERSION, CacheEntry, CacheEnvelope, CacheInfo
from mandisync.models.connectivity import ConnectivityState, TransportType
from mandisync.models.record import Coordinates, Record, is_valid_coordinate
from mandisync.models.results import FetchResult, KeyPhase, LiveUpdate, RealtimeReadResult, UpdateMeta
from mandisync.models.statistics import MarketSnapshot, PricePoint, PriceStatistics, RadiusSummary

__all__ = [
    "CACHE_SCHEMA_VERSION",
    "CacheEntry",
    "CacheEnvelope",
    "CacheInfo",
    "ConnectivityState",
    "Coordinates",
    "FetchResult",
    "KeyPhase",
    "LiveUpdate",
    "MarketSnapshot",
    "PricePoint",
    "PriceStatistics",
    "RadiusSummary",
    "RealtimeReadResult",
    "Record",
    "TransportType",
    "UpdateMeta",
    "is_valid_coordinate",
]

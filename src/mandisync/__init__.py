"""mandisync - Offline-aware market price sync and geospatial aggregation."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("mandisync")
except PackageNotFoundError:
    __version__ = "0+local"
from mandisync.cache import FileBackend, KeyValueBackend, MemoryBackend, TTLCacheStore
from mandisync.client import MarketDataClient
from mandisync.config import SyncConfig
from mandisync.connectivity import (
    ConnectivityMonitor,
    ConnectivityProbe,
    HttpConnectivityProbe,
    StaticConnectivityProbe,
    SubscriberRegistry,
)
from mandisync.exceptions import (
    CacheStorageError,
    FetchFailure,
    NoDataAvailable,
    RecordValidationError,
    SourceTransportError,
    SubscriptionFailure,
    SyncConfigError,
    SyncError,
)
from mandisync.geo import distance_km, filter_by_radius, partition_by_radius, sort_by_distance, within_radius
from mandisync.models import (
    CacheEntry,
    CacheEnvelope,
    CacheInfo,
    ConnectivityState,
    Coordinates,
    FetchResult,
    KeyPhase,
    LiveUpdate,
    MarketSnapshot,
    PricePoint,
    PriceStatistics,
    RadiusSummary,
    RealtimeReadResult,
    Record,
    TransportType,
    UpdateMeta,
    is_valid_coordinate,
)
from mandisync.orchestrator import OfflineFetcher
from mandisync.realtime import RealtimeCacheManager
from mandisync.sources import HttpRecordSource, LiveRecordSource, MqttBroker, MqttRecordSource, RecordSource
from mandisync.stats import (
    bucket_by_date,
    build_price_series,
    compute_statistics,
    conversion_multiplier,
    day_label,
    market_snapshot,
    month_label,
    summarize_radius,
    week_label,
)

__all__ = [
    # Client
    "MarketDataClient",
    "SyncConfig",
    # Core services
    "ConnectivityMonitor",
    "ConnectivityProbe",
    "HttpConnectivityProbe",
    "OfflineFetcher",
    "RealtimeCacheManager",
    "StaticConnectivityProbe",
    "SubscriberRegistry",
    "TTLCacheStore",
    # Cache backends
    "FileBackend",
    "KeyValueBackend",
    "MemoryBackend",
    # Record sources
    "HttpRecordSource",
    "LiveRecordSource",
    "MqttBroker",
    "MqttRecordSource",
    "RecordSource",
    # Exceptions
    "CacheStorageError",
    "FetchFailure",
    "NoDataAvailable",
    "RecordValidationError",
    "SourceTransportError",
    "SubscriptionFailure",
    "SyncConfigError",
    "SyncError",
    # Models
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
    # Geo
    "distance_km",
    "filter_by_radius",
    "is_valid_coordinate",
    "partition_by_radius",
    "sort_by_distance",
    "within_radius",
    # Aggregation
    "bucket_by_date",
    "build_price_series",
    "compute_statistics",
    "conversion_multiplier",
    "day_label",
    "market_snapshot",
    "month_label",
    "summarize_radius",
    "week_label",
]

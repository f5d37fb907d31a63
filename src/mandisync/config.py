"""Runtime configuration for mandisync."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from mandisync.exceptions import SyncConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(env_key: str, value: str, kind: type[float] | type[int]) -> float | int:
    try:
        return kind(value)
    except ValueError as exc:
        raise SyncConfigError(f"{env_key} must be numeric, got {value!r}") from exc


@dataclasses.dataclass(frozen=True)
class SyncConfig:
    """Library configuration.

    All durations are in seconds.

    Parameters
    ----------
    api_base_url : str
        Base URL of the REST record source (``GET {api_base_url}/{path}``).
    cache_dir : str or None
        Directory for the persisted cache.  ``None`` keeps the cache in
        memory for the lifetime of the process.
    probe_url : str
        URL probed to decide whether the internet is reachable.
    probe_timeout : float
        Timeout of a single connectivity probe.
    probe_interval : float
        Interval of the background connectivity probe loop.
    default_max_age : float
        Freshness bound used by the fetch orchestrator (24 hours).
    realtime_max_age : float
        Freshness bound of the initial cache read when a live key is set up.
    max_stale_time : float
        Age after which :meth:`RealtimeCacheManager.get_realtime_data`
        reports cached data as stale.
    sync_interval : float
        Poll-timer interval for offline and degraded keys.
    background_refresh : bool
        Refresh stale data in the background by default.
    request_timeout : float
        Total timeout of a record-source HTTP request.
    mqtt_enabled : bool
        Attach live MQTT subscriptions when online.
    mqtt_host : str
        MQTT broker host.
    mqtt_port : int
        MQTT broker port.
    mqtt_topic_prefix : str
        Live topics are ``{mqtt_topic_prefix}/{path}``.
    mqtt_keepalive : int
        MQTT keepalive.
    mqtt_tls : bool
        Use TLS for the broker connection.
    """

    api_base_url: str = "http://localhost:8000/api"
    cache_dir: str | None = None
    probe_url: str = "https://clients3.google.com/generate_204"
    probe_timeout: float = 5.0
    probe_interval: float = 15.0
    default_max_age: float = 24 * 3600
    realtime_max_age: float = 5 * 60
    max_stale_time: float = 2 * 60
    sync_interval: float = 30.0
    background_refresh: bool = True
    request_timeout: float = 15.0
    mqtt_enabled: bool = False
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_topic_prefix: str = "mandisync"
    mqtt_keepalive: int = 60
    mqtt_tls: bool = False

    @classmethod
    def from_env(cls, **overrides: Any) -> SyncConfig:
        """Create configuration from environment variables.

        Reads optional ``MANDISYNC_*`` variables.  Explicit keyword
        arguments override environment values.

        Raises
        ------
        SyncConfigError
            A numeric variable could not be parsed.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "MANDISYNC_API_BASE_URL": "api_base_url",
            "MANDISYNC_CACHE_DIR": "cache_dir",
            "MANDISYNC_PROBE_URL": "probe_url",
            "MANDISYNC_MQTT_HOST": "mqtt_host",
            "MANDISYNC_MQTT_TOPIC_PREFIX": "mqtt_topic_prefix",
        }
        _ENV_FLOAT_MAP = {
            "MANDISYNC_PROBE_TIMEOUT": "probe_timeout",
            "MANDISYNC_PROBE_INTERVAL": "probe_interval",
            "MANDISYNC_DEFAULT_MAX_AGE": "default_max_age",
            "MANDISYNC_REALTIME_MAX_AGE": "realtime_max_age",
            "MANDISYNC_MAX_STALE_TIME": "max_stale_time",
            "MANDISYNC_SYNC_INTERVAL": "sync_interval",
            "MANDISYNC_REQUEST_TIMEOUT": "request_timeout",
        }
        _ENV_INT_MAP = {
            "MANDISYNC_MQTT_PORT": "mqtt_port",
            "MANDISYNC_MQTT_KEEPALIVE": "mqtt_keepalive",
        }
        _ENV_BOOL_MAP = {
            "MANDISYNC_BACKGROUND_REFRESH": ("background_refresh", True),
            "MANDISYNC_MQTT_ENABLED": ("mqtt_enabled", False),
            "MANDISYNC_MQTT_TLS": ("mqtt_tls", False),
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _env_number(env_key, val, float)

        for env_key, field_name in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _env_number(env_key, val, int)

        for env_key, (field_name, default) in _ENV_BOOL_MAP.items():
            if field_name not in overrides:
                config_kwargs[field_name] = _env_bool(env.get(env_key), default)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)

"""Connectivity state model."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class TransportType(StrEnum):
    WIFI = "wifi"
    CELLULAR = "cellular"
    ETHERNET = "ethernet"
    NONE = "none"
    OTHER = "other"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> TransportType:
        return cls.OTHER if value else cls.UNKNOWN


class ConnectivityState(BaseModel):
    """Snapshot of the device network state.

    Validates directly from platform probe payloads shaped
    ``{"isConnected": bool, "type": str, "isInternetReachable": bool | None}``.
    ``is_reachable`` is ``None`` while reachability is still undetermined.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    is_connected: bool = Field(default=False, validation_alias=AliasChoices("is_connected", "isConnected"))
    transport_type: TransportType = Field(
        default=TransportType.UNKNOWN,
        validation_alias=AliasChoices("transport_type", "type", "transportType"),
    )
    is_reachable: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("is_reachable", "isInternetReachable", "isReachable"),
    )

    @field_validator("transport_type", mode="before")
    @classmethod
    def _coerce_transport(cls, value: Any) -> TransportType:
        if isinstance(value, TransportType):
            return value
        if value is None:
            return TransportType.UNKNOWN
        return TransportType(str(value).strip().lower())

    @property
    def is_online(self) -> bool:
        """Connected and not known to be unreachable."""
        return self.is_connected and self.is_reachable is not False

    @classmethod
    def offline(cls) -> ConnectivityState:
        return cls(is_connected=False, transport_type=TransportType.NONE, is_reachable=False)

    @classmethod
    def online(cls, transport_type: TransportType = TransportType.UNKNOWN) -> ConnectivityState:
        return cls(is_connected=True, transport_type=transport_type, is_reachable=True)

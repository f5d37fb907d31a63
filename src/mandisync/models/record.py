"""Price record and coordinate models."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from mandisync.ingestion.normalize import first_present, safe_float, safe_str, to_utc_datetime


class Coordinates(BaseModel):
    """A latitude/longitude pair in degrees."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    lat: float = Field(validation_alias=AliasChoices("lat", "latitude"))
    lon: float = Field(validation_alias=AliasChoices("lon", "lng", "longitude"))

    @property
    def is_valid(self) -> bool:
        """Finite, within range and not the degenerate zero position.

        Upstream payloads use ``0`` as a "no fix" placeholder, so either
        component being exactly zero marks the pair as unusable.
        """
        return is_valid_coordinate(self.lat, self.lon)


def is_valid_coordinate(latitude: Any, longitude: Any) -> bool:
    if isinstance(latitude, bool) or isinstance(longitude, bool):
        return False
    if not isinstance(latitude, (int, float)) or not isinstance(longitude, (int, float)):
        return False
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        return False
    if latitude == 0 or longitude == 0:
        return False
    return -90 <= latitude <= 90 and -180 <= longitude <= 180


def _extract_coordinates(values: dict[str, Any]) -> dict[str, float] | None:
    explicit = values.get("coordinates")
    if isinstance(explicit, Coordinates):
        return {"lat": explicit.lat, "lon": explicit.lon}
    candidates: list[tuple[Any, Any]] = []
    if isinstance(explicit, dict):
        candidates.append(
            (
                first_present(explicit, "lat", "latitude"),
                first_present(explicit, "lon", "lng", "longitude"),
            )
        )
    candidates.append(
        (
            first_present(values, "location.coords.latitude", "location.latitude", "location.lat"),
            first_present(values, "location.coords.longitude", "location.longitude", "location.lng", "location.lon"),
        )
    )
    candidates.append(
        (
            first_present(values, "latitude", "lat"),
            first_present(values, "longitude", "lon", "lng"),
        )
    )
    for raw_lat, raw_lon in candidates:
        lat = safe_float(raw_lat)
        lon = safe_float(raw_lon)
        if lat is not None and lon is not None:
            return {"lat": lat, "lon": lon}
    return None


class Record(BaseModel):
    """A single observed commodity price at a place and time.

    Built from loosely shaped source payloads by the ``before`` validator,
    which resolves the field aliases the backing store has used over time
    (``name``/``commodity``, ``pricePerUnit``, ``location.coords``,
    ``createdAt.seconds``...).  Everything downstream works with the
    normalized fields only.

    Parameters
    ----------
    id : str
        Source document id.
    commodity_name : str
        Commodity (crop) name as entered upstream.
    price : float
        Price per unit.  Non-numeric upstream values become ``0.0`` and
        are dropped by the aggregation engine.
    coordinates : Coordinates or None
        Capture position, ``None`` when the payload carried none.
    captured_at : datetime or None
        Capture time (UTC).
    raw : dict
        Original payload.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str
    commodity_name: str = ""
    price: float = 0.0
    coordinates: Coordinates | None = None
    captured_at: datetime | None = None
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _adapt_source_shape(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        adapted: dict[str, Any] = {
            "id": first_present(values, "id", "_id", "docId", "doc_id"),
            "commodity_name": first_present(values, "commodity_name", "commodityName", "name", "commodity", "cropName"),
            "price": first_present(values, "price", "pricePerUnit", "price_per_unit"),
            "coordinates": _extract_coordinates(values),
            "captured_at": first_present(
                values,
                "captured_at",
                "capturedAt",
                "createdAt",
                "created_at",
                "location.timestamp",
                "timestamp",
            ),
            "raw": values.get("raw") if isinstance(values.get("raw"), dict) else dict(values),
        }
        return {key: value for key, value in adapted.items() if value is not None}

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        text = safe_str(value)
        if text is None:
            raise ValueError("record id must be non-empty")
        return text

    @field_validator("commodity_name", mode="before")
    @classmethod
    def _coerce_name(cls, value: Any) -> str:
        return safe_str(value) or ""

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_price(cls, value: Any) -> float:
        parsed = safe_float(value)
        return parsed if parsed is not None else 0.0

    @field_validator("captured_at", mode="before")
    @classmethod
    def _coerce_captured_at(cls, value: Any) -> datetime | None:
        return to_utc_datetime(value)

    @property
    def has_valid_coordinates(self) -> bool:
        return self.coordinates is not None and self.coordinates.is_valid

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe dict suitable for the persisted cache."""
        return self.model_dump(mode="json")

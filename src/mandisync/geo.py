"""Haversine distance and radius filtering over price records.

Everything here is pure: no I/O, inputs are never mutated, and output
order follows input order unless stated otherwise.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from mandisync.exceptions import RecordValidationError
from mandisync.models.record import Coordinates, Record, is_valid_coordinate

#: Mean Earth radius used by the haversine formula.
EARTH_RADIUS_KM = 6371.0

__all__ = [
    "EARTH_RADIUS_KM",
    "distance_km",
    "filter_by_radius",
    "is_valid_coordinate",
    "partition_by_radius",
    "sort_by_distance",
    "within_radius",
]


def distance_km(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance between *a* and *b* in kilometres."""
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.lon - a.lon)

    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    # Rounding can push h marginally past 1 for antipodal points.
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def within_radius(point: Coordinates, center: Coordinates, radius_km: float) -> bool:
    return distance_km(point, center) <= radius_km


def _check_radius(radius_km: float) -> None:
    if math.isnan(radius_km) or radius_km < 0:
        raise RecordValidationError(f"radius_km must be a non-negative number, got {radius_km!r}")


def _name_matches(record: Record, name_filter: str | None) -> bool:
    if not name_filter:
        return True
    return record.commodity_name.casefold() == name_filter.casefold()


def filter_by_radius(
    records: Iterable[Record],
    center: Coordinates,
    radius_km: float,
    name_filter: str | None = None,
) -> list[Record]:
    """Records within *radius_km* of *center*, optionally of one commodity.

    Records without coordinates, or with the degenerate zero position, are
    excluded rather than placed somewhere arbitrary.

    Raises
    ------
    RecordValidationError
        *radius_km* is negative or NaN.
    """
    _check_radius(radius_km)
    selected: list[Record] = []
    for record in records:
        if not _name_matches(record, name_filter):
            continue
        coords = record.coordinates
        if coords is None or not coords.is_valid:
            continue
        if within_radius(coords, center, radius_km):
            selected.append(record)
    return selected


def partition_by_radius(
    records: Iterable[Record],
    center: Coordinates,
    radius_km: float,
    name_filter: str | None = None,
) -> tuple[list[Record], list[Record]]:
    """Split located records into ``(inside, outside)`` of the radius.

    Used to colour map markers.  Unlocated records appear in neither list.
    """
    _check_radius(radius_km)
    inside: list[Record] = []
    outside: list[Record] = []
    for record in records:
        coords = record.coordinates
        if not _name_matches(record, name_filter) or coords is None or not coords.is_valid:
            continue
        if within_radius(coords, center, radius_km):
            inside.append(record)
        else:
            outside.append(record)
    return inside, outside


def sort_by_distance(records: Iterable[Record], center: Coordinates) -> list[tuple[Record, float]]:
    """Located records paired with their distance, nearest first (stable)."""
    located: list[tuple[Record, float]] = []
    for record in records:
        coords = record.coordinates
        if coords is not None and coords.is_valid:
            located.append((record, distance_km(coords, center)))
    return sorted(located, key=lambda pair: pair[1])

"""Derived price statistics models.

These are recomputed on demand and never persisted.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class PriceStatistics(BaseModel):
    """Descriptive statistics over a set of positive prices.

    Whenever ``sample_count > 0``: ``min <= median <= max`` and
    ``min <= mean <= max``.  All fields are zero for an empty sample.
    """

    model_config = ConfigDict(frozen=True)

    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    median: float = 0.0
    mode: float = 0.0
    sample_count: int = 0

    @classmethod
    def empty(cls) -> PriceStatistics:
        return cls()


class PricePoint(BaseModel):
    """One point of a date-bucketed price series."""

    model_config = ConfigDict(frozen=True)

    label: str
    value: float
    timestamp: float
    count: int


class RadiusSummary(BaseModel):
    """Headline numbers for the records inside a search radius."""

    model_config = ConfigDict(frozen=True)

    count: int = 0
    average_price: float = 0.0
    average_price_per_kg: float = 0.0


class MarketSnapshot(BaseModel):
    """Statistics for the today / yesterday / last-7-days windows."""

    model_config = ConfigDict(frozen=True)

    today: PriceStatistics = PriceStatistics()
    yesterday: PriceStatistics = PriceStatistics()
    week: PriceStatistics = PriceStatistics()

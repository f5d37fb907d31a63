"""Price aggregation engine.

Descriptive statistics, date buckets and chart series over in-memory
records.  Pure functions; no I/O.

Modal price tie-break: when several prices share the highest occurrence
count, the smallest of them wins (the first one met when walking the
prices in ascending order).
"""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any, TypeVar

from mandisync.ingestion.normalize import safe_float
from mandisync.models.record import Record
from mandisync.models.statistics import MarketSnapshot, PricePoint, PriceStatistics, RadiusSummary

T = TypeVar("T")

#: Per-commodity multiplier from the per-unit price to the per-kg price.
COMMODITY_CONVERSION_RATES: dict[str, float] = {
    "onion": 1.0,
    "tomato": 1.0,
    "drumstick": 1.0,
    "lemon": 1.0,
    "wheat": 1.0,
    "grape": 1.0,
    "coriander": 1.0,
    "garlic": 1.0,
    "rice": 1.0,
}
DEFAULT_CONVERSION_RATE = 1.0


def _price(record: Record) -> float:
    return record.price


def _captured_at(record: Record) -> datetime | None:
    return record.captured_at


def _round_half_up(value: float) -> float:
    return float(math.floor(value + 0.5))


def conversion_multiplier(commodity: str | None) -> float:
    if not commodity:
        return DEFAULT_CONVERSION_RATE
    return COMMODITY_CONVERSION_RATES.get(commodity.strip().lower(), DEFAULT_CONVERSION_RATE)


def positive_values(items: Iterable[T], value_selector: Callable[[T], Any]) -> list[float]:
    """Selected values that are numeric, finite and strictly positive."""
    values: list[float] = []
    for item in items:
        value = safe_float(value_selector(item))
        if value is not None and value > 0:
            values.append(value)
    return values


def _median(sorted_values: Sequence[float]) -> float:
    count = len(sorted_values)
    middle = count // 2
    if count % 2 == 0:
        return (sorted_values[middle - 1] + sorted_values[middle]) / 2
    return sorted_values[middle]


def _mode(sorted_values: Sequence[float]) -> float:
    counts = Counter(sorted_values)
    best_value = sorted_values[0]
    best_count = 0
    for value in sorted_values:
        if counts[value] > best_count:
            best_value = value
            best_count = counts[value]
    return best_value


def compute_statistics(
    records: Iterable[T],
    value_selector: Callable[[Any], Any] = _price,
) -> PriceStatistics:
    """Min, max, mean, median and modal value of the positive selected values.

    Non-numeric and non-positive values are dropped first.  An empty sample
    yields all zeros.
    """
    values = sorted(positive_values(records, value_selector))
    if not values:
        return PriceStatistics.empty()

    low = values[0]
    high = values[-1]
    # fsum/len can land one ulp outside [low, high] for constant samples.
    mean = min(high, max(low, math.fsum(values) / len(values)))
    return PriceStatistics(
        min=low,
        max=high,
        mean=mean,
        median=_median(values),
        mode=_mode(values),
        sample_count=len(values),
    )


# ---------------------------------------------------------------------------
# Date buckets
# ---------------------------------------------------------------------------


def day_label(moment: datetime) -> str:
    """``05 Mar 25``"""
    return moment.strftime("%d %b %y")


def week_label(moment: datetime) -> str:
    """ISO week, ``2025-W10``."""
    iso = moment.isocalendar()
    return f"{iso.year}-W{iso.week:02d}"


def month_label(moment: datetime) -> str:
    """``Mar 2025``"""
    return moment.strftime("%b %Y")


def bucket_by_date(
    records: Iterable[T],
    bucket_fn: Callable[[datetime], str],
    *,
    timestamp_selector: Callable[[Any], datetime | None] = _captured_at,
    tz: tzinfo | None = None,
) -> dict[str, list[T]]:
    """Group records by the label *bucket_fn* assigns to their timestamp.

    Buckets come back in chronological order of the timestamp of the first
    record seen for each bucket; records keep their input order inside a
    bucket.  Records without a timestamp are skipped.  With *tz* the
    timestamp is converted before labelling.
    """
    groups: dict[str, list[T]] = {}
    first_seen: dict[str, datetime] = {}
    for record in records:
        moment = timestamp_selector(record)
        if moment is None:
            continue
        if tz is not None:
            moment = moment.astimezone(tz)
        label = bucket_fn(moment)
        if label not in groups:
            groups[label] = []
            first_seen[label] = moment
        groups[label].append(record)

    ordered = sorted(groups, key=lambda label: first_seen[label])
    return {label: groups[label] for label in ordered}


def build_price_series(
    records: Iterable[Record],
    commodity: str | None,
    *,
    bucket_fn: Callable[[datetime], str] = day_label,
    multiplier: float | None = None,
    tz: tzinfo | None = None,
) -> list[PricePoint]:
    """Average price per date bucket for one commodity, for charting.

    Values are rounded half-up to whole currency units; buckets without a
    positive price are dropped.
    """
    if not commodity:
        return []
    wanted = commodity.casefold()
    rate = multiplier if multiplier is not None else conversion_multiplier(commodity)
    matching = [record for record in records if record.commodity_name.casefold() == wanted]

    series: list[PricePoint] = []
    for label, bucket in bucket_by_date(matching, bucket_fn, tz=tz).items():
        prices = positive_values(bucket, lambda record: record.price * rate)
        if not prices:
            continue
        value = _round_half_up(math.fsum(prices) / len(prices))
        if value <= 0:
            continue
        first = next(record.captured_at for record in bucket if record.captured_at is not None)
        series.append(PricePoint(label=label, value=value, timestamp=first.timestamp(), count=len(prices)))
    return sorted(series, key=lambda point: point.timestamp)


def summarize_radius(records: Sequence[Record], commodity: str | None = None) -> RadiusSummary:
    """Count and rounded average price (per unit and per kg) of *records*."""
    if not records:
        return RadiusSummary()
    prices = positive_values(records, _price)
    average = math.fsum(prices) / len(prices) if prices else 0.0
    return RadiusSummary(
        count=len(records),
        average_price=_round_half_up(average),
        average_price_per_kg=_round_half_up(average * conversion_multiplier(commodity)),
    )


def market_snapshot(
    records: Iterable[Record],
    *,
    now: datetime | None = None,
    tz: tzinfo = UTC,
) -> MarketSnapshot:
    """Statistics for today, yesterday and the last seven days.

    Day boundaries are midnight in *tz*.  The week window runs from seven
    days before *now* up to the end of today.
    """
    current = (now or datetime.now(tz)).astimezone(tz)
    start_today = current.replace(hour=0, minute=0, second=0, microsecond=0)
    end_today = start_today + timedelta(days=1)
    start_yesterday = start_today - timedelta(days=1)
    start_week = current - timedelta(days=7)

    located = [record for record in records if record.captured_at is not None]

    def _window(start: datetime, end: datetime) -> PriceStatistics:
        selected = [record for record in located if record.captured_at is not None and start <= record.captured_at < end]
        return compute_statistics(selected)

    return MarketSnapshot(
        today=_window(start_today, end_today),
        yesterday=_window(start_yesterday, start_today),
        week=_window(start_week, end_today),
    )

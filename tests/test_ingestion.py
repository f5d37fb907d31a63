from __future__ import annotations

import math
from datetime import UTC, datetime

import pytest

from mandisync.exceptions import RecordValidationError
from mandisync.ingestion.apply import merge_live_update, to_live_update, update_item
from mandisync.ingestion.normalize import (
    first_present,
    normalize_timestamp_seconds,
    prune_patch,
    safe_float,
)
from mandisync.ingestion.records import (
    dedupe_records,
    dump_records,
    normalize_live_update,
    parse_record,
    parse_records,
    record_patch,
)
from mandisync.models.results import LiveUpdate


@pytest.mark.parametrize(
    ("value", "expected"),
    [("12.5", 12.5), (" 7 ", 7.0), ("--", None), ("NaN", None), (math.inf, None), (True, None), (None, None)],
)
def test_safe_float(value: object, expected: float | None) -> None:
    assert safe_float(value) == expected


def test_timestamp_normalization() -> None:
    assert normalize_timestamp_seconds(1_741_170_000_000) == 1_741_170_000
    assert normalize_timestamp_seconds(1_741_170_000) == 1_741_170_000
    assert normalize_timestamp_seconds({"seconds": 1_741_170_000}) == 1_741_170_000
    assert normalize_timestamp_seconds({"_seconds": 1_741_170_000}) == 1_741_170_000
    assert normalize_timestamp_seconds("2025-03-05T09:00:00Z") == datetime(2025, 3, 5, 9, tzinfo=UTC).timestamp()
    assert normalize_timestamp_seconds(0) is None
    assert normalize_timestamp_seconds("") is None


def test_prune_patch_drops_placeholders_recursively() -> None:
    patch = {"price": 10, "note": "", "meta": {"a": None, "b": "--"}, "tags": [None, "x"], "zero": 0}

    assert prune_patch(patch) == {"price": 10, "tags": ["x"], "zero": 0}


def test_first_present_follows_dotted_paths() -> None:
    values = {"location": {"coords": {"latitude": 19.9}}, "lat": 1.0}

    assert first_present(values, "location.coords.latitude", "lat") == 19.9
    assert first_present(values, "location.lat", "lat") == 1.0
    assert first_present(values, "missing.path") is None


def test_parse_record_rejects_non_objects() -> None:
    with pytest.raises(RecordValidationError):
        parse_record(["not", "a", "record"])


def test_parse_records_lenient_skips_invalid_items() -> None:
    records = parse_records([{"id": "a"}, {"name": "no id"}, "junk", {"id": "b"}])

    assert [record.id for record in records] == ["a", "b"]


def test_parse_records_strict_raises() -> None:
    with pytest.raises(RecordValidationError):
        parse_records([{"id": "a"}, {"name": "no id"}], strict=True)


def test_parse_records_unwraps_data_and_accepts_none() -> None:
    assert [record.id for record in parse_records({"data": [{"id": "a"}]})] == ["a"]
    assert parse_records(None) == []
    with pytest.raises(RecordValidationError):
        parse_records(42)


def test_dedupe_records_by_name_price_and_position() -> None:
    payloads = [
        {"id": "1", "name": "Onion", "price": 10, "lat": 20.0, "lng": 73.8},
        {"id": "2", "name": "onion", "price": 10, "lat": 20.0, "lng": 73.8},
        {"id": "3", "name": "Onion", "price": 11, "lat": 20.0, "lng": 73.8},
        {"id": "4", "name": "Onion", "price": 10},
    ]

    unique = dedupe_records(parse_records(payloads))

    assert [record.id for record in unique] == ["1", "3", "4"]


def test_dump_records_is_json_ready() -> None:
    dumped = dump_records(parse_records([{"id": "a", "name": "Onion", "price": "5"}]))

    assert dumped == [
        {"id": "a", "commodity_name": "Onion", "price": 5.0, "coordinates": None, "captured_at": None},
    ]


def test_merge_live_update_does_not_mutate_cached_list() -> None:
    cached = [{"id": "a", "price": 1}]

    merged = merge_live_update(cached, LiveUpdate(changes=[{"id": "a", "price": 2}]))

    assert merged == [{"id": "a", "price": 2}]
    assert cached == [{"id": "a", "price": 1}]


def test_merge_live_update_into_non_list_cache_starts_fresh() -> None:
    assert merge_live_update({"price": 1}, LiveUpdate(changes=[{"id": "a"}])) == [{"id": "a"}]


def test_update_item_returns_none_when_nothing_matches() -> None:
    assert update_item([{"id": "a"}], "b", {"price": 1}) is None
    assert update_item(None, "a", {"price": 1}) is None
    assert update_item([{"id": 7, "price": 1}], "7", {"price": 3}) == [{"id": 7, "price": 3}]


def test_to_live_update_shapes() -> None:
    assert to_live_update([{"id": "a"}]).snapshot
    assert to_live_update({"changes": [{"id": "a"}], "snapshot": True}).snapshot
    assert to_live_update({"id": "a"}).changes == [{"id": "a"}]
    with pytest.raises(RecordValidationError):
        to_live_update("nope")
    with pytest.raises(RecordValidationError):
        to_live_update({"changes": [{"id": "a"}], "snapshot": "sometimes"})


def test_record_patch_keeps_only_carried_fields() -> None:
    assert record_patch({"id": "a", "pricePerUnit": "55"}) == {"id": "a", "price": 55.0}
    assert record_patch({"_id": 7, "location": {"coords": {"latitude": 20, "longitude": 73.8}}}) == {
        "id": "7",
        "coordinates": {"lat": 20.0, "lon": 73.8},
    }
    with pytest.raises(RecordValidationError):
        record_patch({"pricePerUnit": 1})


def test_normalize_live_update_maps_changes_and_snapshots() -> None:
    changes = normalize_live_update(LiveUpdate(changes=[{"id": "a", "name": "Onion"}, {"price": 3}]))
    snapshot = normalize_live_update(LiveUpdate(changes=[{"id": "b", "pricePerUnit": 9}], snapshot=True))

    assert changes == LiveUpdate(changes=[{"id": "a", "commodity_name": "Onion"}])
    assert snapshot == LiveUpdate(changes=[{"id": "b", "price": 9.0}], snapshot=True)

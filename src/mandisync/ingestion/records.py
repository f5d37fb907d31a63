"""Record adapter at the record-source boundary."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from mandisync.exceptions import RecordValidationError
from mandisync.models.record import Record
from mandisync.models.results import LiveUpdate

_logger = logging.getLogger(__name__)


def parse_record(payload: Any) -> Record:
    """Validate a single payload into a :class:`Record`.

    Raises
    ------
    RecordValidationError
        The payload is not an object or lacks an id.
    """
    if isinstance(payload, Record):
        return payload
    if not isinstance(payload, dict):
        raise RecordValidationError(f"record payload must be an object, got {type(payload).__name__}")
    try:
        return Record.model_validate(payload)
    except ValidationError as exc:
        raise RecordValidationError(f"invalid record payload: {exc.errors()[0]['msg']}") from exc


def parse_records(payloads: Any, *, strict: bool = False) -> list[Record]:
    """Validate a collection of payloads.

    ``None`` yields an empty list.  In the default lenient mode invalid
    items are logged and skipped; with ``strict=True`` the first invalid
    item raises :class:`RecordValidationError`.
    """
    if payloads is None:
        return []
    if isinstance(payloads, dict):
        nested = payloads.get("data")
        payloads = nested if isinstance(nested, list) else [payloads]
    if not isinstance(payloads, list):
        raise RecordValidationError(f"record collection must be a list, got {type(payloads).__name__}")

    records: list[Record] = []
    for index, payload in enumerate(payloads):
        try:
            records.append(parse_record(payload))
        except RecordValidationError:
            if strict:
                raise
            _logger.debug("Skipping invalid record at index=%d", index, exc_info=True)
    return records


def _identity(record: Record) -> tuple[str, float, float | None, float | None]:
    coords = record.coordinates
    return (
        record.commodity_name.lower(),
        record.price,
        coords.lat if coords is not None else None,
        coords.lon if coords is not None else None,
    )


def dedupe_records(records: Iterable[Record]) -> list[Record]:
    """Drop records that repeat the same commodity, price and position.

    Used when the same observation reaches us through more than one
    collection (e.g. farmer and consumer listings).  First occurrence wins.
    """
    seen: set[tuple[str, float, float | None, float | None]] = set()
    unique: list[Record] = []
    for record in records:
        identity = _identity(record)
        if identity in seen:
            continue
        seen.add(identity)
        unique.append(record)
    return unique


def dump_records(records: Iterable[Record]) -> list[dict[str, Any]]:
    """JSON-safe payloads for the persisted cache."""
    return [record.to_payload() for record in records]


def record_patch(change: Any) -> dict[str, Any]:
    """Normalized form of a partial record payload.

    Only the fields *change* actually carries are returned, so merging the
    result into a cached record overwrites exactly those:
    ``{"id": "a", "pricePerUnit": "55"}`` becomes ``{"id": "a", "price": 55.0}``.

    Raises
    ------
    RecordValidationError
        The change is not an object or lacks an id.
    """
    record = parse_record(change)
    return record.model_dump(mode="json", include=record.model_fields_set - {"raw"})


def normalize_live_update(update: LiveUpdate) -> LiveUpdate:
    """Run a pushed update through the record adapter.

    Snapshots become complete normalized records; incremental changes become
    :func:`record_patch` patches.  Items without a usable id are skipped.
    """
    if update.snapshot:
        return LiveUpdate(changes=dump_records(parse_records(update.changes)), snapshot=True)

    patches: list[dict[str, Any]] = []
    for change in update.changes:
        try:
            patches.append(record_patch(change))
        except RecordValidationError:
            _logger.debug("Skipping live change without a record id", exc_info=True)
    return LiveUpdate(changes=patches)

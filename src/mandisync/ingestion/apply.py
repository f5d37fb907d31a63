"""Cache patch application helpers.

Live subscriptions push change sets and consumers issue selective item
updates; both end up as a new cached collection.  Keeping the merge rules
here leaves the cache store and the real-time manager free of payload
interpretation.
"""

from __future__ import annotations

import copy
from typing import Any

from pydantic import ValidationError

from mandisync.exceptions import RecordValidationError
from mandisync.ingestion.normalize import prune_patch
from mandisync.models.results import LiveUpdate


def _item_id(item: Any) -> str | None:
    if not isinstance(item, dict):
        return None
    value = item.get("id")
    if value is None or value == "":
        return None
    return str(value)


def merge_live_update(cached: Any, update: LiveUpdate) -> Any:
    """Apply *update* to a cached collection and return the new collection.

    - Snapshot updates replace the cached value.
    - Incremental changes are merged into the item with the same ``id``
      (keys in the change overwrite), or appended when the id is new.
    - A non-list cached value is replaced by the change list.
    """

    if update.snapshot:
        return copy.deepcopy(update.changes)

    merged: list[Any] = copy.deepcopy(cached) if isinstance(cached, list) else []
    positions = {item_id: idx for idx, item in enumerate(merged) if (item_id := _item_id(item)) is not None}

    for change in update.changes:
        change_id = _item_id(change)
        if change_id is not None and change_id in positions:
            target = merged[positions[change_id]]
            target.update(copy.deepcopy(change))
            continue
        merged.append(copy.deepcopy(change))
        if change_id is not None:
            positions[change_id] = len(merged) - 1
    return merged


def update_item(cached: Any, item_id: str, fields: dict[str, Any]) -> Any | None:
    """Merge *fields* into the cached item with ``id == item_id``.

    Returns the new collection, or ``None`` when there is nothing to update
    (no cached list, or no item with that id).
    """

    if not isinstance(cached, list):
        return None
    patch = prune_patch(fields)
    updated: list[Any] = []
    found = False
    for item in cached:
        if _item_id(item) == item_id:
            replacement = copy.deepcopy(item)
            replacement.update(copy.deepcopy(patch))
            updated.append(replacement)
            found = True
        else:
            updated.append(copy.deepcopy(item))
    return updated if found else None


def to_live_update(message: Any) -> LiveUpdate:
    """Coerce a pushed message into a :class:`LiveUpdate`.

    - ``LiveUpdate`` instances pass through.
    - A list is the complete collection (snapshot).
    - An object with a ``changes`` key is a change set.
    - Any other object is a single change.

    Raises
    ------
    RecordValidationError
        The message is neither an object nor a list.
    """

    if isinstance(message, LiveUpdate):
        return message
    if isinstance(message, list):
        return LiveUpdate(changes=message, snapshot=True)
    if isinstance(message, dict):
        if "changes" in message:
            try:
                return LiveUpdate.model_validate(message)
            except ValidationError as exc:
                raise RecordValidationError(f"invalid change set: {exc.errors()[0]['msg']}") from exc
        return LiveUpdate(changes=[message])
    raise RecordValidationError(f"live message must be an object or a list, got {type(message).__name__}")

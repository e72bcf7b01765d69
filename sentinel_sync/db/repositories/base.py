"""Shared upsert helpers for repositories."""

from datetime import datetime
from enum import Enum

from sentinel_sync.db.models import as_utc


class UpsertOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


def apply_changes(obj, values: dict) -> bool:
    """Set attributes on *obj* that differ from *values*. True if any changed."""
    changed = False
    for key, value in values.items():
        current = getattr(obj, key)
        if isinstance(current, datetime) or isinstance(value, datetime):
            if as_utc(current) == as_utc(value):
                continue
        elif current == value:
            continue
        setattr(obj, key, value)
        changed = True
    return changed

"""
Preference store abstraction and an in-memory implementation for tests.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

from prefstore.errors import PreferenceLimitError

RECORD_KEY_PREFIX = "USER#"

# Write bounds shared by every backend, sized for DynamoDB: a merge of
# MAX_WRITE_ENTRIES keys needs about 2.5 KB of UpdateExpression (limit 4 KB),
# and MAX_SET_BYTES leaves headroom under the 400 KB item limit for the
# attribute names, key and timestamps.
MAX_WRITE_ENTRIES = 100
MAX_WRITE_BYTES = 64 * 1024
MAX_SET_BYTES = 300 * 1024


def record_key(user_id: str) -> str:
    """Composite key of the single record holding a user's preferences."""
    return f"{RECORD_KEY_PREFIX}{user_id}"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def preferences_size(preferences: Dict[str, str]) -> int:
    """UTF-8 bytes of all keys and values."""
    return sum(
        len(key.encode("utf-8")) + len(value.encode("utf-8"))
        for key, value in preferences.items()
    )


def check_set_size(preferences: Dict[str, str]) -> None:
    if preferences_size(preferences) > MAX_SET_BYTES:
        raise PreferenceLimitError(
            f"preference set exceeds {MAX_SET_BYTES} bytes"
        )


class PreferenceStore(Protocol):
    """
    Operations the API needs from preference persistence.

    ``get_all`` returns ``None`` for a user who has never saved preferences,
    which is distinct from an existing but empty map. Every write is atomic
    at the level of one user's record.
    """

    def get_all(self, user_id: str) -> Optional[Dict[str, str]]:
        ...

    def get(self, user_id: str, key: str) -> Optional[str]:
        ...

    def replace_all(self, user_id: str, preferences: Dict[str, str]) -> None:
        ...

    def update(self, user_id: str, preferences: Dict[str, str]) -> Dict[str, str]:
        ...

    def delete_all(self, user_id: str) -> None:
        ...

    def delete(self, user_id: str, key: str) -> None:
        ...


@dataclass
class PreferenceRecord:
    user_id: str
    preferences: Dict[str, str] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_timestamp)
    updated_at: str = field(default_factory=utc_timestamp)

    def as_dict(self) -> dict:
        return {
            "PK": record_key(self.user_id),
            "preferences": dict(self.preferences),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class InMemoryPreferenceStore:
    """Simple in-memory store for development and tests."""

    def __init__(self):
        self.records: Dict[str, PreferenceRecord] = {}
        self._lock = threading.Lock()

    def get_record(self, user_id: str) -> Optional[PreferenceRecord]:
        with self._lock:
            record = self.records.get(record_key(user_id))
            if record is None:
                return None
            return replace(record, preferences=dict(record.preferences))

    def get_all(self, user_id: str) -> Optional[Dict[str, str]]:
        with self._lock:
            record = self.records.get(record_key(user_id))
            return dict(record.preferences) if record else None

    def get(self, user_id: str, key: str) -> Optional[str]:
        with self._lock:
            record = self.records.get(record_key(user_id))
            return record.preferences.get(key) if record else None

    def replace_all(self, user_id: str, preferences: Dict[str, str]) -> None:
        now = utc_timestamp()
        check_set_size(preferences)
        with self._lock:
            existing = self.records.get(record_key(user_id))
            self.records[record_key(user_id)] = PreferenceRecord(
                user_id=user_id,
                preferences=dict(preferences),
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )

    def update(self, user_id: str, preferences: Dict[str, str]) -> Dict[str, str]:
        now = utc_timestamp()
        with self._lock:
            record = self.records.get(record_key(user_id))
            current = dict(record.preferences) if record else {}
            current.update(preferences)
            check_set_size(current)
            if record is None:
                record = PreferenceRecord(user_id=user_id, created_at=now)
                self.records[record_key(user_id)] = record
            record.preferences = current
            record.updated_at = now
            return dict(record.preferences)

    def delete_all(self, user_id: str) -> None:
        with self._lock:
            self.records.pop(record_key(user_id), None)

    def delete(self, user_id: str, key: str) -> None:
        with self._lock:
            record = self.records.get(record_key(user_id))
            if record is None or key not in record.preferences:
                return
            del record.preferences[key]
            record.updated_at = utc_timestamp()

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.records.clear()

"""Store contracts and helpers shared between memory and postgres implementations."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol

from arkeep.storage.models import SessionRecord, User


class SessionRecordStore(Protocol):
    """Persistence for refresh token rotation chains. Data access only, no policy."""

    def insert_session_record(self, record: SessionRecord) -> int:
        """Store ``record`` and assign its id.

        Raises ConstraintViolation when the token already exists.
        """
        ...

    def get_session_record_by_token(self, token: str) -> Optional[SessionRecord]:
        ...

    def revoke_session_record(self, record_id: int) -> None:
        ...

    def revoke_active_in_family(self, family_id: str) -> int:
        """Revoke every non-revoked record of a family in one atomic unit.

        Returns the number of records changed.
        """
        ...

    def rotate_session_record(
        self, record_id: int, successor: SessionRecord
    ) -> Optional[SessionRecord]:
        """Revoke ``record_id`` and insert ``successor`` atomically.

        The revoke is a compare-and-swap on ``revoked = false``. Returns None
        without inserting when the record was already revoked.
        """
        ...

    def list_family_records(self, family_id: str) -> List[SessionRecord]:
        ...


class UserDirectory(Protocol):
    def find_or_create_user(
        self,
        provider: str,
        subject: str,
        *,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        ...

    def update_user_profile(
        self,
        user_id: str,
        *,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Optional[User]:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object.

    Works with both dict-like objects and objects with attribute access.
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes from drivers or old state files as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def generate_uuid() -> str:
    return str(uuid.uuid4())

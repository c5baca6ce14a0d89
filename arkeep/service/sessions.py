"""Refresh token rotation with reuse detection.

A login opens a new *family* of session records. Each refresh consumes the
presented record (flips it to revoked) and inserts a successor in the same
family, so at most one record per family is current at any time. Presenting
an already consumed token means the chain has leaked or lost a race, and the
whole family is revoked.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, NoReturn, Optional

from arkeep.logging import get_logger
from arkeep.service.errors import (
    InvalidTokenError,
    ReuseDetectedError,
    TokenExpiredError,
)
from arkeep.storage.common import SessionRecordStore
from arkeep.storage.models import SessionRecord

logger = get_logger(__name__)


class SessionRotationEngine:
    def __init__(
        self,
        store: SessionRecordStore,
        *,
        rotation_ttl: timedelta,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if rotation_ttl <= timedelta(0):
            raise ValueError("rotation ttl must be positive")
        self.store = store
        self.rotation_ttl = rotation_ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def start_session(self, owner: str) -> SessionRecord:
        """Open a brand-new rotation chain for ``owner``.

        Existing families of the same owner are left alone so each device
        keeps its own chain.
        """
        record = SessionRecord.new(owner, ttl=self.rotation_ttl, now=self._now())
        self.store.insert_session_record(record)
        logger.info("session_started", user_id=owner, family_id=record.family_id)
        return record

    def rotate(self, presented_token: str) -> SessionRecord:
        """Consume ``presented_token`` and return its successor.

        This is a command, not a query: a revoked token revokes its whole
        family before ReuseDetectedError is raised, and an expired token is
        revoked before TokenExpiredError is raised. Revoked is checked before
        expired.
        """
        if not presented_token:
            raise InvalidTokenError()
        record = self.store.get_session_record_by_token(presented_token)
        if record is None:
            logger.info("refresh_token_unknown")
            raise InvalidTokenError()

        if record.revoked:
            self._revoke_family_for_reuse(record, lost_race=False)

        now = self._now()
        if record.is_expired(now):
            # Only this record; the rest of the family is not cascaded
            self.store.revoke_session_record(record.id)
            logger.info(
                "refresh_token_expired",
                user_id=record.user_id,
                family_id=record.family_id,
            )
            raise TokenExpiredError()

        successor = SessionRecord.new(
            record.user_id,
            ttl=self.rotation_ttl,
            now=now,
            family_id=record.family_id,
        )
        rotated = self.store.rotate_session_record(record.id, successor)
        if rotated is None:
            # Another caller consumed the record between our read and the
            # compare-and-swap. Contention counts as reuse, never as retry.
            self._revoke_family_for_reuse(record, lost_race=True)

        logger.info(
            "session_rotated", user_id=rotated.user_id, family_id=rotated.family_id
        )
        return rotated

    def end_session(self, presented_token: str) -> int:
        """Revoke the family of ``presented_token``; unknown tokens are ignored.

        Returns how many records were revoked.
        """
        if not presented_token:
            return 0
        record = self.store.get_session_record_by_token(presented_token)
        if record is None:
            return 0
        revoked = self.store.revoke_active_in_family(record.family_id)
        logger.info(
            "session_ended",
            user_id=record.user_id,
            family_id=record.family_id,
            revoked_count=revoked,
        )
        return revoked

    def _revoke_family_for_reuse(
        self, record: SessionRecord, *, lost_race: bool
    ) -> NoReturn:
        revoked = self.store.revoke_active_in_family(record.family_id)
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=record.user_id,
            family_id=record.family_id,
            revoked_count=revoked,
            lost_race=lost_race,
        )
        raise ReuseDetectedError(family_id=record.family_id, revoked_count=revoked)

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    provider: str
    provider_user_id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SessionRecord:
    """One link in a refresh token rotation chain.

    Everything except ``revoked`` is fixed once the record is stored, and
    ``revoked`` only ever moves from False to True.
    """

    user_id: str
    token: str
    family_id: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    id: Optional[int] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        ttl: timedelta,
        now: datetime,
        family_id: Optional[str] = None,
    ) -> "SessionRecord":
        return cls(
            user_id=user_id,
            token=new_refresh_token(),
            family_id=family_id or str(uuid.uuid4()),
            issued_at=now,
            expires_at=now + ttl,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_current(self, now: datetime) -> bool:
        return not self.revoked and not self.is_expired(now)


def new_refresh_token() -> str:
    # 256 bits from the OS CSPRNG, URL and cookie safe
    return secrets.token_urlsafe(32)

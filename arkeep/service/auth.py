from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from arkeep.logging import get_logger
from arkeep.service.errors import (
    IdentityVerificationError,
    InvalidCredentialError,
    InvalidTokenError,
    ServerError,
)
from arkeep.service.identity import IdentityClaim, IdentityVerifier
from arkeep.service.sessions import SessionRotationEngine
from arkeep.service.tokens import AccessCredentialIssuer
from arkeep.storage.common import UserDirectory
from arkeep.storage.models import SessionRecord, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthResult:
    user: User
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime


@dataclass(frozen=True)
class Profile:
    subject: str
    display_name: str
    avatar_url: Optional[str]


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def resolve_display_name(claim: IdentityClaim) -> Optional[str]:
    """Provider name, else email; None when neither is usable."""
    return _clean(claim.display_name) or _clean(claim.email)


class AuthService:
    """Login, refresh, logout and credential lookup for API callers.

    Composes the identity verifier, the user directory, the rotation engine
    and the access credential issuer. Store calls run in worker threads so a
    slow database does not stall the event loop.
    """

    def __init__(
        self,
        directory: UserDirectory,
        engine: SessionRotationEngine,
        issuer: AccessCredentialIssuer,
        verifier: Optional[IdentityVerifier],
    ) -> None:
        self.directory = directory
        self.engine = engine
        self.issuer = issuer
        self.verifier = verifier

    async def login(self, assertion: str) -> AuthResult:
        if not assertion or not assertion.strip():
            raise IdentityVerificationError(
                "identity verification failed", detail={"reason": "missing_assertion"}
            )
        if self.verifier is None:
            logger.error("identity_provider_not_configured")
            raise ServerError("identity provider not configured")
        claim = await self.verifier.verify(assertion)
        user = await asyncio.to_thread(self._sync_user, claim)
        record = await asyncio.to_thread(self.engine.start_session, user.id)
        return self._issue(user, record)

    def _sync_user(self, claim: IdentityClaim) -> User:
        """Resolve the claim's user and refresh cached profile fields.

        Non-blank provider values overwrite what is stored; blank or missing
        ones leave the stored value alone.
        """
        display_name = resolve_display_name(claim)
        avatar_url = _clean(claim.avatar_url)
        user = self.directory.find_or_create_user(
            self.verifier.provider,
            claim.subject,
            display_name=display_name or claim.subject,
            avatar_url=avatar_url,
        )
        stale_name = display_name is not None and display_name != user.display_name
        stale_avatar = avatar_url is not None and avatar_url != user.avatar_url
        if stale_name or stale_avatar:
            updated = self.directory.update_user_profile(
                user.id,
                display_name=display_name if stale_name else None,
                avatar_url=avatar_url if stale_avatar else None,
            )
            user = updated or user
        return user

    async def refresh(self, refresh_token: Optional[str]) -> AuthResult:
        if not refresh_token or not refresh_token.strip():
            raise InvalidTokenError()
        record = await asyncio.to_thread(self.engine.rotate, refresh_token.strip())
        user = await asyncio.to_thread(self.directory.get_user, record.user_id)
        if user is None:
            logger.warning(
                "refresh_owner_missing",
                user_id=record.user_id,
                family_id=record.family_id,
            )
            # The successor is already current; close its family
            await asyncio.to_thread(self.engine.end_session, record.token)
            raise InvalidTokenError()
        return self._issue(user, record)

    async def logout(self, refresh_token: Optional[str]) -> None:
        if not refresh_token or not refresh_token.strip():
            return
        await asyncio.to_thread(self.engine.end_session, refresh_token.strip())

    def who_am_i(self, access_token: str) -> str:
        return self.issuer.verify(access_token)

    async def profile(self, access_token: str) -> Profile:
        user_id = self.who_am_i(access_token)
        user = await asyncio.to_thread(self.directory.get_user, user_id)
        if user is None:
            # Signed for a user that no longer exists
            raise InvalidCredentialError()
        return Profile(
            subject=user.provider_user_id,
            display_name=_clean(user.display_name) or user.provider_user_id,
            avatar_url=user.avatar_url,
        )

    def _issue(self, user: User, record: SessionRecord) -> AuthResult:
        access = self.issuer.issue(user.id)
        return AuthResult(
            user=user,
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=record.token,
            refresh_expires_at=record.expires_at,
        )

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import httpx

from arkeep.logging import get_logger
from arkeep.service.errors import IdentityVerificationError

logger = get_logger(__name__)

GOOGLE_PROVIDER = "google"
_GOOGLE_ISSUERS = frozenset({"accounts.google.com", "https://accounts.google.com"})


@dataclass(frozen=True)
class IdentityClaim:
    subject: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class IdentityVerifier(Protocol):
    provider: str

    async def verify(self, assertion: str) -> IdentityClaim:
        ...


class GoogleIdentityVerifier:
    """Validates Google ID tokens against the tokeninfo endpoint."""

    provider = GOOGLE_PROVIDER

    def __init__(
        self,
        client_ids: Sequence[str],
        *,
        tokeninfo_url: str = "https://oauth2.googleapis.com/tokeninfo",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_ids = frozenset(cid for cid in client_ids if cid)
        if not self.client_ids:
            raise ValueError("GOOGLE_CLIENT_IDS must list at least one client id")
        self.tokeninfo_url = tokeninfo_url
        self.timeout = timeout
        self._transport = transport

    async def verify(self, assertion: str) -> IdentityClaim:
        if not assertion or not assertion.strip():
            raise self._reject("missing_assertion")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.get(
                    self.tokeninfo_url, params={"id_token": assertion.strip()}
                )
        except httpx.HTTPError as exc:
            logger.error(
                "identity_provider_unreachable",
                provider=self.provider,
                error_type=type(exc).__name__,
            )
            raise self._reject("provider_unreachable") from exc

        if response.status_code != 200:
            raise self._reject("rejected_by_provider", status=response.status_code)
        try:
            claims = response.json()
        except ValueError as exc:
            raise self._reject("malformed_response") from exc
        if not isinstance(claims, dict):
            raise self._reject("malformed_response")

        aud = claims.get("aud")
        if not isinstance(aud, str) or aud not in self.client_ids:
            raise self._reject("audience_mismatch")
        iss = claims.get("iss")
        if not isinstance(iss, str) or iss not in _GOOGLE_ISSUERS:
            raise self._reject("issuer_mismatch")
        try:
            exp = float(claims.get("exp"))
        except (TypeError, ValueError):
            raise self._reject("missing_expiry")
        if exp <= time.time():
            raise self._reject("assertion_expired")
        subject = str(claims.get("sub") or "").strip()
        if not subject:
            raise self._reject("missing_subject")

        return IdentityClaim(
            subject=subject,
            email=claims.get("email") or None,
            display_name=claims.get("name") or None,
            avatar_url=claims.get("picture") or None,
        )

    def _reject(self, reason: str, **fields) -> IdentityVerificationError:
        logger.warning(
            "identity_verification_failed",
            provider=self.provider,
            reason=reason,
            **fields,
        )
        return IdentityVerificationError(
            "identity verification failed", detail={"reason": reason}
        )

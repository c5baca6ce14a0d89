from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from arkeep.logging import get_logger
from arkeep.service.errors import InvalidCredentialError

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccessCredential:
    token: str
    subject: str
    issued_at: datetime
    expires_at: datetime


class AccessCredentialIssuer:
    """Signs and verifies short-lived HS256 access credentials.

    Stateless apart from the signing key, which is handed in once at
    construction. An issued credential is never revoked; it simply expires,
    so ``ttl`` should stay in minutes.
    """

    def __init__(
        self,
        signing_key: str,
        *,
        issuer: str,
        audience: str,
        ttl: timedelta,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not signing_key:
            raise ValueError("signing key is required")
        if ttl <= timedelta(0):
            raise ValueError("access credential ttl must be positive")
        self._key = signing_key.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def issue(self, subject: str) -> AccessCredential:
        now = self._clock()
        expires_at = now + self.ttl
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
            "token_type": "access",
        }
        return AccessCredential(
            token=self._encode_jwt(payload),
            subject=subject,
            issued_at=now,
            expires_at=expires_at,
        )

    def verify(self, token: str) -> str:
        """Return the subject of a valid credential.

        Every failure raises the same InvalidCredentialError so callers cannot
        learn which check rejected the token.
        """
        payload = self._decode_jwt(token) if token else None
        if payload is None:
            logger.debug("access_credential_rejected")
            raise InvalidCredentialError()
        return payload["sub"]

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        if payload.get("token_type") != "access":
            return None
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp():
            return None
        return payload

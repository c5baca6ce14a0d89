from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Header, Request, Response
from pydantic import ValidationError

from arkeep.api.schemas import (
    AuthResponse,
    Envelope,
    GoogleLoginRequest,
    MessageResponse,
    ProfileResponse,
    TokenRefreshRequest,
)
from arkeep.config import Settings
from arkeep.logging import get_logger
from arkeep.service.auth import AuthResult
from arkeep.service.errors import InvalidCredentialError, RateLimitedError
from arkeep.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_RATE_WINDOW_SECONDS = 60


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(runtime, key: str, limit: int) -> None:
    allowed, _remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, _RATE_WINDOW_SECONDS, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limited", key_prefix=key.split(":", 1)[0])
        raise RateLimitedError("rate limit exceeded", retry_after=max(1, reset_seconds))


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise InvalidCredentialError()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidCredentialError()
    return token.strip()


def _apply_refresh_cookie(response: Response, result: AuthResult, settings: Settings) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        result.refresh_token,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        path="/",
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite="lax",
    )


def _presented_refresh_token(request: Request, body: Any, settings: Settings) -> Optional[str]:
    """Cookie first, then the JSON body.

    A body that does not parse as a refresh request counts as no token, so
    refresh answers 401 and logout still succeeds.
    """
    cookie_value = request.cookies.get(settings.refresh_cookie_name)
    if cookie_value:
        return cookie_value
    if body is None:
        return None
    try:
        return TokenRefreshRequest.model_validate(body).refresh_token
    except ValidationError:
        return None


def _auth_response(result: AuthResult) -> AuthResponse:
    # The refresh token only travels in the HttpOnly cookie
    return AuthResponse(
        access_token=result.access_token,
        access_expires_at=result.access_expires_at,
        user_id=result.user.id,
        subject=result.user.provider_user_id,
    )


@router.post("/auth/google", response_model=Envelope, tags=["auth"])
async def login_google(body: GoogleLoginRequest, request: Request, response: Response):
    """Exchange a Google ID token for an access token and a refresh cookie.

    Every login opens a new session family, so each device keeps its own.

    Raises:
        400: If the ID token is rejected
        429: If the client exceeded the login rate limit
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_host(request)}",
        runtime.settings.login_rate_limit_per_minute,
    )
    result = await runtime.auth.login(body.id_token)
    _apply_refresh_cookie(response, result, runtime.settings)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Any = Body(None),
):
    """Rotate the refresh token and mint a new access token.

    The refresh token is read from the cookie, or from the JSON body for
    clients without cookie storage. Every failure is a generic 401.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_host(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
    )
    presented = _presented_refresh_token(request, body, runtime.settings)
    result = await runtime.auth.refresh(presented)
    _apply_refresh_cookie(response, result, runtime.settings)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Any = Body(None),
):
    runtime = get_runtime()
    presented = _presented_refresh_token(request, body, runtime.settings)
    await runtime.auth.logout(presented)
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    profile = await runtime.auth.profile(_bearer_token(authorization))
    return Envelope(
        status="ok",
        data=ProfileResponse(
            subject=profile.subject,
            display_name=profile.display_name,
            avatar_url=profile.avatar_url,
        ),
    )

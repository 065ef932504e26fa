"""FastAPI dependencies: service lookup, authentication and guards."""

from __future__ import annotations

import hmac
import logging

from fastapi import Depends, Header, HTTPException, Request, status

from ..config import Settings
from ..domain.account import Account
from ..domain.errors import AccountError
from ..domain.service import AccountLifecycleService
from ..security.rate_limiter import RateLimiter
from .errors import UNIFORM_CREDENTIALS, http_error

logger = logging.getLogger(__name__)


def get_service(request: Request) -> AccountLifecycleService:
    """Resolve the lifecycle service stored on the FastAPI application state."""
    service: AccountLifecycleService = request.app.state.account_service
    return service


def get_app_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def bearer_token(request: Request, authorization: str | None, cookie_name: str) -> str | None:
    """Return the token from ``Authorization: Bearer`` or, failing that, the session cookie."""
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return request.cookies.get(cookie_name) or None


def get_current_account(
    request: Request,
    authorization: str | None = Header(default=None),
    service: AccountLifecycleService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
) -> Account:
    token = bearer_token(request, authorization, settings.cookie_name)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": UNIFORM_CREDENTIALS[0], "message": "not authenticated"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return service.authenticate(token)
    except AccountError as exc:
        logger.debug("rejected bearer token: %s", exc.code)
        raise http_error(exc) from exc


def require_admin(
    x_admin_key: str | None = Header(default=None, alias="X-Admin-Key"),
    settings: Settings = Depends(get_app_settings),
) -> str:
    """Guard admin routes with the shared ``ADMIN_API_KEY``; disabled when unset."""
    configured = settings.admin_api_key
    if not configured or not x_admin_key or not hmac.compare_digest(configured, x_admin_key):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin key required")
    return "admin"


def enforce_rate_limit(request: Request, action: str, subject: str) -> None:
    limiter: RateLimiter = request.app.state.rate_limiter
    if not limiter.allow(action, subject):
        retry_after = getattr(limiter, "retry_after", None)
        headers = None
        if retry_after is not None:
            headers = {"Retry-After": str(max(1, int(retry_after(action, subject) + 0.999)))}
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="rate limited",
            headers=headers,
        )

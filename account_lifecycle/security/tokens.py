"""Signed bearer tokens and single-use account codes."""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import jwt

from ..config import TokenSettings
from ..domain.account import PendingCode
from ..domain.errors import BadSignature, MalformedToken, TokenExpired

Clock = Callable[[], datetime]

REQUIRED_CLAIMS = ["iss", "sub", "ver", "iat", "exp"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class IssuedToken:
    token: str
    expires_in: int


@dataclass(frozen=True, slots=True)
class TokenClaims:
    """Verified contents of a bearer token."""

    account_id: str
    status_marker: int
    status: str | None
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class IssuedCode:
    """Raw code for the recipient paired with the digest the store keeps."""

    code: str
    pending: PendingCode


class TokenService:
    """Issues JWTs for authenticated accounts and random codes for email links.

    Both facilities share the injected :class:`TokenSettings`. Codes are not
    derived from the signing key and are never persisted here.
    """

    def __init__(self, settings: TokenSettings, clock: Clock = utcnow) -> None:
        if not settings.secret:
            raise ValueError("JWT_SECRET must be configured")
        self._settings = settings
        self._clock = clock

    def issue(self, account_id: str, status_marker: int, status: str | None = None) -> IssuedToken:
        """Create a signed JWT representing an authenticated account.

        Parameters
        ----------
        account_id:
            Account identifier to embed in the token ``sub`` claim.
        status_marker:
            The account's token version at issue time; a later mismatch means
            the token predates a password or status change.
        status:
            Optional status snapshot carried for consumers that skip the store.

        Returns
        -------
        IssuedToken
            The encoded JWT and its TTL in seconds.
        """
        now = int(self._clock().timestamp())
        expires_in = self._settings.ttl_seconds
        payload: dict[str, Any] = {
            "iss": self._settings.issuer,
            "sub": account_id,
            "ver": status_marker,
            "iat": now,
            "exp": now + expires_in,
        }
        if status is not None:
            payload["status"] = status
        token = jwt.encode(payload, self._settings.secret, algorithm="HS256")
        return IssuedToken(token=token, expires_in=expires_in)

    def verify(self, token: str) -> TokenClaims:
        """Decode and verify a JWT, translating PyJWT failures into domain errors.

        Raises
        ------
        TokenExpired
            The ``exp`` claim lies in the past.
        BadSignature
            The signature does not match the configured key or the issuer differs.
        MalformedToken
            The input is not a JWT or lacks required claims.
        """
        if not token:
            raise MalformedToken("token is empty")
        try:
            payload = jwt.decode(
                token,
                self._settings.secret,
                algorithms=["HS256"],
                issuer=self._settings.issuer,
                options={"require": REQUIRED_CLAIMS, "verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidSignatureError as exc:
            raise BadSignature("token signature mismatch") from exc
        except jwt.InvalidIssuerError as exc:
            raise BadSignature("token issued by another party") from exc
        except jwt.InvalidTokenError as exc:
            raise MalformedToken("token is malformed") from exc

        try:
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
            marker = int(payload["ver"])
        except (TypeError, ValueError) as exc:
            raise MalformedToken("token claims are malformed") from exc

        # expiry checked against the injected clock rather than PyJWT's wall clock
        if self._clock() >= expires_at:
            raise TokenExpired("token has expired")

        return TokenClaims(
            account_id=str(payload["sub"]),
            status_marker=marker,
            status=payload.get("status"),
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def generate_code(self) -> str:
        """Return a URL-safe code drawn from the OS CSPRNG."""
        return secrets.token_urlsafe(self._settings.code_bytes)

    def new_code(self, ttl_seconds: int) -> IssuedCode:
        code = self.generate_code()
        expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        return IssuedCode(code=code, pending=PendingCode(hash_code(code), expires_at))

    def now(self) -> datetime:
        return self._clock()


def hash_code(code: str) -> str:
    """Return the SHA-256 hex digest stored in place of a raw code."""
    return hashlib.sha256(code.encode("utf-8")).hexdigest()

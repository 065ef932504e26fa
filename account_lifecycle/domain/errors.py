"""Error taxonomy raised by the account lifecycle components.

Each error carries a stable ``code`` used internally and in tests. The HTTP
boundary folds several of these into a single external code so responses do
not reveal whether an email address is registered.
"""

from __future__ import annotations


class AccountError(Exception):
    """Base class for all lifecycle failures."""

    code = "account_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code.replace("_", " "))


class InvalidInput(AccountError):
    code = "invalid_input"


class WeakPassword(InvalidInput):
    code = "weak_password"


class EmailTaken(AccountError):
    """Another non-deleted account already owns the email address."""

    code = "email_taken"


class AccountNotFound(AccountError):
    code = "account_not_found"


class CodeInvalid(AccountError):
    code = "code_invalid"


class CodeExpired(AccountError):
    code = "code_expired"


class AlreadyActive(AccountError):
    code = "already_active"


class InvalidCredentials(AccountError):
    code = "invalid_credentials"


class NotActivated(AccountError):
    code = "not_activated"


class AccountSuspended(AccountError):
    code = "account_suspended"


class ImageError(AccountError):
    code = "image_error"


class ImageTooLarge(ImageError):
    code = "image_too_large"


class UnsupportedImageFormat(ImageError):
    code = "unsupported_image_format"


class ImageDecodeFailure(ImageError):
    code = "image_decode_failure"


class ImageNotFound(ImageError):
    code = "image_not_found"


class NotificationError(AccountError):
    """Email could not be rendered or handed to the transport."""

    code = "notification_error"


class RenderFailure(NotificationError):
    code = "render_failure"


class TransportFailure(NotificationError):
    code = "transport_failure"


class TokenError(AccountError):
    code = "token_error"


class TokenExpired(TokenError):
    code = "token_expired"


class BadSignature(TokenError):
    code = "bad_signature"


class MalformedToken(TokenError):
    code = "malformed_token"


class TokenRevoked(TokenError):
    """Token was minted before the account's last credential or status change."""

    code = "token_revoked"


class InvalidTransition(AccountError):
    code = "invalid_transition"

"""Translation of domain errors into HTTP responses.

Internally every failure keeps its precise type. Here, anything that could
reveal whether an account exists collapses into ``invalid_credentials``.
"""

from __future__ import annotations

from fastapi import HTTPException, status

from ..domain import errors

UNIFORM_CREDENTIALS = ("invalid_credentials", "invalid email, password or token")

# most specific first; the first isinstance match wins
_MAPPING: list[tuple[type[errors.AccountError], int, str | None]] = [
    (errors.EmailTaken, status.HTTP_409_CONFLICT, None),
    (errors.AlreadyActive, status.HTTP_409_CONFLICT, None),
    (errors.InvalidTransition, status.HTTP_409_CONFLICT, None),
    (errors.CodeInvalid, status.HTTP_400_BAD_REQUEST, "invalid_code"),
    (errors.CodeExpired, status.HTTP_400_BAD_REQUEST, None),
    (errors.NotActivated, status.HTTP_403_FORBIDDEN, None),
    (errors.AccountSuspended, status.HTTP_403_FORBIDDEN, None),
    (errors.InvalidCredentials, status.HTTP_401_UNAUTHORIZED, UNIFORM_CREDENTIALS[0]),
    (errors.AccountNotFound, status.HTTP_401_UNAUTHORIZED, UNIFORM_CREDENTIALS[0]),
    (errors.TokenError, status.HTTP_401_UNAUTHORIZED, UNIFORM_CREDENTIALS[0]),
    (errors.InvalidInput, status.HTTP_422_UNPROCESSABLE_ENTITY, None),
    (errors.ImageTooLarge, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, None),
    (errors.UnsupportedImageFormat, status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, None),
    (errors.ImageDecodeFailure, status.HTTP_422_UNPROCESSABLE_ENTITY, None),
    (errors.ImageNotFound, status.HTTP_404_NOT_FOUND, None),
    (errors.NotificationError, status.HTTP_502_BAD_GATEWAY, None),
]


def http_error(exc: errors.AccountError) -> HTTPException:
    """Build the ``HTTPException`` a route raises for a domain error."""
    for error_type, status_code, external_code in _MAPPING:
        if isinstance(exc, error_type):
            break
    else:
        status_code, external_code = status.HTTP_400_BAD_REQUEST, None

    if external_code == UNIFORM_CREDENTIALS[0]:
        detail = {"code": external_code, "message": UNIFORM_CREDENTIALS[1]}
        return HTTPException(status_code=status_code, detail=detail, headers={"WWW-Authenticate": "Bearer"})
    return HTTPException(
        status_code=status_code,
        detail={"code": external_code or exc.code, "message": str(exc)},
    )

"""Domain-level request and result contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..notifications.dispatcher import DeliveryReport
    from .account import Account


@dataclass(slots=True)
class ProfileUpdate:
    """Editable profile fields; ``None`` leaves the stored value untouched."""

    firstname: str | None = None


@dataclass(slots=True)
class Session:
    """Authenticated account together with the bearer token handed to the client."""

    account: Account
    access_token: str
    expires_in: int


@dataclass(slots=True)
class RegistrationResult:
    """Outcome of a registration: the pending account and how its email fared."""

    account: Account
    notification: DeliveryReport


@dataclass(slots=True)
class AuditEvent:
    """Audit entry written in the same transaction as the change it records."""

    event_type: str
    actor: str | None = None
    metadata: dict[str, Any] | None = None

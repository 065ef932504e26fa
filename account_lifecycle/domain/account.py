from __future__ import annotations

import hmac
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum

from .contracts import ProfileUpdate
from .errors import (
    AccountNotFound,
    AccountSuspended,
    AlreadyActive,
    CodeExpired,
    CodeInvalid,
    InvalidCredentials,
    InvalidTransition,
    NotActivated,
)


class AccountStatus(str, Enum):
    pending = "pending"
    active = "active"
    suspended = "suspended"
    deleted = "deleted"


# Pending accounts only leave that state through activation or deletion.
ALLOWED_TRANSITIONS: dict[AccountStatus, frozenset[AccountStatus]] = {
    AccountStatus.pending: frozenset({AccountStatus.deleted}),
    AccountStatus.active: frozenset({AccountStatus.suspended, AccountStatus.deleted}),
    AccountStatus.suspended: frozenset({AccountStatus.active, AccountStatus.deleted}),
    AccountStatus.deleted: frozenset(),
}


def email_key(email: str) -> str:
    """Return the case-insensitive form used for uniqueness checks."""
    return email.strip().lower()


@dataclass(frozen=True, slots=True)
class PendingCode:
    """Digest of a single-use code together with the instant it stops working."""

    code_hash: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def matches(self, code_hash: str) -> bool:
        return hmac.compare_digest(self.code_hash, code_hash)


@dataclass(slots=True)
class Account:
    """Aggregate root for a user identity and its lifecycle state.

    Transition methods never mutate in place. They validate against the current
    state and return the successor so a store can apply them inside a single
    row transaction.
    """

    account_id: str
    email: str
    password_hash: str
    status: AccountStatus
    created_at: datetime
    updated_at: datetime
    activation_code: PendingCode | None = None
    reset_code: PendingCode | None = None
    profile_image_id: str | None = None
    firstname: str | None = None
    token_version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status is AccountStatus.active

    def ensure_can_login(self) -> None:
        """Raise the status-specific error for accounts that may not sign in."""
        if self.status is AccountStatus.pending:
            raise NotActivated("account has not been activated")
        if self.status is AccountStatus.suspended:
            raise AccountSuspended("account is suspended")
        if self.status is AccountStatus.deleted:
            raise AccountNotFound("account not found")

    def activate(self, code_hash: str, now: datetime) -> Account:
        if self.status is AccountStatus.active:
            raise AlreadyActive("account is already active")
        if (
            self.status is not AccountStatus.pending
            or self.activation_code is None
            or not self.activation_code.matches(code_hash)
        ):
            raise CodeInvalid("activation code is invalid")
        if self.activation_code.is_expired(now):
            raise CodeExpired("activation code has expired")
        return replace(
            self,
            status=AccountStatus.active,
            activation_code=None,
            token_version=self.token_version + 1,
            updated_at=now,
        )

    def renew_activation(self, activation: PendingCode, now: datetime) -> Account:
        if self.status is AccountStatus.deleted:
            raise AccountNotFound("account not found")
        if self.status is not AccountStatus.pending:
            raise AlreadyActive("account is already active")
        return replace(self, activation_code=activation, updated_at=now)

    def begin_reset(self, reset: PendingCode, now: datetime) -> Account:
        self.ensure_can_login()
        return replace(self, reset_code=reset, updated_at=now)

    def complete_reset(self, code_hash: str, password_hash: str, now: datetime) -> Account:
        if (
            self.status is not AccountStatus.active
            or self.reset_code is None
            or not self.reset_code.matches(code_hash)
        ):
            raise CodeInvalid("reset code is invalid")
        if self.reset_code.is_expired(now):
            raise CodeExpired("reset code has expired")
        return replace(
            self,
            password_hash=password_hash,
            reset_code=None,
            token_version=self.token_version + 1,
            updated_at=now,
        )

    def _require_password_hash(self, verified_hash: str | None) -> None:
        # the caller checked the password against an earlier read of this row
        if verified_hash is not None and not hmac.compare_digest(verified_hash, self.password_hash):
            raise InvalidCredentials("invalid password")

    def change_password(
        self, password_hash: str, now: datetime, verified_hash: str | None = None
    ) -> Account:
        self.ensure_can_login()
        self._require_password_hash(verified_hash)
        return replace(
            self,
            password_hash=password_hash,
            reset_code=None,
            token_version=self.token_version + 1,
            updated_at=now,
        )

    def change_email(self, email: str, now: datetime, verified_hash: str | None = None) -> Account:
        self.ensure_can_login()
        self._require_password_hash(verified_hash)
        return replace(
            self,
            email=email.strip(),
            token_version=self.token_version + 1,
            updated_at=now,
        )

    def update_profile(self, update: ProfileUpdate, now: datetime) -> Account:
        if self.status is AccountStatus.deleted:
            raise AccountNotFound("account not found")
        firstname = self.firstname if update.firstname is None else update.firstname.strip()
        return replace(self, firstname=firstname, updated_at=now)

    def attach_image(self, image_id: str, now: datetime) -> Account:
        self.ensure_can_login()
        return replace(self, profile_image_id=image_id, updated_at=now)

    def with_status(self, status: AccountStatus, now: datetime) -> Account:
        if status is self.status:
            return self
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"cannot move account from {self.status.value} to {status.value}"
            )
        changed = replace(
            self,
            status=status,
            token_version=self.token_version + 1,
            updated_at=now,
        )
        if status is AccountStatus.deleted:
            changed = replace(
                changed,
                activation_code=None,
                reset_code=None,
                profile_image_id=None,
            )
        return changed

"""Account lifecycle orchestration: registration through deletion."""

from __future__ import annotations

import logging

from .account import Account, AccountStatus
from .contracts import AuditEvent, ProfileUpdate, RegistrationResult, Session
from .errors import (
    AccountNotFound,
    CodeInvalid,
    ImageNotFound,
    InvalidCredentials,
    InvalidInput,
    NotificationError,
    TokenRevoked,
    WeakPassword,
)
from .image import Image
from ..config import LifecyclePolicy
from ..images.pipeline import ImageIngestionPipeline
from ..notifications.dispatcher import DeliveryReport, DeliveryStatus, NotificationDispatcher
from ..repository import AccountRepository
from ..security.passwords import PasswordHasher
from ..security.tokens import IssuedCode, TokenService, hash_code

logger = logging.getLogger(__name__)

ACTIVATION_TEMPLATE = "activation"
RESET_TEMPLATE = "password-reset"


class AccountLifecycleService:
    """State machine tying the store, hasher, tokens, mail and images together.

    Store writes are the commit point of every transition and carry its audit
    event into the same transaction. Email is sent only after the write
    succeeded and its failure is reported, never raised.
    """

    def __init__(
        self,
        repository: AccountRepository,
        hasher: PasswordHasher,
        tokens: TokenService,
        dispatcher: NotificationDispatcher,
        images: ImageIngestionPipeline,
        policy: LifecyclePolicy,
    ) -> None:
        """Store dependencies used to orchestrate every lifecycle transition."""
        self._repository = repository
        self._hasher = hasher
        self._tokens = tokens
        self._dispatcher = dispatcher
        self._images = images
        self._policy = policy

    def register(self, email: str, password: str) -> RegistrationResult:
        """Create a pending account and mail its activation code.

        Raises ``EmailTaken`` when a live account already uses the address. A
        failed activation email leaves the account pending and is visible in
        the returned report so the user can ask for a resend.
        """
        self._check_password(password)
        password_hash = self._hasher.hash(password)
        issued = self._tokens.new_code(self._policy.activation_ttl_seconds)
        account = self._repository.create_pending(
            email,
            password_hash,
            issued.pending,
            self._tokens.now(),
            audit=AuditEvent("account.registered"),
        )
        logger.info("registered pending account %s", account.account_id)
        report = self._notify(ACTIVATION_TEMPLATE, account, issued)
        return RegistrationResult(account=account, notification=report)

    def resend_activation(self, email: str) -> DeliveryReport | None:
        """Issue a fresh activation code; silent for unknown or already-activated emails."""
        account = self._repository.find_by_email(email)
        if account is None or account.status is not AccountStatus.pending:
            logger.info("activation resend ignored for non-pending address")
            return None
        issued = self._tokens.new_code(self._policy.activation_ttl_seconds)
        account = self._repository.renew_activation(
            account.account_id,
            issued.pending,
            self._tokens.now(),
            audit=AuditEvent("account.activation_renewed"),
        )
        return self._notify(ACTIVATION_TEMPLATE, account, issued)

    def activate(self, code: str) -> Session:
        if not code:
            raise CodeInvalid("activation code is invalid")
        account = self._repository.activate(
            hash_code(code), self._tokens.now(), audit=AuditEvent("account.activated")
        )
        logger.info("activated account %s", account.account_id)
        return self._session(account)

    def login(self, email: str, password: str) -> Session:
        """Verify credentials and issue a bearer token.

        Unknown emails and wrong passwords raise the same ``InvalidCredentials``.
        Status errors (``NotActivated``, ``AccountSuspended``) are raised only
        after the password matched.
        """
        if not email or not password:
            raise InvalidCredentials("invalid email or password")
        account = self._repository.find_by_email(email)
        if account is None:
            self._hasher.dummy_verify(password)
            raise InvalidCredentials("invalid email or password")
        if not self._hasher.verify(password, account.password_hash):
            raise InvalidCredentials("invalid email or password")
        try:
            account.ensure_can_login()
        except AccountNotFound as exc:
            raise InvalidCredentials("invalid email or password") from exc
        self._repository.write_audit_event(account_id=account.account_id, event_type="account.login")
        return self._session(account)

    def request_reset(self, email: str) -> DeliveryReport | None:
        """Start a password reset; returns ``None`` when nothing was sent.

        Callers must answer identically whether or not a report came back.
        """
        account = self._repository.find_by_email(email)
        if account is None or not account.is_active:
            logger.info("password reset ignored for unknown or inactive address")
            return None
        issued = self._tokens.new_code(self._policy.reset_ttl_seconds)
        account = self._repository.begin_reset(
            account.account_id,
            issued.pending,
            self._tokens.now(),
            audit=AuditEvent("password.reset_requested"),
        )
        return self._notify(RESET_TEMPLATE, account, issued)

    def complete_reset(self, code: str, new_password: str) -> Session:
        if not code:
            raise CodeInvalid("reset code is invalid")
        self._check_password(new_password)
        password_hash = self._hasher.hash(new_password)
        account = self._repository.complete_reset(
            hash_code(code), password_hash, self._tokens.now(), audit=AuditEvent("password.reset")
        )
        logger.info("password reset completed for account %s", account.account_id)
        return self._session(account)

    def change_password(self, account_id: str, old_password: str, new_password: str) -> Session:
        """Replace the password after checking the current one.

        The hash the old password was verified against is handed to the store,
        which refuses the write with ``InvalidCredentials`` if the password was
        changed or reset in between.
        """
        account = self._require_account(account_id)
        if not old_password or not self._hasher.verify(old_password, account.password_hash):
            raise InvalidCredentials("invalid password")
        self._check_password(new_password)
        account = self._repository.change_password(
            account_id,
            self._hasher.hash(new_password),
            self._tokens.now(),
            verified_hash=account.password_hash,
            audit=AuditEvent("password.changed"),
        )
        return self._session(account)

    def change_email(self, account_id: str, new_email: str, password: str) -> Session:
        account = self._require_account(account_id)
        if not password or not self._hasher.verify(password, account.password_hash):
            raise InvalidCredentials("invalid password")
        account = self._repository.change_email(
            account_id,
            new_email,
            self._tokens.now(),
            verified_hash=account.password_hash,
            audit=AuditEvent("email.changed"),
        )
        return self._session(account)

    def update_profile(self, account_id: str, update: ProfileUpdate) -> Account:
        return self._repository.update_profile(
            account_id, update, self._tokens.now(), audit=AuditEvent("account.profile_updated")
        )

    def upload_image(self, account_id: str, raw_bytes: bytes, content_type: str | None) -> Image:
        """Ingest an upload and make it the account's profile picture.

        Decoding runs before the account row is touched; if attaching fails
        the freshly stored image is removed again.
        """
        image = self._images.ingest(account_id, raw_bytes, content_type)
        audit = AuditEvent(
            "image.attached",
            metadata={"image_id": image.image_id, "content_type": image.original_content_type},
        )
        try:
            self._repository.attach_image(account_id, image.image_id, self._tokens.now(), audit=audit)
        except Exception:
            self._repository.delete_image(image.image_id)
            raise
        return image

    def get_image(self, account_id: str) -> Image:
        account = self._repository.get_account(account_id)
        if account is None or account.profile_image_id is None:
            raise ImageNotFound("no profile image")
        image = self._repository.get_image(account.profile_image_id)
        if image is None:
            raise ImageNotFound("no profile image")
        return image

    def get_account(self, account_id: str) -> Account:
        return self._require_account(account_id)

    def authenticate(self, token: str) -> Account:
        """Resolve a bearer token to a live, active account.

        Raises a ``TokenError`` for bad tokens, ``AccountNotFound`` for deleted
        or unknown accounts, the status error for inactive ones and
        ``TokenRevoked`` when the token predates a credential or status change.
        """
        claims = self._tokens.verify(token)
        account = self._repository.get_account(claims.account_id)
        if account is None:
            raise AccountNotFound("account not found")
        account.ensure_can_login()
        if claims.status_marker != account.token_version:
            raise TokenRevoked("token no longer valid for this account")
        return account

    def suspend(self, account_id: str, actor: str | None = None) -> Account:
        return self._set_status(account_id, AccountStatus.suspended, "account.suspended", actor)

    def reinstate(self, account_id: str, actor: str | None = None) -> Account:
        return self._set_status(account_id, AccountStatus.active, "account.reinstated", actor)

    def delete(self, account_id: str, actor: str | None = None) -> Account:
        account = self._repository.soft_delete(
            account_id, self._tokens.now(), audit=AuditEvent("account.deleted", actor=actor)
        )
        logger.info("soft-deleted account %s", account_id)
        return account

    def _set_status(
        self, account_id: str, status: AccountStatus, event_type: str, actor: str | None
    ) -> Account:
        account = self._repository.set_status(
            account_id, status, self._tokens.now(), audit=AuditEvent(event_type, actor=actor)
        )
        logger.info("account %s is now %s", account_id, status.value)
        return account

    def _require_account(self, account_id: str) -> Account:
        account = self._repository.get_account(account_id)
        if account is None or account.status is AccountStatus.deleted:
            raise AccountNotFound("account not found")
        return account

    def _check_password(self, password: str) -> None:
        if not password:
            raise InvalidInput("password must not be empty")
        if len(password) < self._policy.min_password_length:
            raise WeakPassword(
                f"password must be at least {self._policy.min_password_length} characters"
            )

    def _session(self, account: Account) -> Session:
        issued = self._tokens.issue(account.account_id, account.token_version, account.status.value)
        return Session(account=account, access_token=issued.token, expires_in=issued.expires_in)

    def _notify(self, template: str, account: Account, issued: IssuedCode) -> DeliveryReport:
        context = {
            "email": account.email,
            "firstname": account.firstname,
            "code": issued.code,
            "expires_at": issued.pending.expires_at.strftime("%Y-%m-%d %H:%M UTC"),
        }
        try:
            return self._dispatcher.send(template, context, account.email)
        except NotificationError as exc:
            logger.error(
                "%s email for account %s not delivered (%s): %s",
                template,
                account.account_id,
                exc.code,
                exc,
            )
            return DeliveryReport(template, account.email, DeliveryStatus.failed, exc.code)


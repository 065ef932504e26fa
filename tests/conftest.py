from __future__ import annotations

import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from account_lifecycle.api import routes
from account_lifecycle.config import Settings
from account_lifecycle.domain.account import Account, AccountStatus, PendingCode, email_key
from account_lifecycle.domain.contracts import AuditEvent, ProfileUpdate
from account_lifecycle.domain.errors import AccountNotFound, CodeInvalid, EmailTaken, TransportFailure
from account_lifecycle.domain.image import Image
from account_lifecycle.domain.service import AccountLifecycleService
from account_lifecycle.images.pipeline import ImageIngestionPipeline
from account_lifecycle.notifications.dispatcher import NotificationDispatcher
from account_lifecycle.notifications.templates import JinjaTemplateRenderer
from account_lifecycle.notifications.transports import OutgoingMessage
from account_lifecycle.security.passwords import PasswordHasher
from account_lifecycle.security.rate_limiter import SlidingWindowRateLimiter
from account_lifecycle.security.tokens import TokenService

CODE_PATTERN = re.compile(r"code=([A-Za-z0-9_\-]+)")


class FakeClock:
    """Mutable clock shared by the token service and the image pipeline."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> None:
        self.current += timedelta(**delta)

    def set(self, value: datetime) -> None:
        self.current = value


@dataclass
class FakeAuditLogRecord:
    account_id: str | None
    event_type: str
    actor: str | None
    metadata: dict


class FakeRepository:
    """In-memory repository mimicking the Postgres-backed behaviours.

    A single lock stands in for the row locks and unique indexes; the domain
    transition methods on ``Account`` do the actual work, as they do in
    ``AccountRepository``. An audit event passed with a mutation is recorded
    before the change is stored, and ``fail_audit`` makes that write raise so
    the change is never stored, as a rolled back transaction would leave it.
    """

    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._images: dict[str, Image] = {}
        self._lock = threading.Lock()
        self.audit_log: list[FakeAuditLogRecord] = []
        self.fail_audit = False

    def _live_owner(self, email: str) -> Account | None:
        key = email_key(email)
        for account in self._accounts.values():
            if account.status is not AccountStatus.deleted and email_key(account.email) == key:
                return account
        return None

    def _record(self, account_id: str | None, audit: AuditEvent | None) -> None:
        if audit is None:
            return
        if self.fail_audit:
            raise RuntimeError("audit log unavailable")
        self.audit_log.append(
            FakeAuditLogRecord(account_id, audit.event_type, audit.actor or account_id, audit.metadata or {})
        )

    def create_pending(
        self, email: str, password_hash: str, activation: PendingCode, now: datetime, *, audit=None
    ) -> Account:
        with self._lock:
            if self._live_owner(email) is not None:
                raise EmailTaken("email address is already registered")
            account = Account(
                account_id=str(uuid.uuid4()),
                email=email.strip(),
                password_hash=password_hash,
                status=AccountStatus.pending,
                created_at=now,
                updated_at=now,
                activation_code=activation,
            )
            self._record(account.account_id, audit)
            self._accounts[account.account_id] = account
            return account

    def find_by_email(self, email: str) -> Account | None:
        with self._lock:
            return self._live_owner(email)

    def get_account(self, account_id: str) -> Account | None:
        return self._accounts.get(account_id)

    def activate(self, code_hash: str, now: datetime, account_id: str | None = None, *, audit=None) -> Account:
        def match(account: Account) -> bool:
            if account_id is not None:
                return account.account_id == account_id
            return account.activation_code is not None and account.activation_code.code_hash == code_hash

        return self._mutate_where(
            match, lambda a: a.activate(code_hash, now), CodeInvalid("activation code is invalid"), audit
        )

    def renew_activation(self, account_id: str, activation: PendingCode, now: datetime, *, audit=None) -> Account:
        return self._mutate(account_id, lambda a: a.renew_activation(activation, now), audit)

    def begin_reset(self, account_id: str, reset: PendingCode, now: datetime, *, audit=None) -> Account:
        return self._mutate(account_id, lambda a: a.begin_reset(reset, now), audit)

    def complete_reset(self, code_hash: str, password_hash: str, now: datetime, *, audit=None) -> Account:
        return self._mutate_where(
            lambda a: a.reset_code is not None and a.reset_code.code_hash == code_hash,
            lambda a: a.complete_reset(code_hash, password_hash, now),
            CodeInvalid("reset code is invalid"),
            audit,
        )

    def update_profile(self, account_id: str, update: ProfileUpdate, now: datetime, *, audit=None) -> Account:
        return self._mutate(account_id, lambda a: a.update_profile(update, now), audit)

    def change_password(
        self, account_id: str, password_hash: str, now: datetime, *, verified_hash=None, audit=None
    ) -> Account:
        return self._mutate(account_id, lambda a: a.change_password(password_hash, now, verified_hash), audit)

    def change_email(
        self, account_id: str, email: str, now: datetime, *, verified_hash=None, audit=None
    ) -> Account:
        def change(account: Account) -> Account:
            owner = self._live_owner(email)
            if owner is not None and owner.account_id != account_id:
                raise EmailTaken("email address is already registered")
            return account.change_email(email, now, verified_hash)

        return self._mutate(account_id, change, audit)

    def set_status(self, account_id: str, status: AccountStatus, now: datetime, *, audit=None) -> Account:
        return self._mutate(account_id, lambda a: a.with_status(status, now), audit)

    def soft_delete(self, account_id: str, now: datetime, *, audit=None) -> Account:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                raise AccountNotFound("account not found")
            deleted = account.with_status(AccountStatus.deleted, now)
            self._record(account_id, audit)
            self._accounts[account_id] = deleted
            for image_id in [i for i, img in self._images.items() if img.account_id == account_id]:
                del self._images[image_id]
            return deleted

    def save_image(self, image: Image) -> Image:
        with self._lock:
            self._images[image.image_id] = image
        return image

    def get_image(self, image_id: str) -> Image | None:
        return self._images.get(image_id)

    def delete_image(self, image_id: str) -> None:
        with self._lock:
            self._images.pop(image_id, None)

    def attach_image(self, account_id: str, image_id: str, now: datetime, *, audit=None) -> Account:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                raise AccountNotFound("account not found")
            previous = account.profile_image_id
            updated = account.attach_image(image_id, now)
            self._record(account_id, audit)
            self._accounts[account_id] = updated
            if previous and previous != image_id:
                self._images.pop(previous, None)
            return updated

    def write_audit_event(self, *, account_id, event_type, actor=None, metadata=None) -> None:
        self._record(account_id, AuditEvent(event_type, actor=actor, metadata=metadata))

    def image_count(self) -> int:
        return len(self._images)

    def events(self) -> list[str]:
        return [record.event_type for record in self.audit_log]

    def _mutate(
        self, account_id: str, change: Callable[[Account], Account], audit: AuditEvent | None = None
    ) -> Account:
        return self._mutate_where(
            lambda a: a.account_id == account_id, change, AccountNotFound("account not found"), audit
        )

    def _mutate_where(
        self,
        match: Callable[[Account], bool],
        change: Callable[[Account], Account],
        missing: Exception,
        audit: AuditEvent | None = None,
    ) -> Account:
        with self._lock:
            account = next((a for a in self._accounts.values() if match(a)), None)
            if account is None:
                raise missing
            updated = change(account)
            self._record(updated.account_id, audit)
            self._accounts[updated.account_id] = updated
            return updated


@dataclass
class FakeTransport:
    """Records delivered messages; can be told to fail or to block."""

    sent: list[OutgoingMessage] = field(default_factory=list)
    fail: bool = False
    release: threading.Event | None = None

    def deliver(self, message: OutgoingMessage) -> None:
        if self.release is not None:
            self.release.wait(timeout=5)
        if self.fail:
            raise TransportFailure("smtp unavailable")
        self.sent.append(message)

    def last_code(self, recipient: str | None = None) -> str:
        for message in reversed(self.sent):
            if recipient is None or message.recipient == recipient:
                match = CODE_PATTERN.search(message.html)
                assert match, "no code in message"
                return match.group(1)
        raise AssertionError(f"no message sent to {recipient}")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        jwt_secret="test-secret",
        jwt_issuer="account-lifecycle-test",
        jwt_ttl_seconds=900,
        bcrypt_rounds=4,
        smtp_host=None,
        smtp_from="no-reply@example.com",
        mail_timeout_seconds=1.0,
        mail_workers=2,
        app_url="https://app.example.com/",
        image_max_bytes=64 * 1024,
        image_thumbnail_size=100,
        image_thumbnail_format="JPEG",
        admin_api_key="admin-secret",
        rate_limit_requests=100,
        rate_limit_window_seconds=60,
        rate_limit_backend="memory",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def hasher(settings: Settings) -> PasswordHasher:
    return PasswordHasher(rounds=settings.bcrypt_rounds)


@pytest.fixture
def tokens(settings: Settings, clock: FakeClock) -> TokenService:
    return TokenService(settings.token_settings(), clock=clock)


@pytest.fixture
def dispatcher(settings: Settings, transport: FakeTransport):
    dispatcher = NotificationDispatcher(JinjaTemplateRenderer(), transport, settings.mail_settings())
    yield dispatcher
    if transport.release is not None:
        transport.release.set()
    dispatcher.close()


@pytest.fixture
def service(settings, repository, hasher, tokens, dispatcher, clock) -> AccountLifecycleService:
    return AccountLifecycleService(
        repository=repository,
        hasher=hasher,
        tokens=tokens,
        dispatcher=dispatcher,
        images=ImageIngestionPipeline(settings.image_settings(), repository, clock=clock),
        policy=settings.lifecycle_policy(),
    )


@pytest.fixture
def active_account(service: AccountLifecycleService, transport: FakeTransport):
    """Register and activate ``user@example.com`` with password ``correct horse``."""
    service.register("user@example.com", "correct horse")
    session = service.activate(transport.last_code("user@example.com"))
    return session.account


@pytest.fixture
def app(settings: Settings, service: AccountLifecycleService) -> FastAPI:
    app = FastAPI()
    app.include_router(routes.router)
    app.state.settings = settings
    app.state.account_service = service
    app.state.rate_limiter = SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    return app


@pytest.fixture
def api_client(app: FastAPI):
    """Provide a FastAPI test client with isolated state."""
    with TestClient(app) as client:
        yield client

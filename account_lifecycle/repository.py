"""Postgres persistence for accounts, profile images and the audit trail."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable

from psycopg import Cursor
from psycopg.errors import ForeignKeyViolation, UniqueViolation
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, AccountStatus, PendingCode
from .domain.contracts import AuditEvent, ProfileUpdate
from .domain.errors import AccountNotFound, CodeInvalid, EmailTaken
from .domain.image import Image

ACCOUNT_COLUMNS = """
    account_id, email, password_hash, status,
    activation_code_hash, activation_expires_at,
    reset_code_hash, reset_expires_at,
    profile_image_id, firstname, token_version,
    created_at, updated_at
"""

IMAGE_COLUMNS = """
    image_id, account_id, original_bytes, original_content_type,
    thumbnail_bytes, thumbnail_content_type, width, height, created_at
"""


class AccountRepository:
    """Postgres-backed account store.

    Every mutation locks the account row with ``SELECT ... FOR UPDATE``, runs
    the domain transition against it and writes the result in the same
    transaction, so concurrent requests for one account are serialised. An
    optional ``audit`` event is inserted in that transaction too, so a change
    and its audit row commit or roll back together.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def create_pending(
        self,
        email: str,
        password_hash: str,
        activation: PendingCode,
        now: datetime,
        *,
        audit: AuditEvent | None = None,
    ) -> Account:
        """Insert a pending account; the partial unique index on ``lower(email)`` arbitrates races."""
        account = Account(
            account_id=str(uuid.uuid4()),
            email=email.strip(),
            password_hash=password_hash,
            status=AccountStatus.pending,
            created_at=now,
            updated_at=now,
            activation_code=activation,
        )
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                try:
                    cur.execute(
                        f"""
                        INSERT INTO accounts ({ACCOUNT_COLUMNS})
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        self._row_values(account),
                    )
                except UniqueViolation as exc:
                    raise EmailTaken("email address is already registered") from exc
                self._insert_audit(cur, account.account_id, audit)
                conn.commit()
        return account

    def find_by_email(self, email: str) -> Account | None:
        """Return the non-deleted account owning ``email`` (case-insensitive) or ``None``."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT {ACCOUNT_COLUMNS}
                    FROM accounts
                    WHERE lower(email) = lower(%s) AND status <> 'deleted'
                    """,
                    (email.strip(),),
                )
                row = cur.fetchone()
        return self._map_record(row) if row else None

    def get_account(self, account_id: str) -> Account | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE account_id = %s",
                    (account_id,),
                )
                row = cur.fetchone()
        return self._map_record(row) if row else None

    def activate(
        self,
        code_hash: str,
        now: datetime,
        account_id: str | None = None,
        *,
        audit: AuditEvent | None = None,
    ) -> Account:
        """Consume an activation code and mark the account active.

        Without ``account_id`` the row is located by the code digest, so a
        consumed code simply no longer matches and yields ``CodeInvalid``.
        """
        if account_id is None:
            where, params = "activation_code_hash = %s", (code_hash,)
        else:
            where, params = "account_id = %s", (account_id,)
        return self._mutate_where(
            where,
            params,
            lambda account: account.activate(code_hash, now),
            missing=CodeInvalid("activation code is invalid"),
            audit=audit,
        )

    def renew_activation(
        self,
        account_id: str,
        activation: PendingCode,
        now: datetime,
        *,
        audit: AuditEvent | None = None,
    ) -> Account:
        return self._mutate(
            account_id, lambda account: account.renew_activation(activation, now), audit
        )

    def begin_reset(
        self,
        account_id: str,
        reset: PendingCode,
        now: datetime,
        *,
        audit: AuditEvent | None = None,
    ) -> Account:
        """Attach a fresh reset code, replacing any reset already in flight."""
        return self._mutate(account_id, lambda account: account.begin_reset(reset, now), audit)

    def complete_reset(
        self,
        code_hash: str,
        password_hash: str,
        now: datetime,
        *,
        audit: AuditEvent | None = None,
    ) -> Account:
        return self._mutate_where(
            "reset_code_hash = %s",
            (code_hash,),
            lambda account: account.complete_reset(code_hash, password_hash, now),
            missing=CodeInvalid("reset code is invalid"),
            audit=audit,
        )

    def update_profile(
        self,
        account_id: str,
        update: ProfileUpdate,
        now: datetime,
        *,
        audit: AuditEvent | None = None,
    ) -> Account:
        return self._mutate(account_id, lambda account: account.update_profile(update, now), audit)

    def change_password(
        self,
        account_id: str,
        password_hash: str,
        now: datetime,
        *,
        verified_hash: str | None = None,
        audit: AuditEvent | None = None,
    ) -> Account:
        """Replace the hash; ``verified_hash`` must still be the stored one under the row lock."""
        return self._mutate(
            account_id,
            lambda account: account.change_password(password_hash, now, verified_hash),
            audit,
        )

    def change_email(
        self,
        account_id: str,
        email: str,
        now: datetime,
        *,
        verified_hash: str | None = None,
        audit: AuditEvent | None = None,
    ) -> Account:
        try:
            return self._mutate(
                account_id,
                lambda account: account.change_email(email, now, verified_hash),
                audit,
            )
        except UniqueViolation as exc:
            raise EmailTaken("email address is already registered") from exc

    def set_status(
        self,
        account_id: str,
        status: AccountStatus,
        now: datetime,
        *,
        audit: AuditEvent | None = None,
    ) -> Account:
        return self._mutate(account_id, lambda account: account.with_status(status, now), audit)

    def soft_delete(
        self, account_id: str, now: datetime, *, audit: AuditEvent | None = None
    ) -> Account:
        """Mark the account deleted and drop its image in the same transaction."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                account = self._lock(cur, "account_id = %s", (account_id,))
                if account is None:
                    raise AccountNotFound("account not found")
                deleted = account.with_status(AccountStatus.deleted, now)
                self._write(cur, deleted)
                cur.execute("DELETE FROM account_images WHERE account_id = %s", (account_id,))
                self._insert_audit(cur, account_id, audit)
                conn.commit()
        return deleted

    def save_image(self, image: Image) -> Image:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                try:
                    cur.execute(
                        f"""
                        INSERT INTO account_images ({IMAGE_COLUMNS})
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            image.image_id,
                            image.account_id,
                            image.original_bytes,
                            image.original_content_type,
                            image.thumbnail_bytes,
                            image.thumbnail_content_type,
                            image.width,
                            image.height,
                            image.created_at,
                        ),
                    )
                except ForeignKeyViolation as exc:
                    raise AccountNotFound("account not found") from exc
                conn.commit()
        return image

    def get_image(self, image_id: str) -> Image | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {IMAGE_COLUMNS} FROM account_images WHERE image_id = %s",
                    (image_id,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return Image(
            image_id=row[0],
            account_id=row[1],
            original_bytes=bytes(row[2]),
            original_content_type=row[3],
            thumbnail_bytes=bytes(row[4]),
            thumbnail_content_type=row[5],
            width=row[6],
            height=row[7],
            created_at=row[8],
        )

    def delete_image(self, image_id: str) -> None:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM account_images WHERE image_id = %s", (image_id,))
                conn.commit()

    def attach_image(
        self,
        account_id: str,
        image_id: str,
        now: datetime,
        *,
        audit: AuditEvent | None = None,
    ) -> Account:
        """Point the account at ``image_id`` and remove the image it replaces."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                account = self._lock(cur, "account_id = %s", (account_id,))
                if account is None:
                    raise AccountNotFound("account not found")
                previous = account.profile_image_id
                updated = account.attach_image(image_id, now)
                self._write(cur, updated)
                if previous and previous != image_id:
                    cur.execute("DELETE FROM account_images WHERE image_id = %s", (previous,))
                self._insert_audit(cur, account_id, audit)
                conn.commit()
        return updated

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit entry for activity that changes no account row, such as a login."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                self._insert_audit(
                    cur, account_id, AuditEvent(event_type, actor=actor, metadata=metadata)
                )
                conn.commit()

    def _insert_audit(self, cur: Cursor, account_id: str | None, audit: AuditEvent | None) -> None:
        if audit is None:
            return
        cur.execute(
            """
            INSERT INTO account_audit_log (account_id, event_type, actor, metadata)
            VALUES (%s, %s, %s, %s)
            """,
            (account_id, audit.event_type, audit.actor or account_id, Json(audit.metadata or {})),
        )

    def _mutate(
        self,
        account_id: str,
        change: Callable[[Account], Account],
        audit: AuditEvent | None = None,
    ) -> Account:
        return self._mutate_where(
            "account_id = %s",
            (account_id,),
            change,
            missing=AccountNotFound("account not found"),
            audit=audit,
        )

    def _mutate_where(
        self,
        where: str,
        params: tuple[Any, ...],
        change: Callable[[Account], Account],
        *,
        missing: Exception,
        audit: AuditEvent | None = None,
    ) -> Account:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                account = self._lock(cur, where, params)
                if account is None:
                    raise missing
                updated = change(account)
                if updated is not account:
                    self._write(cur, updated)
                self._insert_audit(cur, updated.account_id, audit)
                conn.commit()
        return updated

    def _lock(self, cur: Cursor, where: str, params: tuple[Any, ...]) -> Account | None:
        cur.execute(f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE {where} FOR UPDATE", params)
        row = cur.fetchone()
        return self._map_record(row) if row else None

    def _write(self, cur: Cursor, account: Account) -> None:
        values = self._row_values(account)
        cur.execute(
            """
            UPDATE accounts
            SET email = %s, password_hash = %s, status = %s,
                activation_code_hash = %s, activation_expires_at = %s,
                reset_code_hash = %s, reset_expires_at = %s,
                profile_image_id = %s, firstname = %s, token_version = %s,
                updated_at = %s
            WHERE account_id = %s
            """,
            (*values[1:11], values[12], values[0]),
        )

    def _row_values(self, account: Account) -> tuple[Any, ...]:
        activation = account.activation_code
        reset = account.reset_code
        return (
            account.account_id,
            account.email,
            account.password_hash,
            account.status.value,
            activation.code_hash if activation else None,
            activation.expires_at if activation else None,
            reset.code_hash if reset else None,
            reset.expires_at if reset else None,
            account.profile_image_id,
            account.firstname,
            account.token_version,
            account.created_at,
            account.updated_at,
        )

    def _map_record(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(
            account_id=str(row[0]),
            email=row[1],
            password_hash=row[2],
            status=AccountStatus(row[3]),
            activation_code=PendingCode(row[4], row[5]) if row[4] else None,
            reset_code=PendingCode(row[6], row[7]) if row[6] else None,
            profile_image_id=str(row[8]) if row[8] else None,
            firstname=row[9],
            token_version=row[10],
            created_at=row[11],
            updated_at=row[12],
        )

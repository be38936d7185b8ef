from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from trustcore.logging import get_logger
from trustcore.storage.crypto import SecretCipher
from trustcore.storage.errors import ConstraintViolation, StorageUnavailable
from trustcore.storage.models import (
    Account,
    AccountReassignment,
    Invitation,
    InvitationStatus,
    NewAccount,
    Organization,
    Role,
    TotpCredential,
    WebhookEndpoint,
    new_id,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS organization (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        organization_id TEXT REFERENCES organization(id),
        role TEXT NOT NULL DEFAULT 'member' CHECK (role IN ('admin', 'member')),
        first_name TEXT,
        last_name TEXT,
        name TEXT,
        email_verified_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS account_email_lower_idx ON account (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS account_credential (
        account_id TEXT PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS totp_credential (
        account_id TEXT PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        secret TEXT,
        enabled BOOLEAN NOT NULL DEFAULT false,
        backup_code_hashes TEXT[] NOT NULL DEFAULT '{}',
        last_used_step BIGINT,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ,
        CHECK (NOT enabled OR secret IS NOT NULL)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invitation (
        id TEXT PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('admin', 'member')),
        organization_id TEXT NOT NULL REFERENCES organization(id),
        invited_by_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'accepted', 'cancelled')),
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ,
        accepted_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS invitation_org_email_idx ON invitation (organization_id, email)",
    """
    CREATE TABLE IF NOT EXISTS webhook_endpoint (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL REFERENCES organization(id),
        name TEXT NOT NULL,
        url TEXT NOT NULL,
        events TEXT[] NOT NULL,
        signing_secret TEXT NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT true,
        failure_count INTEGER NOT NULL DEFAULT 0,
        last_triggered_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
]


class PostgresStore:
    """Postgres-backed credential store.

    Conditional writes are single ``UPDATE ... WHERE`` statements guarded on
    ``version`` or ``status``; invitation acceptance locks the invitation row
    with ``SELECT ... FOR UPDATE`` and applies the account change in the same
    transaction.
    """

    def __init__(
        self, dsn: str, *, encryption_key: str, timeout_seconds: float = 5.0
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.timeout_seconds = timeout_seconds
        self._cipher = SecretCipher(encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
            timeout=timeout_seconds,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.error("storage_unavailable", error=str(exc))
            raise StorageUnavailable("credential store unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # row mapping
    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            organization_id=row.get("organization_id"),
            role=Role(row.get("role", "member")),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            name=row.get("name"),
            email_verified_at=row.get("email_verified_at"),
            created_at=row["created_at"],
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _row_to_invitation(row: Dict[str, Any]) -> Invitation:
        return Invitation(
            id=str(row["id"]),
            token=row["token"],
            email=row["email"],
            role=Role(row["role"]),
            organization_id=row["organization_id"],
            invited_by_id=row["invited_by_id"],
            expires_at=row["expires_at"],
            status=InvitationStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
            accepted_at=row.get("accepted_at"),
        )

    def _row_to_totp(self, row: Dict[str, Any]) -> TotpCredential:
        return TotpCredential(
            account_id=str(row["account_id"]),
            secret=self._cipher.decrypt(row.get("secret")),
            enabled=bool(row.get("enabled", False)),
            backup_code_hashes=list(row.get("backup_code_hashes") or []),
            last_used_step=row.get("last_used_step"),
            version=int(row["version"]),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
        )

    def _row_to_webhook(self, row: Dict[str, Any]) -> WebhookEndpoint:
        return WebhookEndpoint(
            id=str(row["id"]),
            organization_id=row["organization_id"],
            name=row["name"],
            url=row["url"],
            events=list(row.get("events") or []),
            signing_secret=self._cipher.decrypt(row["signing_secret"]),
            enabled=bool(row.get("enabled", True)),
            failure_count=int(row.get("failure_count", 0)),
            last_triggered_at=row.get("last_triggered_at"),
            created_at=row["created_at"],
        )

    # organizations / accounts
    def create_organization(self, name: str) -> Organization:
        org_id = new_id()
        with self._connect() as conn:
            row = conn.execute(
                "INSERT INTO organization (id, name) VALUES (%s, %s) RETURNING *",
                (org_id, name),
            ).fetchone()
        return Organization(id=str(row["id"]), name=row["name"], created_at=row["created_at"])

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE id = %s", (organization_id,)
            ).fetchone()
        if not row:
            return None
        return Organization(id=str(row["id"]), name=row["name"], created_at=row["created_at"])

    def _insert_account(
        self,
        conn: psycopg.Connection,
        email: str,
        *,
        organization_id: Optional[str],
        role: Role,
        first_name: Optional[str],
        last_name: Optional[str],
        email_verified_at: Optional[datetime],
    ) -> Account:
        name = " ".join(p for p in (first_name, last_name) if p) or None
        row = conn.execute(
            """
            INSERT INTO account (id, email, organization_id, role, first_name, last_name, name, email_verified_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                new_id(),
                email.strip().lower(),
                organization_id,
                role.value,
                first_name,
                last_name,
                name,
                email_verified_at,
            ),
        ).fetchone()
        return self._row_to_account(row)

    def create_account(
        self,
        email: str,
        *,
        organization_id: Optional[str] = None,
        role: Role = Role.MEMBER,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email_verified_at: Optional[datetime] = None,
    ) -> Account:
        try:
            with self._connect() as conn:
                return self._insert_account(
                    conn,
                    email,
                    organization_id=organization_id,
                    role=role,
                    first_name=first_name,
                    last_name=last_name,
                    email_verified_at=email_verified_at,
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE lower(email) = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def soft_delete_account(self, account_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE account SET deleted_at = %s WHERE id = %s", (now, account_id)
            )
            return cur.rowcount > 0

    def delete_account(self, account_id: str) -> bool:
        # totp_credential and account_credential rows cascade
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
            return cur.rowcount > 0

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash, password_algo = EXCLUDED.password_algo
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            )

    def get_password_record(self, account_id: str) -> Optional[Tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account_credential WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # second factor
    def get_totp_credential(self, account_id: str) -> Optional[TotpCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM totp_credential WHERE account_id = %s", (account_id,)
            ).fetchone()
        return self._row_to_totp(row) if row else None

    def save_totp_credential(
        self, credential: TotpCredential, *, expected_version: Optional[int]
    ) -> Optional[TotpCredential]:
        encrypted = self._cipher.encrypt(credential.secret)
        try:
            with self._connect() as conn:
                if expected_version is None:
                    row = conn.execute(
                        """
                        INSERT INTO totp_credential
                            (account_id, secret, enabled, backup_code_hashes, last_used_step, version, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s, 1, %s, %s)
                        ON CONFLICT (account_id) DO NOTHING
                        RETURNING version
                        """,
                        (
                            credential.account_id,
                            encrypted,
                            credential.enabled,
                            list(credential.backup_code_hashes),
                            credential.last_used_step,
                            credential.created_at,
                            credential.updated_at,
                        ),
                    ).fetchone()
                else:
                    row = conn.execute(
                        """
                        UPDATE totp_credential
                        SET secret = %s, enabled = %s, backup_code_hashes = %s,
                            last_used_step = %s, updated_at = %s, version = version + 1
                        WHERE account_id = %s AND version = %s
                        RETURNING version
                        """,
                        (
                            encrypted,
                            credential.enabled,
                            list(credential.backup_code_hashes),
                            credential.last_used_step,
                            credential.updated_at,
                            credential.account_id,
                            expected_version,
                        ),
                    ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for totp", {"account_id": credential.account_id}
            )
        if not row:
            return None
        return TotpCredential(
            account_id=credential.account_id,
            secret=credential.secret,
            enabled=credential.enabled,
            backup_code_hashes=list(credential.backup_code_hashes),
            last_used_step=credential.last_used_step,
            version=int(row["version"]),
            created_at=credential.created_at,
            updated_at=credential.updated_at,
        )

    def delete_totp_credential(
        self, account_id: str, *, expected_version: Optional[int] = None
    ) -> bool:
        with self._connect() as conn:
            if expected_version is None:
                cur = conn.execute(
                    "DELETE FROM totp_credential WHERE account_id = %s", (account_id,)
                )
            else:
                cur = conn.execute(
                    "DELETE FROM totp_credential WHERE account_id = %s AND version = %s",
                    (account_id, expected_version),
                )
            return cur.rowcount > 0

    # invitations
    def create_invitation(self, invitation: Invitation) -> Invitation:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO invitation
                        (id, token, email, role, organization_id, invited_by_id, status, expires_at, created_at)
                    SELECT %s, %s, %s, %s, %s, %s, %s, %s, %s
                    WHERE NOT EXISTS (
                        SELECT 1 FROM invitation
                        WHERE organization_id = %s AND email = %s
                          AND status = 'pending' AND expires_at > %s
                    )
                    RETURNING *
                    """,
                    (
                        invitation.id,
                        invitation.token,
                        invitation.email,
                        invitation.role.value,
                        invitation.organization_id,
                        invitation.invited_by_id,
                        invitation.status.value,
                        invitation.expires_at,
                        invitation.created_at,
                        invitation.organization_id,
                        invitation.email,
                        invitation.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("invitation token collision", {"field": "token"})
        if not row:
            raise ConstraintViolation("pending invitation exists", {"field": "email"})
        return self._row_to_invitation(row)

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM invitation WHERE id = %s", (invitation_id,)
            ).fetchone()
        return self._row_to_invitation(row) if row else None

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM invitation WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_invitation(row) if row else None

    def find_pending_invitation(
        self, organization_id: str, email: str, now: datetime
    ) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM invitation
                WHERE organization_id = %s AND email = %s
                  AND status = 'pending' AND expires_at > %s
                LIMIT 1
                """,
                (organization_id, email.strip().lower(), now),
            ).fetchone()
        return self._row_to_invitation(row) if row else None

    def list_pending_invitations(self, organization_id: str) -> List[Invitation]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM invitation
                WHERE organization_id = %s AND status = 'pending'
                ORDER BY created_at DESC
                """,
                (organization_id,),
            ).fetchall()
        return [self._row_to_invitation(r) for r in rows]

    def rotate_invitation_token(
        self, invitation_id: str, token: str, expires_at: datetime, now: datetime
    ) -> Optional[Invitation]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE invitation SET token = %s, expires_at = %s, updated_at = %s
                    WHERE id = %s AND status = 'pending'
                    RETURNING *
                    """,
                    (token, expires_at, now, invitation_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("invitation token collision", {"field": "token"})
        return self._row_to_invitation(row) if row else None

    def cancel_invitation(
        self, invitation_id: str, now: datetime
    ) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE invitation SET status = 'cancelled', updated_at = %s
                WHERE id = %s AND status = 'pending'
                RETURNING *
                """,
                (now, invitation_id),
            ).fetchone()
        return self._row_to_invitation(row) if row else None

    def accept_invitation(
        self,
        token: str,
        now: datetime,
        mutation: Union[NewAccount, AccountReassignment],
    ) -> Optional[Tuple[Invitation, Account]]:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    "SELECT * FROM invitation WHERE token = %s FOR UPDATE", (token,)
                ).fetchone()
                if not row or row["status"] != "pending" or now >= row["expires_at"]:
                    return None

                if isinstance(mutation, NewAccount):
                    account = self._insert_account(
                        conn,
                        mutation.email,
                        organization_id=mutation.organization_id,
                        role=mutation.role,
                        first_name=mutation.first_name,
                        last_name=mutation.last_name,
                        email_verified_at=mutation.email_verified_at,
                    )
                    conn.execute(
                        """
                        INSERT INTO account_credential (account_id, password_hash, password_algo)
                        VALUES (%s, %s, %s)
                        """,
                        (account.id, mutation.password_hash, mutation.password_algo),
                    )
                elif isinstance(mutation, AccountReassignment):
                    account_row = conn.execute(
                        """
                        UPDATE account SET organization_id = %s, role = %s, deleted_at = NULL
                        WHERE id = %s
                        RETURNING *
                        """,
                        (mutation.organization_id, mutation.role.value, mutation.account_id),
                    ).fetchone()
                    if not account_row:
                        raise ConstraintViolation(
                            "account not found", {"account_id": mutation.account_id}
                        )
                    account = self._row_to_account(account_row)
                else:
                    raise TypeError(
                        f"unsupported account mutation: {type(mutation).__name__}"
                    )

                accepted = conn.execute(
                    """
                    UPDATE invitation SET status = 'accepted', accepted_at = %s, updated_at = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (now, now, row["id"]),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_invitation(accepted), account

    # webhooks
    def create_webhook(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO webhook_endpoint
                    (id, organization_id, name, url, events, signing_secret, enabled, failure_count, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    endpoint.id,
                    endpoint.organization_id,
                    endpoint.name,
                    endpoint.url,
                    list(endpoint.events),
                    self._cipher.encrypt(endpoint.signing_secret),
                    endpoint.enabled,
                    endpoint.failure_count,
                    endpoint.created_at,
                ),
            ).fetchone()
        return self._row_to_webhook(row)

    def get_webhook(self, webhook_id: str) -> Optional[WebhookEndpoint]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM webhook_endpoint WHERE id = %s", (webhook_id,)
            ).fetchone()
        return self._row_to_webhook(row) if row else None

    def list_webhooks(self, organization_id: str) -> List[WebhookEndpoint]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM webhook_endpoint WHERE organization_id = %s ORDER BY created_at DESC",
                (organization_id,),
            ).fetchall()
        return [self._row_to_webhook(r) for r in rows]

    def update_webhook_secret(self, webhook_id: str, signing_secret: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE webhook_endpoint SET signing_secret = %s WHERE id = %s",
                (self._cipher.encrypt(signing_secret), webhook_id),
            )
            return cur.rowcount > 0

    def update_webhook(self, endpoint: WebhookEndpoint) -> Optional[WebhookEndpoint]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE webhook_endpoint
                SET name = %s, url = %s, events = %s, enabled = %s, failure_count = %s
                WHERE id = %s
                RETURNING *
                """,
                (
                    endpoint.name,
                    endpoint.url,
                    list(endpoint.events),
                    endpoint.enabled,
                    endpoint.failure_count,
                    endpoint.id,
                ),
            ).fetchone()
        return self._row_to_webhook(row) if row else None

    def delete_webhook(self, webhook_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM webhook_endpoint WHERE id = %s", (webhook_id,))
            return cur.rowcount > 0

    def record_webhook_failure(self, webhook_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE webhook_endpoint SET failure_count = failure_count + 1
                WHERE id = %s
                RETURNING failure_count
                """,
                (webhook_id,),
            ).fetchone()
        return int(row["failure_count"]) if row else None

    def record_webhook_success(self, webhook_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE webhook_endpoint SET failure_count = 0, last_triggered_at = %s
                WHERE id = %s
                """,
                (now, webhook_id),
            )
            return cur.rowcount > 0

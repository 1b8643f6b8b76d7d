from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from storefront_auth.logging import get_logger
from storefront_auth.storage.common import (
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
    generate_uuid,
    validate_update_fields,
)
from storefront_auth.storage.errors import ConstraintViolation, StoreUnavailable
from storefront_auth.storage.models import ROLE_USER, Account, utcnow


class PostgresStore:
    """Postgres-backed account store.

    Each method runs in its own pooled connection and transaction, so a
    single ``update_account`` call writes all of its columns atomically.
    """

    def __init__(
        self, dsn: str, fs_root: str, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = build_secret_cipher(mfa_encryption_key, str(self.fs_root))
        self._ensure_account_table()

    def _connect(self):
        return self.pool.connection()

    def _ensure_account_table(self) -> None:
        """Create the ``account`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS account (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    password_hash TEXT,
                    password_changed_at TIMESTAMPTZ,
                    role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
                    failed_login_attempts INTEGER NOT NULL DEFAULT 0,
                    lock_until TIMESTAMPTZ,
                    last_login_at TIMESTAMPTZ,
                    two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                    two_factor_secret TEXT,
                    backup_codes TEXT[] NOT NULL DEFAULT '{}',
                    google_id TEXT,
                    avatar TEXT,
                    is_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS account_role_active_idx ON account (role, is_active)"
            )

    def _account_from_row(self, row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            password_hash=row.get("password_hash"),
            password_changed_at=row.get("password_changed_at"),
            role=row.get("role", ROLE_USER),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            lock_until=row.get("lock_until"),
            last_login_at=row.get("last_login_at"),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            two_factor_secret=decrypt_secret(self._cipher, row.get("two_factor_secret")),
            backup_codes=list(row.get("backup_codes") or []),
            google_id=row.get("google_id"),
            avatar=row.get("avatar"),
            is_verified=bool(row.get("is_verified")),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # accounts
    def create_account(
        self,
        email: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        role: str = ROLE_USER,
        google_id: Optional[str] = None,
        avatar: Optional[str] = None,
        is_verified: bool = False,
        is_active: bool = True,
    ) -> Account:
        validate_update_fields({"role": role})
        account_id = generate_uuid()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, name, password_hash, role, google_id, avatar, is_verified, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        email.strip().lower(),
                        name,
                        password_hash,
                        role,
                        google_id,
                        avatar,
                        is_verified,
                        is_active,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        try:
            uuid.UUID(str(account_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_account(self, account_id: str, **fields) -> Optional[Account]:
        fields = validate_update_fields(fields)
        if "email" in fields:
            fields["email"] = fields["email"].strip().lower()
        if "two_factor_secret" in fields:
            fields["two_factor_secret"] = encrypt_secret(
                self._cipher, fields["two_factor_secret"]
            )
        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in fields
        ]
        assignments.append(sql.SQL("updated_at = now()"))
        query = sql.SQL("UPDATE account SET {} WHERE id = %s RETURNING *").format(
            sql.SQL(", ").join(assignments)
        )
        try:
            with self._connect() as conn:
                row = conn.execute(query, (*fields.values(), account_id)).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row) if row else None

    def delete_account(self, account_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
            return cur.rowcount > 0

    def _filters(
        self,
        *,
        search: Optional[str] = None,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Tuple[sql.Composable, List[Any]]:
        clauses: List[sql.Composable] = []
        params: List[Any] = []
        if search:
            clauses.append(sql.SQL("(name ILIKE %s OR email ILIKE %s)"))
            pattern = f"%{search}%"
            params.extend([pattern, pattern])
        if role is not None:
            clauses.append(sql.SQL("role = %s"))
            params.append(role)
        if is_active is not None:
            clauses.append(sql.SQL("is_active = %s"))
            params.append(is_active)
        if not clauses:
            return sql.SQL(""), params
        return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses), params

    def list_accounts(
        self,
        *,
        search: Optional[str] = None,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Account], int]:
        where, params = self._filters(search=search, role=role, is_active=is_active)
        with self._connect() as conn:
            total_row = conn.execute(
                sql.SQL("SELECT COUNT(*) AS total FROM account") + where, params
            ).fetchone()
            rows = conn.execute(
                sql.SQL("SELECT * FROM account")
                + where
                + sql.SQL(" ORDER BY created_at DESC LIMIT %s OFFSET %s"),
                [*params, limit, offset],
            ).fetchall()
        return [self._account_from_row(r) for r in rows], int(total_row["total"])

    def count_accounts(
        self, *, role: Optional[str] = None, is_active: Optional[bool] = None
    ) -> int:
        where, params = self._filters(role=role, is_active=is_active)
        with self._connect() as conn:
            row = conn.execute(
                sql.SQL("SELECT COUNT(*) AS total FROM account") + where, params
            ).fetchone()
        return int(row["total"])

    def verify_connection(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1")
        except (psycopg.OperationalError, PoolTimeout) as exc:
            raise StoreUnavailable(str(exc)) from exc

    def close(self) -> None:
        self.pool.close()

from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from accountcore.logging import get_logger
from accountcore.storage.errors import (
    AccountNotFound,
    ConstraintViolation,
    StorageFailure,
)
from accountcore.storage.memory import SORTABLE_FIELDS
from accountcore.storage.models import (
    UNIQUE_FIELDS,
    UPDATABLE_FIELDS,
    Account,
    AccountRole,
    default_preferences,
    normalize_identifier,
    utcnow,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS account (
    id UUID PRIMARY KEY,
    handle TEXT NOT NULL CONSTRAINT account_handle_key UNIQUE,
    email TEXT NOT NULL CONSTRAINT account_email_key UNIQUE,
    password_hash TEXT NOT NULL,
    full_name TEXT NOT NULL DEFAULT '',
    role TEXT NOT NULL DEFAULT 'standard'
        CHECK (role IN ('standard', 'moderator', 'admin')),
    avatar TEXT,
    cover_image TEXT,
    is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    deactivation_reason TEXT,
    deactivated_at TIMESTAMP,
    login_count INTEGER NOT NULL DEFAULT 0,
    last_login_at TIMESTAMP,
    last_activity_at TIMESTAMP,
    refresh_token TEXT,
    preferences JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
    updated_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')
)
"""

_CONSTRAINT_FIELDS = {
    "account_handle_key": "handle",
    "account_email_key": "email",
}


class PostgresStore:
    """Account store backed by a single Postgres table."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_store_error", error_type=type(exc).__name__, error=str(exc)
            )
            raise StorageFailure(str(exc)) from exc

    @staticmethod
    def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", None) if exc.diag else None
        field = _CONSTRAINT_FIELDS.get(constraint or "", "unknown")
        return ConstraintViolation(f"{field} already exists", {"field": field})

    @staticmethod
    def _require_id(account_id: str) -> str:
        # ids are UUIDs; anything else cannot match a row
        try:
            return str(uuid.UUID(str(account_id)))
        except ValueError:
            raise AccountNotFound("id", account_id) from None

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    @staticmethod
    def _adapt(name: str, value: Any) -> Any:
        if name == "preferences" and value is not None:
            return Jsonb(value)
        if name == "role" and value is not None:
            return AccountRole(value).value
        if name in UNIQUE_FIELDS and value is not None:
            return normalize_identifier(value)
        return value

    def _row_to_account(self, row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            handle=row["handle"],
            email=row["email"],
            password_hash=row["password_hash"],
            full_name=row.get("full_name") or "",
            role=AccountRole(row.get("role") or AccountRole.STANDARD.value),
            avatar=row.get("avatar"),
            cover_image=row.get("cover_image"),
            is_email_verified=bool(row.get("is_email_verified")),
            is_active=bool(row.get("is_active", True)),
            deactivation_reason=row.get("deactivation_reason"),
            deactivated_at=row.get("deactivated_at"),
            login_count=row.get("login_count") or 0,
            last_login_at=row.get("last_login_at"),
            last_activity_at=row.get("last_activity_at"),
            refresh_token=row.get("refresh_token"),
            preferences=row.get("preferences") or default_preferences(),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or row.get("created_at") or utcnow(),
        )

    def create_account(
        self,
        *,
        handle: str,
        email: str,
        password_hash: str,
        full_name: str = "",
        role: AccountRole = AccountRole.STANDARD,
        avatar: Optional[str] = None,
        cover_image: Optional[str] = None,
        is_email_verified: bool = False,
    ) -> Account:
        account_id = str(uuid.uuid4())
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO account (id, handle, email, password_hash, full_name, role,
                                     avatar, cover_image, is_email_verified, preferences)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    account_id,
                    normalize_identifier(handle),
                    normalize_identifier(email),
                    password_hash,
                    full_name,
                    AccountRole(role).value,
                    avatar,
                    cover_image,
                    is_email_verified,
                    Jsonb(default_preferences()),
                ),
            ).fetchone()
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Account:
        account_id = self._require_id(account_id)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        if not row:
            raise AccountNotFound("id", account_id)
        return self._row_to_account(row)

    def find_account(self, field: str, value: str) -> Account:
        if field not in UNIQUE_FIELDS:
            raise ValueError(f"{field} is not a unique account field")
        with self._connect() as conn:
            # field is whitelisted above
            row = conn.execute(
                f"SELECT * FROM account WHERE {field} = %s",
                (normalize_identifier(value),),
            ).fetchone()
        if not row:
            raise AccountNotFound(field, value)
        return self._row_to_account(row)

    def update_fields(self, account_id: str, **fields: Any) -> Account:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update fields: {', '.join(sorted(unknown))}")
        account_id = self._require_id(account_id)
        assignments = [f"{name} = %s" for name in fields]
        params: List[Any] = [self._adapt(name, value) for name, value in fields.items()]
        assignments.append("updated_at = %s")
        params.extend([utcnow(), account_id])
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE account SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        if not row:
            raise AccountNotFound("id", account_id)
        return self._row_to_account(row)

    def record_login(self, account_id: str, refresh_token: str, *, at: datetime) -> Account:
        account_id = self._require_id(account_id)
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET refresh_token = %s,
                    login_count = login_count + 1,
                    last_login_at = %s,
                    last_activity_at = %s,
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (refresh_token, at, at, at, account_id),
            ).fetchone()
        if not row:
            raise AccountNotFound("id", account_id)
        return self._row_to_account(row)

    def swap_refresh_token(
        self, account_id: str, expected: Optional[str], new: Optional[str], **fields: Any
    ) -> bool:
        """Replace the stored refresh token only if it still equals ``expected``."""
        account_id = self._require_id(account_id)
        assignments = ["refresh_token = %s", "updated_at = %s"]
        params: List[Any] = [new, utcnow()]
        for name, value in fields.items():
            if name not in UPDATABLE_FIELDS:
                raise ValueError(f"cannot update field: {name}")
            assignments.append(f"{name} = %s")
            params.append(self._adapt(name, value))
        params.extend([account_id, expected])
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE account SET {', '.join(assignments)}
                WHERE id = %s AND refresh_token IS NOT DISTINCT FROM %s
                RETURNING id
                """,
                params,
            ).fetchone()
            if row:
                return True
            exists = conn.execute(
                "SELECT 1 AS ok FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        if not exists:
            raise AccountNotFound("id", account_id)
        return False

    def delete_account(self, account_id: str) -> None:
        account_id = self._require_id(account_id)
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
            deleted = cur.rowcount
        if not deleted:
            raise AccountNotFound("id", account_id)

    def list_accounts(
        self,
        *,
        offset: int = 0,
        limit: int = 10,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> Tuple[List[Account], int]:
        if sort_by not in SORTABLE_FIELDS:
            raise ValueError(f"cannot sort by {sort_by}")
        direction = "DESC" if descending else "ASC"
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM account ORDER BY {sort_by} {direction} NULLS LAST, id "
                "LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
            total_row = conn.execute("SELECT count(*) AS total FROM account").fetchone()
        total = total_row["total"] if total_row else 0
        return [self._row_to_account(r) for r in rows], total

    def bulk_update(self, account_ids: Iterable[str], **fields: Any) -> int:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown or set(fields) & set(UNIQUE_FIELDS) or not fields:
            raise ValueError("bulk updates cannot touch unique or unknown fields")
        ids = list(set(account_ids))
        if not ids:
            return 0
        assignments = [f"{name} = %s" for name in fields] + ["updated_at = %s"]
        params: List[Any] = [self._adapt(name, value) for name, value in fields.items()]
        params.extend([utcnow(), ids])
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE account SET {', '.join(assignments)} WHERE id::text = ANY(%s)",
                params,
            )
            return cur.rowcount

    def bulk_delete(self, account_ids: Iterable[str]) -> int:
        ids = list(set(account_ids))
        if not ids:
            return 0
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM account WHERE id::text = ANY(%s)", (ids,))
            return cur.rowcount

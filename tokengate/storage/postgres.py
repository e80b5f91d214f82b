from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tokengate.logging import get_logger
from tokengate.storage.errors import (
    DuplicateCode,
    DuplicateUsername,
    InviteCodeConsumed,
    StoreUnavailable,
)
from tokengate.storage.models import InviteCode, Role, User


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invite_code (
        code TEXT PRIMARY KEY,
        is_used BOOLEAN NOT NULL DEFAULT false,
        created_by BIGINT REFERENCES app_user (id),
        used_by BIGINT REFERENCES app_user (id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used_at TIMESTAMPTZ
    )
    """,
)


def _row_to_user(row: Dict[str, Any]) -> User:
    return User(
        id=int(row["id"]),
        username=row["username"],
        password_hash=row["password_hash"],
        role=Role(row.get("role") or Role.USER.value),
        created_at=row.get("created_at") or datetime.now(timezone.utc),
    )


def _row_to_invite(row: Dict[str, Any]) -> InviteCode:
    return InviteCode(
        code=row["code"],
        created_by=row.get("created_by"),
        is_used=bool(row.get("is_used")),
        used_by=row.get("used_by"),
        created_at=row.get("created_at") or datetime.now(timezone.utc),
        used_at=row.get("used_at"),
    )


class PostgresStore:
    """Credential store backed by the ``app_user`` and ``invite_code`` tables."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("credential store unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create the credential tables if they are missing."""

        with self._connect() as conn, conn.transaction():
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(
        self, username: str, password_hash: str, role: Role = Role.USER
    ) -> User:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO app_user (username, password_hash, role)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (username, password_hash, Role(role).value),
                ).fetchone()
        except errors.UniqueViolation:
            raise DuplicateUsername(username)
        return _row_to_user(row)

    def find_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        if not row:
            return None
        return _row_to_user(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return _row_to_user(row)

    def list_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM app_user ORDER BY id ASC").fetchall()
        return [_row_to_user(row) for row in rows]

    # invite codes
    def create_invite_code(self, code: str, creator_user_id: int) -> InviteCode:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO invite_code (code, created_by)
                    VALUES (%s, %s)
                    RETURNING *
                    """,
                    (code, creator_user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise DuplicateCode(code)
        return _row_to_invite(row)

    def find_invite_code(self, code: str) -> Optional[InviteCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM invite_code WHERE code = %s", (code,)
            ).fetchone()
        if not row:
            return None
        return _row_to_invite(row)

    def mark_invite_code_used(self, code: str, consumer_user_id: int) -> bool:
        with self._connect() as conn, conn.transaction():
            result = conn.execute(
                """
                UPDATE invite_code
                SET is_used = true, used_by = %s, used_at = now()
                WHERE code = %s AND is_used = false
                """,
                (consumer_user_id, code),
            )
            return result.rowcount > 0

    def list_invite_codes(self) -> List[InviteCode]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM invite_code ORDER BY created_at DESC"
            ).fetchall()
        return [_row_to_invite(row) for row in rows]

    def register_with_invite(
        self, username: str, password_hash: str, code: str
    ) -> User:
        """Insert a ``user`` account and consume ``code`` in one transaction.

        Raises ``InviteCodeConsumed`` (after rolling back the insert) when the
        code was missing or already used by the time the update ran.
        """
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO app_user (username, password_hash, role)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (username, password_hash, Role.USER.value),
                ).fetchone()
                result = conn.execute(
                    """
                    UPDATE invite_code
                    SET is_used = true, used_by = %s, used_at = now()
                    WHERE code = %s AND is_used = false
                    """,
                    (row["id"], code),
                )
                if result.rowcount == 0:
                    raise InviteCodeConsumed(code)
        except errors.UniqueViolation:
            raise DuplicateUsername(username)
        return _row_to_user(row)

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from usergate.logging import get_logger
from usergate.storage.errors import ConstraintViolation
from usergate.storage.models import User

_UPDATABLE_COLUMNS = ("name", "email", "age", "role", "password_hash")


class PostgresStore:
    """Postgres-backed user store.

    Email uniqueness is enforced by a unique index, so concurrent inserts of
    the same address resolve to one row and one ``ConstraintViolation``.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` table and its unique email index if missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id UUID PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL,
                    password_hash TEXT NOT NULL,
                    age INTEGER,
                    role TEXT NOT NULL CHECK (role IN ('owner', 'admin', 'user')),
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (email)"
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        created_at = row.get("created_at") or datetime.now(timezone.utc)
        return User(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=row.get("role", "user"),
            age=row.get("age"),
            created_at=created_at,
        )

    def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        age: Optional[int] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, name, email, password_hash, age, role)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, name, email, password_hash, age, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def list_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at ASC"
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        unknown = set(fields) - set(_UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"cannot update fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        columns = [name for name in _UPDATABLE_COLUMNS if name in fields]
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in columns
        )
        query = sql.SQL(
            "UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *"
        ).format(assignments=assignments)
        params = [fields[name] for name in columns] + [user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if not row:
            return None
        return self._row_to_user(row)

    def delete_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM app_user WHERE id = %s RETURNING *", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def delete_all_users(self) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user")
            return result.rowcount

    def close(self) -> None:
        self.pool.close()

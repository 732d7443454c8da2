from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from taskdeck.logging import get_logger
from taskdeck.storage.errors import ConstraintViolation
from taskdeck.storage.models import (
    TASK_UPDATABLE_FIELDS,
    USER_UPDATABLE_FIELDS,
    Task,
    User,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT,
        password_algo TEXT,
        google_id TEXT,
        google_avatar_url TEXT,
        profile_image_url TEXT,
        auth_provider TEXT NOT NULL DEFAULT 'local'
            CHECK (auth_provider IN ('local', 'google')),
        email_verified_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_email_key UNIQUE (email),
        CONSTRAINT app_user_google_id_key UNIQUE (google_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        title VARCHAR(255) NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'in_progress', 'done')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS task_user_created_idx ON task (user_id, created_at DESC)",
)


def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    if "google_id" in constraint:
        return ConstraintViolation("google account already linked", {"field": "google_id"})
    return ConstraintViolation("email already exists", {"field": "email"})


class PostgresStore:
    """Postgres-backed store for users, credentials and tasks."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` and ``task`` tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            google_id=row.get("google_id"),
            google_avatar_url=row.get("google_avatar_url"),
            profile_image_url=row.get("profile_image_url"),
            auth_provider=row.get("auth_provider", "local"),
            email_verified_at=row.get("email_verified_at"),
            created_at=row.get("created_at", utcnow()),
            updated_at=row.get("updated_at", utcnow()),
        )

    @staticmethod
    def _row_to_task(row: dict) -> Task:
        return Task(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row["title"],
            description=row.get("description"),
            status=row.get("status", "pending"),
            created_at=row.get("created_at", utcnow()),
            updated_at=row.get("updated_at", utcnow()),
        )

    # users
    def create_user(
        self,
        name: str,
        email: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        google_id: Optional[str] = None,
        google_avatar_url: Optional[str] = None,
        auth_provider: str = "local",
        email_verified_at: Optional[datetime] = None,
    ) -> User:
        user = User.new(
            name,
            email,
            google_id=google_id,
            google_avatar_url=google_avatar_url,
            auth_provider=auth_provider,
            email_verified_at=email_verified_at,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (
                        id, name, email, password_hash, password_algo, google_id,
                        google_avatar_url, auth_provider, email_verified_at,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        name,
                        email,
                        password_hash,
                        password_algo,
                        google_id,
                        google_avatar_url,
                        auth_provider,
                        email_verified_at,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE google_id = %s", (google_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - USER_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        # column names come from the allow-list above
        assignments = ", ".join(f"{name} = %s" for name in fields)
        params = [*fields.values(), utcnow(), user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = %s WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return self._row_to_user(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s, password_algo = %s, updated_at = now()
                WHERE id = %s
                """,
                (password_hash, password_algo, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM app_user WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not row or not row["password_hash"]:
            return None
        return str(row["password_hash"]), str(row["password_algo"] or "")

    # tasks
    def create_task(
        self,
        user_id: str,
        title: str,
        description: Optional[str] = None,
        status: str = "pending",
    ) -> Task:
        task = Task.new(user_id, title, description, status)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO task (id, user_id, title, description, status, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    task.id,
                    user_id,
                    title,
                    description,
                    status,
                    task.created_at,
                    task.updated_at,
                ),
            )
        return task

    def list_tasks(self, user_id: str) -> List[Task]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM task WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def get_task(self, task_id: str, *, user_id: str) -> Optional[Task]:
        try:
            uuid.UUID(str(task_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM task WHERE id = %s AND user_id = %s",
                (task_id, user_id),
            ).fetchone()
        return self._row_to_task(row) if row else None

    def update_task(self, task_id: str, *, user_id: str, **fields: Any) -> Optional[Task]:
        unknown = set(fields) - TASK_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported task fields: {sorted(unknown)}")
        if not fields:
            return self.get_task(task_id, user_id=user_id)
        try:
            uuid.UUID(str(task_id))
        except ValueError:
            return None
        assignments = ", ".join(f"{name} = %s" for name in fields)
        params = [*fields.values(), utcnow(), task_id, user_id]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE task SET {assignments}, updated_at = %s WHERE id = %s AND user_id = %s RETURNING *",
                params,
            ).fetchone()
        return self._row_to_task(row) if row else None

    def delete_task(self, task_id: str, *, user_id: str) -> bool:
        try:
            uuid.UUID(str(task_id))
        except ValueError:
            return False
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM task WHERE id = %s AND user_id = %s", (task_id, user_id)
            )
            return result.rowcount > 0

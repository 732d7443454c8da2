from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from taskdeck.logging import get_logger
from taskdeck.storage.errors import ConstraintViolation
from taskdeck.storage.models import (
    TASK_UPDATABLE_FIELDS,
    USER_UPDATABLE_FIELDS,
    Task,
    User,
    utcnow,
)


class MemoryStore:
    """In-process store for users, credentials and tasks.

    State is mirrored to ``<fs_root>/state/memory_store.json`` after every
    mutation and reloaded on construction, so a restarted dev server keeps its
    accounts.
    """

    def __init__(self, fs_root: str = "/tmp/taskdeck") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.tasks: Dict[str, Task] = {}
        # RLock so helpers can re-enter while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        self._state_path()

    # uniqueness
    def _check_unique(
        self, *, email: Optional[str], google_id: Optional[str], exclude_id: Optional[str] = None
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if email is not None and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if google_id is not None and existing.google_id == google_id:
                raise ConstraintViolation(
                    "google account already linked", {"field": "google_id"}
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
        with self._data_lock:
            self._check_unique(email=email, google_id=google_id)
            user = User.new(
                name,
                email,
                google_id=google_id,
                google_avatar_url=google_avatar_url,
                auth_provider=auth_provider,
                email_verified_at=email_verified_at,
            )
            self.users[user.id] = user
            if password_hash:
                self.credentials[user.id] = (password_hash, password_algo or "")
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.google_id == google_id), None
            )

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return results[:limit]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - USER_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self._check_unique(
                email=fields.get("email"),
                google_id=fields.get("google_id"),
                exclude_id=user_id,
            )
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # tasks
    def create_task(
        self,
        user_id: str,
        title: str,
        description: Optional[str] = None,
        status: str = "pending",
    ) -> Task:
        with self._data_lock:
            task = Task.new(user_id, title, description, status)
            self.tasks[task.id] = task
            self._persist_state()
            return task

    def list_tasks(self, user_id: str) -> List[Task]:
        with self._data_lock:
            owned = [t for t in self.tasks.values() if t.user_id == user_id]
            return sorted(owned, key=lambda t: t.created_at, reverse=True)

    def get_task(self, task_id: str, *, user_id: str) -> Optional[Task]:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task or task.user_id != user_id:
                return None
            return task

    def update_task(self, task_id: str, *, user_id: str, **fields: Any) -> Optional[Task]:
        unknown = set(fields) - TASK_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported task fields: {sorted(unknown)}")
        with self._data_lock:
            task = self.get_task(task_id, user_id=user_id)
            if not task:
                return None
            for name, value in fields.items():
                setattr(task, name, value)
            task.updated_at = utcnow()
            self._persist_state()
            return task

    def delete_task(self, task_id: str, *, user_id: str) -> bool:
        with self._data_lock:
            if not self.get_task(task_id, user_id=user_id):
                return False
            self.tasks.pop(task_id, None)
            self._persist_state()
            return True

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "tasks": [self._serialize_task(t) for t in self.tasks.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.tasks = {t["id"]: self._deserialize_task(t) for t in data.get("tasks", [])}
        self.logger.info(
            "memory_store_state_loaded", users=len(self.users), tasks=len(self.tasks)
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "google_id": user.google_id,
            "google_avatar_url": user.google_avatar_url,
            "profile_image_url": user.profile_image_url,
            "auth_provider": user.auth_provider,
            "email_verified_at": self._serialize_datetime(user.email_verified_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            name=data.get("name", ""),
            email=data["email"],
            google_id=data.get("google_id"),
            google_avatar_url=data.get("google_avatar_url"),
            profile_image_url=data.get("profile_image_url"),
            auth_provider=data.get("auth_provider", "local"),
            email_verified_at=self._deserialize_datetime(data.get("email_verified_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_task(self, task: Task) -> dict:
        return {
            "id": task.id,
            "user_id": task.user_id,
            "title": task.title,
            "description": task.description,
            "status": task.status,
            "created_at": self._serialize_datetime(task.created_at),
            "updated_at": self._serialize_datetime(task.updated_at),
        }

    def _deserialize_task(self, data: dict) -> Task:
        return Task(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            title=data["title"],
            description=data.get("description"),
            status=data.get("status", "pending"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

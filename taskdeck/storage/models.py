from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

AUTH_PROVIDERS = ("local", "google")
TASK_STATUSES = ("pending", "in_progress", "done")

USER_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "email",
        "google_id",
        "google_avatar_url",
        "profile_image_url",
        "auth_provider",
        "email_verified_at",
    }
)
TASK_UPDATABLE_FIELDS = frozenset({"title", "description", "status"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class User:
    id: str
    name: str
    email: str
    google_id: Optional[str] = None
    google_avatar_url: Optional[str] = None
    profile_image_url: Optional[str] = None
    auth_provider: str = "local"
    email_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        name: str,
        email: str,
        *,
        google_id: Optional[str] = None,
        google_avatar_url: Optional[str] = None,
        auth_provider: str = "local",
        email_verified_at: Optional[datetime] = None,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            email=email,
            google_id=google_id,
            google_avatar_url=google_avatar_url,
            auth_provider=auth_provider,
            email_verified_at=email_verified_at,
            created_at=now,
            updated_at=now,
        )

    def to_public_dict(self) -> Dict[str, Any]:
        """Serialize for API responses; credentials are never part of a user row."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "google_id": self.google_id,
            "google_avatar_url": self.google_avatar_url,
            "profile_image_url": self.profile_image_url,
            "auth_provider": self.auth_provider,
            "email_verified_at": _isoformat(self.email_verified_at),
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


@dataclass
class Task:
    id: str
    user_id: str
    title: str
    description: Optional[str] = None
    status: str = "pending"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        title: str,
        description: Optional[str] = None,
        status: str = "pending",
    ) -> "Task":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=title,
            description=description,
            status=status,
            created_at=now,
            updated_at=now,
        )

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Optional, Protocol

from taskdeck.logging import get_logger

logger = get_logger(__name__)


class TokenStorage(Protocol):
    """Durable home for the client's ``{token, user}`` pair."""

    def load(self) -> tuple[Optional[str], Optional[dict]]: ...

    def save(self, token: str, user: Optional[dict]) -> None: ...

    def clear(self) -> None: ...


class MemoryTokenStorage:
    def __init__(self, token: Optional[str] = None, user: Optional[dict] = None) -> None:
        self._token = token
        self._user = user
        self._lock = threading.Lock()

    def load(self) -> tuple[Optional[str], Optional[dict]]:
        with self._lock:
            return self._token, self._user

    def save(self, token: str, user: Optional[dict]) -> None:
        with self._lock:
            self._token = token
            self._user = user

    def clear(self) -> None:
        with self._lock:
            self._token = None
            self._user = None


class FileTokenStorage:
    """Persist the session as JSON, surviving process restarts.

    Writes go through a temp file and ``os.replace`` so a crash never leaves
    a half-written session behind. An unreadable file loads as anonymous.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> tuple[Optional[str], Optional[dict]]:
        with self._lock:
            try:
                data: Any = json.loads(self.path.read_text())
            except FileNotFoundError:
                return None, None
            except (OSError, ValueError) as exc:
                logger.warning("session_file_unreadable", path=str(self.path), error=str(exc))
                return None, None
        if not isinstance(data, dict):
            return None, None
        token = data.get("token")
        user = data.get("user")
        return (
            token if isinstance(token, str) and token else None,
            user if isinstance(user, dict) else None,
        )

    def save(self, token: str, user: Optional[dict]) -> None:
        payload = json.dumps({"token": token, "user": user})
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".session-")
            try:
                with os.fdopen(fd, "w") as handle:
                    handle.write(payload)
                os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.path)
            except OSError:
                Path(tmp_path).unlink(missing_ok=True)
                raise

    def clear(self) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)

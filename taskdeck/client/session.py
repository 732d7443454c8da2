from __future__ import annotations

import asyncio
import contextlib
import dataclasses
from dataclasses import dataclass
from typing import Any, Callable, Optional

from taskdeck.client.api import ApiClient
from taskdeck.client.errors import ApiError
from taskdeck.client.storage import TokenStorage
from taskdeck.logging import get_logger

logger = get_logger(__name__)

LOAD_USER_FAILED = "Failed to load user"


@dataclass(frozen=True)
class SessionState:
    token: Optional[str] = None
    user: Optional[dict] = None
    loading: bool = False
    error: Optional[str] = None
    epoch: int = 0

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None


Listener = Callable[[SessionState], None]


class SessionStore:
    """Client-side owner of the ``{token, user}`` session.

    State starts from durable storage, so a stored token counts as
    authenticated before the user snapshot has loaded. ``initialize`` confirms
    it against ``/me``; concurrent callers share one in-flight load.

    Every login, logout or forced clear bumps ``epoch``. A ``/me`` result is
    applied only when both the epoch and the token it was started with are
    still current, so a logout always beats a late load.
    """

    def __init__(self, api: ApiClient, storage: TokenStorage) -> None:
        self.api = api
        self.storage = storage
        token, user = storage.load()
        self._state = SessionState(token=token, user=user, loading=token is not None)
        self._listeners: list[Listener] = []
        self._init_task: Optional[asyncio.Task] = None
        api.on_unauthorized = self.handle_unauthorized

    # read side
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def token(self) -> Optional[str]:
        return self._state.token

    @property
    def current_user(self) -> Optional[dict]:
        return self._state.user

    @property
    def is_authenticated(self) -> bool:
        return self._state.is_authenticated

    @property
    def loading(self) -> bool:
        return self._state.loading

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, **changes: Any) -> SessionState:
        self._state = dataclasses.replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("session_listener_failed")
        return self._state

    # initialization
    async def initialize(self) -> SessionState:
        """Confirm the stored token with ``/me``; at most one load runs at a time."""
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.create_task(self._load_user())
        await asyncio.shield(self._init_task)
        return self._state

    async def _load_user(self) -> None:
        token = self._state.token
        if token is None:
            self._set(loading=False, user=None)
            return
        epoch = self._state.epoch
        self._set(loading=True, error=None)
        try:
            user = await self.api.get_current_user(token)
        except ApiError as exc:
            if not self._is_current(epoch, token):
                logger.info("session_load_discarded", reason="stale", code=exc.code)
                return
            logger.warning("session_load_failed", code=exc.code, status_code=exc.status_code)
            self.storage.clear()
            self._set(
                token=None,
                user=None,
                loading=False,
                error=LOAD_USER_FAILED,
                epoch=self._state.epoch + 1,
            )
            return
        if not self._is_current(epoch, token):
            logger.info("session_load_discarded", reason="stale")
            return
        self.storage.save(token, user)
        self._set(user=user, loading=False, error=None)

    def _is_current(self, epoch: int, token: str) -> bool:
        return self._state.epoch == epoch and self._state.token == token

    # transitions
    def login(self, token: str, user: Optional[dict]) -> SessionState:
        self.storage.save(token, user)
        state = self._set(
            token=token,
            user=user,
            loading=False,
            error=None,
            epoch=self._state.epoch + 1,
        )
        logger.info("session_logged_in", user_id=(user or {}).get("id"))
        return state

    def _clear(self) -> SessionState:
        self.storage.clear()
        return self._set(
            token=None,
            user=None,
            loading=False,
            error=None,
            epoch=self._state.epoch + 1,
        )

    async def logout(self, *, server: bool = True) -> SessionState:
        """Drop the session locally right away, then tell the server (best effort)."""
        token = self._state.token
        state = self._clear()
        logger.info("session_logged_out", server=server)
        if server and token:
            try:
                await self.api.logout(token)
            except ApiError as exc:
                logger.info("server_logout_failed", code=exc.code, status_code=exc.status_code)
        return state

    def handle_unauthorized(self, token: Optional[str] = None) -> None:
        """Clear the session after a 401, unless it was for an older token."""
        if self._state.token is None:
            return
        if token is not None and token != self._state.token:
            return
        logger.info("session_cleared_unauthorized")
        self._clear()

    # convenience flows
    async def sign_in(self, email: str, password: str) -> SessionState:
        issued = await self.api.login(email, password)
        token = issued["access_token"]
        user = await self.api.get_current_user(token)
        return self.login(token, user)

    async def sign_in_with_google(self, google_token: str) -> SessionState:
        data = await self.api.login_google(google_token)
        return self.login(data["token"], data.get("user"))

    async def close(self) -> None:
        task = self._init_task
        self._init_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

from __future__ import annotations

from typing import Any, Callable, Optional

import httpx

from taskdeck.client.errors import ServerFailure, TransportFailure, error_for_status
from taskdeck.logging import get_logger

logger = get_logger(__name__)

UnauthorizedHook = Callable[[str], None]


class ApiClient:
    """Async HTTP client for the taskdeck API.

    Every failure is normalized into ``taskdeck.client.errors``. When an
    authenticated call comes back 401 the ``on_unauthorized`` hook is called
    with the token that was rejected, which is how the session store learns
    to log out.
    """

    def __init__(
        self,
        base_url: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        on_unauthorized: Optional[UnauthorizedHook] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.on_unauthorized = on_unauthorized
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        json: Any = None,
    ) -> Any:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            response = await self._client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("api_transport_failed", method=method, path=path, error=str(exc))
            raise TransportFailure(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            raise self._error_from_response(response, token)
        try:
            return response.json()
        except ValueError as exc:
            raise ServerFailure(
                "response was not valid JSON", status_code=response.status_code
            ) from exc

    def _error_from_response(self, response: httpx.Response, token: Optional[str]):
        message = response.reason_phrase or "request failed"
        code = None
        details = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = str(body.get("error") or body.get("message") or message)
            code = body.get("code")
            details = body.get("details")
        logger.info(
            "api_request_failed",
            path=response.request.url.path,
            status_code=response.status_code,
            code=code,
        )
        if response.status_code == 401 and token and self.on_unauthorized:
            self.on_unauthorized(token)
        return error_for_status(response.status_code, message, code, details)

    # auth
    async def register(
        self,
        name: str,
        email: str,
        password: str,
        password_confirmation: Optional[str] = None,
    ) -> dict:
        return await self._request(
            "POST",
            "/register",
            json={
                "name": name,
                "email": email,
                "password": password,
                "password_confirmation": (
                    password if password_confirmation is None else password_confirmation
                ),
            },
        )

    async def login(self, email: str, password: str) -> dict:
        return await self._request(
            "POST", "/login", json={"email": email, "password": password}
        )

    async def login_google(self, google_token: str) -> dict:
        return await self._request(
            "POST", "/login-google", json={"google_token": google_token}
        )

    async def get_current_user(self, token: str) -> dict:
        data = await self._request("POST", "/me", token=token)
        # tolerate a {"user": {...}} wrapper as well as the bare user object
        if isinstance(data, dict) and isinstance(data.get("user"), dict):
            return data["user"]
        return data

    async def logout(self, token: str) -> dict:
        return await self._request("POST", "/logout", token=token)

    async def refresh(self, token: str) -> dict:
        return await self._request("POST", "/refresh", token=token)

    async def update_profile(self, token: str, **fields: Any) -> dict:
        return await self._request("PUT", "/profile", token=token, json=fields)

    # tasks
    async def list_tasks(self, token: str) -> list[dict]:
        return await self._request("GET", "/tasks", token=token)

    async def create_task(
        self,
        token: str,
        title: str,
        description: Optional[str] = None,
        status: str = "pending",
    ) -> dict:
        return await self._request(
            "POST",
            "/tasks",
            token=token,
            json={"title": title, "description": description, "status": status},
        )

    async def get_task(self, token: str, task_id: str) -> dict:
        return await self._request("GET", f"/tasks/{task_id}", token=token)

    async def update_task(self, token: str, task_id: str, **fields: Any) -> dict:
        return await self._request("PUT", f"/tasks/{task_id}", token=token, json=fields)

    async def delete_task(self, token: str, task_id: str) -> dict:
        return await self._request("DELETE", f"/tasks/{task_id}", token=token)

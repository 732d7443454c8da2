from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from taskdeck.api.schemas import (
    GoogleLoginRequest,
    LoginRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    TaskCreateRequest,
    TaskUpdateRequest,
)
from taskdeck.logging import get_logger
from taskdeck.service.auth import AuthContext
from taskdeck.service.errors import (
    NotFoundError,
    ServiceError,
    UpstreamFailure,
    ValidationError,
)
from taskdeck.service.runtime import get_runtime
from taskdeck.storage.models import Task, User

logger = get_logger(__name__)

router = APIRouter()


# gateway dependencies
async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Require a valid bearer token; every failure is a 401 with a machine code."""
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    request.state.principal = ctx
    return ctx


def _user_to_response(user: User) -> dict[str, Any]:
    return user.to_public_dict()


def _task_to_response(task: Task) -> dict[str, Any]:
    return task.to_public_dict()


# auth
@router.post("/register", status_code=201)
async def register(body: RegisterRequest):
    runtime = get_runtime()
    user, issued = runtime.auth.register(body.name, body.email, body.password)
    return {
        "message": "User successfully registered",
        "user": _user_to_response(user),
        "token": issued.access_token,
    }


@router.post("/login")
async def login(body: LoginRequest):
    runtime = get_runtime()
    _, issued = runtime.auth.login(body.email, body.password)
    return issued.to_response()


@router.post("/login-google")
async def login_google(body: GoogleLoginRequest):
    if not body.google_token or not body.google_token.strip():
        raise ValidationError(
            "Google token is required",
            detail={"google_token": ["The google token field is required."]},
        )
    runtime = get_runtime()
    try:
        user, issued = await runtime.auth.login_with_google(body.google_token.strip())
    except ServiceError:
        raise
    except Exception as exc:
        logger.exception("google_login_failed", error_type=type(exc).__name__)
        raise UpstreamFailure("Authentication failed") from exc
    return {
        "message": "Successfully logged in with Google",
        "user": _user_to_response(user),
        "token": issued.access_token,
    }


@router.api_route("/me", methods=["GET", "POST"])
async def me(principal: AuthContext = Depends(get_user)):
    return _user_to_response(principal.user)


@router.post("/logout")
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.token)
    return {"message": "Successfully logged out"}


@router.post("/refresh")
async def refresh(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    _, issued = await runtime.tokens.refresh(principal.token)
    return issued.to_response()


@router.put("/profile")
async def update_profile(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = runtime.auth.update_profile(
        principal.user_id,
        name=body.name,
        email=body.email,
        profile_image_url=body.profile_image_url,
    )
    return {"message": "Profile updated successfully", "user": _user_to_response(user)}


# tasks
@router.get("/tasks")
async def list_tasks(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return [_task_to_response(t) for t in runtime.store.list_tasks(principal.user_id)]


@router.post("/tasks", status_code=201)
async def create_task(
    body: TaskCreateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    task = runtime.store.create_task(
        principal.user_id, body.title, body.description, body.status
    )
    logger.info("task_created", user_id=principal.user_id, task_id=task.id)
    return _task_to_response(task)


@router.get("/tasks/{task_id}")
async def get_task(
    task_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    task = runtime.store.get_task(task_id, user_id=principal.user_id)
    if not task:
        raise NotFoundError("Task not found", detail={"id": task_id})
    return _task_to_response(task)


@router.put("/tasks/{task_id}")
async def update_task(
    body: TaskUpdateRequest,
    task_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    fields = body.model_dump(exclude_unset=True)
    if fields.get("title") is None:
        fields.pop("title", None)
    if "status" in fields and fields["status"] is None:
        fields.pop("status")
    task = runtime.store.update_task(task_id, user_id=principal.user_id, **fields)
    if not task:
        raise NotFoundError("Task not found", detail={"id": task_id})
    logger.info("task_updated", user_id=principal.user_id, task_id=task.id)
    return _task_to_response(task)


@router.delete("/tasks/{task_id}")
async def delete_task(
    task_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    if not runtime.store.delete_task(task_id, user_id=principal.user_id):
        raise NotFoundError("Task not found", detail={"id": task_id})
    logger.info("task_deleted", user_id=principal.user_id, task_id=task_id)
    return {"message": "Task deleted successfully"}

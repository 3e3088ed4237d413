from __future__ import annotations

import json
from typing import Any, List

from fastapi import APIRouter, Depends, Request, status

from usergate.api.gates import admin_only, admin_or_owner, authenticated, self_only
from usergate.api.schemas import (
    CreateUserRequest,
    DeleteAllResponse,
    LoginRequest,
    LoginResponse,
    LoginUser,
    RegisterRequest,
    UserEnvelope,
    UserResponse,
    parse_body,
    parse_update,
)
from usergate.logging import get_logger
from usergate.service.errors import ValidationError
from usergate.service.runtime import Runtime
from usergate.service.tokens import Principal

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/auth/users", tags=["auth"])
users_router = APIRouter(prefix="/users", tags=["users"])


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def read_json_body(request: Request) -> Any:
    """Decode the request body; gated routes call this after the gate has run."""
    raw = await request.body()
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise ValidationError("Invalid JSON body") from exc


@auth_router.post(
    "/register", response_model=UserEnvelope, status_code=status.HTTP_201_CREATED
)
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime(request)
    user = await runtime.users.create_user(
        name=body.name, email=body.email, password=body.password, role=body.role
    )
    return UserEnvelope(
        message="User created successfully", user=UserResponse(**user)
    )


@auth_router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime(request)
    result = await runtime.auth.login(email=body.email, password=body.password)
    user = result.user
    return LoginResponse(
        message="Login successful",
        token=result.token.token,
        user=LoginUser(id=user.id, name=user.name, email=user.email, role=user.role),
    )


@users_router.get("", response_model=List[UserResponse])
async def list_users(request: Request, principal: Principal = Depends(authenticated)):
    runtime = get_runtime(request)
    full_path = request.url.path
    if request.url.query:
        full_path = f"{full_path}?{request.url.query}"
    return await runtime.users.list_users(full_path)


@users_router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: str, request: Request, principal: Principal = Depends(authenticated)
):
    runtime = get_runtime(request)
    return await runtime.users.get_user(user_id)


@users_router.post(
    "", response_model=UserEnvelope, status_code=status.HTTP_201_CREATED
)
async def create_user(request: Request, principal: Principal = Depends(admin_only)):
    body = parse_body(CreateUserRequest, await read_json_body(request))
    runtime = get_runtime(request)
    user = await runtime.users.create_user(
        name=body.name, email=body.email, password=body.password, role=body.role
    )
    logger.info("admin_created_user", actor_id=principal.id, user_id=user["id"])
    return UserEnvelope(
        message="User created successfully by admin", user=UserResponse(**user)
    )


@users_router.patch("/{user_id}", response_model=UserEnvelope)
async def update_user(
    user_id: str,
    request: Request,
    principal: Principal = Depends(self_only),
):
    changes = parse_update(await read_json_body(request)).changes()
    runtime = get_runtime(request)
    user = await runtime.users.update_user(principal, user_id, changes)
    return UserEnvelope(message="User updated successfully", user=UserResponse(**user))


@users_router.delete("/{user_id}", response_model=UserEnvelope)
async def delete_user(
    user_id: str, request: Request, principal: Principal = Depends(admin_or_owner)
):
    runtime = get_runtime(request)
    user = await runtime.users.delete_user(principal, user_id)
    return UserEnvelope(message="User deleted successfully", user=UserResponse(**user))


@users_router.delete("", response_model=DeleteAllResponse)
async def delete_all_users(
    request: Request, principal: Principal = Depends(admin_or_owner)
):
    runtime = get_runtime(request)
    count = await runtime.users.delete_all(principal)
    return DeleteAllResponse(message="Users deleted successfully", deleted_count=count)

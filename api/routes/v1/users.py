"""
api/routes/v1/users.py -- Profile and user-management REST endpoints.

Routes:
  GET    /api/v1/users/me                      -- own profile (profile:read)
  PATCH  /api/v1/users/me                      -- update own name (profile:update)
  PUT    /api/v1/users/me/password             -- change own password (password:change)
  GET    /api/v1/users                         -- list users (admin)
  GET    /api/v1/users/{id}                    -- one user (admin)
  PATCH  /api/v1/users/{id}/role               -- change role (admin)
  DELETE /api/v1/users/{id}                    -- delete user (admin)
  POST   /api/v1/users/{id}/sessions/revoke    -- force logout (admin)

Authorization is the guard's permission table, applied through
require(operation). Routes never compare role strings themselves.

Lockout guards:
  An admin cannot delete their own account.
  The last admin cannot be demoted or deleted (no recovery path without DB access).
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.models import ChangePasswordRequest, MessageResponse, ProfilePatch, RolePatch, UserResponse
from api.routes.v1.auth import REFRESH_COOKIE, REFRESH_COOKIE_PATH
from auth.dependencies import require
from auth.errors import NotFound
from auth.guard import Operation
from auth.models import Claims, Role, User
from auth.orchestrator import SessionOrchestrator
from auth.store import UserStore

router = APIRouter()


def _orchestrator(request: Request) -> SessionOrchestrator:
    return request.app.state.orchestrator


def _load_user(user_store: UserStore, user_id: uuid.UUID) -> User:
    user = user_store.get_by_id(user_id)
    if user is None:
        raise NotFound("User not found.")
    return user


def _guard_last_admin(user_store: UserStore, target: User) -> None:
    if target.role == Role.admin and user_store.count_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot remove the last admin account."},
        )


# ---------------------------------------------------------------------------
# Own profile
# ---------------------------------------------------------------------------


@router.get("/users/me", response_model=UserResponse)
def me(
    request: Request,
    claims: Claims = Depends(require(Operation.profile_read)),
) -> UserResponse:
    """Return the profile of the currently authenticated user."""
    return UserResponse.from_user(_load_user(request.app.state.user_store, claims.user_id))


@router.patch("/users/me", response_model=UserResponse)
def update_me(
    request: Request,
    body: ProfilePatch,
    claims: Claims = Depends(require(Operation.profile_update)),
) -> UserResponse:
    user_store: UserStore = request.app.state.user_store
    if not user_store.update_user(claims.user_id, name=body.name):
        raise NotFound("User not found.")
    return UserResponse.from_user(_load_user(user_store, claims.user_id))


@router.put("/users/me/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    claims: Claims = Depends(require(Operation.password_change)),
) -> JSONResponse:
    """Change the own password. Ends the refresh session; log in again afterwards."""
    _orchestrator(request).change_password(claims.user_id, body.current_password, body.new_password)
    resp = JSONResponse(content=MessageResponse(message="Password changed.").model_dump())
    resp.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH)
    return resp


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    claims: Claims = Depends(require(Operation.users_list)),
) -> list[UserResponse]:
    user_store: UserStore = request.app.state.user_store
    return [UserResponse.from_user(u) for u in user_store.list_users()]


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: uuid.UUID,
    claims: Claims = Depends(require(Operation.users_read)),
) -> UserResponse:
    return UserResponse.from_user(_load_user(request.app.state.user_store, user_id))


@router.patch("/users/{user_id}/role", response_model=UserResponse)
def update_role(
    request: Request,
    user_id: uuid.UUID,
    body: RolePatch,
    claims: Claims = Depends(require(Operation.users_update_role)),
) -> UserResponse:
    """Change a user's role. The user's refresh session is revoked so the new
    role takes effect at their next login instead of after the old one expires.
    """
    user_store: UserStore = request.app.state.user_store
    target = _load_user(user_store, user_id)
    if body.role != Role.admin:
        _guard_last_admin(user_store, target)
    updated = _orchestrator(request).set_role(user_id, body.role)
    return UserResponse.from_user(updated)


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: uuid.UUID,
    claims: Claims = Depends(require(Operation.users_delete)),
) -> Response:
    """Permanently delete a user and, by cascade, their token rows."""
    user_store: UserStore = request.app.state.user_store
    if user_id == claims.user_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deletion", "message": "You cannot delete your own account."},
        )
    target = _load_user(user_store, user_id)
    _guard_last_admin(user_store, target)
    _orchestrator(request).delete_user(user_id)
    return Response(status_code=204)


@router.post("/users/{user_id}/sessions/revoke", status_code=204)
def revoke_sessions(
    request: Request,
    user_id: uuid.UUID,
    claims: Claims = Depends(require(Operation.sessions_revoke)),
) -> Response:
    """Force-logout: revoke the user's refresh session. Idempotent."""
    _load_user(request.app.state.user_store, user_id)
    _orchestrator(request).logout(user_id)
    return Response(status_code=204)

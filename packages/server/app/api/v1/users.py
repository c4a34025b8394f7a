"""
User Management API endpoints.

GET    /api/v1/users/profile              — Own profile
PUT    /api/v1/users/profile              — Update own profile
PUT    /api/v1/users/password             — Change own password
GET    /api/v1/users                      — List users (Admin)
PUT    /api/v1/users/bulk/update          — Update several users (Admin)
PUT    /api/v1/users/bulk/activate        — Activate several (Admin)
PUT    /api/v1/users/bulk/deactivate      — Deactivate several (Admin)
DELETE /api/v1/users/bulk/delete          — Delete several (Admin)
GET    /api/v1/users/{userId}             — Get user (Manager+, or self)
PUT    /api/v1/users/{userId}             — Update user (Admin)
PUT    /api/v1/users/{userId}/activate    — Activate (Admin)
PUT    /api/v1/users/{userId}/deactivate  — Deactivate (Admin)
DELETE /api/v1/users/{userId}             — Delete (Admin)
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import AuthContext, require_permission
from app.core.database import get_session
from app.services import auth as auth_service
from app.services import users as user_service
from app.services.audit import record_audit
from ccpm_shared.schemas.common import Role
from ccpm_shared.schemas.users import (
    BulkResult,
    BulkUserIds,
    BulkUserUpdate,
    ChangePasswordRequest,
    MessageResponse,
    ProfileUpdateRequest,
    UserListResponse,
    UserResponse,
    UserUpdateRequest,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# Self-service
# ---------------------------------------------------------------------------

@router.get("/profile", response_model=UserResponse)
async def get_profile(auth: AuthContext = Depends(require_permission("user", "read"))):
    auth.ensure_owner(True)
    return auth.user


@router.put("/profile", response_model=UserResponse)
async def update_profile(
    body: ProfileUpdateRequest,
    request: Request,
    auth: AuthContext = Depends(require_permission("user", "update")),
    session: AsyncSession = Depends(get_session),
):
    auth.ensure_owner(True)
    user = await user_service.update_profile(session, auth.user, body)
    await record_audit(
        session, "user.profile_updated", user_id=user.id, entity="User", entity_id=user.id,
        request=request,
    )
    return user


@router.put("/password", response_model=MessageResponse)
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    auth: AuthContext = Depends(require_permission("user", "update")),
    session: AsyncSession = Depends(get_session),
):
    auth.ensure_owner(True)
    await auth_service.change_password(session, auth.user, body.current_password, body.new_password)
    await record_audit(
        session, "user.password_changed", user_id=auth.user_id, entity="User",
        entity_id=auth.user_id, request=request,
    )
    return MessageResponse(message="Password updated")


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------
#
# "user:list" and "user:manage" are held only through ADMIN's wildcard in the
# default table. Role and email changes go through "manage" rather than
# "update" so that the self-service "user:update:own" grant cannot reach them.


def _only_self(user_ids, auth: AuthContext) -> bool:
    return all(uid == auth.user_id for uid in user_ids)


@router.get("", response_model=UserListResponse)
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    role: Optional[Role] = None,
    is_active: Optional[bool] = None,
    auth: AuthContext = Depends(require_permission("user", "list")),
    session: AsyncSession = Depends(get_session),
):
    """List all users (Admin only)."""
    return await user_service.list_users(
        session, page=page, limit=limit, search=search, role=role, is_active=is_active
    )


# Bulk routes are registered before "/{userId}/..." so "bulk" is never parsed
# as a user id.


@router.put("/bulk/update", response_model=BulkResult)
async def bulk_update_users(
    body: BulkUserUpdate,
    request: Request,
    auth: AuthContext = Depends(require_permission("user", "manage")),
    session: AsyncSession = Depends(get_session),
):
    auth.ensure_owner(_only_self(body.user_ids, auth))
    actor_id = auth.user_id
    result = await user_service.bulk_apply(
        session, body.user_ids, lambda user: user_service.update_user(session, user, body.updates)
    )
    await record_audit(
        session, "user.bulk_updated", user_id=actor_id, entity="User",
        details={
            "user_ids": [str(uid) for uid in result.succeeded],
            "updates": body.updates.model_dump(exclude_unset=True, mode="json"),
        },
        request=request,
    )
    return result


@router.put("/bulk/activate", response_model=BulkResult)
async def bulk_activate_users(
    body: BulkUserIds,
    request: Request,
    auth: AuthContext = Depends(require_permission("user", "manage")),
    session: AsyncSession = Depends(get_session),
):
    auth.ensure_owner(_only_self(body.user_ids, auth))
    actor_id = auth.user_id
    result = await user_service.bulk_apply(
        session, body.user_ids, lambda user: user_service.set_active(session, user, True, actor_id)
    )
    await record_audit(
        session, "user.bulk_activated", user_id=actor_id, entity="User",
        details={"user_ids": [str(uid) for uid in result.succeeded]},
        request=request,
    )
    return result


@router.put("/bulk/deactivate", response_model=BulkResult)
async def bulk_deactivate_users(
    body: BulkUserIds,
    request: Request,
    auth: AuthContext = Depends(require_permission("user", "manage")),
    session: AsyncSession = Depends(get_session),
):
    auth.ensure_owner(_only_self(body.user_ids, auth))
    actor_id = auth.user_id
    result = await user_service.bulk_apply(
        session, body.user_ids, lambda user: user_service.set_active(session, user, False, actor_id)
    )
    await record_audit(
        session, "user.bulk_deactivated", user_id=actor_id, entity="User",
        details={"user_ids": [str(uid) for uid in result.succeeded]},
        request=request,
    )
    return result


@router.delete("/bulk/delete", response_model=BulkResult)
async def bulk_delete_users(
    body: BulkUserIds,
    request: Request,
    auth: AuthContext = Depends(require_permission("user", "delete")),
    session: AsyncSession = Depends(get_session),
):
    """Delete several users; each is refused on its own if it still owns projects."""
    auth.ensure_owner(_only_self(body.user_ids, auth))
    actor_id = auth.user_id
    result = await user_service.bulk_apply(
        session, body.user_ids, lambda user: user_service.delete_user(session, user, actor_id)
    )
    await record_audit(
        session, "user.bulk_deleted", user_id=actor_id, entity="User",
        details={"user_ids": [str(uid) for uid in result.succeeded]},
        request=request,
    )
    return result


@router.get("/{userId}", response_model=UserResponse)
async def get_user(
    userId: uuid.UUID,
    auth: AuthContext = Depends(require_permission("user", "read")),
    session: AsyncSession = Depends(get_session),
):
    auth.ensure_owner(userId == auth.user_id)
    return await user_service.get_user_or_404(session, userId)


@router.put("/{userId}", response_model=UserResponse)
async def update_user(
    userId: uuid.UUID,
    body: UserUpdateRequest,
    request: Request,
    auth: AuthContext = Depends(require_permission("user", "manage")),
    session: AsyncSession = Depends(get_session),
):
    auth.ensure_owner(userId == auth.user_id)
    user = await user_service.get_user_or_404(session, userId)
    user = await user_service.update_user(session, user, body)
    await record_audit(
        session, "user.updated", user_id=auth.user_id, entity="User", entity_id=user.id,
        details=body.model_dump(exclude_unset=True, mode="json"),
        request=request,
    )
    return user


@router.put("/{userId}/activate", response_model=UserResponse)
async def activate_user(
    userId: uuid.UUID,
    request: Request,
    auth: AuthContext = Depends(require_permission("user", "manage")),
    session: AsyncSession = Depends(get_session),
):
    auth.ensure_owner(userId == auth.user_id)
    user = await user_service.get_user_or_404(session, userId)
    user = await user_service.set_active(session, user, True, auth.user_id)
    await record_audit(
        session, "user.activated", user_id=auth.user_id, entity="User", entity_id=user.id,
        request=request,
    )
    return user


@router.put("/{userId}/deactivate", response_model=UserResponse)
async def deactivate_user(
    userId: uuid.UUID,
    request: Request,
    auth: AuthContext = Depends(require_permission("user", "manage")),
    session: AsyncSession = Depends(get_session),
):
    auth.ensure_owner(userId == auth.user_id)
    user = await user_service.get_user_or_404(session, userId)
    user = await user_service.set_active(session, user, False, auth.user_id)
    await record_audit(
        session, "user.deactivated", user_id=auth.user_id, entity="User", entity_id=user.id,
        request=request,
    )
    return user


@router.delete("/{userId}", status_code=204)
async def delete_user(
    userId: uuid.UUID,
    request: Request,
    auth: AuthContext = Depends(require_permission("user", "delete")),
    session: AsyncSession = Depends(get_session),
):
    """Delete a user (Admin only). Users who still own projects cannot be deleted."""
    auth.ensure_owner(userId == auth.user_id)
    user = await user_service.get_user_or_404(session, userId)
    await user_service.delete_user(session, user, auth.user_id)
    await record_audit(
        session, "user.deleted", user_id=auth.user_id, entity="User", entity_id=userId,
        request=request,
    )

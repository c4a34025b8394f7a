"""
User management service: profile, admin CRUD, activation, bulk operations.
"""

from __future__ import annotations

import uuid
from typing import Awaitable, Callable, Optional, Sequence

import structlog
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import or_, select

from app.core.errors import CCPMError, InvalidOperation, NotFound
from app.models.assignments import ProjectMember, TaskAssignee
from app.models.department import Department
from app.models.project import Project
from app.models.user import User
from app.services.auth import ensure_unique_identity
from ccpm_shared.schemas.common import Pagination, Role
from ccpm_shared.schemas.users import (
    BulkFailure,
    BulkResult,
    ProfileUpdateRequest,
    UserListResponse,
    UserResponse,
    UserUpdateRequest,
)

log = structlog.get_logger()


async def get_user_or_404(session: AsyncSession, user_id: uuid.UUID) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


async def list_users(
    session: AsyncSession,
    *,
    page: int = 1,
    limit: int = 20,
    search: Optional[str] = None,
    role: Optional[Role] = None,
    is_active: Optional[bool] = None,
) -> UserListResponse:
    filters = []
    if search:
        pattern = f"%{search.lower()}%"
        filters.append(
            or_(
                func.lower(User.email).like(pattern),
                func.lower(User.username).like(pattern),
                func.lower(User.name).like(pattern),
            )
        )
    if role is not None:
        filters.append(User.role == role.value)
    if is_active is not None:
        filters.append(User.is_active == is_active)

    total = (
        await session.execute(select(func.count()).select_from(User).where(*filters))
    ).scalar_one()
    result = await session.execute(
        select(User)
        .where(*filters)
        .order_by(User.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return UserListResponse(
        data=[UserResponse.model_validate(u) for u in result.scalars().all()],
        pagination=Pagination.build(page, limit, total),
    )


async def update_profile(session: AsyncSession, user: User, body: ProfileUpdateRequest) -> User:
    data = body.model_dump(exclude_unset=True)
    if data.get("username") and data["username"] != user.username:
        await ensure_unique_identity(session, username=data["username"], exclude_id=user.id)
    for key, value in data.items():
        setattr(user, key, value)
    session.add(user)
    await session.flush()
    log.info("user.profile_updated", user_id=str(user.id), fields=sorted(data))
    return user


async def update_user(session: AsyncSession, user: User, body: UserUpdateRequest) -> User:
    """Admin update; changing the email drops its verified status."""
    data = body.model_dump(exclude_unset=True)
    await ensure_unique_identity(
        session,
        email=data.get("email") if data.get("email") != user.email else None,
        username=data.get("username") if data.get("username") != user.username else None,
        exclude_id=user.id,
    )
    if "email" in data and data["email"] is not None:
        new_email = data.pop("email").lower()
        if new_email != user.email:
            user.email = new_email
            user.email_verified = False
            user.email_verified_at = None
    if "role" in data and data["role"] is not None:
        user.role = Role(data.pop("role")).value
    for key, value in data.items():
        if value is not None:
            setattr(user, key, value)
    session.add(user)
    await session.flush()
    log.info("user.updated", user_id=str(user.id), fields=sorted(body.model_dump(exclude_unset=True)))
    return user


async def set_active(session: AsyncSession, user: User, active: bool, actor_id: uuid.UUID) -> User:
    if not active and user.id == actor_id:
        raise InvalidOperation("You cannot deactivate your own account")
    user.is_active = active
    if active:
        user.failed_login_attempts = 0
        user.locked_until = None
    session.add(user)
    await session.flush()
    log.info("user.activated" if active else "user.deactivated", user_id=str(user.id))
    return user


async def delete_user(session: AsyncSession, user: User, actor_id: uuid.UUID) -> None:
    if user.id == actor_id:
        raise InvalidOperation("You cannot delete your own account")

    owned = (
        await session.execute(
            select(func.count()).select_from(Project).where(Project.owner_id == user.id)
        )
    ).scalar_one()
    if owned:
        raise InvalidOperation("User still owns projects; reassign or delete them first")

    for model in (ProjectMember, TaskAssignee):
        rows = await session.execute(select(model).where(model.user_id == user.id))
        for row in rows.scalars().all():
            await session.delete(row)

    managed = await session.execute(select(Department).where(Department.manager_id == user.id))
    for dept in managed.scalars().all():
        dept.manager_id = None
        session.add(dept)

    await session.delete(user)
    await session.flush()
    log.info("user.deleted", user_id=str(user.id))


async def bulk_apply(
    session: AsyncSession,
    user_ids: Sequence[uuid.UUID],
    operation: Callable[[User], Awaitable[object]],
) -> BulkResult:
    """Run ``operation`` on each user in its own savepoint.

    A user that is missing or refused by a domain rule is reported in
    ``failed`` and rolled back alone; the others still apply.
    """
    succeeded: list[uuid.UUID] = []
    failed: list[BulkFailure] = []
    for uid in dict.fromkeys(user_ids):
        try:
            async with session.begin_nested():
                user = await get_user_or_404(session, uid)
                await operation(user)
        except CCPMError as exc:
            failed.append(BulkFailure(user_id=uid, error=exc.message))
        else:
            succeeded.append(uid)
    log.info("user.bulk_applied", succeeded=len(succeeded), failed=len(failed))
    return BulkResult(success_count=len(succeeded), succeeded=succeeded, failed=failed)

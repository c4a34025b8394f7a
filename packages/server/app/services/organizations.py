"""
Organization service — business logic for org CRUD and membership.

Departments live in app.services.departments.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.errors import Conflict, InvalidOperation, NotFound
from app.models.department import Department
from app.models.organization import Organization
from app.models.project import Project
from app.models.user import User
from ccpm_shared.schemas.organizations import (
    OrgCreateRequest,
    OrgResponse,
    OrgUpdateRequest,
)

log = structlog.get_logger()


async def _member_counts(
    org_ids: list[uuid.UUID], session: AsyncSession
) -> dict[uuid.UUID, int]:
    if not org_ids:
        return {}
    result = await session.execute(
        select(User.organization_id, func.count())
        .where(User.organization_id.in_(org_ids))
        .group_by(User.organization_id)
    )
    return {org_id: count for org_id, count in result.all()}


async def to_response(org: Organization, session: AsyncSession) -> OrgResponse:
    counts = await _member_counts([org.id], session)
    return OrgResponse(
        id=org.id,
        name=org.name,
        description=org.description,
        is_active=org.is_active,
        member_count=counts.get(org.id, 0),
        created_at=org.created_at,
        updated_at=org.updated_at,
    )


async def _ensure_name_free(
    name: str, session: AsyncSession, exclude_id: uuid.UUID | None = None
) -> None:
    stmt = select(Organization).where(Organization.name == name)
    if exclude_id is not None:
        stmt = stmt.where(Organization.id != exclude_id)
    if (await session.execute(stmt)).scalar_one_or_none():
        raise Conflict("Organization name already taken")


async def list_orgs(session: AsyncSession, include_inactive: bool = False) -> list[OrgResponse]:
    stmt = select(Organization).order_by(Organization.name)
    if not include_inactive:
        stmt = stmt.where(Organization.is_active.is_(True))
    orgs = list((await session.execute(stmt)).scalars().all())
    counts = await _member_counts([o.id for o in orgs], session)
    return [
        OrgResponse(
            id=o.id,
            name=o.name,
            description=o.description,
            is_active=o.is_active,
            member_count=counts.get(o.id, 0),
            created_at=o.created_at,
            updated_at=o.updated_at,
        )
        for o in orgs
    ]


async def create_org(req: OrgCreateRequest, session: AsyncSession) -> Organization:
    await _ensure_name_free(req.name, session)
    org = Organization(name=req.name, description=req.description)
    session.add(org)
    await session.flush()
    log.info("org.created", org_id=str(org.id), name=org.name)
    return org


async def get_org(org_id: uuid.UUID, session: AsyncSession) -> Organization:
    org = await session.get(Organization, org_id)
    if org is None:
        raise NotFound("Organization not found")
    return org


async def update_org(
    org: Organization, req: OrgUpdateRequest, session: AsyncSession
) -> Organization:
    data = req.model_dump(exclude_unset=True)
    if data.get("name") and data["name"] != org.name:
        await _ensure_name_free(data["name"], session, exclude_id=org.id)
    for key, value in data.items():
        if value is not None:
            setattr(org, key, value)
    org.updated_at = datetime.now(timezone.utc)
    session.add(org)
    await session.flush()
    log.info("org.updated", org_id=str(org.id), fields=sorted(data))
    return org


async def delete_org(org: Organization, session: AsyncSession) -> None:
    """Delete an org once nothing references it."""
    members = (await _member_counts([org.id], session)).get(org.id, 0)
    projects = (
        await session.execute(
            select(func.count()).select_from(Project).where(Project.organization_id == org.id)
        )
    ).scalar_one()
    departments = (
        await session.execute(
            select(func.count()).select_from(Department).where(Department.organization_id == org.id)
        )
    ).scalar_one()
    if members or projects or departments:
        raise InvalidOperation("Organization still has members, projects or departments")
    await session.delete(org)
    await session.flush()
    log.info("org.deleted", org_id=str(org.id))


async def assign_member(
    org: Organization,
    user_id: uuid.UUID,
    session: AsyncSession,
    department_id: uuid.UUID | None = None,
) -> User:
    """Move a user into ``org`` and optionally one of its departments.

    A user belongs to at most one organization; moving to another org clears
    the old department.
    """
    if not org.is_active:
        raise InvalidOperation("Organization is inactive")
    user = await session.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    if department_id is not None:
        dept = await session.get(Department, department_id)
        if dept is None or dept.organization_id != org.id or not dept.is_active:
            raise NotFound("Department not found or not in the specified organization")
    if user.organization_id == org.id and department_id in (None, user.department_id):
        raise Conflict("User is already a member of this organization")
    user.organization_id = org.id
    user.department_id = department_id
    session.add(user)
    await session.flush()
    log.info(
        "org.member_assigned",
        org_id=str(org.id),
        user_id=str(user.id),
        department_id=str(department_id) if department_id else None,
    )
    return user

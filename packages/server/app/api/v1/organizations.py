"""
Organization API endpoints.

GET    /api/v1/organizations              — List orgs (Manager+)
POST   /api/v1/organizations              — Create org (Admin)
GET    /api/v1/organizations/{orgId}      — Get org details (Manager+)
PUT    /api/v1/organizations/{orgId}      — Update org (Admin)
DELETE /api/v1/organizations/{orgId}      — Delete an empty org (Admin)
POST   /api/v1/organizations/{orgId}/members — Assign a user, optionally to a department (Admin)
GET    /api/v1/organizations/{orgId}/hierarchy — Department tree (Manager+)
"""

from __future__ import annotations

import uuid
from typing import List

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import AuthContext, require_permission
from app.core.database import get_session
from app.services import departments as department_service
from app.services import organizations as org_service
from app.services.audit import record_audit
from ccpm_shared.schemas.organizations import (
    DepartmentNode,
    OrgCreateRequest,
    OrgMemberAssign,
    OrgResponse,
    OrgUpdateRequest,
)
from ccpm_shared.schemas.users import UserResponse

router = APIRouter()


@router.get("", response_model=List[OrgResponse])
async def list_orgs(
    include_inactive: bool = False,
    auth: AuthContext = Depends(require_permission("organization", "read")),
    session: AsyncSession = Depends(get_session),
):
    return await org_service.list_orgs(session, include_inactive=include_inactive)


@router.post("", response_model=OrgResponse, status_code=201)
async def create_org(
    body: OrgCreateRequest,
    request: Request,
    auth: AuthContext = Depends(require_permission("organization", "create")),
    session: AsyncSession = Depends(get_session),
):
    org = await org_service.create_org(body, session)
    await record_audit(
        session, "organization.created", user_id=auth.user_id, entity="Organization",
        entity_id=org.id, details={"name": org.name},
        request=request,
    )
    return await org_service.to_response(org, session)


@router.get("/{orgId}", response_model=OrgResponse)
async def get_org(
    orgId: uuid.UUID,
    auth: AuthContext = Depends(require_permission("organization", "read")),
    session: AsyncSession = Depends(get_session),
):
    org = await org_service.get_org(orgId, session)
    return await org_service.to_response(org, session)


@router.put("/{orgId}", response_model=OrgResponse)
async def update_org(
    orgId: uuid.UUID,
    body: OrgUpdateRequest,
    request: Request,
    auth: AuthContext = Depends(require_permission("organization", "update")),
    session: AsyncSession = Depends(get_session),
):
    org = await org_service.get_org(orgId, session)
    org = await org_service.update_org(org, body, session)
    await record_audit(
        session, "organization.updated", user_id=auth.user_id, entity="Organization",
        entity_id=org.id, details=body.model_dump(exclude_unset=True),
        request=request,
    )
    return await org_service.to_response(org, session)


@router.delete("/{orgId}", status_code=204)
async def delete_org(
    orgId: uuid.UUID,
    request: Request,
    auth: AuthContext = Depends(require_permission("organization", "delete")),
    session: AsyncSession = Depends(get_session),
):
    org = await org_service.get_org(orgId, session)
    await org_service.delete_org(org, session)
    await record_audit(
        session, "organization.deleted", user_id=auth.user_id, entity="Organization", entity_id=orgId,
        request=request,
    )


@router.post("/{orgId}/members", response_model=UserResponse)
async def assign_member(
    orgId: uuid.UUID,
    body: OrgMemberAssign,
    request: Request,
    auth: AuthContext = Depends(require_permission("organization", "update")),
    session: AsyncSession = Depends(get_session),
):
    org = await org_service.get_org(orgId, session)
    user = await org_service.assign_member(org, body.user_id, session, department_id=body.department_id)
    await record_audit(
        session, "organization.member_assigned", user_id=auth.user_id, entity="Organization",
        entity_id=org.id,
        details={
            "member_id": str(user.id),
            "department_id": str(body.department_id) if body.department_id else None,
        },
        request=request,
    )
    return user


@router.get("/{orgId}/hierarchy", response_model=List[DepartmentNode])
async def get_hierarchy(
    orgId: uuid.UUID,
    auth: AuthContext = Depends(require_permission("department", "read")),
    session: AsyncSession = Depends(get_session),
):
    """Active departments of the organization as a tree."""
    org = await org_service.get_org(orgId, session)
    return await department_service.department_tree(org.id, session)

"""
Project endpoints: CRUD, statistics, membership.

Authorization runs in two phases: the route's permission dependency checks the
caller's role, then ownership is consulted once the project is loaded for
roles whose grant is ``:own`` only.
"""

from __future__ import annotations

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import AuthContext, require_permission
from app.core.database import get_session
from app.services import projects as project_service
from app.services.audit import record_audit
from ccpm_shared.schemas.common import Page, ProjectStatus
from ccpm_shared.schemas.projects import (
    ProjectCreate,
    ProjectMemberAdd,
    ProjectMemberRead,
    ProjectRead,
    ProjectStatistics,
    ProjectUpdate,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


@router.get("", response_model=Page[ProjectRead])
async def list_projects(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[ProjectStatus] = None,
    search: Optional[str] = None,
    include_archived: bool = False,
    auth: AuthContext = Depends(require_permission("project", "read")),
    session: AsyncSession = Depends(get_session),
):
    """List projects visible to the caller."""
    data, pagination = await project_service.list_projects(
        session,
        auth.user,
        page=page,
        limit=limit,
        status=status,
        search=search,
        include_archived=include_archived,
    )
    return Page[ProjectRead](data=data, pagination=pagination)


@router.post("", response_model=ProjectRead, status_code=201)
async def create_project(
    body: ProjectCreate,
    request: Request,
    auth: AuthContext = Depends(require_permission("project", "create")),
    session: AsyncSession = Depends(get_session),
):
    project = await project_service.create_project(session, body, auth.user)
    await record_audit(
        session, "project.created", user_id=auth.user_id, entity="Project",
        entity_id=project.id, details={"name": project.name},
        request=request,
    )
    return await project_service.to_read(session, project)


@router.get("/{projectId}", response_model=ProjectRead)
async def get_project(
    projectId: uuid.UUID,
    auth: AuthContext = Depends(require_permission("project", "read")),
    session: AsyncSession = Depends(get_session),
):
    project = await project_service.get_visible_project(session, projectId, auth.user)
    return await project_service.to_read(session, project)


@router.put("/{projectId}", response_model=ProjectRead)
async def update_project(
    projectId: uuid.UUID,
    body: ProjectUpdate,
    request: Request,
    auth: AuthContext = Depends(require_permission("project", "update")),
    session: AsyncSession = Depends(get_session),
):
    project = await project_service.get_visible_project(session, projectId, auth.user)
    auth.ensure_owner(project.owner_id == auth.user_id)
    project = await project_service.update_project(session, project, body)
    await record_audit(
        session, "project.updated", user_id=auth.user_id, entity="Project",
        entity_id=project.id, details=body.model_dump(exclude_unset=True, mode="json"),
        request=request,
    )
    return await project_service.to_read(session, project)


@router.delete("/{projectId}", status_code=204)
async def delete_project(
    projectId: uuid.UUID,
    request: Request,
    auth: AuthContext = Depends(require_permission("project", "delete")),
    session: AsyncSession = Depends(get_session),
):
    """Delete a project with all of its tasks and dependency edges."""
    project = await project_service.get_visible_project(session, projectId, auth.user)
    auth.ensure_owner(project.owner_id == auth.user_id)
    await project_service.delete_project(session, project)
    await record_audit(
        session, "project.deleted", user_id=auth.user_id, entity="Project", entity_id=projectId,
        request=request,
    )


@router.get("/{projectId}/statistics", response_model=ProjectStatistics)
async def project_statistics(
    projectId: uuid.UUID,
    auth: AuthContext = Depends(require_permission("project", "read")),
    session: AsyncSession = Depends(get_session),
):
    project = await project_service.get_visible_project(session, projectId, auth.user)
    return await project_service.project_statistics(session, project)


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------


@router.get("/{projectId}/members", response_model=List[ProjectMemberRead])
async def list_members(
    projectId: uuid.UUID,
    auth: AuthContext = Depends(require_permission("project", "read")),
    session: AsyncSession = Depends(get_session),
):
    project = await project_service.get_visible_project(session, projectId, auth.user)
    return await project_service.list_members(session, project)


@router.post("/{projectId}/members", response_model=List[ProjectMemberRead], status_code=201)
async def add_members(
    projectId: uuid.UUID,
    body: ProjectMemberAdd,
    request: Request,
    auth: AuthContext = Depends(require_permission("project", "update")),
    session: AsyncSession = Depends(get_session),
):
    project = await project_service.get_visible_project(session, projectId, auth.user)
    auth.ensure_owner(project.owner_id == auth.user_id)
    added = await project_service.add_members(session, project, body.user_ids)
    await record_audit(
        session, "project.members_added", user_id=auth.user_id, entity="Project",
        entity_id=project.id, details={"user_ids": [str(uid) for uid in added]},
        request=request,
    )
    return await project_service.list_members(session, project)


@router.delete("/{projectId}/members/{userId}", status_code=204)
async def remove_member(
    projectId: uuid.UUID,
    userId: uuid.UUID,
    request: Request,
    auth: AuthContext = Depends(require_permission("project", "update")),
    session: AsyncSession = Depends(get_session),
):
    project = await project_service.get_visible_project(session, projectId, auth.user)
    auth.ensure_owner(project.owner_id == auth.user_id)
    await project_service.remove_member(session, project, userId)
    await record_audit(
        session, "project.member_removed", user_id=auth.user_id, entity="Project",
        entity_id=project.id, details={"user_id": str(userId)},
        request=request,
    )

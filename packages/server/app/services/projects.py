"""
Project service: CRUD, visibility, statistics and membership.

Visibility: ADMIN and MANAGER see every project; USER sees projects they own
or are a member of. Invisible projects are reported as not found.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import or_, select

from app.core.errors import InvalidOperation, NotFound
from app.core.locks import ProjectLockRegistry, project_locks
from app.models.assignments import ProjectMember, TaskAssignee
from app.models.dependency import TaskDependency
from app.models.organization import Organization
from app.models.project import Project
from app.models.task import Task
from app.models.user import User
from app.services.tasks import lock_project_row, storage_errors
from ccpm_shared.schemas.common import Pagination, ProjectStatus, Role, TaskStatus
from ccpm_shared.schemas.projects import (
    ProjectCreate,
    ProjectMemberRead,
    ProjectRead,
    ProjectStatistics,
    ProjectUpdate,
    completion_rate,
)

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def sees_all_projects(user: User) -> bool:
    return user.role in (Role.ADMIN.value, Role.MANAGER.value)


def _visible_to(user: User):
    member_of = select(ProjectMember.project_id).where(ProjectMember.user_id == user.id)
    return or_(Project.owner_id == user.id, Project.id.in_(member_of))


async def is_member(session: AsyncSession, project_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    row = await session.get(ProjectMember, (project_id, user_id))
    return row is not None


async def get_project_or_404(session: AsyncSession, project_id: uuid.UUID) -> Project:
    project = await session.get(Project, project_id)
    if project is None:
        raise NotFound("Project not found")
    return project


async def get_visible_project(
    session: AsyncSession, project_id: uuid.UUID, user: User
) -> Project:
    project = await get_project_or_404(session, project_id)
    if sees_all_projects(user) or project.owner_id == user.id:
        return project
    if await is_member(session, project_id, user.id):
        return project
    raise NotFound("Project not found")


async def _task_counts(session: AsyncSession, project_ids: list[uuid.UUID]) -> dict:
    if not project_ids:
        return {}
    result = await session.execute(
        select(Task.project_id, func.count())
        .where(Task.project_id.in_(project_ids))
        .group_by(Task.project_id)
    )
    return {pid: count for pid, count in result.all()}


def _read(project: Project, task_count: int) -> ProjectRead:
    return ProjectRead(
        id=project.id,
        name=project.name,
        description=project.description,
        start_date=project.start_date,
        end_date=project.end_date,
        status=project.status,
        owner_id=project.owner_id,
        organization_id=project.organization_id,
        is_archived=project.is_archived,
        task_count=task_count,
        created_at=project.created_at,
        updated_at=project.updated_at,
    )


async def to_read(session: AsyncSession, project: Project) -> ProjectRead:
    counts = await _task_counts(session, [project.id])
    return _read(project, counts.get(project.id, 0))


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


async def list_projects(
    session: AsyncSession,
    user: User,
    *,
    page: int = 1,
    limit: int = 20,
    status: Optional[ProjectStatus] = None,
    search: Optional[str] = None,
    include_archived: bool = False,
) -> tuple[list[ProjectRead], Pagination]:
    filters = []
    if not sees_all_projects(user):
        filters.append(_visible_to(user))
    if status is not None:
        filters.append(Project.status == status.value)
    if search:
        filters.append(func.lower(Project.name).like(f"%{search.lower()}%"))
    if not include_archived:
        filters.append(Project.is_archived.is_(False))

    total = (
        await session.execute(select(func.count()).select_from(Project).where(*filters))
    ).scalar_one()
    result = await session.execute(
        select(Project)
        .where(*filters)
        .order_by(Project.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    projects = list(result.scalars().all())
    counts = await _task_counts(session, [p.id for p in projects])
    return (
        [_read(p, counts.get(p.id, 0)) for p in projects],
        Pagination.build(page, limit, total),
    )


async def create_project(session: AsyncSession, body: ProjectCreate, owner: User) -> Project:
    organization_id = body.organization_id or owner.organization_id
    if organization_id is not None and await session.get(Organization, organization_id) is None:
        raise NotFound("Organization not found")

    project = Project(
        name=body.name,
        description=body.description,
        start_date=body.start_date,
        end_date=body.end_date,
        owner_id=owner.id,
        organization_id=organization_id,
        status=ProjectStatus.PLANNING.value,
    )
    session.add(project)
    await session.flush()
    log.info("project.created", project_id=str(project.id), owner_id=str(owner.id))
    return project


async def update_project(session: AsyncSession, project: Project, body: ProjectUpdate) -> Project:
    data = body.model_dump(exclude_unset=True)
    if "status" in data and data["status"] is not None:
        data["status"] = ProjectStatus(data["status"]).value
    for key, value in data.items():
        setattr(project, key, value)
    session.add(project)
    await session.flush()
    log.info("project.updated", project_id=str(project.id), fields=sorted(data))
    return project


async def delete_project(
    session: AsyncSession, project: Project, locks: ProjectLockRegistry = project_locks
) -> None:
    """Delete a project along with its tasks, edges and memberships.

    Runs under the project's lock and row lock so no edge can be added between
    collecting the edges and deleting the tasks.
    """
    async with locks.hold(project.id):
        async with storage_errors(session):
            await lock_project_row(session, project.id)
            task_ids = select(Task.id).where(Task.project_id == project.id)
            for stmt in (
                select(TaskDependency).where(TaskDependency.project_id == project.id),
                select(TaskAssignee).where(TaskAssignee.task_id.in_(task_ids)),
                select(ProjectMember).where(ProjectMember.project_id == project.id),
            ):
                for row in (await session.execute(stmt)).scalars().all():
                    await session.delete(row)
            await session.flush()

            tasks = await session.execute(select(Task).where(Task.project_id == project.id))
            for task in tasks.scalars().all():
                await session.delete(task)
            await session.flush()

            await session.delete(project)
            await session.commit()
    log.info("project.deleted", project_id=str(project.id))


async def project_statistics(session: AsyncSession, project: Project) -> ProjectStatistics:
    result = await session.execute(
        select(Task.status, func.count())
        .where(Task.project_id == project.id)
        .group_by(Task.status)
    )
    by_status = {status: count for status, count in result.all()}
    total = sum(by_status.values())
    completed = by_status.get(TaskStatus.COMPLETED.value, 0)
    return ProjectStatistics(
        total_tasks=total,
        completed_tasks=completed,
        in_progress_tasks=by_status.get(TaskStatus.IN_PROGRESS.value, 0),
        todo_tasks=by_status.get(TaskStatus.TODO.value, 0),
        completion_rate=completion_rate(total, completed),
    )


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------


async def list_members(session: AsyncSession, project: Project) -> list[ProjectMemberRead]:
    result = await session.execute(
        select(ProjectMember, User)
        .join(User, User.id == ProjectMember.user_id)
        .where(ProjectMember.project_id == project.id)
        .order_by(ProjectMember.assigned_at)
    )
    return [
        ProjectMemberRead(
            user_id=user.id,
            username=user.username,
            name=user.name,
            assigned_at=member.assigned_at,
        )
        for member, user in result.all()
    ]


async def add_members(
    session: AsyncSession, project: Project, user_ids: list[uuid.UUID]
) -> list[uuid.UUID]:
    """Add users as members; already-present users are skipped. Returns the ids added."""
    unique_ids = list(dict.fromkeys(user_ids))
    found = set(
        (await session.execute(select(User.id).where(User.id.in_(unique_ids)))).scalars().all()
    )
    missing = [uid for uid in unique_ids if uid not in found]
    if missing:
        raise NotFound(f"User not found: {missing[0]}")

    added = []
    for uid in unique_ids:
        if await is_member(session, project.id, uid):
            continue
        session.add(ProjectMember(project_id=project.id, user_id=uid))
        added.append(uid)
    await session.flush()
    log.info("project.members_added", project_id=str(project.id), count=len(added))
    return added


async def remove_member(session: AsyncSession, project: Project, user_id: uuid.UUID) -> None:
    if user_id == project.owner_id:
        raise InvalidOperation("The project owner cannot be removed")
    member = await session.get(ProjectMember, (project.id, user_id))
    if member is None:
        raise NotFound("Member not found")
    await session.delete(member)
    await session.flush()
    log.info("project.member_removed", project_id=str(project.id), user_id=str(user_id))

"""
Task endpoints: CRUD, status updates, dependencies.

- Status is a plain enumeration set directly; there are no transition rules.
- Dependencies: ``task`` depends on ``depends_on_id``. Self, cross-project,
  duplicate and circular edges are rejected; additions are serialized per
  project.
- Ownership of a task: its creator or the owner of its project.
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import AuthContext, require_permission
from app.core.database import get_session
from app.models.project import Project
from app.models.task import Task
from app.models.user import User
from app.services import tasks as task_service
from app.services.audit import record_audit
from app.services.projects import get_visible_project
from ccpm_shared.schemas.common import Page, TaskPriority, TaskStatus
from ccpm_shared.schemas.tasks import (
    DependencyAdd,
    DependencyRead,
    TaskCreate,
    TaskRead,
    TaskStatusUpdate,
    TaskUpdate,
)

router = APIRouter()


async def _load_task(
    session: AsyncSession, task_id: uuid.UUID, user: User
) -> tuple[Task, Project]:
    """Fetch a task whose project the caller can see; otherwise 404."""
    task = await task_service.get_task_or_404(session, task_id)
    project = await get_visible_project(session, task.project_id, user)
    return task, project


# ---------------------------------------------------------------------------
# Task CRUD
# ---------------------------------------------------------------------------


@router.get("/project/{projectId}", response_model=Page[TaskRead])
async def list_tasks_endpoint(
    projectId: uuid.UUID,
    status: Optional[TaskStatus] = None,
    priority: Optional[TaskPriority] = None,
    assignee_id: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    auth: AuthContext = Depends(require_permission("task", "read")),
    session: AsyncSession = Depends(get_session),
):
    """List a project's tasks with optional filters by status, priority, assignee."""
    project = await get_visible_project(session, projectId, auth.user)
    data, pagination = await task_service.list_tasks(
        session,
        project.id,
        page=page,
        limit=limit,
        status=status,
        priority=priority,
        assignee_id=assignee_id,
        search=search,
    )
    return Page[TaskRead](data=data, pagination=pagination)


@router.post("/project/{projectId}", response_model=TaskRead, status_code=201)
async def create_task_endpoint(
    projectId: uuid.UUID,
    task_in: TaskCreate,
    request: Request,
    auth: AuthContext = Depends(require_permission("task", "create")),
    session: AsyncSession = Depends(get_session),
):
    """Create a task, optionally with initial dependencies and assignees."""
    project = await get_visible_project(session, projectId, auth.user)
    task = await task_service.create_task(session, project, task_in, auth.user_id)
    await record_audit(
        session, "task.created", user_id=auth.user_id, entity="Task", entity_id=task.id,
        details={"project_id": str(project.id), "title": task.title},
        request=request,
    )
    return await task_service.enrich_task(session, task)


@router.get("/{taskId}", response_model=TaskRead)
async def get_task_endpoint(
    taskId: uuid.UUID,
    auth: AuthContext = Depends(require_permission("task", "read")),
    session: AsyncSession = Depends(get_session),
):
    """Get a single task with its assignees, dependencies and dependents."""
    task, _project = await _load_task(session, taskId, auth.user)
    return await task_service.enrich_task(session, task)


@router.put("/{taskId}", response_model=TaskRead)
async def update_task_endpoint(
    taskId: uuid.UUID,
    task_in: TaskUpdate,
    request: Request,
    auth: AuthContext = Depends(require_permission("task", "update")),
    session: AsyncSession = Depends(get_session),
):
    task, project = await _load_task(session, taskId, auth.user)
    auth.ensure_owner(task_service.is_task_owner(task, project, auth.user_id))
    task = await task_service.update_task(session, task, task_in)
    await record_audit(
        session, "task.updated", user_id=auth.user_id, entity="Task", entity_id=task.id,
        details=task_in.model_dump(exclude_unset=True, mode="json"),
        request=request,
    )
    return await task_service.enrich_task(session, task)


@router.patch("/{taskId}/status", response_model=TaskRead)
async def update_task_status_endpoint(
    taskId: uuid.UUID,
    body: TaskStatusUpdate,
    request: Request,
    auth: AuthContext = Depends(require_permission("task", "update")),
    session: AsyncSession = Depends(get_session),
):
    task, project = await _load_task(session, taskId, auth.user)
    auth.ensure_owner(task_service.is_task_owner(task, project, auth.user_id))
    old_status = task.status
    task = await task_service.set_status(session, task, body.status)
    await record_audit(
        session, "task.status_changed", user_id=auth.user_id, entity="Task", entity_id=task.id,
        details={"from_status": old_status, "to_status": body.status.value},
        request=request,
    )
    return await task_service.enrich_task(session, task)


@router.delete("/{taskId}", status_code=204)
async def delete_task_endpoint(
    taskId: uuid.UUID,
    request: Request,
    auth: AuthContext = Depends(require_permission("task", "delete")),
    session: AsyncSession = Depends(get_session),
):
    """Delete a task together with every dependency edge that touches it."""
    task, project = await _load_task(session, taskId, auth.user)
    auth.ensure_owner(task_service.is_task_owner(task, project, auth.user_id))
    await task_service.delete_task(session, task)
    await record_audit(
        session, "task.deleted", user_id=auth.user_id, entity="Task", entity_id=taskId,
        details={"project_id": str(project.id)},
        request=request,
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


@router.post("/{taskId}/dependencies", response_model=DependencyRead, status_code=201)
async def add_dependency_endpoint(
    taskId: uuid.UUID,
    body: DependencyAdd,
    request: Request,
    auth: AuthContext = Depends(require_permission("task", "update")),
    session: AsyncSession = Depends(get_session),
):
    """Make the task depend on ``depends_on_id``. Rejects edges that would form a cycle."""
    task, project = await _load_task(session, taskId, auth.user)
    auth.ensure_owner(task_service.is_task_owner(task, project, auth.user_id))
    edge = await task_service.add_dependency(session, task, body.depends_on_id)
    await record_audit(
        session, "task.dependency.added", user_id=auth.user_id, entity="Task", entity_id=task.id,
        details={"depends_on_id": str(body.depends_on_id)},
        request=request,
    )
    return DependencyRead(
        task_id=edge.task_id, depends_on_id=edge.depends_on_id, project_id=edge.project_id
    )


@router.delete("/{taskId}/dependencies/{dependsOnId}", status_code=204)
async def remove_dependency_endpoint(
    taskId: uuid.UUID,
    dependsOnId: uuid.UUID,
    request: Request,
    auth: AuthContext = Depends(require_permission("task", "update")),
    session: AsyncSession = Depends(get_session),
):
    task, project = await _load_task(session, taskId, auth.user)
    auth.ensure_owner(task_service.is_task_owner(task, project, auth.user_id))
    await task_service.remove_dependency(session, task, dependsOnId)
    await record_audit(
        session, "task.dependency.removed", user_id=auth.user_id, entity="Task", entity_id=task.id,
        details={"depends_on_id": str(dependsOnId)},
        request=request,
    )

"""
Task service layer: business logic for tasks and their dependency graph.

Handles:
- Task CRUD with assignees
- Direct status updates (no transition rules)
- Dependency management guarded against self, cross-project, duplicate and
  circular edges, serialized per project
- Enrichment of task data for API responses

Most writes only flush and leave the commit to the request session. Writes that
change a project's graph (task create and delete, dependency add and remove)
commit inside the project lock, since the lock has to outlive the commit.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Optional, Sequence

import structlog
from sqlalchemy import func
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import or_, select

from app.core.dependency_graph import (
    DUPLICATE_DEPENDENCY,
    DependencyGraph,
    DependencyGraphGuard,
)
from app.core.errors import Conflict, InfrastructureError, InvalidOperation, NotFound
from app.core.locks import ProjectLockRegistry, project_locks
from app.models.assignments import TaskAssignee
from app.models.dependency import TaskDependency
from app.models.project import Project
from app.models.task import Task
from app.models.user import User
from ccpm_shared.schemas.common import Pagination, TaskPriority, TaskStatus
from ccpm_shared.schemas.tasks import TaskCreate, TaskRead, TaskRef, TaskUpdate

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def get_task_or_404(session: AsyncSession, task_id: uuid.UUID) -> Task:
    task = await session.get(Task, task_id)
    if task is None:
        raise NotFound("Task not found")
    return task


def is_task_owner(task: Task, project: Project, user_id: uuid.UUID) -> bool:
    """The task's creator and the owner of its project both own the task."""
    return task.created_by == user_id or project.owner_id == user_id


CONCURRENT_CHANGE = "conflicting concurrent change"


@asynccontextmanager
async def storage_errors(session: AsyncSession, conflict: str = CONCURRENT_CHANGE):
    """Translate driver failures into domain errors, rolling the session back.

    ``conflict`` is the message for a constraint violation; callers that can
    only violate the edge key pass the duplicate-edge message.
    """
    try:
        yield
    except IntegrityError as exc:
        await _rollback_quietly(session)
        raise Conflict(conflict) from exc
    except (DBAPIError, PoolTimeoutError) as exc:
        await _rollback_quietly(session)
        log.error("storage.unavailable", error=str(exc))
        raise InfrastructureError() from exc


async def _rollback_quietly(session: AsyncSession) -> None:
    try:
        await session.rollback()
    except SQLAlchemyError as exc:
        log.warning("storage.rollback_failed", error=str(exc))


async def _check_users_exist(session: AsyncSession, user_ids: Sequence[uuid.UUID]) -> list[uuid.UUID]:
    unique_ids = list(dict.fromkeys(user_ids))
    if not unique_ids:
        return []
    found = set(
        (await session.execute(select(User.id).where(User.id.in_(unique_ids)))).scalars().all()
    )
    for uid in unique_ids:
        if uid not in found:
            raise NotFound(f"User not found: {uid}")
    return unique_ids


async def load_project_graph(
    session: AsyncSession,
    project_id: uuid.UUID,
    extra_task_ids: Sequence[uuid.UUID] = (),
) -> DependencyGraph:
    """Snapshot one project's tasks and edges.

    ``extra_task_ids`` are loaded with their own project id so the guard can
    tell a missing task from one that lives in another project.
    """
    clauses = [Task.project_id == project_id]
    if extra_task_ids:
        clauses.append(Task.id.in_(list(extra_task_ids)))
    tasks = await session.execute(select(Task.id, Task.project_id).where(or_(*clauses)))
    edges = await session.execute(
        select(TaskDependency.task_id, TaskDependency.depends_on_id).where(
            TaskDependency.project_id == project_id
        )
    )
    return DependencyGraph.from_rows(tasks.all(), edges.all())


async def lock_project_row(session: AsyncSession, project_id: uuid.UUID) -> None:
    # FOR UPDATE is dropped by dialects without row locks (SQLite).
    result = await session.execute(
        select(Project.id).where(Project.id == project_id).with_for_update()
    )
    if result.scalar_one_or_none() is None:
        raise NotFound("Project not found")


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------


async def enrich_tasks(session: AsyncSession, tasks: Sequence[Task]) -> list[TaskRead]:
    """Convert Task rows to TaskRead with assignees and graph neighbours, batched."""
    if not tasks:
        return []
    ids = [t.id for t in tasks]

    assignees: dict[uuid.UUID, list[uuid.UUID]] = defaultdict(list)
    result = await session.execute(
        select(TaskAssignee.task_id, TaskAssignee.user_id).where(TaskAssignee.task_id.in_(ids))
    )
    for task_id, user_id in result.all():
        assignees[task_id].append(user_id)

    edges = (
        await session.execute(
            select(TaskDependency.task_id, TaskDependency.depends_on_id).where(
                or_(TaskDependency.task_id.in_(ids), TaskDependency.depends_on_id.in_(ids))
            )
        )
    ).all()
    neighbour_ids = {a for a, _ in edges} | {b for _, b in edges}
    refs: dict[uuid.UUID, TaskRef] = {}
    if neighbour_ids:
        rows = await session.execute(
            select(Task.id, Task.title, Task.status).where(Task.id.in_(neighbour_ids))
        )
        refs = {tid: TaskRef(id=tid, title=title, status=status) for tid, title, status in rows.all()}

    dependencies: dict[uuid.UUID, list[TaskRef]] = defaultdict(list)
    dependents: dict[uuid.UUID, list[TaskRef]] = defaultdict(list)
    for from_id, to_id in edges:
        if to_id in refs:
            dependencies[from_id].append(refs[to_id])
        if from_id in refs:
            dependents[to_id].append(refs[from_id])

    return [
        TaskRead(
            id=t.id,
            project_id=t.project_id,
            title=t.title,
            description=t.description,
            status=t.status,
            priority=t.priority,
            duration=t.duration,
            start_date=t.start_date,
            end_date=t.end_date,
            created_by=t.created_by,
            assignee_ids=assignees.get(t.id, []),
            dependencies=dependencies.get(t.id, []),
            dependents=dependents.get(t.id, []),
            created_at=t.created_at,
            updated_at=t.updated_at,
        )
        for t in tasks
    ]


async def enrich_task(session: AsyncSession, task: Task) -> TaskRead:
    return (await enrich_tasks(session, [task]))[0]


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


async def list_tasks(
    session: AsyncSession,
    project_id: uuid.UUID,
    *,
    page: int = 1,
    limit: int = 50,
    status: Optional[TaskStatus] = None,
    priority: Optional[TaskPriority] = None,
    assignee_id: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
) -> tuple[list[TaskRead], Pagination]:
    filters = [Task.project_id == project_id]
    if status is not None:
        filters.append(Task.status == status.value)
    if priority is not None:
        filters.append(Task.priority == priority.value)
    if assignee_id is not None:
        filters.append(
            Task.id.in_(select(TaskAssignee.task_id).where(TaskAssignee.user_id == assignee_id))
        )
    if search:
        filters.append(func.lower(Task.title).like(f"%{search.lower()}%"))

    total = (
        await session.execute(select(func.count()).select_from(Task).where(*filters))
    ).scalar_one()
    result = await session.execute(
        select(Task)
        .where(*filters)
        .order_by(Task.created_at)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    tasks = list(result.scalars().all())
    return await enrich_tasks(session, tasks), Pagination.build(page, limit, total)


async def create_task(
    session: AsyncSession,
    project: Project,
    task_in: TaskCreate,
    creator_id: uuid.UUID,
    locks: ProjectLockRegistry = project_locks,
) -> Task:
    """Create a task; initial dependencies go through the same guard as later edits."""
    assignee_ids = await _check_users_exist(session, task_in.assignee_ids)

    async with locks.hold(project.id):
        async with storage_errors(session):
            task = Task(
                project_id=project.id,
                title=task_in.title,
                description=task_in.description,
                priority=task_in.priority.value,
                status=TaskStatus.TODO.value,
                duration=task_in.duration,
                start_date=task_in.start_date,
                end_date=task_in.end_date,
                created_by=creator_id,
            )
            session.add(task)
            await session.flush()

            for uid in assignee_ids:
                session.add(TaskAssignee(task_id=task.id, user_id=uid))

            if task_in.dependencies:
                await lock_project_row(session, project.id)
                graph = await load_project_graph(session, project.id, task_in.dependencies)
                guard = DependencyGraphGuard(graph)
                for dep_id in task_in.dependencies:
                    guard.check_can_add(task.id, dep_id)
                    graph.add_edge(task.id, dep_id)
                    session.add(
                        TaskDependency(task_id=task.id, depends_on_id=dep_id, project_id=project.id)
                    )
            await session.commit()

    log.info(
        "task.created",
        task_id=str(task.id),
        project_id=str(project.id),
        dependencies=len(task_in.dependencies),
    )
    return task


async def update_task(session: AsyncSession, task: Task, task_in: TaskUpdate) -> Task:
    data = task_in.model_dump(exclude_unset=True)

    if "assignee_ids" in data:
        assignee_ids = await _check_users_exist(session, data.pop("assignee_ids") or [])
        existing = await session.execute(
            select(TaskAssignee).where(TaskAssignee.task_id == task.id)
        )
        for a in existing.scalars().all():
            await session.delete(a)
        await session.flush()
        for uid in assignee_ids:
            session.add(TaskAssignee(task_id=task.id, user_id=uid))

    for key in ("status", "priority"):
        if data.get(key) is not None:
            data[key] = data[key].value if hasattr(data[key], "value") else data[key]

    for key, value in data.items():
        if key in ("title", "status", "priority") and value is None:
            continue
        setattr(task, key, value)

    if task.start_date and task.end_date and task.end_date < task.start_date:
        raise InvalidOperation("End date must be after start date")

    session.add(task)
    await session.flush()
    log.info("task.updated", task_id=str(task.id), fields=sorted(task_in.model_dump(exclude_unset=True)))
    return task


async def set_status(session: AsyncSession, task: Task, status: TaskStatus) -> Task:
    old_status = task.status
    task.status = status.value
    session.add(task)
    await session.flush()
    log.info("task.status_changed", task_id=str(task.id), from_status=old_status, to_status=status.value)
    return task


async def delete_task(
    session: AsyncSession, task: Task, locks: ProjectLockRegistry = project_locks
) -> None:
    """Delete a task and every edge touching it."""
    async with locks.hold(task.project_id):
        async with storage_errors(session):
            edges = await session.execute(
                select(TaskDependency).where(
                    or_(TaskDependency.task_id == task.id, TaskDependency.depends_on_id == task.id)
                )
            )
            for edge in edges.scalars().all():
                await session.delete(edge)
            assignees = await session.execute(
                select(TaskAssignee).where(TaskAssignee.task_id == task.id)
            )
            for a in assignees.scalars().all():
                await session.delete(a)
            await session.flush()
            await session.delete(task)
            await session.commit()
    log.info("task.deleted", task_id=str(task.id), project_id=str(task.project_id))


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


async def add_dependency(
    session: AsyncSession,
    task: Task,
    depends_on_id: uuid.UUID,
    locks: ProjectLockRegistry = project_locks,
) -> TaskDependency:
    """Record that ``task`` depends on ``depends_on_id``.

    Check-then-commit runs under the project's lock so two requests cannot
    each pass the cycle check and jointly close a cycle.
    """
    project_id = task.project_id
    async with locks.hold(project_id):
        async with storage_errors(session, DUPLICATE_DEPENDENCY):
            await lock_project_row(session, project_id)
            graph = await load_project_graph(session, project_id, [depends_on_id])
            DependencyGraphGuard(graph).check_can_add(task.id, depends_on_id)

            edge = TaskDependency(task_id=task.id, depends_on_id=depends_on_id, project_id=project_id)
            session.add(edge)
            await session.commit()

    log.info(
        "task.dependency.added",
        task_id=str(task.id),
        depends_on_id=str(depends_on_id),
        project_id=str(project_id),
    )
    return edge


async def remove_dependency(
    session: AsyncSession,
    task: Task,
    depends_on_id: uuid.UUID,
    locks: ProjectLockRegistry = project_locks,
) -> None:
    async with locks.hold(task.project_id):
        async with storage_errors(session):
            edge = await session.get(TaskDependency, (task.id, depends_on_id))
            if edge is None:
                raise NotFound("Dependency not found")
            await session.delete(edge)
            await session.commit()

    log.info(
        "task.dependency.removed",
        task_id=str(task.id),
        depends_on_id=str(depends_on_id),
        project_id=str(task.project_id),
    )

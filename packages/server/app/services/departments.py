"""
Department service: CRUD inside an organization and the department tree.

A department's parent and manager must belong to the same organization, and
the parent chain may never loop back to the department itself.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from typing import Optional

import structlog
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import or_, select

from app.core.dependency_graph import DependencyGraph, is_reachable
from app.core.errors import Conflict, InvalidOperation, NotFound
from app.models.department import Department
from app.models.organization import Organization
from app.models.user import User
from ccpm_shared.schemas.common import Pagination
from ccpm_shared.schemas.organizations import (
    DepartmentCreateRequest,
    DepartmentListResponse,
    DepartmentNode,
    DepartmentResponse,
    DepartmentUpdateRequest,
)

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def get_department(dept_id: uuid.UUID, session: AsyncSession) -> Department:
    dept = await session.get(Department, dept_id)
    if dept is None:
        raise NotFound("Department not found")
    return dept


async def _member_counts(
    dept_ids: list[uuid.UUID], session: AsyncSession
) -> dict[uuid.UUID, int]:
    if not dept_ids:
        return {}
    result = await session.execute(
        select(User.department_id, func.count())
        .where(User.department_id.in_(dept_ids))
        .group_by(User.department_id)
    )
    return {dept_id: count for dept_id, count in result.all()}


async def _child_ids(
    dept_ids: list[uuid.UUID], session: AsyncSession
) -> dict[uuid.UUID, list[uuid.UUID]]:
    if not dept_ids:
        return {}
    result = await session.execute(
        select(Department.parent_id, Department.id)
        .where(Department.parent_id.in_(dept_ids))
        .order_by(Department.name)
    )
    children: dict[uuid.UUID, list[uuid.UUID]] = defaultdict(list)
    for parent_id, child_id in result.all():
        children[parent_id].append(child_id)
    return children


async def to_responses(
    depts: list[Department], session: AsyncSession
) -> list[DepartmentResponse]:
    ids = [d.id for d in depts]
    counts = await _member_counts(ids, session)
    children = await _child_ids(ids, session)
    return [
        DepartmentResponse(
            id=d.id,
            name=d.name,
            description=d.description,
            organization_id=d.organization_id,
            parent_id=d.parent_id,
            manager_id=d.manager_id,
            is_active=d.is_active,
            member_count=counts.get(d.id, 0),
            child_ids=children.get(d.id, []),
            created_at=d.created_at,
            updated_at=d.updated_at,
        )
        for d in depts
    ]


async def to_response(dept: Department, session: AsyncSession) -> DepartmentResponse:
    return (await to_responses([dept], session))[0]


async def _ensure_name_free(
    organization_id: uuid.UUID,
    name: str,
    session: AsyncSession,
    exclude_id: Optional[uuid.UUID] = None,
) -> None:
    stmt = select(Department.id).where(
        Department.organization_id == organization_id, Department.name == name
    )
    if exclude_id is not None:
        stmt = stmt.where(Department.id != exclude_id)
    if (await session.execute(stmt)).scalar_one_or_none():
        raise Conflict("Department name already exists in this organization")


async def _check_parent(
    organization_id: uuid.UUID, parent_id: uuid.UUID, session: AsyncSession
) -> None:
    parent = await session.get(Department, parent_id)
    if parent is None or parent.organization_id != organization_id:
        raise NotFound("Parent department not found or not in the same organization")


async def _check_manager(
    organization_id: uuid.UUID, manager_id: uuid.UUID, session: AsyncSession
) -> None:
    manager = await session.get(User, manager_id)
    if manager is None or manager.organization_id != organization_id or not manager.is_active:
        raise NotFound("Manager not found or not in the same organization")


async def _parent_chain(organization_id: uuid.UUID, session: AsyncSession) -> DependencyGraph:
    """Organization's departments as a graph whose edges point child -> parent."""
    rows = (
        await session.execute(
            select(Department.id, Department.parent_id).where(
                Department.organization_id == organization_id
            )
        )
    ).all()
    return DependencyGraph.from_rows(
        [(dept_id, organization_id) for dept_id, _ in rows],
        [(dept_id, parent_id) for dept_id, parent_id in rows if parent_id is not None],
    )


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


async def create_department(req: DepartmentCreateRequest, session: AsyncSession) -> Department:
    if await session.get(Organization, req.organization_id) is None:
        raise NotFound("Organization not found")
    await _ensure_name_free(req.organization_id, req.name, session)
    if req.parent_id is not None:
        await _check_parent(req.organization_id, req.parent_id, session)
    if req.manager_id is not None:
        await _check_manager(req.organization_id, req.manager_id, session)

    dept = Department(
        name=req.name,
        description=req.description,
        organization_id=req.organization_id,
        parent_id=req.parent_id,
        manager_id=req.manager_id,
    )
    session.add(dept)
    await session.flush()
    log.info("department.created", department_id=str(dept.id), organization_id=str(dept.organization_id))
    return dept


async def list_departments(
    session: AsyncSession,
    *,
    page: int = 1,
    limit: int = 10,
    search: Optional[str] = None,
    organization_id: Optional[uuid.UUID] = None,
    is_active: Optional[bool] = None,
) -> DepartmentListResponse:
    filters = []
    if search:
        pattern = f"%{search.lower()}%"
        filters.append(
            or_(
                func.lower(Department.name).like(pattern),
                func.lower(Department.description).like(pattern),
            )
        )
    if organization_id is not None:
        filters.append(Department.organization_id == organization_id)
    if is_active is not None:
        filters.append(Department.is_active == is_active)

    total = (
        await session.execute(select(func.count()).select_from(Department).where(*filters))
    ).scalar_one()
    result = await session.execute(
        select(Department)
        .where(*filters)
        .order_by(Department.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    depts = list(result.scalars().all())
    return DepartmentListResponse(
        data=await to_responses(depts, session),
        pagination=Pagination.build(page, limit, total),
    )


async def update_department(
    dept: Department, req: DepartmentUpdateRequest, session: AsyncSession
) -> Department:
    data = req.model_dump(exclude_unset=True)

    if data.get("name") and data["name"] != dept.name:
        await _ensure_name_free(dept.organization_id, data["name"], session, exclude_id=dept.id)

    parent_id = data.get("parent_id")
    if parent_id is not None and parent_id != dept.parent_id:
        if parent_id == dept.id:
            raise InvalidOperation("Department cannot be its own parent")
        await _check_parent(dept.organization_id, parent_id, session)
        # The new parent must not sit below this department already.
        if is_reachable(await _parent_chain(dept.organization_id, session), parent_id, dept.id):
            raise InvalidOperation("Circular reference detected in department hierarchy")

    if data.get("manager_id") is not None:
        await _check_manager(dept.organization_id, data["manager_id"], session)

    for key, value in data.items():
        if value is None and key not in ("parent_id", "manager_id"):
            continue
        setattr(dept, key, value)
    session.add(dept)
    await session.flush()
    log.info("department.updated", department_id=str(dept.id), fields=sorted(data))
    return dept


async def delete_department(dept: Department, session: AsyncSession) -> None:
    """Delete a department that has neither sub-departments nor users."""
    if (await _child_ids([dept.id], session)).get(dept.id):
        raise InvalidOperation("Cannot delete department with child departments")
    if (await _member_counts([dept.id], session)).get(dept.id, 0):
        raise InvalidOperation("Cannot delete department with assigned users")
    await session.delete(dept)
    await session.flush()
    log.info("department.deleted", department_id=str(dept.id))


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------


async def department_tree(organization_id: uuid.UUID, session: AsyncSession) -> list[DepartmentNode]:
    """Active departments of an organization as a forest, roots first, by name.

    A department whose parent is inactive is shown as a root.
    """
    depts = list(
        (
            await session.execute(
                select(Department)
                .where(
                    Department.organization_id == organization_id,
                    Department.is_active.is_(True),
                )
                .order_by(Department.name)
            )
        ).scalars().all()
    )
    counts = await _member_counts([d.id for d in depts], session)
    nodes = {
        d.id: DepartmentNode(
            id=d.id,
            name=d.name,
            description=d.description,
            manager_id=d.manager_id,
            member_count=counts.get(d.id, 0),
        )
        for d in depts
    }
    roots: list[DepartmentNode] = []
    for d in depts:
        if d.parent_id is not None and d.parent_id in nodes:
            nodes[d.parent_id].children.append(nodes[d.id])
        else:
            roots.append(nodes[d.id])
    return roots

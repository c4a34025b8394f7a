"""
Department API endpoints.

POST   /api/v1/departments               — Create a department (Admin)
GET    /api/v1/departments               — List departments (Manager+)
GET    /api/v1/departments/{deptId}      — Get a department (Manager+)
PUT    /api/v1/departments/{deptId}      — Update, re-parent or re-manage (Admin)
DELETE /api/v1/departments/{deptId}      — Delete an empty leaf department (Admin)
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import AuthContext, require_permission
from app.core.database import get_session
from app.services import departments as department_service
from app.services.audit import record_audit
from ccpm_shared.schemas.organizations import (
    DepartmentCreateRequest,
    DepartmentListResponse,
    DepartmentResponse,
    DepartmentUpdateRequest,
)

router = APIRouter()


@router.post("", response_model=DepartmentResponse, status_code=201)
async def create_department(
    body: DepartmentCreateRequest,
    request: Request,
    auth: AuthContext = Depends(require_permission("department", "create")),
    session: AsyncSession = Depends(get_session),
):
    dept = await department_service.create_department(body, session)
    await record_audit(
        session, "department.created", user_id=auth.user_id, entity="Department",
        entity_id=dept.id, details=body.model_dump(mode="json"),
        request=request,
    )
    return await department_service.to_response(dept, session)


@router.get("", response_model=DepartmentListResponse)
async def list_departments(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    organization_id: Optional[uuid.UUID] = None,
    is_active: Optional[bool] = None,
    auth: AuthContext = Depends(require_permission("department", "read")),
    session: AsyncSession = Depends(get_session),
):
    return await department_service.list_departments(
        session,
        page=page,
        limit=limit,
        search=search,
        organization_id=organization_id,
        is_active=is_active,
    )


@router.get("/{deptId}", response_model=DepartmentResponse)
async def get_department(
    deptId: uuid.UUID,
    auth: AuthContext = Depends(require_permission("department", "read")),
    session: AsyncSession = Depends(get_session),
):
    dept = await department_service.get_department(deptId, session)
    return await department_service.to_response(dept, session)


@router.put("/{deptId}", response_model=DepartmentResponse)
async def update_department(
    deptId: uuid.UUID,
    body: DepartmentUpdateRequest,
    request: Request,
    auth: AuthContext = Depends(require_permission("department", "update")),
    session: AsyncSession = Depends(get_session),
):
    dept = await department_service.get_department(deptId, session)
    dept = await department_service.update_department(dept, body, session)
    await record_audit(
        session, "department.updated", user_id=auth.user_id, entity="Department",
        entity_id=dept.id, details=body.model_dump(exclude_unset=True, mode="json"),
        request=request,
    )
    return await department_service.to_response(dept, session)


@router.delete("/{deptId}", status_code=204)
async def delete_department(
    deptId: uuid.UUID,
    request: Request,
    auth: AuthContext = Depends(require_permission("department", "delete")),
    session: AsyncSession = Depends(get_session),
):
    dept = await department_service.get_department(deptId, session)
    await department_service.delete_department(dept, session)
    await record_audit(
        session, "department.deleted", user_id=auth.user_id, entity="Department",
        entity_id=deptId, details={"name": dept.name},
        request=request,
    )

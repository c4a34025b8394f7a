"""
Audit log endpoints (read-only, Manager+).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import AuthContext, require_permission
from app.core.database import get_session
from app.services import audit as audit_service
from ccpm_shared.schemas.audit import AuditLogListResponse, AuditLogRead

router = APIRouter()


@router.get("", response_model=AuditLogListResponse)
async def list_audit_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    user_id: Optional[uuid.UUID] = None,
    action: Optional[str] = None,
    entity: Optional[str] = None,
    entity_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    auth: AuthContext = Depends(require_permission("auditlog", "read")),
    session: AsyncSession = Depends(get_session),
):
    return await audit_service.list_audit_logs(
        session,
        page=page,
        limit=limit,
        user_id=user_id,
        action=action,
        entity=entity,
        entity_id=entity_id,
        since=since,
        until=until,
    )


@router.get("/user/{userId}", response_model=AuditLogListResponse)
async def list_user_audit_logs(
    userId: uuid.UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    auth: AuthContext = Depends(require_permission("auditlog", "read")),
    session: AsyncSession = Depends(get_session),
):
    return await audit_service.list_audit_logs(session, page=page, limit=limit, user_id=userId)


@router.get("/{logId}", response_model=AuditLogRead)
async def get_audit_log(
    logId: uuid.UUID,
    auth: AuthContext = Depends(require_permission("auditlog", "read")),
    session: AsyncSession = Depends(get_session),
):
    return await audit_service.get_audit_log(session, logId)

"""
Audit trail: append-only record of security-relevant and mutating actions.

Rows are written inside a savepoint of the caller's transaction, so they
commit together with the change they describe. A row that cannot be written
is logged and dropped; the change itself goes ahead.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

import structlog
from fastapi import Request
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.errors import NotFound
from app.models.audit_log import AuditLog
from ccpm_shared.schemas.audit import AuditLogListResponse, AuditLogRead
from ccpm_shared.schemas.common import Pagination

log = structlog.get_logger()


def _client_info(request: Optional[Request]) -> tuple[Optional[str], Optional[str]]:
    if request is None:
        return None, None
    ip = request.client.host if request.client else None
    return ip, request.headers.get("user-agent")


async def record_audit(
    session: AsyncSession,
    action: str,
    *,
    user_id: Optional[uuid.UUID] = None,
    entity: str = "System",
    entity_id: Any = None,
    details: Optional[dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> Optional[AuditLog]:
    """Write an audit row and mirror it to the structured log.

    Returns None when the row could not be stored.
    """
    ip, user_agent = _client_info(request)
    entry = AuditLog(
        user_id=user_id,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        details=details or {},
        ip_address=ip,
        user_agent=user_agent,
    )
    # The caller's pending changes are flushed outside the savepoint so their
    # failures still propagate.
    await session.flush()
    try:
        async with session.begin_nested():
            session.add(entry)
    except SQLAlchemyError as exc:
        log.error(
            "audit.write_failed",
            action=action,
            entity=entity,
            entity_id=entry.entity_id,
            error=str(exc),
        )
        return None
    log.info(
        "audit.recorded",
        action=action,
        entity=entity,
        entity_id=entry.entity_id,
        actor_id=str(user_id) if user_id else None,
    )
    return entry


async def list_audit_logs(
    session: AsyncSession,
    *,
    page: int = 1,
    limit: int = 50,
    user_id: Optional[uuid.UUID] = None,
    action: Optional[str] = None,
    entity: Optional[str] = None,
    entity_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> AuditLogListResponse:
    """Newest-first page of audit rows matching every given filter."""
    filters = []
    if user_id is not None:
        filters.append(AuditLog.user_id == user_id)
    if action:
        filters.append(AuditLog.action == action)
    if entity:
        filters.append(AuditLog.entity == entity)
    if entity_id:
        filters.append(AuditLog.entity_id == entity_id)
    if since is not None:
        filters.append(AuditLog.created_at >= since)
    if until is not None:
        filters.append(AuditLog.created_at <= until)

    total = (
        await session.execute(select(func.count()).select_from(AuditLog).where(*filters))
    ).scalar_one()

    result = await session.execute(
        select(AuditLog)
        .where(*filters)
        .order_by(AuditLog.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    rows = result.scalars().all()
    return AuditLogListResponse(
        data=[AuditLogRead.model_validate(r) for r in rows],
        pagination=Pagination.build(page, limit, total),
    )


async def get_audit_log(session: AsyncSession, log_id: uuid.UUID) -> AuditLog:
    entry = await session.get(AuditLog, log_id)
    if entry is None:
        raise NotFound("Audit log not found")
    return entry

"""Audit log schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field, UUID4

from .common import Pagination


class AuditLogRead(BaseModel):
    id: UUID4
    user_id: Optional[UUID4] = None
    action: str
    entity: str
    entity_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class AuditLogListResponse(BaseModel):
    data: List[AuditLogRead]
    pagination: Pagination

"""Audit log model (append-only)."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import utcnow


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: Optional[uuid.UUID] = Field(
        default=None, foreign_key="users.id", ondelete="SET NULL", index=True
    )
    action: str = Field(nullable=False, index=True)  # e.g. task.dependency.added, auth.login
    entity: str = Field(nullable=False, default="System")
    entity_id: Optional[str] = None
    details: dict = Field(default_factory=dict, sa_type=sa.JSON, nullable=False)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        index=True,
        sa_type=sa.DateTime(timezone=True),
    )

"""Department model: a unit inside an organization, optionally nested."""

from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class Department(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "departments"
    __table_args__ = (
        sa.UniqueConstraint("organization_id", "name", name="uq_departments_organization_name"),
    )

    name: str = Field(nullable=False)
    description: Optional[str] = None
    organization_id: uuid.UUID = Field(foreign_key="organizations.id", nullable=False, index=True)
    parent_id: Optional[uuid.UUID] = Field(default=None, foreign_key="departments.id", index=True)
    # Plain column: users already reference departments, so a key here would
    # make the two tables depend on each other.
    manager_id: Optional[uuid.UUID] = Field(default=None, index=True)
    is_active: bool = Field(default=True, nullable=False)

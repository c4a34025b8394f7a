"""Task-related Pydantic schemas for shared use across server and frontend codegen."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic import UUID4

from .common import TaskPriority, TaskStatus


# ---------------------------------------------------------------------------
# Task CRUD
# ---------------------------------------------------------------------------

class TaskBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    priority: TaskPriority = TaskPriority.MEDIUM
    duration: Optional[int] = Field(default=None, ge=1, description="Estimated duration in hours")
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_dates(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("End date must be after start date")
        return self


class TaskCreate(TaskBase):
    dependencies: List[UUID4] = Field(default_factory=list)
    assignee_ids: List[UUID4] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    priority: Optional[TaskPriority] = None
    status: Optional[TaskStatus] = None
    duration: Optional[int] = Field(default=None, ge=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    assignee_ids: Optional[List[UUID4]] = None


class TaskStatusUpdate(BaseModel):
    """Request body for PATCH /tasks/{taskId}/status."""
    status: TaskStatus


class TaskRef(BaseModel):
    """Compact reference to a neighbouring task in the dependency graph."""
    id: UUID4
    title: str
    status: TaskStatus


class TaskRead(BaseModel):
    id: UUID4
    project_id: UUID4
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    duration: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_by: Optional[UUID4] = None
    assignee_ids: List[UUID4] = Field(default_factory=list)
    dependencies: List[TaskRef] = Field(default_factory=list)
    dependents: List[TaskRef] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

class DependencyAdd(BaseModel):
    """Request body for POST /tasks/{taskId}/dependencies."""
    depends_on_id: UUID4


class DependencyRead(BaseModel):
    task_id: UUID4
    depends_on_id: UUID4
    project_id: UUID4

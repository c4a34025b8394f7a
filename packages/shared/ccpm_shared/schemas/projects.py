from typing import Optional, List
from pydantic import BaseModel, Field, model_validator
from uuid import UUID
from datetime import datetime
from .common import ProjectStatus


class ProjectBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ProjectCreate(ProjectBase):
    organization_id: Optional[UUID] = None

    @model_validator(mode="after")
    def _check_dates(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("End date must be after start date")
        return self


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    status: Optional[ProjectStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_archived: Optional[bool] = None


class ProjectRead(ProjectBase):
    id: UUID
    status: ProjectStatus
    owner_id: UUID
    organization_id: Optional[UUID] = None
    is_archived: bool = False
    task_count: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ProjectStatistics(BaseModel):
    total_tasks: int
    completed_tasks: int
    in_progress_tasks: int
    todo_tasks: int
    completion_rate: float


class ProjectMemberAdd(BaseModel):
    user_ids: List[UUID]


class ProjectMemberRead(BaseModel):
    user_id: UUID
    username: str
    name: Optional[str] = None
    assigned_at: datetime


def completion_rate(total: int, completed: int) -> float:
    """Percentage of completed tasks; 0 for an empty project."""
    if total <= 0:
        return 0.0
    return completed / total * 100

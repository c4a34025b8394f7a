"""
Organization-related Pydantic schemas shared between server and client codegen.

Covers: Org CRUD request/response, member assignment and departments.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .common import Pagination


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class OrgCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Organization display name")
    description: Optional[str] = Field(default=None, max_length=500)


class OrgUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    is_active: Optional[bool] = None


class OrgMemberAssign(BaseModel):
    user_id: uuid.UUID
    department_id: Optional[uuid.UUID] = None


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class OrgResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: Optional[str] = None
    is_active: bool
    member_count: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Departments
# ---------------------------------------------------------------------------

class DepartmentCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    organization_id: uuid.UUID
    parent_id: Optional[uuid.UUID] = None
    manager_id: Optional[uuid.UUID] = None


class DepartmentUpdateRequest(BaseModel):
    """``parent_id`` / ``manager_id`` sent as null detach the department."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    parent_id: Optional[uuid.UUID] = None
    manager_id: Optional[uuid.UUID] = None
    is_active: Optional[bool] = None


class DepartmentResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: Optional[str] = None
    organization_id: uuid.UUID
    parent_id: Optional[uuid.UUID] = None
    manager_id: Optional[uuid.UUID] = None
    is_active: bool
    member_count: int = 0
    child_ids: List[uuid.UUID] = []
    created_at: datetime
    updated_at: datetime


class DepartmentListResponse(BaseModel):
    data: List[DepartmentResponse]
    pagination: Pagination


class DepartmentNode(BaseModel):
    """One department in an organization's tree."""
    id: uuid.UUID
    name: str
    description: Optional[str] = None
    manager_id: Optional[uuid.UUID] = None
    member_count: int = 0
    children: List["DepartmentNode"] = []


DepartmentNode.model_rebuild()

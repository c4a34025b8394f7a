"""User management and authentication schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, EmailStr, Field, UUID4

from .common import Pagination, Role

USERNAME_PATTERN = r"^[A-Za-z0-9]+$"
MIN_PASSWORD_LENGTH = 8


# ---------------------------------------------------------------------------
# Auth request schemas
# ---------------------------------------------------------------------------

class RegisterRequest(BaseModel):
    email: EmailStr
    username: str = Field(min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    name: Optional[str] = Field(default=None, max_length=100)
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class EmailRequest(BaseModel):
    email: EmailStr


class VerifyEmailRequest(BaseModel):
    token: str


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str = Field(min_length=MIN_PASSWORD_LENGTH)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(min_length=MIN_PASSWORD_LENGTH)


# ---------------------------------------------------------------------------
# User management request schemas
# ---------------------------------------------------------------------------

class ProfileUpdateRequest(BaseModel):
    """Self-service profile update."""
    name: Optional[str] = Field(default=None, max_length=100)
    username: Optional[str] = Field(default=None, min_length=3, max_length=30, pattern=USERNAME_PATTERN)


class UserUpdateRequest(BaseModel):
    """Admin update of another user."""
    name: Optional[str] = Field(default=None, max_length=100)
    username: Optional[str] = Field(default=None, min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: Optional[EmailStr] = None
    role: Optional[Role] = None


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class UserResponse(BaseModel):
    """Single user response. Never includes the password hash."""
    id: UUID4
    email: str
    username: str
    name: Optional[str] = None
    role: Role
    is_active: bool
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    organization_id: Optional[UUID4] = None
    department_id: Optional[UUID4] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokenPair


class UserListResponse(BaseModel):
    """Paginated list of users."""
    data: List[UserResponse]
    pagination: Pagination


class MessageResponse(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Bulk administration
# ---------------------------------------------------------------------------

class BulkUserIds(BaseModel):
    user_ids: List[UUID4] = Field(min_length=1, max_length=100)


class BulkUserUpdate(BulkUserIds):
    updates: UserUpdateRequest


class BulkFailure(BaseModel):
    user_id: UUID4
    error: str


class BulkResult(BaseModel):
    """Per-user outcome of a bulk operation; one failure does not stop the rest."""
    success_count: int
    succeeded: List[UUID4]
    failed: List[BulkFailure]

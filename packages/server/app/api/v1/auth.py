"""
Authentication endpoints.

- Email/password registration & login (with lockout)
- Token pair refresh (rotation) and logout (revocation)
- Email verification and password reset
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import create_token_pair, get_current_user
from app.core.database import get_session
from app.models.user import User
from app.services import auth as auth_service
from app.services.audit import record_audit
from app.services.email import EmailSender, get_email_sender
from ccpm_shared.schemas.users import (
    AuthResponse,
    EmailRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenPair,
    UserResponse,
    VerifyEmailRequest,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# Registration / login
# ---------------------------------------------------------------------------

@router.post("/register", response_model=AuthResponse, status_code=201)
async def register(
    body: RegisterRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    sender: EmailSender = Depends(get_email_sender),
):
    """Register a new account. A verification link is emailed to the address."""
    user = await auth_service.register_user(session, body, sender)
    await record_audit(
        session, "auth.register", user_id=user.id, entity="User", entity_id=user.id, request=request
    )
    return AuthResponse(user=UserResponse.model_validate(user), tokens=create_token_pair(user))


@router.post("/login", response_model=AuthResponse)
async def login(
    body: LoginRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    sender: EmailSender = Depends(get_email_sender),
):
    """Authenticate with email/password and receive an access/refresh token pair."""
    user = await auth_service.authenticate(session, body.email, body.password, sender)
    await record_audit(
        session, "auth.login", user_id=user.id, entity="User", entity_id=user.id, request=request
    )
    return AuthResponse(user=UserResponse.model_validate(user), tokens=create_token_pair(user))


# ---------------------------------------------------------------------------
# Session management
# ---------------------------------------------------------------------------

@router.post("/refresh", response_model=TokenPair)
async def refresh(
    body: RefreshRequest,
    session: AsyncSession = Depends(get_session),
):
    """Exchange a refresh token for a new pair. The old refresh token stops working."""
    _user, tokens = await auth_service.rotate_refresh_token(session, body.refresh_token)
    return tokens


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    body: LogoutRequest | None = None,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    """Revoke the current access token and, if given, the refresh token."""
    await auth_service.logout(request.state.token_payload, body.refresh_token if body else None)
    await record_audit(
        session, "auth.logout", user_id=user.id, entity="User", entity_id=user.id, request=request
    )
    return MessageResponse(message="Logged out")


@router.get("/profile", response_model=UserResponse)
async def profile(user: User = Depends(get_current_user)):
    return user


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------

@router.post("/verify-email", response_model=MessageResponse)
async def verify_email(
    body: VerifyEmailRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    user = await auth_service.verify_email(session, body.token)
    await record_audit(
        session, "auth.email_verified", user_id=user.id, entity="User", entity_id=user.id, request=request
    )
    return MessageResponse(message="Email verified")


@router.post("/resend-verification", response_model=MessageResponse)
async def resend_verification(
    body: EmailRequest,
    session: AsyncSession = Depends(get_session),
    sender: EmailSender = Depends(get_email_sender),
):
    await auth_service.resend_verification(session, body.email, sender)
    return MessageResponse(message="If the address needs verification, a link has been sent")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------

@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(
    body: EmailRequest,
    session: AsyncSession = Depends(get_session),
    sender: EmailSender = Depends(get_email_sender),
):
    """Always answers the same way so account existence is not revealed."""
    await auth_service.request_password_reset(session, body.email, sender)
    return MessageResponse(message="If the account exists, a reset link has been sent")


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    user = await auth_service.reset_password(session, body.token, body.new_password)
    await record_audit(
        session, "auth.password_reset", user_id=user.id, entity="User", entity_id=user.id, request=request
    )
    return MessageResponse(message="Password has been reset")

"""
Account lifecycle: registration, login with lockout, token rotation,
email verification and password reset.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import or_, select

from app.core.auth import (
    PASSWORD_RESET,
    REFRESH,
    VERIFY_EMAIL,
    create_password_reset_token,
    create_token_pair,
    create_verification_token,
    decode_token,
    hash_password,
    is_jwt_revoked,
    password_fingerprint,
    remaining_ttl,
    revoke_jwt,
    verify_password,
)
from app.core.config import get_settings
from app.core.errors import AuthenticationError, Conflict, InvalidOperation
from app.models.user import User
from app.services.email import (
    EmailSender,
    account_locked_email,
    password_reset_email,
    verification_email,
)
from ccpm_shared.schemas.common import Role
from ccpm_shared.schemas.users import RegisterRequest, TokenPair

log = structlog.get_logger()
settings = get_settings()

INVALID_CREDENTIALS = "Invalid email or password"


async def _user_by_email(session: AsyncSession, email: str) -> Optional[User]:
    result = await session.execute(select(User).where(User.email == email.lower()))
    return result.scalar_one_or_none()


async def ensure_unique_identity(
    session: AsyncSession,
    *,
    email: Optional[str] = None,
    username: Optional[str] = None,
    exclude_id: Optional[uuid.UUID] = None,
) -> None:
    """Raise Conflict if another user already holds the email or username."""
    clauses = []
    if email:
        clauses.append(User.email == email.lower())
    if username:
        clauses.append(User.username == username)
    if not clauses:
        return
    stmt = select(User).where(or_(*clauses))
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    existing = (await session.execute(stmt)).scalars().first()
    if existing is None:
        return
    if email and existing.email == email.lower():
        raise Conflict("Email already registered")
    raise Conflict("Username already taken")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

async def register_user(
    session: AsyncSession, body: RegisterRequest, sender: EmailSender
) -> User:
    await ensure_unique_identity(session, email=body.email, username=body.username)

    user = User(
        email=body.email.lower(),
        username=body.username,
        name=body.name,
        password_hash=hash_password(body.password),
        role=Role.USER.value,
    )
    session.add(user)
    await session.flush()

    await sender.send(verification_email(user.email, create_verification_token(user)))
    log.info("user.registered", user_id=str(user.id), email=user.email)
    return user


# ---------------------------------------------------------------------------
# Login / lockout
# ---------------------------------------------------------------------------

async def authenticate(
    session: AsyncSession, email: str, password: str, sender: EmailSender
) -> User:
    """Verify credentials, applying the failed-attempt lockout policy."""
    user = await _user_by_email(session, email)
    if user is None:
        log.warning("auth.login_failure", email=email, reason="unknown_email")
        raise AuthenticationError(INVALID_CREDENTIALS)

    now = datetime.now(timezone.utc)
    if user.is_locked(now):
        log.warning("auth.login_failure", user_id=str(user.id), reason="locked")
        raise AuthenticationError("Account is locked")

    if not verify_password(password, user.password_hash):
        user.failed_login_attempts += 1
        if user.failed_login_attempts >= settings.lockout_threshold:
            user.locked_until = now + timedelta(minutes=settings.lockout_minutes)
            user.failed_login_attempts = 0
            session.add(user)
            await session.commit()
            await sender.send(account_locked_email(user.email, settings.lockout_minutes))
            log.warning("auth.account_locked", user_id=str(user.id))
            raise AuthenticationError("Account is locked")
        session.add(user)
        # Persist the counter; the raise below rolls back the request session.
        await session.commit()
        log.warning(
            "auth.login_failure",
            user_id=str(user.id),
            reason="bad_password",
            attempts=user.failed_login_attempts,
        )
        raise AuthenticationError(INVALID_CREDENTIALS)

    if not user.is_active:
        log.warning("auth.login_failure", user_id=str(user.id), reason="inactive")
        raise AuthenticationError("Account is deactivated")

    user.failed_login_attempts = 0
    user.locked_until = None
    user.last_login_at = now
    session.add(user)
    await session.flush()

    log.info("auth.login_success", user_id=str(user.id))
    return user


# ---------------------------------------------------------------------------
# Session management
# ---------------------------------------------------------------------------

async def rotate_refresh_token(session: AsyncSession, refresh_token: str) -> tuple[User, TokenPair]:
    """Exchange a refresh token for a new pair; the presented token is revoked."""
    payload = decode_token(refresh_token, REFRESH)
    jti = payload.get("jti")
    if jti and await is_jwt_revoked(jti):
        log.warning("auth.refresh_reuse", jti=jti)
        raise AuthenticationError("Session has been revoked")

    user = await session.get(User, uuid.UUID(payload["sub"]))
    if user is None or not user.is_active:
        raise AuthenticationError("Account is deactivated")

    if jti:
        await revoke_jwt(jti, remaining_ttl(payload))

    log.info("auth.token_refreshed", user_id=str(user.id))
    return user, create_token_pair(user)


async def logout(access_payload: dict, refresh_token: Optional[str]) -> None:
    """Revoke the caller's access token and, if supplied, their refresh token."""
    jti = access_payload.get("jti")
    if jti:
        await revoke_jwt(jti, remaining_ttl(access_payload))

    if refresh_token:
        try:
            payload = decode_token(refresh_token, REFRESH)
        except AuthenticationError:
            # Already expired or invalid; nothing left to revoke.
            payload = None
        if payload and payload.get("sub") == access_payload.get("sub") and payload.get("jti"):
            await revoke_jwt(payload["jti"], remaining_ttl(payload))

    log.info("auth.logout", user_id=access_payload.get("sub"))


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------

async def verify_email(session: AsyncSession, token: str) -> User:
    try:
        payload = decode_token(token, VERIFY_EMAIL)
    except AuthenticationError as exc:
        raise InvalidOperation("Invalid or expired verification token") from exc

    user = await session.get(User, uuid.UUID(payload["sub"]))
    if user is None or user.email != payload.get("email"):
        raise InvalidOperation("Invalid or expired verification token")

    if not user.email_verified:
        user.email_verified = True
        user.email_verified_at = datetime.now(timezone.utc)
        session.add(user)
        await session.flush()
        log.info("user.email_verified", user_id=str(user.id))
    return user


async def resend_verification(session: AsyncSession, email: str, sender: EmailSender) -> None:
    """Re-send the verification link. Silent for unknown or verified addresses."""
    user = await _user_by_email(session, email)
    if user is None or user.email_verified:
        return
    await sender.send(verification_email(user.email, create_verification_token(user)))


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------

async def request_password_reset(session: AsyncSession, email: str, sender: EmailSender) -> None:
    """Send a reset link. Silent for unknown addresses to avoid account enumeration."""
    user = await _user_by_email(session, email)
    if user is None or not user.is_active:
        log.info("auth.password_reset_ignored", email=email)
        return
    await sender.send(password_reset_email(user.email, create_password_reset_token(user)))
    log.info("auth.password_reset_requested", user_id=str(user.id))


async def reset_password(session: AsyncSession, token: str, new_password: str) -> User:
    try:
        payload = decode_token(token, PASSWORD_RESET)
    except AuthenticationError as exc:
        raise InvalidOperation("Invalid or expired reset token") from exc

    user = await session.get(User, uuid.UUID(payload["sub"]))
    # The token is bound to the hash it was issued against, so it stops working once used.
    if user is None or payload.get("pwh") != password_fingerprint(user.password_hash):
        raise InvalidOperation("Invalid or expired reset token")

    user.password_hash = hash_password(new_password)
    user.failed_login_attempts = 0
    user.locked_until = None
    session.add(user)
    await session.flush()
    log.info("auth.password_reset", user_id=str(user.id))
    return user


async def change_password(
    session: AsyncSession, user: User, current_password: str, new_password: str
) -> None:
    if not verify_password(current_password, user.password_hash):
        raise InvalidOperation("Current password is incorrect")
    user.password_hash = hash_password(new_password)
    session.add(user)
    await session.flush()
    log.info("user.password_changed", user_id=str(user.id))

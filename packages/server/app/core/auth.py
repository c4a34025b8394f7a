"""
Authentication and authorization for the CCPM API.

Supports:
- Email/password login with bcrypt hashes
- Access + refresh JWT pair with rotation and a Redis revocation list
- Single-purpose signed tokens (email verification, password reset)
- Permission-table authorization dependencies
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import get_session
from app.core.errors import AuthenticationError, InfrastructureError
from app.core.permissions import AccessControl, AccessDecision, Principal
from app.core.redis import get_redis
from app.models.user import User
from ccpm_shared.schemas.users import TokenPair

log = structlog.get_logger()
settings = get_settings()

bearer_scheme = HTTPBearer(auto_error=False)

ACCESS = "access"
REFRESH = "refresh"
VERIFY_EMAIL = "verify_email"
PASSWORD_RESET = "password_reset"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

def hash_password(password: str) -> str:
    """Hash a password using bcrypt with the configured cost factor."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=settings.bcrypt_rounds)).decode()


def verify_password(password: str, hashed: str) -> bool:
    """Verify a password against a bcrypt hash."""
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        # Malformed stored hash
        return False


def password_fingerprint(password_hash: str) -> str:
    """Short digest of the stored hash; changes whenever the password does."""
    return hashlib.sha256(password_hash.encode()).hexdigest()[:16]


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def _secret_for(token_type: str) -> str:
    return settings.refresh_secret_key if token_type == REFRESH else settings.secret_key


def create_token(
    user_id: uuid.UUID,
    token_type: str,
    expires_delta: timedelta,
    **claims,
) -> tuple[str, str]:
    """Create a signed JWT of the given type. Returns (token, jti)."""
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "type": token_type,
        "iat": now,
        "exp": now + expires_delta,
        "jti": jti,
        **claims,
    }
    token = jwt.encode(payload, _secret_for(token_type), algorithm=settings.jwt_algorithm)
    return token, jti


def decode_token(token: str, token_type: str) -> dict:
    """Decode and verify a JWT of the expected type.

    Raises AuthenticationError on a bad signature, expiry or type mismatch.
    """
    try:
        payload = jwt.decode(token, _secret_for(token_type), algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.PyJWTError:
        raise AuthenticationError("Invalid token")
    if payload.get("type") != token_type or "sub" not in payload:
        raise AuthenticationError("Invalid token")
    return payload


def create_access_token(user: User) -> tuple[str, str]:
    return create_token(
        user.id,
        ACCESS,
        timedelta(minutes=settings.access_token_expire_minutes),
        role=user.role,
    )


def create_refresh_token(user: User) -> tuple[str, str]:
    return create_token(user.id, REFRESH, timedelta(days=settings.refresh_token_expire_days))


def create_token_pair(user: User) -> TokenPair:
    access_token, _ = create_access_token(user)
    refresh_token, _ = create_refresh_token(user)
    return TokenPair(access_token=access_token, refresh_token=refresh_token)


def create_verification_token(user: User) -> str:
    token, _ = create_token(
        user.id,
        VERIFY_EMAIL,
        timedelta(hours=settings.email_verification_expire_hours),
        email=user.email,
    )
    return token


def create_password_reset_token(user: User) -> str:
    token, _ = create_token(
        user.id,
        PASSWORD_RESET,
        timedelta(minutes=settings.password_reset_expire_minutes),
        pwh=password_fingerprint(user.password_hash),
    )
    return token


def remaining_ttl(payload: dict) -> int:
    """Seconds until the token's ``exp``; at least one."""
    exp = int(payload.get("exp", 0))
    return max(exp - int(datetime.now(timezone.utc).timestamp()), 1)


# ---------------------------------------------------------------------------
# JWT Revocation (Redis)
# ---------------------------------------------------------------------------

async def revoke_jwt(jti: str, ttl_seconds: int = 3600) -> None:
    """Add a JWT ID to the revocation list in Redis."""
    try:
        redis = await get_redis()
        await redis.setex(f"jwt:revoked:{jti}", ttl_seconds, "1")
    except RedisError as exc:
        raise InfrastructureError("Token store unavailable") from exc


async def is_jwt_revoked(jti: str) -> bool:
    """Check if a JWT ID has been revoked."""
    try:
        redis = await get_redis()
        return await redis.exists(f"jwt:revoked:{jti}") > 0
    except RedisError as exc:
        raise InfrastructureError("Token store unavailable") from exc


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

@dataclass
class AuthContext:
    """Authenticated caller plus the phase-one access decision for the route."""

    user: User
    principal: Principal
    access_control: AccessControl
    decision: Optional[AccessDecision] = None
    resource: Optional[str] = None
    action: Optional[str] = None

    @property
    def user_id(self) -> uuid.UUID:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role

    def ensure_owner(self, is_owner: bool) -> None:
        """Phase two: only consulted when the role grant depends on ownership."""
        if self.decision is None or not self.decision.requires_ownership_check:
            return
        self.access_control.authorize_owner(self.principal, self.resource, self.action, is_owner)


def get_access_control(request: Request) -> AccessControl:
    return request.app.state.access_control


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_session),
) -> User:
    """Resolve the bearer access token to an active user."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Authentication required")

    payload = decode_token(credentials.credentials, ACCESS)
    jti = payload.get("jti")
    if jti and await is_jwt_revoked(jti):
        raise AuthenticationError("Session has been revoked")

    try:
        user_id = uuid.UUID(payload["sub"])
    except ValueError:
        raise AuthenticationError("Invalid token")

    user = await session.get(User, user_id)
    if user is None:
        raise AuthenticationError("User not found")
    if not user.is_active:
        raise AuthenticationError("Account is deactivated")

    request.state.token_payload = payload
    structlog.contextvars.bind_contextvars(user_id=str(user.id))
    return user


async def get_auth_context(
    user: User = Depends(get_current_user),
    access_control: AccessControl = Depends(get_access_control),
) -> AuthContext:
    return AuthContext(
        user=user,
        principal=Principal(user_id=user.id, role=user.role),
        access_control=access_control,
    )


def require_permission(resource: str, action: str):
    """Dependency factory: phase-one role check for ``resource:action``."""

    async def dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        decision = auth.access_control.authorize(auth.principal, resource, action)
        auth.decision = decision
        auth.resource = resource
        auth.action = action
        return auth

    return dependency


"""
Script to create (or promote) an administrator account for local use.

    python -m app.scripts.create_local_admin --email admin@example.com \
        --username admin --password change-me-now
"""

import argparse
import asyncio
from typing import Optional

from sqlmodel import select

from app.core.auth import hash_password
from app.core.database import get_session_context
from app.models.user import User
from ccpm_shared.schemas.common import Role
from ccpm_shared.schemas.users import MIN_PASSWORD_LENGTH


async def create_admin(email: str, username: str, password: str, name: Optional[str] = None) -> User:
    """Create the admin, or promote and re-key an existing account with that email."""
    async with get_session_context() as session:
        result = await session.execute(select(User).where(User.email == email.lower()))
        user = result.scalar_one_or_none()

        if user is None:
            user = User(
                email=email.lower(),
                username=username,
                name=name,
                password_hash=hash_password(password),
                role=Role.ADMIN.value,
                email_verified=True,
            )
            print(f"Created admin: {email}")
        else:
            user.role = Role.ADMIN.value
            user.password_hash = hash_password(password)
            user.is_active = True
            user.locked_until = None
            user.failed_login_attempts = 0
            print(f"Promoted existing user {email} to admin.")

        session.add(user)
        await session.flush()
        return user


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Create a local admin user.")
    parser.add_argument("--email", required=True, help="Email address for the user")
    parser.add_argument("--username", required=True, help="Alphanumeric username")
    parser.add_argument("--password", required=True, help="Password for the user")
    parser.add_argument("--name", default=None, help="Display name")
    args = parser.parse_args(argv)

    if len(args.password) < MIN_PASSWORD_LENGTH:
        parser.error(f"password must be at least {MIN_PASSWORD_LENGTH} characters")

    asyncio.run(create_admin(args.email, args.username, args.password, args.name))


if __name__ == "__main__":
    main()

"""
Outbound email.

Delivery transport is deployment-specific; the default sender writes each
message to the structured log so local and test environments can pick the
links out of the output.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import structlog

from app.core.config import get_settings

log = structlog.get_logger()
settings = get_settings()


@dataclass
class EmailMessage:
    to: str
    subject: str
    body: str
    tags: dict = field(default_factory=dict)


class EmailSender(Protocol):
    async def send(self, message: EmailMessage) -> None: ...


class LoggingEmailSender:
    """Logs messages instead of delivering them. Keeps the last ones for inspection."""

    def __init__(self, keep: int = 50):
        self.keep = keep
        self.outbox: list[EmailMessage] = []

    async def send(self, message: EmailMessage) -> None:
        self.outbox.append(message)
        del self.outbox[: -self.keep]
        log.info(
            "email.sent",
            to=message.to,
            subject=message.subject,
            sender=settings.email_from,
            **message.tags,
        )


_sender: EmailSender = LoggingEmailSender()


def get_email_sender() -> EmailSender:
    return _sender


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

def verification_email(to: str, token: str) -> EmailMessage:
    link = f"{settings.app_url}/verify-email?token={token}"
    return EmailMessage(
        to=to,
        subject="Verify your email address",
        body=f"Confirm your address within {settings.email_verification_expire_hours} hours:\n{link}\n",
        tags={"kind": "verify_email"},
    )


def password_reset_email(to: str, token: str) -> EmailMessage:
    link = f"{settings.app_url}/reset-password?token={token}"
    return EmailMessage(
        to=to,
        subject="Reset your password",
        body=(
            f"Use this link within {settings.password_reset_expire_minutes} minutes "
            f"to choose a new password:\n{link}\n"
        ),
        tags={"kind": "password_reset"},
    )


def account_locked_email(to: str, minutes: int) -> EmailMessage:
    return EmailMessage(
        to=to,
        subject="Your account has been locked",
        body=(
            "Too many failed sign-in attempts. Your account is locked for "
            f"{minutes} minutes.\n"
        ),
        tags={"kind": "account_locked"},
    )

# =============================================================================
# Email Delivery Integration
# =============================================================================
#
# The core never talks to an SMTP server or mail API directly. It renders a
# template and hands the message to a `MailService`. Deployments plug in
# their own sender; development and tests use `LoggingMailService`, which
# logs the message instead of sending it.
#
# Delivery failures are reported, never fatal: `send` returns False and the
# caller decides what to tell the user.
#
# =============================================================================

from __future__ import annotations

import html
import logging
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel

from authkit.config import Settings

logger = logging.getLogger(__name__)


# =============================================================================
# Email Templates
# =============================================================================

TEMPLATES = {
    "verify_email": {
        "subject": "Verify your email address",
        "html": """
        <html>
        <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
            <h1 style="color: #333;">Welcome, {name}!</h1>
            <p>Please verify your email by clicking the button below:</p>
            <p style="text-align: center; margin: 30px 0;">
                <a href="{verify_url}" style="background: #4A90A4; color: white; padding: 12px 30px; text-decoration: none; border-radius: 6px; display: inline-block;">
                    Verify Email
                </a>
            </p>
            <p style="color: #666; font-size: 14px;">Or copy this link: {verify_url}</p>
            <p style="color: #666; font-size: 14px;">This link expires in {expires}.</p>
        </body>
        </html>
        """,
        "text": """
Welcome, {name}!

Please verify your email by visiting:
{verify_url}

This link expires in {expires}.
        """,
    },

    "password_reset": {
        "subject": "Reset your password",
        "html": """
        <html>
        <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
            <h1 style="color: #333;">Reset Your Password</h1>
            <p>We received a request to reset your password. Click the button below to choose a new one:</p>
            <p style="text-align: center; margin: 30px 0;">
                <a href="{reset_url}" style="background: #4A90A4; color: white; padding: 12px 30px; text-decoration: none; border-radius: 6px; display: inline-block;">
                    Reset Password
                </a>
            </p>
            <p style="color: #666; font-size: 14px;">Or copy this link: {reset_url}</p>
            <p style="color: #666; font-size: 14px;">This link expires in {expires}.</p>
            <p style="color: #666; font-size: 14px;">If you didn't request this, you can safely ignore this email.</p>
        </body>
        </html>
        """,
        "text": """
Reset Your Password

We received a request to reset your password. Visit this link to choose a new one:
{reset_url}

This link expires in {expires}.

If you didn't request this, you can safely ignore this email.
        """,
    },
}


class EmailMessage(BaseModel):
    """A rendered message ready for delivery."""
    to: str
    template: str
    subject: str
    html: str
    text: str


def render(to: str, template: str, data: dict[str, Any]) -> EmailMessage:
    """
    Render a template. Values are HTML-escaped in the html body only.

    Raises:
        KeyError: unknown template or missing template variable
    """
    tpl = TEMPLATES[template]
    return EmailMessage(
        to=to,
        template=template,
        subject=tpl["subject"],
        html=tpl["html"].format(**{key: html.escape(str(value)) for key, value in data.items()}),
        text=tpl["text"].format(**data),
    )


# =============================================================================
# Mail Service
# =============================================================================

class MailService(ABC):
    """Delivery backend. Implementations raise `EmailDeliveryError` on failure."""

    @abstractmethod
    async def deliver(self, message: EmailMessage) -> None:
        pass


class LoggingMailService(MailService):
    """Development sender: logs instead of sending, keeps an outbox."""

    def __init__(self):
        self.outbox: list[EmailMessage] = []

    async def deliver(self, message: EmailMessage) -> None:
        self.outbox.append(message)
        logger.info(f"Email not configured - would send '{message.template}' to {message.to}")
        logger.debug(f"Email content: {message.text.strip()}")


class EmailService:
    """Builds links, renders templates and hands messages to the mail backend."""

    def __init__(self, settings: Settings, mail: MailService):
        self.settings = settings
        self.mail = mail

    @property
    def base_url(self) -> str:
        return self.settings.frontend_url.rstrip("/")

    async def send(self, to: str, template: str, data: dict[str, Any] | None = None) -> bool:
        """
        Send an email using a template.

        Returns:
            True if sent successfully, False otherwise
        """
        try:
            message = render(to, template, data or {})
        except KeyError as e:
            logger.error(f"Cannot render email template '{template}': missing {e}")
            return False

        try:
            await self.mail.deliver(message)
        except Exception:
            logger.exception(f"Failed to send '{template}' email to {to}")
            return False

        logger.info(f"Email sent to {to}: {template}")
        return True

    async def send_verification(self, email: str, name: str, token: str) -> bool:
        """Send the email-verification link."""
        hours = self.settings.jwt_email_token_expire_hours
        return await self.send(
            to=email,
            template="verify_email",
            data={
                "name": name,
                "verify_url": f"{self.base_url}/verify-email?token={token}",
                "expires": f"{hours} hours",
            },
        )

    async def send_password_reset(self, email: str, token: str) -> bool:
        """Send password reset email."""
        minutes = self.settings.jwt_reset_token_expire_minutes
        return await self.send(
            to=email,
            template="password_reset",
            data={
                "reset_url": f"{self.base_url}/reset-password?token={token}",
                "expires": f"{minutes} minutes",
            },
        )

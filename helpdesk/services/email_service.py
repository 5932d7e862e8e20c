"""
Email service.

Handles sending emails via SMTP using aiosmtplib for async support.
Used by the lockout guard flow to alert an administrator when an
account lock engages.
"""

import logging
from datetime import datetime
from email.message import EmailMessage

import aiosmtplib

from helpdesk.core.config import settings

logger = logging.getLogger(__name__)


async def send_email(to: str, subject: str, html_body: str) -> None:
    """Send an HTML email via the configured SMTP server."""
    message = EmailMessage()
    message["From"] = settings.SENDER_EMAIL
    message["To"] = to
    message["Subject"] = subject
    message.set_content(html_body, subtype="html")

    try:
        await aiosmtplib.send(
            message,
            hostname=settings.EMAIL_HOST,
            port=settings.EMAIL_PORT,
            username=settings.SENDER_EMAIL,
            password=settings.EMAIL_PASSWORD,
            start_tls=True,
        )
        logger.info("Email sent to %s", to)
    except aiosmtplib.SMTPException:
        logger.exception("Failed to send email to %s", to)
        raise


async def send_lockout_notification(
    email: str,
    source_ip: str | None,
    failed_attempts: int,
    locked_until: datetime,
) -> None:
    """Tell the configured security mailbox that an account was locked."""
    to = settings.LOCKOUT_NOTIFICATION_EMAIL
    if not to:
        return

    subject = f"[{settings.APP_NAME}] Account locked: {email}"
    html_body = f"""\
    <html>
    <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
        <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
            <h2 style="color: #c0392b;">Account locked</h2>
            <p>The account <strong>{email}</strong> was locked after
               <strong>{failed_attempts}</strong> failed sign-in attempts.</p>
            <p>Last attempt from: <strong>{source_ip or "unknown"}</strong></p>
            <p>The lock lifts automatically at
               <strong>{locked_until:%Y-%m-%d %H:%M:%S} UTC</strong>,
               or earlier if an administrator unlocks it.</p>
        </div>
    </body>
    </html>
    """

    await send_email(to, subject, html_body)

"""
Email notifications through Resend.

Every send attempt is recorded in the email_logs table. ``dispatch_email``
is the fire-and-forget entry point used by the booking and payment flows:
it never raises.
"""

import asyncio
from typing import Any, Dict, Optional

import resend

from config import settings
from db import get_db_client
from notifications.templates import render_email
from utils.exceptions import AppError
from utils.logging_config import setup_logging

logger = setup_logging(
    name=__name__, log_level="INFO", log_file="notifications.log", log_dir="logs"
)


class EmailDeliveryError(AppError):
    """Raised when Resend rejects or fails to deliver an email."""


async def _log_email(
    to: str,
    subject: str,
    email_type: str,
    status: str,
    error_message: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    entry: Dict[str, Any] = {
        "to_email": to,
        "subject": subject,
        "type": email_type,
        "status": status,
        "metadata": metadata or {},
    }
    if error_message:
        entry["error_message"] = error_message
    try:
        await get_db_client().insert_email_log(entry)
    except Exception as e:
        logger.error(f"Failed to write email log for {to} ({email_type}): {e}")


async def send_email(email_type: str, to: str, data: Dict[str, Any]) -> str:
    """
    Render and send an email.

    Args:
        email_type: One of notifications.templates.EmailType
        to: Recipient address
        data: Template values

    Returns:
        Resend message ID

    Raises:
        EmailDeliveryError: If the API key is missing or Resend fails
    """
    subject = "Unknown subject"
    try:
        if not settings.resend_api_key:
            raise EmailDeliveryError("RESEND_API_KEY is not configured")

        subject, html = render_email(email_type, data)
        resend.api_key = settings.resend_api_key
        params = {
            "from": f"{settings.brand_name} <{settings.from_email}>",
            "to": [to],
            "subject": subject,
            "html": html,
        }

        logger.info(f"Sending {email_type} email to {to}")
        response = await asyncio.to_thread(resend.Emails.send, params)
        message_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
    except Exception as e:
        logger.error(f"Failed to send {email_type} email to {to}: {e}", exc_info=True)
        await _log_email(to, subject, email_type, "failed", error_message=str(e))
        if isinstance(e, EmailDeliveryError):
            raise
        raise EmailDeliveryError(f"Failed to send {email_type} email: {e}") from e

    await _log_email(to, subject, email_type, "sent", metadata={"resend_id": message_id})
    logger.info(f"Sent {email_type} email to {to} (id={message_id})")
    return message_id


async def dispatch_email(email_type: str, to: Optional[str], data: Dict[str, Any]) -> Optional[str]:
    """Send an email without letting failures reach the caller."""
    if not to:
        logger.debug(f"No recipient for {email_type} email, skipping")
        return None
    try:
        return await send_email(email_type, to, data)
    except EmailDeliveryError as e:
        logger.warning(f"{email_type} email to {to} not delivered: {e}")
        return None

"""Email notifications."""

from .email import EmailDeliveryError, dispatch_email, send_email
from .templates import EmailType, render_email

__all__ = ["EmailDeliveryError", "EmailType", "dispatch_email", "render_email", "send_email"]

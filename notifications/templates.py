"""HTML email templates keyed by notification type."""

from datetime import date, datetime, time
from enum import Enum
from html import escape
from typing import Any, Dict, Mapping, Tuple

from config import settings


class EmailType(str, Enum):
    """Notification types the dispatcher knows how to render."""

    CONFIRMATION = "confirmation"
    CANCELLATION = "cancellation"
    RESCHEDULE = "reschedule"
    WELCOME = "welcome"
    PURCHASE = "purchase"
    GIFT_CARD = "gift_card"


_LAYOUT = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
</head>
<body style="margin: 0; padding: 0; font-family: Helvetica, Arial, sans-serif; background-color: #f4f4f7; color: #333;">
    <div style="max-width: 600px; margin: 20px auto; background-color: #ffffff; border-radius: 8px; overflow: hidden;">
        <div style="background-color: #1a1a1a; color: #ffffff; padding: 30px; text-align: center;">
            <h1 style="margin: 0; font-size: 28px;">{brand}</h1>
        </div>
        <div style="padding: 30px 40px;">
            {content}
        </div>
        <div style="background-color: #f4f4f7; text-align: center; padding: 20px; font-size: 12px; color: #888;">
            {brand}
        </div>
    </div>
</body>
</html>
"""


def _details(rows: Mapping[str, Any]) -> str:
    items = "".join(
        f'<tr><td style="padding: 8px 0; color: #555;"><strong>{escape(label)}</strong></td>'
        f'<td style="padding: 8px 0; text-align: right;">{escape(str(value))}</td></tr>'
        for label, value in rows.items()
    )
    return (
        '<table width="100%" style="background-color: #f9f9fb; border: 1px solid #e1e1e6; '
        f'border-radius: 6px; padding: 20px; margin: 20px 0;">{items}</table>'
    )


def _format_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%A %d %B %Y")
    if isinstance(value, date):
        return value.strftime("%A %d %B %Y")
    return str(value or "")


def _format_time(value: Any) -> str:
    if isinstance(value, (time, datetime)):
        return value.strftime("%H:%M")
    return str(value or "")


def render_email(email_type: str, data: Dict[str, Any]) -> Tuple[str, str]:
    """
    Render a notification.

    Returns:
        (subject, html body)

    Raises:
        ValueError: If the type is unknown
    """
    kind = EmailType(email_type)
    name = escape(str(data.get("user_name") or "there"))
    service = str(data.get("service_name") or "")

    if kind == EmailType.CONFIRMATION:
        subject = f"Your appointment is confirmed - {service}"
        content = (
            "<h2>Appointment confirmed!</h2>"
            f"<p>Hello {name},</p><p>Your appointment is confirmed. Here are the details:</p>"
            + _details(
                {
                    "Service": service,
                    "Date": _format_date(data.get("date")),
                    "Time": _format_time(data.get("time")),
                    "Duration": f"{data.get('duration')} minutes",
                }
            )
            + "<p>We look forward to welcoming you!</p>"
        )
    elif kind == EmailType.CANCELLATION:
        subject = "Your appointment has been cancelled"
        content = (
            "<h2>Appointment cancelled</h2>"
            f"<p>Hello {name},</p>"
            f"<p>Your appointment for <strong>{escape(service)}</strong> on "
            f"{escape(_format_date(data.get('date')))} at {escape(_format_time(data.get('time')))} "
            "has been cancelled.</p>"
            "<p>If you did not request this, or want to book again, please contact us.</p>"
        )
    elif kind == EmailType.RESCHEDULE:
        subject = f"Your appointment has been rescheduled - {service}"
        content = (
            "<h2>Appointment rescheduled</h2>"
            f"<p>Hello {name},</p><p>Here are the new details:</p>"
            + _details(
                {
                    "Service": service,
                    "New date": _format_date(data.get("date")),
                    "New time": _format_time(data.get("time")),
                    "Duration": f"{data.get('duration')} minutes",
                }
            )
        )
    elif kind == EmailType.WELCOME:
        subject = f"Welcome to {settings.brand_name}!"
        content = (
            f"<h2>Welcome, {name}!</h2>"
            "<p>Your account has been created. You can now book appointments "
            "and manage your plan from your profile.</p>"
        )
    elif kind == EmailType.PURCHASE:
        plan_name = str(data.get("plan_name") or "")
        subject = f"Purchase confirmed - {plan_name}"
        rows = {"Item": plan_name, "Price": data.get("plan_price", "")}
        if data.get("minutes"):
            rows["Minutes"] = data["minutes"]
        content = (
            "<h2>Purchase confirmed!</h2>"
            f"<p>Hello {name},</p>"
            f"<p>Your purchase of <strong>{escape(plan_name)}</strong> has been processed.</p>"
            + _details(rows)
        )
    else:
        amount = data.get("gift_amount")
        code = escape(str(data.get("gift_code") or ""))
        subject = "You have received a gift card!"
        content = (
            f"<h2>Congratulations {name}!</h2>"
            f"<p>You have received a gift card worth <strong>{escape(str(amount))}</strong>"
            + (f" from {escape(str(data['from_name']))}" if data.get("from_name") else "")
            + ".</p>"
            + (f"<p><em>{escape(str(data['message']))}</em></p>" if data.get("message") else "")
            + '<p style="font-size: 32px; font-weight: 700; letter-spacing: 2px; '
            f'font-family: monospace; text-align: center;">{code}</p>'
            "<p>Use this code when booking online or at the studio.</p>"
        )

    body = _LAYOUT.format(
        title=escape(subject), brand=escape(settings.brand_name), content=content
    )
    return subject, body

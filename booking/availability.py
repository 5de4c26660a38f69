"""
Slot availability for a service on a given date.

The weekday slot template comes from the schedules table. A slot is free
when no pending or confirmed booking (blocks included) overlaps it. Each
appointment keeps the studio busy for its duration plus the configured
buffer; blocks occupy exactly their duration. The result is a hint only:
the database unique index is what prevents double bookings.
"""

import logging
from datetime import date, datetime, time
from typing import Iterable, List, Optional, Tuple

from config import settings
from db import get_db_client
from models.booking import Booking, PaymentMethod
from models.service import Schedule
from utils.datetime_utils import local_now
from utils.exceptions import ServiceNotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def _template_for(schedules: Iterable[Schedule], service_id: str, weekday: int) -> List[time]:
    """Pick the weekday template, preferring a service-specific row."""
    studio_wide: Optional[Schedule] = None
    for schedule in schedules:
        if schedule.order != weekday:
            continue
        if schedule.service_id == service_id:
            return sorted(set(schedule.time_slots))
        if schedule.service_id is None:
            studio_wide = schedule
    return sorted(set(studio_wide.time_slots)) if studio_wide else []


def _slot_interval(slots: List[time]) -> int:
    if len(slots) < 2:
        return settings.default_slot_interval_minutes
    diff = _minutes(slots[1]) - _minutes(slots[0])
    return diff if diff > 0 else settings.default_slot_interval_minutes


def _busy_windows(bookings: Iterable[Booking]) -> List[Tuple[int, int]]:
    windows = []
    for booking in bookings:
        start = _minutes(booking.time)
        buffer = 0 if booking.payment_method == PaymentMethod.BLOCKED.value else settings.booking_buffer_minutes
        windows.append((start, start + booking.duration + buffer))
    return windows


def free_slots(
    template: List[time],
    bookings: Iterable[Booking],
    on_date: date,
    now: datetime,
) -> List[time]:
    """Remove occupied and already-past slots from a template."""
    interval = _slot_interval(template)
    windows = _busy_windows(bookings)
    is_today = on_date == now.date()

    available = []
    for slot in template:
        if is_today and slot <= now.time().replace(tzinfo=None):
            continue
        start = _minutes(slot)
        end = start + interval
        if any(busy_start < end and busy_end > start for busy_start, busy_end in windows):
            continue
        available.append(slot)
    return available


async def list_available_slots(
    service_id: str, on_date: date, now: Optional[datetime] = None
) -> List[time]:
    """
    List bookable times for a service on a date, ascending.

    Args:
        service_id: Service slug
        on_date: Requested date (today or later, studio timezone)
        now: Current studio-local time (for tests)

    Raises:
        ValidationError: Past date or service under maintenance
        ServiceNotFoundError: Unknown service
    """
    now = now or local_now(settings.timezone)
    if on_date < now.date():
        raise ValidationError(
            f"Date {on_date} is in the past", "Please choose today or a future date."
        )

    db = get_db_client()
    service = await db.get_service(service_id)
    if service is None:
        raise ServiceNotFoundError(f"Service {service_id} not found")
    if service.is_under_maintenance:
        raise ValidationError(
            f"Service {service_id} is under maintenance",
            "This service is temporarily unavailable.",
        )

    template = _template_for(await db.get_schedules(service_id), service_id, on_date.isoweekday())
    if not template:
        return []

    bookings = await db.get_active_bookings(service_id, on_date)
    slots = free_slots(template, bookings, on_date, now)
    logger.debug(
        f"{service_id} on {on_date}: {len(slots)}/{len(template)} slots free "
        f"({len(bookings)} active bookings)"
    )
    return slots


async def is_slot_available(service_id: str, on_date: date, at: time) -> bool:
    """Check a single slot against the current availability."""
    return at.replace(second=0, microsecond=0) in await list_available_slots(service_id, on_date)

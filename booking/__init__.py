"""Availability, direct bookings and payment reconciliation."""

from .appointments import (
    block_slot,
    book_appointment,
    cancel_booking,
    check_in_booking,
    confirm_booking_manually,
)
from .availability import list_available_slots
from .reconciler import handle_webhook_event, reconcile, verify_and_reconcile

__all__ = [
    "block_slot",
    "book_appointment",
    "cancel_booking",
    "check_in_booking",
    "confirm_booking_manually",
    "handle_webhook_event",
    "list_available_slots",
    "reconcile",
    "verify_and_reconcile",
]

"""
Direct appointment flows that do not go through a payment intent.

Covers bookings paid with minutes, at reception or by gift card, staff
blocks, check-in, manual confirmation and cancellation. Every status
change is recorded in appointment_logs.
"""

from datetime import date, time
from typing import Any, Dict, Optional

from booking.availability import is_slot_available
from db import get_db_client
from ledger.gift_cards import redeem_gift_card, validate_gift_card
from ledger.minutes import credit_minutes, debit_minutes
from models.booking import Booking, BookingCreate, BookingStatus, PaymentMethod, can_transition
from models.profile import AuthenticatedUser
from models.service import Service
from notifications.email import dispatch_email
from utils.constants import MAX_NOTES_LENGTH
from utils.exceptions import (
    AppError,
    BookingNotFoundError,
    DatabaseError,
    ForbiddenError,
    InsufficientFundsError,
    InvalidTransitionError,
    ServiceNotFoundError,
    SlotTakenError,
    ValidationError,
)
from utils.logging_config import setup_logging
from utils.validation import sanitize_text

logger = setup_logging(name=__name__, log_level="INFO", log_file="bookings.log", log_dir="logs")

# Payment methods accepted without a payment intent
DIRECT_PAYMENT_METHODS = frozenset(
    {PaymentMethod.MINUTES, PaymentMethod.RECEPTION, PaymentMethod.GIFT}
)


async def log_appointment_action(
    action: str,
    appointment_id: Optional[str],
    performed_by: Optional[str],
    details: str,
    old_data: Optional[Dict[str, Any]] = None,
    new_data: Optional[Dict[str, Any]] = None,
) -> None:
    """Append an appointment_logs row. Failures are logged, never raised."""
    entry = {
        "action_type": action,
        "appointment_id": appointment_id,
        "performed_by": performed_by,
        "details": details,
        "old_data": old_data,
        "new_data": new_data,
    }
    try:
        await get_db_client().insert_appointment_log(entry)
    except DatabaseError as e:
        logger.error(f"Failed to write appointment log ({action} {appointment_id}): {e}")


def booking_email_data(booking: Booking, service_name: Optional[str] = None) -> Dict[str, Any]:
    return {
        "user_name": booking.user_name,
        "service_name": service_name or booking.service_id,
        "date": booking.date,
        "time": booking.time,
        "duration": booking.duration,
    }


def _require_admin(user: AuthenticatedUser) -> None:
    if not user.is_admin:
        raise ForbiddenError(f"User {user.id} is not an admin")


async def _load_service(service_id: str, duration: Optional[int]) -> tuple:
    service: Optional[Service] = await get_db_client().get_service(service_id)
    if service is None:
        raise ServiceNotFoundError(f"Service {service_id} not found")
    if service.is_under_maintenance:
        raise ValidationError(
            f"Service {service_id} is under maintenance",
            "This service is temporarily unavailable.",
        )
    duration = duration or service.default_duration
    if not duration or duration not in service.durations:
        raise ValidationError(f"Duration {duration} not offered for {service_id}")
    return service, duration


async def _get_booking(booking_id: str) -> Booking:
    booking = await get_db_client().get_booking_by_id(booking_id)
    if booking is None:
        raise BookingNotFoundError(f"Booking {booking_id} not found")
    return booking


async def book_appointment(
    user: AuthenticatedUser,
    service_id: str,
    on_date: date,
    at: time,
    payment_method: str,
    duration: Optional[int] = None,
    gift_code: Optional[str] = None,
    notes: Optional[str] = None,
) -> Booking:
    """
    Book and confirm an appointment paid with minutes, at reception or by gift card.

    Minutes are debited before the booking is written and credited back if
    the slot turns out to be taken. A gift card must cover the full price and
    is redeemed against the new booking.

    Raises:
        ValidationError: Card payments, unknown duration, past date
        SlotTakenError: The slot is no longer free
        InsufficientBalanceError / InsufficientFundsError: Not enough credit
    """
    try:
        method = PaymentMethod(payment_method)
    except ValueError as e:
        raise ValidationError(f"Unknown payment method {payment_method!r}") from e
    if method not in DIRECT_PAYMENT_METHODS:
        raise ValidationError(
            f"Payment method {method.value} requires a payment intent",
            "Card payments must go through online checkout.",
        )

    service, duration = await _load_service(service_id, duration)
    at = at.replace(second=0, microsecond=0)
    if not await is_slot_available(service_id, on_date, at):
        raise SlotTakenError(f"Slot {service_id} {on_date} {at} is not available")

    price = service.price_for(duration)
    if method == PaymentMethod.GIFT:
        if not gift_code:
            raise ValidationError("Gift card code is required for gift payments")
        if price is None:
            raise ValidationError(f"No price configured for {service_id} ({duration} min)")
        card = await validate_gift_card(gift_code)
        if card.current_balance < price:
            raise InsufficientFundsError(
                f"Gift card {card.code} has {card.current_balance}, service costs {price}"
            )

    booking_data = BookingCreate(
        user_id=user.id,
        service_id=service.id,
        date=on_date,
        time=at,
        duration=duration,
        status=BookingStatus.CONFIRMED,
        payment_method=method,
        user_name=user.profile.name_for_display if user.profile else None,
        user_email=user.email,
        notes=sanitize_text(notes, MAX_NOTES_LENGTH) or None,
    )

    db = get_db_client()
    if method == PaymentMethod.MINUTES:
        await debit_minutes(user.id, duration)
        try:
            booking = await db.create_booking(booking_data)
        except (SlotTakenError, DatabaseError):
            logger.warning(
                f"Booking failed after debiting {duration} minutes from {user.id}, crediting back"
            )
            await credit_minutes(user.id, duration)
            raise
    else:
        booking = await db.create_booking(booking_data)

    if method == PaymentMethod.GIFT:
        try:
            await redeem_gift_card(gift_code, price, reference=booking.id)
        except AppError:
            logger.warning(f"Gift card redemption failed for booking {booking.id}, cancelling it")
            await db.update_booking_status(booking.id, BookingStatus.CANCELLED)
            raise

    logger.info(
        f"Booked {service.id} on {on_date} at {at} for user {user.id} "
        f"(booking {booking.id}, method={method.value})"
    )
    await log_appointment_action(
        "CREATE",
        booking.id,
        user.id,
        f"Booked {service.name} ({duration} min, {method.value})",
        new_data=booking.model_dump(mode="json"),
    )
    await dispatch_email("confirmation", user.email, booking_email_data(booking, service.name))
    return booking


async def block_slot(
    admin: AuthenticatedUser,
    service_id: str,
    on_date: date,
    at: time,
    duration: int,
    notes: Optional[str] = None,
) -> Booking:
    """Occupy a slot without a customer (staff break, maintenance)."""
    _require_admin(admin)
    if duration <= 0:
        raise ValidationError("Block duration must be positive")

    booking = await get_db_client().create_booking(
        BookingCreate(
            service_id=service_id,
            date=on_date,
            time=at,
            duration=duration,
            status=BookingStatus.CONFIRMED,
            payment_method=PaymentMethod.BLOCKED,
            notes=sanitize_text(notes, MAX_NOTES_LENGTH) or None,
        )
    )
    await log_appointment_action(
        "CREATE", booking.id, admin.id, f"Blocked {service_id} {on_date} {at} ({duration} min)"
    )
    return booking


async def _transition(
    booking: Booking,
    target: BookingStatus,
    actor: AuthenticatedUser,
    action: str,
    details: str,
) -> Booking:
    if not can_transition(booking.status, target):
        raise InvalidTransitionError(
            f"Booking {booking.id} cannot go from {booking.status} to {target.value}",
            f"This booking is {booking.status} and cannot be changed to {target.value}.",
        )

    updated = await get_db_client().update_booking_status(
        booking.id, target, expected_status=BookingStatus(booking.status)
    )
    if updated is None:
        raise InvalidTransitionError(
            f"Booking {booking.id} changed concurrently (expected {booking.status})",
            "This booking was just modified. Please refresh and try again.",
        )

    logger.info(f"Booking {booking.id}: {booking.status} -> {target.value} by {actor.id}")
    await log_appointment_action(
        action,
        booking.id,
        actor.id,
        details,
        old_data={"status": booking.status},
        new_data={"status": target.value},
    )
    return updated


async def check_in_booking(admin: AuthenticatedUser, booking_id: str) -> Booking:
    """Mark a confirmed booking as completed when the client arrives."""
    _require_admin(admin)
    booking = await _get_booking(booking_id)
    return await _transition(booking, BookingStatus.COMPLETED, admin, "COMPLETE", "Check-in")


async def confirm_booking_manually(admin: AuthenticatedUser, booking_id: str) -> Booking:
    """Confirm a pending booking without a payment signal."""
    _require_admin(admin)
    booking = await _get_booking(booking_id)
    return await _transition(
        booking, BookingStatus.CONFIRMED, admin, "UPDATE", "Manual confirmation"
    )


async def cancel_booking(user: AuthenticatedUser, booking_id: str) -> Booking:
    """
    Cancel a booking (owner or admin).

    Minutes spent on the booking are credited back to the owner's
    refunded-minutes pool. The slot becomes bookable again.
    """
    booking = await _get_booking(booking_id)
    if booking.user_id != user.id and not user.is_admin:
        raise ForbiddenError(f"User {user.id} cannot cancel booking {booking_id}")

    updated = await _transition(booking, BookingStatus.CANCELLED, user, "CANCEL", "Cancelled")

    if booking.payment_method == PaymentMethod.MINUTES.value and booking.user_id:
        try:
            await credit_minutes(booking.user_id, booking.duration, refund=True)
        except AppError as e:
            logger.error(
                f"Failed to refund {booking.duration} minutes for cancelled booking "
                f"{booking.id} (user {booking.user_id}): {e}"
            )

    await dispatch_email("cancellation", booking.user_email, booking_email_data(booking))
    return updated

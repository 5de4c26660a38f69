"""
Booking reconciler.

Records the business effect of a verified successful payment exactly once.

Rules:
- The payment status must come from Stripe (a retrieved intent or a signed
  webhook event), never from the client.
- The primary record (booking, gift card, or invoice for minute packs and
  subscriptions) is inserted against a UNIQUE payment_reference. The first
  writer wins; a later caller for the same reference gets the winner's
  record back with ``duplicate=True`` and performs no side effects.
- Ledger updates, audit logs and emails run after the primary write. Their
  failures are logged with the payment reference and never undo the record.
- A failed primary write after a successful payment raises
  PersistenceFailureError so the client or the sweep can retry.
"""

from decimal import Decimal
from typing import Any, Awaitable, Dict, Mapping, Optional

from booking.appointments import booking_email_data, log_appointment_action
from db import get_db_client
from ledger.gift_cards import issue_gift_card
from ledger.minutes import assign_plan, credit_minutes, debit_minutes
from models.booking import BookingCreate, BookingStatus, PaymentMethod
from models.invoice import InvoiceCreate
from models.payment_metadata import (
    AppointmentMetadata,
    GiftCardMetadata,
    MinutePackMetadata,
    SubscriptionMetadata,
    decode_metadata,
)
from models.profile import AuthenticatedUser
from models.transaction import ReconcileResult, TransactionState
from notifications.email import dispatch_email
from payments import stripe as gateway
from payments.pricing import from_minor_units
from utils.datetime_utils import from_unix_timestamp
from utils.exceptions import (
    AppError,
    DatabaseError,
    DuplicateReferenceError,
    ForbiddenError,
    MissingRequiredFieldError,
    PersistenceFailureError,
    SlotTakenError,
    UnverifiedPaymentError,
)
from utils.logging_config import setup_logging

logger = setup_logging(
    name=__name__, log_level="INFO", log_file="reconciler.log", log_dir="logs"
)

SUBSCRIPTION_BILLING_REASONS = frozenset({"subscription_create", "subscription_cycle"})


async def _side_effect(step: Awaitable, description: str, reference: str, transaction_type: str) -> None:
    """Run a post-write step; log and continue on failure."""
    try:
        await step
    except AppError as e:
        logger.error(
            f"{description} failed after reconciling {reference} "
            f"(type={transaction_type}): {e}",
            exc_info=True,
        )


def _paid_amount(payload: Mapping[str, Any], fallback: Decimal) -> Decimal:
    amount = payload.get("amount_received") or payload.get("amount")
    if isinstance(amount, int) and amount > 0:
        return from_minor_units(amount)
    return fallback


# ========== Appointment ==========


async def _reconcile_appointment(
    reference: str, meta: AppointmentMetadata, payload: Mapping[str, Any]
) -> ReconcileResult:
    db = get_db_client()
    booking_data = BookingCreate(
        user_id=meta.user_id,
        service_id=meta.service_id,
        date=meta.appointment_date,
        time=meta.appointment_time,
        duration=meta.duration,
        status=BookingStatus.CONFIRMED,
        payment_method=meta.payment_method,
        payment_reference=reference,
        user_name=meta.user_name,
        user_email=meta.user_email,
    )

    try:
        booking = await db.create_booking(booking_data)
    except DuplicateReferenceError:
        existing = await db.get_booking_by_payment_reference(reference)
        logger.info(f"Payment {reference} already reconciled as booking {existing and existing.id}")
        return ReconcileResult(
            payment_reference=reference,
            transaction_type=meta.type,
            record_id=existing.id if existing else None,
            duplicate=True,
            message="Booking already recorded",
        )
    except SlotTakenError as e:
        logger.error(
            f"Paid appointment {reference} (type=appointment) lost its slot "
            f"{meta.service_id} {meta.appointment_date} {meta.appointment_time}: needs manual follow-up"
        )
        raise PersistenceFailureError(reference, f"Slot taken after payment {reference}") from e
    except DatabaseError as e:
        logger.error(f"Failed to write booking for payment {reference} (type=appointment): {e}")
        raise PersistenceFailureError(reference) from e

    if meta.payment_method == PaymentMethod.MINUTES:
        await _side_effect(
            debit_minutes(meta.user_id, meta.duration), "Minute debit", reference, meta.type
        )

    await _side_effect(
        db.create_invoice(
            InvoiceCreate(
                user_id=meta.user_id,
                amount=_paid_amount(payload, meta.price),
                payment_method=PaymentMethod.CARD.value,
                description=f"{meta.service_name} - {meta.duration} min",
                payment_reference=reference,
            )
        ),
        "Invoice",
        reference,
        meta.type,
    )
    await log_appointment_action(
        "PAYMENT",
        booking.id,
        meta.user_id,
        f"Paid online ({reference})",
        new_data=booking.model_dump(mode="json"),
    )
    await dispatch_email(
        "confirmation", meta.user_email, booking_email_data(booking, meta.service_name)
    )

    logger.info(f"Reconciled payment {reference} as booking {booking.id}")
    return ReconcileResult(
        payment_reference=reference,
        transaction_type=meta.type,
        record_id=booking.id,
        message="Booking confirmed",
    )


# ========== Gift card ==========


async def _reconcile_gift_card(
    reference: str, meta: GiftCardMetadata, payload: Mapping[str, Any]
) -> ReconcileResult:
    db = get_db_client()
    amount = _paid_amount(payload, meta.amount)
    card_metadata = {
        "from_name": meta.from_name,
        "to_name": meta.to_name,
        "message": meta.message,
        "recipient_email": meta.recipient_email,
        "stripe_payment_intent": reference,
    }

    try:
        card = await issue_gift_card(
            amount,
            buyer_id=meta.buyer_id,
            payment_reference=reference,
            metadata={k: v for k, v in card_metadata.items() if v is not None},
        )
    except DuplicateReferenceError:
        existing = await db.get_gift_card_by_payment_reference(reference)
        logger.info(f"Payment {reference} already reconciled as gift card {existing and existing.code}")
        return ReconcileResult(
            payment_reference=reference,
            transaction_type=meta.type,
            record_id=existing.id if existing else None,
            duplicate=True,
            message=existing.code if existing else "Gift card already issued",
        )
    except AppError as e:
        logger.error(f"Failed to issue gift card for payment {reference} (type=gift_card): {e}")
        raise PersistenceFailureError(reference) from e

    if meta.buyer_id:
        await _side_effect(
            db.create_invoice(
                InvoiceCreate(
                    user_id=meta.buyer_id,
                    amount=amount,
                    payment_method=PaymentMethod.ONLINE.value,
                    description=f"Gift card - {meta.to_name or 'Friend'}",
                    payment_reference=reference,
                )
            ),
            "Invoice",
            reference,
            meta.type,
        )

    await dispatch_email(
        "gift_card",
        meta.recipient_email,
        {
            "user_name": meta.to_name,
            "gift_amount": amount,
            "gift_code": card.code,
            "from_name": meta.from_name,
            "message": meta.message,
        },
    )

    logger.info(f"Reconciled payment {reference} as gift card {card.code}")
    return ReconcileResult(
        payment_reference=reference,
        transaction_type=meta.type,
        record_id=card.id,
        message=card.code,
    )


# ========== Invoice-backed purchases ==========


async def _record_invoice(reference: str, transaction_type: str, invoice: InvoiceCreate):
    """Insert the invoice that is the primary record. Returns (invoice, duplicate)."""
    db = get_db_client()
    try:
        return await db.create_invoice(invoice), False
    except DuplicateReferenceError:
        existing = await db.get_invoice_by_payment_reference(reference)
        logger.info(f"Payment {reference} already reconciled as invoice {existing and existing.id}")
        return existing, True
    except DatabaseError as e:
        logger.error(f"Failed to write invoice for payment {reference} (type={transaction_type}): {e}")
        raise PersistenceFailureError(reference) from e


async def _reconcile_minute_pack(
    reference: str, meta: MinutePackMetadata, payload: Mapping[str, Any]
) -> ReconcileResult:
    amount = _paid_amount(payload, Decimal("0"))
    invoice, duplicate = await _record_invoice(
        reference,
        meta.type,
        InvoiceCreate(
            user_id=meta.user_id,
            amount=amount,
            payment_method=PaymentMethod.ONLINE.value,
            description=meta.pack_name,
            payment_reference=reference,
        ),
    )
    result = ReconcileResult(
        payment_reference=reference,
        transaction_type=meta.type,
        record_id=invoice.id if invoice else None,
        duplicate=duplicate,
        message=f"{meta.minutes_amount} minutes credited",
    )
    if duplicate:
        return result

    await _side_effect(
        credit_minutes(meta.user_id, meta.minutes_amount), "Minute credit", reference, meta.type
    )
    await dispatch_email(
        "purchase",
        meta.user_email,
        {"plan_name": meta.pack_name, "plan_price": amount, "minutes": meta.minutes_amount},
    )
    logger.info(f"Reconciled payment {reference} as minute pack {meta.pack_name}")
    return result


async def _activate_plan(
    reference: str,
    meta: SubscriptionMetadata,
    amount: Decimal,
    subscription: Optional[Mapping[str, Any]] = None,
    paid_at=None,
) -> ReconcileResult:
    """Record a plan payment and, for new payments only, assign the plan."""
    db = get_db_client()
    plan = await db.get_plan(meta.plan_id)
    if plan is None:
        raise MissingRequiredFieldError(["plan_id"])

    invoice, duplicate = await _record_invoice(
        reference,
        meta.type,
        InvoiceCreate(
            user_id=meta.user_id,
            amount=amount,
            payment_method=PaymentMethod.CARD.value,
            description=f"Subscription {plan.title}",
            plan_id=plan.id,
            payment_reference=reference,
            date=paid_at,
        ),
    )
    result = ReconcileResult(
        payment_reference=reference,
        transaction_type=meta.type,
        record_id=invoice.id if invoice else None,
        duplicate=duplicate,
        message=f"Plan {plan.title} active",
    )
    if duplicate:
        return result

    extra: Dict[str, Any] = {}
    if subscription:
        extra = {
            "stripe_subscription_id": subscription.get("id"),
            "stripe_subscription_status": subscription.get("status"),
            "stripe_cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        }
        if subscription.get("customer"):
            extra["stripe_customer_id"] = subscription["customer"]

    await _side_effect(
        assign_plan(meta.user_id, plan.id, plan.minutes, extra), "Plan assignment", reference, meta.type
    )

    profile = await db.get_profile(meta.user_id)
    await dispatch_email(
        "purchase",
        profile.email if profile else None,
        {
            "user_name": profile.name_for_display if profile else None,
            "plan_name": plan.title,
            "plan_price": amount,
            "minutes": plan.minutes,
        },
    )
    logger.info(f"Reconciled payment {reference} as plan {plan.id} for user {meta.user_id}")
    return result


async def _reconcile_subscription(
    reference: str, meta: SubscriptionMetadata, payload: Mapping[str, Any]
) -> ReconcileResult:
    return await _activate_plan(reference, meta, _paid_amount(payload, Decimal("0")))


_HANDLERS = {
    "appointment": _reconcile_appointment,
    "gift_card": _reconcile_gift_card,
    "minute_pack": _reconcile_minute_pack,
    "subscription": _reconcile_subscription,
}


async def reconcile(
    payment_reference: str, verified_status: str, payload: Mapping[str, Any]
) -> ReconcileResult:
    """
    Record a verified successful payment.

    Args:
        payment_reference: Stripe payment intent ID
        verified_status: Status reported by Stripe itself
        payload: The payment intent (metadata, amount)

    Returns:
        The reconciliation result; ``duplicate`` is True when the payment had
        already been recorded

    Raises:
        UnverifiedPaymentError: Status is not "succeeded"
        MissingRequiredFieldError: Metadata is incomplete (nothing written)
        PersistenceFailureError: The primary record could not be written
    """
    if verified_status != gateway.SUCCEEDED:
        logger.warning(f"Refusing to reconcile {payment_reference}: status is {verified_status}")
        raise UnverifiedPaymentError(
            f"Payment {payment_reference} has status {verified_status}"
        )

    try:
        meta = decode_metadata(payload.get("metadata"))
    except MissingRequiredFieldError as e:
        logger.error(f"Cannot reconcile {payment_reference}: {e}")
        raise

    return await _HANDLERS[meta.type](payment_reference, meta, payload)


# ========== Subscriptions (invoice events) ==========


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription")
    if isinstance(subscription, Mapping):
        return subscription.get("id")
    if subscription:
        return subscription
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


async def reconcile_subscription_invoice(
    invoice: Mapping[str, Any], expected_user_id: Optional[str] = None
) -> ReconcileResult:
    """
    Record a paid subscription invoice (first payment or renewal).

    The Stripe invoice ID is the idempotency key: plan minutes are only
    credited when the invoice row is new.
    """
    invoice_id = invoice.get("id") or ""
    billing_reason = invoice.get("billing_reason")
    if billing_reason not in SUBSCRIPTION_BILLING_REASONS:
        logger.info(f"Ignoring invoice {invoice_id} with billing_reason={billing_reason}")
        return ReconcileResult(
            payment_reference=invoice_id,
            transaction_type="subscription",
            state=TransactionState.RECONCILED,
            message=f"Ignored billing reason {billing_reason}",
        )

    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        raise MissingRequiredFieldError(["subscription"])

    subscription = await gateway.get_subscription(subscription_id)
    meta = decode_metadata({"type": "subscription", **(subscription.get("metadata") or {})})
    if expected_user_id and meta.user_id != expected_user_id:
        raise ForbiddenError(
            f"Subscription {subscription_id} belongs to {meta.user_id}, not {expected_user_id}"
        )

    amount_paid = invoice.get("amount_paid")
    amount = from_minor_units(amount_paid) if isinstance(amount_paid, int) else Decimal("0")
    created = invoice.get("created")
    paid_at = from_unix_timestamp(created) if created else None

    return await _activate_plan(invoice_id, meta, amount, subscription, paid_at)


async def sync_subscription_status(subscription: Mapping[str, Any], deleted: bool = False) -> int:
    """Mirror a subscription's status onto the linked profile(s)."""
    subscription_id = subscription.get("id")
    data: Dict[str, Any] = {
        "stripe_subscription_status": "canceled" if deleted else subscription.get("status"),
        "stripe_cancel_at_period_end": False if deleted else bool(subscription.get("cancel_at_period_end")),
    }
    if deleted:
        data["plan_id"] = None
        data["stripe_subscription_id"] = None

    updated = await get_db_client().update_profiles_by_subscription(subscription_id, data)
    logger.info(
        f"Subscription {subscription_id} status mirrored "
        f"(status={data['stripe_subscription_status']}, profiles={updated})"
    )
    return updated


async def mark_subscription_past_due(invoice: Mapping[str, Any]) -> int:
    """Flag the profile when a subscription payment fails."""
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return 0
    updated = await get_db_client().update_profiles_by_subscription(
        subscription_id, {"stripe_subscription_status": "past_due"}
    )
    logger.warning(f"Subscription {subscription_id} payment failed (invoice {invoice.get('id')})")
    return updated


# ========== Entry points ==========


async def verify_and_reconcile(
    payment_intent_id: str, user: Optional[AuthenticatedUser] = None
) -> ReconcileResult:
    """
    Confirm a payment reported by the client.

    The intent is fetched from Stripe; the client's own view of the payment
    is ignored. Subscription intents are resolved through their invoice.

    Raises:
        UnverifiedPaymentError: Unknown intent or not succeeded
        ForbiddenError: The payment belongs to another user
    """
    intent = await gateway.get_payment_intent(payment_intent_id)
    if intent is None:
        raise UnverifiedPaymentError(f"Payment intent {payment_intent_id} not found")

    status = intent.get("status")
    if status != gateway.SUCCEEDED:
        logger.warning(
            f"Client confirmation for {payment_intent_id} rejected: Stripe status is {status}"
        )
        raise UnverifiedPaymentError(f"Payment {payment_intent_id} has status {status}")

    metadata = intent.get("metadata") or {}
    if "type" not in metadata and intent.get("invoice"):
        invoice_ref = intent["invoice"]
        invoice = invoice_ref if isinstance(invoice_ref, Mapping) else await gateway.get_invoice(invoice_ref)
        return await reconcile_subscription_invoice(invoice, user.id if user else None)

    owner = metadata.get("user_id") or metadata.get("buyer_id")
    if user is not None and owner and owner != user.id and not user.is_admin:
        raise ForbiddenError(f"Payment {payment_intent_id} belongs to {owner}, not {user.id}")

    return await reconcile(payment_intent_id, status, intent)


async def handle_webhook_event(event: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Apply a verified Stripe webhook event.

    Returns:
        Response dict for the webhook endpoint
    """
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == "payment_intent.succeeded":
        reference = obj.get("id")
        if "type" not in (obj.get("metadata") or {}):
            # Subscription intents are recorded from invoice.payment_succeeded
            return {"status": "ignored", "message": "No transaction type in metadata"}
        try:
            result = await reconcile(reference, obj.get("status", gateway.SUCCEEDED), obj)
        except MissingRequiredFieldError as e:
            return {"status": "rejected", "payment_reference": reference, "message": str(e)}
        return {"status": "success", **result.model_dump()}

    if event_type in ("payment_intent.payment_failed", "payment_intent.canceled"):
        logger.warning(
            f"Payment {obj.get('id')} {event_type.split('.')[-1]} "
            f"(type={(obj.get('metadata') or {}).get('type')})"
        )
        return {
            "status": "failed",
            "payment_reference": obj.get("id"),
            "state": TransactionState.FAILED.value,
        }

    if event_type == "invoice.payment_succeeded":
        result = await reconcile_subscription_invoice(obj)
        return {"status": "success", **result.model_dump()}

    if event_type == "invoice.payment_failed":
        updated = await mark_subscription_past_due(obj)
        return {"status": "processed", "profiles_updated": updated}

    if event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
        updated = await sync_subscription_status(
            obj, deleted=event_type == "customer.subscription.deleted"
        )
        return {"status": "processed", "profiles_updated": updated}

    return {"status": "ignored", "event_type": event_type}

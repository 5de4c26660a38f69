"""
Background payment sweep using APScheduler.

Compares recent Stripe payment intents with local records:
- succeeded intents with no primary record are reconciled;
- intents stuck in a non-terminal state past the cutoff are cancelled
  and count as abandoned.
"""

from datetime import datetime, timedelta
from typing import Any, List, Mapping, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel, Field

from booking.reconciler import reconcile
from config import settings
from db import get_db_client
from models.transaction import TransactionState, classify_transaction
from payments import stripe as gateway
from utils.datetime_utils import from_unix_timestamp, utc_now
from utils.exceptions import AppError
from utils.logging_config import setup_logging

logger = setup_logging(
    name=__name__, log_level="INFO", log_file="sweep.log", log_dir="logs"
)

scheduler = AsyncIOScheduler()


class SweepReport(BaseModel):
    """Counts from one sweep run."""

    checked: int = 0
    reconciled: int = 0
    abandoned: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)


async def has_primary_record(intent: Mapping[str, Any]) -> bool:
    """Check whether the payment already produced its primary record."""
    db = get_db_client()
    reference = intent["id"]
    transaction_type = (intent.get("metadata") or {}).get("type")

    if transaction_type == "appointment":
        return await db.get_booking_by_payment_reference(reference) is not None
    if transaction_type == "gift_card":
        return await db.get_gift_card_by_payment_reference(reference) is not None
    return await db.get_invoice_by_payment_reference(reference) is not None


async def sweep_payments(now: Optional[datetime] = None) -> SweepReport:
    """Run one reconciliation and abandonment pass."""
    now = now or utc_now()
    report = SweepReport()
    abandon_after = timedelta(hours=settings.abandon_after_hours)

    intents = await gateway.list_payment_intents(
        now - timedelta(hours=settings.sweep_lookback_hours)
    )

    for intent in intents:
        reference = intent.get("id")
        metadata = intent.get("metadata") or {}
        transaction_type = metadata.get("type")
        if not transaction_type:
            # Subscription invoices are handled by invoice webhooks
            report.skipped += 1
            continue

        report.checked += 1
        status = intent.get("status", "")
        try:
            reconciled = await has_primary_record(intent)
            created = intent.get("created")
            state = classify_transaction(
                status,
                reconciled,
                created_at=from_unix_timestamp(created) if created else None,
                now=now,
                abandon_after=abandon_after,
            )

            if status == gateway.SUCCEEDED and state == TransactionState.AWAITING_CONFIRMATION:
                logger.warning(
                    f"Payment {reference} (type={transaction_type}) succeeded without a record, reconciling"
                )
                await reconcile(reference, status, intent)
                report.reconciled += 1
            elif state == TransactionState.ABANDONED:
                if status in gateway.CANCELABLE_STATUSES:
                    await gateway.cancel_payment_intent(reference)
                logger.info(f"Payment {reference} (type={transaction_type}) abandoned in {status}")
                report.abandoned += 1
        except AppError as e:
            logger.error(
                f"Sweep failed for payment {reference} (type={transaction_type}): {e}",
                exc_info=True,
            )
            report.errors.append(f"{reference}: {e}")

    logger.info(
        f"Payment sweep complete: {report.checked} checked, {report.reconciled} reconciled, "
        f"{report.abandoned} abandoned, {len(report.errors)} errors"
    )
    return report


async def run_sweep() -> None:
    """Scheduled job wrapper; a failing run must not stop the scheduler."""
    try:
        await sweep_payments()
    except AppError as e:
        logger.error(f"Payment sweep aborted: {e}", exc_info=True)


def setup_scheduler() -> None:
    """Register the sweep job and start the scheduler."""
    scheduler.add_job(
        run_sweep,
        trigger=IntervalTrigger(minutes=settings.sweep_interval_minutes),
        id="payment_sweep",
        name="Reconcile and expire stale payments",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(f"Scheduler started (sweep every {settings.sweep_interval_minutes} min)")


def shutdown_scheduler() -> None:
    """Shutdown the scheduler."""
    scheduler.shutdown()
    logger.info("Scheduler stopped")

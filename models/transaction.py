"""Payment transaction states and reconciliation results."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class TransactionState(str, Enum):
    """Lifecycle of one payment-backed transaction."""

    INITIATED = "initiated"  # intent created, nothing recorded yet
    AWAITING_CONFIRMATION = "awaiting_confirmation"  # payer submitted, provider working
    RECONCILED = "reconciled"  # primary record written
    FAILED = "failed"  # payment failed, canceled or rejected
    ABANDONED = "abandoned"  # no terminal signal before the cutoff


_INITIATED_PROVIDER_STATUSES = frozenset({"requires_payment_method", "requires_confirmation"})
_AWAITING_PROVIDER_STATUSES = frozenset({"requires_action", "processing", "requires_capture"})


def classify_transaction(
    provider_status: str,
    reconciled: bool,
    created_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    abandon_after: Optional[timedelta] = None,
) -> TransactionState:
    """
    Derive the transaction state from the provider status and local records.

    Args:
        provider_status: PaymentIntent status reported by Stripe
        reconciled: Whether a primary record references the payment
        created_at: When the intent was created
        now: Current time (aware)
        abandon_after: Age after which a non-terminal intent is abandoned

    Returns:
        The transaction state
    """
    if reconciled:
        return TransactionState.RECONCILED
    if provider_status == "canceled":
        return TransactionState.FAILED

    non_terminal = (
        provider_status in _INITIATED_PROVIDER_STATUSES
        or provider_status in _AWAITING_PROVIDER_STATUSES
    )
    if (
        non_terminal
        and created_at is not None
        and now is not None
        and abandon_after is not None
        and now - created_at >= abandon_after
    ):
        return TransactionState.ABANDONED

    if provider_status in _INITIATED_PROVIDER_STATUSES:
        return TransactionState.INITIATED
    if provider_status in _AWAITING_PROVIDER_STATUSES:
        return TransactionState.AWAITING_CONFIRMATION
    if provider_status == "succeeded":
        # Paid but not yet recorded: the reconciler still has to run
        return TransactionState.AWAITING_CONFIRMATION
    return TransactionState.FAILED


class ReconcileResult(BaseModel):
    """Outcome of recording a verified payment."""

    model_config = ConfigDict(use_enum_values=True)

    payment_reference: str
    transaction_type: str
    record_id: Optional[str] = None
    duplicate: bool = False
    state: TransactionState = TransactionState.RECONCILED
    message: str = ""

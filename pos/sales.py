"""
Point-of-sale flow for staff at the studio.

Totals are recomputed server-side from the item prices and discount. The
tender is taken first (gift card redemption or minute debit), then the
invoice is written, then purchased plans and packs are credited.
"""

import uuid
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from db import get_db_client
from ledger.gift_cards import redeem_gift_card
from ledger.minutes import assign_plan, credit_minutes, debit_minutes
from models.invoice import InvoiceCreate
from models.profile import AuthenticatedUser
from utils.constants import MAX_NAME_LENGTH, MAX_POS_ITEMS
from utils.exceptions import (
    AppError,
    DatabaseError,
    ForbiddenError,
    PersistenceFailureError,
    ValidationError,
)
from utils.logging_config import setup_logging
from utils.validation import sanitize_text

logger = setup_logging(name=__name__, log_level="INFO", log_file="pos.log", log_dir="logs")


class POSItem(BaseModel):
    """One line of a sale."""

    id: str
    title: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    price: Decimal = Field(..., ge=0)
    type: Literal["service", "plan", "pack", "product"]
    minutes: int = Field(default=0, ge=0, description="Minutes granted by a plan or pack")


class POSSale(BaseModel):
    """A sale entered at the till."""

    user_id: Optional[str] = None
    items: List[POSItem] = Field(..., min_length=1, max_length=MAX_POS_ITEMS)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    payment_method: Literal["cash", "card", "stripe_terminal", "gift_card", "minutes"]
    gift_code: Optional[str] = None
    minutes_to_deduct: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_tender(self) -> "POSSale":
        if self.discount > self.subtotal:
            raise ValueError("discount cannot exceed subtotal")
        if self.payment_method == "gift_card" and not self.gift_code:
            raise ValueError("gift_code is required for gift card payments")
        if self.payment_method == "minutes":
            if not self.user_id:
                raise ValueError("user_id is required for minute payments")
            if not self.minutes_to_deduct:
                raise ValueError("minutes_to_deduct is required for minute payments")
        return self

    @property
    def subtotal(self) -> Decimal:
        return sum((item.price for item in self.items), Decimal("0"))

    @property
    def total(self) -> Decimal:
        return (self.subtotal - self.discount).quantize(Decimal("0.01"))

    def describe(self) -> str:
        description = "POS: " + ", ".join(sanitize_text(item.title) for item in self.items)
        if self.discount > 0:
            description += f" | Discount: -{self.discount:.2f}"
        if self.payment_method == "gift_card":
            description += " | Paid by gift card"
        elif self.payment_method == "minutes":
            description += f" | Paid with {self.minutes_to_deduct} minutes"
        return description


async def process_pos_sale(staff: AuthenticatedUser, sale: POSSale) -> Dict[str, Any]:
    """
    Record a till sale.

    Returns:
        Dict with ``invoice_id``, ``reference`` and ``total``

    Raises:
        ForbiddenError: Caller is not an admin
        GiftCard* / InsufficientBalanceError: Tender rejected (nothing written)
        PersistenceFailureError: Tender taken but the invoice could not be written
    """
    if not staff.is_admin:
        raise ForbiddenError(f"User {staff.id} is not allowed to use the POS")

    reference = f"pos_{uuid.uuid4().hex}"
    total = sale.total

    if sale.payment_method == "gift_card":
        if total <= 0:
            raise ValidationError("Nothing to charge to the gift card")
        await redeem_gift_card(sale.gift_code, total, reference=reference)
    elif sale.payment_method == "minutes":
        await debit_minutes(sale.user_id, sale.minutes_to_deduct)

    db = get_db_client()
    try:
        invoice = await db.create_invoice(
            InvoiceCreate(
                user_id=sale.user_id,
                amount=total,
                payment_method=sale.payment_method,
                description=sale.describe(),
                payment_reference=reference,
            )
        )
    except DatabaseError as e:
        logger.error(
            f"POS sale {reference} ({sale.payment_method}, {total}) tendered but invoice failed: {e}"
        )
        raise PersistenceFailureError(reference) from e

    if sale.user_id:
        for item in sale.items:
            if item.type not in ("plan", "pack") or item.minutes <= 0:
                continue
            try:
                if item.type == "plan":
                    await assign_plan(sale.user_id, item.id, item.minutes)
                else:
                    await credit_minutes(sale.user_id, item.minutes)
            except AppError as e:
                logger.error(
                    f"POS sale {reference}: failed to credit {item.minutes} minutes "
                    f"({item.type} {item.id}) to {sale.user_id}: {e}"
                )

    logger.info(
        f"POS sale {reference} by {staff.id}: {len(sale.items)} items, total {total} "
        f"({sale.payment_method}), invoice {invoice.id}"
    )
    return {"invoice_id": invoice.id, "reference": reference, "total": str(total)}

"""Invoice models. Invoices are append-only sale records."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

INVOICE_STATUS_PAID = "paid"


class Invoice(BaseModel):
    """Invoice model."""

    id: Optional[str] = None
    user_id: Optional[str] = None
    amount: Decimal = Field(..., ge=0)
    payment_method: str
    description: str
    status: str = INVOICE_STATUS_PAID
    plan_id: Optional[str] = None
    payment_reference: Optional[str] = Field(
        None, description="Stripe payment intent or invoice ID"
    )
    date: Optional[datetime] = None
    created_at: Optional[datetime] = None


class InvoiceCreate(BaseModel):
    """Invoice creation model."""

    user_id: Optional[str] = None
    amount: Decimal = Field(..., ge=0)
    payment_method: str
    description: str
    status: str = INVOICE_STATUS_PAID
    plan_id: Optional[str] = None
    payment_reference: Optional[str] = None
    date: Optional[datetime] = None

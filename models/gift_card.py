"""Gift card models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class GiftCardStatus(str, Enum):
    """Gift card lifecycle status."""

    ACTIVE = "active"
    REDEEMED = "redeemed"
    EXPIRED = "expired"


class GiftCard(BaseModel):
    """Gift card model.

    A card without ``recipient_id`` is a bearer card: whoever presents the
    code may redeem it.
    """

    model_config = ConfigDict(use_enum_values=True)

    id: Optional[str] = None
    code: str
    initial_balance: Decimal = Field(..., ge=0)
    current_balance: Decimal = Field(..., ge=0)
    buyer_id: Optional[str] = None
    recipient_id: Optional[str] = None
    status: GiftCardStatus = GiftCardStatus.ACTIVE
    payment_reference: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _balance_within_initial(self) -> "GiftCard":
        if self.current_balance > self.initial_balance:
            raise ValueError("current_balance cannot exceed initial_balance")
        return self

    @property
    def is_bearer(self) -> bool:
        return self.recipient_id is None


class GiftCardCreate(BaseModel):
    """Gift card creation model. New cards start at full balance."""

    code: str
    amount: Decimal = Field(..., gt=0)
    buyer_id: Optional[str] = None
    recipient_id: Optional[str] = None
    payment_reference: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_row(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "code": self.code,
            "initial_balance": str(self.amount),
            "current_balance": str(self.amount),
            "status": GiftCardStatus.ACTIVE.value,
            "metadata": self.metadata,
        }
        for field in ("buyer_id", "recipient_id", "payment_reference"):
            value = getattr(self, field)
            if value is not None:
                row[field] = value
        return row

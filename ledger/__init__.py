"""Minute and gift card ledgers."""

from .gift_cards import (
    create_reseller_gift_card,
    generate_gift_code,
    issue_gift_card,
    redeem_gift_card,
    validate_gift_card,
)
from .minutes import assign_plan, credit_minutes, debit_minutes

__all__ = [
    "assign_plan",
    "create_reseller_gift_card",
    "credit_minutes",
    "debit_minutes",
    "generate_gift_code",
    "issue_gift_card",
    "redeem_gift_card",
    "validate_gift_card",
]

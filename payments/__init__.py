"""Stripe gateway, pricing and subscription flows."""

from .pricing import ResolvedCharge, from_minor_units, to_minor_units
from .stripe import (
    cancel_payment_intent,
    create_payment_intent,
    get_payment_intent,
    list_payment_intents,
)
from .subscriptions import cancel_subscription, start_subscription

__all__ = [
    "ResolvedCharge",
    "cancel_payment_intent",
    "cancel_subscription",
    "create_payment_intent",
    "from_minor_units",
    "get_payment_intent",
    "list_payment_intents",
    "start_subscription",
    "to_minor_units",
]

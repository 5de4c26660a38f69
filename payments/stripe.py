"""
Stripe payment gateway.

Thin wrapper over the Stripe SDK: payment intents, customers and
subscriptions. Every call runs in a worker thread with a bounded timeout.
No retries are performed here; callers decide their own retry policy.
Nothing in this module writes to the database.
"""

import asyncio
import json
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import stripe

from config import settings
from utils.exceptions import (
    InvalidAmountError,
    ProviderUnavailableError,
    ValidationError,
    WebhookVerificationError,
)
from utils.logging_config import setup_logging

logger = setup_logging(
    name=__name__,
    log_level="INFO",
    log_file="payments.log",
    log_dir="logs"
)

# Initialize Stripe
stripe.api_key = settings.stripe_secret_key
stripe.max_network_retries = 0

SUCCEEDED = "succeeded"
CANCELABLE_STATUSES = frozenset(
    {"requires_payment_method", "requires_confirmation", "requires_action", "requires_capture"}
)


def to_dict(obj: Any) -> Dict[str, Any]:
    """Convert a Stripe object (or plain mapping) into a dict."""
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


async def _call(func, *args, action: str, reference: str = "", **kwargs):
    """
    Run a synchronous Stripe call off the event loop.

    Raises:
        ProviderUnavailableError: If Stripe errors or the call times out
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs),
            timeout=settings.stripe_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        logger.error(f"Stripe timeout during {action} (reference={reference or '-'})")
        raise ProviderUnavailableError(f"Stripe timeout during {action}") from e
    except stripe.StripeError as e:
        logger.error(
            f"Stripe error during {action} (reference={reference or '-'}): {e}",
            exc_info=True
        )
        raise ProviderUnavailableError(f"Stripe error during {action}: {e}") from e


# ========== Payment Intents ==========


async def create_payment_intent(
    amount: int,
    metadata: Mapping[str, str],
    currency: Optional[str] = None,
    description: Optional[str] = None,
    customer_id: Optional[str] = None,
    receipt_email: Optional[str] = None,
) -> Dict[str, str]:
    """
    Create a Stripe payment intent.

    Args:
        amount: Amount in minor units (cents)
        metadata: String-only metadata map
        currency: ISO currency code (defaults to settings.currency)
        description: Shown on the Stripe dashboard
        customer_id: Optional Stripe customer
        receipt_email: Optional receipt address

    Returns:
        Dict with ``client_secret`` and ``payment_intent_id``

    Raises:
        InvalidAmountError: If amount is zero or negative
        ProviderUnavailableError: If Stripe fails or times out
    """
    if amount <= 0:
        raise InvalidAmountError(f"Invalid amount: {amount} must be positive")

    params: Dict[str, Any] = {
        "amount": amount,
        "currency": (currency or settings.currency).lower(),
        "metadata": dict(metadata),
        "automatic_payment_methods": {"enabled": True},
    }
    if description:
        params["description"] = description
    if customer_id:
        params["customer"] = customer_id
    if receipt_email:
        params["receipt_email"] = receipt_email

    intent = await _call(
        stripe.PaymentIntent.create,
        action="create payment intent",
        reference=metadata.get("type", ""),
        **params,
    )

    logger.info(
        f"Created payment intent {intent['id']} for {amount} {params['currency']} "
        f"(type={metadata.get('type')})"
    )
    return {"client_secret": intent["client_secret"], "payment_intent_id": intent["id"]}


async def get_payment_intent(payment_intent_id: str) -> Optional[Dict[str, Any]]:
    """
    Get payment intent by ID.

    Returns:
        Intent as a dict, or None if Stripe does not know the ID

    Raises:
        ValidationError: If payment_intent_id is empty
        ProviderUnavailableError: On any other Stripe failure
    """
    if not payment_intent_id:
        raise ValidationError("Payment intent ID is required")

    try:
        intent = await asyncio.wait_for(
            asyncio.to_thread(stripe.PaymentIntent.retrieve, payment_intent_id),
            timeout=settings.stripe_timeout_seconds,
        )
    except stripe.InvalidRequestError as e:
        logger.debug(f"Payment intent {payment_intent_id} not found: {e}")
        return None
    except asyncio.TimeoutError as e:
        logger.error(f"Stripe timeout retrieving payment intent {payment_intent_id}")
        raise ProviderUnavailableError("Stripe timeout during retrieve payment intent") from e
    except stripe.StripeError as e:
        logger.error(
            f"Stripe error retrieving payment intent {payment_intent_id}: {e}",
            exc_info=True
        )
        raise ProviderUnavailableError(f"Stripe error during retrieve payment intent: {e}") from e

    return to_dict(intent)


async def cancel_payment_intent(payment_intent_id: str) -> Dict[str, Any]:
    """Cancel a payment intent that has not completed."""
    intent = await _call(
        stripe.PaymentIntent.cancel,
        payment_intent_id,
        action="cancel payment intent",
        reference=payment_intent_id,
    )
    logger.info(f"Canceled payment intent {payment_intent_id}")
    return to_dict(intent)


async def list_payment_intents(created_after: datetime, limit: int = 100) -> List[Dict[str, Any]]:
    """List payment intents created after a point in time (newest first)."""

    def _collect() -> List[Dict[str, Any]]:
        page = stripe.PaymentIntent.list(
            created={"gte": int(created_after.timestamp())}, limit=min(limit, 100)
        )
        intents = []
        for intent in page.auto_paging_iter():
            intents.append(to_dict(intent))
            if len(intents) >= limit:
                break
        return intents

    return await _call(_collect, action="list payment intents")


# ========== Customers & Subscriptions ==========


async def create_customer(email: Optional[str], user_id: str) -> str:
    """Create a Stripe customer linked to a profile. Returns the customer ID."""
    params: Dict[str, Any] = {"metadata": {"user_id": user_id}}
    if email:
        params["email"] = email
    customer = await _call(
        stripe.Customer.create, action="create customer", reference=user_id, **params
    )
    logger.info(f"Created Stripe customer {customer['id']} for user {user_id}")
    return customer["id"]


async def create_subscription(
    customer_id: str, price_id: str, metadata: Mapping[str, str]
) -> Dict[str, Any]:
    """
    Create an incomplete subscription awaiting its first payment.

    Returns:
        Dict with ``subscription_id``, ``status`` and the first invoice's
        ``client_secret`` (None if Stripe did not return one)
    """
    subscription = await _call(
        stripe.Subscription.create,
        action="create subscription",
        reference=customer_id,
        customer=customer_id,
        items=[{"price": price_id}],
        payment_behavior="default_incomplete",
        payment_settings={"save_default_payment_method": "on_subscription"},
        expand=["latest_invoice.payment_intent"],
        metadata=dict(metadata),
    )
    data = to_dict(subscription)

    client_secret = None
    invoice = data.get("latest_invoice")
    if isinstance(invoice, Mapping):
        intent = invoice.get("payment_intent")
        if isinstance(intent, Mapping):
            client_secret = intent.get("client_secret")

    logger.info(f"Created subscription {data['id']} for customer {customer_id}")
    return {
        "subscription_id": data["id"],
        "status": data.get("status"),
        "client_secret": client_secret,
    }


async def get_invoice(invoice_id: str) -> Dict[str, Any]:
    """Retrieve a Stripe invoice."""
    invoice = await _call(
        stripe.Invoice.retrieve, invoice_id, action="retrieve invoice", reference=invoice_id
    )
    return to_dict(invoice)


async def get_subscription(subscription_id: str) -> Dict[str, Any]:
    """Retrieve a subscription."""
    subscription = await _call(
        stripe.Subscription.retrieve,
        subscription_id,
        action="retrieve subscription",
        reference=subscription_id,
    )
    return to_dict(subscription)


async def cancel_subscription(subscription_id: str, immediate: bool) -> Dict[str, Any]:
    """
    Cancel a subscription now or at the end of the current period.

    Returns:
        Dict with the provider ``status`` and ``cancel_at_period_end``
    """
    if immediate:
        subscription = await _call(
            stripe.Subscription.cancel,
            subscription_id,
            action="cancel subscription",
            reference=subscription_id,
        )
    else:
        subscription = await _call(
            stripe.Subscription.modify,
            subscription_id,
            action="schedule subscription cancellation",
            reference=subscription_id,
            cancel_at_period_end=True,
        )

    data = to_dict(subscription)
    result = {
        "subscription_id": subscription_id,
        "status": data.get("status"),
        "cancel_at_period_end": bool(data.get("cancel_at_period_end")),
    }
    logger.info(
        f"Subscription {subscription_id} cancellation requested "
        f"(immediate={immediate}, status={result['status']})"
    )
    return result


# ========== Webhooks ==========


def construct_webhook_event(payload: bytes, signature: Optional[str], secret: str) -> Dict[str, Any]:
    """
    Verify a webhook signature and return the event as a plain dict.

    Raises:
        WebhookVerificationError: If the signature or payload is invalid
    """
    if not signature:
        raise WebhookVerificationError("Missing Stripe-Signature header")

    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError as e:
        raise WebhookVerificationError(f"Invalid payload: {e}") from e
    except stripe.SignatureVerificationError as e:
        raise WebhookVerificationError(f"Invalid signature: {e}") from e

    return json.loads(payload.decode("utf-8"))

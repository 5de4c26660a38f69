"""
Subscription start and cancellation flows.

Plan assignment and minute credits happen when the invoice is paid
(see booking.reconciler.reconcile_subscription_invoice), not here.
"""

from typing import Any, Dict

from db import get_db_client
from models.profile import AuthenticatedUser
from payments import stripe as gateway
from payments.pricing import resolve_subscription
from utils.exceptions import (
    DatabaseError,
    ProfileNotFoundError,
    ProviderError,
    SubscriptionNotFoundError,
)
from utils.logging_config import setup_logging

logger = setup_logging(
    name=__name__,
    log_level="INFO",
    log_file="payments.log",
    log_dir="logs"
)


async def start_subscription(user: AuthenticatedUser, plan_id: str) -> Dict[str, Any]:
    """
    Create an incomplete Stripe subscription for a plan.

    Returns:
        Dict with ``client_secret`` for the first invoice and ``subscription_id``
    """
    plan, charge = await resolve_subscription(user, plan_id)

    db = get_db_client()
    profile = await db.get_profile(user.id)
    if profile is None:
        raise ProfileNotFoundError(f"Profile {user.id} not found")

    customer_id = profile.stripe_customer_id
    if not customer_id:
        customer_id = await gateway.create_customer(user.email, user.id)
        await db.update_profile(user.id, {"stripe_customer_id": customer_id})

    subscription = await gateway.create_subscription(
        customer_id, plan.stripe_price_id, charge.metadata
    )
    if not subscription["client_secret"]:
        raise ProviderError(
            f"Subscription {subscription['subscription_id']} returned no payment client secret"
        )

    logger.info(
        f"Started subscription {subscription['subscription_id']} "
        f"for user {user.id} on plan {plan.id}"
    )
    return {
        "client_secret": subscription["client_secret"],
        "subscription_id": subscription["subscription_id"],
        "amount": charge.amount,
        "currency": charge.currency,
    }


async def cancel_subscription(user: AuthenticatedUser, cancel_now: bool = False) -> Dict[str, Any]:
    """
    Cancel the caller's plan.

    Live Stripe subscriptions are cancelled immediately or at period end.
    Any other plan (manual, POS, or left over from an ended subscription)
    is removed right away and the minute balance is zeroed; ``cancel_now``
    does not apply to it.

    Raises:
        ProfileNotFoundError: No profile for the caller
        SubscriptionNotFoundError: Nothing to cancel
    """
    db = get_db_client()
    profile = await db.get_profile(user.id)
    if profile is None:
        raise ProfileNotFoundError(f"Profile {user.id} not found")

    if profile.has_live_subscription:
        result = await gateway.cancel_subscription(profile.stripe_subscription_id, cancel_now)
        try:
            await db.update_profile(
                user.id,
                {
                    "stripe_subscription_status": result["status"],
                    "stripe_cancel_at_period_end": result["cancel_at_period_end"],
                },
            )
        except DatabaseError as e:
            # The subscription.updated webhook carries the same status
            logger.error(
                f"Failed to mirror cancellation of {profile.stripe_subscription_id} "
                f"for user {user.id}: {e}"
            )

        message = (
            "Subscription cancelled immediately."
            if cancel_now
            else "Subscription will end at the close of the current period."
        )
        return {
            "message": message,
            "status": result["status"],
            "cancel_at_period_end": result["cancel_at_period_end"],
        }

    if profile.plan_id:
        await db.update_profile(
            user.id,
            {
                "plan_id": None,
                "stripe_subscription_id": None,
                "stripe_subscription_status": "canceled",
                "minutes_balance": 0,
            },
        )
        logger.info(f"Manual plan {profile.plan_id} removed for user {user.id}, minutes zeroed")
        return {
            "message": "Manual plan cancelled immediately.",
            "status": "canceled",
            "cancel_at_period_end": False,
        }

    raise SubscriptionNotFoundError(f"User {user.id} has no subscription or plan")

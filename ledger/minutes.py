"""
Minute ledger.

A profile's minutes_balance never goes below zero. Every change is a
compare-and-set against the balance that was read, retried a bounded
number of times when another writer got there first.
"""

from typing import Any, Callable, Dict, Optional, Tuple

from db import get_db_client
from models.profile import Profile
from utils.constants import BALANCE_CAS_MAX_ATTEMPTS, MAX_MINUTES_PER_OPERATION
from utils.exceptions import (
    ConcurrentUpdateError,
    InsufficientBalanceError,
    ProfileNotFoundError,
    ValidationError,
)
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_level="INFO", log_file="ledger.log", log_dir="logs")


def _check_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError(f"Minute amount must be a positive integer, got {amount!r}")
    if amount > MAX_MINUTES_PER_OPERATION:
        raise ValidationError(f"Minute amount {amount} exceeds {MAX_MINUTES_PER_OPERATION}")


async def _apply(
    user_id: str,
    compute: Callable[[Profile], Tuple[int, Optional[Dict[str, Any]]]],
    action: str,
) -> Profile:
    """
    Read the profile, compute the new balance and write it with compare-and-set.

    ``compute`` may raise (e.g. InsufficientBalanceError) to abort without
    writing.
    """
    db = get_db_client()

    for attempt in range(1, BALANCE_CAS_MAX_ATTEMPTS + 1):
        profile = await db.get_profile(user_id)
        if profile is None:
            raise ProfileNotFoundError(f"Profile {user_id} not found")

        new_balance, extra = compute(profile)
        updated = await db.compare_and_set_minutes(
            user_id, profile.minutes_balance, new_balance, extra
        )
        if updated is not None:
            logger.info(
                f"{action}: user {user_id} minutes {profile.minutes_balance} -> {new_balance}"
            )
            return updated

        logger.warning(
            f"{action}: balance for user {user_id} changed concurrently "
            f"(attempt {attempt}/{BALANCE_CAS_MAX_ATTEMPTS})"
        )

    raise ConcurrentUpdateError(
        f"{action}: gave up on user {user_id} after {BALANCE_CAS_MAX_ATTEMPTS} attempts"
    )


async def debit_minutes(user_id: str, amount: int) -> int:
    """
    Debit minutes from a user's balance.

    Returns:
        New balance

    Raises:
        InsufficientBalanceError: If amount exceeds the current balance
        ConcurrentUpdateError: If concurrent writers keep winning
    """
    _check_amount(amount)

    def compute(profile: Profile) -> Tuple[int, None]:
        if amount > profile.minutes_balance:
            raise InsufficientBalanceError(
                f"User {user_id} has {profile.minutes_balance} minutes, needs {amount}"
            )
        return profile.minutes_balance - amount, None

    profile = await _apply(user_id, compute, "debit")
    return profile.minutes_balance


async def credit_minutes(user_id: str, amount: int, refund: bool = False) -> int:
    """
    Credit minutes to a user's balance. No upper bound.

    Args:
        user_id: Profile ID
        amount: Minutes to add
        refund: Also add the minutes to the refunded_minutes bonus pool

    Returns:
        New balance
    """
    _check_amount(amount)

    def compute(profile: Profile) -> Tuple[int, Optional[Dict[str, Any]]]:
        extra = None
        if refund:
            extra = {"refunded_minutes": profile.refunded_minutes + amount}
        return profile.minutes_balance + amount, extra

    profile = await _apply(user_id, compute, "refund" if refund else "credit")
    return profile.minutes_balance


async def assign_plan(user_id: str, plan_id: str, minutes: int, extra: Optional[Dict[str, Any]] = None) -> int:
    """Assign a plan and add its minute allowance in one compare-and-set write."""

    def compute(profile: Profile) -> Tuple[int, Dict[str, Any]]:
        data: Dict[str, Any] = {"plan_id": plan_id}
        if extra:
            data.update(extra)
        return profile.minutes_balance + max(minutes, 0), data

    profile = await _apply(user_id, compute, f"assign plan {plan_id}")
    return profile.minutes_balance

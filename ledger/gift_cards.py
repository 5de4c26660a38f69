"""
Gift card ledger.

Codes look like GIFT-XXXX-XXXX. A card's current balance only goes down
(through redeem_gift_card) and never exceeds its initial balance. Every
redemption is written together with its gift_card_redemptions audit row by
the redeem_gift_card SQL function.
"""

import secrets
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from config import settings
from db import UniqueViolationError, get_db_client
from models.gift_card import GiftCard, GiftCardCreate, GiftCardStatus
from models.profile import AuthenticatedUser
from utils.constants import (
    GIFT_CODE_ALPHABET,
    GIFT_CODE_GROUP_LENGTH,
    GIFT_CODE_GROUPS,
    GIFT_CODE_MAX_ATTEMPTS,
    GIFT_CODE_PREFIX,
)
from utils.exceptions import (
    ConflictError,
    ForbiddenError,
    GiftCardInactiveError,
    GiftCardNotFoundError,
    InsufficientFundsError,
    InvalidAmountError,
    ValidationError,
)
from utils.logging_config import setup_logging
from utils.validation import normalize_gift_code

logger = setup_logging(name=__name__, log_level="INFO", log_file="ledger.log", log_dir="logs")


def generate_gift_code() -> str:
    """Generate a random GIFT-XXXX-XXXX code."""
    groups = [
        "".join(secrets.choice(GIFT_CODE_ALPHABET) for _ in range(GIFT_CODE_GROUP_LENGTH))
        for _ in range(GIFT_CODE_GROUPS)
    ]
    return "-".join([GIFT_CODE_PREFIX] + groups)


def parse_amount(amount: Any) -> Decimal:
    """Parse a positive two-place money amount."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError(f"Invalid amount: {amount!r}") from e
    if not value.is_finite() or value <= 0:
        raise InvalidAmountError(f"Invalid amount: {amount!r} must be positive")
    return value.quantize(Decimal("0.01"))


def _normalize(code: str) -> str:
    try:
        return normalize_gift_code(code)
    except ValueError as e:
        raise ValidationError(str(e), "Please enter a valid gift card code.") from e


async def validate_gift_card(code: str) -> GiftCard:
    """
    Look up a card that can still be spent.

    Raises:
        GiftCardNotFoundError: Unknown code
        GiftCardInactiveError: Card is redeemed or expired
        InsufficientFundsError: Card balance is exhausted
    """
    normalized = _normalize(code)
    card = await get_db_client().get_gift_card_by_code(normalized)
    if card is None:
        raise GiftCardNotFoundError(f"Gift card {normalized} not found")
    if card.status != GiftCardStatus.ACTIVE.value:
        raise GiftCardInactiveError(f"Gift card {normalized} is {card.status}")
    if card.current_balance <= 0:
        raise InsufficientFundsError(f"Gift card {normalized} has no balance left")
    return card


async def redeem_gift_card(code: str, amount: Any, reference: Optional[str] = None) -> Decimal:
    """
    Spend an amount from a gift card.

    Args:
        code: Gift card code (case-insensitive)
        amount: Amount in major units
        reference: What the redemption paid for (booking or invoice ID)

    Returns:
        New balance

    Raises:
        GiftCardNotFoundError, GiftCardInactiveError, InsufficientFundsError
    """
    normalized = _normalize(code)
    value = parse_amount(amount)
    db = get_db_client()

    card = await db.get_gift_card_by_code(normalized)
    if card is None:
        raise GiftCardNotFoundError(f"Gift card {normalized} not found")
    if card.status != GiftCardStatus.ACTIVE.value:
        raise GiftCardInactiveError(f"Gift card {normalized} is {card.status}")
    if value > card.current_balance:
        raise InsufficientFundsError(
            f"Gift card {normalized} has {card.current_balance}, requested {value}"
        )

    # The SQL function re-checks under a row lock
    updated = await db.redeem_gift_card(
        normalized, value, reference, settings.gift_card_auto_redeem
    )
    logger.info(
        f"Redeemed {value} from gift card {normalized} "
        f"(balance {card.current_balance} -> {updated.current_balance}, reference={reference})"
    )
    return updated.current_balance


async def issue_gift_card(
    amount: Any,
    buyer_id: Optional[str] = None,
    recipient_id: Optional[str] = None,
    payment_reference: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> GiftCard:
    """
    Create a gift card at full balance with a fresh code.

    Raises:
        DuplicateReferenceError: If a card already exists for payment_reference
        ConflictError: If no free code was found
    """
    value = parse_amount(amount)
    db = get_db_client()

    for attempt in range(GIFT_CODE_MAX_ATTEMPTS):
        card_data = GiftCardCreate(
            code=generate_gift_code(),
            amount=value,
            buyer_id=buyer_id,
            recipient_id=recipient_id,
            payment_reference=payment_reference,
            metadata=metadata or {},
        )
        try:
            card = await db.create_gift_card(card_data)
        except UniqueViolationError:
            logger.warning(f"Gift code collision on {card_data.code}, regenerating")
            continue

        logger.info(
            f"Issued gift card {card.code} for {value} "
            f"(buyer={buyer_id}, reference={payment_reference})"
        )
        return card

    raise ConflictError(f"Could not generate a unique gift code after {GIFT_CODE_MAX_ATTEMPTS} attempts")


async def create_reseller_gift_card(user: AuthenticatedUser, amount: Any) -> GiftCard:
    """
    Issue a bearer card from the reseller console.

    No payment is taken here; the reseller sells the card in store.
    """
    if not user.is_reseller:
        raise ForbiddenError(f"User {user.id} is not a reseller")

    return await issue_gift_card(
        amount,
        buyer_id=user.id,
        metadata={
            "source": "reseller_console",
            "created_by_email": user.email,
            "to_name": "Bearer",
            "from_name": "Reseller",
            "message": "In-store purchase",
        },
    )

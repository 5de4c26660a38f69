"""
Typed payment metadata carried through Stripe.

Stripe metadata is a flat map of strings. Each transaction type has its
own schema; ``encode_metadata`` flattens a typed model into strings and
``decode_metadata`` parses the strings back into the typed model, so both
sides of the channel share one definition.
"""

from datetime import date, time
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from models.booking import PaymentMethod
from utils.constants import STRIPE_METADATA_VALUE_MAX_LENGTH
from utils.datetime_utils import format_time_of_day, parse_time_of_day
from utils.exceptions import MissingRequiredFieldError


class TransactionType(str, Enum):
    """Discriminator stored in metadata["type"]."""

    APPOINTMENT = "appointment"
    GIFT_CARD = "gift_card"
    MINUTE_PACK = "minute_pack"
    SUBSCRIPTION = "subscription"


class _MetadataBase(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class AppointmentMetadata(_MetadataBase):
    type: Literal["appointment"] = "appointment"
    service_id: str = Field(..., min_length=1)
    service_name: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    appointment_date: date
    appointment_time: time
    duration: int = Field(..., gt=0)
    payment_method: PaymentMethod = PaymentMethod.CARD
    price: Decimal = Field(..., gt=0)

    @field_validator("appointment_time", mode="before")
    @classmethod
    def _parse_time(cls, v):
        return parse_time_of_day(v) if isinstance(v, str) else v


class GiftCardMetadata(_MetadataBase):
    type: Literal["gift_card"] = "gift_card"
    amount: Decimal = Field(..., gt=0)
    buyer_id: Optional[str] = None
    from_name: Optional[str] = None
    to_name: Optional[str] = None
    recipient_email: Optional[str] = None
    message: Optional[str] = None


class MinutePackMetadata(_MetadataBase):
    type: Literal["minute_pack"] = "minute_pack"
    user_id: str = Field(..., min_length=1)
    user_email: Optional[str] = None
    pack_id: Optional[str] = None
    pack_name: str = Field(..., min_length=1)
    minutes_amount: int = Field(..., gt=0)


class SubscriptionMetadata(_MetadataBase):
    type: Literal["subscription"] = "subscription"
    user_id: str = Field(..., min_length=1)
    plan_id: str = Field(..., min_length=1)


TransactionMetadata = Annotated[
    Union[AppointmentMetadata, GiftCardMetadata, MinutePackMetadata, SubscriptionMetadata],
    Field(discriminator="type"),
]

_metadata_adapter: TypeAdapter = TypeAdapter(TransactionMetadata)


def _to_metadata_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, Decimal):
        return format(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP), "f")
    if isinstance(value, time):
        return format_time_of_day(value)
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def encode_metadata(metadata: BaseModel) -> Dict[str, str]:
    """
    Flatten typed metadata into Stripe's string-only map.

    Integers are written in base 10, decimals with two places, dates as
    YYYY-MM-DD and times as HH:MM. ``None`` values are omitted.
    """
    encoded: Dict[str, str] = {}
    for key, value in metadata:
        if value is None:
            continue
        text = _to_metadata_string(value)
        encoded[key] = text[:STRIPE_METADATA_VALUE_MAX_LENGTH]
    return encoded


def decode_metadata(raw: Optional[Mapping[str, Any]]) -> TransactionMetadata:
    """
    Parse a Stripe metadata map back into its typed model.

    Raises:
        MissingRequiredFieldError: If the type is unknown or fields are
            missing or unparseable
    """
    data = {k: v for k, v in dict(raw or {}).items() if v not in (None, "")}
    if "type" not in data:
        raise MissingRequiredFieldError(["type"])

    try:
        return _metadata_adapter.validate_python(data)
    except PydanticValidationError as e:
        fields = []
        for error in e.errors():
            loc = [str(part) for part in error.get("loc", ())]
            # First element of loc is the union tag, e.g. ("appointment", "duration")
            fields.append(loc[-1] if len(loc) > 1 else (loc[0] if loc else "type"))
        raise MissingRequiredFieldError(fields or ["metadata"]) from e

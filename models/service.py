"""Catalogue models: services, weekly schedules, plans and minute packs."""

from datetime import datetime, time
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from utils.datetime_utils import parse_time_of_day


class Service(BaseModel):
    """Bookable studio service (e.g. collagen-boost, solarium)."""

    id: str = Field(..., description="Service slug")
    name: str
    description: Optional[str] = None
    durations: List[int] = Field(default_factory=list, description="Offered durations in minutes")
    prices: Dict[int, Decimal] = Field(
        default_factory=dict, description="Price in major units per duration"
    )
    is_under_maintenance: bool = False
    order: int = 0

    @field_validator("durations")
    @classmethod
    def validate_durations(cls, v: List[int]) -> List[int]:
        if any(d <= 0 for d in v):
            raise ValueError("Durations must be positive")
        return sorted(set(v))

    @property
    def default_duration(self) -> Optional[int]:
        return self.durations[0] if self.durations else None

    def price_for(self, duration: int) -> Optional[Decimal]:
        return self.prices.get(duration)


class Schedule(BaseModel):
    """Slot template for one weekday.

    ``order`` is the weekday (1 = Monday ... 7 = Sunday). Rows with a
    ``service_id`` override the studio-wide row for that service.
    """

    id: Optional[str] = None
    service_id: Optional[str] = None
    order: int = Field(..., ge=1, le=7)
    day_name: Optional[str] = None
    time_slots: List[time] = Field(default_factory=list)

    @field_validator("time_slots", mode="before")
    @classmethod
    def parse_slots(cls, v):
        if v is None:
            return []
        return [parse_time_of_day(t) if isinstance(t, str) else t for t in v]


class Plan(BaseModel):
    """Monthly subscription plan with a minute allowance."""

    id: str
    title: str
    minutes: int = Field(..., ge=0)
    price: Decimal = Field(..., ge=0)
    stripe_price_id: Optional[str] = None
    created_at: Optional[datetime] = None


class MinutePack(BaseModel):
    """One-off pack of minutes."""

    id: str
    name: str
    minutes: int = Field(..., gt=0)
    price: Decimal = Field(..., gt=0)

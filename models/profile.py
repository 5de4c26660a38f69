"""Profile models for studio customers and staff."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from utils.constants import LIVE_SUBSCRIPTION_STATUSES


class Profile(BaseModel):
    """User profile (one row per Supabase auth user)."""

    id: str = Field(..., description="Supabase auth user ID")
    email: Optional[str] = None
    display_name: Optional[str] = None
    minutes_balance: int = Field(default=0, ge=0)
    refunded_minutes: int = Field(default=0, ge=0, description="Bonus pool credited by refunds")
    plan_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_subscription_status: Optional[str] = None
    stripe_cancel_at_period_end: bool = False
    is_admin: bool = False
    is_reseller: bool = False
    created_at: Optional[datetime] = None

    @property
    def name_for_display(self) -> str:
        return self.display_name or self.email or "Client"

    @property
    def has_live_subscription(self) -> bool:
        """True while Stripe can still modify or cancel the subscription."""
        return bool(self.stripe_subscription_id) and (
            self.stripe_subscription_status in LIVE_SUBSCRIPTION_STATUSES
        )


class AuthenticatedUser(BaseModel):
    """Caller identity resolved from a Supabase access token."""

    id: str
    email: Optional[str] = None
    profile: Optional[Profile] = None

    @property
    def is_admin(self) -> bool:
        return bool(self.profile and self.profile.is_admin)

    @property
    def is_reseller(self) -> bool:
        return bool(self.profile and (self.profile.is_reseller or self.profile.is_admin))

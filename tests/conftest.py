"""
Pytest configuration and shared fixtures.
"""

import os

# Must be set before config is imported
os.environ.setdefault("LOG_TO_FILE", "0")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test_key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_123")
os.environ.setdefault("ENVIRONMENT", "test")

from contextlib import ExitStack
from datetime import date, time
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from models.booking import Booking
from models.gift_card import GiftCard
from models.invoice import Invoice
from models.profile import AuthenticatedUser, Profile
from models.service import MinutePack, Plan, Schedule, Service

# Every module that resolves the database client at call time
DB_CLIENT_USERS = [
    "api",
    "booking.appointments",
    "booking.availability",
    "booking.reconciler",
    "ledger.gift_cards",
    "ledger.minutes",
    "notifications.email",
    "payments.pricing",
    "payments.subscriptions",
    "pos.sales",
    "scheduler.sweep",
]


@pytest.fixture
def mock_db():
    """Async mock of SupabaseClient patched into every module that uses it."""
    db = AsyncMock()
    db.get_user_from_token.return_value = None
    db.get_booking_by_payment_reference.return_value = None
    db.get_gift_card_by_payment_reference.return_value = None
    db.get_invoice_by_payment_reference.return_value = None
    db.insert_appointment_log.return_value = None
    db.insert_email_log.return_value = None
    with ExitStack() as stack:
        for module in DB_CLIENT_USERS:
            stack.enter_context(patch(f"{module}.get_db_client", return_value=db))
        yield db


@pytest.fixture
def mock_supabase_client():
    """Create a mock Supabase client."""
    mock_client = MagicMock()
    mock_table = MagicMock()
    mock_client.table.return_value = mock_table
    return mock_client, mock_table


@pytest.fixture
def service():
    return Service(
        id="collagen-boost",
        name="Collagen Boost",
        durations=[30, 60],
        prices={30: Decimal("45.00"), 60: Decimal("80.00")},
    )


@pytest.fixture
def weekly_schedule():
    """Studio-wide template: every day 09:00-11:30 every 30 minutes."""
    slots = ["09:00", "09:30", "10:00", "10:30", "11:00", "11:30"]
    return [Schedule(order=day, time_slots=slots) for day in range(1, 8)]


@pytest.fixture
def profile():
    return Profile(
        id="user_123",
        email="client@example.com",
        display_name="Jane Client",
        minutes_balance=120,
    )


@pytest.fixture
def user(profile):
    return AuthenticatedUser(id=profile.id, email=profile.email, profile=profile)


@pytest.fixture
def admin():
    admin_profile = Profile(id="admin_1", email="staff@example.com", is_admin=True)
    return AuthenticatedUser(id="admin_1", email="staff@example.com", profile=admin_profile)


@pytest.fixture
def plan():
    return Plan(
        id="plan_gold",
        title="Gold",
        minutes=300,
        price=Decimal("99.00"),
        stripe_price_id="price_gold",
    )


@pytest.fixture
def minute_pack():
    return MinutePack(id="pack_60", name="60 minutes", minutes=60, price=Decimal("50.00"))


@pytest.fixture
def make_booking():
    """Factory for Booking rows."""

    def _make(**overrides) -> Booking:
        data = {
            "id": "booking_1",
            "user_id": "user_123",
            "service_id": "collagen-boost",
            "date": date(2030, 3, 4),
            "time": time(10, 0),
            "duration": 30,
            "status": "confirmed",
            "payment_method": "card",
            "user_email": "client@example.com",
        }
        data.update(overrides)
        return Booking(**data)

    return _make


@pytest.fixture
def make_gift_card():
    """Factory for gift cards (defaults to GIFT-AB12-CD34 with 50.00)."""

    def _make(**overrides) -> GiftCard:
        data = {
            "id": "card_1",
            "code": "GIFT-AB12-CD34",
            "initial_balance": Decimal("50.00"),
            "current_balance": Decimal("50.00"),
            "status": "active",
        }
        data.update(overrides)
        return GiftCard(**data)

    return _make


@pytest.fixture
def make_invoice():
    """Factory for invoices."""

    def _make(**overrides) -> Invoice:
        data = {
            "id": "invoice_1",
            "user_id": "user_123",
            "amount": Decimal("45.00"),
            "payment_method": "card",
            "description": "Collagen Boost - 30 min",
        }
        data.update(overrides)
        return Invoice(**data)

    return _make

"""
Supabase database client with CRUD operations.
Handles all database interactions for profiles, the service catalogue,
bookings, gift cards, invoices and audit logs.

Row Level Security (RLS) Notes:
==============================
This client uses the service_role key, which bypasses RLS. It must only be
used from server-side handlers after the caller's identity has been checked.
Client applications talk to Supabase with the anon key and are subject to the
policies in db/schema.sql (users read their own bookings, invoices and gift
cards; services, schedules, plans and minute packs are public).

Concurrency Notes:
==================
- Every write that must happen at most once per payment is an INSERT against
  a UNIQUE payment_reference column. A unique violation (SQLSTATE 23505) means
  another caller won the race; it is reported as DuplicateReferenceError.
- Bookings carry a partial UNIQUE index on (service_id, date, time) for active
  statuses, so a double booking surfaces as SlotTakenError.
- Minute balances are updated with compare-and-set on the previously read
  value (see compare_and_set_minutes).
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import Client as SupabaseClientType
from supabase import create_client

from config import settings
from models.booking import ACTIVE_STATUSES, Booking, BookingCreate, BookingStatus
from models.gift_card import GiftCard, GiftCardCreate
from models.invoice import Invoice, InvoiceCreate
from models.profile import AuthenticatedUser, Profile
from models.service import MinutePack, Plan, Schedule, Service
from utils.datetime_utils import parse_iso_datetime, to_iso_string, utc_now
from utils.exceptions import (
    ConflictError,
    DatabaseError,
    DuplicateReferenceError,
    GiftCardInactiveError,
    GiftCardNotFoundError,
    InsufficientFundsError,
    SlotTakenError,
)
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_file="db.log", log_dir="logs")

UNIQUE_VIOLATION = "23505"

# Constraint names from db/schema.sql
BOOKINGS_ACTIVE_SLOT_KEY = "bookings_active_slot_key"
BOOKINGS_PAYMENT_REFERENCE_KEY = "bookings_payment_reference_key"
GIFT_CARDS_CODE_KEY = "gift_cards_code_key"
GIFT_CARDS_PAYMENT_REFERENCE_KEY = "gift_cards_payment_reference_key"
INVOICES_PAYMENT_REFERENCE_KEY = "invoices_payment_reference_key"

# Messages raised by the redeem_gift_card SQL function
_RPC_GIFT_CARD_ERRORS = {
    "gift_card_not_found": GiftCardNotFoundError,
    "gift_card_inactive": GiftCardInactiveError,
    "gift_card_insufficient_funds": InsufficientFundsError,
}


class UniqueViolationError(ConflictError):
    """Raised when an insert hits a UNIQUE constraint."""

    def __init__(self, constraint: Optional[str], message: str):
        self.constraint = constraint
        super().__init__(message)


def _constraint_from_error(error: APIError) -> Optional[str]:
    """Extract the violated constraint name from a PostgREST error message."""
    text = f"{error.message or ''} {error.details or ''}"
    for name in (
        BOOKINGS_ACTIVE_SLOT_KEY,
        BOOKINGS_PAYMENT_REFERENCE_KEY,
        GIFT_CARDS_CODE_KEY,
        GIFT_CARDS_PAYMENT_REFERENCE_KEY,
        INVOICES_PAYMENT_REFERENCE_KEY,
    ):
        if name in text:
            return name
    return None


def _money(value: Decimal) -> str:
    return format(Decimal(value).quantize(Decimal("0.01")), "f")


class SupabaseClient:
    """
    Supabase database client wrapper.

    All PostgREST failures are raised as DatabaseError (or one of the typed
    conflicts above), never as raw client exceptions.
    """

    def __init__(self):
        self.client: SupabaseClientType = create_client(
            settings.supabase_url, settings.supabase_key
        )

    def _execute(self, query, action: str):
        """Run a PostgREST query, translating failures."""
        try:
            return query.execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise UniqueViolationError(
                    _constraint_from_error(e), f"Failed to {action}: {e.message}"
                ) from e
            raise DatabaseError(f"Failed to {action}: {e.message}") from e
        except Exception as e:
            raise DatabaseError(f"Failed to {action}: {e}") from e

    # ========== Auth ==========

    async def get_user_from_token(self, access_token: str) -> Optional[AuthenticatedUser]:
        """
        Resolve a Supabase access token to the caller's identity.

        Returns:
            The user with their profile, or None if the token is invalid
        """
        try:
            response = self.client.auth.get_user(access_token)
        except Exception as e:
            logger.debug(f"Access token rejected: {e}")
            return None

        user = getattr(response, "user", None)
        if user is None:
            return None

        profile = await self.get_profile(user.id)
        return AuthenticatedUser(id=user.id, email=user.email, profile=profile)

    # ========== Profile Operations ==========

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        """Get profile by user ID."""
        response = self._execute(
            self.client.table("profiles").select("*").eq("id", user_id),
            "get profile",
        )
        if response.data:
            return Profile(**response.data[0])
        return None

    async def update_profile(self, user_id: str, data: Dict[str, Any]) -> Optional[Profile]:
        """Update profile columns. Returns None if the profile does not exist."""
        response = self._execute(
            self.client.table("profiles").update(data).eq("id", user_id),
            "update profile",
        )
        if not response.data:
            return None
        return Profile(**response.data[0])

    async def update_profiles_by_subscription(
        self, subscription_id: str, data: Dict[str, Any]
    ) -> int:
        """Update every profile linked to a Stripe subscription."""
        response = self._execute(
            self.client.table("profiles")
            .update(data)
            .eq("stripe_subscription_id", subscription_id),
            "update profile by subscription",
        )
        return len(response.data or [])

    async def compare_and_set_minutes(
        self,
        user_id: str,
        expected_balance: int,
        new_balance: int,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[Profile]:
        """
        Set minutes_balance only if it still equals the value read earlier.

        Returns:
            The updated profile, or None if another writer changed the
            balance first (caller should re-read and retry)
        """
        data: Dict[str, Any] = {"minutes_balance": new_balance}
        if extra:
            data.update(extra)

        response = self._execute(
            self.client.table("profiles")
            .update(data)
            .eq("id", user_id)
            .eq("minutes_balance", expected_balance),
            "update minutes balance",
        )
        if not response.data:
            return None
        return Profile(**response.data[0])

    # ========== Catalogue Operations ==========

    async def get_service(self, service_id: str) -> Optional[Service]:
        """Get service by slug."""
        response = self._execute(
            self.client.table("services").select("*").eq("id", service_id),
            "get service",
        )
        if response.data:
            return Service(**response.data[0])
        return None

    async def get_schedules(self, service_id: str) -> List[Schedule]:
        """Get the studio-wide and service-specific weekday slot templates."""
        response = self._execute(
            self.client.table("schedules")
            .select("*")
            .or_(f"service_id.eq.{service_id},service_id.is.null")
            .order("order", desc=False),
            "get schedules",
        )
        return [Schedule(**item) for item in response.data]

    async def get_plan(self, plan_id: str) -> Optional[Plan]:
        """Get subscription plan by ID."""
        response = self._execute(
            self.client.table("plans").select("*").eq("id", plan_id),
            "get plan",
        )
        if response.data:
            return Plan(**response.data[0])
        return None

    async def get_minute_pack(self, pack_id: str) -> Optional[MinutePack]:
        """Get minute pack by ID."""
        response = self._execute(
            self.client.table("minute_packs").select("*").eq("id", pack_id),
            "get minute pack",
        )
        if response.data:
            return MinutePack(**response.data[0])
        return None

    # ========== Booking Operations ==========

    async def create_booking(self, booking_data: BookingCreate) -> Booking:
        """
        Create a new booking.

        Raises:
            SlotTakenError: If an active booking already holds the slot
            DuplicateReferenceError: If the payment reference is already booked
        """
        data = booking_data.model_dump(mode="json", exclude_none=True)
        try:
            response = self._execute(
                self.client.table("bookings").insert(data), "create booking"
            )
        except UniqueViolationError as e:
            if e.constraint == BOOKINGS_PAYMENT_REFERENCE_KEY:
                raise DuplicateReferenceError(
                    booking_data.payment_reference or "", "bookings"
                ) from e
            raise SlotTakenError(
                f"Slot {booking_data.service_id} {data['date']} {data['time']} is taken"
            ) from e

        if not response.data:
            raise DatabaseError("Failed to create booking: no data returned")

        return self._parse_booking(response.data[0])

    async def get_booking_by_id(self, booking_id: str) -> Optional[Booking]:
        """Get booking by ID."""
        response = self._execute(
            self.client.table("bookings").select("*").eq("id", booking_id),
            "get booking",
        )
        if response.data:
            return self._parse_booking(response.data[0])
        return None

    async def get_booking_by_payment_reference(self, payment_reference: str) -> Optional[Booking]:
        """Get the booking recorded for a payment intent."""
        response = self._execute(
            self.client.table("bookings")
            .select("*")
            .eq("payment_reference", payment_reference),
            "get booking by payment reference",
        )
        if response.data:
            return self._parse_booking(response.data[0])
        return None

    async def get_active_bookings(self, service_id: str, on_date: date) -> List[Booking]:
        """Get pending and confirmed bookings (including blocks) for a service/date."""
        response = self._execute(
            self.client.table("bookings")
            .select("*")
            .eq("service_id", service_id)
            .eq("date", on_date.isoformat())
            .in_("status", [s.value for s in ACTIVE_STATUSES])
            .order("time", desc=False),
            "get active bookings",
        )
        return [self._parse_booking(item) for item in response.data]

    async def update_booking_status(
        self,
        booking_id: str,
        status: BookingStatus,
        expected_status: Optional[BookingStatus] = None,
    ) -> Optional[Booking]:
        """
        Update booking status.

        When ``expected_status`` is given the update only applies if the
        booking is still in that status.
        """
        update_data = {
            "status": BookingStatus(status).value,
            "updated_at": to_iso_string(utc_now()),
        }
        query = self.client.table("bookings").update(update_data).eq("id", booking_id)
        if expected_status is not None:
            query = query.eq("status", BookingStatus(expected_status).value)

        response = self._execute(query, "update booking status")
        if not response.data:
            return None
        return self._parse_booking(response.data[0])

    # ========== Gift Card Operations ==========

    async def create_gift_card(self, card_data: GiftCardCreate) -> GiftCard:
        """
        Create a gift card at full balance.

        Raises:
            DuplicateReferenceError: If a card already exists for the payment
            UniqueViolationError: If the code is already in use
        """
        try:
            response = self._execute(
                self.client.table("gift_cards").insert(card_data.to_row()),
                "create gift card",
            )
        except UniqueViolationError as e:
            if e.constraint == GIFT_CARDS_PAYMENT_REFERENCE_KEY:
                raise DuplicateReferenceError(
                    card_data.payment_reference or "", "gift_cards"
                ) from e
            raise

        if not response.data:
            raise DatabaseError("Failed to create gift card: no data returned")
        return self._parse_gift_card(response.data[0])

    async def get_gift_card_by_code(self, code: str) -> Optional[GiftCard]:
        """Get gift card by its (normalized) code."""
        response = self._execute(
            self.client.table("gift_cards").select("*").eq("code", code),
            "get gift card",
        )
        if response.data:
            return self._parse_gift_card(response.data[0])
        return None

    async def get_gift_card_by_payment_reference(self, payment_reference: str) -> Optional[GiftCard]:
        """Get the gift card issued for a payment intent."""
        response = self._execute(
            self.client.table("gift_cards")
            .select("*")
            .eq("payment_reference", payment_reference),
            "get gift card by payment reference",
        )
        if response.data:
            return self._parse_gift_card(response.data[0])
        return None

    async def redeem_gift_card(
        self,
        code: str,
        amount: Decimal,
        reference: Optional[str],
        auto_redeem: bool,
    ) -> GiftCard:
        """
        Atomically decrement a card and append its redemption audit row.

        Runs the redeem_gift_card SQL function, which locks the card row,
        re-checks status and balance, and writes gift_card_redemptions in the
        same transaction.

        Raises:
            GiftCardNotFoundError, GiftCardInactiveError, InsufficientFundsError
        """
        params = {
            "p_code": code,
            "p_amount": _money(amount),
            "p_reference": reference,
            "p_auto_redeem": auto_redeem,
        }
        try:
            response = self.client.rpc("redeem_gift_card", params).execute()
        except APIError as e:
            for marker, error_cls in _RPC_GIFT_CARD_ERRORS.items():
                if marker in (e.message or ""):
                    raise error_cls(f"Gift card {code}: {marker}") from e
            raise DatabaseError(f"Failed to redeem gift card: {e.message}") from e
        except Exception as e:
            raise DatabaseError(f"Failed to redeem gift card: {e}") from e

        row = response.data[0] if isinstance(response.data, list) else response.data
        if not row:
            raise DatabaseError("Failed to redeem gift card: no data returned")
        return self._parse_gift_card(row)

    # ========== Invoice Operations ==========

    async def create_invoice(self, invoice_data: InvoiceCreate) -> Invoice:
        """
        Append an invoice.

        Raises:
            DuplicateReferenceError: If an invoice already exists for the payment
        """
        data = invoice_data.model_dump(mode="json", exclude_none=True)
        data.setdefault("date", to_iso_string(utc_now()))
        try:
            response = self._execute(
                self.client.table("invoices").insert(data), "create invoice"
            )
        except UniqueViolationError as e:
            raise DuplicateReferenceError(
                invoice_data.payment_reference or "", "invoices"
            ) from e

        if not response.data:
            raise DatabaseError("Failed to create invoice: no data returned")
        return Invoice(**response.data[0])

    async def get_invoice_by_payment_reference(self, payment_reference: str) -> Optional[Invoice]:
        """Get the invoice recorded for a payment intent or Stripe invoice."""
        response = self._execute(
            self.client.table("invoices")
            .select("*")
            .eq("payment_reference", payment_reference),
            "get invoice by payment reference",
        )
        if response.data:
            return Invoice(**response.data[0])
        return None

    # ========== Audit Logs ==========

    async def insert_appointment_log(self, entry: Dict[str, Any]) -> None:
        """Append an appointment_logs row."""
        self._execute(
            self.client.table("appointment_logs").insert(entry), "write appointment log"
        )

    async def insert_email_log(self, entry: Dict[str, Any]) -> None:
        """Append an email_logs row."""
        self._execute(self.client.table("email_logs").insert(entry), "write email log")

    # ========== Helper Methods ==========

    def _parse_booking(self, item: dict) -> Booking:
        item = item.copy()
        for field in ["created_at", "updated_at"]:
            if isinstance(item.get(field), str):
                item[field] = parse_iso_datetime(item[field])
        return Booking(**item)

    def _parse_gift_card(self, item: dict) -> GiftCard:
        item = item.copy()
        if isinstance(item.get("created_at"), str):
            item["created_at"] = parse_iso_datetime(item["created_at"])
        if item.get("metadata") is None:
            item["metadata"] = {}
        return GiftCard(**item)


# Global database client instance
_db_client: Optional[SupabaseClient] = None


def get_db_client() -> SupabaseClient:
    """Get or create database client instance."""
    global _db_client
    if _db_client is None:
        _db_client = SupabaseClient()
    return _db_client

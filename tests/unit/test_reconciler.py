"""
Unit tests for payment reconciliation.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from booking.reconciler import (
    handle_webhook_event,
    reconcile,
    reconcile_subscription_invoice,
    sync_subscription_status,
    verify_and_reconcile,
)
from models.profile import AuthenticatedUser, Profile
from utils.exceptions import (
    DatabaseError,
    DuplicateReferenceError,
    ForbiddenError,
    MissingRequiredFieldError,
    PersistenceFailureError,
    SlotTakenError,
    UnverifiedPaymentError,
)


@pytest.fixture
def appointment_intent():
    return {
        "id": "pi_123",
        "status": "succeeded",
        "amount": 4500,
        "amount_received": 4500,
        "metadata": {
            "type": "appointment",
            "service_id": "collagen-boost",
            "service_name": "Collagen Boost",
            "user_id": "user_123",
            "user_email": "client@example.com",
            "appointment_date": "2030-03-04",
            "appointment_time": "10:00",
            "duration": "30",
            "payment_method": "card",
            "price": "45.00",
        },
    }


@pytest.fixture
def mock_email():
    with patch("booking.reconciler.dispatch_email", new_callable=AsyncMock) as mock_dispatch:
        yield mock_dispatch


class TestReconcileAppointment:
    """Card-paid appointments."""

    @pytest.mark.asyncio
    async def test_creates_confirmed_booking(
        self, mock_db, mock_email, appointment_intent, make_booking, make_invoice
    ):
        mock_db.create_booking.return_value = make_booking(payment_reference="pi_123")
        mock_db.create_invoice.return_value = make_invoice()

        result = await reconcile("pi_123", "succeeded", appointment_intent)

        assert result.record_id == "booking_1"
        assert result.duplicate is False
        assert result.transaction_type == "appointment"

        created = mock_db.create_booking.call_args.args[0]
        assert created.payment_reference == "pi_123"
        assert created.status == "confirmed"
        assert created.duration == 30

        invoice = mock_db.create_invoice.call_args.args[0]
        assert invoice.amount == Decimal("45.00")
        assert invoice.payment_reference == "pi_123"

        assert mock_db.insert_appointment_log.call_args.args[0]["action_type"] == "PAYMENT"
        mock_email.assert_called_once()
        assert mock_email.call_args.args[:2] == ("confirmation", "client@example.com")

    @pytest.mark.asyncio
    async def test_duplicate_confirmation_returns_same_booking(
        self, mock_db, mock_email, appointment_intent, make_booking
    ):
        mock_db.create_booking.side_effect = DuplicateReferenceError("pi_123", "bookings")
        mock_db.get_booking_by_payment_reference.return_value = make_booking(payment_reference="pi_123")

        result = await reconcile("pi_123", "succeeded", appointment_intent)

        assert result.duplicate is True
        assert result.record_id == "booking_1"
        mock_db.create_invoice.assert_not_called()
        mock_email.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejects_unverified_status(self, mock_db, appointment_intent):
        with pytest.raises(UnverifiedPaymentError):
            await reconcile("pi_123", "processing", appointment_intent)
        mock_db.create_booking.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_metadata_writes_nothing(self, mock_db, appointment_intent):
        del appointment_intent["metadata"]["service_id"]

        with pytest.raises(MissingRequiredFieldError):
            await reconcile("pi_123", "succeeded", appointment_intent)
        mock_db.create_booking.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [SlotTakenError("taken"), DatabaseError("down")])
    async def test_primary_write_failure(self, mock_db, mock_email, appointment_intent, error):
        mock_db.create_booking.side_effect = error

        with pytest.raises(PersistenceFailureError) as exc_info:
            await reconcile("pi_123", "succeeded", appointment_intent)

        assert exc_info.value.payment_reference == "pi_123"
        mock_email.assert_not_called()

    @pytest.mark.asyncio
    async def test_side_effect_failure_keeps_booking(
        self, mock_db, mock_email, appointment_intent, make_booking
    ):
        mock_db.create_booking.return_value = make_booking()
        mock_db.create_invoice.side_effect = DatabaseError("invoice insert failed")

        result = await reconcile("pi_123", "succeeded", appointment_intent)

        assert result.record_id == "booking_1"
        mock_db.update_booking_status.assert_not_called()
        mock_email.assert_called_once()


class TestReconcileOtherTypes:
    """Gift cards, minute packs and one-off subscription intents."""

    @pytest.mark.asyncio
    async def test_gift_card(self, mock_db, mock_email, make_gift_card):
        mock_db.create_gift_card.return_value = make_gift_card(payment_reference="pi_gift")
        intent = {
            "id": "pi_gift",
            "amount_received": 5000,
            "metadata": {
                "type": "gift_card",
                "amount": "50.00",
                "buyer_id": "user_123",
                "to_name": "Anna",
                "recipient_email": "anna@example.com",
            },
        }

        result = await reconcile("pi_gift", "succeeded", intent)

        assert result.record_id == "card_1"
        assert result.message == "GIFT-AB12-CD34"
        card = mock_db.create_gift_card.call_args.args[0]
        assert card.amount == Decimal("50.00")
        assert card.payment_reference == "pi_gift"
        assert card.metadata["to_name"] == "Anna"
        assert mock_db.create_invoice.call_args.args[0].user_id == "user_123"
        assert mock_email.call_args.args[:2] == ("gift_card", "anna@example.com")

    @pytest.mark.asyncio
    async def test_gift_card_duplicate(self, mock_db, mock_email, make_gift_card):
        mock_db.create_gift_card.side_effect = DuplicateReferenceError("pi_gift", "gift_cards")
        mock_db.get_gift_card_by_payment_reference.return_value = make_gift_card()

        result = await reconcile(
            "pi_gift", "succeeded", {"id": "pi_gift", "metadata": {"type": "gift_card", "amount": "50"}}
        )

        assert result.duplicate is True
        assert result.record_id == "card_1"
        mock_email.assert_not_called()

    @pytest.mark.asyncio
    async def test_minute_pack_credits_once(self, mock_db, mock_email, make_invoice):
        mock_db.create_invoice.return_value = make_invoice(id="invoice_pack")
        mock_db.get_profile.return_value = Profile(id="user_123", minutes_balance=10)
        mock_db.compare_and_set_minutes.return_value = Profile(id="user_123", minutes_balance=70)
        intent = {
            "id": "pi_pack",
            "amount_received": 5000,
            "metadata": {
                "type": "minute_pack",
                "user_id": "user_123",
                "pack_name": "60 minutes",
                "minutes_amount": "60",
            },
        }

        result = await reconcile("pi_pack", "succeeded", intent)

        assert result.record_id == "invoice_pack"
        mock_db.compare_and_set_minutes.assert_called_once_with("user_123", 10, 70, None)

        # Second delivery: invoice exists, no further credit
        mock_db.create_invoice.side_effect = DuplicateReferenceError("pi_pack", "invoices")
        mock_db.get_invoice_by_payment_reference.return_value = make_invoice(id="invoice_pack")

        again = await reconcile("pi_pack", "succeeded", intent)

        assert again.duplicate is True
        assert mock_db.compare_and_set_minutes.call_count == 1

    @pytest.mark.asyncio
    async def test_minute_pack_invoice_failure(self, mock_db, mock_email):
        mock_db.create_invoice.side_effect = DatabaseError("down")
        intent = {
            "id": "pi_pack",
            "metadata": {"type": "minute_pack", "user_id": "u", "pack_name": "P", "minutes_amount": "30"},
        }

        with pytest.raises(PersistenceFailureError):
            await reconcile("pi_pack", "succeeded", intent)
        mock_db.compare_and_set_minutes.assert_not_called()


class TestSubscriptionInvoices:
    """Invoice-driven plan activation and renewals."""

    @pytest.fixture
    def invoice(self):
        return {
            "id": "in_1",
            "billing_reason": "subscription_cycle",
            "subscription": "sub_1",
            "amount_paid": 9900,
            "created": 1900000000,
        }

    @pytest.mark.asyncio
    async def test_renewal_assigns_plan(self, mock_db, mock_email, invoice, plan, make_invoice):
        mock_db.get_plan.return_value = plan
        mock_db.create_invoice.return_value = make_invoice(id="inv_row")
        mock_db.get_profile.return_value = Profile(id="user_123", minutes_balance=10)
        mock_db.compare_and_set_minutes.return_value = Profile(id="user_123", minutes_balance=310)
        subscription = {
            "id": "sub_1",
            "status": "active",
            "customer": "cus_1",
            "metadata": {"user_id": "user_123", "plan_id": "plan_gold"},
        }

        with patch("booking.reconciler.gateway.get_subscription", AsyncMock(return_value=subscription)):
            result = await reconcile_subscription_invoice(invoice)

        assert result.record_id == "inv_row"
        recorded = mock_db.create_invoice.call_args.args[0]
        assert recorded.payment_reference == "in_1"
        assert recorded.amount == Decimal("99.00")
        assert recorded.plan_id == "plan_gold"
        args = mock_db.compare_and_set_minutes.call_args.args
        assert args[:3] == ("user_123", 10, 310)
        assert args[3]["stripe_subscription_id"] == "sub_1"
        assert args[3]["stripe_customer_id"] == "cus_1"

    @pytest.mark.asyncio
    async def test_subscription_id_from_parent_details(self, mock_db, mock_email, invoice, plan):
        del invoice["subscription"]
        invoice["parent"] = {"subscription_details": {"subscription": "sub_9"}}
        mock_db.get_plan.return_value = plan
        mock_db.create_invoice.side_effect = DuplicateReferenceError("in_1", "invoices")
        get_subscription = AsyncMock(
            return_value={"id": "sub_9", "metadata": {"user_id": "u", "plan_id": "plan_gold"}}
        )

        with patch("booking.reconciler.gateway.get_subscription", get_subscription):
            result = await reconcile_subscription_invoice(invoice)

        get_subscription.assert_called_once_with("sub_9")
        assert result.duplicate is True

    @pytest.mark.asyncio
    async def test_other_billing_reasons_ignored(self, mock_db, invoice):
        invoice["billing_reason"] = "manual"

        result = await reconcile_subscription_invoice(invoice)

        assert result.message.startswith("Ignored")
        mock_db.create_invoice.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_users_subscription(self, mock_db, invoice):
        subscription = {"id": "sub_1", "metadata": {"user_id": "someone_else", "plan_id": "plan_gold"}}

        with patch("booking.reconciler.gateway.get_subscription", AsyncMock(return_value=subscription)):
            with pytest.raises(ForbiddenError):
                await reconcile_subscription_invoice(invoice, expected_user_id="user_123")

    @pytest.mark.asyncio
    async def test_deleted_subscription_clears_plan(self, mock_db):
        mock_db.update_profiles_by_subscription.return_value = 1

        await sync_subscription_status({"id": "sub_1", "status": "canceled"}, deleted=True)

        mock_db.update_profiles_by_subscription.assert_called_once_with(
            "sub_1",
            {
                "stripe_subscription_status": "canceled",
                "stripe_cancel_at_period_end": False,
                "plan_id": None,
                "stripe_subscription_id": None,
            },
        )


class TestVerifyAndReconcile:
    """Client-side confirmation re-checks Stripe."""

    @pytest.mark.asyncio
    async def test_status_comes_from_stripe(self, mock_db, appointment_intent):
        appointment_intent["status"] = "requires_payment_method"

        with patch("booking.reconciler.gateway.get_payment_intent", AsyncMock(return_value=appointment_intent)):
            with pytest.raises(UnverifiedPaymentError):
                await verify_and_reconcile("pi_123")
        mock_db.create_booking.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_intent(self, mock_db):
        with patch("booking.reconciler.gateway.get_payment_intent", AsyncMock(return_value=None)):
            with pytest.raises(UnverifiedPaymentError):
                await verify_and_reconcile("pi_missing")

    @pytest.mark.asyncio
    async def test_other_users_payment(self, mock_db, appointment_intent):
        stranger = AuthenticatedUser(id="user_999")
        with patch("booking.reconciler.gateway.get_payment_intent", AsyncMock(return_value=appointment_intent)):
            with pytest.raises(ForbiddenError):
                await verify_and_reconcile("pi_123", stranger)

    @pytest.mark.asyncio
    async def test_owner_confirms(self, mock_db, mock_email, appointment_intent, user, make_booking):
        mock_db.create_booking.return_value = make_booking()

        with patch("booking.reconciler.gateway.get_payment_intent", AsyncMock(return_value=appointment_intent)):
            result = await verify_and_reconcile("pi_123", user)

        assert result.record_id == "booking_1"


class TestHandleWebhookEvent:
    """Event dispatch."""

    @pytest.mark.asyncio
    async def test_payment_succeeded(self, mock_db, mock_email, appointment_intent, make_booking):
        mock_db.create_booking.return_value = make_booking()

        result = await handle_webhook_event(
            {"type": "payment_intent.succeeded", "data": {"object": appointment_intent}}
        )

        assert result["status"] == "success"
        assert result["record_id"] == "booking_1"

    @pytest.mark.asyncio
    async def test_missing_type_is_ignored(self, mock_db):
        result = await handle_webhook_event(
            {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1", "metadata": {}}}}
        )

        assert result["status"] == "ignored"
        mock_db.create_booking.assert_not_called()

    @pytest.mark.asyncio
    async def test_incomplete_metadata_is_rejected(self, mock_db):
        result = await handle_webhook_event(
            {
                "type": "payment_intent.succeeded",
                "data": {"object": {"id": "pi_1", "status": "succeeded", "metadata": {"type": "appointment"}}},
            }
        )

        assert result["status"] == "rejected"

    @pytest.mark.asyncio
    async def test_payment_failed(self, mock_db):
        result = await handle_webhook_event(
            {"type": "payment_intent.payment_failed", "data": {"object": {"id": "pi_1"}}}
        )

        assert result == {"status": "failed", "payment_reference": "pi_1", "state": "failed"}

    @pytest.mark.asyncio
    async def test_invoice_payment_failed_marks_past_due(self, mock_db):
        mock_db.update_profiles_by_subscription.return_value = 1

        result = await handle_webhook_event(
            {"type": "invoice.payment_failed", "data": {"object": {"id": "in_1", "subscription": "sub_1"}}}
        )

        assert result["profiles_updated"] == 1
        mock_db.update_profiles_by_subscription.assert_called_once_with(
            "sub_1", {"stripe_subscription_status": "past_due"}
        )

    @pytest.mark.asyncio
    async def test_unhandled_type(self, mock_db):
        result = await handle_webhook_event({"type": "charge.refunded", "data": {"object": {}}})

        assert result == {"status": "ignored", "event_type": "charge.refunded"}

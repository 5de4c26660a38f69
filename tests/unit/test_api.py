"""
Tests for the HTTP API routes.
Domain functions are mocked; the aiohttp app runs in-process.
"""

from datetime import time
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from aiohttp import test_utils

from api import create_app
from models.transaction import ReconcileResult
from payments import stripe as gateway
from utils.exceptions import SlotTakenError

AUTH = {"Authorization": "Bearer token_abc"}


@pytest_asyncio.fixture
async def client(mock_db):
    """Test client over an app without the background scheduler."""
    test_client = test_utils.TestClient(test_utils.TestServer(create_app(with_scheduler=False)))
    await test_client.start_server()
    yield test_client
    await test_client.close()


class TestAuth:

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.post("/bookings", json={})

        assert response.status == 401
        assert (await response.json())["error"] == "Authentication is required."

    @pytest.mark.asyncio
    async def test_invalid_token(self, client, mock_db):
        mock_db.get_user_from_token.return_value = None

        response = await client.post("/bookings", json={}, headers=AUTH)

        assert response.status == 401
        mock_db.get_user_from_token.assert_called_once_with("token_abc")

    @pytest.mark.asyncio
    async def test_admin_route_rejects_client(self, client, mock_db, user):
        mock_db.get_user_from_token.return_value = user

        response = await client.post("/bookings/booking_1/check-in", headers=AUTH)

        assert response.status == 403


class TestBookingRoutes:

    @pytest.mark.asyncio
    async def test_slots(self, client):
        with patch("api.list_available_slots", AsyncMock(return_value=[time(9, 0), time(10, 30)])) as mock_list:
            response = await client.get("/services/collagen-boost/slots?date=2030-03-04")

        assert response.status == 200
        assert await response.json() == {"slots": ["09:00", "10:30"]}
        assert mock_list.call_args.args[0] == "collagen-boost"

    @pytest.mark.asyncio
    async def test_slots_bad_date(self, client):
        response = await client.get("/services/collagen-boost/slots?date=04/03/2030")

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_create_booking(self, client, mock_db, user, make_booking):
        mock_db.get_user_from_token.return_value = user
        with patch("api.book_appointment", AsyncMock(return_value=make_booking(payment_method="minutes"))) as book:
            response = await client.post(
                "/bookings",
                json={"service_id": "collagen-boost", "date": "2030-03-04", "time": "10:00",
                      "payment_method": "minutes", "duration": "30"},
                headers=AUTH,
            )

        assert response.status == 201
        data = await response.json()
        assert data["time"] == "10:00"
        assert data["date"] == "2030-03-04"
        assert book.call_args.kwargs["duration"] == 30

    @pytest.mark.asyncio
    async def test_missing_fields(self, client, mock_db, user):
        mock_db.get_user_from_token.return_value = user

        response = await client.post("/bookings", json={"service_id": "collagen-boost"}, headers=AUTH)

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_domain_error_status(self, client, mock_db, user):
        mock_db.get_user_from_token.return_value = user
        with patch("api.book_appointment", AsyncMock(side_effect=SlotTakenError("taken"))):
            response = await client.post(
                "/bookings",
                json={"service_id": "collagen-boost", "date": "2030-03-04", "time": "10:00",
                      "payment_method": "reception"},
                headers=AUTH,
            )

        assert response.status == 409
        assert "taken" in (await response.json())["error"]

    @pytest.mark.asyncio
    async def test_malformed_json(self, client, mock_db, user):
        mock_db.get_user_from_token.return_value = user

        response = await client.post("/bookings", data=b"{not json", headers=AUTH)

        assert response.status == 400


class TestCheckoutRoutes:

    @pytest.mark.asyncio
    async def test_gift_card_intent_for_guest(self, client):
        create = AsyncMock(return_value={"client_secret": "pi_1_secret", "payment_intent_id": "pi_1"})
        with patch.object(gateway, "create_payment_intent", create):
            response = await client.post("/create-payment-intent", json={"type": "gift_card", "amount": "50"})

        assert response.status == 200
        assert await response.json() == {
            "clientSecret": "pi_1_secret",
            "paymentIntentId": "pi_1",
            "amount": 5000,
            "currency": "eur",
        }
        assert create.call_args.args[1]["type"] == "gift_card"

    @pytest.mark.asyncio
    async def test_unknown_type(self, client):
        response = await client.post("/create-payment-intent", json={"type": "donation"})

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_appointment_requires_login(self, client):
        response = await client.post(
            "/create-payment-intent",
            json={"type": "appointment", "service_id": "collagen-boost", "date": "2030-03-04", "time": "10:00"},
        )

        assert response.status == 401

    @pytest.mark.asyncio
    async def test_confirm_payment(self, client, mock_db, user):
        mock_db.get_user_from_token.return_value = user
        result = ReconcileResult(payment_reference="pi_1", transaction_type="appointment", record_id="booking_1")
        with patch("api.verify_and_reconcile", AsyncMock(return_value=result)) as verify:
            response = await client.post("/confirm-payment", json={"payment_intent_id": "pi_1"}, headers=AUTH)

        assert response.status == 200
        data = await response.json()
        assert data["record_id"] == "booking_1"
        assert data["state"] == "reconciled"
        verify.assert_called_once_with("pi_1", user)

    @pytest.mark.asyncio
    async def test_checkout_session_deprecated(self, client):
        response = await client.post("/create-checkout-session", json={})

        assert response.status == 410
        assert "create-payment-intent" in (await response.json())["error"]


class TestPOSRoute:

    @pytest.mark.asyncio
    async def test_invalid_sale(self, client, mock_db, admin):
        mock_db.get_user_from_token.return_value = admin

        response = await client.post(
            "/pos/sales", json={"items": [], "payment_method": "cash"}, headers=AUTH
        )

        assert response.status == 400
        assert "items" in (await response.json())["error"]

    @pytest.mark.asyncio
    async def test_sale_recorded(self, client, mock_db, admin):
        mock_db.get_user_from_token.return_value = admin
        outcome = {"invoice_id": "inv_1", "reference": "pos_abc", "total": "45.00"}
        with patch("api.process_pos_sale", AsyncMock(return_value=outcome)):
            response = await client.post(
                "/pos/sales",
                json={"items": [{"id": "collagen-boost", "title": "Collagen Boost", "price": "45.00",
                                 "type": "service"}], "payment_method": "cash"},
                headers=AUTH,
            )

        assert response.status == 201
        assert await response.json() == outcome


class TestHealth:

    @pytest.mark.asyncio
    async def test_health_has_security_headers(self, client):
        response = await client.get("/health")

        assert response.status == 200
        assert response.headers["X-Frame-Options"] == "DENY"


class TestSubscriptionRoutes:

    @pytest.mark.asyncio
    async def test_cancel_now_flag_passed(self, client, mock_db, user):
        mock_db.get_user_from_token.return_value = user
        outcome = {"message": "Subscription cancelled immediately.", "status": "canceled",
                   "cancel_at_period_end": False}
        with patch("api.cancel_subscription", AsyncMock(return_value=outcome)) as cancel:
            response = await client.post("/cancel-subscription", json={"cancelNow": True}, headers=AUTH)

        assert response.status == 200
        assert await response.json() == outcome
        cancel.assert_called_once_with(user, cancel_now=True)

    @pytest.mark.asyncio
    async def test_cancel_now_defaults_to_period_end(self, client, mock_db, user):
        mock_db.get_user_from_token.return_value = user
        with patch("api.cancel_subscription", AsyncMock(return_value={})) as cancel:
            response = await client.post("/cancel-subscription", json={}, headers=AUTH)

        assert response.status == 200
        cancel.assert_called_once_with(user, cancel_now=False)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("flag", ["false", "true", 1, 0])
    async def test_cancel_now_must_be_boolean(self, client, mock_db, user, flag):
        mock_db.get_user_from_token.return_value = user
        with patch("api.cancel_subscription", AsyncMock()) as cancel:
            response = await client.post("/cancel-subscription", json={"cancelNow": flag}, headers=AUTH)

        assert response.status == 400
        assert "cancelNow" in (await response.json())["error"]
        cancel.assert_not_called()

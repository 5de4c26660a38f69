"""
Unit tests for Stripe webhook handler.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiohttp.test_utils import make_mocked_request

import webhook
from config import settings
from utils.exceptions import (
    PersistenceFailureError,
    ProviderUnavailableError,
    WebhookVerificationError,
)
from webhook import MAX_REQUEST_BODY_SIZE, RecentEvents, health_check, stripe_webhook_handler


@pytest.fixture(autouse=True)
def clear_event_cache():
    """Each test starts with an empty event-id cache."""
    webhook.recent_events.clear()
    yield
    webhook.recent_events.clear()


@pytest.fixture
def mock_stripe_event():
    """Mock Stripe webhook event."""
    return {
        "id": "evt_test_123",
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": "pi_test_123",
                "status": "succeeded",
                "metadata": {"type": "appointment", "user_id": "user_123"},
            }
        },
    }


def _request(body: bytes, signature="t=1234567890,v1=test_signature", content_length=None):
    request = MagicMock()
    headers = {}
    if signature:
        headers["Stripe-Signature"] = signature
    if content_length is not None:
        headers["Content-Length"] = str(content_length)
    request.headers = headers
    request.read = AsyncMock(return_value=body)
    return request


@pytest.fixture
def mock_construct():
    with patch("webhook.construct_webhook_event") as construct:
        yield construct


@pytest.fixture
def mock_handle():
    with patch("webhook.handle_webhook_event", new_callable=AsyncMock) as handle:
        yield handle


class TestHealthCheck:
    """Test health check endpoint."""

    @pytest.mark.asyncio
    async def test_health_check(self):
        """Test health check returns OK."""
        request = make_mocked_request("GET", "/health")
        response = await health_check(request)

        assert response.status == 200
        data = json.loads(response.text)
        assert data["status"] == "ok"
        assert data["service"] == "studio-booking-api"
        assert "duplicate_events" in data["metrics"]


class TestStripeWebhookHandler:
    """Test Stripe webhook handler."""

    @pytest.mark.asyncio
    async def test_webhook_success(self, mock_stripe_event, mock_construct, mock_handle):
        mock_construct.return_value = mock_stripe_event
        mock_handle.return_value = {"payment_reference": "pi_test_123", "record_id": "booking_1"}

        response = await stripe_webhook_handler(_request(json.dumps(mock_stripe_event).encode()))

        assert response.status == 200
        data = json.loads(response.text)
        assert data["status"] == "success"
        assert data["event_id"] == "evt_test_123"
        assert data["result"]["record_id"] == "booking_1"
        mock_handle.assert_called_once_with(mock_stripe_event)

    @pytest.mark.asyncio
    async def test_webhook_invalid_signature(self, mock_construct, mock_handle):
        mock_construct.side_effect = WebhookVerificationError("Invalid signature")

        response = await stripe_webhook_handler(_request(b"test payload"))

        assert response.status == 400
        assert json.loads(response.text)["error"] == "verification_failed"
        mock_handle.assert_not_called()

    @pytest.mark.asyncio
    async def test_webhook_secret_not_configured(self, mock_construct, mock_handle):
        with patch.object(settings, "stripe_webhook_secret", ""):
            response = await stripe_webhook_handler(_request(b"test payload"))

        assert response.status == 400
        mock_construct.assert_not_called()

    @pytest.mark.asyncio
    async def test_webhook_empty_payload(self, mock_construct):
        response = await stripe_webhook_handler(_request(b""))

        assert response.status == 400
        assert json.loads(response.text)["error"] == "empty_payload"
        mock_construct.assert_not_called()

    @pytest.mark.asyncio
    async def test_webhook_too_large(self, mock_construct):
        response = await stripe_webhook_handler(
            _request(b"x", content_length=MAX_REQUEST_BODY_SIZE + 1)
        )

        assert response.status == 413

    @pytest.mark.asyncio
    async def test_webhook_malformed_event(self, mock_construct, mock_handle):
        mock_construct.return_value = {"id": "evt_1", "type": "payment_intent.succeeded"}

        response = await stripe_webhook_handler(_request(b"{}"))

        assert response.status == 400
        assert json.loads(response.text)["error"] == "validation_failed"
        mock_handle.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_event_acknowledged(self, mock_stripe_event, mock_construct, mock_handle):
        mock_construct.return_value = mock_stripe_event
        mock_handle.return_value = {}
        body = json.dumps(mock_stripe_event).encode()

        await stripe_webhook_handler(_request(body))
        response = await stripe_webhook_handler(_request(body))

        assert response.status == 200
        assert json.loads(response.text)["message"] == "Event already processed"
        mock_handle.assert_called_once()

    @pytest.mark.asyncio
    async def test_persistence_failure_asks_for_retry(self, mock_stripe_event, mock_construct, mock_handle):
        mock_construct.return_value = mock_stripe_event
        mock_handle.side_effect = [PersistenceFailureError("pi_test_123"), {"record_id": "booking_1"}]
        body = json.dumps(mock_stripe_event).encode()

        first = await stripe_webhook_handler(_request(body))
        assert first.status == 500
        assert json.loads(first.text)["error"] == "persistence_failed"
        assert "evt_test_123" not in webhook.recent_events

        retry = await stripe_webhook_handler(_request(body))
        assert retry.status == 200
        assert mock_handle.call_count == 2

    @pytest.mark.asyncio
    async def test_provider_error_returns_500(self, mock_stripe_event, mock_construct, mock_handle):
        mock_construct.return_value = mock_stripe_event
        mock_handle.side_effect = ProviderUnavailableError("stripe down")

        response = await stripe_webhook_handler(_request(json.dumps(mock_stripe_event).encode()))

        assert response.status == 500
        assert json.loads(response.text)["error"] == "processing_failed"

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_500(self, mock_stripe_event, mock_construct, mock_handle):
        mock_construct.return_value = mock_stripe_event
        mock_handle.side_effect = RuntimeError("boom")

        response = await stripe_webhook_handler(_request(json.dumps(mock_stripe_event).encode()))

        assert response.status == 500
        assert "evt_test_123" not in webhook.recent_events


class TestRecentEvents:
    """Event id cache."""

    def test_claim_once(self):
        events = RecentEvents()

        assert events.claim("evt_1") is True
        assert events.claim("evt_1") is False

    def test_release_allows_retry(self):
        events = RecentEvents()
        events.claim("evt_1")
        events.release("evt_1")

        assert events.claim("evt_1") is True

    def test_old_ids_expire(self):
        events = RecentEvents(max_age=60, cleanup_interval=0)
        events.claim("evt_1")

        assert events.expire(now=events._seen["evt_1"] + 120) == 1
        assert "evt_1" not in events

    def test_history_counts_types(self):
        events = RecentEvents(history_size=2)
        events.record("evt_1", "invoice.paid")
        events.record("evt_2", "payment_intent.succeeded")
        events.record("evt_3", "invoice.paid")

        assert events.history_size == 2
        assert events.type_counts() == {"payment_intent.succeeded": 1, "invoice.paid": 1}

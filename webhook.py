"""
Stripe webhook endpoint.

- Signature verification is always required
- Event ids are cached for a day so redeliveries short-circuit before the
  reconciler (which is itself idempotent on payment reference)
- Persistence failures return 500 so Stripe retries the event
- Security headers and a /health endpoint with webhook counters
"""

import time
from collections import Counter, deque
from typing import Any, Dict, Optional, Tuple

from aiohttp import web
from aiohttp.web import Request, Response

from booking.reconciler import handle_webhook_event
from config import settings
from payments.stripe import construct_webhook_event
from utils.exceptions import (
    AppError,
    PersistenceFailureError,
    ValidationError,
    WebhookVerificationError,
)
from utils.logging_config import setup_logging

logger = setup_logging(
    name=__name__, log_level="INFO", log_file="webhook.log", log_dir="logs"
)

MAX_REQUEST_BODY_SIZE = 1024 * 1024  # 1MB
EVENT_ID_MAX_AGE = 24 * 3600
EVENT_ID_CLEANUP_INTERVAL = 3600
EVENT_HISTORY_SIZE = 1000


class RecentEvents:
    """Stripe event ids seen recently, with a short history of handled events."""

    def __init__(
        self,
        max_age: float = EVENT_ID_MAX_AGE,
        cleanup_interval: float = EVENT_ID_CLEANUP_INTERVAL,
        history_size: int = EVENT_HISTORY_SIZE,
    ):
        self.max_age = max_age
        self.cleanup_interval = cleanup_interval
        self._seen: Dict[str, float] = {}
        self._history: deque = deque(maxlen=history_size)
        self._last_cleanup = time.time()

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def expire(self, now: Optional[float] = None) -> int:
        """Drop ids older than max_age; runs at most once per cleanup interval."""
        now = now or time.time()
        if now - self._last_cleanup < self.cleanup_interval:
            return 0
        cutoff = now - self.max_age
        expired = [event_id for event_id, seen_at in self._seen.items() if seen_at < cutoff]
        for event_id in expired:
            del self._seen[event_id]
        self._last_cleanup = now
        if expired:
            logger.debug(f"Expired {len(expired)} cached webhook event ids")
        return len(expired)

    def claim(self, event_id: str) -> bool:
        """
        Mark an event as in progress.

        Returns:
            False if the event was already claimed (a redelivery)
        """
        self.expire()
        if event_id in self._seen:
            return False
        self._seen[event_id] = time.time()
        return True

    def release(self, event_id: str) -> None:
        """Forget a failed event so Stripe's retry gets processed."""
        self._seen.pop(event_id, None)

    def record(self, event_id: str, event_type: str) -> None:
        self._history.append({"id": event_id, "type": event_type, "timestamp": time.time()})

    def type_counts(self) -> Dict[str, int]:
        return dict(Counter(event["type"] for event in self._history))

    @property
    def history_size(self) -> int:
        return len(self._history)

    def clear(self) -> None:
        self._seen.clear()
        self._history.clear()


recent_events = RecentEvents()
metrics: Counter = Counter()
_started_at = time.time()

# Status and error code for each failure the handler reports
_FAILURES: Tuple[Tuple[type, str, int, str], ...] = (
    (WebhookVerificationError, "verification_failed", 400, "verification_failures"),
    (ValidationError, "validation_failed", 400, "validation_failures"),
    (PersistenceFailureError, "persistence_failed", 500, "failed_events"),
    (AppError, "processing_failed", 500, "failed_events"),
)


def _error_response(error: str, message: str, status: int) -> Response:
    return web.json_response(
        {"status": "error", "error": error, "message": message}, status=status
    )


def _parse_event(raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """
    Verify the signature and check the event envelope.

    Raises:
        WebhookVerificationError: Missing secret or bad signature
        ValidationError: The event lacks id, type or data.object
    """
    if not settings.stripe_webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not set - rejecting webhook")
        raise WebhookVerificationError("Stripe webhook secret is not configured")

    event = construct_webhook_event(raw_body, signature, settings.stripe_webhook_secret)

    if not isinstance(event, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    for field in ("id", "type"):
        if not isinstance(event.get(field), str) or not event[field]:
            raise ValidationError(f"Webhook '{field}' must be a non-empty string")
    data = event.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise ValidationError("Webhook payload 'data.object' must be an object")
    return event


@web.middleware
async def security_headers_middleware(request: Request, handler):
    """Add security headers to all responses."""
    response = await handler(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    if request.path.startswith("/webhook/"):
        response.headers["Allow"] = "POST"

    return response


async def stripe_webhook_handler(request: Request) -> Response:
    """
    Handle Stripe webhook events.

    Status codes: 200 processed or duplicate, 400 bad signature or payload,
    413 too large, 500 when the event must be retried by Stripe.
    """
    declared = request.headers.get("Content-Length", "")
    if declared.isdigit() and int(declared) > MAX_REQUEST_BODY_SIZE:
        metrics["validation_failures"] += 1
        return _error_response(
            "request_too_large", f"Request body exceeds {MAX_REQUEST_BODY_SIZE} bytes", 413
        )

    raw_body = await request.read()
    if len(raw_body) > MAX_REQUEST_BODY_SIZE:
        metrics["validation_failures"] += 1
        return _error_response(
            "request_too_large", f"Request body exceeds {MAX_REQUEST_BODY_SIZE} bytes", 413
        )
    if not raw_body:
        logger.warning("Received empty webhook payload")
        metrics["validation_failures"] += 1
        return _error_response("empty_payload", "Empty payload", 400)

    event_id = event_type = "unknown"
    claimed = False
    try:
        event = _parse_event(raw_body, request.headers.get("Stripe-Signature"))
        event_id, event_type = event["id"], event["type"]
        logger.info(f"Received Stripe webhook {event_id} ({event_type})")

        if not recent_events.claim(event_id):
            metrics["duplicate_events"] += 1
            logger.info(f"Duplicate webhook {event_id} ({event_type}) acknowledged")
            return web.json_response(
                {
                    "status": "success",
                    "message": "Event already processed",
                    "event_id": event_id,
                    "event_type": event_type,
                }
            )
        claimed = True

        metrics["total_events"] += 1
        result = await handle_webhook_event(event)
    except Exception as e:
        if claimed:
            recent_events.release(event_id)
        for error_cls, error, status, counter in _FAILURES:
            if isinstance(e, error_cls):
                metrics[counter] += 1
                log = logger.warning if status < 500 else logger.error
                log(f"Webhook {event_id} ({event_type}) {error}: {e}")
                return _error_response(error, e.public_message, status)

        metrics["failed_events"] += 1
        logger.error(f"Unexpected error handling webhook {event_id} ({event_type}): {e}", exc_info=True)
        return _error_response(
            "processing_failed", "Internal server error while processing webhook", 500
        )

    recent_events.record(event_id, event_type)
    metrics["successful_events"] += 1
    logger.info(f"Processed webhook {event_id} ({event_type})")
    return web.json_response(
        {"status": "success", "event_id": event_id, "event_type": event_type, "result": result}
    )


async def health_check(request: Request) -> Response:
    """Health check endpoint with webhook counters."""
    recent_events.expire()
    total = metrics["total_events"]
    success_rate = metrics["successful_events"] / total * 100 if total else 0.0

    return web.json_response(
        {
            "status": "ok",
            "service": "studio-booking-api",
            "timestamp": time.time(),
            "uptime_hours": round((time.time() - _started_at) / 3600, 2),
            "metrics": {
                **{
                    name: metrics[name]
                    for name in (
                        "total_events",
                        "successful_events",
                        "failed_events",
                        "verification_failures",
                        "validation_failures",
                        "duplicate_events",
                    )
                },
                "success_rate_percent": round(success_rate, 2),
                "recent_events_count": recent_events.history_size,
                "unique_event_ids_tracked": len(recent_events),
                "recent_event_types": recent_events.type_counts(),
            },
            "configuration": {
                "webhook_secret_configured": bool(settings.stripe_webhook_secret),
                "max_request_size_bytes": MAX_REQUEST_BODY_SIZE,
                "event_id_max_age_hours": recent_events.max_age / 3600,
            },
        }
    )


def setup_routes(app: web.Application) -> None:
    """Register the webhook and health routes."""
    app.router.add_post("/webhook/stripe", stripe_webhook_handler)
    app.router.add_get("/health", health_check)

"""
HTTP API for the studio booking backend.

Routes for checkout, client-side payment confirmation, bookings, gift
cards, the reseller portal and the point of sale. Errors are returned as
``{"error": <public message>}`` with the status carried by the exception.
"""

import json
from typing import Any, Dict, Optional

from aiohttp import web
from aiohttp.web import Request, Response
from pydantic import ValidationError as PydanticValidationError

from booking.appointments import (
    book_appointment,
    cancel_booking,
    check_in_booking,
    confirm_booking_manually,
)
from booking.availability import list_available_slots
from booking.reconciler import verify_and_reconcile
from config import settings
from db import get_db_client
from ledger.gift_cards import create_reseller_gift_card, redeem_gift_card, validate_gift_card
from models.payment_metadata import TransactionType
from models.profile import AuthenticatedUser
from payments import pricing
from payments import stripe as gateway
from payments.subscriptions import cancel_subscription, start_subscription
from pos.sales import POSSale, process_pos_sale
from scheduler.sweep import setup_scheduler, shutdown_scheduler
from utils.datetime_utils import format_time_of_day, parse_date, parse_time_of_day
from utils.exceptions import (
    AppError,
    AuthorizationError,
    DeprecatedEndpointError,
    ForbiddenError,
    MissingRequiredFieldError,
    ValidationError,
)
from utils.logging_config import setup_logging
from webhook import security_headers_middleware
from webhook import setup_routes as setup_webhook_routes

logger = setup_logging(name=__name__, log_level="INFO", log_file="api.log", log_dir="logs")

routes = web.RouteTableDef()


# ========== Helpers ==========


@web.middleware
async def error_middleware(request: Request, handler):
    """Translate domain errors into JSON responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except AppError as e:
        level = logger.error if e.status_code >= 500 else logger.info
        level(f"{request.method} {request.path} -> {e.status_code}: {e}")
        return web.json_response({"error": e.public_message}, status=e.status_code)
    except Exception as e:
        logger.error(f"Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
        return web.json_response({"error": AppError.public_message}, status=500)


async def _authenticate(request: Request, required: bool = True) -> Optional[AuthenticatedUser]:
    header = request.headers.get("Authorization", "")
    token = header[7:].strip() if header.lower().startswith("bearer ") else ""
    if not token:
        if required:
            raise AuthorizationError("Missing bearer token")
        return None

    user = await get_db_client().get_user_from_token(token)
    if user is None and required:
        raise AuthorizationError("Invalid or expired access token")
    return user


async def _require_admin(request: Request) -> AuthenticatedUser:
    user = await _authenticate(request)
    if not user.is_admin:
        raise ForbiddenError(f"User {user.id} is not an admin")
    return user


async def _json_body(request: Request) -> Dict[str, Any]:
    if not request.body_exists:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Malformed JSON body: {e}", "Request body must be valid JSON.") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _require_fields(body: Dict[str, Any], *fields: str) -> None:
    missing = [field for field in fields if body.get(field) in (None, "")]
    if missing:
        raise MissingRequiredFieldError(missing)


def _parse_slot(body: Dict[str, Any]) -> tuple:
    try:
        return parse_date(body["date"]), parse_time_of_day(body["time"])
    except ValueError as e:
        raise ValidationError(str(e), "Date must be YYYY-MM-DD and time HH:MM.") from e


def _optional_int(value: Any, field: str) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field} must be an integer, got {value!r}") from e


def _optional_bool(value: Any, field: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValidationError(
            f"{field} must be a boolean, got {value!r}", f"{field} must be true or false."
        )
    return value


# ========== Checkout ==========


@routes.post("/create-payment-intent")
async def create_payment_intent(request: Request) -> Response:
    """Price a purchase server-side and open a Stripe payment intent."""
    body = await _json_body(request)
    _require_fields(body, "type")
    try:
        transaction_type = TransactionType(body["type"])
    except ValueError as e:
        raise ValidationError(f"Unknown transaction type {body['type']!r}") from e

    if transaction_type == TransactionType.GIFT_CARD:
        user = await _authenticate(request, required=False)
        _require_fields(body, "amount")
        charge = pricing.resolve_gift_card(
            body["amount"],
            buyer=user,
            from_name=body.get("from_name"),
            to_name=body.get("to_name"),
            recipient_email=body.get("recipient_email"),
            message=body.get("message"),
        )
    else:
        user = await _authenticate(request)
        if transaction_type == TransactionType.APPOINTMENT:
            _require_fields(body, "service_id", "date", "time")
            on_date, at = _parse_slot(body)
            charge = await pricing.resolve_appointment(
                user,
                body["service_id"],
                on_date,
                at,
                duration=_optional_int(body.get("duration"), "duration"),
            )
        elif transaction_type == TransactionType.MINUTE_PACK:
            _require_fields(body, "pack_id")
            charge = await pricing.resolve_minute_pack(user, body["pack_id"])
        else:
            _require_fields(body, "plan_id")
            subscription = await start_subscription(user, body["plan_id"])
            return web.json_response(
                {
                    "clientSecret": subscription["client_secret"],
                    "subscriptionId": subscription["subscription_id"],
                    "amount": subscription["amount"],
                    "currency": subscription["currency"],
                }
            )

    intent = await gateway.create_payment_intent(
        charge.amount,
        charge.metadata,
        currency=charge.currency,
        description=charge.description,
        receipt_email=charge.receipt_email,
    )
    return web.json_response(
        {
            "clientSecret": intent["client_secret"],
            "paymentIntentId": intent["payment_intent_id"],
            "amount": charge.amount,
            "currency": charge.currency,
        }
    )


@routes.post("/confirm-payment")
async def confirm_payment(request: Request) -> Response:
    """Client-side confirmation. The status in the body is never trusted."""
    user = await _authenticate(request)
    body = await _json_body(request)
    _require_fields(body, "payment_intent_id")

    result = await verify_and_reconcile(str(body["payment_intent_id"]), user)
    return web.json_response(result.model_dump(mode="json"))


@routes.post("/cancel-subscription")
async def cancel_subscription_route(request: Request) -> Response:
    user = await _authenticate(request)
    body = await _json_body(request)
    cancel_now = _optional_bool(body.get("cancelNow"), "cancelNow")
    result = await cancel_subscription(user, cancel_now=cancel_now)
    return web.json_response(result)


@routes.post("/create-checkout-session")
async def create_checkout_session(request: Request) -> Response:
    raise DeprecatedEndpointError(
        "Checkout sessions were replaced by payment intents",
        "This endpoint is deprecated. Please use /create-payment-intent.",
    )


# ========== Bookings ==========


@routes.get("/services/{service_id}/slots")
async def get_slots(request: Request) -> Response:
    raw_date = request.query.get("date")
    if not raw_date:
        raise MissingRequiredFieldError(["date"])
    try:
        on_date = parse_date(raw_date)
    except ValueError as e:
        raise ValidationError(str(e), "Date must be YYYY-MM-DD.") from e

    slots = await list_available_slots(request.match_info["service_id"], on_date)
    return web.json_response({"slots": [format_time_of_day(slot) for slot in slots]})


@routes.post("/bookings")
async def create_booking(request: Request) -> Response:
    user = await _authenticate(request)
    body = await _json_body(request)
    _require_fields(body, "service_id", "date", "time", "payment_method")
    on_date, at = _parse_slot(body)

    booking = await book_appointment(
        user,
        body["service_id"],
        on_date,
        at,
        body["payment_method"],
        duration=_optional_int(body.get("duration"), "duration"),
        gift_code=body.get("gift_code"),
        notes=body.get("notes"),
    )
    return web.json_response(booking.model_dump(mode="json"), status=201)


@routes.post("/bookings/{booking_id}/check-in")
async def check_in(request: Request) -> Response:
    admin = await _require_admin(request)
    booking = await check_in_booking(admin, request.match_info["booking_id"])
    return web.json_response(booking.model_dump(mode="json"))


@routes.post("/bookings/{booking_id}/confirm")
async def confirm(request: Request) -> Response:
    admin = await _require_admin(request)
    booking = await confirm_booking_manually(admin, request.match_info["booking_id"])
    return web.json_response(booking.model_dump(mode="json"))


@routes.post("/bookings/{booking_id}/cancel")
async def cancel(request: Request) -> Response:
    user = await _authenticate(request)
    booking = await cancel_booking(user, request.match_info["booking_id"])
    return web.json_response(booking.model_dump(mode="json"))


# ========== Gift cards ==========


@routes.post("/gift-cards/validate")
async def validate_gift_card_route(request: Request) -> Response:
    body = await _json_body(request)
    _require_fields(body, "code")
    card = await validate_gift_card(str(body["code"]))
    return web.json_response(
        {
            "code": card.code,
            "balance": str(card.current_balance),
            "status": card.status,
        }
    )


@routes.post("/gift-cards/redeem")
async def redeem_gift_card_route(request: Request) -> Response:
    admin = await _require_admin(request)
    body = await _json_body(request)
    _require_fields(body, "code", "amount")
    balance = await redeem_gift_card(str(body["code"]), body["amount"])
    logger.info(f"Gift card redeemed at reception by {admin.id}, balance {balance}")
    return web.json_response({"balance": str(balance)})


@routes.post("/reseller/gift-cards")
async def reseller_gift_card(request: Request) -> Response:
    user = await _authenticate(request)
    body = await _json_body(request)
    _require_fields(body, "amount")
    card = await create_reseller_gift_card(user, body["amount"])
    return web.json_response({"code": card.code, "amount": str(card.initial_balance)}, status=201)


# ========== Point of sale ==========


@routes.post("/pos/sales")
async def pos_sale(request: Request) -> Response:
    staff = await _require_admin(request)
    body = await _json_body(request)
    try:
        sale = POSSale.model_validate(body)
    except PydanticValidationError as e:
        fields = [str(error["loc"][-1]) for error in e.errors() if error.get("loc")]
        raise ValidationError(
            f"Invalid POS sale: {e}",
            f"Invalid sale: {', '.join(fields)}" if fields else "Invalid sale.",
        ) from e

    result = await process_pos_sale(staff, sale)
    return web.json_response(result, status=201)


# ========== Application ==========


async def _start_background_jobs(app: web.Application) -> None:
    setup_scheduler()


async def _stop_background_jobs(app: web.Application) -> None:
    shutdown_scheduler()


def create_app(with_scheduler: bool = True) -> web.Application:
    """Create the aiohttp application."""
    app = web.Application(
        middlewares=[security_headers_middleware, error_middleware],
        client_max_size=1024 * 1024,
    )
    app.add_routes(routes)
    setup_webhook_routes(app)

    if with_scheduler:
        app.on_startup.append(_start_background_jobs)
        app.on_cleanup.append(_stop_background_jobs)

    return app


if __name__ == "__main__":
    try:
        settings.validate_all_required()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        raise SystemExit(1)

    logger.info(f"Starting API server on {settings.host}:{settings.port}")
    web.run_app(create_app(), host=settings.host, port=settings.port)

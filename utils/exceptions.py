"""
Custom exception classes for better error handling.
Provides specific error types instead of generic exceptions.

Every error carries an HTTP status code and a public message that is safe
to show to the client. The exception text itself is internal detail and is
only ever written to the logs.
"""

from typing import Iterable, Optional


class AppError(Exception):
    """Base exception for all booking and payment errors."""

    status_code = 500
    public_message = "An unexpected error occurred. Please try again later."

    def __init__(self, message: str = "", public_message: Optional[str] = None):
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


# ========== Validation ==========


class ValidationError(AppError):
    """Raised when input validation fails."""

    status_code = 400
    public_message = "The request is missing required information or is malformed."

    def __init__(self, message: str = "", public_message: Optional[str] = None):
        super().__init__(message, public_message if public_message is not None else message or None)


class InvalidAmountError(ValidationError):
    """Raised when a charge amount is zero or negative."""

    public_message = "The amount must be greater than zero."


class MissingRequiredFieldError(ValidationError):
    """Raised when payment metadata or a request body is incomplete."""

    def __init__(self, fields: Iterable[str]):
        self.fields = sorted(set(fields))
        super().__init__(
            f"Missing or invalid fields: {', '.join(self.fields)}",
            "Some required information is missing.",
        )


# ========== Authorization ==========


class AuthorizationError(AppError):
    """Raised when the caller is not authenticated."""

    status_code = 401
    public_message = "Authentication is required."


class ForbiddenError(AuthorizationError):
    """Raised when the caller lacks the required role."""

    status_code = 403
    public_message = "You are not allowed to perform this action."


# ========== Not found ==========


class NotFoundError(AppError):
    """Raised when a referenced entity does not exist."""

    status_code = 404
    public_message = "The requested item could not be found."


class ServiceNotFoundError(NotFoundError):
    """Raised when a service is not found."""

    public_message = "This service does not exist."


class BookingNotFoundError(NotFoundError):
    """Raised when a booking is not found."""

    public_message = "This booking does not exist."


class ProfileNotFoundError(NotFoundError):
    """Raised when a user profile is not found."""

    public_message = "No profile was found for this account."


class GiftCardNotFoundError(NotFoundError):
    """Raised when a gift card code does not exist."""

    public_message = "This gift card code is invalid."


class SubscriptionNotFoundError(NotFoundError):
    """Raised when there is no subscription or plan to cancel."""

    public_message = "No active subscription was found."


# ========== Conflicts ==========


class ConflictError(AppError):
    """Raised when a write conflicts with existing state."""

    status_code = 409
    public_message = "This request conflicts with the current state."


class SlotTakenError(ConflictError):
    """Raised when attempting to book a slot that is already occupied."""

    public_message = "This time slot has just been taken. Please choose another one."


class DuplicateReferenceError(ConflictError):
    """Raised when a payment reference has already been recorded."""

    def __init__(self, payment_reference: str, table: str):
        self.payment_reference = payment_reference
        self.table = table
        super().__init__(f"Payment reference {payment_reference} already recorded in {table}")


class InvalidTransitionError(ConflictError):
    """Raised when a booking status change is not allowed."""


class ConcurrentUpdateError(ConflictError):
    """Raised when a compare-and-set update keeps losing to concurrent writers."""

    public_message = "Your balance changed while we were processing. Please try again."


# ========== Ledger ==========


class LedgerError(AppError):
    """Base exception for balance operations."""

    status_code = 409


class InsufficientBalanceError(LedgerError):
    """Raised when a minute debit exceeds the current balance."""

    public_message = "You do not have enough minutes for this purchase."


class InsufficientFundsError(LedgerError):
    """Raised when a gift card redemption exceeds the card balance."""

    public_message = "The gift card balance is insufficient."


class GiftCardInactiveError(LedgerError):
    """Raised when a gift card is redeemed, expired or cancelled."""

    public_message = "This gift card is no longer active."


# ========== Payment provider ==========


class PaymentError(AppError):
    """Base exception for payment operations."""


class ProviderError(PaymentError):
    """Raised when the payment processor rejects a request."""

    status_code = 502
    public_message = "The payment service could not process the request. Please try again."


class ProviderUnavailableError(ProviderError):
    """Raised when the payment processor errors out or times out."""

    public_message = "The payment service is temporarily unavailable. Please try again."


class UnverifiedPaymentError(PaymentError):
    """Raised when the provider does not confirm a claimed successful payment."""

    status_code = 402
    public_message = "The payment could not be verified as successful."


class WebhookVerificationError(PaymentError):
    """Raised when webhook signature verification fails."""

    status_code = 400
    public_message = "Invalid webhook signature."


# ========== Persistence ==========


class DatabaseError(AppError):
    """Base exception for database operations."""


class PersistenceFailureError(DatabaseError):
    """Raised when a record could not be written after a successful payment."""

    public_message = (
        "Your payment was received, but we could not finalise your order. "
        "Our team has been notified and will contact you shortly."
    )

    def __init__(self, payment_reference: str, message: str = ""):
        self.payment_reference = payment_reference
        super().__init__(message or f"Failed to persist payment {payment_reference}")


# ========== HTTP ==========


class DeprecatedEndpointError(AppError):
    """Raised by endpoints that are kept only to answer old clients."""

    status_code = 410
    public_message = "This endpoint is deprecated."

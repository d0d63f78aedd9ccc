"""
Error taxonomy for the booking workflow.

Every failure that reaches the user is one of these kinds. Each carries a
short, safe `user_message`; raw transport errors stay in the logs.
"""
from __future__ import annotations


class WorkflowError(Exception):
    """Base class. `kind` is a stable identifier used by handlers and logs."""

    kind = "unknown"
    default_message = "Something went wrong. Please try again."

    def __init__(self, user_message: str | None = None, *, detail: str | None = None):
        self.user_message = user_message or self.default_message
        self.detail = detail
        super().__init__(self.user_message)

    @property
    def retryable(self) -> bool:
        return False


class ValidationError(WorkflowError):
    """Missing or invalid local input. Never sent to the backend."""

    kind = "validation"
    default_message = "Please fill in all required fields."


class AuthRequired(WorkflowError):
    kind = "auth_required"
    default_message = "Please log in first (/login)."


class InvalidTransition(WorkflowError):
    kind = "invalid_transition"
    default_message = "That action is not available right now."


class QuoteError(WorkflowError):
    """Pricing backend failure. Blocks submission unless the fallback is on."""

    kind = "quote"
    default_message = "Could not calculate the fare for this trip."


class RouteError(WorkflowError):
    """Route preview failure. Cosmetic only."""

    kind = "route"
    default_message = "Route preview is unavailable."


class BookingCreationError(WorkflowError):
    kind = "booking_creation"
    default_message = "Failed to create booking. Please try again."


class BookingNotFound(WorkflowError):
    """Booking expired between creation and payment; the booking step restarts."""

    kind = "booking_not_found"
    default_message = "Your booking has expired. Please confirm the trip again."


class PaymentError(WorkflowError):
    """Payment-initiation failures that leave the workflow in the Error state."""

    @property
    def retryable(self) -> bool:
        return True


class GatewayUnavailable(PaymentError):
    kind = "gateway_unavailable"
    default_message = "The payment gateway is temporarily unavailable. Please try again."


class PaymentUnknown(PaymentError):
    kind = "unknown"
    default_message = "Failed to process payment. Please try again."


class PaymentTimeout(PaymentError):
    kind = "timeout"
    default_message = "The payment gateway did not respond in time. Please try again."

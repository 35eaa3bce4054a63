"""
Payment-specific exceptions for settlement operations.

This module provides the exception hierarchy raised by the settlement
engine, the ledger store and the processor adapter.

Exception Hierarchy:
    PaymentError (base for payment domain)
    ├── PaymentNotFoundError - Ledger lookup failures
    │   └── BookingNotFoundError - Booking / extension lookup failures
    ├── PaymentValidationError - Bad input, rejected before any processor call
    ├── InvariantViolation - A money invariant would break (programming error)
    └── ProcessorError - Remote processor call failed
        └── StripeError - Base for all Stripe errors
            ├── StripeCardDeclinedError - Card declined (permanent)
            ├── StripeInsufficientFundsError - Insufficient funds (permanent)
            ├── StripeInvalidRequestError - Invalid request params (permanent)
            ├── StripeAuthorizationExpiredError - Hold lapsed (permanent)
            ├── StripeRateLimitError - Rate limited (transient, retry)
            ├── StripeAPIUnavailableError - API unavailable (transient, retry)
            └── StripeTimeoutError - No answer in time (outcome unknown)

    StaleRecordError - Optimistic locking conflict (inherits ConflictError)
    InvalidStateTransitionError - FSM transition not allowed (inherits ConflictError)

Usage:
    from payments.exceptions import ProcessorError, StaleRecordError

    try:
        engine.decide_approval(booking_id, approved_ids, rejected_ids)
    except StaleRecordError:
        # Someone else settled this booking first
        ...
    except ProcessorError as e:
        if e.outcome_unknown:
            # Leave it for the webhook or an operator re-query
            ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Payment Domain Exceptions
# =============================================================================


class PaymentError(BaseApplicationError):
    """
    Base exception for all payment operations.

    All payment-specific exceptions inherit from this class,
    which itself inherits from BaseApplicationError for
    consistent API error responses.
    """

    default_error_code: str = "PAYMENT_ERROR"


class PaymentNotFoundError(PaymentError, NotFoundError):
    """
    Raised when a payment entity cannot be found.

    Use for:
    - PaymentTransaction lookup by payment intent fails
    - Booking or extension referenced by a settlement call does not exist
    """

    default_error_code: str = "PAYMENT_NOT_FOUND"


class BookingNotFoundError(PaymentNotFoundError):
    """Raised when a booking or extension referenced by a settlement call does not exist."""

    default_error_code: str = "BOOKING_NOT_FOUND"


class PaymentValidationError(PaymentError, ValidationError):
    """
    Raised when settlement input is invalid.

    Always raised before the processor is contacted.

    Use for:
    - Negative or zero amounts
    - Line item ids that do not belong to the booking
    - A line item that is both approved and rejected
    """

    default_error_code: str = "PAYMENT_VALIDATION_ERROR"


class InvariantViolation(PaymentError):
    """
    A money invariant would be broken by the requested write.

    Examples:
    - cumulative refunds exceeding the manager's net revenue
    - a capture larger than the authorization it draws on

    This is always a programming error. It is logged at CRITICAL where it
    is raised and is never shown to end users verbatim.
    """

    default_error_code: str = "INVARIANT_VIOLATION"


class ProcessorError(PaymentError):
    """
    Base exception for failures of the external payment processor.

    Attributes:
        is_retryable: The same call may succeed if repeated later
        outcome_unknown: The processor may or may not have acted; the caller
            must not assume either and should reconcile instead of retrying
    """

    default_error_code: str = "PROCESSOR_ERROR"
    is_retryable: bool = False
    outcome_unknown: bool = False


# =============================================================================
# Stripe-Specific Exceptions
# =============================================================================


class StripeError(ProcessorError):
    """
    Base exception for all Stripe-related errors.

    Provides common attributes for Stripe error handling:
    - stripe_code: Stripe's internal error code
    - decline_code: Card decline code (if applicable)
    - is_retryable: Whether the operation can be retried
    """

    default_error_code: str = "STRIPE_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        stripe_code: str | None = None,
        decline_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if stripe_code:
            details["stripe_code"] = stripe_code
        if decline_code:
            details["decline_code"] = decline_code
        super().__init__(message, error_code=error_code, details=details)
        self.stripe_code = stripe_code
        self.decline_code = decline_code


# -----------------------------------------------------------------------------
# Permanent Errors (do not retry)
# -----------------------------------------------------------------------------


class StripeCardDeclinedError(StripeError):
    """
    Card was declined by the issuing bank.

    Only reachable from authorization; captures and refunds never hit the
    card network again.
    """

    default_error_code: str = "CARD_DECLINED"


class StripeInsufficientFundsError(StripeError):
    """Insufficient funds on the payment method (or on the connected account
    balance when reversing a transfer)."""

    default_error_code: str = "INSUFFICIENT_FUNDS"


class StripeInvalidRequestError(StripeError):
    """
    Invalid request parameters sent to Stripe.

    This usually indicates a bug in our code, not a user error.
    Log these errors for developer investigation.
    """

    default_error_code: str = "INVALID_STRIPE_REQUEST"


class StripeAuthorizationExpiredError(StripeError):
    """
    The authorization being captured has lapsed or was cancelled.

    Holds are time-boxed by the card networks and cannot be renewed; the
    payer has to go through checkout again for a new booking.
    """

    default_error_code: str = "AUTHORIZATION_EXPIRED"


# -----------------------------------------------------------------------------
# Transient Errors (safe to retry with backoff)
# -----------------------------------------------------------------------------


class StripeRateLimitError(StripeError):
    """Rate limited by the Stripe API. Retry with exponential backoff."""

    default_error_code: str = "STRIPE_RATE_LIMITED"
    is_retryable: bool = True


class StripeAPIUnavailableError(StripeError):
    """
    Stripe answered with a server error.

    A 5xx from Stripe does not say whether the request was applied, so it
    is handled like a timeout. Retrying with the same idempotency key is
    safe.
    """

    default_error_code: str = "STRIPE_UNAVAILABLE"
    is_retryable: bool = True
    outcome_unknown: bool = True


class StripeTimeoutError(StripeError):
    """
    Stripe did not answer within STRIPE_API_TIMEOUT_SECONDS, or the
    connection dropped mid-request.

    The request may have been applied. Captures that end here are parked
    in a reconciliation state until a webhook or an operator re-query
    reveals what happened.
    """

    default_error_code: str = "STRIPE_TIMEOUT"
    is_retryable: bool = True
    outcome_unknown: bool = True


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class StaleRecordError(ConflictError):
    """
    Raised when an optimistic compare-and-set misses twice.

    The settlement engine re-reads and retries a write-back once; if the
    row changed again (or changed in a way that invalidates the operation)
    this error is surfaced to the caller.

    Example:
        raise StaleRecordError(
            f"Booking {booking.pk} was modified by another process",
            details={"booking_id": str(booking.pk), "expected_payment_status": "authorized"},
        )
    """

    default_error_code: str = "STALE_RECORD"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a state transition is not allowed.

    Example:
        raise InvalidStateTransitionError(
            "Cannot approve a booking whose payment is 'paid'",
            details={"current_state": "paid", "action": "decide_approval"},
        )
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"

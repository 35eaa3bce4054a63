"""
Stripe implementation of the processor adapter.

Every Stripe call goes through this adapter so that timeouts, idempotency,
error translation and logging are handled the same way everywhere.

Money flow (Stripe Connect destination charges):
    authorize       PaymentIntent, capture_method="manual", funds destined
                    to the manager's connected account
    capture         amount_to_capture + application_fee_amount recomputed
                    on the captured amount
    refund          reverse the manager's transfer by the refund amount,
                    then refund the payer the same amount; the application
                    fee is not refunded

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_WEBHOOK_SECRET: Webhook signing secret
- STRIPE_API_TIMEOUT_SECONDS: Bound on every round trip (default: 10)

Usage:
    from payments.adapters import IdempotencyKeyGenerator, StripeAdapter

    adapter = StripeAdapter.from_settings()
    result = adapter.capture(
        "pi_123",
        amount_cents=11500,
        application_fee_cents=364,
        idempotency_key=IdempotencyKeyGenerator.generate("capture", "pi_123"),
    )
"""

from __future__ import annotations

import hashlib
import logging
import random
import time
import uuid
from typing import TYPE_CHECKING, Any

import stripe
from django.conf import settings

from payments.adapters.base import (
    AuthorizationResult,
    CancelResult,
    CaptureResult,
    ChargeSettlement,
    IntentStatusResult,
    RefundWithReversalResult,
)
from payments.exceptions import (
    StripeAPIUnavailableError,
    StripeAuthorizationExpiredError,
    StripeCardDeclinedError,
    StripeError,
    StripeInsufficientFundsError,
    StripeInvalidRequestError,
    StripeRateLimitError,
    StripeTimeoutError,
)

if TYPE_CHECKING:
    from collections.abc import Callable


#: InvalidRequestError codes meaning the hold can no longer be captured.
AUTHORIZATION_LAPSED_CODES = frozenset(
    {
        "charge_expired_for_capture",
        "payment_intent_unexpected_state",
    }
)


# =============================================================================
# Idempotency Key Generator
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for Stripe API calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The same (operation, entity, attempt) always yields the same key, so a
    retried request after an unknown outcome cannot charge twice.

    Example:
        key = IdempotencyKeyGenerator.generate("capture", "pi_123")
        # "capture:pi_123:1:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
    ) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]

        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


# =============================================================================
# Retry Logic Helpers
# =============================================================================


def is_retryable_stripe_error(error: Exception) -> bool:
    """
    Check if a Stripe error is retryable.

    Errors with an unknown outcome are retryable only with the original
    idempotency key; callers that cannot guarantee that should reconcile
    instead.
    """
    if isinstance(error, StripeError):
        return getattr(error, "is_retryable", False)
    return False


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2)
    """
    delay = min(base * (2**attempt), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter


# =============================================================================
# Stripe Adapter
# =============================================================================


class StripeAdapter:
    """
    Adapter for Stripe API operations.

    Instances carry their own API key and pass it on every request, so two
    adapters with different keys can coexist in one process. The HTTP
    client timeout is process-wide in the Stripe SDK and is set when an
    adapter is constructed.

    Usage:
        adapter = StripeAdapter(api_key="sk_test_...", timeout=10)
        adapter.cancel_authorization("pi_123", idempotency_key=key)
    """

    def __init__(self, api_key: str, timeout: float = 10):
        self.api_key = api_key
        self.timeout = timeout
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        # Retries are decided by the engine, never silently by the SDK
        stripe.max_network_retries = 0

    @classmethod
    def from_settings(cls) -> StripeAdapter:
        return cls(
            api_key=settings.STRIPE_SECRET_KEY,
            timeout=getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10),
        )

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    # =========================================================================
    # Core Operations
    # =========================================================================

    def authorize(
        self,
        *,
        amount_cents: int,
        currency: str,
        payer_reference: str,
        destination_account: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> AuthorizationResult:
        """
        Place a hold: create and confirm a manual-capture PaymentIntent.

        Raises:
            StripeCardDeclinedError: Card was declined
            StripeInsufficientFundsError: Insufficient funds
            StripeTimeoutError: Outcome unknown
        """
        if amount_cents <= 0:
            raise ValueError("amount_cents must be positive")

        log_context = {
            "operation": "authorize",
            "amount_cents": amount_cents,
            "currency": currency,
            "destination_account": destination_account,
            "idempotency_key": idempotency_key,
        }

        def call():
            return stripe.PaymentIntent.create(
                api_key=self.api_key,
                idempotency_key=idempotency_key,
                amount=amount_cents,
                currency=currency,
                payment_method=payer_reference,
                payment_method_types=["card"],
                capture_method="manual",
                confirm=True,
                transfer_data={"destination": destination_account},
                metadata=metadata or {},
            )

        intent = self._execute(log_context, call)
        return AuthorizationResult(
            intent_id=intent.id,
            status=intent.status,
            amount_cents=intent.amount,
            currency=intent.currency,
            raw_response=intent.to_dict(),
        )

    def capture(
        self,
        intent_id: str,
        *,
        idempotency_key: str,
        amount_cents: int | None = None,
        application_fee_cents: int | None = None,
    ) -> CaptureResult:
        """
        Capture all or part of a hold.

        Stripe releases whatever part of the hold is not captured.

        Raises:
            StripeAuthorizationExpiredError: The hold lapsed or was cancelled
            StripeTimeoutError: Outcome unknown
        """
        log_context = {
            "operation": "capture",
            "payment_intent_id": intent_id,
            "amount_to_capture": amount_cents,
            "application_fee_cents": application_fee_cents,
            "idempotency_key": idempotency_key,
        }

        params: dict[str, Any] = {}
        if amount_cents is not None:
            params["amount_to_capture"] = amount_cents
        if application_fee_cents is not None:
            params["application_fee_amount"] = application_fee_cents

        def call():
            return stripe.PaymentIntent.capture(
                intent_id,
                api_key=self.api_key,
                idempotency_key=idempotency_key,
                **params,
            )

        intent = self._execute(log_context, call)
        return CaptureResult(
            intent_id=intent.id,
            status=intent.status,
            captured_amount_cents=intent.amount_received,
            application_fee_cents=intent.application_fee_amount,
            raw_response=intent.to_dict(),
        )

    def cancel_authorization(self, intent_id: str, *, idempotency_key: str) -> CancelResult:
        """Release a hold without moving money."""
        log_context = {
            "operation": "cancel_authorization",
            "payment_intent_id": intent_id,
            "idempotency_key": idempotency_key,
        }

        def call():
            return stripe.PaymentIntent.cancel(
                intent_id,
                api_key=self.api_key,
                idempotency_key=idempotency_key,
            )

        intent = self._execute(log_context, call)
        return CancelResult(
            intent_id=intent.id,
            status=intent.status,
            raw_response=intent.to_dict(),
        )

    def refund_with_reversal(
        self,
        intent_id: str,
        *,
        amount_cents: int,
        reason: str,
        reversal_amount_cents: int,
        idempotency_key: str,
    ) -> RefundWithReversalResult:
        """
        Refund the payer and debit the manager.

        The manager's transfer is reversed first so the refund is always
        funded from the manager's balance, never from the platform's.

        Raises:
            StripeInsufficientFundsError: The connected account cannot cover
                the reversal
            StripeInvalidRequestError: The charge cannot be refunded
        """
        if amount_cents <= 0:
            raise ValueError("amount_cents must be positive")

        logger = self.get_logger()
        intent = self._execute(
            {"operation": "retrieve_for_refund", "payment_intent_id": intent_id},
            lambda: stripe.PaymentIntent.retrieve(
                intent_id,
                api_key=self.api_key,
                expand=["latest_charge"],
            ),
        )
        charge = intent.latest_charge
        transfer_id = getattr(charge, "transfer", None) if charge is not None else None
        if isinstance(transfer_id, dict):
            transfer_id = transfer_id.get("id")

        reversal_id = None
        if transfer_id and reversal_amount_cents > 0:
            reversal = self._execute(
                {
                    "operation": "reverse_transfer",
                    "payment_intent_id": intent_id,
                    "transfer_id": transfer_id,
                    "amount_cents": reversal_amount_cents,
                },
                lambda: stripe.Transfer.create_reversal(
                    transfer_id,
                    api_key=self.api_key,
                    idempotency_key=f"{idempotency_key}:reversal",
                    amount=reversal_amount_cents,
                    metadata={"payment_intent_id": intent_id, "reason": reason},
                ),
            )
            reversal_id = reversal.id
        elif not transfer_id:
            logger.warning(
                "Charge has no connected-account transfer; refunding without reversal",
                extra={"payment_intent_id": intent_id},
            )

        refund = self._execute(
            {
                "operation": "refund",
                "payment_intent_id": intent_id,
                "amount_cents": amount_cents,
                "reversal_id": reversal_id,
                "idempotency_key": idempotency_key,
            },
            lambda: stripe.Refund.create(
                api_key=self.api_key,
                idempotency_key=idempotency_key,
                payment_intent=intent_id,
                amount=amount_cents,
                reason="requested_by_customer",
                refund_application_fee=False,
                metadata={"reason": reason, "reversal_id": reversal_id or ""},
            ),
        )
        return RefundWithReversalResult(
            refund_id=refund.id,
            reversal_id=reversal_id,
            amount_cents=refund.amount,
            reversal_amount_cents=reversal_amount_cents if reversal_id else 0,
            status=refund.status,
            raw_response=refund.to_dict(),
        )

    def retrieve(self, intent_id: str) -> IntentStatusResult:
        """Current state of a PaymentIntent (used to resolve unknown outcomes)."""
        intent = self._execute(
            {"operation": "retrieve", "payment_intent_id": intent_id},
            lambda: stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key),
            level=logging.DEBUG,
        )
        latest_charge = intent.latest_charge
        if latest_charge is not None and not isinstance(latest_charge, str):
            latest_charge = latest_charge.id
        return IntentStatusResult(
            intent_id=intent.id,
            status=intent.status,
            amount_cents=intent.amount,
            amount_received_cents=intent.amount_received or 0,
            application_fee_cents=intent.application_fee_amount,
            latest_charge_id=latest_charge,
            raw_response=intent.to_dict(),
        )

    def retrieve_charge_settlement(self, charge_id: str) -> ChargeSettlement:
        """
        Processor fee and manager net of a charge.

        ``processor_fee_cents`` is None while Stripe has not created the
        balance transaction yet; a later ``charge.updated`` event carries it.
        """
        charge = self._execute(
            {"operation": "retrieve_charge", "charge_id": charge_id},
            lambda: stripe.Charge.retrieve(
                charge_id,
                api_key=self.api_key,
                expand=["balance_transaction"],
            ),
            level=logging.DEBUG,
        )
        return charge_settlement_from_payload(charge.to_dict())

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    @staticmethod
    def verify_webhook_signature(payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify and parse a Stripe webhook event.

        Raises:
            StripeInvalidRequestError: Invalid signature or payload
        """
        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                settings.STRIPE_WEBHOOK_SECRET,
            )
        except stripe.SignatureVerificationError as e:
            raise StripeInvalidRequestError(
                "Invalid webhook signature",
                stripe_code="signature_verification_failed",
                details={"error": str(e)},
            )
        except ValueError as e:
            raise StripeInvalidRequestError(
                "Invalid webhook payload",
                stripe_code="invalid_payload",
                details={"error": str(e)},
            )
        return event.to_dict()

    # =========================================================================
    # Error Handling
    # =========================================================================

    def _execute(
        self,
        log_context: dict[str, Any],
        call: Callable[[], Any],
        level: int = logging.INFO,
    ) -> Any:
        """Run one Stripe request with timing logs and error translation."""
        logger = self.get_logger()
        start_time = time.time()
        logger.log(level, "Starting Stripe operation", extra=log_context)

        try:
            result = call()
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self._handle_stripe_error(e, log_context, duration_ms)
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.log(
            level,
            "Stripe operation completed",
            extra={
                **log_context,
                "stripe_id": getattr(result, "id", None),
                "status": getattr(result, "status", None),
                "duration_ms": duration_ms,
            },
        )
        return result

    @classmethod
    def _handle_stripe_error(
        cls,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe exceptions to domain exceptions.

        Raises:
            StripeCardDeclinedError: Card was declined
            StripeInsufficientFundsError: Insufficient funds
            StripeAuthorizationExpiredError: Capture on a lapsed hold
            StripeInvalidRequestError: Invalid request parameters
            StripeRateLimitError: Rate limited
            StripeAPIUnavailableError: Stripe server error (outcome unknown)
            StripeTimeoutError: No answer in time (outcome unknown)
        """
        if isinstance(error, (StripeError, ValueError)):
            raise error

        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}
        operation = log_context.get("operation")

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None)
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": decline_code},
            )
            if decline_code == "insufficient_funds":
                raise StripeInsufficientFundsError(
                    str(error.user_message or error),
                    stripe_code=error.code,
                    decline_code=decline_code,
                ) from error
            raise StripeCardDeclinedError(
                str(error.user_message or error),
                stripe_code=error.code,
                decline_code=decline_code,
            ) from error

        if isinstance(error, stripe.InvalidRequestError):
            if operation == "capture" and error.code in AUTHORIZATION_LAPSED_CODES:
                logger.warning(
                    "Capture attempted on a lapsed authorization",
                    extra={**log_context, "stripe_code": error.code},
                )
                raise StripeAuthorizationExpiredError(
                    "The payment authorization has expired. A new booking and payment are required.",
                    stripe_code=error.code,
                ) from error
            if error.code == "balance_insufficient":
                logger.error(
                    "Connected account cannot cover transfer reversal",
                    extra={**log_context, "stripe_code": error.code},
                )
                raise StripeInsufficientFundsError(
                    str(error),
                    stripe_code=error.code,
                ) from error
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            raise StripeInvalidRequestError(str(error), stripe_code=error.code) from error

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise StripeRateLimitError(
                "Stripe rate limit exceeded. Please retry.",
                stripe_code="rate_limit",
            ) from error

        if isinstance(error, stripe.APIConnectionError):
            logger.error(
                "Connection to Stripe failed or timed out",
                extra=log_context,
                exc_info=True,
            )
            raise StripeTimeoutError(
                "No answer from Stripe in time; the outcome is unknown.",
                stripe_code="api_connection_error",
            ) from error

        if isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise StripeAPIUnavailableError(
                "Stripe service error; the outcome is unknown.",
                stripe_code="api_error",
            ) from error

        if isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise StripeInvalidRequestError(
                "Stripe authentication failed",
                stripe_code="authentication_error",
            ) from error

        logger.error(
            f"Unexpected error from Stripe: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise StripeAPIUnavailableError(
            f"Unexpected Stripe error: {error}",
            stripe_code="unknown_error",
        ) from error


# =============================================================================
# Payload Helpers
# =============================================================================


def charge_settlement_from_payload(charge: dict[str, Any]) -> ChargeSettlement:
    """
    Build a ChargeSettlement from a Charge dict (API response or event object).

    Manager net is the charge amount minus the application fee for
    destination charges, and minus the processor fee otherwise.
    """
    amount = int(charge.get("amount_captured") or charge.get("amount") or 0)
    application_fee = charge.get("application_fee_amount")

    processor_fee = None
    balance_transaction = charge.get("balance_transaction")
    if isinstance(balance_transaction, dict):
        processor_fee = int(balance_transaction.get("fee") or 0)

    if charge.get("transfer_data") and application_fee is not None:
        net = amount - int(application_fee)
    else:
        net = amount - (processor_fee or 0)

    return ChargeSettlement(
        charge_id=charge.get("id", ""),
        intent_id=charge.get("payment_intent") or "",
        amount_cents=amount,
        processor_fee_cents=processor_fee,
        net_amount_cents=max(0, net),
        application_fee_cents=int(application_fee) if application_fee is not None else None,
    )

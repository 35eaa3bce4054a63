"""
Payment processor adapters.

All external payment API calls go through these adapters to ensure
consistent error handling, timeouts, idempotency and observability.

Usage:
    from payments.adapters import StripeAdapter, IdempotencyKeyGenerator

    adapter = StripeAdapter.from_settings()
    adapter.cancel_authorization(
        "pi_123",
        idempotency_key=IdempotencyKeyGenerator.generate("cancel", "pi_123"),
    )
"""

from payments.adapters.base import (
    AuthorizationResult,
    CancelResult,
    CaptureResult,
    ChargeSettlement,
    IntentStatusResult,
    ProcessorAdapter,
    RefundWithReversalResult,
)
from payments.adapters.stripe_adapter import (
    IdempotencyKeyGenerator,
    StripeAdapter,
    backoff_delay,
    charge_settlement_from_payload,
    is_retryable_stripe_error,
)

__all__ = [
    "AuthorizationResult",
    "CancelResult",
    "CaptureResult",
    "ChargeSettlement",
    "IdempotencyKeyGenerator",
    "IntentStatusResult",
    "ProcessorAdapter",
    "RefundWithReversalResult",
    "StripeAdapter",
    "backoff_delay",
    "charge_settlement_from_payload",
    "is_retryable_stripe_error",
]

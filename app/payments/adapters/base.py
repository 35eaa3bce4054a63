"""
Processor adapter interface and result types.

The settlement engine depends only on ``ProcessorAdapter``; StripeAdapter
is the production implementation and tests inject a MagicMock built from
the same interface. Every call may raise a ProcessorError subclass.

Usage:
    from payments.adapters import ProcessorAdapter, StripeAdapter

    def settle(processor: ProcessorAdapter) -> None:
        result = processor.capture("pi_123", amount_cents=11500, application_fee_cents=364,
                                   idempotency_key="capture:pi_123:1:ab12cd34")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class AuthorizationResult:
    """
    A manual-capture PaymentIntent created and confirmed.

    Attributes:
        intent_id: PaymentIntent ID (pi_xxx)
        status: "requires_capture" when the hold is in place
        amount_cents: Amount held
    """

    intent_id: str
    status: str
    amount_cents: int
    currency: str = "usd"
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def is_held(self) -> bool:
        return self.status == "requires_capture"


@dataclass
class CaptureResult:
    intent_id: str
    status: str
    captured_amount_cents: int
    application_fee_cents: int | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass
class CancelResult:
    intent_id: str
    status: str
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundWithReversalResult:
    """
    A payer refund funded by reversing the manager's transfer.

    Attributes:
        refund_id: Refund ID (re_xxx)
        reversal_id: Transfer reversal ID (trr_xxx), None if the charge had
            no connected-account transfer
        amount_cents: Amount credited to the payer
        reversal_amount_cents: Amount debited from the manager
        status: Refund status (succeeded, pending, failed)
    """

    refund_id: str
    reversal_id: str | None
    amount_cents: int
    reversal_amount_cents: int
    status: str
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class IntentStatusResult:
    """Current processor view of a PaymentIntent, used for re-queries."""

    intent_id: str
    status: str
    amount_cents: int
    amount_received_cents: int
    application_fee_cents: int | None = None
    latest_charge_id: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChargeSettlement:
    """
    Post-settlement figures of a charge.

    Attributes:
        charge_id: Charge ID (ch_xxx)
        intent_id: PaymentIntent the charge belongs to
        amount_cents: Amount actually charged (the captured amount)
        processor_fee_cents: Processor's own fee, None until the balance
            transaction exists
        net_amount_cents: What the manager's account receives
    """

    charge_id: str
    intent_id: str
    amount_cents: int
    processor_fee_cents: int | None
    net_amount_cents: int
    application_fee_cents: int | None = None


# =============================================================================
# Interface
# =============================================================================


@runtime_checkable
class ProcessorAdapter(Protocol):
    """Operations the settlement engine needs from a payment processor."""

    def authorize(
        self,
        *,
        amount_cents: int,
        currency: str,
        payer_reference: str,
        destination_account: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> AuthorizationResult: ...

    def capture(
        self,
        intent_id: str,
        *,
        idempotency_key: str,
        amount_cents: int | None = None,
        application_fee_cents: int | None = None,
    ) -> CaptureResult: ...

    def cancel_authorization(self, intent_id: str, *, idempotency_key: str) -> CancelResult: ...

    def refund_with_reversal(
        self,
        intent_id: str,
        *,
        amount_cents: int,
        reason: str,
        reversal_amount_cents: int,
        idempotency_key: str,
    ) -> RefundWithReversalResult: ...

    def retrieve(self, intent_id: str) -> IntentStatusResult: ...

    def retrieve_charge_settlement(self, charge_id: str) -> ChargeSettlement: ...

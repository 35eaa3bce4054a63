"""
Data types for ledger operations.

This module defines dataclasses used throughout the ledger store for
type-safe data transfer between layers.

Types:
    SettlementMetadata: Typed, versioned content of PaymentTransaction.metadata
    RefundRecordParams: Parameters for appending a refund record

Usage:
    from payments.ledger.types import SettlementMetadata

    marker = SettlementMetadata(
        partial_capture=True,
        approved_subtotal_cents=10000,
        approved_tax_cents=1500,
    )
    LedgerStore.update(transaction.id, metadata=marker)

    if transaction.settlement_metadata.partial_capture:
        ...
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any

METADATA_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class SettlementMetadata:
    """
    Settlement provenance and coordination flags for one payment intent.

    Every field except ``schema_version`` is optional; ``None`` means "not
    set" and is never written to the JSON column. ``merge`` overlays the
    set fields of a patch, so partial updates can never erase a flag that
    another writer set.

    Attributes:
        partial_capture: Written before a partial capture is sent; tells the
            reconciliation listener not to touch gross/base/tax amounts
        approved_subtotal_cents: Pre-tax subtotal the manager approved
        approved_tax_cents: Tax on the approved subtotal
        approved_line_item_ids / rejected_line_item_ids: The decision
        recalculated_platform_fee_cents: Fee computed on the captured amount
        original_authorized_cents: Amount held before the capture
        capture_outcome_unknown: Capture timed out; awaiting reconciliation
        capture_requested_at: ISO timestamp of the capture request; empty
            once a re-query found the capture never happened
        captured_via: "engine", "webhook" or "requery"
        last_notification_id: Most recent processor event applied
        pending_refund_cents: Refund sent whose outcome is unknown; 0 once
            the processor confirmed it
        pending_refund_key: Idempotency key the pending refund was sent with
        pending_refund_reason / pending_refund_status /
        pending_refund_line_item_ids: What to record when it is confirmed
    """

    schema_version: int = METADATA_SCHEMA_VERSION
    partial_capture: bool | None = None
    approved_subtotal_cents: int | None = None
    approved_tax_cents: int | None = None
    approved_line_item_ids: tuple[str, ...] | None = None
    rejected_line_item_ids: tuple[str, ...] | None = None
    recalculated_platform_fee_cents: int | None = None
    original_authorized_cents: int | None = None
    capture_outcome_unknown: bool | None = None
    capture_requested_at: str | None = None
    captured_via: str | None = None
    last_notification_id: str | None = None
    pending_refund_cents: int | None = None
    pending_refund_key: str | None = None
    pending_refund_reason: str | None = None
    pending_refund_status: str | None = None
    pending_refund_line_item_ids: tuple[str, ...] | None = None

    @property
    def refund_pending(self) -> bool:
        return bool(self.pending_refund_cents)

    def merge(self, patch: SettlementMetadata) -> SettlementMetadata:
        """Return a copy with every set field of ``patch`` applied."""
        changes = {
            f.name: getattr(patch, f.name)
            for f in fields(patch)
            if f.name != "schema_version" and getattr(patch, f.name) is not None
        }
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready dict without unset fields."""
        data: dict[str, Any] = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            data[key] = list(value) if isinstance(value, tuple) else value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SettlementMetadata:
        """
        Parse the JSON column.

        Unknown keys are ignored so rows written by a newer release still
        load; list fields become tuples.
        """
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                continue
            if key.endswith("_ids") and value is not None:
                value = tuple(str(v) for v in value)
            values[key] = value
        return cls(**values)


@dataclass
class RefundRecordParams:
    """
    Parameters for appending a refund record to a PaymentTransaction.

    Attributes:
        amount_cents: Amount credited to the payer, which is also the amount
            debited from the manager (must be positive)
        reason: Why the refund was issued
        refund_reference: Processor refund id (re_xxx)
        reversal_reference: Processor transfer reversal id (trr_xxx)
        line_item_ids: Line items the refund covers
    """

    amount_cents: int
    reason: str
    refund_reference: str | None = None
    reversal_reference: str | None = None
    line_item_ids: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.amount_cents <= 0:
            raise ValueError("amount_cents must be positive")

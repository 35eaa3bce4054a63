"""
Ledger - authoritative financial record per payment intent.

Public API:
    LedgerStore - reads and transactional writes of PaymentTransaction rows
    SettlementMetadata - typed content of PaymentTransaction.metadata
    RefundRecordParams - parameters for appending a refund

Usage:
    from payments.ledger import LedgerStore, SettlementMetadata

    entry = LedgerStore.get("pi_123")
    if entry.settlement_metadata.partial_capture:
        ...
"""

from .store import LedgerStore
from .types import METADATA_SCHEMA_VERSION, RefundRecordParams, SettlementMetadata

__all__ = [
    "LedgerStore",
    "METADATA_SCHEMA_VERSION",
    "RefundRecordParams",
    "SettlementMetadata",
]

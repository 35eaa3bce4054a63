"""
Reconciliation listener: applies processor notifications to the ledger.

Notifications can arrive before, during or after the engine's own write
for the same capture, and can be delivered more than once. The listener
only ever sets values (never adds to them), so applying a notification
twice leaves the ledger as applying it once.

Rules for a capture notification:
    - capture outcome unknown to the engine, never requested by it, or
      requested longer than SETTLEMENT_GRACE_MINUTES ago without a
      write-back: finish the capture through the engine, then record the
      processor figures
    - ``partial_capture`` marker set: only the processor fee and the
      manager's net revenue are taken from the notification; the gross,
      base and tax amounts the engine wrote stay untouched
    - otherwise: amount, base, processor fee and net revenue are synced;
      the status is left to the engine write-back still in flight

A refund notification confirms the matching refund record. If there is
none and the entry carries a pending-refund marker (the engine lost the
refund response), the refund is recorded through the engine.

Usage:
    from payments.services import ReconciliationListener

    result = ReconciliationListener().apply(notification)
    if not result.success:
        webhook_event.mark_failed(result.error)
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils import timezone

from core.services import BaseService, ServiceResult

from payments.ledger import LedgerStore, SettlementMetadata
from payments.state_machines import UNSETTLED_TRANSACTION_STATUSES
from payments.webhooks.notifications import CAPTURE_SUCCEEDED, REFUND_SUCCEEDED

if TYPE_CHECKING:
    from typing import Any

    from payments.models import PaymentTransaction
    from payments.services.settlement_engine import SettlementEngine
    from payments.webhooks.notifications import ProcessorNotification


class ReconciliationListener(BaseService):
    """
    Applies ProcessorNotification values to ledger entries.

    Args:
        engine: Settlement engine used to finish captures whose outcome
            the engine did not learn itself
    """

    def __init__(self, engine: SettlementEngine | None = None):
        self._engine = engine

    @property
    def engine(self) -> SettlementEngine:
        if self._engine is None:
            from payments.services.settlement_engine import SettlementEngine

            self._engine = SettlementEngine()
        return self._engine

    def apply(self, notification: ProcessorNotification) -> ServiceResult[dict[str, Any]]:
        if notification.type == CAPTURE_SUCCEEDED:
            return self._apply_capture(notification)
        if notification.type == REFUND_SUCCEEDED:
            return self._apply_refund(notification)
        return ServiceResult.failure(
            f"Unsupported notification type: {notification.type}",
            error_code="UNSUPPORTED_NOTIFICATION",
        )

    # =========================================================================
    # Captures
    # =========================================================================

    def _apply_capture(self, notification: ProcessorNotification) -> ServiceResult[dict[str, Any]]:
        logger = self.get_logger()
        entry = LedgerStore.find(notification.intent_id)
        if entry is None:
            logger.warning(
                "Capture notification for unknown payment intent",
                extra={"payment_intent_id": notification.intent_id, "event_id": notification.event_id},
            )
            return ServiceResult.failure(
                f"No payment transaction for {notification.intent_id}",
                error_code="UNKNOWN_PAYMENT_INTENT",
            )

        meta = entry.settlement_metadata
        if entry.status in UNSETTLED_TRANSACTION_STATUSES and self._capture_abandoned(meta):
            self.engine.finalize_capture(
                entry.payment_intent_id,
                notification.amount_cents,
                via="webhook",
            )
            entry = LedgerStore.get(entry.payment_intent_id)
            meta = entry.settlement_metadata

        fields = self._capture_fields(entry, notification, partial=bool(meta.partial_capture))
        changed = {name: value for name, value in fields.items() if getattr(entry, name) != value}

        if not changed and meta.last_notification_id == notification.event_id:
            logger.info(
                "Capture notification already applied",
                extra={"payment_intent_id": entry.payment_intent_id, "event_id": notification.event_id},
            )
            return ServiceResult.success(self._summary(entry))

        entry = LedgerStore.update(
            entry.id,
            metadata=SettlementMetadata(last_notification_id=notification.event_id or None),
            last_synced_at=timezone.now(),
            **changed,
        )
        logger.info(
            "Capture notification applied",
            extra={
                "payment_intent_id": entry.payment_intent_id,
                "event_id": notification.event_id,
                "partial_capture": bool(meta.partial_capture),
                "fields": sorted(changed),
            },
        )
        return ServiceResult.success(self._summary(entry))

    @staticmethod
    def _capture_abandoned(meta: SettlementMetadata) -> bool:
        """No in-process capture is going to write this result back."""
        if meta.capture_outcome_unknown or not meta.capture_requested_at:
            return True
        requested_at = datetime.fromisoformat(meta.capture_requested_at)
        return timezone.now() - requested_at > timedelta(minutes=settings.SETTLEMENT_GRACE_MINUTES)

    @staticmethod
    def _capture_fields(
        entry: PaymentTransaction,
        notification: ProcessorNotification,
        partial: bool,
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        if notification.processor_fee_cents is not None:
            fields["processor_fee_cents"] = notification.processor_fee_cents
        if notification.net_amount_cents is not None:
            fields["manager_revenue_cents"] = notification.net_amount_cents

        if partial:
            return fields

        fields["amount_cents"] = notification.amount_cents
        if notification.application_fee_cents is not None:
            fields["platform_fee_cents"] = notification.application_fee_cents
            fields["base_amount_cents"] = notification.amount_cents - notification.application_fee_cents
        if entry.captured_at is None:
            fields["captured_at"] = timezone.now()
        return fields

    # =========================================================================
    # Refunds
    # =========================================================================

    def _apply_refund(self, notification: ProcessorNotification) -> ServiceResult[dict[str, Any]]:
        logger = self.get_logger()
        context = {
            "payment_intent_id": notification.intent_id,
            "refund_reference": notification.refund_reference,
            "event_id": notification.event_id,
        }
        if not notification.refund_reference:
            logger.info("Refund notification without a refund reference", extra=context)
            return ServiceResult.success({"refund_reference": None, "confirmed": False, "recorded": False})

        confirmed = LedgerStore.confirm_refund(notification.refund_reference)
        recorded = False
        if not confirmed and not LedgerStore.has_refund(notification.refund_reference):
            entry = LedgerStore.find(notification.intent_id)
            if entry is not None and entry.settlement_metadata.refund_pending:
                # The engine sent this refund but never learned it went through
                self.engine.complete_pending_refund(
                    entry.payment_intent_id,
                    notification.refund_reference,
                    amount_cents=notification.amount_cents or None,
                )
                recorded = confirmed = LedgerStore.has_refund(notification.refund_reference)

        if recorded:
            logger.info("Pending refund recorded from notification", extra=context)
        elif confirmed:
            logger.info("Refund notification applied", extra=context)
        else:
            logger.info("Refund notification had nothing to confirm", extra=context)
        return ServiceResult.success(
            {
                "refund_reference": notification.refund_reference,
                "confirmed": confirmed,
                "recorded": recorded,
            }
        )

    @staticmethod
    def _summary(entry: PaymentTransaction) -> dict[str, Any]:
        return {
            "payment_intent_id": entry.payment_intent_id,
            "status": entry.status,
            "amount_cents": entry.amount_cents,
            "processor_fee_cents": entry.processor_fee_cents,
            "manager_revenue_cents": entry.manager_revenue_cents,
        }

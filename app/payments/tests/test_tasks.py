"""
Tests for the settlement sweep tasks.

Webhook task tests live in payments/webhooks/tests/test_tasks.py.
"""

from datetime import timedelta
from unittest.mock import patch

from django.conf import settings
from django.utils import timezone

from payments.exceptions import StripeTimeoutError
from payments.models import PaymentTransaction
from payments.state_machines import TransactionStatus
from payments.tasks import expire_stale_authorizations, resolve_pending_settlements
from payments.tests.factories import PaymentTransactionFactory


def backdate(entry, minutes):
    PaymentTransaction.objects.filter(pk=entry.pk).update(updated_at=timezone.now() - timedelta(minutes=minutes))


class TestResolvePendingSettlements:
    def test_requeries_old_processing_entries(self, db):
        stale = PaymentTransactionFactory(status=TransactionStatus.PROCESSING)
        fresh = PaymentTransactionFactory(status=TransactionStatus.PROCESSING)
        PaymentTransactionFactory(status=TransactionStatus.PENDING)
        backdate(stale, settings.SETTLEMENT_GRACE_MINUTES + 1)

        with patch("payments.services.SettlementEngine") as mock_engine:
            stats = resolve_pending_settlements()

        assert stats == {"checked": 1, "errors": 0}
        mock_engine.return_value.resolve_pending_settlement.assert_called_once_with(stale.payment_intent_id)
        assert fresh.payment_intent_id not in str(mock_engine.mock_calls)

    def test_requeries_abandoned_capture_requests(self, db):
        """Should pick up pending entries whose capture was requested but never written back."""
        requested_at = (timezone.now() - timedelta(hours=1)).isoformat()
        abandoned = PaymentTransactionFactory(metadata={"schema_version": 1, "capture_requested_at": requested_at})
        cleared = PaymentTransactionFactory(metadata={"schema_version": 1, "capture_requested_at": ""})
        undecided = PaymentTransactionFactory()
        for entry in (abandoned, cleared, undecided):
            backdate(entry, settings.SETTLEMENT_GRACE_MINUTES + 1)

        with patch("payments.services.SettlementEngine") as mock_engine:
            stats = resolve_pending_settlements()

        assert stats == {"checked": 1, "errors": 0}
        mock_engine.return_value.resolve_pending_settlement.assert_called_once_with(abandoned.payment_intent_id)

    def test_processor_failure_counted(self, db):
        stale = PaymentTransactionFactory(status=TransactionStatus.PROCESSING)
        backdate(stale, settings.SETTLEMENT_GRACE_MINUTES + 1)

        with patch("payments.services.SettlementEngine") as mock_engine:
            mock_engine.return_value.resolve_pending_settlement.side_effect = StripeTimeoutError("Still no answer")
            stats = resolve_pending_settlements()

        assert stats == {"checked": 1, "errors": 1}


def test_expire_stale_authorizations_delegates_to_engine():
    stats = {"bookings_expired": 2, "extensions_expired": 1, "failed": 0}

    with patch("payments.services.SettlementEngine") as mock_engine:
        mock_engine.return_value.expire_stale_authorizations.return_value = stats

        assert expire_stale_authorizations() == stats

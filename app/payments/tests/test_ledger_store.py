"""
Tests for LedgerStore.

Tests cover:
- Idempotent creation per payment intent
- Guarded updates and metadata merging
- Refund records and the cumulative refund cap
- Money invariants enforced on every write
"""

import pytest

from payments.exceptions import InvariantViolation, PaymentNotFoundError, StaleRecordError
from payments.ledger import LedgerStore, RefundRecordParams, SettlementMetadata
from payments.models import PaymentHistoryEntry, RefundRecord
from payments.state_machines import HistoryEventType, TransactionStatus
from payments.tests.factories import PaymentTransactionFactory


@pytest.fixture
def captured_entry(db):
    return PaymentTransactionFactory(captured=True)


class TestCreate:
    def test_creates_pending_entry_with_history(self, booking):
        entry = LedgerStore.create(
            booking=booking,
            payment_intent_id="pi_new",
            authorized_amount_cents=13800,
            tax_cents=1800,
        )

        assert entry.status == TransactionStatus.PENDING
        assert entry.settlement_metadata.original_authorized_cents == 13800
        history = list(entry.history.all())
        assert [h.event_type for h in history] == [HistoryEventType.AUTHORIZED]

    def test_idempotent_per_intent(self, booking):
        first = LedgerStore.create(booking=booking, payment_intent_id="pi_new", authorized_amount_cents=13800)
        second = LedgerStore.create(booking=booking, payment_intent_id="pi_new", authorized_amount_cents=999)

        assert second.pk == first.pk
        assert second.authorized_amount_cents == 13800

    def test_non_positive_amount_rejected(self, booking):
        with pytest.raises(InvariantViolation):
            LedgerStore.create(booking=booking, payment_intent_id="pi_new", authorized_amount_cents=0)


class TestReads:
    def test_get_unknown_intent(self, db):
        with pytest.raises(PaymentNotFoundError):
            LedgerStore.get("pi_missing")

    def test_find_unknown_intent(self, db):
        assert LedgerStore.find("pi_missing") is None


class TestUpdate:
    def test_metadata_is_merged_not_replaced(self, db):
        entry = PaymentTransactionFactory()
        LedgerStore.update(entry.id, metadata=SettlementMetadata(partial_capture=True))

        entry = LedgerStore.update(entry.id, metadata=SettlementMetadata(captured_via="webhook"))

        meta = entry.settlement_metadata
        assert meta.partial_capture is True
        assert meta.captured_via == "webhook"
        assert meta.original_authorized_cents == 13800

    def test_expected_status_guard(self, db):
        entry = PaymentTransactionFactory(status=TransactionStatus.CANCELED)

        with pytest.raises(StaleRecordError):
            LedgerStore.update(
                entry.id,
                expected_status=TransactionStatus.PENDING,
                status=TransactionStatus.PROCESSING,
            )

    def test_history_written_with_update(self, db):
        entry = PaymentTransactionFactory()

        LedgerStore.update(
            entry.id,
            status=TransactionStatus.PROCESSING,
            event_type=HistoryEventType.CAPTURE_UNKNOWN,
            description="timeout",
        )

        history = PaymentHistoryEntry.objects.get(transaction=entry)
        assert history.previous_status == TransactionStatus.PENDING
        assert history.new_status == TransactionStatus.PROCESSING

    def test_protected_fields_refused(self, captured_entry):
        with pytest.raises(InvariantViolation):
            LedgerStore.update(captured_entry.id, refunded_amount_cents=0)

    def test_capture_above_authorization_refused(self, db):
        entry = PaymentTransactionFactory()

        with pytest.raises(InvariantViolation):
            LedgerStore.update(entry.id, amount_cents=13801)

    def test_fee_above_capture_refused(self, captured_entry):
        with pytest.raises(InvariantViolation):
            LedgerStore.update(captured_entry.id, platform_fee_cents=11501)

    def test_update_bumps_version(self, captured_entry):
        entry = LedgerStore.update(captured_entry.id, processor_fee_cents=364)

        assert entry.version == captured_entry.version + 1


class TestAppendRefundRecord:
    def test_full_refund(self, captured_entry):
        record = LedgerStore.append_refund_record(
            captured_entry.id,
            RefundRecordParams(amount_cents=11136, reason="Booking cancelled", refund_reference="re_1"),
        )

        captured_entry.refresh_from_db()
        assert record.amount_cents == 11136
        assert captured_entry.refunded_amount_cents == 11136
        assert captured_entry.status == TransactionStatus.REFUNDED
        assert captured_entry.remaining_refundable_cents == 0

    def test_partial_refund(self, captured_entry):
        LedgerStore.append_refund_record(
            captured_entry.id,
            RefundRecordParams(amount_cents=2000, reason="Line items cancelled"),
        )

        captured_entry.refresh_from_db()
        assert captured_entry.status == TransactionStatus.PARTIALLY_REFUNDED
        assert captured_entry.remaining_refundable_cents == 9136

    def test_same_reference_recorded_once(self, captured_entry):
        """Should return the existing record when a refund reference is already on file."""
        params = RefundRecordParams(amount_cents=2000, reason="Line items cancelled", refund_reference="re_once")

        first = LedgerStore.append_refund_record(captured_entry.id, params)
        second = LedgerStore.append_refund_record(captured_entry.id, params)

        assert second.pk == first.pk
        captured_entry.refresh_from_db()
        assert captured_entry.refunded_amount_cents == 2000
        assert LedgerStore.has_refund("re_once") is True

    def test_cumulative_refunds_capped(self, captured_entry):
        LedgerStore.append_refund_record(captured_entry.id, RefundRecordParams(amount_cents=11000, reason="first"))

        with pytest.raises(InvariantViolation):
            LedgerStore.append_refund_record(captured_entry.id, RefundRecordParams(amount_cents=137, reason="second"))

        captured_entry.refresh_from_db()
        assert captured_entry.refunded_amount_cents == 11000
        assert RefundRecord.objects.filter(transaction=captured_entry).count() == 1

    def test_uncaptured_entry_refused(self, db):
        entry = PaymentTransactionFactory()

        with pytest.raises(InvariantViolation):
            LedgerStore.append_refund_record(entry.id, RefundRecordParams(amount_cents=100, reason="x"))

    def test_non_positive_amount_refused(self):
        with pytest.raises(ValueError):
            RefundRecordParams(amount_cents=0, reason="x")


class TestConfirmRefund:
    def test_first_confirmation_only(self, captured_entry):
        LedgerStore.append_refund_record(
            captured_entry.id,
            RefundRecordParams(amount_cents=500, reason="x", refund_reference="re_confirm"),
        )

        assert LedgerStore.confirm_refund("re_confirm") is True
        assert LedgerStore.confirm_refund("re_confirm") is False
        assert LedgerStore.confirm_refund("re_unknown") is False


class TestAppendOnly:
    def test_refund_records_cannot_change(self, captured_entry):
        record = LedgerStore.append_refund_record(
            captured_entry.id, RefundRecordParams(amount_cents=500, reason="x")
        )

        with pytest.raises(ValueError):
            record.save()
        with pytest.raises(ValueError):
            record.delete()

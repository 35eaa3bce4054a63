"""
Tests for webhook Celery tasks.

Tests cover:
- process_webhook_event task
- retry_failed_webhooks task
- cleanup_stuck_webhooks task
"""

from datetime import timedelta
from unittest.mock import patch
from uuid import uuid4

import pytest
from django.conf import settings
from django.utils import timezone

from core.services import ServiceResult
from payments.models import WebhookEvent
from payments.state_machines import WebhookEventStatus
from payments.tasks import (
    STUCK_PROCESSING_THRESHOLD_MINUTES,
    cleanup_stuck_webhooks,
    process_webhook_event,
    retry_failed_webhooks,
)
from payments.tests.factories import WebhookEventFactory


# =============================================================================
# process_webhook_event Tests
# =============================================================================


class TestProcessWebhookEvent:
    """Tests for the process_webhook_event task."""

    def test_process_pending_event_success(self, pending_webhook_event):
        """Should process pending event successfully."""
        with patch("payments.webhooks.handlers.dispatch_webhook") as mock_dispatch:
            mock_dispatch.return_value = ServiceResult.success(None)

            result = process_webhook_event(str(pending_webhook_event.id))

        assert result["status"] == "processed"
        assert result["stripe_event_id"] == pending_webhook_event.stripe_event_id

        pending_webhook_event.refresh_from_db()
        assert pending_webhook_event.status == WebhookEventStatus.PROCESSED
        assert pending_webhook_event.processed_at is not None
        assert pending_webhook_event.retry_count == 1

    def test_skip_already_processed_event(self, processed_webhook_event):
        """Should skip already processed events."""
        with patch("payments.webhooks.handlers.dispatch_webhook") as mock_dispatch:
            result = process_webhook_event(str(processed_webhook_event.id))

        assert result["status"] == "already_processed"
        mock_dispatch.assert_not_called()

    def test_event_not_found(self, db):
        """Should handle missing webhook event."""
        result = process_webhook_event(str(uuid4()))

        assert result["status"] == "not_found"

    def test_handler_failure_marks_event_failed(self, pending_webhook_event):
        """Should mark event as failed if handler returns failure."""
        with patch("payments.webhooks.handlers.dispatch_webhook") as mock_dispatch:
            mock_dispatch.return_value = ServiceResult.failure(
                "No payment transaction for pi_test_webhook",
                error_code="UNKNOWN_PAYMENT_INTENT",
            )

            result = process_webhook_event(str(pending_webhook_event.id))

        assert result["status"] == "handler_failed"
        assert "pi_test_webhook" in result["error"]

        pending_webhook_event.refresh_from_db()
        assert pending_webhook_event.status == WebhookEventStatus.FAILED
        assert pending_webhook_event.can_retry is True

    def test_exception_marks_event_failed_and_raises(self, pending_webhook_event):
        """Should mark event failed and re-raise for Celery retry."""
        with patch("payments.webhooks.handlers.dispatch_webhook") as mock_dispatch:
            mock_dispatch.side_effect = Exception("Database connection lost")

            with pytest.raises(Exception, match="Database connection lost"):
                process_webhook_event(str(pending_webhook_event.id))

        pending_webhook_event.refresh_from_db()
        assert pending_webhook_event.status == WebhookEventStatus.FAILED
        assert "Database connection lost" in pending_webhook_event.error_message

    def test_increments_retry_count(self, failed_webhook_event):
        """Should count every processing attempt."""
        with patch("payments.webhooks.handlers.dispatch_webhook") as mock_dispatch:
            mock_dispatch.return_value = ServiceResult.success(None)

            process_webhook_event(str(failed_webhook_event.id))

        failed_webhook_event.refresh_from_db()
        assert failed_webhook_event.retry_count == 2
        assert failed_webhook_event.error_message is None

    def test_settles_ledger_end_to_end(self, pending_webhook_event, captured_entry):
        """Should apply the capture figures to the ledger entry."""
        with patch("payments.webhooks.handlers.StripeAdapter"):
            result = process_webhook_event(str(pending_webhook_event.id))

        assert result["status"] == "processed"
        captured_entry.refresh_from_db()
        assert captured_entry.processor_fee_cents == 364
        assert captured_entry.settlement_metadata.last_notification_id == pending_webhook_event.stripe_event_id


# =============================================================================
# retry_failed_webhooks Tests
# =============================================================================


class TestRetryFailedWebhooks:
    """Tests for the retry_failed_webhooks task."""

    def test_queues_failed_webhooks_for_retry(self, failed_webhook_event):
        """Should queue failed webhooks for retry."""
        with patch("payments.tasks.process_webhook_event.delay") as mock_task:
            result = retry_failed_webhooks()

        assert result["queued_count"] == 1
        mock_task.assert_called_once_with(str(failed_webhook_event.id))

    def test_skips_webhooks_at_max_retries(self, failed_webhook_event):
        """Should skip webhooks that have used up their retries."""
        failed_webhook_event.retry_count = settings.WEBHOOK_MAX_RETRIES
        failed_webhook_event.save()

        with patch("payments.tasks.process_webhook_event.delay") as mock_task:
            result = retry_failed_webhooks()

        assert result["queued_count"] == 0
        mock_task.assert_not_called()

    def test_only_processes_failed_status(self, pending_webhook_event, processed_webhook_event):
        """Should only queue webhooks with FAILED status."""
        with patch("payments.tasks.process_webhook_event.delay") as mock_task:
            result = retry_failed_webhooks()

        assert result["queued_count"] == 0
        mock_task.assert_not_called()


# =============================================================================
# cleanup_stuck_webhooks Tests
# =============================================================================


class TestCleanupStuckWebhooks:
    """Tests for the cleanup_stuck_webhooks task."""

    def test_resets_stuck_processing_webhooks(self, db):
        """Should reset webhooks stuck in PROCESSING."""
        stuck_event = WebhookEventFactory(status=WebhookEventStatus.PROCESSING, retry_count=1)
        threshold = timezone.now() - timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES + 5)
        WebhookEvent.objects.filter(id=stuck_event.id).update(updated_at=threshold)

        result = cleanup_stuck_webhooks()

        assert result["reset_count"] == 1
        stuck_event.refresh_from_db()
        assert stuck_event.status == WebhookEventStatus.FAILED
        assert "timed out" in stuck_event.error_message.lower()

    def test_leaves_recent_processing_webhooks(self, db):
        """Should not reset webhooks still being processed."""
        recent_event = WebhookEventFactory(status=WebhookEventStatus.PROCESSING)

        result = cleanup_stuck_webhooks()

        assert result["reset_count"] == 0
        recent_event.refresh_from_db()
        assert recent_event.status == WebhookEventStatus.PROCESSING

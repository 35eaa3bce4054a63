"""
Celery tasks for settlement processing.

This module provides async tasks for:
- Processing Stripe webhook events
- Retrying failed webhook events
- Resetting webhook events stuck in processing
- Re-querying captures whose outcome is unknown
- Releasing authorizations nobody decided on

Usage:
    from payments.tasks import process_webhook_event

    # Queue a webhook for async processing
    process_webhook_event.delay(str(webhook_event.id))

    # Periodic sweeps are scheduled by payments/migrations/0002_add_settlement_sweep_schedules.py
"""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from celery import shared_task
from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from core.exceptions import ConflictError

from payments.exceptions import ProcessorError
from payments.models import PaymentTransaction, WebhookEvent
from payments.state_machines import TransactionStatus, WebhookEventStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

STUCK_PROCESSING_THRESHOLD_MINUTES = 30


# =============================================================================
# Webhook Processing Tasks
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": settings.WEBHOOK_MAX_RETRIES},
    acks_late=True,
)
def process_webhook_event(self, webhook_event_id: str) -> dict:
    """
    Apply one stored Stripe event to the ledger.

    The event row is the idempotency record: an event already PROCESSED
    is skipped. A handler that reports failure (for example a notification
    about an intent this service never created) marks the event FAILED
    and leaves it to retry_failed_webhooks. An exception marks it FAILED
    and is re-raised so Celery retries with backoff.
    """
    from payments.webhooks.handlers import dispatch_webhook

    event_id = UUID(str(webhook_event_id))
    webhook_event = WebhookEvent.objects.filter(id=event_id).first()
    if webhook_event is None:
        logger.error("Stored webhook event missing", extra={"webhook_event_id": str(event_id)})
        return {"status": "not_found", "webhook_event_id": str(event_id)}

    log_context = {
        "webhook_event_id": str(event_id),
        "stripe_event_id": webhook_event.stripe_event_id,
        "event_type": webhook_event.event_type,
    }
    if webhook_event.is_processed:
        logger.info("Webhook event already applied", extra=log_context)
        return {"status": "already_processed", "webhook_event_id": str(event_id)}

    webhook_event.mark_processing()
    webhook_event.save()
    logger.info(
        "Applying webhook event",
        extra={**log_context, "attempt": webhook_event.retry_count},
    )

    try:
        with transaction.atomic():
            result = dispatch_webhook(webhook_event)
    except Exception as e:
        webhook_event.mark_failed(f"{type(e).__name__}: {e}")
        webhook_event.save()
        logger.exception("Webhook event raised while being applied", extra=log_context)
        raise

    if not result.success:
        error = result.error or "Handler returned failure"
        webhook_event.mark_failed(error)
        webhook_event.save()
        logger.warning(
            "Webhook event rejected by handler",
            extra={**log_context, "error_code": result.error_code, "error": error},
        )
        return {"status": "handler_failed", "webhook_event_id": str(event_id), "error": error}

    webhook_event.mark_processed()
    webhook_event.save()
    logger.info("Webhook event applied", extra=log_context)
    return {
        "status": "processed",
        "webhook_event_id": str(event_id),
        "stripe_event_id": webhook_event.stripe_event_id,
    }


@shared_task
def retry_failed_webhooks() -> dict:
    """
    Periodic task to re-queue failed webhook events with attempts left.

    Returns:
        Dict with count of webhooks queued for retry
    """
    failed_webhooks = WebhookEvent.objects.filter(
        status=WebhookEventStatus.FAILED,
        retry_count__lt=settings.WEBHOOK_MAX_RETRIES,
    ).order_by("created_at")[:100]

    queued_count = 0
    for webhook in failed_webhooks:
        process_webhook_event.delay(str(webhook.id))
        queued_count += 1
        logger.info(
            "Queued failed webhook for retry",
            extra={
                "webhook_event_id": str(webhook.id),
                "stripe_event_id": webhook.stripe_event_id,
                "retry_count": webhook.retry_count,
            },
        )

    logger.info(
        f"Queued {queued_count} failed webhooks for retry",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}


@shared_task
def cleanup_stuck_webhooks() -> dict:
    """
    Periodic task to reset webhooks left in PROCESSING by a crashed worker.

    Returns:
        Dict with count of webhooks reset
    """
    threshold = timezone.now() - timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES)

    stuck_webhooks = WebhookEvent.objects.filter(
        status=WebhookEventStatus.PROCESSING,
        updated_at__lt=threshold,
    )

    reset_count = 0
    for webhook in stuck_webhooks:
        webhook.mark_failed("Processing timed out - reset for retry")
        webhook.save()
        reset_count += 1
        logger.warning(
            "Reset stuck webhook",
            extra={
                "webhook_event_id": str(webhook.id),
                "stripe_event_id": webhook.stripe_event_id,
                "stuck_since": webhook.updated_at.isoformat(),
            },
        )

    return {"reset_count": reset_count}


# =============================================================================
# Settlement Sweeps
# =============================================================================


@shared_task
def resolve_pending_settlements() -> dict:
    """
    Periodic task to re-query captures nobody finished.

    Picks up entries whose capture outcome is unknown (processing) and
    entries whose capture was requested but never written back (pending
    with a capture request on record). Normally the capture notification
    settles these; this covers a notification that never arrives and a
    worker that died mid-capture. Entries get SETTLEMENT_GRACE_MINUTES
    first.

    Returns:
        Dict with counts of entries checked and errors
    """
    from payments.services import SettlementEngine

    cutoff = timezone.now() - timedelta(minutes=settings.SETTLEMENT_GRACE_MINUTES)
    capture_requested = Q(
        status=TransactionStatus.PENDING,
        metadata__has_key="capture_requested_at",
    ) & ~Q(metadata__capture_requested_at="")
    intent_ids = list(
        PaymentTransaction.objects.filter(updated_at__lt=cutoff)
        .filter(Q(status=TransactionStatus.PROCESSING) | capture_requested)
        .order_by("updated_at")
        .values_list("payment_intent_id", flat=True)[:100]
    )

    engine = SettlementEngine()
    stats = {"checked": 0, "errors": 0}
    for intent_id in intent_ids:
        stats["checked"] += 1
        try:
            engine.resolve_pending_settlement(intent_id)
        except (ProcessorError, ConflictError) as e:
            stats["errors"] += 1
            logger.warning(
                "Pending settlement re-query failed",
                extra={"payment_intent_id": intent_id, "error": str(e)},
            )

    logger.info("Pending settlement sweep completed", extra=stats)
    return stats


@shared_task
def expire_stale_authorizations() -> dict:
    """
    Periodic task to release holds older than AUTHORIZATION_EXPIRY_HOURS.

    Returns:
        Dict with counts from SettlementEngine.expire_stale_authorizations
    """
    from payments.services import SettlementEngine

    return SettlementEngine().expire_stale_authorizations()

"""
Webhook event handlers for Stripe events.

This module provides a handler registry and the handlers that turn Stripe
settlement events into reconciliation work.

The handler registry allows:
- Clean separation between event routing and handling
- Easy extension for new event types
- Centralized error handling

Usage:
    from payments.webhooks.handlers import dispatch_webhook, register_handler

    # Register a custom handler
    @register_handler("custom.event")
    def handle_custom_event(webhook_event: WebhookEvent) -> ServiceResult:
        ...

    # Dispatch an event to its handler
    result = dispatch_webhook(webhook_event)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from core.services import ServiceResult

from payments.adapters import StripeAdapter
from payments.ledger import LedgerStore
from payments.services import ReconciliationListener, SettlementEngine
from payments.state_machines import TransactionStatus
from payments.webhooks.notifications import normalize_stripe_event

if TYPE_CHECKING:
    from payments.models import WebhookEvent


logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


# Maps event type strings to handler functions
WEBHOOK_HANDLERS: dict[str, Callable[[WebhookEvent], ServiceResult]] = {}


def register_handler(event_type: str) -> Callable:
    """
    Decorator to register a webhook event handler.

    Usage:
        @register_handler("charge.captured")
        def handle_charge_captured(webhook_event: WebhookEvent) -> ServiceResult:
            ...

    Args:
        event_type: The Stripe event type (e.g., "charge.captured")
    """

    def decorator(func: Callable[[WebhookEvent], ServiceResult]) -> Callable:
        WEBHOOK_HANDLERS[event_type] = func
        logger.debug(f"Registered webhook handler for {event_type}")
        return func

    return decorator


def dispatch_webhook(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Dispatch a webhook event to the appropriate handler.

    Events without a handler succeed with no data so they are not retried.
    """
    handler = WEBHOOK_HANDLERS.get(webhook_event.event_type)

    if not handler:
        logger.info(
            f"No handler registered for event type: {webhook_event.event_type}",
            extra={"stripe_event_id": webhook_event.stripe_event_id},
        )
        return ServiceResult.success(None)

    logger.info(
        f"Dispatching {webhook_event.event_type} to handler",
        extra={"stripe_event_id": webhook_event.stripe_event_id},
    )

    return handler(webhook_event)


# =============================================================================
# Settlement Handlers
# =============================================================================


@register_handler("charge.succeeded")
@register_handler("charge.captured")
@register_handler("charge.updated")
@register_handler("charge.refunded")
@register_handler("payment_intent.succeeded")
@register_handler("refund.created")
@register_handler("refund.updated")
def handle_settlement_event(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Apply the captures and refunds an event reports.

    Every notification is applied even if an earlier one fails; the first
    failure is returned so the event is retried. Re-applying the ones that
    succeeded is harmless.
    """
    notifications = normalize_stripe_event(
        webhook_event.payload,
        processor=StripeAdapter.from_settings(),
    )
    if not notifications:
        logger.info(
            "Event carries nothing to reconcile",
            extra={
                "stripe_event_id": webhook_event.stripe_event_id,
                "event_type": webhook_event.event_type,
            },
        )
        return ServiceResult.success(None)

    listener = ReconciliationListener()
    results = [listener.apply(notification) for notification in notifications]
    failures = [result for result in results if not result.success]
    if failures:
        return failures[0]
    return ServiceResult.success([result.data for result in results])


@register_handler("payment_intent.canceled")
def handle_payment_intent_canceled(webhook_event: WebhookEvent) -> ServiceResult:
    """
    A hold was cancelled at the processor.

    Only relevant while a capture outcome is unknown: the re-query then
    finds the intent cancelled and closes the booking. Cancellations the
    engine made itself are already recorded.
    """
    payment_intent_id = webhook_event.get_object().get("id")
    entry = LedgerStore.find(payment_intent_id) if payment_intent_id else None

    if entry is None:
        return ServiceResult.failure(
            f"No payment transaction for {payment_intent_id}",
            error_code="UNKNOWN_PAYMENT_INTENT",
        )

    if entry.status != TransactionStatus.PROCESSING:
        return ServiceResult.success({"payment_intent_id": payment_intent_id, "status": entry.status})

    result = SettlementEngine().resolve_pending_settlement(payment_intent_id)
    return ServiceResult.success(result.to_dict())

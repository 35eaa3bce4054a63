"""
Stripe webhook intake.

Settlement notifications arrive here, are verified against
STRIPE_WEBHOOK_SECRET, stored once per Stripe event id and handed to
Celery. Nothing is applied to the ledger inside the request.

Response codes:
    200  stored and queued, or a redelivery that needs no further work
    400  missing or bad signature, or an event without id/type
    405  anything but POST
    500  the event could not be queued; Stripe redelivers it later
"""

from __future__ import annotations

import logging
from typing import Any

from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from payments.adapters import StripeAdapter
from payments.exceptions import StripeInvalidRequestError
from payments.models import WebhookEvent
from payments.state_machines import WebhookEventStatus


logger = logging.getLogger(__name__)

# Redeliveries in these states are acknowledged without queueing again
SETTLED_EVENT_STATUSES = (WebhookEventStatus.PROCESSED, WebhookEventStatus.PROCESSING)


def _intent_reference(event_data: dict[str, Any]) -> str | None:
    """Payment intent an event concerns, for log context only."""
    obj = (event_data.get("data") or {}).get("object") or {}
    if obj.get("object") == "payment_intent":
        return obj.get("id")
    intent = obj.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return intent


@csrf_exempt
@require_POST
def stripe_webhook(request: HttpRequest) -> HttpResponse:
    """
    Verify, store and queue one Stripe event.

    A redelivered event lands on the same WebhookEvent row (unique
    stripe_event_id); it is queued again only if its earlier attempt failed
    or never started.
    """
    signature = request.headers.get("Stripe-Signature", "")
    if not signature:
        logger.warning("Stripe webhook rejected: no Stripe-Signature header")
        return HttpResponse("Missing signature", status=400)

    try:
        event_data = StripeAdapter.verify_webhook_signature(request.body, signature)
    except StripeInvalidRequestError as e:
        logger.warning(
            "Stripe webhook rejected: signature check failed",
            extra={"stripe_code": e.stripe_code},
        )
        return HttpResponse("Invalid signature", status=400)

    stripe_event_id = event_data.get("id")
    event_type = event_data.get("type")
    if not (stripe_event_id and event_type):
        logger.warning("Stripe webhook rejected: event without id or type")
        return HttpResponse("Invalid event", status=400)

    log_context = {
        "stripe_event_id": stripe_event_id,
        "event_type": event_type,
        "payment_intent_id": _intent_reference(event_data),
    }

    webhook_event, created = WebhookEvent.objects.get_or_create(
        stripe_event_id=stripe_event_id,
        defaults={
            "event_type": event_type,
            "payload": event_data,
            "status": WebhookEventStatus.PENDING,
        },
    )
    if not created and webhook_event.status in SETTLED_EVENT_STATUSES:
        logger.info(
            "Redelivered Stripe event ignored",
            extra={**log_context, "status": webhook_event.status},
        )
        return HttpResponse("Already received", status=200)

    from payments.tasks import process_webhook_event

    # A broker failure propagates as a 500 so Stripe retries the delivery
    process_webhook_event.delay(str(webhook_event.id))
    logger.info(
        "Stripe event queued",
        extra={**log_context, "webhook_event_id": str(webhook_event.id), "redelivery": not created},
    )
    return HttpResponse("Accepted", status=200)

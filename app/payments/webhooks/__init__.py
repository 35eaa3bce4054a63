"""
Webhook handling for settlement events from Stripe.

Stripe events are verified and stored by ``views.stripe_webhook``, processed
asynchronously by ``payments.tasks.process_webhook_event``, routed by
``handlers.dispatch_webhook`` and normalized into ProcessorNotification
values that the reconciliation listener applies.

Usage:
    # In urls.py
    from payments.webhooks.views import stripe_webhook

    urlpatterns = [
        path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
    ]
"""

from payments.webhooks.notifications import (
    CAPTURE_SUCCEEDED,
    REFUND_SUCCEEDED,
    ProcessorNotification,
    normalize_stripe_event,
)

__all__ = [
    "CAPTURE_SUCCEEDED",
    "REFUND_SUCCEEDED",
    "ProcessorNotification",
    "normalize_stripe_event",
]

"""
URL configuration for the payments app.

Routes:
    - POST bookings/<id>/authorize/            - Place the booking hold
    - POST bookings/<id>/approval/             - Manager approval
    - POST bookings/<id>/cancellation/         - Cancel booking
    - POST bookings/<id>/line-items/cancel/    - Cancel some line items
    - POST extensions/<id>/authorize/          - Place an extension hold
    - POST extensions/<id>/approve/            - Capture an extension
    - POST extensions/<id>/reject/             - Reject an extension
    - POST transactions/<intent>/resolve/      - Re-query an unknown capture
    - POST webhooks/stripe/                    - Stripe webhook endpoint

All routes are prefixed with /api/v1/payments/ when included in the main URLconf.
"""

from django.urls import path

from payments import views
from payments.webhooks.views import stripe_webhook

app_name = "payments"

urlpatterns = [
    # Bookings
    path("bookings/<uuid:booking_id>/authorize/", views.BookingAuthorizationView.as_view(), name="booking_authorize"),
    path("bookings/<uuid:booking_id>/approval/", views.BookingApprovalView.as_view(), name="booking_approval"),
    path(
        "bookings/<uuid:booking_id>/cancellation/",
        views.BookingCancellationView.as_view(),
        name="booking_cancellation",
    ),
    path(
        "bookings/<uuid:booking_id>/line-items/cancel/",
        views.LineItemCancellationView.as_view(),
        name="line_item_cancellation",
    ),
    # Extensions & penalties
    path(
        "extensions/<uuid:extension_id>/authorize/",
        views.ExtensionAuthorizationView.as_view(),
        name="extension_authorize",
    ),
    path("extensions/<uuid:extension_id>/approve/", views.ExtensionApprovalView.as_view(), name="extension_approve"),
    path("extensions/<uuid:extension_id>/reject/", views.ExtensionRejectionView.as_view(), name="extension_reject"),
    # Operations
    path(
        "transactions/<str:payment_intent_id>/resolve/",
        views.PendingSettlementResolveView.as_view(),
        name="pending_settlement_resolve",
    ),
    # Webhook endpoints
    path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
]

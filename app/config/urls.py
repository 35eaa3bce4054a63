"""
URL configuration for the settlement service.

URL Structure:
    /                              - ReDoc API documentation
    /admin/                        - Django admin interface
    /health/                       - Health check endpoint (for load balancers, Docker)
    /schema/                       - OpenAPI schema (YAML)
    /api/v1/payments/              - Settlement endpoints
        bookings/{id}/authorize/           - Place the booking hold
        bookings/{id}/approval/            - Manager approval (full or partial capture)
        bookings/{id}/cancellation/        - Cancel booking (release or refund)
        bookings/{id}/line-items/cancel/   - Cancel some line items
        extensions/{id}/authorize/         - Place an extension hold
        extensions/{id}/approve/           - Capture an extension
        extensions/{id}/reject/            - Reject an extension
        transactions/{intent}/resolve/     - Re-query an unknown capture
        webhooks/stripe/                   - Stripe webhook endpoint (POST)
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView

from core.views import health_check

# =============================================================================
# API v1 Routes
# =============================================================================
api_v1_patterns = [
    path("payments/", include("payments.urls")),
]

urlpatterns = [
    # Documentation
    path("", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    path("schema/", SpectacularAPIView.as_view(), name="schema"),
    # Admin
    path("admin/", admin.site.urls),
    # Health check (Docker, Kubernetes, load balancers)
    path("health/", health_check, name="health_check"),
    # API v1
    path("api/v1/", include(api_v1_patterns)),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Settlement Admin"
admin.site.site_title = "Settlement Admin"
admin.site.index_title = "Bookings and payments"

"""
Payments app configuration.

This app provides the settlement side of bookings:
- Ledger of captured, refunded and reconciled amounts per payment intent
- Stripe adapter for holds, captures and refunds with transfer reversal
- Settlement engine and reconciliation listener
- Webhook intake and Celery sweeps
"""

from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    """Configuration for the payments application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "payments"
    verbose_name = "Payments"

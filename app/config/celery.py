"""
Celery configuration for the settlement service.

Celery runs the work that must not block a request:
- Webhook event processing (reconciliation of processor notifications)
- Periodic sweeps (failed webhook retries, stuck webhook cleanup,
  re-query of captures whose outcome is unknown, expiry of stale holds)

Redis serves as both the message broker and result backend. The beat
schedule is stored in django-celery-beat tables (seeded by a payments
migration) and read by the DatabaseScheduler.

Usage:
    # Queue a received webhook event:
    from payments.tasks import process_webhook_event

    process_webhook_event.delay(str(event.id))

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import logging
import os

from celery import Celery

logger = logging.getLogger(__name__)

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Picks up payments/tasks.py
app.autodiscover_tasks()


@app.task(bind=True, ignore_result=True)
def debug_task(self):
    """
    Log the task request to verify worker connectivity.

    Usage:
        from config.celery import debug_task
        debug_task.delay()
    """
    logger.info("Celery debug task", extra={"request_id": self.request.id})

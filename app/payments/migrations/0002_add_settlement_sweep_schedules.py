"""
Add celery-beat schedules for the settlement sweeps.

Creates the periodic tasks that keep settlement moving without a request:
- retry_failed_webhooks: re-queue failed webhook events (every 5 minutes)
- cleanup_stuck_webhooks: fail events stuck in processing (every 15 minutes)
- resolve_pending_settlements: re-query captures with an unknown outcome
  (every 10 minutes)
- expire_stale_authorizations: release holds nobody decided on (hourly)
"""

from django.db import migrations

SWEEPS = [
    {
        "name": "Retry Failed Webhooks",
        "task": "payments.tasks.retry_failed_webhooks",
        "every": 5,
        "description": "Re-queues failed webhook events that have retries left.",
    },
    {
        "name": "Cleanup Stuck Webhooks",
        "task": "payments.tasks.cleanup_stuck_webhooks",
        "every": 15,
        "description": "Marks webhook events stuck in processing as failed.",
    },
    {
        "name": "Resolve Pending Settlements",
        "task": "payments.tasks.resolve_pending_settlements",
        "every": 10,
        "description": (
            "Re-queries the processor for captures whose outcome is unknown "
            "and finalizes them."
        ),
    },
    {
        "name": "Expire Stale Authorizations",
        "task": "payments.tasks.expire_stale_authorizations",
        "every": 60,
        "description": (
            "Releases booking and extension holds older than "
            "AUTHORIZATION_EXPIRY_HOURS that were never decided."
        ),
    },
]


def create_periodic_tasks(apps, schema_editor):
    """Create the settlement sweep schedules."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for sweep in SWEEPS:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=sweep["every"],
            period="minutes",
        )
        PeriodicTask.objects.get_or_create(
            name=sweep["name"],
            defaults={
                "task": sweep["task"],
                "interval": schedule,
                "enabled": True,
                "description": sweep["description"],
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the schedules on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(name__in=[sweep["name"] for sweep in SWEEPS]).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("payments", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]

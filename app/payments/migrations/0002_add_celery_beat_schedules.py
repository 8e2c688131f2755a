"""
Add Celery Beat schedules for the payments engine.

This migration creates periodic task schedules for:
- Subscription billing (hourly scan for due and lapsed subscriptions)
- Reconciliation of transactions stuck in PROCESSING (every 10 minutes)
"""

import json

from django.db import migrations

TASK_NAMES = [
    "Payments: Bill Due Subscriptions",
    "Payments: Reconcile Processing Transactions",
]


def create_periodic_tasks(apps, schema_editor):
    """Create periodic tasks for billing and reconciliation."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    CrontabSchedule = apps.get_model("django_celery_beat", "CrontabSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    # Every 10 minutes
    schedule_10min, _ = IntervalSchedule.objects.get_or_create(
        every=10,
        period="minutes",
    )

    # Hourly, on the hour
    crontab_hourly, _ = CrontabSchedule.objects.get_or_create(
        minute="0",
        hour="*",
        day_of_week="*",
        day_of_month="*",
        month_of_year="*",
    )

    PeriodicTask.objects.get_or_create(
        name="Payments: Bill Due Subscriptions",
        defaults={
            "task": "payments.workers.billing_scheduler.bill_due_subscriptions",
            "crontab": crontab_hourly,
            "enabled": True,
            "description": (
                "Expires lapsed subscriptions and queues billing for every "
                "fleet subscription whose next billing date has passed."
            ),
        },
    )

    PeriodicTask.objects.get_or_create(
        name="Payments: Reconcile Processing Transactions",
        defaults={
            "task": "payments.workers.reconciliation_worker.reconcile_processing_transactions",
            "interval": schedule_10min,
            "kwargs": json.dumps({"grace_minutes": 5}),
            "enabled": True,
            "description": (
                "Asks the gateway for the outcome of transactions left "
                "PROCESSING by timeouts and checks wallet balances."
            ),
        },
    )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the payments periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")
    PeriodicTask.objects.filter(name__in=TASK_NAMES).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("payments", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]

"""
Celery configuration for the payments engine.

The engine itself holds no timers. Everything time-driven runs as a Celery
task scheduled by celery-beat:
- Billing scheduler: bills subscriptions whose next_billing_date has passed
- Reconciliation: resolves transactions left PROCESSING by gateway timeouts

Redis is both the message broker and result backend. Tasks are
auto-discovered from installed apps (payments.workers is imported by
payments.tasks).

Usage:
    from payments.workers.billing_scheduler import bill_due_subscriptions

    bill_due_subscriptions.delay()

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()

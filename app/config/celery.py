"""
Celery configuration for the escrow settlement service.

Celery runs the asynchronous side of settlement:
- Processing stored Stripe webhook events through the reconciliation listener
- Re-submitting payouts and refunds whose processor call timed out
- Periodic jobs (webhook retries, unreconcilable event replay, ledger audit)

Redis is both the message broker and result backend. Periodic schedules
live in the database (django-celery-beat) and are registered by the
escrow migrations.

Usage:
    from escrow.tasks import process_webhook_event

    process_webhook_event.delay(str(webhook_event.id))
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Picks up escrow.tasks
app.autodiscover_tasks()

"""
Register the escrow periodic tasks with celery-beat.

Webhook retries, stuck-webhook cleanup, stale submission re-submission,
unreconcilable event replay and the ledger audit.
"""

from django.db import migrations

PERIODIC_TASKS = [
    {
        "name": "Retry Failed Escrow Webhooks",
        "task": "escrow.tasks.retry_failed_webhooks",
        "every": 5,
        "period": "minutes",
        "description": "Re-queues FAILED webhook events that have retries left.",
    },
    {
        "name": "Reset Stuck Escrow Webhooks",
        "task": "escrow.tasks.cleanup_stuck_webhooks",
        "every": 15,
        "period": "minutes",
        "description": "Resets webhook events stuck in PROCESSING so they are retried.",
    },
    {
        "name": "Resubmit Stale Payouts and Refunds",
        "task": "escrow.tasks.resubmit_stale_submissions",
        "every": 10,
        "period": "minutes",
        "description": "Re-submits payouts and refunds the processor never acknowledged.",
    },
    {
        "name": "Replay Unreconcilable Events",
        "task": "escrow.tasks.replay_unreconcilable_events",
        "every": 5,
        "period": "minutes",
        "description": "Replays recent events whose processor reference was unknown.",
    },
    {
        "name": "Verify Escrow Ledger Balances",
        "task": "escrow.tasks.verify_ledger_balances",
        "every": 1,
        "period": "hours",
        "description": "Audits the ledger of recently active escrows.",
    },
]


def create_periodic_tasks(apps, schema_editor):
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for periodic in PERIODIC_TASKS:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=periodic["every"],
            period=periodic["period"],
        )
        PeriodicTask.objects.get_or_create(
            name=periodic["name"],
            defaults={
                "task": periodic["task"],
                "interval": schedule,
                "enabled": True,
                "description": periodic["description"],
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(name__in=[periodic["name"] for periodic in PERIODIC_TASKS]).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("escrow", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]

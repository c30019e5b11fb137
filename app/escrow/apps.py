"""
Escrow app configuration.

This app provides the milestone settlement core:
- Escrow, Payout and Refund state machines (django-fsm)
- Append-only double-entry ledger
- Stripe integration behind an injectable processor adapter
- Webhook-driven reconciliation
"""

from django.apps import AppConfig


class EscrowConfig(AppConfig):
    """Configuration for the escrow application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "escrow"
    verbose_name = "Escrow"

    def ready(self):
        # Populate the webhook handler registry
        from escrow.webhooks import handlers  # noqa: F401

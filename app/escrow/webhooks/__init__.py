"""
Webhook handling for processor events from Stripe.

Webhooks are verified, stored idempotently, and processed asynchronously
via Celery tasks, which hand them to the reconciliation listener.
"""

from escrow.webhooks.handlers import dispatch_webhook, register_handler
from escrow.webhooks.views import stripe_webhook, webhook_health

__all__ = [
    "dispatch_webhook",
    "register_handler",
    "stripe_webhook",
    "webhook_health",
]

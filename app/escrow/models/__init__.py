"""
Escrow domain models.

- Escrow: Funds held against a milestone
- Payout: Release of captured funds to the payee
- Refund: Return of funds to the payer
- WebhookEvent: Stripe webhook intake for idempotent processing
- UnreconcilableEvent: Review queue for confirmations that could not be applied
- LedgerAccount / LedgerEntry: Re-exported from escrow.ledger so
  migrations discover them
"""

from escrow.ledger.models import LedgerAccount, LedgerEntry
from escrow.models.escrow import Escrow
from escrow.models.payout import Payout
from escrow.models.refund import Refund
from escrow.models.unreconcilable_event import UnreconcilableEvent
from escrow.models.webhook_event import WebhookEvent

__all__ = [
    "Escrow",
    "LedgerAccount",
    "LedgerEntry",
    "Payout",
    "Refund",
    "UnreconcilableEvent",
    "WebhookEvent",
]

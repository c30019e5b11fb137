"""
State machine enums for escrow models.

This module defines the state enums used by escrow models with django-fsm.
"""

from escrow.state_machines.states import (
    TERMINAL_ESCROW_STATES,
    DiscrepancyResolution,
    EscrowState,
    PayoutState,
    RefundState,
    UnreconcilableReason,
    WebhookEventStatus,
)

__all__ = [
    "DiscrepancyResolution",
    "EscrowState",
    "PayoutState",
    "RefundState",
    "TERMINAL_ESCROW_STATES",
    "UnreconcilableReason",
    "WebhookEventStatus",
]

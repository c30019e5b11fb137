"""
State enums for escrow models.

This module defines all state enums used by escrow models with django-fsm.
These are Django TextChoices for database storage and admin integration.

State Machines Overview:

Escrow States:
    pending → funded → captured → released
    pending → cancelled
    funded/captured → partially_refunded → refunded
    partially_refunded → captured (refund taken before capture)
    partially_refunded → released (remainder paid out after capture)

Payout States:
    pending → in_transit → paid
    pending/in_transit → failed

Refund States:
    pending → succeeded
    pending → failed
"""

from django.db import models


class EscrowState(models.TextChoices):
    """
    States for the Escrow model lifecycle.

    Terminal states: RELEASED, CANCELLED, REFUNDED

    State Flow:
        PENDING → FUNDED → CAPTURED → RELEASED

    Cancellation Flow:
        PENDING → CANCELLED (no funds moved)

    Refund Flow:
        FUNDED/CAPTURED → PARTIALLY_REFUNDED → REFUNDED
        FUNDED/CAPTURED → REFUNDED
    """

    PENDING = "pending", "Pending"
    FUNDED = "funded", "Funded"
    CAPTURED = "captured", "Captured"
    RELEASED = "released", "Released"
    CANCELLED = "cancelled", "Cancelled"
    REFUNDED = "refunded", "Refunded"
    PARTIALLY_REFUNDED = "partially_refunded", "Partially Refunded"


# Escrows in these states no longer occupy their milestone
INACTIVE_ESCROW_STATES = [EscrowState.CANCELLED, EscrowState.REFUNDED]

TERMINAL_ESCROW_STATES = [
    EscrowState.RELEASED,
    EscrowState.CANCELLED,
    EscrowState.REFUNDED,
]


class PayoutState(models.TextChoices):
    """
    States for the Payout model lifecycle.

    Terminal states: PAID, FAILED

    State Flow:
        PENDING → IN_TRANSIT → PAID
        PENDING → FAILED (processor rejected the transfer)
        IN_TRANSIT → FAILED (transfer_failed confirmation)
        PENDING → PAID (confirmation arrived before the transfer id was stored)

    A FAILED payout leaves its escrow CAPTURED; a fresh payout
    can be initiated for the same escrow.
    """

    PENDING = "pending", "Pending"
    IN_TRANSIT = "in_transit", "In Transit"
    PAID = "paid", "Paid"
    FAILED = "failed", "Failed"


# Payouts that reserve (or have consumed) the captured funds of an escrow
OPEN_PAYOUT_STATES = [PayoutState.PENDING, PayoutState.IN_TRANSIT, PayoutState.PAID]


class RefundState(models.TextChoices):
    """
    States for the Refund model lifecycle.

    Terminal states: SUCCEEDED, FAILED

    State Flow:
        PENDING → SUCCEEDED
        PENDING → FAILED
    """

    PENDING = "pending", "Pending"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"


class WebhookEventStatus(models.TextChoices):
    """
    Processing status for WebhookEvent.

    State Flow:
        PENDING → PROCESSING → PROCESSED
        PENDING → PROCESSING → FAILED (can retry)
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"


class UnreconcilableReason(models.TextChoices):
    """Why a confirmation event could not be applied."""

    UNKNOWN_REFERENCE = "unknown_reference", "Unknown Reference"
    MALFORMED_EVENT = "malformed_event", "Malformed Event"
    REFERENCE_MISMATCH = "reference_mismatch", "Reference Mismatch"
    AMOUNT_MISMATCH = "amount_mismatch", "Amount Mismatch"
    CONFLICTING_OUTCOME = "conflicting_outcome", "Conflicting Outcome"


class DiscrepancyResolution(models.TextChoices):
    """How an unreconcilable event was resolved."""

    FLAGGED_FOR_REVIEW = "flagged_for_review", "Flagged for Review"
    AUTO_RESOLVED = "auto_resolved", "Auto Resolved"
    MANUALLY_RESOLVED = "manually_resolved", "Manually Resolved"


__all__ = [
    "EscrowState",
    "INACTIVE_ESCROW_STATES",
    "TERMINAL_ESCROW_STATES",
    "PayoutState",
    "OPEN_PAYOUT_STATES",
    "RefundState",
    "WebhookEventStatus",
    "UnreconcilableReason",
    "DiscrepancyResolution",
]

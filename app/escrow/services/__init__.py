"""
Escrow services for the milestone fund lifecycle.

This module provides:
- EscrowService: create, fund, cancel and capture escrows
- PayoutService: release captured funds to the payee
- RefundService: return funds to the payer
- ReconciliationListener: apply processor confirmations

Usage:
    from escrow.services import EscrowService, PayoutService

    escrow = EscrowService.create_escrow(milestone_id=42, amount_cents=10000)
    # ... payment_succeeded confirmation arrives ...
    escrow = EscrowService.capture(escrow.id)
    payout = PayoutService.initiate_payout(escrow.id, "acct_1")
"""

from escrow.services.escrow_service import EscrowService, calculate_platform_fee
from escrow.services.payout_service import PayoutService
from escrow.services.reconciliation_listener import (
    ReconciliationListener,
    ReconciliationOutcome,
    ReconciliationResult,
)
from escrow.services.refund_service import RefundService

__all__ = [
    "EscrowService",
    "PayoutService",
    "ReconciliationListener",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "RefundService",
    "calculate_platform_fee",
]

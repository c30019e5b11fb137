"""
Ledger - append-only double-entry record of escrow fund movement.

Public API:
    Models:
        LedgerAccount - Holds monetary value (payer, escrow, payee, revenue)
        LedgerEntry - Immutable movement between two accounts
        AccountType - Enum of account categories
        EntryType - FUND, CAPTURE, PAYOUT, REFUND, FEE

    Service:
        ledger - Singleton instance of LedgerService
        LedgerService - Class with all ledger operations

    Types:
        Money, RecordEntryParams, EscrowBalance

    Exceptions:
        LedgerError, AccountNotFound, InsufficientBalance, InactiveAccount,
        LedgerImmutableError, LedgerImbalanceError

Usage:
    from escrow.ledger import ledger

    ledger.record_fund(escrow.id, escrow.amount_cents, escrow.currency)
    ledger.verify_escrow_balance(escrow.id, escrow.currency)
"""

from .exceptions import (
    AccountNotFound,
    InactiveAccount,
    InsufficientBalance,
    LedgerError,
    LedgerImbalanceError,
    LedgerImmutableError,
)
from .models import AccountType, EntryType, LedgerAccount, LedgerEntry
from .services import LedgerService, ledger
from .types import EscrowBalance, Money, RecordEntryParams

__all__ = [
    # Models
    "LedgerAccount",
    "LedgerEntry",
    "AccountType",
    "EntryType",
    # Service
    "ledger",
    "LedgerService",
    # Types
    "EscrowBalance",
    "Money",
    "RecordEntryParams",
    # Exceptions
    "LedgerError",
    "AccountNotFound",
    "InsufficientBalance",
    "InactiveAccount",
    "LedgerImmutableError",
    "LedgerImbalanceError",
]

"""
Ledger-specific exceptions.

Exception Hierarchy:
    LedgerError (base)
    ├── AccountNotFound - Account lookup failures
    ├── InsufficientBalance - Debit larger than the account balance
    ├── InactiveAccount - Operations on inactive accounts
    ├── LedgerImmutableError - Attempt to change or remove a recorded entry
    └── LedgerImbalanceError - Escrow ledger does not reconcile

Usage:
    from escrow.ledger.exceptions import InsufficientBalance

    if balance < amount:
        raise InsufficientBalance(account.id, required=amount, available=balance)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError, ConflictError

if TYPE_CHECKING:
    import uuid
    from typing import Any


class LedgerError(BaseApplicationError):
    """Base exception for all ledger operations."""

    default_error_code: str = "LEDGER_ERROR"


class AccountNotFound(LedgerError):
    """
    Raised when a ledger account cannot be found.

    Example:
        raise AccountNotFound(
            f"Account {account_id} not found",
            details={"account_id": str(account_id)},
        )
    """

    default_error_code: str = "ACCOUNT_NOT_FOUND"


class InsufficientBalance(LedgerError):
    """
    Raised when a debit would take a non-negative account below zero.

    Attributes:
        account_id: The UUID of the account with insufficient funds
        required: The amount (in cents) that was required
        available: The amount (in cents) that was available
    """

    default_error_code: str = "INSUFFICIENT_BALANCE"

    def __init__(
        self,
        account_id: uuid.UUID,
        required: int,
        available: int,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.account_id = account_id
        self.required = required
        self.available = available

        message = (
            f"Account {account_id} has insufficient balance: "
            f"required {required} cents, available {available} cents"
        )

        full_details = {
            "account_id": str(account_id),
            "required_cents": required,
            "available_cents": available,
        }
        if details:
            full_details.update(details)

        super().__init__(message=message, error_code=error_code, details=full_details)


class InactiveAccount(LedgerError):
    """Raised when attempting to post to an inactive account."""

    default_error_code: str = "INACTIVE_ACCOUNT"


class LedgerImmutableError(LedgerError, ConflictError):
    """
    Raised on any attempt to modify or delete a recorded ledger entry.

    Entries are append-only. Corrections are new entries.
    """

    default_error_code: str = "LEDGER_IMMUTABLE"


class LedgerImbalanceError(LedgerError):
    """
    Raised when an escrow's ledger entries do not reconcile.

    details carries the computed EscrowBalance figures.
    """

    default_error_code: str = "LEDGER_IMBALANCE"

"""
Data types for ledger operations.

Types:
    Money: A monetary amount in cents with currency
    RecordEntryParams: Parameters for recording a ledger entry
    EscrowBalance: Per-escrow totals derived from ledger entries
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class Money:
    """
    A monetary amount in the smallest currency unit.

    Example:
        amount = Money(cents=5000, currency="usd")
        print(amount)  # "$50.00 USD"
    """

    cents: int
    currency: str = "usd"

    def __str__(self) -> str:
        return f"${self.cents / 100:.2f} {self.currency.upper()}"

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot add Money with different currencies: "
                f"{self.currency} and {other.currency}"
            )
        return Money(cents=self.cents + other.cents, currency=self.currency)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot subtract Money with different currencies: "
                f"{self.currency} and {other.currency}"
            )
        return Money(cents=self.cents - other.cents, currency=self.currency)


@dataclass
class RecordEntryParams:
    """
    Parameters for recording one ledger entry.

    Every entry debits one account (source) and credits another
    (destination) by a positive amount.

    Example:
        params = RecordEntryParams(
            debit_account_id=payer.id,
            credit_account_id=held.id,
            amount_cents=10000,
            entry_type=EntryType.FUND,
            idempotency_key=f"fund:{escrow.id}",
            escrow_id=escrow.id,
        )
    """

    debit_account_id: uuid.UUID
    credit_account_id: uuid.UUID
    amount_cents: int
    entry_type: str
    idempotency_key: str

    escrow_id: uuid.UUID | None = None
    reference_id: uuid.UUID | None = None
    reference_type: str | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = field(default_factory=dict)
    created_by: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.amount_cents, int) or isinstance(self.amount_cents, bool):
            raise ValueError("amount_cents must be an integer")
        if self.amount_cents <= 0:
            raise ValueError("amount_cents must be positive")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")
        if self.debit_account_id == self.credit_account_id:
            raise ValueError("debit_account_id and credit_account_id must be different")


@dataclass(frozen=True)
class EscrowBalance:
    """
    Totals for one escrow, derived from its ledger entries.

    Attributes:
        funded: Sum of FUND entries
        captured: Sum of CAPTURE entries
        refunded_from_held: REFUND entries taken from uncaptured funds
        refunded_from_capture: REFUND entries taken from captured funds
        paid_out: Sum of PAYOUT entries
        fees: Sum of FEE entries
        held: Current balance of the escrow's held account
        pending_disbursement: Current balance of the escrow's captured account
    """

    escrow_id: uuid.UUID
    currency: str = "usd"
    funded: int = 0
    captured: int = 0
    refunded_from_held: int = 0
    refunded_from_capture: int = 0
    paid_out: int = 0
    fees: int = 0
    held: int = 0
    pending_disbursement: int = 0

    @property
    def refunded(self) -> int:
        return self.refunded_from_held + self.refunded_from_capture

    @property
    def disbursed(self) -> int:
        """Money that has left the escrow for good (refunds, payout, fee)."""
        return self.refunded + self.paid_out + self.fees

    @property
    def is_balanced(self) -> bool:
        """
        Both escrow accounts reconcile with the entries that moved
        money through them, and neither is negative.
        """
        return (
            self.held >= 0
            and self.pending_disbursement >= 0
            and self.funded == self.captured + self.refunded_from_held + self.held
            and self.captured
            == self.paid_out + self.fees + self.refunded_from_capture + self.pending_disbursement
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["escrow_id"] = str(self.escrow_id)
        data["refunded"] = self.refunded
        data["is_balanced"] = self.is_balanced
        return data

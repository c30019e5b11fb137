"""
Ledger models for double-entry bookkeeping of escrow funds.

- LedgerAccount: a bucket of money (payer, escrow held/captured, payee, revenue)
- LedgerEntry: an immutable movement between two accounts

Every entry debits one account and credits another, so the sum of all
balances is always zero. Entries are append-only: they can be created
but never updated or deleted.

Usage:
    from escrow.ledger.models import AccountType, LedgerAccount

    held = LedgerAccount.objects.get(
        type=AccountType.ESCROW_HELD,
        owner_ref=str(escrow.id),
        currency="usd",
    )
    held.get_balance()  # cents
"""

from __future__ import annotations

from django.db import models
from django.db.models import Case, Q, Sum, Value, When
from django.db.models.functions import Coalesce

from core.model_mixins import UUIDPrimaryKeyMixin

from .exceptions import LedgerImmutableError


PLATFORM_OWNER_REF = "platform"


class AccountType(models.TextChoices):
    """
    Types of ledger accounts.

    Values:
        PAYER: The paying party of one escrow (outside world, may go negative)
        ESCROW_HELD: Funds authorized for an escrow but not yet captured
        ESCROW_CAPTURED: Captured funds awaiting payout or refund
        PAYEE: A payee's destination account
        PLATFORM_REVENUE: Platform fees
    """

    PAYER = "payer", "Payer"
    ESCROW_HELD = "escrow_held", "Escrow Held"
    ESCROW_CAPTURED = "escrow_captured", "Escrow Captured"
    PAYEE = "payee", "Payee"
    PLATFORM_REVENUE = "platform_revenue", "Platform Revenue"


class EntryType(models.TextChoices):
    """
    Types of ledger entries.

    Values:
        FUND: Payer -> escrow held (funding confirmed)
        CAPTURE: Escrow held -> escrow captured
        PAYOUT: Escrow captured -> payee (net of fee)
        FEE: Escrow captured -> platform revenue
        REFUND: Escrow held or captured -> payer
    """

    FUND = "fund", "Fund"
    CAPTURE = "capture", "Capture"
    PAYOUT = "payout", "Payout"
    REFUND = "refund", "Refund"
    FEE = "fee", "Fee"


class LedgerAccount(UUIDPrimaryKeyMixin, models.Model):
    """
    A ledger account that holds monetary value.

    The balance is computed from entries: credits minus debits.

    Fields:
        type: Account category
        owner_ref: Escrow id, payee destination id, or "platform"
        currency: ISO 4217 currency code
        allow_negative: Whether the balance may go below zero
        is_active: Whether new entries may be posted
        created_at: Timestamp when account was created

    Constraints:
        - Unique combination of (type, owner_ref, currency)
    """

    type = models.CharField(
        max_length=50,
        choices=AccountType.choices,
        help_text="Category of this account",
    )
    owner_ref = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Reference of the entity owning this account (escrow id, payee account, 'platform')",
    )
    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code",
    )
    allow_negative = models.BooleanField(
        default=False,
        help_text="Whether this account can have a negative balance",
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether this account is active",
    )
    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="Timestamp when this account was created",
    )

    class Meta:
        verbose_name = "Ledger Account"
        verbose_name_plural = "Ledger Accounts"
        constraints = [
            models.UniqueConstraint(
                fields=["type", "owner_ref", "currency"],
                name="unique_ledger_account_per_owner",
            )
        ]
        indexes = [
            models.Index(fields=["type", "currency"], name="ledger_acct_type_currency_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.get_type_display()} ({self.owner_ref})"

    def get_balance(self) -> int:
        """
        Compute current balance (credits minus debits) in cents.

        Performs one aggregate query over the account's entries.
        """
        result = LedgerEntry.objects.filter(
            Q(credit_account=self) | Q(debit_account=self)
        ).aggregate(
            credits=Coalesce(
                Sum(
                    Case(
                        When(credit_account=self, then="amount_cents"),
                        default=Value(0),
                        output_field=models.BigIntegerField(),
                    )
                ),
                Value(0),
                output_field=models.BigIntegerField(),
            ),
            debits=Coalesce(
                Sum(
                    Case(
                        When(debit_account=self, then="amount_cents"),
                        default=Value(0),
                        output_field=models.BigIntegerField(),
                    )
                ),
                Value(0),
                output_field=models.BigIntegerField(),
            ),
        )
        return result["credits"] - result["debits"]


class LedgerEntryQuerySet(models.QuerySet):
    """QuerySet that refuses bulk mutation of recorded entries."""

    def update(self, **kwargs):
        raise LedgerImmutableError("Ledger entries cannot be updated")

    def delete(self):
        raise LedgerImmutableError("Ledger entries cannot be deleted")


class LedgerEntry(UUIDPrimaryKeyMixin, models.Model):
    """
    An immutable movement of money between two ledger accounts.

    Fields:
        created_at: Timestamp when entry was recorded
        debit_account: Source account (money out)
        credit_account: Destination account (money in)
        amount_cents: Amount in cents (always positive)
        currency: ISO 4217 currency code
        entry_type: FUND, CAPTURE, PAYOUT, REFUND or FEE
        escrow: Escrow whose funds moved
        reference_id / reference_type: Escrow, payout or refund that caused it
        idempotency_key: Derived from the transition; unique
        description, metadata, created_by: Audit context

    Constraints:
        - amount_cents must be positive
        - idempotency_key must be unique
    """

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="Timestamp when this entry was recorded",
    )

    debit_account = models.ForeignKey(
        LedgerAccount,
        on_delete=models.PROTECT,
        related_name="debit_entries",
        help_text="Account money is taken from",
    )
    credit_account = models.ForeignKey(
        LedgerAccount,
        on_delete=models.PROTECT,
        related_name="credit_entries",
        help_text="Account money is added to",
    )
    amount_cents = models.PositiveBigIntegerField(
        help_text="Amount in cents (always positive)",
    )
    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code",
    )

    entry_type = models.CharField(
        max_length=50,
        choices=EntryType.choices,
        help_text="Category of this entry",
    )
    escrow = models.ForeignKey(
        "escrow.Escrow",
        on_delete=models.PROTECT,
        related_name="ledger_entries",
        null=True,
        blank=True,
        help_text="Escrow whose funds this entry moves",
    )
    reference_id = models.UUIDField(
        null=True,
        blank=True,
        help_text="UUID of the escrow, payout or refund that caused this entry",
    )
    reference_type = models.CharField(
        max_length=50,
        null=True,
        blank=True,
        help_text="Type of related entity ('escrow', 'payout', 'refund')",
    )

    description = models.TextField(
        null=True,
        blank=True,
        help_text="Human-readable description of this entry",
    )
    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Arbitrary JSON data for extensibility",
    )

    created_by = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Identifier of service that created this entry",
    )
    idempotency_key = models.CharField(
        max_length=255,
        unique=True,
        help_text="Unique key derived from the transition that wrote this entry",
    )

    objects = LedgerEntryQuerySet.as_manager()

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Ledger Entry"
        verbose_name_plural = "Ledger Entries"
        indexes = [
            models.Index(fields=["reference_type", "reference_id"], name="ledger_entry_reference_idx"),
            models.Index(fields=["escrow", "entry_type"], name="ledger_entry_escrow_type_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount_cents__gt=0),
                name="ledger_entry_amount_cents_positive",
            )
        ]

    def __str__(self) -> str:
        return f"{self.get_entry_type_display()}: {self.amount_cents} cents"

    def save(self, *args, **kwargs):
        """Insert only. Saving an already recorded entry raises."""
        if not self._state.adding:
            raise LedgerImmutableError(
                f"Ledger entry {self.pk} cannot be modified",
                details={"entry_id": str(self.pk)},
            )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise LedgerImmutableError(
            f"Ledger entry {self.pk} cannot be deleted",
            details={"entry_id": str(self.pk)},
        )

    @property
    def source_ref(self) -> str:
        return self.debit_account.owner_ref

    @property
    def dest_ref(self) -> str:
        return self.credit_account.owner_ref

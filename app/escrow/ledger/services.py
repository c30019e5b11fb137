"""
Ledger service layer.

All ledger writes go through LedgerService. The generic record_entries()
handles locking, idempotency and balance checks; the escrow posting
helpers (record_fund, record_capture, record_payout, record_refund)
place each entry on the right pair of accounts with an idempotency key
derived from the transition that caused it.

The posting helpers must be called inside the same transaction.atomic()
block as the state transition they record.

Usage:
    from escrow.ledger.services import ledger

    with transaction.atomic():
        escrow.confirm_funding(intent_id)
        escrow.save()
        ledger.record_fund(escrow.id, escrow.amount_cents, escrow.currency)

    balance = ledger.get_escrow_balance(escrow.id)
    assert balance.is_balanced
"""

from __future__ import annotations

import logging
import uuid

from django.db import IntegrityError, transaction
from django.db.models import Q, Sum, Value
from django.db.models.functions import Coalesce

from .exceptions import (
    AccountNotFound,
    InactiveAccount,
    InsufficientBalance,
    LedgerImbalanceError,
)
from .models import PLATFORM_OWNER_REF, AccountType, EntryType, LedgerAccount, LedgerEntry
from .types import EscrowBalance, Money, RecordEntryParams

logger = logging.getLogger(__name__)


class LedgerService:
    """
    Service class for ledger operations.

    Key features:
    - Atomic transactions for multi-entry operations
    - Idempotency via unique keys (safe to retry)
    - Balance validation before debits
    - Account locking in id order

    All methods are static - no instance state is maintained.
    """

    # =========================================================================
    # Accounts
    # =========================================================================

    @staticmethod
    def get_or_create_account(
        account_type: AccountType | str,
        owner_ref: str,
        currency: str = "usd",
        allow_negative: bool = False,
    ) -> LedgerAccount:
        """Get the (type, owner_ref, currency) account, creating it if needed."""
        account, _ = LedgerAccount.objects.get_or_create(
            type=account_type,
            owner_ref=str(owner_ref),
            currency=currency,
            defaults={"allow_negative": allow_negative},
        )
        return account

    @staticmethod
    def get_account(account_id: uuid.UUID) -> LedgerAccount:
        """
        Get account by ID.

        Raises:
            AccountNotFound: If account doesn't exist
        """
        try:
            return LedgerAccount.objects.get(id=account_id)
        except LedgerAccount.DoesNotExist:
            raise AccountNotFound(
                f"Account {account_id} not found",
                details={"account_id": str(account_id)},
            )

    @staticmethod
    def find_account(
        account_type: AccountType | str,
        owner_ref: str,
        currency: str = "usd",
    ) -> LedgerAccount | None:
        return LedgerAccount.objects.filter(
            type=account_type,
            owner_ref=str(owner_ref),
            currency=currency,
        ).first()

    @staticmethod
    def escrow_accounts(
        escrow_id: uuid.UUID, currency: str
    ) -> tuple[LedgerAccount, LedgerAccount, LedgerAccount]:
        """
        Return the (payer, held, captured) accounts of an escrow.

        The payer account stands for the outside world and may go negative.
        """
        owner_ref = str(escrow_id)
        payer = LedgerService.get_or_create_account(
            AccountType.PAYER, owner_ref, currency, allow_negative=True
        )
        held = LedgerService.get_or_create_account(AccountType.ESCROW_HELD, owner_ref, currency)
        captured = LedgerService.get_or_create_account(
            AccountType.ESCROW_CAPTURED, owner_ref, currency
        )
        return payer, held, captured

    @staticmethod
    def _validate_account_for_debit(account: LedgerAccount, amount_cents: int) -> None:
        if not account.is_active:
            raise InactiveAccount(
                f"Account {account.id} is inactive",
                details={"account_id": str(account.id)},
            )

        if not account.allow_negative:
            current_balance = account.get_balance()
            if current_balance < amount_cents:
                raise InsufficientBalance(
                    account_id=account.id,
                    required=amount_cents,
                    available=current_balance,
                )

    @staticmethod
    def _validate_account_for_credit(account: LedgerAccount) -> None:
        if not account.is_active:
            raise InactiveAccount(
                f"Account {account.id} is inactive",
                details={"account_id": str(account.id)},
            )

    # =========================================================================
    # Generic posting
    # =========================================================================

    @staticmethod
    def record_entry(params: RecordEntryParams) -> LedgerEntry:
        """
        Record a single ledger entry.

        Idempotent: an entry with the same idempotency_key is returned as is.
        """
        return LedgerService.record_entries([params])[0]

    @staticmethod
    def record_entries(entries: list[RecordEntryParams]) -> list[LedgerEntry]:
        """
        Record multiple ledger entries atomically.

        All entries succeed or all fail. Entries are processed in order, so
        earlier entries in the batch count toward balance checks of later ones.

        Raises:
            AccountNotFound: If any account doesn't exist
            InactiveAccount: If any account is inactive
            InsufficientBalance: If any debit account lacks funds
        """
        if not entries:
            return []

        results: list[LedgerEntry] = []

        with transaction.atomic():
            account_ids: set[uuid.UUID] = set()
            for params in entries:
                account_ids.add(params.debit_account_id)
                account_ids.add(params.credit_account_id)

            # Lock in id order so concurrent postings cannot deadlock
            accounts = {
                acc.id: acc
                for acc in LedgerAccount.objects.filter(id__in=account_ids)
                .select_for_update()
                .order_by("id")
            }

            for account_id in account_ids:
                if account_id not in accounts:
                    raise AccountNotFound(
                        f"Account {account_id} not found",
                        details={"account_id": str(account_id)},
                    )

            for params in entries:
                debit_account = accounts[params.debit_account_id]
                credit_account = accounts[params.credit_account_id]

                # Idempotency check must precede the balance check
                existing = LedgerEntry.objects.filter(
                    idempotency_key=params.idempotency_key
                ).first()
                if existing is not None:
                    logger.debug(
                        "Ledger entry already recorded",
                        extra={"idempotency_key": params.idempotency_key},
                    )
                    results.append(existing)
                    continue

                LedgerService._validate_account_for_debit(debit_account, params.amount_cents)
                LedgerService._validate_account_for_credit(credit_account)

                try:
                    with transaction.atomic():
                        entry = LedgerEntry.objects.create(
                            idempotency_key=params.idempotency_key,
                            debit_account=debit_account,
                            credit_account=credit_account,
                            amount_cents=params.amount_cents,
                            currency=debit_account.currency,
                            entry_type=params.entry_type,
                            escrow_id=params.escrow_id,
                            reference_id=params.reference_id,
                            reference_type=params.reference_type,
                            description=params.description,
                            metadata=params.metadata or {},
                            created_by=params.created_by,
                        )
                except IntegrityError:
                    # Another process recorded the same key first
                    entry = LedgerEntry.objects.get(idempotency_key=params.idempotency_key)

                results.append(entry)

        return results

    # =========================================================================
    # Escrow postings
    # =========================================================================

    @staticmethod
    def record_fund(escrow_id: uuid.UUID, amount_cents: int, currency: str) -> LedgerEntry:
        """FUND: payer -> escrow held, full escrow amount."""
        payer, held, _ = LedgerService.escrow_accounts(escrow_id, currency)
        return LedgerService.record_entry(
            RecordEntryParams(
                debit_account_id=payer.id,
                credit_account_id=held.id,
                amount_cents=amount_cents,
                entry_type=EntryType.FUND,
                idempotency_key=f"fund:{escrow_id}",
                escrow_id=escrow_id,
                reference_id=escrow_id,
                reference_type="escrow",
                description="Escrow funded by payer",
                created_by="escrow_service",
            )
        )

    @staticmethod
    def record_capture(escrow_id: uuid.UUID, currency: str) -> LedgerEntry | None:
        """
        CAPTURE: escrow held -> escrow captured, whatever is still held.

        Returns None when nothing is held (everything was refunded before
        capture) and no capture entry exists yet.
        """
        _, held, captured = LedgerService.escrow_accounts(escrow_id, currency)
        idempotency_key = f"capture:{escrow_id}"

        existing = LedgerEntry.objects.filter(idempotency_key=idempotency_key).first()
        if existing is not None:
            return existing

        amount_cents = held.get_balance()
        if amount_cents <= 0:
            return None

        return LedgerService.record_entry(
            RecordEntryParams(
                debit_account_id=held.id,
                credit_account_id=captured.id,
                amount_cents=amount_cents,
                entry_type=EntryType.CAPTURE,
                idempotency_key=idempotency_key,
                escrow_id=escrow_id,
                reference_id=escrow_id,
                reference_type="escrow",
                description="Escrow funds captured",
                created_by="escrow_service",
            )
        )

    @staticmethod
    def record_payout(
        escrow_id: uuid.UUID,
        payout_id: uuid.UUID,
        destination_account_id: str,
        amount_cents: int,
        fee_cents: int,
        currency: str,
    ) -> list[LedgerEntry]:
        """
        PAYOUT: escrow captured -> payee, net amount.
        FEE: escrow captured -> platform revenue, when fee_cents > 0.
        """
        _, _, captured = LedgerService.escrow_accounts(escrow_id, currency)
        payee = LedgerService.get_or_create_account(
            AccountType.PAYEE, destination_account_id, currency
        )

        entries = [
            RecordEntryParams(
                debit_account_id=captured.id,
                credit_account_id=payee.id,
                amount_cents=amount_cents,
                entry_type=EntryType.PAYOUT,
                idempotency_key=f"payout:{payout_id}",
                escrow_id=escrow_id,
                reference_id=payout_id,
                reference_type="payout",
                description="Escrow released to payee",
                created_by="payout_service",
            )
        ]
        if fee_cents > 0:
            revenue = LedgerService.get_or_create_account(
                AccountType.PLATFORM_REVENUE, PLATFORM_OWNER_REF, currency
            )
            entries.append(
                RecordEntryParams(
                    debit_account_id=captured.id,
                    credit_account_id=revenue.id,
                    amount_cents=fee_cents,
                    entry_type=EntryType.FEE,
                    idempotency_key=f"fee:{payout_id}",
                    escrow_id=escrow_id,
                    reference_id=payout_id,
                    reference_type="payout",
                    description="Platform fee",
                    created_by="payout_service",
                )
            )
        return LedgerService.record_entries(entries)

    @staticmethod
    def record_refund(
        escrow_id: uuid.UUID,
        refund_id: uuid.UUID,
        amount_cents: int,
        currency: str,
        from_captured: bool,
    ) -> LedgerEntry:
        """REFUND: escrow held (before capture) or captured (after) -> payer."""
        payer, held, captured = LedgerService.escrow_accounts(escrow_id, currency)
        source = captured if from_captured else held
        return LedgerService.record_entry(
            RecordEntryParams(
                debit_account_id=source.id,
                credit_account_id=payer.id,
                amount_cents=amount_cents,
                entry_type=EntryType.REFUND,
                idempotency_key=f"refund:{refund_id}",
                escrow_id=escrow_id,
                reference_id=refund_id,
                reference_type="refund",
                description="Escrow refunded to payer",
                created_by="refund_service",
            )
        )

    # =========================================================================
    # Queries
    # =========================================================================

    @staticmethod
    def get_balance(account_id: uuid.UUID) -> Money:
        """
        Get current balance for an account.

        Raises:
            AccountNotFound: If account doesn't exist
        """
        account = LedgerService.get_account(account_id)
        return Money(cents=account.get_balance(), currency=account.currency)

    @staticmethod
    def get_entries_for_escrow(escrow_id: uuid.UUID) -> list[LedgerEntry]:
        """All entries of an escrow, oldest first."""
        return list(
            LedgerEntry.objects.filter(escrow_id=escrow_id)
            .select_related("debit_account", "credit_account")
            .order_by("created_at")
        )

    @staticmethod
    def get_escrow_balance(escrow_id: uuid.UUID, currency: str = "usd") -> EscrowBalance:
        """Compute per-escrow totals from the ledger."""

        def total(condition: Q):
            return Coalesce(Sum("amount_cents", filter=condition), Value(0))

        totals = LedgerEntry.objects.filter(escrow_id=escrow_id).aggregate(
            funded=total(Q(entry_type=EntryType.FUND)),
            captured=total(Q(entry_type=EntryType.CAPTURE)),
            refunded_from_held=total(
                Q(entry_type=EntryType.REFUND, debit_account__type=AccountType.ESCROW_HELD)
            ),
            refunded_from_capture=total(
                Q(entry_type=EntryType.REFUND, debit_account__type=AccountType.ESCROW_CAPTURED)
            ),
            paid_out=total(Q(entry_type=EntryType.PAYOUT)),
            fees=total(Q(entry_type=EntryType.FEE)),
        )

        held = LedgerService.find_account(AccountType.ESCROW_HELD, escrow_id, currency)
        captured = LedgerService.find_account(AccountType.ESCROW_CAPTURED, escrow_id, currency)

        return EscrowBalance(
            escrow_id=escrow_id,
            currency=currency,
            held=held.get_balance() if held else 0,
            pending_disbursement=captured.get_balance() if captured else 0,
            **totals,
        )

    @staticmethod
    def verify_escrow_balance(escrow_id: uuid.UUID, currency: str = "usd") -> EscrowBalance:
        """
        Check that an escrow's ledger reconciles.

        Raises:
            LedgerImbalanceError: If the totals do not balance
        """
        balance = LedgerService.get_escrow_balance(escrow_id, currency)
        if not balance.is_balanced:
            logger.error(
                "Escrow ledger imbalance detected",
                extra=balance.to_dict(),
            )
            raise LedgerImbalanceError(
                f"Ledger for escrow {escrow_id} does not balance",
                details=balance.to_dict(),
            )
        return balance


ledger = LedgerService()

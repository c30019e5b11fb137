"""
Tests for ledger models and value types.

Covers append-only enforcement on LedgerEntry, balance computation on
LedgerAccount, and the RecordEntryParams / EscrowBalance types.
"""

import uuid

import pytest
from django.db import IntegrityError, transaction

from escrow.ledger.exceptions import LedgerImmutableError
from escrow.ledger.models import AccountType, EntryType, LedgerEntry
from escrow.ledger.tests.factories import LedgerAccountFactory, LedgerEntryFactory
from escrow.ledger.types import EscrowBalance, Money, RecordEntryParams


class TestLedgerEntryImmutability:
    """Entries can be created but never changed or removed."""

    def test_save_existing_entry_raises(self, payer_account, held_account):
        entry = LedgerEntryFactory(debit_account=payer_account, credit_account=held_account)

        entry.amount_cents = 1
        with pytest.raises(LedgerImmutableError):
            entry.save()

        assert LedgerEntry.objects.get(id=entry.id).amount_cents == 1000

    def test_delete_entry_raises(self, payer_account, held_account):
        entry = LedgerEntryFactory(debit_account=payer_account, credit_account=held_account)

        with pytest.raises(LedgerImmutableError):
            entry.delete()

        assert LedgerEntry.objects.filter(id=entry.id).exists()

    def test_queryset_update_raises(self, payer_account, held_account):
        LedgerEntryFactory(debit_account=payer_account, credit_account=held_account)

        with pytest.raises(LedgerImmutableError):
            LedgerEntry.objects.filter(debit_account=payer_account).update(amount_cents=1)

    def test_queryset_delete_raises(self, payer_account, held_account):
        LedgerEntryFactory(debit_account=payer_account, credit_account=held_account)

        with pytest.raises(LedgerImmutableError):
            LedgerEntry.objects.all().delete()

        assert LedgerEntry.objects.count() == 1

    def test_immutable_error_is_conflict(self):
        from core.exceptions import ConflictError

        assert issubclass(LedgerImmutableError, ConflictError)

    def test_amount_must_be_positive(self, payer_account, held_account):
        with pytest.raises(IntegrityError):
            with transaction.atomic():
                LedgerEntryFactory(
                    debit_account=payer_account,
                    credit_account=held_account,
                    amount_cents=0,
                )

    def test_idempotency_key_unique(self, payer_account, held_account):
        LedgerEntryFactory(
            debit_account=payer_account, credit_account=held_account, idempotency_key="k1"
        )

        with pytest.raises(IntegrityError):
            with transaction.atomic():
                LedgerEntryFactory(
                    debit_account=payer_account,
                    credit_account=held_account,
                    idempotency_key="k1",
                )

    def test_source_and_dest_refs(self, payer_account, payee_account):
        entry = LedgerEntryFactory(
            debit_account=payer_account,
            credit_account=payee_account,
            entry_type=EntryType.PAYOUT,
        )

        assert entry.source_ref == payer_account.owner_ref
        assert entry.dest_ref == "acct_1"


class TestLedgerAccountBalance:
    """Balance is credits minus debits."""

    def test_new_account_has_zero_balance(self, held_account):
        assert held_account.get_balance() == 0

    def test_balance_from_entries(self, payer_account, held_account, payee_account):
        LedgerEntryFactory(
            debit_account=payer_account, credit_account=held_account, amount_cents=10000
        )
        LedgerEntryFactory(
            debit_account=held_account, credit_account=payee_account, amount_cents=2500
        )

        assert held_account.get_balance() == 7500
        assert payer_account.get_balance() == -10000
        assert payee_account.get_balance() == 2500

    def test_unique_account_per_owner_and_currency(self, db):
        LedgerAccountFactory(type=AccountType.PAYEE, owner_ref="acct_x", currency="usd")
        LedgerAccountFactory(type=AccountType.PAYEE, owner_ref="acct_x", currency="eur")

        with pytest.raises(IntegrityError):
            with transaction.atomic():
                LedgerAccountFactory(type=AccountType.PAYEE, owner_ref="acct_x", currency="usd")


class TestRecordEntryParams:
    """Validation on construction."""

    def _params(self, **overrides):
        defaults = {
            "debit_account_id": uuid.uuid4(),
            "credit_account_id": uuid.uuid4(),
            "amount_cents": 100,
            "entry_type": EntryType.FUND,
            "idempotency_key": "fund:test",
        }
        defaults.update(overrides)
        return RecordEntryParams(**defaults)

    @pytest.mark.parametrize("amount", [0, -5])
    def test_rejects_non_positive_amount(self, amount):
        with pytest.raises(ValueError, match="positive"):
            self._params(amount_cents=amount)

    @pytest.mark.parametrize("amount", [1.5, True, "100"])
    def test_rejects_non_integer_amount(self, amount):
        with pytest.raises(ValueError, match="integer"):
            self._params(amount_cents=amount)

    def test_requires_idempotency_key(self):
        with pytest.raises(ValueError, match="idempotency_key"):
            self._params(idempotency_key="")

    def test_rejects_same_account_on_both_sides(self):
        account_id = uuid.uuid4()

        with pytest.raises(ValueError, match="different"):
            self._params(debit_account_id=account_id, credit_account_id=account_id)


class TestEscrowBalance:
    """Reconciliation arithmetic."""

    def test_settled_escrow_balances(self):
        balance = EscrowBalance(
            escrow_id=uuid.uuid4(),
            funded=10000,
            captured=10000,
            paid_out=9500,
            fees=500,
        )

        assert balance.is_balanced
        assert balance.disbursed == 10000

    def test_partial_refunds_from_both_accounts(self):
        balance = EscrowBalance(
            escrow_id=uuid.uuid4(),
            funded=10000,
            refunded_from_held=2000,
            captured=8000,
            refunded_from_capture=3000,
            pending_disbursement=5000,
        )

        assert balance.is_balanced
        assert balance.refunded == 5000

    def test_money_leaking_out_is_unbalanced(self):
        balance = EscrowBalance(
            escrow_id=uuid.uuid4(),
            funded=10000,
            captured=10000,
            paid_out=9500,
            pending_disbursement=0,
        )

        assert not balance.is_balanced

    def test_to_dict(self):
        escrow_id = uuid.uuid4()
        data = EscrowBalance(escrow_id=escrow_id, funded=100, held=100).to_dict()

        assert data["escrow_id"] == str(escrow_id)
        assert data["is_balanced"] is True
        assert data["refunded"] == 0


class TestMoney:
    def test_str(self):
        assert str(Money(cents=5000, currency="usd")) == "$50.00 USD"

    def test_add_same_currency(self):
        assert Money(100) + Money(250) == Money(350)

    def test_mixed_currencies_rejected(self):
        with pytest.raises(ValueError):
            Money(100, "usd") + Money(100, "eur")

"""
Tests for LedgerService.

This module tests account management, generic entry recording
(idempotency, balance checks, atomic batches), the escrow posting
helpers and per-escrow balance reconciliation.
"""

import uuid

import pytest

from escrow.ledger.exceptions import (
    AccountNotFound,
    InactiveAccount,
    InsufficientBalance,
    LedgerImbalanceError,
)
from escrow.ledger.models import AccountType, EntryType, LedgerAccount, LedgerEntry
from escrow.ledger.services import LedgerService, ledger
from escrow.ledger.types import Money, RecordEntryParams


class TestAccounts:
    """Tests for account lookup and creation."""

    def test_get_or_create_account_is_idempotent(self, db):
        first = LedgerService.get_or_create_account(AccountType.PAYEE, "acct_1")
        second = LedgerService.get_or_create_account(AccountType.PAYEE, "acct_1")

        assert first.id == second.id
        assert LedgerAccount.objects.filter(owner_ref="acct_1").count() == 1

    def test_escrow_accounts(self, escrow):
        payer, held, captured = LedgerService.escrow_accounts(escrow.id, "usd")

        assert payer.type == AccountType.PAYER
        assert payer.allow_negative is True
        assert held.type == AccountType.ESCROW_HELD
        assert held.allow_negative is False
        assert captured.type == AccountType.ESCROW_CAPTURED
        assert {payer.owner_ref, held.owner_ref, captured.owner_ref} == {str(escrow.id)}

    def test_get_account_not_found(self, db):
        with pytest.raises(AccountNotFound):
            LedgerService.get_account(uuid.uuid4())

    def test_find_account_returns_none_when_missing(self, db):
        assert LedgerService.find_account(AccountType.ESCROW_HELD, "missing") is None

    def test_get_balance_returns_money(self, payer_account, held_account):
        ledger.record_entry(
            RecordEntryParams(
                debit_account_id=payer_account.id,
                credit_account_id=held_account.id,
                amount_cents=4200,
                entry_type=EntryType.FUND,
                idempotency_key="fund:balance",
            )
        )

        assert LedgerService.get_balance(held_account.id) == Money(cents=4200, currency="usd")


class TestRecordEntry:
    """Tests for LedgerService.record_entry() / record_entries()."""

    def _fund_params(self, payer, held, amount=10000, key="fund:test"):
        return RecordEntryParams(
            debit_account_id=payer.id,
            credit_account_id=held.id,
            amount_cents=amount,
            entry_type=EntryType.FUND,
            idempotency_key=key,
        )

    def test_records_entry(self, payer_account, held_account):
        entry = ledger.record_entry(self._fund_params(payer_account, held_account))

        assert entry.amount_cents == 10000
        assert entry.debit_account_id == payer_account.id
        assert entry.credit_account_id == held_account.id
        assert entry.currency == "usd"

    def test_same_key_returns_existing_entry(self, payer_account, held_account):
        first = ledger.record_entry(self._fund_params(payer_account, held_account))
        second = ledger.record_entry(self._fund_params(payer_account, held_account))

        assert first.id == second.id
        assert LedgerEntry.objects.count() == 1
        assert held_account.get_balance() == 10000

    def test_replay_succeeds_even_when_balance_is_now_short(
        self, payer_account, held_account, payee_account
    ):
        """The idempotency check runs before the balance check."""
        ledger.record_entry(self._fund_params(payer_account, held_account, amount=1000))
        payout = RecordEntryParams(
            debit_account_id=held_account.id,
            credit_account_id=payee_account.id,
            amount_cents=1000,
            entry_type=EntryType.PAYOUT,
            idempotency_key="payout:once",
        )
        first = ledger.record_entry(payout)

        replay = ledger.record_entry(payout)

        assert replay.id == first.id

    def test_insufficient_balance_writes_nothing(self, held_account, payee_account):
        params = RecordEntryParams(
            debit_account_id=held_account.id,
            credit_account_id=payee_account.id,
            amount_cents=1,
            entry_type=EntryType.PAYOUT,
            idempotency_key="payout:short",
        )

        with pytest.raises(InsufficientBalance) as exc_info:
            ledger.record_entry(params)

        assert exc_info.value.required == 1
        assert exc_info.value.available == 0
        assert LedgerEntry.objects.count() == 0

    def test_negative_allowed_account_can_be_debited(self, payer_account, held_account):
        ledger.record_entry(self._fund_params(payer_account, held_account))

        assert payer_account.get_balance() == -10000

    def test_inactive_account_rejected(self, payer_account, held_account):
        held_account.is_active = False
        held_account.save()

        with pytest.raises(InactiveAccount):
            ledger.record_entry(self._fund_params(payer_account, held_account))

    def test_unknown_account_rejected(self, payer_account):
        params = RecordEntryParams(
            debit_account_id=payer_account.id,
            credit_account_id=uuid.uuid4(),
            amount_cents=100,
            entry_type=EntryType.FUND,
            idempotency_key="fund:unknown",
        )

        with pytest.raises(AccountNotFound):
            ledger.record_entry(params)

    def test_batch_is_atomic(self, payer_account, held_account, payee_account):
        """A failing entry rolls back the whole batch."""
        entries = [
            self._fund_params(payer_account, held_account, amount=1000),
            RecordEntryParams(
                debit_account_id=held_account.id,
                credit_account_id=payee_account.id,
                amount_cents=5000,
                entry_type=EntryType.PAYOUT,
                idempotency_key="payout:too-much",
            ),
        ]

        with pytest.raises(InsufficientBalance):
            ledger.record_entries(entries)

        assert LedgerEntry.objects.count() == 0

    def test_batch_entries_count_toward_later_balance_checks(
        self, payer_account, held_account, payee_account
    ):
        entries = [
            self._fund_params(payer_account, held_account, amount=5000),
            RecordEntryParams(
                debit_account_id=held_account.id,
                credit_account_id=payee_account.id,
                amount_cents=5000,
                entry_type=EntryType.PAYOUT,
                idempotency_key="payout:all",
            ),
        ]

        results = ledger.record_entries(entries)

        assert len(results) == 2
        assert held_account.get_balance() == 0

    def test_empty_batch(self, db):
        assert ledger.record_entries([]) == []


class TestEscrowPostings:
    """Tests for record_fund / record_capture / record_payout / record_refund."""

    def test_record_fund(self, escrow):
        entry = ledger.record_fund(escrow.id, 10000, "usd")

        assert entry.entry_type == EntryType.FUND
        assert entry.idempotency_key == f"fund:{escrow.id}"
        assert entry.escrow_id == escrow.id
        assert entry.debit_account.type == AccountType.PAYER
        assert entry.credit_account.type == AccountType.ESCROW_HELD

    def test_record_fund_twice_is_one_entry(self, escrow):
        ledger.record_fund(escrow.id, 10000, "usd")
        ledger.record_fund(escrow.id, 10000, "usd")

        assert LedgerEntry.objects.filter(escrow_id=escrow.id).count() == 1

    def test_record_capture_moves_whatever_is_held(self, escrow):
        ledger.record_fund(escrow.id, 10000, "usd")
        ledger.record_refund(escrow.id, uuid.uuid4(), 2000, "usd", from_captured=False)

        entry = ledger.record_capture(escrow.id, "usd")

        assert entry.amount_cents == 8000
        assert entry.idempotency_key == f"capture:{escrow.id}"

    def test_record_capture_is_idempotent(self, escrow):
        ledger.record_fund(escrow.id, 10000, "usd")

        first = ledger.record_capture(escrow.id, "usd")
        second = ledger.record_capture(escrow.id, "usd")

        assert first.id == second.id

    def test_record_capture_with_nothing_held(self, escrow):
        assert ledger.record_capture(escrow.id, "usd") is None
        assert LedgerEntry.objects.count() == 0

    def test_record_payout_writes_payout_and_fee(self, escrow):
        payout_id = uuid.uuid4()
        ledger.record_fund(escrow.id, 10000, "usd")
        ledger.record_capture(escrow.id, "usd")

        entries = ledger.record_payout(escrow.id, payout_id, "acct_1", 9500, 500, "usd")

        assert [e.entry_type for e in entries] == [EntryType.PAYOUT, EntryType.FEE]
        assert entries[0].idempotency_key == f"payout:{payout_id}"
        assert entries[1].idempotency_key == f"fee:{payout_id}"
        assert entries[0].dest_ref == "acct_1"
        assert entries[1].credit_account.type == AccountType.PLATFORM_REVENUE

    def test_record_payout_without_fee(self, escrow):
        ledger.record_fund(escrow.id, 10000, "usd")
        ledger.record_capture(escrow.id, "usd")

        entries = ledger.record_payout(escrow.id, uuid.uuid4(), "acct_1", 10000, 0, "usd")

        assert len(entries) == 1

    def test_record_payout_cannot_exceed_captured(self, escrow):
        ledger.record_fund(escrow.id, 10000, "usd")
        ledger.record_capture(escrow.id, "usd")

        with pytest.raises(InsufficientBalance):
            ledger.record_payout(escrow.id, uuid.uuid4(), "acct_1", 10000, 500, "usd")

        assert not LedgerEntry.objects.filter(entry_type=EntryType.PAYOUT).exists()

    def test_record_refund_source_follows_capture(self, escrow):
        ledger.record_fund(escrow.id, 10000, "usd")
        before = ledger.record_refund(escrow.id, uuid.uuid4(), 1000, "usd", from_captured=False)
        ledger.record_capture(escrow.id, "usd")
        after = ledger.record_refund(escrow.id, uuid.uuid4(), 1000, "usd", from_captured=True)

        assert before.debit_account.type == AccountType.ESCROW_HELD
        assert after.debit_account.type == AccountType.ESCROW_CAPTURED
        assert before.credit_account.type == AccountType.PAYER


class TestEscrowBalanceQueries:
    """Tests for get_escrow_balance / verify_escrow_balance."""

    def test_empty_escrow_is_balanced(self, escrow):
        balance = ledger.get_escrow_balance(escrow.id)

        assert balance.funded == 0
        assert balance.is_balanced

    def test_full_lifecycle_balances(self, escrow):
        ledger.record_fund(escrow.id, 10000, "usd")
        ledger.record_refund(escrow.id, uuid.uuid4(), 1000, "usd", from_captured=False)
        ledger.record_capture(escrow.id, "usd")
        ledger.record_refund(escrow.id, uuid.uuid4(), 500, "usd", from_captured=True)
        ledger.record_payout(escrow.id, uuid.uuid4(), "acct_1", 8000, 500, "usd")

        balance = ledger.verify_escrow_balance(escrow.id)

        assert balance.funded == 10000
        assert balance.captured == 9000
        assert balance.refunded_from_held == 1000
        assert balance.refunded_from_capture == 500
        assert balance.paid_out == 8000
        assert balance.fees == 500
        assert balance.held == 0
        assert balance.pending_disbursement == 0

    def test_verify_detects_imbalance(self, escrow, payee_account):
        """Money taken from held funds by a payout entry breaks reconciliation."""
        _, held, _ = LedgerService.escrow_accounts(escrow.id, "usd")
        ledger.record_fund(escrow.id, 10000, "usd")
        ledger.record_entry(
            RecordEntryParams(
                debit_account_id=held.id,
                credit_account_id=payee_account.id,
                amount_cents=1000,
                entry_type=EntryType.PAYOUT,
                idempotency_key="payout:wrong-account",
                escrow_id=escrow.id,
            )
        )

        with pytest.raises(LedgerImbalanceError) as exc_info:
            ledger.verify_escrow_balance(escrow.id)

        assert exc_info.value.details["is_balanced"] is False

    def test_entries_for_escrow_in_order(self, escrow):
        ledger.record_fund(escrow.id, 10000, "usd")
        ledger.record_capture(escrow.id, "usd")

        entries = ledger.get_entries_for_escrow(escrow.id)

        assert [e.entry_type for e in entries] == [EntryType.FUND, EntryType.CAPTURE]


def test_ledger_singleton_is_service():
    assert isinstance(ledger, LedgerService)

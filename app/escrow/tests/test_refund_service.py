"""
Tests for RefundService.

Tests cover:
1. Refund initiation and submission to the processor
2. Refundable balance: succeeded and pending refunds, open payouts
3. Refund confirmation and the REFUND entry (held or captured)
4. Escrow state after partial and full refunds
5. Processor timeouts and rejections
"""

from __future__ import annotations

import uuid

import pytest

from core.exceptions import ValidationError
from escrow.adapters import IdempotencyKeyGenerator
from escrow.exceptions import (
    EscrowNotFoundError,
    InvalidAmountError,
    InvalidStateTransitionError,
    RefundExceedsBalanceError,
    StripeInvalidRequestError,
    StripeTimeoutError,
)
from escrow.ledger import AccountType, EntryType, LedgerEntry, ledger
from escrow.models import Escrow, Refund
from escrow.services import EscrowService, PayoutService, RefundService
from escrow.state_machines import EscrowState, RefundState


# =============================================================================
# Initiation
# =============================================================================


@pytest.mark.django_db
class TestInitiateRefund:
    """Tests for RefundService.initiate_refund()."""

    def test_submits_refund_and_stays_pending(self, captured_escrow, processor):
        refund = RefundService.initiate_refund(captured_escrow.id, 3000, reason="Scope reduced")

        assert refund.state == RefundState.PENDING
        assert refund.processor_refund_id.startswith("re_test_")
        assert refund.submitted_at is not None
        assert refund.reason == "Scope reduced"

        call = processor.calls_for("create_refund")[0]
        assert call["payment_intent_id"] == captured_escrow.processor_payment_intent_id
        assert call["amount_cents"] == 3000
        assert call["idempotency_key"] == IdempotencyKeyGenerator.generate(
            "create_refund", refund.id
        )

    def test_no_ledger_entry_until_confirmed(self, pending_refund):
        assert not LedgerEntry.objects.filter(entry_type=EntryType.REFUND).exists()
        escrow = Escrow.objects.get(id=pending_refund.escrow_id)
        assert escrow.state == EscrowState.CAPTURED

    def test_pending_refunds_count_against_balance(self, pending_refund, processor):
        with pytest.raises(RefundExceedsBalanceError) as exc_info:
            RefundService.initiate_refund(pending_refund.escrow_id, 8000)

        assert exc_info.value.details["available_cents"] == 7000
        assert Refund.objects.count() == 1
        assert len(processor.calls_for("create_refund")) == 1

    def test_remaining_balance_can_be_refunded(self, pending_refund):
        refund = RefundService.initiate_refund(pending_refund.escrow_id, 7000)

        assert refund.state == RefundState.PENDING

    def test_in_transit_payout_reserves_funds(self, in_transit_payout):
        with pytest.raises(RefundExceedsBalanceError) as exc_info:
            RefundService.initiate_refund(in_transit_payout.escrow_id, 100)

        assert exc_info.value.details["available_cents"] == 0

    def test_failed_refund_frees_balance(self, captured_escrow, processor):
        processor.fail_next("create_refund", StripeInvalidRequestError("charge already refunded"))
        with pytest.raises(StripeInvalidRequestError):
            RefundService.initiate_refund(captured_escrow.id, 10000)

        assert RefundService.get_refundable_amount(captured_escrow) == 10000

    def test_pending_escrow_cannot_be_refunded(self, pending_escrow):
        with pytest.raises(InvalidStateTransitionError):
            RefundService.initiate_refund(pending_escrow.id, 1000)

    def test_released_escrow_cannot_be_refunded(self, released_escrow):
        with pytest.raises(InvalidStateTransitionError):
            RefundService.initiate_refund(released_escrow.id, 1000)

    @pytest.mark.parametrize("amount", [0, -1, 12.5])
    def test_invalid_amount_rejected(self, captured_escrow, amount):
        with pytest.raises(InvalidAmountError):
            RefundService.initiate_refund(captured_escrow.id, amount)

    def test_reason_too_long_rejected(self, captured_escrow):
        with pytest.raises(ValidationError) as exc_info:
            RefundService.initiate_refund(captured_escrow.id, 1000, reason="x" * 501)

        assert exc_info.value.error_code == "INVALID_REFUND_REASON"

    def test_unknown_escrow(self, db):
        with pytest.raises(EscrowNotFoundError):
            RefundService.initiate_refund(uuid.uuid4(), 1000)


# =============================================================================
# Processor Failures
# =============================================================================


@pytest.mark.django_db
class TestRefundProcessorFailures:
    def test_rejection_marks_refund_failed(self, captured_escrow, processor):
        processor.fail_next("create_refund", StripeInvalidRequestError("charge already refunded"))

        with pytest.raises(StripeInvalidRequestError):
            RefundService.initiate_refund(captured_escrow.id, 3000)

        refund = Refund.objects.get(escrow_id=captured_escrow.id)
        assert refund.state == RefundState.FAILED
        assert refund.failed_at is not None
        assert Escrow.objects.get(id=captured_escrow.id).state == EscrowState.CAPTURED

    def test_timeout_leaves_refund_unsubmitted(self, captured_escrow, processor):
        processor.fail_next("create_refund", StripeTimeoutError("timed out"))

        with pytest.raises(StripeTimeoutError):
            RefundService.initiate_refund(captured_escrow.id, 3000)

        refund = Refund.objects.get(escrow_id=captured_escrow.id)
        assert refund.state == RefundState.PENDING
        assert not refund.is_submitted

    def test_retry_refund_reuses_idempotency_key(self, captured_escrow, processor):
        processor.fail_next("create_refund", StripeTimeoutError("timed out"), after_effect=True)
        with pytest.raises(StripeTimeoutError):
            RefundService.initiate_refund(captured_escrow.id, 3000)
        pending = Refund.objects.get(escrow_id=captured_escrow.id)

        refund = RefundService.retry_refund(pending.id)

        assert refund.is_submitted
        keys = {call["idempotency_key"] for call in processor.calls_for("create_refund")}
        assert len(keys) == 1
        assert processor.created_count("re_") == 1

    def test_retry_refund_ignores_submitted(self, pending_refund, processor):
        refund = RefundService.retry_refund(pending_refund.id)

        assert refund.processor_refund_id == pending_refund.processor_refund_id
        assert len(processor.calls_for("create_refund")) == 1


# =============================================================================
# Confirmation
# =============================================================================


@pytest.mark.django_db
class TestConfirmRefund:
    """Tests for RefundService.confirm_refund()."""

    def test_partial_refund_after_capture(self, pending_refund):
        refund = RefundService.confirm_refund(pending_refund.id, "succeeded")

        assert refund.state == RefundState.SUCCEEDED
        assert refund.succeeded_at is not None
        escrow = Escrow.objects.get(id=refund.escrow_id)
        assert escrow.state == EscrowState.PARTIALLY_REFUNDED

        entry = LedgerEntry.objects.get(entry_type=EntryType.REFUND)
        assert entry.amount_cents == 3000
        assert entry.debit_account.type == AccountType.ESCROW_CAPTURED
        assert entry.credit_account.type == AccountType.PAYER

        balance = ledger.get_escrow_balance(escrow.id)
        assert balance.refunded_from_capture == 3000
        assert balance.pending_disbursement == 7000
        assert balance.is_balanced

    def test_over_refund_after_partial_leaves_ledger_untouched(self, pending_refund):
        RefundService.confirm_refund(pending_refund.id, "succeeded")

        with pytest.raises(RefundExceedsBalanceError):
            RefundService.initiate_refund(pending_refund.escrow_id, 8000)

        assert LedgerEntry.objects.filter(entry_type=EntryType.REFUND).count() == 1

    def test_full_refund_after_capture(self, captured_escrow):
        refund = RefundService.initiate_refund(captured_escrow.id, 10000)

        RefundService.confirm_refund(refund.id, "succeeded")

        escrow = Escrow.objects.get(id=captured_escrow.id)
        assert escrow.state == EscrowState.REFUNDED
        assert escrow.refunded_at is not None
        assert not escrow.is_active
        assert ledger.get_escrow_balance(escrow.id).is_balanced

    def test_refund_before_capture_draws_from_held(self, funded_escrow):
        refund = RefundService.initiate_refund(funded_escrow.id, 2000)

        RefundService.confirm_refund(refund.id, "succeeded")

        entry = LedgerEntry.objects.get(entry_type=EntryType.REFUND)
        assert entry.debit_account.type == AccountType.ESCROW_HELD
        escrow = Escrow.objects.get(id=funded_escrow.id)
        assert escrow.state == EscrowState.PARTIALLY_REFUNDED
        assert ledger.get_escrow_balance(escrow.id).held == 8000

    def test_capture_after_partial_refund_takes_remainder(self, funded_escrow):
        refund = RefundService.initiate_refund(funded_escrow.id, 2000)
        RefundService.confirm_refund(refund.id, "succeeded")

        escrow = EscrowService.capture(funded_escrow.id)

        assert escrow.state == EscrowState.CAPTURED
        capture = LedgerEntry.objects.get(entry_type=EntryType.CAPTURE)
        assert capture.amount_cents == 8000
        balance = ledger.get_escrow_balance(escrow.id)
        assert balance.held == 0
        assert balance.pending_disbursement == 8000
        assert balance.is_balanced

    def test_pending_refund_failing_leaves_balance_for_one_payout(self, pending_refund):
        with pytest.raises(InvalidStateTransitionError):
            PayoutService.initiate_payout(pending_refund.escrow_id, "acct_1")

        RefundService.confirm_refund(pending_refund.id, "failed", failure_reason="card_expired")
        payout = PayoutService.initiate_payout(pending_refund.escrow_id, "acct_1")
        PayoutService.confirm_payout(payout.id, payout.processor_transfer_id, "paid")

        escrow = Escrow.objects.get(id=pending_refund.escrow_id)
        assert escrow.state == EscrowState.RELEASED
        balance = ledger.get_escrow_balance(escrow.id)
        assert balance.paid_out == 9500
        assert balance.fees == 500
        assert balance.pending_disbursement == 0
        assert balance.is_balanced

    def test_succeeded_twice_is_noop(self, pending_refund):
        RefundService.confirm_refund(pending_refund.id, "succeeded")
        RefundService.confirm_refund(pending_refund.id, "succeeded")

        assert LedgerEntry.objects.filter(entry_type=EntryType.REFUND).count() == 1

    def test_failed_refund_writes_nothing(self, pending_refund):
        refund = RefundService.confirm_refund(
            pending_refund.id, "failed", failure_reason="expired_or_canceled_card"
        )

        assert refund.state == RefundState.FAILED
        assert refund.failure_reason == "expired_or_canceled_card"
        assert not LedgerEntry.objects.filter(entry_type=EntryType.REFUND).exists()
        assert Escrow.objects.get(id=refund.escrow_id).state == EscrowState.CAPTURED

    def test_stores_processor_id_of_unsubmitted_refund(self, captured_escrow, processor):
        processor.fail_next("create_refund", StripeTimeoutError("timed out"))
        with pytest.raises(StripeTimeoutError):
            RefundService.initiate_refund(captured_escrow.id, 3000)
        refund = Refund.objects.get(escrow_id=captured_escrow.id)

        refund = RefundService.confirm_refund(
            refund.id, "failed", failure_reason="card_expired", processor_refund_id="re_late"
        )

        refund = Refund.objects.get(id=refund.id)
        assert refund.processor_refund_id == "re_late"
        assert refund.submitted_at is not None
        assert refund.state == RefundState.FAILED

    def test_other_processor_id_rejected(self, pending_refund):
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            RefundService.confirm_refund(
                pending_refund.id, "succeeded", processor_refund_id="re_someone_else"
            )

        assert exc_info.value.error_code == "REFUND_MISMATCH"
        refund = Refund.objects.get(id=pending_refund.id)
        assert refund.state == RefundState.PENDING
        assert refund.processor_refund_id == pending_refund.processor_refund_id

    def test_succeeded_after_failed_rejected(self, pending_refund):
        RefundService.confirm_refund(pending_refund.id, "failed")

        with pytest.raises(InvalidStateTransitionError):
            RefundService.confirm_refund(pending_refund.id, "succeeded")

    def test_unknown_status_rejected(self, pending_refund):
        with pytest.raises(ValidationError) as exc_info:
            RefundService.confirm_refund(pending_refund.id, "canceled")

        assert exc_info.value.error_code == "INVALID_REFUND_STATUS"

    def test_unknown_refund(self, db):
        with pytest.raises(EscrowNotFoundError) as exc_info:
            RefundService.get_refund(uuid.uuid4())

        assert exc_info.value.error_code == "REFUND_NOT_FOUND"

"""
Tests for EscrowService.

Tests cover:
1. Escrow creation, amount validation and one active escrow per milestone
2. Funding confirmation and the FUND entry
3. Cancellation
4. Capture at the processor and the CAPTURE entry
5. Processor failures leaving the escrow unchanged
6. Platform fee calculation
"""

from __future__ import annotations

import uuid

import pytest

from core.exceptions import ValidationError
from escrow.adapters import IdempotencyKeyGenerator
from escrow.exceptions import (
    DuplicateEscrowError,
    EscrowNotFoundError,
    InvalidAmountError,
    InvalidStateTransitionError,
    LockAcquisitionError,
    StripeCardDeclinedError,
    StripeTimeoutError,
)
from escrow.ledger import EntryType, LedgerEntry, ledger
from escrow.models import Escrow
from escrow.services import EscrowService, RefundService, calculate_platform_fee
from escrow.state_machines import EscrowState
from escrow.tests.factories import EscrowFactory


# =============================================================================
# Creation
# =============================================================================


@pytest.mark.django_db
class TestCreateEscrow:
    """Tests for EscrowService.create_escrow()."""

    def test_creates_pending_escrow_with_intent(self, processor):
        escrow = EscrowService.create_escrow(milestone_id=42, amount_cents=10000, currency="USD")

        assert escrow.state == EscrowState.PENDING
        assert escrow.amount_cents == 10000
        assert escrow.currency == "usd"
        assert escrow.processor_payment_intent_id.startswith("pi_test_")

        call = processor.calls_for("create_intent")[0]
        assert call["amount_cents"] == 10000
        assert call["metadata"] == {"escrow_id": str(escrow.id), "milestone_id": "42"}
        assert call["idempotency_key"] == IdempotencyKeyGenerator.generate(
            "create_intent", escrow.id
        )

    def test_no_ledger_entry_on_creation(self):
        escrow = EscrowService.create_escrow(milestone_id=42, amount_cents=10000)

        assert not LedgerEntry.objects.filter(escrow_id=escrow.id).exists()

    def test_default_currency_from_settings(self, settings):
        settings.ESCROW_DEFAULT_CURRENCY = "EUR"

        escrow = EscrowService.create_escrow(milestone_id=1, amount_cents=500)

        assert escrow.currency == "eur"

    @pytest.mark.parametrize("amount", [0, -100, 10.5, True, None])
    def test_invalid_amount_rejected(self, amount):
        with pytest.raises(InvalidAmountError):
            EscrowService.create_escrow(milestone_id=42, amount_cents=amount)

        assert Escrow.objects.count() == 0

    def test_invalid_currency_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            EscrowService.create_escrow(milestone_id=42, amount_cents=100, currency="dollars")

        assert exc_info.value.error_code == "INVALID_CURRENCY"

    def test_second_escrow_for_funded_milestone_rejected(self, funded_escrow):
        with pytest.raises(DuplicateEscrowError) as exc_info:
            EscrowService.create_escrow(milestone_id=42, amount_cents=10000)

        assert exc_info.value.details["escrow_id"] == str(funded_escrow.id)
        assert Escrow.objects.filter(milestone_id=42).count() == 1

    def test_milestone_reusable_after_cancellation(self, pending_escrow):
        EscrowService.cancel(pending_escrow.id)

        escrow = EscrowService.create_escrow(milestone_id=42, amount_cents=8000)

        assert escrow.id != pending_escrow.id
        assert EscrowService.get_active_escrow_for_milestone(42).id == escrow.id

    def test_processor_timeout_leaves_pending_escrow_without_intent(self, processor):
        processor.fail_next("create_intent", StripeTimeoutError("timed out"))

        with pytest.raises(StripeTimeoutError):
            EscrowService.create_escrow(milestone_id=42, amount_cents=10000)

        escrow = Escrow.objects.get(milestone_id=42)
        assert escrow.state == EscrowState.PENDING
        assert escrow.processor_payment_intent_id is None

    def test_submit_funding_reuses_idempotency_key(self, processor):
        """A lost response is recovered without a second intent."""
        processor.fail_next("create_intent", StripeTimeoutError("timed out"), after_effect=True)
        with pytest.raises(StripeTimeoutError):
            EscrowService.create_escrow(milestone_id=42, amount_cents=10000)
        escrow = Escrow.objects.get(milestone_id=42)

        escrow = EscrowService.submit_funding(escrow.id)

        keys = {call["idempotency_key"] for call in processor.calls_for("create_intent")}
        assert len(keys) == 1
        assert processor.created_count("pi_") == 1
        assert escrow.processor_payment_intent_id == "pi_test_1"

    def test_submit_funding_requires_pending(self, funded_escrow):
        with pytest.raises(InvalidStateTransitionError):
            EscrowService.submit_funding(funded_escrow.id)

    def test_milestone_lock_held_elsewhere(self, mock_redis, mocker, processor):
        mock_redis.set.return_value = False
        mocker.patch("escrow.services.escrow_service.ESCROW_LOCK_TIMEOUT", 0)

        with pytest.raises(LockAcquisitionError):
            EscrowService.create_escrow(milestone_id=42, amount_cents=10000)

        assert Escrow.objects.count() == 0
        assert processor.calls_for("create_intent") == []


# =============================================================================
# Funding Confirmation
# =============================================================================


@pytest.mark.django_db
class TestConfirmFunded:
    """Tests for EscrowService.confirm_funded()."""

    def test_pending_to_funded_with_fund_entry(self, pending_escrow):
        escrow = EscrowService.confirm_funded(
            pending_escrow.id, pending_escrow.processor_payment_intent_id
        )

        assert escrow.state == EscrowState.FUNDED
        assert escrow.funded_at is not None

        entries = ledger.get_entries_for_escrow(escrow.id)
        assert len(entries) == 1
        assert entries[0].entry_type == EntryType.FUND
        assert entries[0].amount_cents == 10000
        assert ledger.get_escrow_balance(escrow.id).held == 10000

    def test_intent_mismatch_changes_nothing(self, pending_escrow):
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            EscrowService.confirm_funded(pending_escrow.id, "pi_someone_else")

        assert exc_info.value.error_code == "PAYMENT_INTENT_MISMATCH"
        escrow = Escrow.objects.get(id=pending_escrow.id)
        assert escrow.state == EscrowState.PENDING
        assert not LedgerEntry.objects.exists()

    def test_confirm_twice_rejected(self, funded_escrow):
        with pytest.raises(InvalidStateTransitionError):
            EscrowService.confirm_funded(
                funded_escrow.id, funded_escrow.processor_payment_intent_id
            )

        assert LedgerEntry.objects.filter(entry_type=EntryType.FUND).count() == 1

    def test_stores_intent_when_registration_response_was_lost(self, db):
        escrow = EscrowFactory(processor_payment_intent_id=None)

        escrow = EscrowService.confirm_funded(escrow.id, "pi_late")

        assert escrow.processor_payment_intent_id == "pi_late"
        assert escrow.state == EscrowState.FUNDED

    def test_late_intent_binding_logged_and_recorded(self, db, mocker):
        warning = mocker.patch.object(EscrowService.get_logger(), "warning")
        escrow = EscrowFactory(processor_payment_intent_id=None, metadata={"source": "web"})

        EscrowService.confirm_funded(escrow.id, "pi_late")

        assert warning.call_args.args[0] == "Binding payment intent from funding confirmation"
        escrow = Escrow.objects.get(id=escrow.id)
        assert escrow.metadata == {
            "source": "web",
            "payment_intent_bound_by_confirmation": "pi_late",
        }

    def test_known_intent_not_recorded_as_late_binding(self, funded_escrow):
        escrow = Escrow.objects.get(id=funded_escrow.id)

        assert "payment_intent_bound_by_confirmation" not in escrow.metadata

    def test_unknown_escrow(self, db):
        with pytest.raises(EscrowNotFoundError):
            EscrowService.confirm_funded(uuid.uuid4(), "pi_x")


# =============================================================================
# Cancellation
# =============================================================================


@pytest.mark.django_db
class TestCancel:
    """Tests for EscrowService.cancel()."""

    def test_cancel_pending(self, pending_escrow):
        escrow = EscrowService.cancel(pending_escrow.id)

        assert escrow.state == EscrowState.CANCELLED
        assert not LedgerEntry.objects.exists()

    def test_cancel_funded_rejected(self, funded_escrow):
        with pytest.raises(InvalidStateTransitionError):
            EscrowService.cancel(funded_escrow.id)

        assert Escrow.objects.get(id=funded_escrow.id).state == EscrowState.FUNDED


# =============================================================================
# Capture
# =============================================================================


@pytest.mark.django_db
class TestCapture:
    """Tests for EscrowService.capture()."""

    def test_capture_moves_funds_to_captured(self, funded_escrow, processor):
        escrow = EscrowService.capture(funded_escrow.id)

        assert escrow.state == EscrowState.CAPTURED
        assert escrow.captured_at is not None

        balance = ledger.get_escrow_balance(escrow.id)
        assert balance.held == 0
        assert balance.pending_disbursement == 10000
        assert balance.is_balanced

        call = processor.calls_for("capture_intent")[0]
        assert call["payment_intent_id"] == funded_escrow.processor_payment_intent_id

    def test_capture_pending_rejected_without_processor_call(self, pending_escrow, processor):
        with pytest.raises(InvalidStateTransitionError):
            EscrowService.capture(pending_escrow.id)

        assert processor.calls_for("capture_intent") == []

    def test_capture_twice_rejected(self, captured_escrow):
        with pytest.raises(InvalidStateTransitionError):
            EscrowService.capture(captured_escrow.id)

        assert LedgerEntry.objects.filter(entry_type=EntryType.CAPTURE).count() == 1

    def test_processor_timeout_leaves_escrow_funded(self, funded_escrow, processor):
        processor.fail_next("capture_intent", StripeTimeoutError("timed out"))

        with pytest.raises(StripeTimeoutError):
            EscrowService.capture(funded_escrow.id)

        assert Escrow.objects.get(id=funded_escrow.id).state == EscrowState.FUNDED
        assert not LedgerEntry.objects.filter(entry_type=EntryType.CAPTURE).exists()

    def test_retry_after_timeout_uses_same_key(self, funded_escrow, processor):
        processor.fail_next("capture_intent", StripeTimeoutError("timed out"), after_effect=True)
        with pytest.raises(StripeTimeoutError):
            EscrowService.capture(funded_escrow.id)

        EscrowService.capture(funded_escrow.id)

        keys = [call["idempotency_key"] for call in processor.calls_for("capture_intent")]
        assert len(keys) == 2
        assert keys[0] == keys[1]

    def test_processor_rejection_leaves_escrow_funded(self, funded_escrow, processor):
        processor.fail_next("capture_intent", StripeCardDeclinedError("declined"))

        with pytest.raises(StripeCardDeclinedError):
            EscrowService.capture(funded_escrow.id)

        assert Escrow.objects.get(id=funded_escrow.id).state == EscrowState.FUNDED

    def test_pending_refund_of_whole_hold_blocks_capture(self, funded_escrow, processor):
        RefundService.initiate_refund(funded_escrow.id, 10000)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            EscrowService.capture(funded_escrow.id)

        assert exc_info.value.error_code == "REFUND_PENDING"
        assert processor.calls_for("capture_intent") == []
        assert Escrow.objects.get(id=funded_escrow.id).state == EscrowState.FUNDED

    def test_partial_pending_refund_allows_capture(self, funded_escrow):
        refund = RefundService.initiate_refund(funded_escrow.id, 2000)

        EscrowService.capture(funded_escrow.id)
        RefundService.confirm_refund(refund.id, "succeeded")

        escrow = Escrow.objects.get(id=funded_escrow.id)
        assert escrow.state == EscrowState.PARTIALLY_REFUNDED
        balance = ledger.get_escrow_balance(escrow.id)
        assert balance.pending_disbursement == 8000
        assert balance.is_balanced


# =============================================================================
# Queries & Fees
# =============================================================================


@pytest.mark.django_db
class TestQueries:
    def test_get_escrow_not_found(self):
        with pytest.raises(EscrowNotFoundError):
            EscrowService.get_escrow(uuid.uuid4())

    def test_list_escrows_by_state(self, funded_escrow):
        EscrowFactory()

        funded = list(EscrowService.list_escrows_by_state(EscrowState.FUNDED))

        assert [e.id for e in funded] == [funded_escrow.id]


class TestPlatformFee:
    """Fee is ESCROW_PLATFORM_FEE_PERCENT of the gross, rounded half up."""

    def test_default_five_percent(self, settings):
        settings.ESCROW_PLATFORM_FEE_PERCENT = 5

        assert calculate_platform_fee(10000) == 500

    @pytest.mark.parametrize(
        "amount,expected",
        [(10, 1), (9, 0), (30, 2), (1, 0)],
    )
    def test_rounds_half_up(self, amount, expected):
        assert calculate_platform_fee(amount, percent=5) == expected

    def test_fractional_percent(self):
        assert calculate_platform_fee(10000, percent="2.5") == 250

    def test_service_shortcut(self, settings):
        settings.ESCROW_PLATFORM_FEE_PERCENT = 10

        assert EscrowService.calculate_platform_fee(2500) == 250

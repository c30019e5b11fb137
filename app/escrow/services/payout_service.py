"""
Payout service: release of captured escrow funds to the payee.

The service implements a two-phase commit pattern:
1. Create the Payout PENDING with its amounts and commit
2. Call the processor's create_transfer outside the transaction
3. Store the transfer id and move PENDING -> IN_TRANSIT

The ledger is only written when the processor confirms the transfer
(transfer_paid), together with PAID on the payout and RELEASED on the
escrow. If the transfer call times out, the payout stays PENDING and the
next initiate_payout() or retry_payout() call resumes it with the same
idempotency key.

Usage:
    from escrow.services import PayoutService

    payout = PayoutService.initiate_payout(escrow.id, "acct_123")
"""

from __future__ import annotations

import logging
import uuid

from core.exceptions import ValidationError
from core.services import BaseService

from escrow.adapters import IdempotencyKeyGenerator, get_payment_processor
from escrow.exceptions import (
    AlreadyPaidOutError,
    EscrowNotFoundError,
    InvalidAmountError,
    InvalidStateTransitionError,
    ProcessorCommunicationError,
    ProcessorRejectedError,
)
from escrow.ledger import ledger
from escrow.locks import DistributedLock, escrow_lock_key
from escrow.models import Escrow, Payout, Refund
from escrow.services.escrow_service import calculate_platform_fee
from escrow.services.transitions import apply_transition
from escrow.state_machines import PayoutState, RefundState
from escrow.state_machines.states import OPEN_PAYOUT_STATES


logger = logging.getLogger(__name__)


# Distributed lock TTL for payout execution (seconds)
PAYOUT_LOCK_TTL = 120

# Lock acquisition timeout (seconds)
PAYOUT_LOCK_TIMEOUT = 10.0

PAYOUT_STATUS_PAID = "paid"
PAYOUT_STATUS_FAILED = "failed"


class PayoutService(BaseService):
    """
    Service for paying captured escrow funds out to the payee.

    Error Handling:
        - ProcessorCommunicationError: raised, payout stays PENDING (retry)
        - ProcessorRejectedError: payout marked FAILED, error raised
        - Lock contention: LockAcquisitionError raised
    """

    @classmethod
    def initiate_payout(cls, escrow_id: uuid.UUID, destination_account_id: str) -> Payout:
        """
        Start paying an escrow's captured funds to destination_account_id.

        Gross amount = captured funds still in the escrow; the platform fee
        is kept from it and the rest is paid. Refused while a refund on the
        escrow is still PENDING, since its outcome decides what is left.

        Returns:
            The payout, IN_TRANSIT once the processor accepted the transfer

        Raises:
            InvalidStateTransitionError: escrow is not captured, or a refund
                is pending
            AlreadyPaidOutError: a payout is already in flight or paid
            InvalidAmountError: nothing left to pay out
            ProcessorCommunicationError: outcome unknown, payout stays PENDING
            ProcessorRejectedError: payout marked FAILED
        """
        if not destination_account_id:
            raise ValidationError(
                "Destination account is required",
                error_code="INVALID_DESTINATION",
            )

        cls.get_logger().info(
            "Starting payout",
            extra={"escrow_id": str(escrow_id), "destination_account_id": destination_account_id},
        )

        with DistributedLock(
            escrow_lock_key(escrow_id), ttl=PAYOUT_LOCK_TTL, timeout=PAYOUT_LOCK_TIMEOUT
        ):
            with cls.atomic():
                payout = cls._create_or_resume_payout(escrow_id, destination_account_id)

            return cls._submit_transfer(payout)

    @classmethod
    def _create_or_resume_payout(cls, escrow_id: uuid.UUID, destination_account_id: str) -> Payout:
        try:
            escrow = Escrow.objects.select_for_update().get(id=escrow_id)
        except Escrow.DoesNotExist:
            raise EscrowNotFoundError(
                f"Escrow {escrow_id} not found",
                details={"escrow_id": str(escrow_id)},
            )

        existing = escrow.payouts.filter(state__in=OPEN_PAYOUT_STATES).first()
        if existing is not None:
            if (
                existing.state == PayoutState.PENDING
                and existing.destination_account_id == destination_account_id
            ):
                cls.get_logger().info(
                    "Resuming pending payout",
                    extra={"escrow_id": str(escrow_id), "payout_id": str(existing.id)},
                )
                return existing
            raise AlreadyPaidOutError(
                f"Escrow {escrow_id} already has a {existing.state} payout",
                details={
                    "escrow_id": str(escrow_id),
                    "payout_id": str(existing.id),
                    "payout_state": existing.state,
                },
            )

        if not escrow.can_pay_out:
            raise InvalidStateTransitionError(
                f"Cannot pay out escrow {escrow_id} from '{escrow.state}' state",
                details={
                    "escrow_id": str(escrow_id),
                    "current_state": escrow.state,
                    "transition": "release",
                },
            )

        if Refund.objects.filter(escrow=escrow, state=RefundState.PENDING).exists():
            raise InvalidStateTransitionError(
                f"Cannot pay out escrow {escrow_id} while a refund is pending",
                error_code="REFUND_PENDING",
                details={
                    "escrow_id": str(escrow_id),
                    "current_state": escrow.state,
                    "transition": "release",
                },
            )

        gross_cents = cls.get_payable_amount(escrow)
        fee_cents = calculate_platform_fee(gross_cents) if gross_cents > 0 else 0
        amount_cents = gross_cents - fee_cents
        if amount_cents <= 0:
            raise InvalidAmountError(
                f"Escrow {escrow_id} has nothing left to pay out",
                details={
                    "escrow_id": str(escrow_id),
                    "gross_cents": gross_cents,
                    "fee_cents": fee_cents,
                },
            )

        payout = Payout.objects.create(
            escrow=escrow,
            destination_account_id=destination_account_id,
            amount_cents=amount_cents,
            fee_cents=fee_cents,
            currency=escrow.currency,
            attempt=escrow.payouts.count() + 1,
        )
        cls.get_logger().info(
            "Payout created",
            extra={
                "escrow_id": str(escrow_id),
                "payout_id": str(payout.id),
                "amount_cents": amount_cents,
                "fee_cents": fee_cents,
                "attempt": payout.attempt,
            },
        )
        return payout

    @classmethod
    def get_payable_amount(cls, escrow: Escrow) -> int:
        """Captured funds still in the escrow."""
        return ledger.get_escrow_balance(escrow.id, escrow.currency).pending_disbursement

    @classmethod
    def retry_payout(cls, payout_id: uuid.UUID) -> Payout:
        """
        Re-submit a PENDING payout with its original idempotency key.

        Payouts in any other state are returned unchanged.
        """
        payout = cls.get_payout(payout_id)
        with DistributedLock(
            escrow_lock_key(payout.escrow_id), ttl=PAYOUT_LOCK_TTL, timeout=PAYOUT_LOCK_TIMEOUT
        ):
            payout = cls.get_payout(payout_id)
            if payout.state != PayoutState.PENDING:
                cls.get_logger().info(
                    "Payout no longer pending, nothing to retry",
                    extra={"payout_id": str(payout_id), "current_state": payout.state},
                )
                return payout
            return cls._submit_transfer(payout)

    @classmethod
    def _submit_transfer(cls, payout: Payout) -> Payout:
        idempotency_key = IdempotencyKeyGenerator.generate(
            "create_transfer", payout.escrow_id, payout.attempt
        )

        try:
            transfer = get_payment_processor().create_transfer(
                destination_account_id=payout.destination_account_id,
                amount_cents=payout.amount_cents,
                currency=payout.currency,
                idempotency_key=idempotency_key,
                metadata={"escrow_id": str(payout.escrow_id), "payout_id": str(payout.id)},
            )
        except ProcessorCommunicationError as e:
            cls.get_logger().warning(
                f"Transient processor error, payout left pending: {type(e).__name__}",
                extra={"payout_id": str(payout.id), "error": str(e)},
            )
            raise
        except ProcessorRejectedError as e:
            cls.get_logger().error(
                "Processor rejected transfer",
                extra={"payout_id": str(payout.id), "error": str(e)},
            )
            with cls.atomic():
                payout = Payout.objects.select_for_update().get(id=payout.id)
                if payout.state == PayoutState.PENDING:
                    apply_transition(payout, "fail", str(e))
                    payout.save()
            raise

        with cls.atomic():
            payout = Payout.objects.select_for_update().get(id=payout.id)
            if payout.state == PayoutState.PENDING:
                apply_transition(payout, "submit", transfer.id)
                payout.save()
            else:
                # Confirmation arrived before the transfer id was stored
                cls.get_logger().info(
                    "Payout advanced before transfer id was stored",
                    extra={"payout_id": str(payout.id), "current_state": payout.state},
                )

        cls.get_logger().info(
            "Transfer submitted",
            extra={"payout_id": str(payout.id), "transfer_id": transfer.id},
        )
        return payout

    @classmethod
    def confirm_payout(
        cls,
        payout_id: uuid.UUID,
        processor_transfer_id: str | None,
        status: str,
        failure_reason: str | None = None,
    ) -> Payout:
        """
        Apply the processor's transfer outcome. Called by the reconciliation listener.

        paid: payout PAID, escrow RELEASED, PAYOUT and FEE entries, atomically.
        failed: payout FAILED; escrow keeps its captured funds.

        Confirming a payout already in the confirmed state is a no-op.

        Raises:
            InvalidStateTransitionError: transfer id mismatch, or the outcome
                contradicts the payout's state
        """
        if status not in (PAYOUT_STATUS_PAID, PAYOUT_STATUS_FAILED):
            raise ValidationError(
                f"Unknown payout status '{status}'",
                error_code="INVALID_PAYOUT_STATUS",
                details={"status": status},
            )

        with cls.atomic():
            payout = cls._lock_payout(payout_id)

            if (
                processor_transfer_id
                and payout.processor_transfer_id
                and payout.processor_transfer_id != processor_transfer_id
            ):
                raise InvalidStateTransitionError(
                    f"Transfer {processor_transfer_id} does not belong to payout {payout_id}",
                    error_code="TRANSFER_MISMATCH",
                    details={
                        "payout_id": str(payout_id),
                        "expected": payout.processor_transfer_id,
                        "received": processor_transfer_id,
                    },
                )

            if status == PAYOUT_STATUS_PAID:
                if payout.state == PayoutState.PAID:
                    return payout

                escrow = Escrow.objects.select_for_update().get(id=payout.escrow_id)
                apply_transition(payout, "mark_paid", processor_transfer_id)
                payout.save()
                apply_transition(escrow, "release")
                escrow.save()
                ledger.record_payout(
                    escrow_id=escrow.id,
                    payout_id=payout.id,
                    destination_account_id=payout.destination_account_id,
                    amount_cents=payout.amount_cents,
                    fee_cents=payout.fee_cents,
                    currency=payout.currency,
                )
                cls.get_logger().info(
                    "Payout paid, escrow released",
                    extra={"payout_id": str(payout_id), "escrow_id": str(escrow.id)},
                )
            else:
                if payout.state == PayoutState.FAILED:
                    return payout

                apply_transition(payout, "fail", failure_reason)
                payout.save()
                cls.get_logger().warning(
                    "Payout failed",
                    extra={"payout_id": str(payout_id), "failure_reason": failure_reason},
                )

        return payout

    @classmethod
    def get_payout(cls, payout_id: uuid.UUID) -> Payout:
        try:
            return Payout.objects.get(id=payout_id)
        except Payout.DoesNotExist:
            raise EscrowNotFoundError(
                f"Payout {payout_id} not found",
                error_code="PAYOUT_NOT_FOUND",
                details={"payout_id": str(payout_id)},
            )

    @classmethod
    def _lock_payout(cls, payout_id: uuid.UUID) -> Payout:
        try:
            return Payout.objects.select_for_update().get(id=payout_id)
        except Payout.DoesNotExist:
            raise EscrowNotFoundError(
                f"Payout {payout_id} not found",
                error_code="PAYOUT_NOT_FOUND",
                details={"payout_id": str(payout_id)},
            )

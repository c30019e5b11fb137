"""
Refund service: return of escrow funds to the payer.

Refunds may be partial and may be taken before or after capture. A
refund is created PENDING, submitted to the processor outside the
transaction, and only written to the ledger once the processor confirms
it (refund_succeeded). Refunds still pending and payouts still in
flight count against the refundable balance, so concurrent requests can
never over-refund.

Usage:
    from escrow.services import RefundService

    refund = RefundService.initiate_refund(escrow.id, 2500, reason="Milestone descoped")
"""

from __future__ import annotations

import logging
import uuid

from django.db.models import F, Sum

from core.exceptions import ValidationError
from core.services import BaseService

from escrow.adapters import IdempotencyKeyGenerator, get_payment_processor
from escrow.exceptions import (
    EscrowNotFoundError,
    InvalidStateTransitionError,
    ProcessorCommunicationError,
    ProcessorRejectedError,
    RefundExceedsBalanceError,
)
from escrow.ledger import ledger
from escrow.locks import DistributedLock, escrow_lock_key
from escrow.models import Escrow, Payout, Refund
from escrow.models.refund import REFUND_REASON_MAX_LENGTH
from escrow.services.escrow_service import validate_amount
from escrow.services.transitions import apply_transition
from escrow.state_machines import RefundState
from escrow.state_machines.states import OPEN_PAYOUT_STATES


logger = logging.getLogger(__name__)


REFUND_LOCK_TTL = 60

REFUND_LOCK_TIMEOUT = 10.0

REFUND_STATUS_SUCCEEDED = "succeeded"
REFUND_STATUS_FAILED = "failed"


class RefundService(BaseService):
    """
    Service for refunding escrow funds to the payer.

    Error Handling:
        - ProcessorCommunicationError: raised, refund stays PENDING without
          a processor id; retry_refund() re-submits with the same key
        - ProcessorRejectedError: refund marked FAILED, error raised
    """

    @classmethod
    def initiate_refund(
        cls,
        escrow_id: uuid.UUID,
        amount_cents: int,
        reason: str = "",
    ) -> Refund:
        """
        Request a refund of amount_cents from an escrow.

        Returns:
            The PENDING refund (processor id stored once accepted)

        Raises:
            InvalidAmountError: amount_cents is not a positive integer
            InvalidStateTransitionError: escrow is not FUNDED, CAPTURED or
                PARTIALLY_REFUNDED
            RefundExceedsBalanceError: amount exceeds the refundable balance
            ProcessorCommunicationError: outcome unknown, refund stays PENDING
            ProcessorRejectedError: refund marked FAILED
        """
        validate_amount(amount_cents)
        reason = reason or ""
        if len(reason) > REFUND_REASON_MAX_LENGTH:
            raise ValidationError(
                f"Refund reason must be at most {REFUND_REASON_MAX_LENGTH} characters",
                error_code="INVALID_REFUND_REASON",
                details={"length": len(reason)},
            )

        with DistributedLock(
            escrow_lock_key(escrow_id), ttl=REFUND_LOCK_TTL, timeout=REFUND_LOCK_TIMEOUT
        ):
            with cls.atomic():
                try:
                    escrow = Escrow.objects.select_for_update().get(id=escrow_id)
                except Escrow.DoesNotExist:
                    raise EscrowNotFoundError(
                        f"Escrow {escrow_id} not found",
                        details={"escrow_id": str(escrow_id)},
                    )

                if not escrow.can_refund:
                    raise InvalidStateTransitionError(
                        f"Cannot refund escrow {escrow_id} in '{escrow.state}' state",
                        details={
                            "escrow_id": str(escrow_id),
                            "current_state": escrow.state,
                            "transition": "refund",
                        },
                    )

                available = cls.get_refundable_amount(escrow)
                if amount_cents > available:
                    raise RefundExceedsBalanceError(
                        f"Refund of {amount_cents} exceeds refundable balance {available}",
                        details={
                            "escrow_id": str(escrow_id),
                            "requested_cents": amount_cents,
                            "available_cents": available,
                        },
                    )

                refund = Refund.objects.create(
                    escrow=escrow,
                    amount_cents=amount_cents,
                    currency=escrow.currency,
                    reason=reason,
                )

            cls.get_logger().info(
                "Refund created",
                extra={
                    "escrow_id": str(escrow_id),
                    "refund_id": str(refund.id),
                    "amount_cents": amount_cents,
                },
            )
            return cls._submit_refund(refund, escrow.processor_payment_intent_id)

    @classmethod
    def get_refundable_amount(cls, escrow: Escrow) -> int:
        """
        Funded amount minus succeeded and pending refunds, minus payouts
        paid or in flight (net plus fee).
        """
        funded = ledger.get_escrow_balance(escrow.id, escrow.currency).funded
        refunded = (
            Refund.objects.filter(
                escrow=escrow,
                state__in=[RefundState.SUCCEEDED, RefundState.PENDING],
            ).aggregate(total=Sum("amount_cents"))["total"]
            or 0
        )
        paid_out = (
            Payout.objects.filter(escrow=escrow, state__in=OPEN_PAYOUT_STATES).aggregate(
                total=Sum(F("amount_cents") + F("fee_cents"))
            )["total"]
            or 0
        )
        return funded - refunded - paid_out

    @classmethod
    def retry_refund(cls, refund_id: uuid.UUID) -> Refund:
        """
        Re-submit a PENDING refund the processor never acknowledged.

        Refunds that already carry a processor id, or are no longer
        PENDING, are returned unchanged.
        """
        refund = cls.get_refund(refund_id)
        with DistributedLock(
            escrow_lock_key(refund.escrow_id), ttl=REFUND_LOCK_TTL, timeout=REFUND_LOCK_TIMEOUT
        ):
            refund = Refund.objects.select_related("escrow").get(id=refund_id)
            if refund.state != RefundState.PENDING or refund.is_submitted:
                return refund
            return cls._submit_refund(refund, refund.escrow.processor_payment_intent_id)

    @classmethod
    def _submit_refund(cls, refund: Refund, payment_intent_id: str) -> Refund:
        idempotency_key = IdempotencyKeyGenerator.generate("create_refund", refund.id)

        try:
            result = get_payment_processor().create_refund(
                payment_intent_id=payment_intent_id,
                amount_cents=refund.amount_cents,
                idempotency_key=idempotency_key,
                reason=refund.reason or None,
                metadata={"escrow_id": str(refund.escrow_id), "refund_id": str(refund.id)},
            )
        except ProcessorCommunicationError as e:
            cls.get_logger().warning(
                f"Transient processor error, refund left pending: {type(e).__name__}",
                extra={"refund_id": str(refund.id), "error": str(e)},
            )
            raise
        except ProcessorRejectedError as e:
            cls.get_logger().error(
                "Processor rejected refund",
                extra={"refund_id": str(refund.id), "error": str(e)},
            )
            with cls.atomic():
                refund = Refund.objects.select_for_update().get(id=refund.id)
                if refund.state == RefundState.PENDING:
                    apply_transition(refund, "fail", str(e))
                    refund.save()
            raise

        with cls.atomic():
            refund = Refund.objects.select_for_update().get(id=refund.id)
            if not refund.processor_refund_id:
                refund.mark_submitted(result.id)
                refund.save(
                    update_fields=["processor_refund_id", "submitted_at", "version", "updated_at"]
                )

        cls.get_logger().info(
            "Refund submitted",
            extra={"refund_id": str(refund.id), "processor_refund_id": result.id},
        )
        return refund

    @classmethod
    def confirm_refund(
        cls,
        refund_id: uuid.UUID,
        status: str,
        failure_reason: str | None = None,
        processor_refund_id: str | None = None,
    ) -> Refund:
        """
        Apply the processor's refund outcome. Called by the reconciliation listener.

        succeeded: REFUND entry (from held before capture, from captured
        after), refund SUCCEEDED, escrow REFUNDED once the ledger shows the
        whole funded amount refunded, else PARTIALLY_REFUNDED.
        failed: refund FAILED; no ledger entry, escrow unchanged.

        Confirming a refund already in the confirmed state is a no-op.

        processor_refund_id is stored on a refund whose submission response
        was lost, in the same transaction as the outcome.

        Raises:
            InvalidStateTransitionError: the outcome contradicts the refund's
                state, or processor_refund_id belongs to another refund
        """
        if status not in (REFUND_STATUS_SUCCEEDED, REFUND_STATUS_FAILED):
            raise ValidationError(
                f"Unknown refund status '{status}'",
                error_code="INVALID_REFUND_STATUS",
                details={"status": status},
            )

        with cls.atomic():
            try:
                refund = Refund.objects.select_for_update().get(id=refund_id)
            except Refund.DoesNotExist:
                raise EscrowNotFoundError(
                    f"Refund {refund_id} not found",
                    error_code="REFUND_NOT_FOUND",
                    details={"refund_id": str(refund_id)},
                )

            if (
                processor_refund_id
                and refund.processor_refund_id
                and refund.processor_refund_id != processor_refund_id
            ):
                raise InvalidStateTransitionError(
                    f"Refund {refund_id} was submitted as {refund.processor_refund_id}",
                    error_code="REFUND_MISMATCH",
                    details={
                        "refund_id": str(refund_id),
                        "stored_processor_refund_id": refund.processor_refund_id,
                        "processor_refund_id": processor_refund_id,
                    },
                )

            if status == REFUND_STATUS_SUCCEEDED:
                if refund.state == RefundState.SUCCEEDED:
                    return refund

                escrow = Escrow.objects.select_for_update().get(id=refund.escrow_id)
                if processor_refund_id and not refund.is_submitted:
                    refund.mark_submitted(processor_refund_id)
                apply_transition(refund, "succeed")
                refund.save()

                ledger.record_refund(
                    escrow_id=escrow.id,
                    refund_id=refund.id,
                    amount_cents=refund.amount_cents,
                    currency=refund.currency,
                    from_captured=escrow.is_captured(),
                )

                balance = ledger.get_escrow_balance(escrow.id, escrow.currency)
                if balance.refunded >= balance.funded:
                    apply_transition(escrow, "mark_refunded")
                    escrow.save()
                else:
                    apply_transition(escrow, "mark_partially_refunded")
                    escrow.save()

                cls.get_logger().info(
                    "Refund succeeded",
                    extra={
                        "refund_id": str(refund_id),
                        "escrow_id": str(escrow.id),
                        "escrow_state": escrow.state,
                        "refunded_cents": balance.refunded,
                    },
                )
            else:
                if refund.state == RefundState.FAILED:
                    return refund

                if processor_refund_id and not refund.is_submitted:
                    refund.mark_submitted(processor_refund_id)
                apply_transition(refund, "fail", failure_reason)
                refund.save()
                cls.get_logger().warning(
                    "Refund failed",
                    extra={"refund_id": str(refund_id), "failure_reason": failure_reason},
                )

        return refund

    @classmethod
    def get_refund(cls, refund_id: uuid.UUID) -> Refund:
        try:
            return Refund.objects.get(id=refund_id)
        except Refund.DoesNotExist:
            raise EscrowNotFoundError(
                f"Refund {refund_id} not found",
                error_code="REFUND_NOT_FOUND",
                details={"refund_id": str(refund_id)},
            )

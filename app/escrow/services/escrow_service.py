"""
Escrow service: lifecycle of the funds held against a milestone.

Operations that call the payment processor follow a two-phase pattern:
1. Validate and persist local state in a transaction, commit
2. Call the processor outside any transaction
3. Store the processor's answer in a second transaction

A distributed lock per escrow serializes the whole sequence, and the
idempotency key of each processor call is derived from the escrow id,
so a retried step never repeats its effect at the processor.

Usage:
    from escrow.services import EscrowService

    escrow = EscrowService.create_escrow(milestone_id=42, amount_cents=10000)
    ...
    escrow = EscrowService.capture(escrow.id)
"""

from __future__ import annotations

import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Sum

from django_fsm import can_proceed

from core.exceptions import ValidationError
from core.services import BaseService

from escrow.adapters import IdempotencyKeyGenerator, get_payment_processor
from escrow.exceptions import (
    DuplicateEscrowError,
    EscrowNotFoundError,
    InvalidAmountError,
    InvalidStateTransitionError,
    ProcessorError,
)
from escrow.ledger import ledger
from escrow.locks import DistributedLock, escrow_lock_key
from escrow.models import Escrow, Refund
from escrow.services.transitions import apply_transition
from escrow.state_machines import EscrowState, RefundState
from escrow.state_machines.states import INACTIVE_ESCROW_STATES

if TYPE_CHECKING:
    from django.db.models import QuerySet


logger = logging.getLogger(__name__)


# Distributed lock TTL for escrow operations (seconds)
ESCROW_LOCK_TTL = 60

# Lock acquisition timeout (seconds)
ESCROW_LOCK_TIMEOUT = 10.0


def validate_amount(amount_cents) -> None:
    """
    Raises:
        InvalidAmountError: Unless amount_cents is a positive integer
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidAmountError(
            "Amount must be a positive integer number of minor units",
            details={"amount_cents": amount_cents},
        )


def calculate_platform_fee(amount_cents: int, percent=None) -> int:
    """
    Platform fee for a gross amount, rounded half up to whole minor units.

    Args:
        amount_cents: Gross amount
        percent: Fee percentage (defaults to ESCROW_PLATFORM_FEE_PERCENT)
    """
    if percent is None:
        percent = settings.ESCROW_PLATFORM_FEE_PERCENT
    fee = Decimal(amount_cents) * Decimal(str(percent)) / Decimal(100)
    return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class EscrowService(BaseService):
    """
    Service for the escrow state machine.

    Transitions:
        create_escrow: -> PENDING (registers the payment intent)
        confirm_funded: PENDING -> FUNDED + FUND entry (listener only)
        cancel: PENDING -> CANCELLED
        capture: FUNDED -> CAPTURED + CAPTURE entry

    Payout and refund transitions live in PayoutService and RefundService.
    """

    # =========================================================================
    # Creation & Funding
    # =========================================================================

    @classmethod
    def create_escrow(
        cls,
        milestone_id: int,
        amount_cents: int,
        currency: str | None = None,
        payment_method_ref: str | None = None,
        metadata: dict | None = None,
    ) -> Escrow:
        """
        Create a PENDING escrow for a milestone and register its funding
        request with the processor.

        No ledger entry is written; money only moves on funding confirmation.

        Raises:
            InvalidAmountError: amount_cents is not a positive integer
            DuplicateEscrowError: the milestone already has an active escrow
            ProcessorError: intent registration failed (escrow stays PENDING)
        """
        validate_amount(amount_cents)
        currency = (currency or settings.ESCROW_DEFAULT_CURRENCY).lower()
        if len(currency) != 3:
            raise ValidationError(
                "Currency must be a 3-letter ISO 4217 code",
                error_code="INVALID_CURRENCY",
                details={"currency": currency},
            )

        with DistributedLock(
            f"milestone:{milestone_id}", ttl=ESCROW_LOCK_TTL, timeout=ESCROW_LOCK_TIMEOUT
        ):
            with cls.atomic():
                active = cls.get_active_escrow_for_milestone(milestone_id)
                if active is not None:
                    raise DuplicateEscrowError(
                        f"Milestone {milestone_id} already has an active escrow",
                        details={"milestone_id": milestone_id, "escrow_id": str(active.id)},
                    )
                try:
                    with transaction.atomic():
                        escrow = Escrow.objects.create(
                            milestone_id=milestone_id,
                            amount_cents=amount_cents,
                            currency=currency,
                            payment_method_ref=payment_method_ref,
                            metadata=metadata or {},
                        )
                except IntegrityError:
                    raise DuplicateEscrowError(
                        f"Milestone {milestone_id} already has an active escrow",
                        details={"milestone_id": milestone_id},
                    )

        cls.get_logger().info(
            "Escrow created",
            extra={
                "escrow_id": str(escrow.id),
                "milestone_id": milestone_id,
                "amount_cents": amount_cents,
                "currency": currency,
            },
        )

        return cls._register_intent(escrow)

    @classmethod
    def submit_funding(cls, escrow_id: uuid.UUID) -> Escrow:
        """
        Re-issue the funding request of a PENDING escrow whose intent was
        never stored (e.g. the processor timed out during create_escrow).

        Uses the same idempotency key as the original request.
        """
        escrow = cls.get_escrow(escrow_id)
        if escrow.state != EscrowState.PENDING:
            raise InvalidStateTransitionError(
                f"Cannot submit funding for escrow {escrow_id} in '{escrow.state}' state",
                details={"escrow_id": str(escrow_id), "current_state": escrow.state},
            )
        if escrow.processor_payment_intent_id:
            return escrow
        return cls._register_intent(escrow)

    @classmethod
    def _register_intent(cls, escrow: Escrow) -> Escrow:
        idempotency_key = IdempotencyKeyGenerator.generate("create_intent", escrow.id)

        try:
            intent = get_payment_processor().create_intent(
                amount_cents=escrow.amount_cents,
                currency=escrow.currency,
                idempotency_key=idempotency_key,
                payment_method_ref=escrow.payment_method_ref,
                metadata={
                    "escrow_id": str(escrow.id),
                    "milestone_id": str(escrow.milestone_id),
                },
            )
        except ProcessorError as e:
            cls.get_logger().warning(
                "Funding request failed, escrow left pending",
                extra={
                    "escrow_id": str(escrow.id),
                    "error": str(e),
                    "is_retryable": e.is_retryable,
                },
            )
            raise

        with cls.atomic():
            escrow = Escrow.objects.select_for_update().get(id=escrow.id)
            if not escrow.processor_payment_intent_id:
                escrow.processor_payment_intent_id = intent.id
                escrow.save(update_fields=["processor_payment_intent_id", "version", "updated_at"])

        cls.get_logger().info(
            "Funding request registered",
            extra={"escrow_id": str(escrow.id), "payment_intent_id": intent.id},
        )
        return escrow

    @classmethod
    def confirm_funded(cls, escrow_id: uuid.UUID, processor_payment_intent_id: str) -> Escrow:
        """
        Apply the processor's funding confirmation.

        PENDING -> FUNDED and the FUND entry (payer -> escrow held) commit
        together. Called by the reconciliation listener.

        An escrow with no stored intent id (its create_intent response was
        lost) takes the confirmed id; the binding is logged and noted in
        escrow.metadata for audit.

        Raises:
            InvalidStateTransitionError: escrow is not PENDING, or the intent
                id differs from the one stored (nothing is changed)
        """
        with cls.atomic():
            escrow = cls._lock_escrow(escrow_id)

            if (
                escrow.processor_payment_intent_id
                and escrow.processor_payment_intent_id != processor_payment_intent_id
            ):
                raise InvalidStateTransitionError(
                    f"Payment intent {processor_payment_intent_id} does not belong to escrow {escrow_id}",
                    error_code="PAYMENT_INTENT_MISMATCH",
                    details={
                        "escrow_id": str(escrow_id),
                        "expected": escrow.processor_payment_intent_id,
                        "received": processor_payment_intent_id,
                    },
                )

            apply_transition(escrow, "confirm_funding")
            if not escrow.processor_payment_intent_id:
                cls.get_logger().warning(
                    "Binding payment intent from funding confirmation",
                    extra={
                        "escrow_id": str(escrow_id),
                        "payment_intent_id": processor_payment_intent_id,
                    },
                )
                escrow.metadata = {
                    **(escrow.metadata or {}),
                    "payment_intent_bound_by_confirmation": processor_payment_intent_id,
                }
            escrow.processor_payment_intent_id = processor_payment_intent_id
            escrow.save()

            ledger.record_fund(escrow.id, escrow.amount_cents, escrow.currency)

        cls.get_logger().info(
            "Escrow funded",
            extra={"escrow_id": str(escrow.id), "amount_cents": escrow.amount_cents},
        )
        return escrow

    # =========================================================================
    # Cancellation & Capture
    # =========================================================================

    @classmethod
    def cancel(cls, escrow_id: uuid.UUID) -> Escrow:
        """
        PENDING -> CANCELLED. No money has moved, so no ledger entry.

        Raises:
            InvalidStateTransitionError: escrow is not PENDING
        """
        with DistributedLock(
            escrow_lock_key(escrow_id), ttl=ESCROW_LOCK_TTL, timeout=ESCROW_LOCK_TIMEOUT
        ):
            with cls.atomic():
                escrow = cls._lock_escrow(escrow_id)
                apply_transition(escrow, "cancel")
                escrow.save()

        cls.get_logger().info("Escrow cancelled", extra={"escrow_id": str(escrow_id)})
        return escrow

    @classmethod
    def capture(cls, escrow_id: uuid.UUID) -> Escrow:
        """
        Capture the held funds at the processor, then move them from held
        to captured in the ledger.

        Transition: FUNDED -> CAPTURED (also PARTIALLY_REFUNDED before capture)

        Raises:
            InvalidStateTransitionError: escrow cannot be captured, or pending refunds
                already cover the whole held amount
            ProcessorCommunicationError: outcome unknown, escrow left FUNDED
            ProcessorRejectedError: processor refused, escrow left FUNDED
        """
        with DistributedLock(
            escrow_lock_key(escrow_id), ttl=ESCROW_LOCK_TTL, timeout=ESCROW_LOCK_TIMEOUT
        ):
            # Phase 1: validate
            escrow = cls.get_escrow(escrow_id)
            if not can_proceed(escrow.capture):
                raise InvalidStateTransitionError(
                    f"Cannot capture escrow {escrow_id} from '{escrow.state}' state",
                    details={
                        "escrow_id": str(escrow_id),
                        "current_state": escrow.state,
                        "transition": "capture",
                    },
                )
            cls._check_held_not_pending_refund(escrow)

            # Phase 2: processor call, outside any transaction
            try:
                get_payment_processor().capture_intent(
                    escrow.processor_payment_intent_id,
                    idempotency_key=IdempotencyKeyGenerator.generate("capture_intent", escrow.id),
                )
            except ProcessorError as e:
                cls.get_logger().warning(
                    "Capture failed at processor, escrow left uncaptured",
                    extra={
                        "escrow_id": str(escrow_id),
                        "error": str(e),
                        "is_retryable": e.is_retryable,
                    },
                )
                raise

            # Phase 3: transition and ledger entry together
            with cls.atomic():
                escrow = cls._lock_escrow(escrow_id)
                apply_transition(escrow, "capture")
                escrow.save()
                ledger.record_capture(escrow.id, escrow.currency)

        cls.get_logger().info("Escrow captured", extra={"escrow_id": str(escrow_id)})
        return escrow

    # =========================================================================
    # Queries
    # =========================================================================

    @classmethod
    def get_escrow(cls, escrow_id: uuid.UUID) -> Escrow:
        try:
            return Escrow.objects.get(id=escrow_id)
        except Escrow.DoesNotExist:
            raise EscrowNotFoundError(
                f"Escrow {escrow_id} not found",
                details={"escrow_id": str(escrow_id)},
            )

    @classmethod
    def get_active_escrow_for_milestone(cls, milestone_id: int) -> Escrow | None:
        """The escrow occupying a milestone (not CANCELLED/REFUNDED), if any."""
        return (
            Escrow.objects.filter(milestone_id=milestone_id)
            .exclude(state__in=INACTIVE_ESCROW_STATES)
            .first()
        )

    @classmethod
    def list_escrows_by_state(cls, state: str) -> QuerySet[Escrow]:
        return Escrow.objects.filter(state=state).order_by("created_at")

    @classmethod
    def calculate_platform_fee(cls, amount_cents: int) -> int:
        return calculate_platform_fee(amount_cents)

    @classmethod
    def _lock_escrow(cls, escrow_id: uuid.UUID) -> Escrow:
        """Row-lock an escrow. Call inside a transaction."""
        try:
            return Escrow.objects.select_for_update().get(id=escrow_id)
        except Escrow.DoesNotExist:
            raise EscrowNotFoundError(
                f"Escrow {escrow_id} not found",
                details={"escrow_id": str(escrow_id)},
            )

    @classmethod
    def _check_held_not_pending_refund(cls, escrow: Escrow) -> None:
        """
        Raises:
            InvalidStateTransitionError: PENDING refunds cover everything still
                held, so a confirmation could leave nothing to capture
        """
        held_cents = ledger.get_escrow_balance(escrow.id, escrow.currency).held
        pending_cents = (
            Refund.objects.filter(escrow=escrow, state=RefundState.PENDING).aggregate(
                total=Sum("amount_cents")
            )["total"]
            or 0
        )
        if pending_cents >= held_cents:
            raise InvalidStateTransitionError(
                f"Cannot capture escrow {escrow.id} while pending refunds cover its held funds",
                error_code="REFUND_PENDING",
                details={
                    "escrow_id": str(escrow.id),
                    "current_state": escrow.state,
                    "transition": "capture",
                    "held_cents": held_cents,
                    "pending_refund_cents": pending_cents,
                },
            )

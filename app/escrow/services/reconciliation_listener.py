"""
Reconciliation listener: applies processor confirmations to local state.

Every normalized ProcessorEvent ends in exactly one of three outcomes:

- APPLIED: the matching Escrow/Payout/Refund transition and its ledger
  entries were committed together
- REPLAYED: the entity was already in the state the event reports; the
  event is acknowledged without side effects
- FLAGGED: the event could not be applied (unknown reference, malformed,
  mismatched, or contradicting a terminal state). It is stored as an
  UnreconcilableEvent and logged at ERROR, never dropped

Entities are looked up by processor reference id. When the processor
confirms before the reference id was stored locally (the response to
create_* was lost or slow), the event's metadata ids are used instead.

Usage:
    from escrow.services import ReconciliationListener

    result = ReconciliationListener.handle(event)
    if result.outcome == ReconciliationOutcome.FLAGGED:
        ...
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from django.db import IntegrityError, transaction
from django.db.models import F

from core.services import BaseService

from escrow.events import ProcessorEvent, ProcessorEventType
from escrow.exceptions import (
    EscrowNotFoundError,
    InvalidStateTransitionError,
    UnreconcilableEventError,
)
from escrow.models import Escrow, Payout, Refund, UnreconcilableEvent
from escrow.services.escrow_service import EscrowService
from escrow.services.payout_service import (
    PAYOUT_STATUS_FAILED,
    PAYOUT_STATUS_PAID,
    PayoutService,
)
from escrow.services.refund_service import (
    REFUND_STATUS_FAILED,
    REFUND_STATUS_SUCCEEDED,
    RefundService,
)
from escrow.state_machines import (
    DiscrepancyResolution,
    EscrowState,
    PayoutState,
    RefundState,
    UnreconcilableReason,
)


logger = logging.getLogger(__name__)


# Error codes raised by the confirm_* operations when a processor id
# belongs to a different entity
MISMATCH_ERROR_CODES = ("PAYMENT_INTENT_MISMATCH", "TRANSFER_MISMATCH", "REFUND_MISMATCH")


class ReconciliationOutcome(str, Enum):
    APPLIED = "applied"
    REPLAYED = "replayed"
    FLAGGED = "flagged"


@dataclass
class ReconciliationResult:
    """What the listener did with one event."""

    outcome: ReconciliationOutcome
    event_type: str
    reference_id: str | None
    entity_id: uuid.UUID | None = None
    unreconcilable_event_id: uuid.UUID | None = None
    message: str = ""

    @property
    def acknowledged(self) -> bool:
        return self.outcome != ReconciliationOutcome.FLAGGED


class ReconciliationListener(BaseService):
    """
    Applies processor confirmations to escrows, payouts and refunds.

    Handlers by event type:
        payment_succeeded  -> EscrowService.confirm_funded
        payment_failed     -> EscrowService.cancel
        transfer_paid      -> PayoutService.confirm_payout(paid)
        transfer_failed    -> PayoutService.confirm_payout(failed)
        refund_succeeded   -> RefundService.confirm_refund(succeeded)
        refund_failed      -> RefundService.confirm_refund(failed)
    """

    HANDLERS = {
        ProcessorEventType.PAYMENT_SUCCEEDED: "_on_payment_succeeded",
        ProcessorEventType.PAYMENT_FAILED: "_on_payment_failed",
        ProcessorEventType.TRANSFER_PAID: "_on_transfer_paid",
        ProcessorEventType.TRANSFER_FAILED: "_on_transfer_failed",
        ProcessorEventType.REFUND_SUCCEEDED: "_on_refund_succeeded",
        ProcessorEventType.REFUND_FAILED: "_on_refund_failed",
    }

    @classmethod
    def handle(cls, event: ProcessorEvent) -> ReconciliationResult:
        """
        Apply one processor event.

        Never raises for an event that cannot be applied; it is flagged
        instead. Processor and database errors propagate so the caller
        (a Celery task) can retry.
        """
        cls.get_logger().info(
            "Reconciling processor event",
            extra={
                "event_id": event.event_id,
                "event_type": event.event_type,
                "reference_id": event.reference_id,
            },
        )
        try:
            return cls._apply(event)
        except UnreconcilableEventError as e:
            record = cls._flag(event, e)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.FLAGGED,
                event_type=event.event_type,
                reference_id=event.reference_id,
                unreconcilable_event_id=record.id,
                message=e.message,
            )

    # =========================================================================
    # Dispatch
    # =========================================================================

    @classmethod
    def _apply(cls, event: ProcessorEvent) -> ReconciliationResult:
        handler_name = cls.HANDLERS.get(event.event_type)
        if handler_name is None:
            raise UnreconcilableEventError(
                f"Unsupported event type '{event.event_type}'",
                reason=UnreconcilableReason.MALFORMED_EVENT,
                details={"event_type": event.event_type},
            )
        if not event.reference_id:
            raise UnreconcilableEventError(
                f"Event {event.event_id} carries no processor reference",
                reason=UnreconcilableReason.MALFORMED_EVENT,
                details={"event_type": event.event_type},
            )
        if event.amount_cents is not None and (
            not isinstance(event.amount_cents, int) or event.amount_cents < 0
        ):
            raise UnreconcilableEventError(
                f"Event {event.event_id} carries an invalid amount",
                reason=UnreconcilableReason.MALFORMED_EVENT,
                details={"amount_cents": event.amount_cents},
            )

        try:
            return getattr(cls, handler_name)(event)
        except InvalidStateTransitionError as e:
            if e.error_code in MISMATCH_ERROR_CODES:
                raise UnreconcilableEventError(
                    e.message,
                    reason=UnreconcilableReason.REFERENCE_MISMATCH,
                    details=dict(e.details),
                )
            # Another worker moved the entity between our read and the transition
            cls.get_logger().info(
                "Event raced a concurrent transition, acknowledged",
                extra={
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "reference_id": event.reference_id,
                    "error": e.message,
                },
            )
            return cls._replayed(event, None, e.message)

    # =========================================================================
    # Payment intent events
    # =========================================================================

    @classmethod
    def _on_payment_succeeded(cls, event: ProcessorEvent) -> ReconciliationResult:
        escrow = cls._find_escrow(event)
        cls._check_amount(event, escrow.amount_cents, escrow.currency)

        if escrow.state == EscrowState.CANCELLED:
            raise cls._conflict(event, "escrow", escrow.id, escrow.state)
        if escrow.state != EscrowState.PENDING:
            return cls._replayed(event, escrow.id, f"escrow already {escrow.state}")

        EscrowService.confirm_funded(escrow.id, event.reference_id)
        return cls._applied(event, escrow.id)

    @classmethod
    def _on_payment_failed(cls, event: ProcessorEvent) -> ReconciliationResult:
        escrow = cls._find_escrow(event)

        if escrow.state in (EscrowState.CANCELLED, EscrowState.REFUNDED):
            return cls._replayed(event, escrow.id, f"escrow already {escrow.state}")
        if escrow.state != EscrowState.PENDING:
            raise cls._conflict(event, "escrow", escrow.id, escrow.state)

        EscrowService.cancel(escrow.id)
        return cls._applied(event, escrow.id)

    # =========================================================================
    # Transfer events
    # =========================================================================

    @classmethod
    def _on_transfer_paid(cls, event: ProcessorEvent) -> ReconciliationResult:
        payout = cls._find_payout(event)
        cls._check_amount(event, payout.amount_cents, payout.currency)

        if payout.state == PayoutState.PAID:
            return cls._replayed(event, payout.id, "payout already paid")
        if payout.state == PayoutState.FAILED:
            raise cls._conflict(event, "payout", payout.id, payout.state)

        PayoutService.confirm_payout(payout.id, event.reference_id, PAYOUT_STATUS_PAID)
        return cls._applied(event, payout.id)

    @classmethod
    def _on_transfer_failed(cls, event: ProcessorEvent) -> ReconciliationResult:
        payout = cls._find_payout(event)

        if payout.state == PayoutState.FAILED:
            return cls._replayed(event, payout.id, "payout already failed")
        if payout.state == PayoutState.PAID:
            raise cls._conflict(event, "payout", payout.id, payout.state)

        PayoutService.confirm_payout(
            payout.id, event.reference_id, PAYOUT_STATUS_FAILED, event.failure_reason
        )
        return cls._applied(event, payout.id)

    # =========================================================================
    # Refund events
    # =========================================================================

    @classmethod
    def _on_refund_succeeded(cls, event: ProcessorEvent) -> ReconciliationResult:
        refund = cls._find_refund(event)
        cls._check_amount(event, refund.amount_cents, refund.currency)

        if refund.state == RefundState.SUCCEEDED:
            return cls._replayed(event, refund.id, "refund already succeeded")
        if refund.state == RefundState.FAILED:
            raise cls._conflict(event, "refund", refund.id, refund.state)

        RefundService.confirm_refund(
            refund.id, REFUND_STATUS_SUCCEEDED, processor_refund_id=event.reference_id
        )
        return cls._applied(event, refund.id)

    @classmethod
    def _on_refund_failed(cls, event: ProcessorEvent) -> ReconciliationResult:
        refund = cls._find_refund(event)

        if refund.state == RefundState.FAILED:
            return cls._replayed(event, refund.id, "refund already failed")
        if refund.state == RefundState.SUCCEEDED:
            raise cls._conflict(event, "refund", refund.id, refund.state)

        RefundService.confirm_refund(
            refund.id,
            REFUND_STATUS_FAILED,
            event.failure_reason,
            processor_refund_id=event.reference_id,
        )
        return cls._applied(event, refund.id)

    # =========================================================================
    # Lookups
    # =========================================================================

    @classmethod
    def _find_escrow(cls, event: ProcessorEvent) -> Escrow:
        escrow = Escrow.objects.filter(processor_payment_intent_id=event.reference_id).first()
        metadata_id = cls._metadata_id(event, "escrow_id")

        if escrow is not None:
            if metadata_id and str(escrow.id) != metadata_id:
                raise cls._mismatch(event, "escrow", escrow.id, metadata_id)
            return escrow

        # Funding confirmed before the intent id was stored
        if metadata_id:
            escrow = Escrow.objects.filter(id=metadata_id).first()
            if escrow is not None:
                if escrow.processor_payment_intent_id:
                    raise cls._mismatch(event, "escrow", escrow.id, metadata_id)
                return escrow

        raise cls._unknown(event, "escrow")

    @classmethod
    def _find_payout(cls, event: ProcessorEvent) -> Payout:
        payout = Payout.objects.filter(processor_transfer_id=event.reference_id).first()
        metadata_id = cls._metadata_id(event, "payout_id")

        if payout is not None:
            if metadata_id and str(payout.id) != metadata_id:
                raise cls._mismatch(event, "payout", payout.id, metadata_id)
            return payout

        if metadata_id:
            payout = Payout.objects.filter(id=metadata_id).first()
            if payout is not None:
                if payout.processor_transfer_id:
                    raise cls._mismatch(event, "payout", payout.id, metadata_id)
                return payout

        raise cls._unknown(event, "payout")

    @classmethod
    def _find_refund(cls, event: ProcessorEvent) -> Refund:
        refund = Refund.objects.filter(processor_refund_id=event.reference_id).first()
        metadata_id = cls._metadata_id(event, "refund_id")

        if refund is not None:
            if metadata_id and str(refund.id) != metadata_id:
                raise cls._mismatch(event, "refund", refund.id, metadata_id)
            return refund

        if metadata_id:
            refund = Refund.objects.filter(id=metadata_id).first()
            if refund is not None:
                if refund.processor_refund_id:
                    raise cls._mismatch(event, "refund", refund.id, metadata_id)
                # Submission response lost; confirm_refund stores the id
                return refund

        raise cls._unknown(event, "refund")

    @staticmethod
    def _metadata_id(event: ProcessorEvent, key: str) -> str | None:
        """Internal id from the processor object's metadata, if it is a valid UUID."""
        metadata = event.payload.get("metadata") or {}
        value = metadata.get(key) if isinstance(metadata, dict) else None
        if not value:
            return None
        try:
            return str(uuid.UUID(str(value)))
        except ValueError:
            return None

    @staticmethod
    def _check_amount(event: ProcessorEvent, expected_cents: int, expected_currency: str) -> None:
        if event.amount_cents is not None and event.amount_cents != expected_cents:
            raise UnreconcilableEventError(
                f"Event amount {event.amount_cents} does not match expected {expected_cents}",
                reason=UnreconcilableReason.AMOUNT_MISMATCH,
                details={"expected_cents": expected_cents, "received_cents": event.amount_cents},
            )
        if event.currency and event.currency.lower() != expected_currency.lower():
            raise UnreconcilableEventError(
                f"Event currency {event.currency} does not match expected {expected_currency}",
                reason=UnreconcilableReason.AMOUNT_MISMATCH,
                details={"expected_currency": expected_currency, "received_currency": event.currency},
            )

    # =========================================================================
    # Outcomes
    # =========================================================================

    @staticmethod
    def _unknown(event: ProcessorEvent, entity: str) -> UnreconcilableEventError:
        return UnreconcilableEventError(
            f"No {entity} matches processor reference {event.reference_id}",
            reason=UnreconcilableReason.UNKNOWN_REFERENCE,
            details={"entity": entity, "reference_id": event.reference_id},
        )

    @staticmethod
    def _mismatch(
        event: ProcessorEvent, entity: str, entity_id: uuid.UUID, metadata_id: str
    ) -> UnreconcilableEventError:
        return UnreconcilableEventError(
            f"Processor reference {event.reference_id} and metadata point at different {entity}s",
            reason=UnreconcilableReason.REFERENCE_MISMATCH,
            details={
                "entity": entity,
                "entity_id": str(entity_id),
                "metadata_id": metadata_id,
                "reference_id": event.reference_id,
            },
        )

    @staticmethod
    def _conflict(
        event: ProcessorEvent, entity: str, entity_id: uuid.UUID, state: str
    ) -> UnreconcilableEventError:
        return UnreconcilableEventError(
            f"{event.event_type} contradicts {entity} {entity_id} in '{state}' state",
            reason=UnreconcilableReason.CONFLICTING_OUTCOME,
            details={"entity": entity, "entity_id": str(entity_id), "current_state": state},
        )

    @classmethod
    def _applied(cls, event: ProcessorEvent, entity_id: uuid.UUID) -> ReconciliationResult:
        cls.get_logger().info(
            "Processor event applied",
            extra={
                "event_id": event.event_id,
                "event_type": event.event_type,
                "entity_id": str(entity_id),
            },
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.APPLIED,
            event_type=event.event_type,
            reference_id=event.reference_id,
            entity_id=entity_id,
        )

    @classmethod
    def _replayed(
        cls, event: ProcessorEvent, entity_id: uuid.UUID | None, message: str
    ) -> ReconciliationResult:
        cls.get_logger().info(
            "Processor event already applied, acknowledged",
            extra={
                "event_id": event.event_id,
                "event_type": event.event_type,
                "entity_id": str(entity_id) if entity_id else None,
                "detail": message,
            },
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.REPLAYED,
            event_type=event.event_type,
            reference_id=event.reference_id,
            entity_id=entity_id,
            message=message,
        )

    @classmethod
    def _flag(cls, event: ProcessorEvent, error: UnreconcilableEventError) -> UnreconcilableEvent:
        """Persist the event to the review queue (once per processor event id)."""
        fields: dict[str, Any] = {
            "event_type": event.event_type or "",
            "reference_id": event.reference_id or "",
            "amount_cents": event.amount_cents if isinstance(event.amount_cents, int) else None,
            "currency": (event.currency or "")[:3],
            "reason": error.reason,
            "error_message": error.message,
            "payload": event.to_dict(),
        }

        if event.event_id:
            try:
                with transaction.atomic():
                    record, created = UnreconcilableEvent.objects.get_or_create(
                        event_id=event.event_id, defaults=fields
                    )
            except IntegrityError:
                record, created = UnreconcilableEvent.objects.get(event_id=event.event_id), False
        else:
            record, created = UnreconcilableEvent.objects.create(**fields), True

        cls.get_logger().error(
            "Unreconcilable processor event",
            extra={
                "event_id": event.event_id,
                "event_type": event.event_type,
                "reference_id": event.reference_id,
                "reason": error.reason,
                "error": error.message,
                "unreconcilable_event_id": str(record.id),
                "newly_flagged": created,
            },
        )
        return record

    # =========================================================================
    # Review queue
    # =========================================================================

    @classmethod
    def replay(cls, unreconcilable_event_id: uuid.UUID) -> ReconciliationResult:
        """
        Re-apply a flagged event.

        On success the record is marked AUTO_RESOLVED; otherwise its
        replay count goes up and its reason is refreshed. Records that
        are already resolved are not replayed.
        """
        record = cls.get_unreconcilable_event(unreconcilable_event_id)
        event = ProcessorEvent.from_dict(record.payload)

        if not record.needs_review:
            return ReconciliationResult(
                outcome=ReconciliationOutcome.REPLAYED,
                event_type=record.event_type,
                reference_id=record.reference_id,
                unreconcilable_event_id=record.id,
                message=f"already {record.resolution}",
            )

        try:
            result = cls._apply(event)
        except UnreconcilableEventError as e:
            UnreconcilableEvent.objects.filter(id=record.id).update(
                replay_count=F("replay_count") + 1,
                reason=e.reason,
                error_message=e.message,
            )
            cls.get_logger().info(
                "Flagged event still unreconcilable",
                extra={"unreconcilable_event_id": str(record.id), "reason": e.reason},
            )
            return ReconciliationResult(
                outcome=ReconciliationOutcome.FLAGGED,
                event_type=record.event_type,
                reference_id=record.reference_id,
                unreconcilable_event_id=record.id,
                message=e.message,
            )

        record.replay_count += 1
        record.resolve(
            DiscrepancyResolution.AUTO_RESOLVED,
            notes=f"Replay {result.outcome.value}",
        )
        record.save()
        cls.get_logger().info(
            "Flagged event resolved by replay",
            extra={"unreconcilable_event_id": str(record.id), "outcome": result.outcome.value},
        )
        result.unreconcilable_event_id = record.id
        return result

    @classmethod
    def resolve_manually(cls, unreconcilable_event_id: uuid.UUID, notes: str) -> UnreconcilableEvent:
        """Close a flagged event after operator review."""
        record = cls.get_unreconcilable_event(unreconcilable_event_id)
        record.resolve(DiscrepancyResolution.MANUALLY_RESOLVED, notes=notes)
        record.save()
        cls.get_logger().info(
            "Flagged event resolved manually",
            extra={"unreconcilable_event_id": str(record.id)},
        )
        return record

    @classmethod
    def get_unreconcilable_event(cls, unreconcilable_event_id: uuid.UUID) -> UnreconcilableEvent:
        try:
            return UnreconcilableEvent.objects.get(id=unreconcilable_event_id)
        except UnreconcilableEvent.DoesNotExist:
            raise EscrowNotFoundError(
                f"Unreconcilable event {unreconcilable_event_id} not found",
                error_code="UNRECONCILABLE_EVENT_NOT_FOUND",
                details={"unreconcilable_event_id": str(unreconcilable_event_id)},
            )

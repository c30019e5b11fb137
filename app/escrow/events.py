"""
Normalized processor confirmation events.

Webhook handlers translate raw Stripe payloads into ProcessorEvent so the
reconciliation listener works on one small, processor-neutral shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from django.db import models


class ProcessorEventType(models.TextChoices):
    """Confirmation events the reconciliation listener understands."""

    PAYMENT_SUCCEEDED = "payment_succeeded", "Payment Succeeded"
    PAYMENT_FAILED = "payment_failed", "Payment Failed"
    TRANSFER_PAID = "transfer_paid", "Transfer Paid"
    TRANSFER_FAILED = "transfer_failed", "Transfer Failed"
    REFUND_SUCCEEDED = "refund_succeeded", "Refund Succeeded"
    REFUND_FAILED = "refund_failed", "Refund Failed"


@dataclass
class ProcessorEvent:
    """
    One asynchronous confirmation from the payment processor.

    Attributes:
        event_id: Processor event id (evt_xxx), used for deduplication
        event_type: ProcessorEventType value
        reference_id: Processor id of the affected object (pi_, tr_, re_)
        amount_cents: Amount the processor reports, if any
        currency: Currency the processor reports, if any
        failure_reason: Processor failure message for *_failed events
        payload: Raw processor object, kept for the review queue
    """

    event_id: str | None
    event_type: str
    reference_id: str | None
    amount_cents: int | None = None
    currency: str | None = None
    failure_reason: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "reference_id": self.reference_id,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "failure_reason": self.failure_reason,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProcessorEvent:
        return cls(
            event_id=data.get("event_id"),
            event_type=data.get("event_type") or "",
            reference_id=data.get("reference_id"),
            amount_cents=data.get("amount_cents"),
            currency=data.get("currency"),
            failure_reason=data.get("failure_reason"),
            payload=data.get("payload") or {},
        )

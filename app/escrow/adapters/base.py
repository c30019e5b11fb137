"""
Payment processor interface shared by the escrow services.

The services never import the Stripe SDK. They talk to a
PaymentProcessor, resolved through get_payment_processor(); tests
inject a fake with set_payment_processor().

Usage:
    from escrow.adapters import IdempotencyKeyGenerator, get_payment_processor

    processor = get_payment_processor()
    result = processor.create_intent(
        amount_cents=5000,
        currency="usd",
        idempotency_key=IdempotencyKeyGenerator.generate("create_intent", escrow.id),
        metadata={"escrow_id": str(escrow.id)},
    )
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from django.conf import settings


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class IntentResult:
    """
    Result from payment intent operations.

    Attributes:
        id: Payment intent ID (pi_xxx)
        status: Processor status (requires_capture, succeeded, ...)
        amount_cents: Amount in cents
        currency: Currency code
        client_secret: Secret for client-side confirmation
        captured: Whether the funds have been captured
        metadata: Attached metadata
        raw_response: Full processor response (for debugging)
    """

    id: str
    status: str
    amount_cents: int
    currency: str
    client_secret: str | None = None
    captured: bool = False
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class TransferResult:
    """Result from transfer operations (tr_xxx)."""

    id: str
    amount_cents: int
    currency: str
    destination_account: str
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    """Result from refund operations (re_xxx). status is pending, succeeded or failed."""

    id: str
    amount_cents: int
    currency: str
    status: str
    payment_intent_id: str
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Processor Protocol
# =============================================================================


class PaymentProcessor(Protocol):
    """
    Operations the escrow services need from a payment processor.

    Every mutating call takes an idempotency key: repeating a call with
    the same key must not repeat its effect. Implementations raise
    ProcessorCommunicationError when the outcome is unknown and
    ProcessorRejectedError when the processor refused the request.
    """

    def create_intent(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        payment_method_ref: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> IntentResult: ...

    def capture_intent(
        self,
        payment_intent_id: str,
        idempotency_key: str,
    ) -> IntentResult: ...

    def create_transfer(
        self,
        destination_account_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransferResult: ...

    def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: int,
        idempotency_key: str,
        reason: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> RefundResult: ...

    def verify_webhook_signature(self, payload: bytes, signature: str) -> dict[str, Any]: ...


_processor: PaymentProcessor | None = None


def get_payment_processor() -> PaymentProcessor:
    """Return the injected processor, or the Stripe adapter."""
    if _processor is not None:
        return _processor

    from escrow.adapters.stripe_adapter import StripeAdapter

    return StripeAdapter()


def set_payment_processor(processor: PaymentProcessor | None) -> None:
    """Inject a processor (tests). Pass None to restore the Stripe adapter."""
    global _processor
    _processor = processor


# =============================================================================
# Idempotency Key Generator
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for processor calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The key is a pure function of its inputs, so a retried call sends
    the same key and the processor returns the original result.

    Example:
        key = IdempotencyKeyGenerator.generate("create_transfer", escrow.id, attempt=2)
        # "create_transfer:550e8400-...:2:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
    ) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]

        return f"{operation}:{entity_str}:{attempt}:{short_hash}"

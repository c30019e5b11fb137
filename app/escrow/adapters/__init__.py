"""
Payment processor adapters.

All processor API calls go through a PaymentProcessor so error handling,
timeouts, idempotency and logging stay consistent. StripeAdapter is the
production implementation.

Usage:
    from escrow.adapters import IdempotencyKeyGenerator, get_payment_processor

    processor = get_payment_processor()
    processor.capture_intent(
        escrow.processor_payment_intent_id,
        idempotency_key=IdempotencyKeyGenerator.generate("capture_intent", escrow.id),
    )
"""

from escrow.adapters.base import (
    IdempotencyKeyGenerator,
    IntentResult,
    PaymentProcessor,
    RefundResult,
    TransferResult,
    get_payment_processor,
    set_payment_processor,
)
from escrow.adapters.stripe_adapter import StripeAdapter

__all__ = [
    "IdempotencyKeyGenerator",
    "IntentResult",
    "PaymentProcessor",
    "RefundResult",
    "StripeAdapter",
    "TransferResult",
    "get_payment_processor",
    "set_payment_processor",
]

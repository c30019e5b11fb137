"""
Stripe implementation of the PaymentProcessor interface.

All Stripe calls go through this adapter so they share:
- A bounded request timeout (STRIPE_API_TIMEOUT_SECONDS)
- Translation of SDK errors into retryable/permanent domain errors
- Structured logging with timing
- Caller-supplied idempotency keys

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_WEBHOOK_SECRET: Webhook signing secret
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 10)
- STRIPE_MAX_RETRIES: SDK network retries (default: 3)
"""

from __future__ import annotations

import logging
import time
from typing import Any

import stripe
from django.conf import settings

from escrow.adapters.base import IntentResult, RefundResult, TransferResult
from escrow.exceptions import (
    StripeAPIUnavailableError,
    StripeCardDeclinedError,
    StripeInvalidAccountError,
    StripeInvalidRequestError,
    StripeRateLimitError,
    StripeTimeoutError,
)


class StripeAdapter:
    """
    Adapter for Stripe API operations.

    Holds no state of its own; safe to instantiate per call and to use
    from Celery workers.

    Usage:
        adapter = StripeAdapter()
        result = adapter.create_intent(5000, "usd", idempotency_key="create_intent:...")
        result = adapter.capture_intent(result.id, idempotency_key="capture_intent:...")
    """

    # =========================================================================
    # Configuration
    # =========================================================================

    @staticmethod
    def _configure_stripe() -> None:
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = getattr(settings, "STRIPE_MAX_RETRIES", 3)
        timeout = getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10)
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    def _call(self, log_context: dict[str, Any], func, *args, **kwargs):
        """
        Run one Stripe SDK call with timing and error translation.

        Raises:
            ProcessorCommunicationError: Rate limit, network, timeout, 5xx
            ProcessorRejectedError: Card declined, invalid request/account
        """
        self._configure_stripe()
        logger = self.get_logger()

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self._handle_stripe_error(e, log_context, duration_ms)
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Stripe operation completed",
            extra={**log_context, "stripe_id": result.id, "duration_ms": duration_ms},
        )
        return result

    # =========================================================================
    # Core Operations
    # =========================================================================

    def create_intent(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        payment_method_ref: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> IntentResult:
        """
        Create a manual-capture PaymentIntent for an escrow.

        Funds are authorized, not captured; capture_intent() captures them.
        """
        log_context = {
            "operation": "create_intent",
            "amount_cents": amount_cents,
            "currency": currency,
            "idempotency_key": idempotency_key,
        }

        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "capture_method": "manual",
            "metadata": metadata or {},
        }
        if payment_method_ref:
            params["payment_method"] = payment_method_ref

        intent = self._call(
            log_context,
            stripe.PaymentIntent.create,
            idempotency_key=idempotency_key,
            **params,
        )
        return self._intent_result(intent)

    def capture_intent(
        self,
        payment_intent_id: str,
        idempotency_key: str,
    ) -> IntentResult:
        """Capture the full remaining authorized amount of a PaymentIntent."""
        log_context = {
            "operation": "capture_intent",
            "payment_intent_id": payment_intent_id,
            "idempotency_key": idempotency_key,
        }
        intent = self._call(
            log_context,
            stripe.PaymentIntent.capture,
            payment_intent_id,
            idempotency_key=idempotency_key,
        )
        return self._intent_result(intent, captured=True)

    def create_transfer(
        self,
        destination_account_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransferResult:
        """Transfer funds to a connected account (acct_xxx)."""
        log_context = {
            "operation": "create_transfer",
            "amount_cents": amount_cents,
            "destination_account": destination_account_id,
            "idempotency_key": idempotency_key,
        }
        transfer = self._call(
            log_context,
            stripe.Transfer.create,
            amount=amount_cents,
            currency=currency,
            destination=destination_account_id,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        return TransferResult(
            id=transfer.id,
            amount_cents=transfer.amount,
            currency=transfer.currency,
            destination_account=transfer.destination,
            metadata=dict(transfer.metadata or {}),
            raw_response=transfer.to_dict(),
        )

    def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: int,
        idempotency_key: str,
        reason: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> RefundResult:
        """
        Refund part or all of a PaymentIntent.

        The free-text reason travels in metadata; Stripe's own ``reason``
        field only accepts a fixed set of values.
        """
        log_context = {
            "operation": "create_refund",
            "payment_intent_id": payment_intent_id,
            "amount_cents": amount_cents,
            "idempotency_key": idempotency_key,
        }
        refund_metadata = dict(metadata or {})
        if reason:
            refund_metadata["reason"] = reason

        refund = self._call(
            log_context,
            stripe.Refund.create,
            payment_intent=payment_intent_id,
            amount=amount_cents,
            metadata=refund_metadata,
            idempotency_key=idempotency_key,
        )
        return RefundResult(
            id=refund.id,
            amount_cents=refund.amount,
            currency=refund.currency,
            status=refund.status,
            payment_intent_id=refund.payment_intent,
            metadata=dict(refund.metadata or {}),
            raw_response=refund.to_dict(),
        )

    @staticmethod
    def _intent_result(intent, captured: bool | None = None) -> IntentResult:
        return IntentResult(
            id=intent.id,
            status=intent.status,
            amount_cents=intent.amount,
            currency=intent.currency,
            client_secret=getattr(intent, "client_secret", None),
            captured=captured if captured is not None else (intent.amount_received or 0) > 0,
            metadata=dict(intent.metadata or {}),
            raw_response=intent.to_dict(),
        )

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def verify_webhook_signature(self, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify and parse a Stripe webhook event.

        Raises:
            StripeInvalidRequestError: Invalid signature or payload
        """
        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                settings.STRIPE_WEBHOOK_SECRET,
            )
        except stripe.SignatureVerificationError as e:
            raise StripeInvalidRequestError(
                "Invalid webhook signature",
                processor_code="signature_verification_failed",
                details={"error": str(e)},
            )
        except ValueError as e:
            raise StripeInvalidRequestError(
                "Invalid webhook payload",
                processor_code="invalid_payload",
                details={"error": str(e)},
            )
        return event.to_dict()

    # =========================================================================
    # Error Handling
    # =========================================================================

    @classmethod
    def _handle_stripe_error(
        cls,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe SDK exceptions to domain exceptions.

        Raises:
            StripeCardDeclinedError: Card was declined
            StripeInvalidAccountError: Invalid Connect account
            StripeInvalidRequestError: Invalid request or credentials
            StripeRateLimitError: Rate limited
            StripeTimeoutError: Request timed out
            StripeAPIUnavailableError: Network failure, 5xx or unknown error
        """
        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None)
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": decline_code},
            )
            raise StripeCardDeclinedError(
                str(error.user_message or error),
                processor_code=error.code,
                decline_code=decline_code,
            )

        elif isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            if "account" in str(error).lower():
                raise StripeInvalidAccountError(str(error), processor_code=error.code)
            raise StripeInvalidRequestError(str(error), processor_code=error.code)

        elif isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise StripeRateLimitError(
                "Stripe rate limit exceeded. Please retry.",
                processor_code="rate_limit",
            )

        elif isinstance(error, stripe.APIConnectionError):
            if "timed out" in str(error).lower() or "timeout" in str(error).lower():
                logger.error("Stripe request timed out", extra=log_context)
                raise StripeTimeoutError(
                    "Stripe request timed out. Please retry.",
                    processor_code="timeout",
                )
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            raise StripeAPIUnavailableError(
                "Could not connect to Stripe. Please retry.",
                processor_code="api_connection_error",
            )

        elif isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise StripeAPIUnavailableError(
                "Stripe service error. Please retry.",
                processor_code="api_error",
            )

        elif isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise StripeInvalidRequestError(
                "Stripe authentication failed",
                processor_code="authentication_error",
            )

        else:
            logger.error(
                f"Unexpected error from Stripe: {type(error).__name__}",
                extra=log_context,
                exc_info=True,
            )
            raise StripeAPIUnavailableError(
                f"Unexpected Stripe error: {error}",
                processor_code="unknown_error",
            )

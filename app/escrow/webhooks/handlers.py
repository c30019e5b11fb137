"""
Webhook event handlers for Stripe events.

Each handler translates one Stripe event type into a normalized
ProcessorEvent and hands it to the ReconciliationListener. Handlers do
not touch escrow state themselves.

The handler registry allows:
- Clean separation between event routing and handling
- Easy extension for new event types
- Unknown event types to be acknowledged without failing

Usage:
    from escrow.webhooks.handlers import dispatch_webhook, register_handler

    @register_handler("custom.event")
    def handle_custom_event(webhook_event: WebhookEvent) -> ServiceResult:
        ...

    result = dispatch_webhook(webhook_event)
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from core.services import ServiceResult

from escrow.events import ProcessorEvent, ProcessorEventType
from escrow.models import WebhookEvent
from escrow.services import ReconciliationListener


logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


# Maps event type strings to handler functions
WEBHOOK_HANDLERS: dict[str, Callable[[WebhookEvent], ServiceResult]] = {}

# Stripe refund statuses that settle a refund one way or the other
REFUND_SUCCEEDED_STATUSES = {"succeeded"}
REFUND_FAILED_STATUSES = {"failed", "canceled"}


def register_handler(*event_types: str) -> Callable:
    """
    Decorator to register a webhook event handler for one or more types.

    Usage:
        @register_handler("transfer.failed", "transfer.reversed")
        def handle_transfer_failed(webhook_event: WebhookEvent) -> ServiceResult:
            ...
    """

    def decorator(func: Callable[[WebhookEvent], ServiceResult]) -> Callable:
        for event_type in event_types:
            WEBHOOK_HANDLERS[event_type] = func
            logger.debug(f"Registered webhook handler for {event_type}")
        return func

    return decorator


def dispatch_webhook(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Dispatch a webhook event to the appropriate handler.

    If no handler is registered, logs and returns success so unrelated
    Stripe events never pile up as failures.
    """
    handler = WEBHOOK_HANDLERS.get(webhook_event.event_type)

    if not handler:
        logger.info(
            f"No handler registered for event type: {webhook_event.event_type}",
            extra={"stripe_event_id": webhook_event.stripe_event_id},
        )
        return ServiceResult.success(None)

    logger.info(
        f"Dispatching {webhook_event.event_type} to handler",
        extra={"stripe_event_id": webhook_event.stripe_event_id},
    )

    return handler(webhook_event)


def _reconcile(
    webhook_event: WebhookEvent,
    event_type: str,
    amount_key: str | None = "amount",
    failure_reason: str | None = None,
) -> ServiceResult:
    """Build the ProcessorEvent from the Stripe data object and reconcile it."""
    data_object = webhook_event.get_data_object()
    amount = data_object.get(amount_key) if amount_key else None

    event = ProcessorEvent(
        event_id=webhook_event.stripe_event_id,
        event_type=event_type,
        reference_id=webhook_event.get_object_id(),
        amount_cents=amount,
        currency=data_object.get("currency"),
        failure_reason=failure_reason,
        payload=data_object,
    )
    result = ReconciliationListener.handle(event)
    return ServiceResult.success(result)


# =============================================================================
# Payment Intent Handlers
# =============================================================================


@register_handler("payment_intent.amount_capturable_updated")
def handle_payment_intent_authorized(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Funds authorized on a manual-capture intent: the escrow is funded.

    The capturable amount is what the escrow holds, so it is compared
    against the escrow amount.
    """
    return _reconcile(
        webhook_event,
        ProcessorEventType.PAYMENT_SUCCEEDED,
        amount_key="amount_capturable",
    )


@register_handler("payment_intent.succeeded")
def handle_payment_intent_succeeded(webhook_event: WebhookEvent) -> ServiceResult:
    """Also sent after capture, when the escrow has long been funded (replay)."""
    return _reconcile(webhook_event, ProcessorEventType.PAYMENT_SUCCEEDED)


@register_handler("payment_intent.payment_failed")
def handle_payment_intent_failed(webhook_event: WebhookEvent) -> ServiceResult:
    data_object = webhook_event.get_data_object()
    last_error = data_object.get("last_payment_error") or {}
    reason = last_error.get("message", "Payment failed")

    return _reconcile(
        webhook_event,
        ProcessorEventType.PAYMENT_FAILED,
        amount_key=None,
        failure_reason=reason,
    )


@register_handler("payment_intent.canceled")
def handle_payment_intent_canceled(webhook_event: WebhookEvent) -> ServiceResult:
    data_object = webhook_event.get_data_object()
    reason = data_object.get("cancellation_reason") or "Payment intent canceled"

    return _reconcile(
        webhook_event,
        ProcessorEventType.PAYMENT_FAILED,
        amount_key=None,
        failure_reason=reason,
    )


# =============================================================================
# Transfer Handlers
# =============================================================================


@register_handler("transfer.paid")
def handle_transfer_paid(webhook_event: WebhookEvent) -> ServiceResult:
    return _reconcile(webhook_event, ProcessorEventType.TRANSFER_PAID)


@register_handler("transfer.failed", "transfer.reversed")
def handle_transfer_failed(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Transfer failed or was reversed; the payout is marked FAILED.

    The amount is not compared, a reversal may be partial.
    """
    data_object = webhook_event.get_data_object()
    reason = (
        data_object.get("failure_message")
        or data_object.get("failure_code")
        or webhook_event.event_type
    )

    return _reconcile(
        webhook_event,
        ProcessorEventType.TRANSFER_FAILED,
        amount_key=None,
        failure_reason=reason,
    )


# =============================================================================
# Refund Handlers
# =============================================================================


@register_handler("refund.created", "refund.updated", "charge.refund.updated")
def handle_refund_updated(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Route a refund by its status.

    Statuses that settle nothing yet (pending, requires_action) are
    acknowledged and wait for the next update.
    """
    data_object: dict[str, Any] = webhook_event.get_data_object()
    status = data_object.get("status")

    if status in REFUND_SUCCEEDED_STATUSES:
        return _reconcile(webhook_event, ProcessorEventType.REFUND_SUCCEEDED)

    if status in REFUND_FAILED_STATUSES:
        return _reconcile(
            webhook_event,
            ProcessorEventType.REFUND_FAILED,
            amount_key=None,
            failure_reason=data_object.get("failure_reason") or status,
        )

    logger.info(
        f"Refund update with status '{status}' not final, acknowledged",
        extra={
            "stripe_event_id": webhook_event.stripe_event_id,
            "refund_id": webhook_event.get_object_id(),
        },
    )
    return ServiceResult.success(None)


@register_handler("refund.failed")
def handle_refund_failed(webhook_event: WebhookEvent) -> ServiceResult:
    data_object = webhook_event.get_data_object()

    return _reconcile(
        webhook_event,
        ProcessorEventType.REFUND_FAILED,
        amount_key=None,
        failure_reason=data_object.get("failure_reason") or "Refund failed",
    )

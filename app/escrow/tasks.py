"""
Celery tasks for escrow settlement.

This module provides async tasks for:
- Processing Stripe webhook events (reconciliation)
- Retrying failed and resetting stuck webhook events
- Re-submitting payouts and refunds whose processor call timed out
- Replaying unreconcilable events whose entity has since appeared
- Auditing escrow ledger balances

Periodic schedules are registered with django-celery-beat in the
escrow migrations.

Usage:
    from escrow.tasks import process_webhook_event

    process_webhook_event.delay(str(webhook_event.id))
    submit_pending_payout.delay(str(payout.id))
"""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from celery import shared_task
from django.conf import settings
from django.db import transaction
from django.utils import timezone

from escrow.exceptions import LockAcquisitionError, ProcessorCommunicationError
from escrow.ledger.exceptions import LedgerImbalanceError
from escrow.models import Escrow, Payout, Refund, UnreconcilableEvent, WebhookEvent
from escrow.state_machines import (
    DiscrepancyResolution,
    PayoutState,
    RefundState,
    UnreconcilableReason,
    WebhookEventStatus,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

STUCK_PROCESSING_THRESHOLD_MINUTES = 30

# Submissions without a processor id older than this are re-submitted
STALE_SUBMISSION_THRESHOLD_MINUTES = 10

# Maximum records handled per periodic run
BATCH_SIZE = 100

MAX_PROCESSOR_RETRIES = getattr(settings, "STRIPE_MAX_RETRIES", 3)


# =============================================================================
# Webhook Processing Tasks
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": getattr(settings, "ESCROW_WEBHOOK_MAX_RETRIES", 5)},
    acks_late=True,
)
def process_webhook_event(self, webhook_event_id: str) -> dict:
    """
    Process a Stripe webhook event asynchronously.

    This task:
    1. Loads the WebhookEvent by ID
    2. Skips it if already processed
    3. Dispatches it to its handler (reconciliation) in one transaction
    4. Marks it processed, or failed and re-raises for Celery to retry

    An event the listener flags as unreconcilable still counts as
    processed: it now lives in the review queue.
    """
    from escrow.webhooks.handlers import dispatch_webhook

    if isinstance(webhook_event_id, str):
        webhook_event_id = UUID(webhook_event_id)

    try:
        webhook_event = WebhookEvent.objects.get(id=webhook_event_id)
    except WebhookEvent.DoesNotExist:
        logger.error(
            "WebhookEvent not found",
            extra={"webhook_event_id": str(webhook_event_id)},
        )
        return {"status": "not_found", "webhook_event_id": str(webhook_event_id)}

    if webhook_event.status == WebhookEventStatus.PROCESSED:
        logger.info(
            "WebhookEvent already processed, skipping",
            extra={
                "webhook_event_id": str(webhook_event_id),
                "stripe_event_id": webhook_event.stripe_event_id,
            },
        )
        return {"status": "already_processed", "webhook_event_id": str(webhook_event_id)}

    webhook_event.mark_processing()
    webhook_event.save()

    logger.info(
        f"Dispatching webhook: {webhook_event.event_type}",
        extra={
            "webhook_event_id": str(webhook_event_id),
            "stripe_event_id": webhook_event.stripe_event_id,
            "retry_count": webhook_event.retry_count,
        },
    )

    try:
        with transaction.atomic():
            result = dispatch_webhook(webhook_event)
    except Exception as e:
        error_msg = f"{type(e).__name__}: {str(e)}"
        webhook_event.mark_failed(error_msg)
        webhook_event.save()
        logger.exception(
            "Webhook processing failed with exception",
            extra={
                "webhook_event_id": str(webhook_event_id),
                "stripe_event_id": webhook_event.stripe_event_id,
                "error": error_msg,
            },
        )
        raise

    if not result.success:
        error_msg = result.error or "Handler returned failure"
        webhook_event.mark_failed(error_msg)
        webhook_event.save()
        logger.warning(
            f"Webhook handler failed: {error_msg}",
            extra={
                "webhook_event_id": str(webhook_event_id),
                "error_code": result.error_code,
            },
        )
        return {
            "status": "handler_failed",
            "webhook_event_id": str(webhook_event_id),
            "error": error_msg,
        }

    webhook_event.mark_processed()
    webhook_event.save()

    outcome = result.data.outcome.value if result.data is not None else "ignored"
    logger.info(
        "Webhook processed",
        extra={
            "webhook_event_id": str(webhook_event_id),
            "stripe_event_id": webhook_event.stripe_event_id,
            "outcome": outcome,
        },
    )
    return {
        "status": "processed",
        "webhook_event_id": str(webhook_event_id),
        "stripe_event_id": webhook_event.stripe_event_id,
        "outcome": outcome,
    }


@shared_task
def retry_failed_webhooks() -> dict:
    """Re-queue FAILED webhooks that have attempts left. Scheduled every 5 minutes."""
    failed_webhooks = WebhookEvent.objects.filter(
        status=WebhookEventStatus.FAILED,
        retry_count__lt=settings.ESCROW_WEBHOOK_MAX_RETRIES,
    ).order_by("created_at")[:BATCH_SIZE]

    queued_count = 0
    for webhook in failed_webhooks:
        process_webhook_event.delay(str(webhook.id))
        queued_count += 1
        logger.info(
            "Queued failed webhook for retry",
            extra={
                "webhook_event_id": str(webhook.id),
                "stripe_event_id": webhook.stripe_event_id,
                "retry_count": webhook.retry_count,
            },
        )

    logger.info(
        f"Queued {queued_count} failed webhooks for retry",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}


@shared_task
def cleanup_stuck_webhooks() -> dict:
    """
    Reset webhooks left in PROCESSING (worker crashed) to FAILED so
    retry_failed_webhooks picks them up.
    """
    threshold = timezone.now() - timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES)

    stuck_webhooks = WebhookEvent.objects.filter(
        status=WebhookEventStatus.PROCESSING,
        updated_at__lt=threshold,
    )

    reset_count = 0
    for webhook in stuck_webhooks:
        webhook.mark_failed("Processing timed out - reset for retry")
        webhook.save()
        reset_count += 1
        logger.warning(
            "Reset stuck webhook",
            extra={
                "webhook_event_id": str(webhook.id),
                "stripe_event_id": webhook.stripe_event_id,
                "stuck_since": webhook.updated_at.isoformat(),
            },
        )

    return {"reset_count": reset_count}


# =============================================================================
# Processor Submission Tasks
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(ProcessorCommunicationError, LockAcquisitionError),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_PROCESSOR_RETRIES},
    acks_late=True,
)
def submit_pending_payout(self, payout_id: str) -> dict:
    """
    Re-submit a PENDING payout's transfer with its original idempotency key.

    Communication errors are retried with backoff; a rejection marks
    the payout FAILED inside the service and is reported, not retried.
    """
    from escrow.exceptions import ProcessorRejectedError
    from escrow.services import PayoutService

    try:
        payout = PayoutService.retry_payout(UUID(str(payout_id)))
    except ProcessorRejectedError as e:
        logger.error(
            "Payout rejected on re-submission",
            extra={"payout_id": str(payout_id), "error": str(e)},
        )
        return {"status": "rejected", "payout_id": str(payout_id), "error": str(e)}

    return {"status": payout.state, "payout_id": str(payout.id)}


@shared_task(
    bind=True,
    autoretry_for=(ProcessorCommunicationError, LockAcquisitionError),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_PROCESSOR_RETRIES},
    acks_late=True,
)
def submit_pending_refund(self, refund_id: str) -> dict:
    """Re-submit a PENDING refund the processor never acknowledged."""
    from escrow.exceptions import ProcessorRejectedError
    from escrow.services import RefundService

    try:
        refund = RefundService.retry_refund(UUID(str(refund_id)))
    except ProcessorRejectedError as e:
        logger.error(
            "Refund rejected on re-submission",
            extra={"refund_id": str(refund_id), "error": str(e)},
        )
        return {"status": "rejected", "refund_id": str(refund_id), "error": str(e)}

    return {"status": refund.state, "refund_id": str(refund.id)}


@shared_task
def resubmit_stale_submissions() -> dict:
    """Queue re-submission of payouts and refunds stuck PENDING without a processor id."""
    threshold = timezone.now() - timedelta(minutes=STALE_SUBMISSION_THRESHOLD_MINUTES)

    payout_ids = list(
        Payout.objects.filter(
            state=PayoutState.PENDING,
            processor_transfer_id__isnull=True,
            created_at__lt=threshold,
        )
        .order_by("created_at")
        .values_list("id", flat=True)[:BATCH_SIZE]
    )
    refund_ids = list(
        Refund.objects.filter(
            state=RefundState.PENDING,
            processor_refund_id__isnull=True,
            created_at__lt=threshold,
        )
        .order_by("created_at")
        .values_list("id", flat=True)[:BATCH_SIZE]
    )

    for payout_id in payout_ids:
        submit_pending_payout.delay(str(payout_id))
    for refund_id in refund_ids:
        submit_pending_refund.delay(str(refund_id))

    if payout_ids or refund_ids:
        logger.info(
            "Queued stale submissions",
            extra={"payouts": len(payout_ids), "refunds": len(refund_ids)},
        )
    return {"payouts_queued": len(payout_ids), "refunds_queued": len(refund_ids)}


# =============================================================================
# Reconciliation Tasks
# =============================================================================


@shared_task
def replay_unreconcilable_events() -> dict:
    """
    Replay recent UNKNOWN_REFERENCE events.

    A confirmation can arrive before the processor id it refers to is
    stored locally. Such events are flagged, then applied here once the
    id is known. Only events within
    ESCROW_UNRECONCILABLE_REPLAY_WINDOW_HOURS are retried.
    """
    from escrow.services import ReconciliationListener, ReconciliationOutcome

    window = timedelta(hours=settings.ESCROW_UNRECONCILABLE_REPLAY_WINDOW_HOURS)
    candidates = UnreconcilableEvent.objects.filter(
        resolution=DiscrepancyResolution.FLAGGED_FOR_REVIEW,
        reason=UnreconcilableReason.UNKNOWN_REFERENCE,
        created_at__gte=timezone.now() - window,
    ).order_by("created_at")[:BATCH_SIZE]

    stats = {"replayed": 0, "resolved": 0, "still_flagged": 0}
    for record in candidates:
        stats["replayed"] += 1
        with transaction.atomic():
            result = ReconciliationListener.replay(record.id)
        if result.outcome == ReconciliationOutcome.FLAGGED:
            stats["still_flagged"] += 1
        else:
            stats["resolved"] += 1

    if stats["replayed"]:
        logger.info("Unreconcilable event replay completed", extra=stats)
    return stats


@shared_task
def verify_ledger_balances(lookback_hours: int = 24) -> dict:
    """
    Audit the ledger of every escrow touched within lookback_hours.

    Imbalances are logged at ERROR by the ledger and counted here; the
    audit never modifies anything.
    """
    from escrow.ledger import ledger

    since = timezone.now() - timedelta(hours=lookback_hours)
    escrows = Escrow.objects.filter(updated_at__gte=since).only("id", "currency")

    stats = {"checked": 0, "imbalanced": 0}
    imbalanced_ids = []
    for escrow in escrows.iterator():
        stats["checked"] += 1
        try:
            ledger.verify_escrow_balance(escrow.id, escrow.currency)
        except LedgerImbalanceError:
            stats["imbalanced"] += 1
            imbalanced_ids.append(str(escrow.id))

    if imbalanced_ids:
        logger.error(
            "Ledger audit found imbalanced escrows",
            extra={**stats, "escrow_ids": imbalanced_ids},
        )
    else:
        logger.info("Ledger audit completed", extra=stats)
    return {**stats, "escrow_ids": imbalanced_ids}

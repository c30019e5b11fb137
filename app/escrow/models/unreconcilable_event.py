"""
UnreconcilableEvent model: review queue for confirmations that could
not be applied.

The reconciliation listener never drops an event it cannot apply. It
stores it here with the reason, so it can be replayed automatically
(unknown references that arrive before their entity is recorded) or
resolved by an operator.
"""

from __future__ import annotations

from django.db import models
from django.db.models import Q
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from escrow.state_machines import DiscrepancyResolution, UnreconcilableReason


class UnreconcilableEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    A processor confirmation that matched no entity, or contradicted one.

    Fields:
        event_id: Processor event id (unique when present)
        event_type: Normalized event type
        reference_id: Processor reference the event pointed at
        amount_cents/currency: Amount reported by the event
        reason: Why it could not be applied
        error_message: Detail for the operator
        payload: Normalized event payload, enough to replay it
        resolution: Review status
        replay_count: Number of automatic replays attempted
        resolved_at/resolution_notes: Set when resolved
    """

    event_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Processor event id (evt_xxx)",
    )

    event_type = models.CharField(
        max_length=50,
        blank=True,
        default="",
        db_index=True,
        help_text="Normalized event type (e.g., 'transfer_paid')",
    )

    reference_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        db_index=True,
        help_text="Processor reference id carried by the event",
    )

    amount_cents = models.BigIntegerField(
        null=True,
        blank=True,
        help_text="Amount reported by the event, if any",
    )

    currency = models.CharField(
        max_length=3,
        blank=True,
        default="",
        help_text="Currency reported by the event, if any",
    )

    reason = models.CharField(
        max_length=30,
        choices=UnreconcilableReason.choices,
        db_index=True,
        help_text="Why the event could not be applied",
    )

    error_message = models.TextField(
        blank=True,
        default="",
        help_text="Detail for the operator",
    )

    payload = models.JSONField(
        default=dict,
        blank=True,
        help_text="Normalized event, sufficient to replay it",
    )

    # ==========================================================================
    # Resolution
    # ==========================================================================

    resolution = models.CharField(
        max_length=30,
        choices=DiscrepancyResolution.choices,
        default=DiscrepancyResolution.FLAGGED_FOR_REVIEW,
        db_index=True,
        help_text="Review status of this event",
    )

    replay_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of automatic replays attempted",
    )

    resolved_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the event was resolved",
    )

    resolution_notes = models.TextField(
        blank=True,
        default="",
        help_text="How the event was resolved",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Unreconcilable Event"
        verbose_name_plural = "Unreconcilable Events"
        indexes = [
            models.Index(fields=["resolution", "reason"], name="unreconcilable_res_reason_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["event_id"],
                condition=Q(event_id__isnull=False),
                name="unique_unreconcilable_event_id",
            ),
        ]

    def __str__(self) -> str:
        return f"UnreconcilableEvent({self.event_type}, {self.reference_id}, {self.reason})"

    @property
    def needs_review(self) -> bool:
        return self.resolution == DiscrepancyResolution.FLAGGED_FOR_REVIEW

    def resolve(self, resolution: str, notes: str = "") -> None:
        """
        Mark the event resolved.

        Note: Does not save - caller must save after calling.
        """
        self.resolution = resolution
        self.resolved_at = timezone.now()
        if notes:
            self.resolution_notes = notes

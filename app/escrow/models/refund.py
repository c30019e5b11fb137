"""
Refund model for returning escrow funds to the payer.

Several partial refunds may exist for one escrow; the sum of the
SUCCEEDED ones never exceeds the funded amount.

Usage:
    from escrow.models import Refund

    refund = Refund.objects.create(escrow=escrow, amount_cents=2500, reason="Scope cut")
    refund.processor_refund_id = "re_123"
    refund.save()

    refund.succeed()  # pending -> succeeded (refund_succeeded confirmation)
    refund.save()
"""

from __future__ import annotations

from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from escrow.state_machines import RefundState


REFUND_REASON_MAX_LENGTH = 500


class Refund(UUIDPrimaryKeyMixin, BaseModel):
    """
    Money returned from an escrow to the payer.

    State Flow:
        PENDING -> SUCCEEDED
        PENDING -> FAILED

    Fields:
        escrow: Escrow being refunded
        amount_cents: Refund amount in smallest currency unit
        currency: ISO 4217 currency code
        reason: Reason for the refund
        state: Current FSM state
        processor_refund_id: Processor refund ID (re_xxx), set once accepted
        version: Optimistic locking version
        submitted_at/succeeded_at/failed_at: Timestamps
        failure_reason: Error details if failed
        metadata: Flexible JSON storage
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    escrow = models.ForeignKey(
        "escrow.Escrow",
        on_delete=models.PROTECT,
        related_name="refunds",
        help_text="Escrow being refunded",
    )

    # ==========================================================================
    # Amount & Currency
    # ==========================================================================

    amount_cents = models.PositiveBigIntegerField(
        help_text="Refund amount in smallest currency unit (e.g., cents)",
    )

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    reason = models.CharField(
        max_length=REFUND_REASON_MAX_LENGTH,
        blank=True,
        default="",
        help_text="Reason for the refund",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    state = FSMField(
        default=RefundState.PENDING,
        choices=RefundState.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the refund (managed by FSM)",
    )

    # ==========================================================================
    # Processor Integration
    # ==========================================================================

    processor_refund_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Processor refund ID (re_xxx)",
    )

    # ==========================================================================
    # Concurrency Control
    # ==========================================================================

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    # ==========================================================================
    # Timestamps
    # ==========================================================================

    submitted_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the processor accepted the refund request",
    )

    succeeded_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When refund was confirmed",
    )

    failed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When refund failed",
    )

    # ==========================================================================
    # Metadata & Error Info
    # ==========================================================================

    failure_reason = models.TextField(
        null=True,
        blank=True,
        help_text="Detailed reason if refund failed",
    )

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Arbitrary JSON metadata for extensibility",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Refund"
        verbose_name_plural = "Refunds"
        indexes = [
            models.Index(fields=["escrow", "state"], name="refund_escrow_state_idx"),
            models.Index(fields=["state", "created_at"], name="refund_state_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount_cents__gt=0),
                name="refund_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.amount_cents / 100:.2f} {self.currency.upper()}"
        return f"Refund({self.id}, {self.state}, {amount_display})"

    def save(self, *args, **kwargs):
        """Save with version auto-increment for optimistic locking."""
        is_update = self.pk and not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

    def mark_submitted(self, processor_refund_id: str) -> None:
        """
        Store the processor's refund id. The refund stays PENDING until
        the processor confirms the outcome.

        Note: Does not save - caller must save after calling.
        """
        self.processor_refund_id = processor_refund_id
        self.submitted_at = timezone.now()

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=state,
        source=RefundState.PENDING,
        target=RefundState.SUCCEEDED,
    )
    def succeed(self):
        """
        Refund confirmed by the processor.

        Transition: PENDING -> SUCCEEDED
        """
        self.succeeded_at = timezone.now()

    @transition(
        field=state,
        source=RefundState.PENDING,
        target=RefundState.FAILED,
    )
    def fail(self, reason: str | None = None):
        """
        Mark refund as failed. No ledger entry is written.

        Transition: PENDING -> FAILED
        """
        self.failed_at = timezone.now()
        if reason:
            self.failure_reason = reason

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_complete(self) -> bool:
        return self.state == RefundState.SUCCEEDED

    @property
    def is_pending(self) -> bool:
        return self.state == RefundState.PENDING

    @property
    def is_submitted(self) -> bool:
        return bool(self.processor_refund_id)

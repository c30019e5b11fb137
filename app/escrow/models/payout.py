"""
Payout model for releasing captured escrow funds to the payee.

A Payout transfers the captured amount, net of the platform fee, to the
payee's connected account. At most one payout per escrow may be outside
FAILED; a failed payout can be followed by a fresh attempt.

Usage:
    from escrow.models import Payout

    payout = Payout.objects.create(
        escrow=escrow,
        destination_account_id="acct_123",
        amount_cents=9500,
        fee_cents=500,
    )

    payout.submit("tr_123")  # pending -> in_transit
    payout.save()

    payout.mark_paid()  # in_transit -> paid (transfer_paid confirmation)
    payout.save()
"""

from __future__ import annotations

from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from escrow.state_machines import PayoutState


class Payout(UUIDPrimaryKeyMixin, BaseModel):
    """
    Transfer of an escrow's captured funds to the payee.

    State Flow:
        PENDING -> IN_TRANSIT -> PAID
        PENDING -> FAILED (processor rejected the transfer)
        IN_TRANSIT -> FAILED (transfer_failed confirmation)
        PENDING -> PAID (confirmation before the transfer id was stored)

    Fields:
        escrow: Escrow whose funds are paid out
        destination_account_id: Payee's processor account (acct_xxx)
        amount_cents: Net amount transferred to the payee
        fee_cents: Platform fee kept from the gross amount
        currency: ISO 4217 currency code
        attempt: Attempt number for this escrow (idempotency key input)
        state: Current FSM state
        processor_transfer_id: Processor transfer ID (tr_xxx)
        version: Optimistic locking version
        submitted_at/paid_at/failed_at: Timestamps
        failure_reason: Error details if failed
        metadata: Flexible JSON storage
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    escrow = models.ForeignKey(
        "escrow.Escrow",
        on_delete=models.PROTECT,
        related_name="payouts",
        help_text="Escrow whose captured funds are paid out",
    )

    destination_account_id = models.CharField(
        max_length=255,
        help_text="Payee's processor account ID (acct_xxx)",
    )

    # ==========================================================================
    # Amount & Currency
    # ==========================================================================

    amount_cents = models.PositiveBigIntegerField(
        help_text="Net payout amount in smallest currency unit",
    )

    fee_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Platform fee retained from the gross amount",
    )

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    attempt = models.PositiveSmallIntegerField(
        default=1,
        help_text="Payout attempt number for this escrow",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    state = FSMField(
        default=PayoutState.PENDING,
        choices=PayoutState.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the payout (managed by FSM)",
    )

    # ==========================================================================
    # Processor Integration
    # ==========================================================================

    processor_transfer_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Processor transfer ID (tr_xxx)",
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
        help_text="When the processor accepted the transfer",
    )

    paid_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When payout was completed",
    )

    failed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When payout failed",
    )

    # ==========================================================================
    # Metadata & Error Info
    # ==========================================================================

    failure_reason = models.TextField(
        null=True,
        blank=True,
        help_text="Detailed reason if payout failed",
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
        verbose_name = "Payout"
        verbose_name_plural = "Payouts"
        indexes = [
            models.Index(fields=["escrow", "state"], name="payout_escrow_state_idx"),
            models.Index(fields=["state", "created_at"], name="payout_state_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount_cents__gt=0),
                name="payout_amount_positive",
            ),
            models.UniqueConstraint(
                fields=["escrow"],
                condition=~Q(state=PayoutState.FAILED),
                name="unique_open_payout_per_escrow",
            ),
            models.UniqueConstraint(
                fields=["escrow", "attempt"],
                name="unique_payout_attempt_per_escrow",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.amount_cents / 100:.2f} {self.currency.upper()}"
        return f"Payout({self.id}, {self.state}, {amount_display})"

    def save(self, *args, **kwargs):
        """Save with version auto-increment for optimistic locking."""
        is_update = self.pk and not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=state,
        source=PayoutState.PENDING,
        target=PayoutState.IN_TRANSIT,
    )
    def submit(self, processor_transfer_id: str):
        """
        Record the processor's acceptance of the transfer.

        Transition: PENDING -> IN_TRANSIT
        """
        self.processor_transfer_id = processor_transfer_id
        self.submitted_at = timezone.now()

    @transition(
        field=state,
        source=[PayoutState.PENDING, PayoutState.IN_TRANSIT],
        target=PayoutState.PAID,
    )
    def mark_paid(self, processor_transfer_id: str | None = None):
        """
        Transfer confirmed by the processor.

        Transition: PENDING/IN_TRANSIT -> PAID

        PENDING is accepted because the confirmation can arrive before
        the transfer id returned by the processor was stored.
        """
        if processor_transfer_id and not self.processor_transfer_id:
            self.processor_transfer_id = processor_transfer_id
        self.paid_at = timezone.now()

    @transition(
        field=state,
        source=[PayoutState.PENDING, PayoutState.IN_TRANSIT],
        target=PayoutState.FAILED,
    )
    def fail(self, reason: str | None = None):
        """
        Mark payout as failed. The escrow keeps its captured funds.

        Transition: PENDING/IN_TRANSIT -> FAILED
        """
        self.failed_at = timezone.now()
        if reason:
            self.failure_reason = reason

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def gross_cents(self) -> int:
        return self.amount_cents + self.fee_cents

    @property
    def is_complete(self) -> bool:
        return self.state == PayoutState.PAID

    @property
    def is_pending(self) -> bool:
        return self.state == PayoutState.PENDING

    @property
    def is_in_flight(self) -> bool:
        return self.state in [PayoutState.PENDING, PayoutState.IN_TRANSIT]

"""
Escrow model holding the funds committed to one milestone.

An Escrow tracks a milestone amount from the payer's authorization,
through capture, to release to the payee or refund to the payer.
Every money-moving transition has a matching ledger entry written in
the same transaction (see escrow.ledger).

Usage:
    from escrow.models import Escrow

    escrow = Escrow.objects.create(milestone_id=42, amount_cents=10000)

    escrow.confirm_funding()  # pending -> funded
    escrow.save()

    escrow.capture()  # funded -> captured
    escrow.save()
"""

from __future__ import annotations

from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from escrow.exceptions import InvalidAmountError
from escrow.state_machines import EscrowState
from escrow.state_machines.states import INACTIVE_ESCROW_STATES, TERMINAL_ESCROW_STATES


class Escrow(UUIDPrimaryKeyMixin, BaseModel):
    """
    Funds held against a milestone.

    State Flow:
        PENDING -> FUNDED -> CAPTURED -> RELEASED
        PENDING -> CANCELLED
        FUNDED/CAPTURED/PARTIALLY_REFUNDED -> PARTIALLY_REFUNDED | REFUNDED
        PARTIALLY_REFUNDED -> CAPTURED (remaining uncaptured funds)
        PARTIALLY_REFUNDED -> RELEASED (remaining captured funds paid out)

    Fields:
        milestone_id: Milestone the funds are committed to
        amount_cents: Escrow amount in smallest currency unit
        currency: ISO 4217 currency code
        payment_method_ref: Processor payment method used for funding
        processor_payment_intent_id: Processor payment intent (pi_xxx)
        state: Current FSM state
        version: Optimistic locking version
        funded_at/captured_at/released_at/cancelled_at/refunded_at: Timestamps
        metadata: Flexible JSON storage

    Note:
        Only one escrow per milestone may be outside CANCELLED/REFUNDED;
        a partial unique index enforces it.
    """

    # ==========================================================================
    # Milestone & Amount
    # ==========================================================================

    milestone_id = models.BigIntegerField(
        db_index=True,
        help_text="Milestone whose funds this escrow holds",
    )

    amount_cents = models.PositiveBigIntegerField(
        help_text="Escrow amount in smallest currency unit (immutable once funded)",
    )

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    state = FSMField(
        default=EscrowState.PENDING,
        choices=EscrowState.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the escrow (managed by FSM)",
    )

    # ==========================================================================
    # Processor Integration
    # ==========================================================================

    payment_method_ref = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Processor payment method reference used for funding",
    )

    processor_payment_intent_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Processor payment intent ID (pi_xxx)",
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

    funded_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When funding was confirmed by the processor",
    )

    captured_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When funds were captured",
    )

    released_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When funds were released to the payee",
    )

    cancelled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the escrow was cancelled",
    )

    refunded_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the last refund fully refunded the escrow",
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
        verbose_name = "Escrow"
        verbose_name_plural = "Escrows"
        indexes = [
            models.Index(fields=["milestone_id", "state"], name="escrow_milestone_state_idx"),
            models.Index(fields=["state", "created_at"], name="escrow_state_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount_cents__gt=0),
                name="escrow_amount_positive",
            ),
            models.UniqueConstraint(
                fields=["milestone_id"],
                condition=~Q(state__in=INACTIVE_ESCROW_STATES),
                name="unique_active_escrow_per_milestone",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.amount_cents / 100:.2f} {self.currency.upper()}"
        return f"Escrow({self.id}, milestone={self.milestone_id}, {self.state}, {amount_display})"

    def save(self, *args, **kwargs):
        """
        Save with version auto-increment for optimistic locking.

        Refuses to change amount_cents once the escrow has left PENDING.
        """
        is_update = self.pk and not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self._check_amount_unchanged(kwargs.get("update_fields"))
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

    def _check_amount_unchanged(self, update_fields) -> None:
        if update_fields is not None and "amount_cents" not in update_fields:
            return
        stored = (
            type(self)
            .objects.filter(pk=self.pk)
            .values_list("amount_cents", "state")
            .first()
        )
        if stored is None:
            return
        stored_amount, stored_state = stored
        if stored_state != EscrowState.PENDING and stored_amount != self.amount_cents:
            raise InvalidAmountError(
                "Escrow amount cannot change after funding",
                error_code="AMOUNT_IMMUTABLE",
                details={
                    "escrow_id": str(self.pk),
                    "stored_amount_cents": stored_amount,
                    "amount_cents": self.amount_cents,
                },
            )

    # ==========================================================================
    # Transition Conditions
    # ==========================================================================

    def is_uncaptured(self) -> bool:
        return self.captured_at is None

    def is_captured(self) -> bool:
        return self.captured_at is not None

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=state,
        source=EscrowState.PENDING,
        target=EscrowState.FUNDED,
    )
    def confirm_funding(self):
        """
        Record processor confirmation that the payer's funds are held.

        Transition: PENDING -> FUNDED
        """
        self.funded_at = timezone.now()

    @transition(
        field=state,
        source=EscrowState.PENDING,
        target=EscrowState.CANCELLED,
    )
    def cancel(self):
        """
        Cancel before any funds moved.

        Transition: PENDING -> CANCELLED
        """
        self.cancelled_at = timezone.now()

    @transition(
        field=state,
        source=[EscrowState.FUNDED, EscrowState.PARTIALLY_REFUNDED],
        target=EscrowState.CAPTURED,
        conditions=[is_uncaptured],
    )
    def capture(self):
        """
        Capture the held funds.

        Transition: FUNDED -> CAPTURED
        Transition: PARTIALLY_REFUNDED -> CAPTURED (only before capture)
        """
        self.captured_at = timezone.now()

    @transition(
        field=state,
        source=[EscrowState.CAPTURED, EscrowState.PARTIALLY_REFUNDED],
        target=EscrowState.RELEASED,
        conditions=[is_captured],
    )
    def release(self):
        """
        Mark captured funds as paid out to the payee.

        Transition: CAPTURED/PARTIALLY_REFUNDED -> RELEASED
        """
        self.released_at = timezone.now()

    @transition(
        field=state,
        source=[
            EscrowState.FUNDED,
            EscrowState.CAPTURED,
            EscrowState.PARTIALLY_REFUNDED,
        ],
        target=EscrowState.PARTIALLY_REFUNDED,
    )
    def mark_partially_refunded(self):
        """
        Part of the funded amount has been refunded.

        Transition: FUNDED/CAPTURED/PARTIALLY_REFUNDED -> PARTIALLY_REFUNDED
        """
        pass

    @transition(
        field=state,
        source=[
            EscrowState.FUNDED,
            EscrowState.CAPTURED,
            EscrowState.PARTIALLY_REFUNDED,
        ],
        target=EscrowState.REFUNDED,
    )
    def mark_refunded(self):
        """
        The whole funded amount has been refunded.

        Transition: FUNDED/CAPTURED/PARTIALLY_REFUNDED -> REFUNDED
        """
        self.refunded_at = timezone.now()

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_ESCROW_STATES

    @property
    def is_active(self) -> bool:
        """Whether this escrow still occupies its milestone."""
        return self.state not in INACTIVE_ESCROW_STATES

    @property
    def can_refund(self) -> bool:
        return self.state in [
            EscrowState.FUNDED,
            EscrowState.CAPTURED,
            EscrowState.PARTIALLY_REFUNDED,
        ]

    @property
    def can_pay_out(self) -> bool:
        return self.is_captured() and self.state in [
            EscrowState.CAPTURED,
            EscrowState.PARTIALLY_REFUNDED,
        ]

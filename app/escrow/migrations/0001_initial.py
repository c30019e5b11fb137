import uuid

import django.db.models.deletion
import django_fsm
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Escrow",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True, help_text="Timestamp when this record was last modified"
                    ),
                ),
                (
                    "milestone_id",
                    models.BigIntegerField(
                        db_index=True, help_text="Milestone whose funds this escrow holds"
                    ),
                ),
                (
                    "amount_cents",
                    models.PositiveBigIntegerField(
                        help_text="Escrow amount in smallest currency unit (immutable once funded)"
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "state",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("funded", "Funded"),
                            ("captured", "Captured"),
                            ("released", "Released"),
                            ("cancelled", "Cancelled"),
                            ("refunded", "Refunded"),
                            ("partially_refunded", "Partially Refunded"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current state of the escrow (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "payment_method_ref",
                    models.CharField(
                        blank=True,
                        help_text="Processor payment method reference used for funding",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "processor_payment_intent_id",
                    models.CharField(
                        blank=True,
                        help_text="Processor payment intent ID (pi_xxx)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                (
                    "funded_at",
                    models.DateTimeField(
                        blank=True, help_text="When funding was confirmed by the processor", null=True
                    ),
                ),
                (
                    "captured_at",
                    models.DateTimeField(blank=True, help_text="When funds were captured", null=True),
                ),
                (
                    "released_at",
                    models.DateTimeField(
                        blank=True, help_text="When funds were released to the payee", null=True
                    ),
                ),
                (
                    "cancelled_at",
                    models.DateTimeField(
                        blank=True, help_text="When the escrow was cancelled", null=True
                    ),
                ),
                (
                    "refunded_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the last refund fully refunded the escrow",
                        null=True,
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Arbitrary JSON metadata for extensibility",
                    ),
                ),
            ],
            options={
                "verbose_name": "Escrow",
                "verbose_name_plural": "Escrows",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["milestone_id", "state"], name="escrow_milestone_state_idx"
                    ),
                    models.Index(
                        fields=["state", "created_at"], name="escrow_state_created_idx"
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="escrow_amount_positive",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(
                            ("state__in", ["cancelled", "refunded"]), _negated=True
                        ),
                        fields=("milestone_id",),
                        name="unique_active_escrow_per_milestone",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Payout",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True, help_text="Timestamp when this record was last modified"
                    ),
                ),
                (
                    "destination_account_id",
                    models.CharField(
                        help_text="Payee's processor account ID (acct_xxx)", max_length=255
                    ),
                ),
                (
                    "amount_cents",
                    models.PositiveBigIntegerField(
                        help_text="Net payout amount in smallest currency unit"
                    ),
                ),
                (
                    "fee_cents",
                    models.PositiveBigIntegerField(
                        default=0, help_text="Platform fee retained from the gross amount"
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "attempt",
                    models.PositiveSmallIntegerField(
                        default=1, help_text="Payout attempt number for this escrow"
                    ),
                ),
                (
                    "state",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("in_transit", "In Transit"),
                            ("paid", "Paid"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current state of the payout (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "processor_transfer_id",
                    models.CharField(
                        blank=True,
                        help_text="Processor transfer ID (tr_xxx)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                (
                    "submitted_at",
                    models.DateTimeField(
                        blank=True, help_text="When the processor accepted the transfer", null=True
                    ),
                ),
                (
                    "paid_at",
                    models.DateTimeField(blank=True, help_text="When payout was completed", null=True),
                ),
                (
                    "failed_at",
                    models.DateTimeField(blank=True, help_text="When payout failed", null=True),
                ),
                (
                    "failure_reason",
                    models.TextField(
                        blank=True, help_text="Detailed reason if payout failed", null=True
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Arbitrary JSON metadata for extensibility",
                    ),
                ),
                (
                    "escrow",
                    models.ForeignKey(
                        help_text="Escrow whose captured funds are paid out",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payouts",
                        to="escrow.escrow",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payout",
                "verbose_name_plural": "Payouts",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["escrow", "state"], name="payout_escrow_state_idx"),
                    models.Index(
                        fields=["state", "created_at"], name="payout_state_created_idx"
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="payout_amount_positive",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("state", "failed"), _negated=True),
                        fields=("escrow",),
                        name="unique_open_payout_per_escrow",
                    ),
                    models.UniqueConstraint(
                        fields=("escrow", "attempt"),
                        name="unique_payout_attempt_per_escrow",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Refund",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True, help_text="Timestamp when this record was last modified"
                    ),
                ),
                (
                    "amount_cents",
                    models.PositiveBigIntegerField(
                        help_text="Refund amount in smallest currency unit (e.g., cents)"
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "reason",
                    models.CharField(
                        blank=True, default="", help_text="Reason for the refund", max_length=500
                    ),
                ),
                (
                    "state",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("succeeded", "Succeeded"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current state of the refund (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "processor_refund_id",
                    models.CharField(
                        blank=True,
                        help_text="Processor refund ID (re_xxx)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                (
                    "submitted_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the processor accepted the refund request",
                        null=True,
                    ),
                ),
                (
                    "succeeded_at",
                    models.DateTimeField(blank=True, help_text="When refund was confirmed", null=True),
                ),
                (
                    "failed_at",
                    models.DateTimeField(blank=True, help_text="When refund failed", null=True),
                ),
                (
                    "failure_reason",
                    models.TextField(
                        blank=True, help_text="Detailed reason if refund failed", null=True
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Arbitrary JSON metadata for extensibility",
                    ),
                ),
                (
                    "escrow",
                    models.ForeignKey(
                        help_text="Escrow being refunded",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="refunds",
                        to="escrow.escrow",
                    ),
                ),
            ],
            options={
                "verbose_name": "Refund",
                "verbose_name_plural": "Refunds",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["escrow", "state"], name="refund_escrow_state_idx"),
                    models.Index(
                        fields=["state", "created_at"], name="refund_state_created_idx"
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="refund_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True, help_text="Timestamp when this record was last modified"
                    ),
                ),
                (
                    "stripe_event_id",
                    models.CharField(
                        help_text="Stripe Event ID (evt_xxx) - unique constraint for idempotency",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "event_type",
                    models.CharField(
                        db_index=True,
                        help_text="Stripe event type (e.g., 'payment_intent.succeeded')",
                        max_length=100,
                    ),
                ),
                ("payload", models.JSONField(help_text="Full webhook payload from Stripe (JSON)")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("processed", "Processed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current processing status",
                        max_length=20,
                    ),
                ),
                (
                    "processed_at",
                    models.DateTimeField(
                        blank=True, help_text="When event was successfully processed", null=True
                    ),
                ),
                (
                    "error_message",
                    models.TextField(
                        blank=True, help_text="Error message if processing failed", null=True
                    ),
                ),
                (
                    "retry_count",
                    models.PositiveSmallIntegerField(
                        default=0, help_text="Number of processing attempts"
                    ),
                ),
            ],
            options={
                "verbose_name": "Webhook Event",
                "verbose_name_plural": "Webhook Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "created_at"], name="webhook_status_created_idx"
                    ),
                    models.Index(
                        fields=["status", "retry_count"], name="webhook_status_retry_idx"
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="UnreconcilableEvent",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True, help_text="Timestamp when this record was last modified"
                    ),
                ),
                (
                    "event_id",
                    models.CharField(
                        blank=True,
                        help_text="Processor event id (evt_xxx)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "event_type",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        default="",
                        help_text="Normalized event type (e.g., 'transfer_paid')",
                        max_length=50,
                    ),
                ),
                (
                    "reference_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        default="",
                        help_text="Processor reference id carried by the event",
                        max_length=255,
                    ),
                ),
                (
                    "amount_cents",
                    models.BigIntegerField(
                        blank=True, help_text="Amount reported by the event, if any", null=True
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Currency reported by the event, if any",
                        max_length=3,
                    ),
                ),
                (
                    "reason",
                    models.CharField(
                        choices=[
                            ("unknown_reference", "Unknown Reference"),
                            ("malformed_event", "Malformed Event"),
                            ("reference_mismatch", "Reference Mismatch"),
                            ("amount_mismatch", "Amount Mismatch"),
                            ("conflicting_outcome", "Conflicting Outcome"),
                        ],
                        db_index=True,
                        help_text="Why the event could not be applied",
                        max_length=30,
                    ),
                ),
                (
                    "error_message",
                    models.TextField(blank=True, default="", help_text="Detail for the operator"),
                ),
                (
                    "payload",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Normalized event, sufficient to replay it",
                    ),
                ),
                (
                    "resolution",
                    models.CharField(
                        choices=[
                            ("flagged_for_review", "Flagged for Review"),
                            ("auto_resolved", "Auto Resolved"),
                            ("manually_resolved", "Manually Resolved"),
                        ],
                        db_index=True,
                        default="flagged_for_review",
                        help_text="Review status of this event",
                        max_length=30,
                    ),
                ),
                (
                    "replay_count",
                    models.PositiveSmallIntegerField(
                        default=0, help_text="Number of automatic replays attempted"
                    ),
                ),
                (
                    "resolved_at",
                    models.DateTimeField(
                        blank=True, help_text="When the event was resolved", null=True
                    ),
                ),
                (
                    "resolution_notes",
                    models.TextField(
                        blank=True, default="", help_text="How the event was resolved"
                    ),
                ),
            ],
            options={
                "verbose_name": "Unreconcilable Event",
                "verbose_name_plural": "Unreconcilable Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["resolution", "reason"], name="unreconcilable_res_reason_idx"
                    ),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("event_id__isnull", False)),
                        fields=("event_id",),
                        name="unique_unreconcilable_event_id",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="LedgerAccount",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "type",
                    models.CharField(
                        choices=[
                            ("payer", "Payer"),
                            ("escrow_held", "Escrow Held"),
                            ("escrow_captured", "Escrow Captured"),
                            ("payee", "Payee"),
                            ("platform_revenue", "Platform Revenue"),
                        ],
                        help_text="Category of this account",
                        max_length=50,
                    ),
                ),
                (
                    "owner_ref",
                    models.CharField(
                        db_index=True,
                        help_text="Reference of the entity owning this account (escrow id, payee account, 'platform')",
                        max_length=255,
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd", help_text="ISO 4217 currency code", max_length=3
                    ),
                ),
                (
                    "allow_negative",
                    models.BooleanField(
                        default=False,
                        help_text="Whether this account can have a negative balance",
                    ),
                ),
                (
                    "is_active",
                    models.BooleanField(
                        db_index=True, default=True, help_text="Whether this account is active"
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this account was created",
                    ),
                ),
            ],
            options={
                "verbose_name": "Ledger Account",
                "verbose_name_plural": "Ledger Accounts",
                "indexes": [
                    models.Index(fields=["type", "currency"], name="ledger_acct_type_currency_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("type", "owner_ref", "currency"),
                        name="unique_ledger_account_per_owner",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="LedgerEntry",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this entry was recorded",
                    ),
                ),
                (
                    "amount_cents",
                    models.PositiveBigIntegerField(help_text="Amount in cents (always positive)"),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd", help_text="ISO 4217 currency code", max_length=3
                    ),
                ),
                (
                    "entry_type",
                    models.CharField(
                        choices=[
                            ("fund", "Fund"),
                            ("capture", "Capture"),
                            ("payout", "Payout"),
                            ("refund", "Refund"),
                            ("fee", "Fee"),
                        ],
                        help_text="Category of this entry",
                        max_length=50,
                    ),
                ),
                (
                    "reference_id",
                    models.UUIDField(
                        blank=True,
                        help_text="UUID of the escrow, payout or refund that caused this entry",
                        null=True,
                    ),
                ),
                (
                    "reference_type",
                    models.CharField(
                        blank=True,
                        help_text="Type of related entity ('escrow', 'payout', 'refund')",
                        max_length=50,
                        null=True,
                    ),
                ),
                (
                    "description",
                    models.TextField(
                        blank=True,
                        help_text="Human-readable description of this entry",
                        null=True,
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Arbitrary JSON data for extensibility",
                    ),
                ),
                (
                    "created_by",
                    models.CharField(
                        blank=True,
                        help_text="Identifier of service that created this entry",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "idempotency_key",
                    models.CharField(
                        help_text="Unique key derived from the transition that wrote this entry",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "credit_account",
                    models.ForeignKey(
                        help_text="Account money is added to",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="credit_entries",
                        to="escrow.ledgeraccount",
                    ),
                ),
                (
                    "debit_account",
                    models.ForeignKey(
                        help_text="Account money is taken from",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="debit_entries",
                        to="escrow.ledgeraccount",
                    ),
                ),
                (
                    "escrow",
                    models.ForeignKey(
                        blank=True,
                        help_text="Escrow whose funds this entry moves",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="ledger_entries",
                        to="escrow.escrow",
                    ),
                ),
            ],
            options={
                "verbose_name": "Ledger Entry",
                "verbose_name_plural": "Ledger Entries",
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(
                        fields=["reference_type", "reference_id"],
                        name="ledger_entry_reference_idx",
                    ),
                    models.Index(
                        fields=["escrow", "entry_type"], name="ledger_entry_escrow_type_idx"
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="ledger_entry_amount_cents_positive",
                    ),
                ],
            },
        ),
    ]

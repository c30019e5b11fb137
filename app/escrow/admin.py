"""
Escrow admin configuration.

Registers the ledger admins and read-only list views for the settlement
models. State changes go through the service layer, never the admin;
the only write paths are the review-queue actions on unreconcilable
events.
"""

from django.contrib import admin, messages

from escrow.ledger.admin import LedgerAccountAdmin, LedgerEntryAdmin
from escrow.models import Escrow, Payout, Refund, UnreconcilableEvent, WebhookEvent
from escrow.services import ReconciliationListener, ReconciliationOutcome

__all__ = [
    "EscrowAdmin",
    "LedgerAccountAdmin",
    "LedgerEntryAdmin",
    "PayoutAdmin",
    "RefundAdmin",
    "UnreconcilableEventAdmin",
    "WebhookEventAdmin",
]


class ReadOnlyAdmin(admin.ModelAdmin):
    """List and inspect only."""

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


class PayoutInline(admin.TabularInline):
    model = Payout
    extra = 0
    can_delete = False
    fields = ["id", "state", "amount_cents", "fee_cents", "destination_account_id", "attempt"]
    readonly_fields = fields

    def has_add_permission(self, request, obj=None) -> bool:
        return False


class RefundInline(admin.TabularInline):
    model = Refund
    extra = 0
    can_delete = False
    fields = ["id", "state", "amount_cents", "reason", "processor_refund_id"]
    readonly_fields = fields

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Escrow)
class EscrowAdmin(ReadOnlyAdmin):
    list_display = [
        "id",
        "milestone_id",
        "amount_display",
        "state",
        "processor_payment_intent_id",
        "created_at",
    ]
    list_filter = ["state", "currency", "created_at"]
    search_fields = ["id", "milestone_id", "processor_payment_intent_id"]
    readonly_fields = [
        "id",
        "milestone_id",
        "amount_cents",
        "currency",
        "state",
        "payment_method_ref",
        "processor_payment_intent_id",
        "version",
        "funded_at",
        "captured_at",
        "released_at",
        "cancelled_at",
        "refunded_at",
        "metadata",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]
    inlines = [PayoutInline, RefundInline]

    @admin.display(description="Amount")
    def amount_display(self, obj: Escrow) -> str:
        return f"{obj.amount_cents / 100:.2f} {obj.currency.upper()}"


@admin.register(Payout)
class PayoutAdmin(ReadOnlyAdmin):
    list_display = [
        "id",
        "escrow",
        "destination_account_id",
        "amount_cents",
        "fee_cents",
        "state",
        "attempt",
        "processor_transfer_id",
        "created_at",
    ]
    list_filter = ["state", "currency", "created_at"]
    search_fields = ["id", "escrow__id", "processor_transfer_id", "destination_account_id"]
    ordering = ["-created_at"]


@admin.register(Refund)
class RefundAdmin(ReadOnlyAdmin):
    list_display = [
        "id",
        "escrow",
        "amount_cents",
        "state",
        "processor_refund_id",
        "created_at",
    ]
    list_filter = ["state", "currency", "created_at"]
    search_fields = ["id", "escrow__id", "processor_refund_id"]
    ordering = ["-created_at"]


@admin.register(WebhookEvent)
class WebhookEventAdmin(ReadOnlyAdmin):
    list_display = [
        "stripe_event_id",
        "event_type",
        "status",
        "retry_count",
        "processed_at",
        "created_at",
    ]
    list_filter = ["status", "event_type", "created_at"]
    search_fields = ["stripe_event_id", "event_type"]
    ordering = ["-created_at"]


@admin.register(UnreconcilableEvent)
class UnreconcilableEventAdmin(ReadOnlyAdmin):
    """
    Review queue for processor events that could not be applied.

    Actions:
        replay: re-apply the event through the reconciliation listener
        mark resolved: close after manual handling
    """

    list_display = [
        "id",
        "event_type",
        "reference_id",
        "reason",
        "resolution",
        "replay_count",
        "created_at",
    ]
    list_filter = ["reason", "resolution", "event_type", "created_at"]
    search_fields = ["event_id", "reference_id", "error_message"]
    ordering = ["-created_at"]
    actions = ["replay_events", "mark_resolved"]

    @admin.action(description="Replay selected events")
    def replay_events(self, request, queryset):
        resolved = 0
        for record in queryset:
            result = ReconciliationListener.replay(record.id)
            if result.outcome != ReconciliationOutcome.FLAGGED:
                resolved += 1
        self.message_user(
            request,
            f"{resolved} of {queryset.count()} events resolved by replay",
            messages.INFO,
        )

    @admin.action(description="Mark selected events as manually resolved")
    def mark_resolved(self, request, queryset):
        for record in queryset:
            ReconciliationListener.resolve_manually(
                record.id, notes=f"Resolved in admin by {request.user}"
            )
        self.message_user(request, f"{queryset.count()} events resolved", messages.SUCCESS)

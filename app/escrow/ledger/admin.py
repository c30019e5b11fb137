"""
Django admin configuration for ledger models.

Ledger entries are append-only: the admin shows them but offers no add,
change or delete. Accounts show their computed balance.
"""

from django.contrib import admin

from .models import LedgerAccount, LedgerEntry


def _format_cents(cents: int, currency: str) -> str:
    return f"{cents / 100:.2f} {currency.upper()}"


@admin.register(LedgerAccount)
class LedgerAccountAdmin(admin.ModelAdmin):
    """Accounts per escrow (payer, held, captured), per payee and the platform."""

    list_display = [
        "id",
        "type",
        "owner_ref",
        "currency",
        "balance_display",
        "is_active",
        "allow_negative",
        "created_at",
    ]
    list_filter = ["type", "currency", "is_active", "allow_negative"]
    search_fields = ["id", "owner_ref"]
    readonly_fields = ["id", "type", "owner_ref", "currency", "created_at", "balance_display"]
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "type", "owner_ref", "currency")}),
        ("Configuration", {"fields": ("allow_negative", "is_active")}),
        ("Balance", {"fields": ("balance_display",)}),
        ("Timestamps", {"fields": ("created_at",)}),
    )

    @admin.display(description="Balance")
    def balance_display(self, obj: LedgerAccount) -> str:
        return _format_cents(obj.get_balance(), obj.currency)

    def has_add_permission(self, request) -> bool:
        # Accounts are created by LedgerService on first use
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(LedgerEntry)
class LedgerEntryAdmin(admin.ModelAdmin):
    """
    Read-only view of ledger entries.

    Corrections are new entries recorded through LedgerService, never edits.
    """

    list_display = [
        "id",
        "created_at",
        "entry_type",
        "amount_display",
        "escrow",
        "debit_account",
        "credit_account",
        "reference_type",
    ]
    list_filter = ["entry_type", "reference_type", "currency", "created_at"]
    search_fields = ["id", "idempotency_key", "reference_id", "escrow__id", "description"]
    readonly_fields = [
        "id",
        "created_at",
        "escrow",
        "debit_account",
        "credit_account",
        "amount_cents",
        "currency",
        "entry_type",
        "reference_id",
        "reference_type",
        "description",
        "metadata",
        "created_by",
        "idempotency_key",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    list_select_related = ["debit_account", "credit_account"]

    fieldsets = (
        ("Entry Details", {"fields": ("id", "entry_type", "amount_cents", "currency", "created_at")}),
        ("Accounts", {"fields": ("debit_account", "credit_account")}),
        ("Reference", {"fields": ("escrow", "reference_type", "reference_id", "idempotency_key")}),
        ("Additional Info", {"fields": ("description", "metadata", "created_by")}),
    )

    @admin.display(description="Amount")
    def amount_display(self, obj: LedgerEntry) -> str:
        return _format_cents(obj.amount_cents, obj.currency)

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False

from django.contrib import admin

from marketplace.infra.models import (
    FulfillmentLineORM,
    IdempotencyKey,
    LineItemORM,
    OrderORM,
    VendorLineStatusORM,
    WalletLedgerEntryORM,
    WalletORM,
)
from marketplace.infra.outbox import OutboxEvent
from marketplace.infra.read_models import WalletSummaryView
from marketplace.infra.timeline_store import OrderNoteORM, TimelineEventORM


class LineItemInline(admin.TabularInline):
    model = LineItemORM
    extra = 0
    can_delete = False
    readonly_fields = ("line_key", "type", "vendor_id", "qty", "unit_price_minor", "subtotal_minor", "currency")


@admin.register(OrderORM)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "event_id", "status", "total_minor", "currency", "created_at")
    list_filter = ("status", "provider", "created_at")
    search_fields = ("id", "event_id")
    inlines = [LineItemInline]


@admin.register(FulfillmentLineORM)
class FulfillmentLineAdmin(admin.ModelAdmin):
    list_display = ("order", "line_key", "vendor_id", "status", "qty_fulfilled", "qty_ordered", "version", "updated_at")
    list_filter = ("status",)
    search_fields = ("order__id", "vendor_id", "line_key")
    # status changes go through the fulfillment service
    readonly_fields = ("order", "line_key", "vendor_id", "qty_ordered", "qty_fulfilled", "status", "shipping", "version")


@admin.register(VendorLineStatusORM)
class VendorLineStatusAdmin(admin.ModelAdmin):
    list_display = ("order", "line_key", "status", "updated_at")
    list_filter = ("status",)
    readonly_fields = ("order", "line_key", "status")


@admin.register(WalletORM)
class WalletAdmin(admin.ModelAdmin):
    list_display = ("vendor_id", "currency", "payout_schedule", "next_payout_at", "last_payout_at")
    search_fields = ("vendor_id",)
    readonly_fields = ("id", "vendor_id", "currency", "next_payout_at", "last_payout_at")


@admin.register(WalletLedgerEntryORM)
class WalletLedgerEntryAdmin(admin.ModelAdmin):
    list_display = ("id", "vendor_id", "type", "amount_minor", "source", "target_payout_key", "payout_batch_id", "created_at")
    list_filter = ("type", "source", "created_at")
    search_fields = ("vendor_id", "order_ref", "payout_batch_id")

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(WalletSummaryView)
class WalletSummaryViewAdmin(admin.ModelAdmin):
    list_display = ("vendor_id", "currency", "eligible_balance_minor", "on_hold_minor", "entries_count", "last_entry_at")
    readonly_fields = (
        "vendor_id", "currency", "eligible_balance_minor", "on_hold_minor",
        "event_eligible_minor", "event_on_hold_minor", "store_eligible_minor", "store_on_hold_minor",
        "entries_count", "last_entry_at",
    )


@admin.register(TimelineEventORM)
class TimelineEventAdmin(admin.ModelAdmin):
    list_display = ("order", "sequence_number", "type", "actor", "at")
    list_filter = ("type", "at")
    readonly_fields = (
        "order", "type", "actor", "at", "sequence_number", "message", "meta", "line_key", "idempotency_key",
    )


@admin.register(OrderNoteORM)
class OrderNoteAdmin(admin.ModelAdmin):
    list_display = ("order", "author", "at")
    search_fields = ("order__id", "author")


@admin.register(IdempotencyKey)
class IdempotencyAdmin(admin.ModelAdmin):
    list_display = ("key", "user_id", "operation", "created_at")
    list_filter = ("operation", "created_at")
    search_fields = ("key", "user_id")


@admin.register(OutboxEvent)
class OutboxEventAdmin(admin.ModelAdmin):
    list_display = ("id", "aggregate_id", "aggregate_type", "event_type", "processed", "retry_count", "created_at")
    list_filter = ("processed", "aggregate_type", "event_type", "created_at")
    readonly_fields = ("id", "aggregate_id", "aggregate_type", "event_type", "event_data", "processed", "processed_at", "retry_count")

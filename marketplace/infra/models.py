from __future__ import annotations

from uuid import uuid4

from django.db import models

from marketplace.domain.types import (
    FulfillmentStatus,
    LedgerSource,
    LedgerType,
    LineItemType,
    OrderStatus,
    PayoutScheduleType,
    VendorLineStatus,
)


def _choices(enum_cls):
    return tuple((member.value, member.name.replace("_", " ").title()) for member in enum_cls)


OPERATION_TYPE = (
    ("CONFIRM_PAYMENT", "Payment confirmation"),
    ("SET_FULFILLMENT_STATUS", "Fulfillment status change"),
    ("ADD_NOTE", "Order note"),
)


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class OrderORM(TimeStampedModel):
    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    event_id = models.CharField(max_length=64)
    status = models.CharField(max_length=16, choices=_choices(OrderStatus))
    currency = models.CharField(max_length=3)
    items_subtotal_minor = models.BigIntegerField()
    fees_minor = models.BigIntegerField(default=0)
    shipping_minor = models.BigIntegerField(default=0)
    total_minor = models.BigIntegerField()
    buyer_user_id = models.CharField(max_length=64, null=True, blank=True)
    deliver_to = models.JSONField(default=dict)
    provider = models.CharField(max_length=32, null=True, blank=True)
    provider_ref = models.JSONField(default=dict)

    class Meta:
        indexes = [
            models.Index(fields=("event_id", "-created_at")),
            models.Index(fields=("buyer_user_id",)),
        ]


class LineItemORM(TimeStampedModel):
    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    order = models.ForeignKey(
        OrderORM,
        on_delete=models.CASCADE,
        related_name="line_items",
    )
    position = models.PositiveIntegerField()
    line_key = models.CharField(max_length=128)
    type = models.CharField(max_length=8, choices=_choices(LineItemType))
    vendor_id = models.CharField(max_length=64)
    ref_id = models.CharField(max_length=64)  # ticket type or merch item id
    name = models.CharField(max_length=255, blank=True, default="")
    qty = models.PositiveIntegerField()
    unit_price_minor = models.BigIntegerField()
    subtotal_minor = models.BigIntegerField()
    currency = models.CharField(max_length=3)
    attributes = models.JSONField(default=dict)  # admitType/groupSize or size/color

    class Meta:
        ordering = ["position"]
        constraints = [
            models.UniqueConstraint(fields=("order", "line_key"), name="uniq_line_item_key"),
        ]


class FulfillmentLineORM(TimeStampedModel):
    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    order = models.ForeignKey(
        OrderORM,
        on_delete=models.CASCADE,
        related_name="fulfillment_lines",
    )
    line_key = models.CharField(max_length=128)
    vendor_id = models.CharField(max_length=64)
    qty_ordered = models.PositiveIntegerField()
    qty_fulfilled = models.PositiveIntegerField(default=0)
    status = models.CharField(
        max_length=16,
        choices=_choices(FulfillmentStatus),
        default=FulfillmentStatus.UNFULFILLED.value,
    )
    shipping = models.JSONField(default=dict)
    notes = models.TextField(blank=True, default="")
    version = models.PositiveIntegerField(default=1)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=("order", "line_key"), name="uniq_fulfillment_line_key"),
        ]
        indexes = [
            models.Index(fields=("vendor_id", "status")),
        ]


class VendorLineStatusORM(TimeStampedModel):
    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    order = models.ForeignKey(
        OrderORM,
        on_delete=models.CASCADE,
        related_name="vendor_line_statuses",
    )
    line_key = models.CharField(max_length=128)
    status = models.CharField(
        max_length=16,
        choices=_choices(VendorLineStatus),
        default=VendorLineStatus.PAID.value,
    )

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=("order", "line_key"), name="uniq_vendor_line_status_key"),
        ]


class WalletORM(TimeStampedModel):
    """Vendor wallet settings. Balances live in the ledger."""
    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    vendor_id = models.CharField(max_length=64, unique=True)
    currency = models.CharField(max_length=3)
    payout_frequency = models.CharField(max_length=16, default="weekly")
    payout_schedule = models.CharField(
        max_length=8,
        choices=_choices(PayoutScheduleType),
        default=PayoutScheduleType.WEEKLY.value,
    )
    payout_day_of_week = models.PositiveSmallIntegerField(default=4)
    cutoff_day_of_week = models.PositiveSmallIntegerField(default=3)
    cutoff_hour_local = models.PositiveSmallIntegerField(default=12)
    payout_hour_local = models.PositiveSmallIntegerField(default=14)
    bank_name = models.CharField(max_length=128, blank=True, default="")
    bank_account_number = models.CharField(max_length=32, blank=True, default="")
    bank_account_name = models.CharField(max_length=255, blank=True, default="")
    bank_code = models.CharField(max_length=16, blank=True, default="")
    bank_is_verified = models.BooleanField(default=False)
    next_payout_at = models.DateTimeField(null=True, blank=True)
    last_payout_at = models.DateTimeField(null=True, blank=True)


class ImmutableEntryError(Exception):
    pass


class WalletLedgerEntryORM(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    vendor_id = models.CharField(max_length=64)
    currency = models.CharField(max_length=3)
    source = models.CharField(max_length=8, choices=_choices(LedgerSource))
    order_ref = models.CharField(max_length=128)
    event_id = models.CharField(max_length=64, null=True, blank=True)
    amount_minor = models.BigIntegerField()
    type = models.CharField(max_length=16, choices=_choices(LedgerType))
    target_payout_at = models.DateTimeField()
    target_payout_key = models.CharField(max_length=10)
    payout_batch_id = models.CharField(max_length=64, null=True, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    reference_entry = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="offsets",
    )
    note = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    created_by = models.CharField(max_length=96)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=("reference_entry", "type"),
                name="uniq_ledger_offset_per_type",
            ),
        ]
        indexes = [
            models.Index(fields=("vendor_id", "-created_at")),
            models.Index(fields=("type", "target_payout_at")),
            models.Index(fields=("vendor_id", "payout_batch_id")),
        ]

    def save(self, *args, **kwargs):
        # rows are insert-only; payout stamping goes through a queryset update
        if not self._state.adding:
            raise ImmutableEntryError("Ledger entries cannot be modified")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableEntryError("Ledger entries cannot be deleted")


class IdempotencyKey(TimeStampedModel):
    key = models.CharField(max_length=255)
    user_id = models.CharField(max_length=64, null=True, blank=True)
    operation = models.CharField(max_length=32, choices=OPERATION_TYPE)
    request_hash = models.CharField(max_length=255)
    response_payload = models.JSONField()

    class Meta:
        unique_together = [("key", "user_id", "operation")]
        indexes = [
            models.Index(fields=("request_hash",)),
            models.Index(fields=("key", "user_id", "operation")),
        ]

"""
Infrastructure repositories for domain entities.
"""
from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone

from marketplace.domain.errors import Conflict, DuplicateLineKey, NotFound
from marketplace.domain.fulfillment import FulfillmentLine, ShippingInfo
from marketplace.domain.order import (
    LineItem,
    MerchLine,
    Order,
    OrderAmount,
    TicketLine,
    line_key,
    line_type,
)
from marketplace.domain.types import (
    AdmitType,
    FulfillmentStatus,
    LedgerSource,
    LedgerType,
    LineItemType,
    OrderStatus,
    PaymentProvider,
    PayoutScheduleType,
    VendorLineStatus,
)
from marketplace.domain.wallet import (
    BankDetails,
    PayoutSettings,
    WalletLedgerEntry,
    WalletSummary,
)
from marketplace.infra.models import (
    FulfillmentLineORM,
    LineItemORM,
    OrderORM,
    VendorLineStatusORM,
    WalletLedgerEntryORM,
    WalletORM,
)
from marketplace.infra.read_models import WalletSummaryView


logger = logging.getLogger(__name__)


class OrderRepository:
    """Repository for the Order aggregate."""

    def get_by_id(self, order_id: UUID) -> Order | None:
        """Get order with lines and statuses (optimized, no N+1)."""
        try:
            order_orm = (
                OrderORM.objects
                .prefetch_related("line_items", "fulfillment_lines", "vendor_line_statuses")
                .get(id=order_id)
            )
            return self._to_domain(order_orm)
        except (OrderORM.DoesNotExist, ValidationError):
            return None

    def get_or_raise(self, order_id: UUID) -> Order:
        order = self.get_by_id(order_id)
        if order is None:
            raise NotFound("Order not found.", order_id=str(order_id))
        return order

    def exists(self, order_id: UUID) -> bool:
        try:
            return OrderORM.objects.filter(id=order_id).exists()
        except ValidationError:
            return False

    def list_for_event(self, event_id: str, limit: int = 50, offset: int = 0) -> list[Order]:
        """Get orders of an event with pagination, newest first."""
        orders_orm = (
            OrderORM.objects
            .filter(event_id=event_id)
            .prefetch_related("line_items", "fulfillment_lines", "vendor_line_statuses")
            .order_by("-created_at")[offset:offset + limit]
        )
        return [self._to_domain(order_orm) for order_orm in orders_orm]

    @transaction.atomic
    def add(self, order: Order) -> UUID:
        """Insert a new order header, its line items and its fulfillment lines."""
        amount = order.amount
        order_orm = OrderORM.objects.create(
            id=order.id,
            event_id=order.event_id,
            status=order.status.value,
            currency=amount.currency,
            items_subtotal_minor=amount.items_subtotal_minor,
            fees_minor=amount.fees_minor,
            shipping_minor=amount.shipping_minor,
            total_minor=amount.total_minor,
            buyer_user_id=order.buyer_user_id,
            deliver_to=order.deliver_to,
            provider=order.provider.value if order.provider else None,
            provider_ref=order.provider_ref,
        )
        LineItemORM.objects.bulk_create([
            self._line_item_to_orm(order_orm, position, item)
            for position, item in enumerate(order.line_items)
        ])
        self.append_fulfillment_lines(order.id, list(order.fulfillment_lines.values()))
        return order_orm.id

    @transaction.atomic
    def append_fulfillment_lines(self, order_id: UUID, lines: list[FulfillmentLine]) -> None:
        """Insert new fulfillment lines and their vendor line statuses."""
        keys = [line.line_key for line in lines]
        existing = set(
            FulfillmentLineORM.objects
            .filter(order_id=order_id, line_key__in=keys)
            .values_list("line_key", flat=True)
        )
        if existing or len(set(keys)) != len(keys):
            duplicate = sorted(existing)[0] if existing else keys[0]
            raise DuplicateLineKey(f"Line {duplicate} already exists on this order", line_key=duplicate)

        try:
            with transaction.atomic():
                FulfillmentLineORM.objects.bulk_create([
                    FulfillmentLineORM(
                        order_id=order_id,
                        line_key=line.line_key,
                        vendor_id=line.vendor_id,
                        qty_ordered=line.qty_ordered,
                        qty_fulfilled=line.qty_fulfilled,
                        status=line.status.value,
                        shipping=line.shipping.to_dict(),
                        notes=line.notes,
                        version=line.version,
                    )
                    for line in lines
                ])
                VendorLineStatusORM.objects.bulk_create([
                    VendorLineStatusORM(
                        order_id=order_id,
                        line_key=line.line_key,
                        status=line.vendor_line_status.value,
                    )
                    for line in lines
                ])
        except IntegrityError:
            raise DuplicateLineKey("A line with this key already exists on this order")

    def _line_item_to_orm(self, order_orm: OrderORM, position: int, item: LineItem) -> LineItemORM:
        match item:
            case TicketLine():
                ref_id = item.ticket_type_id
                attributes = {
                    "admitType": item.admit_type.value if item.admit_type else None,
                    "groupSize": item.group_size,
                }
            case MerchLine():
                ref_id = item.merch_item_id
                attributes = {"size": item.size, "color": item.color}
        return LineItemORM(
            order=order_orm,
            position=position,
            line_key=line_key(item),
            type=line_type(item).value,
            vendor_id=item.vendor_id,
            ref_id=ref_id,
            name=item.name,
            qty=item.qty,
            unit_price_minor=item.unit_price_minor,
            subtotal_minor=item.subtotal_minor,
            currency=item.currency,
            attributes=attributes,
        )

    def _line_item_to_domain(self, item_orm: LineItemORM) -> LineItem:
        attributes = item_orm.attributes or {}
        if item_orm.type == LineItemType.TICKET.value:
            admit_type = attributes.get("admitType")
            return TicketLine(
                ticket_type_id=item_orm.ref_id,
                vendor_id=item_orm.vendor_id,
                qty=item_orm.qty,
                unit_price_minor=item_orm.unit_price_minor,
                name=item_orm.name,
                currency=item_orm.currency,
                admit_type=AdmitType(admit_type) if admit_type else None,
                group_size=attributes.get("groupSize"),
                subtotal_minor=item_orm.subtotal_minor,
            )
        return MerchLine(
            merch_item_id=item_orm.ref_id,
            vendor_id=item_orm.vendor_id,
            qty=item_orm.qty,
            unit_price_minor=item_orm.unit_price_minor,
            name=item_orm.name,
            currency=item_orm.currency,
            size=attributes.get("size"),
            color=attributes.get("color"),
            subtotal_minor=item_orm.subtotal_minor,
        )

    def _to_domain(self, order_orm: OrderORM) -> Order:
        """Convert ORM model to domain entity."""
        # Build directly, bypassing Order.create checks for rows already stored
        line_items = [
            self._line_item_to_domain(item_orm)
            for item_orm in sorted(order_orm.line_items.all(), key=lambda i: i.position)
        ]
        fulfillment_lines = {
            line_orm.line_key: FulfillmentLineRepository.to_domain(line_orm)
            for line_orm in order_orm.fulfillment_lines.all()
        }
        statuses = {
            status_orm.line_key: VendorLineStatus(status_orm.status)
            for status_orm in order_orm.vendor_line_statuses.all()
        }
        return Order(
            id=order_orm.id,
            event_id=order_orm.event_id,
            status=OrderStatus(order_orm.status),
            line_items=line_items,
            amount=OrderAmount(
                currency=order_orm.currency,
                items_subtotal_minor=order_orm.items_subtotal_minor,
                fees_minor=order_orm.fees_minor,
                shipping_minor=order_orm.shipping_minor,
                total_minor=order_orm.total_minor,
            ),
            fulfillment_lines=fulfillment_lines,
            vendor_line_statuses=statuses,
            buyer_user_id=order_orm.buyer_user_id,
            deliver_to=order_orm.deliver_to,
            provider=PaymentProvider(order_orm.provider) if order_orm.provider else None,
            provider_ref=order_orm.provider_ref,
            created_at=order_orm.created_at,
        )


class FulfillmentLineRepository:
    """Row-level access to fulfillment lines and their vendor line statuses."""

    def get(self, order_id: UUID, key: str) -> FulfillmentLine | None:
        try:
            line_orm = FulfillmentLineORM.objects.filter(order_id=order_id, line_key=key).first()
        except ValidationError:
            return None
        return self.to_domain(line_orm) if line_orm else None

    def update(self, order_id: UUID, line: FulfillmentLine, expected_version: int) -> None:
        """
        Write ``line`` only if the stored row is still at ``expected_version``.

        Updates exactly one fulfillment line and its vendor line status;
        raises Conflict when another writer got there first.
        """
        now = line.updated_at or timezone.now()
        updated = (
            FulfillmentLineORM.objects
            .filter(order_id=order_id, line_key=line.line_key, version=expected_version)
            .update(
                status=line.status.value,
                qty_fulfilled=line.qty_fulfilled,
                shipping=line.shipping.to_dict(),
                notes=line.notes,
                version=line.version,
                updated_at=now,
            )
        )
        if updated != 1:
            logger.info(
                "fulfillment_line_version_conflict",
                extra={
                    "order_id": str(order_id),
                    "line_key": line.line_key,
                    "expected_version": expected_version,
                },
            )
            raise Conflict(line_key=line.line_key, expected_version=expected_version)

        VendorLineStatusORM.objects.filter(order_id=order_id, line_key=line.line_key).update(
            status=line.vendor_line_status.value,
            updated_at=now,
        )

    def vendor_line_status(self, order_id: UUID, key: str) -> VendorLineStatus | None:
        status = (
            VendorLineStatusORM.objects
            .filter(order_id=order_id, line_key=key)
            .values_list("status", flat=True)
            .first()
        )
        return VendorLineStatus(status) if status else None

    @staticmethod
    def to_domain(line_orm: FulfillmentLineORM) -> FulfillmentLine:
        return FulfillmentLine(
            line_key=line_orm.line_key,
            vendor_id=line_orm.vendor_id,
            qty_ordered=line_orm.qty_ordered,
            qty_fulfilled=line_orm.qty_fulfilled,
            status=FulfillmentStatus(line_orm.status),
            shipping=ShippingInfo.from_dict(line_orm.shipping),
            notes=line_orm.notes,
            version=line_orm.version,
            created_at=line_orm.created_at,
            updated_at=line_orm.updated_at,
        )


class LedgerRepository:
    """Insert-only access to the wallet ledger."""

    def add(self, entry: WalletLedgerEntry) -> WalletLedgerEntry:
        entry_orm = WalletLedgerEntryORM.objects.create(
            id=entry.id,
            vendor_id=entry.vendor_id,
            currency=entry.currency,
            source=entry.source.value,
            order_ref=entry.order_ref,
            event_id=entry.event_id,
            amount_minor=entry.amount_minor,
            type=entry.type.value,
            target_payout_at=entry.target_payout_at,
            target_payout_key=entry.target_payout_key,
            payout_batch_id=entry.payout_batch_id,
            paid_at=entry.paid_at,
            reference_entry_id=entry.reference_entry_id,
            note=entry.note,
            created_by=entry.created_by,
        )
        return self.to_domain(entry_orm)

    def get(self, entry_id: UUID) -> WalletLedgerEntry | None:
        entry_orm = WalletLedgerEntryORM.objects.filter(id=entry_id).first()
        return self.to_domain(entry_orm) if entry_orm else None

    def list_for_vendor(self, vendor_id: str, limit: int | None = None) -> list[WalletLedgerEntry]:
        qs = WalletLedgerEntryORM.objects.filter(vendor_id=vendor_id).order_by("-created_at", "-id")
        if limit is not None:
            qs = qs[:limit]
        return [self.to_domain(e) for e in qs]

    def ledger_currency(self, vendor_id: str) -> str | None:
        return (
            WalletLedgerEntryORM.objects
            .filter(vendor_id=vendor_id)
            .order_by("created_at")
            .values_list("currency", flat=True)
            .first()
        )

    def has_offset(self, entry_id: UUID, entry_type: LedgerType) -> bool:
        return WalletLedgerEntryORM.objects.filter(
            reference_entry_id=entry_id,
            type=entry_type.value,
        ).exists()

    def open_holds(
        self,
        vendor_id: str | None = None,
        due_by: datetime | None = None,
        limit: int | None = None,
    ) -> list[WalletLedgerEntry]:
        """Holds never offset by a release, optionally only those due by ``due_by``."""
        released = WalletLedgerEntryORM.objects.filter(
            type=LedgerType.CREDIT_RELEASE.value,
            reference_entry_id__isnull=False,
        ).values("reference_entry_id")
        qs = (
            WalletLedgerEntryORM.objects
            .filter(type=LedgerType.DEBIT_HOLD.value)
            .exclude(id__in=released)
        )
        if vendor_id is not None:
            qs = qs.filter(vendor_id=vendor_id)
        if due_by is not None:
            qs = qs.filter(target_payout_at__lte=due_by)
        qs = qs.order_by("target_payout_at", "created_at")
        if limit is not None:
            qs = qs[:limit]
        return [self.to_domain(e) for e in qs]

    def corrected_ids(self, entry_ids, offset_type: LedgerType) -> set:
        return set(
            WalletLedgerEntryORM.objects
            .filter(reference_entry_id__in=list(entry_ids), type=offset_type.value)
            .values_list("reference_entry_id", flat=True)
        )

    def unstamped_credits(self, vendor_id: str, due_by: datetime | None = None) -> list[WalletLedgerEntry]:
        qs = WalletLedgerEntryORM.objects.filter(
            vendor_id=vendor_id,
            type=LedgerType.CREDIT_ELIGIBLE.value,
            payout_batch_id__isnull=True,
        )
        if due_by is not None:
            qs = qs.filter(target_payout_at__lte=due_by)
        return [self.to_domain(e) for e in qs.order_by("target_payout_at", "created_at")]

    def stamp(self, entry_ids, batch_id: str, paid_at: datetime) -> int:
        """Set payout batch and paid time once; already stamped rows are left alone."""
        return WalletLedgerEntryORM.objects.filter(
            id__in=list(entry_ids),
            payout_batch_id__isnull=True,
        ).update(payout_batch_id=batch_id, paid_at=paid_at)

    def payout_debits(self, vendor_id: str, batch_id: str) -> list[WalletLedgerEntry]:
        qs = WalletLedgerEntryORM.objects.filter(
            vendor_id=vendor_id,
            payout_batch_id=batch_id,
            type=LedgerType.DEBIT_PAYOUT.value,
        ).order_by("created_at")
        return [self.to_domain(e) for e in qs]

    @staticmethod
    def to_domain(entry_orm: WalletLedgerEntryORM) -> WalletLedgerEntry:
        return WalletLedgerEntry(
            id=entry_orm.id,
            vendor_id=entry_orm.vendor_id,
            currency=entry_orm.currency,
            source=LedgerSource(entry_orm.source),
            order_ref=entry_orm.order_ref,
            amount_minor=entry_orm.amount_minor,
            type=LedgerType(entry_orm.type),
            target_payout_at=entry_orm.target_payout_at,
            target_payout_key=entry_orm.target_payout_key,
            created_at=entry_orm.created_at,
            created_by=entry_orm.created_by,
            event_id=entry_orm.event_id,
            payout_batch_id=entry_orm.payout_batch_id,
            paid_at=entry_orm.paid_at,
            reference_entry_id=entry_orm.reference_entry_id,
            note=entry_orm.note,
        )


class WalletRepository:
    """Repository for vendor wallets and their cached summaries."""

    def get_or_create(self, vendor_id: str, currency: str) -> WalletORM:
        wallet_orm, created = WalletORM.objects.get_or_create(
            vendor_id=vendor_id,
            defaults={"currency": currency},
        )
        if created:
            logger.info("wallet_created", extra={"vendor_id": vendor_id, "currency": currency})
        return wallet_orm

    def get(self, vendor_id: str) -> WalletORM | None:
        return WalletORM.objects.filter(vendor_id=vendor_id).first()

    def get_summary(self, vendor_id: str) -> WalletSummary | None:
        """Wallet settings joined with the cached balances."""
        wallet_orm = self.get(vendor_id)
        if wallet_orm is None:
            return None
        view = WalletSummaryView.objects.filter(vendor_id=vendor_id).first()
        return WalletSummary(
            vendor_id=vendor_id,
            currency=wallet_orm.currency,
            eligible_balance_minor=view.eligible_balance_minor if view else 0,
            on_hold_minor=view.on_hold_minor if view else 0,
            payout=self.payout_settings(wallet_orm),
            last_updated_at=view.updated_at if view else None,
        )

    def save_summary(self, vendor_id: str, currency: str, balances, by_source, entries_count: int,
                     last_entry_at: datetime | None) -> None:
        WalletSummaryView.objects.update_or_create(
            vendor_id=vendor_id,
            defaults={
                "currency": currency,
                "eligible_balance_minor": balances.eligible_balance_minor,
                "on_hold_minor": balances.on_hold_minor,
                "event_eligible_minor": by_source.event.eligible_balance_minor,
                "event_on_hold_minor": by_source.event.on_hold_minor,
                "store_eligible_minor": by_source.store.eligible_balance_minor,
                "store_on_hold_minor": by_source.store.on_hold_minor,
                "entries_count": entries_count,
                "last_entry_at": last_entry_at,
            },
        )

    def set_payout_times(self, vendor_id: str, last_payout_at: datetime | None,
                         next_payout_at: datetime | None) -> None:
        WalletORM.objects.filter(vendor_id=vendor_id).update(
            last_payout_at=last_payout_at,
            next_payout_at=next_payout_at,
            updated_at=timezone.now(),
        )

    def payout_settings(self, wallet_orm: WalletORM) -> PayoutSettings:
        bank = None
        if wallet_orm.bank_account_number:
            bank = BankDetails(
                bank_name=wallet_orm.bank_name,
                account_number=wallet_orm.bank_account_number,
                account_name=wallet_orm.bank_account_name,
                bank_code=wallet_orm.bank_code,
                is_verified=wallet_orm.bank_is_verified,
            )
        return PayoutSettings(
            frequency=wallet_orm.payout_frequency,
            schedule=PayoutScheduleType(wallet_orm.payout_schedule),
            day_of_week=wallet_orm.payout_day_of_week,
            cutoff_day_of_week=wallet_orm.cutoff_day_of_week,
            cutoff_hour_local=wallet_orm.cutoff_hour_local,
            payout_hour_local=wallet_orm.payout_hour_local,
            bank=bank,
            next_payout_at=wallet_orm.next_payout_at,
            last_payout_at=wallet_orm.last_payout_at,
        )

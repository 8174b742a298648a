"""
Application services for orders: payment confirmation, reads and notes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID, uuid4

from django.db import transaction
from django.utils import timezone

from marketplace.domain.errors import Forbidden, InvalidAmount, MarketplaceError, NotFound
from marketplace.domain.events import OrderCreated
from marketplace.domain.fulfillment import ShippingInfo
from marketplace.domain.order import LineItem, Order, OrderHeader, ledger_source, line_key
from marketplace.domain.payout import PayoutSchedule
from marketplace.domain.timeline import Note
from marketplace.domain.types import SYSTEM_ACTOR, LedgerSource, LedgerType, TimelineEventType
from marketplace.domain.visibility import OrderView, ViewerContext, resolve_view
from marketplace.infra.outbox import OutboxRepository
from marketplace.infra.repositories import OrderRepository
from marketplace.infra.timeline_store import NoteStore, TimelineStore, merged_timeline
from marketplace.services.wallet import WalletLedgerService


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VendorCredit:
    """Amount a vendor earns from an order, held until its payout window."""
    vendor_id: str
    amount_minor: int
    source: LedgerSource
    line_key: str | None = None


@dataclass(frozen=True)
class PaymentConfirmation:
    """What the payment collaborator hands over once a charge is verified."""
    header: OrderHeader
    line_items: list[LineItem]
    shipping: dict[str, ShippingInfo] = field(default_factory=dict)
    vendor_credits: list[VendorCredit] | None = None
    paid_at: datetime | None = None


def default_vendor_credits(order: Order) -> list[VendorCredit]:
    """One credit per line: its subtotal plus the line's shipping fee."""
    lines = order.fulfillment_lines
    credits = []
    for item in order.line_items:
        key = line_key(item)
        shipping_fee = lines[key].shipping.fee_minor if key in lines else 0
        credits.append(VendorCredit(
            vendor_id=item.vendor_id,
            amount_minor=item.subtotal_minor + shipping_fee,
            source=ledger_source(item),
            line_key=key,
        ))
    return credits


class PaymentConfirmationService:
    """Turns a confirmed payment into an order, its lines and held earnings."""

    def __init__(
        self,
        order_repo: OrderRepository | None = None,
        ledger_service: WalletLedgerService | None = None,
        timeline_store: TimelineStore | None = None,
        outbox_repo: OutboxRepository | None = None,
        schedule: PayoutSchedule | None = None,
    ):
        self.order_repo = order_repo or OrderRepository()
        self.outbox_repo = outbox_repo or OutboxRepository()
        self.timeline_store = timeline_store or TimelineStore()
        self.schedule = schedule or PayoutSchedule.from_settings()
        self.ledger_service = ledger_service or WalletLedgerService(
            outbox_repo=self.outbox_repo,
            schedule=self.schedule,
        )

    @transaction.atomic
    def confirm_payment(self, confirmation: PaymentConfirmation) -> Order:
        """Create the paid order and hold each vendor's earnings."""
        header = confirmation.header
        if header.id is not None:
            existing = self.order_repo.get_by_id(header.id)
            if existing is not None:
                logger.info("payment_already_confirmed", extra={"order_id": str(header.id)})
                return existing

        order = Order.create(header, confirmation.line_items, confirmation.shipping)
        paid_at = confirmation.paid_at or timezone.now()

        credits = confirmation.vendor_credits
        if credits is None:
            credits = default_vendor_credits(order)
        for credit in credits:
            if credit.amount_minor < 0:
                raise InvalidAmount("Vendor credits must be non-negative", vendor_id=credit.vendor_id)

        self.order_repo.add(order)

        for credit in credits:
            if credit.amount_minor == 0:
                continue
            target_payout_at = self.ledger_service.schedule_for(credit.vendor_id).target_payout_for_sale(paid_at)
            self.ledger_service.append_entry(
                vendor_id=credit.vendor_id,
                currency=order.amount.currency,
                source=credit.source,
                order_ref=str(order.id),
                amount_minor=-credit.amount_minor,
                type=LedgerType.DEBIT_HOLD,
                target_payout_at=target_payout_at,
                created_by=SYSTEM_ACTOR,
                event_id=order.event_id,
                note=f"Held for {credit.line_key}" if credit.line_key else "Held until payout window",
            )

        self.timeline_store.append(
            order.id,
            TimelineEventType.ORDER_CREATED,
            actor=SYSTEM_ACTOR,
            message=f"Order created with {len(order.line_items)} line(s)",
            meta={"lineKeys": order.line_keys, "totalMinor": order.amount.total_minor},
            at=paid_at,
        )
        self.timeline_store.append(
            order.id,
            TimelineEventType.PAYMENT_CAPTURED,
            actor=SYSTEM_ACTOR,
            message="Payment captured",
            meta={
                "provider": order.provider.value if order.provider else None,
                "amountMinor": order.amount.total_minor,
                "currency": order.amount.currency,
            },
            at=paid_at,
        )

        event = OrderCreated(
            event_id=str(uuid4()),
            aggregate_id=str(order.id),
            event_type="OrderCreated",
            event_ref=order.event_id,
            vendor_ids=order.vendor_ids,
            total_minor=order.amount.total_minor,
            lines_count=len(order.line_items),
        )
        event.occurred_at = paid_at.isoformat()
        self.outbox_repo.add_event(event, "Order")

        logger.info(
            "payment_confirmed",
            extra={
                "order_id": str(order.id),
                "event_ref": order.event_id,
                "total_minor": order.amount.total_minor,
                "vendors": len(order.vendor_ids),
            },
        )
        return order


class OrderQueryService:
    """Read side of orders: per-viewer views, timelines and operator notes."""

    def __init__(
        self,
        order_repo: OrderRepository | None = None,
        timeline_store: TimelineStore | None = None,
        note_store: NoteStore | None = None,
    ):
        self.order_repo = order_repo or OrderRepository()
        self.timeline_store = timeline_store or TimelineStore()
        self.note_store = note_store or NoteStore()

    def get_order_view(self, order_id: UUID, viewer: ViewerContext) -> OrderView:
        order = self.order_repo.get_or_raise(order_id)
        view = resolve_view(order, viewer)
        if view is None:
            logger.info(
                "order_view_forbidden",
                extra={"order_id": str(order_id), "viewer_id": viewer.viewer_id},
            )
            raise Forbidden(order_id=str(order_id))
        return view

    def list_event_orders(
        self,
        event_id: str,
        viewer: ViewerContext,
        limit: int = 50,
        offset: int = 0,
    ) -> list[OrderView]:
        """Orders of an event the viewer may see, newest first."""
        views = []
        for order in self.order_repo.list_for_event(event_id, limit=limit, offset=offset):
            view = resolve_view(order, viewer)
            if view is not None:
                views.append(view)
        return views

    def timeline(self, order_id: UUID, newest_first: bool = False) -> list:
        if not self.order_repo.exists(order_id):
            raise NotFound("Order not found.", order_id=str(order_id))
        return merged_timeline(
            order_id,
            newest_first=newest_first,
            timeline_store=self.timeline_store,
            note_store=self.note_store,
        )

    @transaction.atomic
    def add_note(self, order_id: UUID, author: str, message: str) -> Note:
        """Attach an operator note; notes never change order state."""
        if not self.order_repo.exists(order_id):
            raise NotFound("Order not found.", order_id=str(order_id))
        message = (message or "").strip()
        if not message:
            raise MarketplaceError("Note cannot be empty.")
        note = self.note_store.add_note(order_id, author, message)
        logger.info("order_note_added", extra={"order_id": str(order_id)})
        return note

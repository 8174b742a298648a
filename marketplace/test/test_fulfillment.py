"""
Tests for the fulfillment engine against the database.
"""
from datetime import datetime, timezone
from uuid import uuid4

from django.db import IntegrityError, transaction
from django.test import TestCase

from marketplace.domain.errors import Conflict, InvalidQuantity, NotFound, NotOwner, TerminalStateViolation
from marketplace.domain.fulfillment import FulfillmentChange
from marketplace.domain.order import MerchLine, OrderHeader, TicketLine
from marketplace.domain.types import AdmitType, FulfillmentStatus, VendorLineStatus
from marketplace.infra.outbox import OutboxEvent
from marketplace.infra.repositories import FulfillmentLineRepository, OrderRepository
from marketplace.infra.timeline_store import TimelineEventORM, TimelineStore
from marketplace.services.fulfillment import FulfillmentService
from marketplace.services.orders import PaymentConfirmation, PaymentConfirmationService

MERCH_KEY = "merch:hoodie"
TICKET_KEY = "ticket:ga"


class FulfillmentServiceTest(TestCase):
    """Vendor X sells merch, vendor Y sells the ticket, both in one order."""

    def setUp(self):
        self.paid_at = datetime(2025, 9, 1, 10, 0, tzinfo=timezone.utc)
        order = PaymentConfirmationService().confirm_payment(PaymentConfirmation(
            header=OrderHeader(event_id="evt-1"),
            line_items=[
                MerchLine(merch_item_id="hoodie", vendor_id="vendor-x", qty=2, unit_price_minor=1000),
                TicketLine(ticket_type_id="ga", vendor_id="vendor-y", qty=1, unit_price_minor=5000),
            ],
            paid_at=self.paid_at,
        ))
        self.order_id = order.id
        self.service = FulfillmentService()
        self.lines = FulfillmentLineRepository()

    def marked_events(self):
        return TimelineEventORM.objects.filter(order_id=self.order_id, type="fulfillment_marked")

    def test_vendor_ships_own_line(self):
        line = self.service.set_fulfillment_status(
            self.order_id, MERCH_KEY, "vendor-x", "shipped", qty_fulfilled=2, tracking_number="TRK1",
        )
        self.assertEqual(line.status, FulfillmentStatus.SHIPPED)
        self.assertEqual(line.qty_fulfilled, 2)
        self.assertEqual(line.version, 2)

        stored = self.lines.get(self.order_id, MERCH_KEY)
        self.assertEqual(stored.status, FulfillmentStatus.SHIPPED)
        self.assertEqual(stored.shipping.tracking_number, "TRK1")
        self.assertEqual(self.lines.vendor_line_status(self.order_id, MERCH_KEY), VendorLineStatus.SHIPPED)

        ticket = self.lines.get(self.order_id, TICKET_KEY)
        self.assertEqual(ticket.status, FulfillmentStatus.UNFULFILLED)
        self.assertEqual(ticket.version, 1)
        self.assertEqual(self.lines.vendor_line_status(self.order_id, TICKET_KEY), VendorLineStatus.PAID)

        events = list(self.marked_events())
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].actor, "vendor:vendor-x")
        self.assertEqual(events[0].meta["lineKey"], MERCH_KEY)
        self.assertEqual(events[0].meta["status"], "shipped")
        self.assertTrue(OutboxEvent.objects.filter(event_type="FulfillmentMarked", aggregate_id=str(self.order_id)).exists())

    def test_other_vendor_cannot_touch_line(self):
        with self.assertRaises(NotOwner):
            self.service.set_fulfillment_status(self.order_id, MERCH_KEY, "vendor-y", "shipped")
        line = self.lines.get(self.order_id, MERCH_KEY)
        self.assertEqual(line.status, FulfillmentStatus.UNFULFILLED)
        self.assertEqual(line.version, 1)
        self.assertFalse(self.marked_events().exists())

    def test_cancelled_line_stays_cancelled(self):
        self.service.set_fulfillment_status(self.order_id, MERCH_KEY, "vendor-x", "cancelled")
        with self.assertRaises(TerminalStateViolation):
            self.service.set_fulfillment_status(self.order_id, MERCH_KEY, "vendor-x", "shipped")
        line = self.lines.get(self.order_id, MERCH_KEY)
        self.assertEqual(line.status, FulfillmentStatus.CANCELLED)
        self.assertEqual(self.marked_events().count(), 1)

    def test_stale_version_conflicts(self):
        self.service.set_fulfillment_status(
            self.order_id, MERCH_KEY, "vendor-x", "shipped", expected_version=1,
        )
        with self.assertRaises(Conflict) as context:
            self.service.set_fulfillment_status(
                self.order_id, MERCH_KEY, "vendor-x", "cancelled", expected_version=1,
            )
        self.assertTrue(context.exception.retryable)
        self.assertEqual(self.lines.get(self.order_id, MERCH_KEY).status, FulfillmentStatus.SHIPPED)

    def test_concurrent_writers_one_wins(self):
        # both writers read version 1 before either writes
        first = self.lines.get(self.order_id, MERCH_KEY)
        second = self.lines.get(self.order_id, MERCH_KEY)

        shipped = first.apply(FulfillmentChange(status=FulfillmentStatus.SHIPPED))
        cancelled = second.apply(FulfillmentChange(status=FulfillmentStatus.CANCELLED))

        self.lines.update(self.order_id, shipped, expected_version=first.version)
        with self.assertRaises(Conflict):
            self.lines.update(self.order_id, cancelled, expected_version=second.version)

        stored = self.lines.get(self.order_id, MERCH_KEY)
        self.assertEqual(stored.status, FulfillmentStatus.SHIPPED)
        self.assertEqual(stored.version, 2)

    def test_idempotency_key_replays(self):
        first = self.service.set_fulfillment_status(
            self.order_id, MERCH_KEY, "vendor-x", "shipped", idempotency_key="ship-1",
        )
        second = self.service.set_fulfillment_status(
            self.order_id, MERCH_KEY, "vendor-x", "shipped", idempotency_key="ship-1",
        )
        self.assertEqual(first.version, second.version)
        self.assertEqual(self.marked_events().count(), 1)

    def test_same_key_from_another_vendor_is_applied(self):
        self.service.set_fulfillment_status(
            self.order_id, MERCH_KEY, "vendor-x", "shipped", idempotency_key="1",
        )
        ticket = self.service.set_fulfillment_status(
            self.order_id, TICKET_KEY, "vendor-y", "fulfilled", idempotency_key="1",
        )
        self.assertEqual(ticket.status, FulfillmentStatus.FULFILLED)
        self.assertEqual(self.lines.get(self.order_id, TICKET_KEY).status, FulfillmentStatus.FULFILLED)
        self.assertEqual(self.lines.vendor_line_status(self.order_id, TICKET_KEY), VendorLineStatus.FULFILLED)
        self.assertEqual(self.marked_events().count(), 2)

    def test_reused_key_does_not_reveal_other_vendors_line(self):
        self.service.set_fulfillment_status(
            self.order_id, MERCH_KEY, "vendor-x", "shipped", tracking_number="SECRET-TRK", idempotency_key="k",
        )
        with self.assertRaises(NotOwner):
            self.service.set_fulfillment_status(
                self.order_id, MERCH_KEY, "vendor-y", "shipped", idempotency_key="k",
            )
        self.assertEqual(self.marked_events().count(), 1)

    def test_unchanged_status_still_recorded(self):
        line = self.service.set_fulfillment_status(self.order_id, MERCH_KEY, "vendor-x", "unfulfilled")
        self.assertEqual(line.version, 1)
        self.assertEqual(self.lines.get(self.order_id, MERCH_KEY).version, 1)
        self.assertEqual(self.marked_events().count(), 1)

    def test_quantity_out_of_range(self):
        with self.assertRaises(InvalidQuantity):
            self.service.set_fulfillment_status(self.order_id, MERCH_KEY, "vendor-x", "shipped", qty_fulfilled=3)
        self.assertEqual(self.lines.get(self.order_id, MERCH_KEY).qty_fulfilled, 0)

    def test_missing_order_and_line(self):
        with self.assertRaises(NotFound):
            self.service.set_fulfillment_status(uuid4(), MERCH_KEY, "vendor-x", "shipped")
        with self.assertRaises(NotFound):
            self.service.set_fulfillment_status(self.order_id, "merch:unknown", "vendor-x", "shipped")

    def test_timeline_sequence_grows(self):
        self.service.set_fulfillment_status(self.order_id, MERCH_KEY, "vendor-x", "shipped")
        self.service.set_fulfillment_status(self.order_id, TICKET_KEY, "vendor-y", "fulfilled")
        events = TimelineStore().list_events(self.order_id)
        self.assertEqual([e.sequence_number for e in events], [1, 2, 3, 4])
        self.assertEqual(
            [e.type.value for e in events],
            ["order_created", "payment_captured", "fulfillment_marked", "fulfillment_marked"],
        )

    def test_sequence_numbers_are_unique_per_order(self):
        TimelineEventORM.objects.create(
            order_id=self.order_id,
            type="fulfillment_marked",
            actor="system",
            at=self.paid_at,
            sequence_number=3,
        )
        # a second writer that read the same max cannot reuse its number
        with self.assertRaises(IntegrityError), transaction.atomic():
            TimelineEventORM.objects.create(
                order_id=self.order_id,
                type="fulfillment_marked",
                actor="system",
                at=self.paid_at,
                sequence_number=3,
            )
        event = TimelineStore().append(self.order_id, "fulfillment_marked", actor="vendor:vendor-x")
        self.assertEqual(event.sequence_number, 4)


class OrderRepositoryTest(TestCase):

    def test_round_trip_keeps_line_variants(self):
        order = PaymentConfirmationService().confirm_payment(PaymentConfirmation(
            header=OrderHeader(event_id="evt-2", buyer_user_id="buyer-1"),
            line_items=[
                TicketLine(ticket_type_id="vip", vendor_id="org", qty=2, unit_price_minor=2500, admit_type=AdmitType.VIP),
                MerchLine(merch_item_id="tee", vendor_id="brand", qty=1, unit_price_minor=900, size="L"),
            ],
        ))
        loaded = OrderRepository().get_or_raise(order.id)
        self.assertEqual(loaded.line_keys, ["ticket:vip", "merch:tee"])
        self.assertEqual(loaded.amount.total_minor, 5900)
        self.assertEqual(loaded.line_items[1].size, "L")
        self.assertEqual(set(loaded.fulfillment_lines), {"ticket:vip", "merch:tee"})
        self.assertEqual(loaded.buyer_user_id, "buyer-1")

    def test_unknown_order(self):
        self.assertIsNone(OrderRepository().get_by_id(uuid4()))
        with self.assertRaises(NotFound):
            OrderRepository().get_or_raise(uuid4())

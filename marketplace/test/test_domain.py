"""
Unit tests for domain models.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from django.test import TestCase

from marketplace.domain.errors import (
    DuplicateLineKey,
    InvalidAmount,
    InvalidQuantity,
    NotOwner,
    TerminalStateViolation,
)
from marketplace.domain.fulfillment import (
    FulfillmentChange,
    FulfillmentLine,
    ShippingInfo,
    aggregate_status,
    coarsen,
)
from marketplace.domain.order import (
    MerchLine,
    Order,
    OrderHeader,
    TicketLine,
    ledger_source,
    line_key,
)
from marketplace.domain.payout import PayoutSchedule, calculate_payout_fee
from marketplace.domain.timeline import Note, TimelineEvent, merge_timeline
from marketplace.domain.types import (
    FulfillmentAggregateStatus,
    FulfillmentStatus,
    LedgerSource,
    LedgerType,
    OrderStatus,
    PayoutScheduleType,
    ShippingMethod,
    TimelineEventType,
    VendorLineStatus,
)
from marketplace.domain.wallet import PayoutSettings, WalletLedgerEntry, derive_balances, earnings_by_source


def merch(merch_item_id="m1", vendor_id="vendor-x", qty=2, unit=1000, **kwargs):
    return MerchLine(merch_item_id=merch_item_id, vendor_id=vendor_id, qty=qty, unit_price_minor=unit, **kwargs)


def ticket(ticket_type_id="t1", vendor_id="vendor-y", qty=1, unit=5000, **kwargs):
    return TicketLine(ticket_type_id=ticket_type_id, vendor_id=vendor_id, qty=qty, unit_price_minor=unit, **kwargs)


class LineItemTest(TestCase):
    """Tests for ticket and merch line value objects."""

    def test_subtotal_is_derived(self):
        item = merch(qty=3, unit=250)
        self.assertEqual(item.subtotal_minor, 750)

    def test_subtotal_must_match_qty_times_price(self):
        with self.assertRaises(InvalidAmount):
            merch(qty=2, unit=1000, subtotal_minor=1500)

    def test_quantity_must_be_positive(self):
        with self.assertRaises(InvalidQuantity):
            ticket(qty=0)

    def test_negative_price_fails(self):
        with self.assertRaises(InvalidAmount):
            ticket(unit=-1)

    def test_line_keys_and_sources(self):
        self.assertEqual(line_key(merch(merch_item_id="hoodie")), "merch:hoodie")
        self.assertEqual(line_key(ticket(ticket_type_id="vip")), "ticket:vip")
        self.assertEqual(ledger_source(merch()), LedgerSource.STORE)
        self.assertEqual(ledger_source(ticket()), LedgerSource.EVENT)


class OrderTest(TestCase):
    """Tests for the Order aggregate."""

    def test_create_two_vendor_order(self):
        order = Order.create(OrderHeader(event_id="evt-1"), [merch(), ticket()])
        self.assertEqual(order.status, OrderStatus.PAID)
        self.assertEqual(order.amount.items_subtotal_minor, 7000)
        self.assertEqual(order.amount.total_minor, 7000)
        self.assertEqual(order.line_keys, ["merch:m1", "ticket:t1"])
        self.assertEqual(order.vendor_ids, ["vendor-x", "vendor-y"])

    def test_every_line_starts_unfulfilled(self):
        order = Order.create(OrderHeader(event_id="evt-1"), [merch(), ticket()])
        lines = order.fulfillment_lines
        self.assertEqual(set(lines), {"merch:m1", "ticket:t1"})
        for line in lines.values():
            self.assertEqual(line.status, FulfillmentStatus.UNFULFILLED)
            self.assertEqual(line.qty_fulfilled, 0)
            self.assertEqual(line.version, 1)
        self.assertEqual(set(order.vendor_line_statuses.values()), {VendorLineStatus.PAID})

    def test_duplicate_line_key_rejected(self):
        with self.assertRaises(DuplicateLineKey):
            Order.create(OrderHeader(event_id="evt-1"), [merch(), merch(qty=1)])

    def test_empty_order_rejected(self):
        with self.assertRaises(InvalidAmount):
            Order.create(OrderHeader(event_id="evt-1"), [])

    def test_total_must_add_up(self):
        header = OrderHeader(event_id="evt-1", fees_minor=300, total_minor=7000)
        with self.assertRaises(InvalidAmount):
            Order.create(header, [merch(), ticket()])

    def test_total_includes_fees_and_shipping(self):
        header = OrderHeader(event_id="evt-1", fees_minor=300, total_minor=8300)
        shipping = {"merch:m1": ShippingInfo(method=ShippingMethod.DELIVERY, fee_minor=1000)}
        order = Order.create(header, [merch(), ticket()], shipping)
        self.assertEqual(order.amount.shipping_minor, 1000)
        self.assertEqual(order.fulfillment_lines["merch:m1"].shipping.fee_minor, 1000)

    def test_negative_shipping_fee_rejected(self):
        with self.assertRaises(InvalidAmount):
            ShippingInfo(fee_minor=-1)

    def test_shipping_for_unknown_line_rejected(self):
        shipping = {"merch:other": ShippingInfo()}
        with self.assertRaises(InvalidAmount):
            Order.create(OrderHeader(event_id="evt-1"), [merch()], shipping)

    def test_line_currency_must_match_order(self):
        with self.assertRaises(InvalidAmount):
            Order.create(OrderHeader(event_id="evt-1", currency="NGN"), [merch(currency="USD")])


class FulfillmentLineTest(TestCase):
    """Tests for the fulfillment state machine."""

    def setUp(self):
        self.line = FulfillmentLine(line_key="merch:m1", vendor_id="vendor-x", qty_ordered=2)

    def test_ship_bumps_version(self):
        shipped = self.line.apply(FulfillmentChange(
            status=FulfillmentStatus.SHIPPED,
            qty_fulfilled=2,
            tracking_number="TRK1",
            carrier="GIG",
        ))
        self.assertEqual(shipped.status, FulfillmentStatus.SHIPPED)
        self.assertEqual(shipped.qty_fulfilled, 2)
        self.assertEqual(shipped.shipping.tracking_number, "TRK1")
        self.assertEqual(shipped.version, 2)
        # original snapshot untouched
        self.assertEqual(self.line.status, FulfillmentStatus.UNFULFILLED)

    def test_full_path_to_fulfilled(self):
        line = self.line
        for status in (FulfillmentStatus.SHIPPED, FulfillmentStatus.DELIVERED, FulfillmentStatus.FULFILLED):
            line = line.apply(FulfillmentChange(status=status))
        self.assertEqual(line.status, FulfillmentStatus.FULFILLED)
        self.assertTrue(line.is_terminal)

    def test_delivered_cannot_be_cancelled(self):
        line = self.line.apply(FulfillmentChange(status=FulfillmentStatus.SHIPPED))
        line = line.apply(FulfillmentChange(status=FulfillmentStatus.DELIVERED))
        with self.assertRaises(TerminalStateViolation):
            line.apply(FulfillmentChange(status=FulfillmentStatus.CANCELLED))

    def test_unfulfilled_cannot_jump_to_delivered(self):
        with self.assertRaises(TerminalStateViolation):
            self.line.apply(FulfillmentChange(status=FulfillmentStatus.DELIVERED))

    def test_terminal_states_never_change(self):
        for terminal in (FulfillmentStatus.CANCELLED, FulfillmentStatus.FULFILLED):
            line = self.line.apply(FulfillmentChange(status=terminal))
            for target in FulfillmentStatus:
                with self.assertRaises(TerminalStateViolation):
                    line.apply(FulfillmentChange(status=target))

    def test_quantity_bounds(self):
        with self.assertRaises(InvalidQuantity):
            self.line.apply(FulfillmentChange(status=FulfillmentStatus.SHIPPED, qty_fulfilled=3))
        with self.assertRaises(InvalidQuantity):
            self.line.apply(FulfillmentChange(status=FulfillmentStatus.SHIPPED, qty_fulfilled=-1))

    def test_owner_check(self):
        self.line.assert_owner("vendor-x")
        with self.assertRaises(NotOwner):
            self.line.assert_owner("vendor-y")

    def test_same_status_is_noop(self):
        change = FulfillmentChange(status=FulfillmentStatus.UNFULFILLED)
        self.assertTrue(self.line.is_noop(change))
        self.assertFalse(self.line.is_noop(FulfillmentChange(status=FulfillmentStatus.UNFULFILLED, note="hi")))

    def test_notes_are_appended(self):
        line = self.line.apply(FulfillmentChange(status=FulfillmentStatus.SHIPPED, note="left depot"))
        line = line.apply(FulfillmentChange(status=FulfillmentStatus.DELIVERED, note="signed"))
        self.assertEqual(line.notes, "left depot\nsigned")


class StatusSummaryTest(TestCase):

    def test_coarsen(self):
        self.assertEqual(coarsen(FulfillmentStatus.UNFULFILLED), VendorLineStatus.PAID)
        self.assertEqual(coarsen(FulfillmentStatus.SHIPPED), VendorLineStatus.SHIPPED)
        self.assertEqual(coarsen(FulfillmentStatus.DELIVERED), VendorLineStatus.FULFILLED)
        self.assertEqual(coarsen(FulfillmentStatus.FULFILLED), VendorLineStatus.FULFILLED)
        self.assertEqual(coarsen(FulfillmentStatus.CANCELLED), VendorLineStatus.CANCELLED)

    def test_aggregate_status(self):
        S = FulfillmentStatus
        self.assertEqual(aggregate_status([]), FulfillmentAggregateStatus.UNFULFILLED)
        self.assertEqual(aggregate_status([S.SHIPPED, S.SHIPPED]), FulfillmentAggregateStatus.SHIPPED)
        self.assertEqual(aggregate_status([S.DELIVERED]), FulfillmentAggregateStatus.DELIVERED)
        self.assertEqual(aggregate_status([S.FULFILLED, S.FULFILLED]), FulfillmentAggregateStatus.FULFILLED)
        self.assertEqual(aggregate_status([S.SHIPPED, S.UNFULFILLED]), FulfillmentAggregateStatus.PARTIAL)
        self.assertEqual(aggregate_status([S.UNFULFILLED, S.CANCELLED]), FulfillmentAggregateStatus.UNFULFILLED)


class LedgerEntryTest(TestCase):
    """Tests for ledger sign rules and balance derivation."""

    def entry(self, type, amount, source=LedgerSource.STORE):
        now = datetime(2025, 9, 1, tzinfo=timezone.utc)
        return WalletLedgerEntry(
            id=uuid4(),
            vendor_id="vendor-x",
            currency="NGN",
            source=source,
            order_ref="order-1",
            amount_minor=amount,
            type=type,
            target_payout_at=now,
            target_payout_key="2025-09-01",
            created_at=now,
            created_by="system",
        )

    def test_sign_rules(self):
        with self.assertRaises(InvalidAmount):
            self.entry(LedgerType.CREDIT_ELIGIBLE, -100)
        with self.assertRaises(InvalidAmount):
            self.entry(LedgerType.DEBIT_HOLD, 100)
        with self.assertRaises(InvalidAmount):
            self.entry(LedgerType.DEBIT_PAYOUT, 0)

    def test_derive_balances(self):
        entries = [
            self.entry(LedgerType.DEBIT_HOLD, -5000),
            self.entry(LedgerType.DEBIT_HOLD, -2000, LedgerSource.EVENT),
            self.entry(LedgerType.CREDIT_RELEASE, 5000),
            self.entry(LedgerType.CREDIT_ELIGIBLE, 5000),
            self.entry(LedgerType.DEBIT_REFUND, -1000),
        ]
        balances = derive_balances(entries)
        self.assertEqual(balances.eligible_balance_minor, 4000)
        self.assertEqual(balances.on_hold_minor, 2000)

        by_source = earnings_by_source(entries)
        self.assertEqual(by_source.store.eligible_balance_minor, 4000)
        self.assertEqual(by_source.store.on_hold_minor, 0)
        self.assertEqual(by_source.event.on_hold_minor, 2000)
        self.assertEqual(by_source.to_dict()["event"], {"eligibleMinor": 0, "onHoldMinor": 2000})


class PayoutFeeTest(TestCase):

    def test_weekly_is_free(self):
        fee = calculate_payout_fee(1_000_000, PayoutScheduleType.WEEKLY)
        self.assertEqual(fee.fee_minor, 0)
        self.assertEqual(fee.net_minor, 1_000_000)

    def test_percentage_rounds_half_up(self):
        fee = calculate_payout_fee(1050, "3days")
        # 2.5% of 1050 = 26.25
        self.assertEqual(fee.fee_minor, 26)
        fee = calculate_payout_fee(1100, "3days")
        # 2.5% of 1100 = 27.5
        self.assertEqual(fee.fee_minor, 28)
        self.assertEqual(fee.fee_percent, Decimal("2.5"))

    def test_fee_is_capped(self):
        fee = calculate_payout_fee(100_000_000, PayoutScheduleType.ONE_DAY)
        self.assertEqual(fee.fee_minor, 500000)
        self.assertEqual(fee.net_minor, 100_000_000 - 500000)
        fee = calculate_payout_fee(100_000_000, PayoutScheduleType.FIVE_DAYS)
        self.assertEqual(fee.fee_minor, 250000)

    def test_negative_earnings_rejected(self):
        with self.assertRaises(InvalidAmount):
            calculate_payout_fee(-1, PayoutScheduleType.WEEKLY)


class PayoutScheduleTest(TestCase):
    """Cutoff Thursday 12:00, payout Friday 14:00, Africa/Lagos (UTC+1)."""

    def setUp(self):
        self.schedule = PayoutSchedule()

    def test_sale_on_monday(self):
        sold_at = datetime(2025, 9, 1, 10, 0, tzinfo=timezone.utc)
        self.assertEqual(
            self.schedule.cutoff_for_sale(sold_at),
            datetime(2025, 9, 4, 11, 0, tzinfo=timezone.utc),
        )
        target = self.schedule.target_payout_for_sale(sold_at)
        self.assertEqual(target, datetime(2025, 9, 12, 13, 0, tzinfo=timezone.utc))
        self.assertEqual(self.schedule.payout_key(target), "2025-09-12")

    def test_sale_exactly_at_cutoff_belongs_to_that_cutoff(self):
        sold_at = datetime(2025, 9, 4, 11, 0, tzinfo=timezone.utc)
        self.assertEqual(self.schedule.cutoff_for_sale(sold_at), sold_at)
        self.assertEqual(
            self.schedule.target_payout_for_sale(sold_at),
            datetime(2025, 9, 12, 13, 0, tzinfo=timezone.utc),
        )

    def test_sale_after_cutoff_rolls_a_week(self):
        sold_at = datetime(2025, 9, 4, 11, 1, tzinfo=timezone.utc)
        self.assertEqual(
            self.schedule.target_payout_for_sale(sold_at),
            datetime(2025, 9, 19, 13, 0, tzinfo=timezone.utc),
        )

    def test_sale_across_month_boundary(self):
        sold_at = datetime(2025, 9, 29, 8, 0, tzinfo=timezone.utc)
        target = self.schedule.target_payout_for_sale(sold_at)
        self.assertEqual(target, datetime(2025, 10, 10, 13, 0, tzinfo=timezone.utc))
        self.assertEqual(self.schedule.payout_key(target), "2025-10-10")

    def test_next_payout_is_strictly_after(self):
        friday_payout = datetime(2025, 9, 12, 13, 0, tzinfo=timezone.utc)
        self.assertEqual(
            self.schedule.next_payout_at(None, friday_payout),
            friday_payout + timedelta(days=7),
        )
        self.assertEqual(
            self.schedule.next_payout_at(None, friday_payout - timedelta(minutes=1)),
            friday_payout,
        )

    def test_vendor_calendar(self):
        # payouts on Monday 10:00 Lagos, default Thursday cutoff
        vendor = self.schedule.for_vendor(PayoutSettings(day_of_week=0, payout_hour_local=10))
        saturday = datetime(2025, 9, 20, 9, 0, tzinfo=timezone.utc)
        self.assertEqual(vendor.next_payout_at(None, saturday), datetime(2025, 9, 22, 9, 0, tzinfo=timezone.utc))
        self.assertEqual(
            vendor.target_payout_for_sale(datetime(2025, 9, 1, 10, 0, tzinfo=timezone.utc)),
            datetime(2025, 9, 15, 9, 0, tzinfo=timezone.utc),
        )

    def test_daylight_saving_zone(self):
        # Europe/London leaves summer time on 2025-10-26
        schedule = PayoutSchedule(tz_name="Europe/London")
        sold_at = datetime(2025, 10, 20, 9, 0, tzinfo=timezone.utc)
        self.assertEqual(
            schedule.cutoff_for_sale(sold_at),
            datetime(2025, 10, 23, 11, 0, tzinfo=timezone.utc),
        )
        self.assertEqual(
            schedule.target_payout_for_sale(sold_at),
            datetime(2025, 10, 31, 14, 0, tzinfo=timezone.utc),
        )


class TimelineMergeTest(TestCase):

    def event(self, seq, at, type=TimelineEventType.FULFILLMENT_MARKED, **meta):
        return TimelineEvent(
            order_id=self.order_id,
            type=type,
            actor="vendor:vendor-x",
            at=at,
            sequence_number=seq,
            meta=meta,
        )

    def setUp(self):
        self.order_id = uuid4()
        self.t0 = datetime(2025, 9, 1, 10, 0, tzinfo=timezone.utc)

    def test_repeated_marks_at_same_instant_collapse(self):
        events = [
            self.event(1, self.t0, type=TimelineEventType.ORDER_CREATED),
            self.event(2, self.t0 + timedelta(minutes=1), lineKey="merch:m1", status="shipped"),
            self.event(3, self.t0 + timedelta(minutes=1), lineKey="merch:m1", status="shipped"),
            self.event(4, self.t0 + timedelta(minutes=2), lineKey="merch:m1", status="shipped"),
        ]
        merged = merge_timeline(events, [])
        self.assertEqual([e.sequence_number for e in merged], [1, 2, 4])

    def test_notes_interleave_by_time(self):
        events = [
            self.event(1, self.t0, type=TimelineEventType.ORDER_CREATED),
            self.event(2, self.t0 + timedelta(minutes=5), lineKey="merch:m1", status="shipped"),
        ]
        note = Note(order_id=self.order_id, author="user:ops", at=self.t0 + timedelta(minutes=2), message="called buyer")
        merged = merge_timeline(events, [note])
        self.assertEqual([item.to_dict()["kind"] for item in merged], ["event", "note", "event"])

        newest = merge_timeline(events, [note], newest_first=True)
        self.assertEqual(newest[0].sequence_number, 2)
        self.assertIs(newest[-1], events[0])

"""
Tests for per-viewer order visibility.
"""
from django.test import TestCase

from marketplace.domain.fulfillment import FulfillmentChange
from marketplace.domain.order import MerchLine, Order, OrderHeader, TicketLine
from marketplace.domain.types import FulfillmentAggregateStatus, FulfillmentStatus, VendorLineStatus
from marketplace.domain.visibility import ViewerContext, VisibilityReason, resolve_view, visibility_reason


class VisibilityTest(TestCase):

    def setUp(self):
        self.order = Order.create(
            OrderHeader(event_id="evt-1"),
            [
                MerchLine(merch_item_id="hoodie", vendor_id="brand-a", qty=2, unit_price_minor=1000),
                MerchLine(merch_item_id="cap", vendor_id="brand-b", qty=1, unit_price_minor=700),
                TicketLine(ticket_type_id="ga", vendor_id="organizer-1", qty=1, unit_price_minor=5000),
            ],
        )

    def test_stranger_sees_nothing(self):
        viewer = ViewerContext(viewer_id="stranger")
        self.assertIsNone(visibility_reason(self.order, viewer))
        self.assertIsNone(resolve_view(self.order, viewer))

    def test_brand_sees_only_own_lines(self):
        view = resolve_view(self.order, ViewerContext(viewer_id="brand-a"))
        self.assertEqual(view.visibility_reason, VisibilityReason.BRAND)
        self.assertEqual([item.merch_item_id for item in view.visible_line_items], ["hoodie"])
        self.assertEqual(list(view.own_fulfillment_lines), ["merch:hoodie"])
        self.assertEqual(view.vendor_line_statuses, {})
        self.assertEqual(view.visible_subtotal_minor, 2000)

    def test_brand_grant_by_merch_item(self):
        viewer = ViewerContext(viewer_id="brand-staff", brand_merch_item_ids=frozenset({"cap"}))
        view = resolve_view(self.order, viewer)
        self.assertEqual(view.visibility_reason, VisibilityReason.BRAND)
        self.assertEqual([item.merch_item_id for item in view.visible_line_items], ["cap"])
        # staff do not own the line, so they only get the coarse status
        self.assertEqual(view.own_fulfillment_lines, {})
        self.assertEqual(view.vendor_line_statuses, {"merch:cap": VendorLineStatus.PAID})

    def test_organizer_role_sees_everything_coarsely(self):
        viewer = ViewerContext(viewer_id="manager-1", event_roles={"evt-1": frozenset({"manager"})})
        view = resolve_view(self.order, viewer)
        self.assertEqual(view.visibility_reason, VisibilityReason.ORGANIZER)
        self.assertEqual(len(view.visible_line_items), 3)
        self.assertEqual(view.own_fulfillment_lines, {})
        self.assertEqual(set(view.vendor_line_statuses), {"merch:hoodie", "merch:cap", "ticket:ga"})
        self.assertEqual(view.visible_subtotal_minor, 7700)

    def test_role_on_another_event_does_not_count(self):
        viewer = ViewerContext(viewer_id="manager-1", event_roles={"evt-2": frozenset({"owner"})})
        self.assertIsNone(resolve_view(self.order, viewer))

    def test_non_organizer_role_does_not_count(self):
        viewer = ViewerContext(viewer_id="scanner", event_roles={"evt-1": frozenset({"checkin"})})
        self.assertIsNone(resolve_view(self.order, viewer))

    def test_ticket_vendor_is_organizer(self):
        view = resolve_view(self.order, ViewerContext(viewer_id="organizer-1"))
        self.assertEqual(view.visibility_reason, VisibilityReason.ORGANIZER)
        self.assertEqual(list(view.own_fulfillment_lines), ["ticket:ga"])
        self.assertEqual(set(view.vendor_line_statuses), {"merch:hoodie", "merch:cap"})

    def test_organizer_and_brand(self):
        viewer = ViewerContext(viewer_id="brand-a", event_roles={"evt-1": frozenset({"owner"})})
        view = resolve_view(self.order, viewer)
        self.assertEqual(view.visibility_reason, VisibilityReason.BOTH)
        self.assertEqual(len(view.visible_line_items), 3)
        self.assertEqual(list(view.own_fulfillment_lines), ["merch:hoodie"])

    def test_aggregate_status_covers_own_lines_only(self):
        order = Order.create(
            OrderHeader(event_id="evt-1"),
            [
                MerchLine(merch_item_id="hoodie", vendor_id="brand-a", qty=1, unit_price_minor=1000),
                MerchLine(merch_item_id="tee", vendor_id="brand-a", qty=1, unit_price_minor=800),
            ],
        )
        lines = order.fulfillment_lines
        shipped = lines["merch:hoodie"].apply(FulfillmentChange(status=FulfillmentStatus.SHIPPED))
        order = Order(
            id=order.id,
            event_id=order.event_id,
            line_items=list(order.line_items),
            amount=order.amount,
            fulfillment_lines={**lines, "merch:hoodie": shipped},
            vendor_line_statuses=order.vendor_line_statuses,
        )
        view = resolve_view(order, ViewerContext(viewer_id="brand-a"))
        self.assertEqual(view.fulfillment_aggregate_status, FulfillmentAggregateStatus.PARTIAL)

"""
Which parts of a shared order a given viewer may read.

Pure functions over an Order snapshot; roles and brand ownership come from
the auth collaborator in a ViewerContext.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID

from marketplace.domain.fulfillment import FulfillmentLine, aggregate_status
from marketplace.domain.order import LineItem, MerchLine, Order, TicketLine, line_key
from marketplace.domain.types import FulfillmentAggregateStatus, OrderStatus, VendorLineStatus


ORGANIZER_ROLES = frozenset({"owner", "manager"})


class VisibilityReason(str, Enum):
    ORGANIZER = "organizer"
    BRAND = "brand"
    BOTH = "both"


@dataclass(frozen=True)
class ViewerContext:
    """Identity and grants of the viewer, as resolved by the auth layer."""
    viewer_id: str
    event_roles: dict[str, frozenset[str]] = field(default_factory=dict)
    brand_merch_item_ids: frozenset[str] = frozenset()

    def has_organizer_role(self, event_id: str) -> bool:
        return bool(ORGANIZER_ROLES & set(self.event_roles.get(event_id, ())))


@dataclass(frozen=True)
class OrderView:
    """What one viewer may see of an order."""
    order_id: UUID
    event_id: str
    status: OrderStatus
    visibility_reason: VisibilityReason
    visible_line_items: tuple[LineItem, ...]
    own_fulfillment_lines: dict[str, FulfillmentLine]
    vendor_line_statuses: dict[str, VendorLineStatus]
    fulfillment_aggregate_status: FulfillmentAggregateStatus
    visible_subtotal_minor: int


def _is_brand_line(item: LineItem, viewer: ViewerContext) -> bool:
    match item:
        case MerchLine(merch_item_id=merch_item_id, vendor_id=vendor_id):
            return merch_item_id in viewer.brand_merch_item_ids or vendor_id == viewer.viewer_id
        case TicketLine():
            return False
    return False


def _is_organizer(order: Order, viewer: ViewerContext) -> bool:
    if viewer.has_organizer_role(order.event_id):
        return True
    return any(
        isinstance(item, TicketLine) and item.vendor_id == viewer.viewer_id
        for item in order.line_items
    )


def visibility_reason(order: Order, viewer: ViewerContext) -> VisibilityReason | None:
    organizer = _is_organizer(order, viewer)
    brand = any(_is_brand_line(item, viewer) for item in order.line_items)
    if organizer and brand:
        return VisibilityReason.BOTH
    if organizer:
        return VisibilityReason.ORGANIZER
    if brand:
        return VisibilityReason.BRAND
    return None


def resolve_view(order: Order, viewer: ViewerContext) -> OrderView | None:
    """Shape ``order`` for ``viewer``; None when the viewer may not see it."""
    reason = visibility_reason(order, viewer)
    if reason is None:
        return None

    if reason in (VisibilityReason.ORGANIZER, VisibilityReason.BOTH):
        visible = tuple(order.line_items)
    else:
        visible = tuple(
            item for item in order.line_items
            if _is_brand_line(item, viewer) or item.vendor_id == viewer.viewer_id
        )

    lines = order.fulfillment_lines
    statuses = order.vendor_line_statuses
    own_lines = {}
    other_statuses = {}
    for item in visible:
        key = line_key(item)
        line = lines.get(key)
        if line is not None and line.vendor_id == viewer.viewer_id:
            own_lines[key] = line
        elif key in statuses:
            other_statuses[key] = statuses[key]

    return OrderView(
        order_id=order.id,
        event_id=order.event_id,
        status=order.status,
        visibility_reason=reason,
        visible_line_items=visible,
        own_fulfillment_lines=own_lines,
        vendor_line_statuses=other_statuses,
        fulfillment_aggregate_status=aggregate_status(line.status for line in own_lines.values()),
        visible_subtotal_minor=sum(item.subtotal_minor for item in visible),
    )

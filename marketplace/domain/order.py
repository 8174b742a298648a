"""
Domain model for the shared multi-vendor Order aggregate.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID, uuid4

from marketplace.domain.errors import DuplicateLineKey, InvalidAmount, InvalidQuantity
from marketplace.domain.fulfillment import FulfillmentLine, ShippingInfo
from marketplace.domain.types import (
    DEFAULT_CURRENCY,
    AdmitType,
    LedgerSource,
    LineItemType,
    OrderStatus,
    PaymentProvider,
    VendorLineStatus,
)


def _check_line_amounts(line) -> None:
    if line.qty <= 0:
        raise InvalidQuantity("Quantity must be positive")
    if line.unit_price_minor < 0:
        raise InvalidAmount("Unit price must be non-negative")
    expected = line.qty * line.unit_price_minor
    if line.subtotal_minor is None:
        object.__setattr__(line, "subtotal_minor", expected)
    elif line.subtotal_minor != expected:
        raise InvalidAmount(
            f"Line subtotal {line.subtotal_minor} != {line.qty} x {line.unit_price_minor}",
        )


@dataclass(frozen=True)
class TicketLine:
    """Ticket line item value object."""
    ticket_type_id: str
    vendor_id: str
    qty: int
    unit_price_minor: int
    name: str = ""
    currency: str = DEFAULT_CURRENCY
    admit_type: AdmitType | None = None
    group_size: int | None = None
    subtotal_minor: int | None = None

    def __post_init__(self):
        _check_line_amounts(self)


@dataclass(frozen=True)
class MerchLine:
    """Merchandise line item value object."""
    merch_item_id: str
    vendor_id: str
    qty: int
    unit_price_minor: int
    name: str = ""
    currency: str = DEFAULT_CURRENCY
    size: str | None = None
    color: str | None = None
    subtotal_minor: int | None = None

    def __post_init__(self):
        _check_line_amounts(self)


LineItem = TicketLine | MerchLine


def line_key(item: LineItem) -> str:
    match item:
        case TicketLine(ticket_type_id=ticket_type_id):
            return f"ticket:{ticket_type_id}"
        case MerchLine(merch_item_id=merch_item_id):
            return f"merch:{merch_item_id}"
    raise TypeError(f"Unknown line item {item!r}")


def line_type(item: LineItem) -> LineItemType:
    match item:
        case TicketLine():
            return LineItemType.TICKET
        case MerchLine():
            return LineItemType.MERCH
    raise TypeError(f"Unknown line item {item!r}")


def ledger_source(item: LineItem) -> LedgerSource:
    """Tickets earn through the event wallet, merch through the store wallet."""
    match item:
        case TicketLine():
            return LedgerSource.EVENT
        case MerchLine():
            return LedgerSource.STORE
    raise TypeError(f"Unknown line item {item!r}")


@dataclass(frozen=True)
class OrderAmount:
    currency: str
    items_subtotal_minor: int
    fees_minor: int
    shipping_minor: int
    total_minor: int


@dataclass(frozen=True)
class OrderHeader:
    """Checkout header supplied by the payment confirmation collaborator."""
    event_id: str
    currency: str = DEFAULT_CURRENCY
    fees_minor: int = 0
    total_minor: int | None = None
    items_subtotal_minor: int | None = None
    buyer_user_id: str | None = None
    deliver_to: dict = field(default_factory=dict)
    provider: PaymentProvider | None = None
    provider_ref: dict = field(default_factory=dict)
    id: UUID | None = None


class Order:
    """Order aggregate root."""

    def __init__(
        self,
        id: UUID | None = None,
        event_id: str = "",
        status: OrderStatus = OrderStatus.PAID,
        line_items: list[LineItem] | None = None,
        amount: OrderAmount | None = None,
        fulfillment_lines: dict[str, FulfillmentLine] | None = None,
        vendor_line_statuses: dict[str, VendorLineStatus] | None = None,
        buyer_user_id: str | None = None,
        deliver_to: dict | None = None,
        provider: PaymentProvider | None = None,
        provider_ref: dict | None = None,
        created_at: datetime | None = None,
    ):
        self.id = id or uuid4()
        self.event_id = event_id
        self._status = OrderStatus(status)
        self._line_items = tuple(line_items or ())
        self.amount = amount
        self._fulfillment_lines = dict(fulfillment_lines or {})
        self._vendor_line_statuses = dict(vendor_line_statuses or {})
        self.buyer_user_id = buyer_user_id
        self.deliver_to = deliver_to or {}
        self.provider = provider
        self.provider_ref = provider_ref or {}
        self.created_at = created_at or datetime.now(timezone.utc)

    @classmethod
    def create(
        cls,
        header: OrderHeader,
        line_items: list[LineItem],
        shipping: dict[str, ShippingInfo] | None = None,
    ) -> "Order":
        """Create a paid order, checking keys and money invariants."""
        if not line_items:
            raise InvalidAmount("Cannot create an order without line items")

        keys = [line_key(item) for item in line_items]
        seen = set()
        for key in keys:
            if key in seen:
                raise DuplicateLineKey(f"Line {key} appears more than once", line_key=key)
            seen.add(key)

        shipping = shipping or {}
        unknown = set(shipping) - seen
        if unknown:
            raise InvalidAmount(f"Shipping given for unknown lines: {sorted(unknown)}")

        for item in line_items:
            if item.currency != header.currency:
                raise InvalidAmount(f"Line {line_key(item)} is priced in {item.currency}, order in {header.currency}")

        items_subtotal = sum(item.subtotal_minor for item in line_items)
        if header.items_subtotal_minor is not None and header.items_subtotal_minor != items_subtotal:
            raise InvalidAmount(
                f"Items subtotal {header.items_subtotal_minor} != sum of lines {items_subtotal}",
            )
        if header.fees_minor < 0:
            raise InvalidAmount("Fees must be non-negative")

        shipping_total = sum(info.fee_minor for info in shipping.values())
        total = items_subtotal + header.fees_minor + shipping_total
        if header.total_minor is not None and header.total_minor != total:
            raise InvalidAmount(
                f"Total {header.total_minor} != items {items_subtotal} + fees {header.fees_minor} "
                f"+ shipping {shipping_total}",
            )

        order = cls(
            id=header.id,
            event_id=header.event_id,
            status=OrderStatus.PAID,
            line_items=line_items,
            amount=OrderAmount(
                currency=header.currency,
                items_subtotal_minor=items_subtotal,
                fees_minor=header.fees_minor,
                shipping_minor=shipping_total,
                total_minor=total,
            ),
            buyer_user_id=header.buyer_user_id,
            deliver_to=header.deliver_to,
            provider=header.provider,
            provider_ref=header.provider_ref,
        )
        seeded = order._seed_fulfillment_lines(shipping)
        order._fulfillment_lines = {line.line_key: line for line in seeded}
        order._vendor_line_statuses = {line.line_key: line.vendor_line_status for line in seeded}
        return order

    @property
    def status(self) -> OrderStatus:
        return self._status

    @property
    def line_items(self) -> tuple[LineItem, ...]:
        """Line items in cart order (immutable)."""
        return self._line_items

    @property
    def line_keys(self) -> list[str]:
        return [line_key(item) for item in self._line_items]

    @property
    def items_by_key(self) -> dict[str, LineItem]:
        return {line_key(item): item for item in self._line_items}

    @property
    def fulfillment_lines(self) -> dict[str, FulfillmentLine]:
        return dict(self._fulfillment_lines)

    @property
    def vendor_line_statuses(self) -> dict[str, VendorLineStatus]:
        return dict(self._vendor_line_statuses)

    @property
    def vendor_ids(self) -> list[str]:
        seen = []
        for item in self._line_items:
            if item.vendor_id not in seen:
                seen.append(item.vendor_id)
        return seen

    def lines_owned_by(self, vendor_id: str) -> list[FulfillmentLine]:
        return [line for line in self._fulfillment_lines.values() if line.vendor_id == vendor_id]

    def _seed_fulfillment_lines(self, shipping: dict[str, ShippingInfo]) -> list[FulfillmentLine]:
        """Build the initial unfulfilled line for every line item."""
        return [
            FulfillmentLine(
                line_key=line_key(item),
                vendor_id=item.vendor_id,
                qty_ordered=item.qty,
                shipping=shipping.get(line_key(item)),
                created_at=self.created_at,
            )
            for item in self._line_items
        ]

    def __repr__(self) -> str:
        return f"<Order {self.id} event={self.event_id} status={self._status.value} lines={len(self._line_items)}>"

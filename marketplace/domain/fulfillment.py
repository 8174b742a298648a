"""
Fulfillment line state machine.

State Machine:
    UNFULFILLED → SHIPPED → DELIVERED
    {UNFULFILLED, SHIPPED} → CANCELLED
    {UNFULFILLED, SHIPPED, DELIVERED} → FULFILLED
    FULFILLED, CANCELLED are terminal.

A FulfillmentLine is never mutated in place: ``apply`` returns the next
snapshot with ``version`` bumped, so the repository can write it with an
optimistic-concurrency check against the version it was read at.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone

from marketplace.domain.errors import InvalidAmount, InvalidQuantity, NotOwner, TerminalStateViolation
from marketplace.domain.types import (
    FulfillmentAggregateStatus,
    FulfillmentStatus,
    ShippingMethod,
    VendorLineStatus,
)


_VALID_TRANSITIONS = {
    FulfillmentStatus.UNFULFILLED: {
        FulfillmentStatus.SHIPPED,
        FulfillmentStatus.CANCELLED,
        FulfillmentStatus.FULFILLED,
    },
    FulfillmentStatus.SHIPPED: {
        FulfillmentStatus.DELIVERED,
        FulfillmentStatus.CANCELLED,
        FulfillmentStatus.FULFILLED,
    },
    FulfillmentStatus.DELIVERED: {FulfillmentStatus.FULFILLED},
    FulfillmentStatus.FULFILLED: set(),  # terminal
    FulfillmentStatus.CANCELLED: set(),  # terminal
}

TERMINAL_STATUSES = frozenset({FulfillmentStatus.FULFILLED, FulfillmentStatus.CANCELLED})


def coarsen(status: FulfillmentStatus) -> VendorLineStatus:
    """Map a fulfillment status to the label shown to non-owning viewers."""
    if status in (FulfillmentStatus.FULFILLED, FulfillmentStatus.DELIVERED):
        return VendorLineStatus.FULFILLED
    if status == FulfillmentStatus.SHIPPED:
        return VendorLineStatus.SHIPPED
    if status == FulfillmentStatus.CANCELLED:
        return VendorLineStatus.CANCELLED
    return VendorLineStatus.PAID


def aggregate_status(statuses) -> FulfillmentAggregateStatus:
    """Summarize the statuses of the lines one vendor owns in an order."""
    statuses = list(statuses)
    if not statuses:
        return FulfillmentAggregateStatus.UNFULFILLED
    if all(s == FulfillmentStatus.DELIVERED for s in statuses):
        return FulfillmentAggregateStatus.DELIVERED
    if all(s == FulfillmentStatus.SHIPPED for s in statuses):
        return FulfillmentAggregateStatus.SHIPPED
    if all(s == FulfillmentStatus.FULFILLED for s in statuses):
        return FulfillmentAggregateStatus.FULFILLED
    progressed = {FulfillmentStatus.FULFILLED, FulfillmentStatus.SHIPPED, FulfillmentStatus.DELIVERED}
    if any(s in progressed for s in statuses):
        return FulfillmentAggregateStatus.PARTIAL
    return FulfillmentAggregateStatus.UNFULFILLED


@dataclass(frozen=True)
class ShippingInfo:
    """Shipping payload of a fulfillment line."""
    method: ShippingMethod = ShippingMethod.DELIVERY
    address: dict | None = None
    pickup_address: str | None = None
    tracking_number: str | None = None
    carrier: str | None = None
    fee_minor: int = 0
    status: FulfillmentStatus = FulfillmentStatus.UNFULFILLED

    def __post_init__(self):
        if self.fee_minor < 0:
            raise InvalidAmount("Shipping fee must be non-negative")

    def to_dict(self) -> dict:
        return {
            "method": self.method.value,
            "address": self.address,
            "pickupAddress": self.pickup_address,
            "trackingNumber": self.tracking_number,
            "carrier": self.carrier,
            "feeMinor": self.fee_minor,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "ShippingInfo":
        data = data or {}
        return cls(
            method=ShippingMethod(data.get("method") or ShippingMethod.DELIVERY.value),
            address=data.get("address"),
            pickup_address=data.get("pickupAddress"),
            tracking_number=data.get("trackingNumber"),
            carrier=data.get("carrier"),
            fee_minor=int(data.get("feeMinor") or 0),
            status=FulfillmentStatus(data.get("status") or FulfillmentStatus.UNFULFILLED.value),
        )


@dataclass(frozen=True)
class FulfillmentChange:
    """A vendor's requested update to one line."""
    status: FulfillmentStatus
    qty_fulfilled: int | None = None
    tracking_number: str | None = None
    carrier: str | None = None
    note: str | None = None


class FulfillmentLine:
    """One vendor's operational record for one line item."""

    def __init__(
        self,
        line_key: str,
        vendor_id: str,
        qty_ordered: int,
        qty_fulfilled: int = 0,
        status: FulfillmentStatus = FulfillmentStatus.UNFULFILLED,
        shipping: ShippingInfo | None = None,
        notes: str = "",
        version: int = 1,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ):
        if qty_ordered <= 0:
            raise InvalidQuantity("Ordered quantity must be positive")
        if not 0 <= qty_fulfilled <= qty_ordered:
            raise InvalidQuantity()

        self.line_key = line_key
        self.vendor_id = vendor_id
        self.qty_ordered = qty_ordered
        self.qty_fulfilled = qty_fulfilled
        self._status = FulfillmentStatus(status)
        self.shipping = shipping or ShippingInfo(status=self._status)
        self.notes = notes
        self.version = version
        self.created_at = created_at or datetime.now(timezone.utc)
        self.updated_at = updated_at or self.created_at

    @property
    def status(self) -> FulfillmentStatus:
        return self._status

    @property
    def is_terminal(self) -> bool:
        return self._status in TERMINAL_STATUSES

    @property
    def vendor_line_status(self) -> VendorLineStatus:
        return coarsen(self._status)

    def assert_owner(self, requested_by: str) -> None:
        if requested_by != self.vendor_id:
            raise NotOwner(line_key=self.line_key, requested_by=requested_by)

    def can_transition_to(self, target: FulfillmentStatus) -> bool:
        if self.is_terminal:
            return False
        return target == self._status or target in _VALID_TRANSITIONS[self._status]

    def is_noop(self, change: FulfillmentChange) -> bool:
        """True if applying ``change`` would leave the line as it is."""
        return (
            change.status == self._status
            and change.qty_fulfilled in (None, self.qty_fulfilled)
            and change.tracking_number in (None, self.shipping.tracking_number)
            and change.carrier in (None, self.shipping.carrier)
            and not change.note
        )

    def apply(self, change: FulfillmentChange, now: datetime | None = None) -> "FulfillmentLine":
        """Return the next snapshot of this line after ``change``."""
        target = FulfillmentStatus(change.status)

        if change.qty_fulfilled is not None and not 0 <= change.qty_fulfilled <= self.qty_ordered:
            raise InvalidQuantity(
                f"Fulfilled quantity must be between 0 and {self.qty_ordered}",
                line_key=self.line_key,
            )

        if self.is_terminal:
            raise TerminalStateViolation(
                f"Line is already {self._status.value} and cannot change",
                line_key=self.line_key,
                current=self._status.value,
                requested=target.value,
            )
        if not self.can_transition_to(target):
            raise TerminalStateViolation(
                f"Cannot move a line from {self._status.value} to {target.value}",
                line_key=self.line_key,
                current=self._status.value,
                requested=target.value,
            )

        now = now or datetime.now(timezone.utc)
        shipping = replace(
            self.shipping,
            status=target,
            tracking_number=change.tracking_number or self.shipping.tracking_number,
            carrier=change.carrier or self.shipping.carrier,
        )
        notes = self.notes
        if change.note:
            notes = f"{notes}\n{change.note}" if notes else change.note

        return FulfillmentLine(
            line_key=self.line_key,
            vendor_id=self.vendor_id,
            qty_ordered=self.qty_ordered,
            qty_fulfilled=self.qty_fulfilled if change.qty_fulfilled is None else change.qty_fulfilled,
            status=target,
            shipping=shipping,
            notes=notes,
            version=self.version + 1,
            created_at=self.created_at,
            updated_at=now,
        )

    def timeline_meta(self) -> dict:
        return {
            "lineKey": self.line_key,
            "status": self._status.value,
            "qtyFulfilled": self.qty_fulfilled,
            "trackingNumber": self.shipping.tracking_number,
            "carrier": self.shipping.carrier,
        }

    def __repr__(self) -> str:
        return f"<FulfillmentLine {self.line_key} vendor={self.vendor_id} status={self._status.value} v{self.version}>"

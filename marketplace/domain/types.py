"""
Shared vocabularies for orders, fulfillment and the wallet ledger.

Money is always an ``int`` of minor currency units (kobo for NGN).
"""
from __future__ import annotations

from enum import Enum


DEFAULT_CURRENCY = "NGN"


class OrderStatus(str, Enum):
    """Order-level aggregate state."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class FulfillmentStatus(str, Enum):
    """Operational state of one vendor's fulfillment line."""
    UNFULFILLED = "unfulfilled"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class VendorLineStatus(str, Enum):
    """Coarse status shown to viewers who do not own the line."""
    PAID = "paid"
    SHIPPED = "shipped"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class FulfillmentAggregateStatus(str, Enum):
    """Summary of all fulfillment lines a vendor owns in one order."""
    UNFULFILLED = "unfulfilled"
    PARTIAL = "partial"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    FULFILLED = "fulfilled"


class LineItemType(str, Enum):
    TICKET = "ticket"
    MERCH = "merch"


class AdmitType(str, Enum):
    GENERAL = "general"
    VIP = "vip"
    BACKSTAGE = "backstage"


class ShippingMethod(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class PaymentProvider(str, Enum):
    PAYSTACK = "paystack"
    FLUTTERWAVE = "flutterwave"


class LedgerSource(str, Enum):
    """Where the earnings came from."""
    EVENT = "event"
    STORE = "store"


class LedgerType(str, Enum):
    """Wallet ledger entry type. The prefix fixes the sign of the amount."""
    CREDIT_ELIGIBLE = "credit_eligible"
    DEBIT_PAYOUT = "debit_payout"
    DEBIT_REFUND = "debit_refund"
    DEBIT_HOLD = "debit_hold"
    CREDIT_RELEASE = "credit_release"

    @property
    def is_credit(self) -> bool:
        return self.value.startswith("credit_")

    @property
    def is_on_hold_class(self) -> bool:
        return self in ON_HOLD_TYPES


class TimelineEventType(str, Enum):
    ORDER_CREATED = "order_created"
    PAYMENT_CAPTURED = "payment_captured"
    FULFILLMENT_MARKED = "fulfillment_marked"
    REFUND = "refund"
    NOTE = "note"


class PayoutScheduleType(str, Enum):
    WEEKLY = "weekly"
    FIVE_DAYS = "5days"
    THREE_DAYS = "3days"
    TWO_DAYS = "2days"
    ONE_DAY = "1day"


ELIGIBLE_TYPES = frozenset({
    LedgerType.CREDIT_ELIGIBLE,
    LedgerType.DEBIT_PAYOUT,
    LedgerType.DEBIT_REFUND,
})

ON_HOLD_TYPES = frozenset({
    LedgerType.DEBIT_HOLD,
    LedgerType.CREDIT_RELEASE,
})

SYSTEM_ACTOR = "system"


def vendor_actor(vendor_id: str) -> str:
    return f"vendor:{vendor_id}"


def user_actor(user_id: str) -> str:
    return f"user:{user_id}"

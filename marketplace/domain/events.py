"""
Domain events published through the outbox.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class EventVersion(str, Enum):
    """Event version for upcasting."""
    V1 = "1.0"


@dataclass
class DomainEvent:
    """Base domain event."""
    event_id: str
    aggregate_id: str
    event_type: str
    # version and occurred_at are set in subclasses to avoid dataclass field ordering issues


# Order events
@dataclass
class OrderCreated(DomainEvent):
    """Paid order recorded."""
    event_ref: str
    vendor_ids: list
    total_minor: int
    lines_count: int
    version: EventVersion = EventVersion.V1
    occurred_at: str = ""


@dataclass
class FulfillmentMarked(DomainEvent):
    """A vendor moved one of their lines."""
    line_key: str
    vendor_id: str
    status: str
    line_version: int
    version: EventVersion = EventVersion.V1
    occurred_at: str = ""


# Wallet events
@dataclass
class LedgerEntryAppended(DomainEvent):
    """Entry appended to a vendor ledger; aggregate_id is the vendor id."""
    entry_id: str
    entry_type: str
    amount_minor: int
    currency: str
    version: EventVersion = EventVersion.V1
    occurred_at: str = ""


@dataclass
class HeldFundsReleased(DomainEvent):
    hold_entry_id: str
    amount_minor: int
    version: EventVersion = EventVersion.V1
    occurred_at: str = ""


@dataclass
class PayoutBatchStamped(DomainEvent):
    batch_id: str
    gross_minor: int
    entries_count: int
    version: EventVersion = EventVersion.V1
    occurred_at: str = ""

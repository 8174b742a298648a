"""
Domain model for the vendor wallet ledger.

The ledger is append-only. Balances are never stored authoritatively: they
are the signed sum of the entries of the matching class, and the cached
WalletSummary must always agree with that recomputation.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from marketplace.domain.errors import InvalidAmount
from marketplace.domain.types import (
    DEFAULT_CURRENCY,
    ELIGIBLE_TYPES,
    ON_HOLD_TYPES,
    LedgerSource,
    LedgerType,
    PayoutScheduleType,
)


# Offsetting entry type used when an entry is corrected. Class is preserved.
CORRECTION_TYPES = {
    LedgerType.CREDIT_ELIGIBLE: LedgerType.DEBIT_REFUND,
    LedgerType.DEBIT_PAYOUT: LedgerType.CREDIT_ELIGIBLE,
    LedgerType.DEBIT_REFUND: LedgerType.CREDIT_ELIGIBLE,
    LedgerType.DEBIT_HOLD: LedgerType.CREDIT_RELEASE,
    LedgerType.CREDIT_RELEASE: LedgerType.DEBIT_HOLD,
}


def check_sign(entry_type: LedgerType, amount_minor: int) -> None:
    """Credits are positive, debits negative, zero is never valid."""
    if amount_minor == 0:
        raise InvalidAmount("Ledger amount must be non-zero")
    if entry_type.is_credit and amount_minor < 0:
        raise InvalidAmount(f"{entry_type.value} must carry a positive amount")
    if not entry_type.is_credit and amount_minor > 0:
        raise InvalidAmount(f"{entry_type.value} must carry a negative amount")


@dataclass(frozen=True)
class WalletLedgerEntry:
    """Immutable wallet ledger entry value object."""
    id: UUID
    vendor_id: str
    currency: str
    source: LedgerSource
    order_ref: str
    amount_minor: int
    type: LedgerType
    target_payout_at: datetime
    target_payout_key: str
    created_at: datetime
    created_by: str
    event_id: str | None = None
    payout_batch_id: str | None = None
    paid_at: datetime | None = None
    reference_entry_id: UUID | None = None
    note: str = ""

    def __post_init__(self):
        check_sign(self.type, self.amount_minor)


@dataclass(frozen=True)
class Balances:
    eligible_balance_minor: int = 0
    on_hold_minor: int = 0


def derive_balances(entries, source: LedgerSource | None = None) -> Balances:
    """Recompute balances from raw entries (optionally one source only)."""
    eligible = 0
    held = 0
    for entry in entries:
        if source is not None and entry.source != source:
            continue
        if entry.type in ELIGIBLE_TYPES:
            eligible += entry.amount_minor
        elif entry.type in ON_HOLD_TYPES:
            held += entry.amount_minor
    # Holds are recorded as debits, so the held amount is the negated sum.
    return Balances(eligible_balance_minor=eligible, on_hold_minor=-held)


@dataclass(frozen=True)
class EarningsBySource:
    event: Balances
    store: Balances

    def to_dict(self) -> dict:
        return {
            "event": {
                "eligibleMinor": self.event.eligible_balance_minor,
                "onHoldMinor": self.event.on_hold_minor,
            },
            "store": {
                "eligibleMinor": self.store.eligible_balance_minor,
                "onHoldMinor": self.store.on_hold_minor,
            },
        }


def earnings_by_source(entries) -> EarningsBySource:
    entries = list(entries)
    return EarningsBySource(
        event=derive_balances(entries, LedgerSource.EVENT),
        store=derive_balances(entries, LedgerSource.STORE),
    )


@dataclass(frozen=True)
class BankDetails:
    bank_name: str
    account_number: str
    account_name: str
    bank_code: str = ""
    is_verified: bool = False


@dataclass(frozen=True)
class PayoutSettings:
    frequency: str = "weekly"
    schedule: PayoutScheduleType = PayoutScheduleType.WEEKLY
    day_of_week: int = 4
    cutoff_day_of_week: int = 3
    cutoff_hour_local: int = 12
    payout_hour_local: int = 14
    bank: BankDetails | None = None
    next_payout_at: datetime | None = None
    last_payout_at: datetime | None = None


@dataclass(frozen=True)
class WalletSummary:
    """Per-vendor cached view of the ledger."""
    vendor_id: str
    currency: str = DEFAULT_CURRENCY
    eligible_balance_minor: int = 0
    on_hold_minor: int = 0
    payout: PayoutSettings = field(default_factory=PayoutSettings)
    last_updated_at: datetime | None = None

    def matches(self, balances: Balances) -> bool:
        return (
            self.eligible_balance_minor == balances.eligible_balance_minor
            and self.on_hold_minor == balances.on_hold_minor
        )

"""
Payout schedule policy and payout fees.

All wall-clock arithmetic happens in the payout timezone; results are UTC.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from marketplace.domain.errors import InvalidAmount
from marketplace.domain.types import PayoutScheduleType

if TYPE_CHECKING:
    from marketplace.domain.wallet import PayoutSettings


@dataclass(frozen=True)
class PayoutScheduleConfig:
    type: PayoutScheduleType
    fee_percent: Decimal
    fee_cap_minor: int
    timeline_days: int
    label: str


PAYOUT_SCHEDULE_CONFIGS = {
    PayoutScheduleType.WEEKLY: PayoutScheduleConfig(
        PayoutScheduleType.WEEKLY, Decimal("0"), 0, 7, "Standard",
    ),
    PayoutScheduleType.FIVE_DAYS: PayoutScheduleConfig(
        PayoutScheduleType.FIVE_DAYS, Decimal("1"), 250000, 5, "Early",
    ),
    PayoutScheduleType.THREE_DAYS: PayoutScheduleConfig(
        PayoutScheduleType.THREE_DAYS, Decimal("2.5"), 400000, 3, "Priority",
    ),
    PayoutScheduleType.TWO_DAYS: PayoutScheduleConfig(
        PayoutScheduleType.TWO_DAYS, Decimal("4"), 500000, 2, "Fast",
    ),
    PayoutScheduleType.ONE_DAY: PayoutScheduleConfig(
        PayoutScheduleType.ONE_DAY, Decimal("8"), 500000, 1, "Instant",
    ),
}


@dataclass(frozen=True)
class PayoutFee:
    earnings_minor: int
    fee_minor: int
    net_minor: int
    fee_percent: Decimal
    fee_cap_minor: int


def calculate_payout_fee(earnings_minor: int, schedule: PayoutScheduleType | str) -> PayoutFee:
    """Percentage fee rounded half up, capped when the schedule has a cap."""
    if earnings_minor < 0:
        raise InvalidAmount("Earnings must be non-negative")
    config = PAYOUT_SCHEDULE_CONFIGS[PayoutScheduleType(schedule)]
    fee = int((Decimal(earnings_minor) * config.fee_percent / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if config.fee_cap_minor > 0:
        fee = min(fee, config.fee_cap_minor)
    return PayoutFee(
        earnings_minor=earnings_minor,
        fee_minor=fee,
        net_minor=earnings_minor - fee,
        fee_percent=config.fee_percent,
        fee_cap_minor=config.fee_cap_minor,
    )


@dataclass(frozen=True)
class PayoutBatch:
    """Result of stamping one vendor's eligible credits into a payout batch."""
    batch_id: str
    vendor_id: str
    gross_minor: int
    fee_minor: int
    net_minor: int
    entry_ids: tuple


class PayoutSchedule:
    """Weekly cutoff/payout calendar in a fixed timezone."""

    def __init__(
        self,
        tz_name: str = "Africa/Lagos",
        cutoff_day_of_week: int = 3,
        cutoff_hour_local: int = 12,
        payout_day_of_week: int = 4,
        payout_hour_local: int = 14,
    ):
        self.tz = ZoneInfo(tz_name)
        self.cutoff_day_of_week = cutoff_day_of_week
        self.cutoff_hour_local = cutoff_hour_local
        self.payout_day_of_week = payout_day_of_week
        self.payout_hour_local = payout_hour_local

    @classmethod
    def from_settings(cls, config: dict | None = None) -> "PayoutSchedule":
        if config is None:
            from django.conf import settings
            config = getattr(settings, "MARKETPLACE", {})
        return cls(
            tz_name=config.get("PAYOUT_TIMEZONE", "Africa/Lagos"),
            cutoff_day_of_week=config.get("CUTOFF_DAY_OF_WEEK", 3),
            cutoff_hour_local=config.get("CUTOFF_HOUR_LOCAL", 12),
            payout_day_of_week=config.get("PAYOUT_DAY_OF_WEEK", 4),
            payout_hour_local=config.get("PAYOUT_HOUR_LOCAL", 14),
        )

    def for_vendor(self, payout: PayoutSettings) -> PayoutSchedule:
        """This calendar with a vendor's own cutoff and payout times."""
        return PayoutSchedule(
            tz_name=self.tz.key,
            cutoff_day_of_week=payout.cutoff_day_of_week,
            cutoff_hour_local=payout.cutoff_hour_local,
            payout_day_of_week=payout.day_of_week,
            payout_hour_local=payout.payout_hour_local,
        )

    def _at_local(self, day: date, hour: int) -> datetime:
        # fold=0 picks the earlier reading of an ambiguous or skipped wall time
        local = datetime.combine(day, time(hour), tzinfo=self.tz).replace(fold=0)
        return local.astimezone(timezone.utc)

    def _first_weekday_at(self, after: datetime, weekday: int, hour: int, strict: bool) -> datetime:
        start = after.astimezone(self.tz).date()
        day = start + timedelta(days=(weekday - start.weekday()) % 7)
        candidate = self._at_local(day, hour)
        if candidate < after or (strict and candidate == after):
            candidate = self._at_local(day + timedelta(days=7), hour)
        return candidate

    def cutoff_for_sale(self, sold_at: datetime) -> datetime:
        """First cutoff instant at or after ``sold_at``."""
        return self._first_weekday_at(sold_at, self.cutoff_day_of_week, self.cutoff_hour_local, strict=False)

    def target_payout_for_sale(self, sold_at: datetime) -> datetime:
        """First payout after the sale's cutoff plus one full cutoff cycle."""
        cutoff = self.cutoff_for_sale(sold_at)
        cutoff_day = cutoff.astimezone(self.tz).date()
        held_until = self._at_local(cutoff_day + timedelta(days=7), self.cutoff_hour_local)
        return self._first_weekday_at(held_until, self.payout_day_of_week, self.payout_hour_local, strict=True)

    def payout_key(self, payout_at: datetime) -> str:
        return payout_at.astimezone(self.tz).date().isoformat()

    def next_payout_at(self, last_payout_at: datetime | None, now: datetime) -> datetime:
        after = last_payout_at or now
        return self._first_weekday_at(after, self.payout_day_of_week, self.payout_hour_local, strict=True)

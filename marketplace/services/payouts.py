"""
Payout scheduling: releasing held funds and stamping payout batches.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from django.db import transaction
from django.utils import timezone

from marketplace.domain.errors import Conflict, NotFound
from marketplace.domain.events import HeldFundsReleased, PayoutBatchStamped
from marketplace.domain.payout import PayoutBatch, PayoutFee, PayoutSchedule, calculate_payout_fee
from marketplace.domain.types import SYSTEM_ACTOR, LedgerType, PayoutScheduleType
from marketplace.domain.wallet import WalletLedgerEntry
from marketplace.infra.locks import vendor_ledger_lock
from marketplace.infra.outbox import OutboxRepository
from marketplace.infra.repositories import LedgerRepository, WalletRepository
from marketplace.services.wallet import WalletLedgerService


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    released: int = 0
    skipped: int = 0
    failed: int = 0
    released_minor: int = 0


@dataclass(frozen=True)
class UpcomingPayout:
    vendor_id: str
    next_payout_at: datetime
    due_minor: int
    later_minor: int
    by_event: dict = field(default_factory=dict)


class PayoutService:
    """Service for the payout scheduler and the payout rail."""

    def __init__(
        self,
        ledger_service: WalletLedgerService | None = None,
        ledger_repo: LedgerRepository | None = None,
        wallet_repo: WalletRepository | None = None,
        outbox_repo: OutboxRepository | None = None,
        schedule: PayoutSchedule | None = None,
    ):
        self.ledger_repo = ledger_repo or LedgerRepository()
        self.wallet_repo = wallet_repo or WalletRepository()
        self.outbox_repo = outbox_repo or OutboxRepository()
        self.schedule = schedule or PayoutSchedule.from_settings()
        self.ledger_service = ledger_service or WalletLedgerService(
            ledger_repo=self.ledger_repo,
            wallet_repo=self.wallet_repo,
            outbox_repo=self.outbox_repo,
            schedule=self.schedule,
        )

    def sweep_held_funds(self, now: datetime | None = None, limit: int = 500) -> SweepResult:
        """Reclassify every due hold into eligible funds, one transaction per hold."""
        now = now or timezone.now()
        released = skipped = failed = released_minor = 0

        for hold in self.ledger_repo.open_holds(due_by=now, limit=limit):
            try:
                self._release_hold(hold)
                released += 1
                released_minor += -hold.amount_minor
            except Conflict:
                # another sweep released it first
                skipped += 1
                logger.info("hold_already_released", extra={"entry_id": str(hold.id)})
            except Exception as e:
                failed += 1
                logger.error(
                    "hold_release_failed",
                    extra={"entry_id": str(hold.id), "vendor_id": hold.vendor_id, "error": str(e)},
                    exc_info=True,
                )

        result = SweepResult(released=released, skipped=skipped, failed=failed, released_minor=released_minor)
        logger.info(
            "sweep_completed",
            extra={"released": released, "skipped": skipped, "failed": failed, "released_minor": released_minor},
        )
        return result

    @transaction.atomic
    def _release_hold(self, hold: WalletLedgerEntry) -> None:
        amount = -hold.amount_minor
        with vendor_ledger_lock(hold.vendor_id):
            if self.ledger_repo.has_offset(hold.id, LedgerType.CREDIT_RELEASE):
                raise Conflict("Hold already released.", entry_id=str(hold.id))
            common = dict(
                vendor_id=hold.vendor_id,
                currency=hold.currency,
                source=hold.source,
                order_ref=hold.order_ref,
                target_payout_at=hold.target_payout_at,
                created_by=SYSTEM_ACTOR,
                event_id=hold.event_id,
                reference_entry_id=hold.id,
            )
            self.ledger_service.append_entry(
                amount_minor=amount,
                type=LedgerType.CREDIT_ELIGIBLE,
                note=f"Released from hold {hold.id}",
                **common,
            )
            self.ledger_service.append_entry(
                amount_minor=amount,
                type=LedgerType.CREDIT_RELEASE,
                note=f"Hold {hold.id} released",
                **common,
            )
            self.outbox_repo.add_event(
                HeldFundsReleased(
                    event_id=str(uuid4()),
                    aggregate_id=hold.vendor_id,
                    event_type="HeldFundsReleased",
                    hold_entry_id=str(hold.id),
                    amount_minor=amount,
                ),
                "Wallet",
            )

    @transaction.atomic
    def stamp_payout_batch(self, vendor_id: str, batch_id: str, now: datetime | None = None) -> PayoutBatch | None:
        """
        Pay out every unstamped eligible credit of ``vendor_id`` as ``batch_id``.

        Credits are stamped once (batch id and paid time), then one
        ``debit_payout`` per earnings source is appended for the amount paid.
        Returns None when there is nothing to pay.
        """
        now = now or timezone.now()
        with vendor_ledger_lock(vendor_id):
            wallet_orm = self.wallet_repo.get(vendor_id)
            if wallet_orm is None:
                raise NotFound("Wallet not found.", vendor_id=vendor_id)

            credits = self.ledger_repo.unstamped_credits(vendor_id)
            refunded = self.ledger_repo.corrected_ids([c.id for c in credits], LedgerType.DEBIT_REFUND)
            credits = [c for c in credits if c.id not in refunded]
            if not credits:
                logger.info("payout_batch_empty", extra={"vendor_id": vendor_id, "batch_id": batch_id})
                return None

            stamped = self.ledger_repo.stamp([c.id for c in credits], batch_id, now)
            if stamped != len(credits):
                raise Conflict("Credits were stamped by another batch.", batch_id=batch_id)

            by_source = defaultdict(int)
            for credit in credits:
                by_source[credit.source] += credit.amount_minor
            for source, amount in by_source.items():
                self.ledger_service.append_entry(
                    vendor_id=vendor_id,
                    currency=wallet_orm.currency,
                    source=source,
                    order_ref=f"payout:{batch_id}",
                    amount_minor=-amount,
                    type=LedgerType.DEBIT_PAYOUT,
                    target_payout_at=now,
                    created_by=SYSTEM_ACTOR,
                    note=f"Payout batch {batch_id}",
                    payout_batch_id=batch_id,
                    paid_at=now,
                )

            self.wallet_repo.set_payout_times(
                vendor_id,
                last_payout_at=now,
                next_payout_at=self.ledger_service.schedule_for(vendor_id).next_payout_at(now, now),
            )

            gross = sum(by_source.values())
            fee = calculate_payout_fee(gross, wallet_orm.payout_schedule)
            self.outbox_repo.add_event(
                PayoutBatchStamped(
                    event_id=str(uuid4()),
                    aggregate_id=vendor_id,
                    event_type="PayoutBatchStamped",
                    batch_id=batch_id,
                    gross_minor=gross,
                    entries_count=len(credits),
                ),
                "Wallet",
            )

        logger.info(
            "payout_batch_stamped",
            extra={"vendor_id": vendor_id, "batch_id": batch_id, "gross_minor": gross, "fee_minor": fee.fee_minor},
        )
        return PayoutBatch(
            batch_id=batch_id,
            vendor_id=vendor_id,
            gross_minor=gross,
            fee_minor=fee.fee_minor,
            net_minor=fee.net_minor,
            entry_ids=tuple(c.id for c in credits),
        )

    @transaction.atomic
    def record_transfer_failure(self, vendor_id: str, batch_id: str, reason: str) -> list[WalletLedgerEntry]:
        """Give a failed batch back to the vendor by correcting its payout debits."""
        debits = self.ledger_repo.payout_debits(vendor_id, batch_id)
        if not debits:
            raise NotFound("Payout batch not found.", vendor_id=vendor_id, batch_id=batch_id)

        corrections = [
            self.ledger_service.correct_entry(debit.id, SYSTEM_ACTOR, note=f"Transfer failed: {reason}")
            for debit in debits
        ]
        logger.warning(
            "payout_transfer_failed",
            extra={"vendor_id": vendor_id, "batch_id": batch_id, "error": reason},
        )
        return corrections

    def upcoming_payout(self, vendor_id: str, now: datetime | None = None) -> UpcomingPayout:
        """What the next payout will carry and what waits for a later one."""
        now = now or timezone.now()
        next_payout_at = self.ledger_service.get_summary(vendor_id, now=now).payout.next_payout_at

        credits = self.ledger_repo.unstamped_credits(vendor_id)
        refunded = self.ledger_repo.corrected_ids([c.id for c in credits], LedgerType.DEBIT_REFUND)
        pending = [(c.amount_minor, c) for c in credits if c.id not in refunded]
        pending.extend((-h.amount_minor, h) for h in self.ledger_repo.open_holds(vendor_id=vendor_id))

        due = later = 0
        by_event = defaultdict(int)
        for amount, entry in pending:
            if entry.target_payout_at <= next_payout_at:
                due += amount
                by_event[entry.event_id or ""] += amount
            else:
                later += amount

        return UpcomingPayout(
            vendor_id=vendor_id,
            next_payout_at=next_payout_at,
            due_minor=due,
            later_minor=later,
            by_event=dict(by_event),
        )

    def calculate_payout_fee(self, earnings_minor: int, schedule: PayoutScheduleType | str) -> PayoutFee:
        return calculate_payout_fee(earnings_minor, schedule)

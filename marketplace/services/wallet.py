"""
Wallet ledger application service.

Every write goes through ``append_entry``: one insert per call, serialized
per vendor. The cached summary is rebuilt in the same transaction, and an
outbox event announces the entry to other consumers.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from uuid import UUID, uuid4

from django.db import IntegrityError, transaction
from django.utils import timezone

from marketplace.domain.errors import Conflict, CurrencyMismatch, NotFound
from marketplace.domain.events import LedgerEntryAppended
from marketplace.domain.payout import PayoutSchedule
from marketplace.domain.types import LedgerSource, LedgerType
from marketplace.domain.wallet import (
    CORRECTION_TYPES,
    EarningsBySource,
    WalletLedgerEntry,
    WalletSummary,
    check_sign,
    derive_balances,
    earnings_by_source,
)
from marketplace.infra.locks import vendor_ledger_lock
from marketplace.infra.outbox import OutboxRepository
from marketplace.infra.projector import Projector
from marketplace.infra.repositories import LedgerRepository, WalletRepository


logger = logging.getLogger(__name__)


class WalletLedgerService:
    """Service for wallet ledger operations."""

    def __init__(
        self,
        ledger_repo: LedgerRepository | None = None,
        wallet_repo: WalletRepository | None = None,
        outbox_repo: OutboxRepository | None = None,
        schedule: PayoutSchedule | None = None,
        projector: Projector | None = None,
    ):
        self.ledger_repo = ledger_repo or LedgerRepository()
        self.wallet_repo = wallet_repo or WalletRepository()
        self.outbox_repo = outbox_repo or OutboxRepository()
        self.schedule = schedule or PayoutSchedule.from_settings()
        self.projector = projector or Projector(
            outbox_repo=self.outbox_repo,
            ledger_repo=self.ledger_repo,
            wallet_repo=self.wallet_repo,
        )

    def schedule_for(self, vendor_id: str) -> PayoutSchedule:
        """Payout calendar of ``vendor_id``, or the default one for a new vendor."""
        wallet_orm = self.wallet_repo.get(vendor_id)
        if wallet_orm is None:
            return self.schedule
        return self.schedule.for_vendor(self.wallet_repo.payout_settings(wallet_orm))

    @transaction.atomic
    def append_entry(
        self,
        vendor_id: str,
        currency: str,
        source: LedgerSource | str,
        order_ref: str,
        amount_minor: int,
        type: LedgerType | str,
        target_payout_at: datetime,
        created_by: str,
        event_id: str | None = None,
        note: str = "",
        reference_entry_id: UUID | None = None,
        payout_batch_id: str | None = None,
        paid_at: datetime | None = None,
    ) -> WalletLedgerEntry:
        """Append one immutable entry to the vendor's ledger."""
        entry_type = LedgerType(type)
        check_sign(entry_type, amount_minor)

        with vendor_ledger_lock(vendor_id):
            ledger_currency = self.ledger_repo.ledger_currency(vendor_id)
            if ledger_currency is None:
                wallet_orm = self.wallet_repo.get(vendor_id)
                ledger_currency = wallet_orm.currency if wallet_orm else currency
            if currency != ledger_currency:
                logger.warning(
                    "ledger_currency_mismatch",
                    extra={"vendor_id": vendor_id, "currency": currency, "ledger_currency": ledger_currency},
                )
                raise CurrencyMismatch(
                    f"Wallet is in {ledger_currency}, entry is in {currency}",
                    vendor_id=vendor_id,
                )
            self.wallet_repo.get_or_create(vendor_id, currency)

            entry = WalletLedgerEntry(
                id=uuid4(),
                vendor_id=vendor_id,
                currency=currency,
                source=LedgerSource(source),
                order_ref=order_ref,
                amount_minor=amount_minor,
                type=entry_type,
                target_payout_at=target_payout_at,
                target_payout_key=self.schedule.payout_key(target_payout_at),
                created_at=timezone.now(),
                created_by=created_by,
                event_id=event_id,
                payout_batch_id=payout_batch_id,
                paid_at=paid_at,
                reference_entry_id=reference_entry_id,
                note=note,
            )
            try:
                with transaction.atomic():
                    entry = self.ledger_repo.add(entry)
            except IntegrityError:
                raise Conflict(
                    "This entry has already been offset.",
                    reference_entry_id=str(reference_entry_id),
                    type=entry_type.value,
                )

            self.outbox_repo.add_event(
                LedgerEntryAppended(
                    event_id=str(uuid4()),
                    aggregate_id=vendor_id,
                    event_type="LedgerEntryAppended",
                    entry_id=str(entry.id),
                    entry_type=entry.type.value,
                    amount_minor=entry.amount_minor,
                    currency=entry.currency,
                ),
                "Wallet",
            )
            self.projector.refresh_wallet_summary(vendor_id)

        logger.info(
            "ledger_entry_appended",
            extra={
                "vendor_id": vendor_id,
                "entry_id": str(entry.id),
                "entry_type": entry.type.value,
                "amount_minor": entry.amount_minor,
                "order_ref": order_ref,
            },
        )
        return entry

    @transaction.atomic
    def correct_entry(self, entry_id: UUID, created_by: str, note: str = "") -> WalletLedgerEntry:
        """Append the offsetting entry for ``entry_id``."""
        entry = self.ledger_repo.get(entry_id)
        if entry is None:
            raise NotFound("Ledger entry not found.", entry_id=str(entry_id))

        offset_type = CORRECTION_TYPES[entry.type]
        if self.ledger_repo.has_offset(entry.id, offset_type):
            raise Conflict("This entry has already been corrected.", entry_id=str(entry_id))

        return self.append_entry(
            vendor_id=entry.vendor_id,
            currency=entry.currency,
            source=entry.source,
            order_ref=entry.order_ref,
            amount_minor=-entry.amount_minor,
            type=offset_type,
            target_payout_at=entry.target_payout_at,
            created_by=created_by,
            event_id=entry.event_id,
            note=note or f"Correction of {entry.id}",
            reference_entry_id=entry.id,
        )

    def get_summary(self, vendor_id: str, now: datetime | None = None) -> WalletSummary:
        """
        Cached balances with the vendor's payout settings.

        ``payout.next_payout_at`` is computed from the vendor's calendar: the
        first payout after the later of the last payout and ``now``.
        """
        summary = self.wallet_repo.get_summary(vendor_id)
        if summary is None:
            raise NotFound("Wallet not found.", vendor_id=vendor_id)
        now = now or timezone.now()
        payout = summary.payout
        after = max(payout.last_payout_at, now) if payout.last_payout_at else None
        next_payout_at = self.schedule.for_vendor(payout).next_payout_at(after, now)
        return replace(summary, payout=replace(payout, next_payout_at=next_payout_at))

    def recompute_summary(self, vendor_id: str) -> WalletSummary:
        """Summary derived directly from the ledger, bypassing the cache."""
        summary = self.get_summary(vendor_id)
        balances = derive_balances(self.ledger_repo.list_for_vendor(vendor_id))
        return WalletSummary(
            vendor_id=vendor_id,
            currency=summary.currency,
            eligible_balance_minor=balances.eligible_balance_minor,
            on_hold_minor=balances.on_hold_minor,
            payout=summary.payout,
            last_updated_at=timezone.now(),
        )

    def verify_summary(self, vendor_id: str) -> bool:
        """Compare the cached summary with a recomputation from raw entries."""
        entries = self.ledger_repo.list_for_vendor(vendor_id)
        summary = self.wallet_repo.get_summary(vendor_id)
        balances = derive_balances(entries)
        if summary is None:
            return not entries
        if summary.matches(balances):
            return True
        logger.warning(
            "wallet_summary_drift",
            extra={
                "vendor_id": vendor_id,
                "cached_eligible": summary.eligible_balance_minor,
                "cached_on_hold": summary.on_hold_minor,
                "eligible": balances.eligible_balance_minor,
                "on_hold": balances.on_hold_minor,
            },
        )
        return False

    def earnings_by_source(self, vendor_id: str) -> EarningsBySource:
        return earnings_by_source(self.ledger_repo.list_for_vendor(vendor_id))

    def list_entries(self, vendor_id: str, limit: int = 50) -> list[WalletLedgerEntry]:
        """Most recent entries first."""
        return self.ledger_repo.list_for_vendor(vendor_id, limit=limit)

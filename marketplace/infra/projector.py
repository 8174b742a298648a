"""
Projector for updating read models from events.
"""
from __future__ import annotations

import logging

from django.db import transaction

from marketplace.domain.wallet import derive_balances, earnings_by_source
from marketplace.infra.outbox import OutboxRepository
from marketplace.infra.repositories import LedgerRepository, WalletRepository


logger = logging.getLogger(__name__)

WALLET_EVENTS = {"LedgerEntryAppended", "HeldFundsReleased", "PayoutBatchStamped"}


class Projector:
    """Projector for updating read models from domain events."""

    def __init__(
        self,
        outbox_repo: OutboxRepository | None = None,
        ledger_repo: LedgerRepository | None = None,
        wallet_repo: WalletRepository | None = None,
    ):
        self.outbox_repo = outbox_repo or OutboxRepository()
        self.ledger_repo = ledger_repo or LedgerRepository()
        self.wallet_repo = wallet_repo or WalletRepository()

    @transaction.atomic
    def process_outbox_events(self, limit: int = 100) -> int:
        """Process unprocessed outbox events."""
        events = self.outbox_repo.get_unprocessed_events(limit=limit)
        processed_count = 0
        refreshed = set()

        for event_orm in events:
            try:
                with transaction.atomic():
                    self._process_event(event_orm, refreshed)
                    self.outbox_repo.mark_processed(event_orm.id)
                processed_count += 1
            except Exception as e:
                # Log error but continue processing
                self.outbox_repo.increment_retry(event_orm.id)
                logger.error(
                    "projector_error",
                    extra={
                        "event_id": str(event_orm.id),
                        "event_type": event_orm.event_type,
                        "error": str(e),
                    },
                    exc_info=True,
                )

        return processed_count

    def _process_event(self, event_orm, refreshed: set) -> None:
        """Process single event."""
        if event_orm.event_type in WALLET_EVENTS:
            vendor_id = event_orm.aggregate_id
            # one rebuild per vendor per batch is enough
            if vendor_id not in refreshed:
                self.refresh_wallet_summary(vendor_id)
                refreshed.add(vendor_id)
        else:
            logger.debug(
                "projector_event_skipped",
                extra={"event_type": event_orm.event_type, "aggregate_type": event_orm.aggregate_type},
            )

    def refresh_wallet_summary(self, vendor_id: str) -> None:
        """Rebuild the cached wallet summary of ``vendor_id`` from its ledger."""
        entries = self.ledger_repo.list_for_vendor(vendor_id)
        if not entries:
            return
        wallet_orm = self.wallet_repo.get(vendor_id)
        currency = wallet_orm.currency if wallet_orm else entries[0].currency
        self.wallet_repo.save_summary(
            vendor_id=vendor_id,
            currency=currency,
            balances=derive_balances(entries),
            by_source=earnings_by_source(entries),
            entries_count=len(entries),
            last_entry_at=entries[0].created_at,
        )
        logger.info("wallet_summary_refreshed", extra={"vendor_id": vendor_id, "entries": len(entries)})

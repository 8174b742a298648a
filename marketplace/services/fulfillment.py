"""
Fulfillment engine: vendors moving their own lines through the state machine.
"""
from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID, uuid4

from django.db import transaction
from django.utils import timezone

from marketplace.domain.errors import Conflict, NotFound, TerminalStateViolation
from marketplace.domain.events import FulfillmentMarked
from marketplace.domain.fulfillment import FulfillmentChange, FulfillmentLine
from marketplace.domain.types import FulfillmentStatus, TimelineEventType, vendor_actor
from marketplace.infra.outbox import OutboxRepository
from marketplace.infra.repositories import FulfillmentLineRepository, OrderRepository
from marketplace.infra.timeline_store import TimelineStore


logger = logging.getLogger(__name__)


class FulfillmentService:
    """Service for fulfillment status changes."""

    def __init__(
        self,
        order_repo: OrderRepository | None = None,
        line_repo: FulfillmentLineRepository | None = None,
        timeline_store: TimelineStore | None = None,
        outbox_repo: OutboxRepository | None = None,
    ):
        self.order_repo = order_repo or OrderRepository()
        self.line_repo = line_repo or FulfillmentLineRepository()
        self.timeline_store = timeline_store or TimelineStore()
        self.outbox_repo = outbox_repo or OutboxRepository()

    @transaction.atomic
    def set_fulfillment_status(
        self,
        order_id: UUID,
        line_key: str,
        requested_by: str,
        status: FulfillmentStatus | str,
        qty_fulfilled: int | None = None,
        tracking_number: str | None = None,
        carrier: str | None = None,
        note: str | None = None,
        expected_version: int | None = None,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> FulfillmentLine:
        """
        Move one line owned by ``requested_by`` to ``status``.

        Touches only that line and its vendor line status, and records one
        ``fulfillment_marked`` timeline event. A repeated ``idempotency_key``
        returns the current line without writing anything.
        """
        line = self.line_repo.get(order_id, line_key)
        if line is None:
            if not self.order_repo.exists(order_id):
                raise NotFound("Order not found.", order_id=str(order_id))
            raise NotFound("Line not found on this order.", line_key=line_key)

        line.assert_owner(requested_by)

        actor = vendor_actor(requested_by)
        if idempotency_key and self.timeline_store.has_idempotency_key(order_id, line_key, actor, idempotency_key):
            logger.info(
                "fulfillment_replayed",
                extra={"order_id": str(order_id), "line_key": line_key, "idempotency_key": idempotency_key},
            )
            return line

        if expected_version is not None and expected_version != line.version:
            raise Conflict(line_key=line_key, expected_version=expected_version, current_version=line.version)

        now = now or timezone.now()
        change = FulfillmentChange(
            status=FulfillmentStatus(status),
            qty_fulfilled=qty_fulfilled,
            tracking_number=tracking_number,
            carrier=carrier,
            note=note,
        )
        try:
            updated = line.apply(change, now)
        except TerminalStateViolation as e:
            logger.warning(
                "fulfillment_terminal_violation",
                extra={"order_id": str(order_id), "line_key": line_key, "error": e.message},
            )
            raise

        if line.is_noop(change):
            # nothing to write, the resubmission is still recorded below
            updated = line
        else:
            self.line_repo.update(order_id, updated, expected_version=line.version)

        self.timeline_store.append(
            order_id,
            TimelineEventType.FULFILLMENT_MARKED,
            actor=actor,
            message=f"{line_key} marked {updated.status.value}",
            meta=updated.timeline_meta(),
            at=now,
            idempotency_key=idempotency_key,
            line_key=line_key,
        )

        event = FulfillmentMarked(
            event_id=str(uuid4()),
            aggregate_id=str(order_id),
            event_type="FulfillmentMarked",
            line_key=line_key,
            vendor_id=requested_by,
            status=updated.status.value,
            line_version=updated.version,
        )
        event.occurred_at = now.isoformat()
        self.outbox_repo.add_event(event, "Order")

        logger.info(
            "fulfillment_status_set",
            extra={
                "order_id": str(order_id),
                "line_key": line_key,
                "status": updated.status.value,
                "version": updated.version,
            },
        )
        return updated

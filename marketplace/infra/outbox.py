"""
Transactional Outbox pattern implementation.
"""
from __future__ import annotations

import logging
from dataclasses import asdict
from enum import Enum
from uuid import UUID, uuid4

from django.db import models, transaction
from django.db.models import F
from django.utils import timezone

from marketplace.domain.events import DomainEvent
from marketplace.infra.models import TimeStampedModel


logger = logging.getLogger(__name__)


class OutboxEvent(TimeStampedModel):
    """Outbox event for transactional outbox pattern."""
    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    aggregate_id = models.CharField(max_length=64)
    aggregate_type = models.CharField(max_length=50)  # "Order" or "Wallet"
    event_type = models.CharField(max_length=100)
    event_data = models.JSONField()
    processed = models.BooleanField(default=False)
    processed_at = models.DateTimeField(null=True, blank=True)
    retry_count = models.IntegerField(default=0)

    class Meta:
        indexes = [
            models.Index(fields=("processed", "created_at")),
            models.Index(fields=("aggregate_id", "aggregate_type")),
        ]


class OutboxRepository:
    """Repository for outbox events."""

    @transaction.atomic
    def add_event(self, event: DomainEvent, aggregate_type: str) -> UUID:
        """Add event to outbox (within transaction)."""
        event_data = self._serialize_event(event)
        outbox_event = OutboxEvent.objects.create(
            aggregate_id=str(event.aggregate_id),
            aggregate_type=aggregate_type,
            event_type=event.event_type,
            event_data=event_data,
        )
        logger.debug(
            "outbox_event_added",
            extra={"event_type": event.event_type, "aggregate_type": aggregate_type},
        )
        return outbox_event.id

    def get_unprocessed_events(self, limit: int = 100) -> list[OutboxEvent]:
        """Get unprocessed events."""
        return list(
            OutboxEvent.objects
            .filter(processed=False)
            .order_by("created_at")[:limit]
        )

    def mark_processed(self, event_id: UUID) -> None:
        """Mark event as processed."""
        OutboxEvent.objects.filter(id=event_id).update(
            processed=True,
            processed_at=timezone.now(),
        )

    def increment_retry(self, event_id: UUID) -> None:
        """Increment retry count."""
        OutboxEvent.objects.filter(id=event_id).update(
            retry_count=F("retry_count") + 1,
        )

    def _serialize_event(self, event: DomainEvent) -> dict:
        """Serialize event to dict."""
        data = {}
        for key, value in asdict(event).items():
            if key == "occurred_at" and not value:
                value = timezone.now().isoformat()
            if isinstance(value, Enum):
                data[key] = value.value
            elif isinstance(value, UUID):
                data[key] = str(value)
            else:
                data[key] = value
        return data

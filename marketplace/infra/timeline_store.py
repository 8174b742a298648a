"""
Append-only order timeline and operator notes.
"""
from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID, uuid4

from django.db import IntegrityError, models, transaction
from django.utils import timezone

from marketplace.domain.errors import Conflict
from marketplace.domain.timeline import Note, TimelineEvent, merge_timeline
from marketplace.domain.types import TimelineEventType
from marketplace.infra.locks import order_timeline_lock
from marketplace.infra.models import OrderORM, TimeStampedModel


logger = logging.getLogger(__name__)


class TimelineEventORM(TimeStampedModel):
    """Timeline event emitted by a state transition."""
    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    order = models.ForeignKey(
        OrderORM,
        on_delete=models.CASCADE,
        related_name="timeline_events",
    )
    type = models.CharField(max_length=32)
    actor = models.CharField(max_length=96)
    at = models.DateTimeField()
    sequence_number = models.BigIntegerField()  # For ordering events
    message = models.TextField(blank=True, default="")
    meta = models.JSONField(default=dict)
    line_key = models.CharField(max_length=128, null=True, blank=True)
    idempotency_key = models.CharField(max_length=255, null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=("order", "sequence_number"),
                name="uniq_timeline_sequence",
            ),
            # a client key is scoped to one line and one requester
            models.UniqueConstraint(
                fields=("order", "line_key", "actor", "idempotency_key"),
                name="uniq_timeline_idempotency_key",
            ),
        ]
        indexes = [
            models.Index(fields=("order", "sequence_number")),
        ]
        ordering = ["sequence_number"]


class OrderNoteORM(TimeStampedModel):
    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    order = models.ForeignKey(
        OrderORM,
        on_delete=models.CASCADE,
        related_name="notes",
    )
    author = models.CharField(max_length=96)
    at = models.DateTimeField()
    message = models.TextField()

    class Meta:
        indexes = [
            models.Index(fields=("order", "at")),
        ]


class TimelineStore:
    """Repository for timeline events."""

    def append(
        self,
        order_id: UUID,
        type: TimelineEventType,
        actor: str,
        message: str = "",
        meta: dict | None = None,
        at: datetime | None = None,
        idempotency_key: str | None = None,
        line_key: str | None = None,
    ) -> TimelineEvent:
        """
        Append an event with the next per-order sequence number.

        The sequence is read and written under the order's timeline lock;
        the unique ``(order, sequence_number)`` constraint backs it up on
        databases without advisory locks.
        """
        with transaction.atomic(), order_timeline_lock(order_id):
            last = (
                TimelineEventORM.objects
                .filter(order_id=order_id)
                .order_by("-sequence_number")
                .values_list("sequence_number", flat=True)
                .first()
            )
            sequence_number = (last or 0) + 1

            try:
                with transaction.atomic():
                    event_orm = TimelineEventORM.objects.create(
                        order_id=order_id,
                        type=TimelineEventType(type).value,
                        actor=actor,
                        at=at or timezone.now(),
                        sequence_number=sequence_number,
                        message=message,
                        meta=meta or {},
                        line_key=line_key,
                        idempotency_key=idempotency_key,
                    )
            except IntegrityError:
                logger.warning(
                    "timeline_append_conflict",
                    extra={
                        "order_id": str(order_id),
                        "line_key": line_key,
                        "sequence_number": sequence_number,
                        "idempotency_key": idempotency_key,
                    },
                )
                raise Conflict("This request was already applied.", idempotency_key=idempotency_key)
        return self._to_domain(event_orm)

    def has_idempotency_key(self, order_id: UUID, line_key: str, actor: str, idempotency_key: str) -> bool:
        """Whether ``actor`` already used ``idempotency_key`` on this line."""
        return TimelineEventORM.objects.filter(
            order_id=order_id,
            line_key=line_key,
            actor=actor,
            idempotency_key=idempotency_key,
        ).exists()

    def list_events(self, order_id: UUID) -> list[TimelineEvent]:
        events = TimelineEventORM.objects.filter(order_id=order_id).order_by("sequence_number")
        return [self._to_domain(e) for e in events]

    def _to_domain(self, event_orm: TimelineEventORM) -> TimelineEvent:
        return TimelineEvent(
            order_id=event_orm.order_id,
            type=TimelineEventType(event_orm.type),
            actor=event_orm.actor,
            at=event_orm.at,
            sequence_number=event_orm.sequence_number,
            message=event_orm.message,
            meta=event_orm.meta,
            idempotency_key=event_orm.idempotency_key,
        )


class NoteStore:
    """Repository for human-authored order notes."""

    def add_note(self, order_id: UUID, author: str, message: str, at: datetime | None = None) -> Note:
        note_orm = OrderNoteORM.objects.create(
            order_id=order_id,
            author=author,
            at=at or timezone.now(),
            message=message,
        )
        return self._to_domain(note_orm)

    def list_notes(self, order_id: UUID) -> list[Note]:
        notes = OrderNoteORM.objects.filter(order_id=order_id).order_by("at", "created_at")
        return [self._to_domain(n) for n in notes]

    def _to_domain(self, note_orm: OrderNoteORM) -> Note:
        return Note(
            order_id=note_orm.order_id,
            author=note_orm.author,
            at=note_orm.at,
            message=note_orm.message,
        )


def merged_timeline(
    order_id: UUID,
    newest_first: bool = False,
    timeline_store: TimelineStore | None = None,
    note_store: NoteStore | None = None,
) -> list:
    """Events and notes of one order in display order."""
    timeline_store = timeline_store or TimelineStore()
    note_store = note_store or NoteStore()
    return merge_timeline(
        timeline_store.list_events(order_id),
        note_store.list_notes(order_id),
        newest_first=newest_first,
    )

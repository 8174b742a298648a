"""
Order timeline: system events and human notes.

The two streams are stored separately and only merged for display.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from marketplace.domain.types import TimelineEventType


@dataclass(frozen=True)
class TimelineEvent:
    """A state transition recorded against an order."""
    order_id: UUID
    type: TimelineEventType
    actor: str
    at: datetime
    sequence_number: int
    message: str = ""
    meta: dict = field(default_factory=dict)
    idempotency_key: str | None = None

    def to_dict(self) -> dict:
        return {
            "kind": "event",
            "type": self.type.value,
            "actor": self.actor,
            "at": self.at.isoformat(),
            "sequence": self.sequence_number,
            "message": self.message,
            "meta": self.meta,
        }


@dataclass(frozen=True)
class Note:
    """Free text left on an order by an operator."""
    order_id: UUID
    author: str
    at: datetime
    message: str

    def to_dict(self) -> dict:
        return {
            "kind": "note",
            "type": TimelineEventType.NOTE.value,
            "actor": self.author,
            "at": self.at.isoformat(),
            "sequence": None,
            "message": self.message,
            "meta": {},
        }


def _dedupe_key(event: TimelineEvent):
    if event.type != TimelineEventType.FULFILLMENT_MARKED:
        return None
    return (event.at, event.meta.get("lineKey"), event.meta.get("status"))


def merge_timeline(events, notes, newest_first: bool = False) -> list:
    """Merge events and notes by time, dropping repeated fulfillment marks."""
    seen = set()
    kept = []
    for event in sorted(events, key=lambda e: e.sequence_number):
        key = _dedupe_key(event)
        if key is not None:
            if key in seen:
                continue
            seen.add(key)
        kept.append(event)

    # notes sort after events recorded at the same instant
    merged = [((e.at, 0, e.sequence_number), e) for e in kept]
    merged.extend(((n.at, 1, index), n) for index, n in enumerate(notes))
    merged.sort(key=lambda pair: pair[0], reverse=newest_first)
    return [item for _, item in merged]

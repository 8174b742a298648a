"""
Read models (projections) for CQRS.
"""
from __future__ import annotations

from uuid import uuid4

from django.db import models

from marketplace.infra.models import TimeStampedModel


class WalletSummaryView(TimeStampedModel):
    """Cached wallet balances, rebuilt from the ledger by the projector."""
    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    vendor_id = models.CharField(max_length=64, unique=True)
    currency = models.CharField(max_length=3)
    eligible_balance_minor = models.BigIntegerField(default=0)
    on_hold_minor = models.BigIntegerField(default=0)
    event_eligible_minor = models.BigIntegerField(default=0)
    event_on_hold_minor = models.BigIntegerField(default=0)
    store_eligible_minor = models.BigIntegerField(default=0)
    store_on_hold_minor = models.BigIntegerField(default=0)
    entries_count = models.IntegerField(default=0)
    last_entry_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=("vendor_id",)),
        ]

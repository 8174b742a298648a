"""
Expose ORM models for Django's auto-discovery while keeping real definitions
under the infrastructure module.
"""

from marketplace.infra.models import *
from marketplace.infra.outbox import OutboxEvent
from marketplace.infra.read_models import WalletSummaryView
from marketplace.infra.timeline_store import OrderNoteORM, TimelineEventORM

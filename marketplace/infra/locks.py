"""
Per-vendor and per-order serialization using PostgreSQL advisory locks.
"""
from contextlib import contextmanager

from django.db import connection


@contextmanager
def vendor_ledger_lock(vendor_id: str):
    """
    Acquire the advisory lock guarding one vendor's ledger.

    Must run inside a transaction; the lock is released when it ends.

    Usage:
        with transaction.atomic(), vendor_ledger_lock(vendor_id):
            # Append ledger entries
            pass
    """
    if connection.vendor == "postgresql":
        with connection.cursor() as cursor:
            cursor.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s)::bigint)",
                ["wallet-ledger:" + str(vendor_id)],
            )
    yield


@contextmanager
def order_timeline_lock(order_id):
    """
    Acquire the advisory lock guarding one order's timeline sequence.

    Writers of different lines of the same order only meet here, for the
    timeline append at the end of their transaction.
    """
    if connection.vendor == "postgresql":
        with connection.cursor() as cursor:
            cursor.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s)::bigint)",
                ["order-timeline:" + str(order_id)],
            )
    yield

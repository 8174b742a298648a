"""
Tests for retry, PII masking, log formatting and the outbox projector.
"""
import json
import logging
from unittest import mock

from django.db import OperationalError
from django.test import TestCase

from marketplace.infra.outbox import OutboxEvent
from marketplace.infra.pii_masker import mask_account_number, mask_email, mask_pii_in_dict
from marketplace.infra.projector import Projector
from marketplace.infra.retry import backoff_delay, retry_with_backoff
from marketplace.utils.logging import JsonFormatter


class RetryTest(TestCase):

    def test_retries_then_succeeds(self):
        calls = []
        delays = []

        @retry_with_backoff(max_retries=3, initial_delay=1.0, jitter=False,
                            exceptions=(OperationalError,), sleep=delays.append)
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("database is locked")
            return "ok"

        self.assertEqual(flaky(), "ok")
        self.assertEqual(len(calls), 3)
        self.assertEqual(delays, [1.0, 2.0])

    def test_gives_up_after_max_retries(self):
        delays = []

        @retry_with_backoff(max_retries=2, jitter=False, exceptions=(OperationalError,), sleep=delays.append)
        def always_fails():
            raise OperationalError("down")

        with self.assertRaises(OperationalError):
            always_fails()
        self.assertEqual(len(delays), 2)

    def test_other_errors_are_not_retried(self):
        delays = []

        @retry_with_backoff(exceptions=(OperationalError,), sleep=delays.append)
        def broken():
            raise ValueError("bug")

        with self.assertRaises(ValueError):
            broken()
        self.assertEqual(delays, [])

    def test_delay_is_capped(self):
        self.assertEqual(backoff_delay(10, 1.0, 60.0, 2.0, jitter=False), 60.0)
        delay = backoff_delay(1, 1.0, 60.0, 2.0, jitter=True)
        self.assertGreaterEqual(delay, 2.0)
        self.assertLessEqual(delay, 2.5)


class PIIMaskerTest(TestCase):

    def test_mask_email(self):
        self.assertEqual(mask_email("ada@example.com"), "ad*@example.com")

    def test_mask_account_number(self):
        self.assertEqual(mask_account_number("0123456789"), "******6789")
        self.assertEqual(mask_account_number("123"), "***")

    def test_nested_masking(self):
        masked = mask_pii_in_dict({
            "request_id": "abc",
            "user_id": "vendor-with-a-long-id",
            "payout": {"bank": {"account_number": "0123456789", "bank_name": "Test Bank"}},
            "contacts": [{"email": "ops@example.com"}],
        })
        self.assertEqual(masked["request_id"], "abc")
        self.assertNotEqual(masked["user_id"], "vendor-with-a-long-id")
        self.assertEqual(masked["payout"]["bank"]["account_number"], "******6789")
        self.assertEqual(masked["payout"]["bank"]["bank_name"], "Test Bank")
        self.assertEqual(masked["contacts"][0]["email"], "op*@example.com")


class JsonFormatterTest(TestCase):

    def test_extra_fields_are_emitted(self):
        record = logging.LogRecord("marketplace", logging.INFO, __file__, 10, "ledger_entry_appended", None, None)
        record.vendor_id = "vendor-x"
        record.amount_minor = 5000
        data = json.loads(JsonFormatter().format(record))
        self.assertEqual(data["message"], "ledger_entry_appended")
        self.assertEqual(data["level"], "INFO")
        self.assertEqual(data["vendor_id"], "vendor-x")
        self.assertEqual(data["amount_minor"], 5000)
        self.assertNotIn("exception", data)


class ProjectorTest(TestCase):

    def add_event(self, event_type, aggregate_id="vendor-x"):
        return OutboxEvent.objects.create(
            aggregate_id=aggregate_id,
            aggregate_type="Wallet",
            event_type=event_type,
            event_data={},
        )

    def test_failure_is_isolated(self):
        bad = self.add_event("LedgerEntryAppended", aggregate_id="vendor-bad")
        good = self.add_event("OrderCreated")
        projector = Projector()

        def refresh(vendor_id):
            raise RuntimeError("boom")

        with mock.patch.object(projector, "refresh_wallet_summary", side_effect=refresh):
            processed = projector.process_outbox_events()

        self.assertEqual(processed, 1)
        bad.refresh_from_db()
        good.refresh_from_db()
        self.assertFalse(bad.processed)
        self.assertEqual(bad.retry_count, 1)
        self.assertTrue(good.processed)

"""
Management command to release held funds whose payout window has arrived.
"""
import time

from django.conf import settings
from django.core.management.base import BaseCommand
from django.db import OperationalError

from marketplace.infra.retry import retry_with_backoff
from marketplace.services.payouts import PayoutService


class Command(BaseCommand):
    help = 'Move due on-hold ledger entries into the eligible balance'

    def add_arguments(self, parser):
        parser.add_argument(
            '--limit',
            type=int,
            default=settings.MARKETPLACE.get("SWEEP_BATCH_SIZE", 500),
            help='Maximum number of holds to release in one run',
        )
        parser.add_argument(
            '--loop',
            action='store_true',
            help='Run in loop (for production)',
        )
        parser.add_argument(
            '--interval',
            type=int,
            default=60,
            help='Interval between loops in seconds',
        )

    def handle(self, *args, **options):
        limit = options['limit']
        interval = options['interval']

        service = PayoutService()

        @retry_with_backoff(max_retries=3, initial_delay=1.0, exceptions=(OperationalError,))
        def sweep():
            return service.sweep_held_funds(limit=limit)

        if not options['loop']:
            self._report(sweep())
            return

        self.stdout.write(f'Starting sweeper in loop mode (interval: {interval}s)')
        while True:
            try:
                self._report(sweep())
                time.sleep(interval)
            except KeyboardInterrupt:
                self.stdout.write(self.style.WARNING('Stopped by user'))
                break

    def _report(self, result):
        message = f'Released {result.released} holds, skipped {result.skipped}, failed {result.failed}'
        style = self.style.SUCCESS if result.failed == 0 else self.style.WARNING
        self.stdout.write(style(message))

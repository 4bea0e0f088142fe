"""
Management command to run the dunning batch.

Usage:
    python manage.py process_dunning                      # All companies, as of today
    python manage.py process_dunning --company acme       # One company
    python manage.py process_dunning --as-of 2024-03-31   # Evaluate at a past or future date
    python manage.py process_dunning --dry-run            # Show what would be recorded
    python manage.py process_dunning --retry-failed       # Also resend undelivered notices
    python manage.py process_dunning --json               # Machine-readable run summaries
"""

import json
import logging

from django.core.management.base import BaseCommand, CommandError
from django.utils.dateparse import parse_date

from receivables.api.serializers import DunningRunSummarySerializer
from receivables.errors import LedgerError
from receivables.models import Company
from receivables.services import DunningService

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Record dunning levels for overdue invoices and send the notices'

    def add_arguments(self, parser):
        parser.add_argument(
            '--company',
            help='Slug of the company to process (default: every company)',
        )
        parser.add_argument(
            '--as-of',
            help='Evaluation date, YYYY-MM-DD (default: today)',
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show what would be recorded without writing or sending anything',
        )
        parser.add_argument(
            '--json',
            action='store_true',
            help='Print each run summary as JSON',
        )
        parser.add_argument(
            '--retry-failed',
            action='store_true',
            help='Resend notices whose delivery previously failed',
        )

    def handle(self, *args, **options):
        as_of = None
        if options['as_of']:
            as_of = parse_date(options['as_of'])
            if as_of is None:
                raise CommandError(f"Invalid --as-of date '{options['as_of']}', expected YYYY-MM-DD")

        if options['company']:
            try:
                companies = [DunningService.get_company(options['company'])]
            except LedgerError as e:
                raise CommandError(e.message)
        else:
            companies = list(Company.objects.order_by('id'))

        if not companies:
            self.stdout.write(self.style.SUCCESS('No companies to process'))
            return

        for company in companies:
            if options['dry_run']:
                self._preview(company, as_of)
                continue

            try:
                summary = DunningService.process_dunning(company, as_of=as_of)
            except Exception as e:
                self.stdout.write(self.style.ERROR(f'{company.slug}: dunning run failed: {e}'))
                logger.exception('Error in process_dunning command')
                raise

            if options['json']:
                self.stdout.write(json.dumps(DunningRunSummarySerializer(summary).data))
            else:
                self.stdout.write(self.style.SUCCESS(
                    f'{company.slug}: {summary.created} created, {summary.skipped} skipped, '
                    f'{summary.failed} failed (run {summary.run_id})'
                ))
                for item in summary.items:
                    if item.outcome == summary.FAILED:
                        self.stdout.write(self.style.WARNING(f'  - {item.invoice_number}: {item.message}'))

            if options['retry_failed']:
                counts = DunningService.retry_failed_notifications(company)
                self.stdout.write(
                    f"{company.slug}: retried {counts['records']} record(s), "
                    f"{counts['sent']} sent, {counts['failed']} still failing"
                )

    def _preview(self, company, as_of):
        self.stdout.write(self.style.WARNING(f'DRY RUN - {company.slug}: nothing will be recorded or sent'))
        preview = DunningService.preview_dunning(company, as_of=as_of)
        if not preview:
            self.stdout.write('  No overdue invoices')
        for item in preview:
            self.stdout.write(f'  - {item.invoice_number}: {item.level or "none"} ({item.outcome}: {item.message})')

"""Management command to recompute stored invoice statuses (overdue detection)."""

from datetime import date

from django.core.management.base import BaseCommand, CommandError

from django_invoice_ledger.ledger import refresh_overdue_statuses


class Command(BaseCommand):
    help = 'Recompute the stored status of issued, unsettled invoices (marks overdue invoices)'

    def add_arguments(self, parser):
        parser.add_argument(
            '--date',
            default=None,
            help='Reference date as YYYY-MM-DD (default: today)'
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show the status changes without writing them'
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        today = None
        if options['date']:
            try:
                today = date.fromisoformat(options['date'])
            except ValueError:
                raise CommandError(f"Invalid --date {options['date']!r}, expected YYYY-MM-DD")

        changes = refresh_overdue_statuses(today=today, dry_run=dry_run)

        if dry_run:
            self.stdout.write(f'Would update {len(changes)} invoice statuses')
            for change in changes:
                self.stdout.write(
                    f'  - {change.invoice_number}: {change.old_status} -> {change.new_status}'
                )
        else:
            self.stdout.write(
                self.style.SUCCESS(f'Updated {len(changes)} invoice statuses')
            )

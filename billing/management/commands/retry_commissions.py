"""
Record commissions that failed to resolve when the payment webhook ran.

Usage:
    python manage.py retry_commissions
    python manage.py retry_commissions --limit 50
"""

from django.core.management.base import BaseCommand
from billing.services.commission_service import retry_missing_commissions


class Command(BaseCommand):
    help = 'Record missing commissions for paid meetings'

    def add_arguments(self, parser):
        parser.add_argument('--limit', type=int, default=None)

    def handle(self, *args, **options):
        import sys
        from django.utils import timezone

        self.stdout.write(f'[{timezone.now()}] Retrying unresolved commissions...')
        result = retry_missing_commissions(limit=options['limit'])
        message = (
            f'[{timezone.now()}] {result["checked"]} meetings checked, '
            f'{result["recorded"]} commissions recorded, {result["failed"]} still unresolved'
        )
        if result["failed"]:
            self.stderr.write(message)
            sys.exit(1)
        self.stdout.write(self.style.SUCCESS(message))

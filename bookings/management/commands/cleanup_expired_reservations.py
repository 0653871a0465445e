"""
Django management command to delete expired slot reservations.

Usage:
    python manage.py cleanup_expired_reservations
    python manage.py cleanup_expired_reservations --no-email
"""

from django.core.management.base import BaseCommand
from bookings.cleanup import cleanup_expired_reservations


class Command(BaseCommand):
    help = 'Remove expired slot reservations and email their guests'

    def add_arguments(self, parser):
        parser.add_argument('--no-email', action='store_true', help='Delete without emailing guests')

    def handle(self, *args, **options):
        """Execute the cleanup."""
        import sys
        import traceback
        from django.utils import timezone

        try:
            self.stdout.write(f'[{timezone.now()}] Starting reservation cleanup...')
            result = cleanup_expired_reservations(notify_guests=not options['no_email'])
            self.stdout.write(
                self.style.SUCCESS(
                    f'[{timezone.now()}] Cleanup completed: '
                    f'{result["reservations_deleted"]} reservations deleted, '
                    f'{result["notifications_sent"]} guests notified'
                )
            )
        except Exception as e:
            error_msg = f'[{timezone.now()}] ERROR in cleanup_expired_reservations: {str(e)}'
            self.stderr.write(error_msg)
            self.stderr.write(traceback.format_exc())
            sys.exit(1)

"""
Create missing calendar events for confirmed meetings and store their ids and links.

A meeting is picked up while calendar_event_id is empty, so each meeting gets at
most one event even when the provider returns no conference link.

Usage:
    python manage.py backfill_meeting_urls
    python manage.py backfill_meeting_urls --limit 20
"""

from django.core.management.base import BaseCommand
from django.db.models import Q
from django.utils import timezone

from bookings.calendar import get_calendar_provider
from bookings.models import Meeting, PaymentStatus
from bookings.services.booking_service import calendar_event_fields, record_calendar_event


class Command(BaseCommand):
    help = 'Create calendar events for upcoming paid or free meetings that have none yet'

    def add_arguments(self, parser):
        parser.add_argument('--limit', type=int, default=100)

    def handle(self, *args, **options):
        calendar = get_calendar_provider()
        meetings = (
            Meeting.objects.filter(calendar_event_id="", start_time__gt=timezone.now())
            .filter(
                Q(stripe_payment_status__isnull=True)
                | Q(stripe_payment_status__in=[PaymentStatus.SUCCEEDED, PaymentStatus.PROCESSING])
            )
            .select_related("expert", "event_type")
            .order_by("start_time")[:options['limit']]
        )

        created = skipped = failed = 0
        for meeting in meetings:
            try:
                result = calendar.create_event(
                    meeting.expert,
                    start_time=meeting.start_time,
                    end_time=meeting.end_time,
                    event_name=meeting.event_type.title,
                    guest_email=meeting.guest_email,
                    guest_name=meeting.guest_name,
                    guest_notes=meeting.guest_notes,
                    timezone=meeting.timezone,
                    locale=meeting.locale,
                )
            except Exception as e:
                failed += 1
                self.stderr.write(f'Meeting {meeting.id}: calendar event failed: {e}')
                continue
            if result is None:
                skipped += 1
                continue
            event_id, url = calendar_event_fields(result)
            record_calendar_event(meeting.id, event_id, url)
            created += 1

        self.stdout.write(self.style.SUCCESS(
            f'{created} calendar events backfilled, {skipped} skipped, {failed} failed'
        ))

"""
Calendar provider seam. The provider class is chosen with settings.CALENDAR_PROVIDER
(dotted path). Provider internals (Google, Outlook, ...) live outside this repo.
"""
import logging

from django.conf import settings
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)


class CalendarProvider:
    """Interface every calendar backend implements."""

    def get_busy_times(self, expert, start, end):
        """Return a list of (start, end) aware datetimes the expert is busy in [start, end)."""
        raise NotImplementedError

    def create_event(self, expert, *, start_time, end_time, event_name, guest_email, guest_name,
                     guest_notes="", timezone="UTC", locale="en"):
        """
        Create the calendar event for a booking.

        Returns None when no event was created. Otherwise a dict: "event_id" is
        the provider's id for the event and "meeting_url" the conference link,
        either may be missing. Any exception counts as a failed attempt.
        """
        raise NotImplementedError


class NullCalendarProvider(CalendarProvider):
    """No external calendar: never busy, events are not created."""

    def get_busy_times(self, expert, start, end):
        return []

    def create_event(self, expert, **kwargs):
        logger.info("calendar: no provider configured, skipping event for expert=%s", expert.pk)
        return None


def get_calendar_provider():
    path = getattr(settings, "CALENDAR_PROVIDER", "") or "bookings.calendar.NullCalendarProvider"
    return import_string(path)()

"""
Schedule validation for candidate start times.

A start time is valid when:
  - it respects the expert's minimum notice,
  - the event plus its before/after buffers fits inside one availability
    window of that weekday (wall-clock in the schedule's timezone),
  - the buffered interval does not overlap any busy interval (calendar
    events and the expert's own meetings).
"""
import logging
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.utils import timezone

from bookings.models import SLOT_RELEASED_STATUSES, Meeting, Schedule

logger = logging.getLogger(__name__)


def _zone(name):
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("availability: unknown schedule timezone %s, using UTC", name)
        return ZoneInfo("UTC")


def _windows_for(schedule, day, tz):
    """Availability windows of `day` (a local date) as aware UTC-comparable intervals."""
    for window in schedule.windows.all():
        if window.weekday != day.weekday():
            continue
        start = datetime.combine(day, window.start_time, tzinfo=tz)
        end = datetime.combine(day, window.end_time, tzinfo=tz)
        yield start, end


def _overlaps(start, end, busy_start, busy_end):
    return start < busy_end and end > busy_start


def meeting_busy_times(expert_id, range_start, range_end):
    """Intervals already taken by the expert's meetings (failed and refunded ones free their slot)."""
    meetings = Meeting.objects.filter(
        expert_id=expert_id,
        start_time__lt=range_end,
        end_time__gt=range_start,
    ).exclude(stripe_payment_status__in=SLOT_RELEASED_STATUSES)
    return [(m.start_time, m.end_time) for m in meetings]


def get_valid_times(times, event_type, busy_times=(), now=None, schedule=None):
    """
    Filter candidate start times down to the ones the expert's schedule allows.

    Args:
        times: iterable of aware datetimes
        event_type: EventType (duration and expert)
        busy_times: iterable of (start, end) aware datetimes
        now: reference time (defaults to timezone.now())
        schedule: optional preloaded Schedule

    Returns:
        list of the valid datetimes in input order
    """
    if schedule is None:
        schedule = Schedule.objects.filter(expert_id=event_type.expert_id).prefetch_related("windows").first()
    if schedule is None:
        return []

    now = now or timezone.now()
    tz = _zone(schedule.timezone)
    earliest = now + timedelta(minutes=schedule.minimum_notice_minutes)
    before = timedelta(minutes=schedule.before_event_buffer_minutes)
    after = timedelta(minutes=schedule.after_event_buffer_minutes)
    duration = timedelta(minutes=event_type.duration_minutes)
    busy = list(busy_times)

    valid = []
    for start in times:
        if start < earliest:
            continue
        padded_start = start - before
        padded_end = start + duration + after
        if any(_overlaps(padded_start, padded_end, b_start, b_end) for b_start, b_end in busy):
            continue
        local_day = start.astimezone(tz).date()
        if any(w_start <= padded_start and padded_end <= w_end for w_start, w_end in _windows_for(schedule, local_day, tz)):
            valid.append(start)
    return valid


def is_time_slot_valid(event_type, start_time, busy_times=(), now=None):
    """True when `start_time` is bookable for `event_type` given the busy intervals."""
    end_time = start_time + timedelta(minutes=event_type.duration_minutes)
    busy = list(busy_times)
    busy.extend(meeting_busy_times(event_type.expert_id, start_time - timedelta(days=1), end_time + timedelta(days=1)))
    return bool(get_valid_times([start_time], event_type, busy, now=now))

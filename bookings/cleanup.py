"""
Slot reservation cleanup.

Expiry is already enforced lazily on every read; this only keeps the table small
and tells guests their hold lapsed.

CLEANUP RULES:
1. Reservations with expires_at <= now are deleted
2. Each guest of a deleted reservation gets one "reservation expired" email
"""
import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.utils import timezone

from bookings.models import SlotReservation
from general.email_service import EmailService

logger = logging.getLogger(__name__)


def _guest_name_from_email(email):
    local_part = (email or "").split("@")[0]
    return local_part.replace(".", " ").replace("_", " ").replace("-", " ").title() or "there"


def _expiry_payload(reservation):
    expert = reservation.expert
    schedule = getattr(expert, "schedule", None)
    tz_name = schedule.timezone if schedule else "UTC"
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        tz = ZoneInfo("UTC")
    local_start = reservation.start_time.astimezone(tz)
    return {
        "guest_name": _guest_name_from_email(reservation.guest_email),
        "expert_name": expert.full_name or "your expert",
        "event_title": reservation.event_type.title if reservation.event_type else "your appointment",
        "appointment_date": local_start.strftime("%A, %B %d, %Y"),
        "appointment_time": local_start.strftime("%H:%M"),
        "timezone": str(tz),
    }


def cleanup_expired_reservations(now=None, notify_guests=True):
    """
    Delete expired reservations, emailing each guest first.
    Is idempotent (safe to run multiple times).

    Returns:
        dict: {'reservations_deleted': int, 'notifications_sent': int}
    """
    now = now or timezone.now()
    expired = list(
        SlotReservation.objects.filter(expires_at__lte=now)
        .select_related("expert", "event_type", "expert__schedule")
    )
    logger.info("cleanup_expired_reservations: %s expired reservations at %s", len(expired), now)

    notifications_sent = 0
    if notify_guests:
        for reservation in expired:
            try:
                sent = EmailService.send_reservation_expired_email(
                    reservation.guest_email,
                    _expiry_payload(reservation),
                    fail_silently=True,
                )
            except Exception as e:
                logger.warning("cleanup_expired_reservations: email failed reservation=%s: %s", reservation.id, e)
                sent = False
            if sent:
                notifications_sent += 1

    # Re-check expiry so a hold extended meanwhile survives.
    deleted, _ = SlotReservation.objects.filter(
        pk__in=[r.pk for r in expired],
        expires_at__lte=now,
    ).delete()

    return {
        "reservations_deleted": deleted,
        "notifications_sent": notifications_sent,
    }

"""
Booking orchestrator.

confirm_booking() runs once per payment confirmation (or free booking) and may
be called repeatedly for the same payment. Guards run in order and each returns
a BookingResult without writing anything:

    0. malformed input                        -> VALIDATION_ERROR
    1. meeting already exists for this payment -> DUPLICATE_SUPPRESSED (success)
    2. slot booked by another guest           -> SLOT_ALREADY_BOOKED
    3. slot held by another guest             -> SLOT_TEMPORARILY_RESERVED
    4. event type missing/inactive/foreign    -> EVENT_NOT_FOUND
    5. outside schedule or calendar busy      -> INVALID_TIME_SLOT
                                                 (skipped for fresh paid checkouts)

Then the calendar event is attempted (best effort), the meeting is inserted and
the expert notification is queued with transaction.on_commit. The Meeting
unique constraints have the final word when two calls race past the guards.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from accounts.directory import DirectoryLookupError, get_organization_for_user
from bookings.availability import is_time_slot_valid
from bookings.calendar import get_calendar_provider
from bookings.models import (
    SLOT_RELEASED_STATUSES,
    UNTRACKED_CALENDAR_EVENT,
    EventType,
    Meeting,
    PaymentStatus,
)
from bookings.services.reservation_service import (
    SLOT_ALREADY_BOOKED,
    SLOT_TEMPORARILY_RESERVED,
    find_conflicting_reservation,
    find_guest_reservation,
    release_slot_reservations,
)

logger = logging.getLogger(__name__)

CREATED = "CREATED"
DUPLICATE_SUPPRESSED = "DUPLICATE_SUPPRESSED"
VALIDATION_ERROR = "VALIDATION_ERROR"
EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
INVALID_TIME_SLOT = "INVALID_TIME_SLOT"
CREATION_ERROR = "CREATION_ERROR"

SUCCESS_CODES = (CREATED, DUPLICATE_SUPPRESSED)

MESSAGES = {
    CREATED: "Your booking is confirmed.",
    DUPLICATE_SUPPRESSED: "Your booking is confirmed.",
    SLOT_ALREADY_BOOKED: "This time slot has already been booked. Please choose a different time.",
    SLOT_TEMPORARILY_RESERVED: "This time slot is temporarily reserved by another guest. Please choose a different time.",
    EVENT_NOT_FOUND: "This event is no longer available.",
    INVALID_TIME_SLOT: "This time is no longer available in the expert's schedule. Please choose a different time.",
    CREATION_ERROR: "We could not create your booking. Please try again.",
}

# Payment statuses for which a calendar event is created. None is a free booking.
CALENDAR_EVENT_STATUSES = (None, PaymentStatus.SUCCEEDED, PaymentStatus.PROCESSING)

# Allowed payment-status corrections on an existing meeting.
STATUS_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.SUCCEEDED, PaymentStatus.FAILED},
    PaymentStatus.PROCESSING: {PaymentStatus.SUCCEEDED, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.SUCCEEDED},
    PaymentStatus.SUCCEEDED: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}


@dataclass
class BookingDetails:
    """Everything the orchestrator needs about the booking besides the payment reference."""
    event_type_id: str
    expert_id: int
    guest_email: str
    guest_name: str
    start_time: datetime
    timezone: str = "UTC"
    guest_notes: str = ""
    locale: str = "en"
    payment_status: Optional[str] = None
    stripe_session_id: Optional[str] = None
    amount_cents: Optional[int] = None
    application_fee_cents: Optional[int] = None
    checkout_started_at: Optional[datetime] = None

    def __post_init__(self):
        self.guest_email = (self.guest_email or "").strip().lower()
        self.guest_name = (self.guest_name or "").strip()

    @classmethod
    def from_metadata(cls, metadata, **overrides):
        """
        Build details from Stripe metadata (all values are strings).
        Raises ValueError for missing or unparsable fields.
        """
        metadata = metadata or {}
        try:
            start_time = parse_datetime(metadata.get("start_time") or "")
            checkout_started_at = parse_datetime(metadata["checkout_started_at"]) if metadata.get("checkout_started_at") else None
            values = {
                "event_type_id": metadata["event_type_id"],
                "expert_id": int(metadata["expert_id"]),
                "guest_email": metadata.get("guest_email", ""),
                "guest_name": metadata.get("guest_name", ""),
                "start_time": start_time,
                "timezone": metadata.get("timezone") or "UTC",
                "guest_notes": metadata.get("guest_notes", ""),
                "locale": metadata.get("locale") or "en",
                "amount_cents": int(metadata["amount_cents"]) if metadata.get("amount_cents") else None,
                "application_fee_cents": int(metadata["application_fee_cents"]) if metadata.get("application_fee_cents") else None,
                "checkout_started_at": checkout_started_at,
            }
        except (KeyError, TypeError) as e:
            raise ValueError(f"Booking metadata is missing {e}") from e
        if start_time is None:
            raise ValueError("Booking metadata has no valid start_time")
        values.update(overrides)
        return cls(**values)


@dataclass
class BookingResult:
    code: str
    meeting: Optional[Meeting] = None
    message: str = ""

    @property
    def ok(self):
        return self.code in SUCCESS_CODES


def _result(code, meeting=None, message=None):
    return BookingResult(code=code, meeting=meeting, message=message or MESSAGES.get(code, ""))


def _validation_errors(payment_reference, details):
    errors = []
    if not details.guest_email or "@" not in details.guest_email:
        errors.append("guest_email is invalid")
    if not details.guest_name:
        errors.append("guest_name is required")
    if not details.expert_id:
        errors.append("expert_id is required")
    try:
        uuid.UUID(str(details.event_type_id))
    except (TypeError, ValueError, AttributeError):
        errors.append("event_type_id is invalid")
    if not isinstance(details.start_time, datetime) or timezone.is_naive(details.start_time):
        errors.append("start_time must be a timezone-aware datetime")
    if details.payment_status is not None:
        if details.payment_status not in PaymentStatus.values or details.payment_status == PaymentStatus.REFUNDED:
            errors.append(f"payment_status '{details.payment_status}' is not valid for a new booking")
        if not payment_reference and not details.stripe_session_id:
            errors.append("paid bookings need a payment reference or checkout session")
    for field in ("amount_cents", "application_fee_cents"):
        value = getattr(details, field)
        if value is not None and value < 0:
            errors.append(f"{field} must not be negative")
    return errors


def _find_replay(payment_reference, details):
    """Existing meeting for the same payment, checkout session, or (event type, start, guest)."""
    q = Q(
        event_type_id=details.event_type_id,
        start_time=details.start_time,
        guest_email=details.guest_email,
    ) & ~Q(stripe_payment_status__in=SLOT_RELEASED_STATUSES)
    if payment_reference:
        q |= Q(stripe_payment_intent_id=payment_reference)
    if details.stripe_session_id:
        q |= Q(stripe_session_id=details.stripe_session_id)
    return Meeting.objects.filter(q).order_by("created_at").first()


def _find_foreign_booking(details):
    return (
        Meeting.objects.filter(expert_id=details.expert_id, start_time=details.start_time)
        .exclude(stripe_payment_status__in=SLOT_RELEASED_STATUSES)
        .exclude(guest_email=details.guest_email)
        .first()
    )


def _apply_replay_correction(meeting, payment_reference, payment_status):
    """A redelivered signal may carry a newer payment status or the missing intent id."""
    update_fields = []
    if payment_status and payment_status in STATUS_TRANSITIONS.get(meeting.stripe_payment_status, set()) \
            and payment_status != PaymentStatus.REFUNDED:
        logger.info(
            "confirm_booking: correcting meeting=%s status %s -> %s",
            meeting.id, meeting.stripe_payment_status, payment_status,
        )
        meeting.stripe_payment_status = payment_status
        update_fields.append("stripe_payment_status")
    if payment_reference and not meeting.stripe_payment_intent_id:
        meeting.stripe_payment_intent_id = payment_reference
        update_fields.append("stripe_payment_intent_id")
    if update_fields:
        _save_meeting_update(meeting, update_fields)
    return meeting


def _save_meeting_update(meeting, update_fields):
    """
    Save a correction in its own savepoint. Reviving a failed meeting whose slot
    was booked again violates unique_active_meeting_per_slot; the row is then
    left as stored and False is returned.
    """
    try:
        with transaction.atomic():
            meeting.save(update_fields=update_fields)
    except IntegrityError:
        logger.error(
            "payment status: meeting=%s correction %s rejected, slot expert=%s start=%s is booked again "
            "or the payment reference is taken; refund manually",
            meeting.id, update_fields, meeting.expert_id, meeting.start_time,
        )
        meeting.refresh_from_db()
        return False
    return True


def _checkout_started_at(details):
    if details.checkout_started_at:
        return details.checkout_started_at
    reservation = find_guest_reservation(details.expert_id, details.start_time, details.guest_email)
    return reservation.created_at if reservation else None


def _paid_bypass_applies(details, now):
    """
    Captured payments are honored even if the schedule changed since checkout,
    as long as checkout began within PAID_BOOKING_BYPASS_MAX_AGE_HOURS.
    """
    if details.payment_status != PaymentStatus.SUCCEEDED or not details.stripe_session_id:
        return False
    max_age_hours = getattr(settings, "PAID_BOOKING_BYPASS_MAX_AGE_HOURS", 0)
    if not max_age_hours:
        return True
    started = _checkout_started_at(details)
    if started is None:
        return True
    if now - started > timedelta(hours=max_age_hours):
        logger.warning(
            "confirm_booking: checkout session=%s began %s, older than %sh; validating schedule",
            details.stripe_session_id, started, max_age_hours,
        )
        return False
    return True


def _busy_times(calendar, expert, start_time, end_time):
    try:
        return calendar.get_busy_times(expert, start_time - timedelta(days=1), end_time + timedelta(days=1))
    except Exception as e:
        logger.warning("confirm_booking: calendar busy lookup failed expert=%s: %s", expert.pk, e)
        return []


def calendar_event_fields(result):
    """(calendar_event_id, meeting_url) to store for a create_event() result."""
    if result is None:
        return "", ""
    return result.get("event_id") or UNTRACKED_CALENDAR_EVENT, result.get("meeting_url") or ""


def _create_calendar_event(calendar, event_type, details, end_time):
    try:
        result = calendar.create_event(
            event_type.expert,
            start_time=details.start_time,
            end_time=end_time,
            event_name=event_type.title,
            guest_email=details.guest_email,
            guest_name=details.guest_name,
            guest_notes=details.guest_notes,
            timezone=details.timezone,
            locale=details.locale,
        )
    except Exception as e:
        logger.warning(
            "confirm_booking: calendar event failed expert=%s start=%s, storing meeting without event: %s",
            details.expert_id, details.start_time, e,
        )
        return "", ""
    return calendar_event_fields(result)


def _organization_id_for(expert_id):
    try:
        return get_organization_for_user(expert_id)
    except DirectoryLookupError:
        return None


def _zone(name):
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def _expert_timezone(meeting):
    schedule = getattr(meeting.expert, "schedule", None)
    return _zone(schedule.timezone if schedule else meeting.timezone)


def notify_expert_of_booking(meeting_id):
    """Post-commit hook. Never raises."""
    from general.notifications import notify

    try:
        meeting = Meeting.objects.select_related("expert", "event_type").get(pk=meeting_id)
        tz = _expert_timezone(meeting)
        local_start = meeting.start_time.astimezone(tz)
        notify(
            meeting.expert_id,
            "appointment-confirmation",
            {
                "meeting_id": str(meeting.id),
                "event_title": meeting.event_type.title,
                "client_name": meeting.guest_name,
                "client_email": meeting.guest_email,
                "client_notes": meeting.guest_notes,
                "appointment_date": local_start.strftime("%A, %B %d, %Y"),
                "appointment_time": local_start.strftime("%H:%M"),
                "timezone": str(tz),
                "duration_minutes": meeting.event_type.duration_minutes,
                "meeting_url": meeting.meeting_url,
            },
        )
    except Exception as e:
        logger.warning("confirm_booking: expert notification failed meeting=%s: %s", meeting_id, e)


def confirm_booking(payment_reference, details, *, calendar=None, now=None):
    """
    Create the meeting for a confirmed payment (or a free booking).

    Args:
        payment_reference: Stripe PaymentIntent id, or None for free bookings
        details: BookingDetails
        calendar: CalendarProvider (defaults to settings.CALENDAR_PROVIDER)
        now: reference time for notice and staleness checks

    Returns:
        BookingResult; result.ok is True for CREATED and DUPLICATE_SUPPRESSED.
    """
    errors = _validation_errors(payment_reference, details)
    if errors:
        logger.info("confirm_booking: validation failed %s", errors)
        return _result(VALIDATION_ERROR, message="Invalid booking request: " + "; ".join(errors) + ".")

    try:
        return _confirm(payment_reference, details, calendar, now or timezone.now())
    except Exception:
        logger.exception("confirm_booking: unexpected failure payment_reference=%s", payment_reference)
        return _result(CREATION_ERROR)


def _confirm(payment_reference, details, calendar, now):
    existing = _find_replay(payment_reference, details)
    if existing is not None:
        _apply_replay_correction(existing, payment_reference, details.payment_status)
        logger.info("confirm_booking: duplicate suppressed meeting=%s payment_reference=%s", existing.id, payment_reference)
        return _result(DUPLICATE_SUPPRESSED, existing)

    if _find_foreign_booking(details) is not None:
        logger.info("confirm_booking: slot already booked expert=%s start=%s", details.expert_id, details.start_time)
        return _result(SLOT_ALREADY_BOOKED)

    if find_conflicting_reservation(details.expert_id, details.start_time, details.guest_email, now) is not None:
        logger.info("confirm_booking: slot reserved by another guest expert=%s start=%s", details.expert_id, details.start_time)
        return _result(SLOT_TEMPORARILY_RESERVED)

    event_type = (
        EventType.objects.select_related("expert")
        .filter(pk=details.event_type_id, expert_id=details.expert_id, is_active=True)
        .first()
    )
    if event_type is None:
        return _result(EVENT_NOT_FOUND)

    calendar = calendar or get_calendar_provider()
    end_time = details.start_time + timedelta(minutes=event_type.duration_minutes)

    if _paid_bypass_applies(details, now):
        logger.info("confirm_booking: paid checkout session=%s, skipping schedule validation", details.stripe_session_id)
    else:
        busy = _busy_times(calendar, event_type.expert, details.start_time, end_time)
        if not is_time_slot_valid(event_type, details.start_time, busy, now=now):
            return _result(INVALID_TIME_SLOT)

    calendar_event_id, meeting_url = "", ""
    if details.payment_status in CALENDAR_EVENT_STATUSES:
        calendar_event_id, meeting_url = _create_calendar_event(calendar, event_type, details, end_time)

    organization_id = _organization_id_for(details.expert_id)

    try:
        with transaction.atomic():
            meeting = Meeting.objects.create(
                expert_id=details.expert_id,
                event_type=event_type,
                organization_id=organization_id,
                guest_email=details.guest_email,
                guest_name=details.guest_name,
                guest_notes=details.guest_notes or "",
                start_time=details.start_time,
                end_time=end_time,
                timezone=details.timezone or "UTC",
                locale=details.locale or "en",
                stripe_payment_intent_id=payment_reference or None,
                stripe_session_id=details.stripe_session_id or None,
                stripe_payment_status=details.payment_status,
                amount_cents=details.amount_cents,
                application_fee_cents=details.application_fee_cents,
                calendar_event_id=calendar_event_id,
                meeting_url=meeting_url,
            )
            release_slot_reservations(details.expert_id, details.start_time)
            meeting_id = meeting.pk
            transaction.on_commit(lambda: notify_expert_of_booking(meeting_id))
    except IntegrityError:
        existing = _find_replay(payment_reference, details)
        if existing is not None:
            logger.info("confirm_booking: lost insert race to replay meeting=%s", existing.id)
            return _result(DUPLICATE_SUPPRESSED, existing)
        logger.info("confirm_booking: lost insert race for slot expert=%s start=%s", details.expert_id, details.start_time)
        return _result(SLOT_ALREADY_BOOKED)

    logger.info("confirm_booking: created meeting=%s expert=%s start=%s", meeting.id, details.expert_id, details.start_time)
    return _result(CREATED, meeting)


def find_meeting_by_payment_reference(payment_reference):
    if not payment_reference:
        return None
    return Meeting.objects.filter(stripe_payment_intent_id=payment_reference).first()


def _transition_payment_status(meeting, status):
    """Apply one allowed status change. Returns True when the row changed."""
    previous = meeting.stripe_payment_status
    if previous == status:
        return False
    if status not in STATUS_TRANSITIONS.get(previous, set()):
        logger.warning("update_payment_status: ignoring %s -> %s for meeting=%s", previous, status, meeting.id)
        return False
    meeting.stripe_payment_status = status
    if not _save_meeting_update(meeting, ["stripe_payment_status"]):
        return False
    logger.info("update_payment_status: meeting=%s %s -> %s", meeting.id, previous, status)
    return True


def update_payment_status(payment_reference, status):
    """
    Apply a payment-status correction from a payment webhook.
    Returns the meeting (updated or not), or None if no meeting has this reference.
    Use mark_meeting_payment_failed for failures so the guest is told.
    """
    meeting = find_meeting_by_payment_reference(payment_reference)
    if meeting is None:
        return None
    _transition_payment_status(meeting, status)
    return meeting


def mark_meeting_payment_failed(payment_reference):
    """
    The payment for a meeting failed: the slot is released and, once the
    transaction commits, the guest is emailed that the booking was cancelled.
    Redelivered failures do not email again.
    """
    meeting = find_meeting_by_payment_reference(payment_reference)
    if meeting is None:
        return None
    if _transition_payment_status(meeting, PaymentStatus.FAILED):
        meeting_id = meeting.pk
        transaction.on_commit(lambda: notify_guest_of_payment_failure(meeting_id))
    return meeting


def notify_guest_of_payment_failure(meeting_id):
    """Post-commit hook. Never raises."""
    from general.notifications import notify_guest

    try:
        meeting = Meeting.objects.select_related("expert", "event_type").get(pk=meeting_id)
        tz = _zone(meeting.timezone)
        local_start = meeting.start_time.astimezone(tz)
        local_end = meeting.end_time.astimezone(tz)
        notify_guest(
            meeting.guest_email,
            "payment-failed",
            {
                "meeting_id": str(meeting.id),
                "guest_name": meeting.guest_name,
                "expert_name": meeting.expert.full_name or meeting.expert.email,
                "event_title": meeting.event_type.title,
                "appointment_date": local_start.strftime("%A, %B %d, %Y"),
                "appointment_time": f"{local_start:%H:%M} - {local_end:%H:%M}",
                "timezone": str(tz),
                "duration_minutes": meeting.event_type.duration_minutes,
            },
        )
    except Exception as e:
        logger.warning("mark_meeting_payment_failed: guest notification failed meeting=%s: %s", meeting_id, e)


def mark_meeting_refunded(payment_reference):
    """Terminal status; frees the slot for new bookings."""
    meeting = find_meeting_by_payment_reference(payment_reference)
    if meeting is None:
        return None
    if meeting.stripe_payment_status != PaymentStatus.REFUNDED:
        meeting.stripe_payment_status = PaymentStatus.REFUNDED
        meeting.save(update_fields=["stripe_payment_status"])
        logger.info("mark_meeting_refunded: meeting=%s refunded", meeting.id)
    return meeting


def record_calendar_event(meeting_id, calendar_event_id, meeting_url=""):
    """Store the calendar event created after the booking by backfill_meeting_urls."""
    meeting = Meeting.objects.get(pk=meeting_id)
    update_fields = []
    if calendar_event_id and meeting.calendar_event_id != calendar_event_id:
        meeting.calendar_event_id = calendar_event_id
        update_fields.append("calendar_event_id")
    if meeting_url and meeting.meeting_url != meeting_url:
        meeting.meeting_url = meeting_url
        update_fields.append("meeting_url")
    if update_fields:
        meeting.save(update_fields=update_fields)
    return meeting

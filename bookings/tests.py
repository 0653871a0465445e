import json
import uuid
from datetime import datetime, time, timedelta, timezone as dt_timezone
from io import StringIO
from unittest.mock import patch

from django.core import mail
from django.core.management import call_command
from django.db import IntegrityError, transaction
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone

from accounts.models import CustomUser, Organization, OrganizationMembership
from bookings.availability import get_valid_times, is_time_slot_valid
from bookings.calendar import CalendarProvider, NullCalendarProvider
from bookings.cleanup import cleanup_expired_reservations
from bookings.models import AvailabilityWindow, EventType, Meeting, Schedule, SlotReservation
from bookings.services import booking_service
from bookings.services.booking_service import (
    CREATED,
    CREATION_ERROR,
    DUPLICATE_SUPPRESSED,
    EVENT_NOT_FOUND,
    INVALID_TIME_SLOT,
    VALIDATION_ERROR,
    BookingDetails,
    confirm_booking,
    mark_meeting_payment_failed,
    mark_meeting_refunded,
    record_calendar_event,
    update_payment_status,
)
from bookings.services.reservation_service import (
    SLOT_ALREADY_BOOKED,
    SLOT_TEMPORARILY_RESERVED,
    ReservationConflict,
    find_conflicting_reservation,
    release_reservation,
    reserve_slot,
)
from general.exceptions import ImmutableRecordError

# Tuesday; the test slot is the following Monday at 10:00 UTC.
NOW = datetime(2030, 1, 1, 8, 0, tzinfo=dt_timezone.utc)
SLOT = datetime(2030, 1, 7, 10, 0, tzinfo=dt_timezone.utc)


def make_expert(email="expert@example.com", role="expert_community", with_org=True):
    expert = CustomUser.objects.create_user(email=email, password="pass12345", role=role, first_name="Eva", last_name="Expert")
    organization = None
    if with_org:
        organization = Organization.objects.create(name=f"{email} practice")
        OrganizationMembership.objects.create(user=expert, organization=organization, role="owner")
    schedule = Schedule.objects.create(expert=expert, timezone="UTC")
    AvailabilityWindow.objects.create(schedule=schedule, weekday=0, start_time=time(9, 0), end_time=time(17, 0))
    event_type = EventType.objects.create(
        expert=expert,
        title="Consultation",
        slug="consultation",
        duration_minutes=50,
        price_cents=10000,
    )
    return expert, organization, event_type


def make_details(event_type, email="guest@example.com", start=SLOT, **kwargs):
    values = {
        "event_type_id": str(event_type.pk),
        "expert_id": event_type.expert_id,
        "guest_email": email,
        "guest_name": "Gina Guest",
        "start_time": start,
        "payment_status": "succeeded",
        "stripe_session_id": None,
        "amount_cents": 10000,
    }
    values.update(kwargs)
    return BookingDetails(**values)


class FakeCalendar(CalendarProvider):
    def __init__(self, busy=None, meeting_url="https://meet.example.com/abc", fail=False, event_ids=True):
        self.busy = busy or []
        self.meeting_url = meeting_url
        self.fail = fail
        self.event_ids = event_ids
        self.created = []

    def get_busy_times(self, expert, start, end):
        return list(self.busy)

    def create_event(self, expert, **kwargs):
        if self.fail:
            raise RuntimeError("calendar down")
        self.created.append(kwargs)
        result = {"meeting_url": self.meeting_url}
        if self.event_ids:
            result["event_id"] = f"evt_{len(self.created)}"
        return result


class MeetingLedgerTests(TestCase):
    def setUp(self):
        self.expert, self.organization, self.event_type = make_expert()

    def _meeting(self, email="guest@example.com", status="succeeded", pi="pi_1"):
        return Meeting.objects.create(
            expert=self.expert,
            event_type=self.event_type,
            guest_email=email,
            guest_name="Guest",
            start_time=SLOT,
            end_time=SLOT + timedelta(minutes=50),
            stripe_payment_intent_id=pi,
            stripe_payment_status=status,
        )

    def test_second_active_meeting_on_slot_is_rejected_by_database(self):
        self._meeting()
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                self._meeting(email="other@example.com", pi="pi_2")

    def test_refunded_meeting_frees_the_slot(self):
        self._meeting(status="refunded")
        self._meeting(email="other@example.com", pi="pi_2")
        self.assertEqual(Meeting.objects.filter(expert=self.expert, start_time=SLOT).count(), 2)

    def test_failed_meeting_frees_the_slot(self):
        self._meeting(status="failed")
        self._meeting(email="other@example.com", pi="pi_2")
        self.assertEqual(Meeting.objects.filter(expert=self.expert, start_time=SLOT).count(), 2)

    def test_free_meetings_also_hold_the_slot(self):
        self._meeting(status=None, pi=None)
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                self._meeting(email="other@example.com", status=None, pi=None)

    def test_only_corrections_may_be_saved(self):
        meeting = self._meeting()
        meeting.guest_name = "Someone else"
        with self.assertRaises(ImmutableRecordError):
            meeting.save()
        with self.assertRaises(ImmutableRecordError):
            meeting.save(update_fields=["guest_name"])
        meeting.meeting_url = "https://meet.example.com/x"
        meeting.save(update_fields=["meeting_url"])

    def test_payment_reference_cannot_be_overwritten(self):
        meeting = self._meeting(pi="pi_original")
        meeting.stripe_payment_intent_id = "pi_other"
        with self.assertRaises(ImmutableRecordError):
            meeting.save(update_fields=["stripe_payment_intent_id"])

    def test_meetings_are_never_deleted(self):
        meeting = self._meeting()
        with self.assertRaises(ImmutableRecordError):
            meeting.delete()


class ReservationServiceTests(TestCase):
    def setUp(self):
        self.expert, _, self.event_type = make_expert()
        self.ttl = timedelta(minutes=15)

    def test_same_guest_extends_and_keeps_id(self):
        first = reserve_slot(self.expert.pk, SLOT, "a@example.com", self.ttl, now=NOW)
        second = reserve_slot(self.expert.pk, SLOT, "A@Example.com", self.ttl, now=NOW + timedelta(minutes=10))
        self.assertEqual(first, second)
        reservation = SlotReservation.objects.get(pk=first)
        self.assertEqual(reservation.expires_at, NOW + timedelta(minutes=25))

    def test_other_guest_blocked_until_expiry(self):
        reserve_slot(self.expert.pk, SLOT, "a@example.com", self.ttl, now=NOW)
        with self.assertRaises(ReservationConflict) as ctx:
            reserve_slot(self.expert.pk, SLOT, "b@example.com", self.ttl, now=NOW + timedelta(minutes=5))
        self.assertEqual(ctx.exception.code, SLOT_TEMPORARILY_RESERVED)

        reservation_id = reserve_slot(self.expert.pk, SLOT, "b@example.com", self.ttl, now=NOW + self.ttl + timedelta(seconds=1))
        reservation = SlotReservation.objects.get(pk=reservation_id)
        self.assertEqual(reservation.guest_email, "b@example.com")
        self.assertEqual(SlotReservation.objects.filter(expert=self.expert, start_time=SLOT).count(), 1)

    def test_booked_slot_cannot_be_reserved_by_other_guest(self):
        Meeting.objects.create(
            expert=self.expert, event_type=self.event_type, guest_email="a@example.com", guest_name="A",
            start_time=SLOT, end_time=SLOT + timedelta(minutes=50), stripe_payment_status="succeeded",
        )
        with self.assertRaises(ReservationConflict) as ctx:
            reserve_slot(self.expert.pk, SLOT, "b@example.com", self.ttl, now=NOW)
        self.assertEqual(ctx.exception.code, SLOT_ALREADY_BOOKED)

    def test_concurrent_insert_by_other_guest_is_a_conflict(self):
        SlotReservation.objects.create(
            expert=self.expert, guest_email="a@example.com", start_time=SLOT, expires_at=NOW + self.ttl,
        )
        with patch("bookings.services.reservation_service.SlotReservation.objects.select_for_update") as locked:
            locked.return_value.filter.return_value.first.return_value = None
            with self.assertRaises(ReservationConflict):
                reserve_slot(self.expert.pk, SLOT, "b@example.com", self.ttl, now=NOW)

    def test_rejects_non_positive_ttl(self):
        with self.assertRaises(ValueError):
            reserve_slot(self.expert.pk, SLOT, "a@example.com", timedelta(0), now=NOW)

    def test_release_is_idempotent(self):
        reservation_id = reserve_slot(self.expert.pk, SLOT, "a@example.com", self.ttl, now=NOW)
        self.assertTrue(release_reservation(reservation_id))
        self.assertFalse(release_reservation(reservation_id))
        self.assertFalse(release_reservation("not-a-uuid"))
        self.assertFalse(release_reservation(None))

    def test_conflict_lookup_ignores_own_and_expired_holds(self):
        reserve_slot(self.expert.pk, SLOT, "a@example.com", self.ttl, now=NOW)
        self.assertIsNone(find_conflicting_reservation(self.expert.pk, SLOT, "a@example.com", NOW))
        self.assertIsNotNone(find_conflicting_reservation(self.expert.pk, SLOT, "b@example.com", NOW))
        self.assertIsNone(find_conflicting_reservation(self.expert.pk, SLOT, "b@example.com", NOW + timedelta(hours=1)))


class AvailabilityTests(TestCase):
    def setUp(self):
        self.expert, _, self.event_type = make_expert()

    def test_slot_inside_window_is_valid(self):
        self.assertTrue(is_time_slot_valid(self.event_type, SLOT, now=NOW))

    def test_minimum_notice(self):
        self.assertFalse(is_time_slot_valid(self.event_type, SLOT, now=SLOT - timedelta(hours=23)))

    def test_buffers_must_fit_inside_window(self):
        # 09:00 start needs 08:45 with a 15 minute before-buffer
        self.assertFalse(is_time_slot_valid(self.event_type, SLOT.replace(hour=9), now=NOW))
        self.assertTrue(is_time_slot_valid(self.event_type, SLOT.replace(hour=9, minute=15), now=NOW))

    def test_other_weekday_is_invalid(self):
        self.assertFalse(is_time_slot_valid(self.event_type, SLOT + timedelta(days=1), now=NOW))

    def test_busy_time_with_buffer_overlap(self):
        busy = [(SLOT + timedelta(minutes=55), SLOT + timedelta(minutes=90))]
        self.assertFalse(is_time_slot_valid(self.event_type, SLOT, busy, now=NOW))

    def test_window_is_read_in_schedule_timezone(self):
        schedule = self.expert.schedule
        schedule.timezone = "Europe/Lisbon"
        schedule.save()
        # Lisbon is UTC+0 in January; New York is UTC-5
        self.assertTrue(is_time_slot_valid(self.event_type, SLOT, now=NOW))
        schedule.timezone = "America/New_York"
        schedule.save()
        self.assertFalse(get_valid_times([SLOT], self.event_type, now=NOW))
        self.assertTrue(get_valid_times([SLOT + timedelta(hours=5)], self.event_type, now=NOW))

    def test_no_schedule_means_no_times(self):
        Schedule.objects.filter(expert=self.expert).delete()
        self.assertEqual(get_valid_times([SLOT], self.event_type, now=NOW), [])


class ConfirmBookingTests(TestCase):
    def setUp(self):
        self.expert, self.organization, self.event_type = make_expert()
        self.calendar = FakeCalendar()

    def confirm(self, pi, details, **kwargs):
        kwargs.setdefault("calendar", self.calendar)
        kwargs.setdefault("now", NOW)
        return confirm_booking(pi, details, **kwargs)

    def test_creates_meeting_and_supersedes_reservation(self):
        reserve_slot(self.expert.pk, SLOT, "guest@example.com", timedelta(minutes=15), now=NOW)
        with self.captureOnCommitCallbacks() as callbacks:
            result = self.confirm("pi_1", make_details(self.event_type))
        self.assertEqual(result.code, CREATED)
        self.assertTrue(result.ok)
        meeting = result.meeting
        self.assertEqual(meeting.end_time, SLOT + timedelta(minutes=50))
        self.assertEqual(meeting.organization_id, self.organization.pk)
        self.assertEqual(meeting.meeting_url, "https://meet.example.com/abc")
        self.assertEqual(meeting.calendar_event_id, "evt_1")
        self.assertFalse(SlotReservation.objects.filter(expert=self.expert, start_time=SLOT).exists())
        self.assertEqual(len(callbacks), 1)

    def test_same_payment_twice_returns_same_meeting(self):
        first = self.confirm("pi_123", make_details(self.event_type))
        second = self.confirm("pi_123", make_details(self.event_type))
        self.assertEqual(second.code, DUPLICATE_SUPPRESSED)
        self.assertTrue(second.ok)
        self.assertEqual(first.meeting.pk, second.meeting.pk)
        self.assertEqual(Meeting.objects.count(), 1)

    def test_replay_by_guest_and_slot_without_reference(self):
        self.confirm(None, make_details(self.event_type, payment_status=None))
        again = self.confirm(None, make_details(self.event_type, payment_status=None))
        self.assertEqual(again.code, DUPLICATE_SUPPRESSED)

    def test_replay_applies_newer_payment_status(self):
        self.confirm("pi_1", make_details(self.event_type, payment_status="pending", stripe_session_id="cs_1"))
        result = self.confirm("pi_1", make_details(self.event_type, payment_status="succeeded", stripe_session_id="cs_1"))
        self.assertEqual(result.code, DUPLICATE_SUPPRESSED)
        result.meeting.refresh_from_db()
        self.assertEqual(result.meeting.stripe_payment_status, "succeeded")

    def test_foreign_booking_blocks_slot(self):
        self.confirm("pi_1", make_details(self.event_type))
        result = self.confirm("pi_2", make_details(self.event_type, email="other@example.com"))
        self.assertEqual(result.code, SLOT_ALREADY_BOOKED)
        self.assertFalse(result.ok)
        self.assertIn("different time", result.message)
        self.assertEqual(Meeting.objects.count(), 1)

    def test_live_reservation_of_other_guest_blocks(self):
        reserve_slot(self.expert.pk, SLOT, "holder@example.com", timedelta(minutes=15), now=NOW)
        result = self.confirm("pi_1", make_details(self.event_type))
        self.assertEqual(result.code, SLOT_TEMPORARILY_RESERVED)
        self.assertFalse(Meeting.objects.exists())

    def test_own_expired_reservation_does_not_block(self):
        reserve_slot(self.expert.pk, SLOT, "guest@example.com", timedelta(minutes=15), now=NOW - timedelta(hours=2))
        result = self.confirm("pi_1", make_details(self.event_type))
        self.assertEqual(result.code, CREATED)

    def test_inactive_or_foreign_event_type(self):
        self.event_type.is_active = False
        self.event_type.save()
        self.assertEqual(self.confirm("pi_1", make_details(self.event_type)).code, EVENT_NOT_FOUND)

        other, _, _ = make_expert(email="other-expert@example.com")
        details = make_details(self.event_type, expert_id=other.pk)
        self.assertEqual(self.confirm("pi_2", details).code, EVENT_NOT_FOUND)

    def test_validation_errors(self):
        result = self.confirm("pi_1", make_details(self.event_type, email="not-an-email"))
        self.assertEqual(result.code, VALIDATION_ERROR)
        result = self.confirm("pi_1", make_details(self.event_type, event_type_id="nope"))
        self.assertEqual(result.code, VALIDATION_ERROR)
        result = self.confirm(None, make_details(self.event_type, payment_status="succeeded"))
        self.assertEqual(result.code, VALIDATION_ERROR)
        result = self.confirm("pi_1", make_details(self.event_type, start_time=SLOT.replace(tzinfo=None)))
        self.assertEqual(result.code, VALIDATION_ERROR)
        self.assertFalse(Meeting.objects.exists())

    def test_invalid_time_slot_without_paid_session(self):
        tuesday = SLOT + timedelta(days=1)
        result = self.confirm("pi_1", make_details(self.event_type, start=tuesday, payment_status="pending"))
        self.assertEqual(result.code, INVALID_TIME_SLOT)

    def test_calendar_busy_time_is_invalid(self):
        calendar = FakeCalendar(busy=[(SLOT, SLOT + timedelta(minutes=30))])
        result = self.confirm("pi_1", make_details(self.event_type), calendar=calendar)
        self.assertEqual(result.code, INVALID_TIME_SLOT)

    def test_paid_checkout_bypasses_schedule(self):
        tuesday = SLOT + timedelta(days=1)
        details = make_details(self.event_type, start=tuesday, stripe_session_id="cs_1", checkout_started_at=NOW - timedelta(hours=1))
        result = self.confirm("pi_1", details)
        self.assertEqual(result.code, CREATED)

    def test_stale_paid_checkout_is_validated(self):
        tuesday = SLOT + timedelta(days=1)
        details = make_details(self.event_type, start=tuesday, stripe_session_id="cs_1", checkout_started_at=NOW - timedelta(days=30))
        with self.settings(PAID_BOOKING_BYPASS_MAX_AGE_HOURS=168):
            result = self.confirm("pi_1", details)
        self.assertEqual(result.code, INVALID_TIME_SLOT)
        with self.settings(PAID_BOOKING_BYPASS_MAX_AGE_HOURS=0):
            result = self.confirm("pi_1", details)
        self.assertEqual(result.code, CREATED)

    def test_checkout_start_falls_back_to_reservation(self):
        reserve_slot(self.expert.pk, SLOT + timedelta(days=1), "guest@example.com", timedelta(minutes=15), now=NOW - timedelta(days=30))
        details = make_details(self.event_type, start=SLOT + timedelta(days=1), stripe_session_id="cs_1")
        with self.settings(PAID_BOOKING_BYPASS_MAX_AGE_HOURS=168):
            result = self.confirm("pi_1", details)
        self.assertEqual(result.code, INVALID_TIME_SLOT)

    def test_calendar_failure_keeps_booking(self):
        calendar = FakeCalendar(fail=True)
        result = self.confirm("pi_1", make_details(self.event_type), calendar=calendar)
        self.assertEqual(result.code, CREATED)
        self.assertEqual(result.meeting.meeting_url, "")
        self.assertEqual(result.meeting.calendar_event_id, "")

    def test_event_without_id_is_marked_untracked(self):
        calendar = FakeCalendar(event_ids=False)
        result = self.confirm("pi_1", make_details(self.event_type), calendar=calendar)
        self.assertEqual(result.meeting.calendar_event_id, "untracked")

    def test_no_provider_leaves_event_unset(self):
        result = self.confirm("pi_1", make_details(self.event_type), calendar=NullCalendarProvider())
        self.assertEqual(result.code, CREATED)
        self.assertEqual(result.meeting.calendar_event_id, "")

    def test_no_calendar_event_for_pending_payment(self):
        result = self.confirm("pi_1", make_details(self.event_type, payment_status="pending"))
        self.assertEqual(result.code, CREATED)
        self.assertEqual(self.calendar.created, [])

    def test_lost_insert_race_to_other_guest(self):
        Meeting.objects.create(
            expert=self.expert, event_type=self.event_type, guest_email="winner@example.com", guest_name="W",
            start_time=SLOT, end_time=SLOT + timedelta(minutes=50), stripe_payment_status="succeeded",
        )
        with patch.object(booking_service, "_find_foreign_booking", return_value=None):
            result = self.confirm("pi_2", make_details(self.event_type, stripe_session_id="cs_2", checkout_started_at=NOW))
        self.assertEqual(result.code, SLOT_ALREADY_BOOKED)
        self.assertEqual(Meeting.objects.count(), 1)

    def test_lost_insert_race_to_same_payment(self):
        details = make_details(self.event_type, stripe_session_id="cs_1", checkout_started_at=NOW)
        winner = self.confirm("pi_123", details).meeting
        real_find = booking_service._find_replay
        calls = []

        def miss_first(*args):
            calls.append(args)
            return None if len(calls) == 1 else real_find(*args)

        with patch.object(booking_service, "_find_replay", side_effect=miss_first):
            result = self.confirm("pi_123", details)
        self.assertEqual(result.code, DUPLICATE_SUPPRESSED)
        self.assertEqual(result.meeting.pk, winner.pk)

    def test_unexpected_error_is_creation_error(self):
        with patch.object(booking_service, "_find_replay", side_effect=RuntimeError("db gone")):
            result = self.confirm("pi_1", make_details(self.event_type))
        self.assertEqual(result.code, CREATION_ERROR)

    @patch("general.notifications.notify")
    def test_expert_notified_after_commit(self, notify):
        with self.captureOnCommitCallbacks(execute=True):
            result = self.confirm("pi_1", make_details(self.event_type))
        notify.assert_called_once()
        recipient_id, template, payload = notify.call_args[0]
        self.assertEqual(recipient_id, self.expert.pk)
        self.assertEqual(template, "appointment-confirmation")
        self.assertEqual(payload["meeting_id"], str(result.meeting.pk))

    @patch("general.notifications.notify", side_effect=RuntimeError("smtp down"))
    def test_notification_failure_is_swallowed(self, notify):
        with self.captureOnCommitCallbacks(execute=True):
            result = self.confirm("pi_1", make_details(self.event_type))
        self.assertEqual(result.code, CREATED)
        notify.assert_called_once()


class PaymentCorrectionTests(TestCase):
    def setUp(self):
        self.expert, _, self.event_type = make_expert()
        self.meeting = confirm_booking(
            "pi_1", make_details(self.event_type, payment_status="pending"), calendar=FakeCalendar(), now=NOW,
        ).meeting

    def test_status_correction(self):
        update_payment_status("pi_1", "succeeded")
        self.meeting.refresh_from_db()
        self.assertEqual(self.meeting.stripe_payment_status, "succeeded")

    def test_refunded_is_terminal(self):
        mark_meeting_refunded("pi_1")
        update_payment_status("pi_1", "succeeded")
        self.meeting.refresh_from_db()
        self.assertEqual(self.meeting.stripe_payment_status, "refunded")

    def test_unknown_reference(self):
        self.assertIsNone(update_payment_status("pi_unknown", "succeeded"))
        self.assertIsNone(mark_meeting_refunded("pi_unknown"))

    def test_record_calendar_event(self):
        record_calendar_event(self.meeting.pk, "evt_late", "https://meet.example.com/late")
        self.meeting.refresh_from_db()
        self.assertEqual(self.meeting.calendar_event_id, "evt_late")
        self.assertEqual(self.meeting.meeting_url, "https://meet.example.com/late")

    def test_payment_failure_frees_slot_and_emails_guest(self):
        with self.captureOnCommitCallbacks(execute=True):
            mark_meeting_payment_failed("pi_1")
        self.meeting.refresh_from_db()
        self.assertEqual(self.meeting.stripe_payment_status, "failed")

        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["guest@example.com"])
        self.assertEqual(mail.outbox[0].subject, "Payment failed: Consultation was cancelled")
        self.assertIn("10:00 - 10:50", mail.outbox[0].body)

        other = confirm_booking(
            "pi_2", make_details(self.event_type, email="other@example.com"), calendar=FakeCalendar(), now=NOW,
        )
        self.assertEqual(other.code, CREATED)

    def test_redelivered_failure_emails_once(self):
        with self.captureOnCommitCallbacks(execute=True):
            mark_meeting_payment_failed("pi_1")
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            mark_meeting_payment_failed("pi_1")
        self.assertEqual(callbacks, [])
        self.assertEqual(len(mail.outbox), 1)

    def test_guest_email_failure_is_swallowed(self):
        with patch("general.notifications.notify_guest", side_effect=RuntimeError("smtp down")) as notify_guest:
            with self.captureOnCommitCallbacks(execute=True):
                meeting = mark_meeting_payment_failed("pi_1")
        notify_guest.assert_called_once()
        self.assertEqual(meeting.stripe_payment_status, "failed")

    def test_late_success_revives_free_slot(self):
        mark_meeting_payment_failed("pi_1")
        update_payment_status("pi_1", "succeeded")
        self.meeting.refresh_from_db()
        self.assertEqual(self.meeting.stripe_payment_status, "succeeded")

    def test_late_success_after_slot_rebooked_is_refused(self):
        mark_meeting_payment_failed("pi_1")
        other = confirm_booking(
            "pi_2", make_details(self.event_type, email="other@example.com"), calendar=FakeCalendar(), now=NOW,
        ).meeting

        with self.assertLogs("bookings.services.booking_service", level="ERROR"):
            meeting = update_payment_status("pi_1", "succeeded")
        self.assertEqual(meeting.stripe_payment_status, "failed")
        other.refresh_from_db()
        self.assertEqual(other.stripe_payment_status, "succeeded")


class BookingDetailsTests(TestCase):
    def test_from_metadata(self):
        event_type_id = str(uuid.uuid4())
        details = BookingDetails.from_metadata(
            {
                "event_type_id": event_type_id,
                "expert_id": "7",
                "start_time": "2030-01-07T10:00:00+00:00",
                "guest_email": " Guest@Example.com ",
                "guest_name": "Gina",
                "amount_cents": "4900",
            },
            payment_status="succeeded",
        )
        self.assertEqual(details.expert_id, 7)
        self.assertEqual(details.guest_email, "guest@example.com")
        self.assertEqual(details.start_time, SLOT)
        self.assertEqual(details.amount_cents, 4900)
        self.assertEqual(details.payment_status, "succeeded")

    def test_from_metadata_missing_fields(self):
        with self.assertRaises(ValueError):
            BookingDetails.from_metadata({"expert_id": "1"})
        with self.assertRaises(ValueError):
            BookingDetails.from_metadata({"event_type_id": "x", "expert_id": "1", "start_time": "garbage"})


class ReservationViewTests(TestCase):
    def setUp(self):
        self.expert, _, self.event_type = make_expert()
        self.url = reverse("bookings:reserve")

    def post(self, body):
        return self.client.post(self.url, data=json.dumps(body), content_type="application/json")

    def test_reserve_then_conflict(self):
        body = {"event_type_id": str(self.event_type.pk), "start_time": SLOT.isoformat(), "guest_email": "a@example.com"}
        response = self.post(body)
        self.assertEqual(response.status_code, 201)
        reservation_id = response.json()["reservation_id"]

        response = self.post(dict(body, guest_email="b@example.com"))
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], SLOT_TEMPORARILY_RESERVED)

        response = self.client.post(reverse("bookings:release", args=[reservation_id]))
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["released"])
        self.assertEqual(self.post(dict(body, guest_email="b@example.com")).status_code, 201)

    def test_bad_input(self):
        self.assertEqual(self.post({"event_type_id": str(self.event_type.pk), "start_time": "tomorrow", "guest_email": "a@example.com"}).status_code, 400)
        self.assertEqual(self.post({"event_type_id": "nope", "start_time": SLOT.isoformat(), "guest_email": "a@example.com"}).status_code, 404)

    def test_release_unknown_is_ok(self):
        response = self.client.post(reverse("bookings:release", args=["garbage"]))
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["released"])


class CleanupTests(TestCase):
    def setUp(self):
        self.expert, _, self.event_type = make_expert()

    def test_deletes_expired_and_emails_guests(self):
        expired = reserve_slot(self.expert.pk, SLOT, "late@example.com", timedelta(minutes=15), event_type_id=self.event_type.pk, now=NOW)
        live = reserve_slot(self.expert.pk, SLOT + timedelta(hours=2), "soon@example.com", timedelta(hours=3), now=NOW)

        with patch("bookings.cleanup.EmailService.send_reservation_expired_email", return_value=True) as send:
            result = cleanup_expired_reservations(now=NOW + timedelta(hours=1))

        self.assertEqual(result, {"reservations_deleted": 1, "notifications_sent": 1})
        self.assertFalse(SlotReservation.objects.filter(pk=expired).exists())
        self.assertTrue(SlotReservation.objects.filter(pk=live).exists())
        self.assertEqual(send.call_args[0][0], "late@example.com")
        self.assertEqual(send.call_args[0][1]["event_title"], "Consultation")

    def test_email_failure_still_deletes(self):
        reserve_slot(self.expert.pk, SLOT, "late@example.com", timedelta(minutes=15), now=NOW)
        with patch("bookings.cleanup.EmailService.send_reservation_expired_email", side_effect=RuntimeError("smtp")):
            result = cleanup_expired_reservations(now=NOW + timedelta(hours=1))
        self.assertEqual(result["reservations_deleted"], 1)
        self.assertEqual(result["notifications_sent"], 0)


class CalendarProviderSettingTests(TestCase):
    def test_default_provider_is_null(self):
        from bookings.calendar import NullCalendarProvider, get_calendar_provider

        self.assertIsInstance(get_calendar_provider(), NullCalendarProvider)

    def test_provider_from_settings(self):
        from bookings.calendar import get_calendar_provider

        with self.settings(CALENDAR_PROVIDER="bookings.tests.FakeCalendar"):
            self.assertIsInstance(get_calendar_provider(), FakeCalendar)


class ManagementCommandTests(TestCase):
    def setUp(self):
        self.expert, _, self.event_type = make_expert()

    def _meeting(self, status="succeeded", start=SLOT, **kwargs):
        return Meeting.objects.create(
            expert=self.expert, event_type=self.event_type, guest_email="guest@example.com", guest_name="Gina",
            start_time=start, end_time=start + timedelta(minutes=50), stripe_payment_status=status, **kwargs
        )

    def backfill(self, calendar):
        out = StringIO()
        with patch("bookings.management.commands.backfill_meeting_urls.get_calendar_provider", return_value=calendar):
            call_command("backfill_meeting_urls", stdout=out, stderr=StringIO())
        return out.getvalue()

    def test_backfill_creates_one_event_even_without_link(self):
        meeting = self._meeting()
        calendar = FakeCalendar(meeting_url="")
        output = self.backfill(calendar)
        self.backfill(calendar)
        self.backfill(calendar)

        self.assertEqual(len(calendar.created), 1)
        self.assertIn("1 calendar events backfilled", output)
        meeting.refresh_from_db()
        self.assertEqual(meeting.calendar_event_id, "evt_1")
        self.assertEqual(meeting.meeting_url, "")

    def test_backfill_stores_link_and_untracked_marker(self):
        meeting = self._meeting()
        calendar = FakeCalendar(meeting_url="https://meet.example.com/late", event_ids=False)
        self.backfill(calendar)
        self.backfill(calendar)
        self.assertEqual(len(calendar.created), 1)
        meeting.refresh_from_db()
        self.assertEqual(meeting.calendar_event_id, "untracked")
        self.assertEqual(meeting.meeting_url, "https://meet.example.com/late")

    def test_backfill_retries_after_calendar_failure(self):
        meeting = self._meeting()
        output = self.backfill(FakeCalendar(fail=True))
        self.assertIn("1 failed", output)
        meeting.refresh_from_db()
        self.assertEqual(meeting.calendar_event_id, "")

        calendar = FakeCalendar()
        self.backfill(calendar)
        self.assertEqual(len(calendar.created), 1)

    def test_backfill_skips_without_provider(self):
        meeting = self._meeting()
        output = self.backfill(NullCalendarProvider())
        self.assertIn("0 calendar events backfilled, 1 skipped", output)
        meeting.refresh_from_db()
        self.assertEqual(meeting.calendar_event_id, "")

    def test_backfill_ignores_unpaid_and_existing_events(self):
        self._meeting(status="pending", stripe_payment_intent_id="pi_1")
        self._meeting(status="failed", start=SLOT + timedelta(hours=1), stripe_payment_intent_id="pi_2")
        self._meeting(start=SLOT + timedelta(hours=2), stripe_payment_intent_id="pi_3", calendar_event_id="evt_existing")
        calendar = FakeCalendar()
        self.backfill(calendar)
        self.assertEqual(calendar.created, [])

    def test_cleanup_command(self):
        past = timezone.now() - timedelta(hours=1)
        expired = reserve_slot(self.expert.pk, SLOT, "late@example.com", timedelta(minutes=15), now=past)
        out = StringIO()
        with patch("bookings.cleanup.EmailService.send_reservation_expired_email", return_value=True) as send:
            call_command("cleanup_expired_reservations", stdout=out)
        send.assert_called_once()
        self.assertIn("1 reservations deleted, 1 guests notified", out.getvalue())
        self.assertFalse(SlotReservation.objects.filter(pk=expired).exists())

    def test_cleanup_command_no_email(self):
        past = timezone.now() - timedelta(hours=1)
        reserve_slot(self.expert.pk, SLOT, "late@example.com", timedelta(minutes=15), now=past)
        out = StringIO()
        with patch("bookings.cleanup.EmailService.send_reservation_expired_email") as send:
            call_command("cleanup_expired_reservations", "--no-email", stdout=out)
        send.assert_not_called()
        self.assertIn("1 reservations deleted, 0 guests notified", out.getvalue())

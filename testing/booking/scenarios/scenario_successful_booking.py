from billing.views import _handle_payment_intent_succeeded
from bookings.models import Meeting, SlotReservation
from bookings.services.reservation_service import reserve_slot
from testing.booking.base import cleanup_scenario_data, ensure_test_expert, guest_email, payment_intent, scenario_slot


def run():
    print("Running: scenario_successful_booking")
    cleanup_scenario_data()
    expert, _, event_type = ensure_test_expert()
    start = scenario_slot()
    email = guest_email("alice")

    reserve_slot(expert.pk, start, email, event_type_id=event_type.pk)
    _handle_payment_intent_succeeded(payment_intent(event_type, start, email))

    meeting = Meeting.objects.filter(expert=expert, start_time=start).first()
    if meeting is None:
        raise Exception("Expected a meeting after payment.")
    if meeting.stripe_payment_status != "succeeded":
        raise Exception(f"Expected succeeded, got {meeting.stripe_payment_status}")
    if SlotReservation.objects.filter(expert=expert, start_time=start).exists():
        raise Exception("Reservation should be superseded by the meeting.")
    commission = getattr(meeting, "commission", None)
    if commission is None or commission.commission_amount_cents != 2000 or commission.net_amount_cents != 8000:
        raise Exception(f"Expected 2000/8000 commission, got {commission}")
    print("✓ Passed")

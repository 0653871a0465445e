from billing.views import _handle_charge_refunded, _handle_payment_intent_succeeded
from bookings.models import Meeting
from testing.booking.base import cleanup_scenario_data, ensure_test_expert, guest_email, payment_intent, scenario_slot


def run():
    print("Running: scenario_refund_frees_slot")
    cleanup_scenario_data()
    expert, _, event_type = ensure_test_expert()
    start = scenario_slot(hour=14)
    first = payment_intent(event_type, start, guest_email("frank"))

    _handle_payment_intent_succeeded(first)
    _handle_charge_refunded({"payment_intent": first["id"], "refunded": True, "amount_refunded": first["amount"]})

    meeting = Meeting.objects.get(stripe_payment_intent_id=first["id"])
    if meeting.stripe_payment_status != "refunded":
        raise Exception(f"Expected refunded, got {meeting.stripe_payment_status}")
    if meeting.commission.status != "refunded":
        raise Exception(f"Expected refunded commission, got {meeting.commission.status}")

    second = payment_intent(event_type, start, guest_email("grace"))
    _handle_payment_intent_succeeded(second)
    if not Meeting.objects.filter(stripe_payment_intent_id=second["id"]).exists():
        raise Exception("A refunded meeting should free its slot.")
    print("✓ Passed")

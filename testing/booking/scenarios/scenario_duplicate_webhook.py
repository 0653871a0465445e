from billing.models import TransactionCommission
from billing.views import _handle_payment_intent_succeeded
from bookings.models import Meeting
from testing.booking.base import cleanup_scenario_data, ensure_test_expert, guest_email, payment_intent, scenario_slot


def run():
    print("Running: scenario_duplicate_webhook")
    cleanup_scenario_data()
    expert, _, event_type = ensure_test_expert()
    start = scenario_slot(hour=11)
    intent = payment_intent(event_type, start, guest_email("bob"), pi_id="pi_scenario_pay_123")

    _handle_payment_intent_succeeded(intent)
    _handle_payment_intent_succeeded(intent)

    meetings = Meeting.objects.filter(stripe_payment_intent_id="pi_scenario_pay_123").count()
    commissions = TransactionCommission.objects.filter(stripe_payment_intent_id="pi_scenario_pay_123").count()
    if meetings != 1:
        raise Exception(f"Expected exactly one meeting, got {meetings}")
    if commissions != 1:
        raise Exception(f"Expected exactly one commission, got {commissions}")
    print("✓ Passed")

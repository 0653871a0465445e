from billing.constants import BillingInterval, PlanType, TierLevel
from billing.services.commission_service import get_current_commission_rate
from billing.services.subscription_service import change_plan, create_plan
from billing.views import _handle_payment_intent_succeeded
from bookings.models import Meeting
from testing.booking.base import cleanup_scenario_data, ensure_test_expert, guest_email, payment_intent, scenario_slot


def run():
    print("Running: scenario_plan_downgrade_snapshot")
    cleanup_scenario_data()
    expert, organization, event_type = ensure_test_expert()
    create_plan(organization.pk, PlanType.ANNUAL, TierLevel.COMMUNITY, BillingInterval.YEAR, actor=expert)

    start = scenario_slot(hour=13)
    _handle_payment_intent_succeeded(payment_intent(event_type, start, guest_email("erin")))
    meeting = Meeting.objects.get(expert=expert, start_time=start)

    change_plan(organization.pk, PlanType.COMMISSION, TierLevel.COMMUNITY, None, actor=expert, reason="downgrade")

    commission = meeting.commission
    commission.refresh_from_db()
    if commission.plan_type_at_transaction != PlanType.ANNUAL or commission.commission_rate_bp != 1200:
        raise Exception(f"Snapshot changed: {commission.plan_type_at_transaction} @ {commission.commission_rate_bp}bp")
    current = get_current_commission_rate(expert.pk)
    if current != 2000:
        raise Exception(f"Expected preview rate 2000bp after downgrade, got {current}")
    print("✓ Passed")

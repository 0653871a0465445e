from testing.booking.base import assert_scenarios_enabled
from testing.booking.scenarios import (
    scenario_duplicate_webhook,
    scenario_plan_downgrade_snapshot,
    scenario_refund_frees_slot,
    scenario_reservation_conflict,
    scenario_successful_booking,
)

AVAILABLE_SCENARIOS = {
    "booking": scenario_successful_booking,
    "duplicate_webhook": scenario_duplicate_webhook,
    "reservation_conflict": scenario_reservation_conflict,
    "plan_downgrade": scenario_plan_downgrade_snapshot,
    "refund": scenario_refund_frees_slot,
}


def run_scenario(name):
    assert_scenarios_enabled()
    if name not in AVAILABLE_SCENARIOS:
        raise Exception(f"Unknown scenario '{name}'. Available: {', '.join(AVAILABLE_SCENARIOS.keys())}")
    AVAILABLE_SCENARIOS[name].run()


def run_all():
    assert_scenarios_enabled()
    for _, scenario in AVAILABLE_SCENARIOS.items():
        scenario.run()

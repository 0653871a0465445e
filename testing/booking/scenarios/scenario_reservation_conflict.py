from datetime import timedelta

from django.utils import timezone

from bookings.services.reservation_service import SLOT_TEMPORARILY_RESERVED, ReservationConflict, reserve_slot
from testing.booking.base import cleanup_scenario_data, ensure_test_expert, guest_email, scenario_slot


def run():
    print("Running: scenario_reservation_conflict")
    cleanup_scenario_data()
    expert, _, event_type = ensure_test_expert()
    start = scenario_slot(hour=12)
    now = timezone.now()
    ttl = timedelta(minutes=15)

    reserve_slot(expert.pk, start, guest_email("carol"), ttl, event_type_id=event_type.pk, now=now)
    try:
        reserve_slot(expert.pk, start, guest_email("dave"), ttl, event_type_id=event_type.pk, now=now + timedelta(minutes=5))
    except ReservationConflict as e:
        if e.code != SLOT_TEMPORARILY_RESERVED:
            raise Exception(f"Expected {SLOT_TEMPORARILY_RESERVED}, got {e.code}")
    else:
        raise Exception("Second guest should not get a live reservation.")

    reserve_slot(expert.pk, start, guest_email("dave"), ttl, event_type_id=event_type.pk, now=now + ttl + timedelta(seconds=1))
    print("✓ Passed")

from datetime import datetime, time, timedelta, timezone as dt_timezone
import uuid

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from accounts.models import CustomUser, Organization, OrganizationMembership
from billing.models import SubscriptionEvent, SubscriptionPlan, TransactionCommission
from bookings.models import AvailabilityWindow, EventType, Meeting, Schedule, SlotReservation

SCENARIO_EXPERT_EMAIL = "test_expert@local.test"
SCENARIO_GUEST_DOMAIN = "scenario.test"
SCENARIO_PRICE_CENTS = 10000


def assert_scenarios_enabled():
    if not settings.ALLOW_TEST_SCENARIOS:
        raise Exception("Test scenarios disabled in this environment.")


def guest_email(name):
    return f"{name}@{SCENARIO_GUEST_DOMAIN}"


@transaction.atomic()
def ensure_test_expert(role="expert_community"):
    """Expert with an owned organization, an always-open schedule and one paid event type."""
    expert, _ = CustomUser.objects.get_or_create(
        email=SCENARIO_EXPERT_EMAIL,
        defaults={"first_name": "Test", "last_name": "Expert", "role": role},
    )
    if expert.role != role:
        expert.role = role
        expert.save(update_fields=["role"])

    organization, _ = Organization.objects.get_or_create(
        name="Scenario Expert Practice",
        defaults={"org_type": "expert_individual"},
    )
    OrganizationMembership.objects.get_or_create(user=expert, organization=organization, defaults={"role": "owner"})

    schedule, _ = Schedule.objects.get_or_create(
        expert=expert,
        defaults={
            "timezone": "UTC",
            "minimum_notice_minutes": 0,
            "before_event_buffer_minutes": 0,
            "after_event_buffer_minutes": 0,
        },
    )
    if not schedule.windows.exists():
        for weekday in range(7):
            AvailabilityWindow.objects.create(schedule=schedule, weekday=weekday, start_time=time(0, 0), end_time=time(23, 59))

    event_type, _ = EventType.objects.get_or_create(
        expert=expert,
        slug="scenario-consultation",
        defaults={"title": "Scenario Consultation", "duration_minutes": 50, "price_cents": SCENARIO_PRICE_CENTS},
    )
    return expert, organization, event_type


@transaction.atomic()
def cleanup_scenario_data():
    """Queryset deletes on purpose: the ledger models refuse instance deletes."""
    expert = CustomUser.objects.filter(email=SCENARIO_EXPERT_EMAIL).first()
    if expert is None:
        return
    TransactionCommission.objects.filter(expert=expert).delete()
    Meeting.objects.filter(expert=expert).delete()
    SlotReservation.objects.filter(expert=expert).delete()
    org_ids = list(expert.memberships.values_list("organization_id", flat=True))
    SubscriptionEvent.objects.filter(organization_id__in=org_ids).delete()
    SubscriptionPlan.objects.filter(organization_id__in=org_ids).delete()


def scenario_slot(days_ahead=3, hour=10):
    day = (timezone.now() + timedelta(days=days_ahead)).date()
    return datetime.combine(day, time(hour, 0), tzinfo=dt_timezone.utc)


def booking_metadata(event_type, start_time, email, name="Scenario Guest"):
    """Metadata the checkout page attaches to the PaymentIntent / Checkout Session."""
    return {
        "event_type_id": str(event_type.pk),
        "expert_id": str(event_type.expert_id),
        "start_time": start_time.isoformat(),
        "guest_email": email,
        "guest_name": name,
        "timezone": "UTC",
        "amount_cents": str(event_type.price_cents),
    }


def payment_intent(event_type, start_time, email, pi_id=None):
    """A succeeded Stripe PaymentIntent object as the webhook delivers it."""
    return {
        "id": pi_id or f"pi_scenario_{uuid.uuid4().hex[:16]}",
        "object": "payment_intent",
        "amount": event_type.price_cents,
        "amount_received": event_type.price_cents,
        "currency": "usd",
        "status": "succeeded",
        "metadata": booking_metadata(event_type, start_time, email),
    }

"""
Organization subscription state machine.

States: commission (no row, or a row that is not active/trialing), monthly, annual, team.
Every transition runs in one transaction with the organization row locked and
appends a SubscriptionEvent holding the previous and new plan BEFORE the
SubscriptionPlan row is touched.

Cancellation only sets cancel_at_period_end; the subscribed rate applies until
the period ends and an external reconciliation moves the org to commission.
"""
import logging
from datetime import datetime, timezone as dt_timezone

import stripe
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction

from accounts.models import Organization
from billing import config
from billing.constants import (
    RATE_BEARING_STATUSES,
    BillingInterval,
    PlanType,
    SubscriptionEventType,
    SubscriptionStatus,
    TierLevel,
)
from billing.models import SubscriptionEvent, SubscriptionPlan
from billing.services import stripe_service

logger = logging.getLogger(__name__)

EXPERT_TIER_LEVELS = (TierLevel.COMMUNITY, TierLevel.TOP)
TEAM_TIER_LEVELS = (TierLevel.STARTER, TierLevel.PROFESSIONAL, TierLevel.ENTERPRISE)


class SubscriptionError(Exception):
    pass


def _validate_plan(plan_type, tier_level, billing_interval):
    if plan_type not in PlanType.values:
        raise SubscriptionError(f"Unknown plan type '{plan_type}'.")
    if tier_level not in TierLevel.values:
        raise SubscriptionError(f"Unknown tier level '{tier_level}'.")
    allowed_tiers = TEAM_TIER_LEVELS if plan_type == PlanType.TEAM else EXPERT_TIER_LEVELS
    if tier_level not in allowed_tiers:
        raise SubscriptionError(f"Tier '{tier_level}' is not available on the {plan_type} plan.")
    if billing_interval not in config.PLAN_INTERVALS[plan_type]:
        raise SubscriptionError(f"Billing interval '{billing_interval}' does not match the {plan_type} plan.")


def is_rate_bearing(plan) -> bool:
    return (
        plan is not None
        and plan.plan_type != PlanType.COMMISSION
        and plan.status in RATE_BEARING_STATUSES
    )


def _snapshot(plan):
    if plan is None:
        return PlanType.COMMISSION, None, None
    return plan.plan_type, plan.tier_level, plan.billing_interval


def _lock(organization_id):
    """Lock the organization row and return (organization, plan or None)."""
    try:
        organization = Organization.objects.select_for_update().get(pk=organization_id)
    except (Organization.DoesNotExist, ValueError, ValidationError):
        raise SubscriptionError(f"Organization {organization_id} not found.")
    plan = SubscriptionPlan.objects.select_for_update().filter(organization=organization).first()
    return organization, plan


def _append_event(organization, plan, event_type, previous, new, *, actor=None,
                  stripe_event_id="", stripe_subscription_id="", reason="", metadata=None):
    return SubscriptionEvent.objects.create(
        organization=organization,
        subscription_plan=plan,
        actor=actor,
        event_type=event_type,
        previous_plan_type=previous[0],
        previous_tier_level=previous[1],
        previous_billing_interval=previous[2],
        new_plan_type=new[0],
        new_tier_level=new[1],
        new_billing_interval=new[2],
        stripe_event_id=stripe_event_id or "",
        stripe_subscription_id=stripe_subscription_id or (plan.stripe_subscription_id if plan else "") or "",
        reason=reason or "",
        metadata=metadata or {},
    )


def _refresh_period(plan, current_period_start, current_period_end):
    """Renewals move the period without changing the plan; no event for those."""
    update_fields = []
    if current_period_start is not None and plan.current_period_start != current_period_start:
        plan.current_period_start = current_period_start
        update_fields.append("current_period_start")
    if current_period_end is not None and plan.current_period_end != current_period_end:
        plan.current_period_end = current_period_end
        update_fields.append("current_period_end")
    if update_fields:
        plan.save(update_fields=update_fields + ["updated_at"])


def _apply_prices(plan):
    prices = config.plan_price(plan.plan_type, plan.tier_level) or {}
    plan.monthly_fee_cents = prices.get("monthly_fee_cents")
    plan.annual_fee_cents = prices.get("annual_fee_cents")


@transaction.atomic()
def create_plan(organization_id, plan_type, tier_level, billing_interval, *, actor=None, billing_admin=None,
                status=SubscriptionStatus.ACTIVE, stripe_subscription_id=None, stripe_price_id="",
                current_period_start=None, current_period_end=None, stripe_event_id="", reason=""):
    """
    none/inactive -> monthly | annual | team. Refuses when a rate-bearing plan exists.
    An inactive row is reused so the organization keeps one row.
    """
    _validate_plan(plan_type, tier_level, billing_interval)
    if plan_type == PlanType.COMMISSION:
        raise SubscriptionError("Commission is the default; there is no plan to create.")
    organization, plan = _lock(organization_id)
    if is_rate_bearing(plan):
        raise SubscriptionError("This organization already has an active subscription. Change the plan instead.")

    previous = _snapshot(plan if plan is not None and plan.status in RATE_BEARING_STATUSES else None)
    _append_event(
        organization, plan, SubscriptionEventType.PLAN_CREATED, previous,
        (plan_type, tier_level, billing_interval),
        actor=actor, stripe_event_id=stripe_event_id,
        stripe_subscription_id=stripe_subscription_id, reason=reason,
    )

    if plan is None:
        plan = SubscriptionPlan(organization=organization)
    plan.billing_admin = billing_admin or actor or plan.billing_admin
    plan.plan_type = plan_type
    plan.tier_level = tier_level
    plan.billing_interval = billing_interval
    plan.status = status
    plan.cancel_at_period_end = False
    plan.current_period_start = current_period_start
    plan.current_period_end = current_period_end
    plan.stripe_subscription_id = stripe_subscription_id or None
    plan.stripe_price_id = stripe_price_id or ""
    _apply_prices(plan)
    try:
        with transaction.atomic():
            plan.save()
    except IntegrityError:
        raise SubscriptionError("A subscription for this organization was created concurrently.")

    logger.info("create_plan: org=%s %s/%s/%s", organization.pk, plan_type, tier_level, billing_interval)
    return plan


@transaction.atomic()
def cancel_subscription(organization_id, *, actor=None, reason="", stripe_event_id="", sync_stripe=True):
    """
    Mark the subscription to end at period end. Status stays active, so the
    subscribed rate keeps applying. Mirrors the flag to Stripe when configured.
    """
    organization, plan = _lock(organization_id)
    if not is_rate_bearing(plan):
        raise SubscriptionError("There is no active subscription to cancel.")
    if plan.cancel_at_period_end:
        return plan

    current = _snapshot(plan)
    _append_event(
        organization, plan, SubscriptionEventType.SUBSCRIPTION_CANCELED, current, current,
        actor=actor, stripe_event_id=stripe_event_id, reason=reason,
        metadata={"cancel_at_period_end": True},
    )

    if sync_stripe and plan.stripe_subscription_id and stripe_service.is_configured():
        try:
            stripe_service.set_cancel_at_period_end(plan.stripe_subscription_id, True)
        except stripe.StripeError as e:
            logger.error("cancel_subscription: Stripe call failed org=%s sub=%s: %s", organization.pk, plan.stripe_subscription_id, e)
            raise SubscriptionError("We could not cancel your subscription with the payment provider. Please try again.") from e

    plan.cancel_at_period_end = True
    plan.save(update_fields=["cancel_at_period_end", "updated_at"])
    logger.info("cancel_subscription: org=%s will end at %s", organization.pk, plan.current_period_end)
    return plan


@transaction.atomic()
def reactivate_subscription(organization_id, *, actor=None, reason="", stripe_event_id="", sync_stripe=True):
    """Undo a pending cancellation."""
    organization, plan = _lock(organization_id)
    if not is_rate_bearing(plan):
        raise SubscriptionError("There is no active subscription to reactivate.")
    if not plan.cancel_at_period_end:
        return plan

    current = _snapshot(plan)
    _append_event(
        organization, plan, SubscriptionEventType.SUBSCRIPTION_RENEWED, current, current,
        actor=actor, stripe_event_id=stripe_event_id, reason=reason,
        metadata={"cancel_at_period_end": False},
    )

    if sync_stripe and plan.stripe_subscription_id and stripe_service.is_configured():
        try:
            stripe_service.set_cancel_at_period_end(plan.stripe_subscription_id, False)
        except stripe.StripeError as e:
            logger.error("reactivate_subscription: Stripe call failed org=%s sub=%s: %s", organization.pk, plan.stripe_subscription_id, e)
            raise SubscriptionError("We could not reactivate your subscription with the payment provider. Please try again.") from e

    plan.cancel_at_period_end = False
    plan.save(update_fields=["cancel_at_period_end", "updated_at"])
    logger.info("reactivate_subscription: org=%s", organization.pk)
    return plan


@transaction.atomic()
def change_plan(organization_id, plan_type, tier_level, billing_interval, *, actor=None, status=None,
                stripe_subscription_id=None, stripe_price_id=None, current_period_start=None,
                current_period_end=None, stripe_event_id="", reason=""):
    """
    Tier, interval or plan-type change on an existing row, including the
    downgrade to commission. A call that changes nothing appends no event.
    """
    _validate_plan(plan_type, tier_level, billing_interval)
    organization, plan = _lock(organization_id)
    if plan is None:
        raise SubscriptionError("This organization has no subscription to change.")

    previous = _snapshot(plan)
    new = (plan_type, tier_level, billing_interval)
    new_status = status or plan.status
    if previous == new and new_status == plan.status:
        _refresh_period(plan, current_period_start, current_period_end)
        return plan

    _append_event(
        organization, plan, SubscriptionEventType.PLAN_CHANGED, previous, new,
        actor=actor, stripe_event_id=stripe_event_id,
        stripe_subscription_id=stripe_subscription_id, reason=reason,
        metadata={"previous_status": plan.status, "new_status": new_status},
    )

    plan.plan_type = plan_type
    plan.tier_level = tier_level
    plan.billing_interval = billing_interval
    plan.status = new_status
    if plan_type == PlanType.COMMISSION:
        plan.cancel_at_period_end = False
    if stripe_subscription_id:
        plan.stripe_subscription_id = stripe_subscription_id
    if stripe_price_id is not None:
        plan.stripe_price_id = stripe_price_id
    if current_period_start is not None:
        plan.current_period_start = current_period_start
    if current_period_end is not None:
        plan.current_period_end = current_period_end
    _apply_prices(plan)
    plan.save()
    logger.info("change_plan: org=%s %s -> %s (%s)", organization.pk, previous, new, new_status)
    return plan


def get_effective_plan_type(organization_id) -> str:
    """Plan type the rate table should use right now. Always read from the database."""
    if organization_id is None:
        return PlanType.COMMISSION
    plan = SubscriptionPlan.objects.filter(organization_id=organization_id).first()
    return plan.plan_type if is_rate_bearing(plan) else PlanType.COMMISSION


def _timestamp(value):
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)


def _first_item(subscription):
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


INTERVAL_PLAN_TYPES = {
    BillingInterval.MONTH: PlanType.MONTHLY,
    BillingInterval.YEAR: PlanType.ANNUAL,
}


def sync_from_stripe(subscription, stripe_event_id=""):
    """
    Apply a Stripe customer.subscription.* object (a plain dict) through the
    transitions above. metadata carries organization_id and optionally
    plan_type, tier_level and actor_id.

    Returns the SubscriptionPlan, or None when the organization cannot be resolved.
    """
    metadata = subscription.get("metadata") or {}
    stripe_subscription_id = subscription.get("id")
    existing = None
    if stripe_subscription_id:
        existing = SubscriptionPlan.objects.filter(stripe_subscription_id=stripe_subscription_id).first()
    organization_id = metadata.get("organization_id") or (existing.organization_id if existing else None)
    if not organization_id:
        logger.warning("sync_from_stripe: no organization for subscription=%s", stripe_subscription_id)
        return None
    if existing is None:
        existing = SubscriptionPlan.objects.filter(organization_id=organization_id).first()

    item = _first_item(subscription)
    price = item.get("price") or {}
    interval = (price.get("recurring") or {}).get("interval")
    billing_interval = interval if interval in BillingInterval.values else None
    plan_type = metadata.get("plan_type") or INTERVAL_PLAN_TYPES.get(billing_interval) or (existing.plan_type if existing else None)
    tier_level = metadata.get("tier_level") or (existing.tier_level if existing else TierLevel.COMMUNITY)
    status = subscription.get("status")
    if status not in SubscriptionStatus.values:
        # incomplete, unpaid, paused, ... do not grant the subscribed rate
        status = SubscriptionStatus.PAST_DUE if status in ("unpaid", "incomplete", "paused") else SubscriptionStatus.CANCELED
    period_start = _timestamp(subscription.get("current_period_start") or item.get("current_period_start"))
    period_end = _timestamp(subscription.get("current_period_end") or item.get("current_period_end"))

    actor = None
    if metadata.get("actor_id"):
        from accounts.models import CustomUser
        actor = CustomUser.objects.filter(pk=metadata["actor_id"]).first()

    if not plan_type:
        logger.warning("sync_from_stripe: cannot infer plan type for subscription=%s", stripe_subscription_id)
        return existing

    common = {
        "actor": actor,
        "stripe_event_id": stripe_event_id,
        "reason": "Stripe subscription sync",
    }

    if not is_rate_bearing(existing):
        if status not in RATE_BEARING_STATUSES:
            logger.info("sync_from_stripe: ignoring %s subscription=%s for inactive org=%s", status, stripe_subscription_id, organization_id)
            return existing
        plan = create_plan(
            organization_id, plan_type, tier_level, billing_interval,
            status=status, stripe_subscription_id=stripe_subscription_id,
            stripe_price_id=price.get("id") or "",
            current_period_start=period_start, current_period_end=period_end,
            **common,
        )
    else:
        plan = change_plan(
            organization_id, plan_type, tier_level, billing_interval,
            status=status, stripe_subscription_id=stripe_subscription_id,
            stripe_price_id=price.get("id"),
            current_period_start=period_start, current_period_end=period_end,
            **common,
        )

    if is_rate_bearing(plan):
        wants_cancel = bool(subscription.get("cancel_at_period_end"))
        if wants_cancel and not plan.cancel_at_period_end:
            plan = cancel_subscription(organization_id, sync_stripe=False, **common)
        elif not wants_cancel and plan.cancel_at_period_end:
            plan = reactivate_subscription(organization_id, sync_stripe=False, **common)

    return plan

"""
Billing models: organization subscriptions, their audit trail, and the
per-meeting commission ledger.
Stripe is the source of truth for subscription lifecycle; subscription_service
is the only writer of SubscriptionPlan and SubscriptionEvent.
"""
from django.db import models

from billing.constants import (
    BillingInterval,
    CommissionStatus,
    PlanType,
    SubscriptionEventType,
    SubscriptionStatus,
    TierLevel,
)
from general.exceptions import ImmutableRecordError


class SubscriptionPlan(models.Model):
    """One row per organization; absent or inactive row means commission-only."""

    organization = models.OneToOneField(
        "accounts.Organization",
        on_delete=models.CASCADE,
        related_name="subscription_plan",
    )
    billing_admin = models.ForeignKey(
        "accounts.CustomUser",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="administered_plans",
    )
    plan_type = models.CharField(max_length=20, choices=PlanType.choices, default=PlanType.COMMISSION)
    tier_level = models.CharField(max_length=20, choices=TierLevel.choices, default=TierLevel.COMMUNITY)
    billing_interval = models.CharField(max_length=10, choices=BillingInterval.choices, null=True, blank=True)
    status = models.CharField(max_length=20, choices=SubscriptionStatus.choices, default=SubscriptionStatus.ACTIVE)
    cancel_at_period_end = models.BooleanField(default=False)
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)

    stripe_subscription_id = models.CharField(max_length=255, unique=True, null=True, blank=True)
    stripe_price_id = models.CharField(max_length=255, blank=True)

    monthly_fee_cents = models.PositiveIntegerField(null=True, blank=True)
    annual_fee_cents = models.PositiveIntegerField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Subscription plan"
        verbose_name_plural = "Subscription plans"
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.organization_id}: {self.plan_type}/{self.tier_level} ({self.status})"


class SubscriptionEvent(models.Model):
    """Append-only audit of plan transitions. Written before the plan row changes."""

    organization = models.ForeignKey(
        "accounts.Organization",
        on_delete=models.PROTECT,
        related_name="subscription_events",
    )
    subscription_plan = models.ForeignKey(
        "billing.SubscriptionPlan",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="events",
    )
    actor = models.ForeignKey(
        "accounts.CustomUser",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="subscription_events",
    )
    event_type = models.CharField(max_length=40, choices=SubscriptionEventType.choices)

    previous_plan_type = models.CharField(max_length=20, choices=PlanType.choices, null=True, blank=True)
    new_plan_type = models.CharField(max_length=20, choices=PlanType.choices, null=True, blank=True)
    previous_tier_level = models.CharField(max_length=20, choices=TierLevel.choices, null=True, blank=True)
    new_tier_level = models.CharField(max_length=20, choices=TierLevel.choices, null=True, blank=True)
    previous_billing_interval = models.CharField(max_length=10, choices=BillingInterval.choices, null=True, blank=True)
    new_billing_interval = models.CharField(max_length=10, choices=BillingInterval.choices, null=True, blank=True)

    stripe_event_id = models.CharField(max_length=255, blank=True)
    stripe_subscription_id = models.CharField(max_length=255, blank=True)
    reason = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "id"]

    def __str__(self):
        return f"SubscriptionEvent {self.event_type} org={self.organization_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecordError("Subscription events are append-only.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError("Subscription events are append-only.")


class TransactionCommission(models.Model):
    """
    Commission taken on one meeting's payment. Exactly one per meeting.
    Amounts, rate and the tier/plan snapshot are frozen at insert; only the
    settlement fields may change afterwards.
    """
    MUTABLE_FIELDS = frozenset({"status", "processed_at", "refunded_at", "stripe_transfer_id", "updated_at"})

    expert = models.ForeignKey(
        "accounts.CustomUser",
        on_delete=models.PROTECT,
        related_name="commissions",
    )
    organization = models.ForeignKey(
        "accounts.Organization",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="commissions",
    )
    meeting = models.OneToOneField(
        "bookings.Meeting",
        on_delete=models.PROTECT,
        related_name="commission",
    )

    gross_amount_cents = models.PositiveIntegerField()
    commission_rate_bp = models.PositiveIntegerField()
    commission_amount_cents = models.PositiveIntegerField()
    net_amount_cents = models.PositiveIntegerField()
    currency = models.CharField(max_length=10, default="usd")

    stripe_payment_intent_id = models.CharField(max_length=255)
    stripe_transfer_id = models.CharField(max_length=255, blank=True)

    status = models.CharField(max_length=20, choices=CommissionStatus.choices, default=CommissionStatus.PENDING)
    processed_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    tier_level_at_transaction = models.CharField(max_length=20, choices=TierLevel.choices)
    plan_type_at_transaction = models.CharField(max_length=20, choices=PlanType.choices)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Transaction commission"
        verbose_name_plural = "Transaction commissions"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["expert", "created_at"], name="billing_tra_expert__3f6d21_idx"),
        ]

    def __str__(self):
        return f"Commission {self.commission_amount_cents}¢ @ {self.commission_rate_bp}bp meeting={self.meeting_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            update_fields = kwargs.get("update_fields")
            if update_fields is None or not set(update_fields) <= self.MUTABLE_FIELDS:
                raise ImmutableRecordError(
                    f"Commission {self.pk} is a frozen snapshot; only {sorted(self.MUTABLE_FIELDS)} may be updated."
                )
            if "updated_at" not in update_fields:
                kwargs["update_fields"] = list(update_fields) + ["updated_at"]
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError("Commission records are never deleted.")

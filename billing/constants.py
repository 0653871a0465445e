"""
Billing enums shared by models, services and the rate table.
"""
from django.db import models


class PlanType(models.TextChoices):
    """How an organization pays the platform. COMMISSION means no subscription."""
    COMMISSION = "commission", "Commission only"
    MONTHLY = "monthly", "Monthly subscription"
    ANNUAL = "annual", "Annual subscription"
    TEAM = "team", "Team subscription"


class TierLevel(models.TextChoices):
    COMMUNITY = "community", "Community"
    TOP = "top", "Top"
    STARTER = "starter", "Team Starter"
    PROFESSIONAL = "professional", "Team Professional"
    ENTERPRISE = "enterprise", "Team Enterprise"


class BillingInterval(models.TextChoices):
    MONTH = "month", "Monthly"
    YEAR = "year", "Yearly"


class SubscriptionStatus(models.TextChoices):
    """
    Stripe subscription states we mirror.
    Only ACTIVE and TRIALING make the subscribed rate apply.
    """
    ACTIVE = "active", "Active"
    TRIALING = "trialing", "Trialing"
    PAST_DUE = "past_due", "Past due"
    CANCELED = "canceled", "Canceled"


RATE_BEARING_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class CommissionStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PROCESSED = "processed", "Processed"
    REFUNDED = "refunded", "Refunded"
    DISPUTED = "disputed", "Disputed"


class SubscriptionEventType(models.TextChoices):
    PLAN_CREATED = "plan_created", "Plan created"
    PLAN_CHANGED = "plan_changed", "Plan changed"
    SUBSCRIPTION_CANCELED = "subscription_canceled", "Subscription canceled"
    SUBSCRIPTION_RENEWED = "subscription_renewed", "Subscription renewed"

"""
Identity / organization directory.

The only place that turns a user's role into a commission tier. Everything that
needs "which tier is this expert" or "which organization owns this user" goes
through here so the rate table stays the single branch point on tier.
"""
from django.db import models

from accounts.models import CustomUser, OrganizationMembership


class ExpertTier(models.TextChoices):
    COMMUNITY = "community", "Community"
    TOP = "top", "Top"


class DirectoryLookupError(Exception):
    """Raised when a user, expert or organization cannot be resolved."""
    pass


# Lecturers are billed as top experts.
TOP_TIER_ROLES = ("expert_top", "expert_lecturer")


def tier_for_role(role: str) -> str:
    return ExpertTier.TOP if role in TOP_TIER_ROLES else ExpertTier.COMMUNITY


def get_expert_tier(expert_id) -> str:
    """
    Return the ExpertTier value for an expert user.

    Raises:
        DirectoryLookupError: user missing or not an expert.
    """
    role = CustomUser.objects.filter(pk=expert_id).values_list("role", flat=True).first()
    if role is None:
        raise DirectoryLookupError(f"User {expert_id} not found.")
    if role not in CustomUser.EXPERT_ROLES:
        raise DirectoryLookupError(f"User {expert_id} is not an expert (role={role}).")
    return tier_for_role(role)


def get_organization_for_user(user_id):
    """
    Return the id of the organization owning the user's billing.

    Owner memberships win over plain memberships; oldest first.
    """
    membership = (
        OrganizationMembership.objects.filter(user_id=user_id)
        .order_by(
            models.Case(
                models.When(role="owner", then=0),
                models.When(role="admin", then=1),
                default=2,
                output_field=models.IntegerField(),
            ),
            "created_at",
        )
        .values_list("organization_id", flat=True)
        .first()
    )
    if membership is None:
        raise DirectoryLookupError(f"No organization found for user {user_id}.")
    return membership

"""
Billing configuration: single source of truth for commission rates and plan prices.

All monetary amounts are in cents (integer); rates are basis points (100 bp = 1%).
Safe to import from views, services, and (read-only) expose to templates when needed.
"""
from billing.constants import BillingInterval, PlanType, TierLevel

# Rate used when nothing else can be resolved (community expert, no subscription).
DEFAULT_COMMISSION_RATE_BP = 2000

# Expert tier x plan type -> commission basis points.
# Literal data: the business sets each cell independently.
COMMISSION_RATE_TABLE = {
    TierLevel.COMMUNITY: {
        PlanType.COMMISSION: 2000,
        PlanType.MONTHLY: 1200,
        PlanType.ANNUAL: 1200,
        PlanType.TEAM: 1200,
    },
    TierLevel.TOP: {
        PlanType.COMMISSION: 1500,
        PlanType.MONTHLY: 800,
        PlanType.ANNUAL: 800,
        PlanType.TEAM: 800,
    },
}

# Subscription prices per (plan type, tier level): monthly/annual fee in cents.
PLAN_PRICES = {
    (PlanType.MONTHLY, TierLevel.COMMUNITY): {"monthly_fee_cents": 4900, "annual_fee_cents": None},
    (PlanType.MONTHLY, TierLevel.TOP): {"monthly_fee_cents": 15500, "annual_fee_cents": None},
    (PlanType.ANNUAL, TierLevel.COMMUNITY): {"monthly_fee_cents": None, "annual_fee_cents": 49000},
    (PlanType.ANNUAL, TierLevel.TOP): {"monthly_fee_cents": None, "annual_fee_cents": 149000},
    (PlanType.TEAM, TierLevel.STARTER): {"monthly_fee_cents": 9900, "annual_fee_cents": 99000},
    (PlanType.TEAM, TierLevel.PROFESSIONAL): {"monthly_fee_cents": 19900, "annual_fee_cents": 199000},
}

# Billing interval each plan type must carry.
PLAN_INTERVALS = {
    PlanType.COMMISSION: (None,),
    PlanType.MONTHLY: (BillingInterval.MONTH,),
    PlanType.ANNUAL: (BillingInterval.YEAR,),
    PlanType.TEAM: (BillingInterval.MONTH, BillingInterval.YEAR),
}


class UnknownRateError(KeyError):
    pass


def lookup_commission_rate_bp(tier, plan_type) -> int:
    """
    Rate for an expert tier under a plan type.

    Raises:
        UnknownRateError: no cell for (tier, plan_type).
    """
    try:
        return COMMISSION_RATE_TABLE[tier][plan_type]
    except KeyError:
        raise UnknownRateError(f"No commission rate for tier={tier} plan_type={plan_type}") from None


def plan_price(plan_type, tier_level):
    """Fees for a subscription plan, or None when the combination is not sold."""
    return PLAN_PRICES.get((plan_type, tier_level))

"""
Commission resolution engine.

record_commission() freezes, once per meeting, the rate that applied when the
payment settled: expert tier (from the directory) x organization plan type
(from the subscription row) looked up in billing.config. Amounts are integer
cents; the commission rounds half up.

Never raises to the payment path: failures return None and are picked up by
the retry_commissions command.
"""
import logging

from django.db import IntegrityError, transaction
from django.db.models import Count, Sum
from django.utils import timezone

from accounts.directory import DirectoryLookupError, get_expert_tier, get_organization_for_user
from billing import config
from billing.constants import CommissionStatus
from billing.models import TransactionCommission
from billing.services.subscription_service import get_effective_plan_type
from bookings.models import Meeting, PaymentStatus

logger = logging.getLogger(__name__)


class BillingError(Exception):
    pass


def calculate_commission_cents(gross_amount_cents: int, rate_bp: int) -> int:
    """round_half_up(gross * rate / 10000) in integer arithmetic."""
    if gross_amount_cents < 0 or rate_bp < 0:
        raise BillingError("Gross amount and rate must not be negative.")
    return (gross_amount_cents * rate_bp + 5000) // 10000


def _resolve_organization_id(meeting):
    """
    Organization the meeting is billed to. Raises DirectoryLookupError when the
    meeting has none and the directory cannot name one either.
    """
    if meeting.organization_id:
        return meeting.organization_id
    return get_organization_for_user(meeting.expert_id)


def resolve_rate(expert_id, organization_id=None):
    """
    Return (tier, plan_type, rate_bp) for an expert right now.
    Raises DirectoryLookupError or config.UnknownRateError.
    """
    tier = get_expert_tier(expert_id)
    if organization_id is None:
        try:
            organization_id = get_organization_for_user(expert_id)
        except DirectoryLookupError:
            organization_id = None
    plan_type = get_effective_plan_type(organization_id)
    return tier, plan_type, config.lookup_commission_rate_bp(tier, plan_type)


def record_commission(meeting_id, gross_amount_cents, currency, payment_reference, transfer_id=None):
    """
    Record the commission for one meeting. Idempotent per meeting: an existing
    record is returned as-is, never recomputed.

    Returns:
        TransactionCommission, or None when the commission could not be resolved.
    """
    try:
        existing = TransactionCommission.objects.filter(meeting_id=meeting_id).first()
        if existing is not None:
            return existing

        if not payment_reference:
            logger.error("record_commission: meeting=%s has no payment reference", meeting_id)
            return None

        meeting = Meeting.objects.get(pk=meeting_id)
        gross = int(gross_amount_cents)
        try:
            organization_id = _resolve_organization_id(meeting)
        except DirectoryLookupError as e:
            logger.error("record_commission: meeting=%s has no organization, commission unresolved: %s", meeting_id, e)
            return None
        tier, plan_type, rate_bp = resolve_rate(meeting.expert_id, organization_id)
        commission = calculate_commission_cents(gross, rate_bp)
        now = timezone.now()

        try:
            with transaction.atomic():
                record = TransactionCommission.objects.create(
                    expert_id=meeting.expert_id,
                    organization_id=organization_id,
                    meeting=meeting,
                    gross_amount_cents=gross,
                    commission_rate_bp=rate_bp,
                    commission_amount_cents=commission,
                    net_amount_cents=gross - commission,
                    currency=(currency or "usd").lower()[:10],
                    stripe_payment_intent_id=payment_reference,
                    stripe_transfer_id=transfer_id or "",
                    status=CommissionStatus.PROCESSED,
                    processed_at=now,
                    tier_level_at_transaction=tier,
                    plan_type_at_transaction=plan_type,
                )
        except IntegrityError:
            # Concurrent delivery of the same payment recorded it first.
            winner = TransactionCommission.objects.filter(meeting_id=meeting_id).first()
            if winner is None:
                raise
            return winner

        logger.info(
            "record_commission: meeting=%s gross=%s rate=%sbp commission=%s tier=%s plan=%s",
            meeting_id, gross, rate_bp, commission, tier, plan_type,
        )
        return record
    except Exception as e:
        logger.error("record_commission: unresolved commission meeting=%s payment=%s: %s", meeting_id, payment_reference, e)
        return None


def get_current_commission_rate(expert_id) -> int:
    """Rate a new transaction would get today. Used for pricing previews only."""
    try:
        _, _, rate_bp = resolve_rate(expert_id)
        return rate_bp
    except Exception as e:
        logger.warning("get_current_commission_rate: falling back to default for expert=%s: %s", expert_id, e)
        return config.DEFAULT_COMMISSION_RATE_BP


def mark_commission_refunded(meeting_id, refunded_at=None):
    """Settlement change only; amounts and snapshot stay as recorded."""
    record = TransactionCommission.objects.filter(meeting_id=meeting_id).first()
    if record is None or record.status == CommissionStatus.REFUNDED:
        return record
    record.status = CommissionStatus.REFUNDED
    record.refunded_at = refunded_at or timezone.now()
    record.save(update_fields=["status", "refunded_at"])
    logger.info("mark_commission_refunded: meeting=%s", meeting_id)
    return record


def get_commission_history(expert_id, limit=50):
    return list(
        TransactionCommission.objects.filter(expert_id=expert_id)
        .select_related("meeting")
        .order_by("-created_at")[:limit]
    )


def calculate_total_commissions(expert_id, start=None, end=None):
    """
    Totals over processed commissions, optionally within [start, end).

    Returns:
        dict: {'count', 'gross_amount_cents', 'commission_amount_cents', 'net_amount_cents'}
    """
    qs = TransactionCommission.objects.filter(expert_id=expert_id, status=CommissionStatus.PROCESSED)
    if start is not None:
        qs = qs.filter(created_at__gte=start)
    if end is not None:
        qs = qs.filter(created_at__lt=end)
    totals = qs.aggregate(
        count=Count("id"),
        gross=Sum("gross_amount_cents"),
        commission=Sum("commission_amount_cents"),
        net=Sum("net_amount_cents"),
    )
    return {
        "count": totals["count"] or 0,
        "gross_amount_cents": totals["gross"] or 0,
        "commission_amount_cents": totals["commission"] or 0,
        "net_amount_cents": totals["net"] or 0,
    }


def meetings_missing_commission():
    """Paid meetings whose commission is still unresolved."""
    return (
        Meeting.objects.filter(
            stripe_payment_status=PaymentStatus.SUCCEEDED,
            commission__isnull=True,
            amount_cents__gt=0,
        )
        .exclude(stripe_payment_intent_id__isnull=True)
        .exclude(stripe_payment_intent_id="")
        .select_related("event_type")
        .order_by("created_at")
    )


def retry_missing_commissions(limit=None):
    """
    Record commissions for meetings that have none yet.

    Returns:
        dict: {'checked': int, 'recorded': int, 'failed': int}
    """
    meetings = meetings_missing_commission()
    if limit:
        meetings = meetings[:limit]
    checked = recorded = failed = 0
    for meeting in meetings:
        checked += 1
        record = record_commission(meeting.id, meeting.amount_cents, meeting.event_type.currency, meeting.stripe_payment_intent_id)
        if record is None:
            failed += 1
        else:
            recorded += 1
    return {"checked": checked, "recorded": recorded, "failed": failed}

"""
Billing views: Stripe status, commission-rate preview, commission history, Stripe webhook.
"""
import json
import logging

import stripe
from django.conf import settings
from django.contrib.admin.views.decorators import staff_member_required
from django.contrib.auth.decorators import login_required
from django.http import HttpResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods

from billing.services.stripe_service import check_api_ok, construct_webhook_event, is_configured

logger = logging.getLogger(__name__)

BOOKING_METADATA_KEYS = ("event_type_id", "expert_id", "start_time")


@staff_member_required
def stripe_status(request):
    """
    GET /api/billing/stripe-status/
    Staff-only. Returns JSON: stripe_configured, api_ok (optional Stripe API check).
    """
    return JsonResponse({
        "stripe_configured": is_configured(),
        "api_ok": check_api_ok() if is_configured() else False,
    })


@login_required
@require_GET
def commission_rate_preview(request):
    """
    GET /api/billing/commission-rate/
    Rate the signed-in expert would pay on a booking made now.
    """
    from billing.services.commission_service import get_current_commission_rate

    if not request.user.is_expert:
        return JsonResponse({"error": "Only experts have a commission rate"}, status=403)
    rate_bp = get_current_commission_rate(request.user.pk)
    return JsonResponse({
        "commission_rate_bp": rate_bp,
        "commission_rate_percent": rate_bp / 100,
    })


@login_required
@require_GET
def commission_history(request):
    """
    GET /api/billing/commissions/?limit=50
    The signed-in expert's recorded commissions, newest first, with totals over
    processed ones. Each row shows the rate and tier/plan snapshot it was booked at.
    """
    from billing.services.commission_service import calculate_total_commissions, get_commission_history

    if not request.user.is_expert:
        return JsonResponse({"error": "Only experts have commissions"}, status=403)
    try:
        limit = min(max(int(request.GET.get("limit", 50)), 1), 200)
    except ValueError:
        return JsonResponse({"error": "limit must be an integer"}, status=400)

    records = get_commission_history(request.user.pk, limit=limit)
    return JsonResponse({
        "commissions": [
            {
                "meeting_id": str(record.meeting_id),
                "meeting_start": record.meeting.start_time.isoformat(),
                "gross_amount_cents": record.gross_amount_cents,
                "commission_rate_bp": record.commission_rate_bp,
                "commission_amount_cents": record.commission_amount_cents,
                "net_amount_cents": record.net_amount_cents,
                "currency": record.currency,
                "status": record.status,
                "tier": record.tier_level_at_transaction,
                "plan_type": record.plan_type_at_transaction,
                "created_at": record.created_at.isoformat(),
            }
            for record in records
        ],
        "totals": calculate_total_commissions(request.user.pk),
    })


@csrf_exempt
@require_http_methods(["POST"])
def stripe_webhook(request):
    """
    POST /api/billing/stripe-webhook/
    Stripe webhook endpoint. Verifies signature, then confirms bookings, corrects
    payment statuses, records commissions and mirrors subscriptions.
    Redelivered events are safe: every handler is idempotent.
    """
    payload = request.body
    sig_header = request.META.get("HTTP_STRIPE_SIGNATURE") or ""
    webhook_secret = getattr(settings, "STRIPE_WEBHOOK_SECRET", "") or ""

    if not webhook_secret or not sig_header:
        logger.warning("stripe_webhook: missing STRIPE_WEBHOOK_SECRET or Stripe-Signature header")
        return HttpResponse(status=400)

    try:
        construct_webhook_event(payload, sig_header)
    except ValueError as e:
        logger.warning("stripe_webhook: invalid payload %s", e)
        return HttpResponse(status=400)
    except stripe.SignatureVerificationError as e:
        logger.warning("stripe_webhook: signature verification failed %s", e)
        return HttpResponse(status=400)

    # Signature verified; read the plain JSON so handlers work with dicts.
    event = json.loads(payload)
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed":
        _handle_checkout_session_completed(obj)
    elif event_type == "payment_intent.succeeded":
        _handle_payment_intent_succeeded(obj)
    elif event_type == "payment_intent.processing":
        _handle_payment_intent_status(obj, "processing")
    elif event_type == "payment_intent.payment_failed":
        _handle_payment_intent_failed(obj)
    elif event_type == "charge.refunded":
        _handle_charge_refunded(obj)
    elif event_type in ("customer.subscription.created", "customer.subscription.updated", "customer.subscription.deleted"):
        _handle_subscription_changed(obj, event.get("id") or "")
    else:
        pass  # ignore other events

    return HttpResponse(status=200)


def _has_booking_metadata(metadata):
    return all(metadata.get(key) for key in BOOKING_METADATA_KEYS)


def _record_commission_for(meeting, amount_cents, currency, pi_id):
    from billing.services.commission_service import record_commission

    if not amount_cents or meeting.stripe_payment_status != "succeeded":
        return
    record = record_commission(meeting.id, amount_cents, currency, pi_id)
    if record is None:
        logger.error("stripe_webhook: commission unresolved meeting=%s pi=%s, retry_commissions will pick it up", meeting.id, pi_id)


def _confirm_from_metadata(pi_id, metadata, **overrides):
    """Run the orchestrator for a paid booking described by Stripe metadata."""
    from bookings.services.booking_service import BookingDetails, confirm_booking

    try:
        details = BookingDetails.from_metadata(metadata, **overrides)
    except ValueError as e:
        logger.error("stripe_webhook: paid booking with unusable metadata pi=%s: %s", pi_id, e)
        return None

    result = confirm_booking(pi_id, details)
    if not result.ok:
        level = logging.ERROR if details.payment_status == "succeeded" else logging.WARNING
        logger.log(
            level,
            "stripe_webhook: booking refused code=%s pi=%s session=%s expert=%s start=%s",
            result.code, pi_id, details.stripe_session_id, details.expert_id, details.start_time,
        )
        return None
    return result.meeting


def _handle_checkout_session_completed(obj):
    """Booking checkout finished. Confirms the meeting; records the commission once paid."""
    from datetime import datetime, timezone as dt_timezone

    metadata = obj.get("metadata") or {}
    if not _has_booking_metadata(metadata):
        return  # not a booking checkout (e.g. subscription signup)

    session_id = obj.get("id")
    pi_id = obj.get("payment_intent")
    if isinstance(pi_id, dict):
        pi_id = pi_id.get("id")
    paid = obj.get("payment_status") == "paid"
    amount_cents = obj.get("amount_total") or int(metadata.get("amount_cents") or 0)
    currency = (obj.get("currency") or "usd").lower()[:10]

    overrides = {
        "payment_status": "succeeded" if paid else "pending",
        "stripe_session_id": session_id,
        "amount_cents": amount_cents,
    }
    if not metadata.get("checkout_started_at") and obj.get("created"):
        overrides["checkout_started_at"] = datetime.fromtimestamp(int(obj["created"]), tz=dt_timezone.utc)

    meeting = _confirm_from_metadata(pi_id, metadata, **overrides)
    if meeting is None:
        return
    logger.info("stripe_webhook: checkout.session.completed session=%s meeting=%s paid=%s", session_id, meeting.id, paid)
    _record_commission_for(meeting, amount_cents, currency, pi_id)


def _handle_payment_intent_succeeded(obj):
    """Correct an existing meeting to succeeded, or confirm it from metadata; then record the commission."""
    from bookings.services.booking_service import update_payment_status

    pi_id = obj.get("id")
    if not pi_id:
        return
    amount_cents = obj.get("amount_received") or obj.get("amount") or 0
    currency = (obj.get("currency") or "usd").lower()[:10]
    metadata = obj.get("metadata") or {}

    meeting = update_payment_status(pi_id, "succeeded")
    if meeting is None:
        if not _has_booking_metadata(metadata):
            logger.warning("stripe_webhook: payment_intent.succeeded without booking pi=%s", pi_id)
            return
        meeting = _confirm_from_metadata(
            pi_id,
            metadata,
            payment_status="succeeded",
            stripe_session_id=metadata.get("stripe_session_id") or None,
            amount_cents=amount_cents,
        )
        if meeting is None:
            return
    logger.info("stripe_webhook: payment_intent.succeeded pi=%s meeting=%s", pi_id, meeting.id)
    _record_commission_for(meeting, amount_cents, currency, pi_id)


def _handle_payment_intent_status(obj, status):
    from bookings.services.booking_service import update_payment_status

    pi_id = obj.get("id")
    if not pi_id:
        return
    meeting = update_payment_status(pi_id, status)
    if meeting is None:
        logger.info("stripe_webhook: payment_intent %s for unknown meeting pi=%s", status, pi_id)
        return
    logger.info("stripe_webhook: meeting=%s payment %s pi=%s", meeting.id, status, pi_id)


def _handle_payment_intent_failed(obj):
    """Failed payment: the slot is released and the guest is told the booking was cancelled."""
    from bookings.services.booking_service import mark_meeting_payment_failed

    pi_id = obj.get("id")
    if not pi_id:
        return
    meeting = mark_meeting_payment_failed(pi_id)
    if meeting is None:
        logger.info("stripe_webhook: payment_intent failed for unknown meeting pi=%s", pi_id)
        return
    error = (obj.get("last_payment_error") or {}).get("message") or ""
    logger.info("stripe_webhook: meeting=%s payment failed pi=%s %s", meeting.id, pi_id, error)


def _handle_charge_refunded(charge_obj):
    """Full refund: meeting -> refunded (frees the slot), commission -> refunded."""
    from billing.services.commission_service import mark_commission_refunded
    from bookings.services.booking_service import mark_meeting_refunded

    pi_id = charge_obj.get("payment_intent")
    if isinstance(pi_id, dict):
        pi_id = pi_id.get("id")
    if not pi_id:
        return
    if not charge_obj.get("refunded"):
        logger.info("stripe_webhook: partial refund pi=%s amount_refunded=%s, meeting kept", pi_id, charge_obj.get("amount_refunded"))
        return
    meeting = mark_meeting_refunded(pi_id)
    if meeting is None:
        logger.warning("stripe_webhook: charge.refunded for unknown meeting pi=%s", pi_id)
        return
    mark_commission_refunded(meeting.id)
    logger.info("stripe_webhook: charge.refunded pi=%s meeting=%s refunded", pi_id, meeting.id)


def _handle_subscription_changed(obj, stripe_event_id):
    from billing.services.subscription_service import SubscriptionError, sync_from_stripe

    try:
        plan = sync_from_stripe(obj, stripe_event_id=stripe_event_id)
    except SubscriptionError as e:
        logger.error("stripe_webhook: subscription sync failed sub=%s: %s", obj.get("id"), e)
        return
    if plan is not None:
        logger.info("stripe_webhook: subscription sub=%s org=%s now %s/%s", obj.get("id"), plan.organization_id, plan.plan_type, plan.status)

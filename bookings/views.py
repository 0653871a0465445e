"""
Booking JSON endpoints used by the public checkout page.
"""
import json
import logging
from datetime import timedelta

from django.core.exceptions import ValidationError
from django.http import JsonResponse
from django.utils.dateparse import parse_datetime
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from bookings.models import EventType, SlotReservation
from bookings.services.reservation_service import ReservationConflict, release_reservation, reserve_slot

logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def reserve(request):
    """
    POST /api/bookings/reservations/
    Body: {"event_type_id", "start_time" (ISO 8601 with offset), "guest_email"}
    201 with reservation id and expiry, 409 when the slot is taken or held, 400 on bad input.
    """
    try:
        data = json.loads(request.body or b"{}")
    except (ValueError, UnicodeDecodeError):
        return JsonResponse({"success": False, "error": "Invalid JSON body"}, status=400)

    start_time = parse_datetime(str(data.get("start_time") or ""))
    guest_email = (data.get("guest_email") or "").strip()
    event_type_id = data.get("event_type_id")
    if start_time is None or start_time.tzinfo is None:
        return JsonResponse({"success": False, "error": "start_time must be an ISO 8601 datetime with offset"}, status=400)
    if not guest_email or "@" not in guest_email:
        return JsonResponse({"success": False, "error": "guest_email is required"}, status=400)

    try:
        event_type = EventType.objects.filter(pk=event_type_id, is_active=True).first()
    except (ValueError, ValidationError):
        event_type = None
    if event_type is None:
        return JsonResponse({"success": False, "code": "EVENT_NOT_FOUND", "error": "This event is no longer available."}, status=404)

    try:
        reservation_id = reserve_slot(
            event_type.expert_id,
            start_time,
            guest_email,
            event_type_id=event_type.pk,
            end_time=start_time + timedelta(minutes=event_type.duration_minutes),
        )
    except ReservationConflict as e:
        logger.info("reserve: %s for event_type=%s start=%s", e.code, event_type.pk, start_time)
        return JsonResponse({"success": False, "code": e.code, "error": e.message}, status=409)
    except ValueError as e:
        return JsonResponse({"success": False, "error": str(e)}, status=400)

    reservation = SlotReservation.objects.get(pk=reservation_id)
    return JsonResponse(
        {
            "success": True,
            "reservation_id": str(reservation.id),
            "expires_at": reservation.expires_at.isoformat(),
        },
        status=201,
    )


@csrf_exempt
@require_POST
def release(request, reservation_id):
    """
    POST /api/bookings/reservations/<id>/release/
    Always 200; released is False when there was nothing to drop.
    """
    released = release_reservation(reservation_id)
    return JsonResponse({"success": True, "released": released})

"""
Slot reservation store: short-lived holds on (expert, start_time) during checkout.

A live hold blocks other guests only. Expired holds count as absent; they are
deleted by the next reserver of the slot or by cleanup_expired_reservations.
The (expert, start_time) unique constraint decides between concurrent reservers.
"""
import logging
import uuid
from datetime import timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from bookings.models import SLOT_RELEASED_STATUSES, Meeting, SlotReservation

logger = logging.getLogger(__name__)

SLOT_TEMPORARILY_RESERVED = "SLOT_TEMPORARILY_RESERVED"
SLOT_ALREADY_BOOKED = "SLOT_ALREADY_BOOKED"


class ReservationConflict(Exception):
    """Raised when a slot is held or booked by another guest."""

    def __init__(self, code, message):
        super().__init__(message)
        self.code = code
        self.message = message


def _normalize_email(email):
    return (email or "").strip().lower()


def default_ttl():
    return timedelta(minutes=getattr(settings, "SLOT_RESERVATION_TTL_MINUTES", 15))


def find_conflicting_reservation(expert_id, start_time, guest_email, now=None):
    """Live reservation on the slot held by someone other than guest_email, or None."""
    now = now or timezone.now()
    return (
        SlotReservation.objects.filter(expert_id=expert_id, start_time=start_time, expires_at__gt=now)
        .exclude(guest_email=_normalize_email(guest_email))
        .first()
    )


def find_guest_reservation(expert_id, start_time, guest_email):
    """The guest's own reservation on the slot (live or expired), or None."""
    return SlotReservation.objects.filter(
        expert_id=expert_id,
        start_time=start_time,
        guest_email=_normalize_email(guest_email),
    ).first()


def _booked_by_other_guest(expert_id, start_time, guest_email):
    return (
        Meeting.objects.filter(expert_id=expert_id, start_time=start_time)
        .exclude(stripe_payment_status__in=SLOT_RELEASED_STATUSES)
        .exclude(guest_email=guest_email)
        .exists()
    )


def reserve_slot(expert_id, start_time, guest_email, ttl=None, *, event_type_id=None, end_time=None, now=None):
    """
    Hold a slot for a guest.

    Re-reserving by the same guest extends the hold and keeps its id.

    Returns:
        uuid.UUID: reservation id

    Raises:
        ReservationConflict: SLOT_TEMPORARILY_RESERVED if another guest holds the slot,
            SLOT_ALREADY_BOOKED if another guest already has a meeting there.
        ValueError: missing expert, start time or guest email, or non-positive ttl.
    """
    guest_email = _normalize_email(guest_email)
    if not expert_id or start_time is None or not guest_email:
        raise ValueError("expert_id, start_time and guest_email are required.")
    ttl = ttl if ttl is not None else default_ttl()
    if ttl <= timedelta(0):
        raise ValueError("ttl must be positive.")
    now = now or timezone.now()
    expires_at = now + ttl

    if _booked_by_other_guest(expert_id, start_time, guest_email):
        raise ReservationConflict(SLOT_ALREADY_BOOKED, "This time slot has already been booked. Please choose a different time.")

    with transaction.atomic():
        existing = (
            SlotReservation.objects.select_for_update()
            .filter(expert_id=expert_id, start_time=start_time)
            .first()
        )
        if existing is not None:
            if existing.guest_email == guest_email:
                existing.expires_at = expires_at
                update_fields = ["expires_at"]
                if event_type_id and existing.event_type_id != event_type_id:
                    existing.event_type_id = event_type_id
                    update_fields.append("event_type")
                if end_time and existing.end_time != end_time:
                    existing.end_time = end_time
                    update_fields.append("end_time")
                existing.save(update_fields=update_fields)
                logger.info("reserve_slot: extended reservation=%s expert=%s start=%s", existing.id, expert_id, start_time)
                return existing.id
            if existing.expires_at > now:
                raise ReservationConflict(
                    SLOT_TEMPORARILY_RESERVED,
                    "This time slot is temporarily reserved by another guest. Please choose a different time.",
                )
            logger.info("reserve_slot: replacing expired reservation=%s", existing.id)
            existing.delete()

        try:
            with transaction.atomic():
                reservation = SlotReservation.objects.create(
                    id=uuid.uuid4(),
                    expert_id=expert_id,
                    event_type_id=event_type_id,
                    guest_email=guest_email,
                    start_time=start_time,
                    end_time=end_time,
                    expires_at=expires_at,
                    created_at=now,
                )
        except IntegrityError:
            # A concurrent reserver inserted first.
            winner = SlotReservation.objects.filter(expert_id=expert_id, start_time=start_time).first()
            if winner is not None and winner.guest_email == guest_email:
                return winner.id
            raise ReservationConflict(
                SLOT_TEMPORARILY_RESERVED,
                "This time slot is temporarily reserved by another guest. Please choose a different time.",
            )

    logger.info("reserve_slot: created reservation=%s expert=%s start=%s expires=%s", reservation.id, expert_id, start_time, expires_at)
    return reservation.id


def release_reservation(reservation_id):
    """
    Drop a hold. Idempotent: missing, expired or malformed ids are ignored.
    Returns True if a row was deleted.
    """
    try:
        reservation_uuid = uuid.UUID(str(reservation_id))
    except (TypeError, ValueError, AttributeError):
        logger.info("release_reservation: ignoring malformed id %s", reservation_id)
        return False
    deleted, _ = SlotReservation.objects.filter(pk=reservation_uuid).delete()
    return deleted > 0


def release_slot_reservations(expert_id, start_time):
    """Delete every hold on the slot; called when a meeting supersedes them."""
    deleted, _ = SlotReservation.objects.filter(expert_id=expert_id, start_time=start_time).delete()
    return deleted

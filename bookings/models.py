"""
Booking models: what experts offer (EventType, Schedule), short-lived holds
during checkout (SlotReservation) and the confirmed booking ledger (Meeting).

The database constraints here are the source of truth for slot exclusivity;
service-level checks only exist to return a friendlier result earlier.
"""
import uuid

from django.db import models
from django.db.models import Q
from django.utils import timezone

from general.exceptions import ImmutableRecordError


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"


# Every status that still occupies the slot. NULL (free booking) also occupies it.
SLOT_HOLDING_STATUSES = [
    PaymentStatus.PENDING,
    PaymentStatus.PROCESSING,
    PaymentStatus.SUCCEEDED,
]

# Meetings in these statuses stay in the ledger but the slot is bookable again.
SLOT_RELEASED_STATUSES = [
    PaymentStatus.FAILED,
    PaymentStatus.REFUNDED,
]

# Stored as calendar_event_id when a provider created an event without returning an id.
UNTRACKED_CALENDAR_EVENT = "untracked"


class EventType(models.Model):
    """A bookable offering of an expert (e.g. 50 min consultation)."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    expert = models.ForeignKey("accounts.CustomUser", on_delete=models.CASCADE, related_name="event_types")
    title = models.CharField(max_length=200)
    slug = models.SlugField(max_length=200)
    description = models.TextField(blank=True)
    duration_minutes = models.PositiveIntegerField(default=50)
    price_cents = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=10, default="usd")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["title"]
        constraints = [
            models.UniqueConstraint(fields=["expert", "slug"], name="unique_event_type_slug_per_expert"),
        ]

    def __str__(self):
        return f"{self.title} ({self.duration_minutes} min)"

    @property
    def is_free(self):
        return self.price_cents == 0


class Schedule(models.Model):
    """
    Weekly availability rules of an expert. Windows are wall-clock times in
    `timezone`; buffers and notice are minutes.
    """
    expert = models.OneToOneField("accounts.CustomUser", on_delete=models.CASCADE, related_name="schedule")
    timezone = models.CharField(max_length=64, default="UTC")
    minimum_notice_minutes = models.PositiveIntegerField(default=1440)
    before_event_buffer_minutes = models.PositiveIntegerField(default=15)
    after_event_buffer_minutes = models.PositiveIntegerField(default=15)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Schedule for {self.expert} ({self.timezone})"


class AvailabilityWindow(models.Model):
    WEEKDAY_CHOICES = [
        (0, "Monday"),
        (1, "Tuesday"),
        (2, "Wednesday"),
        (3, "Thursday"),
        (4, "Friday"),
        (5, "Saturday"),
        (6, "Sunday"),
    ]

    schedule = models.ForeignKey("bookings.Schedule", on_delete=models.CASCADE, related_name="windows")
    weekday = models.PositiveSmallIntegerField(choices=WEEKDAY_CHOICES)
    start_time = models.TimeField()
    end_time = models.TimeField()

    class Meta:
        ordering = ["weekday", "start_time"]

    def __str__(self):
        return f"{self.get_weekday_display()} {self.start_time:%H:%M}-{self.end_time:%H:%M}"


class SlotReservation(models.Model):
    """
    Temporary hold on (expert, start_time) while a guest pays.
    Expiry is lazy: readers compare expires_at with now. Rows past expiry are
    deleted by the next reserver of the slot or by cleanup_expired_reservations.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    expert = models.ForeignKey("accounts.CustomUser", on_delete=models.CASCADE, related_name="slot_reservations")
    event_type = models.ForeignKey(
        "bookings.EventType",
        on_delete=models.CASCADE,
        related_name="reservations",
        null=True,
        blank=True,
    )
    guest_email = models.EmailField()
    start_time = models.DateTimeField()
    end_time = models.DateTimeField(null=True, blank=True)
    expires_at = models.DateTimeField()
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["start_time"]
        constraints = [
            models.UniqueConstraint(fields=["expert", "start_time"], name="unique_reservation_per_slot"),
        ]
        indexes = [
            models.Index(fields=["expires_at"], name="bookings_sl_expires_4b1e7a_idx"),
        ]

    def __str__(self):
        return f"Hold {self.expert_id} @ {self.start_time} for {self.guest_email}"

    def is_live(self, now=None):
        return self.expires_at > (now or timezone.now())


class Meeting(models.Model):
    """
    Confirmed booking. Append-only: after insert only the payment status,
    an empty payment intent id and the calendar event (id and URL) may be written.
    Failed and refunded meetings stay in the table but free the slot.
    """
    MUTABLE_FIELDS = frozenset({
        "stripe_payment_status",
        "stripe_payment_intent_id",
        "calendar_event_id",
        "meeting_url",
        "updated_at",
    })

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    expert = models.ForeignKey("accounts.CustomUser", on_delete=models.PROTECT, related_name="meetings")
    event_type = models.ForeignKey("bookings.EventType", on_delete=models.PROTECT, related_name="meetings")
    organization = models.ForeignKey(
        "accounts.Organization",
        on_delete=models.SET_NULL,
        related_name="meetings",
        null=True,
        blank=True,
    )
    guest_email = models.EmailField()
    guest_name = models.CharField(max_length=200)
    guest_notes = models.TextField(blank=True)
    start_time = models.DateTimeField()
    end_time = models.DateTimeField()
    timezone = models.CharField(max_length=64, default="UTC")
    locale = models.CharField(max_length=16, default="en")
    stripe_payment_intent_id = models.CharField(max_length=255, unique=True, null=True, blank=True)
    stripe_session_id = models.CharField(max_length=255, unique=True, null=True, blank=True)
    stripe_payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        null=True,
        blank=True,
        help_text="Empty for free bookings",
    )
    amount_cents = models.PositiveIntegerField(null=True, blank=True)
    application_fee_cents = models.PositiveIntegerField(null=True, blank=True)
    calendar_event_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Empty until the calendar provider created the event",
    )
    meeting_url = models.URLField(max_length=500, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-start_time"]
        constraints = [
            models.UniqueConstraint(
                fields=["expert", "start_time"],
                condition=Q(stripe_payment_status__isnull=True) | Q(stripe_payment_status__in=SLOT_HOLDING_STATUSES),
                name="unique_active_meeting_per_slot",
            ),
        ]
        indexes = [
            models.Index(fields=["event_type", "start_time", "guest_email"], name="bookings_me_event_t_9a3c52_idx"),
        ]

    def __str__(self):
        return f"Meeting {self.id} {self.expert_id} @ {self.start_time}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            update_fields = kwargs.get("update_fields")
            if update_fields is None or not set(update_fields) <= self.MUTABLE_FIELDS:
                raise ImmutableRecordError(
                    f"Meeting {self.id} is immutable; only {sorted(self.MUTABLE_FIELDS)} may be updated."
                )
            if "stripe_payment_intent_id" in update_fields:
                stored = type(self).objects.filter(pk=self.pk).values_list("stripe_payment_intent_id", flat=True).first()
                if stored and stored != self.stripe_payment_intent_id:
                    raise ImmutableRecordError(f"Meeting {self.id} already has payment intent {stored}.")
            if "updated_at" not in update_fields:
                kwargs["update_fields"] = list(update_fields) + ["updated_at"]
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError(f"Meeting {self.id} cannot be deleted; refund or fail its payment instead.")

    @property
    def is_free(self):
        return self.stripe_payment_status is None

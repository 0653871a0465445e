import uuid

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("accounts", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="EventType",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("title", models.CharField(max_length=200)),
                ("slug", models.SlugField(max_length=200)),
                ("description", models.TextField(blank=True)),
                ("duration_minutes", models.PositiveIntegerField(default=50)),
                ("price_cents", models.PositiveIntegerField(default=0)),
                ("currency", models.CharField(default="usd", max_length=10)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("expert", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="event_types", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["title"],
            },
        ),
        migrations.AddConstraint(
            model_name="eventtype",
            constraint=models.UniqueConstraint(fields=("expert", "slug"), name="unique_event_type_slug_per_expert"),
        ),
        migrations.CreateModel(
            name="Schedule",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("timezone", models.CharField(default="UTC", max_length=64)),
                ("minimum_notice_minutes", models.PositiveIntegerField(default=1440)),
                ("before_event_buffer_minutes", models.PositiveIntegerField(default=15)),
                ("after_event_buffer_minutes", models.PositiveIntegerField(default=15)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("expert", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="schedule", to=settings.AUTH_USER_MODEL)),
            ],
        ),
        migrations.CreateModel(
            name="AvailabilityWindow",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("weekday", models.PositiveSmallIntegerField(choices=[(0, "Monday"), (1, "Tuesday"), (2, "Wednesday"), (3, "Thursday"), (4, "Friday"), (5, "Saturday"), (6, "Sunday")])),
                ("start_time", models.TimeField()),
                ("end_time", models.TimeField()),
                ("schedule", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="windows", to="bookings.schedule")),
            ],
            options={
                "ordering": ["weekday", "start_time"],
            },
        ),
        migrations.CreateModel(
            name="SlotReservation",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("guest_email", models.EmailField(max_length=254)),
                ("start_time", models.DateTimeField()),
                ("end_time", models.DateTimeField(blank=True, null=True)),
                ("expires_at", models.DateTimeField()),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("event_type", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name="reservations", to="bookings.eventtype")),
                ("expert", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="slot_reservations", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["start_time"],
            },
        ),
        migrations.AddConstraint(
            model_name="slotreservation",
            constraint=models.UniqueConstraint(fields=("expert", "start_time"), name="unique_reservation_per_slot"),
        ),
        migrations.AddIndex(
            model_name="slotreservation",
            index=models.Index(fields=["expires_at"], name="bookings_sl_expires_4b1e7a_idx"),
        ),
        migrations.CreateModel(
            name="Meeting",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("guest_email", models.EmailField(max_length=254)),
                ("guest_name", models.CharField(max_length=200)),
                ("guest_notes", models.TextField(blank=True)),
                ("start_time", models.DateTimeField()),
                ("end_time", models.DateTimeField()),
                ("timezone", models.CharField(default="UTC", max_length=64)),
                ("locale", models.CharField(default="en", max_length=16)),
                ("stripe_payment_intent_id", models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ("stripe_session_id", models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ("stripe_payment_status", models.CharField(blank=True, choices=[("pending", "Pending"), ("processing", "Processing"), ("succeeded", "Succeeded"), ("failed", "Failed"), ("refunded", "Refunded")], help_text="Empty for free bookings", max_length=20, null=True)),
                ("amount_cents", models.PositiveIntegerField(blank=True, null=True)),
                ("application_fee_cents", models.PositiveIntegerField(blank=True, null=True)),
                ("calendar_event_id", models.CharField(blank=True, help_text="Empty until the calendar provider created the event", max_length=255)),
                ("meeting_url", models.URLField(blank=True, max_length=500)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("event_type", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="meetings", to="bookings.eventtype")),
                ("expert", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="meetings", to=settings.AUTH_USER_MODEL)),
                ("organization", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="meetings", to="accounts.organization")),
            ],
            options={
                "ordering": ["-start_time"],
            },
        ),
        migrations.AddConstraint(
            model_name="meeting",
            constraint=models.UniqueConstraint(
                condition=models.Q(("stripe_payment_status__isnull", True), ("stripe_payment_status__in", ["pending", "processing", "succeeded"]), _connector="OR"),
                fields=("expert", "start_time"),
                name="unique_active_meeting_per_slot",
            ),
        ),
        migrations.AddIndex(
            model_name="meeting",
            index=models.Index(fields=["event_type", "start_time", "guest_email"], name="bookings_me_event_t_9a3c52_idx"),
        ),
    ]

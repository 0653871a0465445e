from django.contrib import admin
from .models import AvailabilityWindow, EventType, Meeting, Schedule, SlotReservation


@admin.register(EventType)
class EventTypeAdmin(admin.ModelAdmin):
    list_display = ("title", "expert", "duration_minutes", "price_cents", "currency", "is_active")
    list_filter = ("is_active", "currency")
    search_fields = ("title", "slug", "expert__email")
    prepopulated_fields = {"slug": ("title",)}


class AvailabilityWindowInline(admin.TabularInline):
    model = AvailabilityWindow
    extra = 0


@admin.register(Schedule)
class ScheduleAdmin(admin.ModelAdmin):
    list_display = ("expert", "timezone", "minimum_notice_minutes", "before_event_buffer_minutes", "after_event_buffer_minutes")
    search_fields = ("expert__email",)
    inlines = [AvailabilityWindowInline]


@admin.register(SlotReservation)
class SlotReservationAdmin(admin.ModelAdmin):
    list_display = ("expert", "guest_email", "start_time", "expires_at", "created_at")
    search_fields = ("guest_email", "expert__email")
    readonly_fields = ("created_at",)


@admin.register(Meeting)
class MeetingAdmin(admin.ModelAdmin):
    """Read-only: meetings are written by the booking orchestrator and payment webhooks."""
    list_display = ("id", "expert", "guest_email", "start_time", "stripe_payment_status", "amount_cents", "calendar_event_id", "created_at")
    list_filter = ("stripe_payment_status",)
    search_fields = ("guest_email", "expert__email", "stripe_payment_intent_id", "stripe_session_id")

    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

from django.contrib import admin
from .models import SubscriptionEvent, SubscriptionPlan, TransactionCommission


@admin.register(SubscriptionPlan)
class SubscriptionPlanAdmin(admin.ModelAdmin):
    list_display = ("organization", "plan_type", "tier_level", "billing_interval", "status", "cancel_at_period_end", "current_period_end")
    list_filter = ("plan_type", "tier_level", "status", "cancel_at_period_end")
    search_fields = ("organization__name", "stripe_subscription_id")
    readonly_fields = ("created_at", "updated_at")


@admin.register(SubscriptionEvent)
class SubscriptionEventAdmin(admin.ModelAdmin):
    list_display = ("organization", "event_type", "previous_plan_type", "new_plan_type", "created_at")
    list_filter = ("event_type",)
    search_fields = ("organization__name", "stripe_subscription_id", "stripe_event_id")

    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(TransactionCommission)
class TransactionCommissionAdmin(admin.ModelAdmin):
    list_display = ("meeting", "expert", "gross_amount_cents", "commission_rate_bp", "commission_amount_cents", "status", "tier_level_at_transaction", "plan_type_at_transaction", "created_at")
    list_filter = ("status", "tier_level_at_transaction", "plan_type_at_transaction")
    search_fields = ("stripe_payment_intent_id", "expert__email")

    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

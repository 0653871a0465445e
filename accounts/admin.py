from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from django.contrib.auth.models import Group

from .models import CustomUser, Organization, OrganizationMembership

# Hide Authentication and Authorization groups
admin.site.unregister(Group)


class MembershipInline(admin.TabularInline):
    model = OrganizationMembership
    extra = 0


class UserAdmin(BaseUserAdmin):
    model = CustomUser
    list_display = ("email", "role", "is_staff", "is_superuser")
    list_filter = ("role", "is_staff", "is_superuser")
    search_fields = ("email", "first_name", "last_name")
    ordering = ("email",)
    inlines = [MembershipInline]
    fieldsets = (
        (None, {"fields": ("email", "password")}),
        ("Profile", {"fields": ("first_name", "last_name", "role", "stripe_customer_id")}),
        ("Permissions", {"fields": ("is_active", "is_staff", "is_superuser", "groups", "user_permissions")}),
        ("Important dates", {"fields": ("last_login", "date_joined")}),
    )
    add_fieldsets = (
        (None, {"classes": ("wide",), "fields": ("email", "role", "password1", "password2")}),
    )


@admin.register(Organization)
class OrganizationAdmin(admin.ModelAdmin):
    list_display = ("name", "org_type", "created_at")
    list_filter = ("org_type",)
    search_fields = ("name",)
    inlines = [MembershipInline]


admin.site.register(CustomUser, UserAdmin)

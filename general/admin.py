from django.contrib import admin
from .models import Notification


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ('title', 'user', 'template', 'created_at', 'is_opened')
    list_filter = ('template', 'is_opened')
    search_fields = ('title', 'user__email')
    readonly_fields = ('batch_id', 'payload', 'created_at')

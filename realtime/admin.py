from django.contrib import admin

from .models import RealtimeEvent


@admin.register(RealtimeEvent)
class RealtimeEventAdmin(admin.ModelAdmin):
    list_display = ['id', 'event_type', 'priority', 'source', 'target_user', 'blood_type', 'created_at']
    list_filter = ['event_type', 'priority']
    readonly_fields = ['created_at']

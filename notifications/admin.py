from django.contrib import admin

from .models import Notification, NotificationPreference


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ['id', 'user', 'notification_type', 'priority', 'status', 'delivery_attempts', 'created_at', 'sent_at']
    list_filter = ['status', 'notification_type', 'priority']
    search_fields = ['title', 'user__username', 'user__email']
    readonly_fields = ['delivery_log', 'created_at', 'sent_at']

    actions = ['requeue']

    @admin.action(description='Requeue selected notifications')
    def requeue(self, request, queryset):
        updated = queryset.exclude(status=Notification.PENDING).update(
            status=Notification.PENDING, delivery_attempts=0
        )
        self.message_user(request, f'Requeued {updated} notification(s).')


@admin.register(NotificationPreference)
class NotificationPreferenceAdmin(admin.ModelAdmin):
    list_display = ['user', 'push_enabled', 'sms_enabled', 'email_enabled', 'emergency_only']
    search_fields = ['user__username']

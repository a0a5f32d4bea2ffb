from django.conf import settings
from django.db import models


class Notification(models.Model):
    TYPE_CHOICES = [
        ('blood_request', 'Blood Request'),
        ('emergency', 'Emergency'),
        ('donor_match', 'Donor Match'),
        ('status_update', 'Status Update'),
        ('reminder', 'Reminder'),
        ('system', 'System'),
        ('critical_inventory', 'Critical Inventory'),
        ('inventory_warning', 'Inventory Warning'),
    ]

    PENDING = 'pending'
    SENT = 'sent'
    FAILED = 'failed'
    DELIVERED = 'delivered'
    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (SENT, 'Sent'),
        (FAILED, 'Failed'),
        (DELIVERED, 'Delivered'),
    ]

    PRIORITY_CHOICES = [
        ('low', 'Low'),
        ('normal', 'Normal'),
        ('medium', 'Medium'),
        ('high', 'High'),
        ('critical', 'Critical'),
    ]

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='notifications'
    )
    notification_type = models.CharField(max_length=20, choices=TYPE_CHOICES)
    title = models.CharField(max_length=200)
    message = models.TextField(max_length=1000)
    data = models.JSONField(default=dict, blank=True)

    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=PENDING)
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default='normal')
    channels = models.JSONField(default=list, blank=True)

    delivery_attempts = models.PositiveSmallIntegerField(default=0)
    delivery_log = models.JSONField(default=list, blank=True)
    # Set when quiet hours push delivery back
    scheduled_for = models.DateTimeField(null=True, blank=True)
    sent_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.notification_type} → {self.user} ({self.status})"

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'created_at']),
            models.Index(fields=['user', '-created_at']),
        ]


class NotificationPreference(models.Model):
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='notification_preferences'
    )

    push_enabled = models.BooleanField(default=True)
    sms_enabled = models.BooleanField(default=True)
    email_enabled = models.BooleanField(default=True)
    whatsapp_enabled = models.BooleanField(default=False)
    call_enabled = models.BooleanField(default=False)

    emergency_only = models.BooleanField(default=False)
    quiet_hours_start = models.TimeField(null=True, blank=True)
    quiet_hours_end = models.TimeField(null=True, blank=True)

    blood_request_alerts = models.BooleanField(default=True)
    donation_reminders = models.BooleanField(default=True)
    system_updates = models.BooleanField(default=True)

    updated_at = models.DateTimeField(auto_now=True)

    def channel_enabled(self, channel):
        flag = getattr(self, f'{channel}_enabled', None)
        # in_app has no switch of its own
        return True if flag is None else flag

    def __str__(self):
        return f"Preferences for {self.user}"

from django.conf import settings
from django.db import models

from bloodlink.validators import BLOOD_TYPE_CHOICES


class RealtimeEvent(models.Model):
    EVENT_TYPE_CHOICES = [
        ('blood_request_created', 'Blood Request Created'),
        ('blood_request_updated', 'Blood Request Updated'),
        ('donor_matched', 'Donor Matched'),
        ('donation_scheduled', 'Donation Scheduled'),
        ('donation_completed', 'Donation Completed'),
        ('emergency_alert', 'Emergency Alert'),
        ('supply_shortage', 'Supply Shortage'),
        ('donor_available', 'Donor Available'),
        ('inventory_updated', 'Inventory Updated'),
        ('notification', 'Notification'),
    ]
    PRIORITY_CHOICES = [
        ('low', 'Low'),
        ('normal', 'Normal'),
        ('medium', 'Medium'),
        ('high', 'High'),
        ('critical', 'Critical'),
    ]

    event_type = models.CharField(max_length=30, choices=EVENT_TYPE_CHOICES)
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default='normal')
    source = models.CharField(max_length=50, default='system')
    data = models.JSONField(default=dict, blank=True)

    target_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='realtime_events'
    )
    target_roles = models.JSONField(default=list, blank=True)
    blood_type = models.CharField(max_length=3, choices=BLOOD_TYPE_CHOICES, blank=True)

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    def __str__(self):
        return f"{self.event_type} #{self.pk}"

    class Meta:
        ordering = ['created_at', 'id']

from datetime import date

from django.conf import settings
from django.db import models

from bloodlink.conf import get_setting
from bloodlink.validators import BLOOD_TYPE_CHOICES


# ---------------------------
# Donor Profile
# ---------------------------
class DonorProfile(models.Model):
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='donor_profile'
    )

    full_name = models.CharField(max_length=100)
    phone = models.CharField(max_length=16, db_index=True)
    blood_type = models.CharField(max_length=3, choices=BLOOD_TYPE_CHOICES)
    location = models.CharField(max_length=200, blank=True)

    # Geolocation (optional, only used when allow_location is on)
    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)

    is_available = models.BooleanField(default=True)
    receive_alerts = models.BooleanField(default=True)
    allow_location = models.BooleanField(default=True)

    # Donation tracking
    last_donation_date = models.DateField(null=True, blank=True)
    donation_count = models.PositiveIntegerField(default=0)
    points = models.PositiveIntegerField(default=0)

    medical_conditions = models.TextField(blank=True, max_length=1000)

    # Response tracking
    total_responses = models.PositiveIntegerField(default=0)
    accepted_responses = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def can_donate(self) -> bool:
        if not self.last_donation_date:
            return True
        return (date.today() - self.last_donation_date).days >= get_setting('DONATION_COOLDOWN_DAYS')

    @property
    def response_rate(self):
        """Share of alerts this donor accepted, as a percentage."""
        if not self.total_responses:
            return 0.0
        return round(self.accepted_responses / self.total_responses * 100, 1)

    def __str__(self):
        return f"{self.full_name} ({self.blood_type})"

    class Meta:
        verbose_name = "Donor Profile"
        verbose_name_plural = "Donor Profiles"
        ordering = ['-created_at']


class DonationHistory(models.Model):
    donor = models.ForeignKey(
        DonorProfile,
        on_delete=models.CASCADE,
        related_name='donation_history'
    )
    institution = models.ForeignKey(
        'institutions.Institution',
        on_delete=models.SET_NULL,
        null=True,
        blank=True
    )
    blood_request = models.ForeignKey(
        'institutions.BloodRequest',
        on_delete=models.SET_NULL,
        null=True,
        blank=True
    )

    date_donated = models.DateField()
    units_donated = models.PositiveIntegerField(default=1)
    notes = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.donor.full_name} | {self.date_donated}"

    class Meta:
        ordering = ['-date_donated']
        verbose_name = "Donation History"
        verbose_name_plural = "Donation Histories"


class DonationSchedule(models.Model):
    SCHEDULED = 'scheduled'
    CONFIRMED = 'confirmed'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    NO_SHOW = 'no_show'

    STATUS_CHOICES = [
        (SCHEDULED, 'Scheduled'),
        (CONFIRMED, 'Confirmed'),
        (COMPLETED, 'Completed'),
        (CANCELLED, 'Cancelled'),
        (NO_SHOW, 'No Show'),
    ]

    donor = models.ForeignKey(
        DonorProfile,
        on_delete=models.CASCADE,
        related_name='schedules'
    )
    institution = models.ForeignKey(
        'institutions.Institution',
        on_delete=models.CASCADE,
        related_name='donation_schedules'
    )
    scheduled_date = models.DateTimeField()
    blood_type = models.CharField(max_length=3, choices=BLOOD_TYPE_CHOICES)
    units_to_donate = models.PositiveIntegerField(default=1)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=SCHEDULED)
    notes = models.TextField(blank=True)
    reminder_sent = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.donor.full_name} @ {self.institution.name} on {self.scheduled_date:%Y-%m-%d %H:%M}"

    class Meta:
        ordering = ['scheduled_date']

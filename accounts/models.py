from datetime import timedelta

from django.contrib.auth.models import AbstractUser
from django.db import models
from django.utils import timezone


class CustomUser(AbstractUser):
    DONOR = 'donor'
    HOSPITAL_STAFF = 'hospital_staff'
    BLOOD_BANK_STAFF = 'blood_bank_staff'
    EMERGENCY_RESPONDER = 'emergency_responder'
    ADMIN = 'admin'

    USER_TYPE_CHOICES = (
        (DONOR, 'Donor'),
        (HOSPITAL_STAFF, 'Hospital Staff'),
        (BLOOD_BANK_STAFF, 'Blood Bank Staff'),
        (EMERGENCY_RESPONDER, 'Emergency Responder'),
        (ADMIN, 'Admin'),
    )
    STAFF_TYPES = (HOSPITAL_STAFF, BLOOD_BANK_STAFF)

    user_type = models.CharField(
        max_length=20,
        choices=USER_TYPE_CHOICES,
        default=DONOR
    )
    email = models.EmailField(unique=True)
    phone = models.CharField(max_length=16, blank=True, db_index=True)

    # Staff belong to exactly one institution
    institution = models.ForeignKey(
        'institutions.Institution',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='staff'
    )

    failed_attempts = models.PositiveIntegerField(default=0)
    is_locked = models.BooleanField(default=False)

    password_changed_at = models.DateTimeField(default=timezone.now)
    password_expires_days = models.PositiveIntegerField(default=365)

    def __str__(self):
        return f"{self.username} ({self.user_type})"

    @property
    def is_institution_staff(self):
        return self.user_type in self.STAFF_TYPES

    @property
    def sees_all_requests(self):
        return self.user_type in (self.EMERGENCY_RESPONDER, self.ADMIN) or self.is_superuser

    def is_password_expired(self):
        """Returns True if password has expired"""
        if not self.password_changed_at:
            return False

        expiry_date = self.password_changed_at + timedelta(days=self.password_expires_days)
        return timezone.now() > expiry_date

    def set_password(self, raw_password):
        super().set_password(raw_password)
        self.password_changed_at = timezone.now()

    def register_failed_login(self, max_attempts):
        self.failed_attempts += 1
        if self.failed_attempts >= max_attempts:
            self.is_locked = True
        self.save(update_fields=['failed_attempts', 'is_locked'])

    def reset_failed_logins(self):
        if self.failed_attempts:
            self.failed_attempts = 0
            self.save(update_fields=['failed_attempts'])

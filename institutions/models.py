# institutions/models.py
from django.conf import settings
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models
from django.utils import timezone

from bloodlink.validators import BLOOD_TYPE_CHOICES


class Institution(models.Model):
    HOSPITAL = 'hospital'
    CLINIC = 'clinic'
    BLOOD_BANK = 'blood_bank'
    EMERGENCY_SERVICE = 'emergency_service'

    TYPE_CHOICES = [
        (HOSPITAL, 'Hospital'),
        (CLINIC, 'Clinic'),
        (BLOOD_BANK, 'Blood Bank'),
        (EMERGENCY_SERVICE, 'Emergency Service'),
    ]

    name = models.CharField(max_length=200)
    institution_type = models.CharField(max_length=20, choices=TYPE_CHOICES, default=HOSPITAL)
    location = models.CharField(max_length=200, blank=True)

    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)

    contact_phone = models.CharField(max_length=16, blank=True)
    contact_email = models.EmailField(blank=True)
    license_number = models.CharField(max_length=100, blank=True)

    is_verified = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name

    class Meta:
        ordering = ['name']


class EmergencyAlert(models.Model):
    ALERT_TYPE_CHOICES = [
        ('mass_casualty', 'Mass Casualty'),
        ('natural_disaster', 'Natural Disaster'),
        ('transport_accident', 'Transport Accident'),
        ('medical_emergency', 'Medical Emergency'),
    ]
    SEVERITY_CHOICES = [
        ('low', 'Low'),
        ('medium', 'Medium'),
        ('high', 'High'),
        ('critical', 'Critical'),
    ]
    SEVERITY_RANK = {'critical': 4, 'high': 3, 'medium': 2, 'low': 1}
    BROADCAST_SEVERITIES = ('critical', 'high')

    STATUS_CHOICES = [
        ('active', 'Active'),
        ('resolved', 'Resolved'),
        ('cancelled', 'Cancelled'),
    ]

    alert_type = models.CharField(max_length=30, choices=ALERT_TYPE_CHOICES)
    severity = models.CharField(max_length=10, choices=SEVERITY_CHOICES)
    affected_area = models.JSONField(default=dict, blank=True)
    blood_types_needed = models.JSONField(default=list, blank=True)
    units_required = models.PositiveIntegerField(default=0)
    deadline = models.DateTimeField(null=True, blank=True)
    coordinator = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='coordinated_alerts'
    )
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='active')
    notes = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    resolved_at = models.DateTimeField(null=True, blank=True)

    def __str__(self):
        return f"{self.get_alert_type_display()} ({self.severity})"

    class Meta:
        ordering = ['-created_at']


class BloodRequest(models.Model):
    URGENCY_CHOICES = [
        ('normal', 'Normal - Within 24 Hours'),
        ('urgent', 'Urgent - Within 6 Hours'),
        ('critical', 'Critical - Within 2 Hours'),
        ('emergency', 'Emergency - Life Threatening'),
    ]
    ESCALATING_URGENCIES = ('urgent', 'critical', 'emergency')

    REQUEST_TYPE_CHOICES = [
        ('donation', 'Donation'),
        ('emergency', 'Emergency'),
        ('scheduled', 'Scheduled'),
        ('reserve', 'Reserve'),
    ]

    PENDING = 'pending'
    MATCHED = 'matched'
    PARTIALLY_FULFILLED = 'partially_fulfilled'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    EXPIRED = 'expired'

    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (MATCHED, 'Matched'),
        (PARTIALLY_FULFILLED, 'Partially Fulfilled'),
        (IN_PROGRESS, 'In Progress'),
        (COMPLETED, 'Completed'),
        (CANCELLED, 'Cancelled'),
        (EXPIRED, 'Expired'),
    ]
    ACTIVE_STATUSES = (PENDING, MATCHED, PARTIALLY_FULFILLED, IN_PROGRESS)
    TERMINAL_STATUSES = (COMPLETED, CANCELLED, EXPIRED)

    requester = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='blood_requests'
    )
    institution = models.ForeignKey(
        Institution,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='blood_requests'
    )

    patient_name = models.CharField(max_length=100)
    patient_age = models.PositiveIntegerField(null=True, blank=True)
    hospital_name = models.CharField(max_length=200, blank=True)

    blood_type = models.CharField(max_length=3, choices=BLOOD_TYPE_CHOICES)
    units_needed = models.PositiveIntegerField(
        default=1,
        validators=[MinValueValidator(1), MaxValueValidator(20)]
    )
    urgency_level = models.CharField(max_length=10, choices=URGENCY_CHOICES, default='normal')
    request_type = models.CharField(max_length=10, choices=REQUEST_TYPE_CHOICES, default='donation')

    contact_name = models.CharField(max_length=100, blank=True)
    contact_phone = models.CharField(max_length=16)
    location = models.CharField(max_length=200, blank=True)
    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)

    medical_notes = models.TextField(blank=True)
    additional_info = models.TextField(blank=True)
    tags = models.JSONField(default=list, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PENDING)
    priority_score = models.PositiveSmallIntegerField(default=1)

    expires_at = models.DateTimeField(null=True, blank=True)
    matched_at = models.DateTimeField(null=True, blank=True)

    response_count = models.PositiveIntegerField(default=0)
    escalation_count = models.PositiveIntegerField(default=0)
    assigned_coordinator = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='coordinated_requests'
    )
    emergency_alert = models.ForeignKey(
        EmergencyAlert,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='blood_requests'
    )
    inventory_reserved = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.patient_name} - {self.blood_type} ({self.urgency_level})"

    @property
    def is_active(self):
        return self.status in self.ACTIVE_STATUSES

    @property
    def is_expired(self):
        return self.expires_at is not None and self.expires_at <= timezone.now()

    @property
    def accepted_donor_count(self):
        return self.donor_responses.filter(
            response_type=DonorResponse.ACCEPT,
            status=DonorResponse.CONFIRMED,
        ).count()

    @property
    def hours_waiting(self):
        return (timezone.now() - self.created_at).total_seconds() / 3600

    class Meta:
        ordering = ['-priority_score', '-created_at']
        indexes = [
            models.Index(fields=['status', '-priority_score']),
            models.Index(fields=['blood_type', 'status']),
            models.Index(fields=['expires_at']),
        ]


class DonorResponse(models.Model):
    ACCEPT = 'accept'
    DECLINE = 'decline'
    MAYBE = 'maybe'
    RESPONSE_CHOICES = [
        (ACCEPT, 'Accept'),
        (DECLINE, 'Decline'),
        (MAYBE, 'Maybe'),
    ]

    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    CANCELLED = 'cancelled'
    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (CONFIRMED, 'Confirmed'),
        (CANCELLED, 'Cancelled'),
    ]

    donor = models.ForeignKey(
        'donors.DonorProfile',
        on_delete=models.CASCADE,
        related_name='responses'
    )
    blood_request = models.ForeignKey(
        BloodRequest,
        on_delete=models.CASCADE,
        related_name='donor_responses'
    )

    response_type = models.CharField(max_length=10, choices=RESPONSE_CHOICES)
    eta_minutes = models.PositiveIntegerField(null=True, blank=True)
    notes = models.TextField(blank=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=PENDING)
    confirmed_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.donor.full_name} → {self.response_type}"

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(fields=['donor', 'blood_request'], name='unique_donor_response'),
        ]


class DonorMatch(models.Model):
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('contacted', 'Contacted'),
        ('accepted', 'Accepted'),
        ('declined', 'Declined'),
        ('unavailable', 'Unavailable'),
    ]

    blood_request = models.ForeignKey(
        BloodRequest,
        on_delete=models.CASCADE,
        related_name='matches'
    )
    donor = models.ForeignKey(
        'donors.DonorProfile',
        on_delete=models.CASCADE,
        related_name='matches'
    )

    match_score = models.FloatField(validators=[MinValueValidator(0), MaxValueValidator(1)])
    criteria = models.JSONField(default=dict, blank=True)
    compatibility_score = models.FloatField(default=0)
    distance_km = models.FloatField(null=True, blank=True)

    status = models.CharField(max_length=12, choices=STATUS_CHOICES, default='pending')
    contacted_at = models.DateTimeField(null=True, blank=True)
    response_time = models.PositiveIntegerField(null=True, blank=True, help_text="Minutes from contact to response")

    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.donor.full_name} ↔ request #{self.blood_request_id} ({self.match_score})"

    class Meta:
        ordering = ['-match_score', '-compatibility_score']
        constraints = [
            models.UniqueConstraint(fields=['blood_request', 'donor'], name='unique_request_donor_match'),
        ]


class RequestUpdate(models.Model):
    UPDATE_TYPE_CHOICES = [
        ('status_change', 'Status Change'),
        ('priority_change', 'Priority Change'),
        ('assignment', 'Assignment'),
        ('note', 'Note'),
        ('emergency_escalation', 'Emergency Escalation'),
    ]

    blood_request = models.ForeignKey(
        BloodRequest,
        on_delete=models.CASCADE,
        related_name='updates'
    )
    updated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True
    )
    update_type = models.CharField(max_length=25, choices=UPDATE_TYPE_CHOICES)
    old_value = models.CharField(max_length=255, blank=True)
    new_value = models.CharField(max_length=255, blank=True)
    notes = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"#{self.blood_request_id} {self.update_type}: {self.old_value} → {self.new_value}"

    class Meta:
        ordering = ['-created_at', '-id']


class RequestCoordination(models.Model):
    ROLE_CHOICES = [
        ('primary', 'Primary'),
        ('secondary', 'Secondary'),
        ('emergency', 'Emergency'),
        ('backup', 'Backup'),
    ]
    STATUS_CHOICES = [
        ('active', 'Active'),
        ('completed', 'Completed'),
        ('withdrawn', 'Withdrawn'),
    ]

    blood_request = models.ForeignKey(
        BloodRequest,
        on_delete=models.CASCADE,
        related_name='coordinations'
    )
    coordinator = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='coordinations'
    )
    institution = models.ForeignKey(
        Institution,
        on_delete=models.SET_NULL,
        null=True,
        blank=True
    )
    role = models.CharField(max_length=10, choices=ROLE_CHOICES, default='primary')
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='active')
    notes = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.coordinator} ({self.role}) on #{self.blood_request_id}"

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['blood_request', 'coordinator'], name='unique_request_coordinator'),
        ]


class PrioritizationRule(models.Model):
    rule_name = models.CharField(max_length=100, unique=True)
    rule_conditions = models.JSONField(default=dict)
    priority_score = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(1), MaxValueValidator(10)]
    )
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.rule_name} ({self.priority_score})"

    class Meta:
        ordering = ['-priority_score', 'rule_name']

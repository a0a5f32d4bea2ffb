from django.conf import settings
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models

from bloodlink.validators import BLOOD_TYPE_CHOICES


class BloodUnit(models.Model):
    AVAILABLE = 'available'
    RESERVED = 'reserved'
    USED = 'used'
    EXPIRED = 'expired'
    QUARANTINE = 'quarantine'
    TESTING = 'testing'

    STATUS_CHOICES = [
        (AVAILABLE, 'Available'),
        (RESERVED, 'Reserved'),
        (USED, 'Used'),
        (EXPIRED, 'Expired'),
        (QUARANTINE, 'Quarantine'),
        (TESTING, 'Testing'),
    ]

    donor = models.ForeignKey(
        'donors.DonorProfile',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='blood_units'
    )
    institution = models.ForeignKey(
        'institutions.Institution',
        on_delete=models.CASCADE,
        related_name='blood_units'
    )
    blood_type = models.CharField(max_length=3, choices=BLOOD_TYPE_CHOICES)
    volume_ml = models.PositiveIntegerField(default=450)

    collection_date = models.DateTimeField()
    expiry_date = models.DateTimeField()
    status = models.CharField(max_length=12, choices=STATUS_CHOICES, default=AVAILABLE)

    location = models.CharField(max_length=100, blank=True)
    storage_temperature = models.FloatField(null=True, blank=True)
    storage_humidity = models.FloatField(null=True, blank=True)
    quality_score = models.PositiveSmallIntegerField(
        default=100,
        validators=[MinValueValidator(0), MaxValueValidator(100)]
    )
    batch_number = models.CharField(max_length=50, unique=True)
    test_results = models.JSONField(default=dict, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    reserved_for = models.ForeignKey(
        'institutions.BloodRequest',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='reserved_units'
    )
    reserved_at = models.DateTimeField(null=True, blank=True)
    expired_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.batch_number} ({self.blood_type}, {self.status})"

    class Meta:
        ordering = ['expiry_date']
        indexes = [
            models.Index(fields=['blood_type', 'status', 'expiry_date']),
            models.Index(fields=['institution', 'status']),
        ]


class InventoryStock(models.Model):
    institution = models.ForeignKey(
        'institutions.Institution',
        on_delete=models.CASCADE,
        related_name='inventory'
    )
    blood_type = models.CharField(max_length=3, choices=BLOOD_TYPE_CHOICES)
    current_stock = models.PositiveIntegerField(default=0)
    reserved_stock = models.PositiveIntegerField(default=0)
    minimum_threshold = models.PositiveIntegerField(default=10)
    maximum_capacity = models.PositiveIntegerField(default=1000)

    last_updated = models.DateTimeField(auto_now=True)
    updated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True
    )

    @property
    def available_stock(self):
        return max(self.current_stock - self.reserved_stock, 0)

    @property
    def stock_status(self):
        if self.current_stock <= self.minimum_threshold:
            return 'critical'
        if self.current_stock <= self.minimum_threshold * 2:
            return 'low'
        return 'adequate'

    def __str__(self):
        return f"{self.institution.name} {self.blood_type}: {self.current_stock}"

    class Meta:
        ordering = ['institution__name', 'blood_type']
        constraints = [
            models.UniqueConstraint(fields=['institution', 'blood_type'], name='unique_institution_blood_type'),
        ]


class InventoryTransaction(models.Model):
    TYPE_CHOICES = [
        ('collection', 'Collection'),
        ('reservation', 'Reservation'),
        ('release', 'Release'),
        ('disposal', 'Disposal'),
        ('usage', 'Usage'),
        ('adjustment', 'Adjustment'),
    ]

    transaction_type = models.CharField(max_length=12, choices=TYPE_CHOICES)
    blood_units = models.JSONField(default=list, blank=True)
    quantity = models.IntegerField()
    blood_type = models.CharField(max_length=3, blank=True)
    blood_request = models.ForeignKey(
        'institutions.BloodRequest',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='inventory_transactions'
    )
    performed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True
    )
    notes = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.transaction_type} x{self.quantity} {self.blood_type}"

    class Meta:
        ordering = ['-created_at']


class InventoryAlert(models.Model):
    TYPE_CHOICES = [
        ('low_stock', 'Low Stock'),
        ('expiry_warning', 'Expiry Warning'),
        ('critical_shortage', 'Critical Shortage'),
        ('temperature_alert', 'Temperature Alert'),
        ('quality_issue', 'Quality Issue'),
    ]
    SEVERITY_CHOICES = [
        ('low', 'Low'),
        ('medium', 'Medium'),
        ('high', 'High'),
        ('critical', 'Critical'),
    ]

    alert_type = models.CharField(max_length=20, choices=TYPE_CHOICES)
    severity = models.CharField(max_length=10, choices=SEVERITY_CHOICES)
    blood_type = models.CharField(max_length=3, blank=True)
    institution = models.ForeignKey(
        'institutions.Institution',
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='inventory_alerts'
    )
    message = models.CharField(max_length=255)
    details = models.JSONField(default=dict, blank=True)

    resolved = models.BooleanField(default=False)
    resolved_at = models.DateTimeField(null=True, blank=True)
    resolved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True
    )

    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"[{self.severity}] {self.message}"

    class Meta:
        ordering = ['-created_at']

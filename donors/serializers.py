# donors/serializers.py
from django.utils import timezone
from rest_framework import serializers

from bloodlink.validators import name_validator, sanitize_name
from institutions.models import Institution
from .models import DonorProfile, DonationHistory, DonationSchedule


class DonorSerializer(serializers.ModelSerializer):
    email = serializers.EmailField(source='user.email', read_only=True)
    can_donate = serializers.BooleanField(read_only=True)
    response_rate = serializers.FloatField(read_only=True)

    class Meta:
        model = DonorProfile
        fields = [
            'id', 'full_name', 'email', 'phone', 'blood_type', 'location',
            'latitude', 'longitude', 'is_available', 'receive_alerts', 'allow_location',
            'last_donation_date', 'donation_count', 'points', 'medical_conditions',
            'total_responses', 'accepted_responses', 'response_rate', 'can_donate',
            'created_at', 'updated_at',
        ]
        read_only_fields = fields


class DonorProfileUpdateSerializer(serializers.ModelSerializer):
    full_name = serializers.CharField(min_length=2, max_length=100, validators=[name_validator], required=False)
    location = serializers.CharField(min_length=2, max_length=200, required=False)
    medical_conditions = serializers.CharField(max_length=1000, required=False, allow_blank=True)
    latitude = serializers.FloatField(required=False, allow_null=True, min_value=-90, max_value=90)
    longitude = serializers.FloatField(required=False, allow_null=True, min_value=-180, max_value=180)

    class Meta:
        model = DonorProfile
        fields = [
            'full_name', 'location', 'latitude', 'longitude', 'is_available',
            'receive_alerts', 'allow_location', 'medical_conditions',
        ]

    def validate_full_name(self, value):
        return sanitize_name(value)

    def validate(self, attrs):
        allow_location = attrs.get('allow_location', getattr(self.instance, 'allow_location', True))
        if not allow_location:
            # Opting out of location sharing drops stored coordinates
            attrs['latitude'] = None
            attrs['longitude'] = None
        return attrs


class DonationHistorySerializer(serializers.ModelSerializer):
    donor_name = serializers.CharField(source='donor.full_name', read_only=True)
    institution_name = serializers.CharField(source='institution.name', read_only=True, default=None)

    class Meta:
        model = DonationHistory
        fields = [
            'id', 'donor', 'donor_name', 'institution', 'institution_name',
            'blood_request', 'date_donated', 'units_donated', 'notes', 'created_at',
        ]
        read_only_fields = fields


class DonationScheduleSerializer(serializers.ModelSerializer):
    institution_name = serializers.CharField(source='institution.name', read_only=True)

    class Meta:
        model = DonationSchedule
        fields = [
            'id', 'donor', 'institution', 'institution_name', 'scheduled_date',
            'blood_type', 'units_to_donate', 'status', 'notes', 'reminder_sent', 'created_at',
        ]
        read_only_fields = fields


class DonationScheduleCreateSerializer(serializers.Serializer):
    institution = serializers.PrimaryKeyRelatedField(queryset=Institution.objects.filter(is_active=True))
    scheduled_date = serializers.DateTimeField()
    units_to_donate = serializers.IntegerField(min_value=1, max_value=2, default=1)
    notes = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')

    def validate_scheduled_date(self, value):
        if value <= timezone.now():
            raise serializers.ValidationError("Scheduled date must be in the future")
        return value


class ScheduleStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=DonationSchedule.STATUS_CHOICES)

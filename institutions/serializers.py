# institutions/serializers.py
from django.contrib.auth import get_user_model
from django.utils import timezone
from rest_framework import serializers

from bloodlink.validators import (
    BLOOD_TYPE_CHOICES, name_validator, phone_validator, sanitize_name, sanitize_phone,
)
from .models import (
    Institution, BloodRequest, DonorResponse, DonorMatch, RequestUpdate,
    RequestCoordination, EmergencyAlert,
)

User = get_user_model()


class InstitutionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Institution
        fields = [
            'id', 'name', 'institution_type', 'location', 'latitude', 'longitude',
            'contact_phone', 'contact_email', 'license_number', 'is_verified',
            'is_active', 'created_at',
        ]


# ---------------------------
# Blood requests
# ---------------------------
class BloodRequestCreateSerializer(serializers.Serializer):
    patient_name = serializers.CharField(min_length=2, max_length=100, validators=[name_validator])
    patient_age = serializers.IntegerField(required=False, allow_null=True, min_value=0, max_value=150)
    hospital_name = serializers.CharField(max_length=200, required=False, allow_blank=True, default='')
    blood_type = serializers.ChoiceField(choices=BLOOD_TYPE_CHOICES)
    units_needed = serializers.IntegerField(min_value=1, max_value=20)
    urgency_level = serializers.ChoiceField(choices=BloodRequest.URGENCY_CHOICES, default='normal')
    request_type = serializers.ChoiceField(choices=BloodRequest.REQUEST_TYPE_CHOICES, default='donation')
    contact_name = serializers.CharField(max_length=100, required=False, allow_blank=True, default='')
    contact_phone = serializers.CharField(validators=[phone_validator])
    location = serializers.CharField(max_length=200, required=False, allow_blank=True, default='')
    latitude = serializers.FloatField(required=False, allow_null=True, min_value=-90, max_value=90)
    longitude = serializers.FloatField(required=False, allow_null=True, min_value=-180, max_value=180)
    medical_notes = serializers.CharField(max_length=1000, required=False, allow_blank=True, default='')
    additional_info = serializers.CharField(max_length=1000, required=False, allow_blank=True, default='')
    tags = serializers.ListField(child=serializers.CharField(max_length=50), required=False, default=list)
    institution = serializers.PrimaryKeyRelatedField(
        queryset=Institution.objects.filter(is_active=True), required=False, allow_null=True
    )
    emergency_alert = serializers.PrimaryKeyRelatedField(
        queryset=EmergencyAlert.objects.filter(status='active'), required=False, allow_null=True
    )
    completion_deadline = serializers.DateTimeField(required=False, allow_null=True)

    def to_internal_value(self, data):
        data = data.copy()
        if data.get('contact_phone'):
            data['contact_phone'] = sanitize_phone(data['contact_phone'])
        if data.get('patient_name'):
            data['patient_name'] = sanitize_name(data['patient_name'])
        return super().to_internal_value(data)

    def validate(self, attrs):
        if (attrs.get('latitude') is None) != (attrs.get('longitude') is None):
            raise serializers.ValidationError("Latitude and longitude must be given together")
        deadline = attrs.get('completion_deadline')
        if deadline and deadline <= timezone.now():
            raise serializers.ValidationError({'completion_deadline': "Deadline must be in the future"})
        return attrs


class BloodRequestUpdateSerializer(serializers.Serializer):
    units_needed = serializers.IntegerField(min_value=1, max_value=20, required=False)
    urgency_level = serializers.ChoiceField(choices=BloodRequest.URGENCY_CHOICES, required=False)
    status = serializers.ChoiceField(choices=BloodRequest.STATUS_CHOICES, required=False)
    medical_notes = serializers.CharField(max_length=1000, required=False, allow_blank=True)
    additional_info = serializers.CharField(max_length=1000, required=False, allow_blank=True)
    expires_at = serializers.DateTimeField(required=False)
    notes = serializers.CharField(max_length=1000, required=False, allow_blank=True)

    def validate_expires_at(self, value):
        if value <= timezone.now():
            raise serializers.ValidationError("Expiry must be in the future")
        return value


class BloodRequestSerializer(serializers.ModelSerializer):
    requester_name = serializers.CharField(source='requester.get_full_name', read_only=True)
    institution_name = serializers.CharField(source='institution.name', read_only=True, default=None)
    is_active = serializers.BooleanField(read_only=True)
    accepted_donor_count = serializers.IntegerField(read_only=True)

    class Meta:
        model = BloodRequest
        fields = [
            'id', 'requester', 'requester_name', 'institution', 'institution_name',
            'patient_name', 'patient_age', 'hospital_name', 'blood_type', 'units_needed',
            'urgency_level', 'request_type', 'contact_name', 'contact_phone', 'location',
            'latitude', 'longitude', 'medical_notes', 'additional_info', 'tags', 'status',
            'priority_score', 'expires_at', 'matched_at', 'response_count',
            'escalation_count', 'assigned_coordinator', 'emergency_alert',
            'inventory_reserved', 'is_active', 'accepted_donor_count',
            'created_at', 'updated_at',
        ]
        read_only_fields = fields


class ActiveBloodRequestSerializer(BloodRequestSerializer):
    match_count = serializers.IntegerField(read_only=True)
    accepted_count = serializers.IntegerField(read_only=True)

    class Meta(BloodRequestSerializer.Meta):
        fields = BloodRequestSerializer.Meta.fields + ['match_count', 'accepted_count']
        read_only_fields = fields


class StatusChangeSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=BloodRequest.STATUS_CHOICES)
    notes = serializers.CharField(max_length=1000, required=False, allow_blank=True, default='')


class NotesSerializer(serializers.Serializer):
    notes = serializers.CharField(max_length=1000, required=False, allow_blank=True, default='')


# ---------------------------
# Donor side
# ---------------------------
class RespondSerializer(serializers.Serializer):
    response_type = serializers.ChoiceField(choices=DonorResponse.RESPONSE_CHOICES)
    eta_minutes = serializers.IntegerField(required=False, allow_null=True, min_value=0, max_value=24 * 60)
    notes = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')


class DonorResponseSerializer(serializers.ModelSerializer):
    donor_name = serializers.CharField(source='donor.full_name', read_only=True)
    donor_blood_type = serializers.CharField(source='donor.blood_type', read_only=True)

    class Meta:
        model = DonorResponse
        fields = [
            'id', 'donor', 'donor_name', 'donor_blood_type', 'blood_request',
            'response_type', 'eta_minutes', 'notes', 'status', 'confirmed_at', 'created_at',
        ]
        read_only_fields = fields


class DonorMatchSerializer(serializers.ModelSerializer):
    donor_name = serializers.CharField(source='donor.full_name', read_only=True)
    donor_blood_type = serializers.CharField(source='donor.blood_type', read_only=True)

    class Meta:
        model = DonorMatch
        fields = [
            'id', 'blood_request', 'donor', 'donor_name', 'donor_blood_type', 'match_score',
            'criteria', 'compatibility_score', 'distance_km', 'status', 'contacted_at',
            'response_time', 'created_at',
        ]
        read_only_fields = fields


# ---------------------------
# Coordination
# ---------------------------
class RequestUpdateSerializer(serializers.ModelSerializer):
    updated_by_name = serializers.CharField(source='updated_by.username', read_only=True, default=None)

    class Meta:
        model = RequestUpdate
        fields = ['id', 'update_type', 'old_value', 'new_value', 'notes', 'updated_by', 'updated_by_name', 'created_at']
        read_only_fields = fields


class AssignCoordinatorSerializer(serializers.Serializer):
    coordinator = serializers.PrimaryKeyRelatedField(
        queryset=User.objects.exclude(user_type=User.DONOR).filter(is_active=True)
    )
    role = serializers.ChoiceField(choices=RequestCoordination.ROLE_CHOICES, default='primary')
    notes = serializers.CharField(max_length=1000, required=False, allow_blank=True, default='')


class RequestCoordinationSerializer(serializers.ModelSerializer):
    class Meta:
        model = RequestCoordination
        fields = ['id', 'blood_request', 'coordinator', 'institution', 'role', 'status', 'notes', 'created_at']
        read_only_fields = fields


class EmergencyAlertSerializer(serializers.ModelSerializer):
    blood_types_needed = serializers.ListField(
        child=serializers.ChoiceField(choices=BLOOD_TYPE_CHOICES), required=False, default=list
    )

    class Meta:
        model = EmergencyAlert
        fields = [
            'id', 'alert_type', 'severity', 'affected_area', 'blood_types_needed',
            'units_required', 'deadline', 'coordinator', 'status', 'notes',
            'created_at', 'resolved_at',
        ]
        read_only_fields = ['id', 'coordinator', 'status', 'created_at', 'resolved_at']

from rest_framework import serializers

from bloodlink.validators import BLOOD_TYPE_CHOICES
from donors.models import DonorProfile
from institutions.models import Institution, BloodRequest
from .models import BloodUnit, InventoryStock, InventoryAlert


class BloodUnitCreateSerializer(serializers.Serializer):
    donor = serializers.PrimaryKeyRelatedField(queryset=DonorProfile.objects.all(), required=False, allow_null=True)
    institution = serializers.PrimaryKeyRelatedField(queryset=Institution.objects.all(), required=False, allow_null=True)
    blood_type = serializers.ChoiceField(choices=BLOOD_TYPE_CHOICES)
    volume_ml = serializers.IntegerField(min_value=1)
    collection_date = serializers.DateTimeField()
    expiry_date = serializers.DateTimeField(required=False, allow_null=True)
    batch_number = serializers.CharField(max_length=50)
    status = serializers.ChoiceField(
        choices=[BloodUnit.AVAILABLE, BloodUnit.TESTING, BloodUnit.QUARANTINE],
        default=BloodUnit.AVAILABLE,
    )
    location = serializers.CharField(max_length=100, required=False, allow_blank=True, default='')
    storage_temperature = serializers.FloatField(required=False, allow_null=True)
    storage_humidity = serializers.FloatField(required=False, allow_null=True)
    quality_score = serializers.IntegerField(min_value=0, max_value=100, default=100)
    test_results = serializers.DictField(required=False, default=dict)
    metadata = serializers.DictField(required=False, default=dict)

    def validate(self, attrs):
        if not attrs.get('donor') and not attrs.get('institution'):
            raise serializers.ValidationError("Either donor or institution is required")
        expiry = attrs.get('expiry_date')
        if expiry and expiry <= attrs['collection_date']:
            raise serializers.ValidationError("Expiry date must be after collection date")
        return attrs


class BloodUnitSerializer(serializers.ModelSerializer):
    institution_name = serializers.CharField(source='institution.name', read_only=True)

    class Meta:
        model = BloodUnit
        fields = [
            'id', 'donor', 'institution', 'institution_name', 'blood_type', 'volume_ml',
            'collection_date', 'expiry_date', 'status', 'location', 'storage_temperature',
            'storage_humidity', 'quality_score', 'batch_number', 'test_results', 'metadata',
            'reserved_for', 'reserved_at', 'expired_at', 'created_at',
        ]
        read_only_fields = fields


class InventoryStockSerializer(serializers.ModelSerializer):
    institution_name = serializers.CharField(source='institution.name', read_only=True)
    available_stock = serializers.IntegerField(read_only=True)
    stock_status = serializers.CharField(read_only=True)

    class Meta:
        model = InventoryStock
        fields = [
            'id', 'institution', 'institution_name', 'blood_type', 'current_stock',
            'reserved_stock', 'available_stock', 'minimum_threshold', 'maximum_capacity',
            'stock_status', 'last_updated',
        ]
        read_only_fields = fields


class InventoryAlertSerializer(serializers.ModelSerializer):
    class Meta:
        model = InventoryAlert
        fields = [
            'id', 'alert_type', 'severity', 'blood_type', 'institution', 'message',
            'details', 'resolved', 'resolved_at', 'resolved_by', 'created_at',
        ]
        read_only_fields = fields


class ReserveUnitsSerializer(serializers.Serializer):
    PREFERENCE_CHOICES = ['oldest_first', 'newest_first']

    blood_type = serializers.ChoiceField(choices=BLOOD_TYPE_CHOICES)
    units_needed = serializers.IntegerField(min_value=1, max_value=20)
    blood_request = serializers.PrimaryKeyRelatedField(
        queryset=BloodRequest.objects.all(), required=False, allow_null=True
    )
    preference = serializers.ChoiceField(choices=PREFERENCE_CHOICES, default='oldest_first')


class StockAdjustmentSerializer(serializers.Serializer):
    institution = serializers.PrimaryKeyRelatedField(queryset=Institution.objects.all())
    blood_type = serializers.ChoiceField(choices=BLOOD_TYPE_CHOICES)
    units_change = serializers.IntegerField()

    def validate_units_change(self, value):
        if value == 0:
            raise serializers.ValidationError("units_change must not be zero")
        return value

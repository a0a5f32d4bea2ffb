# api/serializers.py
"""
Query-string validators and response shapes that belong to no single app.
"""
from rest_framework import serializers

from bloodlink.validators import BLOOD_TYPE_CHOICES
from donors.models import DonorProfile


class NearbyBloodBanksQuerySerializer(serializers.Serializer):
    lat = serializers.FloatField(min_value=-90, max_value=90)
    lon = serializers.FloatField(min_value=-180, max_value=180)
    blood_type = serializers.ChoiceField(choices=BLOOD_TYPE_CHOICES)
    units_needed = serializers.IntegerField(min_value=1, max_value=20, default=1)
    radius_km = serializers.FloatField(min_value=1, max_value=500, default=50)


class BloodRequestFilterSerializer(serializers.Serializer):
    status = serializers.CharField(required=False)
    blood_type = serializers.ChoiceField(choices=BLOOD_TYPE_CHOICES, required=False)
    urgency = serializers.CharField(required=False)
    location = serializers.CharField(required=False, max_length=200)


class LeaderboardEntrySerializer(serializers.ModelSerializer):
    username = serializers.CharField(source='user.username', read_only=True)

    class Meta:
        model = DonorProfile
        fields = ['id', 'username', 'full_name', 'blood_type', 'donation_count', 'points']
        read_only_fields = fields

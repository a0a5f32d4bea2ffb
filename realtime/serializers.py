from rest_framework import serializers

from bloodlink.validators import BLOOD_TYPE_CHOICES
from .models import RealtimeEvent


class RealtimeEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = RealtimeEvent
        fields = ['id', 'event_type', 'priority', 'source', 'data', 'target_user',
                  'target_roles', 'blood_type', 'created_at']
        read_only_fields = fields


class PublishEventSerializer(serializers.Serializer):
    event_type = serializers.ChoiceField(choices=RealtimeEvent.EVENT_TYPE_CHOICES)
    data = serializers.DictField(required=False, default=dict)
    priority = serializers.ChoiceField(choices=RealtimeEvent.PRIORITY_CHOICES, default='normal')
    target_roles = serializers.ListField(child=serializers.CharField(), required=False, default=list)
    blood_type = serializers.ChoiceField(choices=BLOOD_TYPE_CHOICES, required=False, allow_blank=True, default='')


class EventQuerySerializer(serializers.Serializer):
    since = serializers.DateTimeField(required=False)
    event_type = serializers.ChoiceField(choices=RealtimeEvent.EVENT_TYPE_CHOICES, required=False)
    priority = serializers.ChoiceField(choices=RealtimeEvent.PRIORITY_CHOICES, required=False)
    blood_type = serializers.ChoiceField(choices=BLOOD_TYPE_CHOICES, required=False)
    limit = serializers.IntegerField(required=False, min_value=1, max_value=1000, default=50)

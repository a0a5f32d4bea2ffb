from rest_framework import serializers

from .models import Notification, NotificationPreference

CHANNEL_CHOICES = ['push', 'sms', 'email', 'whatsapp', 'call', 'in_app']


class NotificationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Notification
        fields = [
            'id', 'notification_type', 'title', 'message', 'data', 'status',
            'priority', 'channels', 'delivery_attempts', 'sent_at', 'created_at',
        ]
        read_only_fields = fields


class NotificationPreferenceSerializer(serializers.ModelSerializer):
    class Meta:
        model = NotificationPreference
        exclude = ['id', 'user']
        read_only_fields = ['updated_at']

    def validate(self, attrs):
        start = attrs.get('quiet_hours_start', getattr(self.instance, 'quiet_hours_start', None))
        end = attrs.get('quiet_hours_end', getattr(self.instance, 'quiet_hours_end', None))
        if (start is None) != (end is None):
            raise serializers.ValidationError("Quiet hours need both a start and an end")
        return attrs


class SendAlertSerializer(serializers.Serializer):
    alert_type = serializers.ChoiceField(choices=Notification.TYPE_CHOICES)
    title = serializers.CharField(max_length=200)
    message = serializers.CharField(max_length=1000)
    recipients = serializers.ListField(child=serializers.CharField(), allow_empty=False)
    priority = serializers.ChoiceField(choices=Notification.PRIORITY_CHOICES, default='normal')
    channels = serializers.ListField(
        child=serializers.ChoiceField(choices=CHANNEL_CHOICES), required=False, default=list
    )
    data = serializers.DictField(required=False, default=dict)

from django.contrib.auth import get_user_model
from rest_framework import serializers
from rest_framework.exceptions import AuthenticationFailed
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer

from bloodlink.conf import get_setting
from institutions.models import Institution
from bloodlink.validators import (
    BLOOD_TYPE_CHOICES, name_validator, phone_validator, password_validator,
    sanitize_name, sanitize_phone,
)

User = get_user_model()


class RegisterSerializer(serializers.Serializer):
    username = serializers.CharField(max_length=150)
    email = serializers.EmailField()
    password = serializers.CharField(
        min_length=8, max_length=128, write_only=True, validators=[password_validator]
    )
    user_type = serializers.ChoiceField(choices=User.USER_TYPE_CHOICES, default=User.DONOR)
    full_name = serializers.CharField(min_length=2, max_length=100, validators=[name_validator])
    phone = serializers.CharField(validators=[phone_validator])
    blood_type = serializers.ChoiceField(choices=BLOOD_TYPE_CHOICES, required=False, allow_null=True)
    location = serializers.CharField(max_length=200, required=False, allow_blank=True)
    latitude = serializers.FloatField(required=False, allow_null=True, min_value=-90, max_value=90)
    longitude = serializers.FloatField(required=False, allow_null=True, min_value=-180, max_value=180)
    institution = serializers.PrimaryKeyRelatedField(
        queryset=Institution.objects.filter(is_active=True),
        required=False, allow_null=True,
    )

    def to_internal_value(self, data):
        data = data.copy()
        if data.get('phone'):
            data['phone'] = sanitize_phone(data['phone'])
        if data.get('full_name'):
            data['full_name'] = sanitize_name(data['full_name'])
        return super().to_internal_value(data)

    def validate_username(self, value):
        if User.objects.filter(username=value).exists():
            raise serializers.ValidationError("Username already exists")
        return value

    def validate_email(self, value):
        if User.objects.filter(email__iexact=value).exists():
            raise serializers.ValidationError("Email already registered")
        return value.lower()

    def validate_user_type(self, value):
        # Admin accounts are created from the command line only
        if value == User.ADMIN:
            raise serializers.ValidationError("Admin accounts cannot self-register")
        return value

    def validate(self, attrs):
        if attrs.get('user_type') == User.DONOR and not attrs.get('blood_type'):
            raise serializers.ValidationError({'blood_type': "Blood type is required for donors"})
        return attrs


class LoginSerializer(serializers.Serializer):
    username = serializers.CharField()
    password = serializers.CharField(write_only=True)


class UserSerializer(serializers.ModelSerializer):
    institution_name = serializers.CharField(source='institution.name', read_only=True, default=None)

    class Meta:
        model = User
        fields = [
            'id', 'username', 'email', 'first_name', 'last_name', 'phone',
            'user_type', 'institution', 'institution_name', 'date_joined',
        ]
        read_only_fields = fields


class BloodLinkTokenObtainPairSerializer(TokenObtainPairSerializer):
    """
    Adds the user's role to the token payload and shares the login
    endpoint's failed-attempt lockout and password expiry checks.
    """

    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)
        token['user_type'] = user.user_type
        return token

    def validate(self, attrs):
        identifier = attrs.get(self.username_field)
        user = (
            User.objects.filter(username=identifier).first()
            or User.objects.filter(email__iexact=identifier).first()
        )
        if user and user.is_locked:
            raise AuthenticationFailed("Account locked due to multiple failed attempts")

        try:
            data = super().validate(attrs)
        except AuthenticationFailed:
            if user:
                user.register_failed_login(get_setting('MAX_FAILED_LOGINS'))
            raise

        if self.user.is_password_expired():
            raise AuthenticationFailed("Password expired, please reset your password")

        self.user.reset_failed_logins()
        return data

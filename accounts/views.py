import logging

from django.contrib.auth import authenticate, get_user_model
from django.db import transaction
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes, throttle_classes
from rest_framework.exceptions import AuthenticationFailed
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import AnonRateThrottle
from rest_framework_simplejwt.tokens import RefreshToken

from bloodlink.conf import get_setting
from donors.models import DonorProfile
from .serializers import RegisterSerializer, LoginSerializer, UserSerializer

logger = logging.getLogger(__name__)

User = get_user_model()


# -----------------------------
# HELPER: JWT TOKEN GENERATOR
# -----------------------------
def get_tokens_for_user(user):
    """
    Generate JWT tokens and embed role in payload
    """
    refresh = RefreshToken.for_user(user)
    refresh['user_type'] = user.user_type
    return {
        'refresh': str(refresh),
        'access': str(refresh.access_token),
    }


# -----------------------------
# REGISTER API
# -----------------------------
@api_view(['POST'])
@permission_classes([AllowAny])
@throttle_classes([AnonRateThrottle])
def register(request):
    """
    Registers a user (and a donor profile for donors) and returns JWT tokens
    """
    serializer = RegisterSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    first_name, _, last_name = data['full_name'].partition(' ')

    with transaction.atomic():
        user = User.objects.create_user(
            username=data['username'],
            email=data['email'],
            password=data['password'],
            user_type=data['user_type'],
            phone=data['phone'],
            first_name=first_name,
            last_name=last_name,
            institution=data.get('institution'),
        )

        if user.user_type == User.DONOR:
            DonorProfile.objects.create(
                user=user,
                full_name=data['full_name'],
                phone=data['phone'],
                blood_type=data['blood_type'],
                location=data.get('location', ''),
                latitude=data.get('latitude'),
                longitude=data.get('longitude'),
            )

    logger.info("Registered %s user %s", user.user_type, user.username)

    return Response(
        {
            "message": "Registration successful",
            "tokens": get_tokens_for_user(user),
            "user": UserSerializer(user).data,
        },
        status=status.HTTP_201_CREATED
    )


# -----------------------------
# LOGIN API
# -----------------------------
@api_view(['POST'])
@permission_classes([AllowAny])
@throttle_classes([AnonRateThrottle])
def login(request):
    """
    JWT login; the account locks after MAX_FAILED_LOGINS consecutive failures
    """
    serializer = LoginSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    username = serializer.validated_data['username']
    password = serializer.validated_data['password']

    user = (
        User.objects.filter(username=username).first()
        or User.objects.filter(email__iexact=username).first()
    )
    if not user:
        raise AuthenticationFailed("Invalid credentials")

    if user.is_locked:
        raise AuthenticationFailed("Account locked due to multiple failed attempts")

    user_auth = authenticate(request, username=user.username, password=password)
    if user_auth is None:
        user.register_failed_login(get_setting('MAX_FAILED_LOGINS'))
        if user.is_locked:
            logger.warning("Account %s locked after %d failed logins", user.username, user.failed_attempts)
        raise AuthenticationFailed("Invalid credentials")

    if user_auth.is_password_expired():
        raise AuthenticationFailed("Password expired, please reset your password")

    user_auth.reset_failed_logins()

    return Response({
        "message": "Login successful",
        "tokens": get_tokens_for_user(user_auth),
        "user_type": user_auth.user_type,
    })


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def me(request):
    data = UserSerializer(request.user).data
    profile = getattr(request.user, 'donor_profile', None)
    if profile is not None:
        data['donor_profile_id'] = profile.id
    return Response(data)

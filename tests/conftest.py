from datetime import timedelta

import pytest
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.utils import timezone
from rest_framework.test import APIClient

from donors.models import DonorProfile
from institutions.models import Institution, BloodRequest
from inventory.models import BloodUnit

User = get_user_model()

PASSWORD = 'Str0ng!Pass'

# Kathmandu; the offsets below are a few kilometres apart
KTM_LAT, KTM_LON = 27.7172, 85.3240


@pytest.fixture(autouse=True)
def _test_settings(settings):
    settings.PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']
    settings.CELERY_TASK_ALWAYS_EAGER = True


@pytest.fixture(autouse=True)
def _clear_cache():
    # Throttle history lives in the cache
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def institution(db):
    return Institution.objects.create(
        name='Bir Hospital',
        institution_type=Institution.HOSPITAL,
        location='Kathmandu',
        latitude=KTM_LAT,
        longitude=KTM_LON,
        contact_phone='+97714221119',
    )


@pytest.fixture
def blood_bank(db):
    return Institution.objects.create(
        name='Central Blood Bank',
        institution_type=Institution.BLOOD_BANK,
        location='Kathmandu',
        latitude=KTM_LAT + 0.01,
        longitude=KTM_LON + 0.01,
        contact_phone='+97714225344',
    )


@pytest.fixture
def make_user(db):
    counter = {'n': 0}

    def _make(user_type=User.DONOR, institution=None, **extra):
        counter['n'] += 1
        username = extra.pop('username', f"{user_type}{counter['n']}")
        return User.objects.create_user(
            username=username,
            email=extra.pop('email', f"{username}@example.com"),
            password=extra.pop('password', PASSWORD),
            user_type=user_type,
            institution=institution,
            **extra,
        )
    return _make


@pytest.fixture
def make_donor(make_user):
    def _make(blood_type='O-', latitude=KTM_LAT, longitude=KTM_LON, **extra):
        user = make_user(User.DONOR)
        return DonorProfile.objects.create(
            user=user,
            full_name=extra.pop('full_name', f"Donor {user.pk}"),
            phone=extra.pop('phone', f"+97798000{user.pk:05d}"),
            blood_type=blood_type,
            location='Kathmandu',
            latitude=latitude,
            longitude=longitude,
            **extra,
        )
    return _make


@pytest.fixture
def donor(make_donor):
    return make_donor('O-')


@pytest.fixture
def hospital_staff(make_user, institution):
    return make_user(User.HOSPITAL_STAFF, institution=institution)


@pytest.fixture
def bank_staff(make_user, blood_bank):
    return make_user(User.BLOOD_BANK_STAFF, institution=blood_bank)


@pytest.fixture
def responder(make_user):
    return make_user(User.EMERGENCY_RESPONDER)


@pytest.fixture
def admin_user(make_user):
    return make_user(User.ADMIN)


@pytest.fixture
def make_request(hospital_staff, institution):
    def _make(**fields):
        values = {
            'requester': hospital_staff,
            'institution': institution,
            'patient_name': 'Ram Sharma',
            'blood_type': 'A+',
            'units_needed': 1,
            'urgency_level': 'normal',
            'contact_phone': '+9779811111111',
            'latitude': KTM_LAT,
            'longitude': KTM_LON,
            'expires_at': timezone.now() + timedelta(hours=24),
        }
        values.update(fields)
        return BloodRequest.objects.create(**values)
    return _make


@pytest.fixture
def make_unit(blood_bank):
    counter = {'n': 0}

    def _make(blood_type='O-', institution=None, days_left=30, **fields):
        counter['n'] += 1
        now = timezone.now()
        values = {
            'institution': institution or blood_bank,
            'blood_type': blood_type,
            'volume_ml': 450,
            'collection_date': now - timedelta(days=5),
            'expiry_date': now + timedelta(days=days_left),
            'batch_number': f"BATCH-{counter['n']:04d}",
        }
        values.update(fields)
        return BloodUnit.objects.create(**values)
    return _make


@pytest.fixture
def client_for(api_client):
    def _for(user):
        api_client.force_authenticate(user=user)
        return api_client
    return _for

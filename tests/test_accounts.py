from datetime import timedelta

import pytest
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.core.management.base import CommandError
from django.utils import timezone
from rest_framework_simplejwt.tokens import AccessToken

from donors.models import DonorProfile

from .conftest import PASSWORD

User = get_user_model()

pytestmark = pytest.mark.django_db

REGISTER_URL = '/api/accounts/register/'
LOGIN_URL = '/api/accounts/login/'


def registration(**overrides):
    payload = {
        'username': 'sita',
        'email': 'sita@example.com',
        'password': PASSWORD,
        'user_type': 'donor',
        'full_name': 'Sita Thapa',
        'phone': '+977 981-234-5678',
        'blood_type': 'B+',
        'location': 'Lalitpur',
    }
    payload.update(overrides)
    return payload


class TestRegister:
    def test_donor_registration_creates_profile_and_tokens(self, api_client):
        response = api_client.post(REGISTER_URL, registration(), format='json')

        assert response.status_code == 201
        assert set(response.data['tokens']) == {'access', 'refresh'}
        assert response.data['user']['user_type'] == 'donor'

        profile = DonorProfile.objects.get(user__username='sita')
        assert profile.blood_type == 'B+'
        assert profile.phone == '+9779812345678'
        assert AccessToken(response.data['tokens']['access'])['user_type'] == 'donor'

    def test_staff_registration_links_institution(self, api_client, institution):
        payload = registration(
            username='nurse', email='nurse@example.com', user_type='hospital_staff',
            blood_type=None, institution=institution.pk,
        )
        response = api_client.post(REGISTER_URL, payload, format='json')

        assert response.status_code == 201
        user = User.objects.get(username='nurse')
        assert user.institution == institution
        assert not DonorProfile.objects.filter(user=user).exists()

    def test_donor_needs_blood_type(self, api_client):
        response = api_client.post(REGISTER_URL, registration(blood_type=None), format='json')

        assert response.status_code == 400
        assert 'blood_type' in response.data['details']

    def test_admin_cannot_self_register(self, api_client):
        response = api_client.post(REGISTER_URL, registration(user_type='admin'), format='json')

        assert response.status_code == 400
        assert 'user_type' in response.data['details']

    def test_weak_password_rejected(self, api_client):
        response = api_client.post(REGISTER_URL, registration(password='password123'), format='json')

        assert response.status_code == 400
        assert 'password' in response.data['details']

    def test_duplicate_email(self, api_client, make_user):
        make_user(email='sita@example.com')

        response = api_client.post(REGISTER_URL, registration(email='SITA@example.com'), format='json')

        assert response.status_code == 400
        assert 'email' in response.data['details']
        assert response.data['correlation_id'].startswith('err-')


class TestLogin:
    def test_login_by_username_and_email(self, api_client, make_user):
        make_user(username='hari', email='hari@example.com')

        by_name = api_client.post(LOGIN_URL, {'username': 'hari', 'password': PASSWORD}, format='json')
        by_email = api_client.post(LOGIN_URL, {'username': 'HARI@example.com', 'password': PASSWORD}, format='json')

        assert by_name.status_code == 200
        assert by_name.data['user_type'] == 'donor'
        assert by_email.status_code == 200

    def test_unknown_user(self, api_client):
        response = api_client.post(LOGIN_URL, {'username': 'ghost', 'password': PASSWORD}, format='json')

        assert response.status_code == 401
        assert response.data['error'] == 'Invalid credentials'

    def test_account_locks_after_repeated_failures(self, api_client, make_user):
        user = make_user(username='hari')

        for _ in range(5):
            response = api_client.post(LOGIN_URL, {'username': 'hari', 'password': 'wrong'}, format='json')
            assert response.status_code == 401

        user.refresh_from_db()
        assert user.is_locked
        assert user.failed_attempts == 5

        response = api_client.post(LOGIN_URL, {'username': 'hari', 'password': PASSWORD}, format='json')
        assert response.status_code == 401
        assert 'locked' in response.data['error']

    def test_success_resets_failure_counter(self, api_client, make_user):
        user = make_user(username='hari')
        api_client.post(LOGIN_URL, {'username': 'hari', 'password': 'wrong'}, format='json')

        response = api_client.post(LOGIN_URL, {'username': 'hari', 'password': PASSWORD}, format='json')

        assert response.status_code == 200
        user.refresh_from_db()
        assert user.failed_attempts == 0

    def test_expired_password(self, api_client, make_user):
        user = make_user(username='hari')
        User.objects.filter(pk=user.pk).update(password_changed_at=timezone.now() - timedelta(days=400))

        response = api_client.post(LOGIN_URL, {'username': 'hari', 'password': PASSWORD}, format='json')

        assert response.status_code == 401
        assert 'expired' in response.data['error']

    def test_token_endpoint_carries_role(self, api_client, make_user):
        make_user(user_type='blood_bank_staff', username='banker')

        response = api_client.post(
            '/api/accounts/token/', {'username': 'banker', 'password': PASSWORD}, format='json'
        )

        assert response.status_code == 200
        assert AccessToken(response.data['access'])['user_type'] == 'blood_bank_staff'

    def test_locked_user_cannot_get_token(self, api_client, make_user):
        make_user(username='banker', is_locked=True)

        response = api_client.post(
            '/api/accounts/token/', {'username': 'banker', 'password': PASSWORD}, format='json'
        )

        assert response.status_code == 401

    def test_token_endpoint_locks_after_failures(self, api_client, make_user):
        user = make_user(username='banker')

        for _ in range(5):
            response = api_client.post(
                '/api/accounts/token/', {'username': 'banker', 'password': 'wrong'}, format='json'
            )
            assert response.status_code == 401

        user.refresh_from_db()
        assert user.is_locked
        assert user.failed_attempts == 5

        response = api_client.post(
            '/api/accounts/token/', {'username': 'banker', 'password': PASSWORD}, format='json'
        )
        assert response.status_code == 401
        assert 'locked' in response.data['error']

    def test_token_success_resets_failures(self, api_client, make_user):
        user = make_user(username='banker')
        User.objects.filter(pk=user.pk).update(failed_attempts=3)

        response = api_client.post(
            '/api/accounts/token/', {'username': 'banker', 'password': PASSWORD}, format='json'
        )

        assert response.status_code == 200
        user.refresh_from_db()
        assert user.failed_attempts == 0


class TestMe:
    def test_requires_authentication(self, api_client):
        response = api_client.get('/api/accounts/me/')

        assert response.status_code == 401
        assert response.data['code'] == 'not_authenticated'

    def test_donor_sees_profile_id(self, client_for, donor):
        response = client_for(donor.user).get('/api/accounts/me/')

        assert response.status_code == 200
        assert response.data['donor_profile_id'] == donor.pk

    def test_staff_sees_institution(self, client_for, hospital_staff, institution):
        response = client_for(hospital_staff).get('/api/accounts/me/')

        assert response.data['institution_name'] == institution.name
        assert 'donor_profile_id' not in response.data


class TestCreateSuperuserSecure:
    def test_creates_admin_with_secret(self, settings, monkeypatch):
        settings.SUPERUSER_SECRET_KEY = 's3cret'
        answers = iter(['s3cret', PASSWORD])
        monkeypatch.setattr('getpass.getpass', lambda prompt='': next(answers))

        call_command('createsuperuser_secure', username='root', email='root@example.com')

        user = User.objects.get(username='root')
        assert user.is_superuser
        assert user.user_type == User.ADMIN

    def test_rejects_wrong_secret(self, settings, monkeypatch):
        settings.SUPERUSER_SECRET_KEY = 's3cret'
        monkeypatch.setattr('getpass.getpass', lambda prompt='': 'nope')

        with pytest.raises(CommandError):
            call_command('createsuperuser_secure', username='root', email='root@example.com')
        assert not User.objects.filter(username='root').exists()

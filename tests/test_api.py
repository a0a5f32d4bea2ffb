from io import StringIO

import pytest
from django.core.exceptions import PermissionDenied as DjangoPermissionDenied
from django.core.management import CommandError, call_command
from django.db.utils import DatabaseError
from django.http import Http404

from api import views
from bloodlink.exceptions import BusinessRuleViolation, api_exception_handler
from institutions.models import BloodRequest, EmergencyAlert, Institution
from inventory.models import InventoryStock

from .conftest import KTM_LAT, KTM_LON

pytestmark = pytest.mark.django_db


class TestExceptionHandler:
    def test_unhandled_error_is_wrapped(self):
        response = api_exception_handler(RuntimeError('boom'), {})

        assert response.status_code == 500
        assert response.data['code'] == 'internal_server_error'
        assert response.data['error'] == 'Internal server error.'
        assert response.data['correlation_id'].startswith('err-')

    @pytest.mark.parametrize('exc, status_code, code', [
        (Http404(), 404, 'resource_not_found'),
        (DjangoPermissionDenied(), 403, 'permission_denied'),
        (BusinessRuleViolation('Nope'), 422, 'business_rule_violation'),
    ])
    def test_known_errors(self, exc, status_code, code):
        response = api_exception_handler(exc, {})

        assert response.status_code == status_code
        assert response.data['code'] == code
        assert response.data['details'] is None

    def test_unauthenticated_request(self, api_client):
        response = api_client.get('/api/blood-requests/')

        assert response.status_code == 401
        assert response.data['code'] == 'not_authenticated'


class TestHealth:
    def test_healthy(self, api_client):
        response = api_client.get('/api/health/')

        assert response.status_code == 200
        assert response.data['status'] == 'healthy'

    def test_database_down(self, api_client, monkeypatch):
        class BrokenConnection:
            def cursor(self):
                raise DatabaseError('connection refused')

        monkeypatch.setattr(views, 'connection', BrokenConnection())

        response = api_client.get('/api/health/')

        assert response.status_code == 503
        assert response.data['database'] == 'unavailable'


class TestDashboard:
    def test_stats(self, client_for, responder, make_donor, make_request, institution):
        make_donor('A+')
        make_donor('B+', is_available=False)
        make_request(urgency_level='critical')
        make_request(status=BloodRequest.COMPLETED)
        EmergencyAlert.objects.create(
            alert_type='mass_casualty', severity='high', coordinator=responder,
        )

        data = client_for(responder).get('/api/stats/').data

        assert data['total_donors'] == 2
        assert data['available_donors'] == 1
        assert data['total_institutions'] == 1
        assert data['active_requests'] == 1
        assert data['completed_requests'] == 1
        assert data['critical_requests'] == 1
        assert data['active_emergencies'] == 1

    def test_stats_are_staff_only(self, client_for, donor):
        assert client_for(donor.user).get('/api/stats/').status_code == 403

    def test_leaderboard(self, client_for, donor, make_donor):
        top = make_donor(points=300, donation_count=6)

        rows = client_for(donor.user).get('/api/leaderboard/?limit=1').data

        assert rows == [{
            'id': top.pk, 'username': top.user.username, 'full_name': top.full_name,
            'blood_type': 'O-', 'donation_count': 6, 'points': 300,
        }]


class TestInstitutions:
    def test_nearby_blood_banks(self, client_for, donor, blood_bank, institution):
        InventoryStock.objects.create(institution=blood_bank, blood_type='O-', current_stock=3)
        InventoryStock.objects.create(institution=institution, blood_type='B+', current_stock=9)
        client = client_for(donor.user)

        response = client.get(f'/api/blood-banks/nearby/?lat={KTM_LAT}&lon={KTM_LON}&blood_type=A%2B')

        assert [bank['institution_id'] for bank in response.data] == [blood_bank.pk]
        assert response.data[0]['available_units'] == 3
        assert client.get('/api/blood-banks/nearby/?lat=200&lon=0&blood_type=A%2B').status_code == 400

    def test_list_filters_by_type(self, client_for, donor, blood_bank, institution):
        Institution.objects.create(name='Closed Clinic', institution_type=Institution.CLINIC, is_active=False)
        client = client_for(donor.user)

        everything = client.get('/api/institutions/').data
        banks = client.get('/api/institutions/?type=blood_bank').data

        assert everything['count'] == 2
        assert [row['name'] for row in banks['results']] == ['Central Blood Bank']


class TestImportInstitutions:
    HEADER = 'name,institution_type,location,contact_phone,license_number,latitude,longitude\n'

    def run(self, *args):
        out = StringIO()
        call_command('import_institutions', *args, stdout=out)
        return out.getvalue()

    def test_imports_and_updates(self, tmp_path):
        path = tmp_path / 'institutions.csv'
        path.write_text(self.HEADER + (
            'Teaching Hospital,Hospital,Maharajgunj,014412303,LIC-1,27.7357,85.3304\n'
            'Red Cross Blood Bank,blood bank,Exhibition Road,014225344,,,\n'
            'Mystery Place,spaceport,Nowhere,0,,,\n'
        ))

        output = self.run(str(path), '--verified')

        assert 'Created: 2, Updated: 0, Skipped: 1' in output
        hospital = Institution.objects.get(license_number='LIC-1')
        assert hospital.institution_type == Institution.HOSPITAL
        assert hospital.is_verified
        assert hospital.contact_phone == '+14412303'
        assert Institution.objects.get(name='Red Cross Blood Bank').latitude is None

        assert 'Created: 0, Updated: 2' in self.run(str(path))

    def test_missing_file_and_columns(self, tmp_path):
        with pytest.raises(CommandError, match='File not found'):
            self.run(str(tmp_path / 'missing.csv'))

        path = tmp_path / 'institutions.csv'
        path.write_text('name,location\nBir,Kathmandu\n')
        with pytest.raises(CommandError, match='institution_type, contact_phone'):
            self.run(str(path))

from datetime import timedelta
from io import StringIO

import pytest
from django.core.management import CommandError, call_command
from django.utils import timezone

from bloodlink.exceptions import BusinessRuleViolation, ValidationFailed
from donors import services
from donors.models import DonationHistory, DonationSchedule, DonorProfile
from donors.tasks import send_donation_reminders
from institutions.models import BloodRequest, DonorResponse
from inventory.models import InventoryStock
from notifications.models import Notification
from realtime.models import RealtimeEvent

from .conftest import KTM_LAT, KTM_LON

pytestmark = pytest.mark.django_db

POKHARA = (28.2096, 83.9856)


@pytest.fixture
def make_schedule(blood_bank):
    def _make(donor, hours_ahead=48, **fields):
        return DonationSchedule.objects.create(
            donor=donor,
            institution=fields.pop('institution', blood_bank),
            scheduled_date=timezone.now() + timedelta(hours=hours_ahead),
            blood_type=donor.blood_type,
            **fields,
        )
    return _make


class TestProfile:
    def test_toggle_availability_announces_return(self, donor):
        assert services.toggle_availability(donor).is_available is False
        assert not RealtimeEvent.objects.filter(event_type='donor_available').exists()

        assert services.toggle_availability(donor).is_available is True
        event = RealtimeEvent.objects.get(event_type='donor_available')
        assert event.data == {'donor_id': donor.pk, 'blood_type': 'O-'}

    def test_location_opt_out_clears_coordinates(self, donor):
        donor = services.update_profile(donor, {'allow_location': False, 'location': 'Lalitpur'})

        assert donor.latitude is None and donor.longitude is None
        assert donor.location == 'Lalitpur'

    def test_rejects_bad_name(self, donor):
        with pytest.raises(ValidationFailed):
            services.update_profile(donor, {'full_name': 'R2-D2'})


class TestDonations:
    def test_record_donation_credits_donor(self, donor, blood_bank):
        services.record_donation(donor, institution=blood_bank, units=1)

        assert donor.donation_count == 1
        assert donor.points == 50
        assert donor.last_donation_date == timezone.localdate()
        assert not donor.can_donate
        assert DonationHistory.objects.get(donor=donor).institution == blood_bank
        assert RealtimeEvent.objects.filter(event_type='donation_completed').count() == 1

    def test_schedule_checks_date_and_cooldown(self, make_donor, blood_bank):
        resting = make_donor('A+', last_donation_date=timezone.localdate() - timedelta(days=10))

        with pytest.raises(ValidationFailed):
            services.schedule_donation(resting, blood_bank, timezone.now() - timedelta(hours=1))
        with pytest.raises(BusinessRuleViolation):
            services.schedule_donation(resting, blood_bank, timezone.now() + timedelta(days=7))

    def test_schedule_after_cooldown_ends(self, make_donor, blood_bank):
        donor = make_donor('A+', last_donation_date=timezone.localdate() - timedelta(days=50))

        schedule = services.schedule_donation(donor, blood_bank, timezone.now() + timedelta(days=7), units=2)

        assert schedule.blood_type == 'A+'
        assert schedule.units_to_donate == 2
        assert services.get_donation_schedules(donor) == [schedule]

    def test_completing_schedule_records_donation_and_stock(self, donor, blood_bank, bank_staff, make_schedule):
        schedule = make_schedule(donor, units_to_donate=2)

        services.update_schedule_status(schedule, DonationSchedule.COMPLETED, bank_staff)

        donor.refresh_from_db()
        assert donor.donation_count == 1
        stock = InventoryStock.objects.get(institution=blood_bank, blood_type='O-')
        assert stock.current_stock == 2

    def test_schedule_transitions(self, donor, make_schedule):
        schedule = make_schedule(donor)

        services.update_schedule_status(schedule, DonationSchedule.CONFIRMED)
        assert services.update_schedule_status(schedule, DonationSchedule.CONFIRMED).status == 'confirmed'
        services.update_schedule_status(schedule, DonationSchedule.CANCELLED)

        with pytest.raises(BusinessRuleViolation):
            services.update_schedule_status(schedule, DonationSchedule.COMPLETED)

    def test_reminders_for_next_day_only(self, donor, make_schedule):
        soon = make_schedule(donor, hours_ahead=3)
        make_schedule(donor, hours_ahead=72)
        make_schedule(donor, hours_ahead=5, status=DonationSchedule.CANCELLED)

        assert services.send_donation_reminders() == 1
        assert services.send_donation_reminders() == 0

        soon.refresh_from_db()
        assert soon.reminder_sent
        notification = Notification.objects.get(notification_type='reminder')
        assert notification.data == {'schedule_id': soon.pk}
        assert send_donation_reminders() == 'Sent 0 donation reminders'


class TestDiscovery:
    def test_nearby_requests_ranked_and_filtered(self, make_donor, make_request):
        donor = make_donor('A+')
        normal = make_request()
        emergency = make_request(urgency_level='emergency')
        make_request(blood_type='O-')
        make_request(latitude=POKHARA[0], longitude=POKHARA[1])
        make_request(status=BloodRequest.COMPLETED)
        declined = make_request()
        DonorResponse.objects.create(donor=donor, blood_request=declined, response_type=DonorResponse.DECLINE)

        ranked = services.nearby_requests(donor)

        assert [item['request'] for item in ranked] == [emergency, normal]
        assert ranked[0]['priority_score'] > ranked[1]['priority_score']
        assert ranked[0]['request'].distance_km == 0.0

    def test_leaderboard_orders_by_points(self, make_donor):
        low = make_donor(points=50, donation_count=1)
        high = make_donor(points=200, donation_count=4)
        tied = make_donor(points=200, donation_count=5)

        assert services.leaderboard(limit=2) == [tied, high]
        assert services.leaderboard()[-1] == low


class TestDonorApi:
    def test_me_profile(self, client_for, donor, hospital_staff):
        client = client_for(donor.user)

        assert client.get('/api/donors/me/').data['blood_type'] == 'O-'
        patched = client.patch('/api/donors/me/', {'location': 'Bhaktapur'}, format='json')
        assert patched.data['location'] == 'Bhaktapur'
        assert client.patch('/api/donors/me/', {'full_name': '1'}, format='json').status_code == 400

        assert client_for(hospital_staff).get('/api/donors/me/').status_code == 403

    def test_toggle_and_nearby(self, client_for, make_donor, make_request):
        donor = make_donor('A+')
        make_request()
        client = client_for(donor.user)

        assert client.post('/api/donors/me/availability/').data == {'is_available': False}
        assert client.get('/api/donors/me/nearby-requests/').data == []

        client.post('/api/donors/me/availability/')
        rows = client.get('/api/donors/me/nearby-requests/?max_distance=10').data
        assert len(rows) == 1
        assert set(rows[0]) == {'request', 'distance_km', 'priority_score', 'priority_level'}

    def test_admin_lists_donors(self, client_for, admin_user, make_donor):
        make_donor('A+')
        make_donor('B-', is_available=False)
        client = client_for(admin_user)

        assert client.get('/api/donors/').data['count'] == 2
        assert client.get('/api/donors/?blood_type=B-').data['count'] == 1
        assert client.get('/api/donors/?available=true').data['count'] == 1

    def test_donors_list_is_admin_only(self, client_for, hospital_staff):
        assert client_for(hospital_staff).get('/api/donors/').status_code == 403


class TestScheduleApi:
    def test_donor_books_donation(self, client_for, donor, blood_bank, hospital_staff):
        payload = {
            'institution': blood_bank.pk,
            'scheduled_date': (timezone.now() + timedelta(days=3)).isoformat(),
        }

        created = client_for(donor.user).post('/api/schedules/', payload, format='json')
        assert created.status_code == 201
        assert created.data['blood_type'] == 'O-'
        assert created.data['status'] == 'scheduled'

        assert client_for(hospital_staff).post('/api/schedules/', payload, format='json').status_code == 403

        payload['scheduled_date'] = (timezone.now() - timedelta(days=1)).isoformat()
        assert client_for(donor.user).post('/api/schedules/', payload, format='json').status_code == 400

    def test_status_changes_by_role(self, client_for, donor, bank_staff, make_schedule):
        schedule = make_schedule(donor)
        url = f'/api/schedules/{schedule.pk}/status/'

        assert client_for(donor.user).post(url, {'status': 'confirmed'}, format='json').status_code == 200
        assert client_for(donor.user).post(url, {'status': 'completed'}, format='json').status_code == 403

        done = client_for(bank_staff).post(url, {'status': 'completed'}, format='json')
        assert done.data['status'] == 'completed'
        assert DonorProfile.objects.get(pk=donor.pk).donation_count == 1

        again = client_for(bank_staff).post(url, {'status': 'no_show'}, format='json')
        assert again.status_code == 422
        assert again.data['code'] == 'business_rule_violation'

    def test_schedule_lists_are_scoped(self, client_for, donor, make_donor, bank_staff, institution, make_schedule):
        mine = make_schedule(donor)
        make_schedule(make_donor('A+'))
        make_schedule(make_donor('B+'), institution=institution)

        donor_rows = client_for(donor.user).get('/api/schedules/').data['results']
        staff_rows = client_for(bank_staff).get('/api/schedules/').data['results']

        assert [row['id'] for row in donor_rows] == [mine.pk]
        assert len(staff_rows) == 2


class TestImportDonors:
    HEADER = 'full_name,email,phone,blood_group,latitude,longitude,last_donation_date\n'

    def write(self, tmp_path, body, header=HEADER):
        path = tmp_path / 'donors.csv'
        path.write_text(header + body)
        return path

    def run(self, *args):
        out = StringIO()
        call_command('import_donors', *args, stdout=out)
        return out.getvalue()

    def test_imports_valid_rows(self, tmp_path):
        path = self.write(tmp_path, (
            f'Sita Rai,Sita@Example.com,+9779841000001,a+,{KTM_LAT},{KTM_LON},2026-01-05\n'
            'Bad Type,bad@example.com,+9779841000002,Z+,,,\n'
            'No Phone,nophone@example.com,not-a-phone,O-,,,\n'
        ))

        output = self.run(str(path))

        assert 'Created: 1, Updated: 0, Skipped: 2' in output
        donor = DonorProfile.objects.get(user__email='sita@example.com')
        assert donor.blood_type == 'A+'
        assert donor.latitude == pytest.approx(KTM_LAT)
        assert str(donor.last_donation_date) == '2026-01-05'
        assert not donor.user.has_usable_password()

        assert 'Created: 0, Updated: 1' in self.run(str(path))

    def test_dry_run_writes_nothing(self, tmp_path):
        path = self.write(tmp_path, 'Sita Rai,sita@example.com,+9779841000001,A+,,,\n')

        output = self.run(str(path), '--dry-run')

        assert 'Validated: 1' in output
        assert not DonorProfile.objects.exists()

    def test_missing_columns(self, tmp_path):
        path = self.write(tmp_path, 'Sita Rai,A+\n', header='full_name,blood_type\n')

        with pytest.raises(CommandError, match='Missing columns: email, phone'):
            self.run(str(path))

    def test_unsupported_file(self, tmp_path):
        path = tmp_path / 'donors.json'
        path.write_text('[]')

        with pytest.raises(CommandError, match='Unsupported file type'):
            self.run(str(path))

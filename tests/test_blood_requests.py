from datetime import timedelta

import pytest
from django.core.management import call_command
from django.utils import timezone
from rest_framework.throttling import ScopedRateThrottle

from bloodlink.exceptions import BusinessRuleViolation, ResourceConflict, ValidationFailed
from donors.models import DonationHistory
from institutions import services
from institutions.models import (
    BloodRequest, DonorMatch, DonorResponse, EmergencyAlert, Institution, RequestUpdate,
)
from inventory.models import BloodUnit, InventoryStock
from inventory.services import reserve_blood_units
from notifications.models import Notification
from realtime.models import RealtimeEvent

from .conftest import KTM_LAT, KTM_LON

pytestmark = pytest.mark.django_db


def request_data(**overrides):
    data = {
        'patient_name': 'Ram Sharma',
        'patient_age': 45,
        'blood_type': 'A+',
        'units_needed': 1,
        'urgency_level': 'urgent',
        'contact_phone': '+9779811111111',
        'location': 'Kathmandu',
        'latitude': KTM_LAT,
        'longitude': KTM_LON,
    }
    data.update(overrides)
    return data


@pytest.fixture
def donor_pool(make_donor):
    return {
        'exact': make_donor('A+', full_name='Exact Match'),
        'universal': make_donor('O-', full_name='Universal Donor'),
        'incompatible': make_donor('B+', full_name='Wrong Type'),
        'far': make_donor('A+', latitude=28.2096, longitude=83.9856, full_name='Far Away'),
        'resting': make_donor(
            'O+', last_donation_date=timezone.localdate() - timedelta(days=10), full_name='Recently Donated'
        ),
    }


class TestCreateBloodRequest:
    def test_matches_eligible_donors_best_first(self, hospital_staff, donor_pool):
        blood_request, result = services.create_blood_request(hospital_staff, request_data())

        matched_ids = [m['donor_id'] for m in result['donor_matches']]
        assert matched_ids == [donor_pool['exact'].pk, donor_pool['universal'].pk]
        assert result['total_notified'] == 2
        assert blood_request.institution == hospital_staff.institution
        assert blood_request.status == BloodRequest.PENDING

        matches = DonorMatch.objects.filter(blood_request=blood_request)
        assert matches.count() == 2
        assert set(matches.values_list('status', flat=True)) == {'contacted'}

    def test_notifies_donors_and_broadcasts(self, hospital_staff, donor_pool):
        blood_request, _ = services.create_blood_request(hospital_staff, request_data())

        notified = Notification.objects.filter(notification_type='blood_request')
        assert set(notified.values_list('user_id', flat=True)) == {
            donor_pool['exact'].user_id, donor_pool['universal'].user_id,
        }
        assert notified.first().channels == ['push', 'email']
        assert notified.first().priority == 'high'

        event = RealtimeEvent.objects.get(event_type='blood_request_created')
        assert event.data['request_id'] == blood_request.pk
        assert event.blood_type == 'A+'

    def test_expiry_follows_urgency(self, hospital_staff):
        before = timezone.now()
        blood_request, _ = services.create_blood_request(
            hospital_staff, request_data(urgency_level='emergency')
        )
        assert before + timedelta(minutes=59) < blood_request.expires_at <= timezone.now() + timedelta(hours=1)

    def test_later_deadline_extends_expiry(self, hospital_staff):
        deadline = timezone.now() + timedelta(days=2)
        blood_request, _ = services.create_blood_request(
            hospital_staff, request_data(completion_deadline=deadline.isoformat())
        )
        assert blood_request.expires_at == deadline

    def test_priority_rules_are_applied(self, hospital_staff):
        call_command('seed_prioritization_rules')

        blood_request, _ = services.create_blood_request(
            hospital_staff, request_data(urgency_level='critical', request_type='emergency')
        )
        assert blood_request.priority_score == 10

    def test_reserves_stock_and_lists_blood_banks(self, hospital_staff, blood_bank, make_unit):
        unit = make_unit('O-')
        InventoryStock.objects.create(institution=blood_bank, blood_type='O-', current_stock=1)

        blood_request, result = services.create_blood_request(hospital_staff, request_data())

        assert [bank['institution_id'] for bank in result['blood_bank_matches']] == [blood_bank.pk]
        assert result['blood_bank_matches'][0]['inventory_status'] == 'available'
        unit.refresh_from_db()
        assert unit.status == BloodUnit.RESERVED
        assert unit.reserved_for == blood_request
        assert BloodRequest.objects.get(pk=blood_request.pk).inventory_reserved

    def test_invalid_input(self, hospital_staff):
        with pytest.raises(ValidationFailed):
            services.create_blood_request(hospital_staff, request_data(contact_phone='not-a-phone'))
        with pytest.raises(ValidationFailed):
            services.create_blood_request(hospital_staff, request_data(longitude=None))
        assert not BloodRequest.objects.exists()


class TestRespond:
    def test_accept_matches_single_unit_request(self, hospital_staff, donor_pool):
        blood_request, _ = services.create_blood_request(hospital_staff, request_data())
        donor = donor_pool['exact']

        response, matched = services.respond_to_request(blood_request, donor, DonorResponse.ACCEPT, 15)

        assert matched
        assert response.status == DonorResponse.CONFIRMED
        blood_request.refresh_from_db()
        assert blood_request.status == BloodRequest.MATCHED
        assert blood_request.matched_at is not None
        assert blood_request.response_count == 1
        assert DonorMatch.objects.get(blood_request=blood_request, donor=donor).status == 'accepted'

        donor.refresh_from_db()
        assert (donor.total_responses, donor.accepted_responses) == (1, 1)
        assert Notification.objects.filter(user=hospital_staff, notification_type='donor_match').exists()
        assert RealtimeEvent.objects.filter(event_type='donor_matched').exists()

    def test_partial_fulfilment(self, hospital_staff, donor_pool):
        blood_request, _ = services.create_blood_request(hospital_staff, request_data(units_needed=2))

        _, matched = services.respond_to_request(blood_request, donor_pool['exact'], DonorResponse.ACCEPT)

        assert not matched
        blood_request.refresh_from_db()
        assert blood_request.status == BloodRequest.PARTIALLY_FULFILLED
        assert RequestUpdate.objects.filter(
            blood_request=blood_request, new_value=BloodRequest.PARTIALLY_FULFILLED
        ).exists()

    def test_decline_excludes_donor_from_future_matching(self, hospital_staff, donor_pool):
        blood_request, _ = services.create_blood_request(hospital_staff, request_data())
        donor = donor_pool['exact']

        response, matched = services.respond_to_request(blood_request, donor, DonorResponse.DECLINE)

        assert not matched
        assert response.status == DonorResponse.CANCELLED
        assert DonorMatch.objects.get(blood_request=blood_request, donor=donor).status == 'declined'
        remaining = [c['donor'].pk for c in services.find_matching_donors(blood_request)]
        assert donor.pk not in remaining

    def test_changing_answer_updates_counters(self, hospital_staff, donor_pool):
        blood_request, _ = services.create_blood_request(hospital_staff, request_data(units_needed=2))
        donor = donor_pool['exact']

        services.respond_to_request(blood_request, donor, DonorResponse.ACCEPT)
        services.respond_to_request(blood_request, donor, DonorResponse.DECLINE)

        donor.refresh_from_db()
        assert (donor.total_responses, donor.accepted_responses) == (1, 0)
        assert DonorResponse.objects.filter(donor=donor).count() == 1
        blood_request.refresh_from_db()
        assert blood_request.status == BloodRequest.PENDING

    def test_withdrawn_acceptance_unmatches_request(self, hospital_staff, donor_pool):
        blood_request, _ = services.create_blood_request(hospital_staff, request_data())
        donor = donor_pool['exact']

        _, matched = services.respond_to_request(blood_request, donor, DonorResponse.ACCEPT)
        assert matched
        _, matched = services.respond_to_request(blood_request, donor, DonorResponse.DECLINE)

        assert not matched
        blood_request.refresh_from_db()
        assert blood_request.status == BloodRequest.PENDING
        assert blood_request.matched_at is None
        changes = list(
            RequestUpdate.objects.filter(blood_request=blood_request, update_type='status_change')
            .order_by('id').values_list('old_value', 'new_value')
        )
        assert changes[-1] == ('matched', 'pending')

    def test_closed_request_rejects_responses(self, make_request, donor):
        blood_request = make_request(status=BloodRequest.CANCELLED)

        with pytest.raises(BusinessRuleViolation):
            services.respond_to_request(blood_request, donor, DonorResponse.ACCEPT)


class TestStatusChanges:
    def test_status_change_is_logged_and_broadcast(self, make_request, hospital_staff):
        blood_request = make_request()

        services.update_request_status(blood_request, BloodRequest.IN_PROGRESS, hospital_staff, 'on the way')

        update = RequestUpdate.objects.get(blood_request=blood_request)
        assert (update.old_value, update.new_value) == ('pending', 'in_progress')
        assert update.updated_by == hospital_staff
        assert RealtimeEvent.objects.filter(event_type='blood_request_updated').exists()

    def test_terminal_status_is_final(self, make_request):
        blood_request = make_request()
        services.cancel_request(blood_request)

        with pytest.raises(BusinessRuleViolation):
            services.update_request_status(blood_request, BloodRequest.PENDING)

    def test_unknown_status(self, make_request):
        with pytest.raises(ValidationFailed):
            services.update_request_status(make_request(), 'lost')

    def test_cancel_releases_reserved_units(self, make_request, make_unit):
        unit = make_unit('O-')
        blood_request = make_request()
        reserve_blood_units('A+', 1, blood_request)

        services.cancel_request(blood_request)

        unit.refresh_from_db()
        assert unit.status == BloodUnit.AVAILABLE
        assert unit.reserved_for is None
        assert not BloodRequest.objects.get(pk=blood_request.pk).inventory_reserved

    def test_complete_records_donations_and_uses_units(self, hospital_staff, donor_pool, make_unit, settings):
        settings.BLOODLINK = {'POINTS_PER_DONATION': 50}
        unit = make_unit('O-')
        blood_request, _ = services.create_blood_request(hospital_staff, request_data())
        donor = donor_pool['exact']
        services.respond_to_request(blood_request, donor, DonorResponse.ACCEPT)
        blood_request.refresh_from_db()

        services.complete_request(blood_request, hospital_staff)

        blood_request.refresh_from_db()
        assert blood_request.status == BloodRequest.COMPLETED
        unit.refresh_from_db()
        assert unit.status == BloodUnit.USED
        history = DonationHistory.objects.get(donor=donor)
        assert history.blood_request == blood_request
        donor.refresh_from_db()
        assert (donor.donation_count, donor.points) == (1, 50)
        assert donor.last_donation_date == timezone.localdate()

        with pytest.raises(BusinessRuleViolation):
            services.complete_request(blood_request, hospital_staff)

        donor.refresh_from_db()
        assert donor.donation_count == 1
        assert DonationHistory.objects.filter(donor=donor).count() == 1

    def test_update_recomputes_priority(self, make_request, hospital_staff):
        call_command('seed_prioritization_rules')
        blood_request = make_request(units_needed=1)

        services.update_blood_request(blood_request, {'units_needed': 6}, hospital_staff)

        blood_request.refresh_from_db()
        assert blood_request.units_needed == 6
        assert blood_request.priority_score == 6
        assert RequestUpdate.objects.filter(blood_request=blood_request, update_type='priority_change').exists()

    def test_assign_coordinator(self, make_request, responder, hospital_staff):
        blood_request = make_request()

        coordination = services.assign_coordinator(blood_request, responder, 'emergency', hospital_staff)

        assert coordination.role == 'emergency'
        assert BloodRequest.objects.get(pk=blood_request.pk).assigned_coordinator == responder
        assert Notification.objects.filter(user=responder, notification_type='status_update').exists()
        with pytest.raises(ResourceConflict):
            services.assign_coordinator(blood_request, responder)


class TestBackgroundWork:
    def test_expire_overdue_requests(self, make_request):
        overdue = make_request(expires_at=timezone.now() - timedelta(minutes=1))
        busy = make_request(status=BloodRequest.IN_PROGRESS, expires_at=timezone.now() - timedelta(minutes=1))
        fresh = make_request()

        assert services.expire_overdue_requests() == 1

        overdue.refresh_from_db()
        busy.refresh_from_db()
        fresh.refresh_from_db()
        assert overdue.status == BloodRequest.EXPIRED
        assert busy.status == BloodRequest.IN_PROGRESS
        assert fresh.status == BloodRequest.PENDING

    def test_escalation_notifies_next_batch(self, hospital_staff, make_donor, settings):
        settings.BLOODLINK = {'NOTIFY_TOP_N': 1, 'ESCALATION_BATCH_SIZE': 5}
        for _ in range(3):
            make_donor('A+')
        blood_request, result = services.create_blood_request(hospital_staff, request_data())
        assert result['total_notified'] == 1

        assert services.escalate(blood_request.pk) == 2

        blood_request.refresh_from_db()
        assert blood_request.escalation_count == 1
        assert not blood_request.matches.filter(status='pending').exists()
        assert RequestUpdate.objects.filter(
            blood_request=blood_request, update_type='emergency_escalation'
        ).exists()

    def test_escalation_skips_requests_no_longer_pending(self, make_request):
        blood_request = make_request(status=BloodRequest.MATCHED)
        assert services.escalate(blood_request.pk) is None
        assert services.escalate(999999) is None

    def test_escalation_task(self, make_request):
        from institutions.tasks import escalate_request

        blood_request = make_request(status=BloodRequest.COMPLETED)
        assert escalate_request(blood_request.pk) == f"Request {blood_request.pk} no longer pending"


class TestQueries:
    def test_visibility_by_role(self, make_request, hospital_staff, responder, make_user, donor):
        other_hospital = Institution.objects.create(name='Patan Hospital')
        other_staff = make_user('hospital_staff', institution=other_hospital)
        ours = make_request()
        theirs = make_request(requester=other_staff, institution=other_hospital)
        own = make_request(requester=donor.user, institution=None)

        assert set(services.get_blood_requests_for(hospital_staff)) == {ours}
        assert set(services.get_blood_requests_for(responder)) == {ours, theirs, own}
        assert set(services.get_blood_requests_for(donor.user)) == {own}
        assert list(services.get_blood_requests_for(responder, {'status': 'completed'})) == []

    def test_active_requests_are_annotated(self, hospital_staff, donor_pool):
        blood_request, _ = services.create_blood_request(hospital_staff, request_data())
        services.respond_to_request(blood_request, donor_pool['exact'], DonorResponse.ACCEPT)

        active = services.get_active_blood_requests().get(pk=blood_request.pk)
        assert (active.match_count, active.accepted_count) == (2, 1)

    def test_statistics(self, make_request):
        make_request()
        make_request(status=BloodRequest.COMPLETED)

        stats = services.get_request_statistics(30)

        assert stats['total_requests'] == 2
        assert stats['pending_requests'] == 1
        assert stats['completed_requests'] == 1
        assert stats['success_rate'] == 50.0


class TestEmergencyAlerts:
    def test_critical_alert_broadcasts_and_alerts_donors(self, responder, make_donor):
        needed = make_donor('O-')
        other = make_donor('A+')

        alert = services.create_emergency_alert(
            {'alert_type': 'mass_casualty', 'severity': 'critical', 'blood_types_needed': ['O-'],
             'units_required': 10},
            responder,
        )

        assert alert.coordinator == responder
        assert RealtimeEvent.objects.filter(event_type='emergency_alert', priority='critical').exists()
        alerted = set(Notification.objects.filter(notification_type='emergency').values_list('user_id', flat=True))
        assert alerted == {needed.user_id}
        assert other.user_id not in alerted

    def test_low_severity_stays_quiet(self, responder, donor):
        services.create_emergency_alert({'alert_type': 'medical_emergency', 'severity': 'low'}, responder)

        assert not RealtimeEvent.objects.filter(event_type='emergency_alert').exists()
        assert not Notification.objects.exists()

    def test_active_alerts_order_by_severity(self, responder):
        low = services.create_emergency_alert({'alert_type': 'medical_emergency', 'severity': 'low'}, responder)
        critical = services.create_emergency_alert(
            {'alert_type': 'natural_disaster', 'severity': 'critical'}, responder
        )
        medium = services.create_emergency_alert(
            {'alert_type': 'transport_accident', 'severity': 'medium'}, responder
        )

        assert list(services.get_active_emergency_alerts()) == [critical, medium, low]

    def test_resolve(self, responder):
        alert = services.create_emergency_alert({'alert_type': 'medical_emergency', 'severity': 'low'}, responder)

        services.resolve_emergency_alert(alert, responder, 'all clear')

        alert.refresh_from_db()
        assert alert.status == 'resolved'
        assert alert.resolved_at is not None
        assert 'all clear' in alert.notes
        assert not services.get_active_emergency_alerts().exists()
        with pytest.raises(BusinessRuleViolation):
            services.resolve_emergency_alert(alert, responder)


class TestBloodRequestApi:
    URL = '/api/blood-requests/'

    def test_staff_creates_request(self, client_for, hospital_staff, donor_pool):
        response = client_for(hospital_staff).post(self.URL, request_data(), format='json')

        assert response.status_code == 201
        assert response.data['blood_request']['status'] == 'pending'
        assert len(response.data['donor_matches']) == 2
        assert response.data['total_notified'] == 2

    def test_validation_error_envelope(self, client_for, hospital_staff):
        response = client_for(hospital_staff).post(self.URL, request_data(contact_phone='not-a-phone'), format='json')

        assert response.status_code == 400
        assert response.data['code'] == 'validation_error'
        assert 'contact_phone' in response.data['details']

    def test_creation_is_rate_limited(self, client_for, hospital_staff, monkeypatch):
        monkeypatch.setattr(ScopedRateThrottle, 'THROTTLE_RATES', {'blood_requests': '2/hour'})
        client = client_for(hospital_staff)

        statuses = [client.post(self.URL, request_data(), format='json').status_code for _ in range(3)]

        assert statuses == [201, 201, 429]

    def test_list_is_scoped_and_paginated(self, client_for, make_request, donor):
        make_request()

        response = client_for(donor.user).get(self.URL)

        assert response.status_code == 200
        assert response.data['count'] == 0
        assert response.data['results'] == []

    def test_donor_responds(self, client_for, make_request, donor):
        blood_request = make_request(blood_type='A+')

        response = client_for(donor.user).post(
            f'{self.URL}{blood_request.pk}/respond/', {'response_type': 'accept', 'eta_minutes': 20}, format='json'
        )

        assert response.status_code == 200
        assert response.data['matched'] is True
        assert response.data['response']['eta_minutes'] == 20

    def test_staff_cannot_respond(self, client_for, make_request, hospital_staff):
        blood_request = make_request()

        response = client_for(hospital_staff).post(
            f'{self.URL}{blood_request.pk}/respond/', {'response_type': 'accept'}, format='json'
        )

        assert response.status_code == 403

    def test_other_institution_cannot_manage(self, client_for, make_request, make_user):
        other_staff = make_user('hospital_staff', institution=Institution.objects.create(name='Patan Hospital'))
        blood_request = make_request()

        client = client_for(other_staff)
        assert client.get(f'{self.URL}{blood_request.pk}/').status_code == 403
        assert client.post(f'{self.URL}{blood_request.pk}/cancel/', {}, format='json').status_code == 403

    def test_requester_updates_and_completes(self, client_for, make_request, hospital_staff):
        blood_request = make_request()
        client = client_for(hospital_staff)

        patched = client.patch(f'{self.URL}{blood_request.pk}/', {'units_needed': 3}, format='json')
        completed = client.post(f'{self.URL}{blood_request.pk}/complete/', {'notes': 'done'}, format='json')
        again = client.post(f'{self.URL}{blood_request.pk}/status/', {'status': 'pending'}, format='json')

        assert patched.data['units_needed'] == 3
        assert completed.data['status'] == 'completed'
        assert again.status_code == 422
        assert again.data['code'] == 'business_rule_violation'

    def test_second_complete_is_rejected(self, client_for, hospital_staff, donor_pool):
        client = client_for(hospital_staff)
        blood_request, _ = services.create_blood_request(hospital_staff, request_data())
        donor = donor_pool['exact']
        services.respond_to_request(blood_request, donor, DonorResponse.ACCEPT)

        first = client.post(f'{self.URL}{blood_request.pk}/complete/', {}, format='json')
        second = client.post(f'{self.URL}{blood_request.pk}/complete/', {}, format='json')

        assert first.status_code == 200
        assert second.status_code == 422
        assert second.data['code'] == 'business_rule_violation'
        donor.refresh_from_db()
        assert donor.donation_count == 1

    def test_history_endpoints(self, client_for, hospital_staff, donor_pool):
        client = client_for(hospital_staff)
        created = client.post(self.URL, request_data(), format='json')
        pk = created.data['blood_request']['id']
        client.post(f'{self.URL}{pk}/status/', {'status': 'in_progress'}, format='json')

        matches = client.get(f'{self.URL}{pk}/matches/')
        updates = client.get(f'{self.URL}{pk}/updates/')
        responses = client.get(f'{self.URL}{pk}/responses/')

        assert [m['donor'] for m in matches.data] == [donor_pool['exact'].pk, donor_pool['universal'].pk]
        assert updates.data[0]['new_value'] == 'in_progress'
        assert responses.data == []

    def test_assign_coordinator_endpoint(self, client_for, make_request, hospital_staff, responder, donor):
        blood_request = make_request()
        client = client_for(hospital_staff)
        url = f'{self.URL}{blood_request.pk}/assign-coordinator/'

        created = client.post(url, {'coordinator': responder.pk, 'role': 'primary'}, format='json')
        duplicate = client.post(url, {'coordinator': responder.pk}, format='json')
        donor_as_coordinator = client.post(url, {'coordinator': donor.user.pk}, format='json')

        assert created.status_code == 201
        assert duplicate.status_code == 409
        assert donor_as_coordinator.status_code == 400

    def test_unknown_request(self, client_for, responder):
        response = client_for(responder).get(f'{self.URL}424242/')

        assert response.status_code == 404
        assert response.data['code'] == 'resource_not_found'

    def test_statistics_endpoint(self, client_for, make_request, hospital_staff, donor):
        make_request()

        assert client_for(hospital_staff).get('/api/requests/statistics/').data['total_requests'] == 1
        assert client_for(donor.user).get('/api/requests/statistics/').status_code == 403

    def test_active_requests_endpoint(self, client_for, make_request, responder):
        make_request()
        make_request(status=BloodRequest.COMPLETED)

        response = client_for(responder).get('/api/active-requests/')

        assert response.data['count'] == 1
        assert response.data['results'][0]['match_count'] == 0


class TestEmergencyAlertApi:
    URL = '/api/emergency-alerts/'

    def test_only_coordinators_create(self, client_for, donor, responder):
        payload = {'alert_type': 'natural_disaster', 'severity': 'high', 'blood_types_needed': ['O-']}

        denied = client_for(donor.user).post(self.URL, payload, format='json')
        created = client_for(responder).post(self.URL, payload, format='json')

        assert denied.status_code == 403
        assert denied.data['error'].startswith('Access denied')
        assert created.status_code == 201
        assert EmergencyAlert.objects.get().coordinator == responder

    def test_list_and_resolve(self, client_for, responder, donor):
        alert = services.create_emergency_alert({'alert_type': 'medical_emergency', 'severity': 'low'}, responder)

        listed = client_for(donor.user).get(self.URL)
        assert listed.data['results'][0]['id'] == alert.pk
        assert client_for(donor.user).post(f'{self.URL}{alert.pk}/resolve/').status_code == 403

        resolved = client_for(responder).post(f'{self.URL}{alert.pk}/resolve/', {'notes': 'ok'}, format='json')
        assert resolved.data['status'] == 'resolved'

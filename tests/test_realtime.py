from datetime import timedelta

import pytest
from django.utils import timezone

from realtime import services
from realtime.models import RealtimeEvent

pytestmark = pytest.mark.django_db


class TestEventsFor:
    def test_targeting(self, donor, hospital_staff, bank_staff):
        public = services.broadcast('blood_request_created', {'request_id': 1})
        staff_only = services.broadcast('supply_shortage', target_roles=['hospital_staff'])
        personal = services.broadcast('notification', {'n': 1}, target_user=donor.user)

        assert services.events_for(donor.user) == [public, personal]
        assert services.events_for(hospital_staff) == [public, staff_only]
        assert services.events_for(bank_staff) == [public]

    def test_filters_and_since(self, donor):
        old = services.broadcast('emergency_alert', priority='critical', blood_type='O-')
        RealtimeEvent.objects.filter(pk=old.pk).update(created_at=timezone.now() - timedelta(minutes=10))
        fresh = services.broadcast('emergency_alert', priority='high', blood_type='A+')
        services.broadcast('inventory_updated')

        since = timezone.now() - timedelta(minutes=5)
        assert services.events_for(donor.user, since=since, event_type='emergency_alert') == [fresh]
        assert services.events_for(donor.user, priority='critical') == [old]
        assert services.events_for(donor.user, blood_type='A+') == [fresh]

    def test_limit(self, donor):
        for _ in range(5):
            services.broadcast('inventory_updated')

        assert len(services.events_for(donor.user, limit=2)) == 2
        assert services.clamp_limit(0) == 1
        assert services.clamp_limit(5000) == 1000
        assert services.clamp_limit(None) == 50

    def test_payload_is_json_safe(self):
        when = timezone.now()

        event = services.broadcast('donation_scheduled', {'scheduled_date': when})

        event.refresh_from_db()
        assert isinstance(event.data['scheduled_date'], str)


class TestRealtimeApi:
    def test_poll(self, client_for, donor):
        services.broadcast('blood_request_created', {'request_id': 7}, blood_type='A+')
        services.broadcast('supply_shortage', target_roles=['admin'])

        response = client_for(donor.user).get('/api/realtime/events/?limit=10')

        assert response.status_code == 200
        assert response.data['count'] == 1
        assert response.data['events'][0]['data'] == {'request_id': 7}
        assert 'server_time' in response.data

    def test_rejects_bad_query(self, client_for, donor):
        response = client_for(donor.user).get('/api/realtime/events/?limit=0')
        assert response.status_code == 400

    def test_staff_publish(self, client_for, responder, donor):
        payload = {'event_type': 'emergency_alert', 'data': {'msg': 'Bus accident'},
                   'priority': 'critical', 'target_roles': ['donor']}

        created = client_for(responder).post('/api/realtime/events/', payload, format='json')

        assert created.status_code == 201
        assert created.data['source'] == f'user:{responder.pk}'
        assert client_for(donor.user).post('/api/realtime/events/', payload, format='json').status_code == 403
        assert len(services.events_for(donor.user)) == 1

    def test_requires_authentication(self, api_client):
        assert api_client.get('/api/realtime/events/').status_code == 401

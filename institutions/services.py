# institutions/services.py
"""
Blood request lifecycle: creation, donor matching and notification,
donor responses, status changes, coordination and emergency alerts.
"""
import logging
from datetime import timedelta

from django.db import transaction
from django.db.models import Case, Count, IntegerField, Q, Value, When
from django.utils import timezone

from algorithms.blood_compatibility import get_compatible_donors
from algorithms.eligibility import is_donor_eligible
from algorithms.haversine import find_nearby, has_coordinates
from algorithms.matching import (
    blood_bank_score, compatibility_score, expiration_hours, inventory_status,
    match_score, notification_channels, transport_time_minutes,
)
from algorithms.mcdm import rank_donors_mcdm
from algorithms.priority import calculate_priority_score
from bloodlink.conf import get_setting
from bloodlink.exceptions import BusinessRuleViolation, ResourceConflict, ValidationFailed
from donors.models import DonorProfile
from donors.services import record_donation
from inventory.models import InventoryStock
from inventory.services import mark_units_used, release_reservation, reserve_blood_units
from notifications.services import send_alert
from realtime.services import broadcast
from .models import (
    Institution, BloodRequest, DonorResponse, DonorMatch, RequestUpdate,
    RequestCoordination, EmergencyAlert, PrioritizationRule,
)
from .serializers import (
    BloodRequestCreateSerializer, BloodRequestUpdateSerializer, EmergencyAlertSerializer,
)

logger = logging.getLogger(__name__)

# Notification priority used for each urgency level
URGENCY_PRIORITY = {
    'emergency': 'critical',
    'critical': 'high',
    'urgent': 'high',
    'normal': 'normal',
}

STAFF_ROLES = ['hospital_staff', 'blood_bank_staff', 'emergency_responder', 'admin']


def _validated(serializer_class, data, **kwargs):
    serializer = serializer_class(data=data, **kwargs)
    if not serializer.is_valid():
        raise ValidationFailed(serializer.errors)
    return serializer.validated_data


def _request_payload(blood_request):
    return {
        'request_id': blood_request.pk,
        'blood_type': blood_request.blood_type,
        'units_needed': blood_request.units_needed,
        'urgency_level': blood_request.urgency_level,
        'status': blood_request.status,
        'priority_score': blood_request.priority_score,
        'location': blood_request.location,
    }


# ---------------------------
# Creation
# ---------------------------
def create_blood_request(requester, data):
    """
    Create a request, match and notify donors, reserve stock and schedule escalation.

    Returns:
        (blood_request, {'donor_matches', 'blood_bank_matches', 'total_notified'})
    """
    data = dict(_validated(BloodRequestCreateSerializer, data))
    deadline = data.pop('completion_deadline', None)
    data.setdefault('institution', None)
    if data['institution'] is None:
        data['institution'] = getattr(requester, 'institution', None)

    now = timezone.now()
    expires_at = now + timedelta(hours=expiration_hours(data['urgency_level']))
    if deadline and deadline > expires_at:
        expires_at = deadline

    with transaction.atomic():
        blood_request = BloodRequest.objects.create(
            requester=requester,
            expires_at=expires_at,
            **data,
        )
        blood_request.priority_score = calculate_priority_score(
            blood_request, PrioritizationRule.objects.filter(is_active=True)
        )
        blood_request.save(update_fields=['priority_score'])

        candidates = find_matching_donors(blood_request)
        matches = [
            DonorMatch.objects.create(
                blood_request=blood_request,
                donor=candidate['donor'],
                match_score=candidate['match_score'],
                criteria=candidate['criteria'],
                compatibility_score=candidate['compatibility_score'],
                distance_km=candidate['distance_km'],
            )
            for candidate in candidates
        ]

        total_notified = notify_matches(blood_request, matches[:get_setting('NOTIFY_TOP_N')])

        blood_bank_matches = []
        if has_coordinates(blood_request):
            blood_bank_matches = find_nearby_blood_banks(
                blood_request.latitude,
                blood_request.longitude,
                blood_request.blood_type,
                blood_request.units_needed,
                radius_km=get_setting('MATCH_RADIUS_KM'),
            )
            reserve_blood_units(
                blood_request.blood_type,
                blood_request.units_needed,
                blood_request,
                user=requester,
            )

        broadcast(
            'blood_request_created',
            _request_payload(blood_request),
            source='institutions',
            priority=URGENCY_PRIORITY.get(blood_request.urgency_level, 'normal'),
            blood_type=blood_request.blood_type,
        )

        if blood_request.urgency_level in BloodRequest.ESCALATING_URGENCIES:
            _schedule_escalation(blood_request)

    logger.info(
        "Blood request %s created: %s x%d (%s), %d matches, %d notified",
        blood_request.pk, blood_request.blood_type, blood_request.units_needed,
        blood_request.urgency_level, len(candidates), total_notified,
    )

    return blood_request, {
        'donor_matches': [
            {
                'donor_id': candidate['donor'].pk,
                'donor_name': candidate['donor'].full_name,
                'blood_type': candidate['donor'].blood_type,
                'match_score': candidate['match_score'],
                'compatibility_score': candidate['compatibility_score'],
                'distance_km': candidate['distance_km'],
            }
            for candidate in candidates
        ],
        'blood_bank_matches': blood_bank_matches,
        'total_notified': total_notified,
    }


def _schedule_escalation(blood_request):
    from .tasks import escalate_request

    delays = get_setting('ESCALATION_DELAY_MINUTES')
    minutes = delays.get(blood_request.urgency_level, 30)
    request_id = blood_request.pk

    # Only once the request row is visible to the worker
    transaction.on_commit(
        lambda: escalate_request.apply_async(args=[request_id], countdown=minutes * 60)
    )
    logger.debug("Escalation for request %s scheduled in %d minutes", request_id, minutes)


# ---------------------------
# Matching
# ---------------------------
def find_matching_donors(blood_request):
    """
    Eligible donors with their scores, best first.
    """
    radius = get_setting('MATCH_RADIUS_KM')
    donors = (
        DonorProfile.objects
        .select_related('user')
        .filter(
            is_available=True,
            receive_alerts=True,
            blood_type__in=get_compatible_donors(blood_request.blood_type),
        )
        .exclude(user=blood_request.requester)
    )

    eligible = [donor for donor in donors if is_donor_eligible(donor, blood_request, radius)]
    if not eligible:
        return []

    topsis = dict(
        (donor.pk, score)
        for donor, score in rank_donors_mcdm(
            eligible, {donor.pk: donor.distance for donor in eligible}, blood_request.blood_type
        )
    )

    candidates = []
    for donor in eligible:
        score, criteria = match_score(donor, blood_request)
        candidates.append({
            'donor': donor,
            'match_score': score,
            'criteria': criteria,
            'compatibility_score': compatibility_score(
                donor.blood_type, blood_request.blood_type, donor.distance, donor.last_donation_date
            ),
            'distance_km': donor.distance,
            'mcdm_score': round(topsis.get(donor.pk, 0), 4),
        })

    candidates.sort(
        key=lambda c: (c['match_score'], c['compatibility_score'], c['mcdm_score']),
        reverse=True,
    )
    return candidates


def notify_matches(blood_request, matches):
    """
    Alert the donors behind ``matches`` and mark them contacted.
    Returns the number of notifications queued.
    """
    matches = list(matches)
    if not matches:
        return 0

    where = blood_request.hospital_name or blood_request.location or 'a nearby hospital'
    result = send_alert(
        'blood_request',
        f"{blood_request.blood_type} blood needed ({blood_request.get_urgency_level_display()})",
        f"{blood_request.units_needed} unit(s) of {blood_request.blood_type} needed at {where}. "
        f"Contact: {blood_request.contact_phone}",
        [match.donor.user for match in matches],
        priority=URGENCY_PRIORITY.get(blood_request.urgency_level, 'normal'),
        channels=notification_channels(blood_request.urgency_level),
        data=_request_payload(blood_request),
    )

    DonorMatch.objects.filter(pk__in=[match.pk for match in matches]).update(
        status='contacted',
        contacted_at=timezone.now(),
    )
    return result['sent']


def find_nearby_blood_banks(lat, lon, blood_type, units_needed, radius_km=50):
    institutions = Institution.objects.filter(
        is_active=True,
        institution_type__in=[Institution.BLOOD_BANK, Institution.HOSPITAL],
        latitude__isnull=False,
        longitude__isnull=False,
    )
    nearby = find_nearby(lat, lon, institutions, radius_km)
    if not nearby:
        return []

    donor_types = get_compatible_donors(blood_type)
    stock_rows = InventoryStock.objects.filter(
        institution__in=[institution for institution, _ in nearby],
        blood_type__in=donor_types,
    )
    available = {}
    for stock in stock_rows:
        available[stock.institution_id] = available.get(stock.institution_id, 0) + stock.available_stock

    banks = []
    for institution, distance in nearby:
        units = available.get(institution.pk, 0)
        if units <= 0:
            continue
        banks.append({
            'institution_id': institution.pk,
            'name': institution.name,
            'institution_type': institution.institution_type,
            'contact_phone': institution.contact_phone,
            'distance_km': round(distance, 2),
            'available_units': units,
            'score': blood_bank_score(units, units_needed, distance),
            'transport_time_minutes': transport_time_minutes(distance),
            'inventory_status': inventory_status(units, units_needed),
        })

    banks.sort(key=lambda bank: bank['score'], reverse=True)
    return banks


# ---------------------------
# Donor responses
# ---------------------------
def respond_to_request(blood_request, donor, response_type, eta_minutes=None, notes=''):
    """
    Record (or change) a donor's answer to a request.

    Returns:
        (response, matched) where ``matched`` tells whether the request
        now has enough accepted donors.
    """
    now = timezone.now()

    with transaction.atomic():
        blood_request = BloodRequest.objects.select_for_update().get(pk=blood_request.pk)
        if not blood_request.is_active:
            raise BusinessRuleViolation(
                f"Blood request is {blood_request.status} and no longer accepts responses."
            )

        response = DonorResponse.objects.filter(donor=donor, blood_request=blood_request).first()
        first_response = response is None
        was_accept = not first_response and response.response_type == DonorResponse.ACCEPT
        if first_response:
            response = DonorResponse(donor=donor, blood_request=blood_request)

        response.response_type = response_type
        response.eta_minutes = eta_minutes
        response.notes = notes
        if response_type == DonorResponse.ACCEPT:
            response.status = DonorResponse.CONFIRMED
            response.confirmed_at = now
        elif response_type == DonorResponse.DECLINE:
            response.status = DonorResponse.CANCELLED
            response.confirmed_at = None
        else:
            response.status = DonorResponse.PENDING
            response.confirmed_at = None
        response.save()

        is_accept = response_type == DonorResponse.ACCEPT
        donor_fields = []
        if first_response:
            blood_request.response_count += 1
            donor.total_responses += 1
            donor_fields.append('total_responses')
        if is_accept and not was_accept:
            donor.accepted_responses += 1
            donor_fields.append('accepted_responses')
        elif was_accept and not is_accept:
            donor.accepted_responses = max(donor.accepted_responses - 1, 0)
            donor_fields.append('accepted_responses')
        if donor_fields:
            donor.save(update_fields=donor_fields + ['updated_at'])

        match = DonorMatch.objects.filter(blood_request=blood_request, donor=donor).first()
        if match is not None:
            match.status = {
                DonorResponse.ACCEPT: 'accepted',
                DonorResponse.DECLINE: 'declined',
            }.get(response_type, match.status)
            if match.contacted_at and match.response_time is None:
                match.response_time = int((now - match.contacted_at).total_seconds() // 60)
            match.save(update_fields=['status', 'response_time'])

        old_status = blood_request.status
        accepted = blood_request.donor_responses.filter(
            response_type=DonorResponse.ACCEPT, status=DonorResponse.CONFIRMED
        ).count()
        matched = accepted >= blood_request.units_needed

        if matched and old_status in (BloodRequest.PENDING, BloodRequest.PARTIALLY_FULFILLED):
            blood_request.status = BloodRequest.MATCHED
            blood_request.matched_at = now
        elif accepted and old_status == BloodRequest.PENDING:
            blood_request.status = BloodRequest.PARTIALLY_FULFILLED
        elif not matched and old_status == BloodRequest.MATCHED:
            blood_request.status = BloodRequest.PARTIALLY_FULFILLED if accepted else BloodRequest.PENDING
            blood_request.matched_at = None
        elif not accepted and old_status == BloodRequest.PARTIALLY_FULFILLED:
            blood_request.status = BloodRequest.PENDING

        blood_request.save(update_fields=['status', 'matched_at', 'response_count', 'updated_at'])

        if blood_request.status != old_status:
            log_request_update(
                blood_request, 'status_change', old_status, blood_request.status,
                notes=f"Donor {donor.pk} responded {response_type}",
            )

    if is_accept:
        send_alert(
            'donor_match',
            'A donor accepted your request',
            f"{donor.full_name} ({donor.blood_type}) accepted your {blood_request.blood_type} request"
            + (f" and expects to arrive in {eta_minutes} minutes." if eta_minutes else "."),
            [blood_request.requester],
            priority='high',
            channels=['push', 'email'],
            data={'request_id': blood_request.pk, 'donor_id': donor.pk, 'accepted': accepted},
        )
        broadcast(
            'donor_matched',
            {
                'request_id': blood_request.pk,
                'donor_id': donor.pk,
                'accepted_donors': accepted,
                'units_needed': blood_request.units_needed,
                'status': blood_request.status,
            },
            source='institutions',
            priority='high',
            blood_type=blood_request.blood_type,
        )

    logger.info("Donor %s responded %s to request %s (matched=%s)", donor.pk, response_type, blood_request.pk, matched)
    return response, matched


# ---------------------------
# Status and updates
# ---------------------------
def log_request_update(blood_request, update_type, old_value='', new_value='', user=None, notes=''):
    return RequestUpdate.objects.create(
        blood_request=blood_request,
        updated_by=user,
        update_type=update_type,
        old_value='' if old_value is None else str(old_value),
        new_value='' if new_value is None else str(new_value),
        notes=notes,
    )


def get_request_updates(blood_request):
    return list(blood_request.updates.select_related('updated_by').order_by('-created_at', '-id'))


def update_request_status(blood_request, status, user=None, notes=''):
    valid = dict(BloodRequest.STATUS_CHOICES)
    if status not in valid:
        raise ValidationFailed(f"Unknown status '{status}'.")

    old_status = blood_request.status
    if status == old_status:
        return blood_request

    if old_status in BloodRequest.TERMINAL_STATUSES:
        raise BusinessRuleViolation(f"Blood request is already {old_status}.")

    with transaction.atomic():
        blood_request.status = status
        if status == BloodRequest.MATCHED and blood_request.matched_at is None:
            blood_request.matched_at = timezone.now()
        blood_request.save(update_fields=['status', 'matched_at', 'updated_at'])
        log_request_update(blood_request, 'status_change', old_status, status, user, notes)

        if status in BloodRequest.TERMINAL_STATUSES and blood_request.inventory_reserved:
            release_reservation(blood_request, user)

    broadcast(
        'blood_request_updated',
        dict(_request_payload(blood_request), old_status=old_status),
        source='institutions',
        blood_type=blood_request.blood_type,
    )
    logger.info("Request %s: %s -> %s", blood_request.pk, old_status, status)
    return blood_request


def complete_request(blood_request, user=None, notes=''):
    with transaction.atomic():
        blood_request = BloodRequest.objects.select_for_update().get(pk=blood_request.pk)
        if blood_request.status in BloodRequest.TERMINAL_STATUSES:
            raise BusinessRuleViolation(f"Blood request is already {blood_request.status}.")

        if blood_request.inventory_reserved:
            mark_units_used(blood_request, user)
            blood_request.inventory_reserved = False
            blood_request.save(update_fields=['inventory_reserved', 'updated_at'])

        confirmed = (
            blood_request.donor_responses
            .select_related('donor')
            .filter(response_type=DonorResponse.ACCEPT, status=DonorResponse.CONFIRMED)
        )
        for response in confirmed:
            record_donation(
                response.donor,
                institution=blood_request.institution,
                blood_request=blood_request,
                notes=f"Request #{blood_request.pk}",
            )

        update_request_status(blood_request, BloodRequest.COMPLETED, user, notes)
    return blood_request


def cancel_request(blood_request, user=None, notes=''):
    return update_request_status(blood_request, BloodRequest.CANCELLED, user, notes)


def update_blood_request(blood_request, data, user=None):
    changes = dict(_validated(BloodRequestUpdateSerializer, data))
    notes = changes.pop('notes', '')
    new_status = changes.pop('status', None)

    with transaction.atomic():
        for field, value in changes.items():
            setattr(blood_request, field, value)
        if changes:
            blood_request.save(update_fields=list(changes) + ['updated_at'])

        old_priority = blood_request.priority_score
        new_priority = calculate_priority_score(
            blood_request, PrioritizationRule.objects.filter(is_active=True)
        )
        if new_priority != old_priority:
            blood_request.priority_score = new_priority
            blood_request.save(update_fields=['priority_score', 'updated_at'])
            log_request_update(blood_request, 'priority_change', old_priority, new_priority, user, notes)

        if new_status:
            update_request_status(blood_request, new_status, user, notes)
        elif changes:
            broadcast(
                'blood_request_updated',
                _request_payload(blood_request),
                source='institutions',
                blood_type=blood_request.blood_type,
            )

    return blood_request


def assign_coordinator(blood_request, coordinator, role='primary', user=None, notes=''):
    if RequestCoordination.objects.filter(blood_request=blood_request, coordinator=coordinator).exists():
        raise ResourceConflict("Coordinator is already assigned to this request.")

    with transaction.atomic():
        coordination = RequestCoordination.objects.create(
            blood_request=blood_request,
            coordinator=coordinator,
            institution=getattr(coordinator, 'institution', None),
            role=role,
            notes=notes,
        )
        previous = blood_request.assigned_coordinator
        blood_request.assigned_coordinator = coordinator
        blood_request.save(update_fields=['assigned_coordinator', 'updated_at'])
        log_request_update(
            blood_request, 'assignment',
            previous.username if previous else '', coordinator.username,
            user, notes or f"Assigned as {role} coordinator",
        )

    send_alert(
        'status_update',
        'You were assigned a blood request',
        f"You are the {role} coordinator for request #{blood_request.pk} "
        f"({blood_request.blood_type}, {blood_request.urgency_level}).",
        [coordinator],
        priority='high',
        channels=['push', 'email'],
        data={'request_id': blood_request.pk},
    )
    return coordination


# ---------------------------
# Queries
# ---------------------------
def get_blood_requests_for(user, filters=None):
    filters = filters or {}
    queryset = BloodRequest.objects.select_related('institution', 'requester')

    if user.sees_all_requests:
        queryset = queryset.order_by('-priority_score', '-created_at')
    elif user.is_institution_staff and user.institution_id:
        queryset = queryset.filter(institution_id=user.institution_id).order_by('-created_at')
    else:
        queryset = queryset.filter(requester=user).order_by('-created_at')

    if filters.get('status'):
        queryset = queryset.filter(status=filters['status'])
    if filters.get('blood_type'):
        queryset = queryset.filter(blood_type=filters['blood_type'])
    if filters.get('urgency'):
        queryset = queryset.filter(urgency_level=filters['urgency'])
    if filters.get('location'):
        queryset = queryset.filter(location__icontains=filters['location'])

    return queryset


def get_active_blood_requests():
    return (
        BloodRequest.objects
        .filter(status__in=BloodRequest.ACTIVE_STATUSES)
        .select_related('institution', 'requester')
        .annotate(
            match_count=Count('matches', distinct=True),
            accepted_count=Count('matches', filter=Q(matches__status='accepted'), distinct=True),
        )
        .order_by('-priority_score', 'created_at')
    )


def get_request_statistics(days_back=30):
    since = timezone.now() - timedelta(days=days_back)
    queryset = BloodRequest.objects.filter(created_at__gte=since)

    counts = queryset.aggregate(
        total=Count('id'),
        pending=Count('id', filter=Q(status=BloodRequest.PENDING)),
        completed=Count('id', filter=Q(status=BloodRequest.COMPLETED)),
    )

    durations = [
        (updated - created).total_seconds() / 3600
        for created, updated in queryset.filter(status=BloodRequest.COMPLETED)
                                        .values_list('created_at', 'updated_at')
    ]
    total = counts['total']

    return {
        'total_requests': total,
        'pending_requests': counts['pending'],
        'completed_requests': counts['completed'],
        'avg_response_time_hours': round(sum(durations) / len(durations), 2) if durations else 0,
        'success_rate': round(counts['completed'] / total * 100, 2) if total else 0,
    }


# ---------------------------
# Background work
# ---------------------------
def escalate(request_id):
    """
    Called by the escalation task. Returns the number of extra donors notified,
    or None when the request no longer needs escalating.
    """
    blood_request = BloodRequest.objects.filter(pk=request_id).first()
    if blood_request is None or blood_request.status != BloodRequest.PENDING:
        return None

    with transaction.atomic():
        blood_request.escalation_count += 1
        blood_request.save(update_fields=['escalation_count', 'updated_at'])
        log_request_update(
            blood_request, 'emergency_escalation',
            blood_request.escalation_count - 1, blood_request.escalation_count,
            notes="No donor accepted in time",
        )

        next_batch = list(
            blood_request.matches
            .select_related('donor__user')
            .filter(status='pending')
            .order_by('-match_score', '-compatibility_score')[:get_setting('ESCALATION_BATCH_SIZE')]
        )
        notified = notify_matches(blood_request, next_batch)

    logger.warning(
        "Escalated request %s (round %d), notified %d more donors",
        blood_request.pk, blood_request.escalation_count, notified,
    )
    return notified


def expire_overdue_requests():
    overdue = BloodRequest.objects.filter(
        status__in=[BloodRequest.PENDING, BloodRequest.PARTIALLY_FULFILLED],
        expires_at__lt=timezone.now(),
    )
    expired = 0
    for blood_request in overdue:
        update_request_status(blood_request, BloodRequest.EXPIRED, notes="Request expired")
        expired += 1

    if expired:
        logger.info("Expired %d overdue blood requests", expired)
    return expired


# ---------------------------
# Emergency alerts
# ---------------------------
def create_emergency_alert(data, coordinator):
    serializer = EmergencyAlertSerializer(data=data)
    if not serializer.is_valid():
        raise ValidationFailed(serializer.errors)
    alert = serializer.save(coordinator=coordinator)

    if alert.severity in EmergencyAlert.BROADCAST_SEVERITIES:
        broadcast(
            'emergency_alert',
            {
                'alert_id': alert.pk,
                'alert_type': alert.alert_type,
                'severity': alert.severity,
                'blood_types_needed': alert.blood_types_needed,
                'units_required': alert.units_required,
                'affected_area': alert.affected_area,
            },
            source='institutions',
            priority=alert.severity,
        )

        donors = DonorProfile.objects.select_related('user').filter(is_available=True, receive_alerts=True)
        if alert.blood_types_needed:
            donors = donors.filter(blood_type__in=alert.blood_types_needed)
        recipients = [donor.user for donor in donors]
        if recipients:
            send_alert(
                'emergency',
                f"Emergency: {alert.get_alert_type_display()}",
                f"Blood donors are urgently needed. Types: "
                f"{', '.join(alert.blood_types_needed) or 'all'}; units required: {alert.units_required}.",
                recipients,
                priority=alert.severity,
                channels=notification_channels('emergency' if alert.severity == 'critical' else 'critical'),
                data={'alert_id': alert.pk},
            )

    logger.warning("Emergency alert %s created: %s (%s)", alert.pk, alert.alert_type, alert.severity)
    return alert


def get_active_emergency_alerts():
    severity_rank = Case(
        *[When(severity=severity, then=Value(rank)) for severity, rank in EmergencyAlert.SEVERITY_RANK.items()],
        default=Value(0),
        output_field=IntegerField(),
    )
    return (
        EmergencyAlert.objects
        .filter(status='active')
        .annotate(severity_rank=severity_rank)
        .order_by('-severity_rank', '-created_at')
    )


def resolve_emergency_alert(alert, user=None, notes=''):
    if alert.status != 'active':
        raise BusinessRuleViolation(f"Emergency alert is already {alert.status}.")

    alert.status = 'resolved'
    alert.resolved_at = timezone.now()
    if notes:
        alert.notes = f"{alert.notes}\n{notes}".strip()
    alert.save(update_fields=['status', 'resolved_at', 'notes'])

    broadcast(
        'emergency_alert',
        {'alert_id': alert.pk, 'status': 'resolved'},
        source='institutions',
        target_roles=STAFF_ROLES,
    )
    logger.info("Emergency alert %s resolved by %s", alert.pk, getattr(user, 'pk', None))
    return alert

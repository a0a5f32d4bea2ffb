# api/views.py
import logging

from django.db import connection
from django.db.models import Q
from django.db.utils import DatabaseError
from django.shortcuts import get_object_or_404
from django.utils import timezone
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action, api_view, permission_classes
from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle

from accounts.decorators import role_required
from accounts.permissions import (
    COORDINATOR_ROLES, INVENTORY_ROLES, STAFF_ROLES,
    IsDonor, IsInventoryStaff, IsPlatformAdmin, IsStaffMember, has_role,
)
from bloodlink.exceptions import InsufficientStock, ResourceNotFound, ValidationFailed
from donors import services as donor_services
from donors.models import DonorProfile, DonationSchedule
from donors.serializers import (
    DonorSerializer, DonationScheduleSerializer, DonationScheduleCreateSerializer,
    ScheduleStatusSerializer,
)
from institutions import services as request_services
from institutions.models import Institution, BloodRequest, EmergencyAlert
from institutions.serializers import (
    InstitutionSerializer, BloodRequestSerializer, ActiveBloodRequestSerializer,
    DonorMatchSerializer, DonorResponseSerializer, RequestUpdateSerializer,
    RequestCoordinationSerializer, EmergencyAlertSerializer, RespondSerializer,
    StatusChangeSerializer, NotesSerializer, AssignCoordinatorSerializer,
)
from inventory import services as inventory_services
from inventory.models import BloodUnit, InventoryAlert
from inventory.serializers import (
    BloodUnitSerializer, InventoryAlertSerializer, InventoryStockSerializer,
    ReserveUnitsSerializer, StockAdjustmentSerializer,
)
from notifications import services as notification_services
from notifications.models import Notification
from notifications.serializers import (
    NotificationSerializer, NotificationPreferenceSerializer, SendAlertSerializer,
)
from realtime import services as realtime_services
from realtime.serializers import EventQuerySerializer, PublishEventSerializer, RealtimeEventSerializer
from .serializers import (
    BloodRequestFilterSerializer, LeaderboardEntrySerializer, NearbyBloodBanksQuerySerializer,
)

logger = logging.getLogger(__name__)


def _validated(serializer_class, data, **kwargs):
    serializer = serializer_class(data=data, **kwargs)
    serializer.is_valid(raise_exception=True)
    return serializer.validated_data


def _int_param(request, name, default, minimum=None, maximum=None):
    raw = request.query_params.get(name)
    if raw in (None, ''):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationFailed(f"'{name}' must be an integer.")
    if minimum is not None and value < minimum or maximum is not None and value > maximum:
        raise ValidationFailed(f"'{name}' must be between {minimum} and {maximum}.")
    return value


def _donor_profile(user):
    profile = getattr(user, 'donor_profile', None)
    if profile is None:
        raise ResourceNotFound("Donor profile not found.")
    return profile


def _scoped_institution(request):
    """Institution staff only ever see their own institution's inventory."""
    user = request.user
    if user.is_institution_staff and not user.is_superuser:
        return user.institution
    institution_id = request.query_params.get('institution')
    if institution_id:
        return get_object_or_404(Institution, pk=institution_id)
    return None


# ---------------------------
# Blood requests
# ---------------------------
class BloodRequestViewSet(mixins.ListModelMixin,
                          mixins.RetrieveModelMixin,
                          mixins.CreateModelMixin,
                          viewsets.GenericViewSet):
    """Create, browse and drive blood requests through their lifecycle."""
    serializer_class = BloodRequestSerializer
    permission_classes = [IsAuthenticated]
    throttle_scope = 'blood_requests'

    def get_throttles(self):
        throttles = super().get_throttles()
        if self.action == 'create':
            throttles.append(ScopedRateThrottle())
        return throttles

    def get_queryset(self):
        filters = _validated(BloodRequestFilterSerializer, self.request.query_params)
        return request_services.get_blood_requests_for(self.request.user, filters)

    def get_object(self):
        # Donors answer requests they do not own, so look up outside the user's scope
        blood_request = get_object_or_404(BloodRequest.objects.select_related('institution'), pk=self.kwargs['pk'])
        self.check_object_permissions(self.request, blood_request)
        return blood_request

    def _check_can_manage(self, blood_request):
        user = self.request.user
        if (
            user.sees_all_requests
            or blood_request.requester_id == user.pk
            or blood_request.assigned_coordinator_id == user.pk
            or (user.is_institution_staff and user.institution_id
                and user.institution_id == blood_request.institution_id)
        ):
            return
        raise PermissionDenied("You cannot manage this blood request.")

    def retrieve(self, request, *args, **kwargs):
        blood_request = self.get_object()
        if request.user.user_type != 'donor':
            self._check_can_manage(blood_request)
        return Response(self.get_serializer(blood_request).data)

    def create(self, request, *args, **kwargs):
        blood_request, result = request_services.create_blood_request(request.user, request.data)
        return Response(
            {
                'blood_request': BloodRequestSerializer(blood_request).data,
                **result,
            },
            status=status.HTTP_201_CREATED,
        )

    def partial_update(self, request, *args, **kwargs):
        blood_request = self.get_object()
        self._check_can_manage(blood_request)
        blood_request = request_services.update_blood_request(blood_request, request.data, request.user)
        return Response(self.get_serializer(blood_request).data)

    @action(detail=True, methods=['post'], permission_classes=[IsDonor])
    def respond(self, request, pk=None):
        blood_request = self.get_object()
        data = _validated(RespondSerializer, request.data)
        response, matched = request_services.respond_to_request(
            blood_request,
            request.user.donor_profile,
            data['response_type'],
            data.get('eta_minutes'),
            data['notes'],
        )
        return Response({
            'response': DonorResponseSerializer(response).data,
            'matched': matched,
        })

    @action(detail=True, methods=['post'])
    def complete(self, request, pk=None):
        blood_request = self.get_object()
        self._check_can_manage(blood_request)
        notes = _validated(NotesSerializer, request.data)['notes']
        blood_request = request_services.complete_request(blood_request, request.user, notes)
        return Response(self.get_serializer(blood_request).data)

    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        blood_request = self.get_object()
        self._check_can_manage(blood_request)
        notes = _validated(NotesSerializer, request.data)['notes']
        blood_request = request_services.cancel_request(blood_request, request.user, notes)
        return Response(self.get_serializer(blood_request).data)

    @action(detail=True, methods=['post'], url_path='status')
    def change_status(self, request, pk=None):
        blood_request = self.get_object()
        self._check_can_manage(blood_request)
        data = _validated(StatusChangeSerializer, request.data)
        blood_request = request_services.update_request_status(
            blood_request, data['status'], request.user, data['notes']
        )
        return Response(self.get_serializer(blood_request).data)

    @action(detail=True, methods=['get'])
    def matches(self, request, pk=None):
        blood_request = self.get_object()
        self._check_can_manage(blood_request)
        queryset = blood_request.matches.select_related('donor').order_by('-match_score', '-compatibility_score')
        return Response(DonorMatchSerializer(queryset, many=True).data)

    @action(detail=True, methods=['get'])
    def responses(self, request, pk=None):
        blood_request = self.get_object()
        self._check_can_manage(blood_request)
        queryset = blood_request.donor_responses.select_related('donor')
        return Response(DonorResponseSerializer(queryset, many=True).data)

    @action(detail=True, methods=['get'])
    def updates(self, request, pk=None):
        blood_request = self.get_object()
        self._check_can_manage(blood_request)
        updates = request_services.get_request_updates(blood_request)
        return Response(RequestUpdateSerializer(updates, many=True).data)

    @action(detail=True, methods=['post'], url_path='assign-coordinator', permission_classes=[IsStaffMember])
    def assign_coordinator(self, request, pk=None):
        blood_request = self.get_object()
        self._check_can_manage(blood_request)
        data = _validated(AssignCoordinatorSerializer, request.data)
        coordination = request_services.assign_coordinator(
            blood_request, data['coordinator'], data['role'], request.user, data['notes']
        )
        return Response(RequestCoordinationSerializer(coordination).data, status=status.HTTP_201_CREATED)


class ActiveRequestViewSet(viewsets.ReadOnlyModelViewSet):
    """Dashboard feed of every open request, highest priority first."""
    serializer_class = ActiveBloodRequestSerializer
    permission_classes = [IsStaffMember]

    def get_queryset(self):
        return request_services.get_active_blood_requests()


class EmergencyAlertViewSet(mixins.ListModelMixin,
                            mixins.RetrieveModelMixin,
                            mixins.CreateModelMixin,
                            viewsets.GenericViewSet):
    serializer_class = EmergencyAlertSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        if self.action == 'list':
            return request_services.get_active_emergency_alerts()
        return EmergencyAlert.objects.all()

    @role_required(*COORDINATOR_ROLES)
    def create(self, request, *args, **kwargs):
        alert = request_services.create_emergency_alert(request.data, request.user)
        return Response(self.get_serializer(alert).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['post'])
    @role_required(*COORDINATOR_ROLES)
    def resolve(self, request, pk=None):
        notes = _validated(NotesSerializer, request.data)['notes']
        alert = request_services.resolve_emergency_alert(self.get_object(), request.user, notes)
        return Response(self.get_serializer(alert).data)


class InstitutionViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Institution.objects.filter(is_active=True).order_by('name')
    serializer_class = InstitutionSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        queryset = super().get_queryset()
        institution_type = self.request.query_params.get('type')
        if institution_type:
            queryset = queryset.filter(institution_type=institution_type)
        return queryset


# ---------------------------
# Donors
# ---------------------------
class DonorViewSet(viewsets.ReadOnlyModelViewSet):
    """API endpoint for viewing donors (administrators only)"""
    queryset = DonorProfile.objects.select_related('user').order_by('-created_at')
    serializer_class = DonorSerializer
    permission_classes = [IsPlatformAdmin]

    def get_queryset(self):
        queryset = super().get_queryset()
        blood_type = self.request.query_params.get('blood_type')
        if blood_type and blood_type != 'all':
            queryset = queryset.filter(blood_type=blood_type)
        available = self.request.query_params.get('available')
        if available in ('true', 'false'):
            queryset = queryset.filter(is_available=available == 'true')
        return queryset


class DonationScheduleViewSet(mixins.ListModelMixin,
                              mixins.RetrieveModelMixin,
                              mixins.CreateModelMixin,
                              viewsets.GenericViewSet):
    serializer_class = DonationScheduleSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        user = self.request.user
        queryset = DonationSchedule.objects.select_related('institution', 'donor')
        if user.is_superuser or user.user_type == 'admin':
            return queryset.order_by('scheduled_date')
        if user.is_institution_staff:
            return queryset.filter(institution_id=user.institution_id).order_by('scheduled_date')
        return queryset.filter(donor__user=user).order_by('scheduled_date')

    @role_required('donor')
    def create(self, request, *args, **kwargs):
        donor = _donor_profile(request.user)
        data = _validated(DonationScheduleCreateSerializer, request.data)
        schedule = donor_services.schedule_donation(
            donor, data['institution'], data['scheduled_date'], data['units_to_donate'], data['notes']
        )
        return Response(self.get_serializer(schedule).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['post'], url_path='status')
    def change_status(self, request, pk=None):
        schedule = self.get_object()
        new_status = _validated(ScheduleStatusSerializer, request.data)['status']

        # Donors may only confirm or cancel their own booking
        is_owner = schedule.donor.user_id == request.user.pk
        donor_statuses = (DonationSchedule.CONFIRMED, DonationSchedule.CANCELLED)
        if not has_role(request.user, *INVENTORY_ROLES) and not (is_owner and new_status in donor_statuses):
            raise PermissionDenied("You cannot set this schedule status.")

        schedule = donor_services.update_schedule_status(schedule, new_status, request.user)
        return Response(self.get_serializer(schedule).data)


@api_view(['GET', 'PATCH'])
@permission_classes([IsAuthenticated])
@role_required('donor')
def my_donor_profile(request):
    donor = _donor_profile(request.user)
    if request.method == 'PATCH':
        donor = donor_services.update_profile(donor, request.data)
    return Response(DonorSerializer(donor).data)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@role_required('donor')
def toggle_my_availability(request):
    donor = donor_services.toggle_availability(_donor_profile(request.user))
    return Response({'is_available': donor.is_available})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
@role_required('donor')
def my_nearby_requests(request):
    donor = _donor_profile(request.user)
    max_distance = _int_param(request, 'max_distance', None, 1, 500)
    ranked = donor_services.nearby_requests(donor, max_distance)
    return Response([
        {
            'request': BloodRequestSerializer(item['request']).data,
            'distance_km': item['request'].distance_km,
            'priority_score': item['priority_score'],
            'priority_level': item['priority_level'],
        }
        for item in ranked
    ])


# ---------------------------
# Inventory
# ---------------------------
class BloodUnitViewSet(mixins.ListModelMixin,
                       mixins.RetrieveModelMixin,
                       viewsets.GenericViewSet):
    serializer_class = BloodUnitSerializer
    permission_classes = [IsInventoryStaff]

    def get_queryset(self):
        queryset = BloodUnit.objects.select_related('institution').order_by('expiry_date')
        institution = _scoped_institution(self.request)
        if institution is not None:
            queryset = queryset.filter(institution=institution)
        for param in ('status', 'blood_type'):
            value = self.request.query_params.get(param)
            if value:
                queryset = queryset.filter(**{param: value})
        return queryset

    def create(self, request, *args, **kwargs):
        units = request.data.get('units') if isinstance(request.data, dict) else request.data
        if units is None:
            units = [request.data]
        if not isinstance(units, list) or not units:
            raise ValidationFailed("Expected a unit or a non-empty 'units' list.")

        result = inventory_services.add_blood_units(units, request.user)
        code = status.HTTP_201_CREATED if result['success'] else status.HTTP_400_BAD_REQUEST
        return Response(result, status=code)


class InventoryAlertViewSet(mixins.ListModelMixin, viewsets.GenericViewSet):
    serializer_class = InventoryAlertSerializer
    permission_classes = [IsInventoryStaff]
    pagination_class = None

    def get_queryset(self):
        return InventoryAlert.objects.all()

    def list(self, request, *args, **kwargs):
        resolved = request.query_params.get('resolved') == 'true'
        alerts = inventory_services.get_inventory_alerts(resolved, _scoped_institution(request))
        return Response(self.get_serializer(alerts, many=True).data)

    @action(detail=True, methods=['post'])
    def resolve(self, request, pk=None):
        alert = inventory_services.resolve_alert(pk, request.user)
        return Response(self.get_serializer(alert).data)


@api_view(['GET'])
@permission_classes([IsInventoryStaff])
def inventory_stats(request):
    return Response(inventory_services.get_inventory_stats(_scoped_institution(request)))


@api_view(['POST'])
@permission_classes([IsInventoryStaff])
def reserve_inventory(request):
    data = _validated(ReserveUnitsSerializer, request.data)
    result = inventory_services.reserve_blood_units(
        data['blood_type'],
        data['units_needed'],
        data.get('blood_request'),
        data['preference'],
        user=request.user,
    )
    if not result['success']:
        raise InsufficientStock(result['message'])
    return Response(result)


@api_view(['GET'])
@permission_classes([IsStaffMember])
def inventory_summary(request):
    stocks = inventory_services.get_inventory_summary()
    return Response(InventoryStockSerializer(stocks, many=True).data)


@api_view(['POST'])
@permission_classes([IsInventoryStaff])
def adjust_inventory_stock(request):
    data = _validated(StockAdjustmentSerializer, request.data)
    institution = data['institution']
    if request.user.is_institution_staff and request.user.institution_id != institution.pk:
        raise PermissionDenied("You can only adjust your own institution's stock.")
    stock = inventory_services.update_inventory_stock(
        institution, data['blood_type'], data['units_change'], request.user,
        notes=request.data.get('notes', ''),
    )
    return Response(InventoryStockSerializer(stock).data)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@role_required('blood_bank_staff', 'admin')
def process_expired_inventory(request):
    return Response(inventory_services.process_expired_units())


@api_view(['POST'])
@permission_classes([IsInventoryStaff])
def check_inventory_alerts(request):
    alerts = inventory_services.check_inventory_alerts()
    return Response({
        'alerts_created': len(alerts),
        'alerts': InventoryAlertSerializer(alerts, many=True).data,
    })


# ---------------------------
# Requests reporting / blood banks
# ---------------------------
@api_view(['GET'])
@permission_classes([IsStaffMember])
def request_statistics(request):
    days_back = _int_param(request, 'days_back', 30, 1, 365)
    return Response(request_services.get_request_statistics(days_back))


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def nearby_blood_banks(request):
    params = _validated(NearbyBloodBanksQuerySerializer, request.query_params)
    return Response(request_services.find_nearby_blood_banks(
        params['lat'], params['lon'], params['blood_type'], params['units_needed'], params['radius_km'],
    ))


# ---------------------------
# Notifications
# ---------------------------
class NotificationViewSet(mixins.ListModelMixin, viewsets.GenericViewSet):
    serializer_class = NotificationSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = None

    def get_queryset(self):
        return Notification.objects.filter(user=self.request.user)

    def list(self, request, *args, **kwargs):
        notifications = notification_services.get_user_notifications(request.user)
        return Response(self.get_serializer(notifications, many=True).data)

    @action(detail=True, methods=['post'])
    def read(self, request, pk=None):
        notification = notification_services.mark_notification_as_read(pk, request.user)
        return Response(self.get_serializer(notification).data)

    @action(detail=False, methods=['post'], url_path='read-all')
    def read_all(self, request):
        updated = notification_services.mark_all_as_read(request.user)
        return Response({'updated': updated})


@api_view(['GET', 'PATCH'])
@permission_classes([IsAuthenticated])
def notification_preferences(request):
    if request.method == 'PATCH':
        preferences = notification_services.update_notification_preferences(request.user, request.data)
    else:
        preferences = notification_services.get_notification_preferences(request.user)
    return Response(NotificationPreferenceSerializer(preferences).data)


@api_view(['POST'])
@permission_classes([IsPlatformAdmin])
def process_notifications(request):
    batch_size = _int_param(request, 'batch_size', None, 1, 1000)
    return Response(notification_services.process_pending_notifications(batch_size))


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def notification_stats(request):
    days = _int_param(request, 'days', 30, 1, 365)
    everyone = request.query_params.get('scope') == 'all' and has_role(request.user, 'admin')
    return Response(notification_services.get_notification_stats(None if everyone else request.user, days))


@api_view(['POST'])
@permission_classes([IsStaffMember])
def send_notification(request):
    data = _validated(SendAlertSerializer, request.data)
    result = notification_services.send_alert(
        data['alert_type'], data['title'], data['message'], data['recipients'],
        priority=data['priority'], channels=data['channels'] or None, data=data['data'],
    )
    return Response(result, status=status.HTTP_202_ACCEPTED)


# ---------------------------
# Realtime
# ---------------------------
@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def realtime_events(request):
    if request.method == 'POST':
        if not has_role(request.user, *STAFF_ROLES):
            raise PermissionDenied("Only staff can publish events.")
        data = _validated(PublishEventSerializer, request.data)
        event = realtime_services.broadcast(
            data['event_type'], data['data'],
            source=f"user:{request.user.pk}",
            priority=data['priority'],
            target_roles=data['target_roles'],
            blood_type=data['blood_type'],
        )
        return Response(RealtimeEventSerializer(event).data, status=status.HTTP_201_CREATED)

    params = _validated(EventQuerySerializer, request.query_params)
    events = realtime_services.events_for(
        request.user,
        since=params.get('since'),
        event_type=params.get('event_type'),
        priority=params.get('priority'),
        blood_type=params.get('blood_type'),
        limit=params['limit'],
    )
    return Response({
        'events': RealtimeEventSerializer(events, many=True).data,
        'count': len(events),
        'server_time': timezone.now(),
    })


# ---------------------------
# Dashboard
# ---------------------------
@api_view(['GET'])
@permission_classes([IsStaffMember])
def dashboard_stats(request):
    """Get dashboard statistics"""
    available_donors = [
        donor for donor in DonorProfile.objects.filter(is_available=True).only('last_donation_date')
        if donor.can_donate
    ]
    return Response({
        'total_donors': DonorProfile.objects.count(),
        'available_donors': len(available_donors),
        'total_institutions': Institution.objects.filter(is_active=True).count(),
        'active_requests': BloodRequest.objects.filter(status__in=BloodRequest.ACTIVE_STATUSES).count(),
        'completed_requests': BloodRequest.objects.filter(status=BloodRequest.COMPLETED).count(),
        'active_emergencies': EmergencyAlert.objects.filter(status='active').count(),
        'critical_requests': BloodRequest.objects.filter(
            Q(urgency_level__in=['critical', 'emergency']),
            status__in=BloodRequest.ACTIVE_STATUSES,
        ).count(),
    })


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def donor_leaderboard(request):
    limit = _int_param(request, 'limit', 10, 1, 100)
    return Response(LeaderboardEntrySerializer(donor_services.leaderboard(limit), many=True).data)


@api_view(['GET'])
@permission_classes([AllowAny])
def health(request):
    try:
        with connection.cursor() as cursor:
            cursor.execute('SELECT 1')
        database = 'ok'
    except DatabaseError:
        logger.exception("Health check: database unavailable")
        database = 'unavailable'

    healthy = database == 'ok'
    return Response(
        {'status': 'healthy' if healthy else 'unhealthy', 'database': database, 'time': timezone.now()},
        status=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
    )

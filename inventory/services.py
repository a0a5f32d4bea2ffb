# inventory/services.py
"""
Blood unit inventory: intake, reservation against requests, expiry
housekeeping, alerting and reporting.

Per-unit rows (BloodUnit) are the source of truth; InventoryStock keeps
running counters per institution and blood type so dashboards do not
have to aggregate units.
"""
import logging
from collections import Counter, defaultdict
from datetime import timedelta

from django.db import transaction
from django.db.models import Avg, Count, Q
from django.utils import timezone

from algorithms.blood_compatibility import get_compatible_donors
from bloodlink.conf import get_setting
from bloodlink.exceptions import BusinessRuleViolation, ResourceNotFound
from bloodlink.validators import BLOOD_TYPES
from notifications.services import send_alert
from realtime.services import broadcast
from .models import BloodUnit, InventoryStock, InventoryTransaction, InventoryAlert
from .serializers import BloodUnitCreateSerializer

logger = logging.getLogger(__name__)

STAFF_RECIPIENTS = ['blood_bank_staff', 'administrators']
ALERT_CHANNELS = {
    'critical': ['push', 'sms', 'email'],
    'high': ['push', 'email'],
}
RECENT_ALERTS_LIMIT = 50
STORAGE_CAPACITY_UNITS = 1000


# ---------------------------
# Validation helpers
# ---------------------------
def validate_blood_unit(data):
    """
    Returns (validated_data, errors). ``errors`` is a list of messages.
    """
    serializer = BloodUnitCreateSerializer(data=data)
    if serializer.is_valid():
        return serializer.validated_data, []
    return None, _flatten_errors(serializer.errors)


def _flatten_errors(errors):
    messages = []
    for field, field_errors in errors.items():
        for error in field_errors:
            if field == 'non_field_errors':
                messages.append(str(error))
            else:
                messages.append(f"{field}: {error}")
    return messages


def calculate_expiry_date(collection_date):
    """Red cells keep for RED_CELL_SHELF_LIFE_DAYS (42) after collection."""
    return collection_date + timedelta(days=get_setting('RED_CELL_SHELF_LIFE_DAYS'))


# ---------------------------
# Stock counters
# ---------------------------
def _adjust_counters(institution_id, blood_type, current=0, reserved=0, user=None):
    stock, _ = InventoryStock.objects.select_for_update().get_or_create(
        institution_id=institution_id,
        blood_type=blood_type,
    )
    stock.current_stock = max(stock.current_stock + current, 0)
    stock.reserved_stock = min(max(stock.reserved_stock + reserved, 0), stock.current_stock)
    stock.updated_by = user
    stock.save()
    return stock


def _adjust_for_units(units, current_per_unit=0, reserved_per_unit=0, user=None):
    groups = Counter((unit.institution_id, unit.blood_type) for unit in units)
    for (institution_id, blood_type), count in groups.items():
        _adjust_counters(
            institution_id, blood_type,
            current=current_per_unit * count,
            reserved=reserved_per_unit * count,
            user=user,
        )


def update_inventory_stock(institution, blood_type, units_change, user=None, notes=''):
    """
    Manual counter adjustment (stock take, external transfer).
    """
    with transaction.atomic():
        stock, _ = InventoryStock.objects.select_for_update().get_or_create(
            institution=institution,
            blood_type=blood_type,
        )
        new_stock = stock.current_stock + units_change

        if new_stock < 0:
            raise BusinessRuleViolation(
                f"Stock for {blood_type} cannot go below zero (current {stock.current_stock})"
            )
        if new_stock > stock.maximum_capacity:
            raise BusinessRuleViolation(
                f"Stock for {blood_type} would exceed capacity of {stock.maximum_capacity}"
            )
        if new_stock < stock.reserved_stock:
            raise BusinessRuleViolation("Stock cannot drop below the reserved amount")

        stock.current_stock = new_stock
        stock.updated_by = user
        stock.save()

        InventoryTransaction.objects.create(
            transaction_type='adjustment',
            quantity=units_change,
            blood_type=blood_type,
            performed_by=user,
            notes=notes,
            metadata={'institution_id': institution.pk},
        )

    logger.info("Stock %s/%s adjusted by %+d to %d", institution.pk, blood_type, units_change, new_stock)
    return stock


# ---------------------------
# Intake
# ---------------------------
def add_blood_units(units, user=None):
    """
    Validate and store a batch of units; invalid ones are reported, not fatal.

    Returns:
        {'success': bool, 'units_added': int, 'errors': [str]}
    """
    errors = []
    valid = []
    seen_batches = set()

    for raw in units:
        if not isinstance(raw, dict):
            errors.append("Unit ?: Invalid unit payload")
            continue
        batch = raw.get('batch_number') or '?'
        data, unit_errors = validate_blood_unit(raw)
        if unit_errors:
            errors.extend(f"Unit {batch}: {error}" for error in unit_errors)
            continue

        if batch in seen_batches or BloodUnit.objects.filter(batch_number=batch).exists():
            errors.append(f"Unit {batch}: Batch number already exists")
            continue

        institution = data.get('institution') or getattr(user, 'institution', None)
        if institution is None:
            errors.append(f"Unit {batch}: No institution to store the unit at")
            continue

        seen_batches.add(batch)
        data['institution'] = institution
        data['expiry_date'] = data.get('expiry_date') or calculate_expiry_date(data['collection_date'])
        valid.append(data)

    created = []
    if valid:
        with transaction.atomic():
            created = [BloodUnit.objects.create(**data) for data in valid]

            InventoryTransaction.objects.create(
                transaction_type='collection',
                blood_units=[unit.pk for unit in created],
                quantity=len(created),
                blood_type=created[0].blood_type if len({u.blood_type for u in created}) == 1 else '',
                performed_by=user,
                notes=f"Added {len(created)} blood units",
            )
            _adjust_for_units(created, current_per_unit=1, user=user)

        broadcast(
            'inventory_updated',
            {
                'action': 'units_added',
                'count': len(created),
                'blood_types': sorted({unit.blood_type for unit in created}),
            },
            source='inventory',
        )
        check_inventory_alerts()

    logger.info("Added %d blood units (%d errors)", len(created), len(errors))
    return {'success': bool(created), 'units_added': len(created), 'errors': errors}


# ---------------------------
# Reservation lifecycle
# ---------------------------
def select_optimal_units(candidates, units_needed):
    """Best quality first, then the unit that expires soonest."""
    ranked = sorted(candidates, key=lambda unit: (-unit.quality_score, unit.expiry_date))
    return ranked[:units_needed]


def reserve_blood_units(blood_type, units_needed, blood_request=None,
                        preference='oldest_first', institution=None, user=None):
    """
    Reserve compatible, unexpired units for a request inside one locked transaction.

    Returns:
        {'success': bool, 'reserved_units': [ids], 'message': str}
    """
    order = 'expiry_date' if preference == 'oldest_first' else '-expiry_date'
    now = timezone.now()

    with transaction.atomic():
        queryset = BloodUnit.objects.select_for_update().filter(
            blood_type__in=get_compatible_donors(blood_type),
            status=BloodUnit.AVAILABLE,
            expiry_date__gt=now,
        )
        if institution is not None:
            queryset = queryset.filter(institution=institution)

        candidates = list(queryset.order_by(order)[:units_needed * 2])

        if len(candidates) < units_needed:
            if candidates:
                message = f"Only {len(candidates)} {blood_type} units available, need {units_needed}"
            else:
                message = f"No available {blood_type} units found"
            logger.warning("Reservation failed: %s", message)
            return {'success': False, 'reserved_units': [], 'message': message}

        selected = select_optimal_units(candidates, units_needed)
        selected_ids = [unit.pk for unit in selected]

        BloodUnit.objects.filter(pk__in=selected_ids).update(
            status=BloodUnit.RESERVED,
            reserved_for=blood_request,
            reserved_at=now,
        )

        InventoryTransaction.objects.create(
            transaction_type='reservation',
            blood_units=selected_ids,
            quantity=len(selected_ids),
            blood_type=blood_type,
            blood_request=blood_request,
            performed_by=user,
            notes=f"Reserved {len(selected_ids)} units"
                  + (f" for request #{blood_request.pk}" if blood_request else ""),
        )
        _adjust_for_units(selected, reserved_per_unit=1, user=user)

        if blood_request is not None:
            blood_request.inventory_reserved = True
            blood_request.save(update_fields=['inventory_reserved', 'updated_at'])

    broadcast(
        'inventory_updated',
        {
            'action': 'units_reserved',
            'blood_type': blood_type,
            'count': len(selected_ids),
            'request_id': getattr(blood_request, 'pk', None),
        },
        source='inventory',
        blood_type=blood_type,
    )

    logger.info("Reserved %d %s units (request=%s)", len(selected_ids), blood_type, getattr(blood_request, 'pk', None))
    return {
        'success': True,
        'reserved_units': selected_ids,
        'message': f"Reserved {len(selected_ids)} {blood_type} units",
    }


def _reserved_units_for(blood_request):
    return list(
        BloodUnit.objects.select_for_update().filter(
            reserved_for=blood_request,
            status=BloodUnit.RESERVED,
        )
    )


def release_reservation(blood_request, user=None):
    """Returns the number of units put back on the shelf."""
    with transaction.atomic():
        units = _reserved_units_for(blood_request)
        if units:
            ids = [unit.pk for unit in units]
            BloodUnit.objects.filter(pk__in=ids).update(
                status=BloodUnit.AVAILABLE,
                reserved_for=None,
                reserved_at=None,
            )
            InventoryTransaction.objects.create(
                transaction_type='release',
                blood_units=ids,
                quantity=len(ids),
                blood_type=blood_request.blood_type,
                blood_request=blood_request,
                performed_by=user,
                notes=f"Released reservation for request #{blood_request.pk}",
            )
            _adjust_for_units(units, reserved_per_unit=-1, user=user)

        if blood_request.inventory_reserved:
            blood_request.inventory_reserved = False
            blood_request.save(update_fields=['inventory_reserved', 'updated_at'])

    if units:
        logger.info("Released %d units reserved for request %s", len(units), blood_request.pk)
    return len(units)


def mark_units_used(blood_request, user=None):
    with transaction.atomic():
        units = _reserved_units_for(blood_request)
        if not units:
            return 0
        ids = [unit.pk for unit in units]
        BloodUnit.objects.filter(pk__in=ids).update(status=BloodUnit.USED)
        InventoryTransaction.objects.create(
            transaction_type='usage',
            blood_units=ids,
            quantity=len(ids),
            blood_type=blood_request.blood_type,
            blood_request=blood_request,
            performed_by=user,
            notes=f"Used for request #{blood_request.pk}",
        )
        _adjust_for_units(units, current_per_unit=-1, reserved_per_unit=-1, user=user)

    logger.info("Marked %d units used for request %s", len(ids), blood_request.pk)
    return len(ids)


# ---------------------------
# Housekeeping
# ---------------------------
def process_expired_units():
    now = timezone.now()

    with transaction.atomic():
        units = list(
            BloodUnit.objects.select_for_update().filter(
                status__in=[BloodUnit.AVAILABLE, BloodUnit.RESERVED],
                expiry_date__lte=now,
            )
        )
        if not units:
            return {'processed_count': 0, 'disposed_units': []}

        ids = [unit.pk for unit in units]
        reserved = [unit for unit in units if unit.status == BloodUnit.RESERVED]

        BloodUnit.objects.filter(pk__in=ids).update(
            status=BloodUnit.EXPIRED,
            expired_at=now,
            reserved_for=None,
        )
        InventoryTransaction.objects.create(
            transaction_type='disposal',
            blood_units=ids,
            quantity=len(ids),
            notes=f"Disposed {len(ids)} expired units",
        )
        _adjust_for_units(units, current_per_unit=-1)
        _adjust_for_units(reserved, reserved_per_unit=-1)

        by_type = Counter(unit.blood_type for unit in units)
        InventoryAlert.objects.create(
            alert_type='expiry_warning',
            severity='medium',
            message=f"{len(ids)} blood units expired and were disposed",
            details={'unit_ids': ids, 'by_blood_type': dict(by_type)},
            resolved=True,
            resolved_at=now,
        )

    logger.info("Disposed %d expired blood units", len(ids))
    broadcast('inventory_updated', {'action': 'units_expired', 'count': len(ids)}, source='inventory')
    return {'processed_count': len(ids), 'disposed_units': ids}


def _open_alert_exists(alert_type, blood_type, institution_id):
    return InventoryAlert.objects.filter(
        alert_type=alert_type,
        blood_type=blood_type,
        institution_id=institution_id,
        resolved=False,
    ).exists()


def check_inventory_alerts():
    """
    Raise stock, expiry and quality alerts; returns the alerts created.
    """
    critical_level = get_setting('INVENTORY_CRITICAL_STOCK')
    low_level = get_setting('INVENTORY_LOW_STOCK')
    warning_days = get_setting('INVENTORY_EXPIRY_WARNING_DAYS')
    quality_threshold = get_setting('INVENTORY_QUALITY_THRESHOLD')
    now = timezone.now()

    candidates = []

    for stock in InventoryStock.objects.select_related('institution').filter(institution__is_active=True):
        available = stock.available_stock
        if available <= critical_level:
            candidates.append({
                'alert_type': 'critical_shortage',
                'severity': 'critical',
                'blood_type': stock.blood_type,
                'institution_id': stock.institution_id,
                'message': f"Critical shortage of {stock.blood_type} at {stock.institution.name}: {available} units available",
                'details': {'available': available, 'threshold': critical_level},
            })
        elif available <= low_level:
            candidates.append({
                'alert_type': 'low_stock',
                'severity': 'high',
                'blood_type': stock.blood_type,
                'institution_id': stock.institution_id,
                'message': f"Low stock of {stock.blood_type} at {stock.institution.name}: {available} units available",
                'details': {'available': available, 'threshold': low_level},
            })

    available_units = BloodUnit.objects.filter(status=BloodUnit.AVAILABLE)

    expiring = (
        available_units
        .filter(expiry_date__gt=now, expiry_date__lte=now + timedelta(days=warning_days))
        .values('institution', 'blood_type')
        .annotate(count=Count('id'))
    )
    for row in expiring:
        candidates.append({
            'alert_type': 'expiry_warning',
            'severity': 'medium',
            'blood_type': row['blood_type'],
            'institution_id': row['institution'],
            'message': f"{row['count']} {row['blood_type']} units expire within {warning_days} days",
            'details': {'count': row['count'], 'days': warning_days},
        })

    low_quality = (
        available_units
        .filter(quality_score__lt=quality_threshold)
        .values('institution')
        .annotate(count=Count('id'))
    )
    for row in low_quality:
        candidates.append({
            'alert_type': 'quality_issue',
            'severity': 'high',
            'blood_type': '',
            'institution_id': row['institution'],
            'message': f"{row['count']} units below quality score {quality_threshold}",
            'details': {'count': row['count'], 'threshold': quality_threshold},
        })

    created = []
    for candidate in candidates:
        if _open_alert_exists(candidate['alert_type'], candidate['blood_type'], candidate['institution_id']):
            continue
        alert = InventoryAlert.objects.create(**candidate)
        created.append(alert)
        _notify_staff(alert)

    if created:
        logger.warning("Created %d inventory alerts", len(created))
    return created


def _notify_staff(alert):
    channels = ALERT_CHANNELS.get(alert.severity)
    if not channels:
        return

    notification_type = 'critical_inventory' if alert.severity == 'critical' else 'inventory_warning'
    send_alert(
        notification_type,
        f"Inventory alert: {alert.get_alert_type_display()}",
        alert.message,
        STAFF_RECIPIENTS,
        priority=alert.severity,
        channels=channels,
        data={'alert_id': alert.pk, 'blood_type': alert.blood_type},
    )

    if alert.severity == 'critical':
        broadcast(
            'supply_shortage',
            {'alert_id': alert.pk, 'message': alert.message},
            source='inventory',
            priority='critical',
            target_roles=['blood_bank_staff', 'hospital_staff', 'admin'],
            blood_type=alert.blood_type,
        )


def get_inventory_alerts(resolved=False, institution=None, limit=RECENT_ALERTS_LIMIT):
    queryset = InventoryAlert.objects.filter(resolved=resolved)
    if institution is not None:
        queryset = queryset.filter(institution=institution)
    return list(queryset.order_by('-created_at')[:limit])


def resolve_alert(alert_id, user=None):
    try:
        alert = InventoryAlert.objects.get(pk=alert_id)
    except InventoryAlert.DoesNotExist:
        raise ResourceNotFound("Inventory alert not found.")

    if not alert.resolved:
        alert.resolved = True
        alert.resolved_at = timezone.now()
        alert.resolved_by = user
        alert.save(update_fields=['resolved', 'resolved_at', 'resolved_by'])
    return alert


# ---------------------------
# Reporting
# ---------------------------
def get_inventory_stats(institution=None):
    units = BloodUnit.objects.all()
    if institution is not None:
        units = units.filter(institution=institution)

    now = timezone.now()
    warning_days = get_setting('INVENTORY_EXPIRY_WARNING_DAYS')
    quality_threshold = get_setting('INVENTORY_QUALITY_THRESHOLD')

    counts = units.aggregate(
        total=Count('id'),
        available=Count('id', filter=Q(status=BloodUnit.AVAILABLE)),
        reserved=Count('id', filter=Q(status=BloodUnit.RESERVED)),
        expiring_soon=Count('id', filter=Q(
            status=BloodUnit.AVAILABLE,
            expiry_date__gt=now,
            expiry_date__lte=now + timedelta(days=warning_days),
        )),
        in_testing=Count('id', filter=Q(status=BloodUnit.TESTING)),
        quality_issues=Count('id', filter=Q(quality_score__lt=quality_threshold)),
        average_quality=Avg('quality_score'),
    )

    by_blood_type = {bt: {'total': 0, 'available': 0, 'reserved': 0} for bt in BLOOD_TYPES}
    rows = units.values('blood_type', 'status').annotate(count=Count('id'))
    breakdown = defaultdict(Counter)
    for row in rows:
        breakdown[row['blood_type']][row['status']] += row['count']
    for blood_type, statuses in breakdown.items():
        entry = by_blood_type.setdefault(blood_type, {'total': 0, 'available': 0, 'reserved': 0})
        entry['total'] = sum(statuses.values())
        entry['available'] = statuses[BloodUnit.AVAILABLE]
        entry['reserved'] = statuses[BloodUnit.RESERVED]

    total = counts['total']
    return {
        'total_units': total,
        'available_units': counts['available'],
        'reserved_units': counts['reserved'],
        'expiring_soon': counts['expiring_soon'],
        'by_blood_type': by_blood_type,
        'storage_utilization': min(round(total / STORAGE_CAPACITY_UNITS * 100), 100),
        'quality_metrics': {
            'average_quality': round(counts['average_quality'] or 0),
            'units_in_testing': counts['in_testing'],
            'quality_issues': counts['quality_issues'],
        },
    }


def get_inventory_summary():
    return list(
        InventoryStock.objects
        .select_related('institution')
        .filter(institution__is_active=True)
        .order_by('institution__name', 'blood_type')
    )

# donors/services.py
import logging
from datetime import timedelta

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from algorithms.eligibility import is_donation_eligible, is_donor_eligible
from algorithms.priority import run_priority_algorithm
from bloodlink.conf import get_setting
from bloodlink.exceptions import BusinessRuleViolation, ValidationFailed
from inventory.services import update_inventory_stock
from institutions.models import BloodRequest
from notifications.services import send_alert
from realtime.services import broadcast
from .models import DonorProfile, DonationHistory, DonationSchedule
from .serializers import DonorProfileUpdateSerializer

logger = logging.getLogger(__name__)

ALLOWED_SCHEDULE_TRANSITIONS = {
    DonationSchedule.SCHEDULED: {DonationSchedule.CONFIRMED, DonationSchedule.CANCELLED,
                                 DonationSchedule.COMPLETED, DonationSchedule.NO_SHOW},
    DonationSchedule.CONFIRMED: {DonationSchedule.COMPLETED, DonationSchedule.CANCELLED,
                                 DonationSchedule.NO_SHOW},
}


# ---------------------------
# Profile
# ---------------------------
def update_profile(donor, data):
    serializer = DonorProfileUpdateSerializer(donor, data=data, partial=True)
    if not serializer.is_valid():
        raise ValidationFailed(serializer.errors)
    donor = serializer.save()
    logger.info("Donor %s updated profile fields %s", donor.pk, sorted(serializer.validated_data))
    return donor


def toggle_availability(donor):
    donor.is_available = not donor.is_available
    donor.save(update_fields=['is_available', 'updated_at'])

    if donor.is_available:
        broadcast(
            'donor_available',
            {'donor_id': donor.pk, 'blood_type': donor.blood_type},
            source='donors',
            target_roles=['hospital_staff', 'blood_bank_staff', 'emergency_responder', 'admin'],
            blood_type=donor.blood_type,
        )
    return donor


# ---------------------------
# Donations
# ---------------------------
def record_donation(donor, institution=None, blood_request=None, units=1, donated_on=None, notes=''):
    """
    Log a completed donation and credit the donor.
    """
    donated_on = donated_on or timezone.localdate()

    history = DonationHistory.objects.create(
        donor=donor,
        institution=institution,
        blood_request=blood_request,
        date_donated=donated_on,
        units_donated=units,
        notes=notes,
    )

    DonorProfile.objects.filter(pk=donor.pk).update(
        donation_count=F('donation_count') + 1,
        points=F('points') + get_setting('POINTS_PER_DONATION'),
        last_donation_date=donated_on,
    )
    donor.refresh_from_db(fields=['donation_count', 'points', 'last_donation_date'])

    broadcast(
        'donation_completed',
        {
            'donor_id': donor.pk,
            'institution_id': getattr(institution, 'pk', None),
            'request_id': getattr(blood_request, 'pk', None),
            'units': units,
        },
        source='donors',
        blood_type=donor.blood_type,
    )
    logger.info("Recorded donation of %d unit(s) by donor %s", units, donor.pk)
    return history


def schedule_donation(donor, institution, scheduled_date, units=1, notes=''):
    if scheduled_date <= timezone.now():
        raise ValidationFailed("Scheduled date must be in the future.")

    if not is_donation_eligible(donor, timezone.localdate(scheduled_date)):
        raise BusinessRuleViolation(
            f"Donor is not eligible to donate until {get_setting('DONATION_COOLDOWN_DAYS')} days "
            f"after the last donation."
        )

    schedule = DonationSchedule.objects.create(
        donor=donor,
        institution=institution,
        scheduled_date=scheduled_date,
        blood_type=donor.blood_type,
        units_to_donate=units,
        notes=notes,
    )

    broadcast(
        'donation_scheduled',
        {
            'schedule_id': schedule.pk,
            'institution_id': institution.pk,
            'scheduled_date': scheduled_date,
        },
        source='donors',
        blood_type=donor.blood_type,
    )
    return schedule


def get_donation_schedules(donor):
    return list(donor.schedules.select_related('institution').order_by('scheduled_date'))


def update_schedule_status(schedule, status, user=None):
    if status == schedule.status:
        return schedule

    allowed = ALLOWED_SCHEDULE_TRANSITIONS.get(schedule.status, set())
    if status not in allowed:
        raise BusinessRuleViolation(f"Cannot move a {schedule.status} donation to {status}.")

    with transaction.atomic():
        schedule.status = status
        schedule.save(update_fields=['status', 'updated_at'])

        if status == DonationSchedule.COMPLETED:
            record_donation(
                schedule.donor,
                institution=schedule.institution,
                units=schedule.units_to_donate,
                notes=f"Scheduled donation #{schedule.pk}",
            )
            update_inventory_stock(
                schedule.institution,
                schedule.blood_type,
                schedule.units_to_donate,
                user=user,
                notes=f"Scheduled donation #{schedule.pk}",
            )

    logger.info("Donation schedule %s is now %s", schedule.pk, status)
    return schedule


def send_donation_reminders():
    """
    Remind donors about donations scheduled within the next 24 hours.
    """
    now = timezone.now()
    due = (
        DonationSchedule.objects
        .select_related('donor__user', 'institution')
        .filter(
            status__in=[DonationSchedule.SCHEDULED, DonationSchedule.CONFIRMED],
            reminder_sent=False,
            scheduled_date__gt=now,
            scheduled_date__lte=now + timedelta(hours=24),
        )
    )

    reminded = 0
    for schedule in due:
        when = timezone.localtime(schedule.scheduled_date)
        send_alert(
            'reminder',
            'Donation reminder',
            f"Your blood donation at {schedule.institution.name} is scheduled for {when:%Y-%m-%d %H:%M}.",
            [schedule.donor.user],
            priority='normal',
            channels=['push', 'email'],
            data={'schedule_id': schedule.pk},
        )
        schedule.reminder_sent = True
        schedule.save(update_fields=['reminder_sent', 'updated_at'])
        reminded += 1

    if reminded:
        logger.info("Sent %d donation reminders", reminded)
    return reminded


# ---------------------------
# Discovery
# ---------------------------
def nearby_requests(donor, max_distance=None):
    """
    Pending requests this donor could answer, most pressing first.
    """
    pending = (
        BloodRequest.objects
        .filter(status__in=[BloodRequest.PENDING, BloodRequest.PARTIALLY_FULFILLED])
        .exclude(requester=donor.user)
        .select_related('institution')
    )
    eligible = []
    for blood_request in pending:
        if is_donor_eligible(donor, blood_request, max_distance):
            blood_request.distance_km = donor.distance
            eligible.append(blood_request)

    return run_priority_algorithm(eligible)


def leaderboard(limit=10):
    return list(DonorProfile.objects.select_related('user').order_by('-points', '-donation_count')[:limit])

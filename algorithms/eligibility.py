import logging
from datetime import date

from algorithms.blood_compatibility import is_compatible
from algorithms.haversine import haversine_distance, has_coordinates
from bloodlink.conf import get_setting
from institutions.models import DonorResponse

logger = logging.getLogger(__name__)


def days_since_last_donation(donor, today=None):
    """None when the donor has never donated."""
    if not donor.last_donation_date:
        return None
    today = today or date.today()
    return (today - donor.last_donation_date).days


def is_donation_eligible(donor, on_date=None):
    """A donor may give again once the cooldown since the last donation is over."""
    days = days_since_last_donation(donor, on_date)
    return days is None or days >= get_setting('DONATION_COOLDOWN_DAYS')


def is_donor_eligible(donor, blood_request, max_distance=None):
    """
    Check if a donor is eligible for a given blood request.

    Criteria:
    - Donor is available and accepts alerts
    - Donation cooldown is over
    - Donor blood type compatible with request
    - Donor hasn't previously declined this request
    - Donor is within max_distance km of the request (when both have coordinates)

    Sets ``donor.distance`` (km, rounded, or None) as a side effect.
    """
    if max_distance is None:
        max_distance = get_setting('MATCH_RADIUS_KM')

    donor.distance = None

    if not donor.is_available or not donor.receive_alerts:
        return False

    if not is_donation_eligible(donor):
        return False

    if not is_compatible(donor.blood_type, blood_request.blood_type):
        return False

    if blood_request.pk and DonorResponse.objects.filter(
        donor=donor,
        blood_request=blood_request,
        response_type=DonorResponse.DECLINE,
    ).exists():
        logger.debug("Donor %s already declined request %s", donor.pk, blood_request.pk)
        return False

    if has_coordinates(donor) and has_coordinates(blood_request):
        distance = haversine_distance(
            blood_request.latitude,
            blood_request.longitude,
            donor.latitude,
            donor.longitude,
        )
        if distance > max_distance:
            return False
        donor.distance = round(distance, 2)

    return True

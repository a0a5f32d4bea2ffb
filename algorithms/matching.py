"""
Scoring used when pairing a blood request with donors and blood banks.
"""
import math
from datetime import date

from algorithms.eligibility import is_donation_eligible

MATCH_WEIGHTS = {
    'blood_match': 0.4,
    'availability': 0.3,
    'eligible': 0.3,
}

BLOOD_BANK_MINUTES_PER_KM = 3
BLOOD_BANK_RELIABILITY_BONUS = 15

EXPIRATION_HOURS = {
    'normal': 24,
    'urgent': 6,
    'critical': 2,
    'emergency': 1,
}

NOTIFICATION_CHANNELS = {
    'emergency': ['push', 'sms', 'call', 'email'],
    'critical': ['push', 'sms', 'email'],
    'urgent': ['push', 'email'],
}


def match_score(donor, blood_request):
    """
    Weighted sum of three flags; returns (score, criteria).

    An exact blood type counts 1.0, any other (compatible) type 0.5.
    """
    criteria = {
        'blood_match': 1.0 if donor.blood_type == blood_request.blood_type else 0.5,
        'availability': 1.0 if donor.is_available else 0.0,
        'eligible': 1.0 if is_donation_eligible(donor) else 0.0,
    }
    score = sum(MATCH_WEIGHTS[key] * value for key, value in criteria.items())
    return round(score, 2), criteria


def _distance_penalty(distance_km):
    return min((distance_km or 0) * 2, 30)


def compatibility_score(donor_type, required_type, distance_km=None, last_donation=None):
    """
    100 base, +50 for exact type, minus up to 30 for distance, plus a
    recency bonus for donors who gave long enough ago. Never negative.
    """
    score = 100
    if donor_type == required_type:
        score += 50

    score -= _distance_penalty(distance_km)

    if last_donation is not None:
        days = (date.today() - last_donation).days
        if days >= 56:
            score += 20
        elif days >= 42:
            score += 10

    return max(0, score)


def blood_bank_score(available, needed, distance_km=None):
    ratio = min(1, available / needed) if needed else 1
    score = 100 + 50 * ratio - _distance_penalty(distance_km) + BLOOD_BANK_RELIABILITY_BONUS
    return max(0, score)


def inventory_status(available, needed):
    if available >= needed:
        return 'available'
    if available >= math.ceil(needed / 2):
        return 'limited'
    return 'critical'


def transport_time_minutes(distance_km):
    return int(round((distance_km or 0) * BLOOD_BANK_MINUTES_PER_KM))


def notification_channels(urgency_level):
    return list(NOTIFICATION_CHANNELS.get(urgency_level, ['push']))


def expiration_hours(urgency_level):
    return EXPIRATION_HOURS.get(urgency_level, EXPIRATION_HOURS['normal'])

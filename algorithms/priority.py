# algorithms/priority.py
import logging
import operator

from django.utils import timezone

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY_SCORE = 1

_COMPARATORS = {'>': operator.gt, '<': operator.lt}


# ---------------------------
# Rule-based priority (stored on the request)
# ---------------------------
def calculate_priority_score(blood_request, rules):
    """
    Highest ``priority_score`` among the active rules whose conditions all
    hold for the request; 1 when no rule applies.

    ``rules`` is an iterable of objects with ``rule_conditions`` (dict),
    ``priority_score`` and ``is_active``.
    """
    score = DEFAULT_PRIORITY_SCORE

    for rule in rules:
        if not rule.is_active:
            continue
        if rule_matches(rule.rule_conditions or {}, blood_request):
            logger.debug("Rule %s matched request %s", getattr(rule, 'rule_name', rule), blood_request.pk)
            score = max(score, rule.priority_score)

    return score


def rule_matches(conditions, blood_request):
    return all(
        _condition_holds(key, expected, blood_request)
        for key, expected in conditions.items()
    )


def _condition_holds(key, expected, blood_request):
    if key in ('urgency_level', 'request_type'):
        return getattr(blood_request, key) == expected

    if key == 'blood_type':
        if isinstance(expected, (list, tuple)):
            return blood_request.blood_type in expected
        return blood_request.blood_type == expected

    if key in ('units_needed', 'patient_age'):
        return _compare_number(getattr(blood_request, key), expected)

    if key == 'alert_type':
        alert = getattr(blood_request, 'emergency_alert', None)
        return alert is not None and alert.alert_type == expected

    # Unknown condition keys never match
    return False


def _compare_number(actual, expected):
    """Supports ">N", "<N" and exact values."""
    if actual is None:
        return False

    text = str(expected).strip()
    compare = _COMPARATORS.get(text[:1])
    try:
        if compare:
            return compare(actual, float(text[1:]))
        return actual == float(text)
    except ValueError:
        return False


# ---------------------------
# Dynamic ranking (waiting time aware)
# ---------------------------
def run_priority_algorithm(blood_requests):
    """
    Priority Algorithm: Ranks blood requests by urgency, time waiting, units needed, and blood rarity
    Returns a list of dicts with request data and priority info
    """
    requests_list = list(blood_requests) if blood_requests is not None else []
    if not requests_list:
        return []

    ranked_list = []

    for request in requests_list:
        urgency_score = calculate_urgency_score(request.urgency_level)
        time_score = calculate_time_score(request.created_at)
        units_score = calculate_units_score(request.units_needed)
        blood_rarity_score = calculate_blood_rarity_score(request.blood_type)

        # Weighted priority score (0-100)
        priority_score = (
            urgency_score * 0.40 +
            time_score * 0.30 +
            units_score * 0.20 +
            blood_rarity_score * 0.10
        )

        ranked_list.append({
            'request': request,
            'priority_score': round(priority_score, 1),
            'priority_level': priority_level(priority_score),
            'urgency_score': urgency_score,
            'time_score': time_score,
            'units_score': units_score,
            'blood_rarity_score': blood_rarity_score,
        })

    ranked_list.sort(key=lambda x: x['priority_score'], reverse=True)

    return ranked_list


def priority_level(priority_score):
    if priority_score >= 80:
        return 'critical'
    elif priority_score >= 60:
        return 'high'
    elif priority_score >= 40:
        return 'medium'
    return 'low'


def calculate_urgency_score(urgency_level):
    """
    Convert urgency level to a score (0-100)
    """
    urgency_mapping = {
        'emergency': 100,
        'critical': 90,
        'urgent': 70,
        'normal': 40,
    }
    return urgency_mapping.get(urgency_level, 40)


def calculate_time_score(created_at):
    """
    Longer wait = higher score (0-100); 24 hours or more scores 100.
    """
    if created_at is None:
        return 0

    if timezone.is_naive(created_at):
        created_at = timezone.make_aware(created_at)

    hours_waiting = (timezone.now() - created_at).total_seconds() / 3600

    if hours_waiting >= 24:
        return 100
    elif hours_waiting >= 12:
        return 80
    elif hours_waiting >= 6:
        return 60
    elif hours_waiting >= 3:
        return 40
    elif hours_waiting >= 1:
        return 20
    return 0


def calculate_units_score(units_needed):
    if units_needed >= 5:
        return 100
    elif units_needed >= 4:
        return 80
    elif units_needed >= 3:
        return 60
    elif units_needed >= 2:
        return 40
    return 20


def calculate_blood_rarity_score(blood_type):
    """
    Rarer blood types get higher scores (0-100)
    """
    rarity_mapping = {
        'AB-': 100,
        'B-': 90,
        'AB+': 80,
        'A-': 70,
        'O-': 60,
        'B+': 50,
        'A+': 40,
        'O+': 30,
    }
    return rarity_mapping.get(blood_type, 50)

"""
Event log behind the realtime feed.

Producers call ``broadcast``; clients poll ``events_for`` with the timestamp
of the last event they saw.
"""
import json
import logging

from django.core.serializers.json import DjangoJSONEncoder
from django.db.models import Q

from .models import RealtimeEvent

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 1000


def _jsonable(data):
    # Dates and decimals must survive the JSONField round trip
    return json.loads(json.dumps(data or {}, cls=DjangoJSONEncoder))


def broadcast(event_type, data=None, source='system', priority='normal',
              target_user=None, target_roles=None, blood_type=''):
    event = RealtimeEvent.objects.create(
        event_type=event_type,
        data=_jsonable(data),
        source=source,
        priority=priority,
        target_user=target_user,
        target_roles=list(target_roles or []),
        blood_type=blood_type or '',
    )
    logger.info(
        "Realtime event %s #%s (priority=%s, user=%s, roles=%s)",
        event_type, event.pk, priority,
        getattr(target_user, 'pk', None), event.target_roles,
    )
    return event


def clamp_limit(limit):
    if limit is None:
        return DEFAULT_LIMIT
    return max(1, min(int(limit), MAX_LIMIT))


def events_for(user, since=None, event_type=None, priority=None, blood_type=None, limit=DEFAULT_LIMIT):
    """
    Events ``user`` may see, oldest first: untargeted ones, ones addressed to
    the user and ones addressed to the user's role.
    """
    limit = clamp_limit(limit)

    queryset = RealtimeEvent.objects.filter(Q(target_user__isnull=True) | Q(target_user=user))
    if since is not None:
        queryset = queryset.filter(created_at__gt=since)
    if event_type:
        queryset = queryset.filter(event_type=event_type)
    if priority:
        queryset = queryset.filter(priority=priority)
    if blood_type:
        queryset = queryset.filter(blood_type=blood_type)

    role = getattr(user, 'user_type', None)
    events = []
    # Role targeting is a JSON list, checked here so it works on every database
    for event in queryset.order_by('created_at', 'id').iterator():
        if event.target_user_id == user.pk or not event.target_roles or role in event.target_roles:
            events.append(event)
            if len(events) >= limit:
                break
    return events

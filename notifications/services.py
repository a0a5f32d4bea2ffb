# notifications/services.py
import logging
from datetime import datetime, timedelta
from smtplib import SMTPException

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.mail import send_mail
from django.db import transaction
from django.db.models import Count, Q
from django.utils import timezone

from bloodlink.conf import get_setting
from bloodlink.exceptions import ResourceNotFound, ValidationFailed
from realtime.services import broadcast
from .models import Notification, NotificationPreference
from .serializers import NotificationPreferenceSerializer

logger = logging.getLogger(__name__)

User = get_user_model()

RECENT_LIMIT = 50

# Recipient aliases accepted by send_alert besides user objects and ids
ROLE_ALIASES = {
    'administrators': Q(user_type='admin') | Q(is_superuser=True),
    'blood_bank_staff': Q(user_type='blood_bank_staff'),
    'hospital_staff': Q(user_type='hospital_staff'),
    'emergency_responders': Q(user_type='emergency_responder'),
    'donors': Q(user_type='donor'),
}

# Which preference switch silences which notification type
CATEGORY_SWITCHES = {
    'blood_request': 'blood_request_alerts',
    'donor_match': 'blood_request_alerts',
    'reminder': 'donation_reminders',
    'system': 'system_updates',
    'status_update': 'system_updates',
}

URGENT_PRIORITIES = ('critical', 'high')
REALTIME_CHANNELS = ('push', 'in_app')


# ---------------------------
# Creation and fan-out
# ---------------------------
def create_notification(user, notification_type, title, message, data=None,
                        priority='normal', channels=None, scheduled_for=None):
    notification = Notification.objects.create(
        user=user,
        notification_type=notification_type,
        title=title[:200],
        message=message[:1000],
        data=data or {},
        priority=priority,
        channels=list(channels or ['push']),
        scheduled_for=scheduled_for,
    )
    logger.debug("Queued %s notification #%s for %s", notification_type, notification.pk, user.pk)
    return notification


def resolve_recipients(recipients):
    """
    Users from a mixed list of user objects, user ids and role aliases.
    Unknown ids are returned separately so callers can count them as failures.
    """
    users = {}
    missing = []
    ids = []

    for recipient in recipients or []:
        if isinstance(recipient, User):
            users[recipient.pk] = recipient
        elif isinstance(recipient, int) or (isinstance(recipient, str) and recipient.isdigit()):
            ids.append(int(recipient))
        elif recipient in ROLE_ALIASES:
            for user in User.objects.filter(ROLE_ALIASES[recipient], is_active=True):
                users[user.pk] = user
        else:
            missing.append(recipient)

    if ids:
        found = User.objects.in_bulk(ids)
        users.update(found)
        missing.extend(i for i in ids if i not in found)

    return list(users.values()), missing


def in_quiet_hours(preferences, now=None):
    start, end = preferences.quiet_hours_start, preferences.quiet_hours_end
    if start is None or end is None or start == end:
        return False
    current = (now or timezone.localtime()).time()
    if start < end:
        return start <= current < end
    # Window wraps past midnight
    return current >= start or current < end


def quiet_hours_end(preferences, now=None):
    now = now or timezone.localtime()
    end = timezone.make_aware(datetime.combine(now.date(), preferences.quiet_hours_end), now.tzinfo)
    if end <= now:
        end += timedelta(days=1)
    return end


def should_notify(preferences, notification_type, priority):
    switch = CATEGORY_SWITCHES.get(notification_type)
    if switch and not getattr(preferences, switch):
        return False
    if preferences.emergency_only and priority not in URGENT_PRIORITIES:
        return False
    return True


def send_alert(alert_type, title, message, recipients, priority='normal', channels=None, data=None):
    """
    Queue one notification per recipient, honouring each recipient's preferences.

    Returns:
        dict with success flag and sent / failed / skipped counts
    """
    channels = list(channels or ['push'])
    users, missing = resolve_recipients(recipients)

    sent = skipped = 0
    failed = len(missing)
    if missing:
        logger.warning("send_alert(%s): unknown recipients %s", alert_type, missing)

    for user in users:
        preferences = get_notification_preferences(user)

        if not should_notify(preferences, alert_type, priority):
            skipped += 1
            continue

        allowed = [c for c in channels if preferences.channel_enabled(c)]
        if not allowed:
            skipped += 1
            continue

        scheduled_for = None
        if priority != 'critical' and in_quiet_hours(preferences):
            scheduled_for = quiet_hours_end(preferences)

        create_notification(
            user, alert_type, title, message,
            data=data, priority=priority, channels=allowed, scheduled_for=scheduled_for,
        )
        sent += 1

    logger.info("Alert %s: sent=%d failed=%d skipped=%d", alert_type, sent, failed, skipped)
    return {'success': failed == 0, 'sent': sent, 'failed': failed, 'skipped': skipped}


# ---------------------------
# Reading
# ---------------------------
def get_user_notifications(user, limit=RECENT_LIMIT):
    return list(Notification.objects.filter(user=user).order_by('-created_at')[:limit])


def mark_notification_as_read(notification_id, user):
    updated = Notification.objects.filter(pk=notification_id, user=user).update(status=Notification.DELIVERED)
    if not updated:
        raise ResourceNotFound("Notification not found.")
    return Notification.objects.get(pk=notification_id)


def mark_all_as_read(user):
    return (
        Notification.objects
        .filter(user=user)
        .exclude(status=Notification.DELIVERED)
        .update(status=Notification.DELIVERED)
    )


# ---------------------------
# Delivery
# ---------------------------
def _deliver_email(notification):
    if not notification.user.email:
        return 'failed', 'user has no email address'
    try:
        send_mail(
            subject=notification.title,
            message=notification.message,
            from_email=settings.DEFAULT_FROM_EMAIL,
            recipient_list=[notification.user.email],
            fail_silently=False,
        )
    except (SMTPException, OSError) as exc:
        logger.warning("Email for notification #%s failed: %s", notification.pk, exc)
        return 'failed', str(exc)
    return 'delivered', None


def _deliver_realtime(notification):
    broadcast(
        'notification',
        {
            'notification_id': notification.pk,
            'type': notification.notification_type,
            'title': notification.title,
            'message': notification.message,
            'data': notification.data,
        },
        source='notifications',
        priority=notification.priority,
        target_user=notification.user,
    )
    return 'delivered', None


def dispatch(notification):
    """Attempt every channel once; returns True if at least one delivered."""
    now = timezone.now().isoformat()
    delivered = False

    for channel in notification.channels or ['push']:
        if channel == 'email':
            outcome, error = _deliver_email(notification)
        elif channel in REALTIME_CHANNELS:
            outcome, error = _deliver_realtime(notification)
        else:
            outcome, error = 'unsupported', None

        entry = {'channel': channel, 'status': outcome, 'at': now}
        if error:
            entry['error'] = error
        notification.delivery_log.append(entry)
        delivered = delivered or outcome == 'delivered'

    return delivered


def process_pending_notifications(batch_size=None):
    """
    Deliver the oldest due pending notifications.

    Returns:
        dict with processed / retried / failed counts
    """
    batch_size = batch_size or get_setting('NOTIFICATION_BATCH_SIZE')
    max_attempts = get_setting('MAX_DELIVERY_ATTEMPTS')
    now = timezone.now()
    processed = retried = failed = 0

    with transaction.atomic():
        batch = list(
            Notification.objects
            .select_for_update(skip_locked=True)
            .select_related('user')
            .filter(status=Notification.PENDING)
            .filter(Q(scheduled_for__isnull=True) | Q(scheduled_for__lte=now))
            .order_by('created_at', 'id')[:batch_size]
        )

        for notification in batch:
            if dispatch(notification):
                notification.status = Notification.SENT
                notification.sent_at = timezone.now()
                processed += 1
            else:
                notification.delivery_attempts += 1
                if notification.delivery_attempts >= max_attempts:
                    notification.status = Notification.FAILED
                    failed += 1
                else:
                    retried += 1
            notification.save(update_fields=['status', 'sent_at', 'delivery_attempts', 'delivery_log'])

    if batch:
        logger.info("Notification queue: processed=%d retried=%d failed=%d", processed, retried, failed)
    return {'processed': processed, 'retried': retried, 'failed': failed}


# ---------------------------
# Preferences and stats
# ---------------------------
def get_notification_preferences(user):
    preferences, _ = NotificationPreference.objects.get_or_create(user=user)
    return preferences


def update_notification_preferences(user, data):
    preferences = get_notification_preferences(user)
    serializer = NotificationPreferenceSerializer(preferences, data=data, partial=True)
    if not serializer.is_valid():
        raise ValidationFailed(serializer.errors)
    return serializer.save()


def get_notification_stats(user=None, days=30):
    since = timezone.now() - timedelta(days=days)
    queryset = Notification.objects.filter(created_at__gte=since)
    if user is not None:
        queryset = queryset.filter(user=user)

    def grouped(field):
        return {
            row[field]: row['count']
            for row in queryset.values(field).annotate(count=Count('id')).order_by(field)
        }

    by_status = grouped('status')
    total = sum(by_status.values())
    # Read notifications were delivered first
    sent = by_status.get(Notification.SENT, 0) + by_status.get(Notification.DELIVERED, 0)

    return {
        'total': total,
        'by_status': by_status,
        'by_type': grouped('notification_type'),
        'by_priority': grouped('priority'),
        'success_rate': round(sent / total * 100, 2) if total else 0,
    }

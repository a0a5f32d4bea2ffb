# notifications/tasks.py
"""
Celery tasks for the notification queue
"""
import logging

from celery import shared_task

from .services import process_pending_notifications

logger = logging.getLogger(__name__)


@shared_task
def process_notification_queue(batch_size=None):
    """
    Runs every 30 seconds from beat; delivers the oldest pending notifications
    """
    result = process_pending_notifications(batch_size)
    return f"processed={result['processed']} retried={result['retried']} failed={result['failed']}"

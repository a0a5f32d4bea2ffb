# institutions/tasks.py
"""
Celery tasks for blood request escalation and expiry
"""
import logging

from celery import shared_task

from . import services

logger = logging.getLogger(__name__)


@shared_task
def escalate_request(blood_request_id):
    """
    Scheduled with a countdown when an urgent request is created. If nobody
    has accepted by then, the next batch of matched donors is notified.
    """
    notified = services.escalate(blood_request_id)
    if notified is None:
        return f"Request {blood_request_id} no longer pending"
    return f"Escalated request {blood_request_id}, notified {notified} donors"


@shared_task
def expire_overdue_requests():
    count = services.expire_overdue_requests()
    return f"Expired {count} requests"

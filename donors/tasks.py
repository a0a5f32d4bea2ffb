# donors/tasks.py
"""
Celery tasks for donors
"""
from celery import shared_task

from .services import send_donation_reminders as send_reminders


@shared_task
def send_donation_reminders():
    """
    Hourly from beat; reminds donors of donations in the next 24 hours
    """
    count = send_reminders()
    return f"Sent {count} donation reminders"

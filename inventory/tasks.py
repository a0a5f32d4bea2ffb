# inventory/tasks.py
"""
Periodic inventory housekeeping (scheduled from CELERY_BEAT_SCHEDULE)
"""
from celery import shared_task

from . import services


@shared_task
def process_expired_units():
    result = services.process_expired_units()
    return f"Disposed {result['processed_count']} expired units"


@shared_task
def check_inventory_alerts():
    alerts = services.check_inventory_alerts()
    return f"Created {len(alerts)} inventory alerts"

# bloodlink/celery.py
"""
Celery configuration for background tasks
(notification queue, request escalation, inventory housekeeping)
"""
import os
from celery import Celery

# Set default Django settings
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'bloodlink.settings')

# Create Celery app
app = Celery('bloodlink')

# Load config from Django settings (prefix: CELERY_)
app.config_from_object('django.conf:settings', namespace='CELERY')

# Auto-discover tasks in all installed apps
app.autodiscover_tasks()

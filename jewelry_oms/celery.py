"""
Celery Configuration for the Jewelry OMS

HOW IT WORKS:
1. A courier webhook reports a failed reverse pickup → we respond immediately
2. The admin notification task is pushed to the Redis queue
3. A Celery worker picks it up and sends the email in the background
4. Ops can also queue a re-run of a refund automation that stalled
"""

import os
from celery import Celery

# Set the default Django settings module
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'jewelry_oms.settings')

# Create the Celery app
app = Celery('jewelry_oms')

# Load config from Django settings (all settings starting with CELERY_)
app.config_from_object('django.conf:settings', namespace='CELERY')

# Auto-discover tasks.py in all installed apps
app.autodiscover_tasks()

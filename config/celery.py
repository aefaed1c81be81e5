"""
Celery configuration for the Lead Scan Pipeline service.

This module configures Celery for asynchronous task processing
with separate task queues for scan batches and discovery.
"""

import os
from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("lead_scan")

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Configure task queues for different operations
app.conf.task_queues = {
    "scan": {
        "exchange": "scan",
        "routing_key": "scan",
    },
    "discovery": {
        "exchange": "discovery",
        "routing_key": "discovery",
    },
    "default": {
        "exchange": "default",
        "routing_key": "default",
    },
}

# Default task routing
app.conf.task_default_queue = "default"
app.conf.task_default_exchange = "default"
app.conf.task_default_routing_key = "default"

# Route specific tasks to their queues. A single scan worker keeps
# batch processing sequential.
app.conf.task_routes = {
    "scanner.tasks.check_scan_schedule": {"queue": "default"},
    "scanner.tasks.recover_stale_scans": {"queue": "default"},
    "scanner.tasks.run_scan_batch": {"queue": "scan"},
    "scanner.tasks.trigger_manual_scan": {"queue": "scan"},
    "scanner.tasks.run_discovery": {"queue": "discovery"},
}

# Configure Celery Beat schedule for periodic tasks
app.conf.beat_schedule = {
    "check-scan-schedule-every-5-minutes": {
        "task": "scanner.tasks.check_scan_schedule",
        "schedule": crontab(minute="*/5"),  # Every 5 minutes
    },
    "recover-stale-scans-every-10-minutes": {
        "task": "scanner.tasks.recover_stale_scans",
        "schedule": crontab(minute="*/10"),  # Every 10 minutes
    },
}

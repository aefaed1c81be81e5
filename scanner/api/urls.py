"""
Scan Pipeline API URL Configuration

Endpoints:
- GET/PATCH /api/v1/automation/settings/    - Automation settings
- POST      /api/v1/automation/trigger/     - Run a scan batch now
- GET/POST  /api/v1/queue/                  - List or enqueue scan items
- GET       /api/v1/queue/status/           - Queue status counts
- POST      /api/v1/queue/<id>/retry/       - Retry a failed item
- POST      /api/v1/queue/<id>/cancel/      - Cancel a pending item
- GET       /api/v1/quota/                  - Provider quota usage
- POST      /api/v1/discovery/              - Discover businesses for a location
"""

from django.urls import path

from scanner.api.views import (
    automation_settings,
    trigger_scan,
    queue_items,
    queue_status,
    retry_item,
    cancel_item,
    quota_usage,
    discover_businesses,
)

app_name = 'scanner_api'

urlpatterns = [
    # Automation endpoints
    path('automation/settings/', automation_settings, name='automation_settings'),
    path('automation/trigger/', trigger_scan, name='trigger_scan'),

    # Queue endpoints
    path('queue/', queue_items, name='queue_items'),
    path('queue/status/', queue_status, name='queue_status'),
    path('queue/<str:item_id>/retry/', retry_item, name='retry_item'),
    path('queue/<str:item_id>/cancel/', cancel_item, name='cancel_item'),

    # Quota endpoints
    path('quota/', quota_usage, name='quota_usage'),

    # Discovery endpoints
    path('discovery/', discover_businesses, name='discover_businesses'),
]

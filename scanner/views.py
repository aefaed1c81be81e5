"""
Scanner views.

Includes the health check endpoint for monitoring and load balancer checks.
"""

import logging

import redis
from django.conf import settings
from django.db import connection
from django.http import JsonResponse
from django.utils import timezone

from scanner.models import ScanQueueItem, ScanStatus
from scanner.services.scheduler import get_scheduler

logger = logging.getLogger(__name__)


def get_redis_status() -> str:
    """
    Ping the Celery broker.

    Returns:
        "connected", "not_configured" or "error"
    """
    url = getattr(settings, "CELERY_BROKER_URL", "")
    if not url or not url.startswith(("redis://", "rediss://")):
        return "not_configured"
    try:
        client = redis.Redis.from_url(url, socket_connect_timeout=1, socket_timeout=1)
        return "connected" if client.ping() else "error"
    except redis.RedisError as e:
        logger.debug(f"Redis health check failed: {e}")
        return "error"


def health_check(request):
    """
    Health check endpoint for the scan service.

    Endpoint: GET /api/health/
    No authentication required (for load balancer checks).

    Response fields:
        - status: "healthy" or "unhealthy"
        - database: "connected" or "error"
        - redis: "connected", "not_configured" or "error"
        - queue: pending and processing item counts
        - automation: enabled flag, next and last run

    Returns:
        JsonResponse, HTTP 200 when healthy and 503 when the database is down
    """
    status = "healthy"
    http_status = 200

    database_status = "connected"
    try:
        connection.ensure_connection()
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        database_status = "error"
        status = "unhealthy"
        http_status = 503

    # Broker trouble degrades background work only
    redis_status = get_redis_status()

    queue = None
    automation = None
    if database_status == "connected":
        queue = {
            "pending": ScanQueueItem.objects.filter(status=ScanStatus.PENDING).count(),
            "processing": ScanQueueItem.objects.filter(status=ScanStatus.PROCESSING).count(),
        }
        current = get_scheduler().get_settings()
        automation = {
            "enabled": current.enabled,
            "next_scheduled_run": (
                current.next_scheduled_run.isoformat() if current.next_scheduled_run else None
            ),
            "last_run": current.last_run.isoformat() if current.last_run else None,
        }

    return JsonResponse(
        {
            "status": status,
            "timestamp": timezone.now().isoformat(),
            "database": database_status,
            "redis": redis_status,
            "queue": queue,
            "automation": automation,
        },
        status=http_status,
    )

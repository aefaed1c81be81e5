"""
Scan Pipeline API Views

REST API endpoints for the automated scan pipeline and discovery.

This module provides endpoints for:
- Automation settings (read and validated partial update)
- Manual "run now" trigger
- Scan queue inspection and operator actions (enqueue, retry, cancel)
- Provider quota usage
- Multi-source business discovery

All endpoints require authentication; endpoints that start provider work
are throttled.
"""

import logging
from typing import Any, Dict

from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes, throttle_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from drf_spectacular.utils import extend_schema, OpenApiParameter

from scanner.api.throttling import DiscoveryThrottle, ScanTriggerThrottle
from scanner.exceptions import InvalidStateError, ValidationError
from scanner.models import AutomationSettings, Business, ScanQueueItem, ScanType
from scanner.services.discovery_orchestrator import DiscoveryOrchestrator
from scanner.services.quota_manager import get_quota_manager
from scanner.services.scan_queue import ScanQueue
from scanner.services.scheduler import get_scheduler
from scanner.tasks import trigger_manual_scan

logger = logging.getLogger(__name__)

RUNNABLE_SCAN_TYPES = {ScanType.PERFORMANCE, ScanType.TECHNOLOGY}

DEFAULT_QUEUE_LIMIT = 100


def _isoformat(value):
    return value.isoformat() if value else None


def _serialize_settings(current: AutomationSettings) -> Dict[str, Any]:
    return {
        'enabled': current.enabled,
        'frequency': current.frequency,
        'hour_of_day': current.hour_of_day,
        'batch_size': current.batch_size,
        'retry_failed': current.retry_failed,
        'max_retries': current.max_retries,
        'scan_type': current.scan_type,
        'next_scheduled_run': _isoformat(current.next_scheduled_run),
        'last_run': _isoformat(current.last_run),
    }


def _serialize_item(item: ScanQueueItem) -> Dict[str, Any]:
    return {
        'id': str(item.id),
        'target_id': str(item.target_id),
        'target_name': item.target.name,
        'scan_type': item.scan_type,
        'url': item.url,
        'priority': item.priority,
        'status': item.status,
        'provider': item.provider,
        'attempts': item.attempts,
        'error_message': item.error_message,
        'error_kind': item.error_kind,
        'result': item.result,
        'created_at': _isoformat(item.created_at),
        'started_at': _isoformat(item.started_at),
        'completed_at': _isoformat(item.completed_at),
    }


def _parse_limit(raw):
    """Query-string limit as an int; raises ValidationError when malformed."""
    if raw in (None, ''):
        return DEFAULT_QUEUE_LIMIT
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError('limit must be an integer')


def _item_not_found(item_id):
    return Response(
        {'error': f'Scan item {item_id} not found'},
        status=status.HTTP_404_NOT_FOUND
    )


# ============================================================
# Automation Endpoints
# ============================================================

@extend_schema(
    tags=['Automation'],
    summary='Get or update automation settings',
    description='''
    GET returns the automation settings and the next scheduled run.

    PATCH applies a partial update. Changing enabled, frequency or
    hour_of_day recomputes the next scheduled run; disabling clears it.

    Validation: batch_size 1-50, max_retries 1-10, hour_of_day 0-23,
    frequency one of daily, weekly, biweekly, monthly.
    ''',
    request={
        'application/json': {
            'type': 'object',
            'properties': {
                'enabled': {'type': 'boolean'},
                'frequency': {'type': 'string', 'enum': ['daily', 'weekly', 'biweekly', 'monthly']},
                'hour_of_day': {'type': 'integer', 'minimum': 0, 'maximum': 23},
                'batch_size': {'type': 'integer', 'minimum': 1, 'maximum': 50},
                'retry_failed': {'type': 'boolean'},
                'max_retries': {'type': 'integer', 'minimum': 1, 'maximum': 10},
                'scan_type': {'type': 'string', 'enum': ['performance', 'technology']},
            },
        }
    },
    responses={
        200: {
            'description': 'Current settings',
            'content': {
                'application/json': {
                    'example': {
                        'enabled': True,
                        'frequency': 'weekly',
                        'hour_of_day': 2,
                        'batch_size': 10,
                        'retry_failed': True,
                        'max_retries': 3,
                        'scan_type': 'performance',
                        'next_scheduled_run': '2025-06-02T02:00:00+00:00',
                        'last_run': None,
                    }
                }
            }
        },
        400: {'description': 'Invalid setting'},
    },
)
@api_view(['GET', 'PATCH'])
@permission_classes([IsAuthenticated])
def automation_settings(request):
    """
    Read or update the automation settings.

    Nothing is written when any field fails validation.
    """
    scheduler = get_scheduler()

    if request.method == 'GET':
        return Response(_serialize_settings(scheduler.get_settings()))

    if not isinstance(request.data, dict):
        return Response(
            {'error': 'Request body must be a JSON object'},
            status=status.HTTP_400_BAD_REQUEST
        )

    try:
        current = scheduler.update_settings(**dict(request.data))
    except ValidationError as e:
        return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

    return Response(_serialize_settings(current))


@extend_schema(
    tags=['Automation'],
    summary='Run a scan batch now',
    description='''
    Dispatch a scan batch immediately, bypassing the schedule.

    With business_id only that business is scanned (its pending item is
    reused, or a high priority item is created). Without it a normal batch
    of stale targets runs. Quota and retry rules apply as usual.
    ''',
    request={
        'application/json': {
            'type': 'object',
            'properties': {
                'business_id': {'type': 'string', 'format': 'uuid'},
                'scan_type': {'type': 'string', 'enum': ['performance', 'technology']},
            },
        }
    },
    responses={
        202: {
            'description': 'Batch dispatched',
            'content': {
                'application/json': {
                    'example': {
                        'success': True,
                        'task_id': 'c1a4f0e2-5b7d-4c1e-9a34-8f2d6e0b7c11',
                        'business_id': None,
                        'scan_type': 'performance',
                        'status': 'dispatched',
                    }
                }
            }
        },
        400: {'description': 'Invalid scan_type'},
        404: {'description': 'Business not found'},
    },
)
@api_view(['POST'])
@permission_classes([IsAuthenticated])
@throttle_classes([ScanTriggerThrottle])
def trigger_scan(request):
    """
    Manual run-now trigger.

    Request body:
    {
        "business_id": "optional uuid",
        "scan_type": "performance"
    }
    """
    business_id = request.data.get('business_id')
    scan_type = request.data.get('scan_type')

    if scan_type is not None and scan_type not in RUNNABLE_SCAN_TYPES:
        return Response(
            {'error': 'scan_type must be performance or technology'},
            status=status.HTTP_400_BAD_REQUEST
        )

    if business_id:
        try:
            exists = Business.objects.filter(pk=business_id).exists()
        except (DjangoValidationError, ValueError):
            exists = False
        if not exists:
            return Response(
                {'error': f'Business {business_id} not found'},
                status=status.HTTP_404_NOT_FOUND
            )
        business_id = str(business_id)

    scan_type = scan_type or get_scheduler().get_settings().scan_type
    task = trigger_manual_scan.delay(target_id=business_id, scan_type=scan_type)
    logger.info(f"Manual scan dispatched ({task.id}) by {request.user} for {business_id or 'stale batch'}")

    return Response({
        'success': True,
        'task_id': task.id,
        'business_id': business_id,
        'scan_type': scan_type,
        'status': 'dispatched',
    }, status=status.HTTP_202_ACCEPTED)


# ============================================================
# Queue Endpoints
# ============================================================

@extend_schema(
    tags=['Queue'],
    summary='List or enqueue scan items',
    description='''
    GET lists queue items newest first, filtered by status and target.

    POST enqueues a scan for a business. The item is picked up by the next
    batch, ahead of stale targets.
    ''',
    parameters=[
        OpenApiParameter(name='status', type=str, required=False,
                         description='pending, processing, completed or failed'),
        OpenApiParameter(name='target_id', type=str, required=False, description='Business id'),
        OpenApiParameter(name='limit', type=int, required=False, description='Maximum items (default 100)'),
    ],
    request={
        'application/json': {
            'type': 'object',
            'properties': {
                'target_id': {'type': 'string', 'format': 'uuid'},
                'scan_type': {'type': 'string', 'enum': ['performance', 'technology', 'discovery']},
                'url': {'type': 'string'},
                'priority': {'type': 'string', 'enum': ['high', 'medium', 'low'], 'default': 'medium'},
            },
            'required': ['target_id'],
        }
    },
    responses={
        200: {'description': 'Queue items'},
        201: {'description': 'Item enqueued'},
        400: {'description': 'Invalid filter or item'},
    },
)
@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def queue_items(request):
    """List queue items or enqueue one."""
    queue = ScanQueue()

    if request.method == 'POST':
        try:
            item = queue.enqueue(
                request.data.get('target_id'),
                scan_type=request.data.get('scan_type', ScanType.PERFORMANCE),
                url=request.data.get('url'),
                priority=request.data.get('priority', 'medium'),
            )
        except ValidationError as e:
            return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

        return Response(_serialize_item(item), status=status.HTTP_201_CREATED)

    try:
        items = queue.list_items(
            status=request.query_params.get('status') or None,
            target_id=request.query_params.get('target_id') or None,
            limit=_parse_limit(request.query_params.get('limit')),
        )
    except ValidationError as e:
        return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)
    except DjangoValidationError:
        return Response({'error': 'Invalid target_id'}, status=status.HTTP_400_BAD_REQUEST)

    return Response({
        'count': len(items),
        'items': [_serialize_item(item) for item in items],
    })


@extend_schema(
    tags=['Queue'],
    summary='Queue status counts',
    responses={
        200: {
            'description': 'Counts',
            'content': {
                'application/json': {
                    'example': {'pending': 4, 'processing': 1, 'completed_today': 12, 'failed_today': 2}
                }
            }
        },
    },
)
@api_view(['GET'])
@permission_classes([IsAuthenticated])
def queue_status(request):
    """Pending and processing totals plus today's completions and failures."""
    return Response(ScanQueue().get_status_counts())


@extend_schema(
    tags=['Queue'],
    summary='Retry a failed scan item',
    responses={
        200: {'description': 'Item back to pending'},
        404: {'description': 'Item not found'},
        409: {'description': 'Item is not failed'},
    },
)
@api_view(['POST'])
@permission_classes([IsAuthenticated])
def retry_item(request, item_id):
    """Move a failed item back to pending."""
    try:
        item = ScanQueue().retry(item_id)
    except ScanQueueItem.DoesNotExist:
        return _item_not_found(item_id)
    except InvalidStateError as e:
        return Response(
            {'error': str(e), 'status': e.current_status},
            status=status.HTTP_409_CONFLICT
        )

    return Response(_serialize_item(item))


@extend_schema(
    tags=['Queue'],
    summary='Cancel a pending scan item',
    responses={
        204: {'description': 'Item deleted'},
        404: {'description': 'Item not found'},
        409: {'description': 'Item is not pending'},
    },
)
@api_view(['POST'])
@permission_classes([IsAuthenticated])
def cancel_item(request, item_id):
    """Delete a pending item."""
    try:
        ScanQueue().cancel(item_id)
    except ScanQueueItem.DoesNotExist:
        return _item_not_found(item_id)
    except InvalidStateError as e:
        return Response(
            {'error': str(e), 'status': e.current_status},
            status=status.HTTP_409_CONFLICT
        )

    return Response(status=status.HTTP_204_NO_CONTENT)


# ============================================================
# Quota Endpoints
# ============================================================

@extend_schema(
    tags=['Quota'],
    summary='Provider quota usage',
    description='Usage for the current monthly period of every configured or used provider.',
    responses={
        200: {
            'description': 'Usage per provider',
            'content': {
                'application/json': {
                    'example': {
                        'pagespeed': {
                            'used': 120,
                            'limit': 25000,
                            'remaining': 24880,
                            'percentage': 0.48,
                            'last_used': '2025-06-02T02:05:11+00:00',
                            'period': '2025-06',
                        }
                    }
                }
            }
        },
    },
)
@api_view(['GET'])
@permission_classes([IsAuthenticated])
def quota_usage(request):
    """Quota usage per provider."""
    return Response(get_quota_manager().get_all_usage_stats())


# ============================================================
# Discovery Endpoints
# ============================================================

@extend_schema(
    tags=['Discovery'],
    summary='Discover businesses for a location',
    description='''
    Query every discovery source concurrently, merge and deduplicate the
    results. When every source fails, sample businesses are returned with
    is_synthetic set; they are only persisted with include_synthetic.
    ''',
    request={
        'application/json': {
            'type': 'object',
            'properties': {
                'location': {'type': 'string', 'description': 'e.g. "Austin, TX"'},
                'sources': {
                    'type': 'array',
                    'items': {'type': 'string'},
                    'description': 'Source names, highest priority first',
                },
                'persist': {'type': 'boolean', 'default': False},
                'include_synthetic': {'type': 'boolean', 'default': False},
            },
            'required': ['location'],
        }
    },
    responses={
        200: {
            'description': 'Discovery outcome',
            'content': {
                'application/json': {
                    'example': {
                        'query': 'Austin, TX',
                        'count': 1,
                        'is_synthetic': False,
                        'succeeded_providers': ['yellowpages'],
                        'errors': [{'provider': 'localstack', 'reason': 'HTTP 503', 'attempts': 3}],
                        'results': [{
                            'name': 'Austin Plumbing Co',
                            'website': 'https://austinplumbing.example',
                            'phone': '(512) 555-0100',
                            'address': '100 Main St, Austin, TX',
                            'source_provider': 'yellowpages',
                        }],
                    }
                }
            }
        },
        400: {'description': 'Missing location or unknown source'},
    },
)
@api_view(['POST'])
@permission_classes([IsAuthenticated])
@throttle_classes([DiscoveryThrottle])
def discover_businesses(request):
    """
    Run discovery for a location.

    Request body:
    {
        "location": "Austin, TX",
        "sources": ["yellowpages", "localstack"],
        "persist": true
    }
    """
    location = request.data.get('location') or request.data.get('query')
    if not location or not isinstance(location, str):
        return Response(
            {'error': 'location is required'},
            status=status.HTTP_400_BAD_REQUEST
        )

    sources = request.data.get('sources')
    if sources is not None and not (
        isinstance(sources, list) and all(isinstance(name, str) for name in sources)
    ):
        return Response(
            {'error': 'sources must be a list of source names'},
            status=status.HTTP_400_BAD_REQUEST
        )

    orchestrator = DiscoveryOrchestrator()
    try:
        outcome = orchestrator.discover(location, source_preference_order=sources or None)
    except ValidationError as e:
        return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

    response_data = outcome.to_dict()
    if request.data.get('persist', False):
        response_data['persisted'] = orchestrator.persist_results(
            outcome,
            include_synthetic=bool(request.data.get('include_synthetic', False)),
        )

    return Response(response_data)

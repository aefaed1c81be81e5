"""
Celery tasks for the scan pipeline.

- check_scan_schedule: Beat tick (every 5 minutes); dispatches a batch when due
- run_scan_batch: Worker task running one scan batch
- trigger_manual_scan: Run-now trigger, bypassing the schedule
- recover_stale_scans: Beat reaper (every 10 minutes) for abandoned claims
- run_discovery: Multi-source discovery for a location
"""

import logging
from typing import Any, Dict, List, Optional

from celery import shared_task
from django.utils import timezone

from scanner.exceptions import ValidationError
from scanner.models import ScanPriority
from scanner.monitoring import capture_alert
from scanner.services.batch_processor import BatchProcessor
from scanner.services.discovery_orchestrator import DiscoveryOrchestrator
from scanner.services.scan_queue import ScanQueue
from scanner.services.scheduler import get_scheduler

logger = logging.getLogger(__name__)


@shared_task(name="scanner.tasks.check_scan_schedule")
def check_scan_schedule() -> Dict[str, Any]:
    """
    Periodic tick. When automation is enabled and due, stamps the run and
    dispatches run_scan_batch to the scan queue.

    Returns:
        Dict with due flag and next run
    """
    now = timezone.now()
    scheduler = get_scheduler()

    if not scheduler.on_tick(now):
        current = scheduler.get_settings(now)
        logger.debug(f"Scan schedule not due (enabled={current.enabled}, next={current.next_scheduled_run})")
        return {
            "due": False,
            "enabled": current.enabled,
            "next_scheduled_run": current.next_scheduled_run.isoformat() if current.next_scheduled_run else None,
        }

    current = scheduler.record_run(now)
    task = run_scan_batch.delay(scan_type=current.scan_type)
    logger.info(f"Scheduled scan batch dispatched ({task.id}); next run {current.next_scheduled_run}")

    return {
        "due": True,
        "task_id": task.id,
        "next_scheduled_run": current.next_scheduled_run.isoformat() if current.next_scheduled_run else None,
    }


@shared_task(name="scanner.tasks.run_scan_batch")
def run_scan_batch(scan_type: Optional[str] = None) -> Dict[str, Any]:
    """
    Run one scan batch.

    Args:
        scan_type: performance or technology; defaults to the automation setting

    Returns:
        BatchResult as a dict, or an error dict
    """
    try:
        result = BatchProcessor().run_batch(scan_type=scan_type)
    except ValidationError as e:
        logger.error(f"Scan batch rejected: {e}")
        return {"error": str(e), "status": "failed"}

    return {"status": "completed", **result.to_dict()}


@shared_task(name="scanner.tasks.trigger_manual_scan")
def trigger_manual_scan(target_id: Optional[str] = None, scan_type: Optional[str] = None) -> Dict[str, Any]:
    """
    Run a batch immediately, regardless of the schedule.

    Args:
        target_id: scan only this business
        scan_type: performance or technology; defaults to the automation setting

    Returns:
        BatchResult as a dict, or an error dict
    """
    logger.info(f"Manual scan triggered (target={target_id or 'stale batch'}, scan_type={scan_type or 'default'})")

    try:
        result = BatchProcessor().run_batch(
            scan_type=scan_type,
            target_id=target_id,
            priority=ScanPriority.HIGH,
        )
    except ValidationError as e:
        logger.error(f"Manual scan rejected: {e}")
        return {"error": str(e), "status": "failed"}

    return {"status": "completed", "target_id": target_id, **result.to_dict()}


@shared_task(name="scanner.tasks.recover_stale_scans")
def recover_stale_scans() -> Dict[str, Any]:
    """
    Requeue items left in processing by a crashed or killed worker.

    Returns:
        Dict with the number of recovered items
    """
    recovered = ScanQueue().recover_stale()

    if recovered:
        capture_alert(
            f"Recovered {recovered} stale scan item(s)",
            alert_type="stale_recovery",
            extra_data={"recovered": recovered},
        )

    return {"recovered": recovered}


@shared_task(name="scanner.tasks.run_discovery")
def run_discovery(
    query: str,
    sources: Optional[List[str]] = None,
    persist: bool = False,
    include_synthetic: bool = False,
) -> Dict[str, Any]:
    """
    Discover businesses for a location.

    Args:
        query: Location, e.g. "Austin, TX"
        sources: Source names in priority order; defaults to settings
        persist: Upsert the results as businesses
        include_synthetic: Also persist sample data from a total failure

    Returns:
        DiscoveryOutcome as a dict, plus persistence stats when persisting
    """
    orchestrator = DiscoveryOrchestrator()

    try:
        outcome = orchestrator.discover(query, source_preference_order=sources)
    except ValidationError as e:
        logger.error(f"Discovery rejected for '{query}': {e}")
        return {"error": str(e), "status": "failed"}

    response = outcome.to_dict()
    if persist:
        response["persisted"] = orchestrator.persist_results(outcome, include_synthetic=include_synthetic)
    return response

"""
Batch Processor - Drives stale targets through their scan provider.

One run:
1. Claims pending items first (retries and manual enqueues)
2. Fills the remaining batch capacity with stale targets: never scanned, or
   last scanned longer ago than SCANNER_STALE_TARGET_DAYS, oldest first,
   skipping targets that already have an open item
3. Processes the claimed items one at a time, each provider call bounded by
   SCANNER_PROVIDER_TIMEOUT_SECONDS, with a jittered pause between items

Quota is checked before every call; a denied item fails with
quota_exceeded and no request is made. Retryable failures are requeued
while the item has attempts left, fatal ones are not. A failure never
aborts the batch.
"""

import logging
import random
import time
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from scanner.exceptions import QuotaExceeded, ValidationError
from scanner.models import (
    Business,
    BusinessStatus,
    ScanErrorKind,
    ScanPriority,
    ScanQueueItem,
    ScanStatus,
    ScanType,
)
from scanner.monitoring import add_scan_breadcrumb, capture_alert, capture_scan_error
from scanner.providers.base import Fatal, Retryable, Success, call_with_timeout
from scanner.providers.registry import get_scan_adapter
from scanner.services.quota_manager import get_quota_manager
from scanner.services.retry_policy import RetryPolicy
from scanner.services.scan_queue import OPEN_STATUSES, ScanQueue
from scanner.services.scheduler import get_scheduler

logger = logging.getLogger(__name__)

# Field that marks when a target was last scanned for a given scan type
STALENESS_FIELDS = {
    ScanType.PERFORMANCE: "last_performance_scan_at",
    ScanType.TECHNOLOGY: "last_technology_scan_at",
}

# Stop the batch after this many rate-limit responses
MAX_RATE_LIMITS_PER_BATCH = 3

SUCCEEDED = "succeeded"
FAILED = "failed"
REQUEUED = "requeued"
QUOTA_DENIED = "quota_denied"


@dataclass
class BatchResult:
    """
    Summary of one run.

    attempted counts every processed item. requeued and quota_denied are
    included in failed.
    """

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    requeued: int = 0
    quota_denied: int = 0
    released: int = 0
    item_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ItemOutcome:
    status: str
    rate_limited: bool = False


class BatchProcessor:
    """
    Runs scan batches. Collaborators are injectable for tests; defaults are
    the process-wide singletons and settings.
    """

    def __init__(
        self,
        queue: Optional[ScanQueue] = None,
        quota_manager=None,
        scheduler=None,
        adapter_factory=None,
        sleep=time.sleep,
        rand=random.random,
        clock=None,
    ):
        self.clock = clock or timezone.now
        self.queue = queue or ScanQueue(clock=self.clock)
        self.quota_manager = quota_manager or get_quota_manager()
        self.scheduler = scheduler or get_scheduler()
        self.adapter_factory = adapter_factory or get_scan_adapter
        self.sleep = sleep
        self.rand = rand

        self.timeout = getattr(settings, "SCANNER_PROVIDER_TIMEOUT_SECONDS", 30)
        self.delay_seconds = getattr(settings, "SCANNER_SCAN_DELAY_SECONDS", 5)
        self.jitter_seconds = getattr(settings, "SCANNER_SCAN_DELAY_JITTER_SECONDS", 5)
        self.rate_limit_delay = getattr(settings, "SCANNER_RATE_LIMIT_DELAY_SECONDS", 30)
        self.stale_days = getattr(settings, "SCANNER_STALE_TARGET_DAYS", 30)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_stale_targets(self, limit: int, scan_type: str, now=None) -> List[Business]:
        """
        Up to limit targets due for a scan of scan_type, oldest first with
        never-scanned targets ahead of all others. Targets checked within the
        staleness window without a successful scan are left alone until the
        window passes; their retries travel through the queue.
        """
        if limit <= 0:
            return []

        now = now or self.clock()
        cutoff = now - timedelta(days=self.stale_days)
        stamp = STALENESS_FIELDS.get(scan_type, "last_scanned_at")

        open_targets = ScanQueueItem.objects.filter(
            status__in=OPEN_STATUSES, scan_type=scan_type
        ).values("target_id")

        return list(
            Business.objects.filter(
                Q(**{f"{stamp}__isnull": True}) | Q(**{f"{stamp}__lt": cutoff})
            )
            .filter(Q(last_checked_at__isnull=True) | Q(last_checked_at__lt=cutoff))
            .exclude(website__isnull=True)
            .exclude(website="")
            .exclude(id__in=open_targets)
            .order_by(F(stamp).asc(nulls_first=True), "created_at")[:limit]
        )

    def _claim_for_target(self, target_id, scan_type: str, priority: str) -> List[ScanQueueItem]:
        """Claim the target's pending item, or enqueue and claim a new one."""
        try:
            target = Business.objects.filter(pk=target_id).first()
        except (DjangoValidationError, ValueError):
            raise ValidationError(f"Invalid target id: {target_id}")
        if target is None:
            raise ValidationError(f"Unknown target: {target_id}")

        existing = ScanQueueItem.objects.filter(
            target=target, scan_type=scan_type, status__in=OPEN_STATUSES
        ).first()
        if existing is not None:
            if existing.status == ScanStatus.PROCESSING:
                logger.info(f"Scan for {target.name} already in progress ({existing.id})")
                return []
            claimed = self.queue.claim(existing.id)
            return [claimed] if claimed else []

        item = self.queue.enqueue(target.id, scan_type=scan_type, priority=priority)
        claimed = self.queue.claim(item.id)
        return [claimed] if claimed else []

    def _claim_work(self, batch_size: int, scan_type: str, priority: str, now) -> List[ScanQueueItem]:
        items = self.queue.claim_batch(batch_size, scan_type=scan_type)

        for target in self.select_stale_targets(batch_size - len(items), scan_type, now):
            item = self.queue.enqueue(target.id, scan_type=scan_type, priority=priority)
            claimed = self.queue.claim(item.id)
            if claimed is not None:
                items.append(claimed)

        return items

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def run_batch(
        self,
        now=None,
        scan_type: Optional[str] = None,
        target_id=None,
        priority: str = ScanPriority.MEDIUM,
    ) -> BatchResult:
        """
        Run one batch.

        Args:
            now: batch start time (defaults to the clock)
            scan_type: scan type to run; defaults to the automation setting
            target_id: scan only this target (manual trigger)
            priority: priority of items created by this run

        Returns:
            BatchResult

        Raises:
            ValidationError: unknown target or scan type without a provider
        """
        now = now or self.clock()
        automation = self.scheduler.get_settings(now)
        scan_type = scan_type or automation.scan_type

        if scan_type not in STALENESS_FIELDS:
            raise ValidationError(f"Scan type {scan_type} cannot be run as a batch")

        adapter = self.adapter_factory(scan_type)
        try:
            return self._run_with_adapter(adapter, automation, scan_type, target_id, priority, now)
        finally:
            adapter.close()

    def _run_with_adapter(self, adapter, automation, scan_type, target_id, priority, now) -> BatchResult:
        policy = RetryPolicy.for_scans(automation.max_retries)

        if target_id:
            items = self._claim_for_target(target_id, scan_type, priority)
        else:
            items = self._claim_work(automation.batch_size, scan_type, priority, now)

        result = BatchResult()
        if not items:
            logger.info(f"No {scan_type} scans to run")
            return result

        logger.info(
            f"Running {scan_type} batch of {len(items)} item(s) with {adapter.name} "
            f"(retry_failed={automation.retry_failed}, max_retries={automation.max_retries})"
        )

        rate_limits = 0
        previous_rate_limited = False

        for index, item in enumerate(items):
            if rate_limits >= MAX_RATE_LIMITS_PER_BATCH:
                if self.queue.release(item.id):
                    result.released += 1
                continue

            if index > 0:
                self._pause(previous_rate_limited)

            outcome = self.process_item(item, adapter, automation, policy)

            result.attempted += 1
            result.item_ids.append(str(item.id))
            if outcome.status == SUCCEEDED:
                result.succeeded += 1
            else:
                result.failed += 1
                if outcome.status == REQUEUED:
                    result.requeued += 1
                elif outcome.status == QUOTA_DENIED:
                    result.quota_denied += 1

            previous_rate_limited = outcome.rate_limited
            if outcome.rate_limited:
                rate_limits += 1
                if rate_limits >= MAX_RATE_LIMITS_PER_BATCH:
                    logger.warning(
                        f"{adapter.name} rate limited {rate_limits} times; "
                        f"stopping batch and releasing remaining items"
                    )

        logger.info(
            f"Batch complete: {result.attempted} attempted, {result.succeeded} succeeded, "
            f"{result.failed} failed ({result.requeued} requeued, "
            f"{result.quota_denied} quota denied, {result.released} released)"
        )
        return result

    def _pause(self, after_rate_limit: bool) -> None:
        if after_rate_limit:
            delay = self.rate_limit_delay
        else:
            delay = self.delay_seconds + self.rand() * self.jitter_seconds
        if delay > 0:
            logger.debug(f"Sleeping {delay:.1f}s before next scan")
            self.sleep(delay)

    def process_item(self, item: ScanQueueItem, adapter, automation, policy: RetryPolicy) -> ItemOutcome:
        """
        Scan one claimed item and transition it.

        Never raises; unexpected errors fail the item with kind internal.
        """
        target = item.target
        now = self.clock()
        previous_status = target.status

        Business.objects.filter(pk=target.pk).update(
            status=BusinessStatus.SCANNING, last_checked_at=now, updated_at=now
        )
        add_scan_breadcrumb(
            provider=adapter.name,
            message=f"{item.scan_type} scan",
            target_id=str(target.pk),
            extra_data={"item_id": str(item.id), "attempt": item.attempts},
        )

        try:
            if adapter.metered:
                decision = self.quota_manager.try_admit(adapter.name)
                if not decision.admitted:
                    message = str(QuotaExceeded(adapter.name, decision.used, decision.limit))
                    self.queue.fail(item.id, message, kind=ScanErrorKind.QUOTA_EXCEEDED, provider=adapter.name)
                    self._set_target_status(target.pk, BusinessStatus.ERROR)
                    capture_alert(
                        message,
                        alert_type="quota_exhausted",
                        provider=adapter.name,
                        extra_data={"used": decision.used, "limit": decision.limit},
                    )
                    return ItemOutcome(QUOTA_DENIED)

            provider_result = call_with_timeout(adapter.attempt, target, timeout=self.timeout)

            if isinstance(provider_result, Success):
                self.quota_manager.commit(adapter.name)
                finished = self.clock()
                with transaction.atomic():
                    Business.objects.filter(pk=target.pk).update(
                        **adapter.result_fields(provider_result.data, finished),
                        last_scanned_at=finished,
                        status=BusinessStatus.SCANNED,
                        updated_at=finished,
                    )
                    self.queue.complete(item.id, result=provider_result.data, provider=adapter.name)
                logger.info(f"Scanned {target.name} with {adapter.name}")
                return ItemOutcome(SUCCEEDED)

            if isinstance(provider_result, Retryable):
                kind = ScanErrorKind.TIMEOUT if provider_result.timed_out else ScanErrorKind.RETRYABLE
                self.queue.fail(item.id, provider_result.reason, kind=kind, provider=adapter.name)

                if automation.retry_failed and policy.should_retry(item.attempts):
                    self.queue.retry(item.id)
                    self._set_target_status(target.pk, previous_status)
                    logger.info(
                        f"Requeued {target.name} after attempt {item.attempts}/{policy.max_attempts}: "
                        f"{provider_result.reason}"
                    )
                    return ItemOutcome(REQUEUED, rate_limited=provider_result.rate_limited)

                self._set_target_status(target.pk, BusinessStatus.ERROR)
                return ItemOutcome(FAILED, rate_limited=provider_result.rate_limited)

            reason = provider_result.reason if isinstance(provider_result, Fatal) else "Unknown provider result"
            self.queue.fail(item.id, reason, kind=ScanErrorKind.FATAL, provider=adapter.name)
            self._set_target_status(target.pk, BusinessStatus.ERROR)
            return ItemOutcome(FAILED)

        except Exception as e:
            logger.error(f"Error scanning {target.name} ({item.id}): {e}", exc_info=True)
            capture_scan_error(error=e, provider=adapter.name, target=target, item_id=str(item.id))
            self.queue.fail(item.id, f"Internal error: {e}", kind=ScanErrorKind.INTERNAL, provider=adapter.name)
            self._set_target_status(target.pk, BusinessStatus.ERROR)
            return ItemOutcome(FAILED)

    def _set_target_status(self, target_id, status: str) -> None:
        Business.objects.filter(pk=target_id).update(status=status, updated_at=self.clock())


def run_scan_batch(**kwargs) -> BatchResult:
    """Run one batch with default collaborators."""
    return BatchProcessor().run_batch(**kwargs)

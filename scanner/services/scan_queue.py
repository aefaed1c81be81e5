"""
Scan Queue - Durable scan job records and their state machine.

    pending -> processing -> completed | failed
    failed  -> pending      (explicit retry, the only backward edge)
    pending -> (deleted)    (cancel)

Every transition is a conditional UPDATE filtered on the expected current
status, so a transition that lost a race simply updates zero rows. Claims
rely on this: two workers selecting the same candidate ids can never both
move an item to processing.
"""

import logging
from datetime import timedelta
from typing import Dict, List, Optional

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db.models import F, Q
from django.utils import timezone

from scanner.exceptions import InvalidStateError, ValidationError
from scanner.models import (
    Business,
    ScanErrorKind,
    ScanPriority,
    ScanQueueItem,
    ScanStatus,
    ScanType,
)

logger = logging.getLogger(__name__)

OPEN_STATUSES = (ScanStatus.PENDING, ScanStatus.PROCESSING)


class ScanQueue:
    """Operations over ScanQueueItem rows."""

    def __init__(self, clock=None):
        self._clock = clock or timezone.now

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def enqueue(
        self,
        target_id,
        scan_type: str = ScanType.PERFORMANCE,
        url: Optional[str] = None,
        priority: str = ScanPriority.MEDIUM,
    ) -> ScanQueueItem:
        """
        Create a pending item for a target.

        Raises:
            ValidationError: empty target id, unknown target, bad enum value
        """
        if not target_id:
            raise ValidationError("target_id is required")
        if scan_type not in ScanType.values:
            raise ValidationError(f"Invalid scan_type: {scan_type}")
        if priority not in ScanPriority.values:
            raise ValidationError(f"Invalid priority: {priority}")

        try:
            target = Business.objects.filter(pk=target_id).first()
        except (DjangoValidationError, ValueError):
            raise ValidationError(f"Invalid target id: {target_id}")
        if target is None:
            raise ValidationError(f"Unknown target: {target_id}")

        now = self._clock()
        item = ScanQueueItem.objects.create(
            target=target,
            scan_type=scan_type,
            url=url or target.scan_url,
            priority=priority,
            priority_rank=ScanQueueItem.PRIORITY_RANKS[ScanPriority(priority)],
            status=ScanStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        logger.info(f"Enqueued {scan_type} scan {item.id} for {target.name} ({priority})")
        return item

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def _candidate_ids(self, limit: int, scan_type: Optional[str] = None) -> List:
        qs = ScanQueueItem.objects.filter(status=ScanStatus.PENDING)
        if scan_type:
            qs = qs.filter(scan_type=scan_type)
        return list(
            qs.order_by("priority_rank", "created_at").values_list("id", flat=True)[:limit]
        )

    def claim(self, item_id) -> Optional[ScanQueueItem]:
        """
        Claim one pending item. Returns the claimed item, or None when the
        item is missing or no longer pending.
        """
        now = self._clock()
        updated = ScanQueueItem.objects.filter(
            id=item_id, status=ScanStatus.PENDING
        ).update(
            status=ScanStatus.PROCESSING,
            started_at=now,
            updated_at=now,
            attempts=F("attempts") + 1,
        )
        if not updated:
            return None
        return ScanQueueItem.objects.select_related("target").get(id=item_id)

    def claim_batch(self, limit: int, scan_type: Optional[str] = None) -> List[ScanQueueItem]:
        """
        Claim up to limit pending items, high priority first, FIFO within a
        priority. Items claimed concurrently by another caller are skipped.
        """
        if limit <= 0:
            return []

        claimed = []
        for item_id in self._candidate_ids(limit, scan_type):
            item = self.claim(item_id)
            if item is not None:
                claimed.append(item)

        if claimed:
            logger.info(f"Claimed {len(claimed)} scan item(s)")
        return claimed

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def complete(self, item_id, result: Optional[Dict] = None, provider: str = "") -> bool:
        """
        processing -> completed. A no-op returning False when the item is not
        processing, which makes double completion harmless.
        """
        now = self._clock()
        changes = {
            "status": ScanStatus.COMPLETED,
            "completed_at": now,
            "updated_at": now,
            "error_message": None,
            "error_kind": None,
        }
        if result is not None:
            changes["result"] = result
        if provider:
            changes["provider"] = provider

        updated = ScanQueueItem.objects.filter(
            id=item_id, status=ScanStatus.PROCESSING
        ).update(**changes)

        if not updated:
            logger.debug(f"Ignored complete() for scan item {item_id} not in processing")
        return bool(updated)

    def fail(
        self,
        item_id,
        message: str,
        kind: str = ScanErrorKind.RETRYABLE,
        provider: str = "",
    ) -> bool:
        """
        processing -> failed, recording the error. Returns False (no change)
        when the item is not processing.
        """
        now = self._clock()
        changes = {
            "status": ScanStatus.FAILED,
            "completed_at": now,
            "updated_at": now,
            "error_message": message,
            "error_kind": kind,
        }
        if provider:
            changes["provider"] = provider

        updated = ScanQueueItem.objects.filter(
            id=item_id, status=ScanStatus.PROCESSING
        ).update(**changes)

        if updated:
            logger.warning(f"Scan item {item_id} failed ({kind}): {message}")
        else:
            logger.debug(f"Ignored fail() for scan item {item_id} not in processing")
        return bool(updated)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def _get(self, item_id) -> ScanQueueItem:
        try:
            return ScanQueueItem.objects.get(id=item_id)
        except (ScanQueueItem.DoesNotExist, DjangoValidationError, ValueError):
            raise ScanQueueItem.DoesNotExist(f"Scan item {item_id} not found")

    def retry(self, item_id) -> ScanQueueItem:
        """
        failed -> pending, clearing the error and both timestamps. The claim
        counter is kept so retry limits still apply.

        Raises:
            InvalidStateError: item is not failed
            ScanQueueItem.DoesNotExist: unknown id
        """
        item = self._get(item_id)
        updated = ScanQueueItem.objects.filter(
            id=item.id, status=ScanStatus.FAILED
        ).update(
            status=ScanStatus.PENDING,
            started_at=None,
            completed_at=None,
            error_message=None,
            error_kind=None,
            updated_at=self._clock(),
        )
        if not updated:
            item.refresh_from_db()
            raise InvalidStateError(
                f"Only failed items can be retried (item is {item.status})",
                current_status=item.status,
            )

        item.refresh_from_db()
        logger.info(f"Requeued scan item {item.id} (attempts so far: {item.attempts})")
        return item

    def cancel(self, item_id) -> None:
        """
        Delete a pending item.

        Raises:
            InvalidStateError: item was already claimed or finished
            ScanQueueItem.DoesNotExist: unknown id
        """
        item = self._get(item_id)
        deleted, _ = ScanQueueItem.objects.filter(
            id=item.id, status=ScanStatus.PENDING
        ).delete()
        if not deleted:
            item.refresh_from_db()
            raise InvalidStateError(
                f"Only pending items can be cancelled (item is {item.status})",
                current_status=item.status,
            )
        logger.info(f"Cancelled scan item {item.id}")

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def release(self, item_id) -> bool:
        """
        Hand a claimed item back unprocessed: processing -> pending, undoing
        the claim's attempt count. Used when a batch stops early.
        """
        updated = ScanQueueItem.objects.filter(
            id=item_id, status=ScanStatus.PROCESSING
        ).update(
            status=ScanStatus.PENDING,
            started_at=None,
            updated_at=self._clock(),
            attempts=F("attempts") - 1,
        )
        return bool(updated)

    def touch(self, item_id) -> None:
        """Refresh the heartbeat of a processing item."""
        ScanQueueItem.objects.filter(
            id=item_id, status=ScanStatus.PROCESSING
        ).update(updated_at=self._clock())

    def recover_stale(self, threshold: Optional[timedelta] = None) -> int:
        """
        Requeue processing items whose heartbeat is older than threshold.
        Any error left on them is cleared; only failed items carry one.

        Returns:
            Number of items moved back to pending
        """
        if threshold is None:
            threshold = timedelta(
                minutes=getattr(settings, "SCANNER_STALE_PROCESSING_MINUTES", 30)
            )
        now = self._clock()
        recovered = ScanQueueItem.objects.filter(
            status=ScanStatus.PROCESSING,
            updated_at__lt=now - threshold,
        ).update(
            status=ScanStatus.PENDING,
            started_at=None,
            completed_at=None,
            updated_at=now,
            error_kind=None,
            error_message=None,
        )
        if recovered:
            logger.warning(f"Recovered {recovered} stale processing scan item(s)")
        return recovered

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def has_open_item(self, target_id, scan_type: Optional[str] = None) -> bool:
        """True when the target has a pending or processing item."""
        qs = ScanQueueItem.objects.filter(target_id=target_id, status__in=OPEN_STATUSES)
        if scan_type:
            qs = qs.filter(scan_type=scan_type)
        return qs.exists()

    def list_items(
        self,
        status: Optional[str] = None,
        target_id=None,
        limit: Optional[int] = None,
    ):
        """Items newest first, optionally filtered by status and target."""
        qs = ScanQueueItem.objects.select_related("target").order_by("-created_at")
        if status:
            if status not in ScanStatus.values:
                raise ValidationError(f"Invalid status: {status}")
            qs = qs.filter(status=status)
        if target_id:
            qs = qs.filter(target_id=target_id)
        if limit is not None:
            if limit < 1:
                raise ValidationError("limit must be positive")
            qs = qs[:limit]
        return list(qs)

    def get_status_counts(self, now=None) -> Dict[str, int]:
        """Counts shown on the dashboard: open items and today's outcomes."""
        now = now or self._clock()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        today = Q(completed_at__gte=start_of_day)

        return {
            "pending": ScanQueueItem.objects.filter(status=ScanStatus.PENDING).count(),
            "processing": ScanQueueItem.objects.filter(status=ScanStatus.PROCESSING).count(),
            "completed_today": ScanQueueItem.objects.filter(
                today, status=ScanStatus.COMPLETED
            ).count(),
            "failed_today": ScanQueueItem.objects.filter(
                today, status=ScanStatus.FAILED
            ).count(),
        }

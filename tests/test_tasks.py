"""
Tests for the scan pipeline Celery tasks.

Tests cover:
1. Schedule tick dispatches one batch when due and records the run
2. Batch and manual-trigger tasks wrap the BatchProcessor
3. Stale processing recovery
4. Discovery task with persistence
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from django.utils import timezone

from scanner.models import AutomationSettings, Business, ScanPriority, ScanQueueItem, ScanStatus
from scanner.providers.base import DiscoveryResult, Fatal, Success
from scanner.services.scan_queue import ScanQueue


@pytest.mark.django_db
class TestCheckScanSchedule:
    """Tests for the periodic schedule tick."""

    def test_not_due_when_disabled(self):
        from scanner.tasks import check_scan_schedule

        with patch("scanner.tasks.run_scan_batch") as mock_batch:
            result = check_scan_schedule()

        assert result["due"] is False
        assert result["enabled"] is False
        mock_batch.delay.assert_not_called()

    def test_due_dispatches_batch_and_reschedules(self, automation):
        """A due schedule dispatches exactly one batch and moves next run forward."""
        from scanner.tasks import check_scan_schedule

        automation.next_scheduled_run = timezone.now() - timedelta(minutes=1)
        automation.save()

        with patch("scanner.tasks.run_scan_batch") as mock_batch:
            mock_batch.delay.return_value = MagicMock(id="task-123")
            first = check_scan_schedule()
            second = check_scan_schedule()

        assert first["due"] is True
        assert first["task_id"] == "task-123"
        assert second["due"] is False
        mock_batch.delay.assert_called_once_with(scan_type="performance")

        current = AutomationSettings.load()
        assert current.last_run is not None
        assert current.next_scheduled_run > timezone.now()

    def test_not_due_before_next_run(self, automation):
        from scanner.tasks import check_scan_schedule

        automation.next_scheduled_run = timezone.now() + timedelta(hours=2)
        automation.save()

        with patch("scanner.tasks.run_scan_batch") as mock_batch:
            result = check_scan_schedule()

        assert result["due"] is False
        mock_batch.delay.assert_not_called()


@pytest.mark.django_db
class TestBatchTasks:
    """Tests for run_scan_batch and trigger_manual_scan."""

    def test_run_scan_batch_returns_counts(self, automation):
        from scanner.tasks import run_scan_batch

        with patch("scanner.tasks.BatchProcessor") as mock_processor:
            mock_processor.return_value.run_batch.return_value.to_dict.return_value = {
                "attempted": 2,
                "succeeded": 2,
            }
            result = run_scan_batch(scan_type="technology")

        assert result == {"status": "completed", "attempted": 2, "succeeded": 2}
        mock_processor.return_value.run_batch.assert_called_once_with(scan_type="technology")

    def test_run_scan_batch_rejects_unknown_type(self, automation):
        from scanner.tasks import run_scan_batch

        result = run_scan_batch(scan_type="discovery")

        assert result["status"] == "failed"
        assert "error" in result

    def test_manual_scan_runs_with_high_priority(self, automation):
        from scanner.tasks import trigger_manual_scan

        with patch("scanner.tasks.BatchProcessor") as mock_processor:
            mock_processor.return_value.run_batch.return_value.to_dict.return_value = {"attempted": 1}
            result = trigger_manual_scan(target_id="abc", scan_type="performance")

        assert result["target_id"] == "abc"
        mock_processor.return_value.run_batch.assert_called_once_with(
            scan_type="performance",
            target_id="abc",
            priority=ScanPriority.HIGH,
        )

    def test_manual_scan_unknown_target_fails(self, automation):
        from scanner.tasks import trigger_manual_scan

        result = trigger_manual_scan(target_id="00000000-0000-0000-0000-000000000000")

        assert result["status"] == "failed"


@pytest.mark.django_db
class TestRecoverStaleScans:
    """Tests for the stale processing reaper task."""

    def test_recovers_and_alerts(self, make_business):
        from scanner.tasks import recover_stale_scans

        queue = ScanQueue()
        item = queue.enqueue(make_business().id)
        queue.claim(item.id)
        ScanQueueItem.objects.filter(id=item.id).update(
            updated_at=timezone.now() - timedelta(hours=2)
        )

        with patch("scanner.tasks.capture_alert") as mock_alert:
            result = recover_stale_scans()

        assert result == {"recovered": 1}
        assert ScanQueueItem.objects.get(id=item.id).status == ScanStatus.PENDING
        mock_alert.assert_called_once()
        assert mock_alert.call_args.kwargs["alert_type"] == "stale_recovery"

    def test_nothing_to_recover(self):
        from scanner.tasks import recover_stale_scans

        with patch("scanner.tasks.capture_alert") as mock_alert:
            assert recover_stale_scans() == {"recovered": 0}

        mock_alert.assert_not_called()


@pytest.mark.django_db
class TestRunDiscovery:
    """Tests for the discovery task."""

    def test_discovers_and_persists(self, scripted_source):
        from scanner.tasks import run_discovery

        sources = [
            scripted_source("yellowpages", Success([
                DiscoveryResult(name="Acme", website="acme.com", source_provider="yellowpages"),
            ])),
            scripted_source("localstack", Fatal("HTTP 403")),
        ]

        with patch(
            "scanner.services.discovery_orchestrator.get_discovery_sources",
            return_value=sources,
        ):
            result = run_discovery("Austin, TX", persist=True)

        assert result["is_synthetic"] is False
        assert result["count"] == 1
        assert result["errors"][0]["provider"] == "localstack"
        assert result["persisted"]["created"] == 1
        assert Business.objects.filter(name="Acme", source="yellowpages").exists()

    def test_total_failure_returns_samples_without_persisting(self, scripted_source):
        from scanner.tasks import run_discovery

        with patch(
            "scanner.services.discovery_orchestrator.get_discovery_sources",
            return_value=[scripted_source("yellowpages", Fatal("HTTP 403"))],
        ):
            result = run_discovery("Austin, TX", persist=True)

        assert result["is_synthetic"] is True
        assert result["count"] > 0
        assert result["persisted"]["created"] == 0
        assert Business.objects.count() == 0

    def test_empty_query_fails(self):
        from scanner.tasks import run_discovery

        result = run_discovery("  ")

        assert result["status"] == "failed"

"""
Tests for the BatchProcessor.

Tests cover:
1. Stale target selection and batch sizing
2. Quota denial fails items without a provider call
3. Retryable failures requeue up to max_retries; fatal ones never requeue
4. One failure never aborts the batch; unexpected errors fail the item
5. Inter-item delay, rate-limit backoff and early stop
6. Provider call timeout
7. Manual single-target runs
"""

import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from scanner.exceptions import ValidationError
from scanner.models import (
    Business,
    BusinessStatus,
    QuotaUsage,
    ScanErrorKind,
    ScanQueueItem,
    ScanStatus,
)
from scanner.providers.base import Fatal, Retryable, Success
from scanner.providers.gtmetrix import GTmetrixAdapter
from scanner.providers.pagespeed import PageSpeedAdapter
from scanner.services.batch_processor import BatchProcessor
from scanner.services.quota_manager import QuotaManager
from scanner.services.scan_queue import ScanQueue
from scanner.services.scheduler import ScanScheduler


@pytest.fixture
def quota(fixed_now):
    return QuotaManager(limits={"fake": 100}, clock=lambda: fixed_now)


@pytest.fixture
def make_processor(fixed_now, quota):
    """Build a BatchProcessor around a given adapter with a recording sleep."""

    def _make(adapter, **kwargs):
        sleeps = []
        params = {
            "queue": ScanQueue(clock=lambda: fixed_now),
            "quota_manager": quota,
            "scheduler": ScanScheduler(clock=lambda: fixed_now),
            "adapter_factory": lambda scan_type: adapter,
            "sleep": sleeps.append,
            "rand": lambda: 0.5,
            "clock": lambda: fixed_now,
        }
        params.update(kwargs)
        processor = BatchProcessor(**params)
        processor.sleeps = sleeps
        return processor

    return _make


def stale_targets(make_business, fixed_now, count):
    """Targets last scanned 40+ days ago, oldest first by index."""
    return [
        make_business(last_performance_scan_at=fixed_now - timedelta(days=100 - i))
        for i in range(count)
    ]


@pytest.mark.django_db
class TestSelection:
    """Tests for stale target selection."""

    def test_batch_size_bounds_processing(self, automation, make_business, make_processor,
                                          scripted_adapter, fixed_now):
        automation.batch_size = 5
        automation.save()
        stale_targets(make_business, fixed_now, 12)
        processor = make_processor(scripted_adapter())

        result = processor.run_batch(now=fixed_now)

        assert result.attempted == 5
        assert result.succeeded == 5
        assert len(processor.select_stale_targets(50, "performance", fixed_now)) == 7

    def test_never_scanned_first_then_oldest(self, make_business, make_processor,
                                             scripted_adapter, fixed_now):
        older = make_business(last_performance_scan_at=fixed_now - timedelta(days=90))
        newer = make_business(last_performance_scan_at=fixed_now - timedelta(days=40))
        never = make_business()
        make_business(last_performance_scan_at=fixed_now - timedelta(days=5))

        selected = make_processor(scripted_adapter()).select_stale_targets(10, "performance", fixed_now)

        assert [b.id for b in selected] == [never.id, older.id, newer.id]

    def test_targets_without_website_or_with_open_item_skipped(
        self, make_business, make_processor, scripted_adapter, fixed_now
    ):
        make_business(website=None)
        make_business(website="")
        queued = make_business()
        ScanQueue(clock=lambda: fixed_now).enqueue(queued.id)
        eligible = make_business()

        selected = make_processor(scripted_adapter()).select_stale_targets(10, "performance", fixed_now)

        assert [b.id for b in selected] == [eligible.id]

    def test_staleness_is_per_scan_type(self, make_business, make_processor,
                                        scripted_adapter, fixed_now):
        business = make_business(
            last_performance_scan_at=fixed_now - timedelta(days=1),
            last_technology_scan_at=None,
        )
        processor = make_processor(scripted_adapter())

        assert processor.select_stale_targets(10, "performance", fixed_now) == []
        assert [b.id for b in processor.select_stale_targets(10, "technology", fixed_now)] == [business.id]

    def test_pending_items_are_drained_before_stale_targets(
        self, automation, make_business, make_processor, scripted_adapter, fixed_now
    ):
        automation.batch_size = 2
        automation.save()
        manual = make_business(last_performance_scan_at=fixed_now - timedelta(days=1))
        ScanQueue(clock=lambda: fixed_now).enqueue(manual.id, priority="high")
        stale_targets(make_business, fixed_now, 3)
        adapter = scripted_adapter()

        result = make_processor(adapter).run_batch(now=fixed_now)

        assert result.attempted == 2
        assert adapter.calls[0] == manual.website

    def test_empty_batch(self, make_processor, scripted_adapter, fixed_now):
        result = make_processor(scripted_adapter()).run_batch(now=fixed_now)

        assert result.attempted == 0
        assert result.to_dict()["item_ids"] == []


@pytest.mark.django_db
class TestSuccess:
    """Tests for the success path."""

    def test_success_updates_target_and_completes_item(
        self, automation, make_business, make_processor, scripted_adapter, fixed_now, quota
    ):
        business = make_business(website="acme.example.com")

        result = make_processor(scripted_adapter()).run_batch(now=fixed_now)

        assert result.succeeded == 1
        business.refresh_from_db()
        assert business.performance_score == 90
        assert business.performance_report_url == "https://report.example/acme.example.com"
        assert business.performance_provider == "fake"
        assert business.last_performance_scan_at == fixed_now
        assert business.last_scanned_at == fixed_now
        assert business.last_checked_at == fixed_now
        assert business.status == BusinessStatus.SCANNED

        item = ScanQueueItem.objects.get(target=business)
        assert item.status == ScanStatus.COMPLETED
        assert item.result["score"] == 90
        assert item.provider == "fake"
        assert quota.get_usage("fake")["used"] == 1

    def test_unmetered_adapter_skips_quota(self, automation, make_business, make_processor,
                                           scripted_adapter, fixed_now):
        make_business()

        make_processor(scripted_adapter(metered=False)).run_batch(now=fixed_now)

        assert not QuotaUsage.objects.filter(provider="fake").exists()


@pytest.mark.django_db
class TestQuotaDenial:
    """Quota-exhausted items fail fast with a distinguishable reason."""

    def test_denied_item_fails_without_network_call(
        self, automation, make_business, make_processor, scripted_adapter, fixed_now
    ):
        QuotaUsage.objects.create(provider="fake", period="2025-06", used=5, limit=5)
        business = make_business()
        adapter = scripted_adapter()

        result = make_processor(adapter).run_batch(now=fixed_now)

        assert adapter.calls == []
        assert result.failed == 1
        assert result.quota_denied == 1

        item = ScanQueueItem.objects.get(target=business)
        assert item.status == ScanStatus.FAILED
        assert item.error_kind == ScanErrorKind.QUOTA_EXCEEDED
        assert "Quota exceeded" in item.error_message
        assert QuotaUsage.objects.get(provider="fake").used == 5

    def test_quota_runs_out_mid_batch(self, automation, make_business, make_processor,
                                      scripted_adapter, fixed_now):
        QuotaUsage.objects.create(provider="fake", period="2025-06", used=3, limit=5)
        stale_targets(make_business, fixed_now, 4)
        adapter = scripted_adapter()

        result = make_processor(adapter).run_batch(now=fixed_now)

        assert len(adapter.calls) == 2
        assert result.succeeded == 2
        assert result.quota_denied == 2


@pytest.mark.django_db
class TestRetries:
    """Retryable failures requeue while attempts remain."""

    def _run_three_failing_batches(self, make_business, make_processor, scripted_adapter, fixed_now):
        business = make_business(website="flaky.example.com")
        adapter = scripted_adapter(script={"flaky.example.com": Retryable("HTTP 503")})
        processor = make_processor(adapter)
        for _ in range(3):
            processor.run_batch(now=fixed_now)
        return ScanQueueItem.objects.get(target=business), adapter

    def test_three_failures_with_max_three_end_failed(
        self, automation, make_business, make_processor, scripted_adapter, fixed_now
    ):
        automation.max_retries = 3
        automation.save()

        item, adapter = self._run_three_failing_batches(
            make_business, make_processor, scripted_adapter, fixed_now
        )

        assert len(adapter.calls) == 3
        assert item.status == ScanStatus.FAILED
        assert item.attempts == 3
        assert item.error_kind == ScanErrorKind.RETRYABLE
        assert item.target.status == BusinessStatus.ERROR

    def test_three_failures_with_max_five_end_pending(
        self, automation, make_business, make_processor, scripted_adapter, fixed_now
    ):
        automation.max_retries = 5
        automation.save()

        item, _ = self._run_three_failing_batches(
            make_business, make_processor, scripted_adapter, fixed_now
        )

        assert item.status == ScanStatus.PENDING
        assert item.attempts == 3
        assert item.error_message is None

    def test_failed_item_not_requeued_a_fourth_time(
        self, automation, make_business, make_processor, scripted_adapter, fixed_now
    ):
        automation.max_retries = 3
        automation.save()
        item, adapter = self._run_three_failing_batches(
            make_business, make_processor, scripted_adapter, fixed_now
        )

        make_processor(adapter).run_batch(now=fixed_now)

        assert len(adapter.calls) == 3
        assert ScanQueueItem.objects.filter(target=item.target).count() == 1

    def test_requeued_target_keeps_previous_status(
        self, automation, make_business, make_processor, scripted_adapter, fixed_now
    ):
        business = make_business(website="flaky.example.com", status=BusinessStatus.DISCOVERED)
        adapter = scripted_adapter(script={"flaky.example.com": Retryable("HTTP 502")})

        result = make_processor(adapter).run_batch(now=fixed_now)

        assert result.requeued == 1
        business.refresh_from_db()
        assert business.status == BusinessStatus.DISCOVERED

    def test_retry_disabled_fails_immediately(
        self, automation, make_business, make_processor, scripted_adapter, fixed_now
    ):
        automation.retry_failed = False
        automation.save()
        business = make_business(website="flaky.example.com")
        adapter = scripted_adapter(script={"flaky.example.com": Retryable("HTTP 503")})

        result = make_processor(adapter).run_batch(now=fixed_now)

        assert result.requeued == 0
        assert ScanQueueItem.objects.get(target=business).status == ScanStatus.FAILED

    def test_retry_then_success(self, automation, make_business, make_processor,
                                scripted_adapter, fixed_now):
        business = make_business(website="flaky.example.com")
        adapter = scripted_adapter(script={
            "flaky.example.com": [Retryable("HTTP 503"), Success({"score": 71, "report_url": "r"})],
        })
        processor = make_processor(adapter)

        processor.run_batch(now=fixed_now)
        processor.run_batch(now=fixed_now)

        item = ScanQueueItem.objects.get(target=business)
        assert item.status == ScanStatus.COMPLETED
        assert item.attempts == 2
        business.refresh_from_db()
        assert business.performance_score == 71

    def test_fatal_never_requeues(self, automation, make_business, make_processor,
                                  scripted_adapter, fixed_now):
        business = make_business(website="gone.example.com")
        adapter = scripted_adapter(script={"gone.example.com": Fatal("HTTP 404")})

        result = make_processor(adapter).run_batch(now=fixed_now)

        assert result.failed == 1
        assert result.requeued == 0
        item = ScanQueueItem.objects.get(target=business)
        assert item.status == ScanStatus.FAILED
        assert item.error_kind == ScanErrorKind.FATAL
        assert item.error_message == "HTTP 404"


@pytest.mark.django_db
class TestIsolation:
    """A failing item never aborts the rest of the batch."""

    def test_failures_do_not_stop_batch(self, automation, make_business, make_processor,
                                        scripted_adapter, fixed_now):
        targets = stale_targets(make_business, fixed_now, 3)
        adapter = scripted_adapter(script={targets[0].website: Fatal("HTTP 400")})

        result = make_processor(adapter).run_batch(now=fixed_now)

        assert result.attempted == 3
        assert result.failed == 1
        assert result.succeeded == 2

    def test_unexpected_exception_fails_item_as_internal(
        self, automation, make_business, make_processor, scripted_adapter, fixed_now
    ):
        targets = stale_targets(make_business, fixed_now, 2)
        adapter = scripted_adapter()

        def explode(target):
            if target.website == targets[0].website:
                raise KeyError("score")
            return Success({"score": 50, "report_url": "r"})

        adapter.attempt = explode

        result = make_processor(adapter).run_batch(now=fixed_now)

        assert result.succeeded == 1
        assert result.failed == 1
        item = ScanQueueItem.objects.get(target=targets[0])
        assert item.status == ScanStatus.FAILED
        assert item.error_kind == ScanErrorKind.INTERNAL

    def test_hung_provider_call_times_out(self, automation, make_business, make_processor,
                                          scripted_adapter, fixed_now):
        automation.retry_failed = False
        automation.save()
        targets = stale_targets(make_business, fixed_now, 2)
        adapter = scripted_adapter()

        def slow(target):
            if target.website == targets[0].website:
                time.sleep(0.5)
            return Success({"score": 60, "report_url": "r"})

        adapter.attempt = slow
        processor = make_processor(adapter)
        processor.timeout = 0.05

        result = processor.run_batch(now=fixed_now)

        assert result.succeeded == 1
        item = ScanQueueItem.objects.get(target=targets[0])
        assert item.status == ScanStatus.FAILED
        assert item.error_kind == ScanErrorKind.TIMEOUT


@pytest.mark.django_db
class TestPacing:
    """Inter-item delay, rate-limit backoff and early stop."""

    def test_jittered_delay_between_items_only(self, settings, automation, make_business,
                                               make_processor, scripted_adapter, fixed_now):
        settings.SCANNER_SCAN_DELAY_SECONDS = 5
        settings.SCANNER_SCAN_DELAY_JITTER_SECONDS = 5
        stale_targets(make_business, fixed_now, 3)
        processor = make_processor(scripted_adapter())

        processor.run_batch(now=fixed_now)

        assert processor.sleeps == [7.5, 7.5]

    def test_rate_limit_extends_next_delay(self, settings, automation, make_business,
                                           make_processor, scripted_adapter, fixed_now):
        settings.SCANNER_SCAN_DELAY_SECONDS = 5
        settings.SCANNER_SCAN_DELAY_JITTER_SECONDS = 5
        settings.SCANNER_RATE_LIMIT_DELAY_SECONDS = 30
        targets = stale_targets(make_business, fixed_now, 3)
        adapter = scripted_adapter(script={
            targets[1].website: Retryable("HTTP 429", rate_limited=True),
        })
        processor = make_processor(adapter)

        processor.run_batch(now=fixed_now)

        assert processor.sleeps == [7.5, 30]

    def test_repeated_rate_limits_stop_batch_and_release_items(
        self, automation, make_business, make_processor, scripted_adapter, fixed_now
    ):
        targets = stale_targets(make_business, fixed_now, 5)
        adapter = scripted_adapter(script={
            target.website: Retryable("HTTP 429", rate_limited=True) for target in targets
        })

        result = make_processor(adapter).run_batch(now=fixed_now)

        assert len(adapter.calls) == 3
        assert result.attempted == 3
        assert result.released == 2
        released = ScanQueueItem.objects.filter(target__in=targets[3:])
        assert all(item.status == ScanStatus.PENDING for item in released)
        assert all(item.attempts == 0 for item in released)


@pytest.mark.django_db
class TestManualRun:
    """Tests for single-target runs."""

    def test_scans_fresh_target_immediately(self, automation, make_business, make_processor,
                                            scripted_adapter, fixed_now):
        fresh = make_business(last_performance_scan_at=fixed_now - timedelta(days=1))
        adapter = scripted_adapter()

        result = make_processor(adapter).run_batch(now=fixed_now, target_id=fresh.id, priority="high")

        assert result.succeeded == 1
        assert adapter.calls == [fresh.website]
        assert ScanQueueItem.objects.get(target=fresh).priority == "high"

    def test_reuses_pending_item(self, automation, make_business, make_processor,
                                 scripted_adapter, fixed_now):
        business = make_business()
        item = ScanQueue(clock=lambda: fixed_now).enqueue(business.id)

        make_processor(scripted_adapter()).run_batch(now=fixed_now, target_id=business.id)

        assert ScanQueueItem.objects.filter(target=business).count() == 1
        item.refresh_from_db()
        assert item.status == ScanStatus.COMPLETED

    def test_unknown_target_rejected(self, automation, make_processor, scripted_adapter, fixed_now):
        with pytest.raises(ValidationError):
            make_processor(scripted_adapter()).run_batch(
                now=fixed_now, target_id="00000000-0000-0000-0000-000000000000"
            )

    def test_discovery_scan_type_rejected(self, automation, make_processor, scripted_adapter, fixed_now):
        with pytest.raises(ValidationError):
            make_processor(scripted_adapter()).run_batch(now=fixed_now, scan_type="discovery")

    def test_target_stays_out_of_stale_selection_after_scan(
        self, automation, make_business, make_processor, scripted_adapter, fixed_now
    ):
        make_business()
        processor = make_processor(scripted_adapter())

        processor.run_batch(now=fixed_now)

        assert processor.select_stale_targets(10, "performance", fixed_now) == []
        assert Business.objects.get().status == BusinessStatus.SCANNED


@pytest.mark.django_db
class TestAdapterLifecycle:
    """The adapter built for a batch is closed when the batch ends."""

    def test_adapter_closed_after_batch(self, automation, make_business, make_processor,
                                        scripted_adapter, fixed_now):
        make_business()
        adapter = scripted_adapter()
        adapter.close = MagicMock()

        make_processor(adapter).run_batch(now=fixed_now)

        adapter.close.assert_called_once_with()

    def test_adapter_closed_when_batch_raises(self, automation, make_processor,
                                              scripted_adapter, fixed_now):
        adapter = scripted_adapter()
        adapter.close = MagicMock()

        with pytest.raises(ValidationError):
            make_processor(adapter).run_batch(
                now=fixed_now, target_id="00000000-0000-0000-0000-000000000000"
            )

        adapter.close.assert_called_once_with()


@pytest.mark.django_db
class TestProviderHistory:
    """Each performance provider keeps its own result columns."""

    def test_switching_provider_keeps_earlier_score(self, automation, make_business, make_processor,
                                                    scripted_adapter, fixed_now):
        business = make_business(website="acme.example.com")
        pagespeed = scripted_adapter()
        pagespeed.result_fields = PageSpeedAdapter(api_key="").result_fields
        make_processor(pagespeed).run_batch(now=fixed_now)

        gtmetrix = scripted_adapter(script={
            "acme.example.com": Success({"score": 55, "report_url": "https://gtmetrix.com/reports/1"}),
        })
        gtmetrix.result_fields = GTmetrixAdapter(api_key="").result_fields
        make_processor(gtmetrix).run_batch(now=fixed_now, target_id=business.id)

        business.refresh_from_db()
        assert business.lighthouse_score == 90
        assert business.gtmetrix_score == 55
        assert business.gtmetrix_report_url == "https://gtmetrix.com/reports/1"
        assert business.performance_score == 55
        assert business.performance_provider == "gtmetrix"

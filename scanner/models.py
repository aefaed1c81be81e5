"""
Django models for the Lead Scan Pipeline.

Models: Business, ScanQueueItem, AutomationSettings, QuotaUsage

Business rows are the targets of scans and discovery. ScanQueueItem is the
durable job record polled by the dashboard. AutomationSettings is the
process-wide scheduler configuration (a single row). QuotaUsage holds one
usage counter per provider per calendar month.
"""

import uuid

from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models
from django.utils import timezone


class BusinessStatus(models.TextChoices):
    """Lifecycle status of a business as shown on the dashboard."""

    DISCOVERED = "discovered", "Discovered"
    SCANNING = "scanning", "Scanning"
    SCANNED = "scanned", "Scanned"
    ERROR = "error", "Error"


class ScanType(models.TextChoices):
    """Kind of work a scan queue item represents."""

    PERFORMANCE = "performance", "Performance"
    TECHNOLOGY = "technology", "Technology"
    DISCOVERY = "discovery", "Discovery"


class ScanPriority(models.TextChoices):
    """Priority of a scan queue item. Claimed high before medium before low."""

    HIGH = "high", "High"
    MEDIUM = "medium", "Medium"
    LOW = "low", "Low"


class ScanStatus(models.TextChoices):
    """Status of a scan queue item."""

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class ScanErrorKind(models.TextChoices):
    """Why a scan queue item failed."""

    RETRYABLE = "retryable", "Retryable provider error"
    FATAL = "fatal", "Fatal provider error"
    QUOTA_EXCEEDED = "quota_exceeded", "Quota exceeded"
    TIMEOUT = "timeout", "Provider timeout"
    INTERNAL = "internal", "Internal error"


class ScheduleFrequency(models.TextChoices):
    """How often automatic scan batches run."""

    DAILY = "daily", "Daily"
    WEEKLY = "weekly", "Weekly"
    BIWEEKLY = "biweekly", "Every two weeks"
    MONTHLY = "monthly", "Monthly"


class Business(models.Model):
    """
    A business that can be discovered and scanned.

    Scan results from the performance and technology providers are written
    back onto this row by the batch processor.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    website = models.CharField(max_length=500, blank=True, null=True)
    phone = models.CharField(max_length=50, blank=True)
    address = models.CharField(max_length=500, blank=True)
    source = models.CharField(
        max_length=50, default="manual", help_text="Discovery provider or 'manual'"
    )

    status = models.CharField(
        max_length=20, choices=BusinessStatus.choices, default=BusinessStatus.DISCOVERED
    )

    # Scan tracking
    last_checked_at = models.DateTimeField(
        null=True, blank=True, help_text="Last time a scan was attempted"
    )
    last_scanned_at = models.DateTimeField(
        null=True, blank=True, help_text="Last successful scan"
    )

    # Performance scan results
    performance_score = models.IntegerField(null=True, blank=True)
    performance_report_url = models.URLField(max_length=500, blank=True)
    performance_provider = models.CharField(max_length=50, blank=True)
    last_performance_scan_at = models.DateTimeField(null=True, blank=True)

    # Per-provider performance history; performance_* above holds the latest
    lighthouse_score = models.IntegerField(null=True, blank=True)
    lighthouse_report_url = models.URLField(max_length=500, blank=True)
    last_lighthouse_scan_at = models.DateTimeField(null=True, blank=True)
    gtmetrix_score = models.IntegerField(null=True, blank=True)
    gtmetrix_report_url = models.URLField(max_length=500, blank=True)
    last_gtmetrix_scan_at = models.DateTimeField(null=True, blank=True)

    # Technology scan results
    cms = models.CharField(max_length=100, blank=True)
    technologies = models.JSONField(default=list, blank=True)
    last_technology_scan_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    def save(self, *args, **kwargs):
        self.updated_at = timezone.now()
        super().save(*args, **kwargs)

    class Meta:
        db_table = "businesses"
        ordering = ["name"]
        verbose_name_plural = "Businesses"
        indexes = [
            models.Index(fields=["last_scanned_at"], name="businesses_last_sc_5b1c1e_idx"),
            models.Index(fields=["website"], name="businesses_website_0e7d2a_idx"),
        ]

    def __str__(self):
        return self.name

    @property
    def scan_url(self):
        """Website as an absolute URL, or None when unknown."""
        if not self.website:
            return None
        if self.website.startswith(("http://", "https://")):
            return self.website
        return f"https://{self.website}"


class ScanQueueItem(models.Model):
    """
    One requested unit of scan work.

    pending -> processing -> completed | failed, with failed -> pending via
    an explicit retry as the only backward edge. Transitions go through
    scanner.services.scan_queue.ScanQueue, never through save() directly.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    target = models.ForeignKey(
        Business, on_delete=models.CASCADE, related_name="scan_items"
    )
    scan_type = models.CharField(
        max_length=20, choices=ScanType.choices, default=ScanType.PERFORMANCE
    )
    url = models.CharField(max_length=500, blank=True, null=True)
    priority = models.CharField(
        max_length=10, choices=ScanPriority.choices, default=ScanPriority.MEDIUM
    )
    # Integer mirror of priority so claims can ORDER BY it
    priority_rank = models.PositiveSmallIntegerField(default=1)

    status = models.CharField(
        max_length=20, choices=ScanStatus.choices, default=ScanStatus.PENDING
    )
    provider = models.CharField(max_length=50, blank=True)
    attempts = models.PositiveIntegerField(
        default=0, help_text="Number of times this item has been claimed"
    )

    # Timing
    created_at = models.DateTimeField(default=timezone.now)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(default=timezone.now)

    # Error details (set only when failed)
    error_message = models.TextField(blank=True, null=True)
    error_kind = models.CharField(
        max_length=20, choices=ScanErrorKind.choices, blank=True, null=True
    )

    result = models.JSONField(default=dict, blank=True)

    PRIORITY_RANKS = {
        ScanPriority.HIGH: 0,
        ScanPriority.MEDIUM: 1,
        ScanPriority.LOW: 2,
    }

    class Meta:
        db_table = "scan_queue"
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["status", "priority_rank", "created_at"],
                name="scan_queue_status_8c2f4d_idx",
            ),
            models.Index(fields=["target", "status"], name="scan_queue_target__3a9e71_idx"),
        ]

    def __str__(self):
        return f"Scan {self.id} - {self.target_id} ({self.scan_type}, {self.status})"

    @property
    def duration_seconds(self):
        """Processing duration for terminal items."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class AutomationSettings(models.Model):
    """
    Process-wide scan automation settings (singleton row, pk=1).

    next_scheduled_run is owned by the scheduler and recomputed whenever
    enabled, frequency or hour_of_day change and after every run.
    """

    SINGLETON_ID = 1

    id = models.PositiveSmallIntegerField(primary_key=True, default=SINGLETON_ID, editable=False)
    enabled = models.BooleanField(default=False)
    frequency = models.CharField(
        max_length=20, choices=ScheduleFrequency.choices, default=ScheduleFrequency.DAILY
    )
    hour_of_day = models.PositiveSmallIntegerField(
        default=3, validators=[MinValueValidator(0), MaxValueValidator(23)]
    )
    batch_size = models.PositiveIntegerField(
        default=5, validators=[MinValueValidator(1), MaxValueValidator(50)]
    )
    retry_failed = models.BooleanField(default=True)
    max_retries = models.PositiveIntegerField(
        default=3, validators=[MinValueValidator(1), MaxValueValidator(10)]
    )
    scan_type = models.CharField(
        max_length=20, choices=ScanType.choices, default=ScanType.PERFORMANCE,
        help_text="Scan type used by automatic runs",
    )

    next_scheduled_run = models.DateTimeField(null=True, blank=True)
    last_run = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "automation_settings"
        verbose_name = "Automation Settings"
        verbose_name_plural = "Automation Settings"

    def __str__(self):
        state = "enabled" if self.enabled else "disabled"
        return f"Scan automation ({state}, {self.frequency} at {self.hour_of_day:02d}:00)"

    @classmethod
    def load(cls):
        """Return the singleton row, creating it with defaults on first use."""
        obj, _ = cls.objects.get_or_create(pk=cls.SINGLETON_ID)
        return obj


class QuotaUsage(models.Model):
    """
    Usage counter for one metered provider in one period (YYYY-MM).

    Mutated only through scanner.services.quota_manager.QuotaManager.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    provider = models.CharField(
        max_length=50,
        help_text="Name of the provider (pagespeed, gtmetrix, builtwith).",
    )
    period = models.CharField(
        max_length=7,
        help_text="Period key in YYYY-MM format.",
    )

    used = models.IntegerField(
        default=0,
        validators=[MinValueValidator(0)],
        help_text="Number of calls admitted this period.",
    )
    limit = models.IntegerField(
        default=1000,
        validators=[MinValueValidator(1)],
        help_text="Maximum calls allowed this period.",
    )

    last_used = models.DateTimeField(
        blank=True,
        null=True,
        help_text="When the provider was last admitted.",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "quota_usage"
        unique_together = ["provider", "period"]
        ordering = ["-period", "provider"]
        verbose_name = "Quota Usage"
        verbose_name_plural = "Quota Usage"

    def __str__(self):
        return f"{self.provider} ({self.period}): {self.used}/{self.limit}"

    @property
    def remaining(self) -> int:
        """Get remaining quota."""
        return max(0, self.limit - self.used)

    @property
    def usage_percentage(self) -> float:
        """Get usage as percentage."""
        if self.limit == 0:
            return 100.0
        return (self.used / self.limit) * 100

"""
Django admin configuration for the scan pipeline.

Provides interfaces for businesses, the scan queue, the automation settings
singleton and provider quota counters, with run-now and queue actions.
"""

from django.contrib import admin
from django.utils.html import format_html

from scanner.exceptions import InvalidStateError
from scanner.models import (
    AutomationSettings,
    Business,
    BusinessStatus,
    QuotaUsage,
    ScanQueueItem,
    ScanStatus,
)
from scanner.services.quota_manager import get_quota_manager
from scanner.services.scan_queue import ScanQueue
from scanner.services.scheduler import get_scheduler
from scanner.tasks import trigger_manual_scan

BADGE = (
    '<span style="background-color: {}; color: white; '
    'padding: 2px 8px; border-radius: 4px;">{}</span>'
)

BUSINESS_STATUS_COLORS = {
    BusinessStatus.DISCOVERED: "#6c757d",
    BusinessStatus.SCANNING: "#007bff",
    BusinessStatus.SCANNED: "#28a745",
    BusinessStatus.ERROR: "#dc3545",
}

QUEUE_STATUS_COLORS = {
    ScanStatus.PENDING: "#ffc107",
    ScanStatus.PROCESSING: "#007bff",
    ScanStatus.COMPLETED: "#28a745",
    ScanStatus.FAILED: "#dc3545",
}


@admin.register(Business)
class BusinessAdmin(admin.ModelAdmin):
    """Businesses with their latest scan results."""

    list_display = [
        "name",
        "website",
        "status_badge",
        "performance_score",
        "cms",
        "source",
        "last_scanned_at",
    ]
    list_filter = ["status", "source", "cms"]
    search_fields = ["name", "website", "address"]
    readonly_fields = [
        "id",
        "last_checked_at",
        "last_scanned_at",
        "performance_score",
        "performance_report_url",
        "performance_provider",
        "last_performance_scan_at",
        "lighthouse_score",
        "lighthouse_report_url",
        "last_lighthouse_scan_at",
        "gtmetrix_score",
        "gtmetrix_report_url",
        "last_gtmetrix_scan_at",
        "cms",
        "technologies",
        "last_technology_scan_at",
        "created_at",
        "updated_at",
    ]

    fieldsets = (
        ("Identity", {
            "fields": ("id", "name", "website", "phone", "address", "source"),
        }),
        ("Status", {
            "fields": ("status", "last_checked_at", "last_scanned_at"),
        }),
        ("Performance", {
            "fields": (
                "performance_score",
                "performance_report_url",
                "performance_provider",
                "last_performance_scan_at",
            ),
        }),
        ("Performance by provider", {
            "fields": (
                ("lighthouse_score", "lighthouse_report_url", "last_lighthouse_scan_at"),
                ("gtmetrix_score", "gtmetrix_report_url", "last_gtmetrix_scan_at"),
            ),
            "classes": ("collapse",),
        }),
        ("Technology", {
            "fields": ("cms", "technologies", "last_technology_scan_at"),
            "classes": ("collapse",),
        }),
        ("Metadata", {
            "fields": ("created_at", "updated_at"),
            "classes": ("collapse",),
        }),
    )

    actions = ["scan_now"]

    def status_badge(self, obj):
        color = BUSINESS_STATUS_COLORS.get(obj.status, "#6c757d")
        return format_html(BADGE, color, obj.get_status_display())
    status_badge.short_description = "Status"
    status_badge.admin_order_field = "status"

    @admin.action(description="Scan now")
    def scan_now(self, request, queryset):
        """Dispatch an immediate scan for each selected business with a website."""
        scan_type = get_scheduler().get_settings().scan_type
        count = 0
        for business in queryset.exclude(website__isnull=True).exclude(website=""):
            trigger_manual_scan.delay(target_id=str(business.id), scan_type=scan_type)
            count += 1
        self.message_user(request, f"Dispatched {scan_type} scan for {count} business(es).")


@admin.register(ScanQueueItem)
class ScanQueueItemAdmin(admin.ModelAdmin):
    """Scan queue with retry and cancel actions."""

    list_display = [
        "id",
        "target",
        "scan_type",
        "priority",
        "status_badge",
        "attempts",
        "error_kind",
        "created_at",
        "completed_at",
    ]
    list_filter = ["status", "scan_type", "priority", "error_kind", "provider"]
    search_fields = ["target__name", "url", "error_message"]
    raw_id_fields = ["target"]
    readonly_fields = [
        "id",
        "status",
        "attempts",
        "provider",
        "created_at",
        "started_at",
        "completed_at",
        "updated_at",
        "error_message",
        "error_kind",
        "result",
    ]
    ordering = ["-created_at"]

    actions = ["retry_items", "cancel_items"]

    def status_badge(self, obj):
        color = QUEUE_STATUS_COLORS.get(obj.status, "#6c757d")
        return format_html(BADGE, color, obj.get_status_display())
    status_badge.short_description = "Status"
    status_badge.admin_order_field = "status"

    @admin.action(description="Retry failed items")
    def retry_items(self, request, queryset):
        queue = ScanQueue()
        count = 0
        for item in queryset.filter(status=ScanStatus.FAILED):
            try:
                queue.retry(item.id)
                count += 1
            except InvalidStateError:
                continue
        self.message_user(request, f"Requeued {count} item(s).")

    @admin.action(description="Cancel pending items")
    def cancel_items(self, request, queryset):
        queue = ScanQueue()
        count = 0
        for item in queryset.filter(status=ScanStatus.PENDING):
            try:
                queue.cancel(item.id)
                count += 1
            except InvalidStateError:
                continue
        self.message_user(request, f"Cancelled {count} item(s).")


@admin.register(AutomationSettings)
class AutomationSettingsAdmin(admin.ModelAdmin):
    """The automation settings singleton. Saves go through the scheduler."""

    list_display = [
        "enabled",
        "frequency",
        "hour_of_day",
        "batch_size",
        "scan_type",
        "next_scheduled_run",
        "last_run",
    ]
    readonly_fields = ["next_scheduled_run", "last_run", "updated_at"]

    def has_add_permission(self, request):
        return not AutomationSettings.objects.exists()

    def has_delete_permission(self, request, obj=None):
        return False

    def save_model(self, request, obj, form, change):
        changes = {field: form.cleaned_data[field] for field in form.changed_data}
        get_scheduler().update_settings(**changes)


@admin.register(QuotaUsage)
class QuotaUsageAdmin(admin.ModelAdmin):
    """Monthly quota counters per provider."""

    list_display = ["provider", "period", "used", "limit", "usage_bar", "last_used"]
    list_filter = ["provider", "period"]
    readonly_fields = ["used", "last_used", "created_at", "updated_at"]
    ordering = ["-period", "provider"]

    actions = ["reset_usage"]

    def usage_bar(self, obj):
        percentage = obj.usage_percentage
        if percentage >= 100:
            color = "#dc3545"
        elif percentage >= 80:
            color = "#ffc107"
        else:
            color = "#28a745"
        return format_html(BADGE, color, f"{percentage:.0f}%")
    usage_bar.short_description = "Usage"

    @admin.action(description="Reset usage to zero")
    def reset_usage(self, request, queryset):
        manager = get_quota_manager()
        count = 0
        for usage in queryset:
            manager.reset(usage.provider, usage.period)
            count += 1
        self.message_user(request, f"Reset {count} quota counter(s).")

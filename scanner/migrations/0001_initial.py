import django.core.validators
import django.db.models.deletion
import django.utils.timezone
import uuid
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Business",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=255)),
                ("website", models.CharField(blank=True, max_length=500, null=True)),
                ("phone", models.CharField(blank=True, max_length=50)),
                ("address", models.CharField(blank=True, max_length=500)),
                ("source", models.CharField(default="manual", help_text="Discovery provider or 'manual'", max_length=50)),
                ("status", models.CharField(choices=[("discovered", "Discovered"), ("scanning", "Scanning"), ("scanned", "Scanned"), ("error", "Error")], default="discovered", max_length=20)),
                ("last_checked_at", models.DateTimeField(blank=True, help_text="Last time a scan was attempted", null=True)),
                ("last_scanned_at", models.DateTimeField(blank=True, help_text="Last successful scan", null=True)),
                ("performance_score", models.IntegerField(blank=True, null=True)),
                ("performance_report_url", models.URLField(blank=True, max_length=500)),
                ("performance_provider", models.CharField(blank=True, max_length=50)),
                ("last_performance_scan_at", models.DateTimeField(blank=True, null=True)),
                ("lighthouse_score", models.IntegerField(blank=True, null=True)),
                ("lighthouse_report_url", models.URLField(blank=True, max_length=500)),
                ("last_lighthouse_scan_at", models.DateTimeField(blank=True, null=True)),
                ("gtmetrix_score", models.IntegerField(blank=True, null=True)),
                ("gtmetrix_report_url", models.URLField(blank=True, max_length=500)),
                ("last_gtmetrix_scan_at", models.DateTimeField(blank=True, null=True)),
                ("cms", models.CharField(blank=True, max_length=100)),
                ("technologies", models.JSONField(blank=True, default=list)),
                ("last_technology_scan_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "verbose_name_plural": "Businesses",
                "db_table": "businesses",
                "ordering": ["name"],
                "indexes": [
                    models.Index(fields=["last_scanned_at"], name="businesses_last_sc_5b1c1e_idx"),
                    models.Index(fields=["website"], name="businesses_website_0e7d2a_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="AutomationSettings",
            fields=[
                ("id", models.PositiveSmallIntegerField(default=1, editable=False, primary_key=True, serialize=False)),
                ("enabled", models.BooleanField(default=False)),
                ("frequency", models.CharField(choices=[("daily", "Daily"), ("weekly", "Weekly"), ("biweekly", "Every two weeks"), ("monthly", "Monthly")], default="daily", max_length=20)),
                ("hour_of_day", models.PositiveSmallIntegerField(default=3, validators=[django.core.validators.MinValueValidator(0), django.core.validators.MaxValueValidator(23)])),
                ("batch_size", models.PositiveIntegerField(default=5, validators=[django.core.validators.MinValueValidator(1), django.core.validators.MaxValueValidator(50)])),
                ("retry_failed", models.BooleanField(default=True)),
                ("max_retries", models.PositiveIntegerField(default=3, validators=[django.core.validators.MinValueValidator(1), django.core.validators.MaxValueValidator(10)])),
                ("scan_type", models.CharField(choices=[("performance", "Performance"), ("technology", "Technology"), ("discovery", "Discovery")], default="performance", help_text="Scan type used by automatic runs", max_length=20)),
                ("next_scheduled_run", models.DateTimeField(blank=True, null=True)),
                ("last_run", models.DateTimeField(blank=True, null=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Automation Settings",
                "verbose_name_plural": "Automation Settings",
                "db_table": "automation_settings",
            },
        ),
        migrations.CreateModel(
            name="QuotaUsage",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("provider", models.CharField(help_text="Name of the provider (pagespeed, gtmetrix, builtwith).", max_length=50)),
                ("period", models.CharField(help_text="Period key in YYYY-MM format.", max_length=7)),
                ("used", models.IntegerField(default=0, help_text="Number of calls admitted this period.", validators=[django.core.validators.MinValueValidator(0)])),
                ("limit", models.IntegerField(default=1000, help_text="Maximum calls allowed this period.", validators=[django.core.validators.MinValueValidator(1)])),
                ("last_used", models.DateTimeField(blank=True, help_text="When the provider was last admitted.", null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Quota Usage",
                "verbose_name_plural": "Quota Usage",
                "db_table": "quota_usage",
                "ordering": ["-period", "provider"],
                "unique_together": {("provider", "period")},
            },
        ),
        migrations.CreateModel(
            name="ScanQueueItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("scan_type", models.CharField(choices=[("performance", "Performance"), ("technology", "Technology"), ("discovery", "Discovery")], default="performance", max_length=20)),
                ("url", models.CharField(blank=True, max_length=500, null=True)),
                ("priority", models.CharField(choices=[("high", "High"), ("medium", "Medium"), ("low", "Low")], default="medium", max_length=10)),
                ("priority_rank", models.PositiveSmallIntegerField(default=1)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("processing", "Processing"), ("completed", "Completed"), ("failed", "Failed")], default="pending", max_length=20)),
                ("provider", models.CharField(blank=True, max_length=50)),
                ("attempts", models.PositiveIntegerField(default=0, help_text="Number of times this item has been claimed")),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("error_message", models.TextField(blank=True, null=True)),
                ("error_kind", models.CharField(blank=True, choices=[("retryable", "Retryable provider error"), ("fatal", "Fatal provider error"), ("quota_exceeded", "Quota exceeded"), ("timeout", "Provider timeout"), ("internal", "Internal error")], max_length=20, null=True)),
                ("result", models.JSONField(blank=True, default=dict)),
                ("target", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="scan_items", to="scanner.business")),
            ],
            options={
                "db_table": "scan_queue",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "priority_rank", "created_at"], name="scan_queue_status_8c2f4d_idx"),
                    models.Index(fields=["target", "status"], name="scan_queue_target__3a9e71_idx"),
                ],
            },
        ),
    ]

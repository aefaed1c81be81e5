"""
Scanner application configuration.
"""

from django.apps import AppConfig


class ScannerConfig(AppConfig):
    """Configuration for the scanner Django application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "scanner"
    verbose_name = "Lead Scan Pipeline"

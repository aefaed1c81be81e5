"""
Provider registry.

Maps scan types to the adapter used for them and discovery source names to
source instances. Which adapter serves a scan type, and the discovery
priority order, come from settings so deployments can swap providers
without code changes.
"""

import logging
from typing import Dict, List, Optional

from django.conf import settings

from scanner.exceptions import ValidationError
from scanner.models import ScanType
from scanner.providers.base import DiscoverySource, ProviderAdapter
from scanner.providers.builtwith import BuiltWithAdapter
from scanner.providers.directories import (
    GooglePlacesSource,
    LocalStackSource,
    YellowPagesSource,
)
from scanner.providers.gtmetrix import GTmetrixAdapter
from scanner.providers.pagespeed import PageSpeedAdapter

logger = logging.getLogger(__name__)

SCAN_ADAPTERS = {
    PageSpeedAdapter.name: PageSpeedAdapter,
    GTmetrixAdapter.name: GTmetrixAdapter,
    BuiltWithAdapter.name: BuiltWithAdapter,
}

DISCOVERY_SOURCES = {
    YellowPagesSource.name: YellowPagesSource,
    LocalStackSource.name: LocalStackSource,
    GooglePlacesSource.name: GooglePlacesSource,
}

DEFAULT_SCAN_PROVIDERS = {
    ScanType.PERFORMANCE: PageSpeedAdapter.name,
    ScanType.TECHNOLOGY: BuiltWithAdapter.name,
}

DEFAULT_DISCOVERY_ORDER = [
    YellowPagesSource.name,
    LocalStackSource.name,
    GooglePlacesSource.name,
]


def get_scan_adapter(scan_type: str) -> ProviderAdapter:
    """
    Adapter configured for a scan type.

    Raises:
        ValidationError: no adapter serves the scan type
    """
    configured = getattr(settings, "SCANNER_SCAN_PROVIDERS", DEFAULT_SCAN_PROVIDERS)
    name = configured.get(scan_type)
    if name is None:
        raise ValidationError(f"No scan provider configured for {scan_type}")
    try:
        adapter_class = SCAN_ADAPTERS[name]
    except KeyError:
        raise ValidationError(f"Unknown scan provider: {name}")
    return adapter_class(timeout=getattr(settings, "SCANNER_PROVIDER_TIMEOUT_SECONDS", None))


def get_discovery_sources(order: Optional[List[str]] = None) -> List[DiscoverySource]:
    """
    Discovery sources in priority order.

    Raises:
        ValidationError: an unknown source name was requested
    """
    names = order or getattr(settings, "SCANNER_DISCOVERY_SOURCES", DEFAULT_DISCOVERY_ORDER)
    unknown = [name for name in names if name not in DISCOVERY_SOURCES]
    if unknown:
        raise ValidationError(f"Unknown discovery source(s): {', '.join(unknown)}")

    seen = set()
    sources = []
    for name in names:
        if name in seen:
            continue
        seen.add(name)
        sources.append(DISCOVERY_SOURCES[name]())
    return sources


def list_providers() -> Dict[str, List[str]]:
    """Registered provider names, for the API and admin."""
    return {
        "scan": sorted(SCAN_ADAPTERS),
        "discovery": list(DISCOVERY_SOURCES),
    }

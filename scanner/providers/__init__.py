"""
Provider adapters for scan and discovery sources.
"""

from .base import (
    DiscoveryResult,
    DiscoverySource,
    Fatal,
    ProviderAdapter,
    ProviderResult,
    Retryable,
    Success,
    call_with_timeout,
    classify_http_status,
)

__all__ = [
    "DiscoveryResult",
    "DiscoverySource",
    "Fatal",
    "ProviderAdapter",
    "ProviderResult",
    "Retryable",
    "Success",
    "call_with_timeout",
    "classify_http_status",
]

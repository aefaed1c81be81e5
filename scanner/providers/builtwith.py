"""
BuiltWith adapter (technology and CMS detection).
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests
from django.conf import settings

from scanner.models import ScanType
from scanner.providers.base import (
    Fatal,
    ProviderAdapter,
    ProviderResult,
    Success,
    classify_http_status,
)

logger = logging.getLogger(__name__)

CMS_CATEGORIES = {"CMS", "Ecommerce"}
CMS_NAME_HINTS = ("wordpress", "wix", "squarespace")


def extract_domain(url: str) -> Optional[str]:
    """Hostname of url without a leading www., lowercased."""
    candidate = url.strip().lower()
    if not candidate.startswith(("http://", "https://")):
        candidate = f"https://{candidate}"
    host = urlparse(candidate).hostname
    if not host:
        return None
    return host[4:] if host.startswith("www.") else host


def detect_cms(technologies: List[Dict[str, str]]) -> str:
    """Last technology that looks like a CMS or shop platform, else Unknown."""
    cms = "Unknown"
    for tech in technologies:
        name = tech.get("name") or ""
        if tech.get("category") in CMS_CATEGORIES or any(
            hint in name.lower() for hint in CMS_NAME_HINTS
        ):
            cms = name
    return cms


class BuiltWithAdapter(ProviderAdapter):
    """
    Success data:
        {"domain": str, "cms": str, "technologies": [{"name", "category"}]}
    """

    name = "builtwith"
    scan_type = ScanType.TECHNOLOGY

    BASE_URL = "https://api.builtwith.com/free1/api.json"
    DEFAULT_TIMEOUT = 15

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None, session=None):
        self.api_key = api_key if api_key is not None else getattr(settings, "BUILTWITH_API_KEY", "")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._owns_session = session is None
        self.session = session or requests.Session()

    def attempt(self, target) -> ProviderResult:
        if not target.scan_url:
            return Fatal("Target has no website")
        domain = extract_domain(target.scan_url)
        if not domain:
            return Fatal(f"Invalid URL format: {target.scan_url}")
        if not self.api_key:
            return Fatal("BUILTWITH_API_KEY not configured")

        response = self.session.get(
            self.BASE_URL,
            params={"KEY": self.api_key, "LOOKUP": domain},
            timeout=self.timeout,
        )
        failure = classify_http_status(response.status_code, response.text)
        if failure is not None:
            return failure

        try:
            payload = response.json()
        except ValueError:
            return Fatal("BuiltWith returned a non-JSON body")

        technologies = []
        results = payload.get("Results") or []
        if results:
            for tech in results[0].get("Technologies") or []:
                technologies.append({"name": tech.get("Name"), "category": tech.get("Category")})

        cms = detect_cms(technologies)
        logger.debug(f"BuiltWith found {len(technologies)} technologies for {domain} (CMS: {cms})")

        return Success({"domain": domain, "cms": cms, "technologies": technologies})

    def result_fields(self, data: Dict[str, Any], scanned_at) -> Dict[str, Any]:
        return {
            "cms": data["cms"],
            "technologies": data["technologies"],
            "last_technology_scan_at": scanned_at,
        }

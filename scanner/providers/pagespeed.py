"""
Google PageSpeed Insights adapter (Lighthouse performance score).
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

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


class PageSpeedAdapter(ProviderAdapter):
    """
    Runs a mobile Lighthouse audit through the PageSpeed Insights API.

    Success data:
        {"score": 0-100, "report_url": str, "url": str}
    """

    name = "pagespeed"
    scan_type = ScanType.PERFORMANCE

    BASE_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
    REPORT_URL = "https://pagespeed.web.dev/report?url={url}"
    DEFAULT_TIMEOUT = 15

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None, session=None):
        self.api_key = api_key if api_key is not None else getattr(settings, "PAGESPEED_API_KEY", "")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._owns_session = session is None
        self.session = session or requests.Session()

    def attempt(self, target) -> ProviderResult:
        url = target.scan_url
        if not url:
            return Fatal("Target has no website")

        params = {
            "url": url,
            "strategy": "mobile",
            "category": "performance",
        }
        if self.api_key:
            params["key"] = self.api_key

        logger.debug(f"PageSpeed audit for {url}")
        response = self.session.get(
            self.BASE_URL,
            params=params,
            headers={"User-Agent": "LeadScan-PageSpeed/1.0"},
            timeout=self.timeout,
        )

        failure = classify_http_status(response.status_code, response.text)
        if failure is not None:
            return failure

        try:
            data = response.json()
        except ValueError:
            return Fatal("PageSpeed returned a non-JSON body")

        score = (
            data.get("lighthouseResult", {})
            .get("categories", {})
            .get("performance", {})
            .get("score")
        )
        if score is None:
            return Fatal("PageSpeed response has no performance score")

        return Success({
            "score": round(float(score) * 100),
            "report_url": self.REPORT_URL.format(url=quote(url, safe="")),
            "url": url,
        })

    def result_fields(self, data: Dict[str, Any], scanned_at) -> Dict[str, Any]:
        return {
            "performance_score": data["score"],
            "performance_report_url": data["report_url"],
            "performance_provider": self.name,
            "last_performance_scan_at": scanned_at,
            "lighthouse_score": data["score"],
            "lighthouse_report_url": data["report_url"],
            "last_lighthouse_scan_at": scanned_at,
        }

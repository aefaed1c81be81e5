"""
GTmetrix adapter (Lighthouse performance score via GTmetrix tests).

GTmetrix runs tests asynchronously: the adapter starts a test and polls
until it completes, errors, or the poll budget runs out.
"""

import logging
import time
from typing import Any, Dict, Optional

import requests
from django.conf import settings

from scanner.models import ScanType
from scanner.providers.base import (
    Fatal,
    ProviderAdapter,
    ProviderResult,
    Retryable,
    Success,
    classify_http_status,
)

logger = logging.getLogger(__name__)


class GTmetrixAdapter(ProviderAdapter):
    """
    Success data:
        {"score": 0-100, "report_url": str, "fully_loaded_time": ms, "test_id": str}
    """

    name = "gtmetrix"
    scan_type = ScanType.PERFORMANCE

    BASE_URL = "https://gtmetrix.com/api/0.1"
    MAX_POLLS = 10
    POLL_INTERVAL = 5  # seconds
    DEFAULT_TIMEOUT = 15

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session=None,
        sleep=time.sleep,
        max_polls: Optional[int] = None,
    ):
        self.api_key = api_key if api_key is not None else getattr(settings, "GTMETRIX_API_KEY", "")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.sleep = sleep
        self.max_polls = max_polls or self.MAX_POLLS

    def attempt(self, target) -> ProviderResult:
        url = target.scan_url
        if not url:
            return Fatal("Target has no website")
        if not self.api_key:
            return Fatal("GTMETRIX_API_KEY not configured")

        auth = (self.api_key, "")

        response = self.session.post(
            f"{self.BASE_URL}/test",
            json={"url": url, "report": {"protocol": "lighthouse"}},
            auth=auth,
            timeout=self.timeout,
        )
        failure = classify_http_status(response.status_code, response.text)
        if failure is not None:
            return failure

        test_id = (response.json().get("data") or {}).get("id")
        if not test_id:
            return Fatal("GTmetrix did not return a test id")

        logger.debug(f"GTmetrix test {test_id} started for {url}")

        for poll in range(self.max_polls):
            response = self.session.get(
                f"{self.BASE_URL}/test/{test_id}",
                auth=auth,
                timeout=self.timeout,
            )
            failure = classify_http_status(response.status_code, response.text)
            if failure is not None:
                return failure

            data = response.json().get("data") or {}
            state = data.get("state")

            if state == "completed":
                attributes = data.get("attributes") or {}
                links = data.get("links") or {}
                return Success({
                    "score": int((attributes.get("lighthouse_scores") or {}).get("performance") or 0),
                    "report_url": links.get("report_url", ""),
                    "fully_loaded_time": attributes.get("fully_loaded_time") or 0,
                    "test_id": test_id,
                })
            if state == "error":
                return Fatal(f"GTmetrix test error: {data.get('error', 'unknown')}")

            if poll < self.max_polls - 1:
                self.sleep(self.POLL_INTERVAL)

        return Retryable(f"GTmetrix test {test_id} did not complete after {self.max_polls} polls")

    def result_fields(self, data: Dict[str, Any], scanned_at) -> Dict[str, Any]:
        return {
            "performance_score": data["score"],
            "performance_report_url": data["report_url"],
            "performance_provider": self.name,
            "last_performance_scan_at": scanned_at,
            "gtmetrix_score": data["score"],
            "gtmetrix_report_url": data["report_url"],
            "last_gtmetrix_scan_at": scanned_at,
        }

"""
Provider adapter contract.

Every external scan or discovery source is wrapped by an adapter whose
attempt() returns one of three tagged results:

    Success(data)       normalized payload
    Retryable(reason)   transient: timeout, HTTP 5xx, HTTP 429
    Fatal(reason)       permanent: other HTTP 4xx, malformed target

Callers only ever branch on the variant. Provider payloads are parsed inside
the adapter and never inspected by the batch processor or the discovery
orchestrator.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import httpx
import requests

from scanner.exceptions import FatalProviderError, RetryableProviderError

logger = logging.getLogger(__name__)


@dataclass
class Success:
    data: Any
    ok = True


@dataclass
class Retryable:
    reason: str
    rate_limited: bool = False
    timed_out: bool = False
    ok = False


@dataclass
class Fatal:
    reason: str
    quota_exceeded: bool = False
    ok = False


ProviderResult = Union[Success, Retryable, Fatal]


@dataclass
class DiscoveryResult:
    """One business returned by a discovery source."""

    name: str
    website: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    source_provider: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "website": self.website,
            "phone": self.phone,
            "address": self.address,
            "source_provider": self.source_provider,
        }


def classify_http_status(status_code: int, detail: str = "") -> Optional[ProviderResult]:
    """
    Map an HTTP status to a failure result, or None for 2xx.

    429 and 5xx are retryable, every other non-2xx status is fatal.
    """
    if 200 <= status_code < 300:
        return None

    reason = f"HTTP {status_code}"
    if detail:
        reason = f"{reason}: {detail[:200]}"

    if status_code == 429:
        return Retryable(reason, rate_limited=True)
    if status_code >= 500:
        return Retryable(reason)
    return Fatal(reason)


def result_from_exception(exc: Exception) -> Optional[ProviderResult]:
    """
    Translate a transport or provider exception into a result.

    Returns None for exceptions that are not provider failures; those are
    left for the caller to handle as internal errors.
    """
    if isinstance(exc, RetryableProviderError):
        return Retryable(str(exc), rate_limited=exc.rate_limited)
    if isinstance(exc, FatalProviderError):
        return Fatal(str(exc))
    if isinstance(exc, requests.Timeout):
        return Retryable(f"Request timed out: {exc}", timed_out=True)
    if isinstance(exc, requests.ConnectionError):
        return Retryable(f"Connection error: {exc}")
    if isinstance(exc, requests.RequestException):
        return Fatal(f"Request failed: {exc}")
    if isinstance(exc, httpx.TimeoutException):
        return Retryable(f"Fetch timed out: {exc}", timed_out=True)
    if isinstance(exc, httpx.TransportError):
        return Retryable(f"Transport error: {exc}")
    if isinstance(exc, httpx.HTTPError):
        return Fatal(f"Fetch failed: {exc}")
    return None


def call_with_timeout(func, *args, timeout: float, **kwargs) -> ProviderResult:
    """
    Run an adapter call with a hard wall-clock bound.

    A call still running after timeout seconds is abandoned and reported as
    Retryable(timed_out=True); the worker thread is not waited for. Provider
    exceptions are translated with result_from_exception(), anything else
    propagates.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="provider-call")
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError:
        logger.warning(f"Provider call {getattr(func, '__qualname__', func)} timed out after {timeout}s")
        return Retryable(f"Timed out after {timeout}s", timed_out=True)
    except Exception as e:
        translated = result_from_exception(e)
        if translated is None:
            raise
        return translated
    finally:
        executor.shutdown(wait=False)


class ProviderAdapter(ABC):
    """
    Adapter for one metered scan provider.

    Subclasses set name and scan_type and implement attempt() and
    result_fields().
    """

    name: str = ""
    scan_type: str = ""
    metered: bool = True
    session = None
    _owns_session = False

    @abstractmethod
    def attempt(self, target) -> ProviderResult:
        """
        Run one scan of target.

        Args:
            target: object with id and scan_url (normally a Business)
        """

    @abstractmethod
    def result_fields(self, data: Dict[str, Any], scanned_at) -> Dict[str, Any]:
        """Map a Success payload onto Business field values."""

    def close(self) -> None:
        """Close the HTTP session if the adapter created it."""
        if self._owns_session and self.session is not None:
            self.session.close()

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"


class DiscoverySource(ABC):
    """
    Adapter for one business directory.

    A source exposes several URL or endpoint variants for a query; the
    orchestrator walks them in order within one try.

    Metered sources spend one unit of the run's quota reservation before
    every network request (see take_call()); calls_per_attempt is the most
    requests one attempt() can make.
    """

    name: str = ""
    metered: bool = False
    calls_per_attempt: int = 1
    reservation = None

    @abstractmethod
    def variants(self, query: str) -> List[str]:
        """Ordered list of URLs or endpoints to try for a location query."""

    @abstractmethod
    def attempt(self, variant: str, query: str) -> ProviderResult:
        """Fetch one variant; Success data is a list of DiscoveryResult."""

    def take_call(self) -> bool:
        """
        Spend one metered call. Free sources may always call; metered ones
        only while the reservation set for the run has units left.
        """
        if not self.metered:
            return True
        return self.reservation is not None and self.reservation.take()

    def quota_refused(self) -> Fatal:
        return Fatal(f"Quota exceeded for {self.name} (reservation used up)", quota_exceeded=True)

    def close(self) -> None:
        """Release network clients held by the source."""

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"


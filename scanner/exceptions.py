"""
Error taxonomy for the scan pipeline.

ValidationError and InvalidStateError are surfaced to the caller (the API
maps them to 400 and 409). Provider errors are normally carried as
Retryable/Fatal results rather than raised; the exception forms exist for
adapters that prefer to raise and for callers outside the batch loop.
"""


class ScannerError(Exception):
    """Base class for scan pipeline errors."""

    pass


class ValidationError(ScannerError):
    """Bad input to an operation. Not retried."""

    pass


class InvalidStateError(ScannerError):
    """
    Illegal state transition attempted on a scan queue item.

    Raised by retry() on a non-failed item and cancel() on a non-pending one.
    The item is left unchanged.
    """

    def __init__(self, message: str, current_status: str = None):
        super().__init__(message)
        self.current_status = current_status


class RetryableProviderError(ScannerError):
    """Transient provider failure: timeout, HTTP 5xx or 429."""

    def __init__(self, message: str, rate_limited: bool = False):
        super().__init__(message)
        self.rate_limited = rate_limited


class FatalProviderError(ScannerError):
    """Permanent provider failure: HTTP 4xx other than 429, malformed target."""

    pass


class QuotaExceeded(ScannerError):
    """Quota admission was denied for a metered provider."""

    def __init__(self, provider: str, used: int = 0, limit: int = 0):
        super().__init__(f"Quota exceeded for {provider} ({used}/{limit})")
        self.provider = provider
        self.used = used
        self.limit = limit


class TotalDiscoveryFailure(ScannerError):
    """
    Every discovery provider failed.

    Never propagated out of the orchestrator; it is recorded on the outcome
    and the caller receives sample data instead.
    """

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__(
            f"All {len(self.errors)} discovery providers failed"
        )

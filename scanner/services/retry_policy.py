"""
Bounded retry policy shared by discovery and batch processing.

A RetryPolicy answers two questions: may another attempt be made after N
attempts, and how long to wait before attempt N+1. Sleeping and jitter go
through injectable callables so callers and tests can run without real
delays.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable

from django.conf import settings

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """
    Exponential backoff with a cap and optional jitter.

    delay(attempt) = min(max_delay, base_delay * 2 ** attempt) + jitter,
    where attempt is zero-based and jitter is uniform in [0, jitter_ratio * delay].
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter_ratio: float = 0.25
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    rand: Callable[[], float] = field(default=random.random, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def for_discovery(cls, **overrides) -> "RetryPolicy":
        """Policy configured from the SCANNER_DISCOVERY_* settings."""
        params = {
            "max_attempts": getattr(settings, "SCANNER_DISCOVERY_MAX_ATTEMPTS", 3),
            "base_delay": getattr(settings, "SCANNER_DISCOVERY_BASE_DELAY", 1.0),
            "max_delay": getattr(settings, "SCANNER_DISCOVERY_MAX_DELAY", 10.0),
        }
        params.update(overrides)
        return cls(**params)

    @classmethod
    def for_scans(cls, max_attempts: int, **overrides) -> "RetryPolicy":
        """
        Policy for scan queue items.

        Scan retries are spaced by the scheduler cadence, not by sleeping,
        so only the attempt bound matters here.
        """
        params = {"max_attempts": max_attempts, "base_delay": 0.0, "max_delay": 0.0}
        params.update(overrides)
        return cls(**params)

    def should_retry(self, attempts_made: int) -> bool:
        """True while another attempt is allowed after attempts_made attempts."""
        return attempts_made < self.max_attempts

    def delay(self, attempt: int) -> float:
        """Backoff before the attempt following zero-based attempt."""
        base = min(self.max_delay, self.base_delay * (2 ** attempt))
        if self.jitter_ratio <= 0 or base <= 0:
            return base
        return base + base * self.jitter_ratio * self.rand()

    def wait(self, attempt: int) -> float:
        """Sleep for delay(attempt) and return the delay used."""
        seconds = self.delay(attempt)
        if seconds > 0:
            logger.debug(f"Backing off {seconds:.2f}s before attempt {attempt + 2}")
            self.sleep(seconds)
        return seconds

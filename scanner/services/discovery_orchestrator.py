"""
Discovery Orchestrator - Finds businesses for a location across sources.

Flow:
1. Resolve the discovery sources in priority order
2. Reserve quota for metered sources up to the most calls the run can make;
   the source spends one unit per network request and the rest is released
3. Run every source concurrently; within one source, retry sequentially:
   each try walks every URL variant until one succeeds, tries are spaced by
   the shared RetryPolicy backoff
4. Merge successful sources in priority order, deduplicating by normalized
   (name, website); the higher-priority source wins a collision
5. If every source failed, return flagged sample data instead

discover() never raises for provider failures; total failure is reported on
the outcome and alerted, not propagated.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from django.conf import settings
from django.db import transaction

from scanner.exceptions import QuotaExceeded, TotalDiscoveryFailure, ValidationError
from scanner.monitoring import add_scan_breadcrumb, capture_alert
from scanner.providers.base import (
    DiscoveryResult,
    DiscoverySource,
    Fatal,
    Retryable,
    Success,
    call_with_timeout,
)
from scanner.providers.registry import get_discovery_sources
from scanner.services.quota_manager import get_quota_manager
from scanner.services.retry_policy import RetryPolicy
from scanner.services.sample_data import SAMPLE_PROVIDER, sample_businesses

logger = logging.getLogger(__name__)


@dataclass
class ProviderFailure:
    """Why one source produced nothing for this call."""

    provider: str
    reason: str
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"provider": self.provider, "reason": self.reason, "attempts": self.attempts}


@dataclass
class SourceRun:
    """Result of running one source through its retry loop."""

    provider: str
    results: List[DiscoveryResult] = field(default_factory=list)
    failure: Optional[ProviderFailure] = None
    attempts: int = 0
    variant: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.failure is None


@dataclass
class DiscoveryOutcome:
    query: str
    results: List[DiscoveryResult]
    is_synthetic: bool
    errors: List[ProviderFailure]
    succeeded_providers: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "count": len(self.results),
            "is_synthetic": self.is_synthetic,
            "succeeded_providers": self.succeeded_providers,
            "errors": [error.to_dict() for error in self.errors],
            "results": [result.to_dict() for result in self.results],
        }


def normalize_name(name: Optional[str]) -> str:
    return re.sub(r"\s+", " ", (name or "").strip().lower())


def normalize_website(website: Optional[str]) -> str:
    """Lowercase, drop scheme, leading www. and trailing slash."""
    value = (website or "").strip().lower()
    value = re.sub(r"^https?://", "", value)
    if value.startswith("www."):
        value = value[4:]
    return value.rstrip("/")


def dedup_key(result: DiscoveryResult) -> Tuple[str, str]:
    return normalize_name(result.name), normalize_website(result.website)


def merge_results(runs: Iterable[SourceRun]) -> List[DiscoveryResult]:
    """
    Merge per-source results given in priority order.

    The first record seen for a (name, website) key is kept, so results
    from a higher-priority source always win over later ones regardless of
    which source finished first.
    """
    merged: Dict[Tuple[str, str], DiscoveryResult] = {}
    for run in runs:
        for result in run.results:
            key = dedup_key(result)
            if not key[0]:
                continue
            if key not in merged:
                merged[key] = result
    return list(merged.values())


class DiscoveryOrchestrator:
    """
    Runs discovery sources with retry, merge and sample fallback.

    Usage:
        orchestrator = DiscoveryOrchestrator()
        outcome = orchestrator.discover("Austin, TX")
        if outcome.is_synthetic:
            ...  # warn the operator
    """

    def __init__(
        self,
        sources: Optional[List[DiscoverySource]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        quota_manager=None,
        timeout: Optional[float] = None,
        max_workers: Optional[int] = None,
    ):
        self._sources = sources
        self.retry_policy = retry_policy or RetryPolicy.for_discovery()
        self.quota_manager = quota_manager or get_quota_manager()
        self.timeout = timeout or getattr(settings, "SCANNER_PROVIDER_TIMEOUT_SECONDS", 30)
        self.max_workers = max_workers

    def _resolve_sources(self, order: Optional[List[str]]) -> List[DiscoverySource]:
        if self._sources is None:
            return get_discovery_sources(order)
        if not order:
            return list(self._sources)

        by_name = {source.name: source for source in self._sources}
        unknown = [name for name in order if name not in by_name]
        if unknown:
            raise ValidationError(f"Unknown discovery source(s): {', '.join(unknown)}")
        return [by_name[name] for name in dict.fromkeys(order)]

    def discover(
        self,
        query: str,
        source_preference_order: Optional[List[str]] = None,
    ) -> DiscoveryOutcome:
        """
        Discover businesses for a location query.

        Args:
            query: Location, e.g. "Austin, TX"
            source_preference_order: Source names, highest priority first.
                Defaults to settings.SCANNER_DISCOVERY_SOURCES.

        Returns:
            DiscoveryOutcome; sample data flagged is_synthetic when every
            source failed

        Raises:
            ValidationError: empty query or unknown source name
        """
        query = (query or "").strip()
        if not query:
            raise ValidationError("query is required")

        sources = self._resolve_sources(source_preference_order)
        owns_sources = self._sources is None
        logger.info(
            f"Starting discovery for '{query}' across {len(sources)} source(s): "
            f"{', '.join(source.name for source in sources)}"
        )

        runs: Dict[str, SourceRun] = {}
        reservations = []
        try:
            runnable = []
            for source in sources:
                denial = self._admit(source, query)
                if denial is not None:
                    runs[source.name] = SourceRun(provider=source.name, failure=denial)
                    continue
                runnable.append(source)
                if source.reservation is not None:
                    reservations.append(source.reservation)

            if runnable:
                runs.update(self._run_concurrently(runnable, query))
        finally:
            for reservation in reservations:
                self.quota_manager.release(reservation)
            for source in sources:
                source.reservation = None
                if owns_sources:
                    source.close()

        ordered_runs = [runs[source.name] for source in sources]
        errors = [run.failure for run in ordered_runs if run.failure is not None]
        succeeded = [run.provider for run in ordered_runs if run.succeeded]

        if not succeeded:
            return self._fallback(query, errors)

        results = merge_results(run for run in ordered_runs if run.succeeded)
        logger.info(
            f"Discovery for '{query}' found {len(results)} unique businesses "
            f"from {', '.join(succeeded)}"
            + (f" ({len(errors)} source(s) failed)" if errors else "")
        )
        return DiscoveryOutcome(
            query=query,
            results=results,
            is_synthetic=False,
            errors=errors,
            succeeded_providers=succeeded,
        )

    def _run_concurrently(self, sources: List[DiscoverySource], query: str) -> Dict[str, SourceRun]:
        runs = {}
        workers = self.max_workers or len(sources)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="discovery") as executor:
            future_to_source = {
                executor.submit(self._run_source, source, query): source
                for source in sources
            }

            for future in as_completed(future_to_source):
                source = future_to_source[future]
                try:
                    runs[source.name] = future.result()
                except Exception as e:
                    logger.error(f"Discovery source {source.name} crashed: {e}", exc_info=True)
                    runs[source.name] = SourceRun(
                        provider=source.name,
                        failure=ProviderFailure(source.name, f"Internal error: {e}"),
                    )
        return runs

    def _admit(self, source: DiscoverySource, query: str) -> Optional[ProviderFailure]:
        """
        Quota gate for metered sources, run in the calling thread.

        Reserves units for every request the run could make (tries x
        variants x calls per attempt) and binds the reservation to the
        source. Returns a failure when nothing could be reserved.
        """
        if not source.metered:
            return None

        up_to = self.retry_policy.max_attempts * max(len(source.variants(query)), 1) * source.calls_per_attempt
        reservation = self.quota_manager.reserve(source.name, up_to)
        if reservation:
            source.reservation = reservation
            return None

        usage = self.quota_manager.get_usage(source.name)
        capture_alert(
            f"Discovery quota exhausted for {source.name}",
            alert_type="quota_exhausted",
            provider=source.name,
            extra_data={"used": usage["used"], "limit": usage["limit"], "period": usage["period"]},
        )
        return ProviderFailure(
            source.name,
            str(QuotaExceeded(source.name, usage["used"], usage["limit"])),
        )

    def _run_source(self, source: DiscoverySource, query: str) -> SourceRun:
        """
        Retry loop for one source.

        Each try walks all variants in order and stops at the first success.
        A try in which every variant failed fatally ends the loop early;
        only retryable failures earn another try.
        """
        variants = source.variants(query)
        if not variants:
            return SourceRun(
                provider=source.name,
                failure=ProviderFailure(source.name, "No URL variants for query"),
            )

        policy = self.retry_policy
        last_reason = "no attempts made"
        attempts = 0

        while True:
            attempts += 1
            all_fatal = True

            for variant in variants:
                add_scan_breadcrumb(
                    provider=source.name,
                    message="Discovery attempt",
                    extra_data={"variant": variant, "attempt": attempts},
                )
                result = call_with_timeout(source.attempt, variant, query, timeout=self.timeout)

                if isinstance(result, Success) and result.data:
                    return SourceRun(
                        provider=source.name,
                        results=list(result.data),
                        attempts=attempts,
                        variant=variant,
                    )

                if isinstance(result, Fatal) and result.quota_exceeded:
                    logger.warning(f"{source.name}: {result.reason}")
                    return SourceRun(
                        provider=source.name,
                        failure=ProviderFailure(source.name, result.reason, attempts),
                        attempts=attempts,
                    )

                if isinstance(result, Retryable):
                    all_fatal = False
                    last_reason = result.reason
                elif isinstance(result, Fatal):
                    last_reason = result.reason
                else:
                    last_reason = "Empty result"

                logger.debug(f"{source.name} variant failed ({last_reason}): {variant}")

            if all_fatal:
                logger.warning(f"{source.name}: all variants failed permanently ({last_reason})")
                break
            if not policy.should_retry(attempts):
                break

            policy.wait(attempts - 1)

        return SourceRun(
            provider=source.name,
            failure=ProviderFailure(source.name, last_reason, attempts),
            attempts=attempts,
        )

    def _fallback(self, query: str, errors: List[ProviderFailure]) -> DiscoveryOutcome:
        failure = TotalDiscoveryFailure(errors)
        logger.warning(f"{failure} for '{query}'; returning sample data")
        capture_alert(
            f"All discovery sources failed for '{query}'",
            alert_type="discovery_failure",
            extra_data={"errors": {error.provider: error.reason for error in errors}},
        )
        return DiscoveryOutcome(
            query=query,
            results=sample_businesses(query),
            is_synthetic=True,
            errors=errors,
            succeeded_providers=[],
        )

    def persist_results(
        self,
        outcome: DiscoveryOutcome,
        include_synthetic: bool = False,
    ) -> Dict[str, int]:
        """
        Upsert discovered businesses.

        Idempotent by normalized website; results without a website match an
        existing business by name. Sample data is only written when
        include_synthetic is set.

        Returns:
            Dict with created, updated and skipped counts
        """
        from scanner.models import Business

        stats = {"created": 0, "updated": 0, "skipped": 0}
        if outcome.is_synthetic and not include_synthetic:
            stats["skipped"] = len(outcome.results)
            return stats

        with transaction.atomic():
            for result in outcome.results:
                website = normalize_website(result.website) or None

                if website:
                    existing = Business.objects.filter(website__iexact=website).first()
                else:
                    existing = Business.objects.filter(
                        name__iexact=result.name.strip(), website__isnull=True
                    ).first()

                if existing is None:
                    Business.objects.create(
                        name=result.name.strip(),
                        website=website,
                        phone=result.phone or "",
                        address=result.address or "",
                        source=result.source_provider or SAMPLE_PROVIDER,
                    )
                    stats["created"] += 1
                    continue

                changed = False
                if result.phone and not existing.phone:
                    existing.phone = result.phone
                    changed = True
                if result.address and not existing.address:
                    existing.address = result.address
                    changed = True

                if changed:
                    existing.save()
                    stats["updated"] += 1
                else:
                    stats["skipped"] += 1

        logger.info(
            f"Persisted discovery results for '{outcome.query}': "
            f"{stats['created']} created, {stats['updated']} updated, {stats['skipped']} skipped"
        )
        return stats

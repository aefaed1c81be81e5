"""
Quota Manager - Gates every metered provider call.

Tracks one usage counter per provider per calendar month (YYYY-MM) against
a configured limit. Admission and increment happen in a single conditional
UPDATE so two workers racing on the same provider can never push the
counter past its limit. Counters from earlier months are kept for
reporting and are only zeroed by an explicit reset().
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from scanner.exceptions import ValidationError

logger = logging.getLogger(__name__)


class DeniedReason(str, Enum):
    LIMIT_REACHED = "limit_reached"


@dataclass
class QuotaDecision:
    """Outcome of try_admit()."""

    admitted: bool
    provider: str
    period: str
    used: int
    limit: int
    reason: Optional[DeniedReason] = None

    def __bool__(self) -> bool:
        return self.admitted


@dataclass
class QuotaReservation:
    """
    Units taken up front for a run whose call count is only known as an
    upper bound. Worker threads spend units with take() without touching
    the database; release() hands back whatever was not spent.
    """

    provider: str
    period: str
    granted: int
    spent: int = 0
    closed: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def take(self) -> bool:
        """Spend one unit; False once the reservation is used up or released."""
        with self._lock:
            if self.closed or self.spent >= self.granted:
                return False
            self.spent += 1
            return True

    def close(self) -> int:
        """Stop further spending and return the unspent units."""
        with self._lock:
            self.closed = True
            return self.granted - self.spent

    @property
    def unused(self) -> int:
        return self.granted - self.spent

    def __bool__(self) -> bool:
        return self.granted > 0


class QuotaManager:
    """
    Manages per-provider monthly quotas.

    Default limits come from settings.SCANNER_QUOTA_LIMITS; providers not
    listed there fall back to FALLBACK_LIMIT. The clock is injectable so the
    period key can be pinned in tests.
    """

    FALLBACK_LIMIT = 1000

    # Warning threshold (percentage)
    WARNING_THRESHOLD = 0.80  # Warn at 80% usage

    RESERVE_ATTEMPTS = 5

    def __init__(
        self,
        limits: Optional[Dict[str, int]] = None,
        clock: Optional[Callable] = None,
    ):
        configured = getattr(settings, "SCANNER_QUOTA_LIMITS", {})
        self._limits = dict(configured if limits is None else limits)
        self._clock = clock or timezone.now

    def _get_period(self, now=None) -> str:
        """Get the period key (YYYY-MM) for now."""
        return (now or self._clock()).strftime("%Y-%m")

    def _default_limit(self, provider: str) -> int:
        return self._limits.get(provider, self.FALLBACK_LIMIT)

    def _get_or_create_usage(self, provider: str, period: Optional[str] = None):
        """Get or lazily create the counter for a provider and period."""
        from scanner.models import QuotaUsage

        period = period or self._get_period()

        usage, created = QuotaUsage.objects.get_or_create(
            provider=provider,
            period=period,
            defaults={
                "used": 0,
                "limit": self._default_limit(provider),
            },
        )

        if created:
            logger.info(f"Created new quota record for {provider} ({period})")

        return usage

    def try_admit(self, provider: str, cost: int = 1) -> QuotaDecision:
        """
        Admit a call of the given cost, or deny it without touching the counter.

        Args:
            provider: Name of the metered provider
            cost: Units the call will consume (default 1)

        Returns:
            QuotaDecision; falsy when denied
        """
        from scanner.models import QuotaUsage

        if cost < 1:
            raise ValidationError(f"cost must be positive, got {cost}")

        now = self._clock()
        usage = self._get_or_create_usage(provider, self._get_period(now))

        updated = QuotaUsage.objects.filter(
            pk=usage.pk,
            used__lte=F("limit") - cost,
        ).update(used=F("used") + cost, last_used=now, updated_at=now)

        usage.refresh_from_db(fields=["used", "limit"])

        if not updated:
            logger.warning(
                f"Quota denied for {provider} ({usage.period}): "
                f"{usage.used}/{usage.limit}, requested {cost}"
            )
            return QuotaDecision(
                admitted=False,
                provider=provider,
                period=usage.period,
                used=usage.used,
                limit=usage.limit,
                reason=DeniedReason.LIMIT_REACHED,
            )

        logger.debug(f"Admitted {cost} {provider} call(s), total: {usage.used}")
        self.check_quota_warnings(provider, usage=usage)

        return QuotaDecision(
            admitted=True,
            provider=provider,
            period=usage.period,
            used=usage.used,
            limit=usage.limit,
        )

    def reserve(self, provider: str, up_to: int) -> QuotaReservation:
        """
        Take as many units as remain, at most up_to, in one conditional
        UPDATE. The limit is never exceeded; a concurrent writer only makes
        the reservation re-read the counter.

        Args:
            provider: Name of the metered provider
            up_to: Upper bound of calls the run can make

        Returns:
            QuotaReservation; falsy when nothing could be granted
        """
        from scanner.models import QuotaUsage

        if up_to < 1:
            raise ValidationError(f"up_to must be positive, got {up_to}")

        now = self._clock()
        usage = self._get_or_create_usage(provider, self._get_period(now))

        for _ in range(self.RESERVE_ATTEMPTS):
            granted = min(up_to, usage.limit - usage.used)
            if granted <= 0:
                break

            updated = QuotaUsage.objects.filter(
                pk=usage.pk,
                used=usage.used,
                limit=usage.limit,
            ).update(used=F("used") + granted, last_used=now, updated_at=now)

            usage.refresh_from_db(fields=["used", "limit"])
            if updated:
                logger.debug(f"Reserved {granted} {provider} call(s), total: {usage.used}")
                self.check_quota_warnings(provider, usage=usage)
                return QuotaReservation(provider=provider, period=usage.period, granted=granted)

        logger.warning(
            f"Quota reservation denied for {provider} ({usage.period}): "
            f"{usage.used}/{usage.limit}"
        )
        return QuotaReservation(provider=provider, period=usage.period, granted=0)

    def release(self, reservation: QuotaReservation) -> int:
        """
        Close a reservation and hand its unspent units back.

        Returns:
            Units returned to the counter
        """
        from scanner.models import QuotaUsage

        unused = reservation.close()
        if unused <= 0:
            return 0

        QuotaUsage.objects.filter(
            provider=reservation.provider,
            period=reservation.period,
            used__gte=unused,
        ).update(used=F("used") - unused, updated_at=self._clock())

        logger.debug(
            f"Released {unused} unspent {reservation.provider} unit(s) "
            f"({reservation.spent} spent)"
        )
        return unused

    def commit(self, provider: str) -> None:
        """
        Confirm a previously admitted call.

        Every current provider is billed at admission, so there is nothing
        to record here. Kept so call sites do not change when a provider
        billed only on success is added.
        """
        return None

    def get_usage(self, provider: str) -> Dict[str, object]:
        """
        Get current-period usage for a provider.

        Returns:
            Dict with used, limit, remaining and period
        """
        usage = self._get_or_create_usage(provider)
        return {
            "provider": provider,
            "used": usage.used,
            "limit": usage.limit,
            "remaining": usage.remaining,
            "period": usage.period,
        }

    def reset(self, provider: str, period: Optional[str] = None) -> None:
        """
        Administrative reset of a counter to zero.

        Args:
            provider: Name of the provider
            period: Period key (YYYY-MM); defaults to the current period
        """
        from scanner.models import QuotaUsage

        period = period or self._get_period()
        count = QuotaUsage.objects.filter(provider=provider, period=period).update(
            used=0, updated_at=self._clock()
        )
        logger.info(f"Reset {provider} quota for {period} ({count} record(s))")

    def set_limit(self, provider: str, limit: int):
        """
        Set the monthly limit for a provider.

        Args:
            provider: Name of the provider
            limit: Maximum calls allowed per month
        """
        if limit < 1:
            raise ValidationError(f"limit must be positive, got {limit}")

        self._limits[provider] = limit

        with transaction.atomic():
            usage = self._get_or_create_usage(provider)
            usage.limit = limit
            usage.save(update_fields=["limit", "updated_at"])

        logger.info(f"Set {provider} limit to {limit}")

    def check_quota_warnings(self, provider: str, usage=None):
        """
        Log a warning when a provider is at or above the warning threshold.

        Args:
            provider: Name of the provider
            usage: Counter already loaded by the caller (optional)
        """
        usage = usage or self._get_or_create_usage(provider)
        limit = usage.limit

        if limit == 0:
            return

        usage_ratio = usage.used / limit

        if usage_ratio >= self.WARNING_THRESHOLD:
            remaining = limit - usage.used
            logger.warning(
                f"Quota warning: {provider} at {usage_ratio*100:.1f}% "
                f"({remaining} remaining of {limit})"
            )

    def get_all_usage_stats(self) -> Dict[str, Dict]:
        """
        Get current-period usage statistics for every known provider.

        Known providers are the configured ones plus any with a counter this
        period.
        """
        from scanner.models import QuotaUsage

        period = self._get_period()
        records = {
            usage.provider: usage
            for usage in QuotaUsage.objects.filter(period=period)
        }

        stats = {}
        for provider in sorted(set(self._limits) | set(records)):
            usage = records.get(provider)
            if usage is not None:
                stats[provider] = {
                    "used": usage.used,
                    "limit": usage.limit,
                    "remaining": usage.remaining,
                    "percentage": round(usage.usage_percentage, 1),
                    "last_used": usage.last_used,
                    "period": period,
                }
            else:
                limit = self._default_limit(provider)
                stats[provider] = {
                    "used": 0,
                    "limit": limit,
                    "remaining": limit,
                    "percentage": 0,
                    "last_used": None,
                    "period": period,
                }

        return stats


# Global instance for easy access
_quota_manager: Optional[QuotaManager] = None


def get_quota_manager() -> QuotaManager:
    """Get the global QuotaManager instance."""
    global _quota_manager
    if _quota_manager is None:
        _quota_manager = QuotaManager()
    return _quota_manager

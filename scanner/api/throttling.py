"""
API throttling classes.

Rates come from REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"] by scope.
"""

from rest_framework.throttling import UserRateThrottle


class ScanTriggerThrottle(UserRateThrottle):
    """
    Throttle for endpoints that start provider work.

    Applied to: /api/v1/automation/trigger/
    """

    scope = 'scan_trigger'


class DiscoveryThrottle(UserRateThrottle):
    """
    Throttle for discovery, which scrapes several directories per call.

    Applied to: /api/v1/discovery/
    """

    scope = 'discovery'

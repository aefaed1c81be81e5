"""
Synthetic businesses returned when every discovery source fails.

Output is deterministic for a given location and always non-empty. Every
record is tagged with source_provider="sample" so it cannot be mistaken for
directory data.
"""

import re
from typing import List

from scanner.providers.base import DiscoveryResult

SAMPLE_PROVIDER = "sample"

BUSINESS_TYPES = [
    "Restaurant",
    "Cafe",
    "Hardware Store",
    "Bakery",
    "Auto Repair",
    "Dental Clinic",
    "Hair Salon",
    "Fitness Center",
    "Grocery Store",
    "Pharmacy",
    "Clothing Store",
    "Pet Store",
    "Bookstore",
    "Law Firm",
]

SAMPLE_SIZE = 10


def city_from_location(location: str) -> str:
    """First comma-separated part of a location, e.g. "Austin" from "Austin, TX"."""
    city = location.split(",")[0].strip()
    return city or location.strip() or "Sample"


def sample_businesses(location: str, count: int = SAMPLE_SIZE) -> List[DiscoveryResult]:
    """Generate count sample businesses named after the location's city."""
    city = city_from_location(location)
    results = []
    for business_type in BUSINESS_TYPES[:max(1, count)]:
        name = f"{city} {business_type}"
        results.append(DiscoveryResult(
            name=name,
            website=f"{re.sub(r'[^a-z0-9]', '', name.lower())}.com",
            source_provider=SAMPLE_PROVIDER,
        ))
    return results

"""
Discovery sources: business directories and the Google Places API.

Directory pages are fetched with httpx using browser-like headers and parsed
with generic listing selectors. The selectors are deliberately broad; each
directory changes its markup often and no site-specific parsing is kept.
"""

import logging
import random
import re
from typing import List, Optional
from urllib.parse import quote, quote_plus, unquote

import httpx
import requests
from bs4 import BeautifulSoup
from django.conf import settings

from scanner.providers.base import (
    DiscoveryResult,
    DiscoverySource,
    Fatal,
    ProviderResult,
    Retryable,
    Success,
    classify_http_status,
)

logger = logging.getLogger(__name__)

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]

LISTING_SELECTORS = [
    ".result",
    ".organic",
    ".business-listing",
    ".listing",
    ".business-card",
    ".serp-result",
    ".search-result",
    ".company-card",
    ".business-result",
    ".business",
    ".biz-listing",
    ".merchant",
    ".store-listing",
    ".directory-item",
    "article",
]

NAME_SELECTORS = [
    ".business-name",
    ".name",
    '[class*="name"]',
    '[class*="title"]',
    "h2",
    "h3",
    "h4",
    "strong",
]

WEBSITE_SELECTORS = [
    "a.track-visit-website",
    '[class*="website"]',
    'a[href*="website"]',
    'a[href*="http"]',
    "a.website",
]

PHONE_SELECTORS = [".phone", '[class*="phone"]', 'a[href^="tel:"]']

REDIRECT_TARGET = re.compile(r"(?:redirect=|website=|url=)(https?://[^&]+)", re.IGNORECASE)

MIN_PAGE_LENGTH = 1000
MAX_LISTINGS = 10


def browser_headers() -> dict:
    """Browser-like request headers with a rotated user agent."""
    return {
        "User-Agent": random.choice(USER_AGENTS),
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Referer": "https://www.google.com/",
        "Cache-Control": "max-age=0",
    }


def clean_website(href: Optional[str]) -> Optional[str]:
    """Resolve directory redirect links and strip scheme and trailing slash."""
    if not href:
        return None
    match = REDIRECT_TARGET.search(unquote(href))
    if match:
        website = match.group(1)
    elif href.startswith("http"):
        website = href
    else:
        return None
    website = re.sub(r"^https?://", "", website)
    return website.rstrip("/") or None


def _first(element, selectors):
    for selector in selectors:
        found = element.select_one(selector)
        if found is not None:
            return found
    return None


def parse_listings(html: str, source: str, limit: int = MAX_LISTINGS) -> List[DiscoveryResult]:
    """
    Extract businesses from a directory results page.

    Tries each listing selector until one matches, then falls back to any
    element whose class mentions business, listing, result or company.
    """
    soup = BeautifulSoup(html, "html.parser")

    elements = []
    for selector in LISTING_SELECTORS:
        elements = soup.select(selector)
        if elements:
            logger.debug(f"Selector '{selector}' matched {len(elements)} listings")
            break

    if not elements:
        elements = soup.select(
            '[class*="business"],[class*="listing"],[class*="result"],[class*="company"]'
        )

    results = []
    for element in elements[:limit]:
        name_el = _first(element, NAME_SELECTORS)
        name = name_el.get_text(strip=True) if name_el is not None else ""
        if not name:
            continue

        website_el = _first(element, WEBSITE_SELECTORS)
        website = clean_website(website_el.get("href")) if website_el is not None else None

        phone_el = _first(element, PHONE_SELECTORS)
        phone = phone_el.get_text(strip=True) if phone_el is not None else None

        results.append(DiscoveryResult(
            name=name,
            website=website,
            phone=phone or None,
            source_provider=source,
        ))

    return results


class DirectorySource(DiscoverySource):
    """Scrapes a directory's HTML search results."""

    DEFAULT_TIMEOUT = 10

    def __init__(self, client: Optional[httpx.Client] = None, timeout: Optional[float] = None):
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client if the source created it."""
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def attempt(self, variant: str, query: str) -> ProviderResult:
        logger.debug(f"Fetching {self.name} variant {variant}")
        response = self.client.get(variant, headers=browser_headers())

        failure = classify_http_status(response.status_code)
        if failure is not None:
            return failure

        html = response.text
        if len(html) < MIN_PAGE_LENGTH:
            # Usually a bot challenge or an interstitial
            return Retryable(f"Response too small ({len(html)} bytes)")

        listings = parse_listings(html, self.name)
        if not listings:
            return Fatal("No business listings found")

        logger.info(f"{self.name}: {len(listings)} listings from {variant}")
        return Success(listings)


class YellowPagesSource(DirectorySource):
    name = "yellowpages"

    def variants(self, query: str) -> List[str]:
        location = query.strip()
        encoded = quote(location, safe="")
        path_form = quote_plus(re.sub(r"\s+", " ", location.replace(",", " ")).strip())
        return [
            f"https://www.yellowpages.com/search?search_terms=businesses&geo_location_terms={encoded}",
            f"https://www.yellowpages.ca/search?search_terms=business&geo_location_terms={encoded}",
            f"https://www.yellowpages.ca/search/si/1/businesses/{path_form}",
        ]


class LocalStackSource(DirectorySource):
    name = "localstack"

    def variants(self, query: str) -> List[str]:
        location = query.strip()
        slug = re.sub(r"[,\s]+", "-", location.lower())
        return [
            f"https://localstack.com/search?q={quote(location, safe='')}&type=businesses",
            f"https://localstack.com/browse-businesses/{slug}",
        ]


class GooglePlacesSource(DiscoverySource):
    """
    Google Places text search, followed by a details lookup per place for
    the website. Every request, details lookups included, spends one unit of
    the run's quota reservation; once it is used up, remaining places keep
    their search data only.
    """

    name = "google_places"
    metered = True
    calls_per_attempt = 1 + MAX_LISTINGS

    SEARCH_URL = "https://maps.googleapis.com/maps/api/place/textsearch/json"
    DETAILS_URL = "https://maps.googleapis.com/maps/api/place/details/json"
    DEFAULT_TIMEOUT = 10

    RETRYABLE_STATUSES = {"OVER_QUERY_LIMIT", "UNKNOWN_ERROR"}

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None, session=None):
        self.api_key = api_key if api_key is not None else getattr(settings, "GOOGLE_MAPS_API_KEY", "")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._owns_session = session is None
        self.session = session or requests.Session()

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def variants(self, query: str) -> List[str]:
        location = query.strip()
        return [f"businesses in {location}", location]

    def attempt(self, variant: str, query: str) -> ProviderResult:
        if not self.api_key:
            return Fatal("GOOGLE_MAPS_API_KEY not configured")
        if not self.take_call():
            return self.quota_refused()

        response = self.session.get(
            self.SEARCH_URL,
            params={"query": variant, "key": self.api_key},
            timeout=self.timeout,
        )
        failure = classify_http_status(response.status_code)
        if failure is not None:
            return failure

        data = response.json()
        api_status = data.get("status")
        if api_status == "ZERO_RESULTS":
            return Fatal("No results")
        if api_status in self.RETRYABLE_STATUSES:
            return Retryable(
                f"Places API status {api_status}",
                rate_limited=api_status == "OVER_QUERY_LIMIT",
            )
        if api_status != "OK":
            return Fatal(f"Places API status {api_status}: {data.get('error_message', '')}".strip())

        results = []
        skipped_details = 0
        for place in (data.get("results") or [])[:MAX_LISTINGS]:
            if not place.get("name"):
                continue
            details = {}
            if place.get("place_id"):
                if self.take_call():
                    details = self._details(place["place_id"])
                else:
                    skipped_details += 1
            results.append(DiscoveryResult(
                name=details.get("name") or place["name"],
                website=clean_website(details.get("website")),
                phone=details.get("formatted_phone_number"),
                address=details.get("formatted_address") or place.get("formatted_address"),
                source_provider=self.name,
            ))

        if skipped_details:
            logger.warning(f"{self.name}: quota used up, skipped {skipped_details} details lookup(s)")
        if not results:
            return Fatal("No results")
        return Success(results)

    def _details(self, place_id: str) -> dict:
        """Place details; empty when the lookup fails."""
        try:
            response = self.session.get(
                self.DETAILS_URL,
                params={
                    "place_id": place_id,
                    "fields": "name,website,formatted_phone_number,formatted_address",
                    "key": self.api_key,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Places details lookup failed for {place_id}: {e}")
            return {}

        if response.status_code != 200:
            logger.warning(f"Places details lookup for {place_id} returned {response.status_code}")
            return {}

        data = response.json()
        if data.get("status") != "OK":
            return {}
        return data.get("result") or {}

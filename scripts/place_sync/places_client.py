#!/usr/bin/env python3
"""
Google Places (New) Text Search client
One rectangle-restricted search page per call, with retry on transient failures
"""
import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import ConfigurationError, FetchError
from .models import BoundingBox, ExternalRecord

logger = logging.getLogger(__name__)

SEARCH_TEXT_URL = "https://places.googleapis.com/v1/places:searchText"

FIELD_MASK = ','.join([
    'places.id',
    'places.displayName',
    'places.formattedAddress',
    'places.location',
    'places.rating',
    'places.userRatingCount',
    'places.primaryType',
    'places.websiteUri',
    'places.regularOpeningHours',
    'nextPageToken',
])

# Provider hard limit for maxResultCount
MAX_PAGE_SIZE = 20


class TransientFetchError(FetchError):
    """Connection error, rate limit or 5xx; safe to retry"""
    pass


@dataclass
class SearchPage:
    """One page of search results"""
    records: List[ExternalRecord] = field(default_factory=list)
    next_page_token: Optional[str] = None
    skipped: int = 0


class RateLimiter:
    """Minimum interval between requests, shared across worker threads"""

    def __init__(self, min_interval_s: float):
        self.min_interval_s = max(0.0, min_interval_s)
        self._lock = threading.Lock()
        self._last_request = 0.0

    def wait(self):
        with self._lock:
            now = time.monotonic()
            delay = self._last_request + self.min_interval_s - now
            if delay > 0:
                time.sleep(delay)
            self._last_request = time.monotonic()


class GooglePlacesClient:
    """Thin Places (New) Text Search client restricted to a bounding rectangle"""

    def __init__(self, api_key: Optional[str], search_query: str = "specialty coffee",
                 language_code: str = "en", page_size: int = MAX_PAGE_SIZE,
                 timeout_s: float = 30, session: Optional[requests.Session] = None,
                 rate_limiter: Optional[RateLimiter] = None):
        if not api_key:
            raise ConfigurationError("Missing GOOGLE_PLACES_API_KEY")
        self.api_key = api_key
        self.search_query = search_query
        self.language_code = language_code
        self.page_size = min(page_size, MAX_PAGE_SIZE)
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter
        self.requests_made = 0

    def _headers(self) -> Dict[str, str]:
        return {
            'Content-Type': 'application/json',
            'X-Goog-Api-Key': self.api_key,
            'X-Goog-FieldMask': FIELD_MASK,
        }

    def _body(self, bounds: BoundingBox, page_token: Optional[str]) -> Dict[str, Any]:
        body = {
            'textQuery': self.search_query,
            'languageCode': self.language_code,
            'locationRestriction': {'rectangle': bounds.to_rectangle()},
            'maxResultCount': self.page_size,
        }
        if page_token:
            body['pageToken'] = page_token
        return body

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(TransientFetchError),
        reraise=True,
    )
    def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if self.rate_limiter:
            self.rate_limiter.wait()
        self.requests_made += 1

        try:
            response = self.session.post(SEARCH_TEXT_URL, headers=self._headers(), json=body,
                                         timeout=self.timeout_s)
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.warning(f"Places request failed, will retry: {e}")
            raise TransientFetchError(str(e)) from e

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(f"Places API returned {response.status_code}, will retry")
            raise TransientFetchError(f"HTTP {response.status_code}")
        if not response.ok:
            raise FetchError(f"Places API error {response.status_code}: {response.text[:200]}")

        try:
            return response.json()
        except ValueError as e:
            raise FetchError(f"Places API returned invalid JSON: {e}") from e

    def search_page(self, bounds: BoundingBox, page_token: Optional[str] = None) -> SearchPage:
        """Fetch one page of text search results inside bounds"""
        data = self._post(self._body(bounds, page_token))

        page = SearchPage(next_page_token=data.get('nextPageToken'))
        for place in data.get('places', []):
            record = ExternalRecord.from_api(place)
            if record is None:
                page.skipped += 1
                continue
            page.records.append(record)

        if page.skipped:
            logger.debug(f"Skipped {page.skipped} results without id or location")
        return page

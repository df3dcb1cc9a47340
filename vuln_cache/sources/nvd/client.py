"""
NVD CVE API 2.0 client

One NvdCveClient walks one filtered query page by page using startIndex offsets.
NvdClientFactory holds what every query shares (HTTP session, API key, rate
limiter, base filters) and builds a client per query, which is how the windowed
source applies one publish-date window at a time.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter

from ..base import (
    HttpPagedSource,
    NVD_CVE_SCHEMA,
    Page,
    ParseException,
    RateLimiter,
    TransportException,
    later_of,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

NVD_API_URL = "https://services.nvd.nist.gov/rest/json/cves/2.0"
MAX_RESULTS_PER_PAGE = 2000
NVD_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S.000'


class Filter(Enum):
    """NVD query parameters that take a value"""
    CVE_ID = "cveId"
    CPE_NAME = "cpeName"
    CVSS_V2_METRICS = "cvssV2Metrics"
    CVSS_V3_METRICS = "cvssV3Metrics"
    CVSS_V2_SEVERITY = "cvssV2Severity"
    CVSS_V3_SEVERITY = "cvssV3Severity"
    KEYWORD_SEARCH = "keywordSearch"
    VIRTUAL_MATCH_STRING = "virtualMatchString"
    PUB_START_DATE = "pubStartDate"
    PUB_END_DATE = "pubEndDate"
    LAST_MOD_START_DATE = "lastModStartDate"
    LAST_MOD_END_DATE = "lastModEndDate"


class BooleanFilter(Enum):
    """NVD query parameters sent without a value"""
    HAS_CERT_ALERTS = "hasCertAlerts"
    HAS_CERT_NOTES = "hasCertNotes"
    HAS_KEV = "hasKev"
    HAS_OVAL = "hasOval"
    IS_VULNERABLE = "isVulnerable"
    KEYWORD_EXACT_MATCH = "keywordExactMatch"
    NO_REJECTED = "noRejected"


def format_nvd_date(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(NVD_DATE_FORMAT)


def date_range_filters(start: datetime, end: datetime, published: bool = True) -> Dict[str, str]:
    """Filter pair for a publish-date or last-modified range"""
    if published:
        return {Filter.PUB_START_DATE.value: format_nvd_date(start),
                Filter.PUB_END_DATE.value: format_nvd_date(end)}
    return {Filter.LAST_MOD_START_DATE.value: format_nvd_date(start),
            Filter.LAST_MOD_END_DATE.value: format_nvd_date(end)}


class NvdCveClient(HttpPagedSource):
    """Offset-paginated reader for one NVD CVE query"""

    def __init__(self, session: requests.Session, endpoint: str = NVD_API_URL,
                 filters: Optional[Dict[str, str]] = None, flags: Optional[List[str]] = None,
                 results_per_page: int = MAX_RESULTS_PER_PAGE, timeout: int = 120,
                 **kwargs):
        super().__init__("nvd", NVD_CVE_SCHEMA, **kwargs)
        if not 0 < results_per_page <= MAX_RESULTS_PER_PAGE:
            raise ValueError(f"results_per_page must be within 1..{MAX_RESULTS_PER_PAGE}")
        self.session = session
        self.endpoint = endpoint
        self.filters = dict(filters or {})
        self.flags = list(flags or [])
        self.results_per_page = results_per_page
        self.timeout = timeout

    def _query_url(self) -> str:
        if not self.flags:
            return self.endpoint
        separator = '&' if '?' in self.endpoint else '?'
        return self.endpoint + separator + '&'.join(self.flags)

    def _fetch(self, cursor: Optional[Any]) -> Page:
        start_index = cursor or 0
        params = dict(self.filters)
        params['startIndex'] = start_index
        params['resultsPerPage'] = self.results_per_page
        url = self._query_url()

        def request() -> Tuple[int, str]:
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
            except requests.RequestException as e:
                raise TransportException(f"Request failed: {e}", self.source_name, url=url) from e
            return response.status_code, response.text

        body = self._call(request, url)
        return self._parse(body, start_index)

    def _parse(self, body: str, start_index: int) -> Page:
        try:
            data = json.loads(body)
            vulnerabilities = data.get('vulnerabilities', [])
            total_results = int(data.get('totalResults', 0))
            watermark = parse_timestamp(data.get('timestamp'))
            for item in vulnerabilities:
                watermark = later_of(watermark, self.schema.last_modified(item))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ParseException(f"Unexpected NVD response: {e}", self.source_name,
                                 raw_data_sample=body) from e

        next_index = start_index + len(vulnerabilities)
        next_cursor = next_index if vulnerabilities and next_index < total_results else None
        self.logger.debug(f"Fetched {len(vulnerabilities)} CVEs at index {start_index} of {total_results}")
        return Page(records=vulnerabilities, status=200, next_cursor=next_cursor,
                    total_results=total_results, watermark=watermark)


class NvdClientFactory:
    """Builds NvdCveClient instances that share a session, key, limiter and base filters"""

    def __init__(self, api_key: Optional[str] = None, endpoint: str = NVD_API_URL,
                 rate_limiter: Optional[RateLimiter] = None,
                 cancel_event: Optional[threading.Event] = None,
                 filters: Optional[Dict[str, str]] = None, flags: Optional[List[str]] = None,
                 results_per_page: int = MAX_RESULTS_PER_PAGE, max_pages: int = 0,
                 max_retries: int = 0, timeout: int = 120, pool_size: int = 10,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key or None
        self.endpoint = endpoint
        self.rate_limiter = rate_limiter
        self.cancel_event = cancel_event
        self.filters = dict(filters or {})
        self.flags = list(flags or [])
        self.results_per_page = results_per_page
        self.max_pages = max_pages
        self.max_retries = max_retries
        self.timeout = timeout

        self._owns_session = session is None
        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
            session.mount('https://', adapter)
            session.mount('http://', adapter)
        session.headers.update({'User-Agent': 'vuln-cache/1.0', 'Accept': 'application/json'})
        if self.api_key:
            session.headers['apiKey'] = self.api_key
        else:
            logger.info("NVD_API_KEY not found. Supply an API key for more generous rate limits")
        self.session = session

    def build(self, extra_filters: Optional[Dict[str, str]] = None) -> NvdCveClient:
        filters = dict(self.filters)
        filters.update(extra_filters or {})
        return NvdCveClient(self.session, endpoint=self.endpoint, filters=filters, flags=self.flags,
                            results_per_page=self.results_per_page, timeout=self.timeout,
                            rate_limiter=self.rate_limiter, cancel_event=self.cancel_event,
                            max_pages=self.max_pages, max_retries=self.max_retries)

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

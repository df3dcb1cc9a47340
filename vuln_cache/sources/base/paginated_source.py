"""
Paged Data Source abstraction

Every upstream feed is consumed the same way: ask whether there is another page,
pull it, look at the last HTTP status and the newest modification time seen so far,
and close the source when done.

PagedDataSource is the capability set (a Protocol, any object with these methods
qualifies). HttpPagedSource is the shared state machine for sources where one page
is one upstream request:

    IDLE -> FETCHING -> PAGE_READY | EXHAUSTED | FAILED

FAILED and EXHAUSTED are terminal. A single non-200 answer fails the source,
whatever cursor state is left.
"""

import abc
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol, Tuple, runtime_checkable

from .exceptions import (
    SourceExhaustedException,
    TransportException,
    UpstreamRejectedException,
    VulnSourceException,
    RateLimitInterruptedException,
)
from .rate_limiter import RateLimiter
from .records import Record, RecordSchema

RETRYABLE_STATUS_CODES = (429, 503)


class SourceState(Enum):
    """Lifecycle of a paged source"""
    IDLE = "idle"
    FETCHING = "fetching"
    PAGE_READY = "page_ready"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


@dataclass
class Page:
    """One batch of records returned by a single upstream call"""
    records: List[Record]
    status: int = 200
    next_cursor: Optional[Any] = None
    total_results: int = 0
    watermark: Optional[datetime] = None


@dataclass
class FetchCursor:
    """Mutable pagination state owned by one source"""
    pending_cursor: Optional[Any] = None
    last_status: int = 200
    last_updated: Optional[datetime] = None
    total_seen: int = 0
    total_claimed: int = 0
    pages_fetched: int = 0


@runtime_checkable
class PagedDataSource(Protocol):
    """Capability set shared by every paged upstream source"""

    def has_next(self) -> bool: ...

    def next_page(self) -> Page: ...

    def last_status_code(self) -> int: ...

    def last_updated(self) -> Optional[datetime]: ...

    def close(self) -> None: ...


def later_of(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    """Monotonic watermark advance"""
    if candidate is None:
        return current
    if current is None or candidate > current:
        return candidate
    return current


class HttpPagedSource(abc.ABC):
    """Base class for sources where each page is one HTTP request"""

    def __init__(self, source_name: str, schema: RecordSchema,
                 rate_limiter: Optional[RateLimiter] = None,
                 cancel_event: Optional[threading.Event] = None,
                 max_pages: int = 0, max_retries: int = 0):
        """
        Args:
            source_name: Name used in logs and exceptions
            schema: Field accessors for the records this source returns
            rate_limiter: Limiter consulted before every request (None disables throttling)
            cancel_event: Shutdown signal; interrupts permit waits and retry backoff
            max_pages: Stop after this many pages (0 means no limit)
            max_retries: Extra attempts on transport errors, 429 and 503
        """
        self.source_name = source_name
        self.schema = schema
        self.rate_limiter = rate_limiter
        self.cancel_event = cancel_event
        self.max_pages = max_pages
        self.max_retries = max_retries
        self.state = SourceState.IDLE
        self.cursor = FetchCursor()
        self.logger = logging.getLogger(f"fetcher.{source_name}")

    @abc.abstractmethod
    def _fetch(self, cursor: Optional[Any]) -> Page:
        """
        Request the page that starts at `cursor` (None for the first page)

        Implementations issue their HTTP calls through _call() so that every
        request is rate limited and non-200 answers fail the source.
        """
        pass

    def has_next(self) -> bool:
        if self.cursor.last_status != 200:
            return False
        return self.state in (SourceState.IDLE, SourceState.PAGE_READY)

    def next_page(self) -> Page:
        """
        Fetch the next page

        Raises:
            SourceExhaustedException: If has_next() is False
            VulnSourceException: Any fetch failure; the source is FAILED afterwards
        """
        if not self.has_next():
            raise SourceExhaustedException(
                f"No more pages (state={self.state.value}, last status={self.cursor.last_status})",
                self.source_name)

        self.state = SourceState.FETCHING
        try:
            page = self._fetch(self.cursor.pending_cursor)
        except VulnSourceException:
            self.state = SourceState.FAILED
            raise
        self._advance(page)
        return page

    def last_status_code(self) -> int:
        return self.cursor.last_status

    def last_updated(self) -> Optional[datetime]:
        return self.cursor.last_updated

    def total_available(self) -> int:
        """Total the upstream claims to have for the current filter"""
        return self.cursor.total_claimed

    def close(self) -> None:
        pass

    def _advance(self, page: Page) -> None:
        cursor = self.cursor
        cursor.pages_fetched += 1
        cursor.total_seen += len(page.records)
        cursor.total_claimed = page.total_results
        cursor.last_updated = later_of(cursor.last_updated, page.watermark)
        cursor.pending_cursor = page.next_cursor

        if page.next_cursor is None:
            if cursor.total_seen < cursor.total_claimed:
                self.logger.warning(
                    f"Upstream claimed {cursor.total_claimed} records but only {cursor.total_seen} were returned")
            self.state = SourceState.EXHAUSTED
        elif not page.records:
            self.logger.warning(f"Empty page with a continuation cursor after {cursor.total_seen} records, stopping")
            self.state = SourceState.EXHAUSTED
        elif self.max_pages and cursor.pages_fetched >= self.max_pages:
            self.logger.info(f"Reached max page count ({self.max_pages})")
            self.state = SourceState.EXHAUSTED
        else:
            self.state = SourceState.PAGE_READY

    def _call(self, request: Callable[[], Tuple[int, str]], url: str) -> str:
        """
        Issue one rate-limited request and return the body of a 200 response

        Args:
            request: Performs the HTTP call and returns (status, body text)
            url: Used for diagnostics

        Raises:
            UpstreamRejectedException: Non-200 status (after retries, if enabled)
            TransportException: Connection or timeout failure (after retries, if enabled)
            RateLimitInterruptedException: Shutdown signalled while waiting
        """
        attempt = 0
        while True:
            if self.rate_limiter is not None:
                self.rate_limiter.acquire(self.cancel_event)
            try:
                status, body = request()
            except TransportException as e:
                if attempt < self.max_retries:
                    attempt += 1
                    self.logger.warning(f"Request attempt {attempt} failed: {e}")
                    self._backoff(attempt)
                    continue
                raise

            self.cursor.last_status = status
            if status == 200:
                return body
            if status in RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                attempt += 1
                self.logger.warning(f"HTTP {status} from {url}, retry {attempt}/{self.max_retries}")
                self.cursor.last_status = 200
                self._backoff(attempt)
                continue

            self.logger.error(f"HTTP {status} from {url}: {(body or '')[:200]}")
            raise UpstreamRejectedException(
                f"Upstream answered HTTP {status}", self.source_name,
                status_code=status, url=url, body=body)

    def _backoff(self, attempt: int) -> None:
        wait_time = 2 ** attempt
        if self.cancel_event is not None:
            if self.cancel_event.wait(wait_time):
                raise RateLimitInterruptedException("Interrupted during retry backoff", self.source_name)
        else:
            time.sleep(wait_time)

    def __iter__(self):
        return self

    def __next__(self) -> Page:
        if not self.has_next():
            raise StopIteration
        return self.next_page()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

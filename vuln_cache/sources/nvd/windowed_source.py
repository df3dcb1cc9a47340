"""
Windowed NVD source - one calendar year, fetched in bounded date windows

The NVD API refuses publish-date ranges longer than 120 days, so a year is split
into contiguous windows of at most MAX_SPAN_DAYS (115, under the hard limit) and
each window is drained through its own NvdCveClient.

As a paged source, each page is one whole window. fetch_year() drains every window,
deduplicates by CVE id (the most recently fetched copy wins) and sorts by id so
cache diffs are deterministic. A failing window stops the year but keeps what was
already gathered; fetch_years() moves on to the next year regardless.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from ..base import (
    Page,
    Record,
    SourceExhaustedException,
    SourceState,
    VulnSourceException,
    NVD_CVE_SCHEMA,
    later_of,
    utcnow,
)
from .client import NvdClientFactory, date_range_filters

logger = logging.getLogger(__name__)

MAX_SPAN_DAYS = 115
MAX_SPAN = timedelta(days=MAX_SPAN_DAYS)
# hard limit the NVD API enforces on any date range, including last-modified
NVD_MAX_RANGE = timedelta(days=120)

PageCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class DateWindow:
    """Half-open range [start, end) no longer than MAX_SPAN"""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"Window end {self.end} precedes start {self.start}")
        if self.end - self.start > MAX_SPAN:
            raise ValueError(f"Window {self.start} - {self.end} exceeds {MAX_SPAN_DAYS} days")

    @property
    def span(self) -> timedelta:
        return self.end - self.start


def compute_windows(year: int, now: Optional[datetime] = None,
                    max_span: timedelta = MAX_SPAN) -> List[DateWindow]:
    """
    Split a calendar year into contiguous publish-date windows

    Args:
        year: Calendar year (UTC)
        now: Current time; the last window of the current year ends here
        max_span: Longest allowed window

    Returns:
        Windows in chronological order; empty for a year that has not started
    """
    now = now or utcnow()
    start = datetime(year, 1, 1, tzinfo=timezone.utc)
    year_end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    windows = []
    while start < year_end and start <= now:
        end = min(start + max_span, year_end, now)
        if end <= start:
            break
        windows.append(DateWindow(start, end))
        start = end
    return windows


@dataclass
class YearFetchResult:
    """Outcome of fetching every window of one year"""
    year: int
    records: List[Record] = field(default_factory=list)
    last_updated: Optional[datetime] = None
    complete: bool = True
    status: int = 200
    windows_fetched: int = 0
    error: Optional[VulnSourceException] = None


class WindowedRecordSource:
    """Paged source over the date windows of one year"""

    def __init__(self, year: int, client_factory: NvdClientFactory,
                 modified_since: Optional[datetime] = None, now: Optional[datetime] = None,
                 on_page: Optional[PageCallback] = None):
        """
        Args:
            year: Calendar year to retrieve
            client_factory: Builds one NVD client per window
            modified_since: Only records last modified after this time (incremental mode)
            now: Processing time; defaults to the current UTC time
            on_page: Called with (records in page, total claimed) after every NVD page
        """
        self.year = year
        self.client_factory = client_factory
        self.now = now or utcnow()
        self.modified_since = modified_since
        self.on_page = on_page
        self.windows = compute_windows(year, self.now)
        self.schema = NVD_CVE_SCHEMA

        self.state = SourceState.IDLE
        self._index = 0
        self._last_status = 200
        self._last_updated = None
        self._partial: List[Record] = []
        self.error: Optional[VulnSourceException] = None

    def has_next(self) -> bool:
        if self._last_status != 200 or self.state == SourceState.FAILED:
            return False
        return self._index < len(self.windows)

    def next_page(self) -> Page:
        """Drain the next window and return all of its records as one page"""
        if not self.has_next():
            raise SourceExhaustedException(f"No more windows for {self.year}", "nvd")

        window = self.windows[self._index]
        filters = date_range_filters(window.start, window.end, published=True)
        if self.modified_since is not None:
            filters.update(date_range_filters(self.modified_since, self.now, published=False))

        logger.debug(f"Fetching {self.year} window {window.start.date()} - {window.end.date()}")
        self.state = SourceState.FETCHING
        records: List[Record] = []
        client = self.client_factory.build(filters)
        try:
            with client:
                for page in client:
                    records.extend(page.records)
                    if self.on_page is not None:
                        self.on_page(len(page.records), client.total_available())
        except VulnSourceException as e:
            self._last_status = client.last_status_code()
            self._partial = records
            self.error = e
            self.state = SourceState.FAILED
            raise

        self._index += 1
        self._last_updated = later_of(self._last_updated, client.last_updated())
        self.state = SourceState.PAGE_READY if self._index < len(self.windows) else SourceState.EXHAUSTED
        return Page(records=records, status=200,
                    next_cursor=self._index if self._index < len(self.windows) else None,
                    total_results=client.total_available(), watermark=client.last_updated())

    def last_status_code(self) -> int:
        return self._last_status

    def last_updated(self) -> Optional[datetime]:
        return self._last_updated

    def close(self) -> None:
        pass

    def fetch_year(self) -> YearFetchResult:
        """
        Drain every window of the year

        Returns:
            YearFetchResult with records unique by id and sorted by id. When a window
            fails the result is partial (complete=False) and carries the error.
        """
        by_id: Dict[str, Record] = {}
        result = YearFetchResult(year=self.year)
        try:
            while self.has_next():
                page = self.next_page()
                for record in page.records:
                    by_id[self.schema.record_id(record)] = record
                result.windows_fetched += 1
        except VulnSourceException as e:
            for record in self._partial:
                by_id[self.schema.record_id(record)] = record
            result.complete = False
            result.error = e
            logger.warning(f"⚠️ Year {self.year} stopped after {result.windows_fetched} of "
                           f"{len(self.windows)} windows: {e}")

        result.records = [by_id[key] for key in sorted(by_id)]
        result.status = self._last_status
        result.last_updated = self._last_updated
        return result

    def __iter__(self) -> Iterator[Page]:
        while self.has_next():
            yield self.next_page()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def fetch_years(client_factory: NvdClientFactory, years: Iterable[int],
                now: Optional[datetime] = None) -> Iterator[YearFetchResult]:
    """Full backfill across several years; a failed year never stops the rest"""
    for year in years:
        source = WindowedRecordSource(year, client_factory, now=now)
        yield source.fetch_year()

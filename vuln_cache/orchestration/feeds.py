"""
Feeds - how each upstream is asked for the records of one year shard

NvdFeed runs one windowed fetch per year, filtered by last-modified date when the
shard has a watermark. GhsaFeed cannot filter by publish year, so prepare() makes
a single cursor pass over every advisory updated since the oldest shard watermark
and fetch() hands each shard its slice of that pass. The pass is held in memory
until every shard has taken its slice; a slice is dropped once handed out.
"""

import abc
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..cache.sharded_cache import shard_key
from ..sources.base import (
    GHSA_SCHEMA,
    NVD_CVE_SCHEMA,
    PagedDataSource,
    Record,
    RecordSchema,
    VulnSourceException,
)
from ..sources.nvd import NVD_MAX_RANGE, NvdClientFactory, WindowedRecordSource

logger = logging.getLogger(__name__)

PageCallback = Callable[[int, int], None]


def _ignore_page(count: int, total: int) -> None:
    pass


@dataclass
class FeedResult:
    """Records fetched for one shard"""
    records: List[Record] = field(default_factory=list)
    watermark: Optional[datetime] = None
    complete: bool = True
    status: int = 200
    error: Optional[VulnSourceException] = None
    reason: Optional[str] = None


class Feed(abc.ABC):
    """One upstream as seen by the orchestrator"""

    name: str = "feed"
    schema: RecordSchema = NVD_CVE_SCHEMA
    # oldest watermark an incremental fetch can start from; None means no limit
    max_lookback: Optional[timedelta] = None

    def prepare(self, watermarks: Dict[str, Optional[datetime]], now: datetime,
                on_page: PageCallback = _ignore_page) -> None:
        """Called once before the shards are refreshed"""
        pass

    @abc.abstractmethod
    def fetch(self, shard: str, modified_since: Optional[datetime], now: datetime,
              on_page: PageCallback = _ignore_page) -> FeedResult:
        """
        Fetch the records of one year shard

        Args:
            shard: Year shard key
            modified_since: Only records changed after this time; None for a full fetch
            now: Processing time
            on_page: Called with (records in page, total claimed) after every page

        Returns:
            FeedResult; failures are reported in it rather than raised
        """
        pass

    def close(self) -> None:
        pass


class NvdFeed(Feed):
    """Per-year windowed fetch from the NVD CVE API"""

    name = "nvd"
    schema = NVD_CVE_SCHEMA
    max_lookback = NVD_MAX_RANGE

    def __init__(self, client_factory: NvdClientFactory):
        self.client_factory = client_factory

    def fetch(self, shard: str, modified_since: Optional[datetime], now: datetime,
              on_page: PageCallback = _ignore_page) -> FeedResult:
        source = WindowedRecordSource(int(shard), self.client_factory, modified_since=modified_since,
                                      now=now, on_page=on_page)
        with source:
            year = source.fetch_year()
        return FeedResult(records=year.records, watermark=year.last_updated, complete=year.complete,
                          status=year.status, error=year.error,
                          reason=str(year.error) if year.error is not None else None)

    def close(self) -> None:
        self.client_factory.close()


class GhsaFeed(Feed):
    """Single cursor pass over GitHub advisories, partitioned by publish year"""

    name = "ghsa"
    schema = GHSA_SCHEMA
    max_lookback = None

    def __init__(self, source_factory: Callable[[Optional[datetime]], PagedDataSource]):
        """
        Args:
            source_factory: Builds an advisory source given the updatedSince filter
        """
        self.source_factory = source_factory
        self.updated_since: Optional[datetime] = None
        self.watermark: Optional[datetime] = None
        self.status = 200
        self.error: Optional[VulnSourceException] = None
        self._partitions: Dict[str, Dict[str, Record]] = {}
        self._prepared = False

    def prepare(self, watermarks: Dict[str, Optional[datetime]], now: datetime,
                on_page: PageCallback = _ignore_page) -> None:
        known = list(watermarks.values())
        if not known or any(watermark is None for watermark in known):
            self.updated_since = None
            logger.info("🔄 Fetching every advisory (at least one shard has no watermark)")
        else:
            self.updated_since = min(known)
            logger.info(f"🔄 Fetching advisories updated since {self.updated_since.isoformat()}")

        loaded = 0
        source = self.source_factory(self.updated_since)
        try:
            with source:
                while source.has_next():
                    page = source.next_page()
                    for record in page.records:
                        self._add(record)
                    loaded += len(page.records)
                    on_page(len(page.records), page.total_results)
        except VulnSourceException as e:
            self.error = e
            logger.error(f"❌ Advisory pass stopped after {loaded} advisories: {e}")
        self.status = source.last_status_code()
        self.watermark = source.last_updated()
        self._prepared = True
        logger.info(f"Advisory pass returned {loaded} advisories across {len(self._partitions)} shards")

    def _add(self, record: Record) -> None:
        try:
            key = shard_key(self.schema, record)
        except ValueError as e:
            logger.warning(f"Skipping advisory without a publish date: {e}")
            return
        self._partitions.setdefault(key, {})[self.schema.record_id(record)] = record

    def fetch(self, shard: str, modified_since: Optional[datetime], now: datetime,
              on_page: PageCallback = _ignore_page) -> FeedResult:
        if not self._prepared:
            raise RuntimeError("GhsaFeed.prepare() must run before fetch()")

        records = []
        # each shard's slice is handed out once and then released
        for record in self._partitions.pop(shard, {}).values():
            updated = self.schema.last_modified(record)
            if modified_since is None or updated is None or updated > modified_since:
                records.append(record)

        if self.error is not None:
            return FeedResult(records=records, complete=False, status=self.status,
                              error=self.error, reason=str(self.error))
        if modified_since is None and self.updated_since is not None:
            # the pass was incremental, so it cannot rebuild this shard from scratch
            return FeedResult(records=records, complete=False, status=self.status,
                              reason=f"advisory pass only covered updates since {self.updated_since.isoformat()}")
        return FeedResult(records=records, watermark=self.watermark, status=self.status)

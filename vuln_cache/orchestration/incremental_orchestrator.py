"""
Incremental cache refresh

OBJECTIVE:
Bring every year shard of a cache directory up to date with one upstream feed,
then rebuild the "modified" shard from the records changed in the last 7 days.

FLOW (per year shard, oldest first):
1. Stop if shutdown was signalled; remaining shards are reported SKIPPED
2. Find the prior watermark (cache metadata, then the sidecar); none when the
   sidecar marks an unfinished full fetch
3. Load the prior artifact; an unreadable one means a full fetch
4. Fetch changes since the watermark, or everything when there is none or it is
   older than the feed's maximum lookback
5. Merge, persist, and advance the shard watermark when the fetch was complete
6. Collect recently modified records for the "modified" shard

A failed shard is logged and skipped. A cache write failure stops the run.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from ..cache import MODIFIED_KEY, CacheMetadata, Shard, ShardedCache, year_shard_keys
from ..sources.base import CacheIOException, Record, format_timestamp, utcnow
from .feeds import Feed, FeedResult
from .progress import ProgressReporter

logger = logging.getLogger(__name__)

ALL_SHARDS = "all"


class ShardOutcome(Enum):
    """How a shard refresh ended"""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ShardResult:
    """Result of refreshing one shard"""
    shard: str
    outcome: ShardOutcome
    fetched: int = 0
    stored: int = 0
    watermark: Optional[datetime] = None
    full_fetch: bool = False
    reason: Optional[str] = None


@dataclass
class RefreshReport:
    """Complete refresh result"""
    feed: str
    start_time: datetime
    end_time: Optional[datetime] = None
    shards: List[ShardResult] = field(default_factory=list)

    def _year_results(self) -> List[ShardResult]:
        return [result for result in self.shards if result.shard != MODIFIED_KEY]

    def count(self, outcome: ShardOutcome) -> int:
        return sum(1 for result in self.shards if result.outcome == outcome)

    @property
    def success(self) -> bool:
        """True when at least one year shard was stored"""
        return any(result.outcome in (ShardOutcome.SUCCESS, ShardOutcome.PARTIAL)
                   for result in self._year_results())

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def summary(self) -> str:
        duration = ((self.end_time or utcnow()) - self.start_time).total_seconds()
        lines = [
            f"{self.feed} cache refresh {'succeeded' if self.success else 'FAILED'} in {duration:.1f}s",
            f"  shards: {self.count(ShardOutcome.SUCCESS)} ok, {self.count(ShardOutcome.PARTIAL)} partial, "
            f"{self.count(ShardOutcome.FAILED)} failed, {self.count(ShardOutcome.SKIPPED)} skipped",
        ]
        for result in self.shards:
            if result.outcome == ShardOutcome.SUCCESS:
                continue
            line = f"  {result.shard}: {result.outcome.value}"
            if result.reason:
                line += f" ({result.reason})"
            lines.append(line)
        return '\n'.join(lines)


class IncrementalOrchestrator:
    """
    Refreshes the year shards of one cache directory from one feed

    Only one orchestrator may run against a cache directory at a time; nothing
    here enforces it.
    """

    def __init__(self, feed: Feed, cache: ShardedCache, metadata: CacheMetadata,
                 shutdown_event: Optional[threading.Event] = None,
                 progress: Optional[ProgressReporter] = None,
                 now: Optional[datetime] = None):
        """
        Args:
            feed: Upstream to fetch from
            cache: On-disk shards
            metadata: Watermark store, saved at the end of the run
            shutdown_event: Checked between shards; set by signal handlers
            progress: Receives (shard, loaded, total) after every page
            now: Processing time; defaults to the current UTC time
        """
        self.feed = feed
        self.cache = cache
        self.metadata = metadata
        self.shutdown_event = shutdown_event or threading.Event()
        self.progress = progress or ProgressReporter()
        self.now = now

    def run(self) -> RefreshReport:
        """
        Refresh every year shard, then the "modified" shard

        Raises:
            CacheIOException: If a shard or the metadata cannot be written
        """
        now = self.now or utcnow()
        report = RefreshReport(feed=self.feed.name, start_time=utcnow())
        keys = year_shard_keys(now)
        if self.metadata.prefix is None:
            self.metadata.prefix = self.cache.prefix

        logger.info(f"🚀 Refreshing {len(keys)} {self.feed.name} shards in {self.cache.directory}")
        watermarks = {key: self._prior_watermark(key) for key in keys}

        if not self.shutdown_event.is_set():
            self.feed.prepare(watermarks, now, self._page_counter(ALL_SHARDS))
            self.progress.finish(ALL_SHARDS)

        recent: List[Record] = []
        for key in keys:
            if self.shutdown_event.is_set():
                self._skip(report, key)
                continue
            report.shards.append(self._refresh_shard(key, watermarks[key], now, recent))

        if self.shutdown_event.is_set():
            self._skip(report, MODIFIED_KEY)
        else:
            modified = self.cache.build_modified_shard(recent, now)
            self.cache.persist(modified)
            report.shards.append(ShardResult(shard=MODIFIED_KEY, outcome=ShardOutcome.SUCCESS,
                                             stored=len(modified), watermark=modified.last_modified))
            logger.info(f"Stored {len(modified)} recently modified records across all years")

        self.metadata.save()
        self.progress.close()
        report.end_time = utcnow()

        log = logger.info if report.success else logger.error
        log(report.summary())
        return report

    def _skip(self, report: RefreshReport, key: str) -> None:
        logger.warning(f"⏭️ Skipping shard {key}: shutdown requested")
        report.shards.append(ShardResult(shard=key, outcome=ShardOutcome.SKIPPED, reason="shutdown"))

    def _prior_watermark(self, key: str) -> Optional[datetime]:
        """Last successful watermark of a shard whose artifact still exists and is complete"""
        if not self.cache.artifact_path(key).exists():
            return None
        try:
            sidecar = self.cache.read_sidecar(key)
        except CacheIOException as e:
            logger.warning(f"⚠️ Ignoring unreadable sidecar for {key}: {e}")
            sidecar = None
        if sidecar is not None and not sidecar.complete:
            logger.info(f"Shard {key} was stored from an unfinished full fetch; fetching it again in full")
            return None
        watermark = self.metadata.get_watermark(key)
        if watermark is not None:
            return watermark
        return sidecar.last_modified if sidecar is not None else None

    def _page_counter(self, key: str):
        loaded = 0

        def on_page(count: int, total: int) -> None:
            nonlocal loaded
            loaded += count
            self.progress.update(key, loaded, max(loaded, total))

        return on_page

    def _refresh_shard(self, key: str, watermark: Optional[datetime], now: datetime,
                       recent: List[Record]) -> ShardResult:
        logger.info(f"📅 Processing shard {key}")

        try:
            prior = self.cache.load(key)
        except CacheIOException as e:
            logger.warning(f"⚠️ No usable prior cache for {key}, fetching everything: {e}")
            self.metadata.clear_watermark(key)
            prior = None
            watermark = None
        if prior is None:
            watermark = None

        modified_since = watermark
        lookback = self.feed.max_lookback
        if modified_since is not None and lookback is not None and now - modified_since > lookback:
            logger.warning(f"⚠️ Shard {key} was last updated {format_timestamp(modified_since)}, more than "
                           f"{lookback.days} days ago; falling back to a full fetch")
            modified_since = None

        if modified_since is not None:
            logger.info(f"Fetching {key} changes since {format_timestamp(modified_since)}")
        fetched = self.feed.fetch(key, modified_since, now, self._page_counter(key))
        self.progress.finish(key)

        if not fetched.complete and not fetched.records:
            reason = fetched.reason or f"HTTP {fetched.status}"
            logger.error(f"❌ Shard {key} failed: {reason}")
            if prior is not None:
                recent.extend(self.cache.recent_records(prior.records.values(), now))
            return ShardResult(shard=key, outcome=ShardOutcome.FAILED, full_fetch=modified_since is None,
                               reason=reason)

        merged = self._merge(key, prior, fetched, now)
        if not fetched.complete and modified_since is None:
            # an unfinished full fetch leaves gaps no incremental range can fill
            merged.complete = False
            self.metadata.clear_watermark(key)
        self.cache.persist(merged)
        recent.extend(self.cache.recent_records(merged.records.values(), now))

        if fetched.complete:
            self.metadata.set_watermark(merged.last_modified, key)
            logger.info(f"✅ Shard {key}: {len(fetched.records)} fetched, {len(merged)} stored")
            return ShardResult(shard=key, outcome=ShardOutcome.SUCCESS, fetched=len(fetched.records),
                               stored=len(merged), watermark=merged.last_modified,
                               full_fetch=modified_since is None)

        logger.warning(f"⚠️ Shard {key} stored partially ({len(fetched.records)} fetched); "
                       f"its watermark stays put so the next run retries it")
        return ShardResult(shard=key, outcome=ShardOutcome.PARTIAL, fetched=len(fetched.records),
                           stored=len(merged), watermark=merged.last_modified,
                           full_fetch=modified_since is None, reason=fetched.reason)

    def _merge(self, key: str, prior: Optional[Shard], fetched: FeedResult, now: datetime) -> Shard:
        merged = self.cache.merge(key, prior, fetched.records,
                                  fetched.watermark if fetched.complete else None, now)
        if not fetched.complete and prior is not None and prior.last_modified is not None:
            merged.last_modified = prior.last_modified
        return merged

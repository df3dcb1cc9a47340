"""
vuln-cache command line

    vuln-cache nvd  --cache-dir DIR [--prefix P]    incremental NVD CVE cache
    vuln-cache ghsa --cache-dir DIR [--prefix P]    incremental GitHub advisory cache
    vuln-cache nvd  --last-mod-start 2024-01-01     stream matching CVEs to stdout as JSON

Exit status: 0 on success, 1 on failure, 2 when a stream ended on a non-200 response.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

from .cache import (
    DEFAULT_GHSA_PREFIX,
    DEFAULT_NVD_PREFIX,
    METADATA_FILE_NAME,
    CacheMetadata,
    ShardedCache,
)
from .core import Settings, load_settings, setup_logging
from .orchestration import (
    GhsaFeed,
    IncrementalOrchestrator,
    NvdFeed,
    ProgressReporter,
    TqdmProgressReporter,
)
from .sources.base import (
    CacheIOException,
    ConfigException,
    GHSA_SCHEMA,
    NVD_CVE_SCHEMA,
    RateLimiter,
    Record,
    VulnSourceException,
    format_timestamp,
    parse_timestamp,
)
from .sources.github import GraphQLAdvisorySource
from .sources.nvd import BooleanFilter, Filter, NvdClientFactory, date_range_filters

logger = logging.getLogger(__name__)

# ranges given with only a start are closed this far out, the NVD maximum
DEFAULT_RANGE = timedelta(days=120)

NVD_VALUE_OPTIONS = {
    'cve_id': Filter.CVE_ID,
    'cpe_name': Filter.CPE_NAME,
    'keyword_search': Filter.KEYWORD_SEARCH,
    'cvss_v2_metrics': Filter.CVSS_V2_METRICS,
    'cvss_v3_metrics': Filter.CVSS_V3_METRICS,
    'cvss_v2_severity': Filter.CVSS_V2_SEVERITY,
    'cvss_v3_severity': Filter.CVSS_V3_SEVERITY,
    'virtual_match_string': Filter.VIRTUAL_MATCH_STRING,
}

NVD_FLAG_OPTIONS = {
    'keyword_exact_match': BooleanFilter.KEYWORD_EXACT_MATCH,
    'has_cert_alerts': BooleanFilter.HAS_CERT_ALERTS,
    'has_cert_notes': BooleanFilter.HAS_CERT_NOTES,
    'has_kev': BooleanFilter.HAS_KEV,
    'has_oval': BooleanFilter.HAS_OVAL,
    'is_vulnerable': BooleanFilter.IS_VULNERABLE,
    'no_rejected': BooleanFilter.NO_REJECTED,
}


def parse_date(value: str) -> datetime:
    try:
        return parse_timestamp(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid date '{value}': {e}")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--cache-dir", help="Maintain an incremental cache in this directory "
                                            "(without it, records are streamed to stdout)")
    parser.add_argument("--prefix", help="Cache file name prefix")
    parser.add_argument("--interactive", action="store_true", help="Show progress bars")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--records-per-page", type=int, help="Records requested per page")
    parser.add_argument("--page-count", type=int, help="Stop after this many pages (0 = no limit)")
    parser.add_argument("--threads", type=int, help="HTTP connection pool size")
    parser.add_argument("--max-retries", type=int, help="Retries on transport errors, 429 and 503")
    parser.add_argument("--delay", type=int, help="Milliseconds between requests, overriding the rate limit")
    parser.add_argument("--pretty", action="store_true", help="Indent streamed JSON")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vuln-cache",
                                     description="Mirror NVD CVEs and GitHub security advisories to disk.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    nvd = subparsers.add_parser("nvd", help="NVD CVE API 2.0")
    _add_common_arguments(nvd)
    nvd.add_argument("--api-key", help="NVD API key (default: NVD_API_KEY)")
    nvd.add_argument("--last-mod-start", type=parse_date, help="Last modified on or after")
    nvd.add_argument("--last-mod-end", type=parse_date, help="Last modified before (default: start + 120 days)")
    nvd.add_argument("--pub-start", type=parse_date, help="Published on or after")
    nvd.add_argument("--pub-end", type=parse_date, help="Published before (default: start + 120 days)")
    nvd.add_argument("--cve-id")
    nvd.add_argument("--cpe-name")
    nvd.add_argument("--keyword-search")
    nvd.add_argument("--cvss-v2-metrics")
    nvd.add_argument("--cvss-v3-metrics")
    nvd.add_argument("--cvss-v2-severity", choices=["LOW", "MEDIUM", "HIGH"])
    nvd.add_argument("--cvss-v3-severity", choices=["LOW", "MEDIUM", "HIGH", "CRITICAL"])
    nvd.add_argument("--virtual-match-string")
    for option in NVD_FLAG_OPTIONS:
        nvd.add_argument("--" + option.replace('_', '-'), action="store_true")
    nvd.set_defaults(handler=run_nvd)

    ghsa = subparsers.add_parser("ghsa", help="GitHub Security Advisories (GraphQL)")
    _add_common_arguments(ghsa)
    ghsa.add_argument("--token", help="GitHub token (default: GITHUB_TOKEN)")
    ghsa.add_argument("--updated-since", type=parse_date, help="Advisories updated on or after")
    ghsa.add_argument("--published-since", type=parse_date, help="Advisories published on or after")
    ghsa.add_argument("--classification", action="append", choices=["GENERAL", "MALWARE"],
                      dest="classifications", help="Repeat to select several")
    ghsa.set_defaults(handler=run_ghsa)

    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    overrides: Dict[str, Any] = {}
    for option, key in (('records_per_page', 'RESULTS_PER_PAGE'), ('page_count', 'MAX_PAGE_COUNT'),
                        ('threads', 'THREAD_COUNT'), ('max_retries', 'MAX_RETRIES'),
                        ('delay', 'DELAY_MS'), ('cache_dir', 'CACHE_DIRECTORY'),
                        ('api_key', 'NVD_API_KEY'), ('token', 'GITHUB_TOKEN')):
        value = getattr(args, option, None)
        if value is not None:
            overrides[key] = value
    if args.debug:
        overrides['LOG_LEVEL'] = 'DEBUG'
    return load_settings(**overrides)


def install_signal_handlers(shutdown: threading.Event) -> None:
    """SIGINT and SIGTERM ask the current run to stop at the next safe point"""
    def handler(signum, frame):
        logger.warning(f"Received {signal.Signals(signum).name}, shutting down after the current step")
        shutdown.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


class JsonStreamWriter:
    """Writes {"<key>": [records...], "results": {...}} without holding every record in memory"""

    def __init__(self, out: TextIO, key: str, pretty: bool = False):
        self.out = out
        self.key = key
        self.indent = 2 if pretty else None
        self.count = 0

    def _newline(self, depth: int) -> str:
        return '\n' + ' ' * (self.indent * depth) if self.indent else ''

    def _dump(self, value: Any, depth: int) -> str:
        text = json.dumps(value, indent=self.indent)
        if self.indent:
            text = text.replace('\n', self._newline(depth))
        return text

    def open(self) -> None:
        self.out.write('{' + self._newline(1) + json.dumps(self.key) + ': [')

    def write(self, records: List[Record]) -> None:
        for record in records:
            self.out.write((',' if self.count else '') + self._newline(2) + self._dump(record, 2))
            self.count += 1

    def close(self, results: Dict[str, Any]) -> None:
        closing = self._newline(1) if self.count else ''
        self.out.write(closing + '],' + self._newline(1) + '"results": ' + self._dump(results, 1))
        self.out.write(self._newline(0) + '}\n')
        self.out.flush()


def stream_pages(source, writer: JsonStreamWriter, progress: ProgressReporter, label: str) -> int:
    """Drain a paged source into the writer; returns the exit status"""
    success = True
    reason = None
    loaded = 0
    writer.open()
    try:
        with source:
            while source.has_next():
                page = source.next_page()
                writer.write(page.records)
                loaded += len(page.records)
                progress.update(label, loaded, max(loaded, page.total_results))
    except VulnSourceException as e:
        success = False
        reason = str(e)
        logger.error(f"❌ Stream stopped after {loaded} records: {e}")
    finally:
        progress.close()

    last_updated = source.last_updated()
    writer.close({
        'success': success,
        'count': writer.count,
        'lastModifiedDate': format_timestamp(last_updated) if last_updated else None,
        'reason': reason,
    })
    if success:
        return 0
    return 2 if source.last_status_code() != 200 else 1


def _closed_range(start: Optional[datetime], end: Optional[datetime],
                  option: str) -> Optional[tuple]:
    if start is None:
        if end is not None:
            raise ConfigException(f"--{option}-end requires --{option}-start", config_key=option)
        return None
    return start, end or start + DEFAULT_RANGE


def _nvd_base_filters(args: argparse.Namespace):
    filters = {}
    for option, name in NVD_VALUE_OPTIONS.items():
        value = getattr(args, option)
        if value:
            filters[name.value] = value
    flags = [name.value for option, name in NVD_FLAG_OPTIONS.items() if getattr(args, option)]
    return filters, flags


def _progress(args: argparse.Namespace, unit: str) -> ProgressReporter:
    return TqdmProgressReporter(unit=unit) if args.interactive else ProgressReporter()


def _refresh(orchestrator: IncrementalOrchestrator, feed) -> int:
    try:
        report = orchestrator.run()
    except CacheIOException as e:
        logger.error(f"❌ Cache write failed, aborting: {e}")
        return 1
    finally:
        feed.close()
    return report.exit_code


def _load_metadata(directory: Path, feed_name: str) -> CacheMetadata:
    file_name = f"{feed_name}_{METADATA_FILE_NAME}"
    try:
        return CacheMetadata.load(directory, file_name)
    except CacheIOException as e:
        logger.warning(f"⚠️ Cache metadata unusable, falling back to sidecars: {e}")
        return CacheMetadata(directory, file_name)


def run_nvd(args: argparse.Namespace, settings: Settings, shutdown: threading.Event) -> int:
    filters, flags = _nvd_base_filters(args)
    last_mod = _closed_range(args.last_mod_start, args.last_mod_end, "last-mod")
    published = _closed_range(args.pub_start, args.pub_end, "pub")
    if settings.CACHE_DIRECTORY and (last_mod or published):
        raise ConfigException("Date ranges cannot be combined with --cache-dir", config_key="cache-dir")
    if last_mod:
        filters.update(date_range_filters(*last_mod, published=False))
    if published:
        filters.update(date_range_filters(*published, published=True))

    quantity, duration = settings.nvd_rate_limit()
    factory = NvdClientFactory(
        api_key=settings.NVD_API_KEY,
        endpoint=settings.NVD_ENDPOINT,
        rate_limiter=RateLimiter(quantity, duration, name="nvd"),
        cancel_event=shutdown,
        filters=filters,
        flags=flags,
        results_per_page=settings.RESULTS_PER_PAGE,
        max_pages=settings.MAX_PAGE_COUNT,
        max_retries=settings.MAX_RETRIES,
        timeout=settings.REQUEST_TIMEOUT,
        pool_size=settings.THREAD_COUNT,
    )

    if not settings.CACHE_DIRECTORY:
        try:
            writer = JsonStreamWriter(sys.stdout, "cves", pretty=args.pretty)
            return stream_pages(factory.build(), writer, _progress(args, "cves"), "cves")
        finally:
            factory.close()

    directory = Path(settings.CACHE_DIRECTORY)
    metadata = _load_metadata(directory, "nvd")
    if args.prefix:
        metadata.prefix = args.prefix
    prefix = metadata.prefix or settings.CACHE_PREFIX or DEFAULT_NVD_PREFIX
    cache = ShardedCache(directory, prefix=prefix, schema=NVD_CVE_SCHEMA)
    feed = NvdFeed(factory)
    orchestrator = IncrementalOrchestrator(feed, cache, metadata, shutdown_event=shutdown,
                                           progress=_progress(args, "cves"))
    return _refresh(orchestrator, feed)


def run_ghsa(args: argparse.Namespace, settings: Settings, shutdown: threading.Event) -> int:
    if not settings.GITHUB_TOKEN:
        raise ConfigException("A GitHub token is required (GITHUB_TOKEN or --token)", config_key="GITHUB_TOKEN")
    if settings.CACHE_DIRECTORY and (args.updated_since or args.published_since):
        raise ConfigException("--updated-since/--published-since cannot be combined with --cache-dir",
                              config_key="cache-dir")

    quantity, duration = settings.github_rate_limit()
    rate_limiter = RateLimiter(quantity, duration, name="ghsa")

    def build_source(updated_since: Optional[datetime]) -> GraphQLAdvisorySource:
        return GraphQLAdvisorySource(
            github_token=settings.GITHUB_TOKEN,
            endpoint=settings.GITHUB_GRAPHQL_ENDPOINT,
            updated_since=updated_since,
            published_since=args.published_since,
            classifications=args.classifications,
            timeout=settings.REQUEST_TIMEOUT,
            pool_size=settings.THREAD_COUNT,
            rate_limiter=rate_limiter,
            cancel_event=shutdown,
            max_pages=settings.MAX_PAGE_COUNT,
            max_retries=settings.MAX_RETRIES,
        )

    if not settings.CACHE_DIRECTORY:
        writer = JsonStreamWriter(sys.stdout, "advisories", pretty=args.pretty)
        return stream_pages(build_source(args.updated_since), writer, _progress(args, "advisories"),
                            "advisories")

    directory = Path(settings.CACHE_DIRECTORY)
    metadata = _load_metadata(directory, "ghsa")
    if args.prefix:
        metadata.prefix = args.prefix
    prefix = metadata.prefix or settings.GHSA_CACHE_PREFIX or DEFAULT_GHSA_PREFIX
    cache = ShardedCache(directory, prefix=prefix, schema=GHSA_SCHEMA)
    feed = GhsaFeed(build_source)
    orchestrator = IncrementalOrchestrator(feed, cache, metadata, shutdown_event=shutdown,
                                           progress=_progress(args, "advisories"))
    return _refresh(orchestrator, feed)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = settings_from_args(args)
    except ConfigException as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    shutdown = threading.Event()
    install_signal_handlers(shutdown)

    try:
        return args.handler(args, settings, shutdown)
    except ConfigException as e:
        logger.error(f"❌ Configuration error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

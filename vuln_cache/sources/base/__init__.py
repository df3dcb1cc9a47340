"""
Base Infrastructure for the paged vulnerability sources

Key Components:
- RateLimiter: sliding-window throttle consulted before every request
- PagedDataSource / HttpPagedSource: pagination capability set and state machine
- RecordSchema: where a feed keeps a record's id and timestamps
- Exceptions: error taxonomy shared by sources, cache and orchestrator

Related Files:
- sources/nvd and sources/github implement HttpPagedSource
- cache/ and orchestration/ consume the pages
"""

from .exceptions import (
    VulnSourceException,
    FetchException,
    TransportException,
    UpstreamRejectedException,
    RateLimitInterruptedException,
    SourceExhaustedException,
    ParseException,
    ConfigException,
    CacheIOException,
)
from .rate_limiter import RateLimiter
from .records import (
    Record,
    RecordSchema,
    NVD_CVE_SCHEMA,
    GHSA_SCHEMA,
    parse_timestamp,
    format_timestamp,
    utcnow,
)
from .paginated_source import (
    SourceState,
    Page,
    FetchCursor,
    PagedDataSource,
    HttpPagedSource,
    later_of,
)

__all__ = [
    'VulnSourceException',
    'FetchException',
    'TransportException',
    'UpstreamRejectedException',
    'RateLimitInterruptedException',
    'SourceExhaustedException',
    'ParseException',
    'ConfigException',
    'CacheIOException',
    'RateLimiter',
    'Record',
    'RecordSchema',
    'NVD_CVE_SCHEMA',
    'GHSA_SCHEMA',
    'parse_timestamp',
    'format_timestamp',
    'utcnow',
    'SourceState',
    'Page',
    'FetchCursor',
    'PagedDataSource',
    'HttpPagedSource',
    'later_of',
]

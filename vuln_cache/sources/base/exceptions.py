"""
Custom Exceptions for the Vulnerability Cache

Purpose: Standardized error handling across both upstream feeds and the on-disk cache
Usage: Paged sources, the sharded cache and the orchestrator raise these exceptions
Related Files: sources/base/paginated_source.py, cache/sharded_cache.py, orchestration/

Exception Hierarchy:
- VulnSourceException (base)
  ├── FetchException (data retrieval errors)
  │   ├── TransportException (connection / timeout failures)
  │   └── UpstreamRejectedException (non-200 HTTP status)
  ├── RateLimitInterruptedException (shutdown while waiting for a permit)
  ├── SourceExhaustedException (next page requested from a finished source)
  ├── ParseException (response does not match the expected schema)
  ├── ConfigException (configuration errors)
  └── CacheIOException (artifact / sidecar read or write failures)
"""

from typing import Optional


class VulnSourceException(Exception):
    """Base exception for all vulnerability source operations"""

    def __init__(self, message: str, source_name: str = None, details: dict = None):
        self.source_name = source_name
        self.details = details or {}
        super().__init__(message)

    def __str__(self):
        if self.source_name:
            return f"[{self.source_name}] {super().__str__()}"
        return super().__str__()


class FetchException(VulnSourceException):
    """Raised when data fetching fails"""

    def __init__(self, message: str, source_name: str = None,
                 status_code: int = None, url: str = None, **kwargs):
        self.status_code = status_code
        self.url = url
        details = {'status_code': status_code, 'url': url, **kwargs}
        super().__init__(message, source_name, details)


class TransportException(FetchException):
    """Raised when the connection fails or times out before a response arrives"""


class UpstreamRejectedException(FetchException):
    """Raised when the upstream answers with anything other than HTTP 200"""

    def __init__(self, message: str, source_name: str = None,
                 status_code: int = None, url: str = None, body: Optional[str] = None, **kwargs):
        self.body = body
        super().__init__(message, source_name, status_code=status_code, url=url,
                         body=_truncate(body), **kwargs)


class RateLimitInterruptedException(VulnSourceException):
    """Raised when shutdown is signalled while waiting on the rate limiter"""


class SourceExhaustedException(VulnSourceException):
    """Raised when next_page() is called on a source with no further pages"""


class ParseException(VulnSourceException):
    """Raised when data parsing fails"""

    def __init__(self, message: str, source_name: str = None,
                 raw_data_sample: str = None, **kwargs):
        self.raw_data_sample = _truncate(raw_data_sample)
        details = {'raw_data_sample': self.raw_data_sample, **kwargs}
        super().__init__(message, source_name, details)


class ConfigException(VulnSourceException):
    """Raised when configuration is invalid"""

    def __init__(self, message: str, source_name: str = None,
                 config_key: str = None, **kwargs):
        self.config_key = config_key
        details = {'config_key': config_key, **kwargs}
        super().__init__(message, source_name, details)


class CacheIOException(VulnSourceException):
    """Raised when a cache artifact or sidecar cannot be read or written"""

    def __init__(self, message: str, path=None, **kwargs):
        self.path = str(path) if path is not None else None
        details = {'path': self.path, **kwargs}
        super().__init__(message, None, details)


def _truncate(text: Optional[str], limit: int = 500) -> Optional[str]:
    if text is None or len(text) <= limit:
        return text
    return text[:limit] + '...'

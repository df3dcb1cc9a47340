"""
On-disk cache: year-sharded gzip artifacts with integrity sidecars, plus the
metadata file that remembers each shard's watermark between runs.
"""

from .metadata import CacheMetadata, METADATA_FILE_NAME, WATERMARK_KEY, PREFIX_KEY
from .sharded_cache import (
    DEFAULT_GHSA_PREFIX,
    DEFAULT_NVD_PREFIX,
    EARLIEST_YEAR,
    MODIFIED_KEY,
    RECENT_DAYS,
    RECENT_WINDOW,
    Shard,
    ShardedCache,
    SidecarInfo,
    shard_key,
    year_shard_keys,
)

__all__ = [
    'CacheMetadata',
    'METADATA_FILE_NAME',
    'WATERMARK_KEY',
    'PREFIX_KEY',
    'DEFAULT_GHSA_PREFIX',
    'DEFAULT_NVD_PREFIX',
    'EARLIEST_YEAR',
    'MODIFIED_KEY',
    'RECENT_DAYS',
    'RECENT_WINDOW',
    'Shard',
    'ShardedCache',
    'SidecarInfo',
    'shard_key',
    'year_shard_keys',
]

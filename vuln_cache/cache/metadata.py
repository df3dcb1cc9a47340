"""
Cache metadata - the small key/value file that lives next to the shards

Keys:
    prefix                       artifact file name prefix the cache was built with
    lastModifiedDate             most recent watermark across all shards
    lastModifiedDate.<shard>     last successful watermark of one shard

Created on the first run, read and updated on every run, never deleted.
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from ..sources.base import CacheIOException, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

METADATA_FILE_NAME = "cache_metadata.json"
WATERMARK_KEY = "lastModifiedDate"
PREFIX_KEY = "prefix"


class CacheMetadata:
    """Persisted key/value store for per-shard watermarks and cache settings"""

    def __init__(self, directory: Path, file_name: str = METADATA_FILE_NAME):
        self.directory = Path(directory)
        self.path = self.directory / file_name
        self._values: Dict[str, str] = {}

    @classmethod
    def load(cls, directory: Path, file_name: str = METADATA_FILE_NAME) -> "CacheMetadata":
        """
        Read the metadata file if it exists

        Raises:
            CacheIOException: If the file exists but cannot be read or parsed
        """
        metadata = cls(directory, file_name)
        if not metadata.path.exists():
            logger.info(f"No cache metadata at {metadata.path}, starting fresh")
            return metadata
        try:
            with open(metadata.path, 'r', encoding='utf-8') as f:
                values = json.load(f)
        except (OSError, ValueError) as e:
            raise CacheIOException(f"Unable to read cache metadata: {e}", path=metadata.path) from e
        if not isinstance(values, dict):
            raise CacheIOException("Cache metadata is not a JSON object", path=metadata.path)
        metadata._values = {str(k): str(v) for k, v in values.items()}
        return metadata

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._values.get(key, default)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def has(self, key: str) -> bool:
        return key in self._values

    @property
    def prefix(self) -> Optional[str]:
        return self.get(PREFIX_KEY)

    @prefix.setter
    def prefix(self, value: str) -> None:
        self.set(PREFIX_KEY, value)

    def get_watermark(self, shard: Optional[str] = None) -> Optional[datetime]:
        """Watermark of one shard, or the overall watermark when shard is None"""
        key = WATERMARK_KEY if shard is None else f"{WATERMARK_KEY}.{shard}"
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return parse_timestamp(raw)
        except ValueError:
            logger.warning(f"Ignoring unparseable watermark {key}={raw!r}")
            return None

    def set_watermark(self, value: datetime, shard: Optional[str] = None) -> None:
        """
        Record a watermark; the overall watermark only ever moves forward

        Args:
            value: New watermark
            shard: Shard key, or None for the overall watermark only
        """
        if shard is not None:
            self.set(f"{WATERMARK_KEY}.{shard}", format_timestamp(value))
        current = self.get_watermark()
        if current is None or value > current:
            self.set(WATERMARK_KEY, format_timestamp(value))

    def clear_watermark(self, shard: str) -> None:
        """Forget a shard's watermark so its next refresh is a full fetch"""
        self._values.pop(f"{WATERMARK_KEY}.{shard}", None)

    def as_dict(self) -> Dict[str, str]:
        return dict(self._values)

    def save(self) -> None:
        """
        Write the metadata atomically

        Raises:
            CacheIOException: If the file cannot be written
        """
        temp_name = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(prefix=self.path.name + '.', suffix='.tmp',
                                             dir=str(self.directory))
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self._values, f, indent=2, sort_keys=True)
                f.write('\n')
            os.replace(temp_name, self.path)
        except OSError as e:
            if temp_name is not None and os.path.exists(temp_name):
                os.remove(temp_name)
            raise CacheIOException(f"Unable to write cache metadata: {e}", path=self.path) from e
        logger.debug(f"Saved cache metadata to {self.path}")

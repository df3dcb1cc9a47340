"""
Year-sharded on-disk cache

Each shard is a pair of files in the cache directory:

    <prefix><key>.json.gz   gzip of the JSON envelope holding the shard's records
    <prefix><key>.meta      sidecar with watermark, sizes and SHA-256 of the JSON

Keys are publish years ("2002" .. current year) plus "modified", which holds the
records changed in the last 7 days across every year. Serialization is
deterministic (gzip mtime 0, no embedded file name, fixed separators), so writing
the same records twice gives byte-identical artifacts. Files are written to a
temporary name in the same directory and renamed into place.
"""

import gzip
import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..sources.base import (
    CacheIOException,
    NVD_CVE_SCHEMA,
    Record,
    RecordSchema,
    format_timestamp,
    later_of,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

EARLIEST_YEAR = 2002
MODIFIED_KEY = "modified"
RECENT_DAYS = 7
RECENT_WINDOW = timedelta(days=RECENT_DAYS)

DEFAULT_NVD_PREFIX = "nvdcve-"
DEFAULT_GHSA_PREFIX = "ghsa-"

ARTIFACT_SUFFIX = ".json.gz"
SIDECAR_SUFFIX = ".meta"
JSON_SEPARATORS = (',', ':')


def shard_key(schema: RecordSchema, record: Record) -> str:
    """Publish year of the record; anything before EARLIEST_YEAR folds into it"""
    published = schema.published(record)
    if published is None:
        raise ValueError(f"Record {schema.record_id(record)} has no publish date")
    return str(max(published.year, EARLIEST_YEAR))


def year_shard_keys(now: Optional[datetime] = None) -> List[str]:
    """Year shard keys from EARLIEST_YEAR through the current year, oldest first"""
    now = now or utcnow()
    return [str(year) for year in range(EARLIEST_YEAR, now.year + 1)]


@dataclass
class Shard:
    """In-memory shard: unique records keyed by id plus a watermark"""
    key: str
    records: Dict[str, Record] = field(default_factory=dict)
    last_modified: Optional[datetime] = None
    # False when stored from a full fetch that stopped early
    complete: bool = True

    def sorted_records(self) -> List[Record]:
        return [self.records[record_id] for record_id in sorted(self.records)]

    def __len__(self) -> int:
        return len(self.records)


@dataclass
class SidecarInfo:
    """Parsed .meta file"""
    last_modified: Optional[datetime]
    size: int
    gz_size: int
    sha256: str
    complete: bool = True


class _DigestingWriter:
    """Encodes text into a binary stream while counting bytes and hashing them"""

    def __init__(self, stream):
        self.stream = stream
        self.size = 0
        self.digest = hashlib.sha256()

    def write(self, text: str) -> None:
        data = text.encode('utf-8')
        self.digest.update(data)
        self.size += len(data)
        self.stream.write(data)

    def hexdigest(self) -> str:
        return self.digest.hexdigest()


class ShardedCache:
    """Sole reader and writer of the artifact + sidecar pairs in one cache directory"""

    def __init__(self, directory: Path, prefix: str = DEFAULT_NVD_PREFIX,
                 schema: RecordSchema = NVD_CVE_SCHEMA):
        """
        Args:
            directory: Cache directory; created on first write
            prefix: Artifact file name prefix
            schema: Accessors for the id and timestamps of cached records
        """
        self.directory = Path(directory)
        self.prefix = prefix
        self.schema = schema

    def artifact_path(self, key: str) -> Path:
        return self.directory / f"{self.prefix}{key}{ARTIFACT_SUFFIX}"

    def sidecar_path(self, key: str) -> Path:
        return self.directory / f"{self.prefix}{key}{SIDECAR_SUFFIX}"

    def shard_key_for(self, record: Record) -> str:
        return shard_key(self.schema, record)

    def partition(self, records: Iterable[Record]) -> Dict[str, List[Record]]:
        """Group records by shard key"""
        partitions: Dict[str, List[Record]] = {}
        for record in records:
            partitions.setdefault(self.shard_key_for(record), []).append(record)
        return partitions

    def load(self, key: str) -> Optional[Shard]:
        """
        Hydrate a shard from its artifact

        Returns:
            The shard, or None if no artifact exists

        Raises:
            CacheIOException: If the artifact exists but is unreadable or corrupt
        """
        path = self.artifact_path(key)
        if not path.exists():
            return None
        try:
            with gzip.open(path, 'rt', encoding='utf-8') as f:
                envelope = json.load(f)
            items = envelope['vulnerabilities']
            records = {self.schema.record_id(record): record for record in items}
            last_modified = parse_timestamp(envelope.get('timestamp'))
        except (OSError, EOFError, ValueError, KeyError, TypeError) as e:
            raise CacheIOException(f"Unable to read cache artifact: {e}", path=path) from e

        logger.debug(f"Loaded {len(records)} records from {path.name}")
        return Shard(key=key, records=records, last_modified=last_modified)

    def read_sidecar(self, key: str) -> Optional[SidecarInfo]:
        """
        Parse the .meta file of a shard

        Raises:
            CacheIOException: If the sidecar exists but cannot be parsed
        """
        path = self.sidecar_path(key)
        if not path.exists():
            return None
        values: Dict[str, str] = {}
        try:
            with open(path, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    name, _, value = line.partition(':')
                    values[name] = value
            return SidecarInfo(
                last_modified=parse_timestamp(values.get('lastModifiedDate')),
                size=int(values['size']),
                gz_size=int(values['gzSize']),
                sha256=values['sha256'],
                complete=values.get('complete', 'true') != 'false',
            )
        except (OSError, ValueError, KeyError) as e:
            raise CacheIOException(f"Unable to read sidecar: {e}", path=path) from e

    def compute_watermark(self, records: Iterable[Record],
                          fetch_watermark: Optional[datetime] = None,
                          prior_watermark: Optional[datetime] = None,
                          now: Optional[datetime] = None) -> datetime:
        """Latest of member modification times, fetch and prior watermarks; now if none"""
        watermark = later_of(prior_watermark, fetch_watermark)
        for record in records:
            watermark = later_of(watermark, self.schema.last_modified(record))
        return watermark or now or utcnow()

    def merge(self, key: str, prior: Optional[Shard], fresh: Iterable[Record],
              fetch_watermark: Optional[datetime] = None,
              now: Optional[datetime] = None) -> Shard:
        """
        Combine a prior shard with freshly fetched records

        Fresh records replace prior ones with the same id; prior-only records are
        kept unchanged. The merged watermark never falls below the prior one.
        """
        combined: Dict[str, Record] = dict(prior.records) if prior is not None else {}
        for record in fresh:
            combined[self.schema.record_id(record)] = record
        ordered = {record_id: combined[record_id] for record_id in sorted(combined)}

        prior_watermark = prior.last_modified if prior is not None else None
        watermark = self.compute_watermark(ordered.values(), fetch_watermark, prior_watermark, now)
        return Shard(key=key, records=ordered, last_modified=watermark)

    def recent_records(self, records: Iterable[Record], now: Optional[datetime] = None) -> List[Record]:
        """Records modified within RECENT_DAYS of `now`"""
        cutoff = (now or utcnow()) - RECENT_WINDOW
        recent = []
        for record in records:
            last_modified = self.schema.last_modified(record)
            if last_modified is not None and last_modified >= cutoff:
                recent.append(record)
        return recent

    def build_modified_shard(self, records: Iterable[Record], now: Optional[datetime] = None) -> Shard:
        """The "modified" shard: recent records from every year, watermarked at processing time"""
        now = now or utcnow()
        members = {self.schema.record_id(record): record for record in self.recent_records(records, now)}
        ordered = {record_id: members[record_id] for record_id in sorted(members)}
        return Shard(key=MODIFIED_KEY, records=ordered, last_modified=now)

    def envelope(self, shard: Shard) -> Dict:
        records = shard.sorted_records()
        return {
            'resultsPerPage': len(records),
            'startIndex': 0,
            'totalResults': len(records),
            'format': self.schema.format,
            'version': self.schema.version,
            'timestamp': format_timestamp(shard.last_modified or utcnow()),
            'vulnerabilities': records,
        }

    def persist(self, shard: Shard) -> SidecarInfo:
        """
        Write the shard's artifact and sidecar atomically

        Raises:
            CacheIOException: If either file cannot be written; no temp file is left behind
        """
        if shard.last_modified is None:
            shard.last_modified = utcnow()
        artifact = self.artifact_path(shard.key)
        sidecar = self.sidecar_path(shard.key)
        encoder = json.JSONEncoder(separators=JSON_SEPARATORS, ensure_ascii=False)

        artifact_tmp = sidecar_tmp = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, artifact_tmp = tempfile.mkstemp(prefix=artifact.name + '.', suffix='.tmp',
                                                dir=str(self.directory))
            with os.fdopen(fd, 'wb') as raw:
                with gzip.GzipFile(filename='', mode='wb', fileobj=raw, mtime=0) as gz:
                    writer = _DigestingWriter(gz)
                    for chunk in encoder.iterencode(self.envelope(shard)):
                        writer.write(chunk)

            info = SidecarInfo(last_modified=shard.last_modified, size=writer.size,
                               gz_size=os.path.getsize(artifact_tmp), sha256=writer.hexdigest(),
                               complete=shard.complete)

            fd, sidecar_tmp = tempfile.mkstemp(prefix=sidecar.name + '.', suffix='.tmp',
                                               dir=str(self.directory))
            with os.fdopen(fd, 'w', encoding='utf-8', newline='\n') as f:
                f.write(self.format_sidecar(info))

            os.replace(artifact_tmp, artifact)
            artifact_tmp = None
            os.replace(sidecar_tmp, sidecar)
            sidecar_tmp = None
        except (OSError, TypeError, ValueError) as e:
            for temp_name in (artifact_tmp, sidecar_tmp):
                if temp_name is not None and os.path.exists(temp_name):
                    os.remove(temp_name)
            raise CacheIOException(f"Unable to write shard {shard.key}: {e}", path=artifact) from e

        logger.info(f"💾 Saved {len(shard)} records to {artifact.name} "
                    f"({info.gz_size} bytes, watermark {format_timestamp(shard.last_modified)})")
        return info

    @staticmethod
    def format_sidecar(info: SidecarInfo) -> str:
        lines = [
            f"lastModifiedDate:{format_timestamp(info.last_modified)}",
            f"size:{info.size}",
            f"gzSize:{info.gz_size}",
            f"sha256:{info.sha256}",
        ]
        if not info.complete:
            lines.append("complete:false")
        return '\n'.join(lines) + '\n'

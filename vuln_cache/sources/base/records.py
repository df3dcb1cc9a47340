"""
Record schemas for the upstream feeds

Records stay as the plain JSON dictionaries the upstream returned; their layout is
defined by the feed, not by this package. A RecordSchema only knows where to find
the three fields the cache engine relies on: id, published and last-modified.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

Record = Dict[str, Any]


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an upstream ISO-8601 timestamp into an aware UTC datetime"""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        # NVD omits the offset; its timestamps are UTC
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 rendering used in envelopes, sidecars and cache metadata"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RecordSchema:
    """Field accessors for one upstream record format"""
    name: str
    format: str
    version: str
    id_of: Callable[[Record], str]
    published_raw: Callable[[Record], Optional[str]]
    last_modified_raw: Callable[[Record], Optional[str]]

    def record_id(self, record: Record) -> str:
        return self.id_of(record)

    def published(self, record: Record) -> Optional[datetime]:
        return parse_timestamp(self.published_raw(record))

    def last_modified(self, record: Record) -> Optional[datetime]:
        return parse_timestamp(self.last_modified_raw(record))


NVD_CVE_SCHEMA = RecordSchema(
    name='nvd',
    format='NVD_CVE',
    version='2.0',
    id_of=lambda r: r['cve']['id'],
    published_raw=lambda r: r['cve'].get('published'),
    last_modified_raw=lambda r: r['cve'].get('lastModified'),
)

GHSA_SCHEMA = RecordSchema(
    name='ghsa',
    format='GHSA',
    version='1.0',
    id_of=lambda r: r['ghsaId'],
    published_raw=lambda r: r.get('publishedAt'),
    last_modified_raw=lambda r: r.get('updatedAt'),
)

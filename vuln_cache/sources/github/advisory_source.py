"""
GitHub Security Advisory source (GraphQL API)

Advisories are read with cursor pagination over `securityAdvisories`. Each
advisory embeds its first 50 CWEs and first 100 affected-package entries; when
either list is longer, follow-up queries scoped to the advisory's ghsaId page
through the rest and the edges are spliced back into the advisory before the
page is handed out.

Query documents are Jinja2 templates shipped in templates/. HTTP goes through
aiohttp on an event loop owned by the source, so callers see a blocking
next_page() like every other paged source.
"""

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from jinja2 import Environment, FileSystemLoader

from ..base import (
    GHSA_SCHEMA,
    HttpPagedSource,
    Page,
    ParseException,
    Record,
    TransportException,
    later_of,
)

GITHUB_GRAPHQL_URL = "https://api.github.com/graphql"
TEMPLATE_DIR = Path(__file__).parent / "templates"

ADVISORIES_TEMPLATE = "securityAdvisories.graphql.j2"
CWES_TEMPLATE = "securityAdvisoryCwes.graphql.j2"
VULNERABILITIES_TEMPLATE = "securityAdvisoryVulnerabilities.graphql.j2"

CWE_PAGE_SIZE = 50
VULNERABILITY_PAGE_SIZE = 100

# sub-list field -> (follow-up template, embedded page size)
SUB_LISTS = {
    'cwes': (CWES_TEMPLATE, CWE_PAGE_SIZE),
    'vulnerabilities': (VULNERABILITIES_TEMPLATE, VULNERABILITY_PAGE_SIZE),
}

CANCEL_POLL_SECONDS = 0.1


def format_github_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def create_template_environment() -> Environment:
    """Jinja2 environment over the bundled GraphQL documents"""
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


class GraphQLAdvisorySource(HttpPagedSource):
    """Cursor-paginated reader for GitHub security advisories"""

    def __init__(self, github_token: Optional[str] = None, endpoint: str = GITHUB_GRAPHQL_URL,
                 updated_since: Optional[datetime] = None,
                 published_since: Optional[datetime] = None,
                 classifications: Optional[List[str]] = None,
                 timeout: int = 30, pool_size: int = 10, **kwargs):
        """
        Args:
            github_token: Personal access token; sent as a bearer token
            endpoint: GraphQL endpoint
            updated_since: Only advisories updated at or after this time
            published_since: Only advisories published at or after this time
            classifications: e.g. ["GENERAL", "MALWARE"]; None leaves the API default
            timeout: Total seconds allowed per HTTP request
            pool_size: Connection pool limit for the aiohttp connector
            **kwargs: rate_limiter, cancel_event, max_pages, max_retries
        """
        super().__init__("ghsa", GHSA_SCHEMA, **kwargs)
        self.endpoint = endpoint
        self.updated_since = updated_since
        self.published_since = published_since
        self.classifications = list(classifications or [])
        self.timeout = timeout
        self.pool_size = pool_size
        self.templates = create_template_environment()

        self.headers = {
            'User-Agent': 'vuln-cache/1.0',
            'Content-Type': 'application/json',
        }
        if github_token:
            self.headers['Authorization'] = f'bearer {github_token}'
        else:
            self.logger.warning("⚠️ No GitHub token configured - the GraphQL API will likely reject requests")

        self._loop = asyncio.new_event_loop()
        self._session: Optional[aiohttp.ClientSession] = None

    def render(self, template_name: str, **variables) -> str:
        return self.templates.get_template(template_name).render(**variables)

    def _query_variables(self, after: Optional[str]) -> Dict[str, Any]:
        variables: Dict[str, Any] = {'after': after}
        if self.updated_since is not None:
            variables['updatedSince'] = format_github_date(self.updated_since)
        if self.published_since is not None:
            variables['publishedSince'] = format_github_date(self.published_since)
        if self.classifications:
            variables['classifications'] = self.classifications
        return variables

    def _fetch(self, cursor: Optional[Any]) -> Page:
        document = self.render(ADVISORIES_TEMPLATE, **self._query_variables(cursor))
        data = self._query(document)

        try:
            connection = data['securityAdvisories']
            nodes = connection['nodes'] or []
            total_count = int(connection['totalCount'])
            page_info = connection.get('pageInfo') or {}
        except (KeyError, TypeError, ValueError) as e:
            raise ParseException(f"Unexpected securityAdvisories payload: {e}", self.source_name,
                                 raw_data_sample=json.dumps(data)[:500]) from e

        self._ensure_sub_pages(nodes)

        watermark = None
        for advisory in nodes:
            watermark = later_of(watermark, self.schema.last_modified(advisory))

        running_count = self.cursor.total_seen + len(nodes)
        next_cursor = None
        if nodes and (page_info.get('hasNextPage') or running_count < total_count):
            next_cursor = page_info.get('endCursor')

        self.logger.debug(f"Fetched {len(nodes)} advisories ({running_count}/{total_count})")
        return Page(records=nodes, status=200, next_cursor=next_cursor,
                    total_results=total_count, watermark=watermark)

    def _ensure_sub_pages(self, advisories: List[Record]) -> None:
        for advisory in advisories:
            for field_name, (template_name, page_size) in SUB_LISTS.items():
                connection = advisory.get(field_name)
                if not connection:
                    continue
                page_info = connection.get('pageInfo') or {}
                if page_info.get('hasNextPage') or connection.get('totalCount', 0) > page_size:
                    self._complete_sub_list(advisory, field_name, template_name, page_size)

    def _complete_sub_list(self, advisory: Record, field_name: str,
                           template_name: str, page_size: int) -> None:
        """Page through the rest of an embedded connection and splice the edges in place"""
        ghsa_id = self.schema.record_id(advisory)
        connection = advisory[field_name]
        edges = connection.setdefault('edges', [])
        total = connection.get('totalCount', 0)
        after = (connection.get('pageInfo') or {}).get('endCursor')
        count = len(edges)

        self.logger.debug(f"Retrieving additional {field_name} for {ghsa_id} ({total} total)")
        while count < total:
            document = self.render(template_name, ghsaId=ghsa_id, after=after)
            data = self._query(document)
            try:
                sub = data['securityAdvisory'][field_name]
                more = sub.get('edges') or []
                sub_info = sub.get('pageInfo') or {}
            except (KeyError, TypeError) as e:
                raise ParseException(f"Unexpected {field_name} payload for {ghsa_id}: {e}",
                                     self.source_name, raw_data_sample=json.dumps(data)[:500]) from e

            if not more:
                self.logger.warning(f"Follow-up for {ghsa_id} {field_name} returned no edges at {count}/{total}")
                break
            edges.extend(more)
            count += len(more)
            after = sub_info.get('endCursor')
            if not sub_info.get('hasNextPage'):
                break

        connection['pageInfo'] = {'hasNextPage': False, 'endCursor': after}

    def _query(self, document: str) -> Dict[str, Any]:
        """POST one GraphQL document and return its `data` object"""
        body = self._call(lambda: self._post(document), self.endpoint)
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise ParseException(f"Invalid JSON from GraphQL API: {e}", self.source_name,
                                 raw_data_sample=body) from e

        if not isinstance(payload, dict):
            raise ParseException("GraphQL response is not an object", self.source_name,
                                 raw_data_sample=body)
        if payload.get('errors'):
            messages = '; '.join(str(error.get('message', error)) if isinstance(error, dict) else str(error)
                                 for error in payload['errors'])
            raise ParseException(f"GraphQL errors: {messages}", self.source_name, raw_data_sample=body)
        if not isinstance(payload.get('data'), dict):
            raise ParseException("GraphQL response has no data", self.source_name, raw_data_sample=body)
        return payload['data']

    def _post(self, document: str) -> Tuple[int, str]:
        return self._loop.run_until_complete(self._send(document))

    async def _send(self, document: str) -> Tuple[int, str]:
        request = asyncio.ensure_future(self._execute(document))
        if self.cancel_event is None:
            return await request
        while not request.done():
            if self.cancel_event.is_set():
                request.cancel()
                await asyncio.wait({request})
                raise TransportException("Request abandoned on shutdown", self.source_name,
                                         url=self.endpoint)
            await asyncio.wait({request}, timeout=CANCEL_POLL_SECONDS)
        return request.result()

    async def _execute(self, document: str) -> Tuple[int, str]:
        """One HTTP round trip; returns (status, body text)"""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                connector=aiohttp.TCPConnector(limit=self.pool_size),
            )
        try:
            async with self._session.post(self.endpoint, json={'query': document}) as response:
                return response.status, await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportException(f"Request failed: {e}", self.source_name, url=self.endpoint) from e

    def close(self) -> None:
        if self._loop.is_closed():
            return
        if self._session is not None:
            self._loop.run_until_complete(self._session.close())
            self._session = None
        self._loop.close()

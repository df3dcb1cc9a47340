"""
Shared pytest fixtures for vuln_cache tests.

This module provides:
- NVD CVE and GitHub advisory record factories
- NVD / GraphQL response body builders
- A mock requests.Session whose answers are scripted per test

No test touches the network.
"""

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

UTC = timezone.utc


# =============================================================================
# Record factories
# =============================================================================


def make_nvd_record(cve_id: str, published: str = "2023-03-01T10:00:00.000",
                    last_modified: Optional[str] = None) -> Dict[str, Any]:
    return {
        "cve": {
            "id": cve_id,
            "sourceIdentifier": "cve@mitre.org",
            "published": published,
            "lastModified": last_modified or published,
            "vulnStatus": "Analyzed",
            "descriptions": [{"lang": "en", "value": f"Description of {cve_id}"}],
        }
    }


def make_advisory(ghsa_id: str, published: str = "2023-03-01T10:00:00Z",
                  updated: Optional[str] = None, cwe_edges: int = 1,
                  cwe_total: Optional[int] = None, vulnerability_edges: int = 1,
                  vulnerability_total: Optional[int] = None) -> Dict[str, Any]:
    cwe_total = cwe_edges if cwe_total is None else cwe_total
    vulnerability_total = vulnerability_edges if vulnerability_total is None else vulnerability_total
    return {
        "id": f"node-{ghsa_id}",
        "ghsaId": ghsa_id,
        "summary": f"Advisory {ghsa_id}",
        "severity": "HIGH",
        "publishedAt": published,
        "updatedAt": updated or published,
        "withdrawnAt": None,
        "identifiers": [{"type": "GHSA", "value": ghsa_id}],
        "cwes": {
            "totalCount": cwe_total,
            "pageInfo": {"hasNextPage": cwe_total > cwe_edges, "endCursor": f"cwe-{cwe_edges}"},
            "edges": cwe_edges_for(0, cwe_edges),
        },
        "vulnerabilities": {
            "totalCount": vulnerability_total,
            "pageInfo": {"hasNextPage": vulnerability_total > vulnerability_edges,
                         "endCursor": f"vuln-{vulnerability_edges}"},
            "edges": vulnerability_edges_for(0, vulnerability_edges),
        },
    }


def cwe_edges_for(start: int, count: int) -> List[Dict[str, Any]]:
    return [{"node": {"cweId": f"CWE-{n}", "name": f"Weakness {n}"}} for n in range(start, start + count)]


def vulnerability_edges_for(start: int, count: int) -> List[Dict[str, Any]]:
    return [{"node": {"package": {"ecosystem": "PIP", "name": f"pkg-{n}"},
                      "vulnerableVersionRange": "< 1.0"}}
            for n in range(start, start + count)]


# =============================================================================
# Response bodies
# =============================================================================


def nvd_body(records: List[Dict[str, Any]], start_index: int = 0, total: Optional[int] = None,
             timestamp: str = "2024-05-01T00:00:00.000") -> str:
    return json.dumps({
        "resultsPerPage": len(records),
        "startIndex": start_index,
        "totalResults": len(records) if total is None else total,
        "format": "NVD_CVE",
        "version": "2.0",
        "timestamp": timestamp,
        "vulnerabilities": records,
    })


def advisories_body(nodes: List[Dict[str, Any]], total: Optional[int] = None,
                    has_next: bool = False, end_cursor: Optional[str] = "cursor-1") -> str:
    return json.dumps({"data": {"securityAdvisories": {
        "totalCount": len(nodes) if total is None else total,
        "pageInfo": {"hasNextPage": has_next, "endCursor": end_cursor},
        "nodes": nodes,
    }}})


def sub_list_body(ghsa_id: str, field_name: str, edges: List[Dict[str, Any]], total: int,
                  has_next: bool = False, end_cursor: str = "sub-cursor") -> str:
    return json.dumps({"data": {"securityAdvisory": {
        "ghsaId": ghsa_id,
        field_name: {
            "totalCount": total,
            "pageInfo": {"hasNextPage": has_next, "endCursor": end_cursor},
            "edges": edges,
        },
    }}})


def http_response(status: int, text: str) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.text = text
    return response


def mock_session(responses=None, handler: Optional[Callable] = None) -> MagicMock:
    """
    requests.Session stand-in

    Args:
        responses: (status, body) pairs returned in order
        handler: Alternatively, called as handler(url, params) -> (status, body)
    """
    session = MagicMock()
    session.headers = {}
    if handler is not None:
        def get(url, params=None, timeout=None):
            status, body = handler(url, dict(params or {}))
            return http_response(status, body)
        session.get.side_effect = get
    else:
        session.get.side_effect = [http_response(status, body) for status, body in responses or []]
    return session


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def nvd_record():
    return make_nvd_record


@pytest.fixture
def advisory():
    return make_advisory


@pytest.fixture
def fixed_now():
    return datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)

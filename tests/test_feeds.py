"""Tests for the per-feed shard fetch adapters."""

from datetime import datetime, timezone

import pytest

from conftest import advisories_body, make_advisory, make_nvd_record, mock_session, nvd_body
from vuln_cache.orchestration import GhsaFeed, NvdFeed
from vuln_cache.sources.github import GraphQLAdvisorySource
from vuln_cache.sources.nvd import NvdClientFactory

UTC = timezone.utc
NOW = datetime(2024, 6, 1, tzinfo=UTC)


class TestNvdFeed:
    """Tests for the NVD year fetch adapter."""

    def test_full_year(self):
        seen = []

        def handler(url, params):
            seen.append(params)
            return 200, nvd_body([make_nvd_record("CVE-2024-0001", published="2024-02-01T00:00:00.000")],
                                 timestamp="2024-05-31T23:00:00.000")

        feed = NvdFeed(NvdClientFactory(session=mock_session(handler=handler)))
        pages = []
        result = feed.fetch("2024", None, NOW, lambda count, total: pages.append(count))

        assert result.complete
        assert [r["cve"]["id"] for r in result.records] == ["CVE-2024-0001"]
        assert result.watermark == datetime(2024, 5, 31, 23, tzinfo=UTC)
        assert seen[0]["pubStartDate"] == "2024-01-01T00:00:00.000"
        assert "lastModStartDate" not in seen[0]
        assert pages == [1] * len(seen)

    def test_incremental_year(self):
        seen = []

        def handler(url, params):
            seen.append(params)
            return 200, nvd_body([])

        feed = NvdFeed(NvdClientFactory(session=mock_session(handler=handler)))
        feed.fetch("2023", datetime(2024, 5, 1, tzinfo=UTC), NOW)

        assert all(p["lastModStartDate"] == "2024-05-01T00:00:00.000" for p in seen)

    def test_failure_is_reported_not_raised(self):
        feed = NvdFeed(NvdClientFactory(session=mock_session(handler=lambda url, params: (403, "forbidden"))))
        result = feed.fetch("2024", None, NOW)

        assert not result.complete
        assert result.status == 403
        assert result.records == []
        assert "403" in result.reason


class AdvisoryFactory:
    """Builds GraphQL sources answering from a script and records the updatedSince they got"""

    def __init__(self, answers):
        self.answers = list(answers)
        self.since = []
        self.sources = []

    def __call__(self, updated_since):
        self.since.append(updated_since)
        source = GraphQLAdvisorySource(github_token="tok", updated_since=updated_since)

        async def execute(document):
            return self.answers.pop(0)

        source._execute = execute
        self.sources.append(source)
        return source


@pytest.fixture
def advisories():
    return [
        make_advisory("GHSA-old", published="1999-05-01T00:00:00Z", updated="2024-05-20T00:00:00Z"),
        make_advisory("GHSA-a", published="2023-03-01T00:00:00Z", updated="2024-05-10T00:00:00Z"),
        make_advisory("GHSA-b", published="2023-08-01T00:00:00Z", updated="2024-05-25T00:00:00Z"),
        make_advisory("GHSA-c", published="2024-01-15T00:00:00Z", updated="2024-05-30T00:00:00Z"),
    ]


class TestGhsaFeed:
    """Tests for the single-pass advisory adapter."""

    def test_full_pass_when_any_shard_is_new(self, advisories):
        factory = AdvisoryFactory([(200, advisories_body(advisories))])
        feed = GhsaFeed(factory)
        feed.prepare({"2023": datetime(2024, 5, 1, tzinfo=UTC), "2024": None}, NOW)

        assert factory.since == [None]
        assert factory.sources[0].cursor.last_status == 200

        result = feed.fetch("2023", None, NOW)
        assert result.complete
        assert [a["ghsaId"] for a in result.records] == ["GHSA-a", "GHSA-b"]
        assert result.watermark == datetime(2024, 5, 30, tzinfo=UTC)

    def test_pre_2002_advisories_land_in_2002(self, advisories):
        feed = GhsaFeed(AdvisoryFactory([(200, advisories_body(advisories))]))
        feed.prepare({"2002": None}, NOW)
        assert [a["ghsaId"] for a in feed.fetch("2002", None, NOW).records] == ["GHSA-old"]

    def test_incremental_pass_starts_at_oldest_watermark(self, advisories):
        factory = AdvisoryFactory([(200, advisories_body(advisories[1:]))])
        feed = GhsaFeed(factory)
        feed.prepare({"2023": datetime(2024, 5, 15, tzinfo=UTC),
                      "2024": datetime(2024, 5, 5, tzinfo=UTC)}, NOW)

        assert factory.since == [datetime(2024, 5, 5, tzinfo=UTC)]
        # 2023 only wants what changed after its own watermark
        result = feed.fetch("2023", datetime(2024, 5, 15, tzinfo=UTC), NOW)
        assert [a["ghsaId"] for a in result.records] == ["GHSA-b"]
        assert result.complete

    def test_incremental_pass_cannot_rebuild_a_shard(self, advisories):
        feed = GhsaFeed(AdvisoryFactory([(200, advisories_body(advisories[1:]))]))
        feed.prepare({"2023": datetime(2024, 5, 15, tzinfo=UTC)}, NOW)

        result = feed.fetch("2023", None, NOW)
        assert not result.complete
        assert "only covered updates since" in result.reason

    def test_failed_pass_marks_every_shard_incomplete(self, advisories):
        factory = AdvisoryFactory([
            (200, advisories_body(advisories[:2], total=4, has_next=True)),
            (502, "bad gateway"),
        ])
        feed = GhsaFeed(factory)
        feed.prepare({"2023": None, "2024": None}, NOW)

        result_2023 = feed.fetch("2023", None, NOW)
        assert not result_2023.complete
        assert result_2023.status == 502
        assert [a["ghsaId"] for a in result_2023.records] == ["GHSA-a"]

        result_2024 = feed.fetch("2024", None, NOW)
        assert not result_2024.complete
        assert result_2024.records == []

    def test_slice_released_once_handed_out(self, advisories):
        feed = GhsaFeed(AdvisoryFactory([(200, advisories_body(advisories))]))
        feed.prepare({"2023": None, "2024": None}, NOW)

        assert len(feed.fetch("2023", None, NOW).records) == 2
        assert "2023" not in feed._partitions
        assert "2024" in feed._partitions
        assert feed.fetch("2023", None, NOW).records == []

    def test_advisory_without_publish_date_is_skipped(self):
        undated = make_advisory("GHSA-undated")
        undated["publishedAt"] = None
        feed = GhsaFeed(AdvisoryFactory([(200, advisories_body([undated, make_advisory("GHSA-a")]))]))
        feed.prepare({"2023": None}, NOW)
        assert [a["ghsaId"] for a in feed.fetch("2023", None, NOW).records] == ["GHSA-a"]

    def test_fetch_before_prepare(self):
        with pytest.raises(RuntimeError):
            GhsaFeed(AdvisoryFactory([])).fetch("2023", None, NOW)

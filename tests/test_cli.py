"""Tests for the vuln-cache command line."""

import io
import json
import signal
import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from conftest import make_nvd_record, mock_session, nvd_body
from vuln_cache import cli
from vuln_cache.cli import install_signal_handlers as real_install_signal_handlers
from vuln_cache.orchestration import ProgressReporter
from vuln_cache.sources.base import HttpPagedSource, NVD_CVE_SCHEMA, Page, UpstreamRejectedException

UTC = timezone.utc


@pytest.fixture(autouse=True)
def quiet_process(monkeypatch, tmp_path):
    """Keep tests from touching real signal handlers, logging config or a stray .env"""
    monkeypatch.chdir(tmp_path)
    for key in ("NVD_API_KEY", "GITHUB_TOKEN", "CACHE_DIRECTORY", "DELAY_MS"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(cli, "install_signal_handlers", lambda shutdown: None)
    monkeypatch.setattr(cli, "setup_logging", lambda level, log_file=None: None)


class ListSource(HttpPagedSource):
    """Serves pre-built pages, then fails with the given status if one is set"""

    def __init__(self, pages, fail_status=None):
        super().__init__("listed", NVD_CVE_SCHEMA)
        self.pages = list(pages)
        self.fail_status = fail_status

    def _fetch(self, cursor):
        if not self.pages:
            self.cursor.last_status = self.fail_status
            raise UpstreamRejectedException(f"Upstream answered HTTP {self.fail_status}", self.source_name,
                                            status_code=self.fail_status)
        records = self.pages.pop(0)
        more = bool(self.pages) or self.fail_status is not None
        return Page(records=records, next_cursor=1 if more else None, total_results=3,
                    watermark=NVD_CVE_SCHEMA.last_modified(records[-1]))


class TestParser:
    """Tests for argument parsing."""

    def test_nvd_options(self):
        args = cli.build_parser().parse_args(
            ["nvd", "--cache-dir", "/tmp/c", "--has-kev", "--cvss-v3-severity", "HIGH",
             "--last-mod-start", "2024-01-01T00:00:00"])
        assert args.handler is cli.run_nvd
        assert args.has_kev
        assert args.cvss_v3_severity == "HIGH"
        assert args.last_mod_start == datetime(2024, 1, 1, tzinfo=UTC)

    def test_ghsa_classifications(self):
        args = cli.build_parser().parse_args(["ghsa", "--classification", "GENERAL",
                                              "--classification", "MALWARE"])
        assert args.handler is cli.run_ghsa
        assert args.classifications == ["GENERAL", "MALWARE"]

    def test_bad_date(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["nvd", "--pub-start", "next tuesday"])

    def test_settings_from_flags(self):
        args = cli.build_parser().parse_args(["nvd", "--records-per-page", "10", "--api-key", "k", "--debug"])
        settings = cli.settings_from_args(args)
        assert settings.RESULTS_PER_PAGE == 10
        assert settings.NVD_API_KEY == "k"
        assert settings.LOG_LEVEL == "DEBUG"


class TestJsonStreamWriter:
    """Tests for incremental JSON output."""

    @pytest.mark.parametrize("pretty", [False, True])
    def test_output_is_valid_json(self, pretty):
        out = io.StringIO()
        writer = cli.JsonStreamWriter(out, "cves", pretty=pretty)
        writer.open()
        writer.write([make_nvd_record("CVE-2024-0001")])
        writer.write([make_nvd_record("CVE-2024-0002"), make_nvd_record("CVE-2024-0003")])
        writer.close({"success": True, "count": writer.count})

        document = json.loads(out.getvalue())
        assert [r["cve"]["id"] for r in document["cves"]] == ["CVE-2024-0001", "CVE-2024-0002", "CVE-2024-0003"]
        assert document["results"] == {"success": True, "count": 3}
        assert ("\n  " in out.getvalue()) == pretty

    def test_empty_stream(self):
        out = io.StringIO()
        writer = cli.JsonStreamWriter(out, "advisories")
        writer.open()
        writer.close({"success": True, "count": 0})
        assert json.loads(out.getvalue())["advisories"] == []


class TestStreamPages:
    """Tests for draining a source to stdout."""

    def test_success(self):
        out = io.StringIO()
        source = ListSource([[make_nvd_record("CVE-2024-0001")],
                             [make_nvd_record("CVE-2024-0002", last_modified="2024-04-01T00:00:00.000")]])
        progress = MagicMock(spec=ProgressReporter)
        status = cli.stream_pages(source, cli.JsonStreamWriter(out, "cves"), progress, "cves")

        results = json.loads(out.getvalue())["results"]
        assert status == 0
        assert results["success"] is True
        assert results["count"] == 2
        assert results["lastModifiedDate"] == "2024-04-01T00:00:00+00:00"
        progress.close.assert_called_once()

    def test_rejected_mid_stream(self):
        out = io.StringIO()
        source = ListSource([[make_nvd_record("CVE-2024-0001")]], fail_status=503)
        status = cli.stream_pages(source, cli.JsonStreamWriter(out, "cves"), ProgressReporter(), "cves")

        document = json.loads(out.getvalue())
        assert status == 2
        assert document["results"]["success"] is False
        assert "503" in document["results"]["reason"]
        assert len(document["cves"]) == 1


class TestMain:
    """End-to-end runs against a scripted NVD."""

    def test_invalid_configuration(self, capsys):
        assert cli.main(["nvd", "--records-per-page", "5000"]) == 1
        assert "Configuration error" in capsys.readouterr().err

    def test_date_range_with_cache_dir(self, tmp_path):
        assert cli.main(["nvd", "--cache-dir", str(tmp_path), "--pub-start", "2024-01-01"]) == 1

    def test_ghsa_requires_token(self):
        assert cli.main(["ghsa"]) == 1

    def test_nvd_stream(self, capsys):
        seen = []

        def handler(url, params):
            seen.append(params)
            return 200, nvd_body([make_nvd_record("CVE-2024-0001")])

        with patch("vuln_cache.sources.nvd.client.requests.Session",
                   return_value=mock_session(handler=handler)):
            status = cli.main(["nvd", "--delay", "1", "--last-mod-start", "2024-01-01", "--has-kev"])

        document = json.loads(capsys.readouterr().out)
        assert status == 0
        assert document["cves"][0]["cve"]["id"] == "CVE-2024-0001"
        assert seen[0]["lastModStartDate"] == "2024-01-01T00:00:00.000"
        assert seen[0]["lastModEndDate"] == "2024-04-30T00:00:00.000"

    def test_nvd_cache_refresh(self, tmp_path):
        cache_dir = tmp_path / "cache"

        def handler(url, params):
            year = params["pubStartDate"][:4]
            if params["pubStartDate"].endswith("01-01T00:00:00.000"):
                return 200, nvd_body([make_nvd_record(f"CVE-{year}-0001",
                                                      published=f"{year}-01-02T00:00:00.000")])
            return 200, nvd_body([])

        with patch("vuln_cache.sources.nvd.client.requests.Session",
                   return_value=mock_session(handler=handler)):
            status = cli.main(["nvd", "--delay", "1", "--cache-dir", str(cache_dir)])

        assert status == 0
        assert (cache_dir / "nvdcve-2002.json.gz").exists()
        assert (cache_dir / "nvdcve-modified.json.gz").exists()
        metadata = json.loads((cache_dir / "nvd_cache_metadata.json").read_text(encoding="utf-8"))
        assert metadata["prefix"] == "nvdcve-"
        assert "lastModifiedDate.2002" in metadata


class TestSignals:
    """Tests for shutdown signalling."""

    def test_handler_sets_shutdown_event(self):
        shutdown = threading.Event()
        installed = {}
        with patch("vuln_cache.cli.signal.signal",
                   side_effect=lambda signum, handler: installed.update({signum: handler})):
            real_install_signal_handlers(shutdown)

        assert set(installed) == {signal.SIGINT, signal.SIGTERM}
        installed[signal.SIGTERM](signal.SIGTERM, None)
        assert shutdown.is_set()

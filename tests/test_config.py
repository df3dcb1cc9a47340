"""Tests for settings loading and rate limit selection."""

import logging
from datetime import timedelta

import pytest

from vuln_cache.core.config import Settings, load_settings
from vuln_cache.core.logging import setup_logging
from vuln_cache.sources.base import ConfigException

ENV_KEYS = ("NVD_API_KEY", "GITHUB_TOKEN", "CACHE_DIRECTORY", "RESULTS_PER_PAGE", "DELAY_MS", "MAX_RETRIES")


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, tmp_path):
    """No stray .env file or exported variable leaks into a test"""
    monkeypatch.chdir(tmp_path)
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestSettings:
    """Tests for defaults and sources of configuration."""

    def test_defaults(self):
        settings = load_settings()
        assert settings.NVD_API_KEY is None
        assert settings.RESULTS_PER_PAGE == 2000
        assert settings.MAX_PAGE_COUNT == 0
        assert settings.MAX_RETRIES == 0
        assert settings.CACHE_PREFIX == "nvdcve-"
        assert settings.GHSA_CACHE_PREFIX == "ghsa-"

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("NVD_API_KEY", "secret")
        monkeypatch.setenv("MAX_RETRIES", "3")
        settings = load_settings()
        assert settings.NVD_API_KEY == "secret"
        assert settings.MAX_RETRIES == 3

    def test_env_file(self, tmp_path):
        (tmp_path / ".env").write_text("GITHUB_TOKEN=from-file\nUNRELATED=1\n", encoding="utf-8")
        assert load_settings().GITHUB_TOKEN == "from-file"

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("RESULTS_PER_PAGE", "500")
        assert load_settings(RESULTS_PER_PAGE=100).RESULTS_PER_PAGE == 100

    @pytest.mark.parametrize("value", [0, 2001])
    def test_results_per_page_bounds(self, value):
        with pytest.raises(ConfigException) as exc_info:
            load_settings(RESULTS_PER_PAGE=value)
        assert exc_info.value.config_key == "RESULTS_PER_PAGE"

    def test_invalid_environment_value(self, monkeypatch):
        monkeypatch.setenv("DELAY_MS", "soon")
        with pytest.raises(ConfigException) as exc_info:
            load_settings()
        assert exc_info.value.config_key == "DELAY_MS"


class TestRateLimits:
    """Tests for per-upstream request allowances."""

    def test_nvd_without_key(self):
        assert Settings().nvd_rate_limit() == (5, timedelta(seconds=30))

    def test_nvd_with_key(self):
        assert Settings(NVD_API_KEY="k").nvd_rate_limit() == (50, timedelta(seconds=30))

    def test_github(self):
        assert Settings(GITHUB_TOKEN="t").github_rate_limit() == (5000, timedelta(hours=1))
        assert Settings().github_rate_limit() == (60, timedelta(hours=1))

    def test_fixed_delay_overrides_both(self):
        settings = Settings(NVD_API_KEY="k", DELAY_MS=700)
        assert settings.nvd_rate_limit() == (1, timedelta(milliseconds=700))
        assert settings.github_rate_limit() == (1, timedelta(milliseconds=700))


class TestLogging:
    """Tests for logging setup."""

    def test_package_loggers_get_level(self, tmp_path):
        log_file = tmp_path / "refresh.log"
        setup_logging("debug", str(log_file))
        try:
            assert logging.getLogger("vuln_cache").level == logging.DEBUG
            assert logging.getLogger("fetcher").level == logging.DEBUG
            logging.getLogger("vuln_cache.test").debug("hello")
            for handler in logging.getLogger().handlers:
                handler.flush()
            assert "hello" in log_file.read_text(encoding="utf-8")
        finally:
            for handler in logging.getLogger().handlers:
                handler.close()
            logging.getLogger().handlers.clear()
            logging.getLogger("vuln_cache").setLevel(logging.NOTSET)
            logging.getLogger("fetcher").setLevel(logging.NOTSET)

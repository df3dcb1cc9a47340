"""
Configuration settings for the vulnerability cache

Values come from the environment or a .env file in the working directory.
Command line flags override them.
"""

from datetime import timedelta
from functools import lru_cache
from typing import Optional, Tuple

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

from ..sources.base import ConfigException


class Settings(BaseSettings):
    """Application settings"""

    # Credentials
    NVD_API_KEY: Optional[str] = None
    GITHUB_TOKEN: Optional[str] = None

    # Endpoints
    NVD_ENDPOINT: str = "https://services.nvd.nist.gov/rest/json/cves/2.0"
    GITHUB_GRAPHQL_ENDPOINT: str = "https://api.github.com/graphql"

    # Cache layout
    CACHE_DIRECTORY: Optional[str] = None
    CACHE_PREFIX: str = "nvdcve-"
    GHSA_CACHE_PREFIX: str = "ghsa-"

    # Fetching
    RESULTS_PER_PAGE: int = Field(default=2000, ge=1, le=2000)
    MAX_PAGE_COUNT: int = Field(default=0, ge=0)  # 0 = unlimited
    THREAD_COUNT: int = Field(default=4, ge=1)  # connection pool size
    MAX_RETRIES: int = Field(default=0, ge=0)
    REQUEST_TIMEOUT: int = Field(default=120, ge=1)  # seconds
    DELAY_MS: Optional[int] = Field(default=None, ge=1)  # one request per DELAY_MS

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8",
                    "case_sensitive": True, "extra": "ignore"}

    def nvd_rate_limit(self) -> Tuple[int, timedelta]:
        """NVD public limits: 50 requests / 30 s with an API key, 5 / 30 s without"""
        if self.DELAY_MS:
            return 1, timedelta(milliseconds=self.DELAY_MS)
        if self.NVD_API_KEY:
            return 50, timedelta(seconds=30)
        return 5, timedelta(seconds=30)

    def github_rate_limit(self) -> Tuple[int, timedelta]:
        """GitHub GraphQL allowance: 5000 requests / hour authenticated, 60 otherwise"""
        if self.DELAY_MS:
            return 1, timedelta(milliseconds=self.DELAY_MS)
        if self.GITHUB_TOKEN:
            return 5000, timedelta(hours=1)
        return 60, timedelta(hours=1)


def load_settings(**overrides) -> Settings:
    """
    Build Settings from the environment plus explicit overrides

    Raises:
        ConfigException: If any value fails validation
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        key = '.'.join(str(part) for part in first.get('loc', ())) or None
        raise ConfigException(f"Invalid configuration: {first.get('msg', e)}", config_key=key) from e


@lru_cache()
def get_settings() -> Settings:
    return load_settings()

"""
core/config.py -- Runtime settings for kcfg-vex, read through pydantic-settings.

Environment variables (and an optional .env file) are read here and nowhere
else; other modules call get_settings(). Field names map to upper-case
variable names, so cve_cache_ttl is set with CVE_CACHE_TTL.

get_settings() is wrapped in lru_cache, which makes Settings a process-wide
singleton and lets FastAPI use it as a dependency. Tests that change the
environment call get_settings.cache_clear().

The after-validator rejects worker counts, timeouts and log levels that could
never work, so a bad deployment fails at startup rather than mid-batch.

core/ never imports from api/ or ingest/.
"""

import logging
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("kcfgvex.config")

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """Settings for the CLI and the API server.

    Every field has a default, so Settings() works with no environment
    at all (the test suite relies on this).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # CVE source
    # ------------------------------------------------------------------

    cve_api_url: str = "https://cveawg.mitre.org/api/cve"
    request_timeout: float = 30.0
    fetch_workers: int = 4

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    # Empty string means "next to cache/store.py", the CVECache default.
    cve_cache_path: str = ""
    cve_cache_ttl: int = 60 * 60 * 24

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    eval_workers: int = 4
    vex_spec_version: str = "1.4"

    # ------------------------------------------------------------------
    # Kernel tree (used by the API server; the CLI takes these as flags)
    # ------------------------------------------------------------------

    kernel_src: Optional[str] = None
    kernel_dotconfig: Optional[str] = None
    srcarch: str = "x86"

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Reject pool sizes, timeouts and log levels that cannot work."""
        if self.fetch_workers < 1 or self.eval_workers < 1:
            raise ValueError("FETCH_WORKERS and EVAL_WORKERS must be at least 1.")
        if self.request_timeout <= 0:
            raise ValueError("REQUEST_TIMEOUT must be positive.")
        if self.cve_cache_ttl < 0:
            raise ValueError("CVE_CACHE_TTL must not be negative.")
        self.log_level = self.log_level.upper()
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}.")
        if self.kernel_dotconfig and not self.kernel_src:
            logger.warning("KERNEL_DOTCONFIG is set without KERNEL_SRC; it will be ignored.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the cached Settings instance."""
    return Settings()

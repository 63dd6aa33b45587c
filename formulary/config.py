"""Engine configuration — env-driven.

Centralized config using pydantic-settings. Reads from a .env file and
FORMULARY_* environment variables; CLI options override both.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineConfig(BaseSettings):
    """Formula engine configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export FORMULARY_PREFIX=/opt/formulary
        export FORMULARY_FORMULAE_PATH=/srv/formulae
        export FORMULARY_LOG_LEVEL=DEBUG

    Or via .env file::

        FORMULARY_MAX_PARALLEL_FETCHES=8
        FORMULARY_KEEP_VERSIONS=5
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="FORMULARY_",
        env_file_encoding="utf-8",
    )

    # Namespace and manifests
    prefix: Path = Path(".formulary/prefix")
    formulae_path: Path = Path("formulae")

    log_level: str = "INFO"

    # Timeouts (seconds)
    fetch_timeout_seconds: float = 60.0
    test_timeout_seconds: float = 60.0
    lock_timeout_seconds: float = 0.0

    # Fetch concurrency; 1 disables prefetching
    max_parallel_fetches: int = 4

    # Superseded versions kept per name for rollback
    keep_versions: int = 3

    # Cache size cap in bytes; 0 means unbounded
    cache_max_bytes: int = 0

    @property
    def state_path(self) -> Path:
        """Engine state directory inside the namespace."""
        return self.prefix / "var" / "formulary"

    @property
    def cache_path(self) -> Path:
        return self.state_path / "cache"

    @property
    def records_path(self) -> Path:
        return self.state_path / "records"

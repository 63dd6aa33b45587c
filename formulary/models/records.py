"""Install record and cache entry models."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class InstallRecord(BaseModel):
    """Which version and files are installed under a formula name.

    ``installed_paths`` are namespace-relative; ``keg`` is the
    prefix-relative directory holding this version's artifacts.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    digest: str
    installed_paths: list[str] = Field(default_factory=list)
    keg: str = ""
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def matches(self, version: str, digest: str) -> bool:
        return self.version == version and self.digest == digest


class RecordHistory(BaseModel):
    """Persisted per-name state: the current record plus superseded ones.

    ``previous`` is newest-first; rollback pops from its head.
    """

    model_config = ConfigDict(frozen=True)

    current: InstallRecord
    previous: list[InstallRecord] = Field(default_factory=list)


class CacheEntry(BaseModel):
    """A verified, immutable copy of fetched bytes keyed by digest."""

    model_config = ConfigDict(frozen=True)

    digest: str
    path: Path
    size_bytes: int
    source_url: str = ""
    fetched_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

"""Digest-keyed cache of verified source bytes.

Storage layout: {base_path}/{sha256[0:2]}/{sha256}.dat

Entries are immutable once written. Writes go to a temporary file in the
same directory and are published with ``os.replace``, so concurrent writers
of the same digest converge on a single entry.
"""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from formulary.core.hasher import normalise_digest, sha256_file, sha256_hex
from formulary.models.records import CacheEntry

logger = logging.getLogger(__name__)


class ArtifactCache:
    """SHA-256 keyed, immutable byte cache.

    Parameters
    ----------
    base_path:
        Root directory for cached payloads.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    def _entry_path(self, digest: str) -> Path:
        return self._base / digest[:2] / f"{digest}.dat"

    def _entry(self, digest: str, path: Path, source_url: str = "") -> CacheEntry:
        stat = path.stat()
        return CacheEntry(
            digest=digest,
            path=path,
            size_bytes=stat.st_size,
            source_url=source_url,
            fetched_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def exists(self, digest: str) -> bool:
        return self._entry_path(normalise_digest(digest)).exists()

    def get(self, digest: str) -> CacheEntry | None:
        """Return the entry for ``digest``, or ``None`` on a miss.

        A hit refreshes the file's access time so eviction keeps it.
        """
        digest = normalise_digest(digest)
        path = self._entry_path(digest)
        if not path.exists():
            return None
        os.utime(path)
        return self._entry(digest, path)

    def retrieve(self, digest: str) -> bytes:
        entry = self.get(digest)
        if entry is None:
            raise FileNotFoundError(f"No cache entry for {digest}")
        return entry.read_bytes()

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def store(self, data: bytes, *, source_url: str = "") -> CacheEntry:
        """Store already-verified bytes under their SHA-256 digest.

        Storing the same content twice is a no-op.
        """
        digest = sha256_hex(data)
        path = self._entry_path(digest)
        if path.exists():
            return self._entry(digest, path, source_url)

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{digest[:12]}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Cached %d bytes as %s", len(data), digest)
        return self._entry(digest, path, source_url)

    # ------------------------------------------------------------------
    # Verify and evict
    # ------------------------------------------------------------------

    def verify(self, digest: str) -> bool:
        """Re-hash stored bytes and compare against their key."""
        digest = normalise_digest(digest)
        path = self._entry_path(digest)
        if not path.exists():
            return False
        return sha256_file(path) == digest

    def discard(self, digest: str) -> bool:
        """Remove a single entry. Returns ``True`` if one was removed."""
        path = self._entry_path(normalise_digest(digest))
        if path.exists():
            path.unlink()
            return True
        return False

    def entries(self) -> list[CacheEntry]:
        """All cache entries, least recently used first."""
        found = []
        for path in self._base.glob("*/*.dat"):
            found.append(self._entry(path.stem, path))
        return sorted(found, key=lambda e: e.fetched_at)

    def total_bytes(self) -> int:
        return sum(e.size_bytes for e in self.entries())

    def evict(self, max_bytes: int) -> list[str]:
        """Drop least-recently-used entries until the cache fits ``max_bytes``.

        Returns the evicted digests.
        """
        entries = self.entries()
        total = sum(e.size_bytes for e in entries)
        evicted: list[str] = []
        for entry in entries:
            if total <= max_bytes:
                break
            entry.path.unlink(missing_ok=True)
            total -= entry.size_bytes
            evicted.append(entry.digest)
        if evicted:
            logger.info("Evicted %d cache entr%s", len(evicted), "y" if len(evicted) == 1 else "ies")
        return evicted

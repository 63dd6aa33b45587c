"""Fetcher — retrieves formula source bytes into the digest-keyed cache.

Byte retrieval is delegated to a pluggable ``Transport``:

1. **HttpTransport** — ``http://`` / ``https://`` via requests, streamed.
2. **FileTransport** — ``file://`` URLs and plain local paths.
3. **RoutingTransport** — dispatches to one of the above by URL scheme.

Any object with ``fetch(url, timeout) -> bytes`` satisfies the protocol.
Transports raise ``NetworkError`` for transient failures; the Fetcher never
retries on its own.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import unquote, urlparse

import requests

from formulary.core.artifact_cache import ArtifactCache
from formulary.core.errors import DigestMismatch, FetchCancelled, FormularyError, NetworkError
from formulary.core.hasher import normalise_digest, sha256_hex, verify
from formulary.models.records import CacheEntry

logger = logging.getLogger(__name__)

_USER_AGENT = "formulary-fetcher"
_CHUNK = 65536


class CancelToken:
    """Cooperative cancellation signal shared between caller and engine."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self._event.is_set():
            raise FetchCancelled(f"{what} cancelled")


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


@runtime_checkable
class Transport(Protocol):
    """Protocol for byte retrieval backends."""

    def fetch(
        self,
        url: str,
        timeout: float | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> bytes:
        """Return the raw bytes behind ``url``.

        Streaming backends check ``cancel`` while data arrives.

        Raises
        ------
        NetworkError
            On any transient retrieval failure.
        FetchCancelled
            If ``cancel`` fires before the bytes are complete.
        """
        ...


class HttpTransport:
    """Streams HTTP(S) payloads with requests.

    Parameters
    ----------
    session:
        Optional ``requests.Session`` to reuse connections.
    """

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", _USER_AGENT)

    def fetch(
        self,
        url: str,
        timeout: float | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> bytes:
        chunks: list[bytes] = []
        try:
            with self._session.get(url, stream=True, timeout=timeout) as resp:
                resp.raise_for_status()
                for chunk in resp.iter_content(chunk_size=_CHUNK):
                    if cancel is not None:
                        cancel.raise_if_cancelled(f"download of {url}")
                    chunks.append(chunk)
        except requests.RequestException as exc:
            raise NetworkError(f"GET {url} failed: {exc}") from exc
        return b"".join(chunks)


class FileTransport:
    """Reads ``file://`` URLs and plain filesystem paths."""

    def fetch(
        self,
        url: str,
        timeout: float | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> bytes:
        if cancel is not None:
            cancel.raise_if_cancelled(f"read of {url}")
        parsed = urlparse(url)
        path = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(url)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise NetworkError(f"cannot read {url}: {exc}") from exc


class RoutingTransport:
    """Dispatches by URL scheme; paths without a scheme go to ``file``."""

    def __init__(self, routes: dict[str, Transport] | None = None) -> None:
        if routes is None:
            http = HttpTransport()
            routes = {"http": http, "https": http, "file": FileTransport()}
        self._routes = dict(routes)

    def fetch(
        self,
        url: str,
        timeout: float | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> bytes:
        scheme = urlparse(url).scheme or "file"
        transport = self._routes.get(scheme)
        if transport is None:
            raise NetworkError(f"no transport registered for scheme {scheme!r} ({url})")
        return transport.fetch(url, timeout, cancel=cancel)


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


class FetchOutcome:
    """Per-digest result of ``Fetcher.fetch_many``."""

    __slots__ = ("digest", "entry", "error")

    def __init__(
        self,
        digest: str,
        entry: CacheEntry | None = None,
        error: FormularyError | None = None,
    ) -> None:
        self.digest = digest
        self.entry = entry
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None


class Fetcher:
    """Cache-first, digest-verified retrieval of source bytes.

    Parameters
    ----------
    cache:
        The digest-keyed cache this fetcher owns entries in.
    transport:
        Byte retrieval backend.
    timeout:
        Default per-fetch timeout in seconds.
    """

    def __init__(
        self,
        cache: ArtifactCache,
        transport: Transport,
        *,
        timeout: float | None = None,
    ) -> None:
        self._cache = cache
        self._transport = transport
        self._timeout = timeout

    @property
    def cache(self) -> ArtifactCache:
        return self._cache

    def fetch(
        self,
        source_url: str,
        expected_digest: str,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> CacheEntry:
        """Return a verified cache entry for ``expected_digest``.

        A cache hit never touches the transport. On a miss the bytes are
        fetched, verified, and only then stored.
        """
        expected = normalise_digest(expected_digest)
        cached = self._cache.get(expected)
        if cached is not None:
            logger.debug("Cache hit for %s (%s)", source_url, expected)
            return cached

        if cancel is not None:
            cancel.raise_if_cancelled(f"fetch of {source_url}")

        logger.info("Fetching %s", source_url)
        data = self._transport.fetch(
            source_url,
            timeout if timeout is not None else self._timeout,
            cancel=cancel,
        )

        if cancel is not None:
            cancel.raise_if_cancelled(f"fetch of {source_url}")

        if not verify(data, expected):
            actual = sha256_hex(data)
            logger.error(
                "Digest mismatch for %s: expected %s, actual %s (%d bytes discarded)",
                source_url,
                expected,
                actual,
                len(data),
            )
            raise DigestMismatch(source_url, expected, actual)

        entry = self._cache.store(data, source_url=source_url)
        logger.info("Verified %s (%d bytes, %s)", source_url, entry.size_bytes, expected)
        return entry

    def fetch_many(
        self,
        targets: Iterable[tuple[str, str]],
        *,
        max_workers: int = 4,
        cancel: CancelToken | None = None,
    ) -> dict[str, FetchOutcome]:
        """Fetch independent ``(source_url, digest)`` pairs concurrently.

        Duplicate digests are fetched once. Errors are captured per digest
        rather than raised.
        """
        unique: dict[str, str] = {}
        for url, digest in targets:
            unique.setdefault(normalise_digest(digest), url)

        def _one(digest: str, url: str) -> FetchOutcome:
            try:
                return FetchOutcome(digest, entry=self.fetch(url, digest, cancel=cancel))
            except FormularyError as exc:
                return FetchOutcome(digest, error=exc)

        results: dict[str, FetchOutcome] = {}
        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
            futures = {
                digest: pool.submit(_one, digest, url) for digest, url in unique.items()
            }
            for digest, future in futures.items():
                results[digest] = future.result()
        return results

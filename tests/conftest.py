"""Shared test fixtures for Formulary."""

from __future__ import annotations

import io
import tarfile
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from formulary.config import EngineConfig
from formulary.core.artifact_cache import ArtifactCache
from formulary.core.engine import Engine
from formulary.core.errors import FormularyError, NetworkError
from formulary.core.fetcher import CancelToken, Fetcher
from formulary.core.formula_store import FormulaStore
from formulary.core.hasher import sha256_hex
from formulary.core.install_records import InstallRecordStore
from formulary.core.installer import Installer
from formulary.models.formula import Formula, InstallStep, TestCommand


class FakeTransport:
    """In-memory transport: URL -> bytes, with a call log and failure injection."""

    def __init__(self, payloads: dict[str, bytes] | None = None) -> None:
        self.payloads = dict(payloads or {})
        self.failures: dict[str, FormularyError] = {}
        self.delays: dict[str, float] = {}
        self.calls: list[str] = []
        self.started = threading.Event()
        self._lock = threading.Lock()

    def add(self, url: str, data: bytes) -> None:
        self.payloads[url] = data

    def fail(self, url: str, error: FormularyError | None = None) -> None:
        self.failures[url] = error or NetworkError(f"connection reset fetching {url}")

    def slow(self, url: str, seconds: float) -> None:
        """Deliver ``url`` in small chunks over ``seconds``, honouring cancel."""
        self.delays[url] = seconds

    def fetch(
        self,
        url: str,
        timeout: float | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> bytes:
        with self._lock:
            self.calls.append(url)
        self.started.set()
        deadline = time.monotonic() + self.delays.get(url, 0.0)
        while time.monotonic() < deadline:
            if cancel is not None:
                cancel.raise_if_cancelled(f"download of {url}")
            time.sleep(0.01)
        if url in self.failures:
            raise self.failures[url]
        if url not in self.payloads:
            raise NetworkError(f"404 for {url}")
        return self.payloads[url]

    def count(self, url: str) -> int:
        return self.calls.count(url)


def make_tarball(files: dict[str, bytes]) -> bytes:
    """Build a gzip tarball in memory from ``{member: content}``."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for member, content in sorted(files.items()):
            info = tarfile.TarInfo(member)
            info.size = len(content)
            info.mode = 0o755 if member.startswith("bin/") else 0o644
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def script(text: str) -> bytes:
    return f"#!/bin/sh\n{text}\n".encode()


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def prefix(tmp_dir: Path) -> Path:
    """Namespace root for installs."""
    path = tmp_dir / "prefix"
    path.mkdir()
    return path


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


# ---------------------------------------------------------------------------
# Formula factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_formula(transport: FakeTransport) -> Callable[..., Formula]:
    """Factory fixture: build a formula whose payload is served by ``transport``.

    By default the payload is a single shell script linked as ``bin/<name>``.
    Pass ``files`` to ship a tarball instead; every member is linked at its
    own path.
    """

    def _factory(
        name: str,
        version: str = "1.0.0",
        *,
        dependencies: Sequence[str] = (),
        files: dict[str, bytes] | None = None,
        test: list[str] | None = None,
        expected_status: int = 0,
        **overrides: Any,
    ) -> Formula:
        if files is None:
            url = f"https://formulae.test/{name}-{version}.sh"
            payload = script(f'echo "{name} {version}"')
            steps = [InstallStep(source=f"{name}-{version}.sh", target=f"bin/{name}")]
        else:
            url = f"https://formulae.test/{name}-{version}.tar.gz"
            payload = make_tarball(files)
            steps = [InstallStep(source=member, target=member) for member in sorted(files)]
        transport.add(url, payload)
        defaults: dict[str, Any] = {
            "name": name,
            "version": version,
            "source_url": url,
            "digest": sha256_hex(payload),
            "dependencies": list(dependencies),
            "install_steps": steps,
            "test": TestCommand(argv=test, expected_status=expected_status) if test else None,
        }
        defaults.update(overrides)
        return Formula(**defaults)

    return _factory


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> FormulaStore:
    return FormulaStore()


@pytest.fixture
def cache(tmp_dir: Path) -> ArtifactCache:
    """Provide a fresh ArtifactCache in a temp directory."""
    return ArtifactCache(tmp_dir / "cache")


@pytest.fixture
def fetcher(cache: ArtifactCache, transport: FakeTransport) -> Fetcher:
    return Fetcher(cache, transport)


@pytest.fixture
def records(tmp_dir: Path) -> InstallRecordStore:
    return InstallRecordStore(tmp_dir / "records")


@pytest.fixture
def installer(prefix: Path, fetcher: Fetcher, records: InstallRecordStore) -> Installer:
    return Installer(prefix, fetcher, records)


@pytest.fixture
def engine_config(tmp_dir: Path, prefix: Path) -> EngineConfig:
    """Engine config rooted in the temp dir; prefetching off for exact call logs."""
    return EngineConfig(
        prefix=prefix,
        formulae_path=tmp_dir / "formulae",
        max_parallel_fetches=1,
        test_timeout_seconds=10,
    )


@pytest.fixture
def engine(engine_config: EngineConfig, store: FormulaStore, transport: FakeTransport) -> Engine:
    """Provide an Engine wired to the in-memory store and transport."""
    return Engine(engine_config, store, transport)

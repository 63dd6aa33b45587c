"""End-to-end flows through the Engine: blast radius, idempotence, upgrades.

These tests exercise the FormulaStore, DependencyResolver, Fetcher,
ArtifactCache, Installer, InstallRecordStore and Validator working together
against a real filesystem prefix.
"""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path

import pytest

from formulary.core.engine import EXIT_ERROR, EXIT_OK, Engine
from formulary.core.errors import InstallIOError
from formulary.core.fetcher import CancelToken
from formulary.core.formula_store import FormulaStore
from formulary.models.plan import PlanAction
from formulary.models.results import EntryStatus

from conftest import script


def _snapshot_tree(root: Path) -> dict[str, tuple[int, int]]:
    """Path -> (mtime_ns, inode) for everything under ``root``, links not followed."""
    state = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            path = Path(dirpath) / name
            st = os.lstat(path)
            state[str(path.relative_to(root))] = (st.st_mtime_ns, st.st_ino)
    return state


class TestBlastRadius:
    def test_failing_middle_entry(self, engine: Engine, store: FormulaStore, make_formula, transport):
        for name in ("A", "B", "C"):
            store.register(make_formula(name))
        transport.fail(store.get("B").source_url)

        report = engine.install(["A", "B", "C"])

        assert report.exit_code == EXIT_ERROR
        assert report.error_kind == "NetworkError"
        statuses = {o.name: o.status for o in report.install_result.outcomes}
        assert statuses == {
            "A": EntryStatus.COMMITTED,
            "B": EntryStatus.FAILED,
            "C": EntryStatus.NOT_ATTEMPTED,
        }
        assert list(engine.installed()) == ["A"]
        assert store.get("C").source_url not in transport.calls
        assert not (engine.config.prefix / ".staging").exists() or not any(
            (engine.config.prefix / ".staging").iterdir()
        )

    def test_cancel_during_download_aborts_entry(
        self, engine: Engine, store: FormulaStore, make_formula, transport
    ):
        store.register(make_formula("dep"))
        store.register(make_formula("app", dependencies=["dep"]))
        transport.slow(store.get("dep").source_url, 5.0)
        token = CancelToken()
        timer = threading.Timer(0.1, token.cancel)
        started = time.monotonic()
        timer.start()
        try:
            report = engine.install(["app"], cancel=token)
        finally:
            timer.cancel()

        assert time.monotonic() - started < 2.0
        assert report.exit_code == EXIT_ERROR
        assert report.error_kind == "Cancelled"
        assert report.install_result.failed == ["dep"]
        assert report.install_result.not_attempted == ["app"]
        assert engine.installed() == {}
        assert not engine.cache.exists(store.get("dep").digest)
        assert not (engine.config.prefix / ".staging").exists() or not any(
            (engine.config.prefix / ".staging").iterdir()
        )

    def test_retry_after_transient_failure(
        self, engine: Engine, store: FormulaStore, make_formula, transport
    ):
        for name in ("A", "B", "C"):
            store.register(make_formula(name))
        url = store.get("B").source_url
        transport.fail(url)
        engine.install(["A", "B", "C"])

        del transport.failures[url]
        report = engine.install(["A", "B", "C"])

        assert report.exit_code == EXIT_OK
        assert report.install_result.skipped == ["A"]
        assert report.install_result.committed == ["B", "C"]

    def test_cycle_installs_nothing(self, engine: Engine, store: FormulaStore, make_formula, transport):
        store.register(make_formula("A", dependencies=["B"]))
        store.register(make_formula("B", dependencies=["C"]))
        store.register(make_formula("C", dependencies=["A"]))

        report = engine.install(["A"])

        assert report.exit_code == EXIT_ERROR
        assert report.error == "Dependency cycle: A,B,C,A"
        assert transport.calls == []
        assert engine.installed() == {}


class TestIdempotence:
    def test_second_install_performs_zero_writes(
        self, engine: Engine, store: FormulaStore, make_formula, prefix: Path
    ):
        store.register(make_formula("lib"))
        store.register(make_formula("app", dependencies=["lib"], test=["{bin}/app"]))
        assert engine.install(["app"]).ok
        before = _snapshot_tree(prefix)

        report = engine.install(["app"])

        assert report.ok
        assert {e.action for e in report.plan.entries} == {PlanAction.ALREADY_SATISFIED}
        after = _snapshot_tree(prefix)
        # The lock file is opened but never rewritten.
        assert after == before


class TestFzfWrapperScenario:
    def test_wrapper_installs_after_existing_fzf(
        self, engine: Engine, store: FormulaStore, make_formula, prefix: Path
    ):
        store.register(make_formula("fzf", "0.44.0", test=["{bin}/fzf"]))
        assert engine.install(["fzf"]).ok
        fzf_link = os.readlink(prefix / "opt" / "fzf")

        store.register(
            make_formula("fzf-wrapper", "2.1.0", dependencies=["fzf"], test=["{bin}/fzf-wrapper"])
        )
        report = engine.install(["fzf-wrapper"])

        assert report.exit_code == EXIT_OK
        assert [(e.formula.name, e.action) for e in report.plan.entries] == [
            ("fzf", PlanAction.ALREADY_SATISFIED),
            ("fzf-wrapper", PlanAction.INSTALL),
        ]
        assert [t.name for t in report.test_results] == ["fzf-wrapper"]
        assert os.readlink(prefix / "opt" / "fzf") == fzf_link

    def test_manifest_update_upgrades_dependency_first(
        self, engine: Engine, store: FormulaStore, make_formula
    ):
        store.register(make_formula("fzf", "0.44.0"))
        store.register(make_formula("fzf-wrapper", "2.1.0", dependencies=["fzf"]))
        engine.install(["fzf-wrapper"])
        store.register(make_formula("fzf", "0.45.0"))
        store.register(make_formula("fzf-wrapper", "2.2.0", dependencies=["fzf"]))

        report = engine.upgrade("fzf-wrapper")

        assert report.ok
        assert report.install_result.committed == ["fzf", "fzf-wrapper"]
        assert {n: r.version for n, r in engine.installed().items()} == {
            "fzf": "0.45.0",
            "fzf-wrapper": "2.2.0",
        }


class TestAtomicVisibility:
    def test_reader_only_sees_whole_versions(
        self, engine: Engine, store: FormulaStore, make_formula, prefix: Path
    ):
        def tool(version: str):
            return make_formula(
                "tool",
                version,
                files={
                    "bin/tool": script(f"echo {version}"),
                    "share/tool/VERSION": version.encode(),
                },
            )

        store.register(tool("1.0.0"))
        assert engine.install(["tool"]).ok

        versions = ("1.0.0", "1.1.0", "1.2.0", "1.3.0")
        binaries: set[bytes] = set()
        markers: set[bytes] = set()
        errors: list[OSError] = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                try:
                    binaries.add((prefix / "bin" / "tool").read_bytes())
                    markers.add((prefix / "share" / "tool" / "VERSION").read_bytes())
                except OSError as exc:
                    errors.append(exc)

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            for version in versions[1:]:
                store.register(tool(version))
                assert engine.upgrade("tool").ok
        finally:
            stop.set()
            thread.join()

        assert errors == []
        assert binaries <= {script(f"echo {v}") for v in versions}
        assert markers <= {v.encode() for v in versions}


class TestInstallIOFailure:
    def test_io_error_aborts_remaining_entries(
        self, engine: Engine, store: FormulaStore, make_formula, prefix: Path, monkeypatch
    ):
        for name in ("A", "B", "C"):
            store.register(make_formula(name))
        original = engine.installer._stage

        def flaky_stage(formula, data, scratch):
            if formula.name == "B":
                raise InstallIOError("disk full")
            return original(formula, data, scratch)

        monkeypatch.setattr(engine.installer, "_stage", flaky_stage)
        report = engine.install(["A", "B", "C"])

        assert report.error_kind == "InstallIOError"
        assert report.install_result.committed == ["A"]
        assert report.install_result.not_attempted == ["C"]
        assert not (prefix / "Cellar" / "B").exists()


@pytest.mark.parametrize("keep", [0, 1])
def test_rollback_respects_history_depth(engine_config, store, make_formula, transport, keep):
    engine = Engine(engine_config.model_copy(update={"keep_versions": keep}), store, transport)
    store.register(make_formula("jcr", "1.0.0"))
    engine.install(["jcr"])
    store.register(make_formula("jcr", "2.0.0"))
    engine.upgrade("jcr")
    expected = 3 if keep == 0 else EXIT_OK
    assert engine.rollback("jcr").exit_code == expected

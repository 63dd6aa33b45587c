"""Tests for the Installer — staging, atomic commit, upgrade, rollback, uninstall."""

from __future__ import annotations

import io
import os
import zipfile
from pathlib import Path

import pytest

from formulary.core.errors import (
    DigestMismatch,
    FetchCancelled,
    InstallIOError,
    NoPriorVersion,
    NotInstalledError,
)
from formulary.core.fetcher import CancelToken, Fetcher
from formulary.core.formula_store import FormulaStore
from formulary.core.hasher import sha256_hex
from formulary.core.install_records import InstallRecordStore
from formulary.core.installer import Installer
from formulary.core.resolver import resolve
from formulary.models.formula import InstallStep

from conftest import script


def _staging_is_clean(prefix: Path) -> bool:
    staging = prefix / ".staging"
    return not staging.exists() or not any(staging.iterdir())


def _tool(make_formula, version: str, extra: str):
    return make_formula(
        "tool",
        version,
        files={
            "bin/tool": script(f"echo tool {version}"),
            f"share/tool/{extra}": extra.encode(),
        },
    )


class TestInstall:
    def test_single_file_install(self, installer: Installer, prefix: Path, make_formula):
        formula = make_formula("jcr")
        record = installer.install_formula(formula)

        link = prefix / "bin" / "jcr"
        assert link.is_symlink()
        assert b"jcr 1.0.0" in link.read_bytes()
        assert os.access(link, os.X_OK)
        assert record.installed_paths == ["bin/jcr"]
        assert record.keg == f"Cellar/jcr/1.0.0_{formula.digest[:8]}"
        assert installer.records.get("jcr") == record
        assert _staging_is_clean(prefix)

    def test_links_route_through_opt(self, installer: Installer, prefix: Path, make_formula):
        formula = make_formula("jcr")
        installer.install_formula(formula)
        assert os.readlink(prefix / "bin" / "jcr") == "../opt/jcr/bin/jcr"
        assert os.readlink(prefix / "opt" / "jcr") == f"../Cellar/jcr/1.0.0_{formula.digest[:8]}"

    def test_tarball_install(self, installer: Installer, prefix: Path, make_formula):
        installer.install_formula(_tool(make_formula, "1.0.0", "a.txt"))
        assert (prefix / "share" / "tool" / "a.txt").read_bytes() == b"a.txt"
        assert b"tool 1.0.0" in (prefix / "bin" / "tool").read_bytes()

    def test_reinstall_is_noop(self, installer: Installer, prefix: Path, make_formula, transport):
        formula = make_formula("jcr")
        first = installer.install_formula(formula)
        before = os.lstat(prefix / "bin" / "jcr").st_mtime_ns
        second = installer.install_formula(formula)
        assert second == first
        assert transport.count(formula.source_url) == 1
        assert os.lstat(prefix / "bin" / "jcr").st_mtime_ns == before

    def test_executable_flag(self, installer: Installer, prefix: Path, make_formula):
        formula = make_formula(
            "helper",
            install_steps=[InstallStep(source="helper-1.0.0.sh", target="libexec/helper", executable=True)],
        )
        installer.install_formula(formula)
        assert os.access(prefix / "libexec" / "helper", os.X_OK)


class TestInstallFailures:
    def test_digest_mismatch_installs_nothing(
        self, installer: Installer, prefix: Path, make_formula, transport
    ):
        formula = make_formula("jcr")
        transport.add(formula.source_url, b"swapped upstream")
        with pytest.raises(DigestMismatch):
            installer.install_formula(formula)
        assert installer.records.get("jcr") is None
        assert not (prefix / "bin" / "jcr").exists()
        assert _staging_is_clean(prefix)

    def test_missing_install_source(self, installer: Installer, prefix: Path, make_formula):
        formula = make_formula(
            "jcr", install_steps=[InstallStep(source="not-there", target="bin/jcr")]
        )
        with pytest.raises(InstallIOError, match="not-there"):
            installer.install_formula(formula)
        assert not (prefix / "Cellar" / "jcr").exists() or not any((prefix / "Cellar" / "jcr").iterdir())
        assert _staging_is_clean(prefix)

    def test_refuses_to_overwrite_foreign_file(
        self, installer: Installer, prefix: Path, make_formula
    ):
        (prefix / "bin").mkdir()
        (prefix / "bin" / "jcr").write_text("someone else's")
        with pytest.raises(InstallIOError, match="not owned"):
            installer.install_formula(make_formula("jcr"))
        assert (prefix / "bin" / "jcr").read_text() == "someone else's"
        assert installer.records.get("jcr") is None
        assert _staging_is_clean(prefix)

    def test_refuses_path_owned_by_other_formula(self, installer: Installer, make_formula):
        installer.install_formula(make_formula("jcr"))
        clash = make_formula(
            "jcr-fork",
            install_steps=[InstallStep(source="jcr-fork-1.0.0.sh", target="bin/jcr")],
        )
        with pytest.raises(InstallIOError):
            installer.install_formula(clash)
        assert installer.records.get("jcr-fork") is None

    def test_cancelled_install(self, installer: Installer, prefix: Path, make_formula, transport):
        formula = make_formula("jcr")
        token = CancelToken()
        token.cancel()
        with pytest.raises(FetchCancelled):
            installer.install_formula(formula, cancel=token)
        assert transport.calls == []
        assert installer.records.get("jcr") is None

    def test_unsafe_zip_member(self, installer: Installer, make_formula, transport):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr("../escape.sh", "boom")
        payload = buffer.getvalue()
        url = "https://formulae.test/evil.zip"
        transport.add(url, payload)
        formula = make_formula(
            "evil",
            source_url=url,
            digest=sha256_hex(payload),
            install_steps=[InstallStep(source="escape.sh", target="bin/evil")],
        )
        with pytest.raises(InstallIOError, match="unsafe archive member"):
            installer.install_formula(formula)


class TestUpgrade:
    def test_upgrade_then_clean(self, installer: Installer, prefix: Path, make_formula):
        installer.install_formula(_tool(make_formula, "1.0.0", "old.txt"))
        installer.install_formula(_tool(make_formula, "2.0.0", "new.txt"))

        assert b"tool 2.0.0" in (prefix / "bin" / "tool").read_bytes()
        assert (prefix / "share" / "tool" / "new.txt").exists()
        assert not (prefix / "share" / "tool" / "old.txt").is_symlink()
        record = installer.records.get("tool")
        assert record.version == "2.0.0"
        assert record.installed_paths == ["bin/tool", "share/tool/new.txt"]
        assert installer.records.previous("tool").version == "1.0.0"

    def test_upgrade_is_a_single_opt_flip(self, installer: Installer, prefix: Path, make_formula):
        installer.install_formula(_tool(make_formula, "1.0.0", "same.txt"))
        link_before = os.readlink(prefix / "bin" / "tool")
        opt_before = os.readlink(prefix / "opt" / "tool")

        installer.install_formula(_tool(make_formula, "2.0.0", "same.txt"))

        assert os.readlink(prefix / "bin" / "tool") == link_before
        assert os.readlink(prefix / "opt" / "tool") != opt_before
        # The superseded keg stays intact for rollback.
        assert (prefix / opt_before.removeprefix("../")).is_dir()

    def test_same_version_new_digest_replaces_keg(
        self, installer: Installer, prefix: Path, make_formula, transport
    ):
        first = make_formula("jcr")
        installer.install_formula(first)
        url = "https://formulae.test/rebuilt/jcr-1.0.0.sh"
        payload = script('echo "jcr 1.0.0 rebuilt"')
        transport.add(url, payload)
        rebuilt = first.model_copy(update={"source_url": url, "digest": sha256_hex(payload)})

        installer.install_formula(rebuilt)

        assert b"rebuilt" in (prefix / "bin" / "jcr").read_bytes()
        assert sorted(p.name for p in (prefix / "Cellar" / "jcr").iterdir()) == [
            f"1.0.0_{rebuilt.digest[:8]}"
        ]

    def test_reinstalled_older_version_prunes_stale_keg(
        self, installer: Installer, prefix: Path, make_formula, transport
    ):
        first = make_formula("jcr", "1.0.0")
        installer.install_formula(first)
        second = installer.install_formula(make_formula("jcr", "2.0.0"))
        url = "https://formulae.test/rebuilt/jcr-1.0.0.sh"
        payload = script('echo "jcr 1.0.0 rebuilt"')
        transport.add(url, payload)
        rebuilt = first.model_copy(update={"source_url": url, "digest": sha256_hex(payload)})

        installer.install_formula(rebuilt)

        assert sorted(p.name for p in (prefix / "Cellar" / "jcr").iterdir()) == [
            f"1.0.0_{rebuilt.digest[:8]}",
            f"2.0.0_{second.digest[:8]}",
        ]
        assert [r.version for r in installer.records.history("jcr").previous] == ["2.0.0"]

    def test_history_depth_prunes_old_kegs(
        self, prefix: Path, fetcher: Fetcher, tmp_dir: Path, make_formula
    ):
        installer = Installer(prefix, fetcher, InstallRecordStore(tmp_dir / "r", keep_versions=1))
        for version in ("1.0.0", "2.0.0", "3.0.0"):
            installer.install_formula(make_formula("jcr", version))
        kegs = sorted(p.name.split("_")[0] for p in (prefix / "Cellar" / "jcr").iterdir())
        assert kegs == ["2.0.0", "3.0.0"]


class TestRollback:
    def test_rollback_restores_previous_set_and_record(
        self, installer: Installer, prefix: Path, make_formula
    ):
        v1_record = installer.install_formula(_tool(make_formula, "1.0.0", "old.txt"))
        v2_record = installer.install_formula(_tool(make_formula, "2.0.0", "new.txt"))

        restored = installer.rollback("tool")

        assert restored == v1_record
        assert installer.records.get("tool") == v1_record
        assert installer.records.previous("tool") is None
        assert b"tool 1.0.0" in (prefix / "bin" / "tool").read_bytes()
        assert (prefix / "share" / "tool" / "old.txt").read_bytes() == b"old.txt"
        assert not (prefix / "share" / "tool" / "new.txt").is_symlink()
        assert not (prefix / v2_record.keg).exists()

    def test_rollback_with_single_version(self, installer: Installer, make_formula):
        installer.install_formula(make_formula("jcr"))
        with pytest.raises(NoPriorVersion):
            installer.rollback("jcr")

    def test_rollback_never_installed(self, installer: Installer):
        with pytest.raises(NoPriorVersion):
            installer.rollback("ghost")

    def test_rollback_twice_walks_history(self, installer: Installer, prefix: Path, make_formula):
        for version in ("1.0.0", "2.0.0", "3.0.0"):
            installer.install_formula(make_formula("jcr", version))
        installer.rollback("jcr")
        installer.rollback("jcr")
        assert installer.records.get("jcr").version == "1.0.0"
        assert b"jcr 1.0.0" in (prefix / "bin" / "jcr").read_bytes()
        with pytest.raises(NoPriorVersion):
            installer.rollback("jcr")


class TestUninstall:
    def test_uninstall_removes_everything(self, installer: Installer, prefix: Path, make_formula):
        installer.install_formula(_tool(make_formula, "1.0.0", "a.txt"))
        installer.install_formula(_tool(make_formula, "2.0.0", "b.txt"))

        record = installer.uninstall("tool")

        assert record.version == "2.0.0"
        assert installer.records.history("tool") is None
        assert not (prefix / "bin" / "tool").is_symlink()
        assert not (prefix / "share").exists()
        assert not (prefix / "opt" / "tool").is_symlink()
        assert not (prefix / "Cellar" / "tool").exists()

    def test_uninstall_not_installed(self, installer: Installer):
        with pytest.raises(NotInstalledError):
            installer.uninstall("ghost")


class TestApply:
    def test_commits_in_plan_order(self, installer: Installer, store: FormulaStore, make_formula):
        store.register(make_formula("dep"))
        store.register(make_formula("app", dependencies=["dep"]))
        result = installer.apply(resolve(["app"], store.snapshot()))
        assert result.ok
        assert result.committed == ["dep", "app"]

    def test_on_commit_false_halts_remaining_entries(
        self, installer: Installer, store: FormulaStore, make_formula, transport
    ):
        store.register(make_formula("dep"))
        store.register(make_formula("app", dependencies=["dep"]))
        seen: list[str] = []

        def reject(formula):
            seen.append(formula.name)
            return False

        result = installer.apply(resolve(["app"], store.snapshot()), on_commit=reject)

        assert seen == ["dep"]
        assert result.committed == ["dep"]
        assert result.not_attempted == ["app"]
        assert result.ok
        assert installer.records.get("dep") is not None
        assert installer.records.get("app") is None
        assert store.get("app").source_url not in transport.calls

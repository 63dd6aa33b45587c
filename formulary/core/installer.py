"""Installer — atomic install, upgrade, rollback and uninstall of formulas.

Namespace layout under ``prefix``::

    Cellar/<name>/<version>_<digest[:8]>/   — one keg per installed version
    opt/<name> -> ../Cellar/<name>/<keg>    — the active keg, one symlink
    <target>   -> <relative>/opt/<name>/<target>
    .staging/                                — per-entry scratch space

Every namespace path routes through ``opt/<name>``, so switching versions is
a single ``os.replace`` of that symlink: a concurrent reader sees either the
whole old version or the whole new one. Old paths the new version does not
reuse are removed only after the switch (upgrade-then-clean).
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tarfile
import uuid
import zipfile
from contextlib import contextmanager
from collections.abc import Callable, Iterator
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlparse

from formulary.core.errors import (
    DigestMismatch,
    FormularyError,
    InstallIOError,
    NoPriorVersion,
    NotInstalledError,
)
from formulary.core.fetcher import CancelToken, Fetcher
from formulary.core.hasher import sha256_hex, verify
from formulary.core.install_records import InstallRecordStore
from formulary.core.namespace_lock import NamespaceLock
from formulary.models.formula import Formula
from formulary.models.plan import InstallPlan
from formulary.models.records import InstallRecord
from formulary.models.results import EntryOutcome, EntryStatus, InstallResult

logger = logging.getLogger(__name__)

_EXEC_DIRS = ("bin", "sbin")


class NamespaceLayout:
    """Path arithmetic for a namespace prefix."""

    def __init__(self, prefix: Path) -> None:
        self.prefix = Path(prefix)
        self.cellar = self.prefix / "Cellar"
        self.opt = self.prefix / "opt"
        self.staging = self.prefix / ".staging"

    def keg_name(self, formula: Formula) -> str:
        return f"{formula.version}_{formula.digest[:8]}"

    def keg(self, formula: Formula) -> Path:
        return self.cellar / formula.name / self.keg_name(formula)

    def opt_link(self, name: str) -> Path:
        return self.opt / name

    def path(self, target: str) -> Path:
        return self.prefix / target

    def link_value(self, name: str, target: str) -> str:
        """Relative symlink text for ``<target>`` routed through ``opt/<name>``."""
        link = self.path(target)
        return os.path.relpath(self.opt / name / target, link.parent)

    def relative(self, path: Path) -> str:
        return path.relative_to(self.prefix).as_posix()


def _atomic_symlink(value: str, link: Path) -> None:
    """Point ``link`` at ``value``, replacing any existing link atomically."""
    link.parent.mkdir(parents=True, exist_ok=True)
    tmp = link.with_name(f".{link.name}.{uuid.uuid4().hex[:8]}.tmp")
    os.symlink(value, tmp)
    try:
        os.replace(tmp, link)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def _remove_tree(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


class Installer:
    """Applies install plans to one namespace.

    Parameters
    ----------
    prefix:
        The namespace root.
    fetcher:
        Source of verified payload bytes.
    records:
        Install record store for this namespace.
    lock:
        Namespace lock; one is created on ``prefix`` when omitted.
    """

    def __init__(
        self,
        prefix: Path,
        fetcher: Fetcher,
        records: InstallRecordStore,
        *,
        lock: NamespaceLock | None = None,
    ) -> None:
        self.layout = NamespaceLayout(prefix)
        self.layout.prefix.mkdir(parents=True, exist_ok=True)
        self._fetcher = fetcher
        self._records = records
        self._lock = lock or NamespaceLock(self.layout.prefix)

    @property
    def records(self) -> InstallRecordStore:
        return self._records

    @property
    def lock(self) -> NamespaceLock:
        return self._lock

    # ------------------------------------------------------------------
    # Plan application
    # ------------------------------------------------------------------

    def apply(
        self,
        plan: InstallPlan,
        *,
        cancel: CancelToken | None = None,
        on_commit: Callable[[Formula], bool] | None = None,
    ) -> InstallResult:
        """Apply ``plan`` strictly in order.

        The first failing entry aborts the rest of the plan. Entries already
        committed stay installed; the failing entry leaves no staged state.

        Parameters
        ----------
        plan:
            The resolved plan.
        cancel:
            Checked before each fetch, during downloads and before commit.
        on_commit:
            Called with each freshly committed formula while the lock is
            held. Returning ``False`` halts the plan; later entries are
            reported as not attempted and the committed one stays installed.
        """
        outcomes: list[EntryOutcome] = []
        error_kind = ""
        error = ""
        halted = False
        with self._lock:
            for entry in plan.entries:
                formula = entry.formula
                if halted:
                    outcomes.append(EntryOutcome(
                        name=formula.name, version=formula.version,
                        action=entry.action, status=EntryStatus.NOT_ATTEMPTED,
                    ))
                    continue
                if entry.skipped:
                    logger.info("%s already satisfied", formula.key)
                    outcomes.append(EntryOutcome(
                        name=formula.name, version=formula.version,
                        action=entry.action, status=EntryStatus.SKIPPED,
                    ))
                    continue
                try:
                    self.install_formula(formula, cancel=cancel)
                except FormularyError as exc:
                    logger.error("%s %s failed: %s", entry.action.value, formula.key, exc)
                    error_kind, error = exc.kind, str(exc)
                    halted = True
                    outcomes.append(EntryOutcome(
                        name=formula.name, version=formula.version,
                        action=entry.action, status=EntryStatus.FAILED,
                        error=error, error_kind=error_kind,
                    ))
                    continue
                outcomes.append(EntryOutcome(
                    name=formula.name, version=formula.version,
                    action=entry.action, status=EntryStatus.COMMITTED,
                ))
                if on_commit is not None and not on_commit(formula):
                    logger.warning("Halting plan after %s", formula.key)
                    halted = True
        return InstallResult(outcomes=outcomes, error_kind=error_kind, error=error)

    def install_formula(
        self, formula: Formula, *, cancel: CancelToken | None = None
    ) -> InstallRecord:
        """Fetch, verify, stage and commit a single formula."""
        with self._lock:
            current = self._records.get(formula.name)
            if current is not None and current.matches(formula.version, formula.digest):
                logger.info("%s already installed", formula.key)
                return current
            if cancel is not None:
                cancel.raise_if_cancelled(f"install of {formula.key}")
            entry = self._fetcher.fetch(formula.source_url, formula.digest, cancel=cancel)
            try:
                data = entry.read_bytes()
            except OSError as exc:
                raise InstallIOError(f"reading cached payload for {formula.key} failed: {exc}") from exc
            if not verify(data, formula.digest):
                actual = sha256_hex(data)
                logger.error(
                    "Cached payload for %s does not match %s (actual %s)",
                    formula.source_url, formula.digest, actual,
                )
                raise DigestMismatch(formula.source_url, formula.digest, actual)

            with self._staging(formula) as scratch:
                try:
                    keg = self._stage(formula, data, scratch)
                except (OSError, tarfile.TarError, zipfile.BadZipFile) as exc:
                    raise InstallIOError(f"staging {formula.key} failed: {exc}") from exc
                if cancel is not None:
                    cancel.raise_if_cancelled(f"install of {formula.key}")
                return self._commit(formula, keg, scratch)

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    @contextmanager
    def _staging(self, formula: Formula) -> Iterator[Path]:
        scratch = self.layout.staging / f"{formula.name}-{uuid.uuid4().hex[:12]}"
        try:
            scratch.mkdir(parents=True)
        except OSError as exc:
            raise InstallIOError(f"cannot create staging directory {scratch}: {exc}") from exc
        try:
            yield scratch
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
            logger.debug("Removed staging directory %s", scratch)

    def _stage(self, formula: Formula, data: bytes, scratch: Path) -> Path:
        source_root = scratch / "src"
        source_root.mkdir()
        self._unpack(formula, data, source_root)

        keg = scratch / "keg"
        keg.mkdir()
        for step in formula.install_steps:
            src = source_root / step.source
            if not src.exists():
                raise InstallIOError(
                    f"{formula.key}: install source {step.source!r} is not in the payload"
                )
            dest = keg / step.target
            dest.parent.mkdir(parents=True, exist_ok=True)
            if src.is_dir():
                shutil.copytree(src, dest, symlinks=True)
            else:
                shutil.copy2(src, dest)
                if step.executable or PurePosixPath(step.target).parts[0] in _EXEC_DIRS:
                    mode = dest.stat().st_mode
                    dest.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        logger.debug("Staged %d artifact(s) for %s", len(formula.install_steps), formula.key)
        return keg

    @staticmethod
    def _unpack(formula: Formula, data: bytes, dest: Path) -> None:
        """Extract archives; a plain payload is named after the URL basename."""
        payload = dest.parent / "payload"
        payload.write_bytes(data)
        if tarfile.is_tarfile(payload):
            with tarfile.open(payload) as tar:
                tar.extractall(dest, filter="data")
        elif zipfile.is_zipfile(payload):
            with zipfile.ZipFile(payload) as archive:
                for member in archive.namelist():
                    parts = PurePosixPath(member).parts
                    if PurePosixPath(member).is_absolute() or ".." in parts:
                        raise InstallIOError(f"{formula.key}: unsafe archive member {member!r}")
                archive.extractall(dest)
        else:
            filename = PurePosixPath(unquote(urlparse(formula.source_url).path)).name
            payload.rename(dest / (filename or formula.name))
            return
        payload.unlink()

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _check_targets(self, name: str, targets: list[str], owned: set[str]) -> None:
        """Refuse to overwrite namespace paths another formula owns."""
        for target in targets:
            path = self.layout.path(target)
            if not (path.exists() or path.is_symlink()):
                continue
            if target in owned and path.is_symlink():
                continue
            if path.is_symlink() and os.readlink(path) == self.layout.link_value(name, target):
                continue
            raise InstallIOError(f"{target} already exists and is not owned by {name}")

    def _link_targets(self, name: str, targets: list[str]) -> list[str]:
        """Create namespace links; returns the ones that did not exist before."""
        created = []
        for target in targets:
            path = self.layout.path(target)
            value = self.layout.link_value(name, target)
            if path.is_symlink() and os.readlink(path) == value:
                continue
            _atomic_symlink(value, path)
            created.append(target)
        return created

    def _unlink_targets(self, name: str, targets: list[str]) -> None:
        for target in targets:
            path = self.layout.path(target)
            if path.is_symlink() and os.readlink(path) == self.layout.link_value(name, target):
                path.unlink()
                self._prune_empty_dirs(path.parent)

    def _prune_empty_dirs(self, directory: Path) -> None:
        while directory != self.layout.prefix and directory.is_dir():
            try:
                directory.rmdir()
            except OSError:
                return
            directory = directory.parent

    def _flip(self, name: str, keg: Path) -> None:
        _atomic_symlink(os.path.relpath(keg, self.layout.opt), self.layout.opt_link(name))

    def _commit(self, formula: Formula, staged_keg: Path, scratch: Path) -> InstallRecord:
        old = self._records.get(formula.name)
        old_paths = list(old.installed_paths) if old else []
        new_paths = formula.target_paths
        keg = self.layout.keg(formula)

        try:
            self._check_targets(formula.name, new_paths, set(old_paths))
        except OSError as exc:
            raise InstallIOError(f"checking targets of {formula.key} failed: {exc}") from exc

        created: list[str] = []
        flipped = False
        try:
            keg.parent.mkdir(parents=True, exist_ok=True)
            if keg.exists():
                # A superseded keg of the same version and digest; never the active one.
                keg.rename(scratch / "superseded-keg")
            staged_keg.rename(keg)
            created = self._link_targets(formula.name, new_paths)
            self._flip(formula.name, keg)
            flipped = True
            record = InstallRecord(
                name=formula.name,
                version=formula.version,
                digest=formula.digest,
                installed_paths=new_paths,
                keg=self.layout.relative(keg),
            )
            dropped = self._records.commit(record)
        except OSError as exc:
            self._undo_commit(formula, old, keg, created, flipped, scratch)
            raise InstallIOError(f"committing {formula.key} failed: {exc}") from exc

        logger.info(
            "%s %s (%d path(s))",
            "Upgraded" if old else "Installed",
            formula.key,
            len(new_paths),
        )
        try:
            self._unlink_targets(formula.name, sorted(set(old_paths) - set(new_paths)))
            self._prune_kegs(formula.name, [*dropped, old] if old else dropped)
        except OSError:
            logger.warning("Cleanup after %s left stale paths", formula.key, exc_info=True)
        return record

    def _undo_commit(
        self,
        formula: Formula,
        old: InstallRecord | None,
        keg: Path,
        created: list[str],
        flipped: bool,
        scratch: Path,
    ) -> None:
        """Best-effort return to the pre-commit namespace state."""
        try:
            if flipped:
                if old is not None:
                    self._flip(formula.name, self.layout.prefix / old.keg)
                else:
                    self.layout.opt_link(formula.name).unlink(missing_ok=True)
            owned = set(old.installed_paths) if old else set()
            self._unlink_targets(formula.name, [t for t in created if t not in owned])
            if old is None or self.layout.prefix / old.keg != keg:
                _remove_tree(keg)
            superseded = scratch / "superseded-keg"
            if superseded.is_dir() and not keg.exists():
                superseded.rename(keg)
        except OSError:
            logger.exception("Could not fully undo failed commit of %s", formula.key)

    def _prune_kegs(self, name: str, dropped: list[InstallRecord]) -> None:
        history = self._records.history(name)
        keep = set()
        if history is not None:
            keep = {r.keg for r in (history.current, *history.previous)}
        for record in dropped:
            if record.keg and record.keg not in keep:
                _remove_tree(self.layout.prefix / record.keg)
                logger.debug("Pruned keg %s", record.keg)

    # ------------------------------------------------------------------
    # Rollback and uninstall
    # ------------------------------------------------------------------

    def rollback(self, name: str) -> InstallRecord:
        """Restore the previous install record's artifact set.

        Raises
        ------
        NoPriorVersion
            If ``name`` has no superseded install record.
        """
        with self._lock:
            history = self._records.history(name)
            if history is None or not history.previous:
                raise NoPriorVersion(f"{name} has no prior installed version to roll back to")
            current, previous = history.current, history.previous[0]
            previous_keg = self.layout.prefix / previous.keg
            if not previous_keg.is_dir():
                raise InstallIOError(f"keg for {name}@{previous.version} is missing: {previous.keg}")

            try:
                self._check_targets(name, previous.installed_paths, set(current.installed_paths))
                self._link_targets(name, previous.installed_paths)
                self._flip(name, previous_keg)
                self._records.pop_current(name)
            except OSError as exc:
                raise InstallIOError(f"rolling back {name} failed: {exc}") from exc

            try:
                stale = sorted(set(current.installed_paths) - set(previous.installed_paths))
                self._unlink_targets(name, stale)
                if current.keg and current.keg != previous.keg:
                    _remove_tree(self.layout.prefix / current.keg)
            except OSError:
                logger.warning("Cleanup after rolling back %s left stale paths", name, exc_info=True)

            logger.info("Rolled back %s from %s to %s", name, current.version, previous.version)
            return self._records.get(name) or previous

    def uninstall(self, name: str) -> InstallRecord:
        """Remove every artifact, keg and record of ``name``."""
        with self._lock:
            record = self._records.get(name)
            if record is None:
                raise NotInstalledError(f"{name} is not installed")
            try:
                self._unlink_targets(name, record.installed_paths)
                self.layout.opt_link(name).unlink(missing_ok=True)
                _remove_tree(self.layout.cellar / name)
                self._records.delete(name)
            except OSError as exc:
                raise InstallIOError(f"uninstalling {name} failed: {exc}") from exc
            logger.info("Uninstalled %s@%s", name, record.version)
            return record

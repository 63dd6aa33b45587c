"""Formula Store — registry of known formula versions keyed by name.

The store is an explicit value passed to the resolver and engine, never a
process-wide singleton. It is mutated only by ``register`` and ``promote``;
resolution runs against an immutable ``StoreSnapshot``.

Manifests are JSON files holding one formula object or a list of them.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from formulary.core.errors import FormulaNotFoundError, ManifestConflictError
from formulary.models.formula import Formula, version_key

logger = logging.getLogger(__name__)


def load_manifest(path: Path) -> list[Formula]:
    """Parse a JSON manifest file into formulas.

    Raises
    ------
    ManifestConflictError
        If the file is not valid JSON or fails model validation.
    """
    try:
        raw: Any = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ManifestConflictError(f"{path}: invalid JSON: {exc}") from exc

    items = raw if isinstance(raw, list) else [raw]
    formulas: list[Formula] = []
    for index, item in enumerate(items):
        try:
            formulas.append(Formula.model_validate(item))
        except ValidationError as exc:
            raise ManifestConflictError(f"{path}[{index}]: invalid formula: {exc}") from exc
    return formulas


class StoreSnapshot:
    """Read-only view of a store at one point in time."""

    def __init__(
        self,
        versions: Mapping[str, Mapping[str, Formula]],
        current: Mapping[str, str],
    ) -> None:
        self._versions = MappingProxyType(
            {name: MappingProxyType(dict(by_version)) for name, by_version in versions.items()}
        )
        self._current = MappingProxyType(dict(current))

    def __contains__(self, name: object) -> bool:
        return name in self._versions

    @property
    def names(self) -> list[str]:
        return sorted(self._versions)

    def has_version(self, name: str, version: str) -> bool:
        return version in self._versions.get(name, {})

    def versions(self, name: str) -> list[str]:
        """Known versions of ``name``, lowest first."""
        if name not in self._versions:
            raise FormulaNotFoundError(f"Unknown formula: {name}")
        return sorted(self._versions[name], key=version_key)

    def current_version(self, name: str) -> str:
        if name not in self._current:
            raise FormulaNotFoundError(f"Unknown formula: {name}")
        return self._current[name]

    def get(self, name: str, version: str | None = None) -> Formula:
        """Return ``name@version``, or the current version when omitted."""
        if name not in self._versions:
            raise FormulaNotFoundError(f"Unknown formula: {name}")
        version = version or self._current[name]
        try:
            return self._versions[name][version]
        except KeyError:
            raise FormulaNotFoundError(f"Unknown formula version: {name}@{version}") from None


class FormulaStore:
    """Mutable registry of formulas with a designated current version per name.

    Examples
    --------
    >>> store = FormulaStore()
    >>> store.names
    []
    """

    def __init__(self, formulas: Iterable[Formula] = ()) -> None:
        self._versions: dict[str, dict[str, Formula]] = {}
        self._current: dict[str, str] = {}
        # (source_url, version) -> digest, for source mutation detection
        self._sources: dict[tuple[str, str], str] = {}
        for formula in formulas:
            self.register(formula)

    # -- Registration -------------------------------------------------------

    def register(self, formula: Formula, *, promote: bool | None = None) -> bool:
        """Add a formula version.

        Parameters
        ----------
        formula:
            The formula to register.
        promote:
            ``True`` marks it current, ``False`` never does. ``None``
            (default) promotes it if it is the first or highest version.

        Returns
        -------
        bool
            ``False`` if an identical formula was already registered.

        Raises
        ------
        ManifestConflictError
            If ``name@version`` is registered with different content, or the
            same ``(source_url, version)`` was declared with another digest.
        """
        existing = self._versions.get(formula.name, {}).get(formula.version)
        if existing is not None:
            if existing == formula:
                return False
            raise ManifestConflictError(
                f"{formula.key} is already registered with different content"
            )

        source_key = (formula.source_url, formula.version)
        known_digest = self._sources.get(source_key)
        if known_digest is not None and known_digest != formula.digest:
            logger.error(
                "Conflicting digests for %s at version %s: %s vs %s",
                formula.source_url,
                formula.version,
                known_digest,
                formula.digest,
            )
            raise ManifestConflictError(
                f"{formula.source_url} at version {formula.version} is declared with "
                f"digest {formula.digest} but was already registered as {known_digest}"
            )

        self._versions.setdefault(formula.name, {})[formula.version] = formula
        self._sources[source_key] = formula.digest

        current = self._current.get(formula.name)
        if promote is None:
            promote = current is None or version_key(formula.version) > version_key(current)
        if promote or current is None:
            self._current[formula.name] = formula.version
        logger.debug("Registered %s (current=%s)", formula.key, self._current[formula.name])
        return True

    def promote(self, name: str, version: str) -> None:
        """Mark ``name@version`` as the current version."""
        if version not in self._versions.get(name, {}):
            raise FormulaNotFoundError(f"Unknown formula version: {name}@{version}")
        self._current[name] = version
        logger.info("Promoted %s@%s to current", name, version)

    def load_manifest(self, path: Path) -> list[Formula]:
        """Register every formula in a manifest file."""
        formulas = load_manifest(path)
        for formula in formulas:
            self.register(formula)
        return formulas

    def load_directory(self, directory: Path) -> int:
        """Register every ``*.json`` manifest under ``directory``.

        Files are loaded in sorted order so conflicts surface
        deterministically. Returns the number of formulas registered.
        """
        directory = Path(directory)
        if not directory.is_dir():
            raise FileNotFoundError(f"Formula directory not found: {directory}")
        count = 0
        for path in sorted(directory.rglob("*.json")):
            count += len(self.load_manifest(path))
        logger.info("Loaded %d formula(s) from %s", count, directory)
        return count

    # -- Lookup -------------------------------------------------------------

    def __contains__(self, name: object) -> bool:
        return name in self._versions

    def __len__(self) -> int:
        return sum(len(v) for v in self._versions.values())

    @property
    def names(self) -> list[str]:
        return sorted(self._versions)

    def get(self, name: str, version: str | None = None) -> Formula:
        return self.snapshot().get(name, version)

    def current(self, name: str) -> Formula:
        return self.get(name)

    def versions(self, name: str) -> list[str]:
        return self.snapshot().versions(name)

    def snapshot(self) -> StoreSnapshot:
        """Freeze the current registry for resolution."""
        return StoreSnapshot(self._versions, self._current)

"""Persisted install records — one JSON file per installed formula name.

Layout: {records_dir}/{name}.json holding a ``RecordHistory``: the current
``InstallRecord`` and the superseded ones (newest first) that rollback can
restore. Files are replaced atomically.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from formulary.models.records import InstallRecord, RecordHistory

logger = logging.getLogger(__name__)


class InstallRecordStore:
    """Owns the install records of one namespace.

    Parameters
    ----------
    records_dir:
        Directory holding one ``<name>.json`` per installed formula.
    keep_versions:
        How many superseded records to retain per name for rollback.
    """

    def __init__(self, records_dir: Path, *, keep_versions: int = 3) -> None:
        self._dir = Path(records_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._keep = max(0, keep_versions)

    def _path(self, name: str) -> Path:
        return self._dir / f"{name}.json"

    # -- Read ---------------------------------------------------------------

    def history(self, name: str) -> RecordHistory | None:
        path = self._path(name)
        if not path.exists():
            return None
        return RecordHistory.model_validate_json(path.read_text(encoding="utf-8"))

    def get(self, name: str) -> InstallRecord | None:
        history = self.history(name)
        return history.current if history else None

    def previous(self, name: str) -> InstallRecord | None:
        history = self.history(name)
        if history is None or not history.previous:
            return None
        return history.previous[0]

    def list_records(self) -> dict[str, InstallRecord]:
        """Current record for every installed name, sorted by name."""
        records: dict[str, InstallRecord] = {}
        for path in sorted(self._dir.glob("*.json")):
            history = RecordHistory.model_validate_json(path.read_text(encoding="utf-8"))
            records[history.current.name] = history.current
        return records

    # -- Write --------------------------------------------------------------

    def _write(self, name: str, history: RecordHistory) -> None:
        path = self._path(name)
        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=f".{name}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(json.dumps(json.loads(history.model_dump_json()), indent=2, sort_keys=True))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Persisted install record for %s to %s", name, path)

    def commit(self, record: InstallRecord) -> list[InstallRecord]:
        """Make ``record`` current, pushing the old current into history.

        Re-committing the same version replaces it in place, and an older
        history record of that version is replaced too. Returns every
        superseded record no longer kept: the replaced ones plus those
        beyond ``keep_versions``.
        """
        history = self.history(record.name)
        previous: list[InstallRecord] = []
        if history is not None:
            if history.current.version == record.version:
                previous = list(history.previous)
            else:
                previous = [history.current, *history.previous]
        replaced = [r for r in previous if r.version == record.version]
        previous = [r for r in previous if r.version != record.version]
        dropped = [*replaced, *previous[self._keep:]]
        self._write(record.name, RecordHistory(current=record, previous=previous[: self._keep]))
        return dropped

    def pop_current(self, name: str) -> tuple[InstallRecord, InstallRecord]:
        """Drop the current record and promote the newest previous one.

        Returns ``(removed, restored)``. The caller checks ``previous``
        first; a missing history raises ``LookupError``.
        """
        history = self.history(name)
        if history is None or not history.previous:
            raise LookupError(f"No previous install record for {name}")
        restored, *rest = history.previous
        self._write(name, RecordHistory(current=restored, previous=rest))
        return history.current, restored

    def delete(self, name: str) -> RecordHistory | None:
        """Remove every record for ``name``; returns what was removed."""
        history = self.history(name)
        if history is not None:
            self._path(name).unlink()
            logger.debug("Deleted install records for %s", name)
        return history

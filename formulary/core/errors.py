"""Error kinds raised by the engine.

Every error carries a stable ``kind`` code and a ``retryable`` flag.
``NetworkError`` is the only kind a caller should retry automatically.
"""

from __future__ import annotations

from typing import ClassVar


class FormularyError(RuntimeError):
    """Base class for all engine errors."""

    kind: ClassVar[str] = "FormularyError"
    retryable: ClassVar[bool] = False


# ---------------------------------------------------------------------------
# Manifests and store
# ---------------------------------------------------------------------------


class ManifestConflictError(FormularyError):
    """Two manifests disagree about an immutable identity.

    Raised for a re-registered ``(name, version)`` with different content,
    or a shared ``(source_url, version)`` with different digests.
    """

    kind = "ManifestConflict"


class FormulaNotFoundError(FormularyError):
    """A name or ``name@version`` is not known to the store."""

    kind = "FormulaNotFound"


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class MissingDependency(FormularyError):
    """A referenced formula is absent from the store."""

    kind = "MissingDependency"

    def __init__(self, name: str, required_by: str | None = None) -> None:
        self.name = name
        self.required_by = required_by
        if required_by:
            message = f"{required_by} depends on {name!r}, which is not in the formula store"
        else:
            message = f"Requested formula {name!r} is not in the formula store"
        super().__init__(message)


class DependencyCycle(FormularyError):
    """The dependency graph contains a cycle; ``path`` closes on itself."""

    kind = "DependencyCycle"

    def __init__(self, path: list[str]) -> None:
        self.path = list(path)
        super().__init__(f"Dependency cycle: {','.join(self.path)}")


# ---------------------------------------------------------------------------
# Fetch and verify
# ---------------------------------------------------------------------------


class NetworkError(FormularyError):
    """Transient transport failure."""

    kind = "NetworkError"
    retryable = True


class FetchCancelled(FormularyError):
    """The caller's cancel token fired during a fetch or install."""

    kind = "Cancelled"


class DigestMismatch(FormularyError):
    """Fetched bytes do not hash to the manifest's declared digest."""

    kind = "DigestMismatch"

    def __init__(self, source_url: str, expected: str, actual: str) -> None:
        self.source_url = source_url
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Digest mismatch for {source_url}: expected {expected}, got {actual}"
        )


# ---------------------------------------------------------------------------
# Install
# ---------------------------------------------------------------------------


class InstallIOError(FormularyError):
    """A filesystem operation failed while staging or committing."""

    kind = "InstallIOError"


class NamespaceLockedError(FormularyError):
    """Another installer holds the namespace lock."""

    kind = "NamespaceLocked"


class NoPriorVersion(FormularyError):
    """Rollback requested but no superseded install record exists."""

    kind = "NoPriorVersion"


class NotInstalledError(FormularyError):
    """The named formula has no install record."""

    kind = "NotInstalled"


class ValidationFailure(FormularyError):
    """A formula's post-install test did not pass."""

    kind = "ValidationFailure"

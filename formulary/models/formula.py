"""Formula models — immutable, declarative package descriptions.

A formula is pure data. Install logic lives in the engine, which interprets
the ordered ``install_steps`` list of artifact placements; nothing in a
manifest is executed except the post-install ``test`` command.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VERSION_RUN = re.compile(r"\d+|[A-Za-z]+")
_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")


def version_key(version: str) -> tuple[tuple[int, int | str], ...]:
    """Sort key for formula versions.

    Numeric runs compare numerically, alphabetic runs lexically, and a
    numeric run sorts after an alphabetic one: ``1.2a < 1.2.1 < 1.10``.
    """
    key: list[tuple[int, int | str]] = []
    for run in _VERSION_RUN.findall(version):
        if run.isdigit():
            key.append((1, int(run)))
        else:
            key.append((0, run.lower()))
    return tuple(key)


class InstallStep(BaseModel):
    """One artifact placement: ``source`` in the fetched payload -> ``target``.

    ``target`` is relative to the namespace prefix (e.g. ``bin/jcr``).
    """

    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    executable: bool = False

    @field_validator("target")
    @classmethod
    def _relative_target(cls, value: str) -> str:
        path = PurePosixPath(value)
        if not value or path.is_absolute() or ".." in path.parts:
            raise ValueError(f"install target must be a relative path inside the prefix: {value!r}")
        return path.as_posix()

    @field_validator("source")
    @classmethod
    def _relative_source(cls, value: str) -> str:
        path = PurePosixPath(value)
        if not value or path.is_absolute() or ".." in path.parts:
            raise ValueError(f"install source must be a relative path: {value!r}")
        return path.as_posix()


class TestCommand(BaseModel):
    """Post-install smoke test.

    ``argv`` entries may use ``{prefix}``, ``{bin}`` and ``{opt}``
    placeholders, expanded against the namespace at run time.
    """

    __test__ = False  # not a pytest class

    model_config = ConfigDict(frozen=True)

    argv: list[str]
    expected_status: int = 0
    timeout_seconds: float | None = None

    @field_validator("argv")
    @classmethod
    def _non_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("test command argv must not be empty")
        return value


class Formula(BaseModel):
    """A named, versioned package description.

    ``(name, version)`` identifies a formula globally. ``digest`` is the
    lower-case SHA-256 hex of the bytes behind ``source_url``.

    Examples
    --------
    >>> f = Formula(
    ...     name="fzf-wrapper",
    ...     version="2.1.0",
    ...     source_url="https://example.invalid/fzf-wrapper.sh",
    ...     digest="0" * 64,
    ...     dependencies=["fzf"],
    ...     install_steps=[InstallStep(source="fzf-wrapper.sh", target="bin/fzfw")],
    ...     test=TestCommand(argv=["{bin}/fzfw", "--version"]),
    ... )
    >>> f.key
    'fzf-wrapper@2.1.0'
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    source_url: str
    digest: str
    dependencies: list[str] = Field(default_factory=list)
    install_steps: list[InstallStep] = Field(default_factory=list)
    test: TestCommand | None = None

    desc: str = ""
    homepage: str = ""
    license: str = ""
    caveats: str = ""

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        if not value or "/" in value or value.startswith("."):
            raise ValueError(f"invalid formula name: {value!r}")
        return value

    @field_validator("digest")
    @classmethod
    def _normalise_digest(cls, value: str) -> str:
        value = value.strip().lower().removeprefix("sha256:")
        if not _HEX_DIGEST.match(value):
            raise ValueError(f"digest must be 64 hex characters: {value!r}")
        return value

    @field_validator("dependencies")
    @classmethod
    def _dedupe_dependencies(cls, value: list[str]) -> list[str]:
        return sorted(set(value))

    @property
    def key(self) -> str:
        """``name@version`` identity string."""
        return f"{self.name}@{self.version}"

    @property
    def sort_version(self) -> tuple[tuple[int, int | str], ...]:
        return version_key(self.version)

    @property
    def target_paths(self) -> list[str]:
        """Sorted namespace paths this formula places."""
        return sorted({step.target for step in self.install_steps})

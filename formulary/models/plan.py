"""Install plan models — fixed before execution begins."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from formulary.models.formula import Formula


class PlanAction(str, Enum):
    """What the Installer does with a plan entry."""

    INSTALL = "install"
    UPGRADE = "upgrade"
    ALREADY_SATISFIED = "already-satisfied"


class VersionDecision(BaseModel):
    """Audit record of a version choice made during resolution.

    Written whenever more than one version of a name was demanded and the
    single-current-version policy picked one of them.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    candidates: list[str]
    selected: str
    reason: str


class PlanEntry(BaseModel):
    """A single ``(Formula, action)`` step of an install plan."""

    model_config = ConfigDict(frozen=True)

    formula: Formula
    action: PlanAction
    requested: bool = False  # True when named by the caller, False for dependencies
    installed_version: str | None = None

    @property
    def skipped(self) -> bool:
        return self.action == PlanAction.ALREADY_SATISFIED


class InstallPlan(BaseModel):
    """Dependency-ordered sequence of plan entries.

    Dependencies always precede their dependents.
    """

    model_config = ConfigDict(frozen=True)

    requested: list[str]
    entries: list[PlanEntry] = Field(default_factory=list)
    decisions: list[VersionDecision] = Field(default_factory=list)
    plan_hash: str = ""

    @property
    def names(self) -> list[str]:
        return [entry.formula.name for entry in self.entries]

    @property
    def pending(self) -> list[PlanEntry]:
        """Entries the Installer will act on."""
        return [entry for entry in self.entries if not entry.skipped]

    def entry(self, name: str) -> PlanEntry:
        for candidate in self.entries:
            if candidate.formula.name == name:
                return candidate
        raise KeyError(name)

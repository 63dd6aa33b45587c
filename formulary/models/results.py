"""Outcome models for install, validation and engine runs."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from formulary.models.plan import InstallPlan, PlanAction
from formulary.models.records import InstallRecord


class EntryStatus(str, Enum):
    """Per-entry outcome of ``Installer.apply``."""

    COMMITTED = "committed"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


class EntryOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    action: PlanAction
    status: EntryStatus
    error: str = ""
    error_kind: str = ""


class InstallResult(BaseModel):
    """Result of applying a plan.

    ``error_kind`` is the stable code of the error that aborted the plan,
    empty when every entry committed or was skipped.
    """

    model_config = ConfigDict(frozen=True)

    outcomes: list[EntryOutcome] = Field(default_factory=list)
    error_kind: str = ""
    error: str = ""

    def _names(self, status: EntryStatus) -> list[str]:
        return [o.name for o in self.outcomes if o.status == status]

    @property
    def committed(self) -> list[str]:
        return self._names(EntryStatus.COMMITTED)

    @property
    def skipped(self) -> list[str]:
        return self._names(EntryStatus.SKIPPED)

    @property
    def failed(self) -> list[str]:
        return self._names(EntryStatus.FAILED)

    @property
    def not_attempted(self) -> list[str]:
        return self._names(EntryStatus.NOT_ATTEMPTED)

    @property
    def ok(self) -> bool:
        return not self.error_kind


class TestResult(BaseModel):
    """Outcome of a formula's post-install smoke test."""

    __test__ = False  # not a pytest class

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    passed: bool
    exit_status: int | None = None
    expected_status: int = 0
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    reason: str = ""


class EngineReport(BaseModel):
    """Everything one engine operation did, plus its process exit code.

    Exit codes: 0 success, 1 resolution/fetch/digest/IO error, 2 post-install
    test failure with artifacts left installed, 3 no prior version to roll
    back to.
    """

    model_config = ConfigDict(frozen=True)

    operation: str
    requested: list[str] = Field(default_factory=list)
    plan: InstallPlan | None = None
    install_result: InstallResult | None = None
    test_results: list[TestResult] = Field(default_factory=list)
    record: InstallRecord | None = None
    error_kind: str = ""
    error: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def failed_tests(self) -> list[TestResult]:
        return [t for t in self.test_results if not t.passed]

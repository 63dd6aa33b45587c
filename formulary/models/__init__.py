"""Formulary data models — all Pydantic v2, all frozen (immutable)."""

from formulary.models.formula import Formula, InstallStep, TestCommand, version_key
from formulary.models.plan import InstallPlan, PlanAction, PlanEntry, VersionDecision
from formulary.models.records import CacheEntry, InstallRecord, RecordHistory
from formulary.models.results import (
    EngineReport,
    EntryOutcome,
    EntryStatus,
    InstallResult,
    TestResult,
)

__all__ = [
    # formula
    "Formula",
    "InstallStep",
    "TestCommand",
    "version_key",
    # plan
    "InstallPlan",
    "PlanAction",
    "PlanEntry",
    "VersionDecision",
    # records
    "CacheEntry",
    "InstallRecord",
    "RecordHistory",
    # results
    "EngineReport",
    "EntryOutcome",
    "EntryStatus",
    "InstallResult",
    "TestResult",
]

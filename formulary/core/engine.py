"""Formula engine — the central coordinator for install runs.

The Engine wires together the FormulaStore, DependencyResolver, Fetcher,
ArtifactCache, InstallRecordStore, NamespaceLock, Installer and Validator
into one control flow:

    requested names -> plan (pure, over a store snapshot)
                    -> prefetch (optional, concurrent)
                    -> apply (in order, under the namespace lock),
                       validating each entry as soon as it commits

A failed post-install test halts the rest of the plan: the failing formula
stays installed and later entries are not attempted.

Every public operation returns an ``EngineReport`` carrying the process
exit code the CLI reports.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from formulary.config import EngineConfig
from formulary.core.artifact_cache import ArtifactCache
from formulary.core.errors import FormularyError, NoPriorVersion, NotInstalledError, ValidationFailure
from formulary.core.fetcher import CancelToken, Fetcher, FetchOutcome, RoutingTransport, Transport
from formulary.core.formula_store import FormulaStore
from formulary.core.install_records import InstallRecordStore
from formulary.core.installer import Installer
from formulary.core.namespace_lock import NamespaceLock
from formulary.core.resolver import DependencyResolver, Request, parse_request
from formulary.core.validator import Validator
from formulary.models.formula import Formula
from formulary.models.plan import InstallPlan
from formulary.models.records import InstallRecord
from formulary.models.results import EngineReport, TestResult

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_VALIDATION_FAILED = 2
EXIT_NO_PRIOR_VERSION = 3


class Engine:
    """Resolves, fetches, installs and validates formulas in one namespace.

    Parameters
    ----------
    config:
        Engine configuration. Uses env-driven defaults if not provided.
    store:
        Formula definitions. Loaded from ``config.formulae_path`` if omitted.
    transport:
        Byte source for fetches. Defaults to HTTP(S) and ``file://``.
    validator:
        Post-install test runner; built from ``config`` if omitted.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        store: FormulaStore | None = None,
        transport: Transport | None = None,
        *,
        validator: Validator | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        if store is None:
            store = FormulaStore()
            if self.config.formulae_path.is_dir():
                store.load_directory(self.config.formulae_path)
        self.store = store

        # Core subsystems
        self.cache = ArtifactCache(self.config.cache_path)
        self.fetcher = Fetcher(
            self.cache,
            transport or RoutingTransport(),
            timeout=self.config.fetch_timeout_seconds,
        )
        self.records = InstallRecordStore(
            self.config.records_path, keep_versions=self.config.keep_versions
        )
        self.lock = NamespaceLock(self.config.prefix, timeout=self.config.lock_timeout_seconds)
        self.installer = Installer(self.config.prefix, self.fetcher, self.records, lock=self.lock)
        self.validator = validator or Validator(timeout=self.config.test_timeout_seconds)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def plan(self, requested: Iterable[Request]) -> InstallPlan:
        """Resolve ``requested`` against the store and current records."""
        resolver = DependencyResolver(self.store.snapshot(), self.records.list_records())
        return resolver.resolve(requested)

    def installed(self) -> dict[str, InstallRecord]:
        return self.records.list_records()

    # ------------------------------------------------------------------
    # Install and upgrade
    # ------------------------------------------------------------------

    def install(
        self, requested: Iterable[Request], *, cancel: CancelToken | None = None
    ) -> EngineReport:
        """Install the requested formulas and their dependencies.

        Already-satisfied entries are skipped, so re-running an install is
        a no-op.
        """
        requests = [parse_request(r) for r in requested]
        names = [name for name, _ in requests]
        try:
            plan = self.plan(requests)
        except FormularyError as exc:
            logger.error("Resolution of %s failed: %s", ", ".join(names), exc)
            return self._error_report("install", names, exc)
        return self._execute("install", plan, cancel=cancel)

    def upgrade(self, name: str, *, cancel: CancelToken | None = None) -> EngineReport:
        """Move an installed formula (and its dependencies) to the current version.

        A formula that is already current yields an empty, successful report.
        """
        if self.records.get(name) is None:
            exc = NotInstalledError(f"{name} is not installed; install it first")
            logger.error("%s", exc)
            return self._error_report("upgrade", [name], exc)
        try:
            plan = self.plan([name])
        except FormularyError as exc:
            logger.error("Resolution of %s failed: %s", name, exc)
            return self._error_report("upgrade", [name], exc)
        if not plan.pending:
            logger.info("%s is already up to date", name)
        return self._execute("upgrade", plan, cancel=cancel)

    def prefetch(
        self, plan: InstallPlan, *, cancel: CancelToken | None = None
    ) -> dict[str, FetchOutcome]:
        """Warm the cache for every pending entry concurrently.

        Failures are only logged here; ``apply`` fetches in order and
        surfaces them against the right entry.
        """
        targets = [(e.formula.source_url, e.formula.digest) for e in plan.pending]
        outcomes = self.fetcher.fetch_many(
            targets, max_workers=self.config.max_parallel_fetches, cancel=cancel
        )
        for digest, outcome in outcomes.items():
            if not outcome.ok:
                logger.warning("Prefetch of %s failed: %s", digest, outcome.error)
        return outcomes

    def _execute(
        self, operation: str, plan: InstallPlan, *, cancel: CancelToken | None
    ) -> EngineReport:
        if self.config.max_parallel_fetches > 1 and len(plan.pending) > 1:
            self.prefetch(plan, cancel=cancel)

        tests: list[TestResult] = []

        def _validate(formula: Formula) -> bool:
            test = self.validator.validate(formula, self.config.prefix)
            tests.append(test)
            return test.passed

        try:
            result = self.installer.apply(plan, cancel=cancel, on_commit=_validate)
        except FormularyError as exc:
            # Raised before any entry was attempted, e.g. a held lock.
            logger.error("%s aborted: %s", operation.capitalize(), exc)
            return self._error_report(operation, plan.requested, exc, plan=plan)

        self._evict()

        error_kind, error = result.error_kind, result.error
        if not result.ok:
            exit_code = EXIT_ERROR
        elif any(not t.passed for t in tests):
            exit_code = EXIT_VALIDATION_FAILED
            failed = ", ".join(f"{t.name}@{t.version}" for t in tests if not t.passed)
            error_kind = ValidationFailure.kind
            error = f"Post-install test failed for {failed}; artifacts left installed"
        else:
            exit_code = EXIT_OK

        return EngineReport(
            operation=operation,
            requested=plan.requested,
            plan=plan,
            install_result=result,
            test_results=tests,
            error_kind=error_kind,
            error=error,
            exit_code=exit_code,
        )

    def _evict(self) -> None:
        if self.config.cache_max_bytes <= 0:
            return
        evicted = self.cache.evict(self.config.cache_max_bytes)
        if evicted:
            logger.info(
                "Evicted %d cached payload(s) to stay under %d bytes",
                len(evicted),
                self.config.cache_max_bytes,
            )

    # ------------------------------------------------------------------
    # Rollback and uninstall
    # ------------------------------------------------------------------

    def rollback(self, name: str) -> EngineReport:
        """Restore the previously installed version of ``name``."""
        try:
            record = self.installer.rollback(name)
        except NoPriorVersion as exc:
            logger.error("%s", exc)
            return self._error_report("rollback", [name], exc, exit_code=EXIT_NO_PRIOR_VERSION)
        except FormularyError as exc:
            logger.error("Rollback of %s failed: %s", name, exc)
            return self._error_report("rollback", [name], exc)
        return EngineReport(operation="rollback", requested=[name], record=record)

    def uninstall(self, name: str) -> EngineReport:
        try:
            record = self.installer.uninstall(name)
        except FormularyError as exc:
            logger.error("Uninstall of %s failed: %s", name, exc)
            return self._error_report("uninstall", [name], exc)
        return EngineReport(operation="uninstall", requested=[name], record=record)

    @staticmethod
    def _error_report(
        operation: str,
        requested: list[str],
        exc: FormularyError,
        *,
        plan: InstallPlan | None = None,
        exit_code: int = EXIT_ERROR,
    ) -> EngineReport:
        return EngineReport(
            operation=operation,
            requested=requested,
            plan=plan,
            error_kind=exc.kind,
            error=str(exc),
            exit_code=exit_code,
        )

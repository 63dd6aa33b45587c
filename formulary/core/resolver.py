"""Dependency resolver — turns requested names into a fixed install plan.

Resolution is a pure computation over a ``StoreSnapshot`` and the current
install records:

- Missing names abort with ``MissingDependency``.
- Cycles abort with ``DependencyCycle`` carrying the full path.
- When different versions of one name are demanded, the store's current
  version wins and a ``VersionDecision`` records the choice.
- The order is topological (dependencies first) with lexicographic
  tie-breaking, so equal inputs always produce the same plan.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from formulary.core.errors import DependencyCycle, FormulaNotFoundError, MissingDependency
from formulary.core.formula_store import StoreSnapshot
from formulary.core.hasher import content_address
from formulary.models.formula import Formula, version_key
from formulary.models.plan import InstallPlan, PlanAction, PlanEntry, VersionDecision
from formulary.models.records import InstallRecord

logger = logging.getLogger(__name__)

Request = str | tuple[str, str | None]


@dataclass
class _Demand:
    """Versions demanded of one name, with who demanded each."""

    versions: dict[str, list[str]] = field(default_factory=dict)

    def add(self, version: str, source: str) -> None:
        self.versions.setdefault(version, []).append(source)


def parse_request(request: Request) -> tuple[str, str | None]:
    """Normalise ``"name"``, ``"name@version"`` or ``(name, version)``."""
    if isinstance(request, tuple):
        name, version = request
        return name, version or None
    name, sep, version = request.partition("@")
    return name, (version if sep and version else None)


class DependencyResolver:
    """Builds install plans from a store snapshot.

    Parameters
    ----------
    snapshot:
        Immutable view of the formula store.
    records:
        Current install record per installed name.
    """

    def __init__(
        self,
        snapshot: StoreSnapshot,
        records: Mapping[str, InstallRecord] | None = None,
    ) -> None:
        self._snapshot = snapshot
        self._records = dict(records or {})

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(self, requested: Iterable[Request]) -> InstallPlan:
        """Resolve requested formulas and their transitive dependencies.

        Raises
        ------
        MissingDependency
            A requested or referenced name is not in the store.
        FormulaNotFoundError
            A pinned version is not in the store.
        DependencyCycle
            The dependency graph contains a cycle.
        """
        requests = [parse_request(r) for r in requested]
        for name, version in requests:
            if name not in self._snapshot:
                raise MissingDependency(name)
            if version is not None and not self._snapshot.has_version(name, version):
                raise FormulaNotFoundError(f"Unknown formula version: {name}@{version}")

        selected, demands = self._select(requests)
        graph = {name: list(formula.dependencies) for name, formula in selected.items()}
        self._check_cycles(graph)
        order = self._topological_order(graph)

        requested_names = {name for name, _ in requests}
        entries = [
            self._entry(selected[name], requested=name in requested_names)
            for name in order
        ]
        decisions = self._decisions(demands, selected)
        for decision in decisions:
            logger.warning(
                "Version ambiguity for %s: candidates %s, selected %s",
                decision.name,
                ", ".join(decision.candidates),
                decision.selected,
            )

        plan = InstallPlan(
            requested=[name for name, _ in requests],
            entries=entries,
            decisions=decisions,
        )
        plan = plan.model_copy(update={"plan_hash": self._plan_hash(plan)})
        logger.info(
            "Resolved %s -> %s",
            ", ".join(plan.requested),
            ", ".join(f"{e.formula.key}:{e.action.value}" for e in entries),
        )
        return plan

    # ------------------------------------------------------------------
    # Version selection
    # ------------------------------------------------------------------

    def _choose(self, name: str, demand: _Demand) -> str:
        if len(demand.versions) == 1:
            return next(iter(demand.versions))
        return self._snapshot.current_version(name)

    def _select(
        self, requests: Sequence[tuple[str, str | None]]
    ) -> tuple[dict[str, Formula], dict[str, _Demand]]:
        """Walk the graph until version selections stop changing.

        A name's selection can only move from a pinned version to the
        current one, so the loop settles within a few passes.
        """
        choice: dict[str, str] = {}
        for _ in range(len(self._snapshot.names) + 2):
            demands: dict[str, _Demand] = {}
            for name, version in requests:
                demands.setdefault(name, _Demand()).add(
                    version or self._snapshot.current_version(name), "request"
                )

            selected: dict[str, Formula] = {}
            queue = sorted({name for name, _ in requests})
            while queue:
                name = queue.pop(0)
                if name in selected:
                    continue
                version = choice.get(name) or self._choose(name, demands[name])
                formula = self._snapshot.get(name, version)
                selected[name] = formula
                for dep in formula.dependencies:
                    if dep not in self._snapshot:
                        raise MissingDependency(dep, required_by=formula.key)
                    demands.setdefault(dep, _Demand()).add(
                        self._snapshot.current_version(dep), formula.key
                    )
                    if dep not in selected:
                        queue.append(dep)

            new_choice = {name: self._choose(name, demands[name]) for name in selected}
            if new_choice == {name: f.version for name, f in selected.items()}:
                break
            choice = new_choice
        return selected, demands

    def _decisions(
        self, demands: Mapping[str, _Demand], selected: Mapping[str, Formula]
    ) -> list[VersionDecision]:
        decisions = []
        for name in sorted(selected):
            demand = demands[name]
            if len(demand.versions) < 2:
                continue
            candidates = sorted(demand.versions, key=version_key)
            sources = "; ".join(
                f"{version} by {', '.join(sorted(set(by)))}"
                for version, by in sorted(demand.versions.items(), key=lambda kv: version_key(kv[0]))
            )
            decisions.append(
                VersionDecision(
                    name=name,
                    candidates=candidates,
                    selected=selected[name].version,
                    reason=f"single current version per name ({sources})",
                )
            )
        return decisions

    # ------------------------------------------------------------------
    # Graph checks
    # ------------------------------------------------------------------

    @staticmethod
    def _check_cycles(graph: Mapping[str, list[str]]) -> None:
        """Depth-first search for a back edge; report the closed path."""
        white, grey, black = 0, 1, 2
        color = {name: white for name in graph}
        stack: list[str] = []

        def visit(node: str) -> None:
            color[node] = grey
            stack.append(node)
            for dep in sorted(graph[node]):
                if color[dep] == grey:
                    start = stack.index(dep)
                    raise DependencyCycle([*stack[start:], dep])
                if color[dep] == white:
                    visit(dep)
            stack.pop()
            color[node] = black

        for name in sorted(graph):
            if color[name] == white:
                visit(name)

    @staticmethod
    def _topological_order(graph: Mapping[str, list[str]]) -> list[str]:
        """Kahn's algorithm; the smallest ready name is always emitted first."""
        pending = {name: len(deps) for name, deps in graph.items()}
        dependents: dict[str, list[str]] = {name: [] for name in graph}
        for name, deps in graph.items():
            for dep in deps:
                dependents[dep].append(name)

        ready = [name for name, count in pending.items() if count == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            name = heapq.heappop(ready)
            order.append(name)
            for dependent in dependents[name]:
                pending[dependent] -= 1
                if pending[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) != len(graph):
            raise DependencyCycle(sorted(set(graph) - set(order)))
        return order

    # ------------------------------------------------------------------
    # Plan entries
    # ------------------------------------------------------------------

    def _entry(self, formula: Formula, *, requested: bool) -> PlanEntry:
        record = self._records.get(formula.name)
        if record is None:
            action = PlanAction.INSTALL
        elif record.matches(formula.version, formula.digest):
            action = PlanAction.ALREADY_SATISFIED
        else:
            action = PlanAction.UPGRADE
            if record.version == formula.version:
                logger.warning(
                    "%s is installed with digest %s but the manifest declares %s; reinstalling",
                    formula.key,
                    record.digest,
                    formula.digest,
                )
        return PlanEntry(
            formula=formula,
            action=action,
            requested=requested,
            installed_version=record.version if record else None,
        )

    @staticmethod
    def _plan_hash(plan: InstallPlan) -> str:
        return content_address({
            "requested": plan.requested,
            "entries": [
                [e.formula.name, e.formula.version, e.formula.digest, e.action.value]
                for e in plan.entries
            ],
            "decisions": [d.model_dump() for d in plan.decisions],
        })


def resolve(
    requested: Iterable[Request],
    snapshot: StoreSnapshot,
    records: Mapping[str, InstallRecord] | None = None,
) -> InstallPlan:
    """Functional entry point: ``resolve(requested, snapshot) -> InstallPlan``."""
    return DependencyResolver(snapshot, records).resolve(requested)

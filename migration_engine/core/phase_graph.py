"""
Phase dependency graph.

Validates a list of phases (unique ids, known dependencies, no cycles)
and answers readiness queries against the phases' current statuses.
"""

import logging
from typing import Dict, Iterable, List, Sequence, Set

from migration_engine.core.exceptions import ConfigurationError, PhaseNotFoundError
from migration_engine.models.phase import MigrationPhase, PhaseStatus

logger = logging.getLogger(__name__)


class PhaseGraph:
    """Dependency graph over the phases of one run, in declared order."""

    def __init__(self, phases: Sequence[MigrationPhase]):
        self._order: List[str] = []
        self._dependencies: Dict[str, List[str]] = {}
        self._dependents: Dict[str, List[str]] = {}

        for phase in phases:
            if phase.id in self._dependencies:
                raise ConfigurationError(
                    f"Duplicate phase id: {phase.id}",
                    details={"phase_id": phase.id}
                )
            self._order.append(phase.id)
            self._dependencies[phase.id] = list(phase.dependencies)
            self._dependents[phase.id] = []

            sub_task_ids = [st.id for st in phase.sub_tasks]
            if len(sub_task_ids) != len(set(sub_task_ids)):
                raise ConfigurationError(
                    f"Duplicate sub-task id in phase {phase.id}",
                    details={"phase_id": phase.id}
                )

        for phase_id, dependencies in self._dependencies.items():
            for dep_id in dependencies:
                if dep_id not in self._dependencies:
                    raise ConfigurationError(
                        f"Phase {phase_id} depends on unknown phase {dep_id}",
                        details={"phase_id": phase_id, "dependency": dep_id}
                    )
                if dep_id == phase_id:
                    raise ConfigurationError(
                        f"Phase {phase_id} depends on itself",
                        details={"phase_id": phase_id}
                    )
                self._dependents[dep_id].append(phase_id)

        self._topological = self._sort()

    def _sort(self) -> List[str]:
        """Depth-first topological sort, raising on the first cycle found."""
        visited: Set[str] = set()
        sorted_ids: List[str] = []

        for root in self._order:
            if root in visited:
                continue
            path = [root]
            on_path = {root}
            stack = [(root, iter(self._dependencies[root]))]
            while stack:
                phase_id, deps = stack[-1]
                dep_id = next(deps, None)
                if dep_id is None:
                    stack.pop()
                    path.pop()
                    on_path.discard(phase_id)
                    visited.add(phase_id)
                    sorted_ids.append(phase_id)
                    continue
                if dep_id in on_path:
                    cycle = path[path.index(dep_id):] + [dep_id]
                    raise ConfigurationError(
                        f"Circular dependency detected: {' -> '.join(cycle)}",
                        details={"cycle": cycle}
                    )
                if dep_id in visited:
                    continue
                path.append(dep_id)
                on_path.add(dep_id)
                stack.append((dep_id, iter(self._dependencies[dep_id])))

        return sorted_ids

    def __contains__(self, phase_id: str) -> bool:
        return phase_id in self._dependencies

    def __len__(self) -> int:
        return len(self._order)

    @property
    def phase_ids(self) -> List[str]:
        """Phase ids in declared order."""
        return list(self._order)

    def topological_order(self) -> List[str]:
        return list(self._topological)

    def dependencies_of(self, phase_id: str) -> List[str]:
        self._require(phase_id)
        return list(self._dependencies[phase_id])

    def dependents_of(self, phase_id: str) -> List[str]:
        self._require(phase_id)
        return list(self._dependents[phase_id])

    def is_ready(self, phase_id: str, statuses: Dict[str, PhaseStatus]) -> bool:
        """True iff every dependency is completed or skipped."""
        self._require(phase_id)
        return all(
            statuses[dep_id].satisfies_dependency
            for dep_id in self._dependencies[phase_id]
        )

    def next_ready(self, statuses: Dict[str, PhaseStatus]) -> List[str]:
        """Pending phases whose dependencies are satisfied, in declared order."""
        return [
            phase_id for phase_id in self._order
            if statuses[phase_id] == PhaseStatus.PENDING and self.is_ready(phase_id, statuses)
        ]

    def blocked_by_failure(self, statuses: Dict[str, PhaseStatus]) -> List[str]:
        """Pending phases that can never become ready because an ancestor failed."""
        blocked = []
        for phase_id in self._order:
            if statuses[phase_id] != PhaseStatus.PENDING:
                continue
            if any(statuses[a] == PhaseStatus.FAILED for a in self.ancestors_of(phase_id)):
                blocked.append(phase_id)
        return blocked

    def ancestors_of(self, phase_id: str) -> List[str]:
        self._require(phase_id)
        seen: List[str] = []
        found: Set[str] = set()
        stack = list(self._dependencies[phase_id])
        while stack:
            current = stack.pop()
            if current not in found:
                found.add(current)
                seen.append(current)
                stack.extend(self._dependencies[current])
        return seen

    def _require(self, phase_id: str):
        if phase_id not in self._dependencies:
            raise PhaseNotFoundError(phase_id)


def validate_phases(phases: Iterable[MigrationPhase]) -> PhaseGraph:
    """Build the graph for ``phases`` or raise ConfigurationError."""
    graph = PhaseGraph(list(phases))
    logger.debug(f"Validated phase graph with {len(graph)} phases: {graph.topological_order()}")
    return graph

"""Orchestration layer — Dependency resolver.

Turns the plan's action list into a total execution order in which every
action comes strictly after all of its dependencies.

Ordering is a repeated pass over the remaining actions in plan order: each
pass emits every action whose dependencies are already complete, and an
action emitted earlier in the same pass counts as complete for the actions
after it.  Among actions that are ready together, plan order wins.  The
result is deterministic and, for a plan without dependencies, identical to
plan order.

A NetworkX DiGraph is built alongside for cycle reporting and graph queries.
"""

from __future__ import annotations

from typing import Sequence

import networkx as nx

from crm_audit.exceptions import (
    DependencyCycleError,
    PlanValidationError,
    UnresolvedDependencyError,
)
from crm_audit.plan.models import BaseAction


class DependencyResolver:
    """Validates and orders a sequence of actions.

    Usage::

        resolver = DependencyResolver(plan.actions)
        for action in resolver.order():
            ...
    """

    def __init__(self, actions: Sequence[BaseAction]) -> None:
        self._actions = list(actions)
        self._validate()
        self._graph = self._build_graph(self._actions)

    def _validate(self) -> None:
        seen: set[str] = set()
        duplicates: list[str] = []
        for action in self._actions:
            if action.id in seen and action.id not in duplicates:
                duplicates.append(action.id)
            seen.add(action.id)
        if duplicates:
            raise PlanValidationError(
                f"Duplicate action ids: {', '.join(duplicates)}",
                errors=[{"action_id": d, "msg": "duplicate action id"} for d in duplicates],
            )

        missing: dict[str, list[str]] = {}
        for action in self._actions:
            unknown = [dep for dep in action.dependencies if dep not in seen]
            if unknown:
                missing[action.id] = unknown
        if missing:
            raise UnresolvedDependencyError(missing)

    @staticmethod
    def _build_graph(actions: list[BaseAction]) -> nx.DiGraph:
        graph: nx.DiGraph = nx.DiGraph()
        for action in actions:
            graph.add_node(action.id)
        for action in actions:
            for dep in action.dependencies:
                graph.add_edge(dep, action.id)
        return graph

    def order(self) -> list[BaseAction]:
        """Return the actions in dependency order.

        Raises:
            DependencyCycleError: Some actions can never become ready.
        """
        remaining = list(self._actions)
        completed: set[str] = set()
        ordered: list[BaseAction] = []

        while remaining:
            still_waiting: list[BaseAction] = []
            for action in remaining:
                if all(dep in completed for dep in action.dependencies):
                    ordered.append(action)
                    completed.add(action.id)
                else:
                    still_waiting.append(action)

            if len(still_waiting) == len(remaining):
                raise DependencyCycleError(
                    [a.id for a in still_waiting],
                    cycle=self._find_cycle([a.id for a in still_waiting]),
                )
            remaining = still_waiting

        return ordered

    def _find_cycle(self, ids: list[str]) -> list[str]:
        try:
            cycle = nx.find_cycle(self._graph.subgraph(ids))
        except nx.NetworkXNoCycle:
            return []
        return [edge[0] for edge in cycle] + [cycle[-1][1]]

    def order_ids(self) -> list[str]:
        return [action.id for action in self.order()]

    def ancestors(self, action_id: str) -> set[str]:
        """Return all transitive dependencies of *action_id*."""
        return nx.ancestors(self._graph, action_id)

    def descendants(self, action_id: str) -> set[str]:
        """Return every action that transitively depends on *action_id*."""
        return nx.descendants(self._graph, action_id)


def resolve_order(actions: Sequence[BaseAction]) -> list[BaseAction]:
    """Shorthand for ``DependencyResolver(actions).order()``."""
    return DependencyResolver(actions).order()

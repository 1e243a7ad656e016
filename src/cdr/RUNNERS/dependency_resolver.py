"""
Dependency resolution for services to determine startup and shutdown order.
"""
import heapq
import logging
from typing import Dict, List, Mapping, Set, Tuple

from ..MODELS.orchestration_config import EffectiveStack
from ..MODELS.service_definition import DependencyCondition
from ..exceptions import CyclicDependencyError, UnknownServiceError

logger = logging.getLogger(__name__)


class DependencyGraph:
    """
    Directed graph of "service depends on dependency [condition]" edges.
    Read-only once built.
    """

    def __init__(self, nodes: List[str], edges: Mapping[str, Mapping[str, DependencyCondition]]):
        """
        :param nodes: Service names.
        :param edges: service -> {dependency: condition}.
        """
        self._nodes = tuple(sorted(nodes))
        self._edges = {name: dict(edges.get(name, {})) for name in self._nodes}
        self._dependents: Dict[str, Set[str]] = {name: set() for name in self._nodes}
        for name, deps in self._edges.items():
            for dep in deps:
                self._dependents[dep].add(name)

    @property
    def nodes(self) -> Tuple[str, ...]:
        return self._nodes

    @property
    def edges(self) -> List[Tuple[str, str, DependencyCondition]]:
        """All edges as (service, dependency, condition), sorted."""
        return sorted((src, dst, cond) for src, deps in self._edges.items() for dst, cond in deps.items())

    def dependencies(self, name: str) -> Dict[str, DependencyCondition]:
        """Services ``name`` depends on, with the condition of each edge."""
        return dict(self._edges[name])

    def dependents(self, name: str) -> Set[str]:
        """Services that depend on ``name``."""
        return set(self._dependents[name])

    def topological_order(self) -> List[str]:
        """
        Kahn's algorithm; among ready nodes the alphabetically first goes next.
        """
        remaining = {name: len(deps) for name, deps in self._edges.items()}
        ready = [name for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        order = []
        while ready:
            name = heapq.heappop(ready)
            order.append(name)
            for dependent in self._dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)
        if len(order) != len(self._nodes):
            # Only reachable if the graph was built without validation
            raise CyclicDependencyError(find_cycle(self._edges) or sorted(set(self._nodes) - set(order)))
        return order

    def shutdown_order(self) -> List[str]:
        """Reverse of the startup order: dependents before their dependencies."""
        return list(reversed(self.topological_order()))


def find_cycle(edges: Mapping[str, Mapping[str, DependencyCondition]]) -> List[str]:
    """
    Returns one cycle as a path that starts and ends with the same service,
    or an empty list. Nodes are visited alphabetically, so the result is stable.
    """
    visited: Set[str] = set()
    path: List[str] = []
    on_path: Set[str] = set()

    def visit(name: str) -> List[str]:
        """
        Depth-first search keeping the current path.
        """
        visited.add(name)
        path.append(name)
        on_path.add(name)
        for dep in sorted(edges.get(name, {})):
            if dep in on_path:
                return path[path.index(dep):] + [dep]
            if dep not in visited:
                cycle = visit(dep)
                if cycle:
                    return cycle
        path.pop()
        on_path.discard(name)
        return []

    for name in sorted(edges):
        if name not in visited:
            cycle = visit(name)
            if cycle:
                return cycle
    return []


class DependencyResolver:
    """
    Builds and validates the dependency graph and resolves startup order.
    """

    def build_graph(self, config: EffectiveStack) -> DependencyGraph:
        """
        Builds the dependency graph from ``depends_on`` declarations.

        :param config: The effective stack.
        :return: A validated, acyclic graph.
        :raises UnknownServiceError: If a dependency target is not defined.
        :raises CyclicDependencyError: If the dependencies form a cycle.
        """
        services = config.services
        edges: Dict[str, Dict[str, DependencyCondition]] = {}
        for name in sorted(services):
            edges[name] = {}
            for target, dep in services[name].depends_on.items():
                if target not in services:
                    raise UnknownServiceError(name, target, origin=config.origin_of(name, "depends_on"))
                edges[name][target] = dep.condition

        cycle = find_cycle(edges)
        if cycle:
            raise CyclicDependencyError(cycle)

        graph = DependencyGraph(list(services), edges)
        logger.debug("Dependency graph: %d services, %d edges", len(graph.nodes), len(graph.edges))
        return graph

    def resolve_order(self, config: EffectiveStack) -> List[str]:
        """
        Determines the correct order to start services using topological sort.

        :param config: The effective stack.
        :return: Service names in the order they should be started.
        """
        return self.build_graph(config).topological_order()

#!/usr/bin/env python3
"""
Service dependency resolution for tinydock.

Orders services so that every service comes after the services it depends
on, and reports dependency cycles with the path that forms them.
"""

from graphlib import CycleError, TopologicalSorter
from typing import Dict, Iterable, List, Mapping, Set


class DependencyError(Exception):
    """Exception raised for invalid dependency graphs."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when services depend on each other in a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"circular dependency: {' -> '.join(cycle)}")


class DependencyGraph:
    """
    Dependency graph of named nodes.

    Example:
        graph = DependencyGraph({"web": ["db", "cache"], "db": [], "cache": []})
        graph.order()    # ['cache', 'db', 'web']
        graph.batches()  # [['cache', 'db'], ['web']]
    """

    def __init__(self, edges: Mapping[str, Iterable[str]]):
        self._edges: Dict[str, Set[str]] = {name: set(deps) for name, deps in edges.items()}

        for name, deps in sorted(self._edges.items()):
            for dep in sorted(deps):
                if dep not in self._edges:
                    raise DependencyError(f"{name} depends on undefined service {dep}")

        self._batches = self._compute_batches()

    def _compute_batches(self) -> List[List[str]]:
        for name, deps in sorted(self._edges.items()):
            if name in deps:
                raise CyclicDependencyError([name, name])

        sorter = TopologicalSorter(self._edges)
        try:
            sorter.prepare()
        except CycleError as e:
            # graphlib reports the cycle as [a, ..., a] in dependent order
            cycle = list(reversed(e.args[1]))
            raise CyclicDependencyError(cycle) from e

        batches = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready())
            batches.append(ready)
            sorter.done(*ready)
        return batches

    def __contains__(self, name: str) -> bool:
        return name in self._edges

    def dependencies(self, name: str) -> Set[str]:
        """Direct dependencies of a node."""
        return set(self._edges[name])

    def batches(self) -> List[List[str]]:
        """Dependency levels; each batch only depends on earlier batches."""
        return [list(batch) for batch in self._batches]

    def order(self) -> List[str]:
        """Topological order, dependencies first."""
        return [name for batch in self._batches for name in batch]

    def reverse_order(self) -> List[str]:
        """Stop order, dependents first."""
        return list(reversed(self.order()))

    def closure(self, names: Iterable[str]) -> Set[str]:
        """The given nodes plus everything they transitively depend on."""
        result: Set[str] = set()
        pending = list(names)
        while pending:
            name = pending.pop()
            if name in result:
                continue
            if name not in self._edges:
                raise DependencyError(f"no such service: {name}")
            result.add(name)
            pending.extend(self._edges[name])
        return result

    def dependents(self, name: str) -> Set[str]:
        """Nodes that transitively depend on ``name``."""
        result: Set[str] = set()
        pending = [name]
        while pending:
            current = pending.pop()
            for other, deps in self._edges.items():
                if current in deps and other not in result:
                    result.add(other)
                    pending.append(other)
        return result


def resolve_order(services: Mapping[str, "object"]) -> List[str]:
    """
    Start order for a mapping of service name to ServiceConfig.

    Raises:
        DependencyError: On unknown dependencies
        CyclicDependencyError: On cycles
    """
    edges = {
        name: [dep.service for dep in getattr(service, "depends_on", [])]
        for name, service in services.items()
    }
    return DependencyGraph(edges).order()

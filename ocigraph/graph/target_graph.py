"""Static model of packages and their dependencies.

Two kinds of edges are computed once at construction:

- hard edges order builds: explicit ``depends_on`` plus, for every package
  that receives context injection, every base package;
- context edges list the other siblings a package may be offered as named
  build contexts. They never order builds.

Cycle detection runs over hard edges only.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Sequence

from ocigraph.errors import ConfigurationError
from ocigraph.types import Package

logger = logging.getLogger(__name__)


class TargetGraph:
    """Dependency graph over a fixed set of packages.

    Evaluation order is a Kahn topological sort that breaks ties by
    declaration order, so a fixed graph always yields the same sequence.
    """

    def __init__(
        self,
        packages: Sequence[Package],
        check_descriptors: bool = True,
    ) -> None:
        """Build and validate the graph.

        Args:
            packages: Packages in declaration order.
            check_descriptors: Require every build descriptor to exist.

        Raises:
            ConfigurationError: On duplicate names, undefined or self
                dependencies, cycles, or missing build descriptors.
        """
        self._packages: dict[str, Package] = {}
        for package in packages:
            if package.name in self._packages:
                raise ConfigurationError(
                    f"Duplicate package name: {package.name}", code="duplicate_package"
                )
            self._packages[package.name] = package

        self._position = {name: i for i, name in enumerate(self._packages)}
        self._deps: dict[str, tuple[str, ...]] = {}
        self._context: dict[str, tuple[str, ...]] = {}

        bases = [p.name for p in packages if p.is_base]
        for package in packages:
            for dep in package.depends_on:
                if dep == package.name:
                    raise ConfigurationError(
                        f"Package '{package.name}' depends on itself",
                        code="self_dependency",
                    )
                if dep not in self._packages:
                    raise ConfigurationError(
                        f"Package '{package.name}' depends on undefined "
                        f"package '{dep}'",
                        code="undefined_dependency",
                    )

            deps = list(package.depends_on)
            if package.inject_context:
                deps.extend(b for b in bases if b != package.name)
            self._deps[package.name] = self._ordered(set(deps))

            if package.inject_context:
                self._context[package.name] = tuple(
                    p.name for p in packages if p.name != package.name
                )
            else:
                self._context[package.name] = ()

        self._order = self._topological_order()

        if check_descriptors:
            for package in packages:
                if not package.descriptor.is_file():
                    raise ConfigurationError(
                        f"Build descriptor for '{package.name}' not found: "
                        f"{package.descriptor}",
                        code="descriptor_not_found",
                    )

        logger.debug("Package graph order: %s", ", ".join(self._order))

    def _ordered(self, names: Iterable[str]) -> tuple[str, ...]:
        return tuple(sorted(names, key=self._position.__getitem__))

    def _topological_order(self) -> list[str]:
        in_degree = {name: len(deps) for name, deps in self._deps.items()}
        children: dict[str, list[str]] = {name: [] for name in self._packages}
        for name, deps in self._deps.items():
            for dep in deps:
                children[dep].append(name)

        # Ready set kept sorted by declaration position
        ready = deque(name for name in self._packages if in_degree[name] == 0)
        order: list[str] = []
        while ready:
            name = ready.popleft()
            order.append(name)
            released = []
            for child in children[name]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    released.append(child)
            if released:
                ready = deque(self._ordered([*ready, *released]))

        if len(order) != len(self._packages):
            remaining = [n for n in self._packages if n not in order]
            raise ConfigurationError(
                "Dependency cycle detected among packages: " + ", ".join(remaining),
                code="dependency_cycle",
            )
        return order

    def __contains__(self, name: object) -> bool:
        return name in self._packages

    def __len__(self) -> int:
        return len(self._packages)

    def get(self, name: str) -> Package:
        """Return a package by name.

        Raises:
            ConfigurationError: If no such package is declared.
        """
        try:
            return self._packages[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown package: {name}", code="unknown_package"
            ) from None

    def all_packages(self) -> list[Package]:
        """Return every package in declaration order."""
        return list(self._packages.values())

    def order(self) -> list[Package]:
        """Return every package in evaluation order."""
        return [self._packages[name] for name in self._order]

    def default_targets(self) -> list[str]:
        """Return the names of packages in the default build set."""
        return [p.name for p in self._packages.values() if p.default]

    def dependencies(self, name: str) -> tuple[str, ...]:
        """Return the direct hard dependencies of a package."""
        self.get(name)
        return self._deps[name]

    def context_candidates(self, name: str) -> tuple[str, ...]:
        """Return siblings a package may receive as injected build contexts."""
        self.get(name)
        return self._context[name]

    def dependents(self, name: str) -> list[str]:
        """Return every package that transitively depends on ``name``."""
        self.get(name)
        found: set[str] = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for candidate, deps in self._deps.items():
                if current in deps and candidate not in found:
                    found.add(candidate)
                    frontier.append(candidate)
        return [n for n in self._order if n in found]

    def resolve(self, name: str) -> list[Package]:
        """Return a package and its transitive dependencies in build order."""
        return self.resolve_many([name])

    def resolve_many(self, names: Iterable[str]) -> list[Package]:
        """Return the union of several closures in build order.

        Raises:
            ConfigurationError: If a requested name is not declared.
        """
        needed: set[str] = set()
        frontier = [self.get(n).name for n in names]
        while frontier:
            current = frontier.pop()
            if current in needed:
                continue
            needed.add(current)
            frontier.extend(self._deps[current])
        return [self._packages[n] for n in self._order if n in needed]


__all__ = ["TargetGraph"]

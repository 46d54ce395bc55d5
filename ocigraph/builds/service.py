"""Build service module.

This module provides the high-level build API:
- load_graph(): declaration file -> validated TargetGraph
- create_runner(): wire store, freshness, contexts and backend together
- build_packages(): main entry point - bring targets up to date
- package_status(): per-package built/fresh/loaded overview
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ocigraph.builds.builder import ImageBuilder
from ocigraph.builds.fingerprint import FileLister, FreshnessOracle, GitFileLister
from ocigraph.builds.runner import BuildBackend, DockerBuildBackend
from ocigraph.builds.scheduler import GraphRunner, RunReport
from ocigraph.builds.store import ArtifactStore
from ocigraph.config import get_settings
from ocigraph.errors import StalenessReadError
from ocigraph.graph.context import BuildContextResolver
from ocigraph.graph.target_graph import TargetGraph
from ocigraph.packages.io import load_packages

if TYPE_CHECKING:
    from ocigraph.builds.history import BuildHistory
    from ocigraph.config import Settings

logger = logging.getLogger(__name__)


def load_graph(
    settings: Settings | None = None,
    check_descriptors: bool = True,
) -> TargetGraph:
    """Load the declaration file named by settings into a graph.

    Raises:
        ConfigurationError: If the file or the graph is invalid.
    """
    if settings is None:
        settings = get_settings()
    packages, parsed = load_packages(
        settings.packages_path, settings.workspace, settings.default_platform
    )
    if parsed.registry and "registry" not in settings.model_fields_set:
        settings.registry = parsed.registry
    graph = TargetGraph(packages, check_descriptors=check_descriptors)
    logger.info("Loaded %d packages from %s", len(graph), settings.packages_path)
    return graph


def create_runner(
    settings: Settings,
    graph: TargetGraph,
    backend: BuildBackend | None = None,
    lister: FileLister | None = None,
    history: BuildHistory | None = None,
    force: Iterable[str] | None = None,
) -> GraphRunner:
    """Assemble a GraphRunner for the workspace described by settings."""
    options = settings.build_options(set(force or ()))
    store = ArtifactStore(settings.out_path, graph.all_packages())
    oracle = FreshnessOracle(
        settings.workspace,
        store,
        graph,
        lister or GitFileLister(settings.workspace),
        options,
    )
    builder = ImageBuilder(
        backend or DockerBuildBackend(settings.backend_binary),
        store,
        settings.workspace,
        settings.log_path,
        options,
        timeout=settings.build_timeout,
    )
    return GraphRunner(
        graph,
        store,
        oracle,
        BuildContextResolver(graph),
        builder,
        history=history,
        max_workers=settings.max_concurrent_builds,
        keep_going=settings.keep_going,
    )


def build_packages(
    targets: Iterable[str] | None = None,
    settings: Settings | None = None,
    backend: BuildBackend | None = None,
    lister: FileLister | None = None,
    history: BuildHistory | None = None,
    force: Iterable[str] | None = None,
) -> RunReport:
    """Build the requested packages (the default set if none) as needed.

    Returns:
        RunReport with one outcome per evaluated package.

    Raises:
        ConfigurationError: If the graph is invalid or a target is unknown.
    """
    if settings is None:
        settings = get_settings()
    graph = load_graph(settings)
    runner = create_runner(settings, graph, backend, lister, history, force)
    return runner.run(targets)


@dataclass
class PackageStatus:
    """Point-in-time view of one package."""

    name: str
    built: bool
    stale: bool | None
    loaded: bool
    reasons: list[str]
    error: str | None = None


def package_status(runner: GraphRunner) -> list[PackageStatus]:
    """Report built/stale/loaded status for every package in evaluation order."""
    statuses: list[PackageStatus] = []
    for package in runner.graph.order():
        built = runner.store.get(package.name) is not None
        loaded = runner.store.is_loaded(package.name)
        try:
            staleness = runner.oracle.check(package)
        except StalenessReadError as e:
            statuses.append(
                PackageStatus(package.name, built, None, loaded, [], error=str(e))
            )
            continue
        statuses.append(
            PackageStatus(
                package.name, built, staleness.stale, loaded, staleness.reasons
            )
        )
    return statuses


__all__ = [
    "PackageStatus",
    "build_packages",
    "create_runner",
    "load_graph",
    "package_status",
]

"""Build context injection.

Before each build, the set of already-built siblings is offered to the
backend as named build contexts. The mapping is recomputed for every
invocation and never cached.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from pathlib import Path
from typing import TYPE_CHECKING

from ocigraph.types import Package

if TYPE_CHECKING:
    from ocigraph.builds.store import ArtifactStore
    from ocigraph.graph.target_graph import TargetGraph

logger = logging.getLogger(__name__)

# Sibling package name -> artifact payload location
BuildContext = dict[str, Path]


class BuildContextResolver:
    """Computes the named build contexts offered to one package build."""

    def __init__(self, graph: TargetGraph) -> None:
        self.graph = graph

    def resolve(
        self,
        package: Package,
        store: ArtifactStore,
        unavailable: Collection[str] = (),
    ) -> BuildContext:
        """Return ``{sibling name: payload location}`` for a package.

        Base packages always get an empty context. Otherwise every other
        package with an artifact in the store is offered; unbuilt siblings
        are left out. Whether the descriptor needs a context that is absent
        is for the backend to report.

        Args:
            package: Package about to be built.
            store: Artifact store.
            unavailable: Siblings whose artifact must not be offered even if
                one is on disk, such as packages being rebuilt or whose
                rebuild failed in the current run.
        """
        if not package.inject_context:
            return {}

        context: BuildContext = {}
        for sibling in self.graph.context_candidates(package.name):
            if sibling == package.name:
                continue
            if sibling in unavailable:
                logger.debug(
                    "Context %s omitted for %s: not settled in this run",
                    sibling,
                    package.name,
                )
                continue
            artifact = store.get(sibling)
            if artifact is None:
                logger.debug(
                    "Context %s omitted for %s: not built", sibling, package.name
                )
                continue
            context[sibling] = artifact.payload
        return context


__all__ = ["BuildContext", "BuildContextResolver"]

"""Build orchestration module.

This module handles:
- The on-disk artifact store
- Input fingerprints and staleness decisions
- Running the container build backend
- Dependency-ordered graph evaluation
- Build history records
"""

from ocigraph.builds.scheduler import GraphRunner, PackageOutcome, RunReport
from ocigraph.builds.store import ArtifactStore

__all__ = ["ArtifactStore", "GraphRunner", "PackageOutcome", "RunReport"]

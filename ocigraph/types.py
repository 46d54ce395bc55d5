"""Shared type definitions for ocigraph.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class OutputMode(str, Enum):
    """On-disk shape of a package's artifact."""

    DIRECTORY = "dir"
    ARCHIVE = "tar"


class NodeState(str, Enum):
    """State of a package during one graph run."""

    PENDING = "pending"
    FRESH = "fresh"
    BUILDING = "building"
    BUILT = "built"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def satisfied(self) -> bool:
        """Whether dependents may proceed past a package in this state."""
        return self in (NodeState.FRESH, NodeState.BUILT)

    @property
    def terminal(self) -> bool:
        """Whether this state is final for the run."""
        return self not in (NodeState.PENDING, NodeState.BUILDING)


@dataclass(frozen=True)
class Package:
    """A named build unit resolved against the workspace.

    Attributes:
        name: Unique name; also the image tag suffix and artifact directory.
        descriptor: Absolute path to the build descriptor (Containerfile).
        sources: Tracked source entries (workspace-relative paths or globs).
        output_mode: Artifact shape.
        platform: Target platform string.
        inject_context: Whether sibling artifacts are offered as build contexts.
        depends_on: Explicitly declared package dependencies.
        default: Member of the default build set.
    """

    name: str
    descriptor: Path
    sources: tuple[str, ...] = ()
    output_mode: OutputMode = OutputMode.DIRECTORY
    platform: str = "linux/amd64"
    inject_context: bool = True
    depends_on: tuple[str, ...] = ()
    default: bool = True

    @property
    def is_base(self) -> bool:
        """Base packages never receive sibling context injection."""
        return not self.inject_context


@dataclass(frozen=True)
class Artifact:
    """The materialized output of a successful build of one package.

    Attributes:
        package: Package name.
        manifest_path: ``out/<package>/index.json``.
        payload: Directory (``dir`` mode) or archive file (``tar`` mode).
        output_mode: Artifact shape.
        loaded_marker: ``out/.<package>-loaded`` sentinel path.
    """

    package: str
    manifest_path: Path
    payload: Path
    output_mode: OutputMode
    loaded_marker: Path

    @property
    def is_loaded(self) -> bool:
        """Whether the artifact has been imported into the local image store."""
        return self.loaded_marker.exists()


@dataclass
class BuildOptions:
    """Run-wide options that shape every backend invocation."""

    registry: str = "local"
    version: str = "dev"
    no_cache: bool = False
    source_date_epoch: int = 1
    source_label: str | None = None
    force: frozenset[str] = field(default_factory=frozenset)

    def tag_for(self, name: str) -> str:
        """Return the image tag for a package."""
        return f"{self.registry}/{name}"


__all__ = [
    "Artifact",
    "BuildOptions",
    "NodeState",
    "OutputMode",
    "Package",
]

"""Input fingerprints and staleness decisions.

This module handles:
- Enumerating tracked files from version control
- Selecting a package's inputs from its declared sources
- Deterministic hashing of those inputs with the build options
- Comparing against the fingerprint recorded by the last build

Only files tracked by version control are inputs; untracked or ignored
files never trigger a rebuild.
"""

from __future__ import annotations

import fnmatch
import hashlib
import json
import logging
import subprocess
import threading
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from ocigraph.builds.store import compute_file_hash
from ocigraph.errors import StalenessReadError
from ocigraph.types import Artifact, BuildOptions, Package

if TYPE_CHECKING:
    from ocigraph.builds.store import ArtifactStore
    from ocigraph.graph.target_graph import TargetGraph

logger = logging.getLogger(__name__)

# Schema version for fingerprint format; bump when the format changes
FINGERPRINT_SCHEMA_VERSION = "1"

# Recorded in place of a digest for tracked files deleted from the worktree
MISSING_FILE = "missing"

GLOB_CHARS = frozenset("*?[")


class FileLister(Protocol):
    """Source of the workspace's tracked file list."""

    def tracked_files(self) -> Sequence[str]:
        """Return tracked files as workspace-relative POSIX paths."""
        ...


class GitFileLister:
    """Tracked files from ``git ls-files``, read once per instance."""

    def __init__(self, workspace: Path, git_binary: str = "git") -> None:
        self.workspace = workspace
        self.git_binary = git_binary
        self._files: list[str] | None = None
        self._lock = threading.Lock()

    def tracked_files(self) -> Sequence[str]:
        """Return tracked files.

        Raises:
            StalenessReadError: If git is unavailable or the workspace is
                not a repository.
        """
        with self._lock:
            if self._files is None:
                self._files = self._read()
            return self._files

    def _read(self) -> list[str]:
        cmd = [self.git_binary, "ls-files", "-z", "--cached"]
        try:
            result = subprocess.run(
                cmd,
                cwd=self.workspace,
                capture_output=True,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode("utf-8", "replace").strip()
            raise StalenessReadError(
                f"git ls-files failed in {self.workspace}: {stderr}"
            ) from e
        except OSError as e:
            raise StalenessReadError(
                f"Failed to run {self.git_binary}: {e}", code="vcs_unavailable"
            ) from e

        files = [p for p in result.stdout.decode("utf-8").split("\0") if p]
        logger.debug("Read %d tracked files from %s", len(files), self.workspace)
        return sorted(files)


def _normalize_entry(entry: str) -> str:
    entry = entry.strip()
    while entry.startswith("./"):
        entry = entry[2:]
    return entry.rstrip("/")


def match_sources(tracked: Sequence[str], sources: Sequence[str]) -> list[str]:
    """Select tracked files covered by source entries.

    An entry matches a file if it names the file, names a directory
    containing it, or is a glob pattern matching its path.

    Returns:
        Sorted, de-duplicated list of matching paths.
    """
    entries = [_normalize_entry(s) for s in sources]
    matched: set[str] = set()
    for path in tracked:
        for entry in entries:
            if not entry or entry == ".":
                matched.add(path)
                break
            if GLOB_CHARS.intersection(entry):
                if fnmatch.fnmatchcase(path, entry):
                    matched.add(path)
                    break
            elif path == entry or path.startswith(entry + "/"):
                matched.add(path)
                break
    return sorted(matched)


@dataclass
class BuildInputs:
    """Canonical representation of everything that shapes a package build.

    Serialized to canonical JSON and hashed to produce the fingerprint.

    Attributes:
        schema_version: Version of the fingerprint schema.
        package: Package name.
        descriptor: Descriptor path relative to the workspace.
        descriptor_hash: SHA-256 of the descriptor.
        sources: Tracked input path -> SHA-256 of its content.
        build_options: Options that change the produced image.
        dependencies: Hard dependency name -> SHA-256 of its manifest.
    """

    schema_version: str = FINGERPRINT_SCHEMA_VERSION
    package: str = ""
    descriptor: str = ""
    descriptor_hash: str = ""
    sources: dict[str, str] = field(default_factory=dict)
    build_options: dict[str, Any] = field(default_factory=dict)
    dependencies: dict[str, str | None] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_fingerprint(inputs: BuildInputs) -> str:
    """Compute the fingerprint of build inputs.

    Returns:
        Fingerprint as ``sha256:<hex>``.
    """
    canonical_json = json.dumps(
        inputs.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    return "sha256:" + hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()


def output_options(package: Package, options: BuildOptions) -> dict[str, Any]:
    """Return the build options that change a package's output."""
    return {
        "tag": options.tag_for(package.name),
        "platform": package.platform,
        "output_mode": package.output_mode.value,
        "version": options.version,
        "source_date_epoch": options.source_date_epoch,
    }


@dataclass
class Staleness:
    """Outcome of a freshness check.

    Attributes:
        stale: Whether the package must be rebuilt.
        reasons: Human-readable reasons (empty when fresh).
        fingerprint: Current input fingerprint; None when a package with no
            artifact could not have its inputs read.
        inputs: Inputs the fingerprint was computed from.
    """

    stale: bool
    reasons: list[str]
    fingerprint: str | None
    inputs: BuildInputs | None


class FreshnessOracle:
    """Decides whether a package's artifact reflects its current inputs."""

    def __init__(
        self,
        workspace: Path,
        store: ArtifactStore,
        graph: TargetGraph,
        lister: FileLister,
        options: BuildOptions | None = None,
    ) -> None:
        self.workspace = workspace
        self.store = store
        self.graph = graph
        self.lister = lister
        self.options = options or BuildOptions()

    def _relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.workspace).as_posix()
        except ValueError:
            return path.as_posix()

    def collect_inputs(self, package: Package) -> BuildInputs:
        """Gather the current inputs of a package.

        Raises:
            StalenessReadError: If tracked files or the descriptor cannot be read.
        """
        try:
            tracked = self.lister.tracked_files()
        except StalenessReadError as e:
            e.package = package.name
            raise

        sources: dict[str, str] = {}
        for rel_path in match_sources(tracked, package.sources):
            path = self.workspace / rel_path
            try:
                sources[rel_path] = compute_file_hash(path)
            except FileNotFoundError:
                sources[rel_path] = MISSING_FILE
            except OSError as e:
                raise StalenessReadError(
                    f"Cannot read tracked source {rel_path}: {e}",
                    package=package.name,
                ) from e

        try:
            descriptor_hash = compute_file_hash(package.descriptor)
        except OSError as e:
            raise StalenessReadError(
                f"Cannot read build descriptor {package.descriptor}: {e}",
                package=package.name,
            ) from e

        return BuildInputs(
            package=package.name,
            descriptor=self._relative(package.descriptor),
            descriptor_hash=descriptor_hash,
            sources=sources,
            build_options=output_options(package, self.options),
            dependencies={
                dep: self.store.manifest_digest(dep)
                for dep in self.graph.dependencies(package.name)
            },
        )

    def check(self, package: Package) -> Staleness:
        """Check a package against its recorded fingerprint.

        A package without an artifact is stale even when its inputs cannot
        be read; it is then built without a fingerprint record and reads as
        stale again on the next run.

        Raises:
            StalenessReadError: If the inputs of a built package cannot be
                read.
        """
        reasons: list[str] = []
        if package.name in self.options.force:
            reasons.append("forced")
        artifact = self.store.get(package.name)

        try:
            inputs = self.collect_inputs(package)
        except StalenessReadError as e:
            if artifact is not None:
                raise
            logger.warning(
                "%s has no artifact; building without a fingerprint: %s",
                package.name,
                e,
            )
            reasons.append("no artifact")
            return Staleness(stale=True, reasons=reasons, fingerprint=None, inputs=None)

        fingerprint = compute_fingerprint(inputs)
        if artifact is None:
            reasons.append("no artifact")
        else:
            record = self.store.read_fingerprint(package.name)
            if record is None or "fingerprint" not in record:
                reasons.append("no recorded fingerprint")
            elif record["fingerprint"] != fingerprint:
                reasons.append("inputs changed")
                reasons.extend(_explain_diff(record.get("inputs"), inputs))

        return Staleness(
            stale=bool(reasons),
            reasons=reasons,
            fingerprint=fingerprint,
            inputs=inputs,
        )

    def is_stale(self, package: Package, artifact: Artifact | None) -> bool:
        """Return whether a package must be rebuilt."""
        if artifact is None:
            return True
        return self.check(package).stale


def _explain_diff(previous: Any, current: BuildInputs) -> list[str]:
    """Describe which inputs differ from a recorded input snapshot."""
    if not isinstance(previous, dict):
        return []
    details: list[str] = []
    if previous.get("descriptor_hash") != current.descriptor_hash:
        details.append(f"descriptor changed: {current.descriptor}")
    old_sources = previous.get("sources") or {}
    for path in sorted(set(old_sources) | set(current.sources)):
        if old_sources.get(path) != current.sources.get(path):
            details.append(f"source changed: {path}")
    if previous.get("build_options") != current.build_options:
        details.append("build options changed")
    old_deps = previous.get("dependencies") or {}
    for dep in sorted(set(old_deps) | set(current.dependencies)):
        if old_deps.get(dep) != current.dependencies.get(dep):
            details.append(f"dependency rebuilt: {dep}")
    return details


__all__ = [
    "FINGERPRINT_SCHEMA_VERSION",
    "BuildInputs",
    "FileLister",
    "FreshnessOracle",
    "GitFileLister",
    "Staleness",
    "compute_fingerprint",
    "match_sources",
    "output_options",
]

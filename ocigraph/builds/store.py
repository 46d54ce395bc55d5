"""On-disk artifact store.

Layout under the output root (compatible with external loaders):

- ``<out>/<package>/index.json``: exists iff the package has been built
- ``<out>/<package>/``: OCI layout payload in ``dir`` mode
- ``<out>/<package>/<package>.tar``: OCI archive payload in ``tar`` mode
- ``<out>/<package>/.fingerprint.json``: input fingerprint of the last
  successful build, written as the final step of that build
- ``<out>/.<package>-loaded``: written by the load step only
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ocigraph.types import Artifact, OutputMode, Package

logger = logging.getLogger(__name__)

MANIFEST_NAME = "index.json"
FINGERPRINT_NAME = ".fingerprint.json"
FINGERPRINT_RECORD_VERSION = "1"


def compute_file_hash(file_path: Path, chunk_size: int = 64 * 1024) -> str:
    """Compute SHA-256 hex digest of a file."""
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def write_json_atomic(data: dict[str, Any], output_path: Path) -> Path:
    """Write JSON so readers never observe a partial file."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{output_path.name}.", suffix=".tmp", dir=output_path.parent
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp_name, output_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return output_path


class ArtifactStore:
    """Artifact lookups backed by the output directory.

    Lookups reflect the filesystem at call time. Within one run a package
    observed as built is remembered, since no other actor writes the store
    concurrently with the run.
    """

    def __init__(self, root: Path, packages: Iterable[Package] = ()) -> None:
        self.root = root
        self._modes: dict[str, OutputMode] = {p.name: p.output_mode for p in packages}
        self._built: dict[str, Artifact] = {}
        self._lock = threading.Lock()

    def package_dir(self, name: str) -> Path:
        return self.root / name

    def manifest_path(self, name: str) -> Path:
        return self.package_dir(name) / MANIFEST_NAME

    def fingerprint_path(self, name: str) -> Path:
        return self.package_dir(name) / FINGERPRINT_NAME

    def loaded_marker(self, name: str) -> Path:
        return self.root / f".{name}-loaded"

    def payload_path(self, name: str) -> Path:
        """Return where the payload of a package lives."""
        if self._modes.get(name, OutputMode.DIRECTORY) is OutputMode.ARCHIVE:
            return self.package_dir(name) / f"{name}.tar"
        return self.package_dir(name)

    def artifact_for(self, name: str) -> Artifact:
        """Describe the artifact a package would have, built or not."""
        return Artifact(
            package=name,
            manifest_path=self.manifest_path(name),
            payload=self.payload_path(name),
            output_mode=self._modes.get(name, OutputMode.DIRECTORY),
            loaded_marker=self.loaded_marker(name),
        )

    def get(self, name: str) -> Artifact | None:
        """Return the artifact of a package, or None if it was never built."""
        with self._lock:
            cached = self._built.get(name)
        if cached is not None:
            return cached
        if not self.manifest_path(name).is_file():
            return None
        artifact = self.artifact_for(name)
        with self._lock:
            self._built[name] = artifact
        return artifact

    def put(self, name: str, artifact: Artifact) -> None:
        """Register a freshly built artifact.

        Raises:
            FileNotFoundError: If the artifact's manifest does not exist.
        """
        if not artifact.manifest_path.is_file():
            raise FileNotFoundError(f"Manifest missing: {artifact.manifest_path}")
        with self._lock:
            self._built[name] = artifact
        logger.debug("Registered artifact for %s", name)

    def invalidate(self, name: str) -> None:
        """Forget a package's artifact ahead of a rebuild.

        Removes the fingerprint record so an interrupted build can never
        look fresh afterwards.
        """
        with self._lock:
            self._built.pop(name, None)
        self.fingerprint_path(name).unlink(missing_ok=True)

    def list_built(self) -> set[str]:
        """Return the names of all packages with a manifest on disk."""
        built: set[str] = set()
        if self.root.is_dir():
            for manifest in self.root.glob(f"*/{MANIFEST_NAME}"):
                if manifest.is_file():
                    built.add(manifest.parent.name)
        with self._lock:
            built.update(self._built)
        return built

    def is_loaded(self, name: str) -> bool:
        """Whether the load marker is at least as new as the manifest."""
        marker = self.loaded_marker(name)
        manifest = self.manifest_path(name)
        if not marker.exists() or not manifest.exists():
            return False
        return marker.stat().st_mtime >= manifest.stat().st_mtime

    def mark_loaded(self, name: str) -> Path:
        """Touch the load marker of a package."""
        marker = self.loaded_marker(name)
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.touch()
        return marker

    def manifest_digest(self, name: str) -> str | None:
        """Return the SHA-256 of a package's manifest, or None if unbuilt."""
        manifest = self.manifest_path(name)
        if not manifest.is_file():
            return None
        return compute_file_hash(manifest)

    def read_fingerprint(self, name: str) -> dict[str, Any] | None:
        """Return the fingerprint record of the last successful build."""
        path = self.fingerprint_path(name)
        try:
            with path.open(encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable fingerprint %s: %s", path, e)
            return None
        if not isinstance(data, dict):
            return None
        return data

    def write_fingerprint(
        self,
        name: str,
        fingerprint: str,
        inputs: dict[str, Any] | None = None,
    ) -> Path:
        """Record the fingerprint of a successful build."""
        record: dict[str, Any] = {
            "version": FINGERPRINT_RECORD_VERSION,
            "package": name,
            "fingerprint": fingerprint,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
        }
        if inputs:
            record["inputs"] = inputs
        path = write_json_atomic(record, self.fingerprint_path(name))
        logger.debug("Recorded fingerprint for %s: %s", name, fingerprint[:23])
        return path


__all__ = [
    "FINGERPRINT_NAME",
    "MANIFEST_NAME",
    "ArtifactStore",
    "compute_file_hash",
    "write_json_atomic",
]

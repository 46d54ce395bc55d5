"""Single-package image builds.

ImageBuilder turns one stale package plus its resolved build context into
a backend invocation, then registers the artifact. The fingerprint record
is written last; until then the package reads as stale.
"""

from __future__ import annotations

import logging
import os
import tarfile
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from ocigraph.builds.runner import (
    BackendResult,
    BuildBackend,
    BuildExecutionError,
    BuildRequest,
)
from ocigraph.builds.store import MANIFEST_NAME, ArtifactStore
from ocigraph.config import DEFAULT_SOURCE_LABEL
from ocigraph.errors import BuildError
from ocigraph.types import Artifact, BuildOptions, OutputMode, Package

if TYPE_CHECKING:
    from ocigraph.builds.fingerprint import Staleness
    from ocigraph.graph.context import BuildContext

logger = logging.getLogger(__name__)


def extract_archive_manifest(archive: Path, manifest_path: Path) -> Path:
    """Copy ``index.json`` out of an OCI archive next to it.

    Raises:
        KeyError: If the archive has no index.json.
        tarfile.TarError: If the archive cannot be read.
    """
    with tarfile.open(archive) as tar:
        try:
            member = tar.getmember(MANIFEST_NAME)
        except KeyError:
            member = tar.getmember(f"./{MANIFEST_NAME}")
        source = tar.extractfile(member)
        if source is None:
            raise KeyError(f"{MANIFEST_NAME} is not a regular file in {archive}")
        data = source.read()

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{MANIFEST_NAME}.", suffix=".tmp", dir=manifest_path.parent
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, manifest_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return manifest_path


class ImageBuilder:
    """Drives the backend for exactly one package at a time."""

    def __init__(
        self,
        backend: BuildBackend,
        store: ArtifactStore,
        workspace: Path,
        log_dir: Path,
        options: BuildOptions | None = None,
        timeout: int | None = None,
    ) -> None:
        self.backend = backend
        self.store = store
        self.workspace = workspace
        self.log_dir = log_dir
        self.options = options or BuildOptions()
        self.timeout = timeout

    def make_request(self, package: Package, context: BuildContext) -> BuildRequest:
        """Assemble the backend request for a package."""
        source = self.options.source_label or self.workspace.resolve().as_uri()
        return BuildRequest(
            package=package.name,
            descriptor=package.descriptor,
            tag=self.options.tag_for(package.name),
            platform=package.platform,
            output_mode=package.output_mode,
            dest=self.store.payload_path(package.name),
            workspace=self.workspace,
            log_path=self.log_dir / f"{package.name}.log",
            contexts=dict(context),
            build_args={"VERSION": self.options.version},
            labels={DEFAULT_SOURCE_LABEL: source},
            no_cache=self.options.no_cache,
            source_date_epoch=self.options.source_date_epoch,
            timeout=self.timeout,
        )

    def build(
        self,
        package: Package,
        context: BuildContext,
        staleness: Staleness | None = None,
    ) -> Artifact:
        """Build a package and register its artifact.

        Args:
            package: Package to build.
            context: Sibling build contexts to expose.
            staleness: Freshness check whose fingerprint is recorded on success.

        Returns:
            The registered Artifact.

        Raises:
            BuildError: If the backend fails or produces no manifest.
        """
        if package.name in context:
            raise ValueError(f"Build context of {package.name} references itself")
        if not package.descriptor.is_file():
            raise BuildError(
                package.name,
                f"build descriptor not found: {package.descriptor}",
                code="descriptor_not_found",
            )

        try:
            self.store.invalidate(package.name)
            self.store.package_dir(package.name).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BuildError(
                package.name,
                f"cannot prepare output directory: {e}",
                code="output_unavailable",
            ) from e

        request = self.make_request(package, context)
        logger.info(
            "Building %s (%s, %s) with contexts: %s",
            package.name,
            package.platform,
            package.output_mode.value,
            ", ".join(sorted(context)) or "(none)",
        )

        try:
            result: BackendResult = self.backend.invoke(request)
        except BuildExecutionError as e:
            raise BuildError(
                package.name,
                str(e),
                exit_code=e.exit_code,
                log_path=request.log_path,
                diagnostics=None,
                code=e.code,
            ) from e

        if not result.success:
            raise BuildError(
                package.name,
                result.error_message or f"backend exited with {result.exit_code}",
                diagnostics=result.diagnostics,
                exit_code=result.exit_code,
                log_path=result.log_path,
            )

        manifest_path = self.store.manifest_path(package.name)
        if package.output_mode is OutputMode.ARCHIVE:
            try:
                extract_archive_manifest(request.dest, manifest_path)
            except (OSError, KeyError, tarfile.TarError) as e:
                raise BuildError(
                    package.name,
                    f"cannot read manifest from archive {request.dest}: {e}",
                    phase="manifest",
                    log_path=result.log_path,
                    code="manifest_missing",
                ) from e

        if not manifest_path.is_file():
            raise BuildError(
                package.name,
                f"backend succeeded but produced no manifest at {manifest_path}",
                phase="manifest",
                log_path=result.log_path,
                code="manifest_missing",
            )

        try:
            if staleness is not None and staleness.fingerprint is not None:
                inputs = staleness.inputs.to_dict() if staleness.inputs else None
                self.store.write_fingerprint(
                    package.name, staleness.fingerprint, inputs
                )
            artifact = self.store.artifact_for(package.name)
            self.store.put(package.name, artifact)
        except OSError as e:
            raise BuildError(
                package.name,
                f"cannot register artifact: {e}",
                phase="manifest",
                log_path=result.log_path,
                code="artifact_unavailable",
            ) from e

        logger.info("Built %s -> %s", package.name, artifact.payload)
        return artifact


__all__ = ["ImageBuilder", "extract_archive_manifest"]

"""Build backend adapter.

This module handles:
- Composing container build commands from a build request
- Translating build contexts into named-context arguments
- Executing builds with subprocess
- Capturing stdout/stderr to log files
- Enforcing build timeouts

The graph engine only sees the BuildBackend protocol, so tests can swap in
a backend that records requests instead of shelling out.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from ocigraph.types import OutputMode

logger = logging.getLogger(__name__)

DIAGNOSTIC_TAIL_LINES = 40


class BuildExecutionError(Exception):
    """Raised when the backend cannot be run to completion."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class BuildRequest:
    """Everything the backend needs for exactly one package build.

    Attributes:
        package: Package name (also the OCI image name).
        descriptor: Build descriptor path.
        tag: Full image tag (``registry/name``).
        platform: Target platform.
        output_mode: Artifact shape.
        dest: Output destination (directory or archive file).
        workspace: Build context root and working directory.
        log_path: File receiving the backend's output.
        contexts: Sibling name -> payload location.
        build_args: ``--build-arg`` values.
        labels: Image labels.
        no_cache: Disable the backend cache.
        source_date_epoch: Fixed timestamp for reproducible output.
        timeout: Timeout in seconds (None = no timeout).
    """

    package: str
    descriptor: Path
    tag: str
    platform: str
    output_mode: OutputMode
    dest: Path
    workspace: Path
    log_path: Path
    contexts: dict[str, Path] = field(default_factory=dict)
    build_args: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    no_cache: bool = False
    source_date_epoch: int = 1
    timeout: int | None = None


@dataclass
class BackendResult:
    """Result of a backend invocation.

    Attributes:
        success: Whether the backend exited zero.
        exit_code: Process exit code.
        log_path: Path to the build log file.
        started_at: Build start time.
        finished_at: Build finish time.
        command: The command that was executed.
        error_message: Error message if the build failed.
        diagnostics: Tail of the build log if the build failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None
    diagnostics: str | None = None


class BuildBackend(Protocol):
    """Narrow interface to a container build backend."""

    def invoke(self, request: BuildRequest) -> BackendResult:
        """Run one build.

        Raises:
            BuildExecutionError: If the backend cannot be started or times out.
        """
        ...


def compose_output_arg(request: BuildRequest) -> str:
    """Compose the ``--output`` value for an OCI export.

    Args:
        request: Build request.

    Returns:
        Comma-separated exporter options.
    """
    parts = ["type=oci"]
    if request.output_mode is OutputMode.DIRECTORY:
        parts.append("tar=false")
    parts.extend(
        [
            "rewrite-timestamp=true",
            "force-compression=true",
            f"name={request.package}",
            f"dest={request.dest}",
        ]
    )
    return ",".join(parts)


def compose_context_args(contexts: dict[str, Path]) -> list[str]:
    """Translate a build context into ``--build-context`` arguments.

    OCI layout directories are offered as ``oci-layout://`` sources. Archive
    payloads are offered as a plain local context of their directory.
    """
    args: list[str] = []
    for name in sorted(contexts):
        payload = contexts[name].resolve()
        if payload.is_dir():
            source = f"oci-layout://{payload}"
        else:
            source = str(payload.parent)
        args.extend(["--build-context", f"{name}={source}"])
    return args


def compose_build_command(request: BuildRequest, binary: str = "docker") -> list[str]:
    """Compose the ``build`` command for a request.

    Args:
        request: Build request.
        binary: Backend executable.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [binary, "build"]

    for key in sorted(request.build_args):
        cmd.extend(["--build-arg", f"{key}={request.build_args[key]}"])

    cmd.extend(
        [
            "--tag",
            request.tag,
            "--progress=plain",
            f"--platform={request.platform}",
        ]
    )

    for key in sorted(request.labels):
        cmd.extend(["--label", f"{key}={request.labels[key]}"])

    cmd.extend(compose_context_args(request.contexts))

    if request.no_cache:
        cmd.append("--no-cache")

    cmd.extend(["--output", compose_output_arg(request)])
    cmd.extend(["-f", str(request.descriptor), "."])
    return cmd


def compose_build_env(request: BuildRequest) -> dict[str, str]:
    """Return environment overrides for a reproducible BuildKit build."""
    return {
        "DOCKER_BUILDKIT": "1",
        "SOURCE_DATE_EPOCH": str(request.source_date_epoch),
        "BUILDKIT_MULTIPLATFORM": "1",
    }


def read_log_tail(log_path: Path, lines: int = DIAGNOSTIC_TAIL_LINES) -> str:
    """Return the last lines of a log file, or an empty string."""
    try:
        with log_path.open(encoding="utf-8", errors="replace") as f:
            return "".join(deque(f, maxlen=lines))
    except OSError:
        return ""


class DockerBuildBackend:
    """Runs builds with ``docker build`` (BuildKit)."""

    def __init__(self, binary: str = "docker") -> None:
        self.binary = binary

    def invoke(self, request: BuildRequest) -> BackendResult:
        """Execute a build.

        Raises:
            BuildExecutionError: If the build cannot start or times out.
        """
        request.log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path = request.log_path

        cmd = compose_build_command(request, self.binary)
        cmd_str = shlex.join(cmd)
        logger.info("Executing build: %s", cmd_str)

        started_at = datetime.now(timezone.utc)
        error_message: str | None = None

        env = dict(os.environ)
        env.update(compose_build_env(request))

        try:
            with log_path.open("w") as log_file:
                log_file.write(f"# Command: {cmd_str}\n")
                log_file.write(f"# Started: {started_at.isoformat()}\n")
                log_file.write(f"# CWD: {request.workspace}\n")
                log_file.write("# " + "=" * 70 + "\n\n")
                log_file.flush()

                result = subprocess.run(
                    cmd,
                    cwd=request.workspace,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    timeout=request.timeout,
                    env=env,
                    check=False,
                )

            exit_code = result.returncode
            success = exit_code == 0
            if not success:
                error_message = f"Build failed with exit code {exit_code}"
                logger.error("%s. See log: %s", error_message, log_path)

        except subprocess.TimeoutExpired as e:
            error_message = f"Build timed out after {request.timeout} seconds"
            logger.error("%s. See log: %s", error_message, log_path)
            with log_path.open("a") as log_file:
                log_file.write(f"\n# TIMEOUT after {request.timeout} seconds\n")
            raise BuildExecutionError(
                error_message, exit_code=-1, code="build_timeout"
            ) from e

        except OSError as e:
            error_message = f"Failed to execute build: {e}"
            logger.error(error_message)
            raise BuildExecutionError(
                error_message, exit_code=None, code="execution_error"
            ) from e

        finished_at = datetime.now(timezone.utc)

        with log_path.open("a") as log_file:
            log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
            log_file.write(f"# Exit code: {exit_code}\n")
            duration = (finished_at - started_at).total_seconds()
            log_file.write(f"# Duration: {duration:.1f}s\n")

        return BackendResult(
            success=success,
            exit_code=exit_code,
            log_path=log_path,
            started_at=started_at,
            finished_at=finished_at,
            command=cmd_str,
            error_message=error_message,
            diagnostics=None if success else read_log_tail(log_path),
        )


__all__ = [
    "BackendResult",
    "BuildBackend",
    "BuildExecutionError",
    "BuildRequest",
    "DockerBuildBackend",
    "compose_build_command",
    "compose_build_env",
    "compose_context_args",
    "compose_output_arg",
    "read_log_tail",
]

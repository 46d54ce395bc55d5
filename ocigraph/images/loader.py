"""Loading built artifacts into the local image store.

This module handles:
- Streaming an OCI layout directory into ``docker load``
- Maintaining the ``.<package>-loaded`` markers
- Starting an interactive shell inside the dev image
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tarfile
from pathlib import Path

from ocigraph.builds.store import ArtifactStore
from ocigraph.errors import LoadError
from ocigraph.types import OutputMode

logger = logging.getLogger(__name__)

SHELL_WORKDIR = "/home/user"


def load_image(
    store: ArtifactStore,
    name: str,
    binary: str = "docker",
    force: bool = False,
) -> bool:
    """Import a built artifact into the local image store.

    Skipped when the load marker is newer than the manifest.

    Args:
        store: Artifact store.
        name: Package name.
        binary: Backend executable providing ``load``.
        force: Load even if the marker is current.

    Returns:
        True if the image was loaded, False if it was already current.

    Raises:
        LoadError: If the package is not built or the load fails.
    """
    artifact = store.get(name)
    if artifact is None:
        raise LoadError(name, "package has not been built", code="not_built")
    if not force and store.is_loaded(name):
        logger.info("%s already loaded", name)
        return False

    cmd = [binary, "load"]
    logger.info("Loading %s from %s", name, artifact.payload)
    try:
        if artifact.output_mode is OutputMode.ARCHIVE:
            with artifact.payload.open("rb") as archive:
                result = subprocess.run(
                    cmd, stdin=archive, capture_output=True, check=False
                )
        else:
            with subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            ) as proc:
                if proc.stdin is None or proc.stderr is None:
                    raise LoadError(name, f"{binary} load was started without pipes")
                try:
                    with tarfile.open(fileobj=proc.stdin, mode="w|") as tar:
                        for path in sorted(artifact.payload.iterdir()):
                            # Skip bookkeeping files such as the fingerprint record
                            if path.name.startswith("."):
                                continue
                            tar.add(path, arcname=path.name)
                    proc.stdin.close()
                except (OSError, tarfile.TarError):
                    proc.kill()
                    proc.wait()
                    raise
                stderr = proc.stderr.read()
                result = subprocess.CompletedProcess(cmd, proc.wait(), None, stderr)
    except (OSError, tarfile.TarError) as e:
        raise LoadError(name, f"failed to run {binary} load: {e}") from e

    if result.returncode != 0:
        message = (result.stderr or b"").decode("utf-8", "replace").strip()
        raise LoadError(name, f"{binary} load exited {result.returncode}: {message}")

    marker = store.mark_loaded(name)
    logger.info("Loaded %s (marker %s)", name, marker)
    return True


def compose_shell_command(
    image: str,
    workspace: Path,
    command: str | None = None,
    binary: str = "docker",
    extra_args: list[str] | None = None,
) -> list[str]:
    """Compose an interactive ``run`` inside an image.

    The workspace is mounted at /home/user and the container runs as the
    invoking user.
    """
    cmd = [
        binary,
        "run",
        "--interactive",
        "--tty",
        "--user",
        f"{os.getuid()}:{os.getgid()}",
        "--workdir",
        SHELL_WORKDIR,
        "--volume",
        f"{workspace}:{SHELL_WORKDIR}",
    ]
    if extra_args:
        cmd.extend(extra_args)
    cmd.append(image)
    if command:
        cmd.extend(["/bin/bash", "-c", f"set -eu; {command}"])
    else:
        cmd.append("/bin/bash")
    return cmd


def run_shell(
    image: str,
    workspace: Path,
    command: str | None = None,
    binary: str = "docker",
) -> int:
    """Run an interactive shell (or a command) in an image.

    Returns:
        The container's exit code.
    """
    cmd = compose_shell_command(image, workspace, command, binary)
    logger.info("Executing: %s", shlex.join(cmd))
    try:
        return subprocess.run(cmd, check=False).returncode
    except OSError as e:
        raise LoadError(image, f"failed to run {binary}: {e}") from e


__all__ = [
    "SHELL_WORKDIR",
    "compose_shell_command",
    "load_image",
    "run_shell",
]

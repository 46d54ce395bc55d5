"""Error taxonomy for ocigraph.

Every error carries a stable ``code`` so the CLI and the build history can
report failures without parsing messages.
"""

from __future__ import annotations

from pathlib import Path

# Stable error codes
CONFIGURATION_ERROR = "configuration_error"
STALENESS_READ_ERROR = "staleness_read_error"
BUILD_ERROR = "build_failed"
LOAD_ERROR = "load_failed"


class OcigraphError(Exception):
    """Base error for all ocigraph operations."""

    def __init__(self, message: str, code: str = "ocigraph_error") -> None:
        super().__init__(message)
        self.code = code


class ConfigurationError(OcigraphError):
    """Raised when the package graph is malformed.

    Covers undefined dependencies, cycles, duplicate names and missing
    build descriptors. Always fatal: no build proceeds.
    """

    def __init__(
        self,
        message: str,
        code: str = CONFIGURATION_ERROR,
        path: Path | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.path = path


class StalenessReadError(OcigraphError):
    """Raised when the tracked-file list of the workspace cannot be read."""

    def __init__(
        self,
        message: str,
        package: str | None = None,
        code: str = STALENESS_READ_ERROR,
    ) -> None:
        super().__init__(message, code=code)
        self.package = package


class BuildError(OcigraphError):
    """Raised when the build backend fails for a package.

    Attributes:
        package: Name of the package that failed.
        phase: Phase of the run the failure happened in
            (``staleness``, ``context``, ``build``, ``manifest``).
        diagnostics: Tail of the backend's output, if any.
        exit_code: Backend exit code (None if it never ran).
        log_path: Path to the full backend log.
    """

    def __init__(
        self,
        package: str,
        message: str,
        phase: str = "build",
        diagnostics: str | None = None,
        exit_code: int | None = None,
        log_path: Path | None = None,
        code: str = BUILD_ERROR,
    ) -> None:
        super().__init__(f"{package}: {message}", code=code)
        self.package = package
        self.phase = phase
        self.diagnostics = diagnostics
        self.exit_code = exit_code
        self.log_path = log_path


class LoadError(OcigraphError):
    """Raised when importing a built artifact into the local image store fails."""

    def __init__(self, package: str, message: str, code: str = LOAD_ERROR) -> None:
        super().__init__(f"{package}: {message}", code=code)
        self.package = package


__all__ = [
    "BUILD_ERROR",
    "CONFIGURATION_ERROR",
    "LOAD_ERROR",
    "STALENESS_READ_ERROR",
    "BuildError",
    "ConfigurationError",
    "LoadError",
    "OcigraphError",
    "StalenessReadError",
]

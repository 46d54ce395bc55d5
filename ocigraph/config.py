"""Configuration settings for ocigraph.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ocigraph.types import BuildOptions

DEFAULT_SOURCE_LABEL = "org.opencontainers.image.source"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the OCIGRAPH_ prefix.
    CLI flags can override these at runtime. Relative paths are resolved
    against ``workspace``.
    """

    model_config = SettingsConfigDict(
        env_prefix="OCIGRAPH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    workspace: Path = Field(
        default_factory=Path.cwd,
        description="Workspace root (build context and git checkout)",
    )
    packages_file: Path = Field(
        default=Path("packages.yaml"),
        description="Package declaration file",
    )
    out_dir: Path = Field(
        default=Path("out"),
        description="Artifact store root",
    )
    log_dir: Path = Field(
        default=Path(".ocigraph") / "logs",
        description="Directory for backend build logs",
    )
    db_url: str | None = Field(
        default=None,
        description="Build history database URL (SQLite under .ocigraph if unset)",
    )

    # Image naming and stamping
    registry: str = Field(
        default="local",
        description="Registry/namespace prefix for image tags",
    )
    version: str = Field(
        default="dev",
        description="Version string passed as the VERSION build argument",
    )
    source_label: str | None = Field(
        default=None,
        description=(
            "Value of the org.opencontainers.image.source label; the "
            "workspace file URI if unset"
        ),
    )
    source_date_epoch: int = Field(
        default=1,
        ge=0,
        description="Fixed build timestamp for reproducible outputs",
    )
    default_platform: str = Field(
        default="linux/amd64",
        description="Target platform for packages that do not set one",
    )
    no_cache: bool = Field(
        default=False,
        description="Disable the backend build cache",
    )

    # Backend
    backend_binary: str = Field(
        default="docker",
        description="Container build backend executable",
    )
    dev_package: str = Field(
        default="dev",
        description="Package used by the interactive shell",
    )

    # Execution
    max_concurrent_builds: int = Field(
        default=1,
        ge=1,
        le=16,
        description="Maximum concurrent package builds",
    )
    keep_going: bool = Field(
        default=False,
        description="Keep building independent packages after a failure",
    )
    build_timeout: int | None = Field(
        default=None,
        ge=60,
        description="Timeout for a single package build in seconds",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    def resolve(self, path: Path) -> Path:
        """Resolve a settings path against the workspace."""
        return path if path.is_absolute() else self.workspace / path

    @property
    def packages_path(self) -> Path:
        return self.resolve(self.packages_file)

    @property
    def out_path(self) -> Path:
        return self.resolve(self.out_dir)

    @property
    def log_path(self) -> Path:
        return self.resolve(self.log_dir)

    @property
    def effective_db_url(self) -> str:
        """Return the configured database URL, defaulting to workspace SQLite."""
        if self.db_url:
            return self.db_url
        db_path = self.workspace / ".ocigraph" / "history.sqlite"
        return f"sqlite:///{db_path}"

    def build_options(self, force: set[str] | None = None) -> BuildOptions:
        """Return the run-wide build options described by these settings."""
        return BuildOptions(
            registry=self.registry,
            version=self.version,
            no_cache=self.no_cache,
            source_date_epoch=self.source_date_epoch,
            source_label=self.source_label,
            force=frozenset(force or ()),
        )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["DEFAULT_SOURCE_LABEL", "Settings", "get_settings", "print_settings_json"]

"""Pydantic models for package declaration files.

A declaration file lists the packages of a workspace together with their
build descriptors, tracked sources and output modes.
"""

import re
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

PACKAGE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.\-]*$")

# Accepted spellings of the two output modes
OUTPUT_MODE_ALIASES = {
    "dir": "dir",
    "directory": "dir",
    "tar": "tar",
    "archive": "tar",
}


class PackageSchema(BaseModel):
    """Schema for a single package declaration.

    Attributes:
        name: Unique package name (image tag suffix, artifact directory).
        descriptor: Build descriptor path relative to the workspace.
            Defaults to ``images/<name>/Containerfile``.
        sources: Tracked source entries: exact paths, directory prefixes
            or glob patterns, relative to the workspace. Defaults to the
            directory holding the descriptor.
        output: Artifact shape, ``dir`` or ``tar``.
        platform: Target platform; the settings default applies if unset.
        inject_context: Receive already-built siblings as named build contexts.
        depends_on: Explicit package-level dependencies.
        default: Member of the default build set.
        description: Optional free-form description.
    """

    model_config = ConfigDict(extra="forbid")

    name: Annotated[
        str, Field(description="Unique package name", min_length=1, max_length=128)
    ]
    descriptor: str | None = Field(default=None, description="Build descriptor path")
    sources: list[str] | None = Field(
        default=None, description="Tracked source paths or globs"
    )
    output: str = Field(default="dir", description="Output mode (dir or tar)")
    platform: str | None = Field(default=None, description="Target platform")
    inject_context: bool = Field(
        default=True, description="Receive sibling build contexts"
    )
    depends_on: list[str] = Field(
        default_factory=list, description="Explicit package dependencies"
    )
    default: bool = Field(default=True, description="Build by default")
    description: str | None = Field(default=None)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name contains only safe characters."""
        if not PACKAGE_NAME_PATTERN.match(v):
            raise ValueError(
                f"name must match {PACKAGE_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("output")
    @classmethod
    def validate_output(cls, v: str) -> str:
        """Normalize the output mode to ``dir`` or ``tar``."""
        normalized = OUTPUT_MODE_ALIASES.get(v.lower())
        if normalized is None:
            raise ValueError(
                f"output must be one of {sorted(OUTPUT_MODE_ALIASES)}, got '{v}'"
            )
        return normalized

    @property
    def descriptor_path(self) -> str:
        """Return the declared or conventional descriptor path."""
        return self.descriptor or f"images/{self.name}/Containerfile"


class PackagesFileSchema(BaseModel):
    """Schema for a whole declaration file."""

    model_config = ConfigDict(extra="forbid")

    registry: str | None = Field(default=None, description="Image tag prefix")
    packages: list[PackageSchema] = Field(default_factory=list)

    @field_validator("packages")
    @classmethod
    def validate_unique_names(cls, v: list[PackageSchema]) -> list[PackageSchema]:
        """Reject duplicate package names."""
        seen: set[str] = set()
        for package in v:
            if package.name in seen:
                raise ValueError(f"duplicate package name '{package.name}'")
            seen.add(package.name)
        return v


__all__ = [
    "OUTPUT_MODE_ALIASES",
    "PACKAGE_NAME_PATTERN",
    "PackageSchema",
    "PackagesFileSchema",
]

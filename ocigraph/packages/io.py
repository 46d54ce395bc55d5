"""Loading package declaration files.

Declaration files are YAML or JSON; the format is chosen by extension.
Any read, parse or validation failure is raised as ConfigurationError.
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ocigraph.errors import ConfigurationError
from ocigraph.packages.schema import PackageSchema, PackagesFileSchema
from ocigraph.types import OutputMode, Package


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_packages_data(data: dict[str, Any]) -> PackagesFileSchema:
    """Validate declaration data using the schema.

    Raises:
        pydantic.ValidationError: If data does not match schema.
    """
    return PackagesFileSchema.model_validate(data)


def load_packages_file(path: Path) -> PackagesFileSchema:
    """Load and validate a package declaration file.

    Args:
        path: Path to a ``.yaml``, ``.yml`` or ``.json`` file.

    Returns:
        Validated PackagesFileSchema.

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid.
    """
    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            data = load_yaml(path)
        elif suffix == ".json":
            data = load_json(path)
        else:
            raise ConfigurationError(
                f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json",
                path=path,
            )
        return parse_packages_data(data)
    except FileNotFoundError as e:
        raise ConfigurationError(
            f"Package file not found: {path}", code="packages_file_not_found", path=path
        ) from e
    except (yaml.YAMLError, json.JSONDecodeError, ValueError) as e:
        # ValidationError is a ValueError subclass
        if isinstance(e, ValidationError):
            message = f"Invalid package file {path}: {e.error_count()} error(s)\n{e}"
        else:
            message = f"Cannot parse package file {path}: {e}"
        raise ConfigurationError(message, path=path) from e


def to_package(
    schema: PackageSchema,
    workspace: Path,
    default_platform: str = "linux/amd64",
) -> Package:
    """Resolve a package declaration against the workspace."""
    descriptor = Path(schema.descriptor_path)
    if not descriptor.is_absolute():
        descriptor = workspace / descriptor
    if schema.sources is not None:
        sources = tuple(schema.sources)
    else:
        try:
            sources = (descriptor.parent.relative_to(workspace).as_posix(),)
        except ValueError:
            sources = ()
    return Package(
        name=schema.name,
        descriptor=descriptor,
        sources=sources,
        output_mode=OutputMode(schema.output),
        platform=schema.platform or default_platform,
        inject_context=schema.inject_context,
        depends_on=tuple(schema.depends_on),
        default=schema.default,
    )


def load_packages(
    path: Path,
    workspace: Path,
    default_platform: str = "linux/amd64",
) -> tuple[list[Package], PackagesFileSchema]:
    """Load a declaration file and resolve its packages.

    Returns:
        Tuple of (packages in declaration order, parsed file schema).
    """
    parsed = load_packages_file(path)
    packages = [to_package(p, workspace, default_platform) for p in parsed.packages]
    return packages, parsed


__all__ = [
    "load_json",
    "load_packages",
    "load_packages_file",
    "load_yaml",
    "parse_packages_data",
    "to_package",
]

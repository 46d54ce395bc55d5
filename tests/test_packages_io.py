"""Tests for package declaration loading.

These tests verify loading declaration files from YAML and JSON and
resolving them into packages.
"""

import json
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from ocigraph.errors import ConfigurationError
from ocigraph.packages import PackageSchema, load_packages, load_packages_file
from ocigraph.packages.io import to_package
from ocigraph.types import OutputMode


@pytest.fixture
def declaration_data():
    """Return a declaration with a base package and two apps."""
    return {
        "registry": "tkhq/verifiable-apps",
        "packages": [
            {
                "name": "common",
                "sources": ["images/common", "Cargo.lock"],
                "inject_context": False,
            },
            {"name": "qos_enclave", "output": "archive"},
            {
                "name": "dev",
                "descriptor": "images/dev/Dockerfile",
                "platform": "linux/arm64",
                "depends_on": ["qos_enclave"],
                "default": False,
            },
        ],
    }


class TestPackageSchema:
    """Tests for PackageSchema validation."""

    def test_defaults(self):
        schema = PackageSchema(name="app")
        assert schema.output == "dir"
        assert schema.inject_context is True
        assert schema.default is True
        assert schema.descriptor_path == "images/app/Containerfile"

    @pytest.mark.parametrize(
        "alias,expected",
        [("dir", "dir"), ("Directory", "dir"), ("tar", "tar"), ("archive", "tar")],
    )
    def test_output_aliases(self, alias, expected):
        assert PackageSchema(name="app", output=alias).output == expected

    def test_unknown_output(self):
        with pytest.raises(ValidationError):
            PackageSchema(name="app", output="zip")

    @pytest.mark.parametrize("name", ["App", "-app", "app/x", "app name"])
    def test_invalid_names(self, name):
        with pytest.raises(ValidationError):
            PackageSchema(name=name)

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            PackageSchema(name="app", dependencies=["x"])


class TestLoadPackagesFile:
    """Tests for load_packages_file function."""

    def test_yaml(self, tmp_path, declaration_data):
        path = tmp_path / "packages.yaml"
        path.write_text(yaml.safe_dump(declaration_data))

        parsed = load_packages_file(path)

        assert parsed.registry == "tkhq/verifiable-apps"
        assert [p.name for p in parsed.packages] == ["common", "qos_enclave", "dev"]

    def test_json(self, tmp_path, declaration_data):
        path = tmp_path / "packages.json"
        path.write_text(json.dumps(declaration_data))

        assert len(load_packages_file(path).packages) == 3

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "packages.yml"
        path.write_text("")
        assert load_packages_file(path).packages == []

    def test_missing_file(self, tmp_path):
        path = tmp_path / "packages.yaml"
        with pytest.raises(ConfigurationError) as exc_info:
            load_packages_file(path)
        assert exc_info.value.code == "packages_file_not_found"
        assert exc_info.value.path == path

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "packages.toml"
        path.write_text("")
        with pytest.raises(ConfigurationError, match="Unsupported file extension"):
            load_packages_file(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "packages.yaml"
        path.write_text("packages: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Cannot parse"):
            load_packages_file(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "packages.yaml"
        path.write_text("- name: app\n")
        with pytest.raises(ConfigurationError):
            load_packages_file(path)

    def test_duplicate_names(self, tmp_path):
        path = tmp_path / "packages.yaml"
        path.write_text(
            yaml.safe_dump({"packages": [{"name": "app"}, {"name": "app"}]})
        )
        with pytest.raises(ConfigurationError, match="duplicate package name"):
            load_packages_file(path)

    def test_validation_error_carries_path(self, tmp_path):
        path = tmp_path / "packages.yaml"
        path.write_text(yaml.safe_dump({"packages": [{"name": "Bad Name"}]}))
        with pytest.raises(ConfigurationError) as exc_info:
            load_packages_file(path)
        assert exc_info.value.path == path
        assert "Invalid package file" in str(exc_info.value)


class TestLoadPackages:
    """Tests for resolving declarations into packages."""

    def test_resolves_against_workspace(self, tmp_path, declaration_data):
        path = tmp_path / "packages.yaml"
        path.write_text(yaml.safe_dump(declaration_data))

        packages, parsed = load_packages(path, tmp_path)

        common, enclave, dev = packages
        assert common.descriptor == tmp_path / "images" / "common" / "Containerfile"
        assert common.sources == ("images/common", "Cargo.lock")
        assert common.is_base
        assert enclave.output_mode is OutputMode.ARCHIVE
        assert enclave.sources == ("images/qos_enclave",)
        assert enclave.platform == "linux/amd64"
        assert dev.descriptor == tmp_path / "images" / "dev" / "Dockerfile"
        assert dev.sources == ("images/dev",)
        assert dev.platform == "linux/arm64"
        assert dev.depends_on == ("qos_enclave",)
        assert dev.default is False
        assert parsed.registry == "tkhq/verifiable-apps"

    def test_default_platform(self, tmp_path):
        package = to_package(PackageSchema(name="app"), tmp_path, "linux/arm64")
        assert package.platform == "linux/arm64"

    def test_absolute_descriptor_kept(self, tmp_path):
        descriptor = Path("/srv/build/Containerfile")
        package = to_package(
            PackageSchema(name="app", descriptor=str(descriptor)), tmp_path
        )
        assert package.descriptor == descriptor
        assert package.sources == ()

    def test_empty_sources_track_nothing(self, tmp_path):
        """An explicit empty list leaves only the descriptor as input."""
        package = to_package(PackageSchema(name="app", sources=[]), tmp_path)
        assert package.sources == ()

"""Tests for CLI commands.

The build backend and the git file lister are replaced with the test
doubles from conftest; load and shell use mocked subprocess.
"""

import io
import json
from unittest.mock import MagicMock, patch

import pytest
import yaml
from typer.testing import CliRunner

from conftest import Workspace
from ocigraph import __version__
from ocigraph.cli import app
from ocigraph.config import Settings

runner = CliRunner()


@pytest.fixture
def cli_workspace(tmp_path):
    """Workspace with a declaration file and patched backend and lister."""
    ws = Workspace(tmp_path)
    (tmp_path / "packages.yaml").write_text(
        yaml.safe_dump(
            {
                "packages": [
                    {"name": "base", "inject_context": False},
                    {"name": "app1"},
                    {"name": "app2", "default": False},
                ]
            }
        )
    )
    settings = Settings(
        workspace=tmp_path,
        db_url=f"sqlite:///{tmp_path / 'history.sqlite'}",
        log_level="CRITICAL",
    )
    with (
        patch("ocigraph.cli.get_settings", return_value=settings),
        patch("ocigraph.builds.service.DockerBuildBackend", return_value=ws.backend),
        patch("ocigraph.builds.service.GitFileLister", return_value=ws.lister),
    ):
        yield ws


def _fake_popen(*args, **kwargs):
    proc = MagicMock()
    proc.__enter__.return_value = proc
    proc.__exit__.return_value = False
    proc.stdin = io.BytesIO()
    proc.stderr = io.BytesIO(b"")
    proc.wait.return_value = 0
    return proc


class TestVersion:
    """Tests for --version."""

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout


class TestConfigCommand:
    """Tests for the config command."""

    def test_config_text(self, cli_workspace):
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Effective Configuration" in result.stdout
        assert "Registry:" in result.stdout

    def test_config_json(self, cli_workspace):
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["registry"] == "local"
        assert data["max_concurrent_builds"] == 1


class TestGraphCommand:
    """Tests for the graph command."""

    def test_graph_json(self, cli_workspace):
        result = runner.invoke(app, ["graph", "--json"])
        assert result.exit_code == 0
        rows = json.loads(result.stdout)

        assert [r["package"] for r in rows] == ["base", "app1", "app2"]
        assert rows[0]["depends_on"] == []
        assert rows[0]["contexts"] == []
        assert rows[2]["depends_on"] == ["base"]
        assert rows[2]["contexts"] == ["base", "app1"]
        assert rows[2]["default"] is False

    def test_graph_text(self, cli_workspace):
        result = runner.invoke(app, ["graph"])
        assert result.exit_code == 0
        assert "1. base" in result.stdout
        assert "may receive: base, app1" in result.stdout

    def test_cycle_is_configuration_error(self, cli_workspace):
        (cli_workspace.root / "packages.yaml").write_text(
            yaml.safe_dump(
                {
                    "packages": [
                        {"name": "a", "depends_on": ["b"]},
                        {"name": "b", "depends_on": ["a"]},
                    ]
                }
            )
        )
        result = runner.invoke(app, ["graph"])
        assert result.exit_code == 1
        assert "Configuration error" in result.stdout


class TestBuildCommand:
    """Tests for the build command."""

    def test_build_default_set(self, cli_workspace):
        """Packages marked default=false are skipped unless named."""
        result = runner.invoke(app, ["build", "--json"])
        assert result.exit_code == 0

        data = json.loads(result.stdout)
        assert data["success"] is True
        assert [(p["package"], p["state"]) for p in data["packages"]] == [
            ("base", "built"),
            ("app1", "built"),
        ]
        assert cli_workspace.backend.built == ["base", "app1"]

    def test_no_command_builds(self, cli_workspace):
        result = runner.invoke(app, [])
        assert result.exit_code == 0
        assert cli_workspace.backend.built == ["base", "app1"]

    def test_second_build_is_fresh(self, cli_workspace):
        runner.invoke(app, ["build", "app2"])
        result = runner.invoke(app, ["build", "app2", "--json"])

        assert result.exit_code == 0
        states = {p["package"]: p["state"] for p in json.loads(result.stdout)["packages"]}
        assert states == {"base": "fresh", "app2": "fresh"}
        assert cli_workspace.backend.built == ["base", "app2"]

    def test_force(self, cli_workspace):
        runner.invoke(app, ["build"])
        result = runner.invoke(app, ["build", "--force", "app1"])

        assert result.exit_code == 0
        assert cli_workspace.backend.built == ["base", "app1", "app1"]
        assert "forced" in result.stdout

    def test_failure_exit_code(self, cli_workspace):
        cli_workspace.backend.fail.add("base")
        result = runner.invoke(app, ["build"])

        assert result.exit_code == 1
        assert "1 failed, 1 blocked" in result.stdout
        assert "failed to solve" in result.stdout

    def test_unknown_target(self, cli_workspace):
        result = runner.invoke(app, ["build", "nope"])
        assert result.exit_code == 1
        assert "Configuration error" in result.stdout

    def test_missing_declaration_file(self, cli_workspace):
        (cli_workspace.root / "packages.yaml").unlink()
        result = runner.invoke(app, ["build"])
        assert result.exit_code == 1
        assert "Configuration error" in result.stdout


class TestStatusCommand:
    """Tests for the status command."""

    def test_status_json(self, cli_workspace):
        runner.invoke(app, ["build"])
        cli_workspace.edit("images/app1/main.txt", "app1 v2\n")

        result = runner.invoke(app, ["status", "--json"])

        assert result.exit_code == 0
        rows = {r["package"]: r for r in json.loads(result.stdout)}
        assert rows["base"]["built"] is True
        assert rows["base"]["stale"] is False
        assert rows["app1"]["stale"] is True
        assert "source changed: images/app1/main.txt" in rows["app1"]["reasons"]
        assert rows["app2"]["built"] is False
        assert rows["app2"]["reasons"] == ["no artifact"]

    def test_status_table(self, cli_workspace):
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "Packages" in result.stdout


class TestHistoryCommand:
    """Tests for the history command."""

    def test_empty(self, cli_workspace):
        result = runner.invoke(app, ["history"])
        assert result.exit_code == 0
        assert "No builds recorded" in result.stdout

    def test_records_runs(self, cli_workspace):
        runner.invoke(app, ["build"])
        runner.invoke(app, ["build"])

        result = runner.invoke(app, ["history", "--json", "--package", "app1"])

        assert result.exit_code == 0
        records = json.loads(result.stdout)
        assert [r["status"] for r in records] == ["fresh", "built"]

    def test_no_history_flag(self, cli_workspace):
        runner.invoke(app, ["build", "--no-history"])
        result = runner.invoke(app, ["history", "--json"])
        assert json.loads(result.stdout) == []

    def test_last_shows_most_recent_run(self, cli_workspace):
        runner.invoke(app, ["build"])
        runner.invoke(app, ["build"])

        result = runner.invoke(app, ["history", "--last", "--json"])

        assert result.exit_code == 0
        records = json.loads(result.stdout)
        assert [(r["package"], r["status"]) for r in records] == [
            ("base", "fresh"),
            ("app1", "fresh"),
        ]
        assert len({r["run_id"] for r in records}) == 1

    def test_last_without_runs(self, cli_workspace):
        result = runner.invoke(app, ["history", "--last"])
        assert result.exit_code == 0
        assert "No builds recorded" in result.stdout

    def test_failed_record_shows_error(self, cli_workspace):
        cli_workspace.backend.fail.add("base")
        runner.invoke(app, ["build"])

        result = runner.invoke(app, ["history"])

        assert result.exit_code == 0
        assert "Build failed with exit code 1" in result.stdout
        assert "blocked" in result.stdout


class TestLoadCommand:
    """Tests for the load command."""

    def test_load_builds_then_loads(self, cli_workspace):
        with patch("subprocess.Popen", side_effect=_fake_popen) as mock_popen:
            result = runner.invoke(app, ["load", "app1"])

        assert result.exit_code == 0
        assert "Loaded local/app1" in result.stdout
        assert cli_workspace.backend.built == ["base", "app1"]
        assert mock_popen.call_args[0][0] == ["docker", "load"]

        with patch("subprocess.Popen", side_effect=_fake_popen) as mock_popen:
            result = runner.invoke(app, ["load", "app1"])
        assert "already loaded" in result.stdout
        mock_popen.assert_not_called()


class TestShellCommand:
    """Tests for the shell command."""

    def test_runs_command_in_dev_image(self, cli_workspace):
        with (
            patch("subprocess.Popen", side_effect=_fake_popen),
            patch("subprocess.run") as mock_run,
        ):
            mock_run.return_value = MagicMock(returncode=0)
            result = runner.invoke(
                app, ["shell", "--package", "app2", "--command", "cargo test"]
            )

        assert result.exit_code == 0
        cmd = mock_run.call_args[0][0]
        assert "local/app2" in cmd
        assert cmd[-1] == "set -eu; cargo test"

    def test_exit_code_propagates(self, cli_workspace):
        with (
            patch("subprocess.Popen", side_effect=_fake_popen),
            patch("subprocess.run") as mock_run,
        ):
            mock_run.return_value = MagicMock(returncode=101)
            result = runner.invoke(app, ["shell", "--package", "app1", "-c", "false"])

        assert result.exit_code == 101

    def test_missing_dev_package(self, cli_workspace):
        """The default dev package must be declared."""
        result = runner.invoke(app, ["shell"])
        assert result.exit_code == 1
        assert "Configuration error" in result.stdout

"""Integration tests for CLI commands."""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from bundle_pruner import __version__
from bundle_pruner.cli import app
from bundle_pruner.config_manager import load_optimizer_config
from bundle_pruner.run_store import RunStore
from bundle_pruner.stubs import is_stub

runner = CliRunner()


@pytest.fixture
def scripted_oracle(monkeypatch, oracle_factory):
    """Route the default command oracle to a scripted one."""
    oracles = []

    def make(**kwargs):
        oracle = oracle_factory(**getattr(make, "options", {}))
        oracles.append(oracle)
        return oracle

    monkeypatch.setattr("bundle_pruner.orchestrator.CommandOracle", make)
    make.created = oracles
    return make


class TestVersion:
    """Tests for the --version flag."""

    def test_version(self):
        """Test printing the version."""
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert f"Bundle Pruner v{__version__}" in result.stdout


class TestAnalyzeCommand:
    """Tests for 'bprune analyze'."""

    def test_analyze_table(self, sample_frontend_path: Path):
        """Test the usage table and summary."""
        result = runner.invoke(app, ["analyze", str(sample_frontend_path)])

        assert result.exit_code == 0
        assert "Eligible for removal: 2" in result.stdout

    def test_analyze_json(self, sample_frontend_path: Path):
        """Test the JSON usage graph."""
        result = runner.invoke(app, ["analyze", str(sample_frontend_path), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        statuses = {u["name"]: u["status"] for u in data["units"] if u["kind"] == "component"}
        assert statuses["LegacyChart"] == "unreferenced"
        assert statuses["Sidebar"] == "import-only"
        assert statuses["Footer"] == "rendered"

    def test_analyze_unknown_status(self, sample_frontend_path: Path):
        """Test that an unknown --status value is rejected."""
        result = runner.invoke(app, ["analyze", str(sample_frontend_path), "--status", "gone"])

        assert result.exit_code != 0

    def test_analyze_malformed_manifest(self, frontend_project: Path):
        """Test that a broken package.json is a fatal configuration error."""
        (frontend_project / "package.json").write_text("[")

        result = runner.invoke(app, ["analyze", str(frontend_project)])

        assert result.exit_code == 2

    def test_analyze_nonexistent_path(self):
        """Test analyzing a missing directory."""
        result = runner.invoke(app, ["analyze", "/nonexistent/path"])

        assert result.exit_code != 0


class TestOptimizeCommand:
    """Tests for 'bprune optimize'."""

    def test_optimize_success(self, frontend_project: Path, scripted_oracle):
        """Test a successful smart run."""
        result = runner.invoke(app, ["optimize", str(frontend_project)])

        assert result.exit_code == 0
        assert "Components removed: 2" in result.stdout
        assert is_stub((frontend_project / "client/src/components/LegacyChart.tsx").read_text())
        assert len(RunStore.list_runs(frontend_project)) == 1

    def test_optimize_protect_option(self, frontend_project: Path, scripted_oracle):
        """Test protecting a unit from the command line."""
        result = runner.invoke(app, ["optimize", str(frontend_project), "--protect", "Sidebar"])

        assert result.exit_code == 0
        assert "Components removed: 1" in result.stdout
        assert not is_stub((frontend_project / "client/src/components/Sidebar.tsx").read_text())

    def test_optimize_failure_exit_code(self, frontend_project: Path, scripted_oracle):
        """Test that a failed run exits with status 1."""
        scripted_oracle.options = {"build_fails": True}

        result = runner.invoke(app, ["optimize", str(frontend_project)])

        assert result.exit_code == 1

    def test_optimize_invalid_mode(self, frontend_project: Path, scripted_oracle):
        """Test that an unknown mode is fatal before anything runs."""
        result = runner.invoke(app, ["optimize", str(frontend_project), "--mode", "reckless"])

        assert result.exit_code == 2
        assert scripted_oracle.created == []


class TestRunCommands:
    """Tests for 'bprune runs', 'report' and 'restore'."""

    def test_runs_empty(self, frontend_project: Path):
        """Test listing when nothing ran yet."""
        result = runner.invoke(app, ["runs", str(frontend_project)])

        assert result.exit_code == 0
        assert "No runs recorded" in result.stdout

    def test_runs_report_and_restore(self, frontend_project: Path, scripted_oracle):
        """Test listing a run, re-rendering its report and restoring its originals."""
        legacy = frontend_project / "client/src/components/LegacyChart.tsx"
        original = legacy.read_text()
        runner.invoke(app, ["optimize", str(frontend_project)])
        run_id = RunStore.list_runs(frontend_project)[0]

        listed = runner.invoke(app, ["runs", str(frontend_project)])
        assert listed.exit_code == 0
        assert run_id in listed.stdout
        assert "stubbed=2" in listed.stdout

        report = runner.invoke(app, ["report", str(frontend_project), "--markdown"])
        assert report.exit_code == 0
        assert f"# Bundle optimisation report {run_id}" in report.stdout
        assert "| eliminate | success |" in report.stdout
        assert "`date-fns`" in report.stdout

        restored = runner.invoke(app, ["restore", str(frontend_project), run_id])
        assert restored.exit_code == 0
        assert "Restored 2 unit(s)" in restored.stdout
        assert legacy.read_text() == original

    def test_report_unknown_run(self, frontend_project: Path):
        """Test asking for a run that does not exist."""
        result = runner.invoke(app, ["report", str(frontend_project), "--run", "nope"])

        assert result.exit_code != 0


class TestConfigCommands:
    """Tests for 'bprune config'."""

    def test_set_and_show(self):
        """Test saving a setting and showing it."""
        result = runner.invoke(app, ["config", "set", "max_iterations", "5"])

        assert result.exit_code == 0
        assert "Set max_iterations = 5" in result.stdout
        assert load_optimizer_config() == {"max_iterations": 5}

        shown = runner.invoke(app, ["config", "show"])
        assert shown.exit_code == 0
        assert "max_iterations" in shown.stdout

    def test_set_invalid_value(self):
        """Test that invalid values never reach the config file."""
        result = runner.invoke(app, ["config", "set", "mode", "reckless"])

        assert result.exit_code != 0
        assert load_optimizer_config() == {}

    def test_set_unknown_key(self):
        """Test rejecting unknown settings."""
        result = runner.invoke(app, ["config", "set", "colour", "blue"])

        assert result.exit_code != 0

    def test_reset(self):
        """Test clearing saved settings."""
        runner.invoke(app, ["config", "set", "mode", "aggressive"])

        result = runner.invoke(app, ["config", "reset"])

        assert result.exit_code == 0
        assert load_optimizer_config() == {}

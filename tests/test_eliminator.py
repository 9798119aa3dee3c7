"""Tests for unit selection, elimination and nuclear mode."""

from pathlib import Path

import pytest

from bundle_pruner.backup import BackupStore
from bundle_pruner.classifier import RegexUsageClassifier
from bundle_pruner.eliminator import EliminationEngine
from bundle_pruner.manifest import load_manifest
from bundle_pruner.mutations import UnitSwapper
from bundle_pruner.probe import MetricsProbe
from bundle_pruner.results import EliminationSet, NuclearDegraded, NuclearFatal, NuclearSuccess
from bundle_pruner.source_tree import SourceTree
from bundle_pruner.stubs import is_stub


def _setup(root: Path, oracle, protected=()):
    tree = SourceTree(root)
    graph = RegexUsageClassifier(manifest=load_manifest(root)).classify(tree)
    swapper = UnitSwapper(tree, BackupStore())
    swapper.register(graph.components())
    probe = MetricsProbe(oracle)
    engine = EliminationEngine(root, swapper, probe, protected=protected)
    return engine, graph, swapper, probe


class TestSelect:
    """Tests for EliminationEngine.select."""

    @pytest.mark.parametrize(
        "mode,expected",
        [
            ("safe", ("LegacyChart",)),
            ("smart", ("LegacyChart", "Sidebar")),
            ("aggressive", ("LegacyChart", "Sidebar", "Header", "badge")),
            ("nuclear", ("LegacyChart", "Sidebar", "Header", "badge", "Footer", "card")),
        ],
    )
    def test_modes(self, frontend_project: Path, oracle_factory, mode, expected):
        """Test each mode's selection and its usage-count order."""
        engine, graph, _, _ = _setup(frontend_project, oracle_factory())

        selection = engine.select(graph, mode)

        assert selection.identities == expected
        assert selection.mode == mode

    def test_protected_by_name(self, frontend_project: Path, oracle_factory):
        """Test that protected identities are never selected."""
        engine, graph, _, _ = _setup(frontend_project, oracle_factory(), protected={"LegacyChart"})
        assert engine.select(graph, "smart").identities == ("Sidebar",)

    def test_protected_by_exported_symbol(self, frontend_project: Path, oracle_factory):
        """Test that protecting an exported name protects its unit."""
        engine, graph, _, _ = _setup(frontend_project, oracle_factory(), protected={"SIDEBAR_WIDTH"})
        assert engine.select(graph, "smart").identities == ("LegacyChart",)

    def test_ties_follow_declaration_order(self, component_project, oracle_factory):
        """Test that units with equal usage keep declaration order."""
        root = component_project(["Zeta", "Alpha", "Mid"])
        engine, graph, _, _ = _setup(root, oracle_factory())

        assert engine.select(graph, "smart").identities == ("Alpha", "Mid", "Zeta")

    def test_unknown_mode(self, frontend_project: Path, oracle_factory):
        """Test that an unknown mode is rejected."""
        engine, graph, _, _ = _setup(frontend_project, oracle_factory())
        with pytest.raises(ValueError):
            engine.select(graph, "reckless")


class TestEliminate:
    """Tests for EliminationEngine.eliminate and rollback."""

    def test_eliminate_passing(self, frontend_project: Path, oracle_factory):
        """Test stubbing the smart selection on a tree that still validates."""
        engine, graph, swapper, probe = _setup(frontend_project, oracle_factory())

        report = engine.eliminate(engine.select(graph, "smart"))

        assert report.success
        assert report.removed == ["LegacyChart", "Sidebar"]
        assert probe.probe_count == 1
        assert is_stub((frontend_project / "client/src/components/Sidebar.tsx").read_text())

    def test_eliminate_failing_then_rollback(self, frontend_project: Path, oracle_factory):
        """Test a failing probe is reported and rollback restores the originals."""
        original = (frontend_project / "client/src/components/Sidebar.tsx").read_text()
        engine, graph, swapper, _ = _setup(frontend_project, oracle_factory(required={"Sidebar"}))

        report = engine.eliminate(engine.select(graph, "smart"))

        assert not report.success
        assert report.errors == ["/: Sidebar is not defined"]
        assert engine.rollback(report.removed) == []
        assert (frontend_project / "client/src/components/Sidebar.tsx").read_text() == original
        assert swapper.stubbed == []

    def test_empty_selection(self, frontend_project: Path, oracle_factory):
        """Test eliminating nothing still yields a verdict for the current tree."""
        engine, _, _, _ = _setup(frontend_project, oracle_factory())

        report = engine.eliminate(EliminationSet(identities=(), mode="smart"))

        assert report.removed == []
        assert report.success


class TestNuclear:
    """Tests for zero-state reconstruction."""

    def test_sample_project(self, frontend_project: Path, oracle_factory):
        """Test that rendered units come back and the rest stay removed."""
        engine, graph, swapper, probe = _setup(frontend_project, oracle_factory())

        outcome = engine.run_nuclear(graph)

        assert isinstance(outcome, NuclearSuccess)
        assert outcome.removed == ("LegacyChart", "Sidebar")
        assert outcome.restored == ("Header", "badge", "Footer", "card")
        assert sorted(swapper.stubbed) == ["LegacyChart", "Sidebar"]
        assert probe.probe_count == 2

    def test_fifty_unused_units(self, component_project, oracle_factory):
        """Test fifty unused units are removed with exactly two probes."""
        names = [f"Widget{i:02d}" for i in range(50)]
        root = component_project(names)
        engine, graph, _, probe = _setup(root, oracle_factory())

        outcome = engine.run_nuclear(graph)

        assert isinstance(outcome, NuclearSuccess)
        assert outcome.removed == tuple(names)
        assert outcome.restored == ()
        assert probe.probe_count == 2

    def test_zero_state_build_failure_is_degraded(self, component_project, oracle_factory):
        """Test that a failing zero-state build leaves the tree stubbed."""
        root = component_project(["Shell", "Panel"])
        oracle = oracle_factory(build_required={"Shell"})
        engine, graph, swapper, probe = _setup(root, oracle)

        outcome = engine.run_nuclear(graph)

        assert isinstance(outcome, NuclearDegraded)
        assert outcome.reason == "zero-state build failed"
        assert sorted(outcome.removed) == ["Panel", "Shell"]
        assert sorted(swapper.stubbed) == ["Panel", "Shell"]
        assert oracle.calls == ["build"]

    def test_stub_failure_is_fatal_and_rolled_back(self, component_project, oracle_factory, monkeypatch):
        """Test that a stubbing error restores everything already stubbed."""
        root = component_project(["Alpha", "Beta", "Gamma"])
        engine, graph, swapper, probe = _setup(root, oracle_factory())
        real_stub = swapper.stub

        def stub(identity):
            if identity == "Gamma":
                raise OSError("read-only file system")
            real_stub(identity)

        monkeypatch.setattr(swapper, "stub", stub)
        outcome = engine.run_nuclear(graph)

        assert isinstance(outcome, NuclearFatal)
        assert "read-only file system" in outcome.reason
        assert swapper.stubbed == []
        assert probe.probe_count == 0
        for name in ("Alpha", "Beta", "Gamma"):
            assert not is_stub((root / "src" / "components" / f"{name}.tsx").read_text())

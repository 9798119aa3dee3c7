"""Tests for binary-search recovery."""

import math
import threading
from pathlib import Path

import pytest

from bundle_pruner.backup import BackupStore
from bundle_pruner.classifier import RegexUsageClassifier
from bundle_pruner.errors import RestoreError
from bundle_pruner.mutations import UnitSwapper
from bundle_pruner.probe import MetricsProbe
from bundle_pruner.recovery import RecoveryEngine
from bundle_pruner.source_tree import SourceTree
from bundle_pruner.stubs import is_stub

LETTERS = list("ABCDEFGHIJ")


def _engine(root: Path, oracle, **kwargs):
    tree = SourceTree(root)
    swapper = UnitSwapper(tree, BackupStore())
    swapper.register(RegexUsageClassifier().classify(tree).components())
    probe = MetricsProbe(oracle)
    return RecoveryEngine(root, swapper, probe, **kwargs), swapper, probe


def _stubbed_on_disk(root: Path, names):
    return [n for n in names if is_stub((root / "src" / "components" / f"{n}.tsx").read_text())]


class TestRecover:
    """Tests for RecoveryEngine.recover."""

    def test_finds_required_units(self, component_project, oracle_factory):
        """Test that ten eliminated units with two required ones restore exactly those two."""
        root = component_project(LETTERS)
        engine, swapper, probe = _engine(root, oracle_factory(required={"C", "H"}))

        result = engine.recover(LETTERS)

        assert result.success
        assert result.converged
        assert result.restored == ["C", "H"]
        assert result.unresolved == []
        assert result.outer_iterations == 2
        assert sorted(swapper.stubbed) == ["A", "B", "D", "E", "F", "G", "I", "J"]
        assert _stubbed_on_disk(root, LETTERS) == ["A", "B", "D", "E", "F", "G", "I", "J"]

    def test_each_step_is_probed_before_the_next(self, component_project, oracle_factory, monkeypatch):
        """Test that only one logged step's mutations happen between two probes."""
        root = component_project(LETTERS)
        engine, swapper, probe = _engine(root, oracle_factory(required={"C", "H"}))
        for name in LETTERS:
            swapper.stub(name)

        events = []

        def recording(kind, func):
            def wrapper(*args, **kwargs):
                events.append((kind, args[0] if kind != "probe" else None))
                return func(*args, **kwargs)
            return wrapper

        monkeypatch.setattr(swapper, "stub", recording("stub", swapper.stub))
        monkeypatch.setattr(swapper, "restore", recording("restore", swapper.restore))
        monkeypatch.setattr(probe, "check", recording("probe", probe.check))

        result = engine.recover(LETTERS)

        groups, current = [], []
        for kind, unit in events:
            if kind == "probe":
                groups.append(current)
                current = []
            else:
                current.append((kind, unit))
        assert current == []
        assert len(groups) == len(result.steps) == 11

        previous = None
        for step, group in zip(result.steps, groups):
            if previous is not None and previous.action == "remove" and not previous.success:
                # Undo of the removal the last probe rejected
                assert group[0] == ("restore", previous.units[0])
                group = group[1:]
            expected = {"restore": "restore", "remove": "stub"}.get(step.action)
            if expected is None:
                assert group == []
            else:
                assert group
                assert all(kind == expected and unit in step.units for kind, unit in group)
            previous = step

    def test_step_log(self, component_project, oracle_factory):
        """Test the logged sequence of restores, removals and the final replay."""
        root = component_project(LETTERS)
        engine, _, probe = _engine(root, oracle_factory(required={"C", "H"}))

        result = engine.recover(LETTERS)

        summary = [(s.iteration, s.action, s.units, s.success) for s in result.steps]
        assert summary[:2] == [
            (1, "restore", ("A", "B", "C", "D", "E"), False),
            (2, "restore", ("F", "G", "H"), True),
        ]
        removals = [(s.units[0], s.success) for s in result.steps if s.action == "remove"]
        assert removals == [
            ("A", True), ("B", True), ("C", False), ("D", True),
            ("E", True), ("F", True), ("G", True), ("H", False),
        ]
        assert summary[-1] == (2, "test", ("C", "H"), True)
        assert result.probe_count == probe.probe_count == 11

    def test_deterministic(self, temp_dir: Path, oracle_factory):
        """Test that identical inputs give identical step logs."""
        logs = []
        for run in ("first", "second"):
            root = temp_dir / run
            components = root / "src" / "components"
            components.mkdir(parents=True)
            for name in LETTERS:
                (components / f"{name}.tsx").write_text(f"export default function {name}() {{}}\n")
            engine, _, _ = _engine(root, oracle_factory(required={"B", "G", "J"}))
            logs.append([s.to_dict() for s in engine.recover(LETTERS).steps])

        assert logs[0] == logs[1]

    @pytest.mark.parametrize("required", [{"A"}, {"J"}, {"E", "F"}, set(LETTERS), set()])
    def test_outer_probes_are_bounded(self, component_project, oracle_factory, required):
        """Test the number of outer probes stays logarithmic in the input size."""
        root = component_project(LETTERS)
        engine, _, _ = _engine(root, oracle_factory(required=required))

        result = engine.recover(LETTERS)

        outer = [s for s in result.steps if s.outer]
        assert len(outer) <= math.ceil(math.log2(len(LETTERS))) + 1
        assert result.success
        assert sorted(result.restored) == sorted(required)

    def test_result_is_locally_minimal(self, component_project, oracle_factory):
        """Test that removing any single restored unit breaks the probe."""
        root = component_project(LETTERS)
        oracle = oracle_factory(required={"B", "I"})
        engine, swapper, probe = _engine(root, oracle)

        result = engine.recover(LETTERS)

        for identity in result.restored:
            swapper.stub(identity)
            assert not probe.check(root).success
            swapper.restore(identity)
        assert probe.check(root).success

    def test_iteration_bound(self, component_project, oracle_factory):
        """Test that hitting the bound keeps unexamined units and reports them."""
        root = component_project(LETTERS)
        engine, swapper, _ = _engine(root, oracle_factory(required={"C", "H"}), max_iterations=1)

        result = engine.recover(LETTERS)

        assert not result.converged
        assert result.outer_iterations == 1
        assert result.restored == []
        assert result.unresolved == LETTERS
        assert result.success
        assert result.errors == ["recovery did not converge; 10 unit(s) unresolved"]
        assert swapper.stubbed == []

    def test_restore_errors_drop_units(self, component_project, oracle_factory, monkeypatch):
        """Test that a unit whose backup cannot be written is dropped and the search goes on."""
        root = component_project(LETTERS)
        engine, swapper, _ = _engine(root, oracle_factory(required={"C", "H"}))
        real_restore = swapper.restore

        def restore(identity):
            if identity == "B":
                raise RestoreError("B", "disk full")
            real_restore(identity)

        monkeypatch.setattr(swapper, "restore", restore)
        result = engine.recover(LETTERS)

        assert result.success
        assert result.dropped == ["B"]
        assert result.restored == ["C", "H"]
        assert any("disk full" in e for e in result.errors)
        assert result.steps[0].action == "restore"
        assert not result.steps[0].success

    def test_cancellation(self, component_project, oracle_factory):
        """Test that a cancelled run restores everything it did not examine and fails."""
        root = component_project(LETTERS)
        cancel = threading.Event()
        cancel.set()
        engine, swapper, probe = _engine(root, oracle_factory(required={"C"}), cancel=cancel)

        result = engine.recover(LETTERS)

        assert result.cancelled
        assert not result.success
        assert not result.converged
        assert result.unresolved == LETTERS
        assert probe.probe_count == 0
        assert swapper.stubbed == []

    def test_empty_input(self, component_project, oracle_factory):
        """Test that nothing to recover is an immediate success."""
        root = component_project(LETTERS)
        engine, _, probe = _engine(root, oracle_factory())

        result = engine.recover([])

        assert result.success
        assert result.steps == []
        assert probe.probe_count == 0

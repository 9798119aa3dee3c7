"""Pytest configuration and fixtures for Bundle Pruner tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Callable, Dict, Generator, Iterable, List, Optional

import pytest

from bundle_pruner.probe import Oracle
from bundle_pruner.results import BuildResult, ValidationResult
from bundle_pruner.source_tree import is_source_file
from bundle_pruner.stubs import is_stub


class ScriptedOracle(Oracle):
    """In-memory stand-in for ``npm run build`` and the dev server.

    A unit counts as live when its source file exists and is not a stub.
    The build passes when every ``build_required`` unit is live; validation
    passes when every ``required`` unit is live.
    """

    def __init__(
        self,
        required: Iterable[str] = (),
        build_required: Iterable[str] = (),
        build_fails: bool = False,
        fail_validate_after: Optional[int] = None,
    ):
        self.required = set(required)
        self.build_required = set(build_required)
        self.build_fails = build_fails
        self.fail_validate_after = fail_validate_after
        self.calls: List[str] = []

    @staticmethod
    def _unit_files(root: Path) -> Dict[str, Path]:
        files = {}
        for path in root.rglob("*"):
            rel = path.relative_to(root)
            if ".bundle-pruner" in rel.parts or "node_modules" in rel.parts:
                continue
            if path.is_file() and is_source_file(rel.as_posix()):
                files.setdefault(path.name.split(".", 1)[0], path)
        return files

    def is_live(self, root: Path, identity: str) -> bool:
        path = self._unit_files(root).get(identity)
        return path is not None and not is_stub(path.read_text(encoding="utf-8"))

    def live_count(self, root: Path) -> int:
        return sum(
            1 for p in self._unit_files(root).values()
            if "components" in p.parts and not is_stub(p.read_text(encoding="utf-8"))
        )

    def build(self, root: Path) -> BuildResult:
        self.calls.append("build")
        missing = sorted(u for u in self.build_required if not self.is_live(root, u))
        if self.build_fails or missing:
            return BuildResult(success=False, errors=[f"Cannot resolve {m}" for m in missing] or ["build failed"])
        return BuildResult(
            success=True,
            artifact_sizes={"assets/index.js": 10240 + 2048 * self.live_count(root), "index.html": 512},
        )

    def validate(self, root: Path) -> ValidationResult:
        self.calls.append("validate")
        validations = self.calls.count("validate")
        if self.fail_validate_after is not None and validations > self.fail_validate_after:
            return ValidationResult(success=False, errors=["/: blank page"])
        missing = sorted(u for u in self.required if not self.is_live(root, u))
        if missing:
            return ValidationResult(success=False, errors=[f"/: {m} is not defined" for m in missing])
        return ValidationResult(success=True)


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path_factory, monkeypatch):
    """Keep tests away from the user's ~/.bundle_pruner/config.toml."""
    config_file = tmp_path_factory.mktemp("bp_home") / "config.toml"
    monkeypatch.setattr("bundle_pruner.config.CONFIG_FILE", config_file)
    monkeypatch.setattr("bundle_pruner.config_manager.CONFIG_FILE", config_file)
    return config_file


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def sample_frontend_path() -> Path:
    """Get path to the sample front-end project."""
    return Path(__file__).parent / "fixtures" / "sample_frontend"


@pytest.fixture
def frontend_project(temp_dir: Path, sample_frontend_path: Path) -> Path:
    """A writable copy of the sample front-end project."""
    target = temp_dir / "app"
    shutil.copytree(sample_frontend_path, target)
    return target


@pytest.fixture
def oracle_factory() -> Callable[..., ScriptedOracle]:
    """Build scripted oracles: ``oracle_factory(required={"Sidebar"})``."""
    return ScriptedOracle


@pytest.fixture
def component_project(temp_dir: Path) -> Callable[[Iterable[str]], Path]:
    """Create a project with one trivial component file per name."""
    def make(names: Iterable[str]) -> Path:
        root = temp_dir / "generated"
        components = root / "src" / "components"
        components.mkdir(parents=True, exist_ok=True)
        for name in names:
            (components / f"{name}.tsx").write_text(
                f"export default function {name}() {{\n  return <div>{name}</div>;\n}}\n",
                encoding="utf-8",
            )
        (root / "src" / "App.tsx").write_text(
            "export default function App() {\n  return <main />;\n}\n", encoding="utf-8"
        )
        return root
    return make

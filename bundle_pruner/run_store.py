"""Per-run persisted state under ``<project>/.bundle-pruner/runs/<run_id>/``."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import PHASES, RUNS_DIR_NAME
from .models import UsageGraph
from .results import PhaseResult, RecoveryStep

logger = logging.getLogger(__name__)

RUN_FILE = "run.json"
GRAPH_FILE = "baseline-graph.json"
STEPS_FILE = "recovery-steps.json"
REPORT_JSON = "report.json"
REPORT_MD = "report.md"
BACKUP_DIR = "backup"


def runs_dir(project_root: Path) -> Path:
    return Path(project_root) / RUNS_DIR_NAME / "runs"


def new_run_id() -> str:
    return f"{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"


class RunStore:
    """Reads and writes the records of one optimisation run.

    Phase results are written once; rewriting an existing record is an
    error so the persisted sequence always reflects what actually ran.
    """

    def __init__(self, project_root: Path, run_id: Optional[str] = None):
        self.project_root = Path(project_root)
        self.run_id = run_id or new_run_id()
        self.path = runs_dir(self.project_root) / self.run_id

    @property
    def backup_dir(self) -> Path:
        return self.path / BACKUP_DIR

    def exists(self) -> bool:
        return (self.path / RUN_FILE).exists()

    def _write_json(self, name: str, data: Any) -> Path:
        self.path.mkdir(parents=True, exist_ok=True)
        target = self.path / name
        target.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return target

    def _read_json(self, name: str) -> Any:
        return json.loads((self.path / name).read_text(encoding="utf-8"))

    # ------------------------------------------------------------------
    # Run metadata
    # ------------------------------------------------------------------

    def start(self, config: Dict[str, Any]) -> None:
        self._write_json(RUN_FILE, {
            "run_id": self.run_id,
            "project": str(self.project_root.resolve()),
            "started_at": datetime.now().isoformat(),
            "config": config,
            "stubbed": [],
        })

    def metadata(self) -> Dict[str, Any]:
        if not self.exists():
            return {}
        return self._read_json(RUN_FILE)

    def update_metadata(self, **values: Any) -> None:
        data = self.metadata()
        data.update(values)
        self._write_json(RUN_FILE, data)

    # ------------------------------------------------------------------
    # Phase results
    # ------------------------------------------------------------------

    def phase_file(self, phase: str) -> Path:
        return self.path / f"{phase}-result.json"

    def save_phase_result(self, result: PhaseResult) -> Path:
        target = self.phase_file(result.phase)
        if target.exists():
            raise FileExistsError(f"Phase result already recorded: {target}")
        logger.debug("Persisting %s", target)
        return self._write_json(target.name, result.to_dict())

    def load_phase_result(self, phase: str) -> Optional[PhaseResult]:
        target = self.phase_file(phase)
        if not target.exists():
            return None
        return PhaseResult.from_dict(self._read_json(target.name))

    def load_phase_results(self) -> List[PhaseResult]:
        """Persisted results in state-machine order, then ``done``."""
        results = []
        for phase in list(PHASES) + ["done"]:
            result = self.load_phase_result(phase)
            if result is not None:
                results.append(result)
        return results

    # ------------------------------------------------------------------
    # Graph, recovery log and report
    # ------------------------------------------------------------------

    def save_graph(self, graph: UsageGraph) -> Path:
        return self._write_json(GRAPH_FILE, graph.to_dict())

    def load_graph(self) -> Optional[UsageGraph]:
        if not (self.path / GRAPH_FILE).exists():
            return None
        return UsageGraph.from_dict(self._read_json(GRAPH_FILE))

    def save_steps(self, steps: List[RecoveryStep]) -> Path:
        return self._write_json(STEPS_FILE, [s.to_dict() for s in steps])

    def load_steps(self) -> List[Dict[str, Any]]:
        if not (self.path / STEPS_FILE).exists():
            return []
        return self._read_json(STEPS_FILE)

    def save_report(self, report: Dict[str, Any], markdown: str) -> Path:
        self._write_json(REPORT_JSON, report)
        (self.path / REPORT_MD).write_text(markdown, encoding="utf-8")
        return self.path / REPORT_MD

    def load_report(self) -> Optional[Dict[str, Any]]:
        if not (self.path / REPORT_JSON).exists():
            return None
        return self._read_json(REPORT_JSON)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    @staticmethod
    def list_runs(project_root: Path) -> List[str]:
        base = runs_dir(project_root)
        if not base.exists():
            return []
        return sorted(p.name for p in base.iterdir() if (p / RUN_FILE).exists())

    @classmethod
    def latest(cls, project_root: Path) -> Optional["RunStore"]:
        runs = cls.list_runs(project_root)
        if not runs:
            return None
        return cls(project_root, runs[-1])

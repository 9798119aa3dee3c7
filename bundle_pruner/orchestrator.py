"""Phase state machine: baseline -> eliminate -> refine -> recover -> done."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .backup import BackupStore
from .classifier import RegexUsageClassifier, UsageClassifier
from .config import PHASES
from .config_manager import OptimizerConfig, load_protected
from .eliminator import EliminationEngine
from .manifest import Manifest, ManifestEditor, load_manifest
from .models import UsageGraph
from .mutations import UnitSwapper
from .probe import CommandOracle, MetricsProbe, Oracle, metrics_from
from .recovery import RecoveryEngine
from .report import build_report, render_markdown
from .results import (
    BundleMetrics,
    EliminationReport,
    NuclearDegraded,
    NuclearFatal,
    NuclearSuccess,
    PhaseResult,
    ProbeOutcome,
    RecoveryResult,
)
from .run_store import RunStore
from .source_tree import SourceTree

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Mutable state of one run, owned by the orchestrator and handed to each phase."""
    root: Path
    config: OptimizerConfig
    protected: List[str]
    manifest: Manifest
    tree: SourceTree
    backup: BackupStore
    swapper: UnitSwapper
    probe: MetricsProbe
    store: RunStore
    classifier: UsageClassifier
    cancel: threading.Event
    graph: Optional[UsageGraph] = None
    baseline_graph: Optional[UsageGraph] = None
    eliminated: List[str] = field(default_factory=list)
    results: Dict[str, PhaseResult] = field(default_factory=dict)
    metrics: BundleMetrics = field(default_factory=BundleMetrics)
    recovery: Optional[RecoveryResult] = None
    tree_ok: bool = False

    @property
    def engine(self) -> EliminationEngine:
        return EliminationEngine(
            self.root, self.swapper, self.probe, self.protected, self.config.check_level
        )

    def live_component_count(self) -> int:
        graph = self.graph or self.baseline_graph
        if graph is None:
            return 0
        return sum(1 for u in graph.components() if not self.swapper.is_stubbed(u.name))


@dataclass
class RunSummary:
    run_id: str
    success: bool
    results: List[PhaseResult]
    report: Dict[str, Any]
    report_path: Optional[Path] = None


class PhaseOrchestrator:
    """Sequences the optimisation phases and persists their results."""

    def __init__(
        self,
        project_root: Path,
        config: Optional[OptimizerConfig] = None,
        oracle: Optional[Oracle] = None,
        classifier: Optional[UsageClassifier] = None,
        run_id: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.project_root = Path(project_root).resolve()
        self.config = config or OptimizerConfig()
        self.oracle = oracle
        self.classifier = classifier
        self.run_id = run_id
        self.cancel = cancel or threading.Event()
        self._handlers: Dict[str, Callable[[RunContext], PhaseResult]] = {
            "baseline": self._baseline,
            "eliminate": self._eliminate,
            "refine": self._refine,
            "recover": self._recover,
        }

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def prepare(self) -> RunContext:
        """Check configuration and build the run context without touching the tree.

        Raises:
            FatalConfigError: If the protected list or the manifest is unreadable.
        """
        protected = load_protected(self.config, self.project_root)
        manifest = load_manifest(self.project_root)

        store = RunStore(self.project_root, self.run_id)
        resuming = self.run_id is not None and store.exists()
        if resuming:
            backup = BackupStore.load(store.backup_dir)
        else:
            backup = BackupStore(store.backup_dir if self.config.preserve_backup else None)

        probe = MetricsProbe(self.oracle or self._default_oracle(), level=self.config.check_level)
        tree = SourceTree(self.project_root)
        classifier = self.classifier or RegexUsageClassifier(
            manifest=manifest,
            component_roots=self.config.component_roots,
            aliases=self.config.aliases,
            protected=protected,
            rarely_used_threshold=self.config.rarely_used_threshold,
            workers=self.config.workers,
        )
        ctx = RunContext(
            root=self.project_root,
            config=self.config,
            protected=protected,
            manifest=manifest,
            tree=tree,
            backup=backup,
            swapper=UnitSwapper(tree, backup, busy=lambda: probe.in_flight),
            probe=probe,
            store=store,
            classifier=classifier,
            cancel=self.cancel,
        )
        if resuming:
            self._reload(ctx)
        else:
            store.start(self.config.to_dict())
        return ctx

    def _default_oracle(self) -> Oracle:
        return CommandOracle(
            build_command=self.config.build_command,
            serve_command=self.config.serve_command,
            dist_dir=self.config.dist_dir,
            routes=self.config.routes,
            discover=self.config.discover_routes,
            timeout=self.config.validation_timeout,
            port=self.config.port,
        )

    def _reload(self, ctx: RunContext) -> None:
        """Rebuild in-memory state from a persisted run."""
        for result in ctx.store.load_phase_results():
            ctx.results[result.phase] = result
        ctx.baseline_graph = ctx.store.load_graph()
        ctx.graph = ctx.baseline_graph
        if ctx.graph is not None:
            ctx.swapper.register(ctx.graph.components())
        ctx.eliminated = list(ctx.store.metadata().get("stubbed", []))
        ctx.swapper.adopt(ctx.eliminated)
        last = [r for r in ctx.results.values() if r.status != "skipped"]
        ctx.tree_ok = bool(last) and (last[-1].success or last[-1].phase == "refine")
        logger.info("Resuming run %s with %d recorded phase(s)", ctx.store.run_id, len(ctx.results))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record(self, ctx: RunContext, result: PhaseResult) -> PhaseResult:
        ctx.results[result.phase] = result
        ctx.store.save_phase_result(result)
        ctx.store.update_metadata(stubbed=list(ctx.eliminated))
        logger.info("%s", result)
        return result

    def _result(self, ctx: RunContext, phase: str, success: bool, started: float, **values: Any) -> PhaseResult:
        status = values.pop("status", "success" if success else "failed")
        metrics = values.pop("metrics", ctx.metrics)
        return PhaseResult(
            phase=phase,
            success=success,
            status=status,
            size_kb=metrics.size_kb,
            chunk_count=metrics.chunk_count,
            dependency_count=metrics.dependency_count,
            component_count=metrics.component_count,
            started_at=datetime.fromtimestamp(started).isoformat(),
            duration_ms=int((time.time() - started) * 1000),
            **values,
        )

    def _measure(self, ctx: RunContext, outcome: Optional[ProbeOutcome]) -> BundleMetrics:
        if outcome is not None and outcome.success and outcome.build is not None:
            ctx.metrics = metrics_from(outcome, ctx.live_component_count(), len(ctx.manifest.dependencies))
        return ctx.metrics

    @staticmethod
    def _skipped(phase: str, reason: str) -> PhaseResult:
        return PhaseResult(
            phase=phase, success=False, status="skipped",
            warnings=(reason,), started_at=datetime.now().isoformat(),
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _baseline(self, ctx: RunContext) -> PhaseResult:
        started = time.time()
        graph = ctx.classifier.classify(ctx.tree)
        ctx.graph = ctx.baseline_graph = graph
        ctx.swapper.register(graph.components())
        ctx.store.save_graph(graph)

        level = "full" if ctx.config.validate_baseline else "build"
        outcome = ctx.probe.check(ctx.root, level)
        ctx.tree_ok = outcome.success
        metrics = self._measure(ctx, outcome)
        if not outcome.success:
            ctx.metrics = BundleMetrics(
                component_count=len(graph.components()),
                dependency_count=len(ctx.manifest.dependencies),
            )
            metrics = ctx.metrics
        return self._result(
            ctx, "baseline", outcome.success, started,
            metrics=metrics,
            errors=tuple(outcome.errors),
            warnings=tuple(graph.scan_errors),
            details={
                "status_counts": graph.status_counts(),
                "eligible": [u.name for u in graph.eligible()],
                "unresolved_imports": sum(len(v) for v in graph.unresolved.values()),
            },
        )

    def _eliminate(self, ctx: RunContext) -> PhaseResult:
        started = time.time()
        engine = ctx.engine
        mode = ctx.config.mode
        details: Dict[str, Any] = {"mode": mode}

        report: Optional[EliminationReport] = None
        if mode == "nuclear":
            nuclear = engine.run_nuclear(ctx.graph)
            if isinstance(nuclear, NuclearFatal):
                logger.warning("Nuclear mode unavailable (%s); falling back to smart elimination", nuclear.reason)
                details["fallback"] = "smart"
                details["nuclear_error"] = nuclear.reason
                report = engine.eliminate(engine.select(ctx.graph, "smart"))
            else:
                details["nuclear"] = "success" if isinstance(nuclear, NuclearSuccess) else "degraded"
                details["kept_rendered"] = list(nuclear.restored)
                if isinstance(nuclear, NuclearDegraded):
                    details["reason"] = nuclear.reason
                report = EliminationReport(
                    removed=list(nuclear.removed),
                    errors=list(nuclear.outcome.errors),
                    outcome=nuclear.outcome,
                )
        else:
            selection = engine.select(ctx.graph, mode)
            if not selection.identities:
                return self._result(ctx, "eliminate", True, started, details={**details, "selected": 0})
            report = engine.eliminate(selection)

        ctx.eliminated = list(report.removed)
        ctx.tree_ok = report.success
        return self._result(
            ctx, "eliminate", report.success, started,
            metrics=self._measure(ctx, report.outcome),
            removed=tuple(report.removed),
            errors=tuple(report.errors),
            details=details,
        )

    def _refine(self, ctx: RunContext) -> PhaseResult:
        started = time.time()
        graph = ctx.classifier.classify(ctx.tree)
        ctx.graph = graph
        ctx.swapper.register(graph.components())
        engine = ctx.engine
        mode = "smart" if ctx.config.mode == "nuclear" else ctx.config.mode
        selection = engine.select(graph, mode)

        removed: List[str] = []
        errors: List[str] = []
        success = True
        status = "success"
        if selection.identities:
            report = engine.eliminate(selection)
            if report.success:
                removed = list(report.removed)
                ctx.eliminated.extend(removed)
                self._measure(ctx, report.outcome)
            else:
                logger.warning("Refine pass broke the build; rolling back %d unit(s)", len(report.removed))
                engine.rollback(report.removed)
                errors = list(report.errors)
                success = False

        editor = ManifestEditor(ctx.manifest)
        droppable = editor.droppable(ctx.baseline_graph or graph, ctx.eliminated)
        return self._result(
            ctx, "refine", success, started,
            status=status if success else "failed",
            removed=tuple(removed),
            errors=tuple(errors),
            details={"selected": len(selection), "droppable_packages": droppable},
        )

    def _recover(self, ctx: RunContext) -> PhaseResult:
        started = time.time()
        eliminate = ctx.results.get("eliminate")
        if eliminate is not None and eliminate.success:
            return self._skipped("recover", "elimination passed; nothing to recover")
        if not ctx.eliminated:
            return self._skipped("recover", "no eliminated units")

        engine = RecoveryEngine(
            ctx.root, ctx.swapper, ctx.probe,
            max_iterations=ctx.config.max_iterations,
            check_level=ctx.config.check_level,
            cancel=ctx.cancel,
        )
        result = engine.recover(ctx.eliminated)
        ctx.recovery = result
        ctx.store.save_steps(result.steps)

        kept = set(result.restored) | set(result.unresolved)
        restored = tuple(result.restored) + tuple(result.unresolved)
        if result.success:
            ctx.eliminated = [i for i in ctx.eliminated if i not in kept]
            ctx.tree_ok = True
            status = "success" if result.converged else "partial"
            metrics = self._measure(ctx, ctx.probe.last_outcome)
        else:
            logger.warning("Recovery failed; restoring every eliminated unit")
            ctx.engine.rollback(ctx.swapper.stubbed)
            ctx.eliminated = []
            ctx.tree_ok = False
            status = "failed"
            metrics = ctx.metrics

        return self._result(
            ctx, "recover", result.success, started,
            status=status,
            metrics=metrics,
            restored=restored,
            errors=tuple(result.errors),
            details=result.summary(),
        )

    def _done(self, ctx: RunContext, cancelled: bool) -> PhaseResult:
        started = time.time()
        warnings: List[str] = []
        if cancelled:
            warnings.append("run cancelled")
        if ctx.eliminated and not ctx.tree_ok:
            warnings.append("tree failed validation; all eliminated units restored")
            ctx.engine.rollback(list(ctx.eliminated))
            ctx.eliminated = []

        baseline = ctx.results.get("baseline")
        success = bool(baseline and baseline.success) and ctx.tree_ok and not cancelled
        if ctx.eliminated and ctx.metrics.size_kb == 0:
            # Resumed runs carry no in-memory measurement of the final tree
            metrics = ctx.probe.measure(ctx.root, ctx.live_component_count(), len(ctx.manifest.dependencies))
        elif ctx.eliminated:
            metrics = ctx.metrics
        elif baseline is not None:
            metrics = BundleMetrics(
                size_kb=baseline.size_kb, chunk_count=baseline.chunk_count,
                dependency_count=baseline.dependency_count, component_count=baseline.component_count,
            )
        else:
            metrics = ctx.metrics

        graph = ctx.baseline_graph or ctx.graph
        droppable: List[str] = []
        if ctx.eliminated and graph is not None:
            droppable = ManifestEditor(ctx.manifest).droppable(graph, ctx.eliminated)

        if success and not ctx.config.preserve_backup:
            ctx.backup.discard()
        return self._result(
            ctx, "done", success, started,
            metrics=metrics,
            removed=tuple(ctx.eliminated),
            restored=tuple(ctx.recovery.restored) if ctx.recovery else (),
            warnings=tuple(warnings),
            details={"droppable_packages": droppable},
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def schedule(self) -> List[str]:
        """Configured phases in state-machine order."""
        return [p for p in PHASES if p in self.config.phases]

    def run(self) -> RunSummary:
        """Execute the run and return its report.

        Raises:
            FatalConfigError: Before any mutation, if configuration is unusable.
        """
        ctx = self.prepare()
        schedule = [] if "done" in ctx.results else self.schedule()
        cancelled = False
        logger.info("Run %s: phases %s, mode %s", ctx.store.run_id, schedule, self.config.mode)

        index = 0
        while index < len(schedule):
            phase = schedule[index]
            index += 1
            if ctx.cancel.is_set():
                cancelled = True
                break

            if phase in ctx.results:
                result = ctx.results[phase]
            else:
                reason = self._gate(ctx, phase)
                if reason:
                    result = self._record(ctx, self._skipped(phase, reason))
                else:
                    result = self._record(ctx, self._run_phase(ctx, phase))

            if phase == "eliminate" and not result.success and result.status != "skipped" \
                    and "recover" not in schedule:
                logger.info("Elimination failed; scheduling recovery")
                schedule.append("recover")

        if ctx.recovery is not None and ctx.recovery.cancelled:
            cancelled = True

        if "done" in ctx.results:
            done = ctx.results["done"]
        else:
            done = self._record(ctx, self._done(ctx, cancelled))
        results = [ctx.results[p] for p in list(PHASES) + ["done"] if p in ctx.results]
        report = build_report(results, run_id=ctx.store.run_id, config=self.config.to_dict())
        report_path = ctx.store.save_report(report, render_markdown(report))
        return RunSummary(
            run_id=ctx.store.run_id,
            success=done.success,
            results=results,
            report=report,
            report_path=report_path,
        )

    def _gate(self, ctx: RunContext, phase: str) -> Optional[str]:
        """Reason to skip *phase*, or None if it may run."""
        baseline = ctx.results.get("baseline")
        if phase != "baseline" and (baseline is None or not baseline.success):
            return "baseline did not pass"
        if phase == "refine":
            eliminate = ctx.results.get("eliminate")
            if eliminate is None or not eliminate.success:
                return "elimination did not pass"
        return None

    def _run_phase(self, ctx: RunContext, phase: str) -> PhaseResult:
        started = time.time()
        logger.info("Entering phase %s", phase)
        try:
            return self._handlers[phase](ctx)
        except Exception as exc:
            logger.exception("Phase %s crashed", phase)
            if phase in ("eliminate", "refine"):
                ctx.tree_ok = False
            return self._result(ctx, phase, False, started, errors=(f"{type(exc).__name__}: {exc}",))

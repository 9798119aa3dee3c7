"""Aggregate persisted phase results into the final run report."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from .probe import compare_metrics
from .results import BundleMetrics, PhaseResult


def _metrics(result: PhaseResult) -> BundleMetrics:
    return BundleMetrics(
        size_kb=result.size_kb,
        chunk_count=result.chunk_count,
        dependency_count=result.dependency_count,
        component_count=result.component_count,
    )


def recommendations(reduction_percent: float, results: Sequence[PhaseResult]) -> List[str]:
    recs: List[str] = []
    if reduction_percent > 50:
        recs.append("Excellent reduction. Consider removing the reported packages from package.json.")
    elif reduction_percent > 20:
        recs.append("Good reduction. Re-run in aggressive mode to look for rarely used components.")
    else:
        recs.append("Limited reduction. Most components are in use; look at route-level code splitting instead.")
    for result in results:
        if result.status == "failed":
            recs.append(f"Phase '{result.phase}' failed; inspect {result.phase}-result.json for its errors.")
        elif result.status == "partial":
            recs.append(f"Phase '{result.phase}' stopped early; raise max_iterations to finish recovery.")
    return recs


def build_report(
    results: Sequence[PhaseResult],
    run_id: str = "",
    config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Summarise a run from its phase results."""
    by_phase = {r.phase: r for r in results}
    baseline = by_phase.get("baseline")
    final = by_phase.get("done")
    if final is None or final.size_kb == 0:
        measured = [r for r in results if r.size_kb > 0]
        final = measured[-1] if measured else final

    totals: Dict[str, Any] = {}
    improvements: List[str] = []
    regressions: List[str] = []
    reduction_percent = 0.0
    if baseline is not None and final is not None:
        comparison = compare_metrics(_metrics(baseline), _metrics(final))
        totals = {
            "size_before_kb": baseline.size_kb,
            "size_after_kb": final.size_kb,
            **comparison["reduction"],
        }
        improvements = comparison["improvements"]
        regressions = comparison["regressions"]
        reduction_percent = comparison["reduction"]["size_percent"]

    recover = by_phase.get("recover")
    restored = list(recover.restored) if recover else []
    done = by_phase.get("done")
    if done is not None:
        # The final phase records what is still stubbed after any rollback
        still_removed = list(done.removed)
        droppable = list(done.details.get("droppable_packages", []))
    else:
        removed: List[str] = []
        for result in results:
            if result.phase in ("eliminate", "refine"):
                removed.extend(r for r in result.removed if r not in removed)
        still_removed = [r for r in removed if r not in restored]
        refine = by_phase.get("refine")
        droppable = list(refine.details.get("droppable_packages", [])) if refine else []

    return {
        "run_id": run_id,
        "generated_at": datetime.now().isoformat(),
        "success": bool(done.success) if done else all(r.success or r.status == "skipped" for r in results),
        "mode": (config or {}).get("mode", ""),
        "totals": totals,
        "removed": still_removed,
        "restored": restored,
        "droppable_packages": droppable,
        "phases": [
            {
                "phase": r.phase,
                "status": r.status,
                "success": r.success,
                "size_kb": r.size_kb,
                "removed": len(r.removed),
                "restored": len(r.restored),
                "duration_ms": r.duration_ms,
                "errors": list(r.errors),
            }
            for r in results
        ],
        "recovery": dict(recover.details) if recover else {},
        "improvements": improvements,
        "regressions": regressions,
        "recommendations": recommendations(reduction_percent, results),
    }


def render_markdown(report: Dict[str, Any]) -> str:
    lines = [f"# Bundle optimisation report {report.get('run_id', '')}".rstrip(), ""]
    lines.append(f"- Result: **{'success' if report.get('success') else 'failed'}**")
    if report.get("mode"):
        lines.append(f"- Mode: {report['mode']}")
    totals = report.get("totals") or {}
    if totals:
        lines.append(
            f"- Bundle: {totals['size_before_kb']} KB → {totals['size_after_kb']} KB "
            f"({totals['size_percent']}% smaller)"
        )
        lines.append(f"- Components removed: {totals['components']}")
    lines.append("")

    lines.append("## Phases")
    lines.append("")
    lines.append("| Phase | Status | Size (KB) | Removed | Restored | Errors |")
    lines.append("|-------|--------|-----------|---------|----------|--------|")
    for phase in report.get("phases", []):
        lines.append(
            f"| {phase['phase']} | {phase['status']} | {phase['size_kb']} | "
            f"{phase['removed']} | {phase['restored']} | {len(phase['errors'])} |"
        )
    lines.append("")

    recovery = report.get("recovery") or {}
    if recovery:
        lines.append("## Recovery")
        lines.append("")
        lines.append(f"- Restored: {', '.join(recovery.get('restored', [])) or 'none'}")
        lines.append(f"- Outer iterations: {recovery.get('outer_iterations', 0)}")
        lines.append(f"- Probes: {recovery.get('probes', 0)}")
        if not recovery.get("converged", True):
            lines.append(f"- Unresolved: {', '.join(recovery.get('unresolved', []))}")
        lines.append("")

    if report.get("droppable_packages"):
        lines.append("## Packages no longer imported")
        lines.append("")
        lines.extend(f"- `{name}`" for name in report["droppable_packages"])
        lines.append("")

    for title, key in (("Improvements", "improvements"), ("Regressions", "regressions"),
                       ("Recommendations", "recommendations")):
        if report.get(key):
            lines.append(f"## {title}")
            lines.append("")
            lines.extend(f"- {item}" for item in report[key])
            lines.append("")
    return "\n".join(lines)

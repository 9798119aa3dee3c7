"""Selection and stubbing of removable component units."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from .models import CodeUnit, UsageGraph, UsageStatus
from .mutations import UnitSwapper
from .probe import MetricsProbe
from .results import (
    EliminationReport,
    EliminationSet,
    NuclearDegraded,
    NuclearFatal,
    NuclearOutcome,
    NuclearSuccess,
)

logger = logging.getLogger(__name__)

# Names that are never stubbed in nuclear mode, even if not configured
CRITICAL_NAMES = {"App", "main", "index", "React", "ReactDOM", "Router", "QueryClient"}


def _order(units: Iterable[CodeUnit]) -> List[CodeUnit]:
    """Ascending usage count, ties broken by declaration order."""
    return sorted(units, key=lambda u: (u.usage_count, u.declaration_index))


class EliminationEngine:
    """Pick units for a mode and replace them with stubs."""

    def __init__(
        self,
        root: Path,
        swapper: UnitSwapper,
        probe: MetricsProbe,
        protected: Iterable[str] = (),
        check_level: Optional[str] = None,
    ):
        self.root = root
        self.swapper = swapper
        self.probe = probe
        self.protected = set(protected)
        self.check_level = check_level

    def is_protected(self, unit: CodeUnit) -> bool:
        if unit.protected or unit.name in self.protected:
            return True
        return any(name in self.protected for name in unit.exports.values)

    def select(self, graph: UsageGraph, mode: str) -> EliminationSet:
        """Identities eligible under *mode*, in elimination order.

        Modes:
            safe: unreferenced components only.
            smart: every eligible component (unreferenced or import-only).
            aggressive: eligible plus rarely-used components.
            nuclear: every non-protected component.
        """
        candidates: List[CodeUnit] = []
        for unit in graph.components():
            if self.is_protected(unit) or self.swapper.is_stubbed(unit.name):
                continue
            if mode == "safe":
                keep = unit.status == UsageStatus.UNREFERENCED
            elif mode == "smart":
                keep = unit.eligible
            elif mode == "aggressive":
                keep = unit.eligible or unit.status == UsageStatus.RARELY_USED
            elif mode == "nuclear":
                keep = unit.name not in CRITICAL_NAMES
            else:
                raise ValueError(f"Unknown mode '{mode}'")
            if keep:
                candidates.append(unit)
        selection = EliminationSet(identities=tuple(u.name for u in _order(candidates)), mode=mode)
        logger.info("Mode %s selected %d of %d components", mode, len(selection), len(graph.components()))
        return selection

    def stub_all(self, identities: Sequence[str]) -> Tuple[List[str], List[str]]:
        """Stub each identity in order.

        Returns:
            ``(removed, errors)``; units that fail to stub are left in place.
        """
        removed: List[str] = []
        errors: List[str] = []
        for identity in identities:
            try:
                self.swapper.stub(identity)
            except (OSError, KeyError) as exc:
                logger.warning("Could not stub %s: %s", identity, exc)
                errors.append(f"{identity}: {exc}")
                continue
            removed.append(identity)
        return removed, errors

    def eliminate(self, selection: EliminationSet) -> EliminationReport:
        """Stub every selected unit, then probe once."""
        removed, errors = self.stub_all(selection.identities)
        report = EliminationReport(removed=removed, errors=errors)
        if not removed:
            logger.info("Nothing to eliminate")
        report.outcome = self.probe.check(self.root, self.check_level)
        if not report.outcome.success:
            report.errors.extend(report.outcome.errors)
        return report

    def rollback(self, identities: Iterable[str]) -> List[str]:
        """Restore units from backup; returns identities that could not be restored."""
        failed = self.swapper.restore_all(list(identities))
        if failed:
            logger.warning("Rollback left %d unit(s) stubbed: %s", len(failed), ", ".join(failed))
        return failed

    def run_nuclear(self, graph: UsageGraph) -> NuclearOutcome:
        """Zero-state reconstruction.

        Stubs every non-protected component, requires the zero state to
        build, then restores the rendered units and validates.
        """
        selection = self.select(graph, "nuclear")
        stubbed: List[str] = []
        try:
            for identity in selection.identities:
                self.swapper.stub(identity)
                stubbed.append(identity)
        except (OSError, KeyError) as exc:
            logger.error("Zero state could not be established: %s", exc)
            self.rollback(stubbed)
            return NuclearFatal(reason=f"stubbing failed: {exc}")

        zero = self.probe.build_only(self.root)
        if not zero.success:
            logger.warning("Zero-state build failed; tree left in zero state")
            return NuclearDegraded(
                removed=tuple(stubbed), restored=(), outcome=zero, reason="zero-state build failed"
            )

        rendered = [u.name for u in _order(graph.rendered()) if u.name in stubbed]
        failed = self.swapper.restore_all(rendered)
        restored = tuple(r for r in rendered if r not in failed)
        still_removed = tuple(i for i in stubbed if i not in restored)

        outcome = self.probe.check(self.root, self.check_level)
        if outcome.success:
            logger.info("Nuclear pass kept %d rendered units, removed %d", len(restored), len(still_removed))
            return NuclearSuccess(removed=still_removed, restored=restored, outcome=outcome)
        return NuclearDegraded(
            removed=still_removed, restored=restored, outcome=outcome,
            reason="rendered set does not validate",
        )

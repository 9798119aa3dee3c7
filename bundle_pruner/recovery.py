"""Binary-search recovery of the units a failing elimination still needs.

The engine starts from a tree where every eliminated unit is stubbed and
grows a restored prefix of the elimination order half by half:

* restore the first ``ceil(n/2)`` units of the working list and probe;
* on failure those units stay restored and are carried into the next
  probe together with the next half;
* on success the carried units and the current half are minimised one
  unit at a time, and the units whose removal breaks the probe are kept.
  Everything still stubbed at that point was stubbed during the passing
  probe, so the search ends there.

A final replay resets the tree to zero state plus the restored set and
probes once more, so a successful result is always backed by a passing
probe of exactly that tree.
"""

from __future__ import annotations

import logging
import math
import threading
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from .config import DEFAULTS
from .errors import ConvergenceFailure, RestoreError
from .mutations import UnitSwapper
from .probe import MetricsProbe
from .results import RecoveryResult, RecoveryStep

logger = logging.getLogger(__name__)


class RecoveryEngine:
    """Find a locally minimal set of eliminated units to restore."""

    def __init__(
        self,
        root: Path,
        swapper: UnitSwapper,
        probe: MetricsProbe,
        max_iterations: int = DEFAULTS["max_iterations"],
        check_level: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.root = root
        self.swapper = swapper
        self.probe = probe
        self.max_iterations = max_iterations
        self.check_level = check_level
        self.cancel = cancel or threading.Event()

    # ------------------------------------------------------------------
    # Mutation helpers
    # ------------------------------------------------------------------

    def _restore_group(self, identities: Sequence[str]) -> Tuple[List[str], List[str], List[str]]:
        """Restore in order; returns ``(restored, failed, errors)``."""
        restored: List[str] = []
        failed: List[str] = []
        errors: List[str] = []
        for identity in identities:
            try:
                self.swapper.restore(identity)
            except RestoreError as exc:
                logger.warning("%s", exc)
                failed.append(identity)
                errors.append(str(exc))
                continue
            restored.append(identity)
        return restored, failed, errors

    def _probe(self) -> Tuple[bool, Tuple[str, ...]]:
        outcome = self.probe.check(self.root, self.check_level)
        return outcome.success, tuple(outcome.errors)

    def _reconcile(self, eliminated: Sequence[str], keep: Iterable[str]) -> List[str]:
        """Stub every eliminated unit except *keep*, which is restored.

        Returns restore errors.
        """
        keep_set = set(keep)
        errors: List[str] = []
        for identity in eliminated:
            if identity in keep_set:
                if self.swapper.is_stubbed(identity):
                    try:
                        self.swapper.restore(identity)
                    except RestoreError as exc:
                        logger.warning("%s", exc)
                        errors.append(str(exc))
            elif not self.swapper.is_stubbed(identity):
                self.swapper.stub(identity)
        return errors

    # ------------------------------------------------------------------
    # Minimisation
    # ------------------------------------------------------------------

    def _minimize(
        self, candidates: Sequence[str], iteration: int, result: RecoveryResult
    ) -> List[str]:
        """Stub each candidate in turn; keep the ones the probe cannot do without."""
        necessary: List[str] = []
        for identity in candidates:
            self.swapper.stub(identity)
            success, errors = self._probe()
            result.steps.append(RecoveryStep(
                iteration=iteration, action="remove", units=(identity,),
                success=success, errors=errors, outer=False,
            ))
            if success:
                logger.debug("%s is not needed", identity)
                continue
            try:
                self.swapper.restore(identity)
            except RestoreError as exc:
                logger.warning("%s", exc)
                result.dropped.append(identity)
                result.errors.append(str(exc))
                continue
            logger.debug("%s is needed", identity)
            necessary.append(identity)
        return necessary

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def recover(self, eliminated: Sequence[str]) -> RecoveryResult:
        """Run recovery over *eliminated*, given in elimination order.

        The units are expected to be stubbed; any that are not are stubbed
        first. On return the tree holds zero state plus ``restored`` and,
        if the search stopped early, ``unresolved``.
        """
        eliminated = list(dict.fromkeys(eliminated))
        result = RecoveryResult(success=True)
        if not eliminated:
            return result

        self._reconcile(eliminated, keep=())
        working = list(eliminated)
        carried: List[str] = []

        while working:
            if self.cancel.is_set():
                logger.info("Recovery cancelled after %d iteration(s)", result.outer_iterations)
                result.cancelled = True
                break
            if result.outer_iterations >= self.max_iterations:
                logger.warning("Recovery stopped at the %d-iteration bound", self.max_iterations)
                break

            result.outer_iterations += 1
            iteration = result.outer_iterations
            split = math.ceil(len(working) / 2)
            test_set, remainder = working[:split], working[split:]

            restored, failed, errors = self._restore_group(test_set)
            if failed:
                # Put the restorable part back and retry it without the broken entries
                for identity in restored:
                    self.swapper.stub(identity)
                result.dropped.extend(failed)
                result.errors.extend(errors)
                result.steps.append(RecoveryStep(
                    iteration=iteration, action="restore", units=tuple(test_set),
                    success=False, errors=tuple(errors),
                ))
                working = restored + remainder
                continue

            success, probe_errors = self._probe()
            result.steps.append(RecoveryStep(
                iteration=iteration, action="restore", units=tuple(test_set),
                success=success, errors=probe_errors,
            ))
            working = remainder
            if not success:
                # The failing half stays restored and is carried into the next probe
                carried.extend(test_set)
                continue

            result.restored.extend(self._minimize(carried + test_set, iteration, result))
            carried = []
            logger.info("Recovery pass %d: %d unit(s) required so far", iteration, len(result.restored))
            # The passing probe ran with the remainder stubbed
            working = []

        if working or carried:
            leftover = carried + working
            if working:
                # Bound or cancellation: keep unexamined units conservatively
                result.converged = False
                _, failed, errors = self._restore_group(working)
                result.dropped.extend(failed)
                result.errors.extend(errors)
            result.unresolved = [i for i in leftover if i not in result.dropped]
            if not result.converged and not result.cancelled:
                result.errors.append(str(ConvergenceFailure(result.unresolved)))
        if result.cancelled:
            result.converged = False
            result.success = False
            return result

        keep = result.restored + result.unresolved
        result.errors.extend(self._reconcile(eliminated, keep))
        success, errors = self._probe()
        result.steps.append(RecoveryStep(
            iteration=result.outer_iterations, action="test", units=tuple(keep),
            success=success, errors=errors, outer=False,
        ))
        result.success = success
        if not success:
            result.errors.extend(errors)
        logger.info(
            "Recovery finished: %s, restored=%s, unresolved=%d, probes=%d",
            "passed" if success else "failed", result.restored, len(result.unresolved), len(result.steps),
        )
        return result

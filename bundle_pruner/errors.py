"""Exception hierarchy for Bundle Pruner.

Only :class:`FatalConfigError` aborts a run. Everything else is caught at
the seam where it occurs and folded into a result object.
"""

from __future__ import annotations

from typing import Optional


class BundlePrunerError(Exception):
    """Base class for all Bundle Pruner errors."""


class ScanError(BundlePrunerError):
    """A single source file could not be read or scanned."""

    def __init__(self, file_path: str, reason: str):
        self.file_path = file_path
        self.reason = reason
        super().__init__(f"{file_path}: {reason}")


class ProbeError(BundlePrunerError):
    """The build or validation oracle could not complete."""


class RestoreError(BundlePrunerError):
    """A unit could not be written back from its backup snapshot."""

    def __init__(self, identity: str, reason: str):
        self.identity = identity
        self.reason = reason
        super().__init__(f"cannot restore '{identity}': {reason}")


class ConvergenceFailure(BundlePrunerError):
    """Recovery hit its iteration bound.

    Not raised by the engines. Recovery records its message in
    ``RecoveryResult.errors`` and clears ``RecoveryResult.converged``.
    """

    def __init__(self, unresolved: Optional[list] = None):
        self.unresolved = list(unresolved or [])
        super().__init__(f"recovery did not converge; {len(self.unresolved)} unit(s) unresolved")


class FatalConfigError(BundlePrunerError):
    """Configuration or manifest is unusable. Raised before any mutation."""

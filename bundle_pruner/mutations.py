"""The only code path that changes the working tree."""

from __future__ import annotations

import logging
import posixpath
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .backup import BackupStore
from .errors import RestoreError
from .models import CodeUnit, ExportSignature
from .source_tree import SourceTree
from .stubs import render_stub

logger = logging.getLogger(__name__)


class UnitSwapper:
    """Swap component files for stubs and back again.

    Every stub is preceded by a backup snapshot, so any unit this class has
    touched can be restored. Mutations are refused while ``busy()`` reports
    a probe in flight.
    """

    def __init__(self, tree: SourceTree, backup: BackupStore, busy: Optional[Callable[[], bool]] = None):
        self.tree = tree
        self.backup = backup
        self._busy = busy or (lambda: False)
        self._units: Dict[str, Tuple[str, ExportSignature]] = {}
        self._stubbed: Dict[str, None] = {}

    def register(self, units: Iterable[CodeUnit]) -> None:
        """Make component units addressable by identity."""
        for unit in units:
            if unit.is_component and unit.path:
                self._units.setdefault(unit.name, (unit.path, unit.exports))

    def adopt(self, identities: Iterable[str]) -> None:
        """Mark identities as already stubbed on disk (used when resuming)."""
        for identity in identities:
            if identity in self.backup:
                self._stubbed[identity] = None

    @property
    def stubbed(self) -> List[str]:
        """Currently stubbed identities, in the order they were stubbed."""
        return list(self._stubbed)

    def is_stubbed(self, identity: str) -> bool:
        return identity in self._stubbed

    def _ensure_idle(self) -> None:
        if self._busy():
            raise RuntimeError("working tree is locked while a probe is in flight")

    def _locate(self, identity: str) -> Tuple[str, ExportSignature]:
        if identity in self.backup:
            entry = self.backup.get(identity)
            return entry.rel_path, entry.exports
        if identity in self._units:
            return self._units[identity]
        raise KeyError(f"Unknown unit '{identity}'")

    def stub(self, identity: str) -> None:
        """Snapshot, delete and replace a unit with its inert stub."""
        self._ensure_idle()
        if identity in self._stubbed:
            return
        rel_path, exports = self._locate(identity)
        self.backup.snapshot(identity, self.tree, rel_path, exports)
        stub = render_stub(identity, self.backup.get(identity).exports, posixpath.splitext(rel_path)[1])
        self.tree.delete(rel_path)
        self.tree.write(rel_path, stub)
        self._stubbed[identity] = None
        logger.debug("Stubbed %s", identity)

    def restore(self, identity: str) -> None:
        """Write the backed-up original of *identity* back into place.

        Raises:
            RestoreError: If no snapshot exists or the write fails.
        """
        self._ensure_idle()
        if identity not in self.backup:
            raise RestoreError(identity, "no backup snapshot")
        entry = self.backup.get(identity)
        try:
            self.tree.write(entry.rel_path, entry.content)
        except OSError as exc:
            raise RestoreError(identity, str(exc)) from exc
        self._stubbed.pop(identity, None)
        logger.debug("Restored %s", identity)

    def restore_all(self, identities: Optional[Iterable[str]] = None) -> List[str]:
        """Restore many units; returns the identities that could not be restored."""
        failed: List[str] = []
        for identity in list(identities if identities is not None else self._stubbed):
            try:
                self.restore(identity)
            except RestoreError as exc:
                logger.warning("%s", exc)
                failed.append(identity)
        return failed

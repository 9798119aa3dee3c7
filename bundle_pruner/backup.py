"""Append-only snapshots of original unit content.

The first snapshot of an identity wins for the whole run; later stubbing of
the same unit never overwrites it. When a mirror directory is given, each
original file is copied there along with an ``index.json`` so a crashed or
interrupted run can still be restored from disk.
"""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .models import ExportSignature
from .source_tree import SourceTree

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
FILES_DIR = "files"


def _read_exact(path: Path) -> str:
    with open(path, encoding="utf-8", newline="") as f:
        return f.read()


@dataclass(frozen=True)
class BackupEntry:
    identity: str
    rel_path: str
    content: str
    exports: ExportSignature = field(default_factory=ExportSignature)
    created_at: str = ""


class BackupStore:
    """Identity -> original content, for the duration of one run."""

    def __init__(self, mirror_dir: Optional[Path] = None):
        self.mirror_dir = mirror_dir
        self._entries: Dict[str, BackupEntry] = {}

    def __contains__(self, identity: object) -> bool:
        return identity in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[BackupEntry]:
        return iter(self._entries.values())

    def identities(self) -> List[str]:
        return list(self._entries)

    def get(self, identity: str) -> BackupEntry:
        """Return the snapshot for *identity*.

        Raises:
            KeyError: If the identity was never snapshotted.
        """
        return self._entries[identity]

    def snapshot(self, identity: str, tree: SourceTree, rel_path: str, exports: ExportSignature) -> bool:
        """Record the current content of *rel_path* under *identity*.

        Returns:
            True if a new entry was written, False if one already existed.
        """
        if identity in self._entries:
            return False
        content = tree.read(rel_path)
        entry = BackupEntry(
            identity=identity,
            rel_path=rel_path,
            content=content,
            exports=exports,
            created_at=datetime.now().isoformat(),
        )
        self._entries[identity] = entry
        if self.mirror_dir is not None:
            target = self.mirror_dir / FILES_DIR / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(tree.path(rel_path), target)
            self._write_index(self.mirror_dir)
        logger.debug("Backed up %s (%s)", identity, rel_path)
        return True

    def _write_index(self, mirror_dir: Path) -> None:
        mirror_dir.mkdir(parents=True, exist_ok=True)
        index = {
            "updated_at": datetime.now().isoformat(),
            "entries": [
                {
                    "identity": e.identity,
                    "rel_path": e.rel_path,
                    "exports": e.exports.to_dict(),
                    "created_at": e.created_at,
                }
                for e in self._entries.values()
            ],
        }
        (mirror_dir / INDEX_FILE).write_text(json.dumps(index, indent=2), encoding="utf-8")

    @classmethod
    def load(cls, mirror_dir: Path) -> "BackupStore":
        """Rebuild a store from its on-disk mirror. Missing mirrors load empty."""
        store = cls(mirror_dir)
        index_path = mirror_dir / INDEX_FILE
        if not index_path.exists():
            return store
        index = json.loads(index_path.read_text(encoding="utf-8"))
        for item in index.get("entries", []):
            file_path = mirror_dir / FILES_DIR / item["rel_path"]
            if not file_path.exists():
                logger.warning("Backup file missing for %s: %s", item["identity"], file_path)
                continue
            store._entries[item["identity"]] = BackupEntry(
                identity=item["identity"],
                rel_path=item["rel_path"],
                content=_read_exact(file_path),
                exports=ExportSignature.from_dict(item.get("exports", {})),
                created_at=item.get("created_at", ""),
            )
        return store

    def discard(self) -> None:
        """Drop all entries and delete the mirror."""
        self._entries.clear()
        if self.mirror_dir is not None and self.mirror_dir.exists():
            shutil.rmtree(self.mirror_dir, ignore_errors=True)

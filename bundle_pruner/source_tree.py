"""Filesystem access for the project being optimised.

All paths handed in and out are project-relative POSIX strings so results
stay portable between the in-memory graph, persisted run state and disk.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence

from .config import SKIP_DIRS, SKIP_FILE_MARKERS, SOURCE_EXTENSIONS

logger = logging.getLogger(__name__)


def is_source_file(rel_path: str) -> bool:
    """True for component-language files that are not tests, stories or declarations."""
    name = rel_path.rsplit("/", 1)[-1]
    if not name.endswith(SOURCE_EXTENSIONS):
        return False
    if name.endswith(".d.ts"):
        return False
    return not any(marker in name for marker in SKIP_FILE_MARKERS)


class SourceTree:
    """Read and write files below a project root."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def path(self, rel_path: str) -> Path:
        return self.root / rel_path

    def relative(self, path: Path) -> str:
        return Path(path).resolve().relative_to(self.root).as_posix()

    def exists(self, rel_path: str) -> bool:
        return self.path(rel_path).is_file()

    def is_dir(self, rel_path: str) -> bool:
        return self.path(rel_path).is_dir()

    def read(self, rel_path: str) -> str:
        # Line endings are kept as-is so restores are byte-exact
        with open(self.path(rel_path), encoding="utf-8", newline="") as f:
            return f.read()

    def write(self, rel_path: str, content: str) -> None:
        target = self.path(rel_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8", newline="") as f:
            f.write(content)

    def delete(self, rel_path: str) -> None:
        target = self.path(rel_path)
        if target.exists():
            target.unlink()

    def iter_source_files(self, under: Optional[Sequence[str]] = None) -> Iterator[str]:
        """Yield project-relative source paths in sorted order.

        Args:
            under: Restrict the walk to these project-relative directories.
                Missing directories are ignored.
        """
        bases: Iterable[Path]
        if under is None:
            bases = [self.root]
        else:
            bases = [self.path(d) for d in under if self.path(d).is_dir()]

        seen: set[str] = set()
        found: List[str] = []
        for base in bases:
            for file_path in base.rglob("*"):
                if not file_path.is_file():
                    continue
                rel = file_path.relative_to(self.root)
                if any(part in SKIP_DIRS for part in rel.parts[:-1]):
                    continue
                rel_posix = rel.as_posix()
                if rel_posix in seen or not is_source_file(rel_posix):
                    continue
                seen.add(rel_posix)
                found.append(rel_posix)
        yield from sorted(found)

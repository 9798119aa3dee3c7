"""Read-only analysis of the project's ``package.json``."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import FatalConfigError
from .models import UsageGraph

logger = logging.getLogger(__name__)

MANIFEST_NAME = "package.json"

# Toolchain packages that are never reported as droppable
ESSENTIAL_PACKAGES = {
    "react", "react-dom", "typescript", "vite", "@vitejs/plugin-react",
    "tailwindcss", "postcss", "autoprefixer", "tailwindcss-animate",
    "@tailwindcss/forms", "@tailwindcss/typography",
    "@tailwindcss/aspect-ratio", "@tailwindcss/container-queries",
}


def is_essential_package(name: str) -> bool:
    return (
        name in ESSENTIAL_PACKAGES
        or name.startswith("@types/")
        or "eslint" in name
        or "prettier" in name
        or "tailwindcss-" in name
    )


@dataclass
class Manifest:
    """Declared packages of a front-end project."""
    dependencies: Dict[str, str] = field(default_factory=dict)
    dev_dependencies: Dict[str, str] = field(default_factory=dict)
    raw: str = ""
    path: Optional[Path] = None

    def declared(self) -> List[str]:
        """Runtime then dev package names, in file order, without duplicates."""
        names = list(self.dependencies)
        names.extend(n for n in self.dev_dependencies if n not in self.dependencies)
        return names

    def is_declared(self, name: str) -> bool:
        return name in self.dependencies or name in self.dev_dependencies

    def line_of(self, name: str) -> int:
        """1-based line of the package key in the raw manifest, or 0."""
        needle = f'"{name}"'
        for number, line in enumerate(self.raw.splitlines(), start=1):
            if line.strip().startswith(needle):
                return number
        return 0


def load_manifest(project_root: Path) -> Manifest:
    """Load ``package.json`` from *project_root*.

    A missing manifest yields an empty one. An unreadable or malformed
    manifest is fatal because package classification depends on it.
    """
    path = Path(project_root) / MANIFEST_NAME
    if not path.exists():
        logger.warning("No %s in %s; package units will not be classified", MANIFEST_NAME, project_root)
        return Manifest()
    try:
        raw = path.read_text(encoding="utf-8")
        data = json.loads(raw)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FatalConfigError(f"Cannot read manifest {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise FatalConfigError(f"Manifest {path} is not a JSON object")
    return Manifest(
        dependencies=dict(data.get("dependencies") or {}),
        dev_dependencies=dict(data.get("devDependencies") or {}),
        raw=raw,
        path=path,
    )


class ManifestEditor:
    """Computes which runtime dependencies an elimination made unnecessary.

    Only the report consumes this; the manifest itself is never rewritten.
    """

    def __init__(self, manifest: Manifest):
        self.manifest = manifest

    def droppable(self, graph: UsageGraph, removed: Iterable[str]) -> List[str]:
        """Runtime packages imported only by files of removed units.

        Args:
            graph: Usage graph classified before the units were removed.
            removed: Identities currently replaced by stubs.
        """
        removed_paths = set()
        for identity in removed:
            unit = graph.get(identity)
            if unit is not None and unit.path:
                removed_paths.add(unit.path)

        freed: List[str] = []
        for name in self.manifest.dependencies:
            if is_essential_package(name):
                continue
            importers = [f for f, refs in graph.references.items() if name in refs]
            if not importers:
                continue
            if all(f in removed_paths for f in importers):
                freed.append(name)
        if freed:
            logger.info("%d runtime package(s) no longer imported: %s", len(freed), ", ".join(freed))
        return freed

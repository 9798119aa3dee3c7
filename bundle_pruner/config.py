"""Configuration paths and defaults for Bundle Pruner."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("BUNDLE_PRUNER_HOME", str(Path.home() / ".bundle_pruner"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"

# Per-project files
PROJECT_CONFIG_NAME = "bundle-pruner.toml"
RUNS_DIR_NAME = ".bundle-pruner"

SOURCE_EXTENSIONS = (".tsx", ".ts", ".jsx", ".js")

SKIP_DIRS = {
    "node_modules", ".git", "dist", "build", "coverage", ".next",
    ".cache", ".turbo", ".vite", RUNS_DIR_NAME,
}

# Test and tooling files are never classified or stubbed
SKIP_FILE_MARKERS = (".test.", ".spec.", ".stories.")

MODES = ("safe", "smart", "aggressive", "nuclear")
PHASES = ("baseline", "eliminate", "refine", "recover")

DEFAULTS = {
    "mode": "smart",
    "phases": ["baseline", "eliminate", "refine"],
    "max_iterations": 20,
    "protected": ["App", "main", "index"],
    "protected_file": "",
    "validation_timeout": 120,
    "build_command": "npm run build",
    "serve_command": "npm run dev",
    "dist_dir": "dist/public",
    "routes": ["/"],
    "discover_routes": True,
    "check_level": "full",
    "validate_baseline": True,
    "rarely_used_threshold": 1,
    "workers": 8,
    "preserve_backup": True,
    "component_roots": ["client/src/components", "src/components"],
    "aliases": {"@/": ["client/src", "src"]},
    "port": 3000,
}


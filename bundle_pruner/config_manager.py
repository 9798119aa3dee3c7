"""Configuration manager for Bundle Pruner using TOML files.

Settings are layered: built-in defaults, then the global
``~/.bundle_pruner/config.toml`` ``[optimizer]`` section, then the
project's ``bundle-pruner.toml``, then explicit overrides from the CLI.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml

from .config import CONFIG_FILE, DEFAULTS, MODES, PHASES, PROJECT_CONFIG_NAME
from .errors import FatalConfigError

logger = logging.getLogger(__name__)


@dataclass
class OptimizerConfig:
    """Resolved settings for one optimisation run."""
    mode: str = DEFAULTS["mode"]
    phases: List[str] = field(default_factory=lambda: list(DEFAULTS["phases"]))
    max_iterations: int = DEFAULTS["max_iterations"]
    protected: List[str] = field(default_factory=lambda: list(DEFAULTS["protected"]))
    protected_file: str = DEFAULTS["protected_file"]
    validation_timeout: int = DEFAULTS["validation_timeout"]
    build_command: str = DEFAULTS["build_command"]
    serve_command: str = DEFAULTS["serve_command"]
    dist_dir: str = DEFAULTS["dist_dir"]
    routes: List[str] = field(default_factory=lambda: list(DEFAULTS["routes"]))
    discover_routes: bool = DEFAULTS["discover_routes"]
    check_level: str = DEFAULTS["check_level"]
    validate_baseline: bool = DEFAULTS["validate_baseline"]
    rarely_used_threshold: int = DEFAULTS["rarely_used_threshold"]
    workers: int = DEFAULTS["workers"]
    preserve_backup: bool = DEFAULTS["preserve_backup"]
    component_roots: List[str] = field(default_factory=lambda: list(DEFAULTS["component_roots"]))
    aliases: Dict[str, List[str]] = field(default_factory=lambda: copy.deepcopy(DEFAULTS["aliases"]))
    port: int = DEFAULTS["port"]

    def __post_init__(self):
        """Validate enumerated settings."""
        if self.mode not in MODES:
            raise FatalConfigError(f"Unknown mode '{self.mode}'. Expected one of: {', '.join(MODES)}")
        unknown = [p for p in self.phases if p not in PHASES]
        if unknown:
            raise FatalConfigError(f"Unknown phase(s): {', '.join(unknown)}")
        if self.max_iterations < 1:
            raise FatalConfigError("max_iterations must be at least 1")
        if self.check_level not in ("build", "full"):
            raise FatalConfigError(f"Unknown check level '{self.check_level}'")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, values: Dict[str, Any]) -> "OptimizerConfig":
        """Build a config from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        extra = sorted(set(values) - known)
        if extra:
            logger.warning("Ignoring unknown optimizer settings: %s", ", ".join(extra))
        return cls(**{k: v for k, v in values.items() if k in known})


def load_full_config() -> Dict[str, Any]:
    """Load the entire global TOML config (all sections)."""
    if not CONFIG_FILE.exists():
        return {}
    try:
        with open(CONFIG_FILE, "r") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Could not read %s, using defaults: %s", CONFIG_FILE, exc)
        return {}


def _save_full_config(config: Dict[str, Any]) -> bool:
    """Write entire config dict to TOML file, preserving all sections."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(CONFIG_FILE, "w") as f:
            toml.dump(config, f)
        return True
    except OSError as exc:
        logger.warning("Could not write %s: %s", CONFIG_FILE, exc)
        return False


def load_optimizer_config() -> Dict[str, Any]:
    """Return the ``[optimizer]`` section of the global config."""
    return load_full_config().get("optimizer", {})


def load_project_config(project_root: Path) -> Dict[str, Any]:
    """Return the ``[optimizer]`` section of the project's config file.

    Raises:
        FatalConfigError: If the file exists but cannot be parsed.
    """
    path = project_root / PROJECT_CONFIG_NAME
    if not path.exists():
        return {}
    try:
        with open(path, "r") as f:
            data = toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        raise FatalConfigError(f"Cannot read project config {path}: {exc}") from exc
    return data.get("optimizer", data)


def resolve_config(project_root: Path, overrides: Optional[Dict[str, Any]] = None) -> OptimizerConfig:
    """Merge defaults, global, project and explicit settings."""
    merged: Dict[str, Any] = copy.deepcopy(DEFAULTS)
    merged.update(load_optimizer_config())
    merged.update(load_project_config(project_root))
    for key, value in (overrides or {}).items():
        if value is not None:
            merged[key] = value
    return OptimizerConfig.from_mapping(merged)


def load_protected(config: OptimizerConfig, project_root: Path) -> List[str]:
    """Return the protected identities, including those listed in ``protected_file``.

    The file holds one identity per line; ``#`` starts a comment.

    Raises:
        FatalConfigError: If ``protected_file`` is set but unreadable.
    """
    protected = list(config.protected)
    if not config.protected_file:
        return protected
    path = Path(config.protected_file)
    if not path.is_absolute():
        path = project_root / path
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise FatalConfigError(f"Cannot read protected list {path}: {exc}") from exc
    for line in lines:
        name = line.split("#", 1)[0].strip()
        if name and name not in protected:
            protected.append(name)
    return protected


def coerce_value(key: str, raw: str) -> Any:
    """Convert a CLI string into the type of the default for *key*."""
    if key not in DEFAULTS:
        raise KeyError(key)
    default = DEFAULTS[key]
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"'{raw}' is not a boolean")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(default, dict):
        raise ValueError(f"'{key}' must be edited in the TOML file directly")
    return raw


def save_optimizer_value(key: str, raw: str) -> bool:
    """Set one ``[optimizer]`` key in the global config, preserving other sections."""
    value = coerce_value(key, raw)
    config = load_full_config()
    section = config.setdefault("optimizer", {})
    section[key] = value
    # Validate the combined result before it reaches disk
    merged = copy.deepcopy(DEFAULTS)
    merged.update(section)
    OptimizerConfig.from_mapping(merged)
    return _save_full_config(config)


def clear_optimizer_config() -> bool:
    """Remove the ``[optimizer]`` section, resetting to defaults."""
    config = load_full_config()
    config.pop("optimizer", None)
    return _save_full_config(config)

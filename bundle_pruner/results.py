"""Result types exchanged between the probe, the engines and the orchestrator."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple, Union


@dataclass
class ChunkInfo:
    """One emitted bundle chunk as reported by the build tool."""
    name: str
    size_kb: float
    gzip_kb: Optional[float] = None


@dataclass
class BuildResult:
    """Outcome of one production build."""
    success: bool
    errors: List[str] = field(default_factory=list)
    artifact_sizes: Dict[str, int] = field(default_factory=dict)
    chunks: List[ChunkInfo] = field(default_factory=list)
    duration_ms: int = 0
    output: str = ""

    @property
    def total_bytes(self) -> int:
        return sum(self.artifact_sizes.values())

    @property
    def size_kb(self) -> float:
        return round(self.total_bytes / 1024, 2)

    def __str__(self) -> str:
        if self.success:
            return f"✅ Build passed ({self.size_kb} KB, {len(self.artifact_sizes)} artifacts)"
        return f"❌ Build failed: {'; '.join(self.errors[:3])}"


@dataclass
class RouteResult:
    route: str
    success: bool
    status_code: Optional[int] = None
    load_time_ms: int = 0
    error: Optional[str] = None


@dataclass
class ValidationResult:
    """Outcome of serving the built app and exercising its routes."""
    success: bool
    route_results: List[RouteResult] = field(default_factory=list)
    runtime_errors: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    duration_ms: int = 0

    def __str__(self) -> str:
        if self.success:
            return f"✅ Validation passed ({len(self.route_results)} routes)"
        return f"❌ Validation failed: {'; '.join(self.errors[:3])}"


@dataclass
class BundleMetrics:
    """Size figures for the current working tree."""
    size_kb: float = 0.0
    chunk_count: int = 0
    dependency_count: int = 0
    component_count: int = 0
    largest_chunks: List[ChunkInfo] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProbeOutcome:
    """A single verdict from the metrics probe."""
    success: bool
    level: str = "full"
    build: Optional[BuildResult] = None
    validation: Optional[ValidationResult] = None
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def size_kb(self) -> float:
        return self.build.size_kb if self.build else 0.0

    def __str__(self) -> str:
        status = "passed" if self.success else "failed"
        return f"probe[{self.level}] {status} in {self.duration_ms}ms"


PhaseStatus = Literal["success", "failed", "partial", "skipped"]


@dataclass(frozen=True)
class PhaseResult:
    """Immutable record of one phase, persisted as ``<phase>-result.json``."""
    phase: str
    success: bool
    status: str = "success"
    size_kb: float = 0.0
    chunk_count: int = 0
    dependency_count: int = 0
    component_count: int = 0
    removed: Tuple[str, ...] = ()
    restored: Tuple[str, ...] = ()
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    started_at: str = ""
    duration_ms: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        icon = {"success": "✅", "failed": "❌", "partial": "⚠️", "skipped": "⏭️"}.get(self.status, "•")
        return f"{icon} {self.phase}: {self.status} ({self.size_kb} KB, -{len(self.removed)} units)"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("removed", "restored", "errors", "warnings"):
            data[key] = list(data[key])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PhaseResult":
        values = dict(data)
        for key in ("removed", "restored", "errors", "warnings"):
            values[key] = tuple(values.get(key, ()))
        return cls(**values)


@dataclass(frozen=True)
class RecoveryStep:
    """One logged recovery action and the probe verdict that followed it."""
    iteration: int
    action: str  # "restore", "remove" or "test"
    units: Tuple[str, ...]
    success: bool
    errors: Tuple[str, ...] = ()
    outer: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "action": self.action,
            "units": list(self.units),
            "success": self.success,
            "errors": list(self.errors),
            "outer": self.outer,
        }


@dataclass
class RecoveryResult:
    """Outcome of binary-search recovery."""
    success: bool
    restored: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)
    steps: List[RecoveryStep] = field(default_factory=list)
    outer_iterations: int = 0
    converged: bool = True
    cancelled: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def probe_count(self) -> int:
        return len(self.steps)

    def summary(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "restored": list(self.restored),
            "dropped": list(self.dropped),
            "unresolved": list(self.unresolved),
            "outer_iterations": self.outer_iterations,
            "probes": self.probe_count,
            "converged": self.converged,
            "cancelled": self.cancelled,
        }


@dataclass(frozen=True)
class EliminationSet:
    """Ordered identities selected for removal under one mode."""
    identities: Tuple[str, ...]
    mode: str

    def __len__(self) -> int:
        return len(self.identities)

    def __iter__(self):
        return iter(self.identities)


@dataclass
class EliminationReport:
    """What an elimination pass stubbed and how the tree behaved afterwards."""
    removed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    outcome: Optional[ProbeOutcome] = None

    @property
    def success(self) -> bool:
        return self.outcome is not None and self.outcome.success


@dataclass(frozen=True)
class NuclearSuccess:
    """Zero-state build passed and the restored render set validates."""
    removed: Tuple[str, ...]
    restored: Tuple[str, ...]
    outcome: ProbeOutcome


@dataclass(frozen=True)
class NuclearDegraded:
    """Tree is mutated but fails; ``removed`` lists units still stubbed."""
    removed: Tuple[str, ...]
    restored: Tuple[str, ...]
    outcome: ProbeOutcome
    reason: str = ""


@dataclass(frozen=True)
class NuclearFatal:
    """Zero state could not be established; the tree was rolled back."""
    reason: str


NuclearOutcome = Union[NuclearSuccess, NuclearDegraded, NuclearFatal]

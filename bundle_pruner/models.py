"""Core data models produced by the usage classifier."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple


class UsageStatus(str, Enum):
    RENDERED = "rendered"
    RARELY_USED = "rarely-used"
    IMPORT_ONLY = "import-only"
    UNREFERENCED = "unreferenced"
    PROTECTED = "protected"


@dataclass(frozen=True)
class Location:
    """A position in a project-relative source file."""
    file_path: str
    line: int

    def __str__(self) -> str:
        return f"{self.file_path}:{self.line}"


@dataclass(frozen=True)
class UsageSite:
    """Invocations of a unit inside one consumer file."""
    location: Location
    count: int = 1


@dataclass(frozen=True)
class ExportSignature:
    """The set of names a module exposes to importers."""
    values: FrozenSet[str] = frozenset()
    types: FrozenSet[str] = frozenset()
    has_default: bool = False
    star_sources: FrozenSet[str] = frozenset()

    @property
    def symbol_names(self) -> FrozenSet[str]:
        names = set(self.values) | set(self.types)
        if self.has_default:
            names.add("default")
        return frozenset(names)

    @property
    def is_empty(self) -> bool:
        return not (self.values or self.types or self.has_default or self.star_sources)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "values": sorted(self.values),
            "types": sorted(self.types),
            "has_default": self.has_default,
            "star_sources": sorted(self.star_sources),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportSignature":
        return cls(
            values=frozenset(data.get("values", ())),
            types=frozenset(data.get("types", ())),
            has_default=bool(data.get("has_default", False)),
            star_sources=frozenset(data.get("star_sources", ())),
        )


@dataclass(frozen=True)
class CodeUnit:
    """A removable unit: one component file or one declared package."""
    name: str
    kind: str  # "component" or "package"
    path: Optional[str] = None
    declarations: Tuple[Location, ...] = ()
    usage_sites: Tuple[UsageSite, ...] = ()
    importers: Tuple[str, ...] = ()
    exports: ExportSignature = field(default_factory=ExportSignature)
    status: UsageStatus = UsageStatus.UNREFERENCED
    protected: bool = False
    declaration_index: int = 0

    @property
    def usage_count(self) -> int:
        """Total invocations across all consumer files."""
        return sum(site.count for site in self.usage_sites)

    @property
    def usage_files(self) -> Tuple[str, ...]:
        return tuple(site.location.file_path for site in self.usage_sites)

    @property
    def eligible(self) -> bool:
        """True when the unit is declared, never invoked and not protected."""
        return not self.usage_sites and bool(self.declarations) and not self.protected

    @property
    def is_component(self) -> bool:
        return self.kind == "component"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "path": self.path,
            "declarations": [[d.file_path, d.line] for d in self.declarations],
            "usage_sites": [[s.location.file_path, s.location.line, s.count] for s in self.usage_sites],
            "importers": list(self.importers),
            "exports": self.exports.to_dict(),
            "status": self.status.value,
            "protected": self.protected,
            "declaration_index": self.declaration_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CodeUnit":
        return cls(
            name=data["name"],
            kind=data["kind"],
            path=data.get("path"),
            declarations=tuple(Location(f, line) for f, line in data.get("declarations", [])),
            usage_sites=tuple(
                UsageSite(Location(f, line), count) for f, line, count in data.get("usage_sites", [])
            ),
            importers=tuple(data.get("importers", [])),
            exports=ExportSignature.from_dict(data.get("exports", {})),
            status=UsageStatus(data.get("status", UsageStatus.UNREFERENCED.value)),
            protected=bool(data.get("protected", False)),
            declaration_index=int(data.get("declaration_index", 0)),
        )


@dataclass(frozen=True)
class UsageGraph:
    """Immutable snapshot of unit usage for one phase.

    ``units`` keeps declaration order. ``references`` maps each scanned
    file to the unit identities it imports; ``unresolved`` maps a file to
    import specifiers that point at nothing on disk.
    """
    units: Dict[str, CodeUnit] = field(default_factory=dict)
    references: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    unresolved: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    scan_errors: Tuple[str, ...] = ()

    def __iter__(self) -> Iterator[CodeUnit]:
        return iter(self.units.values())

    def __len__(self) -> int:
        return len(self.units)

    def __contains__(self, identity: object) -> bool:
        return identity in self.units

    def get(self, identity: str) -> Optional[CodeUnit]:
        return self.units.get(identity)

    def components(self) -> List[CodeUnit]:
        return [u for u in self.units.values() if u.kind == "component"]

    def packages(self) -> List[CodeUnit]:
        return [u for u in self.units.values() if u.kind == "package"]

    def eligible(self) -> List[CodeUnit]:
        """Component units that are safe candidates for removal."""
        return [u for u in self.components() if u.eligible]

    def by_status(self, status: UsageStatus) -> List[CodeUnit]:
        return [u for u in self.units.values() if u.status == status]

    def rendered(self) -> List[CodeUnit]:
        """Component units with at least one invocation (rendered or rarely used)."""
        return [
            u for u in self.components()
            if u.status in (UsageStatus.RENDERED, UsageStatus.RARELY_USED)
        ]

    def status_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in UsageStatus}
        for unit in self.components():
            counts[unit.status.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "units": [u.to_dict() for u in self.units.values()],
            "references": {k: list(v) for k, v in self.references.items()},
            "unresolved": {k: list(v) for k, v in self.unresolved.items()},
            "scan_errors": list(self.scan_errors),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageGraph":
        units = [CodeUnit.from_dict(u) for u in data.get("units", [])]
        return cls(
            units={u.name: u for u in units},
            references={k: tuple(v) for k, v in data.get("references", {}).items()},
            unresolved={k: tuple(v) for k, v in data.get("unresolved", {}).items()},
            scan_errors=tuple(data.get("scan_errors", [])),
        )

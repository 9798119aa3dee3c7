"""Usage classification for component and package units.

The default :class:`RegexUsageClassifier` reads every source file in the
project, resolves its imports to component files or declared packages and
counts how often each imported binding is actually invoked. The per-file
scan runs on a thread pool; results are consumed in sorted path order so
the graph does not depend on scheduling.
"""

from __future__ import annotations

import concurrent.futures
import logging
import posixpath
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .config import DEFAULTS, SOURCE_EXTENSIONS
from .errors import ScanError
from .manifest import Manifest
from .models import CodeUnit, ExportSignature, Location, UsageGraph, UsageSite, UsageStatus
from .source_tree import SourceTree
from .stubs import extract_exports, is_stub, strip_comments

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Import patterns
# ---------------------------------------------------------------------------
_STATIC_IMPORT_RE = re.compile(
    r"^[ \t]*import\s+(?P<type>type\s+)?(?P<clause>[\w$*{}\s,]+?)\s+from\s+['\"](?P<spec>[^'\"]+)['\"][ \t]*;?",
    re.MULTILINE,
)
_SIDE_EFFECT_IMPORT_RE = re.compile(r"^[ \t]*import\s+['\"](?P<spec>[^'\"]+)['\"][ \t]*;?", re.MULTILINE)
_DYNAMIC_IMPORT_RE = re.compile(r"\bimport\(\s*['\"](?P<spec>[^'\"]+)['\"]\s*\)")
_REQUIRE_RE = re.compile(r"\brequire\(\s*['\"](?P<spec>[^'\"]+)['\"]\s*\)")
_REEXPORT_RE = re.compile(
    r"^[ \t]*export\s+(?:type\s+)?(?P<clause>\*(?:\s+as\s+[\w$]+)?|\{[^}]*\})\s+from\s+['\"](?P<spec>[^'\"]+)['\"]",
    re.MULTILINE,
)

# Specifiers with these suffixes are assets handled by the bundler
_ASSET_SUFFIXES = (
    ".css", ".scss", ".sass", ".less", ".svg", ".png", ".jpg", ".jpeg",
    ".gif", ".webp", ".ico", ".json", ".woff", ".woff2", ".ttf", ".md",
)


@dataclass
class ImportBinding:
    local: str
    imported: str  # "default", "*" or the exported name
    type_only: bool = False


@dataclass
class ImportRecord:
    specifier: str
    line: int
    bindings: List[ImportBinding] = field(default_factory=list)
    dynamic: bool = False
    reexport_names: Optional[Set[str]] = None  # None means "export *"
    is_reexport: bool = False


@dataclass
class FileScan:
    """Everything the classifier needs from one file's text."""
    path: str
    imports: List[ImportRecord]
    exports: ExportSignature
    body: str
    stub: bool = False


def _line_at(text: str, offset: int) -> int:
    return text.count("\n", 0, offset) + 1


def _blank(text: str, spans: Iterable[Tuple[int, int]]) -> str:
    """Replace spans with newlines only, keeping line numbers stable."""
    chars = list(text)
    for start, end in spans:
        for i in range(start, end):
            if chars[i] != "\n":
                chars[i] = " "
    return "".join(chars)


def parse_import_clause(clause: str, type_only: bool = False) -> List[ImportBinding]:
    """Parse ``Default, { a, b as c, type T }`` or ``* as NS``."""
    bindings: List[ImportBinding] = []
    clause = clause.strip()
    named = ""
    if "{" in clause:
        head, _, rest = clause.partition("{")
        named = rest.rsplit("}", 1)[0]
        clause = head
    for part in clause.split(","):
        part = part.strip()
        if not part:
            continue
        if part.startswith("*"):
            local = part.split()[-1]
            bindings.append(ImportBinding(local=local, imported="*", type_only=type_only))
        else:
            bindings.append(ImportBinding(local=part, imported="default", type_only=type_only))
    for item in named.split(","):
        item = item.strip()
        if not item:
            continue
        item_type = type_only
        if item.startswith("type "):
            item_type = True
            item = item[5:].strip()
        pieces = item.split()
        if len(pieces) >= 3 and pieces[-2] == "as":
            bindings.append(ImportBinding(local=pieces[-1], imported=pieces[0], type_only=item_type))
        else:
            bindings.append(ImportBinding(local=pieces[0], imported=pieces[0], type_only=item_type))
    return bindings


def scan_source(path: str, content: str) -> FileScan:
    """Extract imports, exports and the invocation body from file text."""
    source = strip_comments(content)
    imports: List[ImportRecord] = []
    spans: List[Tuple[int, int]] = []

    for match in _STATIC_IMPORT_RE.finditer(source):
        type_only = bool(match.group("type"))
        imports.append(ImportRecord(
            specifier=match.group("spec"),
            line=_line_at(source, match.start("spec")),
            bindings=parse_import_clause(match.group("clause"), type_only),
        ))
        spans.append(match.span())
    for match in _SIDE_EFFECT_IMPORT_RE.finditer(source):
        imports.append(ImportRecord(specifier=match.group("spec"), line=_line_at(source, match.start())))
        spans.append(match.span())
    for match in _REEXPORT_RE.finditer(source):
        clause = match.group("clause")
        names: Optional[Set[str]] = None
        if clause.startswith("{"):
            names = {b.local for b in parse_import_clause(clause)}
        imports.append(ImportRecord(
            specifier=match.group("spec"),
            line=_line_at(source, match.start("spec")),
            reexport_names=names,
            is_reexport=True,
        ))
        spans.append(match.span())
    for pattern in (_DYNAMIC_IMPORT_RE, _REQUIRE_RE):
        for match in pattern.finditer(source):
            imports.append(ImportRecord(
                specifier=match.group("spec"),
                line=_line_at(source, match.start()),
                dynamic=True,
            ))

    imports.sort(key=lambda record: record.line)
    return FileScan(
        path=path,
        imports=imports,
        exports=extract_exports(content),
        body=_blank(source, spans),
        stub=is_stub(content),
    )


def count_invocations(body: str, binding: ImportBinding) -> Tuple[int, int]:
    """Count render or call sites of an imported binding.

    Returns:
        ``(count, first_line)``; ``first_line`` is 0 when count is 0.
    """
    if binding.type_only:
        return 0, 0
    name = re.escape(binding.local)
    count = 0
    first_line = 0
    for match in re.finditer(rf"(?<![\w$.]){name}(?![\w$])", body):
        before = body[max(0, match.start() - 64):match.start()].rstrip()
        after = body[match.end():match.end() + 64].lstrip()
        if binding.imported == "*":
            used = after.startswith(".")
        else:
            used = (
                before.endswith("<")
                or after.startswith("(")
                or after.startswith(".")
                or (before.endswith("{") and after.startswith("}"))
            )
        if used:
            count += 1
            if not first_line:
                first_line = _line_at(body, match.start())
    return count, first_line


def package_name(specifier: str) -> str:
    """``@scope/pkg/sub`` -> ``@scope/pkg``; ``pkg/sub`` -> ``pkg``."""
    parts = specifier.split("/")
    if specifier.startswith("@") and len(parts) > 1:
        return "/".join(parts[:2])
    return parts[0]


# ===================================================================
# Abstract classifier interface
# ===================================================================

class UsageClassifier(ABC):
    """Builds a :class:`UsageGraph` for the current state of a source tree."""

    @abstractmethod
    def classify(self, tree: SourceTree) -> UsageGraph:
        """Classify every unit in *tree*. Must be deterministic."""
        ...


class RegexUsageClassifier(UsageClassifier):
    """Text-heuristic classifier for React-style projects."""

    def __init__(
        self,
        manifest: Optional[Manifest] = None,
        component_roots: Optional[Sequence[str]] = None,
        aliases: Optional[Dict[str, Sequence[str]]] = None,
        protected: Iterable[str] = (),
        rarely_used_threshold: int = DEFAULTS["rarely_used_threshold"],
        workers: int = DEFAULTS["workers"],
    ):
        self.manifest = manifest or Manifest()
        self.component_roots = list(component_roots or DEFAULTS["component_roots"])
        self.aliases = dict(aliases or DEFAULTS["aliases"])
        self.protected = set(protected)
        self.rarely_used_threshold = rarely_used_threshold
        self.workers = max(1, workers)

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def _scan_file(self, tree: SourceTree, rel_path: str) -> FileScan:
        try:
            content = tree.read(rel_path)
        except (OSError, UnicodeDecodeError) as exc:
            raise ScanError(rel_path, str(exc)) from exc
        try:
            return scan_source(rel_path, content)
        except (re.error, ValueError, IndexError) as exc:
            raise ScanError(rel_path, f"scan failed: {exc}") from exc

    def _scan_safely(self, tree: SourceTree, rel_path: str):
        try:
            return self._scan_file(tree, rel_path), None
        except ScanError as exc:
            return None, exc

    def scan_all(self, tree: SourceTree, files: Sequence[str]) -> Tuple[Dict[str, FileScan], List[str]]:
        """Scan *files* in parallel; failed files are logged and skipped."""
        scans: Dict[str, FileScan] = {}
        errors: List[str] = []
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.workers) as ex:
            results = list(ex.map(lambda rel: self._scan_safely(tree, rel), files))
        for rel_path, (scan, error) in zip(files, results):
            if error is not None:
                logger.warning("Skipping %s: %s", rel_path, error.reason)
                errors.append(str(error))
                continue
            scans[rel_path] = scan
        return scans, errors

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _component_root_of(self, rel_path: str) -> Optional[str]:
        for root in self.component_roots:
            if rel_path.startswith(root.rstrip("/") + "/"):
                return root.rstrip("/")
        return None

    def _candidates(self, tree: SourceTree, importer: str, specifier: str) -> Optional[List[str]]:
        """Project paths a path-like specifier may point at, or None for bare specifiers."""
        for prefix, targets in self.aliases.items():
            if specifier.startswith(prefix):
                rest = specifier[len(prefix):]
                if isinstance(targets, str):
                    targets = [targets]
                return [posixpath.join(t.rstrip("/"), rest) for t in targets if tree.is_dir(t)]
        if specifier.startswith("./") or specifier.startswith("../") or specifier in (".", ".."):
            base = posixpath.dirname(importer)
            return [posixpath.normpath(posixpath.join(base, specifier))]
        if specifier.startswith("/"):
            return [specifier.lstrip("/")]
        return None

    @staticmethod
    def _resolve_file(tree: SourceTree, base: str) -> Optional[str]:
        if base.endswith(SOURCE_EXTENSIONS) and tree.exists(base):
            return base
        for ext in SOURCE_EXTENSIONS:
            if tree.exists(base + ext):
                return base + ext
        for ext in SOURCE_EXTENSIONS:
            candidate = f"{base}/index{ext}"
            if tree.exists(candidate):
                return candidate
        return None

    def _resolve(self, tree: SourceTree, importer: str, specifier: str) -> Tuple[str, Optional[str]]:
        """Resolve a specifier.

        Returns:
            ``("file", path)``, ``("package", name)``, ``("unresolved", None)``
            or ``("ignored", None)``.
        """
        candidates = self._candidates(tree, importer, specifier)
        if candidates is None:
            name = package_name(specifier)
            if self.manifest.is_declared(name):
                return "package", name
            return "ignored", None
        if specifier.lower().endswith(_ASSET_SUFFIXES):
            return "ignored", None
        for base in candidates:
            resolved = self._resolve_file(tree, base)
            if resolved:
                return "file", resolved
        return "unresolved", None

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def _assign_identities(self, component_files: Sequence[str]) -> Dict[str, str]:
        """Map component path -> identity (file stem, or root-relative path on collision)."""
        def stem(path: str) -> str:
            return posixpath.basename(path).split(".", 1)[0]

        taken: Dict[str, int] = {name: 1 for name in self.manifest.declared()}
        for path in component_files:
            taken[stem(path)] = taken.get(stem(path), 0) + 1

        identities: Dict[str, str] = {}
        for path in component_files:
            name = stem(path)
            if taken[name] > 1:
                root = self._component_root_of(path) or ""
                name = posixpath.splitext(path[len(root):].lstrip("/"))[0]
            identities[path] = name
        return identities

    def _is_protected(self, name: str, exports: ExportSignature) -> bool:
        if name in self.protected:
            return True
        return any(symbol in self.protected for symbol in exports.values | exports.types)

    def _status(self, count: int, files: int, imported: bool) -> UsageStatus:
        if count == 0:
            return UsageStatus.IMPORT_ONLY if imported else UsageStatus.UNREFERENCED
        if files <= 1 and count <= self.rarely_used_threshold:
            return UsageStatus.RARELY_USED
        return UsageStatus.RENDERED

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def classify(self, tree: SourceTree) -> UsageGraph:
        files = list(tree.iter_source_files())
        scans, scan_errors = self.scan_all(tree, files)

        component_files = [f for f in files if self._component_root_of(f) and f in scans]
        identities = self._assign_identities(component_files)
        paths_by_identity = {i: p for p, i in identities.items()}

        # identity -> consumer file -> [count, first line]
        sites: Dict[str, Dict[str, List[int]]] = {i: {} for i in identities.values()}
        importers: Dict[str, List[str]] = {i: [] for i in identities.values()}
        pkg_sites: Dict[str, Dict[str, List[int]]] = {n: {} for n in self.manifest.declared()}
        references: Dict[str, Tuple[str, ...]] = {}
        unresolved: Dict[str, Tuple[str, ...]] = {}
        # barrel path -> [(target identity, exported names or None)]
        forwards: Dict[str, List[Tuple[str, Optional[Set[str]]]]] = {}

        resolved_imports: Dict[str, List[Tuple[ImportRecord, str, Optional[str]]]] = {}
        for rel_path in sorted(scans):
            entries = []
            for record in scans[rel_path].imports:
                kind, target = self._resolve(tree, rel_path, record.specifier)
                entries.append((record, kind, target))
                if record.is_reexport and kind == "file" and target in identities:
                    forwards.setdefault(rel_path, []).append((identities[target], record.reexport_names))
            resolved_imports[rel_path] = entries

        def add_site(table: Dict[str, List[int]], consumer: str, count: int, line: int) -> None:
            entry = table.setdefault(consumer, [0, line])
            entry[0] += count
            if line and (not entry[1] or line < entry[1]):
                entry[1] = line

        for rel_path in sorted(scans):
            scan = scans[rel_path]
            refs: List[str] = []
            missing: List[str] = []
            for record, kind, target in resolved_imports[rel_path]:
                if kind == "unresolved":
                    missing.append(record.specifier)
                    continue
                if kind == "package":
                    refs.append(target)
                    add_site(pkg_sites[target], rel_path, 1, record.line)
                    continue
                if kind != "file":
                    continue

                targets: List[Tuple[str, List[ImportBinding]]] = []
                if target in identities:
                    targets.append((identities[target], record.bindings))
                for forwarded, names in forwards.get(target, []):
                    bindings = [b for b in record.bindings if names is None or b.imported in names or b.imported == "*"]
                    if bindings or record.dynamic:
                        targets.append((forwarded, bindings))

                for identity, bindings in targets:
                    refs.append(identity)
                    if rel_path == paths_by_identity[identity]:
                        continue
                    if rel_path not in importers[identity]:
                        importers[identity].append(rel_path)
                    if record.dynamic:
                        add_site(sites[identity], rel_path, 1, record.line)
                        continue
                    for binding in bindings:
                        count, line = count_invocations(scan.body, binding)
                        if count:
                            add_site(sites[identity], rel_path, count, line)

            if refs:
                references[rel_path] = tuple(dict.fromkeys(refs))
            if missing:
                unresolved[rel_path] = tuple(missing)

        units: Dict[str, CodeUnit] = {}
        for index, path in enumerate(component_files):
            identity = identities[path]
            scan = scans[path]
            usage = tuple(
                UsageSite(Location(consumer, line), count)
                for consumer, (count, line) in sorted(sites[identity].items())
            )
            protected = self._is_protected(identity, scan.exports)
            total = sum(site.count for site in usage)
            status = UsageStatus.PROTECTED if protected else self._status(
                total, len(usage), bool(importers[identity])
            )
            units[identity] = CodeUnit(
                name=identity,
                kind="component",
                path=path,
                declarations=(Location(path, 1),),
                usage_sites=usage,
                importers=tuple(sorted(importers[identity])),
                exports=scan.exports,
                status=status,
                protected=protected,
                declaration_index=index,
            )

        offset = len(units)
        for index, name in enumerate(self.manifest.declared()):
            usage = tuple(
                UsageSite(Location(consumer, line), count)
                for consumer, (count, line) in sorted(pkg_sites[name].items())
            )
            protected = name in self.protected
            if protected:
                status = UsageStatus.PROTECTED
            else:
                status = UsageStatus.RENDERED if usage else UsageStatus.UNREFERENCED
            units[name] = CodeUnit(
                name=name,
                kind="package",
                declarations=(Location("package.json", self.manifest.line_of(name)),),
                usage_sites=usage,
                importers=tuple(s.location.file_path for s in usage),
                status=status,
                protected=protected,
                declaration_index=offset + index,
            )

        graph = UsageGraph(
            units=units,
            references=references,
            unresolved=unresolved,
            scan_errors=tuple(scan_errors),
        )
        logger.info(
            "Classified %d components and %d packages (%d files, %d skipped)",
            len(component_files), len(graph.packages()), len(scans), len(scan_errors),
        )
        return graph

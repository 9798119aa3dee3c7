"""Export scanning and inert stub generation.

A stub replaces a removed component file in place. It exposes exactly the
exported names of the original so importers keep compiling, while every
value export is an inert callable that renders nothing.
"""

from __future__ import annotations

import re
from typing import Iterator, List, Set, Tuple

from .models import ExportSignature

STUB_MARKER = "@bundle-pruner-stub"

_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT_RE = re.compile(r"^\s*//.*$", re.MULTILINE)

_DECL_RE = re.compile(
    r"\bexport\s+(?:declare\s+)?(?:async\s+)?"
    r"(?:const\s+enum|abstract\s+class|function\*?|class|enum)\s+([A-Za-z_$][\w$]*)"
)
_VAR_DECL_RE = re.compile(r"\bexport\s+(?:declare\s+)?(?:const|let|var)\s+(?!enum\b)")
_IDENT_RE = re.compile(r"[A-Za-z_$][\w$]*")
_TYPE_DECL_RE = re.compile(r"\bexport\s+(?:declare\s+)?(?:type|interface)\s+([A-Za-z_$][\w$]*)")
_LIST_RE = re.compile(r"\bexport\s+(type\s+)?\{([^}]*)\}")
_DEFAULT_RE = re.compile(r"\bexport\s+default\b")
_STAR_RE = re.compile(r"\bexport\s+\*\s+from\s+['\"]([^'\"]+)['\"]")
_STAR_AS_RE = re.compile(r"\bexport\s+\*\s+as\s+([A-Za-z_$][\w$]*)\s+from\b")

_TRAILING_COMMENT_RE = re.compile(r"//[^\n]*")

_TS_SUFFIXES = (".ts", ".tsx")

_OPENERS = "([{"
_CLOSERS = ")]}"
# A line break does not end a statement after or before one of these
_CONTINUES_AFTER = set(",=+-*/%&|^!?:.")
_CONTINUES_BEFORE = set(",.=?:&|")


def strip_comments(content: str) -> str:
    """Drop block comments and whole-line ``//`` comments, keeping line numbers."""
    without_blocks = _BLOCK_COMMENT_RE.sub(lambda m: "\n" * m.group(0).count("\n"), content)
    return _LINE_COMMENT_RE.sub("", without_blocks)


def _skip_string(text: str, start: int) -> int:
    quote = text[start]
    i = start + 1
    while i < len(text):
        if text[i] == "\\":
            i += 2
            continue
        if text[i] == quote:
            return i + 1
        i += 1
    return len(text)


def _top_level(text: str, start: int = 0) -> Iterator[Tuple[int, str]]:
    """Yield ``(index, char)`` for characters outside any bracket pair.

    Openers and the closers that return to the outer level are yielded too,
    string literals are yielded as their opening quote and trailing ``//``
    comments are skipped. A closer with no matching opener ends the walk and
    is yielded as an empty character.
    """
    depth = 0
    i = start
    while i < len(text):
        ch = text[i]
        if ch in "'\"`":
            if depth == 0:
                yield i, ch
            i = _skip_string(text, i)
            continue
        if text.startswith("//", i):
            end = text.find("\n", i)
            i = len(text) if end == -1 else end
            continue
        if ch in _CLOSERS:
            depth -= 1
            if depth < 0:
                yield i, ""
                return
        if depth == 0:
            yield i, ch
        if ch in _OPENERS:
            depth += 1
        i += 1


def _find_top_level(text: str, target: str) -> int:
    for i, ch in _top_level(text):
        if ch == target:
            return i
    return -1


def _split_top_level(text: str) -> List[str]:
    parts: List[str] = []
    start = 0
    for i, ch in _top_level(text):
        if ch == ",":
            parts.append(text[start:i])
            start = i + 1
    parts.append(text[start:])
    return parts


def _balanced(text: str) -> str:
    """The leading bracketed group of *text*, e.g. ``{ a, b }`` of ``{ a, b }: Props``."""
    for i, ch in _top_level(text):
        if i > 0 and ch in _CLOSERS:
            return text[:i + 1]
    return text


def _statement_end(source: str, start: int) -> int:
    """Index where the variable statement starting at *start* ends."""
    last = ""
    for i, ch in _top_level(source, start):
        if ch in (";", ""):
            return i
        if ch == "\n":
            following = source[i + 1:].lstrip()[:1]
            if last and last not in _CONTINUES_AFTER and following not in _CONTINUES_BEFORE:
                return i
        elif not ch.isspace():
            last = ch
    return len(source)


def _declarator_bindings(body: str) -> List[str]:
    """Binding text of each declarator in ``a = 1, { b } = obj``."""
    bindings: List[str] = []
    start = 0
    angle = 0
    in_binding = True
    for i, ch in _top_level(body):
        if ch == ",":
            if in_binding and angle:
                continue
            if in_binding:
                bindings.append(body[start:i])
            in_binding = True
            start = i + 1
        elif not in_binding:
            continue
        elif ch == "<":
            angle += 1
        elif ch == ">" and angle and body[i - 1] != "=":
            angle -= 1
        elif ch == "=" and not angle and body[i + 1:i + 2] != ">":
            bindings.append(body[start:i])
            in_binding = False
    if in_binding:
        bindings.append(body[start:])
    return bindings


def _binding_names(binding: str) -> List[str]:
    """Names bound by an identifier or a destructuring pattern."""
    binding = _TRAILING_COMMENT_RE.sub("", binding).strip()
    if binding[:1] in ("{", "["):
        return _pattern_names(_balanced(binding))
    match = _IDENT_RE.match(binding)
    return [match.group(0)] if match else []


def _pattern_names(pattern: str) -> List[str]:
    is_object = pattern.startswith("{")
    inner = pattern[1:-1] if pattern[-1:] in ("}", "]") else pattern[1:]
    names: List[str] = []
    for element in _split_top_level(inner):
        element = element.strip()
        if element.startswith("..."):
            element = element[3:].strip()
        if is_object:
            # `key: target` renames, `name = fallback` does not
            colon = _find_top_level(element, ":")
            eq = _find_top_level(element, "=")
            if colon >= 0 and (eq < 0 or colon < eq):
                element = element[colon + 1:].strip()
        eq = _find_top_level(element, "=")
        if eq >= 0:
            element = element[:eq]
        names.extend(_binding_names(element))
    return names


def extract_exports(content: str) -> ExportSignature:
    """Scan module source and return its export signature."""
    source = strip_comments(content)
    values: Set[str] = set()
    types: Set[str] = set()
    has_default = bool(_DEFAULT_RE.search(source))
    star_sources = set(_STAR_RE.findall(source))

    values.update(_DECL_RE.findall(source))
    for match in _VAR_DECL_RE.finditer(source):
        body = source[match.end():_statement_end(source, match.end())]
        for binding in _declarator_bindings(body):
            values.update(_binding_names(binding))
    values.update(_STAR_AS_RE.findall(source))
    types.update(_TYPE_DECL_RE.findall(source))

    for match in _LIST_RE.finditer(source):
        list_is_type = bool(match.group(1))
        for item in match.group(2).split(","):
            item = item.strip()
            if not item:
                continue
            item_is_type = list_is_type
            if item.startswith("type "):
                item_is_type = True
                item = item[5:].strip()
            parts = item.split()
            exported = parts[-1] if len(parts) >= 3 and parts[-2] == "as" else parts[0]
            if exported == "default":
                has_default = True
            elif item_is_type:
                types.add(exported)
            else:
                values.add(exported)

    return ExportSignature(
        values=frozenset(values),
        types=frozenset(types),
        has_default=has_default,
        star_sources=frozenset(star_sources),
    )


def is_stub(content: str) -> bool:
    return STUB_MARKER in content.split("\n", 1)[0]


def render_stub(unit_name: str, exports: ExportSignature, suffix: str = ".tsx") -> str:
    """Render an inert replacement module with the given export signature.

    Args:
        unit_name: Identity of the removed unit, recorded in the header.
        exports: Signature the stub must expose.
        suffix: File suffix of the original; TypeScript syntax is only
            emitted for ``.ts``/``.tsx``.
    """
    typed = suffix in _TS_SUFFIXES
    lines: List[str] = [
        f"// {STUB_MARKER} {unit_name}",
        "// Generated placeholder. Restore with `bprune restore`.",
    ]
    if typed:
        lines.append("const __inert: any = (..._args: any[]): any => null;")
    else:
        lines.append("const __inert = (..._args) => null;")

    for name in sorted(exports.values):
        lines.append(f"export const {name}{': any' if typed else ''} = __inert;")
    if typed:
        for name in sorted(exports.types):
            lines.append(f"export type {name} = any;")
    if exports.has_default:
        lines.append("export default __inert;")
    for source in sorted(exports.star_sources):
        lines.append(f"export * from '{source}';")
    return "\n".join(lines) + "\n"

"""Tests for export scanning and stub rendering."""

from pathlib import Path

import pytest

from bundle_pruner.models import ExportSignature
from bundle_pruner.stubs import extract_exports, is_stub, render_stub


class TestExtractExports:
    """Tests for extract_exports."""

    def test_declarations(self):
        """Test function, class, const and enum exports."""
        source = (
            "export function Button() {}\n"
            "export async function load() {}\n"
            "export class Store {}\n"
            "export const SIZE = 3;\n"
            "export let counter = 0;\n"
            "export const enum Mode { A }\n"
            "export enum Color { Red }\n"
        )
        sig = extract_exports(source)

        assert sig.values == {"Button", "load", "Store", "SIZE", "counter", "Mode", "Color"}
        assert sig.types == frozenset()
        assert not sig.has_default

    def test_declarator_lists(self):
        """Test every declarator of a variable statement is exported."""
        source = (
            "export const a = 1, b = 2;\n"
            "export let first = fn(1, 2),\n"
            "  second = [3, 4]\n"
            "export var third = 'x, y'\n"
        )
        assert extract_exports(source).values == {"a", "b", "first", "second", "third"}

    def test_destructured_declarations(self):
        """Test object and array patterns, renames, defaults and rest elements."""
        source = (
            "export const { c, d } = obj;\n"
            "export const [e, , f = 2, ...rest] = arr;\n"
            "export const { g: renamed, h = 1, i: { j }, ...others } = config;\n"
            "export const { k, l }: Pair = pair, [m] = list;\n"
        )
        sig = extract_exports(source)

        assert sig.values == {
            "c", "d", "e", "f", "rest", "renamed", "h", "j", "others", "k", "l", "m",
        }

    def test_typed_and_arrow_declarations(self):
        """Test type annotations with commas and multi-line arrow components."""
        source = (
            "export const cache: Map<string, number> = new Map(), size = 0;\n"
            "export const onClick: (a: string, b: number) => void = () => {};\n"
            "export const Card = ({ title, body }: Props) => {\n"
            "  const x = 1, y = 2;\n"
            "  return <div>{title}</div>;\n"
            "};\n"
            "export declare const VERSION: string;\n"
        )
        sig = extract_exports(source)

        assert sig.values == {"cache", "size", "onClick", "Card", "VERSION"}

    def test_stub_keeps_destructured_names(self):
        """Test that a stub of a destructuring module still exports every name."""
        original = "export const { c, d } = obj, e = 1;\n"
        stub = render_stub("Thing", extract_exports(original), ".ts")

        assert extract_exports(stub).values == {"c", "d", "e"}

    def test_type_exports(self):
        """Test type aliases, interfaces and type-only lists."""
        source = (
            "export type Props = { a: string };\n"
            "export interface State { b: number }\n"
            "type Hidden = string;\n"
            "export type { Hidden as Visible };\n"
        )
        sig = extract_exports(source)

        assert sig.types == {"Props", "State", "Visible"}
        assert sig.values == frozenset()

    def test_export_lists_and_aliases(self):
        """Test export lists, renames and inline type specifiers."""
        source = (
            "const a = 1; const b = 2;\n"
            "export { a, b as bee, type T };\n"
            "export { helper } from './helper';\n"
        )
        sig = extract_exports(source)

        assert sig.values == {"a", "bee", "helper"}
        assert sig.types == {"T"}

    def test_default_exports(self):
        """Test both default export forms."""
        assert extract_exports("export default function App() {}").has_default
        assert extract_exports("const X = 1;\nexport { X as default };").has_default
        assert "App" not in extract_exports("export default function App() {}").values

    def test_star_exports(self):
        """Test star re-exports and namespace re-exports."""
        source = "export * from './a';\nexport * as icons from './icons';\n"
        sig = extract_exports(source)

        assert sig.star_sources == {"./a"}
        assert sig.values == {"icons"}

    def test_comments_are_ignored(self):
        """Test that commented-out exports do not count."""
        source = (
            "// export function Old() {}\n"
            "/* export const Gone = 1;\n   export class Also {} */\n"
            "export const Kept = 1;\n"
        )
        assert extract_exports(source).values == {"Kept"}


class TestRenderStub:
    """Tests for render_stub and is_stub."""

    @pytest.mark.parametrize(
        "relative",
        [
            "client/src/components/Footer.tsx",
            "client/src/components/Sidebar.tsx",
            "client/src/components/LegacyChart.tsx",
            "client/src/components/ui/card.tsx",
        ],
    )
    def test_stub_preserves_signature(self, sample_frontend_path: Path, relative: str):
        """Test that a stub exposes exactly the original's exported names."""
        original = (sample_frontend_path / relative).read_text()
        signature = extract_exports(original)

        stub = render_stub("unit", signature, ".tsx")

        assert extract_exports(stub) == signature
        assert extract_exports(stub).symbol_names == signature.symbol_names

    def test_stub_keeps_star_reexports(self):
        """Test that star re-exports are carried over verbatim."""
        signature = ExportSignature(values=frozenset({"Icon"}), star_sources=frozenset({"./icons"}))
        stub = render_stub("icons", signature, ".ts")

        assert "export * from './icons';" in stub
        assert extract_exports(stub) == signature

    def test_js_stub_has_no_type_syntax(self):
        """Test that .js stubs are plain JavaScript."""
        signature = ExportSignature(values=frozenset({"widget"}), has_default=True)
        stub = render_stub("widget", signature, ".jsx")

        assert ": any" not in stub
        assert "export const widget = __inert;" in stub
        assert "export default __inert;" in stub

    def test_is_stub(self):
        """Test stub detection."""
        stub = render_stub("Card", ExportSignature(values=frozenset({"Card"})))

        assert is_stub(stub)
        assert not is_stub("export function Card() {}\n")

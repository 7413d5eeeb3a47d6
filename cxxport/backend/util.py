"""Shared utilities for the code generators."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

from cxxport.ir import Diagnostic, Function

# Go reserved words that need renaming
GO_RESERVED = frozenset(
    {
        "break",
        "case",
        "chan",
        "const",
        "continue",
        "default",
        "defer",
        "else",
        "fallthrough",
        "for",
        "func",
        "go",
        "goto",
        "if",
        "import",
        "interface",
        "map",
        "package",
        "range",
        "return",
        "select",
        "struct",
        "switch",
        "type",
        "var",
    }
)

RUST_RESERVED = frozenset(
    {
        "as", "async", "await", "break", "const", "continue", "crate", "dyn",
        "else", "enum", "extern", "false", "fn", "for", "if", "impl", "in",
        "let", "loop", "match", "mod", "move", "mut", "pub", "ref", "return",
        "self", "Self", "static", "struct", "super", "trait", "true", "type",
        "union", "unsafe", "use", "where", "while", "abstract", "become", "box",
        "do", "final", "macro", "override", "priv", "try", "typeof", "unsized",
        "virtual", "yield",
    }
)  # fmt: skip

# Method names for overloaded operators, shared by both targets.
OPERATOR_NAMES: dict[str, str] = {
    "operator==": "eq",
    "operator!=": "ne",
    "operator<": "lt",
    "operator<=": "le",
    "operator>": "gt",
    "operator>=": "ge",
    "operator<=>": "cmp",
    "operator+": "add",
    "operator-": "sub",
    "operator*": "mul",
    "operator/": "div",
    "operator%": "rem",
    "operator+=": "add_assign",
    "operator-=": "sub_assign",
    "operator*=": "mul_assign",
    "operator/=": "div_assign",
    "operator[]": "index",
    "operator()": "call",
    "operator<<": "shl",
    "operator>>": "shr",
    "operator!": "not",
    "operator=": "assign",
    "operator bool": "to_bool",
    "operator++": "increment",
    "operator--": "decrement",
}


@dataclass
class CodegenOptions:
    """Generation knobs; see TranspileOptions for the user-facing side.

    | opt_level | provenance comments | safety commentary     |
    |-----------|---------------------|-----------------------|
    | 0         | yes                 | when safety_checks    |
    | 1         | no                  | when safety_checks    |
    | 2, 3      | no                  | no                    |
    """

    opt_level: int = 1
    safety_checks: bool = True
    preserve_comments: bool = True
    generate_tests: bool = False
    package_name: str = "main"

    @property
    def provenance(self) -> bool:
        return self.opt_level == 0

    @property
    def safety(self) -> bool:
        return self.safety_checks and self.opt_level <= 1


def _upper_first(s: str) -> str:
    """Uppercase the first character of a string."""
    return (s[0].upper() + s[1:]) if s else ""


def method_base_name(name: str) -> str:
    """Identifier-safe name for a C++ function name, operators included."""
    if name.startswith("operator"):
        return OPERATOR_NAMES.get(name, "op_" + re.sub(r"\W", "_", name[8:]).strip("_"))
    return name


def to_snake(name: str) -> str:
    """Convert camelCase/PascalCase to snake_case."""
    name = name.strip("_")
    if name.startswith("m_") and len(name) > 2:
        name = name[2:]
    if "_" in name or name.islower():
        return name.lower()
    s1 = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", name)
    return re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", s1).lower()


def to_pascal(name: str) -> str:
    """Convert snake_case or camelCase to PascalCase."""
    name = name.strip("_")
    parts = name.split("_")
    return "".join(_upper_first(p) for p in parts)


def to_screaming_snake(name: str) -> str:
    """Convert to SCREAMING_SNAKE_CASE."""
    if name.isupper():
        return name
    return to_snake(name).upper()


def go_to_camel(name: str) -> str:
    """Convert snake_case to camelCase for Go."""
    if name.startswith("m_") and len(name) > 2:
        name = name[2:]
    name = name.strip("_")
    parts = name.split("_")
    if not parts or not name:
        return name
    # All-caps names (constants) should use PascalCase in Go
    if name.isupper():
        return "".join(_upper_first(p.lower()) for p in parts)
    result = parts[0][:1].lower() + parts[0][1:] + "".join(_upper_first(p) for p in parts[1:])
    if result in GO_RESERVED:
        return result + "_"
    return result


def go_exported(name: str, exported: bool) -> str:
    """Go identifier: CapitalCase when exported, camelCase otherwise."""
    if exported:
        if name.startswith("m_") and len(name) > 2:
            name = name[2:]
        return to_pascal(name)
    return go_to_camel(name)


def rust_ident(name: str) -> str:
    """snake_case Rust identifier, escaping keywords."""
    snake = to_snake(name)
    if snake in RUST_RESERVED:
        return "r#" + snake
    return snake


def unique_names(funcs: list[Function], base: Callable[[Function], str]) -> dict[int, str]:
    """Target names for a list of possibly overloaded functions.

    The first occurrence keeps its name; later overloads get a numeric
    suffix (`new`, `new_1`, `new_2`).
    """
    seen: dict[str, int] = {}
    result: dict[int, str] = {}
    for func in funcs:
        name = base(func)
        count = seen.get(name, 0)
        seen[name] = count + 1
        result[id(func)] = name if count == 0 else name + "_" + str(count)
    return result


class Emitter:
    """Base class for code emitters with indentation tracking.

    Generators never raise on content; lowering gaps are collected in
    `warnings` and written into the output as `untranslated:` comments.
    """

    def __init__(self, indent_str: str = "    ") -> None:
        self.indent: int = 0
        self.lines: list[str] = []
        self.warnings: list[Diagnostic] = []
        self._indent_str = indent_str

    def line(self, text: str = "") -> None:
        """Emit a line with current indentation. Embedded newlines keep their relative indent."""
        if not text:
            self.lines.append("")
            return
        for part in text.split("\n"):
            if part:
                self.lines.append(self._indent_str * self.indent + part)
            else:
                self.lines.append("")

    def output(self) -> str:
        """Return the accumulated output as a string."""
        return "\n".join(self.lines)

    def warn(self, message: str, line: int = 0) -> None:
        self.warnings.append(Diagnostic("warning", "generate", message, line))

    def capture(self) -> list[str]:
        """Swap out the current line buffer, returning it."""
        saved = self.lines
        self.lines = []
        return saved


def variant_name(name: str) -> str:
    """Enumerator or error-variant name in CapitalCase: `RED` -> `Red`, `out_of_range` -> `OutOfRange`."""
    if "::" in name:
        name = name.rsplit("::", 1)[1]
    if name.isupper():
        name = name.lower()
    return to_pascal(name)

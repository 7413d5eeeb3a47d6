"""Template analyzer: parameter lists, constraints and specializations.

Also holds the conversion tables from C++ concepts to Rust trait bounds and
Go type constraints, so both generators agree on them.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from cxxport.frontend.lexer import (
    TK_IDENT,
    Token,
    find_matching,
    join_tokens,
    split_tokens,
)
from cxxport.frontend.types import resolve_tokens
from cxxport.ir import IR, ClassDecl, Function, TemplateFeatures, TemplateParameter
from cxxport.middleend.scan import body_tokens

RUST_BOUNDS: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        "std::integral": ("Copy", "Ord"),
        "std::signed_integral": ("Copy", "Ord"),
        "std::unsigned_integral": ("Copy", "Ord"),
        "std::floating_point": ("Copy", "PartialOrd"),
        "std::equality_comparable": ("PartialEq",),
        "std::totally_ordered": ("PartialOrd",),
        "std::three_way_comparable": ("PartialOrd",),
        "std::copyable": ("Clone",),
        "std::copy_constructible": ("Clone",),
        "std::movable": (),
        "std::default_initializable": ("Default",),
        "std::semiregular": ("Clone", "Default"),
        "std::regular": ("Clone", "Default", "PartialEq"),
        "std::invocable": ("Fn()",),
        "std::destructible": (),
    }
)

GO_CONSTRAINTS: Mapping[str, str] = MappingProxyType(
    {
        "std::integral": "~int | ~int8 | ~int16 | ~int32 | ~int64 | ~uint | ~uint8 | ~uint16 | ~uint32 | ~uint64",
        "std::signed_integral": "~int | ~int8 | ~int16 | ~int32 | ~int64",
        "std::unsigned_integral": "~uint | ~uint8 | ~uint16 | ~uint32 | ~uint64",
        "std::floating_point": "~float32 | ~float64",
        "std::equality_comparable": "comparable",
        "std::totally_ordered": "cmp.Ordered",
        "std::three_way_comparable": "cmp.Ordered",
    }
)


def analyze_templates(ir: IR) -> None:
    """Fill TemplateFeatures on every class and function that has a template prefix."""
    for cls in ir.classes:
        analyze_class(cls, ir)
    for func in ir.all_functions():
        analyze_function(func, ir)


def analyze_class(cls: ClassDecl, ir: IR | None = None) -> None:
    _apply(cls.templates, "", ir)


def analyze_function(func: Function, ir: IR | None = None) -> None:
    _apply(func.templates, requires_clause(func.signature), ir)


def _apply(features: TemplateFeatures, trailing_requires: str, ir: IR | None) -> None:
    decl = features.declaration
    if not decl:
        return
    features.is_template = True
    params, is_full = parse_template_declaration(decl, ir)
    if trailing_requires:
        apply_requires(params, trailing_requires)
    features.parameters = params
    spec = features.specialization
    if is_full:
        spec.is_specialization = True
        spec.is_partial = False
    elif spec.specialized_args:
        spec.is_specialization = True
        spec.is_partial = True


def parse_template_declaration(
    decl: str, ir: IR | None = None
) -> tuple[list[TemplateParameter], bool]:
    """Parse `template<...> [requires ...]`.

    Returns the parameters and whether this is a full specialization
    (`template<>`).
    """
    tokens = body_tokens(decl)
    if len(tokens) < 3 or tokens[0].type != "template" or not tokens[1].is_op("<"):
        return [], False
    close = find_matching(tokens, 1)
    if close < 0:
        return [], False
    inner = tokens[2:close]
    if not inner:
        return [], True
    params = [parse_template_parameter(part, ir) for part in split_tokens(inner) if part]
    rest = tokens[close + 1 :]
    if rest and rest[0].type == "requires":
        apply_requires(params, join_tokens(rest[1:]))
    return params, False


def parse_template_parameter(tokens: list[Token], ir: IR | None = None) -> TemplateParameter:
    """Classify one parameter: `typename T = int`, `size_t N`, `std::integral T`, ..."""
    default = ""
    for idx, tok in enumerate(tokens):
        if tok.is_op("=") and _top_level(tokens, idx):
            default = join_tokens(tokens[idx + 1 :])
            tokens = tokens[:idx]
            break
    variadic = any(t.is_op("...") for t in tokens)
    words = [t for t in tokens if not t.is_op("...")]
    if not words:
        return TemplateParameter("type", "", default_value=default)

    head = words[0]
    if head.type == "template":
        close = find_matching(words, 1) if len(words) > 1 and words[1].is_op("<") else 0
        name = _last_ident(words[close + 1 :])
        return TemplateParameter("template", name, default, is_variadic=variadic)
    if head.type in ("typename", "class"):
        name = _last_ident(words[1:])
        return TemplateParameter("type", name, default, is_variadic=variadic)

    # `Type name`: a non-type parameter or a constrained type parameter.
    if words[-1].type == TK_IDENT and len(words) > 1:
        name = words[-1].value
        type_tokens = words[:-1]
    else:
        name = ""
        type_tokens = words
    concept = join_tokens(type_tokens)
    base = concept.split("<", 1)[0].strip()
    known = ir.concepts if ir is not None else []
    if base in RUST_BOUNDS or base in known or base.startswith("std::") and base not in _STD_VALUE_TYPES:
        return TemplateParameter("type", name, default, constraints=[concept], is_variadic=variadic)
    param_type = resolve_tokens(type_tokens, ir, set())
    if param_type.kind in ("class", "struct"):
        # An unknown name used as a type: treat as a user concept.
        return TemplateParameter("type", name, default, constraints=[concept], is_variadic=variadic)
    return TemplateParameter("non_type", name, default, param_type=param_type, is_variadic=variadic)


_STD_VALUE_TYPES: set[str] = {
    "std::size_t",
    "std::ptrdiff_t",
    "std::int8_t",
    "std::int16_t",
    "std::int32_t",
    "std::int64_t",
    "std::uint8_t",
    "std::uint16_t",
    "std::uint32_t",
    "std::uint64_t",
}


def apply_requires(params: list[TemplateParameter], clause: str) -> None:
    """Attach `A<T> && B<T, U>` conjuncts to the parameters they constrain."""
    by_name = {p.name: p for p in params if p.name}
    tokens = body_tokens(clause)
    for conj in split_tokens(tokens, "&&"):
        if len(conj) >= 2 and conj[0].is_op("(") and find_matching(conj, 0) == len(conj) - 1:
            conj = conj[1:-1]
        lt = -1
        for idx, tok in enumerate(conj):
            if tok.is_op("<"):
                lt = idx
                break
        if lt <= 0:
            continue
        close = find_matching(conj, lt)
        if close < 0:
            continue
        name = join_tokens(conj[:lt])
        args = [join_tokens(a) for a in split_tokens(conj[lt + 1 : close])]
        if not args or args[0] not in by_name:
            continue
        constraint = name if len(args) == 1 else name + "<" + ", ".join(args[1:]) + ">"
        target = by_name[args[0]]
        if constraint not in target.constraints:
            target.constraints.append(constraint)


def requires_clause(signature: str) -> str:
    """Text of a trailing `requires` clause in a function signature, or ""."""
    tokens = body_tokens(signature)
    for idx in range(len(tokens) - 1, -1, -1):
        if tokens[idx].type == "requires":
            return join_tokens(tokens[idx + 1 :])
    return ""


def _top_level(tokens: list[Token], idx: int) -> bool:
    depth = 0
    for tok in tokens[:idx]:
        if tok.is_op("<") or tok.is_op("(") or tok.is_op("["):
            depth += 1
        elif tok.is_op(">") or tok.is_op(")") or tok.is_op("]"):
            depth -= 1
        elif tok.is_op(">>"):
            depth -= 2
    return depth <= 0


def _last_ident(tokens: list[Token]) -> str:
    for tok in reversed(tokens):
        if tok.type == TK_IDENT:
            return tok.value
    return ""


# ============================================================
# CONVERSION TABLES
# ============================================================


def rust_bounds(param: TemplateParameter) -> list[str]:
    """Rust trait bounds for a type parameter, deduplicated, in order."""
    bounds: list[str] = []
    for c in param.constraints:
        base = c.split("<", 1)[0].strip()
        if base in RUST_BOUNDS:
            mapped = list(RUST_BOUNDS[base])
        else:
            mapped = [_pascal(base)]
        for b in mapped:
            if b not in bounds:
                bounds.append(b)
    return bounds


def go_constraint(param: TemplateParameter) -> str:
    """Go constraint for a type parameter; `any` when unconstrained."""
    parts: list[str] = []
    for c in param.constraints:
        base = c.split("<", 1)[0].strip()
        if base in GO_CONSTRAINTS:
            mapped = GO_CONSTRAINTS[base]
        elif base.startswith("std::"):
            mapped = "any"
        else:
            mapped = _pascal(base)
        if mapped not in parts:
            parts.append(mapped)
    parts = [p for p in parts if p != "any"] or ["any"]
    if len(parts) == 1:
        return parts[0]
    return "interface{ " + "; ".join(parts) + " }"


def _pascal(name: str) -> str:
    if "::" in name:
        name = name.rsplit("::", 1)[1]
    return "".join(p[:1].upper() + p[1:] for p in name.split("_") if p)

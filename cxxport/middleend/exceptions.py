"""Exception analyzer: exception specs, try/catch regions, throw sites."""

from __future__ import annotations

from cxxport.frontend.lexer import TK_IDENT, Token, find_matching, join_tokens, split_tokens
from cxxport.ir import IR, CatchClause, ExceptionSpec, Function, TryCatchBlock
from cxxport.middleend.scan import body_tokens

STD_EXCEPTIONS: set[str] = {
    "std::exception",
    "std::runtime_error",
    "std::logic_error",
    "std::invalid_argument",
    "std::out_of_range",
    "std::length_error",
    "std::domain_error",
    "std::range_error",
    "std::overflow_error",
    "std::underflow_error",
    "std::system_error",
    "std::bad_alloc",
    "std::bad_cast",
    "std::bad_optional_access",
    "std::bad_variant_access",
    "std::bad_function_call",
}


def analyze_exceptions(ir: IR) -> None:
    for func in ir.all_functions():
        analyze_function(func)
    mark_exception_classes(ir)


def analyze_function(func: Function) -> None:
    feats = func.exceptions
    feats.spec = parse_exception_spec(func.signature)
    tokens = body_tokens(func.body)
    feats.try_catch_blocks = find_try_blocks(tokens, func.body)
    thrown: list[str] = []
    may_throw = False
    for i, tok in enumerate(tokens):
        if tok.type != "throw":
            continue
        may_throw = True
        name = _thrown_type(tokens, i + 1)
        if name and name not in thrown:
            thrown.append(name)
    feats.may_throw = may_throw
    feats.thrown_types = thrown


def parse_exception_spec(signature: str) -> ExceptionSpec:
    """Read `noexcept`, `noexcept(expr)` and dynamic `throw(...)` from a signature."""
    spec = ExceptionSpec()
    tokens = body_tokens(signature)
    # Qualifiers follow the parameter list: start after the first top-level `(...)`.
    i = 0
    while i < len(tokens):
        if tokens[i].is_op("<"):
            close = find_matching(tokens, i)
            if close > 0:
                i = close + 1
                continue
        if tokens[i].is_op("("):
            close = find_matching(tokens, i)
            i = close + 1 if close > 0 else len(tokens)
            break
        i += 1
    while i < len(tokens):
        tok = tokens[i]
        if tok.type == "noexcept":
            if i + 1 < len(tokens) and tokens[i + 1].is_op("("):
                close = find_matching(tokens, i + 1)
                expr = join_tokens(tokens[i + 2 : close]).strip()
                if expr == "false":
                    return spec
            spec.can_throw = False
            spec.is_noexcept = True
            return spec
        if tok.type == "throw" and i + 1 < len(tokens) and tokens[i + 1].is_op("("):
            close = find_matching(tokens, i + 1)
            types = [join_tokens(p) for p in split_tokens(tokens[i + 2 : close])]
            if not types:
                spec.can_throw = False
            spec.throw_types = types
            return spec
        i += 1
    return spec


def find_try_blocks(tokens: list[Token], text: str) -> list[TryCatchBlock]:
    """Every try region in source order, nested ones after their enclosing try."""
    blocks: list[TryCatchBlock] = []
    for i, tok in enumerate(tokens):
        if tok.type != "try" or i + 1 >= len(tokens) or not tokens[i + 1].is_op("{"):
            continue
        close = find_matching(tokens, i + 1)
        if close < 0:
            continue
        block = TryCatchBlock(_inner_text(text, tokens, i + 1, close))
        j = close + 1
        while j + 1 < len(tokens) and tokens[j].type == "catch" and tokens[j + 1].is_op("("):
            decl_close = find_matching(tokens, j + 1)
            if decl_close < 0 or decl_close + 1 >= len(tokens) or not tokens[decl_close + 1].is_op("{"):
                break
            exc_type, exc_var = catch_declaration(tokens[j + 2 : decl_close])
            handler_close = find_matching(tokens, decl_close + 1)
            if handler_close < 0:
                break
            handler = _inner_text(text, tokens, decl_close + 1, handler_close)
            block.catch_clauses.append(CatchClause(exc_type, exc_var, handler))
            j = handler_close + 1
        blocks.append(block)
    return blocks


def mark_exception_classes(ir: IR) -> None:
    """Flag classes that derive, directly or through other classes, from std exceptions."""
    changed = True
    while changed:
        changed = False
        for cls in ir.classes:
            if cls.is_exception:
                continue
            for base in cls.base_classes:
                short = base.split("<", 1)[0].strip()
                parent = ir.find_class(short)
                if short in STD_EXCEPTIONS or (parent is not None and parent.is_exception):
                    cls.is_exception = True
                    changed = True
                    break


def catch_declaration(tokens: list[Token]) -> tuple[str, str]:
    if len(tokens) == 1 and tokens[0].is_op("..."):
        return "...", ""
    words = [t for t in tokens if t.type != "const" and not t.is_op("&") and not t.is_op("&&") and not t.is_op("*")]
    if len(words) >= 2 and words[-1].type == TK_IDENT and not words[-2].is_op("::"):
        return join_tokens(words[:-1]), words[-1].value
    return join_tokens(words), ""


def _thrown_type(tokens: list[Token], i: int) -> str:
    """`throw ns::Err(...)` -> `ns::Err`; rethrow and thrown variables yield ""."""
    parts: list[str] = []
    while i < len(tokens) and (tokens[i].type == TK_IDENT or tokens[i].is_op("::")):
        parts.append(tokens[i].value)
        i += 1
    if i < len(tokens) and tokens[i].is_op("<"):
        close = find_matching(tokens, i)
        if close > 0:
            i = close + 1
    if parts and i < len(tokens) and (tokens[i].is_op("(") or tokens[i].is_op("{")):
        return "".join(parts)
    return ""


def _inner_text(text: str, tokens: list[Token], open_idx: int, close_idx: int) -> str:
    return text[tokens[open_idx].end : tokens[close_idx].pos].strip()

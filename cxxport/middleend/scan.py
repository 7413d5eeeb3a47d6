"""Token-level helpers shared by the feature analyzers."""

from __future__ import annotations

from cxxport.errors import TokenizeError
from cxxport.frontend.lexer import (
    TK_EOF,
    TK_IDENT,
    Token,
    find_matching,
    join_tokens,
    split_tokens,
    tokenize,
)


def body_tokens(text: str) -> list[Token]:
    """Tokens of an opaque body, without the EOF marker. [] if untokenizable."""
    if not text:
        return []
    try:
        tokens = tokenize(text)
    except TokenizeError:
        return []
    return [t for t in tokens if t.type != TK_EOF]


def statement_end(tokens: list[Token], i: int) -> int:
    """Index of the `;` ending the statement that contains tokens[i]."""
    while i < len(tokens):
        tok = tokens[i]
        if tok.is_op(";"):
            return i
        if tok.is_op("(") or tok.is_op("[") or tok.is_op("{"):
            close = find_matching(tokens, i)
            if close < 0:
                return len(tokens)
            i = close + 1
            continue
        if tok.is_op("}"):
            return i
        i += 1
    return len(tokens)


def call_args(tokens: list[Token], open_idx: int) -> tuple[list[str], int]:
    """Arguments of the call whose `(` is at open_idx, split at depth 0.

    Returns the argument texts and the index of the closing `)`.
    """
    close = find_matching(tokens, open_idx)
    if close < 0:
        return [], len(tokens)
    return [join_tokens(p) for p in split_tokens(tokens[open_idx + 1 : close])], close


def is_std(tokens: list[Token], i: int, names: set[str] | tuple[str, ...]) -> bool:
    """tokens[i:i+3] spell `std::<name>` for one of names."""
    return (
        i + 2 < len(tokens)
        and tokens[i].value == "std"
        and tokens[i + 1].is_op("::")
        and tokens[i + 2].value in names
    )


def member_call(tokens: list[Token], i: int) -> tuple[str, str, int] | None:
    """Match `obj.method(` or `obj->method(` or `this->obj.method(` at i.

    Returns (object name, method, index of `(`) or None.
    """
    j = i
    if tokens[j].type == "this" and j + 2 < len(tokens) and tokens[j + 1].is_op("->"):
        j += 2
    if j + 3 >= len(tokens) or tokens[j].type != TK_IDENT:
        return None
    if not (tokens[j + 1].is_op(".") or tokens[j + 1].is_op("->")):
        return None
    if not tokens[j + 2].is_word() or not tokens[j + 3].is_op("("):
        return None
    if i > 0 and (tokens[i - 1].is_op(".") or tokens[i - 1].is_op("->")) and tokens[i].type != "this":
        return None
    return tokens[j].value, tokens[j + 2].value, j + 3


def assigned_name(tokens: list[Token], i: int) -> str:
    """Name assigned the expression starting at tokens[i], via `name =`."""
    if i >= 2 and tokens[i - 1].is_op("=") and tokens[i - 2].type == TK_IDENT:
        return tokens[i - 2].value
    return ""


def at_statement_start(tokens: list[Token], i: int) -> bool:
    return i == 0 or tokens[i - 1].is_op(";") or tokens[i - 1].is_op("{") or tokens[i - 1].is_op("}")


def strip_this(text: str) -> str:
    text = text.strip()
    if text.startswith("this->"):
        return text[len("this->") :].strip()
    return text


def block_end(tokens: list[Token], i: int) -> int:
    """Index of the `}` closing the block that contains tokens[i]."""
    depth = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok.is_op("{"):
            depth += 1
        elif tok.is_op("}"):
            if depth == 0:
                return i
            depth -= 1
        i += 1
    return len(tokens)

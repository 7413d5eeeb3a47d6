"""Frontend package - converts C++ source text to IR."""

from .lexer import Token, split_top_level, strip_comments, tokenize
from .parse import parse
from .types import resolve_type

__all__ = [
    "Token",
    "parse",
    "resolve_type",
    "split_top_level",
    "strip_comments",
    "tokenize",
]

"""Fatal error taxonomy.

Content-level translation gaps are never raised; they become Diagnostic
records (see cxxport.ir). Only file-system and configuration problems,
plus the lexer's unrecoverable input errors, surface as exceptions.
"""

from __future__ import annotations


class TranspileError(Exception):
    """Base error for the transpiler."""

    def __init__(self, msg: str):
        super().__init__(msg)
        self.msg = msg


class InputError(TranspileError):
    """Input file missing, unreadable or not UTF-8."""


class ConfigError(TranspileError):
    """Invalid option, or no code generator for the requested target."""


class TokenizeError(TranspileError):
    """Unterminated comment or literal. Caught by the parser."""

    def __init__(self, msg: str, line: int, col: int):
        super().__init__(msg + " at line " + str(line) + " col " + str(col))
        self.msg = msg
        self.line: int = line
        self.col: int = col

"""cxxport - translate C++ to Rust and Go, or bridge it through a C ABI."""

from __future__ import annotations

__version__ = "0.1.0"

from .driver import TranspileOptions, TranspileResult, Transpiler, transpile, transpile_batch
from .errors import ConfigError, InputError, TokenizeError, TranspileError
from .frontend import parse
from .middleend import analyze

__all__ = [
    "ConfigError",
    "InputError",
    "TokenizeError",
    "TranspileError",
    "TranspileOptions",
    "TranspileResult",
    "Transpiler",
    "__version__",
    "analyze",
    "parse",
    "transpile",
    "transpile_batch",
]

"""Backend package - code generators from the analyzed IR."""

from .go import GoBackend
from .rust import RustBackend
from .util import CodegenOptions, Emitter

__all__ = [
    "CodegenOptions",
    "Emitter",
    "GoBackend",
    "RustBackend",
]

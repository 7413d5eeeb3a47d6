"""FFI subsystem: expose a C++ API to Rust or Go through a C ABI.

`generate_bindings` is the single entry point: it analyzes the C++
declarations, then renders Rust `extern "C"` bindings, Go cgo bindings,
or the C wrapper (header followed by implementation) that both link
against.
"""

from __future__ import annotations

import logging

from cxxport.errors import ConfigError

from .analyzer import (
    FFIAnalyzer,
    FFIClass,
    FFIFunction,
    FFIModule,
    FFIParameter,
    FFIType,
    FFITypeError,
    analyze_ffi,
)
from .cwrapper import CWrapperGenerator, generate_c_wrapper_files
from .go import GoFFIGenerator, generate_go_bindings
from .rust import RustFFIGenerator, generate_rust_bindings

logger = logging.getLogger(__name__)

FFI_TARGETS = ("rust", "go", "c-wrapper")


def generate_c_wrapper(source: str, library_name: str) -> tuple[str, str]:
    """(header, implementation) of the C wrapper for a C++ source."""
    if not library_name:
        raise ConfigError("library name must not be empty")
    return generate_c_wrapper_files(analyze_ffi(source, library_name))


def generate_bindings(source: str, library_name: str, target: str, package_name: str = "") -> str:
    """Bindings for `target`: "rust", "go" or "c-wrapper"."""
    if target not in FFI_TARGETS:
        raise ConfigError("unknown FFI target: " + target + " (expected one of " + ", ".join(FFI_TARGETS) + ")")
    if not library_name:
        raise ConfigError("library name must not be empty")
    module = analyze_ffi(source, library_name)
    logger.debug("ffi: generating %s bindings for %s", target, library_name)
    if target == "rust":
        return generate_rust_bindings(module)
    if target == "go":
        return generate_go_bindings(module, package_name)
    header, impl = generate_c_wrapper_files(module)
    return header + "\n" + impl


__all__ = [
    "CWrapperGenerator",
    "FFIAnalyzer",
    "FFIClass",
    "FFIFunction",
    "FFIModule",
    "FFIParameter",
    "FFIType",
    "FFITypeError",
    "FFI_TARGETS",
    "GoFFIGenerator",
    "RustFFIGenerator",
    "analyze_ffi",
    "generate_bindings",
    "generate_c_wrapper",
]

"""Pipeline driver: read, parse, analyze, generate.

Each translation unit gets a fresh IR. Batch runs are sequential and a
failure in one file leaves the next untouched.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field

from .backend import CodegenOptions, GoBackend, RustBackend
from .errors import ConfigError, InputError
from .ffi import FFI_TARGETS, analyze_ffi
from .ffi.cwrapper import generate_c_wrapper_files
from .ffi.go import generate_go_bindings
from .ffi.rust import generate_rust_bindings
from .frontend import parse
from .ir import IR, Diagnostic
from .middleend import analyze

logger = logging.getLogger(__name__)

GENERATORS: dict[str, type[RustBackend] | type[GoBackend]] = {
    "rust": RustBackend,
    "go": GoBackend,
}

EXTENSIONS: dict[str, str] = {
    "rust": ".rs",
    "go": ".go",
    "c-wrapper": "_ffi.h",
}

_GO_PACKAGE = re.compile(r"^[a-z_][a-z0-9_]*$")


@dataclass
class TranspileOptions:
    """Every knob the command line exposes.

    | Field             | Meaning                                               |
    |-------------------|-------------------------------------------------------|
    | target            | "rust" or "go"; "c-wrapper" only with ffi             |
    | output_path       | None derives `<input stem>.<ext>`                     |
    | opt_level         | 0..3, controls commentary only                        |
    | safety_checks     | SAFETY notes on raw pointers / nil-check reminders    |
    | preserve_comments | carry declaration comments as doc comments            |
    | generate_tests    | Rust test module / Go `_test.go` companion            |
    | package_name      | Go package clause                                     |
    | library_name      | FFI link name; "" derives it from the input stem      |
    | ffi               | emit bindings instead of a translation                |
    """

    target: str = "rust"
    output_path: str | None = None
    opt_level: int = 0
    safety_checks: bool = True
    preserve_comments: bool = True
    generate_tests: bool = False
    package_name: str = "main"
    library_name: str = ""
    ffi: bool = False

    def validate(self) -> None:
        """Raise ConfigError for any value the pipeline cannot honor."""
        targets = FFI_TARGETS if self.ffi else tuple(GENERATORS)
        if self.target not in targets:
            if self.target in FFI_TARGETS:
                raise ConfigError("target '" + self.target + "' is only available with --ffi")
            raise ConfigError("unknown target '" + self.target + "' (expected " + ", ".join(targets) + ")")
        if isinstance(self.opt_level, bool) or not isinstance(self.opt_level, int):
            raise ConfigError("optimization level must be an integer")
        if not 0 <= self.opt_level <= 3:
            raise ConfigError("optimization level must be between 0 and 3, got " + str(self.opt_level))
        if not _GO_PACKAGE.match(self.package_name):
            raise ConfigError("invalid Go package name '" + self.package_name + "'")
        if self.library_name and not re.match(r"^[A-Za-z_][\w.-]*$", self.library_name):
            raise ConfigError("invalid library name '" + self.library_name + "'")

    def codegen_options(self) -> CodegenOptions:
        return CodegenOptions(
            opt_level=self.opt_level,
            safety_checks=self.safety_checks,
            preserve_comments=self.preserve_comments,
            generate_tests=self.generate_tests,
            package_name=self.package_name,
        )


@dataclass
class TranspileResult:
    """Output of one translation unit.

    `companions` holds extra files as (path, text): the Go `_test.go`
    source, or the C++ implementation of a C wrapper header. Without an
    output path a companion path is just its suffix.
    """

    code: str
    output_path: str = ""
    companions: list[tuple[str, str]] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    warnings: list[Diagnostic] = field(default_factory=list)
    ir: IR | None = None

    @property
    def test_code(self) -> str:
        for path, text in self.companions:
            if path.endswith("_test.go"):
                return text
        return ""

    def all_diagnostics(self) -> list[Diagnostic]:
        return self.diagnostics + self.warnings


def derive_output_path(input_path: str, target: str) -> str:
    """`point.cpp` -> `point.rs`; `point` -> `point.rs`; a C wrapper gets `point_ffi.h`."""
    stem, ext = os.path.splitext(input_path)
    if not ext:
        stem = input_path
    return stem + EXTENSIONS[target]


def read_source(path: str) -> str:
    """Read a UTF-8 source file or raise InputError."""
    try:
        with open(path, "rb") as f:
            raw = f.read()
    except FileNotFoundError:
        raise InputError("input file not found: " + path) from None
    except OSError as e:
        raise InputError("cannot read '" + path + "': " + (e.strerror or str(e))) from None
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        raise InputError("invalid utf-8 in '" + path + "'") from None


def _companion(output_path: str, suffix: str) -> str:
    if not output_path:
        return suffix
    stem, _ = os.path.splitext(output_path)
    return stem + suffix


class Transpiler:
    """Bound to one target; reusable across any number of inputs.

    The generator is looked up at construction, so a target with no
    registered generator fails before any input is read.
    """

    def __init__(self, options: TranspileOptions | None = None, generators: dict[str, type] | None = None) -> None:
        self.options = options or TranspileOptions()
        self.options.validate()
        registry = GENERATORS if generators is None else generators
        self.generator_class: type | None = None
        if not self.options.ffi:
            if self.options.target not in registry:
                raise ConfigError("no code generator registered for target '" + self.options.target + "'")
            self.generator_class = registry[self.options.target]

    def transpile_source(self, source: str, output_path: str = "", library_name: str = "") -> TranspileResult:
        """Translate C++ text. Content problems become diagnostics, never exceptions."""
        if self.options.ffi:
            return self._bindings(source, output_path, library_name or self.options.library_name or "cxxport")
        ir = analyze(parse(source))
        if self.generator_class is None:
            raise ConfigError("no code generator registered for target '" + self.options.target + "'")
        generator = self.generator_class(self.options.codegen_options())
        code = generator.emit(ir)
        result = TranspileResult(code, output_path, diagnostics=list(ir.diagnostics), warnings=list(generator.warnings), ir=ir)
        test_source = getattr(generator, "test_source", "")
        if test_source:
            result.companions.append((_companion(output_path, "_test.go"), test_source))
        logger.debug(
            "generated %d lines, %d diagnostics, %d warnings",
            code.count("\n"),
            len(result.diagnostics),
            len(result.warnings),
        )
        return result

    def _bindings(self, source: str, output_path: str, library_name: str) -> TranspileResult:
        module = analyze_ffi(source, library_name)
        target = self.options.target
        warnings = [Diagnostic("warning", "ffi", name + " not exported: " + reason) for name, reason in module.skipped()]
        if target == "rust":
            return TranspileResult(generate_rust_bindings(module), output_path, warnings=warnings)
        if target == "go":
            package = self.options.package_name if self.options.package_name != "main" else ""
            return TranspileResult(generate_go_bindings(module, package), output_path, warnings=warnings)
        header, impl = generate_c_wrapper_files(module)
        result = TranspileResult(header, output_path, warnings=warnings)
        result.companions.append((_companion(output_path, ".cpp"), impl))
        return result

    def transpile_file(self, input_path: str) -> TranspileResult:
        """Read one file and translate it; raises InputError when it cannot be read."""
        output_path = self.options.output_path or derive_output_path(input_path, self.options.target)
        logger.info("transpiling %s -> %s (%s)", input_path, output_path, self.options.target)
        source = read_source(input_path)
        library = self.options.library_name or os.path.splitext(os.path.basename(input_path))[0]
        return self.transpile_source(source, output_path, library)

    def transpile_batch(self, input_paths: list[str]) -> list[TranspileResult]:
        """Translate files in order, each with a fresh IR. Stops at the first unreadable file."""
        if self.options.output_path and len(input_paths) > 1:
            raise ConfigError("an explicit output path cannot be used with several inputs")
        return [self.transpile_file(path) for path in input_paths]


def transpile(source: str, target: str = "rust", **kwargs: object) -> str:
    """Translate C++ source text to `target` and return the generated code."""
    options = TranspileOptions(target=target, **kwargs)  # type: ignore[arg-type]
    return Transpiler(options).transpile_source(source).code


def transpile_batch(input_paths: list[str], options: TranspileOptions | None = None) -> list[TranspileResult]:
    return Transpiler(options).transpile_batch(input_paths)

"""Command-line entry point."""

from __future__ import annotations

import logging
import sys

from . import __version__
from .driver import TranspileOptions, Transpiler, read_source
from .errors import ConfigError, InputError
from .frontend import parse
from .ir import Diagnostic
from .middleend import analyze
from .serialize import to_json

USAGE: str = """\
cxxport [OPTIONS] INPUT...

Translate C++ source files to Rust or Go, or generate FFI bindings.

Options:
  -i, --input FILE        Input C++ file (may repeat; positional inputs also work)
  -o, --output FILE       Output file, '-' for stdout [default: INPUT with .rs/.go]
  -t, --target LANG       rust, go, or c-wrapper (with --ffi) [default: rust]
  -O, --opt-level N       0 = readable, 1 = balanced, 2 = optimized,
                          3 = aggressive [default: 0]
  --no-safety-checks      Omit SAFETY notes on raw pointers
  --no-comments           Do not carry source comments into the output
  --gen-tests             Generate test scaffolding
  --package NAME          Go package name [default: main]
  --ffi                   Generate FFI bindings instead of a translation
  --library NAME          Library name for FFI bindings [default: INPUT stem]
  --emit-ir               Print the analyzed IR as JSON and stop
  -q, --quiet             Do not print warnings
  --verbose               Log pipeline progress to stderr
  -h, --help              Show this help message
  -v, --version           Show version information
"""


class UsageError(Exception):
    pass


def _value(args: list[str], i: int) -> str:
    if i + 1 >= len(args):
        raise UsageError(args[i] + " requires an argument")
    return args[i + 1]


def parse_args(argv: list[str]) -> tuple[TranspileOptions, list[str], dict[str, bool]]:
    """Parse command-line arguments. Returns (options, inputs, flags)."""
    options = TranspileOptions()
    inputs: list[str] = []
    flags = {"emit_ir": False, "quiet": False, "verbose": False, "stdout": False}
    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg in ("-h", "--help"):
            print(USAGE, end="")
            sys.exit(0)
        elif arg in ("-v", "--version"):
            print("cxxport " + __version__)
            sys.exit(0)
        elif arg in ("-i", "--input"):
            inputs.append(_value(argv, i))
            i += 2
        elif arg in ("-o", "--output"):
            out = _value(argv, i)
            if out == "-":
                flags["stdout"] = True
            else:
                options.output_path = out
            i += 2
        elif arg in ("-t", "--target"):
            options.target = _value(argv, i)
            i += 2
        elif arg in ("-O", "--opt-level") or (arg.startswith("-O") and arg[2:].isdigit()):
            if arg[2:].isdigit():
                text = arg[2:]
                i += 1
            else:
                text = _value(argv, i)
                i += 2
            try:
                options.opt_level = int(text)
            except ValueError:
                raise UsageError("invalid optimization level '" + text + "' (expected 0-3)") from None
        elif arg == "--no-safety-checks":
            options.safety_checks = False
            i += 1
        elif arg == "--no-comments":
            options.preserve_comments = False
            i += 1
        elif arg == "--gen-tests":
            options.generate_tests = True
            i += 1
        elif arg == "--package":
            options.package_name = _value(argv, i)
            i += 2
        elif arg == "--ffi":
            options.ffi = True
            i += 1
        elif arg == "--library":
            options.library_name = _value(argv, i)
            i += 2
        elif arg == "--emit-ir":
            flags["emit_ir"] = True
            i += 1
        elif arg in ("-q", "--quiet"):
            flags["quiet"] = True
            i += 1
        elif arg == "--verbose":
            flags["verbose"] = True
            i += 1
        elif arg.startswith("-"):
            raise UsageError("unknown option '" + arg + "'")
        else:
            inputs.append(arg)
            i += 1
    if not inputs:
        raise UsageError("no input file specified")
    if options.output_path and len(inputs) > 1:
        raise UsageError("-o cannot be used with more than one input")
    return options, inputs, flags


def write_output(output: str, output_file: str) -> int:
    """Write output to file or stdout. Returns 0 on success, 1 on error."""
    if not output_file:
        sys.stdout.write(output)
        return 0
    try:
        with open(output_file, "w", encoding="utf-8") as f:
            f.write(output)
    except OSError:
        print("error: cannot write '" + output_file + "'", file=sys.stderr)
        return 1
    return 0


def _report(diagnostics: list[Diagnostic], input_path: str, quiet: bool) -> None:
    if quiet:
        return
    for d in diagnostics:
        prefix = input_path + ":" + str(d.line) + ": " if d.line else input_path + ": "
        print(prefix + d.severity + ": " + d.message, file=sys.stderr)


def _failed(diagnostics: list[Diagnostic]) -> bool:
    """A parse-level error makes the run fail even though output is still written."""
    return any(d.severity == "error" and d.phase == "parse" for d in diagnostics)


def _configure_logging(verbose: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger("cxxport")
    if not root.handlers:
        root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)


def run(options: TranspileOptions, inputs: list[str], flags: dict[str, bool]) -> int:
    """Process every input in order. Returns the process exit code."""
    transpiler = Transpiler(options)
    status = 0
    for path in inputs:
        try:
            if flags["emit_ir"]:
                ir = analyze(parse(read_source(path)))
                _report(ir.diagnostics, path, flags["quiet"])
                sys.stdout.write(to_json(ir) + "\n")
                if _failed(ir.diagnostics):
                    status = 1
                continue
            result = transpiler.transpile_file(path)
        except InputError as e:
            print("error: " + e.msg, file=sys.stderr)
            status = 1
            continue
        _report(result.all_diagnostics(), path, flags["quiet"])
        if _failed(result.diagnostics):
            status = 1
        if flags["stdout"]:
            sys.stdout.write(result.code)
            for _, text in result.companions:
                sys.stdout.write("\n" + text)
            continue
        if write_output(result.code, result.output_path) != 0:
            status = 1
            continue
        for companion, text in result.companions:
            if write_output(text, companion) != 0:
                status = 1
    return status


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    try:
        options, inputs, flags = parse_args(sys.argv[1:] if argv is None else argv)
    except UsageError as e:
        print("error: " + str(e), file=sys.stderr)
        print("run 'cxxport --help' for usage", file=sys.stderr)
        return 2
    _configure_logging(flags["verbose"])
    try:
        return run(options, inputs, flags)
    except ConfigError as e:
        print("error: " + e.msg, file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())

"""Tests for the pipeline driver and IR serialization."""

import json

import pytest

from cxxport.driver import (
    Transpiler,
    TranspileOptions,
    derive_output_path,
    read_source,
    transpile,
    transpile_batch,
)
from cxxport.errors import ConfigError, InputError
from cxxport.frontend import parse
from cxxport.middleend import analyze
from cxxport.serialize import serialize, to_json

POINT = """
class Point {
public:
    Point(int x, int y) : x(x), y(y) {}
    int distance() const { return x * x + y * y; }
private:
    int x;
    int y;
};
"""


# ---------------------------------------------------------------------------
# Output paths
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "path,target,expected",
    [
        ("point.cpp", "rust", "point.rs"),
        ("point.cpp", "go", "point.go"),
        ("src/point.hpp", "rust", "src/point.rs"),
        ("point", "rust", "point.rs"),
        ("point.cpp", "c-wrapper", "point_ffi.h"),
    ],
)
def test_derive_output_path(path, target, expected):
    assert derive_output_path(path, target) == expected


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


def test_default_options_valid():
    TranspileOptions().validate()


def test_unknown_target():
    with pytest.raises(ConfigError, match="unknown target 'python'"):
        TranspileOptions(target="python").validate()


def test_c_wrapper_requires_ffi():
    with pytest.raises(ConfigError, match="only available with --ffi"):
        TranspileOptions(target="c-wrapper").validate()
    TranspileOptions(target="c-wrapper", ffi=True).validate()


@pytest.mark.parametrize("level", [-1, 4])
def test_opt_level_out_of_range(level):
    with pytest.raises(ConfigError, match="between 0 and 3"):
        TranspileOptions(opt_level=level).validate()


def test_opt_level_not_bool():
    with pytest.raises(ConfigError, match="must be an integer"):
        TranspileOptions(opt_level=True).validate()


def test_invalid_package_name():
    with pytest.raises(ConfigError, match="invalid Go package name 'My-Pkg'"):
        TranspileOptions(target="go", package_name="My-Pkg").validate()


def test_invalid_library_name():
    with pytest.raises(ConfigError, match="invalid library name"):
        TranspileOptions(ffi=True, library_name="lib geom").validate()


def test_codegen_options_carry_over():
    opts = TranspileOptions(opt_level=2, generate_tests=True, package_name="geo").codegen_options()
    assert opts.opt_level == 2
    assert opts.generate_tests
    assert opts.package_name == "geo"
    assert not opts.safety


def test_missing_generator_fails_early():
    with pytest.raises(ConfigError, match="no code generator registered for target 'go'"):
        Transpiler(TranspileOptions(target="go"), generators={})


def test_ffi_transpiler_switched_to_translation_raises_config_error():
    transpiler = Transpiler(TranspileOptions(target="rust", ffi=True))
    transpiler.options.ffi = False
    with pytest.raises(ConfigError, match="no code generator registered for target 'rust'"):
        transpiler.transpile_source("int f() { return 1; }")


# ---------------------------------------------------------------------------
# Reading input
# ---------------------------------------------------------------------------


def test_read_source(tmp_path):
    path = tmp_path / "a.cpp"
    path.write_text("int f() { return 1; }\n", encoding="utf-8")
    assert read_source(str(path)) == "int f() { return 1; }\n"


def test_read_missing_source(tmp_path):
    with pytest.raises(InputError, match="input file not found"):
        read_source(str(tmp_path / "nope.cpp"))


def test_read_invalid_utf8(tmp_path):
    path = tmp_path / "bad.cpp"
    path.write_bytes(b"int f() { return 1; } // \xff\xfe\n")
    with pytest.raises(InputError, match="invalid utf-8"):
        read_source(str(path))


# ---------------------------------------------------------------------------
# Transpiling
# ---------------------------------------------------------------------------


def test_transpile_rust():
    code = transpile(POINT, "rust")
    assert "pub struct Point {" in code
    assert "pub fn distance(&self) -> i32 {" in code


def test_transpile_go():
    code = transpile(POINT, "go")
    assert "package main" in code
    assert "type Point struct {" in code


def test_transpile_options_forwarded():
    code = transpile(POINT, "go", package_name="geometry")
    assert "package geometry" in code


def test_transpile_rejects_bad_options():
    with pytest.raises(ConfigError):
        transpile(POINT, "cobol")


def test_result_diagnostics_for_broken_input():
    result = Transpiler().transpile_source("class A { /* never closed")
    assert any(d.severity == "error" for d in result.diagnostics)
    assert result.code


def test_result_keeps_ir():
    result = Transpiler().transpile_source(POINT)
    assert result.ir is not None
    assert [c.name for c in result.ir.classes] == ["Point"]


def test_go_test_companion():
    options = TranspileOptions(target="go", generate_tests=True)
    result = Transpiler(options).transpile_source(POINT, "point.go")
    assert result.companions[0][0] == "point_test.go"
    assert 'import "testing"' in result.test_code


def test_go_unreachable_catch_handler_warns():
    source = """
void risky(int x) { if (x < 0) throw std::invalid_argument("negative"); }
void work(int x) {
    try { risky(x); }
    catch (const std::invalid_argument& e) { std::cout << "bad"; }
    catch (...) { std::cout << "other"; }
}
"""
    result = Transpiler(TranspileOptions(target="go")).transpile_source(source)
    assert "// untranslated: catch (...) { ... }" in result.code
    messages = [w.message for w in result.warnings]
    assert any("handler unreachable after catch (" in m and "untyped errors" in m for m in messages)


def test_rust_tests_stay_inline():
    options = TranspileOptions(target="rust", generate_tests=True)
    result = Transpiler(options).transpile_source(POINT, "point.rs")
    assert result.companions == []
    assert "#[cfg(test)]" in result.code


def test_transpile_file(tmp_path):
    path = tmp_path / "point.cpp"
    path.write_text(POINT, encoding="utf-8")
    result = Transpiler(TranspileOptions(target="go")).transpile_file(str(path))
    assert result.output_path == str(tmp_path / "point.go")
    assert "func NewPoint(" in result.code


def test_transpile_batch_fresh_ir_per_file(tmp_path):
    a = tmp_path / "a.cpp"
    b = tmp_path / "b.cpp"
    a.write_text("class A { public: int v; };", encoding="utf-8")
    b.write_text("class B { public: int w; };", encoding="utf-8")
    results = transpile_batch([str(a), str(b)])
    assert [r.output_path for r in results] == [str(tmp_path / "a.rs"), str(tmp_path / "b.rs")]
    assert [c.name for c in results[1].ir.classes] == ["B"]
    assert "pub struct A" not in results[1].code


def test_batch_rejects_single_output_path(tmp_path):
    with pytest.raises(ConfigError, match="cannot be used with several inputs"):
        transpile_batch(["a.cpp", "b.cpp"], TranspileOptions(output_path="out.rs"))


def test_batch_stops_on_missing_file(tmp_path):
    with pytest.raises(InputError):
        transpile_batch([str(tmp_path / "missing.cpp")])


# ---------------------------------------------------------------------------
# FFI through the driver
# ---------------------------------------------------------------------------


FFI_SOURCE = """
class Calculator {
public:
    int add(int x) { return x; }
};
int checked(int x) { if (x < 0) throw 1; return x; }
"""


def test_ffi_library_from_file_stem(tmp_path):
    path = tmp_path / "geom.cpp"
    path.write_text(FFI_SOURCE, encoding="utf-8")
    result = Transpiler(TranspileOptions(target="rust", ffi=True)).transpile_file(str(path))
    assert '#[link(name = "geom")]' in result.code


def test_ffi_skipped_become_warnings():
    options = TranspileOptions(target="rust", ffi=True, library_name="geom")
    result = Transpiler(options).transpile_source(FFI_SOURCE)
    assert [w.message for w in result.warnings] == ["checked not exported: may throw exceptions"]


def test_ffi_go_package_defaults_to_library():
    options = TranspileOptions(target="go", ffi=True, library_name="geom")
    assert "package geom" in Transpiler(options).transpile_source(FFI_SOURCE).code


def test_ffi_c_wrapper_companion(tmp_path):
    path = tmp_path / "geom.cpp"
    path.write_text(FFI_SOURCE, encoding="utf-8")
    options = TranspileOptions(target="c-wrapper", ffi=True)
    result = Transpiler(options).transpile_file(str(path))
    assert result.output_path == str(tmp_path / "geom_ffi.h")
    assert "#ifndef GEOM_FFI_H" in result.code
    companion_path, impl = result.companions[0]
    assert companion_path == str(tmp_path / "geom_ffi.cpp")
    assert '#include "geom_ffi.h"' in impl


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def test_to_json_tags_root():
    data = json.loads(to_json(analyze(parse(POINT))))
    assert data["_type"] == "IR"
    assert data["classes"][0]["_type"] == "ClassDecl"
    assert data["classes"][0]["name"] == "Point"


def test_serialize_omits_defaults():
    data = serialize(analyze(parse("int f() { return 1; }")))
    func = data["functions"][0]
    assert func["name"] == "f"
    assert "is_virtual" not in func


def test_serialize_type():
    data = serialize(analyze(parse("int* p;")))
    typ = data["globals"][0]["typ"]
    assert typ["kind"] == "pointer"
    assert typ["element"]["name"] == "int"
    assert typ["ownership"] == "borrowed"


def test_serialize_diagnostics_as_text():
    data = serialize(analyze(parse("class A { /* open")))
    assert data["diagnostics"]
    assert all(isinstance(d, str) for d in data["diagnostics"])


def test_serialize_rejects_unknown_objects():
    with pytest.raises(TypeError, match="cannot serialize object"):
        serialize(object())

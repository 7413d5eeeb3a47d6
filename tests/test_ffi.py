"""Tests for FFI analysis and binding generation."""

import pytest

from cxxport.errors import ConfigError
from cxxport.ffi import analyze_ffi, generate_bindings, generate_c_wrapper
from cxxport.ffi.analyzer import FFIFunction

GEOM = """
/// Accumulates integer sums.
class Calculator {
public:
    Calculator() : total(0) {}
    Calculator(int start) : total(start) {}
    ~Calculator() {}
    int add(int x) { total += x; return total; }
    int value() const { return total; }
private:
    int total;
};

struct Point {
    int x;
    int y;
};

int checked(int x) {
    if (x < 0) throw std::runtime_error("negative");
    return x;
}

int label(std::string s) { return 0; }

int area(const Point* p) { return p->x * p->y; }

int main() { return 0; }
"""


@pytest.fixture
def geom():
    return analyze_ffi(GEOM, "geom")


def find_class(module, name):
    for cls in module.classes:
        if cls.name == name:
            return cls
    raise KeyError(name)


def find_function(module, name):
    for func in module.functions:
        if func.name == name:
            return func
    raise KeyError(name)


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


def test_handle_class_symbols(geom):
    calc = find_class(geom, "Calculator")
    assert not calc.is_pod
    assert calc.delete_name == "calculator_delete"
    assert [c.c_name for c in calc.constructors] == ["calculator_new", "calculator_new_1"]
    assert [m.c_name for m in calc.methods] == ["calculator_add", "calculator_value"]


def test_handle_class_keeps_doc(geom):
    assert "Accumulates integer sums." in find_class(geom, "Calculator").doc


def test_const_method_flagged(geom):
    calc = find_class(geom, "Calculator")
    value = [m for m in calc.methods if m.name == "value"][0]
    assert value.is_const
    assert value.is_method


def test_pod_struct_fields(geom):
    point = find_class(geom, "Point")
    assert point.is_pod
    assert [f.name for f in point.fields] == ["x", "y"]
    assert point in geom.pod_classes()


def test_free_functions_prefixed_with_library(geom):
    assert find_function(geom, "area").c_name == "geom_area"
    assert find_function(geom, "checked").c_name == "geom_checked"


def test_main_not_exported(geom):
    assert all(f.name != "main" for f in geom.functions)


def test_throwing_function_skipped(geom):
    checked = find_function(geom, "checked")
    assert not checked.can_use_ffi
    assert checked.reason == "may throw exceptions"


def test_std_string_skipped_with_hint(geom):
    label = find_function(geom, "label")
    assert not label.can_use_ffi
    assert label.reason == "uses C++ standard library type std::string (pass const char* instead)"


def test_pod_pointer_parameter(geom):
    area = find_function(geom, "area")
    assert area.can_use_ffi
    assert area.parameters[0].c_type == "const Point*"


def test_skipped_lists_reasons(geom):
    assert ("checked", "may throw exceptions") in geom.skipped()
    assert [name for name, _ in geom.skipped()] == ["checked", "label"]


def test_non_pod_by_value_rejected():
    module = analyze_ffi(
        "class Big { public: Big() {} int v() const { return 1; } };\nint take(Big b) { return 0; }",
        "big",
    )
    take = find_function(module, "take")
    assert not take.can_use_ffi
    assert take.reason == "passes non-POD class Big by value"


def test_dynamic_exception_spec_rejected():
    module = analyze_ffi("int legacy(int x) throw(int) { return x; }", "old")
    legacy = find_function(module, "legacy")
    assert legacy.reason == "declares a dynamic exception specification"


def test_function_template_rejected():
    module = analyze_ffi("template <typename T> T id(T v) { return v; }", "t")
    assert find_function(module, "id").reason == "template requires monomorphization"


def test_class_template_rejected():
    module = analyze_ffi("template <typename T> class Box { public: T v; };", "t")
    box = find_class(module, "Box")
    assert not box.can_use_ffi
    assert box.reason == "class template requires monomorphization"


def test_coroutine_rejected():
    module = analyze_ffi("Task<int> fetch() { co_return 1; }", "net")
    assert find_function(module, "fetch").reason == "coroutine or asynchronous function"


def test_default_constructor_synthesized():
    module = analyze_ffi("class Counter { public: int next() { return 1; } };", "c")
    counter = find_class(module, "Counter")
    assert [c.c_name for c in counter.constructors] == ["counter_new"]


def test_private_methods_not_exported():
    module = analyze_ffi(
        "class Box { public: int get() { return 1; } private: int hidden() { return 2; } };", "b"
    )
    assert [m.name for m in find_class(module, "Box").methods] == ["get"]


def test_library_name_sanitized():
    module = analyze_ffi("int ping() { return 1; }", "my-lib")
    assert find_function(module, "ping").c_name == "my_lib_ping"


def test_default_return_is_a_fresh_void():
    first = FFIFunction("a", "lib_a", "void", "void")
    second = FFIFunction("b", "lib_b", "void", "void")
    assert first.returns.kind == "void"
    assert first.returns.c == "void"
    assert first.returns is not second.returns


# ---------------------------------------------------------------------------
# Rust bindings
# ---------------------------------------------------------------------------


def test_rust_extern_block():
    out = generate_bindings(GEOM, "geom", "rust")
    assert out.startswith("// Code generated by cxxport. DO NOT EDIT.")
    assert '#[link(name = "geom")]' in out
    assert 'extern "C" {' in out
    assert "fn calculator_new() -> *mut c_void;" in out
    assert "fn calculator_delete(this: *mut c_void);" in out
    assert "fn calculator_value(this: *const c_void) -> i32;" in out


def test_rust_handle_wrapper():
    out = generate_bindings(GEOM, "geom", "rust")
    assert "pub struct Calculator {" in out
    assert "    ptr: *mut c_void," in out
    assert "impl Drop for Calculator {" in out
    assert "unsafe { calculator_delete(self.ptr) }" in out
    assert "pub fn new() -> Self {" in out
    assert "pub fn new_1(start: i32) -> Self {" in out
    assert "pub fn add(&mut self, x: i32) -> i32 {" in out
    assert "pub fn value(&self) -> i32 {" in out


def test_rust_pod_struct():
    out = generate_bindings(GEOM, "geom", "rust")
    assert "#[repr(C)]" in out
    assert "pub struct Point {" in out
    assert "pub x: i32," in out


def test_rust_free_function_wrapper():
    out = generate_bindings(GEOM, "geom", "rust")
    assert "fn geom_area(p: *const Point) -> i32;" in out
    assert "pub fn area(p: &Point) -> i32 {" in out
    assert "unsafe { geom_area(p as *const Point) }" in out


def test_rust_lists_skipped():
    out = generate_bindings(GEOM, "geom", "rust")
    assert "// Not exported (not FFI-compatible):" in out
    assert "//   checked: may throw exceptions" in out
    assert "fn geom_checked" not in out


# ---------------------------------------------------------------------------
# Go bindings
# ---------------------------------------------------------------------------


def test_go_package_and_cgo_preamble():
    out = generate_bindings(GEOM, "geom", "go")
    assert "package geom" in out
    assert "#cgo LDFLAGS: -lgeom -lstdc++" in out
    assert 'import "C"' in out
    assert 'import "unsafe"' in out
    assert "void* calculator_new(void);" in out


def test_go_package_override():
    out = generate_bindings(GEOM, "geom", "go", package_name="shapes")
    assert "package shapes" in out
    assert "package geom" not in out


def test_go_handle_wrapper():
    out = generate_bindings(GEOM, "geom", "go")
    assert "type Calculator struct {" in out
    assert "func NewCalculator() *Calculator {" in out
    assert "func (h *Calculator) Delete() {" in out
    assert "C.calculator_delete(h.ptr)" in out
    assert "func (h *Calculator) Add(x int32) int32 {" in out


def test_go_lists_skipped():
    out = generate_bindings(GEOM, "geom", "go")
    assert "//   label: uses C++ standard library type std::string (pass const char* instead)" in out


# ---------------------------------------------------------------------------
# C wrapper
# ---------------------------------------------------------------------------


def test_c_wrapper_header():
    header, _ = generate_c_wrapper(GEOM, "geom")
    assert "#ifndef GEOM_FFI_H" in header
    assert "#endif /* GEOM_FFI_H */" in header
    assert "void* calculator_new(void);" in header
    assert "void* calculator_new_1(int start);" in header
    assert "void calculator_delete(void* self);" in header
    assert "int calculator_value(const void* self);" in header
    assert "typedef struct Point {" in header
    assert "int geom_area(const Point* p);" in header


def test_c_wrapper_implementation():
    _, impl = generate_c_wrapper(GEOM, "geom")
    assert '#include "geom.hpp"' in impl
    assert '#include "geom_ffi.h"' in impl
    assert "    return new Calculator(start);" in impl
    assert "    delete static_cast<Calculator*>(self);" in impl
    assert "    return static_cast<const Calculator*>(self)->value();" in impl
    assert "    return area(p);" in impl


def test_c_wrapper_target_concatenates():
    out = generate_bindings(GEOM, "geom", "c-wrapper")
    header, impl = generate_c_wrapper(GEOM, "geom")
    assert out == header + "\n" + impl


def test_c_wrapper_omits_skipped():
    header, impl = generate_c_wrapper(GEOM, "geom")
    assert "geom_checked" not in impl
    assert "// Not exported (not FFI-compatible):" in header


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


def test_unknown_target():
    with pytest.raises(ConfigError, match="unknown FFI target: python"):
        generate_bindings(GEOM, "geom", "python")


def test_empty_library_name():
    with pytest.raises(ConfigError, match="library name must not be empty"):
        generate_bindings(GEOM, "", "rust")


def test_empty_library_name_c_wrapper():
    with pytest.raises(ConfigError):
        generate_c_wrapper(GEOM, "")

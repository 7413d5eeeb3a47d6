"""Whole-pipeline properties that hold for every input."""

import pytest

from cxxport.backend.lowering import assigned_names, contains_return, parse_body
from cxxport.driver import Transpiler, TranspileOptions
from cxxport.ffi import generate_bindings
from cxxport.frontend import parse

SOURCES = {
    "classes": """
/// Shapes with an area.
class Shape {
public:
    virtual ~Shape() {}
    virtual int area() const = 0;
};
class Square : public Shape {
public:
    Square(int side) : side(side) {}
    int area() const override { return side * side; }
private:
    int side;
};
enum class Color { Red, Green };
""",
    "concurrency": """
#include <mutex>
class Counter {
public:
    void inc() { std::lock_guard<std::mutex> g(mu); count++; }
private:
    std::mutex mu;
    int count;
};
Task<int> fetch() { co_return 1; }
Task<int> compute() { int v = co_await fetch(); co_return v; }
""",
    "exceptions": """
int checked(int x) {
    if (x < 0) throw std::runtime_error("negative");
    return x;
}
int safe(int x) noexcept { return x; }
""",
    "broken": "class Open { int a; /* unterminated",
}


@pytest.mark.parametrize("name", sorted(SOURCES))
@pytest.mark.parametrize("target", ["rust", "go"])
@pytest.mark.parametrize("opt_level", [0, 1, 2, 3])
def test_output_is_deterministic(name, target, opt_level):
    options = TranspileOptions(target=target, opt_level=opt_level, generate_tests=True)
    first = Transpiler(options).transpile_source(SOURCES[name])
    second = Transpiler(options).transpile_source(SOURCES[name])
    assert first.code == second.code
    assert first.companions == second.companions
    assert [str(d) for d in first.all_diagnostics()] == [str(d) for d in second.all_diagnostics()]


@pytest.mark.parametrize("name", sorted(SOURCES))
@pytest.mark.parametrize("target", ["rust", "go"])
def test_opt_levels_differ_only_in_comments(name, target):
    """Higher levels drop commentary; they never add code."""
    low = Transpiler(TranspileOptions(target=target, opt_level=0)).transpile_source(SOURCES[name]).code
    high = Transpiler(TranspileOptions(target=target, opt_level=3)).transpile_source(SOURCES[name]).code

    def code_lines(text):
        stripped = (line.strip() for line in text.splitlines())
        return [line for line in stripped if line and not line.startswith("//")]

    assert code_lines(high) == code_lines(low)
    assert len(high) <= len(low)


@pytest.mark.parametrize("name", sorted(SOURCES))
def test_transpiler_reusable(name):
    transpiler = Transpiler(TranspileOptions(target="rust"))
    fresh = Transpiler(TranspileOptions(target="rust")).transpile_source(SOURCES[name]).code
    transpiler.transpile_source(SOURCES["classes"])
    assert transpiler.transpile_source(SOURCES[name]).code == fresh


@pytest.mark.parametrize("target", ["rust", "go", "c-wrapper"])
def test_bindings_deterministic(target):
    source = SOURCES["classes"] + SOURCES["exceptions"]
    assert generate_bindings(source, "geom", target) == generate_bindings(source, "geom", target)


# ---------------------------------------------------------------------------
# Structure survives parsing and generation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "body,fields,methods",
    [
        ("", 0, 0),
        ("int a;", 1, 0),
        ("int get() { return 1; }", 0, 1),
        (
            "int a; double b; void set(int v) { if (v) { a = v; } else { a = 0; } }"
            " int get() const { return a; } Box() : a(0), b(0) {}",
            2,
            3,
        ),
    ],
)
def test_class_member_counts(body, fields, methods):
    ir = parse("class Box { public: " + body + " };")
    (cls,) = ir.classes
    assert len(cls.fields) == fields
    assert len(cls.methods) == methods


def test_nested_template_parameter_split():
    ir = parse("void f(std::map<int, std::vector<int>> m, int x) {}")
    assert [p.name for p in ir.functions[0].params] == ["m", "x"]


MIXED = """
class Alpha { public: int a; };
struct Beta { int b; };
class Gamma { public: int get() const { return 1; } };
int first(int x) { return x; }
void second() {}
"""


def test_every_declaration_emitted_rust():
    code = Transpiler(TranspileOptions(target="rust")).transpile_source(MIXED).code
    for name in ("Alpha", "Beta", "Gamma"):
        assert "pub struct " + name in code
    assert "pub fn first(" in code
    assert "pub fn second(" in code


def test_every_declaration_emitted_go():
    code = Transpiler(TranspileOptions(target="go")).transpile_source(MIXED).code
    for name in ("Alpha", "Beta", "Gamma"):
        assert "type " + name + " struct" in code
    assert "func First(" in code
    assert "func Second(" in code


# ---------------------------------------------------------------------------
# Body helpers shared by both generators
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "body,expected",
    [
        ("{ *out = 1; }", set()),
        ("{ x = *p; }", {"x"}),
        ("{ a * b; c = 2; }", {"c"}),
        ("{ n++; --m; }", {"n", "m"}),
        ("{ s.total = 0; }", {"s"}),
    ],
)
def test_assigned_names(body, expected):
    assert assigned_names(body) == expected


def test_contains_return_sees_nested_blocks():
    assert contains_return(parse_body("{ try { if (a) { return 1; } } catch (...) {} }"))
    assert contains_return(parse_body("{ try { f(); } catch (...) { return 2; } }"))
    assert not contains_return(parse_body("{ while (a) { f(); break; } }"))

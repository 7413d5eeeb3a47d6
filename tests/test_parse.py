"""Tests for the structural C++ parser."""

from cxxport.frontend import parse


def warnings_of(ir) -> list[str]:
    return [d.message for d in ir.diagnostics if d.severity == "warning"]


# ---------------------------------------------------------------------------
# Classes
# ---------------------------------------------------------------------------


def test_point_class(point_source):
    ir = parse(point_source)
    assert [c.name for c in ir.classes] == ["Point"]
    point = ir.classes[0]
    assert not point.is_struct
    assert [f.name for f in point.fields] == ["x", "y"]
    assert all(f.access == "private" for f in point.fields)
    assert point.fields[0].typ.kind == "integer"
    ctor = point.constructors()[0]
    assert [p.name for p in ctor.params] == ["x", "y"]
    assert ctor.initializers == [("x", "x"), ("y", "y")]
    assert ctor.return_type is None
    distance = point.method_named("distance")
    assert distance is not None
    assert distance.is_const
    assert distance.has_body
    assert distance.body == "return x * x + y * y;"
    assert distance.access == "public"
    assert ir.diagnostics == []


def test_class_default_access_is_private():
    ir = parse("class A { int hidden; public: int shown; };")
    a = ir.classes[0]
    assert a.field_named("hidden").access == "private"
    assert a.field_named("shown").access == "public"


def test_struct_default_access_is_public():
    ir = parse("struct S { int a; private: int b; };")
    s = ir.classes[0]
    assert s.is_struct
    assert s.field_named("a").access == "public"
    assert s.field_named("b").access == "private"


def test_access_sections_recorded():
    ir = parse("class A { public: void f() {} int n; private: int m; };")
    sections = ir.classes[0].access_sections
    assert [(s.level, s.members) for s in sections] == [("public", ["f", "n"]), ("private", ["m"])]


def test_nested_braces_in_method_body():
    source = """\
class Walker {
public:
    int walk(int n) {
        int total = 0;
        for (int i = 0; i < n; ++i) {
            if (i % 2 == 0) { total += i; }
        }
        return total;
    }
    int after() const { return 1; }
};
"""
    ir = parse(source)
    walker = ir.classes[0]
    assert [m.name for m in walker.methods] == ["walk", "after"]
    assert walker.method_named("walk").body.endswith("return total;")


def test_base_classes_and_virtuals():
    source = """\
class Shape {
public:
    virtual ~Shape() {}
    virtual double area() const = 0;
};
class Circle : public Shape {
public:
    double area() const override { return 1.0; }
};
"""
    ir = parse(source)
    shape, circle = ir.classes
    assert shape.is_abstract
    area = shape.method_named("area")
    assert area.is_pure_virtual and area.is_virtual
    assert shape.methods[0].is_destructor
    assert circle.base_classes == ["Shape"]
    assert circle.method_named("area").is_override


def test_multiple_bases_drop_access_words():
    ir = parse("class C : public A, protected virtual B {};")
    assert ir.classes[0].base_classes == ["A", "B"]


def test_forward_declaration_registers_type_only():
    ir = parse("class Later;\nvoid take(Later* p);\n")
    assert ir.classes == []
    assert ir.find_type("Later").kind == "class"


def test_defaulted_and_deleted_members():
    ir = parse("class N { public: N() = default; N(const N&) = delete; };")
    default_ctor, copy_ctor = ir.classes[0].methods
    assert default_ctor.is_defaulted
    assert copy_ctor.is_deleted


def test_static_members():
    ir = parse("class K { public: static int count; static K make() { return K(); } };")
    k = ir.classes[0]
    assert k.field_named("count").is_static
    assert k.method_named("make").is_static


def test_doc_comment_attached():
    ir = parse("// Grid cell.\n// Row-major.\nstruct Cell { int row; };\n")
    assert ir.classes[0].doc == "Grid cell.\nRow-major."


def test_trailing_comment_is_not_doc():
    ir = parse("int x; // about x\nstruct Cell { int row; };\n")
    assert ir.classes[0].doc == ""


def test_namespaces_are_flattened():
    ir = parse("namespace geo { namespace detail { struct P { int x; }; } }")
    assert [c.name for c in ir.classes] == ["P"]


def test_duplicate_class_warns():
    ir = parse("struct A { int x; };\nstruct A { int y; };\n")
    assert "duplicate definition of A" in warnings_of(ir)


# ---------------------------------------------------------------------------
# Out-of-line definitions
# ---------------------------------------------------------------------------


def test_out_of_line_definition_fills_declaration():
    source = """\
class Counter {
public:
    int bump(int);
private:
    int n;
};
int Counter::bump(int by) { n += by; return n; }
"""
    ir = parse(source)
    bump = ir.classes[0].method_named("bump")
    assert bump.has_body
    assert bump.params[0].name == "by"
    assert ir.functions == []


def test_out_of_line_constructor():
    ir = parse("class P { public: P(int v); int v; };\nP::P(int v) : v(v) {}\n")
    ctor = ir.classes[0].constructors()[0]
    assert ctor.has_body
    assert ctor.initializers == [("v", "v")]


def test_definition_for_unknown_class_warns():
    ir = parse("void Ghost::f() {}\n")
    assert ir.diagnostics[0].severity == "warning"
    assert ir.diagnostics[0].message == "definition of Ghost::f for unknown class"
    assert ir.diagnostics[0].line == 1
    assert ir.functions == []


# ---------------------------------------------------------------------------
# Functions and parameters
# ---------------------------------------------------------------------------


def test_free_function():
    ir = parse("int twice(int x) { return x * 2; }\n")
    f = ir.functions[0]
    assert f.name == "twice"
    assert f.return_type.name == "int"
    assert f.body == "return x * 2;"


def test_nested_template_parameter():
    ir = parse("void f(std::map<int, std::vector<int>> m, int x);\n")
    params = ir.functions[0].params
    assert [p.name for p in params] == ["m", "x"]
    m = params[0].typ
    assert m.kind == "container" and m.name == "std::map"
    assert m.args[1].name == "std::vector"
    assert m.args[1].args[0].name == "int"


def test_default_parameter_value():
    ir = parse("int add(int a, int b = 10);\n")
    b = ir.functions[0].params[1]
    assert b.has_default
    assert b.default_value == "10"


def test_void_parameter_list_is_empty():
    ir = parse("int zero(void);\n")
    assert ir.functions[0].params == []


def test_unique_ptr_is_owned_pointer():
    ir = parse("struct Node { std::unique_ptr<Node> next; };\n")
    typ = ir.classes[0].fields[0].typ
    assert typ.kind == "pointer"
    assert typ.ownership == "owned"
    assert typ.element.name == "Node"


def test_function_pointer_parameter():
    ir = parse("void each(int (*fn)(int, int));\n")
    p = ir.functions[0].params[0]
    assert p.name == "fn"
    assert p.typ.kind == "function"
    assert len(p.typ.args) == 3


def test_trailing_return_type():
    ir = parse("auto half(double x) -> double { return x / 2; }\n")
    assert ir.functions[0].return_type.name == "double"


def test_noexcept_recorded_in_signature():
    ir = parse("int safe(int x) noexcept { return x; }\n")
    assert "noexcept" in ir.functions[0].signature


# ---------------------------------------------------------------------------
# Enums, globals, aliases, templates
# ---------------------------------------------------------------------------


def test_scoped_enum_with_values():
    ir = parse("enum class Level : uint8_t { Low = 1, High };\n")
    enum = ir.enums[0]
    assert enum.is_scoped
    assert enum.values == [("Low", "1"), ("High", "")]
    assert enum.underlying.name == "uint8_t"


def test_globals_with_multiple_declarators():
    ir = parse("static int a = 1, *b, c[4];\n")
    names = [(g.name, g.typ.kind) for g in ir.globals]
    assert names == [("a", "integer"), ("b", "pointer"), ("c", "array")]
    assert ir.globals[0].initializer == "1"
    assert ir.globals[0].is_static


def test_using_alias_resolves():
    ir = parse("using Ids = std::vector<int>;\nIds all();\n")
    ret = ir.functions[0].return_type
    assert ret.kind == "container" and ret.name == "std::vector"


def test_template_class_declaration_kept():
    ir = parse("template <typename T>\nclass Box { public: T value; };\n")
    box = ir.classes[0]
    assert box.templates.declaration == "template <typename T>"
    assert box.fields[0].typ.kind == "template"


def test_concept_recorded():
    ir = parse("template <typename T>\nconcept Small = sizeof(T) <= 8;\n")
    assert ir.concepts == ["Small"]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


def test_unterminated_comment_is_parse_error():
    ir = parse("class A {};\n/* never closed\n")
    assert len(ir.diagnostics) == 1
    d = ir.diagnostics[0]
    assert (d.severity, d.phase, d.message, d.line) == ("error", "parse", "unterminated block comment", 2)
    assert ir.classes == []


def test_function_without_return_type_warns():
    ir = parse("mystery(int x) { return x; }\n")
    assert "function mystery has no return type" in warnings_of(ir)

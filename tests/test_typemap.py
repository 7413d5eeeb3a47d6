"""Tests for the C++ -> C / Rust / Go type mapper."""

import pytest

from cxxport.frontend import resolve_type
from cxxport.typemap import lookup, normalize, to_c, to_go, to_rust, type_name


# ---------------------------------------------------------------------------
# Leaf table
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "spelling,key",
    [
        ("unsigned", "unsigned int"),
        ("long   long  int", "long long"),
        ("std::uint32_t", "uint32_t"),
        ("std::size_t", "size_t"),
        ("signed short int", "short"),
        ("double", "double"),
    ],
)
def test_normalize(spelling, key):
    assert normalize(spelling) == key


@pytest.mark.parametrize(
    "name,target,token",
    [
        ("int", "rust", "i32"),
        ("int", "go", "int32"),
        ("int", "cgo", "C.int"),
        ("unsigned long long", "rust", "u64"),
        ("size_t", "go", "uint"),
        ("double", "c", "double"),
        ("bool", "rust", "bool"),
    ],
)
def test_lookup(name, target, token):
    assert lookup(name, target) == token


def test_lookup_unmapped_is_opaque():
    assert lookup("Widget", "rust") == "*mut c_void"
    assert lookup("Widget", "go") == "unsafe.Pointer"
    assert lookup("Widget", "c") == "void*"


def test_type_name():
    assert type_name("geo::Point") == "Point"
    assert type_name("point_cloud") == "PointCloud"
    assert type_name("node") == "Node"
    assert type_name("HTTPServer") == "HTTPServer"


# ---------------------------------------------------------------------------
# Rust
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "spelling,rust",
    [
        ("int", "i32"),
        ("const std::string&", "&str"),
        ("std::string", "String"),
        ("const std::vector<int>&", "&[i32]"),
        ("std::vector<double>&", "&mut Vec<f64>"),
        ("std::vector<std::string>", "Vec<String>"),
        ("std::map<int, std::vector<int>>", "BTreeMap<i32, Vec<i32>>"),
        ("std::unordered_map<std::string, int>", "HashMap<String, i32>"),
        ("std::optional<int>", "Option<i32>"),
        ("std::unique_ptr<Node>", "Box<Node>"),
        ("std::shared_ptr<Node>", "Rc<Node>"),
        ("int*", "*mut i32"),
        ("const int*", "*const i32"),
        ("const char*", "String"),
        ("void*", "*mut c_void"),
        ("int[4]", "[i32; 4]"),
        ("std::pair<int, double>", "(i32, f64)"),
        ("std::function<int(int, int)>", "Box<dyn Fn(i32, i32) -> i32>"),
        ("std::function<void()>", "Box<dyn Fn()>"),
        ("std::atomic<int>", "AtomicI32"),
        ("std::mutex", "Mutex<()>"),
    ],
)
def test_to_rust(spelling, rust):
    assert to_rust(resolve_type(spelling)) == rust


def test_to_rust_records_uses():
    uses: set[str] = set()
    to_rust(resolve_type("std::map<int, std::shared_ptr<Node>>"), uses)
    assert uses == {"std::collections::BTreeMap", "std::rc::Rc"}


def test_to_rust_none_is_unit():
    assert to_rust(None) == "()"


# ---------------------------------------------------------------------------
# Go
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "spelling,go",
    [
        ("int", "int32"),
        ("const std::string&", "string"),
        ("std::vector<int>", "[]int32"),
        ("std::vector<double>&", "*[]float64"),
        ("std::map<std::string, int>", "map[string]int32"),
        ("std::set<int>", "map[int32]struct{}"),
        ("std::optional<int>", "*int32"),
        ("std::unique_ptr<Node>", "*Node"),
        ("const char*", "string"),
        ("void*", "unsafe.Pointer"),
        ("int[4]", "[4]int32"),
        ("std::pair<int, double>", "struct{ First int32; Second float64 }"),
        ("std::function<int(int)>", "func(int32) int32"),
        ("std::mutex", "sync.Mutex"),
        ("std::atomic<bool>", "atomic.Bool"),
    ],
)
def test_to_go(spelling, go):
    assert to_go(resolve_type(spelling)) == go


def test_to_go_records_imports():
    imports: set[str] = set()
    to_go(resolve_type("std::mutex"), imports)
    to_go(resolve_type("std::atomic<int>"), imports)
    to_go(resolve_type("void*"), imports)
    assert imports == {"sync", "sync/atomic", "unsafe"}


# ---------------------------------------------------------------------------
# C
# ---------------------------------------------------------------------------


def test_to_c():
    assert to_c(resolve_type("int")) == "int"
    assert to_c(resolve_type("const double")) == "const double"
    assert to_c(resolve_type("int*")) == "int*"
    assert to_c(resolve_type("std::unique_ptr<int>")) == "void*"
    assert to_c(resolve_type("std::string")) == "void*"
    assert to_c(None) == "void"

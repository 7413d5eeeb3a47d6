"""Type Mapper: C++ type descriptors -> C, Rust and Go type tokens.

Leaf types resolve through an immutable lookup table keyed by the
canonical (whitespace-normalized) spelling. Composite types resolve
recursively: the element or template arguments are mapped first and the
result is wrapped according to the kind-specific rules below.

Unmapped leaf names fall back to an opaque pointer token rather than
failing; the frontend cannot promise it has seen every spelling.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from cxxport.ir import Type, TypeKind


@dataclass(frozen=True)
class TypeEntry:
    """Spellings of one builtin type.

    | Column | Used by                         |
    |--------|---------------------------------|
    | c      | C wrapper generator             |
    | rust   | Rust generator and Rust FFI     |
    | go     | Go generator                    |
    | cgo    | Go FFI bindings (cgo)           |
    """

    kind: TypeKind
    c: str
    rust: str
    go: str
    cgo: str


BUILTIN_TYPES: Mapping[str, TypeEntry] = MappingProxyType(
    {
        "void": TypeEntry("void", "void", "()", "", ""),
        "bool": TypeEntry("bool", "bool", "bool", "bool", "C.bool"),
        "char": TypeEntry("integer", "char", "i8", "int8", "C.char"),
        "signed char": TypeEntry("integer", "signed char", "i8", "int8", "C.schar"),
        "unsigned char": TypeEntry("integer", "unsigned char", "u8", "uint8", "C.uchar"),
        "wchar_t": TypeEntry("integer", "wchar_t", "u32", "rune", "C.wchar_t"),
        "char8_t": TypeEntry("integer", "uint8_t", "u8", "uint8", "C.uint8_t"),
        "char16_t": TypeEntry("integer", "uint16_t", "u16", "uint16", "C.uint16_t"),
        "char32_t": TypeEntry("integer", "uint32_t", "char", "rune", "C.uint32_t"),
        "short": TypeEntry("integer", "short", "i16", "int16", "C.short"),
        "unsigned short": TypeEntry("integer", "unsigned short", "u16", "uint16", "C.ushort"),
        "int": TypeEntry("integer", "int", "i32", "int32", "C.int"),
        "unsigned int": TypeEntry("integer", "unsigned int", "u32", "uint32", "C.uint"),
        "long": TypeEntry("integer", "long", "i64", "int64", "C.long"),
        "unsigned long": TypeEntry("integer", "unsigned long", "u64", "uint64", "C.ulong"),
        "long long": TypeEntry("integer", "long long", "i64", "int64", "C.longlong"),
        "unsigned long long": TypeEntry(
            "integer", "unsigned long long", "u64", "uint64", "C.ulonglong"
        ),
        "float": TypeEntry("float", "float", "f32", "float32", "C.float"),
        "double": TypeEntry("float", "double", "f64", "float64", "C.double"),
        "long double": TypeEntry("float", "long double", "f64", "float64", "C.double"),
        "int8_t": TypeEntry("integer", "int8_t", "i8", "int8", "C.int8_t"),
        "int16_t": TypeEntry("integer", "int16_t", "i16", "int16", "C.int16_t"),
        "int32_t": TypeEntry("integer", "int32_t", "i32", "int32", "C.int32_t"),
        "int64_t": TypeEntry("integer", "int64_t", "i64", "int64", "C.int64_t"),
        "uint8_t": TypeEntry("integer", "uint8_t", "u8", "uint8", "C.uint8_t"),
        "uint16_t": TypeEntry("integer", "uint16_t", "u16", "uint16", "C.uint16_t"),
        "uint32_t": TypeEntry("integer", "uint32_t", "u32", "uint32", "C.uint32_t"),
        "uint64_t": TypeEntry("integer", "uint64_t", "u64", "uint64", "C.uint64_t"),
        "size_t": TypeEntry("integer", "size_t", "usize", "uint", "C.size_t"),
        "ssize_t": TypeEntry("integer", "ptrdiff_t", "isize", "int", "C.ptrdiff_t"),
        "ptrdiff_t": TypeEntry("integer", "ptrdiff_t", "isize", "int", "C.ptrdiff_t"),
        "intptr_t": TypeEntry("integer", "intptr_t", "isize", "int", "C.intptr_t"),
        "uintptr_t": TypeEntry("integer", "uintptr_t", "usize", "uintptr", "C.uintptr_t"),
    }
)

OPAQUE = TypeEntry("pointer", "void*", "*mut c_void", "unsafe.Pointer", "unsafe.Pointer")

# Spellings folded onto a canonical table key.
_ALIASES: Mapping[str, str] = MappingProxyType(
    {
        "signed": "int",
        "signed int": "int",
        "unsigned": "unsigned int",
        "short int": "short",
        "signed short": "short",
        "signed short int": "short",
        "unsigned short int": "unsigned short",
        "long int": "long",
        "signed long": "long",
        "signed long int": "long",
        "unsigned long int": "unsigned long",
        "long long int": "long long",
        "signed long long": "long long",
        "unsigned long long int": "unsigned long long",
    }
)

# Rust / Go spellings of the STL containers. {0}, {1} are mapped template args.
RUST_CONTAINERS: Mapping[str, str] = MappingProxyType(
    {
        "std::vector": "Vec<{0}>",
        "std::list": "LinkedList<{0}>",
        "std::forward_list": "LinkedList<{0}>",
        "std::deque": "VecDeque<{0}>",
        "std::stack": "Vec<{0}>",
        "std::queue": "VecDeque<{0}>",
        "std::priority_queue": "BinaryHeap<{0}>",
        "std::map": "BTreeMap<{0}, {1}>",
        "std::multimap": "BTreeMap<{0}, Vec<{1}>>",
        "std::unordered_map": "HashMap<{0}, {1}>",
        "std::set": "BTreeSet<{0}>",
        "std::unordered_set": "HashSet<{0}>",
        "std::optional": "Option<{0}>",
        "std::span": "&[{0}]",
        "std::string": "String",
        "std::string_view": "&str",
    }
)

GO_CONTAINERS: Mapping[str, str] = MappingProxyType(
    {
        "std::vector": "[]{0}",
        "std::list": "[]{0}",
        "std::forward_list": "[]{0}",
        "std::deque": "[]{0}",
        "std::stack": "[]{0}",
        "std::queue": "[]{0}",
        "std::priority_queue": "[]{0}",
        "std::span": "[]{0}",
        "std::map": "map[{0}]{1}",
        "std::multimap": "map[{0}][]{1}",
        "std::unordered_map": "map[{0}]{1}",
        "std::set": "map[{0}]struct{{}}",
        "std::unordered_set": "map[{0}]struct{{}}",
        "std::optional": "*{0}",
        "std::string": "string",
        "std::string_view": "string",
    }
)

# Import path of every Rust std item the mapper can emit by its short name.
RUST_USE_PATHS: Mapping[str, str] = MappingProxyType(
    {
        "LinkedList": "std::collections::LinkedList",
        "VecDeque": "std::collections::VecDeque",
        "BinaryHeap": "std::collections::BinaryHeap",
        "BTreeMap": "std::collections::BTreeMap",
        "BTreeSet": "std::collections::BTreeSet",
        "HashMap": "std::collections::HashMap",
        "HashSet": "std::collections::HashSet",
        "Rc": "std::rc::Rc",
        "Weak": "std::rc::Weak",
        "Mutex": "std::sync::Mutex",
        "RwLock": "std::sync::RwLock",
        "Condvar": "std::sync::Condvar",
        "Arc": "std::sync::Arc",
        "JoinHandle": "std::thread::JoinHandle",
        "Sender": "std::sync::mpsc::Sender",
        "Receiver": "std::sync::mpsc::Receiver",
        "AtomicBool": "std::sync::atomic::AtomicBool",
        "AtomicI8": "std::sync::atomic::AtomicI8",
        "AtomicI16": "std::sync::atomic::AtomicI16",
        "AtomicI32": "std::sync::atomic::AtomicI32",
        "AtomicI64": "std::sync::atomic::AtomicI64",
        "AtomicU8": "std::sync::atomic::AtomicU8",
        "AtomicU16": "std::sync::atomic::AtomicU16",
        "AtomicU32": "std::sync::atomic::AtomicU32",
        "AtomicU64": "std::sync::atomic::AtomicU64",
        "AtomicIsize": "std::sync::atomic::AtomicIsize",
        "AtomicUsize": "std::sync::atomic::AtomicUsize",
        "c_void": "std::ffi::c_void",
    }
)

_RUST_ATOMICS: Mapping[str, str] = MappingProxyType(
    {
        "bool": "AtomicBool",
        "i8": "AtomicI8",
        "i16": "AtomicI16",
        "i32": "AtomicI32",
        "i64": "AtomicI64",
        "u8": "AtomicU8",
        "u16": "AtomicU16",
        "u32": "AtomicU32",
        "u64": "AtomicU64",
        "isize": "AtomicIsize",
        "usize": "AtomicUsize",
    }
)

_GO_ATOMICS: Mapping[str, str] = MappingProxyType(
    {
        "bool": "atomic.Bool",
        "int32": "atomic.Int32",
        "int64": "atomic.Int64",
        "uint32": "atomic.Uint32",
        "uint64": "atomic.Uint64",
        "uintptr": "atomic.Uintptr",
        "int": "atomic.Int64",
        "uint": "atomic.Uint64",
    }
)

_STD_INT_PREFIX = re.compile(r"^std::((?:u?int(?:8|16|32|64)_t)|size_t|ptrdiff_t|u?intptr_t)$")


def normalize(name: str) -> str:
    """Canonical table key: collapsed whitespace, aliases folded, std:: ints unqualified."""
    key = " ".join(name.split())
    key = key.replace(" *", "*").replace(" &", "&")
    m = _STD_INT_PREFIX.match(key)
    if m:
        key = m.group(1)
    return _ALIASES.get(key, key)


def builtin_entry(name: str) -> TypeEntry | None:
    return BUILTIN_TYPES.get(normalize(name))


def lookup(name: str, target: str) -> str:
    """Token for a canonical leaf name in one target column.

    target is one of "c", "rust", "go", "cgo". Unmapped names yield the
    opaque pointer token of that column.
    """
    entry = BUILTIN_TYPES.get(normalize(name), OPAQUE)
    return getattr(entry, target)


def type_name(name: str) -> str:
    """User type name in target form: last path segment, CapitalCase."""
    if "::" in name:
        name = name.rsplit("::", 1)[1]
    if "_" in name or (name and name[0].islower()):
        parts = [p for p in name.split("_") if p]
        return "".join(p[0].upper() + p[1:] for p in parts)
    return name


def _record(uses: set[str] | None, token: str) -> None:
    if uses is None:
        return
    for word in re.findall(r"[A-Za-z_][A-Za-z0-9_]*", token):
        if word in RUST_USE_PATHS:
            uses.add(RUST_USE_PATHS[word])


def _is_char(t: Type) -> bool:
    return t.kind == "integer" and normalize(t.name) in ("char", "signed char")


def atomic_value_type(t: Type) -> Type | None:
    """Value type of a std::atomic<T>, or None when t is not an atomic."""
    if t.kind == "threading" and t.name == "std::atomic" and t.args:
        return t.args[0]
    return None


# ============================================================
# RUST
# ============================================================


def to_rust(t: Type | None, uses: set[str] | None = None) -> str:
    """Rust spelling of t. Short std names are recorded in `uses`."""
    if t is None:
        return "()"
    result = _rust(t)
    _record(uses, result)
    return result


def _rust(t: Type) -> str:
    kind = t.kind
    if kind in ("void", "bool", "integer", "float"):
        return lookup(t.name, "rust")
    if kind == "pointer":
        elem = t.element
        assert elem is not None
        if elem.kind == "array" and elem.size == "" and elem.element is not None:
            inner = _rust(elem.element)
            return f"Box<[{inner}]>" if t.ownership == "owned" else f"Rc<[{inner}]>"
        if t.ownership == "owned":
            return f"Box<{_rust(elem)}>"
        if t.ownership == "shared":
            return f"Rc<{_rust(elem)}>"
        if t.ownership == "weak":
            return f"Weak<{_rust(elem)}>"
        if _is_char(elem):
            return "String" if elem.is_const else "*mut i8"
        if elem.kind == "void":
            return "*const c_void" if elem.is_const else "*mut c_void"
        return f"*const {_rust(elem)}" if elem.is_const else f"*mut {_rust(elem)}"
    if kind == "reference":
        elem = t.element
        assert elem is not None
        if t.is_rvalue:
            return _rust(elem)
        if elem.is_const:
            if elem.kind == "container" and elem.name == "std::string":
                return "&str"
            if elem.kind == "container" and elem.name == "std::vector" and elem.args:
                return f"&[{_rust(elem.args[0])}]"
            return f"&{_rust(elem)}"
        return f"&mut {_rust(elem)}"
    if kind == "array":
        elem = t.element
        assert elem is not None
        if t.size:
            return f"[{_rust(elem)}; {t.size}]"
        return f"Vec<{_rust(elem)}>"
    if kind == "container":
        return _rust_container(t)
    if kind == "threading":
        return _rust_threading(t)
    if kind == "async":
        value = _rust(t.args[0]) if t.args else "()"
        if t.name == "std::promise":
            return f"Sender<{value}>"
        return f"JoinHandle<{value}>"
    if kind == "function":
        if not t.args:
            return "Box<dyn Fn()>"
        ret = t.args[0]
        params = ", ".join(_rust(a) for a in t.args[1:])
        if ret.kind == "void":
            return f"Box<dyn Fn({params})>"
        return f"Box<dyn Fn({params}) -> {_rust(ret)}>"
    if kind in ("class", "struct"):
        base = type_name(t.name)
        if t.args:
            return base + "<" + ", ".join(_rust(a) for a in t.args) + ">"
        return base
    if kind in ("enum", "template"):
        return type_name(t.name) if kind == "enum" else t.name
    return OPAQUE.rust


def _rust_container(t: Type) -> str:
    if t.name == "std::pair" or t.name == "std::tuple":
        return "(" + ", ".join(_rust(a) for a in t.args) + ")"
    if t.name == "std::array":
        if len(t.args) == 2:
            return f"[{_rust(t.args[0])}; {t.args[1].name}]"
        return OPAQUE.rust
    pattern = RUST_CONTAINERS.get(t.name)
    if pattern is None:
        return OPAQUE.rust
    needed = pattern.count("{1}") and 2 or (1 if "{0}" in pattern else 0)
    if len(t.args) < needed:
        return OPAQUE.rust
    return pattern.format(*[_rust(a) for a in t.args])


def _rust_threading(t: Type) -> str:
    name = t.name
    if name in ("std::mutex", "std::recursive_mutex", "std::timed_mutex", "std::recursive_timed_mutex"):
        return "Mutex<()>"
    if name in ("std::shared_mutex", "std::shared_timed_mutex"):
        return "RwLock<()>"
    if name in ("std::condition_variable", "std::condition_variable_any"):
        return "Condvar"
    if name in ("std::thread", "std::jthread"):
        return "JoinHandle<()>"
    if name == "std::atomic":
        if not t.args:
            return OPAQUE.rust
        inner = _rust(t.args[0])
        return _RUST_ATOMICS.get(inner, f"Mutex<{inner}>")
    return OPAQUE.rust


def rust_atomic_name(value: Type) -> str | None:
    """Rust atomic type for std::atomic<value>, or None when no lock-free one exists."""
    return _RUST_ATOMICS.get(_rust(value))


# ============================================================
# GO
# ============================================================


def to_go(t: Type | None, imports: set[str] | None = None) -> str:
    """Go spelling of t. Needed packages are recorded in `imports`."""
    if t is None:
        return ""
    result = _go(t)
    if imports is not None:
        if "sync." in result or "*sync." in result:
            imports.add("sync")
        if "atomic." in result:
            imports.add("sync/atomic")
        if "unsafe.Pointer" in result:
            imports.add("unsafe")
    return result


def _go(t: Type) -> str:
    kind = t.kind
    if kind in ("void", "bool", "integer", "float"):
        return lookup(t.name, "go")
    if kind == "pointer":
        elem = t.element
        assert elem is not None
        if elem.kind == "array" and elem.size == "" and elem.element is not None:
            return "[]" + _go(elem.element)
        if _is_char(elem) and elem.is_const:
            return "string"
        if elem.kind == "void":
            return "unsafe.Pointer"
        return "*" + _go(elem)
    if kind == "reference":
        elem = t.element
        assert elem is not None
        if elem.is_const or t.is_rvalue:
            return _go(elem)
        return "*" + _go(elem)
    if kind == "array":
        elem = t.element
        assert elem is not None
        if t.size and t.size.isdigit():
            return f"[{t.size}]{_go(elem)}"
        return "[]" + _go(elem)
    if kind == "container":
        return _go_container(t)
    if kind == "threading":
        return _go_threading(t)
    if kind == "async":
        value = _go(t.args[0]) if t.args else "struct{}"
        if t.name == "std::promise":
            return f"chan {value}"
        return f"<-chan {value}"
    if kind == "function":
        if not t.args:
            return "func()"
        params = ", ".join(_go(a) for a in t.args[1:])
        ret = t.args[0]
        if ret.kind == "void":
            return f"func({params})"
        return f"func({params}) {_go(ret)}"
    if kind in ("class", "struct"):
        base = type_name(t.name)
        if t.args:
            return base + "[" + ", ".join(_go(a) for a in t.args) + "]"
        return base
    if kind == "enum":
        return type_name(t.name)
    if kind == "template":
        return t.name
    return OPAQUE.go


def _go_container(t: Type) -> str:
    if t.name == "std::pair":
        if len(t.args) != 2:
            return OPAQUE.go
        return f"struct{{ First {_go(t.args[0])}; Second {_go(t.args[1])} }}"
    if t.name == "std::tuple":
        fields = "; ".join(f"F{i} {_go(a)}" for i, a in enumerate(t.args))
        return f"struct{{ {fields} }}"
    if t.name == "std::array":
        if len(t.args) == 2 and t.args[1].name.isdigit():
            return f"[{t.args[1].name}]{_go(t.args[0])}"
        if t.args:
            return "[]" + _go(t.args[0])
        return OPAQUE.go
    pattern = GO_CONTAINERS.get(t.name)
    if pattern is None:
        return OPAQUE.go
    needed = 2 if "{1}" in pattern else (1 if "{0}" in pattern else 0)
    if len(t.args) < needed:
        return OPAQUE.go
    return pattern.format(*[_go(a) for a in t.args])


def _go_threading(t: Type) -> str:
    name = t.name
    if name in ("std::mutex", "std::recursive_mutex", "std::timed_mutex", "std::recursive_timed_mutex"):
        return "sync.Mutex"
    if name in ("std::shared_mutex", "std::shared_timed_mutex"):
        return "sync.RWMutex"
    if name in ("std::condition_variable", "std::condition_variable_any"):
        return "*sync.Cond"
    if name in ("std::thread", "std::jthread"):
        return "sync.WaitGroup"
    if name == "std::atomic":
        if not t.args:
            return OPAQUE.go
        return _GO_ATOMICS.get(_go(t.args[0]), "atomic.Value")
    return OPAQUE.go


# ============================================================
# C
# ============================================================


def to_c(t: Type | None) -> str:
    """C spelling of t; non-C types collapse to the opaque pointer."""
    if t is None:
        return "void"
    kind = t.kind
    prefix = "const " if t.is_const else ""
    if kind in ("void", "bool", "integer", "float"):
        return prefix + lookup(t.name, "c")
    if kind in ("pointer", "reference"):
        elem = t.element
        assert elem is not None
        if kind == "pointer" and t.ownership != "borrowed":
            return OPAQUE.c
        inner = to_c(elem)
        if inner == OPAQUE.c:
            return OPAQUE.c
        return inner + "*"
    if kind == "array":
        elem = t.element
        assert elem is not None
        return to_c(elem) + "*"
    if kind == "enum":
        return prefix + "int"
    if kind == "struct":
        return prefix + type_name(t.name)
    return OPAQUE.c

"""FFI compatibility analysis: C++ declarations -> C ABI signature model.

The analyzer reads declarations through the structural parser and the
exception, template and async analyzers, then builds its own narrower model.
The binding generators see only that model, never the IR.

A function is exported when every parameter and its return type have a C
spelling and it neither throws nor is a template. A class is either POD
(passed by value, laid out as a C struct) or exposed through an opaque
handle with `<class>_new` / `<class>_delete` / `<class>_<method>`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from cxxport.backend.util import method_base_name, to_snake
from cxxport.frontend import parse
from cxxport.ir import IR, ClassDecl, Function, Type
from cxxport.middleend.coroutines import analyze_async
from cxxport.middleend.exceptions import analyze_exceptions
from cxxport.middleend.templates import analyze_templates
from cxxport.typemap import builtin_entry, lookup, type_name

logger = logging.getLogger(__name__)


class FFITypeError(Exception):
    """A C++ type with no C ABI spelling; the message is the reason shown to users."""


# ---------------------------------------------------------------------------
# Signature model
# ---------------------------------------------------------------------------


@dataclass
class FFIType:
    """One C++ type as each side of the boundary spells it.

    | Field   | Meaning                                                   |
    |---------|-----------------------------------------------------------|
    | cpp     | source spelling                                           |
    | c       | C spelling in the generated header                        |
    | rust    | Rust spelling inside `extern "C"`                         |
    | cgo     | Go spelling of the C type (`C.int32_t`, `*C.char`, ...)   |
    | go      | Go spelling the safe wrapper exposes                      |
    | kind    | value, string, pod, pod_ptr, handle, raw_ptr, enum, void  |
    | target  | class name for pod, pod_ptr and handle kinds              |
    """

    cpp: str
    c: str
    rust: str
    cgo: str
    go: str
    kind: str = "value"
    target: str = ""
    is_const: bool = False
    by_reference: bool = False


def void_type() -> FFIType:
    return FFIType("void", "void", "()", "", "", kind="void")


@dataclass
class FFIParameter:
    name: str
    cpp_type: str
    c_type: str
    rust_type: str
    go_type: str
    is_pointer: bool = False
    is_const: bool = False
    is_reference: bool = False
    ffi: FFIType | None = None


@dataclass
class FFIFunction:
    """A function or method seen from the C side.

    c_name is the exported symbol. For methods of handle classes the first
    C parameter is the handle itself and is not listed in `parameters`.
    """

    name: str
    c_name: str
    return_type: str
    c_return_type: str
    parameters: list[FFIParameter] = field(default_factory=list)
    is_method: bool = False
    is_static: bool = False
    is_const: bool = False
    is_constructor: bool = False
    is_virtual: bool = False
    class_name: str = ""
    can_use_ffi: bool = True
    reason: str = ""
    returns: FFIType = field(default_factory=void_type)
    doc: str = ""


@dataclass
class FFIClass:
    name: str
    methods: list[FFIFunction] = field(default_factory=list)
    static_methods: list[FFIFunction] = field(default_factory=list)
    constructors: list[FFIFunction] = field(default_factory=list)
    fields: list[FFIParameter] = field(default_factory=list)
    has_virtual_functions: bool = False
    is_polymorphic: bool = False
    is_abstract: bool = False
    is_pod: bool = False
    can_use_ffi: bool = True
    reason: str = ""
    doc: str = ""

    @property
    def prefix(self) -> str:
        """C symbol prefix: `Calculator` -> `calculator`."""
        return to_snake(type_name(self.name))

    @property
    def delete_name(self) -> str:
        return self.prefix + "_delete"

    def all_functions(self) -> list[FFIFunction]:
        return self.constructors + self.methods + self.static_methods


@dataclass
class FFIModule:
    library_name: str
    functions: list[FFIFunction] = field(default_factory=list)
    classes: list[FFIClass] = field(default_factory=list)

    def exported_functions(self) -> list[FFIFunction]:
        return [f for f in self.functions if f.can_use_ffi]

    def exported_classes(self) -> list[FFIClass]:
        return [c for c in self.classes if c.can_use_ffi]

    def pod_classes(self) -> list[FFIClass]:
        return [c for c in self.classes if c.can_use_ffi and c.is_pod]

    def skipped(self) -> list[tuple[str, str]]:
        """(qualified name, reason) of everything left out, in source order."""
        out: list[tuple[str, str]] = []
        for cls in self.classes:
            if not cls.can_use_ffi:
                out.append((cls.name, cls.reason))
                continue
            for func in cls.all_functions():
                if not func.can_use_ffi:
                    out.append((cls.name + "::" + func.name, func.reason))
        for func in self.functions:
            if not func.can_use_ffi:
                out.append((func.name, func.reason))
        return out

    def uses(self, kind: str) -> bool:
        """Any exported signature carries a type of this kind."""
        for func in self.exported_functions() + [f for c in self.exported_classes() for f in c.all_functions() if f.can_use_ffi]:
            if func.returns.kind == kind or any(p.ffi is not None and p.ffi.kind == kind for p in func.parameters):
                return True
        return False


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


class FFIAnalyzer:
    """Classify declarations and spell their types for the C ABI."""

    def __init__(self, ir: IR) -> None:
        self.ir = ir
        self.pods: set[str] = {c.name for c in ir.classes if self._is_pod(c)}

    # -- classes -----------------------------------------------------------

    def _is_pod(self, cls: ClassDecl) -> bool:
        if cls.base_classes or cls.templates.parameters or cls.virtual_methods():
            return False
        if any(m.is_constructor and not m.is_defaulted for m in cls.methods):
            return False
        if any(m.is_destructor and not m.is_defaulted for m in cls.methods):
            return False
        fields = [f for f in cls.fields if not f.is_static]
        if not fields:
            return False
        for f in fields:
            if f.access != "public":
                return False
            if f.typ.kind not in ("bool", "integer", "float", "enum"):
                return False
        return True

    def analyze_class(self, cls: ClassDecl) -> FFIClass:
        out = FFIClass(cls.name, doc=cls.doc)
        out.has_virtual_functions = bool(cls.virtual_methods())
        out.is_polymorphic = out.has_virtual_functions or bool(cls.base_classes)
        out.is_abstract = cls.is_abstract
        out.is_pod = cls.name in self.pods
        if cls.templates.parameters:
            out.can_use_ffi = False
            out.reason = "class template requires monomorphization"
            return out
        if out.is_pod:
            for f in cls.fields:
                if not f.is_static:
                    t = self.spell(f.typ)
                    out.fields.append(FFIParameter(f.name, f.typ.name, t.c, t.rust, t.cgo, ffi=t))
        prefix = out.prefix
        if not out.is_pod and not out.is_abstract:
            ctors = [m for m in cls.methods if m.is_constructor and not m.is_deleted]
            if not ctors:
                out.constructors.append(FFIFunction(cls.name, prefix + "_new", "", "void*", is_constructor=True, class_name=cls.name, returns=self._handle(cls.name, False)))
            seen: dict[str, int] = {}
            for ctor in ctors:
                c_name = prefix + "_new"
                count = seen.get(c_name, 0)
                seen[c_name] = count + 1
                if count:
                    c_name += "_" + str(count)
                func = self.function(ctor, c_name, cls)
                func.is_constructor = True
                func.returns = self._handle(cls.name, False)
                func.c_return_type = "void*"
                out.constructors.append(func)
        seen = {}
        for m in cls.methods:
            if m.is_constructor or m.is_destructor or m.is_deleted or m.access != "public":
                continue
            if m.name.startswith("operator"):
                c_name = prefix + "_" + method_base_name(m.name)
            else:
                c_name = prefix + "_" + to_snake(m.name)
            count = seen.get(c_name, 0)
            seen[c_name] = count + 1
            if count:
                c_name += "_" + str(count)
            func = self.function(m, c_name, cls)
            (out.static_methods if m.is_static else out.methods).append(func)
        return out

    # -- functions ---------------------------------------------------------

    def function(self, func: Function, c_name: str, cls: ClassDecl | None) -> FFIFunction:
        ret = func.return_type
        out = FFIFunction(
            func.name,
            c_name,
            ret.name if ret is not None else "",
            "void",
            is_method=cls is not None and not func.is_static and not func.is_constructor,
            is_static=func.is_static,
            is_const=func.is_const,
            is_virtual=func.is_virtual,
            class_name=cls.name if cls is not None else "",
            doc=func.doc,
        )
        reason = self.incompatibility(func)
        if reason:
            out.can_use_ffi = False
            out.reason = reason
            logger.debug("ffi: skipping %s: %s", func.name, reason)
            return out
        try:
            if not func.is_constructor and not func.returns_void:
                out.returns = self.spell(ret, returning=True)
                out.c_return_type = out.returns.c
            for idx, p in enumerate(func.params):
                t = self.spell(p.typ)
                name = p.name or "arg" + str(idx)
                out.parameters.append(
                    FFIParameter(
                        name,
                        p.typ.name,
                        t.c,
                        t.rust,
                        t.cgo,
                        is_pointer=p.typ.kind == "pointer",
                        is_const=t.is_const,
                        is_reference=p.typ.kind == "reference",
                        ffi=t,
                    )
                )
        except FFITypeError as e:
            out.can_use_ffi = False
            out.reason = str(e)
            out.parameters = []
            logger.debug("ffi: skipping %s: %s", func.name, e)
        return out

    def incompatibility(self, func: Function) -> str:
        """Why a function cannot cross the C ABI, "" when it can."""
        if func.may_throw:
            return "may throw exceptions"
        if func.exceptions.spec.throw_types:
            return "declares a dynamic exception specification"
        if func.templates.parameters:
            return "template requires monomorphization"
        if func.is_async:
            return "coroutine or asynchronous function"
        if func.params and any(p.typ.kind == "template" for p in func.params):
            return "generic parameter type"
        return ""

    # -- types -------------------------------------------------------------

    def _handle(self, cls_name: str, is_const: bool) -> FFIType:
        c = "const void*" if is_const else "void*"
        rust = "*const c_void" if is_const else "*mut c_void"
        return FFIType(cls_name, c, rust, "unsafe.Pointer", "*" + type_name(cls_name), kind="handle", target=cls_name, is_const=is_const)

    def spell(self, t: Type | None, returning: bool = False) -> FFIType:
        """C, Rust and cgo spellings of a parameter or return type."""
        if t is None or t.kind == "void":
            return void_type()
        kind = t.kind
        if kind in ("bool", "integer", "float"):
            entry = builtin_entry(t.name)
            if entry is None:
                raise FFITypeError("no C spelling for " + t.name)
            return FFIType(t.name, entry.c, entry.rust, entry.cgo, entry.go)
        if kind == "enum":
            return FFIType(t.name, "int", "i32", "C.int", "int32", kind="enum", target=t.name)
        if kind in ("class", "struct"):
            name = t.name.rsplit("::", 1)[-1]
            if t.args:
                raise FFITypeError("template instance " + t.name + " in signature")
            if name in self.pods:
                return FFIType(t.name, type_name(name), type_name(name), "C." + type_name(name), type_name(name), kind="pod", target=name)
            raise FFITypeError("passes non-POD class " + t.name + " by value")
        if kind in ("container", "threading", "async", "function"):
            if t.name == "std::string":
                raise FFITypeError("uses C++ standard library type std::string (pass const char* instead)")
            raise FFITypeError("uses C++ standard library type " + t.name)
        if kind == "template":
            raise FFITypeError("generic parameter type " + t.name)
        if kind == "array":
            elem = t.element
            assert elem is not None
            inner = self.spell(elem)
            if inner.kind != "value":
                raise FFITypeError("array of " + elem.name)
            return FFIType(t.name, inner.c + "*", "*mut " + inner.rust, "*" + inner.cgo, "*" + inner.cgo, kind="raw_ptr")
        if kind in ("pointer", "reference"):
            if t.is_smart_pointer:
                raise FFITypeError("uses C++ standard library type " + t.name)
            elem = t.element
            assert elem is not None
            is_const = elem.is_const
            if kind == "reference" and is_const and elem.kind in ("bool", "integer", "float", "enum"):
                return self.spell(elem)
            if elem.kind in ("class", "struct"):
                name = elem.name.rsplit("::", 1)[-1]
                if elem.args:
                    raise FFITypeError("template instance " + elem.name + " in signature")
                if name in self.pods:
                    c = ("const " if is_const else "") + type_name(name) + "*"
                    rust = ("*const " if is_const else "*mut ") + type_name(name)
                    return FFIType(t.name, c, rust, "*C." + type_name(name), "*" + type_name(name), kind="pod_ptr", target=name, is_const=is_const, by_reference=kind == "reference")
                if self.ir.find_class(name) is None:
                    raise FFITypeError("pointer to unknown class " + elem.name)
                handle = self._handle(name, is_const)
                handle.cpp = t.name
                handle.by_reference = kind == "reference"
                return handle
            if kind == "pointer" and elem.kind == "integer" and elem.name in ("char", "signed char") and is_const:
                return FFIType(t.name, "const char*", "*const c_char", "*C.char", "string", kind="string", is_const=True)
            if elem.kind == "void":
                c = "const void*" if is_const else "void*"
                rust = "*const c_void" if is_const else "*mut c_void"
                return FFIType(t.name, c, rust, "unsafe.Pointer", "unsafe.Pointer", kind="raw_ptr", is_const=is_const)
            if elem.kind in ("bool", "integer", "float"):
                entry = builtin_entry(elem.name)
                if entry is None:
                    raise FFITypeError("no C spelling for " + elem.name)
                c = ("const " if is_const else "") + entry.c + "*"
                rust = ("*const " if is_const else "*mut ") + ("c_char" if elem.name == "char" else entry.rust)
                cgo = "*" + lookup(elem.name, "cgo")
                return FFIType(t.name, c, rust, cgo, cgo, kind="raw_ptr", is_const=is_const, by_reference=kind == "reference")
            raise FFITypeError("pointer to " + elem.name)
        raise FFITypeError("no C spelling for " + t.name)


def c_identifier(name: str) -> str:
    """`my-lib` -> `my_lib`."""
    return re.sub(r"\W", "_", to_snake(name))


def analyze_ffi(source: str, library_name: str) -> FFIModule:
    """Build the signature model for one C++ translation unit."""
    ir = parse(source)
    analyze_templates(ir)
    analyze_exceptions(ir)
    analyze_async(ir)
    analyzer = FFIAnalyzer(ir)
    module = FFIModule(library_name)
    for cls in ir.classes:
        module.classes.append(analyzer.analyze_class(cls))
    seen: dict[str, int] = {}
    prefix = c_identifier(library_name) + "_" if library_name else ""
    for func in ir.functions:
        if func.name == "main":
            continue
        c_name = prefix + to_snake(method_base_name(func.name))
        count = seen.get(c_name, 0)
        seen[c_name] = count + 1
        if count:
            c_name += "_" + str(count)
        module.functions.append(analyzer.function(func, c_name, None))
    logger.info(
        "ffi: %d functions, %d classes (%d skipped)",
        len(module.functions),
        len(module.classes),
        len(module.skipped()),
    )
    return module

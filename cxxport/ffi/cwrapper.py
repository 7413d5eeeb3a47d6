"""C wrapper generator: `extern "C"` header and implementation over the C++ API."""

from __future__ import annotations

from cxxport.backend.util import Emitter
from cxxport.typemap import type_name

from .analyzer import FFIClass, FFIFunction, FFIModule, FFIParameter, c_identifier

GENERATED = "// Code generated by cxxport. DO NOT EDIT."


def skipped_lines(module: FFIModule, comment: str = "//") -> list[str]:
    """Leading comment listing what is left out and why."""
    skipped = module.skipped()
    if not skipped:
        return []
    lines = [comment + " Not exported (not FFI-compatible):"]
    for name, reason in skipped:
        lines.append(comment + "   " + name + ": " + reason)
    return lines


def c_params(func: FFIFunction, cls: FFIClass | None) -> str:
    parts: list[str] = []
    if cls is not None and not cls.is_pod and func.is_method:
        parts.append(("const void* " if func.is_const else "void* ") + "self")
    elif cls is not None and cls.is_pod and func.is_method:
        parts.append(("const " if func.is_const else "") + type_name(cls.name) + "* self")
    parts.extend(p.c_type + " " + p.name for p in func.parameters)
    return ", ".join(parts) if parts else "void"


class CWrapperGenerator(Emitter):
    """Emit `<library>.h` and the C++ file that implements it."""

    def __init__(self) -> None:
        super().__init__()

    def header(self, module: FFIModule) -> str:
        self.lines = []
        guard = c_identifier(module.library_name).upper() + "_FFI_H"
        self.line(GENERATED)
        for text in skipped_lines(module):
            self.line(text)
        self.line()
        self.line("#ifndef " + guard)
        self.line("#define " + guard)
        self.line()
        self.line("#include <stdbool.h>")
        self.line("#include <stddef.h>")
        self.line("#include <stdint.h>")
        self.line()
        self.line("#ifdef __cplusplus")
        self.line('extern "C" {')
        self.line("#else")
        for cls in module.pod_classes():
            self._emit_pod_typedef(cls)
        self.line("#endif")
        for cls in module.exported_classes():
            exported = [f for f in cls.all_functions() if f.can_use_ffi]
            if not exported and cls.is_pod:
                continue
            self.line()
            self.line("/* " + cls.name + (" (by value) */" if cls.is_pod else " (opaque handle) */"))
            for func in cls.constructors:
                if func.can_use_ffi:
                    self.line(self._prototype(func, cls) + ";")
            if not cls.is_pod:
                self.line("void " + cls.delete_name + "(void* self);")
            for func in cls.methods + cls.static_methods:
                if func.can_use_ffi:
                    self.line(self._prototype(func, cls) + ";")
        if module.exported_functions():
            self.line()
        for func in module.exported_functions():
            self.line(self._prototype(func, None) + ";")
        self.line()
        self.line("#ifdef __cplusplus")
        self.line("}")
        self.line("#endif")
        self.line()
        self.line("#endif /* " + guard + " */")
        return self.output() + "\n"

    def _emit_pod_typedef(self, cls: FFIClass) -> None:
        name = type_name(cls.name)
        self.line("typedef struct " + name + " {")
        for f in cls.fields:
            self.line("    " + f.c_type + " " + f.name + ";")
        self.line("} " + name + ";")

    def _prototype(self, func: FFIFunction, cls: FFIClass | None) -> str:
        return func.c_return_type + " " + func.c_name + "(" + c_params(func, cls) + ")"

    # -- implementation ----------------------------------------------------

    def implementation(self, module: FFIModule, header_name: str) -> str:
        self.lines = []
        self.line(GENERATED)
        self.line()
        self.line('#include "' + module.library_name + '.hpp"')
        self.line('#include "' + header_name + '"')
        for cls in module.exported_classes():
            for func in cls.constructors:
                if func.can_use_ffi:
                    self._emit_constructor(func, cls)
            if not cls.is_pod:
                self.line()
                self.line('extern "C" void ' + cls.delete_name + "(void* self) {")
                self.line("    delete static_cast<" + cls.name + "*>(self);")
                self.line("}")
            for func in cls.methods + cls.static_methods:
                if func.can_use_ffi:
                    self._emit_function(func, cls)
        for func in module.exported_functions():
            self._emit_function(func, None)
        return self.output() + "\n"

    def _arg(self, p: FFIParameter) -> str:
        """C++ argument expression for one C parameter."""
        t = p.ffi
        if t is None:
            return p.name
        if t.kind == "handle":
            cast = "static_cast<" + ("const " if t.is_const else "") + t.target + "*>(" + p.name + ")"
            return "*" + cast if t.by_reference else cast
        if t.kind in ("pod_ptr", "raw_ptr") and t.by_reference:
            return "*" + p.name
        if t.kind == "enum":
            return "static_cast<" + t.target + ">(" + p.name + ")"
        return p.name

    def _emit_constructor(self, func: FFIFunction, cls: FFIClass) -> None:
        args = ", ".join(self._arg(p) for p in func.parameters)
        self.line()
        self.line('extern "C" ' + self._prototype(func, cls) + " {")
        self.line("    return new " + cls.name + "(" + args + ");")
        self.line("}")

    def _emit_function(self, func: FFIFunction, cls: FFIClass | None) -> None:
        args = ", ".join(self._arg(p) for p in func.parameters)
        if cls is None:
            call = func.name + "(" + args + ")"
        elif func.is_static:
            call = cls.name + "::" + func.name + "(" + args + ")"
        elif cls.is_pod:
            call = "self->" + func.name + "(" + args + ")"
        else:
            qual = "const " if func.is_const else ""
            call = "static_cast<" + qual + cls.name + "*>(self)->" + func.name + "(" + args + ")"
        ret = func.returns
        self.line()
        self.line('extern "C" ' + self._prototype(func, cls) + " {")
        if ret.kind == "void":
            self.line("    " + call + ";")
        elif ret.kind == "enum":
            self.line("    return static_cast<int>(" + call + ");")
        elif ret.kind == "handle":
            if ret.by_reference:
                call = "&" + call
            self.line("    return const_cast<" + ret.target + "*>(" + call + ");" if not ret.is_const else "    return " + call + ";")
        elif ret.kind in ("pod_ptr", "raw_ptr") and ret.by_reference:
            self.line("    return &" + call + ";")
        else:
            self.line("    return " + call + ";")
        self.line("}")


def generate_c_wrapper_files(module: FFIModule) -> tuple[str, str]:
    gen = CWrapperGenerator()
    header_name = module.library_name + "_ffi.h"
    return gen.header(module), gen.implementation(module, header_name)

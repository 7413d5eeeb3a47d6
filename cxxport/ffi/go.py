"""Go FFI bindings over cgo."""

from __future__ import annotations

from cxxport.backend.util import Emitter, go_exported, go_to_camel, to_pascal
from cxxport.typemap import type_name

from .analyzer import FFIClass, FFIFunction, FFIModule, FFIParameter, FFIType, c_identifier
from .cwrapper import GENERATED, c_params, skipped_lines


class GoFFIGenerator(Emitter):
    """Handle types wrap an `unsafe.Pointer` and are freed by `Delete`.

    POD structs mirror the C layout field for field, so pointers convert
    with `unsafe.Pointer` and values go through `toC` / `fromC` helpers.
    """

    def __init__(self, package_name: str = "") -> None:
        super().__init__("\t")
        self.package_name = package_name
        self.prefix = ""

    def generate(self, module: FFIModule) -> str:
        self.lines = []
        self.prefix = c_identifier(module.library_name) + "_" if module.library_name else ""
        for cls in module.pod_classes():
            self._emit_pod(cls)
        for cls in module.exported_classes():
            if not cls.is_pod:
                self._emit_handle(cls)
        for func in module.exported_functions():
            self._emit_wrapper(func, None)
        body = self.capture()
        self._emit_header(module, "\n".join(body))
        self.lines.extend(body)
        return self.output().rstrip("\n") + "\n"

    # ============================================================
    # HEADER
    # ============================================================

    def _emit_header(self, module: FFIModule, body: str) -> None:
        self.line(GENERATED)
        for text in skipped_lines(module):
            self.line(text)
        self.line()
        self.line("package " + (self.package_name or c_identifier(module.library_name).replace("_", "")))
        self.line()
        self.line("/*")
        self.line("#cgo LDFLAGS: -l" + module.library_name + " -lstdc++")
        self.line("#include <stdbool.h>")
        self.line("#include <stddef.h>")
        self.line("#include <stdint.h>")
        if "C.free(" in body:
            self.line("#include <stdlib.h>")
        for cls in module.pod_classes():
            self.line()
            name = type_name(cls.name)
            self.line("typedef struct " + name + " {")
            for f in cls.fields:
                self.line("    " + f.c_type + " " + f.name + ";")
            self.line("} " + name + ";")
        self.line()
        for cls in module.exported_classes():
            for func in cls.all_functions():
                if func.can_use_ffi:
                    self.line(func.c_return_type + " " + func.c_name + "(" + c_params(func, cls) + ");")
            if not cls.is_pod:
                self.line("void " + cls.delete_name + "(void* self);")
        for func in module.exported_functions():
            self.line(func.c_return_type + " " + func.c_name + "(" + c_params(func, None) + ");")
        self.line("*/")
        self.line('import "C"')
        if "unsafe." in body:
            self.line()
            self.line('import "unsafe"')

    # ============================================================
    # TYPES
    # ============================================================

    def _doc(self, doc: str, name: str) -> None:
        if not doc:
            return
        for idx, text in enumerate(doc.splitlines()):
            text = text.strip().lstrip("*").strip()
            if idx == 0 and not text.startswith(name):
                text = name + ": " + text
            self.line(("// " + text).rstrip())

    def _emit_pod(self, cls: FFIClass) -> None:
        name = type_name(cls.name)
        self._doc(cls.doc, name)
        self.line("type " + name + " struct {")
        for f in cls.fields:
            assert f.ffi is not None
            self.line("\t" + go_exported(f.name, True) + " " + f.ffi.go)
        self.line("}")
        self.line()
        self.line("func (v " + name + ") toC() C." + name + " {")
        self.line("\treturn C." + name + "{")
        for f in cls.fields:
            assert f.ffi is not None
            self.line("\t\t" + f.name + ": " + f.ffi.cgo + "(v." + go_exported(f.name, True) + "),")
        self.line("\t}")
        self.line("}")
        self.line()
        self.line("func " + go_to_camel(name) + "FromC(c C." + name + ") " + name + " {")
        self.line("\treturn " + name + "{")
        for f in cls.fields:
            assert f.ffi is not None
            self.line("\t\t" + go_exported(f.name, True) + ": " + f.ffi.go + "(c." + f.name + "),")
        self.line("\t}")
        self.line("}")
        for func in cls.methods + cls.static_methods:
            if func.can_use_ffi:
                self._emit_wrapper(func, cls)
        self.line()

    def _emit_handle(self, cls: FFIClass) -> None:
        name = type_name(cls.name)
        if cls.doc:
            self._doc(cls.doc, name)
        else:
            self.line("// " + name + " owns a C++ " + cls.name + " through an opaque pointer.")
        self.line("type " + name + " struct {")
        self.line("\tptr unsafe.Pointer")
        self.line("}")
        for func in cls.constructors:
            if not func.can_use_ffi:
                continue
            suffix = "" if func.c_name.endswith("_new") else func.c_name.rsplit("_", 1)[-1]
            params, pre, args = self._params(func.parameters)
            self.line()
            self.line("func New" + name + suffix + "(" + ", ".join(params) + ") *" + name + " {")
            self.indent += 1
            for text in pre:
                self.line(text)
            self.line("return &" + name + "{ptr: C." + func.c_name + "(" + ", ".join(args) + ")}")
            self.indent -= 1
            self.line("}")
        self.line()
        self.line("// Delete frees the C++ object. The handle is unusable afterwards.")
        self.line("func (h *" + name + ") Delete() {")
        self.line("\tif h.ptr != nil {")
        self.line("\t\tC." + cls.delete_name + "(h.ptr)")
        self.line("\t\th.ptr = nil")
        self.line("\t}")
        self.line("}")
        for func in cls.methods + cls.static_methods:
            if func.can_use_ffi:
                self._emit_wrapper(func, cls)
        self.line()

    # ============================================================
    # FUNCTIONS
    # ============================================================

    def _params(self, params: list[FFIParameter]) -> tuple[list[str], list[str], list[str]]:
        """(Go parameters, conversion statements, C arguments)."""
        decls: list[str] = []
        pre: list[str] = []
        args: list[str] = []
        for p in params:
            t = p.ffi
            name = go_to_camel(p.name)
            if t is None:
                continue
            if t.kind == "string":
                decls.append(name + " string")
                pre.append("c" + to_pascal(name) + " := C.CString(" + name + ")")
                pre.append("defer C.free(unsafe.Pointer(c" + to_pascal(name) + "))")
                args.append("c" + to_pascal(name))
            elif t.kind == "pod":
                decls.append(name + " " + t.go)
                args.append(name + ".toC()")
            elif t.kind == "pod_ptr":
                decls.append(name + " " + t.go)
                args.append("(" + t.cgo + ")(unsafe.Pointer(" + name + "))")
            elif t.kind == "handle":
                decls.append(name + " " + t.go)
                args.append(name + ".ptr")
            elif t.kind == "raw_ptr":
                decls.append(name + " " + t.go)
                args.append(name)
            else:
                decls.append(name + " " + t.go)
                args.append(t.cgo + "(" + name + ")")
        return decls, pre, args

    def _result(self, t: FFIType) -> str:
        if t.kind == "void":
            return ""
        return " " + t.go

    def _convert(self, t: FFIType, call: str) -> str:
        if t.kind == "string":
            return "C.GoString(" + call + ")"
        if t.kind == "pod":
            return go_to_camel(type_name(t.target)) + "FromC(" + call + ")"
        if t.kind == "pod_ptr":
            return "(" + t.go + ")(unsafe.Pointer(" + call + "))"
        if t.kind == "handle":
            return "&" + type_name(t.target) + "{ptr: " + call + "}"
        if t.kind == "raw_ptr":
            return call
        return t.go + "(" + call + ")"

    def _wrapper_name(self, func: FFIFunction, cls: FFIClass | None) -> str:
        if cls is not None:
            return to_pascal(func.c_name[len(cls.prefix) + 1 :])
        return to_pascal(func.c_name[len(self.prefix) :])

    def _emit_wrapper(self, func: FFIFunction, cls: FFIClass | None) -> None:
        params, pre, args = self._params(func.parameters)
        name = self._wrapper_name(func, cls)
        if cls is not None and func.is_method:
            cls_name = type_name(cls.name)
            if cls.is_pod:
                receiver = "(v *" + cls_name + ") "
                args.insert(0, "(*C." + cls_name + ")(unsafe.Pointer(v))")
            else:
                receiver = "(h *" + cls_name + ") "
                args.insert(0, "h.ptr")
        else:
            receiver = ""
            if cls is not None:
                name = type_name(cls.name) + name
        self.line()
        self._doc(func.doc, name)
        if func.returns.kind == "handle":
            self.line("// The returned " + type_name(func.returns.target) + " is borrowed; do not Delete it.")
        self.line("func " + receiver + name + "(" + ", ".join(params) + ")" + self._result(func.returns) + " {")
        self.indent += 1
        for text in pre:
            self.line(text)
        call = "C." + func.c_name + "(" + ", ".join(args) + ")"
        if func.returns.kind == "void":
            self.line(call)
        else:
            self.line("return " + self._convert(func.returns, call))
        self.indent -= 1
        self.line("}")


def generate_go_bindings(module: FFIModule, package_name: str = "") -> str:
    return GoFFIGenerator(package_name).generate(module)

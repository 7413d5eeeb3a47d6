"""Rust FFI bindings: an `extern "C"` block plus safe wrapper types."""

from __future__ import annotations

from cxxport.backend.util import Emitter, rust_ident
from cxxport.typemap import type_name

from .analyzer import FFIClass, FFIFunction, FFIModule, FFIParameter, c_identifier
from .cwrapper import GENERATED, skipped_lines


class RustFFIGenerator(Emitter):
    """Handle classes own their pointer and free it in `Drop`."""

    prefix = ""

    def generate(self, module: FFIModule) -> str:
        self.lines = []
        self.prefix = c_identifier(module.library_name) + "_" if module.library_name else ""
        self.line(GENERATED)
        for text in skipped_lines(module):
            self.line(text)
        self.line()
        spelled = " ".join(self._spellings(module))
        imports = [name for name in ("c_char", "c_void") if name in spelled]
        if any(not c.is_pod for c in module.exported_classes()) and "c_void" not in imports:
            imports.append("c_void")
        if module.uses("string"):
            imports.insert(0, "CStr")
        if imports:
            self.line("use std::ffi::" + (imports[0] if len(imports) == 1 else "{" + ", ".join(imports) + "}") + ";")
            self.line()
        for cls in module.pod_classes():
            self._emit_pod_struct(cls)
        self._emit_extern_block(module)
        for cls in module.exported_classes():
            if cls.is_pod:
                self._emit_pod_impl(cls)
            else:
                self._emit_handle(cls)
        for func in module.exported_functions():
            self.line()
            self._emit_wrapper(func, None)
        return self.output().rstrip("\n") + "\n"

    def _spellings(self, module: FFIModule) -> list[str]:
        funcs = [f for c in module.exported_classes() for f in c.all_functions() if f.can_use_ffi]
        out: list[str] = []
        for func in funcs + module.exported_functions():
            out.append(func.returns.rust)
            out.extend(p.rust_type for p in func.parameters)
        return out

    def _doc(self, doc: str) -> None:
        for text in doc.splitlines():
            self.line(("/// " + text.strip().lstrip("*").strip()).rstrip())

    def _wrapper_name(self, func: FFIFunction, cls: FFIClass | None) -> str:
        """The C symbol without its class or library prefix."""
        if cls is not None:
            return rust_ident(func.c_name[len(cls.prefix) + 1 :])
        return rust_ident(func.c_name[len(self.prefix) :])

    # -- declarations ------------------------------------------------------

    def _emit_pod_struct(self, cls: FFIClass) -> None:
        if cls.doc:
            self._doc(cls.doc)
        self.line("#[repr(C)]")
        self.line("#[derive(Debug, Clone, Copy, Default, PartialEq)]")
        self.line("pub struct " + type_name(cls.name) + " {")
        for f in cls.fields:
            self.line("    pub " + rust_ident(f.name) + ": " + f.rust_type + ",")
        self.line("}")
        self.line()

    def _extern_params(self, func: FFIFunction, cls: FFIClass | None) -> str:
        parts: list[str] = []
        if cls is not None and func.is_method:
            if cls.is_pod:
                parts.append("this: " + ("*const " if func.is_const else "*mut ") + type_name(cls.name))
            else:
                parts.append("this: " + ("*const c_void" if func.is_const else "*mut c_void"))
        parts.extend(rust_ident(p.name) + ": " + p.rust_type for p in func.parameters)
        return ", ".join(parts)

    def _emit_extern_block(self, module: FFIModule) -> None:
        self.line('#[link(name = "' + module.library_name + '")]')
        self.line('extern "C" {')
        self.indent += 1
        for cls in module.exported_classes():
            for func in cls.constructors:
                if func.can_use_ffi:
                    self.line("fn " + func.c_name + "(" + self._extern_params(func, cls) + ") -> *mut c_void;")
            if not cls.is_pod:
                self.line("fn " + cls.delete_name + "(this: *mut c_void);")
            for func in cls.methods + cls.static_methods:
                if func.can_use_ffi:
                    self.line("fn " + func.c_name + "(" + self._extern_params(func, cls) + ")" + self._ret(func) + ";")
        for func in module.exported_functions():
            self.line("fn " + func.c_name + "(" + self._extern_params(func, None) + ")" + self._ret(func) + ";")
        self.indent -= 1
        self.line("}")

    def _ret(self, func: FFIFunction) -> str:
        if func.returns.kind == "void":
            return ""
        return " -> " + func.returns.rust

    # -- safe wrappers -----------------------------------------------------

    def _safe_param(self, p: FFIParameter) -> tuple[str, str, bool]:
        """(wrapper parameter, argument passed to the extern fn, needs unsafe fn)."""
        t = p.ffi
        name = rust_ident(p.name)
        if t is None:
            return name + ": " + p.rust_type, name, True
        if t.kind == "string":
            return name + ": &CStr", name + ".as_ptr()", False
        if t.kind == "pod_ptr":
            target = type_name(t.target)
            if t.is_const:
                return name + ": &" + target, name + " as *const " + target, False
            return name + ": &mut " + target, name + " as *mut " + target, False
        if t.kind == "handle":
            target = type_name(t.target)
            if t.is_const:
                return name + ": &" + target, name + ".ptr", False
            return name + ": &mut " + target, name + ".ptr", False
        if t.kind == "raw_ptr":
            return name + ": " + p.rust_type, name, True
        return name + ": " + p.rust_type, name, False

    def _emit_wrapper(self, func: FFIFunction, cls: FFIClass | None) -> None:
        params: list[str] = []
        args: list[str] = []
        needs_unsafe = func.returns.kind in ("raw_ptr", "string", "handle", "pod_ptr")
        if cls is not None and func.is_method:
            params.append("&self" if func.is_const else "&mut self")
            if cls.is_pod:
                args.append("self as " + ("*const " if func.is_const else "*mut ") + "Self")
            else:
                args.append("self.ptr")
        for p in func.parameters:
            param, arg, raw = self._safe_param(p)
            params.append(param)
            args.append(arg)
            needs_unsafe = needs_unsafe or raw
        name = self._wrapper_name(func, cls)
        if func.doc:
            self._doc(func.doc)
        if needs_unsafe:
            self.line("/// # Safety")
            self.line("/// Pointer arguments and results are passed to C++ unchecked.")
        qualifier = "pub unsafe fn " if needs_unsafe else "pub fn "
        self.line(qualifier + name + "(" + ", ".join(params) + ")" + self._ret(func) + " {")
        self.line("    unsafe { " + func.c_name + "(" + ", ".join(args) + ") }")
        self.line("}")

    def _emit_pod_impl(self, cls: FFIClass) -> None:
        funcs = [f for f in cls.methods + cls.static_methods if f.can_use_ffi]
        if not funcs:
            return
        self.line()
        self.line("impl " + type_name(cls.name) + " {")
        self.indent += 1
        for idx, func in enumerate(funcs):
            if idx:
                self.line()
            self._emit_wrapper(func, cls)
        self.indent -= 1
        self.line("}")

    def _emit_handle(self, cls: FFIClass) -> None:
        name = type_name(cls.name)
        self.line()
        if cls.doc:
            self._doc(cls.doc)
        else:
            self.line("/// Owns a C++ `" + cls.name + "` through an opaque pointer.")
        self.line("pub struct " + name + " {")
        self.line("    ptr: *mut c_void,")
        self.line("}")
        self.line()
        self.line("impl " + name + " {")
        self.indent += 1
        first = True
        for func in cls.constructors:
            if not func.can_use_ffi:
                continue
            if not first:
                self.line()
            first = False
            params: list[str] = []
            args: list[str] = []
            raw = False
            for p in func.parameters:
                param, arg, needs = self._safe_param(p)
                params.append(param)
                args.append(arg)
                raw = raw or needs
            ctor = "new" if func.c_name.endswith("_new") else "new_" + func.c_name.rsplit("_", 1)[-1]
            if raw:
                self.line("/// # Safety")
                self.line("/// Pointer arguments are passed to C++ unchecked.")
            self.line(("pub unsafe fn " if raw else "pub fn ") + ctor + "(" + ", ".join(params) + ") -> Self {")
            self.line("    let ptr = unsafe { " + func.c_name + "(" + ", ".join(args) + ") };")
            self.line("    " + name + " { ptr }")
            self.line("}")
        for func in cls.methods + cls.static_methods:
            if not func.can_use_ffi:
                continue
            if not first:
                self.line()
            first = False
            self._emit_wrapper(func, cls)
        self.indent -= 1
        self.line("}")
        self.line()
        self.line("impl Drop for " + name + " {")
        self.line("    fn drop(&mut self) {")
        self.line("        unsafe { " + cls.delete_name + "(self.ptr) }")
        self.line("    }")
        self.line("}")


def generate_rust_bindings(module: FFIModule) -> str:
    return RustFFIGenerator().generate(module)

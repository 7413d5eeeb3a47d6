"""RustBackend: IR -> Rust source.

Classes become structs with an inherent `impl` block (`new` factories
first), base classes become traits, may-throw functions return
`Result<_, CxxError>`, coroutines become `async fn`, and std threading
primitives map onto std::sync and std::thread. Bodies are lowered through
backend.lowering; a statement without a rule becomes an `untranslated:`
comment and a warning.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from cxxport.frontend.lexer import TK_IDENT, TK_STRING, Token, join_tokens, split_tokens
from cxxport.frontend.types import resolve_tokens
from cxxport.ir import IR, ClassDecl, EnumDecl, Function, Parameter, TemplateParameter, Type, Variable
from cxxport.middleend.concurrency import CONDVAR_KINDS, LOCK_KINDS, LOCK_TAGS, MUTEX_KINDS
from cxxport.middleend.hierarchy import TraitSpec, analyze_hierarchy, base_name
from cxxport.middleend.scan import body_tokens
from cxxport.middleend.templates import rust_bounds
from cxxport.typemap import atomic_value_type, rust_atomic_name, to_rust, type_name

from .lowering import (
    PRIMARY,
    Block,
    Break,
    CallTable,
    Continue,
    CoReturn,
    CoYield,
    DoWhile,
    ExprLowerer,
    ExprStmt,
    For,
    Frag,
    If,
    LocalDecl,
    LowerContext,
    LoweringError,
    Print,
    RangeFor,
    Return,
    Stmt,
    Throw,
    TryCatch,
    Untranslated,
    While,
    async_value_type,
    build_context,
    contains_return,
    describe,
    assigned_names,
    lambda_return_expr,
    member_call_parts,
    parse_body,
    receiver_name,
    specialization_suffix,
    string_literal_text,
)
from .util import (
    CodegenOptions,
    Emitter,
    method_base_name,
    rust_ident,
    to_screaming_snake,
    to_snake,
    variant_name,
)

# Rust binding strengths: comparisons sit below the bit operators.
_RUST_PREC: dict[str, int] = {
    "||": 3,
    "&&": 4,
    "==": 5,
    "!=": 5,
    "<": 5,
    ">": 5,
    "<=": 5,
    ">=": 5,
    "|": 6,
    "^": 7,
    "&": 8,
    "<<": 9,
    ">>": 9,
    "+": 10,
    "-": 10,
    "*": 11,
    "/": 11,
    "%": 11,
}

_CAST_PREC = 12
_COMPARISONS = {"==", "!=", "<", ">", "<=", ">="}
_NULL = "std::ptr::null_mut()"
_ORDERING = "Ordering::SeqCst"

_MATH_METHODS: dict[str, str] = {
    "std::sqrt": "sqrt",
    "std::floor": "floor",
    "std::ceil": "ceil",
    "std::round": "round",
    "std::sin": "sin",
    "std::cos": "cos",
    "std::tan": "tan",
    "std::exp": "exp",
    "std::log": "ln",
    "std::fabs": "abs",
    "sqrt": "sqrt",
    "floor": "floor",
    "ceil": "ceil",
    "fabs": "abs",
}

_DURATIONS: dict[str, str] = {
    "std::chrono::seconds": "from_secs",
    "std::chrono::milliseconds": "from_millis",
    "std::chrono::microseconds": "from_micros",
    "std::chrono::nanoseconds": "from_nanos",
}

_SEQUENCES = {"std::vector", "std::deque", "std::list", "std::stack", "std::queue", "std::array", "std::span"}
_MAPS = {"std::map", "std::unordered_map", "std::multimap"}
_SETS = {"std::set", "std::unordered_set"}


@dataclass
class _FnState:
    """What the statement emitters need to know about the enclosing function."""

    func: Function | None
    result: bool = False
    generator: bool = False
    is_main: bool = False
    ret: Type | None = None
    handler_var: str = ""


def _strip_ref(t: Type | None) -> Type | None:
    while t is not None and t.kind == "reference":
        t = t.element
    return t


def _is_string(t: Type | None) -> bool:
    t = _strip_ref(t)
    return t is not None and t.kind == "container" and t.name in ("std::string", "std::string_view")


def _threading_kind(t: Type | None) -> str:
    t = _strip_ref(t)
    if t is None or t.kind != "threading":
        return ""
    return t.name.rsplit("::", 1)[-1]


def _is_plain(t: Type) -> bool:
    if t.kind in ("bool", "integer", "float"):
        return True
    if t.kind == "container" and t.name != "std::optional":
        return all(_is_plain(a) for a in t.args)
    return False


def _nested_types(t: Type | None) -> list[Type]:
    """t and every type inside it."""
    if t is None:
        return []
    out = [t]
    out.extend(_nested_types(t.element))
    for a in t.args:
        out.extend(_nested_types(a))
    return out


def _array_lengths(types: list[Type]) -> set[str]:
    """Names that size an array: `T data[N]`, `std::array<T, N>`."""
    lengths: set[str] = set()
    for root in types:
        for t in _nested_types(root):
            if t.kind == "array" and t.size:
                lengths.add(t.size)
            elif t.kind == "container" and t.name == "std::array" and len(t.args) == 2:
                lengths.add(t.args[1].name)
    return lengths


class RustExpr(ExprLowerer):
    """Expression hooks for Rust."""

    PREC = _RUST_PREC

    def __init__(self, ctx: LowerContext, backend: RustBackend) -> None:
        super().__init__(ctx)
        self.b = backend
        self.atomic_loads: dict[str, str] = {}
        self.optional_fields: set[str] = set()
        self.iter_ranges: dict[str, str] = {}
        self.touched_static = False

    # -- operators ---------------------------------------------------------

    def binary(self, left: Frag, op: str, right: Frag) -> Frag:
        if op in ("==", "!=") and _NULL in (left.text, right.text):
            other = left if right.text == _NULL else right
            text = self.wrap(other, self.POSTFIX_PREC) + ".is_null()"
            if op == "!=":
                return Frag("!" + text, self.UNARY_PREC)
            return Frag(text, self.POSTFIX_PREC)
        if op == "<=>":
            return Frag(self.wrap(left, self.POSTFIX_PREC) + ".cmp(&" + self.wrap(right, self.UNARY_PREC) + ")", self.POSTFIX_PREC)
        if op == "+" and left.text.startswith('"'):
            return Frag('format!("{}{}", ' + left.text + ", " + right.text + ")", PRIMARY)
        p = self.prec(op)
        left_prec = p + 1 if op in _COMPARISONS else p
        return Frag(self.wrap(left, left_prec) + " " + op + " " + self.wrap(right, p + 1), p)

    def assign(self, target: Frag, op: str, value: Frag) -> Frag:
        atomic = self.atomic_loads.get(target.text)
        if atomic is not None:
            if op == "=":
                return Frag(atomic + ".store(" + value.text + ", " + _ORDERING + ")", self.POSTFIX_PREC)
            if op in ("+=", "-=", "&=", "|=", "^="):
                method = {"+=": "fetch_add", "-=": "fetch_sub", "&=": "fetch_and", "|=": "fetch_or", "^=": "fetch_xor"}[op]
                return Frag(atomic + "." + method + "(" + value.text + ", " + _ORDERING + ")", self.POSTFIX_PREC)
            raise LoweringError("atomic compound assignment '" + op + "'")
        text = value.text
        if op == "=" and target.text in self.optional_fields:
            text = "Some(" + text + ")"
        elif op == "=" and text.startswith('"'):
            text += ".to_string()"
        return Frag(target.text + " " + op + " " + text, 0)

    def unary(self, op: str, operand: Frag) -> Frag:
        if op in ("++", "--"):
            return self._step(operand, op)
        if op == "~":
            op = "!"
        if op == "+":
            return operand
        if op == "&":
            return Frag("&mut " + self.wrap(operand, self.UNARY_PREC), self.UNARY_PREC)
        return Frag(op + self.wrap(operand, self.UNARY_PREC), self.UNARY_PREC)

    def postfix(self, operand: Frag, op: str, simple: str) -> Frag:
        return self._step(operand, op)

    def _step(self, operand: Frag, op: str) -> Frag:
        atomic = self.atomic_loads.get(operand.text)
        method = "fetch_add" if op == "++" else "fetch_sub"
        if atomic is not None:
            return Frag(atomic + "." + method + "(1, " + _ORDERING + ")", self.POSTFIX_PREC)
        return Frag(operand.text + (" += 1" if op == "++" else " -= 1"), 0)

    def index(self, target: Frag, idx: Frag) -> Frag:
        key = idx.text
        if not key.isdigit():
            key = self.wrap(idx, _CAST_PREC) + " as usize"
        return Frag(self.wrap(target, self.POSTFIX_PREC) + "[" + key + "]", self.POSTFIX_PREC)

    def ternary(self, cond: Frag, a: Frag, b: Frag) -> Frag:
        return Frag("if " + cond.text + " { " + a.text + " } else { " + b.text + " }", 1)

    def cast(self, typ: Type, value: Frag) -> Frag:
        if typ.kind in ("bool", "integer", "float"):
            return Frag(self.wrap(value, _CAST_PREC) + " as " + to_rust(typ), _CAST_PREC)
        if typ.kind == "enum":
            raise LoweringError("cast to enum " + typ.name)
        raise LoweringError("cast to " + typ.name)

    def await_(self, operand: Frag) -> Frag:
        return Frag(self.wrap(operand, self.POSTFIX_PREC) + ".await", self.POSTFIX_PREC)

    # -- literals ----------------------------------------------------------

    def number(self, text: str) -> Frag:
        frag = super().number(text)
        if re.fullmatch(r"0[0-7]+", frag.text):
            return Frag("0o" + frag.text[1:], PRIMARY)
        return frag

    def string(self, text: str) -> Frag:
        if string_literal_text(text) is None:
            raise LoweringError("prefixed or raw string literal")
        return Frag(text, PRIMARY)

    def null(self) -> Frag:
        return Frag(_NULL, PRIMARY)

    # -- names -------------------------------------------------------------

    def name(self, name: str) -> Frag:
        ctx = self.ctx
        if "::" in name:
            return self._qualified(name)
        if name in ctx.locals:
            ident = rust_ident(name)
            if ctx.is_atomic(name):
                return self._atomic_load(ident)
            return Frag(ident, PRIMARY)
        if ctx.is_field(name):
            return self.field_access(ctx.receiver, name)
        if ctx.cls is not None:
            var = ctx.cls.field_named(name)
            if var is not None and var.is_static:
                return self._static_ref(self.b.static_name(ctx.cls, var), var)
        enum = ctx.enumerators.get(name)
        if enum is not None:
            return Frag(type_name(enum.name) + "::" + variant_name(name), PRIMARY)
        for var in ctx.ir.globals:
            if var.name == name:
                return self._static_ref(self.b.global_name(var), var)
        if name in ctx.methods:
            return Frag("Self::" + rust_ident(method_base_name(name)), PRIMARY)
        return Frag(rust_ident(name), PRIMARY)

    def _static_ref(self, ident: str, var: Variable) -> Frag:
        if not var.is_const and not _threading_kind(var.typ):
            self.touched_static = True
        if atomic_value_type(var.typ) is not None:
            return self._atomic_load(ident)
        return Frag(ident, PRIMARY)

    def _atomic_load(self, path: str) -> Frag:
        text = path + ".load(" + _ORDERING + ")"
        self.atomic_loads[text] = path
        self.b.uses.add("std::sync::atomic::Ordering")
        return Frag(text, self.POSTFIX_PREC)

    def field_access(self, receiver: str, name: str) -> Frag:
        ctx = self.ctx
        if name in ctx.guards:
            return Frag(ctx.guards[name], self.UNARY_PREC)
        ident = rust_ident(name)
        if name in ctx.inherited:
            path = receiver + "." + ctx.inherited[name] + "." + ident
        else:
            path = receiver + "." + ident
        if ctx.is_atomic(name):
            return self._atomic_load(path)
        if name in self.b.guarded_fields:
            return Frag("*" + path + ".lock().unwrap()", self.UNARY_PREC)
        if _threading_kind(ctx.type_of(name)) in ("thread", "jthread"):
            self.optional_fields.add(path)
        return Frag(path, self.POSTFIX_PREC)

    def _qualified(self, name: str) -> Frag:
        head, last = name.rsplit("::", 1)
        head_short = head.rsplit("::", 1)[-1]
        ir = self.ctx.ir
        for enum in ir.enums:
            if enum.name == head or enum.name == head_short:
                return Frag(type_name(enum.name) + "::" + variant_name(last), PRIMARY)
        cls = ir.find_class(head_short)
        if cls is not None:
            var = cls.field_named(last)
            if var is not None and var.is_static:
                return self._static_ref(self.b.static_name(cls, var), var)
            return Frag(self.b.struct_name(cls) + "::" + rust_ident(method_base_name(last)), PRIMARY)
        if name == "std::string::npos":
            return Frag("usize::MAX", PRIMARY)
        if name.startswith("std::launch::"):
            return Frag(name, PRIMARY)
        if name.startswith("std::"):
            raise LoweringError("no rule for " + name)
        return self.name(last)

    def this(self) -> Frag:
        return Frag(self.ctx.receiver, PRIMARY)

    def member(self, target: Frag, member: str, simple: str) -> Frag:
        if simple == "this":
            return self.field_access(self.ctx.receiver, member)
        if member == "first":
            return Frag(self.wrap(target, self.POSTFIX_PREC) + ".0", self.POSTFIX_PREC)
        if member == "second":
            return Frag(self.wrap(target, self.POSTFIX_PREC) + ".1", self.POSTFIX_PREC)
        return Frag(self.wrap(target, self.POSTFIX_PREC) + "." + rust_ident(member), self.POSTFIX_PREC)

    # -- calls -------------------------------------------------------------

    def _propagate(self, func_name: str) -> str:
        if func_name not in self.ctx.throwing:
            return ""
        state = self.b.fn_state
        if state.result or self.ctx.in_try:
            return "?"
        return ".unwrap()"

    def _call_text(self, callee: str, args: list[Frag]) -> str:
        return callee + "(" + ", ".join(self.b.coerce_arg(a.text) for a in args) + ")"

    def method_call(self, target: Frag, method: str, args: list[Frag], simple: str) -> Frag:
        ctx = self.ctx
        if simple == "this":
            return self.own_method(method, args)
        atomic = self.atomic_loads.get(target.text)
        if atomic is not None:
            return self._atomic_method(atomic, method, args)
        recv = self.wrap(target, self.POSTFIX_PREC)
        texts = [a.text for a in args]
        typ = _strip_ref(ctx.type_of(simple)) if simple else None
        kind = _threading_kind(typ)
        if simple and simple in ctx.lock_vars:
            if method == "unlock":
                return Frag("drop(" + recv + ")", PRIMARY)
            if method == "owns_lock":
                return Frag("true", PRIMARY)
            raise LoweringError("lock method " + method)
        if kind in ("thread", "jthread") or target.text in self.optional_fields:
            handle = recv + ".take().unwrap()" if target.text in self.optional_fields else recv
            if method == "join":
                return Frag(handle + ".join().unwrap()", self.POSTFIX_PREC)
            if method == "detach":
                return Frag("drop(" + handle + ")", PRIMARY)
            if method == "joinable":
                return Frag(recv + ".is_some()" if target.text in self.optional_fields else "true", self.POSTFIX_PREC)
        future = ctx.futures.get(simple, "") if simple else ""
        if future == "promise":
            if method == "set_value":
                return Frag(recv + ".send(" + ", ".join(texts) + ").unwrap()", self.POSTFIX_PREC)
            raise LoweringError("promise method " + method)
        if future in ("task", "channel") and method in ("get", "wait"):
            if future == "task":
                return Frag(recv + ".join().unwrap()", self.POSTFIX_PREC)
            return Frag(recv + ".recv().unwrap()", self.POSTFIX_PREC)
        if kind in CONDVAR_KINDS and method in ("notify_one", "notify_all"):
            return Frag(recv + "." + method + "()", self.POSTFIX_PREC)
        if method == "what" and not args:
            return Frag(recv + ".to_string()", self.POSTFIX_PREC)
        lowered = self._std_method(recv, method, texts, typ)
        if lowered is not None:
            return lowered
        cls = None
        if typ is not None:
            inner = typ.innermost()
            if inner.kind in ("class", "struct"):
                cls = ctx.ir.find_class(inner.name.rsplit("::", 1)[-1])
        ident = rust_ident(method_base_name(method))
        if cls is not None:
            func = self.b.calls.method_target(cls.name, method, len(args))
            if func is not None:
                args = self.with_defaults(func, args)
                ident = self.b.calls.name_of(func)
        text = self._call_text(recv + "." + ident, args) + self._propagate(method)
        return Frag(text, self.POSTFIX_PREC)

    def _atomic_method(self, path: str, method: str, args: list[Frag]) -> Frag:
        texts = [a.text for a in args]
        if method == "load":
            return Frag(path + ".load(" + _ORDERING + ")", self.POSTFIX_PREC)
        if method in ("store", "exchange", "fetch_add", "fetch_sub", "fetch_and", "fetch_or", "fetch_xor"):
            if len(texts) < 1:
                raise LoweringError("atomic " + method + " without value")
            name = "swap" if method == "exchange" else method
            return Frag(path + "." + name + "(" + texts[0] + ", " + _ORDERING + ")", self.POSTFIX_PREC)
        if method in ("compare_exchange_strong", "compare_exchange_weak") and len(texts) >= 2:
            text = path + ".compare_exchange(" + texts[0] + ", " + texts[1] + ", " + _ORDERING + ", " + _ORDERING + ").is_ok()"
            return Frag(text, self.POSTFIX_PREC)
        raise LoweringError("atomic method " + method)

    def _std_method(self, recv: str, method: str, texts: list[str], typ: Type | None) -> Frag | None:
        """Common std::string / container members; None when the name has no rule."""
        name = typ.name if typ is not None and typ.kind == "container" else ""
        p = self.POSTFIX_PREC
        n = len(texts)
        if method in ("size", "length") and n == 0:
            return Frag(recv + ".len()", p)
        if method == "empty" and n == 0:
            return Frag(recv + ".is_empty()", p)
        if method == "clear" and n == 0:
            return Frag(recv + ".clear()", p)
        if method in ("push_back", "emplace_back", "push") and n >= 1:
            if name in ("std::deque", "std::queue", "std::list"):
                return Frag(recv + ".push_back(" + texts[0] + ")", p)
            elem = typ.args[0] if typ is not None and typ.args else None
            if _threading_kind(elem) in ("thread", "jthread"):
                return Frag(recv + ".push(" + self.b.spawn_text([Frag(t, PRIMARY) for t in texts]) + ")", p)
            if n > 1:
                raise LoweringError(method + " with " + str(n) + " arguments")
            return Frag(recv + ".push(" + self.b.coerce_owned(texts[0]) + ")", p)
        if method == "push_front" and n == 1:
            return Frag(recv + ".push_front(" + texts[0] + ")", p)
        if method == "pop_back" and n == 0:
            return Frag(recv + ".pop()", p)
        if method == "pop_front" and n == 0:
            return Frag(recv + ".pop_front()", p)
        if method == "pop" and n == 0:
            if name == "std::queue":
                return Frag(recv + ".pop_front()", p)
            return Frag(recv + ".pop()", p)
        if method in ("top", "back") and n == 0:
            return Frag(recv + ".last().unwrap().clone()", p)
        if method == "front" and n == 0:
            return Frag(recv + ".front().unwrap().clone()" if name in ("std::deque", "std::queue") else recv + "[0]", p)
        if method == "at" and n == 1:
            return self.index(Frag(recv, p), Frag(texts[0], PRIMARY))
        if method in ("count", "contains") and n == 1:
            member = ".contains_key(&" if name in _MAPS else ".contains(&"
            text = recv + member + texts[0] + ")"
            return Frag(text + " as usize" if method == "count" else text, _CAST_PREC if method == "count" else p)
        if method == "insert" and n == 1 and name in _SETS:
            return Frag(recv + ".insert(" + texts[0] + ")", p)
        if method in ("insert", "emplace", "insert_or_assign") and n == 2 and name in _MAPS:
            return Frag(recv + ".insert(" + texts[0] + ", " + self.b.coerce_owned(texts[1]) + ")", p)
        if method == "erase" and n == 1 and (name in _MAPS or name in _SETS):
            return Frag(recv + ".remove(&" + texts[0] + ")", p)
        if method == "substr" and n in (1, 2):
            start = texts[0]
            if n == 1:
                return Frag(recv + "[" + start + "..].to_string()", p)
            return Frag(recv + "[" + start + ".." + start + " + " + texts[1] + "].to_string()", p)
        if method == "c_str" and n == 0:
            return Frag(recv + ".as_str()", p)
        if method == "append" and n == 1 and _is_string(typ):
            return Frag(recv + ".push_str(&" + texts[0] + ")", p)
        if method in ("begin", "end") and n == 0:
            text = recv + ".iter()"
            self.iter_ranges[text + "#" + method] = recv
            return Frag(text + ("" if method == "begin" else ".rev()"), p)
        if method == "has_value" and n == 0:
            return Frag(recv + ".is_some()", p)
        if method == "value" and n == 0:
            return Frag(recv + ".clone().unwrap()", p)
        if method == "value_or" and n == 1:
            return Frag(recv + ".clone().unwrap_or(" + texts[0] + ")", p)
        if method == "get" and n == 0 and typ is not None and typ.is_smart_pointer:
            return Frag("&*" + recv, self.UNARY_PREC)
        if method == "lock" and n == 0 and typ is not None and typ.kind == "pointer" and typ.ownership == "weak":
            return Frag(recv + ".upgrade()", p)
        if method in ("find", "rbegin", "rend", "cbegin", "cend", "lower_bound", "upper_bound"):
            raise LoweringError("iterator method " + method)
        return None

    def own_method(self, method: str, args: list[Frag]) -> Frag:
        ctx = self.ctx
        ident = rust_ident(method_base_name(method))
        func = None
        if ctx.cls is not None:
            func = self.b.calls.method_target(ctx.cls.name, method, len(args))
        recv = ctx.receiver
        if func is not None:
            args = self.with_defaults(func, args)
            ident = self.b.calls.name_of(func)
            if func.is_static:
                return Frag(self._call_text("Self::" + ident, args) + self._propagate(method), self.POSTFIX_PREC)
        elif method in self.b.inherited_methods:
            recv = recv + "." + self.b.inherited_methods[method]
        return Frag(self._call_text(recv + "." + ident, args) + self._propagate(method), self.POSTFIX_PREC)

    def call(self, name: str, targs: list[Token], args: list[Frag]) -> Frag:
        ctx = self.ctx
        if name.startswith("std::") or (name in _MATH_METHODS and ctx.ir.find_class(name) is None and name not in self.b.calls.free):
            return self._std_call(name, targs, args)
        if name in ("exit", "abs") and name not in self.b.calls.free:
            return self._std_call("std::" + name, targs, args)
        short = name.rsplit("::", 1)[-1]
        head = name.rsplit("::", 1)[0] if "::" in name else ""
        cls = ctx.ir.find_class(short)
        if cls is not None and (not head or ctx.ir.find_class(head.rsplit("::", 1)[-1]) is None):
            return self.construct_class(cls, targs, args)
        if head:
            owner = ctx.ir.find_class(head.rsplit("::", 1)[-1])
            if owner is not None:
                func = self.b.calls.method_target(owner.name, short, len(args))
                ident = self.b.calls.name_of(func) if func is not None else rust_ident(method_base_name(short))
                args = self.with_defaults(func, args)
                return Frag(self._call_text(self.b.struct_name(owner) + "::" + ident, args) + self._propagate(short), self.POSTFIX_PREC)
        if name in ctx.locals:
            return Frag(self._call_text(rust_ident(name), args), self.POSTFIX_PREC)
        if ctx.cls is not None and (name in ctx.methods or name in self.b.inherited_methods):
            return self.own_method(name, args)
        func = self.b.calls.free_target(short, len(args))
        ident = self.b.calls.name_of(func) if func is not None else rust_ident(short)
        args = self.with_defaults(func, args)
        if targs:
            ident += "::<" + ", ".join(self._type_args(targs)) + ">"
        return Frag(self._call_text(ident, args) + self._propagate(short), self.POSTFIX_PREC)

    def _type_args(self, targs: list[Token]) -> list[str]:
        return [to_rust(self._resolve(part), self.b.uses) for part in split_tokens(targs) if part]

    def _resolve(self, tokens: list[Token]) -> Type:
        return resolve_tokens(tokens, self.ctx.ir, self.ctx.template_names)

    def construct_class(self, cls: ClassDecl, targs: list[Token], args: list[Frag]) -> Frag:
        path = self.b.struct_name(cls)
        if targs:
            path += "::<" + ", ".join(self._type_args(targs)) + ">"
        func = self.b.calls.ctor_target(cls.name, len(args))
        ident = "new"
        if func is not None:
            args = self.with_defaults(func, args)
            ident = self.b.calls.name_of(func)
        elif args and not cls.constructors():
            return self._struct_literal(path, cls, args)
        text = self._call_text(path + "::" + ident, args)
        if func is not None and func.may_throw:
            text += self._propagate(func.name) or (".unwrap()" if cls.name not in self.ctx.throwing else "")
        return Frag(text, self.POSTFIX_PREC)

    def _struct_literal(self, path: str, cls: ClassDecl, args: list[Frag]) -> Frag:
        fields = [f for f in cls.fields if not f.is_static]
        if len(args) > len(fields):
            raise LoweringError("too many initializers for " + cls.name)
        items = [rust_ident(f.name) + ": " + self.b.coerce_typed(a.text, f.typ) for f, a in zip(fields, args)]
        if len(args) < len(fields):
            items.append("..Default::default()")
        return Frag(path + " { " + ", ".join(items) + " }", PRIMARY)

    def _std_call(self, name: str, targs: list[Token], args: list[Frag]) -> Frag:
        texts = [a.text for a in args]
        n = len(texts)
        p = self.POSTFIX_PREC
        b = self.b
        if name in _MATH_METHODS and n == 1:
            return Frag("(" + texts[0] + " as f64)." + _MATH_METHODS[name] + "()", p)
        if name in _DURATIONS and n == 1:
            return Frag("std::time::Duration::" + _DURATIONS[name] + "(" + self.wrap(args[0], _CAST_PREC) + " as u64)", p)
        if name == "std::to_string" and n == 1:
            return Frag(self.wrap(args[0], p) + ".to_string()", p)
        if name in ("std::max", "std::min") and n == 2:
            return Frag("std::cmp::" + name[5:] + "(" + texts[0] + ", " + texts[1] + ")", p)
        if name == "std::abs" and n == 1:
            return Frag(self.wrap(args[0], p) + ".abs()", p)
        if name == "std::pow" and n == 2:
            return Frag("(" + texts[0] + " as f64).powf(" + texts[1] + " as f64)", p)
        if name == "std::swap" and n == 2:
            return Frag("std::mem::swap(&mut " + texts[0] + ", &mut " + texts[1] + ")", p)
        if name in ("std::make_pair", "std::make_tuple", "std::tie"):
            return Frag("(" + ", ".join(texts) + ")", PRIMARY)
        if name == "std::get" and n == 1 and len(targs) == 1 and targs[0].value.isdigit():
            return Frag(self.wrap(args[0], p) + "." + targs[0].value, p)
        if name in ("std::ref", "std::cref") and n == 1:
            return args[0]
        if name in ("std::make_unique", "std::make_shared"):
            wrapper = "Box::new" if name == "std::make_unique" else "Rc::new"
            if name == "std::make_shared":
                b.uses.add("std::rc::Rc")
            if not targs:
                raise LoweringError(name + " without a type")
            typ = self._resolve(targs)
            cls = self.ctx.ir.find_class(typ.name.rsplit("::", 1)[-1]) if typ.kind in ("class", "struct") else None
            if cls is not None:
                inner = self.construct_class(cls, [], args).text
            elif n == 1:
                inner = texts[0]
            elif n == 0:
                inner = "Default::default()"
            else:
                raise LoweringError(name + " of " + typ.name)
            return Frag(wrapper + "(" + inner + ")", p)
        if name in ("std::thread", "std::jthread"):
            return Frag(b.spawn_text(args), p)
        if name == "std::async":
            if args and args[0].text.startswith("std::launch::"):
                args = args[1:]
            return Frag(b.spawn_text(args), p)
        if name == "std::this_thread::sleep_for" and n == 1:
            return Frag("std::thread::sleep(" + texts[0] + ")", p)
        if name == "std::this_thread::yield" and n == 0:
            return Frag("std::thread::yield_now()", p)
        if name == "std::this_thread::get_id" and n == 0:
            return Frag("std::thread::current().id()", p)
        if name == "std::exit" and n == 1:
            return Frag("std::process::exit(" + texts[0] + ")", p)
        if name in ("std::stoi", "std::stol", "std::stoll") and n == 1:
            return Frag(self.wrap(args[0], p) + ".parse::<i64>().unwrap()" if name != "std::stoi" else self.wrap(args[0], p) + ".parse::<i32>().unwrap()", p)
        if name in ("std::stod", "std::stof") and n == 1:
            return Frag(self.wrap(args[0], p) + ".parse::<f64>().unwrap()", p)
        if name in ("std::sort", "std::reverse") and n == 2:
            recv = self.iter_ranges.get(texts[0] + "#begin")
            if recv is not None:
                return Frag(recv + "." + name[5:] + "()", p)
        if name == "std::accumulate" and n == 3:
            recv = self.iter_ranges.get(texts[0] + "#begin")
            if recv is not None:
                return Frag(recv + ".iter().fold(" + texts[2] + ", |acc, x| acc + x)", p)
        if name in b.exception_types:
            return Frag(b.error_value(name, args), PRIMARY)
        raise LoweringError("no rule for " + name)

    def call_value(self, target: Frag, args: list[Frag]) -> Frag:
        return Frag(self.wrap(target, self.POSTFIX_PREC) + "(" + ", ".join(a.text for a in args) + ")", self.POSTFIX_PREC)

    def construct(self, typ: Type, args: list[Frag]) -> Frag:
        return Frag(self.b.aggregate(typ, args, "{}"), PRIMARY)

    def init_list(self, items: list[Frag]) -> Frag:
        return Frag("vec![" + ", ".join(i.text for i in items) + "]", PRIMARY)

    def new_(self, typ: Type, args: list[Frag]) -> Frag:
        if typ.kind in ("class", "struct"):
            cls = self.ctx.ir.find_class(typ.name.rsplit("::", 1)[-1])
            if cls is not None:
                return Frag("Box::new(" + self.construct_class(cls, [], args).text + ")", self.POSTFIX_PREC)
        if len(args) == 1:
            return Frag("Box::new(" + args[0].text + ")", self.POSTFIX_PREC)
        if not args:
            return Frag("Box::new(" + self.b.default_value(typ) + ")", self.POSTFIX_PREC)
        raise LoweringError("new " + typ.name)

    def new_array(self, typ: Type, size: Frag) -> Frag:
        return Frag("vec![" + self.b.default_value(typ) + "; " + self.wrap(size, _CAST_PREC) + " as usize]", PRIMARY)

    def delete(self, operand: Frag) -> Frag:
        return Frag("drop(" + operand.text + ")", PRIMARY)

    def sizeof(self, typ: Type) -> Frag:
        return Frag("std::mem::size_of::<" + to_rust(typ, self.b.uses) + ">()", self.POSTFIX_PREC)

    def lambda_(self, params: list[Parameter], ret: Type | None, body: list[Stmt], by_value: bool) -> Frag:
        ctx = self.ctx
        parts: list[str] = []
        saved = dict(ctx.locals)
        for p in params:
            ctx.locals[p.name] = p.typ
            if p.typ.kind == "template" and p.typ.name == "auto":
                parts.append(rust_ident(p.name))
            else:
                parts.append(rust_ident(p.name) + ": " + self.b.rust_type(p.typ))
        head = ("move " if by_value else "") + "|" + ", ".join(parts) + "|"
        try:
            if len(body) == 1 and isinstance(body[0], Return) and body[0].value:
                return Frag(head + " " + self.lower(body[0].value), 1)
            lines = self.b.render_block(body)
        finally:
            ctx.locals = saved
        arrow = " -> " + self.b.rust_type(ret) if ret is not None and ret.kind != "void" else ""
        return Frag(head + arrow + " {\n" + "\n".join(lines) + "\n}", 1)


class RustBackend(Emitter):
    """Emit Rust code from an analyzed IR."""

    def __init__(self, options: CodegenOptions | None = None) -> None:
        super().__init__()
        self.options = options or CodegenOptions()
        self.uses: set[str] = set()
        self.error_variants: set[str] = set()
        self.needs_error = False
        self.guarded_fields: set[str] = set()
        self.inherited_methods: dict[str, str] = {}
        self.exception_types: set[str] = set()
        self.fn_state = _FnState(None)

    # ============================================================
    # MODULE
    # ============================================================

    def emit(self, ir: IR) -> str:
        self.ir = ir
        self.lines = []
        self.warnings = []
        self.uses = set()
        self.error_variants = set()
        self.needs_error = False
        self.hier = analyze_hierarchy(ir)
        for w in self.hier.warnings():
            self.warn(w.message, w.lineno)
        self.calls = CallTable(ir, self._free_name, self._method_name, lambda _c: "new")
        self.exception_types = {"std::exception", "std::runtime_error", "std::logic_error"}
        for func in ir.all_functions():
            self.exception_types.update(func.exceptions.thrown_types)
            if func.may_throw:
                self.needs_error = True
            for block in func.exceptions.try_catch_blocks:
                self.needs_error = True
        self.exception_types.update(c.name for c in ir.classes if c.is_exception)
        for enum in ir.enums:
            self._emit_enum(enum)
        for concept in ir.concepts:
            self.line()
            self.line("/// Concept `" + concept + "`; its requirements are not translated.")
            self.line("pub trait " + type_name(concept) + " {}")
        for spec in self.hier.traits.values():
            self._emit_trait(spec)
        self._emit_globals(ir.globals)
        for cls in ir.classes:
            self._emit_class(cls)
        for func in ir.functions:
            self._emit_free_function(func)
        if self.options.generate_tests:
            self._emit_tests(ir)
        body = self.capture()
        self._emit_header()
        if self.needs_error:
            self._emit_error_enum()
        header = self.capture()
        return "\n".join(header + body).rstrip("\n") + "\n"

    def _emit_header(self) -> None:
        self.line("//! Translated from C++ by cxxport.")
        self.line()
        self.line("#![allow(dead_code, unused_mut, unused_variables, non_snake_case)]")
        if self.uses:
            self.line()
            for path in sorted(self.uses):
                self.line("use " + path + ";")

    def _emit_error_enum(self) -> None:
        variants = sorted(self.error_variants) + ["Other"]
        self.line()
        self.line("/// Every C++ exception type thrown or caught in this unit.")
        self.line("#[derive(Debug, Clone, PartialEq)]")
        self.line("pub enum CxxError {")
        self.indent += 1
        for v in variants:
            self.line(v + "(String),")
        self.indent -= 1
        self.line("}")
        self.line()
        self.line("impl std::fmt::Display for CxxError {")
        self.indent += 1
        self.line("fn fmt(&self, f: &mut std::fmt::Formatter<'_>) -> std::fmt::Result {")
        self.indent += 1
        self.line("match self {")
        self.indent += 1
        for v in variants:
            self.line("CxxError::" + v + "(msg) => write!(f, \"{}\", msg),")
        self.indent -= 1
        self.line("}")
        self.indent -= 1
        self.line("}")
        self.indent -= 1
        self.line("}")
        self.line()
        self.line("impl std::error::Error for CxxError {}")

    # -- naming ------------------------------------------------------------

    def _free_name(self, func: Function) -> str:
        if func.name == "main":
            return "main"
        name = rust_ident(method_base_name(func.name))
        spec = func.templates.specialization
        if spec.is_specialization and spec.specialized_args:
            name += "_" + to_snake(specialization_suffix(spec.specialized_args))
        return name

    def _method_name(self, cls: ClassDecl, func: Function) -> str:
        return rust_ident(method_base_name(func.name))

    def struct_name(self, cls: ClassDecl) -> str:
        name = type_name(cls.name)
        spec = self.hier.traits.get(cls.name)
        if spec is not None and spec.has_state:
            name += "Base"
        special = cls.templates.specialization
        if special.is_specialization and special.specialized_args:
            name += specialization_suffix(special.specialized_args)
        return name

    def static_name(self, cls: ClassDecl, var: Variable) -> str:
        return to_screaming_snake(type_name(cls.name)) + "_" + to_screaming_snake(var.name)

    def global_name(self, var: Variable) -> str:
        return to_screaming_snake(var.name)

    def variant(self, exc_type: str) -> str:
        name = variant_name(base_name(exc_type).replace("const ", "").strip(" &*"))
        self.error_variants.add(name)
        self.needs_error = True
        return name

    def rust_type(self, t: Type | None) -> str:
        """to_rust plus trait objects for base-class pointers."""
        text = to_rust(t, self.uses)
        for name in self.hier.traits:
            trait = type_name(name)
            text = re.sub(r"(Box<|Rc<|Weak<|&mut |&|\*mut |\*const )" + trait + r"\b(?!<)", r"\1dyn " + trait, text)
        return text

    # -- shared value helpers ----------------------------------------------

    def coerce_owned(self, text: str) -> str:
        if text.startswith('"'):
            return text + ".to_string()"
        return text

    def coerce_arg(self, text: str) -> str:
        return text

    def coerce_typed(self, text: str, typ: Type | None) -> str:
        t = _strip_ref(typ)
        if t is not None and t.kind == "container" and t.name == "std::string":
            if text.startswith('"'):
                return text + ".to_string()"
            param = self.ctx.locals.get(text)
            if param is not None and param.kind == "reference" and _is_string(param) and typ is not None and typ.kind != "reference":
                return text + ".to_string()"
        return text

    def default_value(self, typ: Type) -> str:
        t = typ
        if t.kind in ("class", "struct"):
            cls = self.ir.find_class(t.name.rsplit("::", 1)[-1])
            if cls is not None:
                ctors = self.calls.ctors.get(cls.name, [])
                zero = next((c for c in ctors if arity_zero(c)), None)
                if not ctors:
                    return self.struct_name(cls) + "::new()"
                if zero is not None:
                    return self.struct_name(cls) + "::" + self.calls.name_of(zero) + "()"
        if t.kind == "array" and t.size and not t.size.isdigit() and t.element is not None:
            # arrays of a generic length have no Default impl
            return "std::array::from_fn(|_| " + self.default_value(t.element) + ")"
        if t.kind == "pointer" and not t.is_smart_pointer:
            return _NULL
        return "Default::default()"

    def aggregate(self, typ: Type, args: list[Frag], style: str) -> str:
        """Value of `T name(args)` / `T name{args}` / `T{args}`."""
        texts = [a.text for a in args]
        k = typ.kind
        if k in ("class", "struct"):
            cls = self.ir.find_class(typ.name.rsplit("::", 1)[-1])
            if cls is None:
                raise LoweringError("construction of unknown type " + typ.name)
            text = self.expr.construct_class(cls, [], args).text
            if typ.args:
                path = self.struct_name(cls)
                generic = path + "::<" + ", ".join(self.rust_type(a) for a in typ.args) + ">"
                return text.replace(path + "::", generic + "::", 1)
            return text
        if k == "container":
            name = typ.name
            if name in ("std::vector", "std::deque", "std::list"):
                if style == "()" and len(texts) == 1:
                    elem = typ.args[0] if typ.args else None
                    init = self.default_value(elem) if elem is not None else "Default::default()"
                    text = "vec![" + init + "; " + texts[0] + " as usize]"
                elif style == "()" and len(texts) == 2:
                    text = "vec![" + texts[1] + "; " + texts[0] + " as usize]"
                else:
                    text = "vec![" + ", ".join(self.coerce_owned(t) for t in texts) + "]"
                if name != "std::vector":
                    return rust_container_from(typ, text, self.uses)
                return text
            if name == "std::string":
                return "String::from(" + texts[0] + ")" if texts else "String::new()"
            if name in ("std::pair", "std::tuple"):
                return "(" + ", ".join(self.coerce_owned(t) for t in texts) + ")"
            if name == "std::array":
                return "[" + ", ".join(texts) + "]"
            if name in _SETS or name in _MAPS:
                if not texts:
                    return "Default::default()"
                inner = to_rust(typ, self.uses).split("<", 1)[0]
                return inner + "::from([" + ", ".join(texts) + "])"
            if name == "std::optional":
                return "Some(" + texts[0] + ")" if texts else "None"
        if k == "array":
            return "[" + ", ".join(texts) + "]"
        if len(texts) == 1:
            return self.coerce_typed(texts[0], typ)
        if not texts:
            return self.default_value(typ)
        raise LoweringError("initializer for " + typ.name)

    def error_value(self, name: str, args: list[Frag]) -> str:
        variant = self.variant(name)
        texts = [a.text for a in args]
        if not texts:
            msg = "String::new()"
        elif len(texts) == 1:
            msg = texts[0] + ".to_string()"
        else:
            msg = 'format!("' + " ".join("{}" for _ in texts) + '", ' + ", ".join(texts) + ")"
        return "CxxError::" + variant + "(" + msg + ")"

    def spawn_text(self, args: list[Frag]) -> str:
        if not args:
            raise LoweringError("thread without a callable")
        func, rest = args[0], args[1:]
        text = func.text
        if text.startswith("|") or text.startswith("move |"):
            if not rest:
                closure = text if text.startswith("move") else "move " + text
                return "std::thread::spawn(" + closure + ")"
            call = "(" + text + ")(" + ", ".join(a.text for a in rest) + ")"
        elif text.startswith("&mut ") and "::" in text and rest:
            method = text.rsplit("::", 1)[1]
            call = rest[0].text + "." + method + "(" + ", ".join(a.text for a in rest[1:]) + ")"
        else:
            call = text + "(" + ", ".join(a.text for a in rest) + ")"
        return "std::thread::spawn(move || " + call + ")"

    # ============================================================
    # DECLARATIONS
    # ============================================================

    def _emit_doc(self, doc: str, line: int, what: str) -> None:
        if self.options.preserve_comments and doc:
            for text in doc.splitlines():
                self.line(("/// " + text.strip().lstrip("*").strip()).rstrip())
        if self.options.provenance:
            self.line("/// Translated from C++ " + what + " (line " + str(line) + ").")

    def _emit_enum(self, enum: EnumDecl) -> None:
        self.line()
        self._emit_doc("", enum.line, "enum " + enum.name)
        self.line("#[derive(Debug, Clone, Copy, PartialEq, Eq, Hash)]")
        if any(value for _, value in enum.values):
            repr_type = to_rust(enum.underlying) if enum.underlying is not None else "i32"
            self.line("#[repr(" + repr_type + ")]")
        self.line("pub enum " + type_name(enum.name) + " {")
        self.indent += 1
        for name, value in enum.values:
            if value:
                self.line(variant_name(name) + " = " + value + ",")
            else:
                self.line(variant_name(name) + ",")
        self.indent -= 1
        self.line("}")

    def _emit_globals(self, globals_: list[Variable]) -> None:
        if not globals_:
            return
        self.line()
        ctx = build_context(self.ir, None, None, "self")
        self._set_context(ctx, _FnState(None))
        for var in globals_:
            name = self.global_name(var)
            try:
                value = self._initial_value(var)
            except LoweringError as e:
                self._untranslated(var.name + " = " + (var.initializer or ""), str(e), var.line)
                continue
            typ = self.rust_type(var.typ)
            if var.is_const:
                if _is_string(var.typ):
                    typ = "&str"
                    value = value.removesuffix(".to_string()")
                self.line("pub const " + name + ": " + typ + " = " + value + ";")
            elif _threading_kind(var.typ):
                self.line("pub static " + name + ": " + typ + " = " + value + ";")
            else:
                if self.options.safety:
                    self.line("// SAFETY: mutable global; every access is wrapped in `unsafe` and unsynchronized.")
                self.line("pub static mut " + name + ": " + typ + " = " + value + ";")

    def _initial_value(self, var: Variable) -> str:
        kind = _threading_kind(var.typ)
        text = var.initializer
        if kind == "atomic":
            value = atomic_value_type(var.typ)
            atomic = rust_atomic_name(value) if value is not None else None
            inner = self.expr.lower(body_tokens(text)) if text else ("false" if value is not None and value.kind == "bool" else "0")
            if atomic is None:
                self.uses.add("std::sync::Mutex")
                return "Mutex::new(" + inner + ")"
            self.uses.add("std::sync::atomic::" + atomic)
            return atomic + "::new(" + inner + ")"
        if kind in MUTEX_KINDS:
            if var.typ.name in ("std::shared_mutex", "std::shared_timed_mutex"):
                self.uses.add("std::sync::RwLock")
                return "RwLock::new(())"
            self.uses.add("std::sync::Mutex")
            return "Mutex::new(())"
        if kind in CONDVAR_KINDS:
            self.uses.add("std::sync::Condvar")
            return "Condvar::new()"
        if kind in ("thread", "jthread"):
            return "None"
        if text is None:
            return self.default_value(var.typ)
        tokens = body_tokens(text)
        parts = [p for p in split_tokens(tokens) if p]
        if len(parts) == 1:
            return self.coerce_typed(self.expr.lower(parts[0]), var.typ)
        return self.aggregate(var.typ, self.expr.args(tokens), "{}")

    # -- generics ----------------------------------------------------------

    def _generics(
        self,
        params: list[TemplateParameter],
        line: int,
        lengths: set[str] | None = None,
        defaulted: set[str] | None = None,
    ) -> tuple[str, str, str]:
        """(impl form with bounds, struct form, use form) of a parameter list.

        Non-type parameters in `lengths` size arrays and become `usize`;
        type parameters in `defaulted` are default-constructed and gain `Default`.
        """
        bounded: list[str] = []
        plain: list[str] = []
        used: list[str] = []
        for p in params:
            if p.kind == "template" or p.is_variadic:
                what = "variadic template parameter " if p.is_variadic else "template template parameter "
                self.line("// untranslated: " + what + p.name)
                self.warn(what + p.name + " has no Rust equivalent", line)
                continue
            if p.kind == "non_type":
                typ = to_rust(p.param_type) if p.param_type is not None and p.name not in (lengths or ()) else "usize"
                text = "const " + p.name + ": " + typ
                bounded.append(text)
                plain.append(text)
                used.append(p.name)
                continue
            bounds = rust_bounds(p)
            if p.name in (defaulted or ()) and "Default" not in bounds:
                bounds.append("Default")
            bounded.append(p.name + (": " + " + ".join(bounds) if bounds else ""))
            plain.append(p.name)
            used.append(p.name)

        def wrap(items: list[str]) -> str:
            return "<" + ", ".join(items) + ">" if items else ""

        return wrap(bounded), wrap(plain), wrap(used)

    # -- traits ------------------------------------------------------------

    def _emit_trait(self, spec: TraitSpec) -> None:
        parsed = self.ir.find_class(spec.name)
        self.line()
        if parsed is not None:
            self._emit_doc(parsed.doc, parsed.line, "base class " + spec.name)
        else:
            self.line("/// Interface of `" + spec.name + "`, inferred from its overrides.")
        self.line("pub trait " + type_name(spec.name) + " {")
        self.indent += 1
        methods = list(spec.methods)
        if parsed is not None and not spec.has_state:
            names = {m.name for m in methods}
            methods += [
                m
                for m in parsed.methods
                if m.name not in names
                and m.has_body
                and not (m.is_constructor or m.is_destructor or m.is_static or m.is_deleted or m.is_defaulted)
            ]
        for idx, m in enumerate(methods):
            default = parsed is not None and not spec.has_state and m.has_body and not m.is_pure_virtual
            if idx:
                self.line()
            name = rust_ident(method_base_name(m.name))
            if default:
                self._emit_function(m, parsed, name, vis="")
            else:
                self._emit_function(m, None, name, vis="", decl_only=True, method=True)
        self.indent -= 1
        self.line("}")
        if parsed is not None and not spec.has_state:
            for m in parsed.methods:
                if m.is_static or (m.is_constructor and m.has_body and m.body.strip()):
                    self._untranslated(m.signature or m.name, "member of interface-only class", m.line)

    # -- classes -----------------------------------------------------------

    def _emit_class(self, cls: ClassDecl) -> None:
        spec = self.hier.traits.get(cls.name)
        if spec is not None and not spec.has_state:
            return
        struct = self.struct_name(cls)
        special = cls.templates.specialization
        if special.is_specialization:
            self.warn("specialization of " + cls.name + " emitted as " + struct, cls.line)
        self.guarded_fields = _guarded(cls)
        dropped = {m.name for m in cls.threading.mutexes if m.is_field and m.guarded_fields}
        self.line()
        self._emit_doc(cls.doc, cls.line, ("struct " if cls.is_struct else "class ") + cls.name)
        fields = [f for f in cls.fields if not f.is_static and f.name not in dropped]
        defaulted = {t.name for f in fields if f.initializer is None for t in _nested_types(f.typ)}
        bounded, plain, used = self._generics(cls.templates.parameters, cls.line, _array_lengths([f.typ for f in fields]), defaulted)
        state_bases = self.hier.state_bases(cls.name)
        message = self._needs_message(cls)
        if cls.is_exception:
            self.line("#[derive(Debug, Clone)]")
        elif all(_is_plain(f.typ) for f in fields) and not (state_bases or plain or self.guarded_fields):
            self.line("#[derive(Debug, Clone, Default, PartialEq)]")
        if not fields and not state_bases and not message:
            self.line("pub struct " + struct + plain + " {}")
        else:
            self.line("pub struct " + struct + plain + " {")
            self.indent += 1
            for base in state_bases:
                self.line(to_snake(base.name) + "_base: " + type_name(base.name) + "Base,")
            if message:
                self.line("message: String,")
            for f in fields:
                vis = "pub " if f.access == "public" else ""
                if self.options.safety and f.typ.kind == "pointer" and not f.typ.is_smart_pointer:
                    self.line("// SAFETY: raw pointer; the pointee must outlive this value.")
                self.line(vis + rust_ident(f.name) + ": " + self._field_type(f) + ",")
            self.indent -= 1
            self.line("}")
        for var in cls.fields:
            if var.is_static:
                self._emit_static_field(cls, var)
        self._emit_impl(cls, struct, bounded, used, dropped)
        self._emit_drop(cls, struct, bounded, used)
        if cls.is_exception:
            self._emit_display(cls, struct)
        for base in self.hier.bases_of(cls.name):
            self._emit_trait_impl(cls, base, struct, bounded, used)
        if spec is not None and spec.has_state and not cls.is_abstract:
            self._emit_base_self_impl(cls, spec, struct)

    def _needs_message(self, cls: ClassDecl) -> bool:
        return cls.is_exception and any(b.startswith("std::") for b in cls.base_classes) and cls.field_named("message") is None

    def _field_type(self, f: Variable) -> str:
        kind = _threading_kind(f.typ)
        if kind in ("thread", "jthread"):
            self.uses.add("std::thread::JoinHandle")
            return "Option<JoinHandle<()>>"
        text = self.rust_type(f.typ)
        if f.name in self.guarded_fields:
            self.uses.add("std::sync::Mutex")
            return "Mutex<" + text + ">"
        return text

    def _emit_static_field(self, cls: ClassDecl, var: Variable) -> None:
        ctx = build_context(self.ir, cls, None, "self")
        self._set_context(ctx, _FnState(None))
        name = self.static_name(cls, var)
        try:
            value = self._initial_value(var)
        except LoweringError as e:
            self._untranslated("static " + var.name, str(e), var.line)
            return
        typ = self.rust_type(var.typ)
        self.line()
        if var.is_const:
            if _is_string(var.typ):
                typ = "&str"
                value = value.removesuffix(".to_string()")
            self.line("pub const " + name + ": " + typ + " = " + value + ";")
        else:
            if self.options.safety:
                self.line("// SAFETY: static data member; accesses are unsynchronized.")
            self.line("pub static mut " + name + ": " + typ + " = " + value + ";")

    def _inherent(self, cls: ClassDecl, m: Function) -> bool:
        if m.is_constructor or m.is_destructor:
            return False
        spec = self.hier.traits.get(cls.name)
        if spec is not None and spec.has_state:
            return not (m.is_pure_virtual and not m.has_body)
        for base in self.hier.bases_of(cls.name):
            if m.name in base.method_names():
                return False
        return True

    def _emit_impl(self, cls: ClassDecl, struct: str, bounded: str, used: str, dropped: set[str]) -> None:
        self.line()
        self.line("impl" + bounded + " " + struct + used + " {")
        self.indent += 1
        first = True
        ctors = [c for c in cls.constructors() if not c.is_deleted]
        if not ctors:
            self._emit_default_constructor(cls, dropped)
            first = False
        for ctor in ctors:
            if not first:
                self.line()
            first = False
            if ctor.is_defaulted:
                self._emit_default_constructor(cls, dropped, ctor)
            else:
                self._emit_constructor(cls, ctor, dropped)
        for m in cls.methods:
            if not self._inherent(cls, m):
                continue
            if not first:
                self.line()
            first = False
            if m.is_deleted or m.is_defaulted:
                self.line("// " + ("deleted" if m.is_deleted else "defaulted") + ": " + (m.signature or m.name))
                continue
            self._emit_function(m, cls, self.calls.name_of(m))
        self.indent -= 1
        self.line("}")

    def _field_items(self, cls: ClassDecl, ctor: Function | None, dropped: set[str]) -> list[str]:
        inits: dict[str, str] = {}
        if ctor is not None:
            for key, text in ctor.initializers:
                inits[base_name(key).rsplit("::", 1)[-1] if not key.startswith("std::") else key] = text
        items: list[str] = []
        for base in self.hier.state_bases(cls.name):
            parent = self.ir.find_class(base.name)
            field_name = to_snake(base.name) + "_base"
            text = inits.get(base.name)
            base_struct = type_name(base.name) + "Base"
            try:
                if text is None or parent is None:
                    items.append(field_name + ": " + base_struct + "::new()")
                else:
                    args = self.expr.args(body_tokens(text))
                    items.append(field_name + ": " + self.expr.construct_class(parent, [], args).text)
            except LoweringError as e:
                items.append(field_name + ": " + base_struct + "::new()")
                self.warn("base initializer of " + cls.name + ": " + str(e), cls.line)
        if self._needs_message(cls):
            std_base = next(b for b in cls.base_classes if b.startswith("std::"))
            text = inits.get(std_base)
            value = "String::new()"
            if text:
                try:
                    value = self.expr.lower(body_tokens(text)) + ".to_string()"
                except LoweringError as e:
                    self.warn("exception message of " + cls.name + ": " + str(e), cls.line)
            items.append("message: " + value)
        for f in cls.fields:
            if f.is_static or f.name in dropped:
                continue
            ident = rust_ident(f.name)
            text = inits.get(f.name, f.initializer)
            try:
                value = self._field_value(f, text)
            except LoweringError as e:
                value = "Default::default()"
                self.warn("initializer of " + cls.name + "::" + f.name + ": " + str(e), f.line)
            items.append(ident if value == ident else ident + ": " + value)
        return items

    def _field_value(self, f: Variable, text: str | None) -> str:
        if _threading_kind(f.typ) or text is None:
            value = self._initial_value(Variable(f.name, f.typ, initializer=text))
        else:
            tokens = body_tokens(text)
            parts = [p for p in split_tokens(tokens) if p]
            if len(parts) == 1:
                value = self.coerce_typed(self.expr.lower(parts[0]), f.typ)
            else:
                value = self.aggregate(f.typ, self.expr.args(tokens), "()")
        if f.name in self.guarded_fields:
            return "Mutex::new(" + value + ")"
        return value

    def _struct_literal(self, items: list[str]) -> str:
        if not items:
            return "Self {}"
        one_line = "Self { " + ", ".join(items) + " }"
        if len(one_line) + self.indent * 4 <= 96 and "\n" not in one_line:
            return one_line
        return "Self {\n" + "".join("    " + item + ",\n" for item in items) + "}"

    def _emit_default_constructor(self, cls: ClassDecl, dropped: set[str], ctor: Function | None = None) -> None:
        self._set_context(build_context(self.ir, cls, ctor, "this"), _FnState(ctor), cls)
        name = self.calls.name_of(ctor) if ctor is not None else "new"
        self.line("pub fn " + name + "() -> Self {")
        self.indent += 1
        self.line(self._struct_literal(self._field_items(cls, None, dropped)))
        self.indent -= 1
        self.line("}")

    def _emit_constructor(self, cls: ClassDecl, ctor: Function, dropped: set[str]) -> None:
        state = _FnState(ctor, result=ctor.may_throw)
        self._set_context(build_context(self.ir, cls, ctor, "this"), state, cls)
        self._emit_doc(ctor.doc, ctor.line, "constructor " + cls.name)
        name = self.calls.name_of(ctor)
        ret = "Result<Self, CxxError>" if state.result else "Self"
        self.line("pub fn " + name + "(" + self._params(ctor) + ") -> " + ret + " {")
        self.indent += 1
        literal = self._struct_literal(self._field_items(cls, ctor, dropped))
        stmts = parse_body(ctor.body, self.ir, self.ctx.template_names)
        if not stmts:
            self.line("Ok(" + literal + ")" if state.result else literal)
        else:
            self.line("let mut this = " + literal + ";")
            self._emit_block(stmts)
            self.line("Ok(this)" if state.result else "this")
        self.indent -= 1
        self.line("}")

    def _emit_drop(self, cls: ClassDecl, struct: str, bounded: str, used: str) -> None:
        dtor = next((m for m in cls.methods if m.is_destructor and m.has_body and m.body.strip()), None)
        if dtor is None:
            return
        self._set_context(build_context(self.ir, cls, dtor, "self"), _FnState(dtor), cls)
        self.line()
        self.line("impl" + bounded + " Drop for " + struct + used + " {")
        self.indent += 1
        self.line("fn drop(&mut self) {")
        self.indent += 1
        self._emit_block(parse_body(dtor.body, self.ir, self.ctx.template_names))
        self.indent -= 1
        self.line("}")
        self.indent -= 1
        self.line("}")

    def _emit_display(self, cls: ClassDecl, struct: str) -> None:
        if self._needs_message(cls) or cls.field_named("message") is not None:
            shown = "self.message"
        elif cls.method_named("what") is not None:
            shown = "self.what()"
        else:
            shown = '"' + cls.name + '"'
        self.line()
        self.line("impl std::fmt::Display for " + struct + " {")
        self.indent += 1
        self.line("fn fmt(&self, f: &mut std::fmt::Formatter<'_>) -> std::fmt::Result {")
        self.indent += 1
        self.line('write!(f, "{}", ' + shown + ")")
        self.indent -= 1
        self.line("}")
        self.indent -= 1
        self.line("}")
        self.line()
        self.line("impl std::error::Error for " + struct + " {}")

    def _emit_trait_impl(self, cls: ClassDecl, spec: TraitSpec, struct: str, bounded: str, used: str) -> None:
        self.line()
        self.line("impl" + bounded + " " + type_name(spec.name) + " for " + struct + used + " {")
        self.indent += 1
        first = True
        for m in spec.methods:
            own = next((o for o in cls.methods if o.name == m.name and not o.is_constructor), None)
            delegation = self.hier.delegation_for(cls.name, spec.name, m.name)
            name = rust_ident(method_base_name(m.name))
            if own is None and spec.parsed and not spec.has_state and m.has_body and not m.is_pure_virtual:
                continue
            if not first:
                self.line()
            first = False
            if own is not None and own.has_body:
                self._emit_function(own, cls, name, vis="")
            elif delegation is not None:
                owner = type_name(delegation.owner)
                self._emit_forward(m, name, "<Self as " + owner + ">::" + name + "(self", first_arg=True)
            elif spec.has_state and m.has_body:
                self._emit_forward(m, name, "self." + to_snake(spec.name) + "_base." + name + "(")
            else:
                self.warn(cls.name + " does not implement " + spec.name + "::" + m.name, cls.line)
                self._emit_forward(m, name, "", todo=True)
        self.indent -= 1
        self.line("}")

    def _emit_base_self_impl(self, cls: ClassDecl, spec: TraitSpec, struct: str) -> None:
        self.line()
        self.line("impl " + type_name(spec.name) + " for " + struct + " {")
        self.indent += 1
        for idx, m in enumerate(spec.methods):
            if idx:
                self.line()
            name = rust_ident(method_base_name(m.name))
            self._emit_forward(m, name, struct + "::" + name + "(self", first_arg=True)
        self.indent -= 1
        self.line("}")

    def _emit_forward(self, m: Function, name: str, call: str, first_arg: bool = False, todo: bool = False) -> None:
        self._set_context(build_context(self.ir, None, m, "self"), _FnState(m, result=m.may_throw))
        self.line(self._signature(m, name, "", method=True) + " {")
        self.indent += 1
        if todo:
            self.line('todo!("' + name + '")')
        else:
            args = [rust_ident(p.name) if p.name else "_arg" + str(i) for i, p in enumerate(m.params)]
            if first_arg and args:
                self.line(call + ", " + ", ".join(args) + ")")
            else:
                self.line(call + ", ".join(args) + ")")
        self.indent -= 1
        self.line("}")

    # -- functions ---------------------------------------------------------

    def _emit_free_function(self, func: Function) -> None:
        if func.is_deleted:
            return
        self.line()
        name = self.calls.name_of(func)
        special = func.templates.specialization
        if special.is_specialization:
            self.warn("specialization of " + func.name + " emitted as " + name, func.line)
        self._emit_function(func, None, name, vis="" if name == "main" else "pub ")

    def _params(self, func: Function) -> str:
        mutated = assigned_names(func.body)
        parts: list[str] = []
        for idx, p in enumerate(func.params):
            pname = rust_ident(p.name) if p.name else "_arg" + str(idx)
            mut = "mut " if p.name in mutated and p.typ.kind not in ("reference",) else ""
            parts.append(mut + pname + ": " + self.rust_type(p.typ))
        return ", ".join(parts)

    def _value_type(self, func: Function) -> Type | None:
        if func.asyncs.coroutine.is_coroutine:
            return async_value_type(func)
        if func.returns_void:
            return None
        return func.return_type

    def _signature(self, func: Function, name: str, vis: str, method: bool) -> str:
        generator = func.asyncs.coroutine.is_generator
        coroutine = func.asyncs.coroutine.is_coroutine and not generator
        lengths = _array_lengths([p.typ for p in func.params] + ([func.return_type] if func.return_type is not None else []))
        bounded, _, _ = self._generics(func.templates.parameters, func.line, lengths)
        params = self._params(func)
        if method and not func.is_static:
            receiver = "&self" if func.is_const else "&mut self"
            params = receiver + (", " + params if params else "")
        value = self._value_type(func)
        if generator:
            ret = "impl Iterator<Item = " + (self.rust_type(value) if value is not None else "()") + ">"
        elif func.name == "main":
            ret = ""
        else:
            ret = self.rust_type(value) if value is not None else ""
            if func.may_throw:
                ret = "Result<" + (ret or "()") + ", CxxError>"
        head = vis + ("async fn " if coroutine else "fn ") + name + bounded + "(" + params + ")"
        return head + (" -> " + ret if ret else "")

    def _emit_function(
        self,
        func: Function,
        cls: ClassDecl | None,
        name: str,
        vis: str = "pub ",
        decl_only: bool = False,
        method: bool | None = None,
    ) -> None:
        is_method = cls is not None if method is None else method
        state = _FnState(
            func,
            result=func.may_throw and func.name != "main",
            generator=func.asyncs.coroutine.is_generator,
            is_main=cls is None and func.name == "main",
            ret=self._value_type(func),
        )
        self._set_context(build_context(self.ir, cls, func, "self"), state, cls)
        self._emit_doc(func.doc, func.line, ("method " if is_method else "function ") + func.name)
        if self.options.safety and any(p.typ.kind == "pointer" and not p.typ.is_smart_pointer for p in func.params):
            self.line("/// # Safety")
            self.line("/// Raw pointer arguments must be valid for the duration of the call.")
        sig = self._signature(func, name, vis, is_method)
        if decl_only:
            self.line(sig + ";")
            return
        self.line(sig + " {")
        self.indent += 1
        if not func.has_body:
            self.warn(func.name + " is declared without a definition", func.line)
            self.line('unimplemented!("' + func.name + '")')
        else:
            self._emit_function_body(func)
        self.indent -= 1
        self.line("}")

    def _emit_function_body(self, func: Function) -> None:
        state = self.fn_state
        stmts = parse_body(func.body, self.ir, self.ctx.template_names)
        if state.generator:
            self.line("let mut yielded = Vec::new();")
        self._emit_block(stmts)
        if state.generator:
            self.line("yielded.into_iter()")
        elif state.result and state.ret is None and not (stmts and isinstance(stmts[-1], (Return, CoReturn, Throw))):
            self.line("Ok(())")
        elif state.ret is not None and stmts and isinstance(stmts[-1], TryCatch) and contains_return(stmts[-1:]):
            self.line("unreachable!()")

    def _set_context(self, ctx: LowerContext, state: _FnState, cls: ClassDecl | None = None) -> None:
        self.inherited_methods = {}
        self.guarded_fields = _guarded(cls) if cls is not None else set()
        if cls is not None:
            for base in self.hier.state_bases(cls.name):
                parent = self.ir.find_class(base.name)
                if parent is None:
                    continue
                field_name = to_snake(base.name) + "_base"
                for f in parent.fields:
                    if not f.is_static and f.name not in ctx.fields:
                        ctx.inherited[f.name] = field_name
                        ctx.fields[f.name] = f
                trait_methods = set(base.method_names())
                for m in parent.methods:
                    if m.name not in trait_methods and m.name not in ctx.methods and not m.is_constructor:
                        self.inherited_methods[m.name] = field_name
        self.ctx = ctx
        self.fn_state = state
        self.expr = RustExpr(ctx, self)

    def render_block(self, stmts: list[Stmt]) -> list[str]:
        """Lines of a nested block (lambda body), indented one level."""
        saved_lines, saved_indent, saved_state, saved_try = self.lines, self.indent, self.fn_state, self.ctx.in_try
        self.lines = []
        self.indent = 1
        self.fn_state = _FnState(None)
        self.ctx.in_try = 0
        try:
            self._emit_block(stmts)
            return self.lines
        finally:
            self.lines, self.indent, self.fn_state = saved_lines, saved_indent, saved_state
            self.ctx.in_try = saved_try

    # ============================================================
    # STATEMENTS
    # ============================================================

    def _untranslated(self, text: str, reason: str, line: int = 0) -> None:
        self.line("// untranslated: " + " ".join(text.split()))
        func = self.fn_state.func
        where = " in " + func.name if func is not None else ""
        if not line and func is not None:
            line = func.line
        self.warn("untranslated statement" + where + ": " + reason, line)

    def _emit_block(self, stmts: list[Stmt]) -> None:
        saved = dict(self.ctx.guards)
        for stmt in stmts:
            self._emit_stmt(stmt)
        self.ctx.guards = saved

    def _emit_body(self, stmts: list[Stmt]) -> None:
        self.indent += 1
        self._emit_block(stmts)
        self.indent -= 1

    def _emit_stmt(self, stmt: Stmt) -> None:
        self.expr.touched_static = False
        try:
            if isinstance(stmt, ExprStmt):
                self._stmt_expr(stmt)
            elif isinstance(stmt, LocalDecl):
                self._stmt_decl(stmt)
            elif isinstance(stmt, Return):
                self._stmt_return(stmt.value)
            elif isinstance(stmt, CoReturn):
                self._stmt_return(stmt.value)
            elif isinstance(stmt, CoYield):
                self.line("yielded.push(" + self.coerce_owned(self.expr.lower(stmt.value)) + ");")
            elif isinstance(stmt, Throw):
                self._stmt_throw(stmt)
            elif isinstance(stmt, If):
                self._stmt_if(stmt)
            elif isinstance(stmt, While):
                cond = self._cond(stmt.cond)
                self.line("while " + cond + " {")
                self._emit_body(stmt.body)
                self.line("}")
            elif isinstance(stmt, DoWhile):
                cond = self._cond(stmt.cond)
                self.line("loop {")
                self._emit_body(stmt.body)
                self.line("    if !(" + cond + ") {")
                self.line("        break;")
                self.line("    }")
                self.line("}")
            elif isinstance(stmt, For):
                self._stmt_for(stmt)
            elif isinstance(stmt, RangeFor):
                self._stmt_range_for(stmt)
            elif isinstance(stmt, Break):
                self.line("break;")
            elif isinstance(stmt, Continue):
                self.line("continue;")
            elif isinstance(stmt, Block):
                self.line("{")
                self._emit_body(stmt.body)
                self.line("}")
            elif isinstance(stmt, TryCatch):
                self._stmt_try(stmt)
            elif isinstance(stmt, Print):
                self._stmt_print(stmt)
            elif isinstance(stmt, Untranslated):
                self._untranslated(stmt.text, "no translation rule for this statement")
            else:
                raise LoweringError("unknown statement " + type(stmt).__name__)
        except LoweringError as e:
            self._untranslated(describe(stmt), str(e))

    def _stmt_expr(self, stmt: ExprStmt) -> None:
        wait = self._condvar_wait(stmt.expr)
        if wait is not None:
            self.line(wait)
            return
        text = self.expr.lower(stmt.expr)
        if self.expr.touched_static:
            text = "unsafe { " + text + " }"
        self.line(text + ";")

    def _is_condvar(self, name: str) -> bool:
        if _threading_kind(self.ctx.type_of(name)) in CONDVAR_KINDS:
            return True
        cls = self.ctx.cls
        if cls is not None and any(c.name == name for c in cls.threading.condition_variables):
            return True
        return any(g.name == name and _threading_kind(g.typ) in CONDVAR_KINDS for g in self.ir.globals)

    def _guarded_by(self, mutex: str) -> list[str]:
        cls = self.ctx.cls
        if cls is None or mutex in self.ctx.locals:
            return []
        for m in cls.threading.mutexes:
            if m.name == mutex and m.is_field:
                return list(m.guarded_fields)
        return []

    def _condvar_wait(self, tokens: list[Token]) -> str | None:
        parts = member_call_parts(tokens)
        if parts is None:
            return None
        recv, method, arg_tokens = parts
        if method not in ("wait", "wait_for", "wait_until"):
            return None
        name = receiver_name(recv)
        if not name or not self._is_condvar(name):
            return None
        if method != "wait":
            raise LoweringError("timed condition variable wait")
        args = [a for a in split_tokens(arg_tokens) if a]
        lock = receiver_name(args[0]) if args else ""
        if not lock:
            raise LoweringError("condition variable wait without a lock")
        guard = rust_ident(lock)
        cv = self.expr.lower(recv)
        if len(args) == 1:
            return guard + " = " + cv + ".wait(" + guard + ").unwrap();"
        guarded = self._guarded_by(self.ctx.lock_vars.get(lock, ""))
        pred_tokens = lambda_return_expr(args[1])
        saved = dict(self.ctx.guards)
        param = "_"
        try:
            if pred_tokens is None:
                pred = self.expr.lower(args[1]) + "()"
            else:
                if guarded:
                    self.ctx.guards[guarded[0]] = "*value"
                    param = "value"
                pred = self.expr.lower(pred_tokens)
        finally:
            self.ctx.guards = saved
        return guard + " = " + cv + ".wait_while(" + guard + ", |" + param + "| !(" + pred + ")).unwrap();"

    def _stmt_decl(self, d: LocalDecl) -> None:
        ctx = self.ctx
        typ = d.typ
        kind = _threading_kind(typ)
        name = rust_ident(d.name)
        if kind in LOCK_KINDS:
            self._lock_decl(d, kind)
            return
        if kind in ("thread", "jthread"):
            if d.init is None:
                raise LoweringError("thread without a callable")
            value = self.expr.lower(d.init) if d.init_style == "=" else self.spawn_text(self.expr.args(d.init))
            ctx.locals[d.name] = typ
            self.line("let " + name + " = " + value + ";")
            return
        if typ.kind == "async" and typ.name == "std::promise":
            value = to_rust(typ.args[0], self.uses) if typ.args else "()"
            fut = ""
            if self.fn_state.func is not None:
                fut = next((f.var_name for f in self.fn_state.func.asyncs.futures if f.promise_var == d.name and not f.is_promise), "")
            rx = rust_ident(fut) if fut else "_" + name + "_rx"
            self.uses.add("std::sync::mpsc")
            ctx.locals[d.name] = typ
            self.line("let (" + name + ", " + rx + ") = mpsc::channel::<" + value + ">();")
            return
        if d.init is not None and self._is_get_future(d.init):
            ctx.locals[d.name] = typ
            ctx.futures[d.name] = "channel"
            return
        if kind:
            value = self._initial_value(Variable(d.name, typ, initializer=join_tokens(d.init) if d.init else None))
            ctx.locals[d.name] = typ
            self.line("let " + name + " = " + value + ";")
            return
        auto = typ.kind == "template" and typ.name == "auto"
        annotation = "" if auto else ": " + self.rust_type(typ)
        value = self._init_value(d)
        ctx.locals[d.name] = typ
        if value is not None and self.expr.touched_static:
            value = "unsafe { " + value + " }"
        keyword = "let " if d.is_const else "let mut "
        if value is None:
            self.line(keyword + name + annotation + ";")
        else:
            self.line(keyword + name + annotation + " = " + value + ";")

    def _init_value(self, d: LocalDecl) -> str | None:
        typ = d.typ
        if d.init is None or not d.init_style:
            if typ.kind == "template" and typ.name == "auto":
                return None
            return self.default_value(typ)
        if d.init_style == "=":
            if d.init and d.init[0].is_op("{") and d.init[-1].is_op("}"):
                return self.aggregate(typ, self.expr.args(d.init[1:-1]), "{}")
            return self.coerce_typed(self.expr.lower(d.init), typ)
        return self.aggregate(typ, self.expr.args(d.init), d.init_style)

    def _is_get_future(self, init: list[Token]) -> bool:
        return (
            len(init) == 5
            and init[0].type == TK_IDENT
            and self.ctx.futures.get(init[0].value) == "promise"
            and init[2].value == "get_future"
        )

    def _lock_decl(self, d: LocalDecl, kind: str) -> None:
        ctx = self.ctx
        args = [a for a in split_tokens(d.init or []) if a and join_tokens(a) not in LOCK_TAGS]
        mutexes = [receiver_name(a) for a in args]
        if not mutexes or "" in mutexes:
            raise LoweringError("lock over an expression")
        name = rust_ident(d.name)
        lines: list[str] = []
        guards: dict[str, str] = {}
        for idx, mutex in enumerate(mutexes):
            var = name if idx == 0 else name + "_" + str(idx)
            guarded = self._guarded_by(mutex)
            if guarded:
                for k, fname in enumerate(guarded):
                    gvar = var if k == 0 else rust_ident(fname) + "_guard"
                    lines.append("let mut " + gvar + " = " + ctx.receiver + "." + rust_ident(fname) + ".lock().unwrap();")
                    guards[fname] = "*" + gvar
                continue
            access = self.expr.name(mutex).text
            shared = any(m.name == mutex and m.is_shared for m in self._mutex_infos())
            method = "read" if kind == "shared_lock" else ("write" if shared else "lock")
            mut = "mut " if kind == "unique_lock" else ""
            lines.append("let " + mut + var + " = " + access + "." + method + "().unwrap();")
        ctx.lock_vars[d.name] = mutexes[0]
        ctx.locals[d.name] = d.typ
        ctx.guards.update(guards)
        for text in lines:
            self.line(text)

    def _mutex_infos(self) -> list:
        infos = list(self.fn_state.func.threading.mutexes) if self.fn_state.func is not None else []
        if self.ctx.cls is not None:
            infos += self.ctx.cls.threading.mutexes
        return infos

    def _stmt_return(self, value: list[Token] | None) -> None:
        state = self.fn_state
        if state.generator:
            if self.ctx.in_try:
                raise LoweringError("return inside a try block of a generator")
            self.line("return yielded.into_iter();")
            return
        if value is None:
            self._return_text(None)
            return
        text = self.coerce_typed(self.expr.lower(value), state.ret)
        if self.expr.touched_static:
            text = "unsafe { " + text + " }"
        self._return_text(text)

    def _return_text(self, text: str | None) -> None:
        """Leave the function; inside a try closure the value rides out as `Ok(Some(..))`."""
        state = self.fn_state
        if self.ctx.in_try:
            self.line("return Ok(Some(" + (text if text is not None else "()") + "));")
        elif text is None:
            self.line("return Ok(());" if state.result else "return;")
        elif state.is_main:
            self.line("return;" if text == "0" else "std::process::exit(" + text + ");")
        elif state.result:
            self.line("return Ok(" + text + ");")
        else:
            self.line("return " + text + ";")

    def _stmt_throw(self, stmt: Throw) -> None:
        state = self.fn_state
        if stmt.value is None:
            err = "err"
        else:
            err = self._error_expr(stmt.value)
        if state.result or self.ctx.in_try:
            self.line("return Err(" + err + ");")
        else:
            self.line('panic!("{}", ' + err + ");")

    def _error_expr(self, tokens: list[Token]) -> str:
        if len(tokens) == 1 and tokens[0].type == TK_IDENT:
            if tokens[0].value == self.fn_state.handler_var:
                return "err"
            self.variant("Other")
            return "CxxError::Other(" + self.expr.lower(tokens) + ".to_string())"
        i = 0
        parts: list[str] = []
        while i < len(tokens) and tokens[i].type == TK_IDENT:
            parts.append(tokens[i].value)
            if i + 1 < len(tokens) and tokens[i + 1].is_op("::"):
                i += 2
                continue
            i += 1
            break
        if not parts or i >= len(tokens) or not (tokens[i].is_op("(") or tokens[i].is_op("{")):
            raise LoweringError("thrown expression")
        args = self.expr.args(tokens[i + 1 : -1])
        return self.error_value("::".join(parts), args)

    def _catch_pattern(self, exc_type: str) -> str | None:
        name = base_name(exc_type.replace("const ", "").strip(" &*"))
        if name in ("...", "std::exception"):
            return None
        variants = [self.variant(name)]
        for cls in self.ir.classes:
            if cls.is_exception and any(base_name(b) == name for b in cls.base_classes):
                variants.append(self.variant(cls.name))
        return " | ".join("CxxError::" + v + "(_)" for v in variants)

    def _stmt_try(self, stmt: TryCatch) -> None:
        ctx = self.ctx
        state = self.fn_state
        suffix = "?" if (state.result or ctx.in_try) else ".unwrap()"
        self.needs_error = True
        returns = contains_return([stmt])
        if returns:
            value = self.rust_type(state.ret) if state.ret is not None else "()"
            out, done = "Result<Option<" + value + ">, CxxError>", "Ok(None)"
        else:
            out, done = "Result<(), CxxError>", "Ok(())"
        self.line(("if let Some(ret) = " if returns else "") + "(|| -> " + out + " {")
        ctx.in_try += 1
        try:
            self._emit_body(stmt.body)
            self.line("    " + done)
            self.line("})()")
            self.line(".or_else(|err| -> " + out + " {")
            self.indent += 1
            self.line("match err {")
            self.indent += 1
            catch_all = False
            for handler in stmt.handlers:
                pattern = self._catch_pattern(handler.exc_type)
                if pattern is None:
                    pattern = "_"
                    catch_all = True
                self.line(pattern + " => {")
                self.indent += 1
                if handler.var:
                    self.line("let " + rust_ident(handler.var) + " = &err;")
                    ctx.locals[handler.var] = Type("class", "CxxError")
                saved = state.handler_var
                state.handler_var = handler.var
                self._emit_block(handler.body)
                state.handler_var = saved
                self.indent -= 1
                self.line("}")
                if catch_all:
                    break
            if not catch_all:
                self.line("_ => return Err(err),")
            self.indent -= 1
            self.line("}")
            self.line(done)
            self.indent -= 1
            self.line("})" + suffix + (" {" if returns else ";"))
        finally:
            ctx.in_try -= 1
        if returns:
            self.indent += 1
            self._return_text("ret" if state.ret is not None else None)
            self.indent -= 1
            self.line("}")

    def _stmt_print(self, stmt: Print) -> None:
        fmt: list[str] = []
        args: list[str] = []
        for part in stmt.parts:
            literal = string_literal_text(part[0].value) if len(part) == 1 and part[0].type == TK_STRING else None
            if literal is not None:
                fmt.append(literal.replace("{", "{{").replace("}", "}}"))
            else:
                fmt.append("{}")
                args.append(self.expr.lower(part))
        if stmt.stream == "out":
            macro = "println!" if stmt.newline else "print!"
        else:
            macro = "eprintln!" if stmt.newline else "eprint!"
        text = macro + '("' + "".join(fmt) + '"' + "".join(", " + a for a in args) + ");"
        if self.expr.touched_static:
            text = "unsafe { " + text + " }"
        self.line(text)

    def _cond(self, tokens: list[Token]) -> str:
        negate = False
        operand = tokens
        if len(tokens) == 2 and tokens[0].is_op("!"):
            negate = True
            operand = tokens[1:]
        text = self.expr.lower(tokens)
        if len(operand) == 1 and operand[0].type == TK_IDENT:
            typ = _strip_ref(self.ctx.type_of(operand[0].value))
            inner = self.expr.lower(operand)
            if typ is not None and typ.kind in ("integer", "float"):
                return inner + (" == 0" if negate else " != 0")
            if typ is not None and typ.kind == "pointer" and not typ.is_smart_pointer:
                return ("" if negate else "!") + inner + ".is_null()"
            if typ is not None and typ.kind == "container" and typ.name == "std::optional":
                return inner + (".is_none()" if negate else ".is_some()")
        return text

    def _stmt_if(self, stmt: If) -> None:
        cond = self._cond(stmt.cond)
        self.line("if " + cond + " {")
        self._emit_body(stmt.then_body)
        rest = stmt.else_body
        while rest:
            if len(rest) == 1 and isinstance(rest[0], If):
                nested = rest[0]
                try:
                    nested_cond = self._cond(nested.cond)
                except LoweringError:
                    self.line("} else {")
                    self._emit_body(rest)
                    break
                self.line("} else if " + nested_cond + " {")
                self._emit_body(nested.then_body)
                rest = nested.else_body
            else:
                self.line("} else {")
                self._emit_body(rest)
                break
        self.line("}")

    def _counted_range(self, stmt: For) -> tuple[str, str] | None:
        """`for (int i = a; i < b; ++i)` -> ("i", "a..b")."""
        if len(stmt.init) != 1 or not isinstance(stmt.init[0], LocalDecl):
            return None
        decl = stmt.init[0]
        if decl.init is None or decl.init_style != "=" or decl.typ.kind not in ("integer", "template"):
            return None
        var = decl.name
        cond = stmt.cond
        if len(cond) < 3 or cond[0].value != var or not (cond[1].is_op("<") or cond[1].is_op("<=")):
            return None
        step = [t.value for t in stmt.step]
        if step not in ([var, "++"], ["++", var], [var, "+=", "1"]):
            return None
        start = self.expr.lower(decl.init)
        self.ctx.locals[var] = decl.typ
        end = self.expr.lower(cond[2:])
        op = ".." if cond[1].is_op("<") else "..="
        return rust_ident(var), start + op + end

    def _stmt_for(self, stmt: For) -> None:
        counted = self._counted_range(stmt)
        if counted is not None:
            self.line("for " + counted[0] + " in " + counted[1] + " {")
            self._emit_body(stmt.body)
            self.line("}")
            return
        self.line("{")
        self.indent += 1
        for init in stmt.init:
            self._emit_stmt(init)
        try:
            cond = self._cond(stmt.cond) if stmt.cond else "true"
            step = self.expr.lower(stmt.step) if stmt.step else ""
        except LoweringError as e:
            self._untranslated(describe(stmt), str(e))
        else:
            self.line("while " + cond + " {")
            self._emit_body(stmt.body)
            if step:
                self.line("    " + step + ";")
            self.line("}")
        self.indent -= 1
        self.line("}")

    def _stmt_range_for(self, stmt: RangeFor) -> None:
        iterable = self.expr.frag(stmt.iterable)
        source = self.expr.wrap(iterable, self.expr.POSTFIX_PREC)
        typ = stmt.typ
        container = _strip_ref(self.ctx.type_of(stmt.iterable[0].value)) if len(stmt.iterable) == 1 else None
        elem = container.args[0] if container is not None and container.kind == "container" and container.args else None
        if _threading_kind(elem) in ("thread", "jthread"):
            source += ".drain(..)"
            typ = elem
        elif typ.kind == "reference" and typ.element is not None and not typ.element.is_const:
            source += ".iter_mut()"
        elif typ.kind == "reference":
            source += ".iter()"
        else:
            source += ".iter().cloned()"
        self.ctx.locals[stmt.name] = typ
        self.line("for " + rust_ident(stmt.name) + " in " + source + " {")
        self._emit_body(stmt.body)
        self.line("}")

    # ============================================================
    # TESTS
    # ============================================================

    def _emit_tests(self, ir: IR) -> None:
        self.line()
        self.line("#[cfg(test)]")
        self.line("mod tests {")
        self.indent += 1
        self.line("use super::*;")
        for cls in ir.classes:
            spec = self.hier.traits.get(cls.name)
            if cls.templates.parameters or (spec is not None and not spec.has_state):
                continue
            struct = self.struct_name(cls)
            self.line()
            self.line("#[test]")
            self.line("fn " + to_snake(struct) + "_constructs() {")
            self.indent += 1
            ctors = [c for c in cls.constructors() if not c.is_deleted and not c.is_defaulted]
            if not ctors:
                self.line("let _ctor: fn() -> " + struct + " = " + struct + "::new;")
            for ctor in ctors:
                ret = "Result<" + struct + ", CxxError>" if ctor.may_throw else struct
                params = ", ".join(self.rust_type(p.typ) for p in ctor.params)
                if "&" in params:
                    self.line("let _ctor = " + struct + "::" + self.calls.name_of(ctor) + ";")
                else:
                    self.line("let _ctor: fn(" + params + ") -> " + ret + " = " + struct + "::" + self.calls.name_of(ctor) + ";")
            self.indent -= 1
            self.line("}")
        self.indent -= 1
        self.line("}")


def _guarded(cls: ClassDecl) -> set[str]:
    """Fields whose every access happens under a lock on one field mutex."""
    names: set[str] = set()
    for m in cls.threading.mutexes:
        if m.is_field:
            names.update(m.guarded_fields)
    return names


def arity_zero(func: Function) -> bool:
    return all(p.has_default for p in func.params)


def rust_container_from(typ: Type, vec_text: str, uses: set[str]) -> str:
    """`VecDeque::from(vec![..])` for sequence containers other than Vec."""
    name = to_rust(typ, uses).split("<", 1)[0]
    if name == "Vec":
        return vec_text
    return name + "::from(" + vec_text + ")"

"""GoBackend: IR -> Go source.

Classes become structs with a `NewX` factory and pointer-receiver methods,
base classes become interfaces (a base with fields is also embedded), may-throw
functions return an extra `error`, coroutines return receive-only channels
and std threading primitives map onto goroutines and package sync.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from cxxport.frontend.lexer import TK_IDENT, TK_STRING, Token, join_tokens, split_tokens
from cxxport.frontend.types import resolve_tokens
from cxxport.ir import IR, ClassDecl, EnumDecl, Function, Parameter, TemplateParameter, Type, Variable
from cxxport.middleend.concurrency import CONDVAR_KINDS, LOCK_KINDS, LOCK_TAGS, MUTEX_KINDS
from cxxport.middleend.hierarchy import TraitSpec, analyze_hierarchy, base_name
from cxxport.middleend.scan import body_tokens
from cxxport.middleend.templates import go_constraint
from cxxport.typemap import atomic_value_type, to_go, type_name

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
    first_call_name,
    lambda_return_expr,
    member_call_parts,
    parse_body,
    receiver_name,
    specialization_suffix,
    string_literal_text,
    token_names,
)
from .util import CodegenOptions, Emitter, go_exported, go_to_camel, method_base_name, to_pascal, variant_name

# Go binding strengths.
_GO_PREC: dict[str, int] = {
    "||": 3,
    "&&": 4,
    "==": 5,
    "!=": 5,
    "<": 5,
    ">": 5,
    "<=": 5,
    ">=": 5,
    "+": 6,
    "-": 6,
    "|": 6,
    "^": 6,
    "*": 7,
    "/": 7,
    "%": 7,
    "<<": 7,
    ">>": 7,
    "&": 7,
}

_MATH_FUNCS: dict[str, str] = {
    "std::sqrt": "Sqrt",
    "std::floor": "Floor",
    "std::ceil": "Ceil",
    "std::round": "Round",
    "std::sin": "Sin",
    "std::cos": "Cos",
    "std::tan": "Tan",
    "std::exp": "Exp",
    "std::log": "Log",
    "std::fabs": "Abs",
    "sqrt": "Sqrt",
    "floor": "Floor",
    "ceil": "Ceil",
    "fabs": "Abs",
}

_DURATIONS: dict[str, str] = {
    "std::chrono::seconds": "time.Second",
    "std::chrono::milliseconds": "time.Millisecond",
    "std::chrono::microseconds": "time.Microsecond",
    "std::chrono::nanoseconds": "time.Nanosecond",
}

_MAPS = {"std::map", "std::unordered_map", "std::multimap"}
_SETS = {"std::set", "std::unordered_set"}


@dataclass
class _FnState:
    """What the statement emitters need to know about the enclosing function."""

    func: Function | None
    result: bool = False
    ret: Type | None = None
    is_main: bool = False
    channel: str = ""
    handler_var: str = ""
    ctor_receiver: str = ""
    temps: list[int] = field(default_factory=lambda: [0])
    # unlock lines owed by each open nested block, outermost first
    scopes: list[list[str]] = field(default_factory=list)
    # index into scopes of each enclosing loop body
    loops: list[int] = field(default_factory=list)
    # (flag, value slot) of each try closure a return may leave through
    try_exits: list[tuple[str, str]] = field(default_factory=list)


def _strip_ref(t: Type | None) -> Type | None:
    while t is not None and t.kind == "reference":
        t = t.element
    return t


def _threading_kind(t: Type | None) -> str:
    t = _strip_ref(t)
    if t is None or t.kind != "threading":
        return ""
    return t.name.rsplit("::", 1)[-1]


def _is_thread_vector(t: Type | None) -> bool:
    t = _strip_ref(t)
    return t is not None and t.kind == "container" and bool(t.args) and _threading_kind(t.args[0]) in ("thread", "jthread")


def _uses_length(tokens: list[Token]) -> bool:
    return any(t.value in ("size", "length") for t in tokens)


class GoExpr(ExprLowerer):
    """Expression hooks for Go.

    Go has no exceptions and no expression-level statements, so some
    lowerings hoist lines (`pre`) that the statement emitter writes first.
    """

    PREC = _GO_PREC

    def __init__(self, ctx: LowerContext, backend: GoBackend) -> None:
        super().__init__(ctx)
        self.b = backend
        self.pre: list[str] = []
        self.atomic_loads: dict[str, str] = {}
        self.iter_ranges: dict[str, str] = {}
        self.pair_alias: dict[str, tuple[str, str]] = {}
        self.aliases: dict[str, str] = {}
        # expression text -> the form to use when its value is discarded
        self.effect_only: dict[str, str] = {}

    def temp(self, prefix: str) -> str:
        counter = self.b.fn_state.temps
        counter[0] += 1
        return prefix + str(counter[0])

    def take_pre(self) -> list[str]:
        lines, self.pre = self.pre, []
        return lines

    # -- operators ---------------------------------------------------------

    def binary(self, left: Frag, op: str, right: Frag) -> Frag:
        if op == "<=>":
            self.b.imports.add("cmp")
            return Frag("cmp.Compare(" + left.text + ", " + right.text + ")", self.POSTFIX_PREC)
        return super().binary(left, op, right)

    def assign(self, target: Frag, op: str, value: Frag) -> Frag:
        atomic = self.atomic_loads.get(target.text)
        if atomic is not None:
            if op == "=":
                return Frag(atomic + ".Store(" + value.text + ")", self.POSTFIX_PREC)
            if op == "+=":
                return Frag(atomic + ".Add(" + value.text + ")", self.POSTFIX_PREC)
            if op == "-=":
                return Frag(atomic + ".Add(-" + self.wrap(value, self.UNARY_PREC) + ")", self.POSTFIX_PREC)
            raise LoweringError("atomic compound assignment '" + op + "'")
        return Frag(target.text + " " + op + " " + value.text, 0)

    def unary(self, op: str, operand: Frag) -> Frag:
        if op in ("++", "--"):
            return self._step(operand, op)
        if op == "~":
            op = "^"
        if op == "+":
            return operand
        if op == "&" and operand.text.startswith("(*"):
            return operand
        return Frag(op + self.wrap(operand, self.UNARY_PREC), self.UNARY_PREC)

    def postfix(self, operand: Frag, op: str, simple: str) -> Frag:
        return self._step(operand, op)

    def _step(self, operand: Frag, op: str) -> Frag:
        atomic = self.atomic_loads.get(operand.text)
        if atomic is not None:
            return Frag(atomic + ".Add(" + ("1" if op == "++" else "-1") + ")", self.POSTFIX_PREC)
        return Frag(operand.text + op, 0)

    def ternary(self, cond: Frag, a: Frag, b: Frag) -> Frag:
        name = self.temp("t")
        self.pre.append(name + " := " + b.text)
        self.pre.append("if " + cond.text + " {\n\t" + name + " = " + a.text + "\n}")
        return Frag(name, PRIMARY)

    def cast(self, typ: Type, value: Frag) -> Frag:
        if typ.kind in ("bool", "integer", "float", "enum"):
            return Frag(to_go(typ) + "(" + value.text + ")", self.POSTFIX_PREC)
        raise LoweringError("cast to " + typ.name)

    def await_(self, operand: Frag) -> Frag:
        return Frag("<-" + self.wrap(operand, self.UNARY_PREC), self.UNARY_PREC)

    # -- literals ----------------------------------------------------------

    def string(self, text: str) -> Frag:
        if string_literal_text(text) is None:
            raise LoweringError("prefixed or raw string literal")
        return Frag(text, PRIMARY)

    def null(self) -> Frag:
        return Frag("nil", PRIMARY)

    # -- names -------------------------------------------------------------

    def name(self, name: str) -> Frag:
        ctx = self.ctx
        if "::" in name:
            return self._qualified(name)
        if name in self.aliases:
            return Frag(self.aliases[name], self.POSTFIX_PREC)
        if name in ctx.locals:
            ident = go_to_camel(name)
            if ctx.is_atomic(name):
                return self._atomic_load(ident)
            return Frag(ident, PRIMARY)
        if ctx.is_field(name):
            return self.field_access(ctx.receiver, name)
        if ctx.cls is not None:
            var = ctx.cls.field_named(name)
            if var is not None and var.is_static:
                return self._load_if_atomic(self.b.static_name(ctx.cls, var), var)
        enum = ctx.enumerators.get(name)
        if enum is not None:
            return Frag(self.b.enumerator_name(enum, name), PRIMARY)
        for var in ctx.ir.globals:
            if var.name == name:
                return self._load_if_atomic(self.b.global_name(var), var)
        if ctx.cls is not None and name in ctx.methods:
            func = self.b.calls.method_target(ctx.cls.name, name, 0)
            if func is not None:
                return Frag(ctx.receiver + "." + self.b.calls.name_of(func), self.POSTFIX_PREC)
        func = self.b.calls.free_target(name, 0)
        if func is not None:
            return Frag(self.b.calls.name_of(func), PRIMARY)
        return Frag(go_to_camel(name), PRIMARY)

    def _load_if_atomic(self, ident: str, var: Variable) -> Frag:
        if atomic_value_type(var.typ) is not None:
            return self._atomic_load(ident)
        return Frag(ident, PRIMARY)

    def _atomic_load(self, path: str) -> Frag:
        text = path + ".Load()"
        self.atomic_loads[text] = path
        return Frag(text, self.POSTFIX_PREC)

    def field_access(self, receiver: str, name: str) -> Frag:
        var = self.ctx.fields.get(name)
        ident = self.b.field_name(var) if var is not None else go_to_camel(name)
        path = receiver + "." + ident
        if self.ctx.is_atomic(name):
            return self._atomic_load(path)
        return Frag(path, self.POSTFIX_PREC)

    def _qualified(self, name: str) -> Frag:
        head, last = name.rsplit("::", 1)
        head_short = head.rsplit("::", 1)[-1]
        ir = self.ctx.ir
        for enum in ir.enums:
            if enum.name == head or enum.name == head_short:
                return Frag(self.b.enumerator_name(enum, last), PRIMARY)
        cls = ir.find_class(head_short)
        if cls is not None:
            var = cls.field_named(last)
            if var is not None and var.is_static:
                return self._load_if_atomic(self.b.static_name(cls, var), var)
            func = self.b.calls.method_target(cls.name, last, 0)
            if func is not None and func.is_static:
                return Frag(self.b.calls.name_of(func), PRIMARY)
            ident = self.b.calls.name_of(func) if func is not None else to_pascal(last)
            return Frag("(*" + self.b.struct_name(cls) + ")." + ident, self.POSTFIX_PREC)
        if name == "std::string::npos":
            return Frag("-1", PRIMARY)
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
        alias = self.pair_alias.get(simple) if simple else None
        if alias is not None and member in ("first", "second"):
            return Frag(alias[0] if member == "first" else alias[1], PRIMARY)
        if member == "first":
            return Frag(self.wrap(target, self.POSTFIX_PREC) + ".First", self.POSTFIX_PREC)
        if member == "second":
            return Frag(self.wrap(target, self.POSTFIX_PREC) + ".Second", self.POSTFIX_PREC)
        return Frag(self.wrap(target, self.POSTFIX_PREC) + "." + self.b.member_field_name(member), self.POSTFIX_PREC)

    # -- calls -------------------------------------------------------------

    def hoist_call(self, call: str, func: Function | None, void: bool) -> Frag:
        """Call a may-throw function, checking its error before the statement."""
        prop = self.b.propagate_text("err").replace("\n", "\n\t")
        if void:
            self.pre.append("if err := " + call + "; err != nil {\n\t" + prop + "\n}")
            return Frag("", PRIMARY)
        value = self.temp("v")
        self.pre.append(value + ", err := " + call)
        self.pre.append("if err != nil {\n\t" + prop + "\n}")
        return Frag(value, PRIMARY)

    def _finish_call(self, text: str, func: Function | None) -> Frag:
        if func is not None and func.may_throw:
            return self.hoist_call(text, func, func.returns_void and not func.is_constructor)
        return Frag(text, self.POSTFIX_PREC)

    def _call_text(self, callee: str, args: list[Frag]) -> str:
        return callee + "(" + ", ".join(a.text for a in args) + ")"

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
        p = self.POSTFIX_PREC
        if simple and simple in ctx.lock_vars:
            mutex = self.name(ctx.lock_vars[simple]).text
            if method == "unlock":
                return Frag(mutex + ".Unlock()", p)
            if method == "lock":
                return Frag(mutex + ".Lock()", p)
            raise LoweringError("lock method " + method)
        if kind in ("thread", "jthread") or (simple and simple in self.b.thread_groups):
            if method == "join":
                return Frag(recv + ".Wait()", p)
            if method == "detach":
                return Frag("", PRIMARY)
            if method == "joinable":
                return Frag("true", PRIMARY)
        if _is_thread_vector(typ) and method in ("push_back", "emplace_back"):
            self.pre.extend(self.b.spawn_lines(recv, args))
            return Frag("", PRIMARY)
        future = ctx.futures.get(simple, "") if simple else ""
        if future == "promise":
            if method == "set_value":
                return Frag(recv + " <- " + ", ".join(texts), 0)
            if method == "get_future":
                return Frag(recv, PRIMARY)
            raise LoweringError("promise method " + method)
        if future in ("task", "channel") and method in ("get", "wait"):
            return Frag("<-" + recv, self.UNARY_PREC)
        if kind in CONDVAR_KINDS and method in ("notify_one", "notify_all"):
            return Frag(recv + (".Signal()" if method == "notify_one" else ".Broadcast()"), p)
        if method == "what" and not args:
            return Frag(recv + ".Error()", p)
        lowered = self._std_method(recv, method, texts, typ)
        if lowered is not None:
            return lowered
        cls = None
        if typ is not None:
            inner = typ.innermost()
            if inner.kind in ("class", "struct"):
                cls = ctx.ir.find_class(inner.name.rsplit("::", 1)[-1])
        func = None
        ident = self.b.member_method_name(method)
        if cls is not None:
            func = self.b.calls.method_target(cls.name, method, len(args))
            if func is not None:
                args = self.with_defaults(func, args)
                ident = self.b.calls.name_of(func)
        elif method in ctx.throwing:
            func = self.b.any_method(method)
        return self._finish_call(self._call_text(recv + "." + ident, args), func)

    def _atomic_method(self, path: str, method: str, args: list[Frag]) -> Frag:
        texts = [a.text for a in args]
        p = self.POSTFIX_PREC
        if method == "load":
            return Frag(path + ".Load()", p)
        if method == "store" and texts:
            return Frag(path + ".Store(" + texts[0] + ")", p)
        if method == "exchange" and texts:
            return Frag(path + ".Swap(" + texts[0] + ")", p)
        if method == "fetch_add" and texts:
            add = path + ".Add(" + texts[0] + ")"
            text = "(" + add + " - " + self.wrap(args[0], 7) + ")"
            self.effect_only[text] = add
            return Frag(text, PRIMARY)
        if method == "fetch_sub" and texts:
            add = path + ".Add(-" + self.wrap(args[0], self.UNARY_PREC) + ")"
            text = "(" + add + " + " + self.wrap(args[0], 7) + ")"
            self.effect_only[text] = add
            return Frag(text, PRIMARY)
        if method in ("compare_exchange_strong", "compare_exchange_weak") and len(texts) >= 2:
            return Frag(path + ".CompareAndSwap(" + texts[0] + ", " + texts[1] + ")", p)
        raise LoweringError("atomic method " + method)

    def _std_method(self, recv: str, method: str, texts: list[str], typ: Type | None) -> Frag | None:
        """Common std::string / container members; None when the name has no rule."""
        name = typ.name if typ is not None and typ.kind == "container" else ""
        p = self.POSTFIX_PREC
        n = len(texts)
        if method in ("size", "length") and n == 0:
            return Frag("len(" + recv + ")", p)
        if method == "empty" and n == 0:
            return Frag("len(" + recv + ") == 0", 5)
        if method == "clear" and n == 0:
            if name in _MAPS or name in _SETS:
                return Frag("clear(" + recv + ")", p)
            return Frag(recv + " = " + recv + "[:0]", 0)
        if method in ("push_back", "emplace_back", "push") and n == 1:
            return Frag(recv + " = append(" + recv + ", " + texts[0] + ")", 0)
        if method == "push_front" and n == 1:
            return Frag(recv + " = append(" + self.b.go_type(typ) + "{" + texts[0] + "}, " + recv + "...)", 0)
        if method == "pop_back" and n == 0:
            return Frag(recv + " = " + recv + "[:len(" + recv + ")-1]", 0)
        if method == "pop_front" and n == 0:
            return Frag(recv + " = " + recv + "[1:]", 0)
        if method == "pop" and n == 0:
            if name == "std::queue":
                return Frag(recv + " = " + recv + "[1:]", 0)
            return Frag(recv + " = " + recv + "[:len(" + recv + ")-1]", 0)
        if method in ("top", "back") and n == 0:
            return Frag(recv + "[len(" + recv + ")-1]", p)
        if method == "front" and n == 0:
            return Frag(recv + "[0]", p)
        if method == "at" and n == 1:
            return Frag(recv + "[" + texts[0] + "]", p)
        if method in ("count", "contains") and n == 1 and (name in _MAPS or name in _SETS):
            ok = self.temp("ok")
            self.pre.append("_, " + ok + " := " + recv + "[" + texts[0] + "]")
            if method == "count":
                self.b.needs_b2i = True
                return Frag("b2i(" + ok + ")", p)
            return Frag(ok, PRIMARY)
        if method == "insert" and n == 1 and name in _SETS:
            return Frag(recv + "[" + texts[0] + "] = struct{}{}", 0)
        if method in ("insert", "emplace", "insert_or_assign") and n == 2 and name in _MAPS:
            return Frag(recv + "[" + texts[0] + "] = " + texts[1], 0)
        if method == "erase" and n == 1 and (name in _MAPS or name in _SETS):
            return Frag("delete(" + recv + ", " + texts[0] + ")", p)
        if method == "substr" and n in (1, 2):
            if n == 1:
                return Frag(recv + "[" + texts[0] + ":]", p)
            return Frag(recv + "[" + texts[0] + ":" + texts[0] + "+" + texts[1] + "]", p)
        if method == "c_str" and n == 0:
            return Frag(recv, PRIMARY)
        if method == "append" and n == 1 and name == "std::string":
            return Frag(recv + " += " + texts[0], 0)
        if method == "begin" and n == 0:
            text = recv + "[0:]"
            self.iter_ranges[text] = recv
            return Frag(text, p)
        if method == "end" and n == 0:
            text = recv + "[len(" + recv + "):]"
            self.iter_ranges[text] = recv
            return Frag(text, p)
        if method == "has_value" and n == 0:
            return Frag(recv + " != nil", 5)
        if method == "value" and n == 0:
            return Frag("*" + recv, self.UNARY_PREC)
        if method == "get" and n == 0 and typ is not None and typ.is_smart_pointer:
            return Frag(recv, PRIMARY)
        if method == "lock" and n == 0 and typ is not None and typ.kind == "pointer" and typ.ownership == "weak":
            return Frag(recv, PRIMARY)
        if method in ("find", "rbegin", "rend", "cbegin", "cend", "lower_bound", "upper_bound", "value_or"):
            raise LoweringError("iterator method " + method)
        return None

    def own_method(self, method: str, args: list[Frag]) -> Frag:
        ctx = self.ctx
        func = None
        ident = self.b.member_method_name(method)
        if ctx.cls is not None:
            func = self.b.calls.method_target(ctx.cls.name, method, len(args))
        if func is None:
            func = self.b.inherited_method(ctx.cls, method, len(args))
        if func is not None:
            args = self.with_defaults(func, args)
            ident = self.b.calls.name_of(func)
            if func.is_static:
                return self._finish_call(self._call_text(ident, args), func)
        return self._finish_call(self._call_text(ctx.receiver + "." + ident, args), func)

    def call(self, name: str, targs: list[Token], args: list[Frag]) -> Frag:
        ctx = self.ctx
        if name.startswith("std::") or (name in _MATH_FUNCS and name not in self.b.calls.free):
            return self._std_call(name, targs, args)
        if name in ("exit", "abs") and name not in self.b.calls.free:
            return self._std_call("std::" + name, targs, args)
        short = name.rsplit("::", 1)[-1]
        head = name.rsplit("::", 1)[0] if "::" in name else ""
        cls = ctx.ir.find_class(short)
        if cls is not None and (not head or ctx.ir.find_class(head.rsplit("::", 1)[-1]) is None):
            return self.construct_class(cls, targs, args, value=True)
        if head:
            owner = ctx.ir.find_class(head.rsplit("::", 1)[-1])
            if owner is not None:
                func = self.b.calls.method_target(owner.name, short, len(args))
                args = self.with_defaults(func, args)
                if func is not None and func.is_static:
                    return self._finish_call(self._call_text(self.b.calls.name_of(func), args), func)
                ident = self.b.calls.name_of(func) if func is not None else to_pascal(short)
                recv = ctx.receiver + "." + self.b.struct_name(owner) if ctx.cls is not None and owner is not ctx.cls else ctx.receiver
                return self._finish_call(self._call_text(recv + "." + ident, args), func)
        if name in ctx.locals:
            return Frag(self._call_text(go_to_camel(name), args), self.POSTFIX_PREC)
        if ctx.cls is not None and (name in ctx.methods or self.b.inherited_method(ctx.cls, name, len(args)) is not None):
            return self.own_method(name, args)
        func = self.b.calls.free_target(short, len(args))
        ident = self.b.calls.name_of(func) if func is not None else go_exported(short, True)
        args = self.with_defaults(func, args)
        if targs:
            ident += "[" + ", ".join(self._type_args(targs)) + "]"
        return self._finish_call(self._call_text(ident, args), func)

    def _type_args(self, targs: list[Token]) -> list[str]:
        return [self.b.go_type(self._resolve(part)) for part in split_tokens(targs) if part]

    def _resolve(self, tokens: list[Token]) -> Type:
        return resolve_tokens(tokens, self.ctx.ir, self.ctx.template_names)

    def construct_class(self, cls: ClassDecl, targs: list[Token], args: list[Frag], value: bool) -> Frag:
        """`NewX(args)`, dereferenced when a value is wanted."""
        path = self.b.ctor_base(cls)
        type_args = self._type_args(targs) if targs else []
        if args and not self.b.calls.ctors.get(cls.name):
            fields = [f for f in cls.fields if not f.is_static]
            if len(args) > len(fields):
                raise LoweringError("too many initializers for " + cls.name)
            struct = self.b.struct_name(cls) + ("[" + ", ".join(type_args) + "]" if type_args else "")
            items = ", ".join(self.b.field_name(f) + ": " + a.text for f, a in zip(fields, args))
            return Frag(("" if value else "&") + struct + "{" + items + "}", PRIMARY if value else self.UNARY_PREC)
        func = self.b.calls.ctor_target(cls.name, len(args))
        if func is not None:
            args = self.with_defaults(func, args)
            path = self.b.calls.name_of(func)
        if type_args:
            path += "[" + ", ".join(type_args) + "]"
        frag = self._finish_call(self._call_text(path, args), func)
        if value:
            return Frag("*" + self.wrap(frag, self.POSTFIX_PREC), self.UNARY_PREC)
        return frag

    def _std_call(self, name: str, targs: list[Token], args: list[Frag]) -> Frag:
        texts = [a.text for a in args]
        n = len(texts)
        p = self.POSTFIX_PREC
        b = self.b
        if name in _MATH_FUNCS and n == 1:
            b.imports.add("math")
            return Frag("math." + _MATH_FUNCS[name] + "(float64(" + texts[0] + "))", p)
        if name in _DURATIONS and n == 1:
            b.imports.add("time")
            return Frag("time.Duration(" + texts[0] + ") * " + _DURATIONS[name], 7)
        if name == "std::to_string" and n == 1:
            b.imports.add("fmt")
            return Frag("fmt.Sprint(" + texts[0] + ")", p)
        if name in ("std::max", "std::min") and n == 2:
            return Frag(name[5:] + "(" + texts[0] + ", " + texts[1] + ")", p)
        if name == "std::abs" and n == 1:
            return Frag("max(" + texts[0] + ", -" + self.wrap(args[0], self.UNARY_PREC) + ")", p)
        if name == "std::pow" and n == 2:
            b.imports.add("math")
            return Frag("math.Pow(float64(" + texts[0] + "), float64(" + texts[1] + "))", p)
        if name == "std::swap" and n == 2:
            return Frag(texts[0] + ", " + texts[1] + " = " + texts[1] + ", " + texts[0], 0)
        if name in ("std::ref", "std::cref") and n == 1:
            return args[0]
        if name in ("std::make_unique", "std::make_shared"):
            if not targs:
                raise LoweringError(name + " without a type")
            typ = self._resolve(targs)
            cls = self.ctx.ir.find_class(typ.name.rsplit("::", 1)[-1]) if typ.kind in ("class", "struct") else None
            if cls is not None:
                return self.construct_class(cls, [], args, value=False)
            if n == 0:
                return Frag("new(" + b.go_type(typ) + ")", p)
            if n == 1:
                tmp = self.temp("p")
                self.pre.append(tmp + " := " + b.go_type(typ) + "(" + texts[0] + ")")
                return Frag("&" + tmp, self.UNARY_PREC)
            raise LoweringError(name + " of " + typ.name)
        if name == "std::this_thread::sleep_for" and n == 1:
            b.imports.add("time")
            return Frag("time.Sleep(" + texts[0] + ")", p)
        if name == "std::this_thread::yield" and n == 0:
            b.imports.add("runtime")
            return Frag("runtime.Gosched()", p)
        if name == "std::exit" and n == 1:
            b.imports.add("os")
            return Frag("os.Exit(int(" + texts[0] + "))", p)
        if name in ("std::stoi", "std::stol", "std::stoll") and n == 1:
            b.imports.add("strconv")
            tmp = self.temp("n")
            self.pre.append(tmp + ", _ := strconv.Atoi(" + texts[0] + ")")
            return Frag(("int32(" + tmp + ")") if name == "std::stoi" else ("int64(" + tmp + ")"), p)
        if name in ("std::stod", "std::stof") and n == 1:
            b.imports.add("strconv")
            tmp = self.temp("f")
            self.pre.append(tmp + ", _ := strconv.ParseFloat(" + texts[0] + ", 64)")
            return Frag(tmp, PRIMARY)
        if name in ("std::sort", "std::reverse") and n == 2:
            recv = self.iter_ranges.get(texts[0])
            if recv is not None:
                b.imports.add("slices")
                return Frag("slices." + ("Sort" if name == "std::sort" else "Reverse") + "(" + recv + ")", p)
        if name == "std::accumulate" and n == 3:
            recv = self.iter_ranges.get(texts[0])
            if recv is not None:
                acc = self.temp("acc")
                self.pre.append(acc + " := " + texts[2])
                self.pre.append("for _, x := range " + recv + " {\n\t" + acc + " += x\n}")
                return Frag(acc, PRIMARY)
        if name == "std::async":
            raise LoweringError("std::async outside a declaration or statement")
        if name in ("std::thread", "std::jthread"):
            raise LoweringError(name + " outside a declaration or assignment")
        if name in b.exception_types:
            return Frag(b.error_value(name, args), p)
        raise LoweringError("no rule for " + name)

    def construct(self, typ: Type, args: list[Frag]) -> Frag:
        return Frag(self.b.aggregate(typ, args, "{}"), PRIMARY)

    def init_list(self, items: list[Frag]) -> Frag:
        raise LoweringError("untyped initializer list")

    def new_(self, typ: Type, args: list[Frag]) -> Frag:
        if typ.kind in ("class", "struct"):
            cls = self.ctx.ir.find_class(typ.name.rsplit("::", 1)[-1])
            if cls is not None:
                return self.construct_class(cls, [], args, value=False)
        if not args:
            return Frag("new(" + self.b.go_type(typ) + ")", self.POSTFIX_PREC)
        if len(args) == 1:
            tmp = self.temp("p")
            self.pre.append(tmp + " := " + self.b.go_type(typ) + "(" + args[0].text + ")")
            return Frag("&" + tmp, self.UNARY_PREC)
        raise LoweringError("new " + typ.name)

    def new_array(self, typ: Type, size: Frag) -> Frag:
        return Frag("make([]" + self.b.go_type(typ) + ", " + size.text + ")", self.POSTFIX_PREC)

    def delete(self, operand: Frag) -> Frag:
        return Frag("", PRIMARY)

    def sizeof(self, typ: Type) -> Frag:
        self.b.imports.add("unsafe")
        return Frag("unsafe.Sizeof(*new(" + self.b.go_type(typ) + "))", self.POSTFIX_PREC)

    def lambda_(self, params: list[Parameter], ret: Type | None, body: list[Stmt], by_value: bool) -> Frag:
        ctx = self.ctx
        parts: list[str] = []
        saved = dict(ctx.locals)
        for p in params:
            if p.typ.kind == "template" and p.typ.name == "auto":
                raise LoweringError("lambda parameter without a type")
            ctx.locals[p.name] = p.typ
            parts.append(go_to_camel(p.name) + " " + self.b.go_type(p.typ))
        try:
            if ret is None and any(isinstance(s, Return) and s.value for s in body):
                only = body[0] if len(body) == 1 and isinstance(body[0], Return) else None
                if only is None or not only.value or not any(t.value in ("==", "!=", "<", ">", "<=", ">=", "&&", "||", "!") for t in only.value):
                    raise LoweringError("lambda return type")
                ret = Type("bool", "bool")
            lines = self.b.render_block(body, ret)
        finally:
            ctx.locals = saved
        result = " " + self.b.go_type(ret) if ret is not None and ret.kind != "void" else ""
        return Frag("func(" + ", ".join(parts) + ")" + result + " {\n" + "\n".join(lines) + "\n}", PRIMARY)


class GoBackend(Emitter):
    """Emit Go code from an analyzed IR."""

    def __init__(self, options: CodegenOptions | None = None) -> None:
        super().__init__(indent_str="\t")
        self.options = options or CodegenOptions()
        self.imports: set[str] = set()
        self.exception_types: set[str] = set()
        self.thread_groups: set[str] = set()
        self.error_bases: set[str] = set()
        self.iface_pattern: re.Pattern[str] | None = None
        self.needs_b2i = False
        self.fn_state = _FnState(None)
        self.test_source = ""

    # ============================================================
    # MODULE
    # ============================================================

    def emit(self, ir: IR) -> str:
        self.ir = ir
        self.lines = []
        self.warnings = []
        self.imports = set()
        self.needs_b2i = False
        self.hier = analyze_hierarchy(ir)
        for w in self.hier.warnings():
            self.warn(w.message, w.lineno)
        self.error_bases = set()
        for name in self.hier.traits:
            parsed = ir.find_class(name)
            if parsed is not None and parsed.is_exception:
                self.error_bases.add(name)
        interfaces = [type_name(n) for n in self.hier.traits if n not in self.error_bases]
        self.iface_pattern = re.compile(r"\*(" + "|".join(map(re.escape, interfaces)) + r")\b(?!\[)") if interfaces else None
        self.calls = CallTable(ir, self._free_name, self._method_name, self._ctor_name)
        self.exception_types = {"std::exception", "std::runtime_error", "std::logic_error"}
        for func in ir.all_functions():
            self.exception_types.update(func.exceptions.thrown_types)
        self.exception_types.update(c.name for c in ir.classes if c.is_exception)
        for enum in ir.enums:
            self._emit_enum(enum)
        for concept in ir.concepts:
            self.line()
            self.line("// " + type_name(concept) + " stands for a C++ concept; its requirements are not translated.")
            self.line("type " + type_name(concept) + " interface{}")
        for spec in self.hier.traits.values():
            if spec.name not in self.error_bases:
                self._emit_interface(spec)
        self._emit_globals(ir.globals)
        for cls in ir.classes:
            self._emit_class(cls)
        for func in ir.functions:
            self._emit_free_function(func)
        if self.needs_b2i:
            self.line()
            self.line("func b2i(b bool) int {")
            self.line("\tif b {")
            self.line("\t\treturn 1")
            self.line("\t}")
            self.line("\treturn 0")
            self.line("}")
        body = self.capture()
        self.line("// Code generated by cxxport. DO NOT EDIT.")
        self.line()
        self.line("package " + self.options.package_name)
        self._emit_imports(sorted(self.imports))
        header = self.capture()
        self.test_source = self._test_file(ir) if self.options.generate_tests else ""
        return "\n".join(header + body).rstrip("\n") + "\n"

    def _emit_imports(self, imports: list[str]) -> None:
        if not imports:
            return
        self.line()
        if len(imports) == 1:
            self.line('import "' + imports[0] + '"')
            return
        self.line("import (")
        for path in imports:
            self.line('\t"' + path + '"')
        self.line(")")

    # -- naming ------------------------------------------------------------

    def _free_name(self, func: Function) -> str:
        if func.name == "main":
            return "main"
        name = go_exported(method_base_name(func.name), True)
        spec = func.templates.specialization
        if spec.is_specialization and spec.specialized_args:
            name += specialization_suffix(spec.specialized_args)
        return name

    def _method_name(self, cls: ClassDecl, func: Function) -> str:
        base = method_base_name(func.name)
        if func.is_static:
            return self.struct_name(cls) + to_pascal(base)
        return go_exported(base, self._exported_method(cls, func))

    def _ctor_name(self, cls: ClassDecl) -> str:
        return self.ctor_base(cls)

    def ctor_base(self, cls: ClassDecl) -> str:
        return "New" + self.struct_name(cls)

    def _exported_method(self, cls: ClassDecl, func: Function) -> bool:
        if func.access == "public" or func.is_virtual or func.is_override:
            return True
        return any(func.name in t.method_names() for t in self.hier.bases_of(cls.name))

    def member_method_name(self, name: str) -> str:
        """Go name for a method called on a receiver of unknown class."""
        func = self.any_method(name)
        if func is not None:
            return self.calls.name_of(func)
        return go_exported(method_base_name(name), True)

    def any_method(self, name: str) -> Function | None:
        for table in self.calls.methods.values():
            funcs = table.get(name)
            if funcs:
                return funcs[0]
        return None

    def inherited_method(self, cls: ClassDecl | None, name: str, argc: int) -> Function | None:
        if cls is None:
            return None
        for base in self.hier.bases_of(cls.name):
            if base.parsed:
                func = self.calls.method_target(base.name, name, argc)
                if func is not None:
                    return func
        return None

    def struct_name(self, cls: ClassDecl) -> str:
        name = type_name(cls.name)
        spec = self.hier.traits.get(cls.name)
        if spec is not None and spec.has_state and cls.name not in self.error_bases:
            name += "Base"
        special = cls.templates.specialization
        if special.is_specialization and special.specialized_args:
            name += specialization_suffix(special.specialized_args)
        return name

    def field_name(self, var: Variable) -> str:
        return go_exported(var.name, var.access == "public")

    def member_field_name(self, name: str) -> str:
        for cls in self.ir.classes:
            var = cls.field_named(name)
            if var is not None and not var.is_static:
                return self.field_name(var)
        return go_to_camel(name)

    def static_name(self, cls: ClassDecl, var: Variable) -> str:
        return go_to_camel(type_name(cls.name)) + to_pascal(go_to_camel(var.name))

    def global_name(self, var: Variable) -> str:
        return go_to_camel(var.name)

    def enumerator_name(self, enum: EnumDecl, value: str) -> str:
        return type_name(enum.name) + variant_name(value)

    def go_type(self, t: Type | None) -> str:
        """to_go, with pointers to base classes spelled as the interface itself."""
        text = to_go(t, self.imports)
        if self.iface_pattern is not None:
            text = self.iface_pattern.sub(r"\1", text)
        return text

    def embedded_bases(self, cls_name: str) -> list[TraitSpec]:
        """Bases a struct embeds: bases with fields, and exception base classes."""
        return [b for b in self.hier.bases_of(cls_name) if b.has_state or b.name in self.error_bases]

    def embed_name(self, spec: TraitSpec) -> str:
        parsed = self.ir.find_class(spec.name)
        if parsed is not None:
            return self.struct_name(parsed)
        return type_name(spec.name)

    def receiver_for(self, cls: ClassDecl, funcs: list[Function]) -> str:
        """First letter of the type, or `self` when a body already uses that name."""
        name = self.struct_name(cls)[:1].lower() or "self"
        for func in funcs:
            if any(p.name == name for p in func.params) or name in token_names(body_tokens(func.body)):
                return "self"
        for var in cls.fields:
            if go_to_camel(var.name) == name:
                return "self"
        return name

    # -- shared value helpers ----------------------------------------------

    def zero_value(self, t: Type | None) -> str:
        if t is None:
            return ""
        text = self.go_type(t)
        if t.kind == "bool":
            return "false"
        if t.kind in ("integer", "float", "enum"):
            return "0"
        if text == "string":
            return '""'
        if t.kind in ("pointer", "function") or text.startswith(("*", "[]", "map[", "chan ", "<-chan", "func(", "unsafe.")):
            return "nil"
        if t.kind in ("class", "struct") or text.startswith("struct{"):
            return text + "{}"
        return "*new(" + text + ")"

    def propagate_text(self, err: str) -> str:
        """Lines that hand `err` to the caller, releasing locks held by nested blocks."""
        return "\n".join(self._unlocks_from(0) + [self._propagate(err)])

    def _propagate(self, err: str) -> str:
        state = self.fn_state
        if self.ctx.in_try:
            return "return " + err
        if state.result:
            if state.ctor_receiver:
                return "return nil, " + err
            zero = self.zero_value(state.ret) if state.ret is not None else ""
            return "return " + (zero + ", " if zero else "") + err
        return "panic(" + err + ")"

    def error_value(self, name: str, args: list[Frag]) -> str:
        cls = self.ir.find_class(base_name(name).rsplit("::", 1)[-1])
        texts = [a.text for a in args]
        if cls is not None:
            func = self.calls.ctor_target(cls.name, len(args))
            ident = self.calls.name_of(func) if func is not None else self.ctor_base(cls)
            return ident + "(" + ", ".join(texts) + ")"
        self.imports.add("errors")
        if not texts:
            return 'errors.New("' + name + '")'
        if len(texts) == 1:
            return "errors.New(" + texts[0] + ")"
        self.imports.add("fmt")
        return 'fmt.Errorf("' + " ".join("%v" for _ in texts) + '", ' + ", ".join(texts) + ")"

    def aggregate(self, typ: Type, args: list[Frag], style: str) -> str:
        """Value of `T name(args)` / `T name{args}` / `T{args}`."""
        texts = [a.text for a in args]
        k = typ.kind
        if k in ("class", "struct"):
            cls = self.ir.find_class(typ.name.rsplit("::", 1)[-1])
            if cls is None:
                raise LoweringError("construction of unknown type " + typ.name)
            frag = self.expr.construct_class(cls, [], args, value=True)
            if typ.args:
                ident = frag.text.split("(", 1)[0].lstrip("*")
                generic = ident + "[" + ", ".join(self.go_type(a) for a in typ.args) + "]"
                return frag.text.replace(ident + "(", generic + "(", 1)
            return frag.text
        if k == "container":
            name = typ.name
            gotype = self.go_type(typ)
            if name in ("std::vector", "std::deque", "std::list"):
                if style == "()" and len(texts) == 1:
                    return "make(" + gotype + ", " + texts[0] + ")"
                if style == "()" and len(texts) == 2:
                    tmp = self.expr.temp("s")
                    self.expr.pre.append(tmp + " := make(" + gotype + ", " + texts[0] + ")")
                    self.expr.pre.append("for i := range " + tmp + " {\n\t" + tmp + "[i] = " + texts[1] + "\n}")
                    return tmp
                return gotype + "{" + ", ".join(texts) + "}"
            if name == "std::string":
                return texts[0] if texts else '""'
            if name in ("std::pair", "std::tuple", "std::array"):
                return gotype + "{" + ", ".join(texts) + "}"
            if name in _SETS:
                return gotype + "{" + "".join(t + ": {}, " for t in texts).rstrip(", ") + "}"
            if name in _MAPS:
                if not texts:
                    return gotype + "{}"
                raise LoweringError("map initializer list")
            if name == "std::optional":
                if not texts:
                    return "nil"
                tmp = self.expr.temp("p")
                self.expr.pre.append(tmp + " := " + texts[0])
                return "&" + tmp
        if k == "array":
            return self.go_type(typ) + "{" + ", ".join(texts) + "}"
        if len(texts) == 1:
            return texts[0]
        if not texts:
            return self.zero_value(typ)
        raise LoweringError("initializer for " + typ.name)

    def spawn_lines(self, group: str, args: list[Frag]) -> list[str]:
        """Start a goroutine tracked by WaitGroup `group`."""
        if not args:
            raise LoweringError("thread without a callable")
        func, rest = args[0], args[1:]
        callee = func.text
        if callee.startswith("func("):
            callee = "(" + callee + ")"
        call = callee + "(" + ", ".join(a.text for a in rest) + ")"
        return [group + ".Add(1)", "go func() {\n\tdefer " + group + ".Done()\n\t" + call.replace("\n", "\n\t") + "\n}()"]

    # ============================================================
    # DECLARATIONS
    # ============================================================

    def _emit_doc(self, doc: str, line: int, what: str) -> None:
        if self.options.preserve_comments and doc:
            for text in doc.splitlines():
                self.line(("// " + text.strip().lstrip("*").strip()).rstrip())
        if self.options.provenance:
            self.line("// Translated from C++ " + what + " (line " + str(line) + ").")

    def _emit_enum(self, enum: EnumDecl) -> None:
        name = type_name(enum.name)
        base = self.go_type(enum.underlying) if enum.underlying is not None else "int32"
        self.line()
        self._emit_doc("", enum.line, "enum " + enum.name)
        self.line("type " + name + " " + base)
        if not enum.values:
            return
        self.line()
        self.line("const (")
        explicit = any(value for _, value in enum.values)
        prev = ""
        for idx, (value_name, value) in enumerate(enum.values):
            ident = self.enumerator_name(enum, value_name)
            if not explicit:
                self.line("\t" + ident + (" " + name + " = iota" if idx == 0 else ""))
            elif value:
                self.line("\t" + ident + " " + name + " = " + value)
            else:
                self.line("\t" + ident + " " + name + " = " + (prev + " + 1" if prev else "0"))
            prev = ident
        self.line(")")

    def _emit_globals(self, globals_: list[Variable]) -> None:
        if not globals_:
            return
        self._set_context(build_context(self.ir, None, None, "self"), _FnState(None))
        self.line()
        for var in globals_:
            self._emit_package_var(self.global_name(var), var)

    def _emit_package_var(self, name: str, var: Variable) -> None:
        typ = self.go_type(var.typ)
        kind = _threading_kind(var.typ)
        if kind:
            self.line("var " + name + " " + typ)
            if kind == "atomic" and var.initializer:
                self.warn("initial value of atomic " + var.name + " is not translated", var.line)
            return
        if var.initializer is None:
            self.line("var " + name + " " + typ)
            return
        try:
            value = self._value_of(var.typ, var.initializer, "=")
            pre = self.expr.take_pre()
        except LoweringError as e:
            self.line("// untranslated: " + var.name + " = " + " ".join(var.initializer.split()))
            self.warn("untranslated initializer of " + var.name + ": " + str(e), var.line)
            return
        if pre:
            self.line("// untranslated: " + var.name + " = " + " ".join(var.initializer.split()))
            self.warn("initializer of " + var.name + " needs statements", var.line)
            return
        if var.is_const and var.typ.kind in ("bool", "integer", "float") or (var.is_const and typ == "string"):
            self.line("const " + name + " " + typ + " = " + value)
        else:
            self.line("var " + name + " " + typ + " = " + value)

    def _value_of(self, typ: Type, text: str, style: str) -> str:
        tokens = body_tokens(text)
        if tokens and tokens[0].is_op("{") and tokens[-1].is_op("}"):
            return self.aggregate(typ, self.expr.args(tokens[1:-1]), "{}")
        parts = [p for p in split_tokens(tokens) if p]
        if len(parts) == 1 and style != "()":
            return self.expr.lower(parts[0])
        return self.aggregate(typ, self.expr.args(tokens), style)

    # -- generics ----------------------------------------------------------

    def _generics(self, params: list[TemplateParameter], line: int) -> tuple[str, str]:
        """(declaration form with constraints, use form) of a parameter list."""
        decl: list[str] = []
        used: list[str] = []
        for p in params:
            if p.kind != "type" or p.is_variadic:
                what = "variadic template parameter " if p.is_variadic else p.kind.replace("_", "-") + " template parameter "
                self.line("// untranslated: " + what + p.name)
                self.warn(what + p.name + " has no Go equivalent", line)
                continue
            constraint = go_constraint(p)
            if "cmp." in constraint:
                self.imports.add("cmp")
            decl.append(p.name + " " + constraint)
            used.append(p.name)
        if not decl:
            return "", ""
        return "[" + ", ".join(decl) + "]", "[" + ", ".join(used) + "]"

    # -- interfaces --------------------------------------------------------

    def _emit_interface(self, spec: TraitSpec) -> None:
        parsed = self.ir.find_class(spec.name)
        self._set_context(build_context(self.ir, None, None, "self"), _FnState(None))
        self.line()
        if parsed is not None:
            self._emit_doc(parsed.doc, parsed.line, "base class " + spec.name)
        else:
            self.line("// " + type_name(spec.name) + " is inferred from the methods its implementers override.")
        self.line("type " + type_name(spec.name) + " interface {")
        self.indent += 1
        for m in spec.methods:
            self.line(go_exported(method_base_name(m.name), True) + self._signature_tail(m))
        self.indent -= 1
        self.line("}")

    # -- classes -----------------------------------------------------------

    def _emit_class(self, cls: ClassDecl) -> None:
        if self._interface_only(cls):
            self._emit_statics(cls)
            return
        struct = self.struct_name(cls)
        if cls.templates.specialization.is_specialization:
            self.warn("specialization of " + cls.name + " emitted as " + struct, cls.line)
        self.line()
        self._emit_doc(cls.doc, cls.line, ("struct " if cls.is_struct else "class ") + cls.name)
        decl, used = self._generics(cls.templates.parameters, cls.line)
        fields = [f for f in cls.fields if not f.is_static]
        state_bases = self.embedded_bases(cls.name)
        message = self._needs_message(cls)
        if not fields and not state_bases and not message:
            self.line("type " + struct + decl + " struct{}")
        else:
            self.line("type " + struct + decl + " struct {")
            self.indent += 1
            for base in state_bases:
                self.line(self.embed_name(base))
            if message:
                self.line("message string")
            for f in fields:
                if self.options.safety and f.typ.kind == "pointer" and not f.typ.is_smart_pointer:
                    self.line("// raw pointer in C++; nil when unset")
                self.line(self.field_name(f) + " " + self.go_type(f.typ))
            self.indent -= 1
            self.line("}")
        if not cls.is_abstract and not cls.templates.parameters:
            for base in self.hier.bases_of(cls.name):
                if base.name in self.error_bases:
                    continue
                self.line()
                self.line("var _ " + type_name(base.name) + " = (*" + struct + ")(nil)")
        self._emit_statics(cls)
        recv = self.receiver_for(cls, cls.methods)
        ctors = [c for c in cls.constructors() if not c.is_deleted]
        if not ctors:
            self._emit_constructor(cls, None, recv, decl, used)
        for ctor in ctors:
            self._emit_constructor(cls, ctor, recv, decl, used)
        for m in cls.methods:
            if m.is_constructor or m.is_deleted or m.is_defaulted:
                continue
            if m.is_pure_virtual and not m.has_body:
                continue
            self._emit_method(cls, m, recv, decl, used)
        self._emit_missing_methods(cls, recv, used)
        if cls.is_exception:
            self._emit_error_method(cls, recv, used)

    def _interface_only(self, cls: ClassDecl) -> bool:
        spec = self.hier.traits.get(cls.name)
        return spec is not None and not spec.has_state and cls.name not in self.error_bases

    def _needs_message(self, cls: ClassDecl) -> bool:
        return cls.is_exception and any(b.startswith("std::") for b in cls.base_classes) and cls.field_named("message") is None

    def _emit_statics(self, cls: ClassDecl) -> None:
        statics = [f for f in cls.fields if f.is_static]
        if not statics:
            return
        self._set_context(build_context(self.ir, cls, None, "self"), _FnState(None))
        self.line()
        for var in statics:
            self._emit_package_var(self.static_name(cls, var), var)

    def _field_inits(self, cls: ClassDecl, ctor: Function | None, recv: str) -> tuple[list[str], list[str], list[str]]:
        """Statements before the composite literal, its items, and statements after it."""
        inits: dict[str, str] = {}
        if ctor is not None:
            for key, text in ctor.initializers:
                inits[base_name(key).rsplit("::", 1)[-1] if not key.startswith("std::") else key] = text
        before: list[str] = []
        items: list[str] = []
        after: list[str] = []
        for base in self.embedded_bases(cls.name):
            parent = self.ir.find_class(base.name)
            text = inits.get(base.name)
            embed = self.embed_name(base)
            try:
                args = self.expr.args(body_tokens(text)) if text else []
                value = self.expr.construct_class(parent, [], args, value=True).text if parent is not None else embed + "{}"
                items.append(embed + ": " + value)
            except LoweringError as e:
                self.warn("base initializer of " + cls.name + ": " + str(e), cls.line)
        if self._needs_message(cls):
            std_base = next(b for b in cls.base_classes if b.startswith("std::"))
            text = inits.get(std_base)
            if text:
                try:
                    items.append("message: " + self.expr.lower(body_tokens(text)))
                except LoweringError as e:
                    self.warn("exception message of " + cls.name + ": " + str(e), cls.line)
        before.extend(self.expr.take_pre())
        mutexes = [f for f in cls.fields if not f.is_static and _threading_kind(f.typ) in MUTEX_KINDS]
        for f in cls.fields:
            if f.is_static:
                continue
            ident = self.field_name(f)
            kind = _threading_kind(f.typ)
            if kind in CONDVAR_KINDS:
                if mutexes:
                    after.append(recv + "." + ident + " = sync.NewCond(&" + recv + "." + self.field_name(mutexes[0]) + ")")
                else:
                    self.warn("condition variable " + f.name + " has no mutex to bind", f.line)
                continue
            text = inits.get(f.name, f.initializer)
            if text is None or kind in MUTEX_KINDS or kind in ("thread", "jthread"):
                continue
            try:
                if kind == "atomic":
                    after.append(recv + "." + ident + ".Store(" + self.expr.lower(body_tokens(text)) + ")")
                    continue
                value = self._value_of(f.typ, text, "=" if "{" not in text else "{}")
                before.extend(self.expr.take_pre())
                items.append(ident + ": " + value)
            except LoweringError as e:
                self.warn("initializer of " + cls.name + "::" + f.name + ": " + str(e), f.line)
        return before, items, after

    def _emit_constructor(self, cls: ClassDecl, ctor: Function | None, recv: str, decl: str, used: str) -> None:
        struct = self.struct_name(cls)
        throws = ctor is not None and ctor.may_throw
        state = _FnState(ctor, result=throws, ctor_receiver=recv)
        self._set_context(self._context(cls, ctor, recv), state)
        name = self.calls.name_of(ctor) if ctor is not None else self.ctor_base(cls)
        self.line()
        if ctor is not None:
            self._emit_doc(ctor.doc, ctor.line, "constructor " + cls.name)
        ret = "*" + struct + used
        if throws:
            ret = "(" + ret + ", error)"
        params = self._params(ctor) if ctor is not None else ""
        self.line("func " + name + decl + "(" + params + ") " + ret + " {")
        self.indent += 1
        before, items, after = self._field_inits(cls, ctor, recv)
        for text in before:
            self.line(text)
        literal = "&" + struct + used + "{" + ", ".join(items) + "}"
        stmts = parse_body(ctor.body, self.ir, self.ctx.template_names) if ctor is not None else []
        if not stmts and not after:
            self.line("return " + literal + (", nil" if throws else ""))
        else:
            self.line(recv + " := " + literal)
            for text in after:
                self.line(text)
            self._emit_block(stmts)
            self.line("return " + recv + (", nil" if throws else ""))
        self.indent -= 1
        self.line("}")

    def _emit_method(self, cls: ClassDecl, m: Function, recv: str, decl: str, used: str) -> None:
        struct = self.struct_name(cls)
        self.line()
        if m.is_destructor:
            self._set_context(self._context(cls, m, recv), _FnState(m))
            self._emit_doc(m.doc, m.line, "destructor " + cls.name)
            self.line("func (" + recv + " *" + struct + used + ") Close() {")
            self.indent += 1
            self._emit_block(parse_body(m.body, self.ir, self.ctx.template_names))
            self.indent -= 1
            self.line("}")
            return
        name = self.calls.name_of(m)
        if m.is_static:
            self._emit_function(m, cls, name, decl_override=decl)
            return
        self._emit_function(m, cls, name, head="func (" + recv + " *" + struct + used + ") ", recv=recv)

    def _emit_missing_methods(self, cls: ClassDecl, recv: str, used: str) -> None:
        struct = self.struct_name(cls)
        for spec in self.hier.bases_of(cls.name):
            if spec.has_state or spec.name in self.error_bases:
                continue
            parsed = self.ir.find_class(spec.name)
            for m in spec.methods:
                if any(o.name == m.name and not o.is_constructor for o in cls.methods):
                    continue
                if self.hier.delegation_for(cls.name, spec.name, m.name) is not None:
                    continue
                name = go_exported(method_base_name(m.name), True)
                self.line()
                if parsed is not None and m.has_body and not m.is_pure_virtual:
                    self._emit_function(m, cls, name, head="func (" + recv + " *" + struct + used + ") ", recv=recv)
                    continue
                if cls.is_abstract:
                    continue
                self.warn(cls.name + " does not implement " + spec.name + "::" + m.name, cls.line)
                self._set_context(build_context(self.ir, cls, m, recv), _FnState(m))
                self.line("func (" + recv + " *" + struct + used + ") " + name + self._signature_tail(m) + " {")
                self.line('\tpanic("' + cls.name + "." + m.name + ' is not implemented")')
                self.line("}")

    def _emit_error_method(self, cls: ClassDecl, recv: str, used: str) -> None:
        inherited = any(b.name in self.error_bases for b in self.hier.bases_of(cls.name))
        if self._needs_message(cls):
            shown = recv + ".message"
        elif cls.field_named("message") is not None:
            shown = recv + "." + self.field_name(cls.field_named("message"))
        elif cls.method_named("what") is not None:
            func = self.calls.method_target(cls.name, "what", 0)
            shown = recv + "." + (self.calls.name_of(func) if func is not None else "What") + "()"
        elif inherited:
            return
        else:
            shown = '"' + cls.name + '"'
        self.line()
        self.line("func (" + recv + " *" + self.struct_name(cls) + used + ") Error() string {")
        self.line("\treturn " + shown)
        self.line("}")

    # -- functions ---------------------------------------------------------

    def _context(self, cls: ClassDecl | None, func: Function | None, recv: str) -> LowerContext:
        ctx = build_context(self.ir, cls, func, recv)
        if cls is not None:
            for base in self.embedded_bases(cls.name):
                parent = self.ir.find_class(base.name)
                if parent is None:
                    continue
                for f in parent.fields:
                    if not f.is_static and f.name not in ctx.fields:
                        ctx.fields[f.name] = f
                ctx.atomics.update(a.name for a in parent.threading.atomics)
        return ctx

    def _emit_free_function(self, func: Function) -> None:
        if func.is_deleted:
            return
        self.line()
        name = self.calls.name_of(func)
        if func.templates.specialization.is_specialization:
            self.warn("specialization of " + func.name + " emitted as " + name, func.line)
        self._emit_function(func, None, name)

    def _params(self, func: Function) -> str:
        parts: list[str] = []
        for idx, p in enumerate(func.params):
            pname = go_to_camel(p.name) if p.name else "_"
            parts.append(pname + " " + self.go_type(p.typ))
        return ", ".join(parts)

    def _value_type(self, func: Function) -> Type | None:
        if func.asyncs.coroutine.is_coroutine:
            return async_value_type(func)
        if func.returns_void:
            return None
        return func.return_type

    def _signature_tail(self, func: Function, decl: str = "") -> str:
        value = self._value_type(func)
        if func.asyncs.coroutine.is_coroutine:
            ret = "<-chan " + (self.go_type(value) if value is not None else "struct{}")
        else:
            ret = self.go_type(value) if value is not None else ""
            if func.may_throw:
                ret = "(" + ret + ", error)" if ret else "error"
        return decl + "(" + self._params(func) + ")" + (" " + ret if ret else "")

    def _emit_function(
        self,
        func: Function,
        cls: ClassDecl | None,
        name: str,
        head: str = "func ",
        recv: str = "self",
        decl_override: str | None = None,
    ) -> None:
        coroutine = func.asyncs.coroutine.is_coroutine
        state = _FnState(
            func,
            result=func.may_throw and not coroutine and func.name != "main",
            ret=self._value_type(func),
            is_main=cls is None and func.name == "main",
        )
        self._set_context(self._context(cls, func, recv), state)
        self._emit_doc(func.doc, func.line, ("method " if cls is not None else "function ") + func.name)
        if decl_override is not None:
            decl = decl_override
        elif head != "func " and func.templates.parameters:
            self.line("// untranslated: template parameters of method " + func.name)
            self.warn("Go methods cannot have type parameters: " + func.name, func.line)
            decl = ""
        else:
            decl, _ = self._generics(func.templates.parameters, func.line)
        # Go's main takes no arguments and returns nothing
        self.line(head + name + ("()" if state.is_main else self._signature_tail(func, decl)) + " {")
        self.indent += 1
        if not func.has_body:
            self.warn(func.name + " is declared without a definition", func.line)
            self.line('panic("' + func.name + ' has no definition")')
        elif coroutine:
            self._emit_coroutine_body(func)
        else:
            if state.is_main and func.params:
                self.imports.add("os")
                names = [go_to_camel(p.name) for p in func.params if p.name]
                if len(names) >= 1:
                    self.line(names[0] + " := int32(len(os.Args))")
                if len(names) >= 2:
                    self.line(names[1] + " := os.Args")
            stmts = parse_body(func.body, self.ir, self.ctx.template_names)
            self._emit_block(stmts)
            if state.result and state.ret is None and not (stmts and isinstance(stmts[-1], (Return, Throw))):
                self.line("return nil")
            elif state.ret is not None and not state.is_main and stmts and isinstance(stmts[-1], TryCatch) and contains_return(stmts[-1:]):
                self.line('panic("unreachable")')
        self.indent -= 1
        self.line("}")

    def _emit_coroutine_body(self, func: Function) -> None:
        state = self.fn_state
        value = state.ret
        elem = self.go_type(value) if value is not None else "struct{}"
        buffered = "" if func.asyncs.coroutine.is_generator else ", 1"
        state.channel = "ch"
        self.line("ch := make(chan " + elem + buffered + ")")
        self.line("go func() {")
        self.indent += 1
        self.line("defer close(ch)")
        self._emit_block(parse_body(func.body, self.ir, self.ctx.template_names))
        self.indent -= 1
        self.line("}()")
        self.line("return ch")

    def _set_context(self, ctx: LowerContext, state: _FnState) -> None:
        self.ctx = ctx
        self.fn_state = state
        self.thread_groups = set()
        self.expr = GoExpr(ctx, self)

    def render_block(self, stmts: list[Stmt], ret: Type | None) -> list[str]:
        """Lines of a nested function literal body, indented one level."""
        saved = self.lines, self.indent, self.fn_state, self.expr, self.ctx.in_try
        self.lines = []
        self.indent = 1
        self.fn_state = _FnState(None, ret=ret, temps=self.fn_state.temps)
        self.expr = GoExpr(self.ctx, self)
        self.expr.aliases = dict(saved[3].aliases)
        self.expr.pair_alias = dict(saved[3].pair_alias)
        self.ctx.in_try = 0
        try:
            self._emit_block(stmts)
            return self.lines
        finally:
            self.lines, self.indent, self.fn_state, self.expr, self.ctx.in_try = saved

    # ============================================================
    # STATEMENTS
    # ============================================================

    def _untranslated(self, text: str, reason: str) -> None:
        self.line("// untranslated: " + " ".join(text.split()))
        func = self.fn_state.func
        where = " in " + func.name if func is not None else ""
        self.warn("untranslated statement" + where + ": " + reason, func.line if func is not None else 0)

    def _emit_block(self, stmts: list[Stmt]) -> None:
        for stmt in stmts:
            self._emit_stmt(stmt)

    def _emit_body(self, stmts: list[Stmt], loop: bool = False) -> None:
        """A nested block. Locks it takes are released where it ends, not by defer."""
        state = self.fn_state
        state.scopes.append([])
        if loop:
            state.loops.append(len(state.scopes) - 1)
        self.indent += 1
        try:
            self._emit_block(stmts)
            if not (stmts and isinstance(stmts[-1], (Return, CoReturn, Throw, Break, Continue))):
                self._flush(self._unlocks_from(len(state.scopes) - 1))
        finally:
            self.indent -= 1
            if loop:
                state.loops.pop()
            state.scopes.pop()

    def _unlocks_from(self, depth: int) -> list[str]:
        """Unlocks owed by scopes[depth:], innermost first."""
        out: list[str] = []
        for pending in reversed(self.fn_state.scopes[depth:]):
            out.extend(reversed(pending))
        return out

    def _flush(self, lines: list[str]) -> None:
        for text in lines:
            self.line(text)

    def _emit_stmt(self, stmt: Stmt) -> None:
        self.expr.pre = []
        mark = len(self.lines)
        try:
            if isinstance(stmt, ExprStmt):
                self._stmt_expr(stmt)
            elif isinstance(stmt, LocalDecl):
                self._stmt_decl(stmt)
            elif isinstance(stmt, (Return, CoReturn)):
                self._stmt_return(stmt.value)
            elif isinstance(stmt, CoYield):
                if not self.fn_state.channel:
                    raise LoweringError("co_yield outside a coroutine")
                value = self.expr.lower(stmt.value)
                self._flush(self.expr.take_pre())
                self.line(self.fn_state.channel + " <- " + value)
            elif isinstance(stmt, Throw):
                self._stmt_throw(stmt)
            elif isinstance(stmt, If):
                self._stmt_if(stmt)
            elif isinstance(stmt, While):
                cond = self._loop_cond(stmt.cond)
                self.line("for " + cond + " {")
                self._emit_body(stmt.body, loop=True)
                self.line("}")
            elif isinstance(stmt, DoWhile):
                cond = self._loop_cond(stmt.cond)
                self.line("for {")
                self._emit_body(stmt.body, loop=True)
                self.line("\tif !(" + cond + ") {")
                self.line("\t\tbreak")
                self.line("\t}")
                self.line("}")
            elif isinstance(stmt, For):
                self._stmt_for(stmt)
            elif isinstance(stmt, RangeFor):
                self._stmt_range_for(stmt)
            elif isinstance(stmt, (Break, Continue)):
                loops = self.fn_state.loops
                self._flush(self._unlocks_from(loops[-1]) if loops else [])
                self.line("break" if isinstance(stmt, Break) else "continue")
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
            del self.lines[mark:]
            self._untranslated(describe(stmt), str(e))

    def _stmt_expr(self, stmt: ExprStmt) -> None:
        tokens = stmt.expr
        wait = self._condvar_wait(tokens)
        if wait is not None:
            self._flush(wait)
            return
        if first_call_name(tokens) == "std::async":
            self._flush(self._async_launch(tokens, "", None))
            return
        thread = self._thread_assignment(tokens)
        if thread is not None:
            self._flush(thread)
            return
        text = self.expr.lower(tokens)
        self._flush(self.expr.take_pre())
        if text:
            self.line(self.expr.effect_only.get(text, text))

    def _thread_assignment(self, tokens: list[Token]) -> list[str] | None:
        """`worker_ = std::thread(...)` on a WaitGroup field."""
        for i, tok in enumerate(tokens):
            if tok.is_op("="):
                break
        else:
            return None
        if first_call_name(tokens[i + 1 :]) not in ("std::thread", "std::jthread"):
            return None
        target = self.expr.lower(tokens[:i])
        open_idx = next(j for j in range(i + 1, len(tokens)) if tokens[j].is_op("("))
        args = self.expr.args(tokens[open_idx + 1 : -1])
        return self.expr.take_pre() + self.spawn_lines(target, args)

    def _is_condvar(self, name: str) -> bool:
        if _threading_kind(self.ctx.type_of(name)) in CONDVAR_KINDS:
            return True
        return any(g.name == name and _threading_kind(g.typ) in CONDVAR_KINDS for g in self.ir.globals)

    def _condvar_wait(self, tokens: list[Token]) -> list[str] | None:
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
        cv = self.expr.lower(recv)
        args = [a for a in split_tokens(arg_tokens) if a]
        if len(args) < 2:
            return [cv + ".Wait()"]
        pred_tokens = lambda_return_expr(args[1])
        if pred_tokens is None:
            pred = self.expr.lower(args[1]) + "()"
        else:
            pred = self.expr.lower(pred_tokens)
        return self.expr.take_pre() + ["for !(" + pred + ") {\n\t" + cv + ".Wait()\n}"]

    def _async_launch(self, tokens: list[Token], var: str, value: Type | None) -> list[str]:
        """`std::async(f, args)`: a channel filled by a goroutine, or `go f(args)` when unbound."""
        open_idx = next(j for j in range(len(tokens)) if tokens[j].is_op("("))
        args = self.expr.args(tokens[open_idx + 1 : -1])
        if args and args[0].text.startswith("std::launch::"):
            args = args[1:]
        if not args:
            raise LoweringError("std::async without a callable")
        callee = args[0].text
        if callee.startswith("func("):
            callee = "(" + callee + ")"
        call = callee + "(" + ", ".join(a.text for a in args[1:]) + ")"
        pre = self.expr.take_pre()
        if not var:
            return pre + ["go " + call]
        if value is None:
            raise LoweringError("std::async result type")
        elem = self.go_type(value)
        return pre + [var + " := make(chan " + elem + ", 1)", "go func() {\n\t" + var + " <- " + call.replace("\n", "\n\t") + "\n}()"]

    def _stmt_decl(self, d: LocalDecl) -> None:
        ctx = self.ctx
        typ = d.typ
        kind = _threading_kind(typ)
        name = go_to_camel(d.name)
        if kind in LOCK_KINDS:
            self._lock_decl(d, kind)
            return
        if kind in ("thread", "jthread"):
            ctx.locals[d.name] = typ
            self.line("var " + name + " sync.WaitGroup")
            self.imports.add("sync")
            if d.init is not None:
                if d.init_style == "=":
                    call = d.init
                    open_idx = next(j for j in range(len(call)) if call[j].is_op("("))
                    args = self.expr.args(call[open_idx + 1 : -1])
                else:
                    args = self.expr.args(d.init)
                self._flush(self.expr.take_pre() + self.spawn_lines(name, args))
            return
        if _is_thread_vector(typ):
            ctx.locals[d.name] = typ
            self.thread_groups.add(d.name)
            self.imports.add("sync")
            self.line("var " + name + " sync.WaitGroup")
            return
        if typ.kind == "async" and typ.name == "std::promise":
            ctx.locals[d.name] = typ
            self.line(name + " := make(" + self.go_type(typ) + ", 1)")
            return
        if d.init is not None and first_call_name(d.init) == "std::async":
            value = typ.args[0] if typ.kind == "async" and typ.args else self._callable_result(d.init)
            ctx.locals[d.name] = typ
            ctx.futures[d.name] = "task"
            self._flush(self._async_launch(d.init, name, value))
            return
        if kind in CONDVAR_KINDS:
            raise LoweringError("local condition variable")
        if kind:
            ctx.locals[d.name] = typ
            if kind == "atomic":
                ctx.atomics.add(d.name)
            self.line("var " + name + " " + self.go_type(typ))
            if kind == "atomic" and d.init:
                inner = d.init[1:-1] if d.init[0].is_op("{") else d.init
                value = self.expr.lower(inner)
                self._flush(self.expr.take_pre())
                self.line(name + ".Store(" + value + ")")
            return
        auto = typ.kind == "template" and typ.name == "auto"
        value = self._init_value(d)
        self._flush(self.expr.take_pre())
        ctx.locals[d.name] = typ
        if value is None:
            self.line("var " + name + " " + self.go_type(typ))
        elif auto or typ.kind in ("class", "struct"):
            self.line(name + " := " + value)
        else:
            self.line("var " + name + " " + self.go_type(typ) + " = " + value)

    def _callable_result(self, tokens: list[Token]) -> Type | None:
        """Return type of the function an std::async call launches, when it is a known free function."""
        open_idx = next(j for j in range(len(tokens)) if tokens[j].is_op("("))
        args = [a for a in split_tokens(tokens[open_idx + 1 : -1]) if a]
        if args and join_tokens(args[0]).startswith("std::launch"):
            args = args[1:]
        if not args or len(args[0]) != 1 or args[0][0].type != TK_IDENT:
            return None
        func = self.calls.free_target(args[0][0].value, len(args) - 1)
        return None if func is None or func.returns_void else func.return_type

    def _init_value(self, d: LocalDecl) -> str | None:
        typ = d.typ
        if d.init is None or not d.init_style:
            if typ.kind in ("class", "struct"):
                cls = self.ir.find_class(typ.name.rsplit("::", 1)[-1])
                if cls is not None:
                    return self.aggregate(typ, [], "()")
            return None
        if d.init_style == "=":
            if d.init and d.init[0].is_op("{") and d.init[-1].is_op("}"):
                return self.aggregate(typ, self.expr.args(d.init[1:-1]), "{}")
            if d.init and self._is_get_future(d.init):
                self.ctx.futures[d.name] = "channel"
            return self.expr.lower(d.init)
        return self.aggregate(typ, self.expr.args(d.init), d.init_style)

    def _is_get_future(self, init: list[Token]) -> bool:
        return (
            len(init) == 5
            and init[0].type == TK_IDENT
            and self.ctx.futures.get(init[0].value) == "promise"
            and init[2].value == "get_future"
        )

    def _explicit_unlock(self, var: str) -> bool:
        func = self.fn_state.func
        return func is not None and any(lk.var_name == var and lk.unlocks_explicitly for lk in func.threading.locks)

    def _lock_decl(self, d: LocalDecl, kind: str) -> None:
        args = [a for a in split_tokens(d.init or []) if a and join_tokens(a) not in LOCK_TAGS]
        mutexes = [receiver_name(a) for a in args]
        if not mutexes or "" in mutexes:
            raise LoweringError("lock over an expression")
        deferred = any(join_tokens(a) == "std::defer_lock" for a in split_tokens(d.init or []))
        self.ctx.lock_vars[d.name] = mutexes[0]
        self.ctx.locals[d.name] = d.typ
        explicit = self._explicit_unlock(d.name)
        for mutex in mutexes:
            access = self.expr.name(mutex).text
            lock, unlock = ("RLock", "RUnlock") if kind == "shared_lock" else ("Lock", "Unlock")
            if not deferred:
                self.line(access + "." + lock + "()")
            if explicit:
                continue
            if self.fn_state.scopes:
                self.fn_state.scopes[-1].append(access + "." + unlock + "()")
            else:
                self.line("defer " + access + "." + unlock + "()")

    def _stmt_return(self, value: list[Token] | None) -> None:
        text = None
        if value is not None:
            text = self.expr.lower(value)
            self._flush(self.expr.take_pre())
        self._return_text(text)

    def _return_text(self, text: str | None) -> None:
        """Leave the function, releasing locks held by enclosing nested blocks.

        Inside a try closure the value is parked in the try's slot and the
        closure returns nil; the statement after the try finishes the return.
        """
        state = self.fn_state
        if self.ctx.in_try:
            flag, slot = state.try_exits[-1]
            if text is not None and slot:
                self.line(slot + " = " + text)
            self.line(flag + " = true")
            self._flush(self._unlocks_from(0))
            self.line("return nil")
            return
        unlocks = self._unlocks_from(0)
        if unlocks and text is not None and not text.lstrip("-").isdigit():
            held = self.expr.temp("r")
            self.line(held + " := " + text)
            text = held
        self._flush(unlocks)
        if state.channel:
            if text is not None:
                self.line(state.channel + " <- " + text)
            self.line("return")
        elif text is None:
            if state.ctor_receiver:
                self.line("return " + state.ctor_receiver + (", nil" if state.result else ""))
            else:
                self.line("return nil" if state.result else "return")
        elif state.is_main:
            if text == "0":
                self.line("return")
            else:
                self.imports.add("os")
                self.line("os.Exit(int(" + text + "))")
        elif state.result:
            self.line("return " + text + ", nil")
        else:
            self.line("return " + text)

    def _stmt_throw(self, stmt: Throw) -> None:
        if stmt.value is None:
            if not self.fn_state.handler_var and not self.ctx.in_try:
                raise LoweringError("rethrow outside a handler")
            err = "err"
        elif len(stmt.value) == 1 and stmt.value[0].value == self.fn_state.handler_var:
            err = "err"
        else:
            err = self._error_expr(stmt.value)
        self._flush(self.expr.take_pre())
        self.line(self.propagate_text(err))

    def _error_expr(self, tokens: list[Token]) -> str:
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
            if len(tokens) == 1 and tokens[0].type in (TK_IDENT, TK_STRING):
                self.imports.add("fmt")
                return 'fmt.Errorf("%v", ' + self.expr.lower(tokens) + ")"
            raise LoweringError("thrown expression")
        args = self.expr.args(tokens[i + 1 : -1])
        return self.error_value("::".join(parts), args)

    def _stmt_try(self, stmt: TryCatch) -> None:
        ctx = self.ctx
        state = self.fn_state
        exit_frame = None
        if contains_return(stmt.body):
            flag = self.expr.temp("returned")
            slot = ""
            if state.ret is not None and not state.ctor_receiver:
                slot = self.expr.temp("ret")
                self.line("var " + slot + " " + self.go_type(state.ret))
            self.line("var " + flag + " bool")
            exit_frame = (flag, slot)
            state.try_exits.append(exit_frame)
        saved_scopes, saved_loops = state.scopes, state.loops
        state.scopes, state.loops = [], []
        ctx.in_try += 1
        try:
            self.line("if err := func() (err error) {")
            if any(h.exc_type.strip() == "..." for h in stmt.handlers):
                self.imports.add("fmt")
                self.line("\tdefer func() {")
                self.line("\t\tif r := recover(); r != nil {")
                self.line('\t\t\terr = fmt.Errorf("%v", r)')
                self.line("\t\t}")
                self.line("\t}()")
            self._emit_body(stmt.body)
            if not (stmt.body and isinstance(stmt.body[-1], (Return, Throw))):
                self.line("\treturn nil")
        finally:
            ctx.in_try -= 1
            state.scopes, state.loops = saved_scopes, saved_loops
            if exit_frame is not None:
                state.try_exits.pop()
        self.line("}(); err != nil {")
        self.indent += 1
        opened = False
        catch_all = ""
        for handler in stmt.handlers:
            if catch_all:
                self._untranslated(
                    "catch (" + handler.exc_type + ") { ... }",
                    "handler unreachable after catch (" + catch_all + "): Go std exceptions are untyped errors",
                )
                continue
            exc = base_name(handler.exc_type.replace("const ", "").strip(" &*"))
            cls = self.ir.find_class(exc.rsplit("::", 1)[-1])
            var = go_to_camel(handler.var) if handler.var else ""
            if cls is not None:
                self.imports.add("errors")
                target = "(*" + self.struct_name(cls) + ")(nil)"
                if var:
                    head = "if " + var + " := " + target + "; errors.As(err, &" + var + ") {"
                else:
                    head = "if errors.As(err, new(*" + self.struct_name(cls) + ")) {"
                self.line(("} else " if opened else "") + head)
            else:
                catch_all = handler.exc_type.strip()
                self.line("} else {" if opened else "{")
                if var:
                    self.line("\t" + var + " := err")
                    self.line("\t_ = " + var)
            opened = True
            if handler.var:
                ctx.locals[handler.var] = Type("class", exc if cls is not None else "error")
            saved = state.handler_var
            state.handler_var = handler.var
            self._emit_body(handler.body)
            state.handler_var = saved
        if not catch_all:
            if opened:
                self.line("} else {")
                self.indent += 1
                self.line(self.propagate_text("err"))
                self.indent -= 1
            else:
                self.line(self.propagate_text("err"))
        if opened:
            self.line("}")
        self.indent -= 1
        self.line("}")
        if exit_frame is not None:
            flag, slot = exit_frame
            self.line("if " + flag + " {")
            self.indent += 1
            self._return_text(slot or None)
            self.indent -= 1
            self.line("}")

    def _stmt_print(self, stmt: Print) -> None:
        fmt: list[str] = []
        args: list[str] = []
        for part in stmt.parts:
            literal = string_literal_text(part[0].value) if len(part) == 1 and part[0].type == TK_STRING else None
            if literal is not None:
                fmt.append(literal.replace("%", "%%"))
            else:
                fmt.append("%v")
                args.append(self.expr.lower(part))
        self._flush(self.expr.take_pre())
        self.imports.add("fmt")
        text = "".join(fmt) + ("\\n" if stmt.newline else "")
        if stmt.stream == "out":
            self.line('fmt.Printf("' + text + '"' + "".join(", " + a for a in args) + ")")
        else:
            self.imports.add("os")
            self.line('fmt.Fprintf(os.Stderr, "' + text + '"' + "".join(", " + a for a in args) + ")")

    def _cond(self, tokens: list[Token]) -> str:
        negate = False
        operand = tokens
        if len(tokens) == 2 and tokens[0].is_op("!"):
            negate = True
            operand = tokens[1:]
        if len(operand) == 1 and operand[0].type == TK_IDENT:
            typ = _strip_ref(self.ctx.type_of(operand[0].value))
            inner = self.expr.lower(operand)
            if typ is not None and typ.kind in ("integer", "float"):
                return inner + (" == 0" if negate else " != 0")
            if typ is not None and (typ.kind == "pointer" or (typ.kind == "container" and typ.name == "std::optional")):
                return inner + (" == nil" if negate else " != nil")
        return self.expr.lower(tokens)

    def _loop_cond(self, tokens: list[Token]) -> str:
        cond = self._cond(tokens)
        if self.expr.pre:
            raise LoweringError("loop condition needs statements")
        return cond

    def _stmt_if(self, stmt: If) -> None:
        cond = self._cond(stmt.cond)
        self._flush(self.expr.take_pre())
        self.line("if " + cond + " {")
        self._emit_body(stmt.then_body)
        rest = stmt.else_body
        while rest:
            if len(rest) == 1 and isinstance(rest[0], If):
                nested = rest[0]
                try:
                    nested_cond = self._cond(nested.cond)
                except LoweringError:
                    nested_cond = ""
                if not nested_cond or self.expr.take_pre():
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

    def _for_header(self, stmt: For) -> str | None:
        """`init; cond; step` when the loop fits Go's three-clause form."""
        init = ""
        if len(stmt.init) > 1:
            return None
        if stmt.init:
            decl = stmt.init[0]
            if isinstance(decl, LocalDecl) and decl.init is not None and decl.init_style in ("=", "{}", "()"):
                value = self.expr.lower(decl.init[1:-1] if decl.init_style == "=" and decl.init[0].is_op("{") else decl.init)
                if decl.typ.kind == "integer" and not _uses_length(stmt.cond):
                    value = self.go_type(decl.typ) + "(" + value + ")"
                self.ctx.locals[decl.name] = decl.typ
                init = go_to_camel(decl.name) + " := " + value
            elif isinstance(decl, ExprStmt):
                init = self.expr.lower(decl.expr)
            else:
                return None
        cond = self._cond(stmt.cond) if stmt.cond else ""
        step = self.expr.lower(stmt.step) if stmt.step else ""
        if self.expr.pre or "\n" in step:
            return None
        if not init and not step:
            return cond
        return init + "; " + cond + "; " + step

    def _stmt_for(self, stmt: For) -> None:
        header = self._for_header(stmt)
        if header is None:
            raise LoweringError("for loop header")
        self.line("for " + header + " {" if header else "for {")
        self._emit_body(stmt.body, loop=True)
        self.line("}")

    def _stmt_range_for(self, stmt: RangeFor) -> None:
        iterable = self.expr.lower(stmt.iterable)
        self._flush(self.expr.take_pre())
        simple = stmt.iterable[0].value if len(stmt.iterable) == 1 else ""
        if simple in self.thread_groups:
            self.line(iterable + ".Wait()")
            return
        container = _strip_ref(self.ctx.type_of(simple)) if simple else None
        name = go_to_camel(stmt.name)
        elem = container.args[0] if container is not None and container.kind in ("container", "array") and container.args else None
        if elem is None and container is not None and container.kind == "array":
            elem = container.element
        self.ctx.locals[stmt.name] = elem if elem is not None and stmt.typ.kind in ("reference", "template") else stmt.typ
        if container is not None and container.kind == "container" and container.name in _MAPS:
            key, value = self.expr.temp("k"), self.expr.temp("v")
            self.expr.pair_alias[stmt.name] = (key, value)
            self.line("for " + key + ", " + value + " := range " + iterable + " {")
        elif container is not None and container.kind == "container" and container.name in _SETS:
            self.line("for " + name + " := range " + iterable + " {")
        elif stmt.typ.kind == "reference" and stmt.typ.element is not None and not stmt.typ.element.is_const:
            idx = self.expr.temp("i")
            self.expr.aliases[stmt.name] = iterable + "[" + idx + "]"
            self.line("for " + idx + " := range " + iterable + " {")
        else:
            self.line("for _, " + name + " := range " + iterable + " {")
        self._emit_body(stmt.body, loop=True)
        self.line("}")
        self.expr.aliases.pop(stmt.name, None)

    # ============================================================
    # TESTS
    # ============================================================

    def _test_file(self, ir: IR) -> str:
        out = ["// Code generated by cxxport. DO NOT EDIT.", "", "package " + self.options.package_name, "", 'import "testing"']
        for cls in ir.classes:
            if cls.templates.parameters or self._interface_only(cls):
                continue
            struct = self.struct_name(cls)
            out.append("")
            out.append("func Test" + struct + "Constructs(t *testing.T) {")
            ctors = [c for c in cls.constructors() if not c.is_deleted] or [None]
            for ctor in ctors:
                name = self.calls.name_of(ctor) if ctor is not None else self.ctor_base(cls)
                if ctor is None or (not ctor.params and not ctor.may_throw):
                    out.append("\tif " + name + "() == nil {")
                    out.append('\t\tt.Fatal("' + name + ' returned nil")')
                    out.append("\t}")
                else:
                    out.append("\t_ = " + name)
            out.append("}")
        return "\n".join(out) + "\n"

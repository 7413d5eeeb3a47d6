"""Body lowering shared by the Rust and Go generators.

Function bodies arrive as opaque text. `parse_body` splits that text into a
small statement tree whose expressions are still token runs;
`ExprLowerer` walks one expression with a precedence-climbing parser and
asks target hooks for each construct it recognizes. Anything without a
rule raises LoweringError, which the generators turn into an
`untranslated:` comment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from cxxport.frontend.lexer import (
    TK_CHAR,
    TK_IDENT,
    TK_NUMBER,
    TK_OP,
    TK_STRING,
    Token,
    find_matching,
    join_tokens,
    split_tokens,
)
from cxxport.frontend.parse import parse_params
from cxxport.frontend.types import (
    ASYNC,
    ATOMIC_ALIASES,
    BUILTIN_WORDS,
    CONTAINERS,
    SMART_POINTERS,
    THREADING,
    resolve_tokens,
)
from cxxport.ir import IR, ClassDecl, EnumDecl, Function, Parameter, Type, Variable
from cxxport.middleend.exceptions import catch_declaration
from cxxport.middleend.scan import body_tokens
from cxxport.typemap import builtin_entry

from .util import unique_names


class LoweringError(Exception):
    """A statement or expression shape with no translation rule."""


# ============================================================
# STATEMENTS
# ============================================================


class Stmt:
    """Base for lowered statements."""


@dataclass
class ExprStmt(Stmt):
    expr: list[Token]


@dataclass
class LocalDecl(Stmt):
    """`T name = init;`. init_style is "=", "()", "{}" or "" (no initializer)."""

    typ: Type
    name: str
    init: list[Token] | None = None
    init_style: str = ""
    is_const: bool = False
    is_static: bool = False


@dataclass
class Return(Stmt):
    value: list[Token] | None = None


@dataclass
class CoReturn(Stmt):
    value: list[Token] | None = None


@dataclass
class CoYield(Stmt):
    value: list[Token]


@dataclass
class Throw(Stmt):
    """`throw expr;`; value None is a rethrow."""

    value: list[Token] | None = None


@dataclass
class If(Stmt):
    cond: list[Token]
    then_body: list[Stmt]
    else_body: list[Stmt] | None = None


@dataclass
class While(Stmt):
    cond: list[Token]
    body: list[Stmt]


@dataclass
class DoWhile(Stmt):
    body: list[Stmt]
    cond: list[Token]


@dataclass
class For(Stmt):
    init: list[Stmt]
    cond: list[Token]
    step: list[Token]
    body: list[Stmt]


@dataclass
class RangeFor(Stmt):
    typ: Type
    name: str
    iterable: list[Token]
    body: list[Stmt]


@dataclass
class Break(Stmt):
    pass


@dataclass
class Continue(Stmt):
    pass


@dataclass
class Block(Stmt):
    body: list[Stmt]


@dataclass
class Handler:
    exc_type: str
    var: str
    body: list[Stmt]


@dataclass
class TryCatch(Stmt):
    body: list[Stmt]
    handlers: list[Handler] = field(default_factory=list)


@dataclass
class Print(Stmt):
    """`std::cout << a << b << std::endl;`."""

    stream: str
    parts: list[list[Token]]
    newline: bool = False


@dataclass
class Untranslated(Stmt):
    text: str


# Full std names that start a declaration.
STD_TYPE_NAMES: set[str] = (
    CONTAINERS
    | THREADING
    | ASYNC
    | set(SMART_POINTERS)
    | set(ATOMIC_ALIASES)
    | {"std::function", "std::size_t", "std::ptrdiff_t"}
)

_DECL_WORDS: set[str] = {"const", "constexpr", "static", "volatile", "thread_local", "register", "inline", "mutable"}

_UNSUPPORTED_STATEMENTS: set[str] = {"switch", "goto", "case", "default", "asm"}


def parse_body(text: str, ir: IR | None = None, template_names: set[str] | None = None) -> list[Stmt]:
    """Statements of an opaque function body."""
    return BodyParser(body_tokens(text), ir, template_names or set()).parse()


class BodyParser:
    """Splits a body's tokens into statements. Never raises."""

    def __init__(self, tokens: list[Token], ir: IR | None, template_names: set[str]) -> None:
        self.tokens: list[Token] = tokens
        self.ir: IR | None = ir
        self.template_names: set[str] = template_names

    def parse(self) -> list[Stmt]:
        return self._block(0, len(self.tokens))

    def _block(self, i: int, end: int) -> list[Stmt]:
        stmts: list[Stmt] = []
        while i < end:
            parsed, i = self._statement(i, end)
            stmts.extend(parsed)
        return stmts

    def _close(self, i: int, end: int) -> int:
        close = find_matching(self.tokens, i)
        if close < 0 or close >= end:
            return end
        return close

    def _semi(self, i: int, end: int) -> int:
        """Index of the `;` ending the statement at i, tracking () [] {} depth."""
        depth = 0
        while i < end:
            tok = self.tokens[i]
            if tok.type == TK_OP:
                if tok.value in ("(", "[", "{"):
                    depth += 1
                elif tok.value in (")", "]", "}"):
                    depth -= 1
                elif tok.value == ";" and depth <= 0:
                    return i
            i += 1
        return end

    def _text(self, i: int, end: int) -> str:
        return join_tokens(self.tokens[i:end])

    def _sub_statement(self, i: int, end: int) -> tuple[list[Stmt], int]:
        """Body of if/while/for: a braced block is unwrapped."""
        if i < end and self.tokens[i].is_op("{"):
            close = self._close(i, end)
            return self._block(i + 1, close), close + 1
        return self._statement(i, end)

    def _statement(self, i: int, end: int) -> tuple[list[Stmt], int]:
        tok = self.tokens[i]
        t = tok.type
        if tok.is_op(";"):
            return [], i + 1
        if tok.is_op("{"):
            close = self._close(i, end)
            return [Block(self._block(i + 1, close))], close + 1
        if t == "if":
            return self._if(i, end)
        if t == "while":
            return self._while(i, end)
        if t == "do":
            return self._do(i, end)
        if t == "for":
            return self._for(i, end)
        if t == "try":
            return self._try(i, end)
        if t in ("return", "co_return", "co_yield", "throw"):
            semi = self._semi(i + 1, end)
            value = self.tokens[i + 1 : semi] or None
            stmt: Stmt
            if t == "return":
                stmt = Return(value)
            elif t == "co_return":
                stmt = CoReturn(value)
            elif t == "co_yield":
                stmt = CoYield(value or [])
            else:
                stmt = Throw(value)
            return [stmt], semi + 1
        if t == "break" or t == "continue":
            semi = self._semi(i, end)
            return [Break() if t == "break" else Continue()], semi + 1
        if t in _UNSUPPORTED_STATEMENTS or tok.value in _UNSUPPORTED_STATEMENTS:
            return self._unsupported(i, end)
        semi = self._semi(i, end)
        return self.simple(self.tokens[i:semi]), semi + 1

    def _unsupported(self, i: int, end: int) -> tuple[list[Stmt], int]:
        j = i + 1
        if j < end and self.tokens[j].is_op("("):
            j = self._close(j, end) + 1
        if j < end and self.tokens[j].is_op("{"):
            close = self._close(j, end)
            return [Untranslated(self._text(i, close + 1))], close + 1
        semi = self._semi(i, end)
        return [Untranslated(self._text(i, semi + 1))], semi + 1

    def simple(self, toks: list[Token]) -> list[Stmt]:
        """A statement without control flow: print, declaration or expression."""
        if not toks:
            return []
        printed = self._print(toks)
        if printed is not None:
            return [printed]
        decls = self._declaration(toks)
        if decls is not None:
            return decls
        return [ExprStmt(toks)]

    def _paren(self, i: int, end: int) -> tuple[list[Token], int]:
        """Contents of the `(...)` at i and the index after it."""
        if i >= end or not self.tokens[i].is_op("("):
            raise LoweringError("expected '('")
        close = self._close(i, end)
        return self.tokens[i + 1 : close], close + 1

    def _if(self, i: int, end: int) -> tuple[list[Stmt], int]:
        j = i + 1
        if j < end and self.tokens[j].type == "constexpr":
            j += 1
        try:
            cond, j = self._paren(j, end)
        except LoweringError:
            return self._unsupported(i, end)
        if any(t.is_op(";") for t in cond):
            close = self._skip_if_chain(j, end)
            return [Untranslated(self._text(i, close))], close
        then_body, j = self._sub_statement(j, end)
        else_body: list[Stmt] | None = None
        if j < end and self.tokens[j].type == "else":
            else_body, j = self._sub_statement(j + 1, end)
        return [If(cond, then_body, else_body)], j

    def _skip_if_chain(self, j: int, end: int) -> int:
        _, j = self._sub_statement(j, end)
        while j < end and self.tokens[j].type == "else":
            _, j = self._sub_statement(j + 1, end)
        return j

    def _while(self, i: int, end: int) -> tuple[list[Stmt], int]:
        try:
            cond, j = self._paren(i + 1, end)
        except LoweringError:
            return self._unsupported(i, end)
        body, j = self._sub_statement(j, end)
        return [While(cond, body)], j

    def _do(self, i: int, end: int) -> tuple[list[Stmt], int]:
        body, j = self._sub_statement(i + 1, end)
        if j >= end or self.tokens[j].type != "while":
            return [Untranslated(self._text(i, j))], j
        try:
            cond, j = self._paren(j + 1, end)
        except LoweringError:
            return self._unsupported(i, end)
        if j < end and self.tokens[j].is_op(";"):
            j += 1
        return [DoWhile(body, cond)], j

    def _for(self, i: int, end: int) -> tuple[list[Stmt], int]:
        try:
            header, j = self._paren(i + 1, end)
        except LoweringError:
            return self._unsupported(i, end)
        body, j = self._sub_statement(j, end)
        colon = _top_level_index(header, ":")
        if colon >= 0 and _top_level_index(header, ";") < 0:
            name_tok = header[colon - 1] if colon > 0 else None
            if name_tok is None or name_tok.type != TK_IDENT:
                return [Untranslated(self._text(i, j))], j
            typ = resolve_tokens(header[: colon - 1], self.ir, self.template_names)
            return [RangeFor(typ, name_tok.value, header[colon + 1 :], body)], j
        parts = _split_semicolons(header)
        if len(parts) != 3:
            return [Untranslated(self._text(i, j))], j
        init = self.simple(parts[0])
        return [For(init, parts[1], parts[2], body)], j

    def _try(self, i: int, end: int) -> tuple[list[Stmt], int]:
        j = i + 1
        if j >= end or not self.tokens[j].is_op("{"):
            return self._unsupported(i, end)
        close = self._close(j, end)
        stmt = TryCatch(self._block(j + 1, close))
        j = close + 1
        while j + 1 < end and self.tokens[j].type == "catch" and self.tokens[j + 1].is_op("("):
            decl, k = self._paren(j + 1, end)
            if k >= end or not self.tokens[k].is_op("{"):
                break
            exc_type, var = catch_declaration(decl)
            hclose = self._close(k, end)
            stmt.handlers.append(Handler(exc_type, var, self._block(k + 1, hclose)))
            j = hclose + 1
        return [stmt], j

    def _print(self, toks: list[Token]) -> Print | None:
        j = 0
        if len(toks) > 2 and toks[0].value == "std" and toks[1].is_op("::"):
            j = 2
        if j >= len(toks) or toks[j].value not in ("cout", "cerr", "clog"):
            return None
        if j + 1 >= len(toks) or not toks[j + 1].is_op("<<"):
            return None
        stream = "out" if toks[j].value == "cout" else "err"
        parts = [p for p in split_tokens(toks[j + 2 :], "<<") if p]
        newline = False
        if parts and _is_endl(parts[-1]):
            parts.pop()
            newline = True
        elif parts and len(parts[-1]) == 1 and parts[-1][0].type == TK_STRING and parts[-1][0].value.endswith('\\n"'):
            last = parts[-1][0]
            stripped = last.value[:-3] + '"'
            parts[-1] = [Token(TK_STRING, stripped, last.line, last.col, last.pos)]
            if stripped == '""':
                parts.pop()
            newline = True
        cleaned: list[list[Token]] = []
        for p in parts:
            if _is_endl(p):
                cleaned.append([Token(TK_STRING, '"\\n"', p[0].line, p[0].col, p[0].pos)])
            else:
                cleaned.append(p)
        return Print(stream, cleaned, newline)

    # -- declarations ------------------------------------------------------

    def _known_type(self, name: str) -> bool:
        if name in self.template_names or name in STD_TYPE_NAMES:
            return True
        if builtin_entry(name) is not None:
            return True
        if self.ir is not None:
            short = name.rsplit("::", 1)[-1]
            if self.ir.find_type(name) is not None or self.ir.find_type(short) is not None:
                return True
        return False

    def _declaration(self, toks: list[Token]) -> list[Stmt] | None:
        n = len(toks)
        j = 0
        is_const = False
        is_static = False
        while j < n and (toks[j].type in _DECL_WORDS or toks[j].value in _DECL_WORDS):
            if toks[j].type in ("const", "constexpr"):
                is_const = True
            if toks[j].type == "static":
                is_static = True
            j += 1
        start = j
        if j >= n:
            return None
        tok = toks[j]
        known = True
        if tok.value in BUILTIN_WORDS:
            while j < n and toks[j].value in BUILTIN_WORDS:
                j += 1
        elif tok.value == "auto":
            j += 1
        elif tok.type == TK_IDENT or tok.type == "typename":
            if tok.type == "typename":
                j += 1
            if j >= n or toks[j].type != TK_IDENT:
                return None
            parts = [toks[j].value]
            j += 1
            while j + 1 < n and toks[j].is_op("::") and toks[j + 1].type == TK_IDENT:
                parts.append("::" + toks[j + 1].value)
                j += 2
            known = self._known_type("".join(parts))
            if j < n and toks[j].is_op("<"):
                close = find_matching(toks, j)
                if close < 0 or not known:
                    return None
                j = close + 1
        else:
            return None
        base_end = j
        while j < n and (toks[j].is_op("*") or toks[j].is_op("&") or toks[j].is_op("&&") or toks[j].type == "const"):
            j += 1
        if j >= n or toks[j].type != TK_IDENT:
            return None
        if not known and j > base_end:
            return None
        if j + 1 < n:
            after = toks[j + 1]
            if not (after.is_op("=") or after.is_op("{") or after.is_op("(") or after.is_op("[") or after.is_op(",")):
                return None
        base_tokens = toks[start:base_end]
        decls: list[Stmt] = []
        for idx, part in enumerate(split_tokens(toks[base_end:])):
            if idx == 0:
                ptr_end = j - base_end
            else:
                ptr_end = 0
                while ptr_end < len(part) and (part[ptr_end].is_op("*") or part[ptr_end].is_op("&")):
                    ptr_end += 1
            decl = self._declarator(base_tokens + part[:ptr_end], part[ptr_end:], is_const, is_static)
            if decl is None:
                return None
            decls.append(decl)
        return decls

    def _declarator(
        self, type_tokens: list[Token], rest: list[Token], is_const: bool, is_static: bool
    ) -> LocalDecl | None:
        if not rest or rest[0].type != TK_IDENT:
            return None
        name = rest[0].value
        typ = resolve_tokens(type_tokens, self.ir, self.template_names)
        k = 1
        while k < len(rest) and rest[k].is_op("["):
            close = find_matching(rest, k)
            if close < 0:
                return None
            typ = Type("array", join_tokens(type_tokens), element=typ, size=join_tokens(rest[k + 1 : close]))
            k = close + 1
        init: list[Token] | None = None
        style = ""
        if k < len(rest):
            head = rest[k]
            if head.is_op("="):
                init = rest[k + 1 :]
                style = "="
            elif head.is_op("{") or head.is_op("("):
                close = find_matching(rest, k)
                if close != len(rest) - 1:
                    return None
                init = rest[k + 1 : close]
                style = "{}" if head.is_op("{") else "()"
            else:
                return None
        return LocalDecl(typ, name, init, style, is_const or typ.is_const, is_static)


def _is_endl(part: list[Token]) -> bool:
    names = [t.value for t in part if not t.is_op("::")]
    return names in (["std", "endl"], ["endl"])


def _top_level_index(tokens: list[Token], op: str) -> int:
    depth = 0
    for idx, tok in enumerate(tokens):
        if tok.type != TK_OP:
            continue
        if tok.value in ("(", "[", "{"):
            depth += 1
        elif tok.value in (")", "]", "}"):
            depth -= 1
        elif tok.value == op and depth == 0:
            return idx
    return -1


def _split_semicolons(tokens: list[Token]) -> list[list[Token]]:
    parts: list[list[Token]] = [[]]
    depth = 0
    for tok in tokens:
        if tok.type == TK_OP:
            if tok.value in ("(", "[", "{"):
                depth += 1
            elif tok.value in (")", "]", "}"):
                depth -= 1
            elif tok.value == ";" and depth == 0:
                parts.append([])
                continue
        parts[-1].append(tok)
    return parts


# ============================================================
# CONTEXT
# ============================================================


@dataclass
class LowerContext:
    """What the expression hooks know about the function being emitted."""

    ir: IR
    cls: ClassDecl | None = None
    func: Function | None = None
    receiver: str = "self"
    locals: dict[str, Type] = field(default_factory=dict)
    fields: dict[str, Variable] = field(default_factory=dict)
    inherited: dict[str, str] = field(default_factory=dict)
    methods: set[str] = field(default_factory=set)
    atomics: set[str] = field(default_factory=set)
    guards: dict[str, str] = field(default_factory=dict)
    lock_vars: dict[str, str] = field(default_factory=dict)
    futures: dict[str, str] = field(default_factory=dict)
    enumerators: dict[str, EnumDecl] = field(default_factory=dict)
    throwing: set[str] = field(default_factory=set)
    template_names: set[str] = field(default_factory=set)
    in_try: int = 0

    def type_of(self, name: str) -> Type | None:
        if name in self.locals:
            return self.locals[name]
        var = self.fields.get(name)
        if var is not None:
            return var.typ
        return None

    def is_field(self, name: str) -> bool:
        return name not in self.locals and (name in self.fields or name in self.inherited)

    def is_atomic(self, name: str) -> bool:
        if name in self.locals:
            return name in self.atomics and self.locals[name].name == "std::atomic"
        return name in self.atomics


def build_context(ir: IR, cls: ClassDecl | None, func: Function | None, receiver: str) -> LowerContext:
    """Context for one function, seeded from the IR and the analyzer output."""
    ctx = LowerContext(ir, cls, func, receiver)
    for enum in ir.enums:
        for value, _ in enum.values:
            ctx.enumerators.setdefault(value, enum)
    ctx.throwing = {f.name for f in ir.all_functions() if f.may_throw}
    if cls is not None:
        ctx.fields = {f.name: f for f in cls.fields if not f.is_static}
        ctx.methods = {m.name for m in cls.methods if not m.is_constructor and not m.is_destructor}
        ctx.atomics.update(a.name for a in cls.threading.atomics)
        ctx.template_names.update(p.name for p in cls.templates.parameters)
    if func is not None:
        for p in func.params:
            if p.name:
                ctx.locals[p.name] = p.typ
        ctx.atomics.update(a.name for a in func.threading.atomics)
        for lock in func.threading.locks:
            if lock.var_name and lock.mutex_names:
                ctx.lock_vars[lock.var_name] = lock.mutex_names[0]
        for fut in func.asyncs.futures:
            if fut.is_promise:
                ctx.futures[fut.var_name] = "promise"
            elif fut.promise_var:
                ctx.futures[fut.var_name] = "channel"
            else:
                ctx.futures.setdefault(fut.var_name, "task")
        for task in func.asyncs.tasks:
            if task.var_name:
                ctx.futures[task.var_name] = "task"
        ctx.template_names.update(p.name for p in func.templates.parameters)
    return ctx


def async_value_type(func: Function) -> Type | None:
    """Value type a coroutine or future-returning function produces, None for void."""
    ret = func.return_type
    if ret is None or ret.kind == "void":
        return None
    if ret.kind in ("async", "class", "struct") and len(ret.args) == 1:
        value = ret.args[0]
        return None if value.kind == "void" else value
    if ret.kind in ("async", "class", "struct") and not ret.args and func.asyncs.coroutine.is_coroutine:
        return None
    return ret


def specialization_suffix(args: list[str]) -> str:
    """`["bool"]` -> `Bool`, `["T*"]` -> `TPtr`, `["std::string", "int"]` -> `StringInt`."""
    out: list[str] = []
    for arg in args:
        text = arg.replace("*", " ptr ").replace("&", " ref ").replace("::", " ").replace("<", " ").replace(">", " ").replace(",", " ")
        for word in text.split():
            if word in ("std", "const"):
                continue
            out.append(word[:1].upper() + word[1:])
    return "".join(out)


# ============================================================
# EXPRESSIONS
# ============================================================


@dataclass(frozen=True)
class Frag:
    """Lowered expression text and its binding strength in the target."""

    text: str
    prec: int


PRIMARY = 100

BINARY_PREC: dict[str, int] = {
    "||": 3,
    "&&": 4,
    "|": 5,
    "^": 6,
    "&": 7,
    "==": 8,
    "!=": 8,
    "<": 9,
    ">": 9,
    "<=": 9,
    ">=": 9,
    "<=>": 9,
    "<<": 10,
    ">>": 10,
    "+": 11,
    "-": 11,
    "*": 12,
    "/": 12,
    "%": 12,
}

ASSIGN_OPS: set[str] = {"=", "+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=", "<<=", ">>="}

CASTS: set[str] = {"static_cast", "dynamic_cast", "reinterpret_cast", "const_cast"}


class _Cursor:
    def __init__(self, tokens: list[Token]) -> None:
        self.tokens = tokens
        self.i = 0

    def peek(self, k: int = 0) -> Token | None:
        j = self.i + k
        if j < len(self.tokens):
            return self.tokens[j]
        return None

    def next(self) -> Token:
        tok = self.peek()
        if tok is None:
            raise LoweringError("unexpected end of expression")
        self.i += 1
        return tok

    def kind(self, k: int = 0) -> str:
        tok = self.peek(k)
        return tok.type if tok is not None else ""

    def is_word(self, k: int = 0) -> bool:
        tok = self.peek(k)
        return tok is not None and tok.is_word()

    def is_op(self, value: str, k: int = 0) -> bool:
        tok = self.peek(k)
        return tok is not None and tok.is_op(value)

    def done(self) -> bool:
        return self.i >= len(self.tokens)

    def group(self) -> list[Token]:
        """Consume a bracketed run at the cursor and return its inside."""
        close = find_matching(self.tokens, self.i)
        if close < 0:
            raise LoweringError("unbalanced '" + self.tokens[self.i].value + "'")
        inner = self.tokens[self.i + 1 : close]
        self.i = close + 1
        return inner


class ExprLowerer:
    """Precedence-climbing walk over one C++ expression.

    Subclasses implement the hooks for their target; `prec` maps a C++
    binary operator to its binding strength in the target.
    """

    PREC: dict[str, int] = BINARY_PREC
    UNARY_PREC = 90
    POSTFIX_PREC = 95

    def __init__(self, ctx: LowerContext) -> None:
        self.ctx = ctx

    def lower(self, tokens: list[Token]) -> str:
        return self.frag(tokens).text

    def frag(self, tokens: list[Token]) -> Frag:
        if not tokens:
            raise LoweringError("empty expression")
        cur = _Cursor(tokens)
        out = self._assignment(cur)
        if not cur.done():
            tok = cur.peek()
            assert tok is not None
            raise LoweringError("unexpected '" + tok.value + "'")
        return out

    def args(self, tokens: list[Token]) -> list[Frag]:
        return [self.frag(part) for part in split_tokens(tokens) if part]

    # -- grammar -----------------------------------------------------------

    def _assignment(self, cur: _Cursor) -> Frag:
        left = self._ternary(cur)
        tok = cur.peek()
        if tok is not None and tok.type == TK_OP and tok.value in ASSIGN_OPS:
            cur.next()
            right = self._assignment(cur)
            return self.assign(left, tok.value, right)
        return left

    def _ternary(self, cur: _Cursor) -> Frag:
        cond = self._binary(cur, 0)
        if cur.is_op("?"):
            cur.next()
            a = self._assignment(cur)
            if not cur.is_op(":"):
                raise LoweringError("malformed conditional expression")
            cur.next()
            b = self._assignment(cur)
            return self.ternary(cond, a, b)
        return cond

    def _binary(self, cur: _Cursor, min_prec: int) -> Frag:
        left = self._unary(cur)
        while True:
            tok = cur.peek()
            if tok is None or tok.type != TK_OP or tok.value not in BINARY_PREC:
                break
            p = BINARY_PREC[tok.value]
            if p < min_prec:
                break
            cur.next()
            right = self._binary(cur, p + 1)
            left = self.binary(left, tok.value, right)
        return left

    def _unary(self, cur: _Cursor) -> Frag:
        tok = cur.peek()
        if tok is None:
            raise LoweringError("unexpected end of expression")
        if tok.type == TK_OP and tok.value in ("!", "-", "+", "~", "*", "&", "++", "--"):
            cur.next()
            return self.unary(tok.value, self._unary(cur))
        if tok.type == "co_await":
            cur.next()
            return self.await_(self._unary(cur))
        if tok.type == "new":
            cur.next()
            type_tokens: list[Token] = []
            while not cur.done() and not (cur.is_op("(") or cur.is_op("{") or cur.is_op("[")):
                type_tokens.append(cur.next())
            typ = resolve_tokens(type_tokens, self.ctx.ir, self.ctx.template_names)
            args: list[Frag] = []
            if cur.is_op("(") or cur.is_op("{"):
                args = self.args(cur.group())
            elif cur.is_op("["):
                size = self.frag(cur.group())
                return self.new_array(typ, size)
            return self.new_(typ, args)
        if tok.type == "delete":
            cur.next()
            if cur.is_op("[") and cur.is_op("]", 1):
                cur.next()
                cur.next()
            return self.delete(self._unary(cur))
        if tok.value == "sizeof":
            cur.next()
            if not cur.is_op("("):
                raise LoweringError("sizeof without parentheses")
            inner = cur.group()
            return self.sizeof(resolve_tokens(inner, self.ctx.ir, self.ctx.template_names))
        if tok.type == "throw":
            raise LoweringError("throw expression")
        return self._postfix(cur)

    def _postfix(self, cur: _Cursor) -> Frag:
        out, simple = self._primary(cur)
        while True:
            tok = cur.peek()
            if tok is None:
                break
            if tok.is_op(".") or tok.is_op("->"):
                cur.next()
                member_tok = cur.next()
                if not member_tok.is_word():
                    raise LoweringError("member access to '" + member_tok.value + "'")
                member = member_tok.value
                if cur.is_op("<"):
                    close = find_matching(cur.tokens, cur.i)
                    if close > 0 and close + 1 < len(cur.tokens) and cur.tokens[close + 1].is_op("("):
                        cur.i = close + 1
                if cur.is_op("("):
                    args = self.args(cur.group())
                    out = self.method_call(out, member, args, simple)
                else:
                    out = self.member(out, member, simple)
                simple = ""
            elif tok.is_op("("):
                out = self.call_value(out, self.args(cur.group()))
                simple = ""
            elif tok.is_op("["):
                out = self.index(out, self.frag(cur.group()))
                simple = ""
            elif tok.is_op("++") or tok.is_op("--"):
                cur.next()
                out = self.postfix(out, tok.value, simple)
                simple = ""
            else:
                break
        return out

    def _primary(self, cur: _Cursor) -> tuple[Frag, str]:
        """Returns the fragment and, for a bare name or `this`, that name."""
        tok = cur.next()
        t = tok.type
        if t == TK_NUMBER:
            return self.number(tok.value), ""
        if t == TK_STRING:
            parts = [tok.value]
            while cur.kind() == TK_STRING:
                parts.append(cur.next().value)
            return self.string(_concat_literals(parts)), ""
        if t == TK_CHAR:
            return self.char(tok.value), ""
        if t in ("true", "false"):
            return self.boolean(t == "true"), ""
        if t == "nullptr" or tok.value == "NULL":
            return self.null(), ""
        if t == "this":
            return self.this(), "this"
        if tok.is_op("("):
            cur.i -= 1
            inner = cur.group()
            cast = self._c_cast(inner, cur)
            if cast is not None:
                return cast, ""
            return self.paren(self.frag(inner)), ""
        if tok.is_op("["):
            cur.i -= 1
            return self._lambda(cur), ""
        if tok.is_op("{"):
            cur.i -= 1
            return self.init_list(self.args(cur.group())), ""
        if tok.is_op("::"):
            return self._primary(cur)
        if t == TK_IDENT or t == "typename":
            if t == "typename":
                tok = cur.next()
            path = [tok.value]
            while cur.is_op("::") and cur.is_word(1):
                cur.next()
                path.append(cur.next().value)
            name = "::".join(path)
            targs: list[Token] = []
            if cur.is_op("<") and not self._is_value(name):
                close = find_matching(cur.tokens, cur.i)
                if close > 0 and (
                    close + 1 >= len(cur.tokens)
                    or cur.tokens[close + 1].is_op("(")
                    or cur.tokens[close + 1].is_op("{")
                    or cur.tokens[close + 1].is_op("::")
                ):
                    targs = cur.tokens[cur.i + 1 : close]
                    cur.i = close + 1
                    while cur.is_op("::") and cur.is_word(1):
                        cur.next()
                        path.append(cur.next().value)
                    name = "::".join(path)
            if name in CASTS:
                if not targs or not cur.is_op("("):
                    raise LoweringError(name + " without target type")
                typ = resolve_tokens(targs, self.ctx.ir, self.ctx.template_names)
                return self.cast(typ, self.frag(cur.group())), ""
            if name in ("std::move", "std::forward") and cur.is_op("("):
                inner = self.args(cur.group())
                if len(inner) != 1:
                    raise LoweringError(name + " with " + str(len(inner)) + " arguments")
                return inner[0], ""
            if cur.is_op("("):
                return self.call(name, targs, self.args(cur.group())), ""
            if cur.is_op("{") and (targs or self._is_type(name)):
                typ = resolve_tokens(_name_tokens(name, targs, tok), self.ctx.ir, self.ctx.template_names)
                return self.construct(typ, self.args(cur.group())), ""
            return self.name(name), name if len(path) == 1 else ""
        raise LoweringError("unexpected '" + tok.value + "'")

    def _is_value(self, name: str) -> bool:
        return name in self.ctx.locals or self.ctx.is_field(name)

    def _is_type(self, name: str) -> bool:
        if name in STD_TYPE_NAMES or builtin_entry(name) is not None:
            return True
        return self.ctx.ir.find_type(name.rsplit("::", 1)[-1]) is not None

    def _c_cast(self, inner: list[Token], cur: _Cursor) -> Frag | None:
        if not inner or not all(t.value in BUILTIN_WORDS or t.is_op("*") or t.type == "const" for t in inner):
            return None
        nxt = cur.peek()
        if nxt is None or not (nxt.type in (TK_IDENT, TK_NUMBER, "this") or nxt.is_op("(")):
            return None
        typ = resolve_tokens(inner, self.ctx.ir, self.ctx.template_names)
        return self.cast(typ, self._unary(cur))

    def _lambda(self, cur: _Cursor) -> Frag:
        capture = cur.group()
        params: list[Parameter] = []
        if cur.is_op("("):
            params = parse_params(cur.group(), self.ctx.ir, self.ctx.template_names)
        ret: Type | None = None
        while cur.kind() in ("mutable", "noexcept", "constexpr"):
            cur.next()
        if cur.is_op("->"):
            cur.next()
            ret_tokens: list[Token] = []
            while not cur.done() and not cur.is_op("{"):
                ret_tokens.append(cur.next())
            ret = resolve_tokens(ret_tokens, self.ctx.ir, self.ctx.template_names)
        if not cur.is_op("{"):
            raise LoweringError("lambda without body")
        body = BodyParser(cur.group(), self.ctx.ir, self.ctx.template_names).parse()
        by_value = any(t.is_op("=") for t in capture) or any(t.type == TK_IDENT for t in capture)
        return self.lambda_(params, ret, body, by_value)

    # -- hooks -------------------------------------------------------------

    def prec(self, op: str) -> int:
        return self.PREC.get(op, 10)

    def wrap(self, frag: Frag, min_prec: int) -> str:
        if frag.prec < min_prec:
            return "(" + frag.text + ")"
        return frag.text

    def binary_op(self, op: str) -> str:
        return op

    def binary(self, left: Frag, op: str, right: Frag) -> Frag:
        p = self.prec(op)
        return Frag(self.wrap(left, p) + " " + self.binary_op(op) + " " + self.wrap(right, p + 1), p)

    def assign(self, target: Frag, op: str, value: Frag) -> Frag:
        return Frag(target.text + " " + op + " " + value.text, 0)

    def unary(self, op: str, operand: Frag) -> Frag:
        return Frag(op + self.wrap(operand, self.UNARY_PREC), self.UNARY_PREC)

    def postfix(self, operand: Frag, op: str, simple: str) -> Frag:
        return Frag(operand.text + op, self.POSTFIX_PREC)

    def paren(self, inner: Frag) -> Frag:
        return Frag("(" + inner.text + ")", PRIMARY)

    def index(self, target: Frag, idx: Frag) -> Frag:
        return Frag(self.wrap(target, self.POSTFIX_PREC) + "[" + idx.text + "]", self.POSTFIX_PREC)

    def number(self, text: str) -> Frag:
        return Frag(normalize_number(text), PRIMARY)

    def string(self, text: str) -> Frag:
        return Frag(text, PRIMARY)

    def char(self, text: str) -> Frag:
        return Frag(text, PRIMARY)

    def boolean(self, value: bool) -> Frag:
        return Frag("true" if value else "false", PRIMARY)

    def null(self) -> Frag:
        raise NotImplementedError

    def this(self) -> Frag:
        return Frag(self.ctx.receiver, PRIMARY)

    def name(self, name: str) -> Frag:
        raise NotImplementedError

    def member(self, target: Frag, member: str, simple: str) -> Frag:
        raise NotImplementedError

    def method_call(self, target: Frag, method: str, args: list[Frag], simple: str) -> Frag:
        raise NotImplementedError

    def call(self, name: str, targs: list[Token], args: list[Frag]) -> Frag:
        raise NotImplementedError

    def call_value(self, target: Frag, args: list[Frag]) -> Frag:
        return Frag(self.wrap(target, self.POSTFIX_PREC) + "(" + ", ".join(a.text for a in args) + ")", self.POSTFIX_PREC)

    def construct(self, typ: Type, args: list[Frag]) -> Frag:
        raise NotImplementedError

    def init_list(self, items: list[Frag]) -> Frag:
        raise NotImplementedError

    def cast(self, typ: Type, value: Frag) -> Frag:
        raise NotImplementedError

    def ternary(self, cond: Frag, a: Frag, b: Frag) -> Frag:
        raise NotImplementedError

    def await_(self, operand: Frag) -> Frag:
        raise NotImplementedError

    def new_(self, typ: Type, args: list[Frag]) -> Frag:
        raise NotImplementedError

    def new_array(self, typ: Type, size: Frag) -> Frag:
        raise NotImplementedError

    def delete(self, operand: Frag) -> Frag:
        raise NotImplementedError

    def sizeof(self, typ: Type) -> Frag:
        raise NotImplementedError

    def lambda_(self, params: list[Parameter], ret: Type | None, body: list[Stmt], by_value: bool) -> Frag:
        raise NotImplementedError

    def with_defaults(self, func: Function | None, args: list[Frag]) -> list[Frag]:
        """Append the default arguments a call leaves out; neither target has them."""
        if func is None or len(args) >= len(func.params):
            return args
        out = list(args)
        for p in func.params[len(args) :]:
            if p.default_value is None:
                break
            out.append(self.frag(body_tokens(p.default_value)))
        return out


def normalize_number(text: str) -> str:
    """Strip C++ integer/float suffixes and digit separators."""
    text = text.replace("'", "_")
    lower = text.lower()
    if lower.startswith("0x"):
        while text and text[-1] in "uUlL":
            text = text[:-1]
        return text
    while text and text[-1] in "uUlLfF":
        text = text[:-1]
    if text.endswith("."):
        text += "0"
    if text.startswith("."):
        text = "0" + text
    return text


def _concat_literals(parts: list[str]) -> str:
    if len(parts) == 1:
        return parts[0]
    return '"' + "".join(p[1:-1] for p in parts) + '"'


def _name_tokens(name: str, targs: list[Token], like: Token) -> list[Token]:
    tokens: list[Token] = []
    for idx, part in enumerate(name.split("::")):
        if idx:
            tokens.append(Token(TK_OP, "::", like.line, like.col, like.pos))
        tokens.append(Token(TK_IDENT, part, like.line, like.col, like.pos))
    if targs:
        tokens.append(Token(TK_OP, "<", like.line, like.col, like.pos))
        tokens.extend(targs)
        tokens.append(Token(TK_OP, ">", like.line, like.col, like.pos))
    return tokens


def string_literal_text(literal: str) -> str | None:
    """Contents of a plain "..." literal, None for prefixed or raw literals."""
    if len(literal) >= 2 and literal[0] == '"' and literal[-1] == '"':
        return literal[1:-1]
    return None


# ============================================================
# STATEMENT HELPERS
# ============================================================


def describe(stmt: Stmt) -> str:
    """Short source-like rendering of a statement for `untranslated:` comments."""
    if isinstance(stmt, Untranslated):
        return " ".join(stmt.text.split())
    if isinstance(stmt, ExprStmt):
        return join_tokens(stmt.expr) + ";"
    if isinstance(stmt, LocalDecl):
        text = stmt.typ.name + " " + stmt.name
        if stmt.init is not None:
            text += " = " + join_tokens(stmt.init)
        return text + ";"
    if isinstance(stmt, (Return, CoReturn, CoYield, Throw)):
        word = {Return: "return", CoReturn: "co_return", CoYield: "co_yield", Throw: "throw"}[type(stmt)]
        if stmt.value:
            return word + " " + join_tokens(stmt.value) + ";"
        return word + ";"
    if isinstance(stmt, If):
        return "if (" + join_tokens(stmt.cond) + ") ..."
    if isinstance(stmt, (While, DoWhile)):
        return "while (" + join_tokens(stmt.cond) + ") ..."
    if isinstance(stmt, For):
        return "for (...; " + join_tokens(stmt.cond) + "; " + join_tokens(stmt.step) + ") ..."
    if isinstance(stmt, RangeFor):
        return "for (" + stmt.name + " : " + join_tokens(stmt.iterable) + ") ..."
    if isinstance(stmt, TryCatch):
        return "try { ... }"
    if isinstance(stmt, Print):
        return "std::" + ("cout" if stmt.stream == "out" else "cerr") + " << ..."
    return type(stmt).__name__.lower()


def contains_return(stmts: list[Stmt]) -> bool:
    """True when a `return` appears anywhere in the statement tree."""
    for stmt in stmts:
        if isinstance(stmt, Return):
            return True
        nested: list[list[Stmt]] = []
        if isinstance(stmt, If):
            nested = [stmt.then_body, stmt.else_body or []]
        elif isinstance(stmt, (While, DoWhile, RangeFor, Block)):
            nested = [stmt.body]
        elif isinstance(stmt, For):
            nested = [stmt.init, stmt.body]
        elif isinstance(stmt, TryCatch):
            nested = [stmt.body] + [h.body for h in stmt.handlers]
        if any(contains_return(body) for body in nested):
            return True
    return False


_MUTATING_OPS: set[str] = ASSIGN_OPS | {"++", "--"}


def _is_prefix_position(tokens: list[Token], i: int) -> bool:
    """True when the operator at tokens[i] is unary (nothing it could multiply)."""
    if i == 0:
        return True
    before = tokens[i - 1]
    if before.type == TK_OP:
        return not (before.is_op(")") or before.is_op("]"))
    return before.type not in (TK_IDENT, TK_NUMBER, TK_STRING, TK_CHAR, "this")


def assigned_names(text: str) -> set[str]:
    """Bare names a body assigns to, increments, or takes a mutable address of."""
    tokens = body_tokens(text)
    names: set[str] = set()
    for i, tok in enumerate(tokens):
        if tok.type != TK_IDENT:
            continue
        prev = tokens[i - 1] if i > 0 else None
        if prev is not None and (prev.is_op(".") or prev.is_op("->") or prev.is_op("::")):
            continue
        if prev is not None and prev.is_op("*") and _is_prefix_position(tokens, i - 1):
            # `*p = v` writes through p, it does not rebind it
            continue
        nxt = tokens[i + 1] if i + 1 < len(tokens) else None
        if nxt is not None and nxt.type == TK_OP and nxt.value in _MUTATING_OPS:
            names.add(tok.value)
        elif prev is not None and (prev.is_op("++") or prev.is_op("--")):
            names.add(tok.value)
        elif nxt is not None and (nxt.is_op(".") or nxt.is_op("[")):
            names.add(tok.value)
    return names


def member_call_parts(tokens: list[Token]) -> tuple[list[Token], str, list[Token]] | None:
    """Split `recv.method(args)` (the whole run) into its three parts."""
    if len(tokens) < 4 or not tokens[-1].is_op(")"):
        return None
    depth = 0
    for i in range(len(tokens) - 1, -1, -1):
        tok = tokens[i]
        if tok.is_op(")"):
            depth += 1
        elif tok.is_op("("):
            depth -= 1
            if depth == 0:
                if i < 3 or tokens[i - 1].type != TK_IDENT:
                    return None
                if not (tokens[i - 2].is_op(".") or tokens[i - 2].is_op("->")):
                    return None
                return tokens[: i - 2], tokens[i - 1].value, tokens[i + 1 : -1]
    return None


def receiver_name(tokens: list[Token]) -> str:
    """`this->cv_` -> `cv_`, `cv` -> `cv`; "" for anything longer."""
    words = [t for t in tokens if not (t.type == "this" or t.is_op("->") or t.is_op("."))]
    if len(words) == 1 and words[0].type == TK_IDENT:
        return words[0].value
    return ""


def lambda_return_expr(tokens: list[Token]) -> list[Token] | None:
    """Expression of a `[..](..) { return expr; }` predicate lambda."""
    if not tokens or not tokens[0].is_op("["):
        return None
    for i, tok in enumerate(tokens):
        if tok.is_op("{"):
            close = find_matching(tokens, i)
            if close != len(tokens) - 1:
                return None
            body = BodyParser(tokens[i + 1 : close], None, set()).parse()
            if len(body) == 1 and isinstance(body[0], Return) and body[0].value:
                return body[0].value
            return None
    return None


def token_names(tokens: list[Token]) -> set[str]:
    return {t.value for t in tokens if t.type == TK_IDENT}


def first_call_name(tokens: list[Token]) -> str:
    """`std::async(...)` -> `std::async`; "" when the run does not start with a call."""
    parts: list[str] = []
    i = 0
    while i < len(tokens) and tokens[i].type == TK_IDENT:
        parts.append(tokens[i].value)
        if i + 1 < len(tokens) and tokens[i + 1].is_op("::"):
            i += 2
            continue
        i += 1
        break
    if parts and i < len(tokens) and tokens[i].is_op("("):
        return "::".join(parts)
    return ""


# ============================================================
# CALL RESOLUTION
# ============================================================


def arity_fits(func: Function, argc: int) -> bool:
    required = sum(1 for p in func.params if not p.has_default)
    return required <= argc <= len(func.params)


class CallTable:
    """Target names of every function, looked up by C++ name and argument count.

    Overloads share a C++ name; each gets its own target name and a call
    picks the first overload whose arity fits.
    """

    def __init__(
        self,
        ir: IR,
        free_name: Callable[[Function], str],
        method_name: Callable[[ClassDecl, Function], str],
        ctor_name: Callable[[ClassDecl], str],
    ) -> None:
        self.names: dict[int, str] = {}
        self.free: dict[str, list[Function]] = {}
        self.methods: dict[str, dict[str, list[Function]]] = {}
        self.ctors: dict[str, list[Function]] = {}
        self.names.update(unique_names(ir.functions, free_name))
        for func in ir.functions:
            self.free.setdefault(func.name, []).append(func)
        for cls in ir.classes:
            ctors = [m for m in cls.methods if m.is_constructor and not m.is_deleted]
            self.names.update(unique_names(ctors, lambda _f, c=cls: ctor_name(c)))
            self.ctors[cls.name] = ctors
            methods = [m for m in cls.methods if not m.is_constructor and not m.is_destructor]
            self.names.update(unique_names(methods, lambda m, c=cls: method_name(c, m)))
            table = self.methods.setdefault(cls.name, {})
            for m in methods:
                table.setdefault(m.name, []).append(m)

    def name_of(self, func: Function) -> str:
        return self.names.get(id(func), func.name)

    def _pick(self, cands: list[Function], argc: int) -> Function | None:
        for func in cands:
            if arity_fits(func, argc):
                return func
        return cands[0] if cands else None

    def free_target(self, name: str, argc: int) -> Function | None:
        return self._pick(self.free.get(name, []), argc)

    def method_target(self, cls_name: str, name: str, argc: int) -> Function | None:
        return self._pick(self.methods.get(cls_name, {}).get(name, []), argc)

    def ctor_target(self, cls_name: str, argc: int) -> Function | None:
        return self._pick(self.ctors.get(cls_name, []), argc)

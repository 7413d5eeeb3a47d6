"""Structural parser: recover class and function declarations from C++ text.

Best-effort. Declarations whose shape is not recognized are
skipped and recorded as `parse` warnings on the IR; nothing here raises
on malformed input. Bodies and initializers are kept as opaque text for
the analyzers and generators.
"""

from __future__ import annotations

import logging

from cxxport.errors import TokenizeError
from cxxport.frontend.lexer import (
    TK_EOF,
    TK_IDENT,
    TK_STRING,
    Comment,
    Token,
    find_matching,
    join_tokens,
    split_tokens,
    strip_comments,
    tokenize,
)
from cxxport.frontend.types import BUILTIN_WORDS, resolve_tokens
from cxxport.ir import (
    IR,
    AccessLevel,
    AccessSection,
    ClassDecl,
    EnumDecl,
    Function,
    Parameter,
    Type,
    Variable,
)

logger = logging.getLogger(__name__)

# Leading specifiers on a member or free declaration.
DECL_SPECIFIERS: set[str] = {
    "virtual",
    "static",
    "inline",
    "explicit",
    "constexpr",
    "consteval",
    "friend",
    "extern",
    "mutable",
    "thread_local",
}

ACCESS_WORDS: set[str] = {"public", "protected", "private"}


def parse(source: str) -> IR:
    """Parse one translation unit into a fresh IR."""
    ir = IR()
    try:
        stripped, comments = strip_comments(source)
        tokens = tokenize(stripped)
    except TokenizeError as e:
        ir.error("parse", e.msg, e.line)
        logger.debug("tokenize failed: %s", e)
        return ir
    Parser(tokens, stripped, comments, ir).parse_unit()
    return ir


class Parser:
    """Token-walking parser over one stripped translation unit."""

    def __init__(self, tokens: list[Token], text: str, comments: list[Comment], ir: IR):
        self.tokens: list[Token] = tokens
        self.text: str = text
        self.ir: IR = ir
        self.pos: int = 0
        # Standalone comments, keyed by the line they end on.
        self.doc_comments: dict[int, Comment] = {}
        lines = text.split("\n")
        for c in comments:
            if c.line - 1 < len(lines) and lines[c.line - 1].strip() == "":
                self.doc_comments[c.end_line] = c

    # -- token access ------------------------------------------------------

    def _peek(self, offset: int = 0) -> Token:
        i = self.pos + offset
        if i < len(self.tokens):
            return self.tokens[i]
        return self.tokens[-1]

    def _at(self, i: int) -> Token:
        if 0 <= i < len(self.tokens):
            return self.tokens[i]
        return self.tokens[-1]

    def _doc_for(self, line: int) -> str:
        parts: list[str] = []
        end = line - 1
        while end in self.doc_comments:
            c = self.doc_comments[end]
            parts.append(c.text)
            end = c.line - 1
        parts.reverse()
        return "\n".join(p for p in parts if p)

    def _skip(self, reason: str) -> None:
        """Skip the declaration at pos: through `;`, or through a `{...}` block."""
        start = self._peek()
        i = self.pos
        while self._at(i).type != TK_EOF:
            tok = self._at(i)
            if tok.is_op(";"):
                i += 1
                break
            if tok.is_op("(") or tok.is_op("["):
                close = find_matching(self.tokens, i)
                if close < 0:
                    i = len(self.tokens) - 1
                    break
                i = close + 1
                continue
            if tok.is_op("{"):
                close = find_matching(self.tokens, i)
                if close < 0:
                    i = len(self.tokens) - 1
                    break
                i = close + 1
                if self._at(i).is_op(";"):
                    i += 1
                break
            if tok.is_op("}"):
                break
            i += 1
        snippet = join_tokens(self.tokens[self.pos : min(i, self.pos + 12)])
        if reason:
            self.ir.warn("parse", reason + ": " + snippet, start.line)
            logger.debug("line %d: %s: %s", start.line, reason, snippet)
        self.pos = max(i, self.pos + 1)

    # -- scopes ------------------------------------------------------------

    def parse_unit(self) -> None:
        self._parse_scope(len(self.tokens) - 1)

    def _parse_scope(self, end: int) -> None:
        """Namespace-level declarations up to token index `end` (exclusive)."""
        while self.pos < end and self._peek().type != TK_EOF:
            tok = self._peek()
            if tok.is_op(";"):
                self.pos += 1
                continue
            if tok.type == "namespace":
                self._parse_namespace()
                continue
            if tok.type == "extern" and self._peek(1).type == TK_STRING:
                if self._peek(2).is_op("{"):
                    close = find_matching(self.tokens, self.pos + 2)
                    if close < 0:
                        self._skip("unbalanced extern block")
                        continue
                    self.pos += 3
                    self._parse_scope(close)
                    self.pos = close + 1
                else:
                    self.pos += 2
                continue
            if tok.is_op("}"):
                # Stray closer from a skipped region.
                self.pos += 1
                continue
            self._parse_declaration(None, "public", "", set())

    def _parse_namespace(self) -> None:
        self.pos += 1
        while self._peek().is_word() or self._peek().is_op("::"):
            self.pos += 1
        if self._peek().is_op("="):
            self._skip("")
            return
        if not self._peek().is_op("{"):
            self._skip("malformed namespace")
            return
        close = find_matching(self.tokens, self.pos)
        if close < 0:
            self._skip("unbalanced namespace")
            return
        self.pos += 1
        self._parse_scope(close)
        self.pos = close + 1

    # -- declarations ------------------------------------------------------

    def _parse_declaration(
        self,
        cls: ClassDecl | None,
        access: AccessLevel,
        template_decl: str,
        template_names: set[str],
    ) -> None:
        """Parse one declaration at pos and attach it to cls or the IR."""
        tok = self._peek()
        if tok.type == "template":
            self._parse_template_prefix(cls, access, template_names)
            return
        if tok.type in ("using", "typedef"):
            self._parse_alias(template_names)
            return
        if tok.type == TK_IDENT and tok.value == "static_assert":
            self._skip("")
            return
        if tok.type == "friend":
            self._skip("")
            return
        if tok.type == "enum":
            self._parse_enum()
            return
        if tok.type in ("class", "struct", "union"):
            if self._is_class_definition():
                self._parse_class(template_decl, template_names)
                return
        if tok.type == "concept":
            self._parse_concept()
            return
        self._parse_member_or_free(cls, access, template_decl, template_names)

    def _parse_template_prefix(
        self, cls: ClassDecl | None, access: AccessLevel, outer_names: set[str]
    ) -> None:
        start = self.pos
        if not self._peek(1).is_op("<"):
            # Explicit instantiation: template class Box<int>;
            self._skip("explicit instantiation ignored")
            return
        close = find_matching(self.tokens, self.pos + 1)
        if close < 0:
            self._skip("unbalanced template parameter list")
            return
        names = set(outer_names) | _template_param_names(self.tokens[start + 2 : close])
        self.pos = close + 1
        if self._peek().type == "requires":
            self._consume_requires()
        decl = join_tokens(self.tokens[start : self.pos])
        if self._peek().type == "concept":
            self._parse_concept()
            return
        self._parse_declaration(cls, access, decl, names)

    def _consume_requires(self) -> None:
        """Advance past `requires A<T> && (B<T> || C<T>)`."""
        self.pos += 1
        while True:
            tok = self._peek()
            if tok.is_op("("):
                close = find_matching(self.tokens, self.pos)
                self.pos = close + 1 if close > 0 else self.pos + 1
            else:
                if tok.is_op("::"):
                    self.pos += 1
                while self._peek().is_word() or self._peek().is_op("::"):
                    self.pos += 1
                if self._peek().is_op("<"):
                    close = find_matching(self.tokens, self.pos)
                    self.pos = close + 1 if close > 0 else self.pos + 1
            if self._peek().is_op("&&") or self._peek().is_op("||"):
                self.pos += 1
                continue
            break

    def _parse_concept(self) -> None:
        name = self._peek(1)
        if name.type == TK_IDENT and name.value not in self.ir.concepts:
            self.ir.concepts.append(name.value)
        self._skip("")

    def _parse_alias(self, template_names: set[str]) -> None:
        tok = self._peek()
        start = self.pos
        self._skip("")
        body = self.tokens[start + 1 : self.pos - 1]
        if tok.type == "using":
            # using Name = type;   (using namespace / using Base::f are ignored)
            if len(body) >= 3 and body[0].type == TK_IDENT and body[1].is_op("="):
                typ = resolve_tokens(body[2:], self.ir, template_names)
                self.ir.register_type(body[0].value, typ)
            return
        if body and body[-1].type == TK_IDENT and len(body) >= 2:
            typ = resolve_tokens(body[:-1], self.ir, template_names)
            self.ir.register_type(body[-1].value, typ)

    def _parse_enum(self) -> None:
        line = self._peek().line
        doc_start = self.pos
        self.pos += 1
        scoped = False
        if self._peek().type in ("class", "struct"):
            scoped = True
            self.pos += 1
        name_tok = self._peek()
        if name_tok.type != TK_IDENT:
            self._skip("anonymous enum skipped")
            return
        self.pos += 1
        underlying: Type | None = None
        if self._peek().is_op(":"):
            j = self.pos + 1
            while not (self._at(j).is_op("{") or self._at(j).is_op(";") or self._at(j).type == TK_EOF):
                j += 1
            underlying = resolve_tokens(self.tokens[self.pos + 1 : j], self.ir, set())
            self.pos = j
        if self._peek().is_op(";"):
            self.ir.register_type(name_tok.value, Type("enum", name_tok.value))
            self.pos += 1
            return
        if not self._peek().is_op("{"):
            self.pos = doc_start
            self._skip("malformed enum")
            return
        close = find_matching(self.tokens, self.pos)
        if close < 0:
            self._skip("unbalanced enum body")
            return
        values: list[tuple[str, str]] = []
        for part in split_tokens(self.tokens[self.pos + 1 : close]):
            if not part or part[0].type != TK_IDENT:
                continue
            init = ""
            if len(part) > 2 and part[1].is_op("="):
                init = join_tokens(part[2:])
            values.append((part[0].value, init))
        self.ir.add_enum(EnumDecl(name_tok.value, values, scoped, underlying, line))
        self.pos = close + 1
        if self._peek().is_op(";"):
            self.pos += 1

    # -- classes -----------------------------------------------------------

    def _is_class_definition(self) -> bool:
        """True for `class X {`, `class X : B {`, `struct X final {`, `class X;`."""
        i = self.pos + 1
        while self._at(i).is_op("[") and self._at(i + 1).is_op("["):
            close = find_matching(self.tokens, i)
            i = close + 1 if close > 0 else i + 1
        if self._at(i).type == TK_IDENT and self._at(i).value == "alignas":
            close = find_matching(self.tokens, i + 1)
            i = close + 1 if close > 0 else i + 1
        if self._at(i).is_op("{"):
            return True
        if self._at(i).type != TK_IDENT:
            return False
        i += 1
        while self._at(i).is_op("::") and self._at(i + 1).type == TK_IDENT:
            i += 2
        if self._at(i).is_op("<"):
            close = find_matching(self.tokens, i)
            if close < 0:
                return False
            i = close + 1
        if self._at(i).type == "final":
            i += 1
        nxt = self._at(i)
        return nxt.is_op("{") or nxt.is_op(":") or nxt.is_op(";")

    def _parse_class(self, template_decl: str, template_names: set[str]) -> None:
        kw = self._peek()
        line = kw.line
        doc = self._doc_for(line)
        if template_decl:
            doc = self._doc_for(_first_line(self.tokens, self.pos, template_decl)) or doc
        self.pos += 1
        while self._peek().is_op("[") and self._peek(1).is_op("["):
            close = find_matching(self.tokens, self.pos)
            self.pos = close + 1
        if self._peek().type == TK_IDENT and self._peek().value == "alignas":
            close = find_matching(self.tokens, self.pos + 1)
            self.pos = close + 1
        if self._peek().is_op("{"):
            self._skip("anonymous " + kw.value + " skipped")
            return
        parts = [self._peek().value]
        self.pos += 1
        while self._peek().is_op("::") and self._peek(1).type == TK_IDENT:
            parts.append(self._peek(1).value)
            self.pos += 2
        name = parts[-1]
        specialized: list[str] = []
        if self._peek().is_op("<"):
            close = find_matching(self.tokens, self.pos)
            specialized = [join_tokens(a) for a in split_tokens(self.tokens[self.pos + 1 : close])]
            self.pos = close + 1
        if self._peek().type == "final":
            self.pos += 1
        if self._peek().is_op(";"):
            # Forward declaration
            kind = "struct" if kw.type == "struct" else "class"
            self.ir.register_type(name, Type(kind, name))
            self.pos += 1
            return
        bases: list[str] = []
        if self._peek().is_op(":"):
            j = self.pos + 1
            while not (self._at(j).is_op("{") or self._at(j).type == TK_EOF):
                if self._at(j).is_op("<"):
                    close = find_matching(self.tokens, j)
                    j = close + 1 if close > 0 else j + 1
                    continue
                j += 1
            for part in split_tokens(self.tokens[self.pos + 1 : j]):
                words = [t for t in part if t.value not in ACCESS_WORDS and t.value != "virtual"]
                if words:
                    bases.append(join_tokens(words))
            self.pos = j
        if not self._peek().is_op("{"):
            self._skip("malformed class head")
            return
        body_close = find_matching(self.tokens, self.pos)
        if body_close < 0:
            self._skip("unbalanced class body")
            return

        cls = ClassDecl(name, is_struct=kw.type in ("struct", "union"), base_classes=bases, doc=doc, line=line)
        cls.templates.declaration = template_decl
        cls.templates.specialization.specialized_args = specialized
        if self.ir.find_class(name) is not None and not specialized:
            self.ir.warn("parse", "duplicate definition of " + name, line)
        self.ir.add_class(cls)
        logger.debug("class %s at line %d", name, line)

        self.pos += 1
        self._parse_class_body(cls, body_close, template_names)
        self.pos = body_close + 1
        # Trailing declarators: `} instance;`
        if not self._peek().is_op(";"):
            while not (self._peek().is_op(";") or self._peek().type == TK_EOF):
                self.pos += 1
        if self._peek().is_op(";"):
            self.pos += 1

    def _parse_class_body(self, cls: ClassDecl, end: int, template_names: set[str]) -> None:
        access: AccessLevel = "public" if cls.is_struct else "private"
        section: AccessSection | None = None
        while self.pos < end:
            tok = self._peek()
            if tok.type in ACCESS_WORDS and self._peek(1).is_op(":"):
                access = tok.type  # type: ignore[assignment]
                section = AccessSection(access)
                cls.access_sections.append(section)
                self.pos += 2
                continue
            if tok.is_op(";"):
                self.pos += 1
                continue
            if section is None:
                section = AccessSection(access)
                cls.access_sections.append(section)
            n_fields = len(cls.fields)
            n_methods = len(cls.methods)
            self._parse_declaration(cls, access, "", template_names)
            for f in cls.fields[n_fields:]:
                section.members.append(f.name)
            for m in cls.methods[n_methods:]:
                section.members.append(m.name)
            if self.pos > end:
                self.pos = end

    # -- functions and variables -------------------------------------------

    def _parse_member_or_free(
        self,
        cls: ClassDecl | None,
        access: AccessLevel,
        template_decl: str,
        template_names: set[str],
    ) -> None:
        start = self.pos
        names = set(template_names)
        if cls is not None:
            names |= _template_param_names_from_decl(cls.templates.declaration)
        # Find the first `(`, `;`, `{` or `=` at depth 0.
        i = self.pos
        paren = -1
        while True:
            tok = self._at(i)
            if tok.type == TK_EOF:
                self._skip("unterminated declaration")
                return
            if tok.is_op("[") and self._at(i + 1).is_op("["):
                close = find_matching(self.tokens, i)
                i = close + 1 if close > 0 else i + 1
                continue
            if tok.is_op("<") and i > start and (self._at(i - 1).is_word() or self._at(i - 1).is_op(">")):
                close = find_matching(self.tokens, i)
                if close > 0:
                    i = close + 1
                    continue
            if tok.type == "operator":
                paren = self._operator_paren(i)
                break
            if tok.is_op("("):
                paren = i
                break
            if tok.is_op(";") or tok.is_op("{") or tok.is_op("=") or tok.is_op("}"):
                break
            i += 1
        if paren < 0:
            self._parse_variables(cls, access, names)
            return
        if paren == start or not (
            self._at(paren - 1).is_word()
            or _is_operator_name(self.tokens, paren)
            or _specialization_open(self.tokens, paren) > start
        ):
            self._skip("unrecognized declaration")
            return
        # Function pointer declarators `void (*cb)(int);` look like calls; skip them.
        if self._at(paren + 1).is_op("*") and self._at(paren - 1).type != "operator":
            self._skip("function pointer declaration skipped")
            return
        self._parse_function(cls, access, template_decl, names, paren)

    def _operator_paren(self, i: int) -> int:
        """Index of the parameter-list `(` after `operator` at i."""
        j = i + 1
        if self._at(j).is_op("(") and self._at(j + 1).is_op(")"):
            return j + 2
        while self._at(j).type != TK_EOF and not self._at(j).is_op("("):
            if self._at(j).is_op(";") or self._at(j).is_op("{"):
                return -1
            j += 1
        return j

    def _parse_function(
        self,
        cls: ClassDecl | None,
        access: AccessLevel,
        template_decl: str,
        template_names: set[str],
        paren: int,
    ) -> None:
        start = self.pos
        first = self._peek()
        line = first.line
        doc = self._doc_for(line)
        if template_decl:
            doc = self._doc_for(_first_line(self.tokens, start, template_decl)) or doc

        # Name, possibly qualified: Class::name, Box<T>::get, ~Class, operator==
        specialized: list[str] = []
        spec_open = _specialization_open(self.tokens, paren)
        name_paren = paren
        if spec_open > 0:
            specialized = [join_tokens(a) for a in split_tokens(self.tokens[spec_open + 1 : paren - 1])]
            name_paren = spec_open
        op_idx = -1
        for k in range(start, paren):
            if self.tokens[k].type == "operator":
                op_idx = k
                break
        if op_idx >= 0:
            syms = self.tokens[op_idx + 1 : paren]
            if syms and syms[0].is_word():
                # Conversion operator: operator bool
                name = "operator " + join_tokens(syms)
            else:
                name = "operator" + "".join(t.value for t in syms)
            name_start = op_idx
        else:
            name = self.tokens[name_paren - 1].value
            name_start = name_paren - 1
        is_destructor = False
        if name_start > start and self.tokens[name_start - 1].is_op("~"):
            is_destructor = True
            name = "~" + name
            name_start -= 1
        qualifier = ""
        k = name_start
        while k - 1 > start and self.tokens[k - 1].is_op("::"):
            k -= 1
            prev = k - 1
            if self.tokens[prev].is_op(">") or self.tokens[prev].is_op(">>"):
                depth = 0
                while prev > start:
                    v = self.tokens[prev].value
                    if v == ">":
                        depth += 1
                    elif v == ">>":
                        depth += 2
                    elif v == "<":
                        depth -= 1
                        if depth <= 0:
                            break
                    prev -= 1
                prev -= 1
            if prev < start or not self.tokens[prev].is_word():
                break
            if not qualifier:
                qualifier = self.tokens[prev].value
            k = prev
        if self.tokens[k].is_op("::") and k == start:
            k += 1
        name_start = k

        # Leading specifiers and the return type.
        flags: set[str] = set()
        ret_tokens: list[Token] = []
        j = start
        while j < name_start:
            t = self.tokens[j]
            if t.is_op("[") and self._at(j + 1).is_op("["):
                close = find_matching(self.tokens, j)
                j = close + 1 if close > 0 else j + 1
                continue
            if t.value in DECL_SPECIFIERS:
                flags.add(t.value)
            else:
                ret_tokens.append(t)
            j += 1

        close = find_matching(self.tokens, paren)
        if close < 0:
            self._skip("unbalanced parameter list")
            return
        params = self._parse_params(self.tokens[paren + 1 : close], template_names)

        func = Function(name, params=params, access=access, doc=doc, line=line)
        func.templates.declaration = template_decl
        func.templates.specialization.specialized_args = specialized
        func.is_static = "static" in flags
        func.is_virtual = "virtual" in flags

        # Qualifiers after the parameter list.
        i = close + 1
        trailing: list[Token] = []
        while True:
            t = self._at(i)
            if t.type == "const":
                func.is_const = True
                i += 1
            elif t.type in ("volatile",) or t.is_op("&") or t.is_op("&&"):
                i += 1
            elif t.type == "noexcept" or t.type == "throw":
                i += 1
                if self._at(i).is_op("("):
                    c = find_matching(self.tokens, i)
                    i = c + 1 if c > 0 else i + 1
            elif t.type == "override":
                func.is_override = True
                func.is_virtual = True
                i += 1
            elif t.type == "final":
                func.is_virtual = True
                i += 1
            elif t.is_op("->"):
                i += 1
                trailing_start = i
                while not (
                    self._at(i).is_op("{")
                    or self._at(i).is_op(";")
                    or self._at(i).is_op("=")
                    or self._at(i).type in ("override", "final", "requires", TK_EOF)
                ):
                    if self._at(i).is_op("<"):
                        c = find_matching(self.tokens, i)
                        if c > 0:
                            i = c + 1
                            continue
                    i += 1
                trailing = self.tokens[trailing_start:i]
            elif t.type == "requires":
                saved = self.pos
                self.pos = i
                self._consume_requires()
                i = self.pos
                self.pos = saved
            elif t.is_op("[") and self._at(i + 1).is_op("["):
                c = find_matching(self.tokens, i)
                i = c + 1 if c > 0 else i + 1
            else:
                break
        signature = join_tokens(self.tokens[start:i])

        init_list: list[tuple[str, str]] = []
        t = self._at(i)
        if t.is_op("=") and self._at(i + 1).type in ("default", "delete"):
            if self._at(i + 1).type == "default":
                func.is_defaulted = True
            else:
                func.is_deleted = True
            i += 2
            t = self._at(i)
        elif t.is_op("=") and self._at(i + 1).value == "0":
            func.is_pure_virtual = True
            func.is_virtual = True
            i += 2
            t = self._at(i)
        if t.is_op(":"):
            i, init_list = self._parse_init_list(i + 1)
            t = self._at(i)
        if t.is_op("{"):
            body_close = find_matching(self.tokens, i)
            if body_close < 0:
                self._skip("unbalanced function body")
                return
            func.body = self.text[t.end : self.tokens[body_close].pos].strip("\n").rstrip()
            func.body = _dedent(func.body)
            func.has_body = True
            self.pos = body_close + 1
            if self._peek().is_op(";"):
                self.pos += 1
        elif t.is_op(";"):
            self.pos = i + 1
        else:
            self.pos = start
            self._skip("unrecognized function declaration")
            return
        func.signature = signature
        func.initializers = init_list

        owner = cls
        if qualifier and cls is None:
            owner = self.ir.find_class(qualifier)
            if owner is None:
                self.ir.warn("parse", "definition of " + qualifier + "::" + name + " for unknown class", line)
                logger.debug("line %d: out-of-line %s::%s has no class", line, qualifier, name)
                return
        class_name = owner.name if owner is not None else ""
        if owner is not None and (name == class_name or name == "~" + class_name):
            func.is_constructor = not is_destructor
            func.is_destructor = is_destructor
        elif is_destructor:
            func.is_destructor = True
        else:
            if trailing:
                func.return_type = resolve_tokens(trailing, self.ir, template_names)
            elif ret_tokens:
                func.return_type = resolve_tokens(ret_tokens, self.ir, template_names)
            elif name.startswith("operator"):
                conv = name[len("operator") :].strip()
                func.return_type = resolve_tokens(tokenize(conv)[:-1], self.ir, template_names)
            else:
                self.ir.warn("parse", "function " + name + " has no return type", line)
                logger.debug("line %d: %s skipped, no return type", line, name)
                return

        if owner is None:
            self.ir.add_function(func)
            return
        if cls is None:
            self._attach_definition(owner, func)
            return
        owner.methods.append(func)

    def _attach_definition(self, cls: ClassDecl, func: Function) -> None:
        """Fill an in-class declaration with an out-of-line definition."""
        for m in cls.methods:
            if m.name == func.name and len(m.params) == len(func.params) and not m.has_body:
                m.body = func.body
                m.has_body = True
                if func.initializers:
                    m.initializers = func.initializers
                if func.templates.declaration and not m.templates.declaration:
                    m.templates.declaration = func.templates.declaration
                # Parameter names may only appear in the definition.
                for decl_p, def_p in zip(m.params, func.params):
                    if not decl_p.name:
                        decl_p.name = def_p.name
                if not m.doc:
                    m.doc = func.doc
                return
        func.access = "public"
        cls.methods.append(func)

    def _parse_init_list(self, i: int) -> tuple[int, list[tuple[str, str]]]:
        """Constructor initializer list starting at i. Returns (index of `{`, entries)."""
        entries: list[tuple[str, str]] = []
        while self._at(i).type != TK_EOF:
            name_tokens: list[Token] = []
            while self._at(i).is_word() or self._at(i).is_op("::"):
                name_tokens.append(self._at(i))
                i += 1
            if self._at(i).is_op("<"):
                c = find_matching(self.tokens, i)
                i = c + 1 if c > 0 else i + 1
            opener = self._at(i)
            if not (opener.is_op("(") or opener.is_op("{")) or not name_tokens:
                break
            c = find_matching(self.tokens, i)
            if c < 0:
                break
            inner = self.text[opener.end : self.tokens[c].pos].strip()
            entries.append((join_tokens(name_tokens), inner))
            i = c + 1
            if self._at(i).is_op("..."):
                i += 1
            if self._at(i).is_op(","):
                i += 1
                continue
            break
        return i, entries

    def _parse_params(self, tokens: list[Token], template_names: set[str]) -> list[Parameter]:
        return parse_params(tokens, self.ir, template_names)

    def _parse_variables(self, cls: ClassDecl | None, access: AccessLevel, template_names: set[str]) -> None:
        """`type a = 1, *b, c[4];` at namespace or class scope."""
        start = self.pos
        line = self._peek().line
        i = self.pos
        while True:
            t = self._at(i)
            if t.type == TK_EOF or t.is_op("}"):
                self._skip("unterminated declaration")
                return
            if t.is_op(";"):
                break
            if t.is_op("(") or t.is_op("[") or t.is_op("{"):
                c = find_matching(self.tokens, i)
                if c < 0:
                    self._skip("unbalanced declaration")
                    return
                i = c + 1
                continue
            if t.is_op("<") and i > start and self._at(i - 1).is_word():
                c = find_matching(self.tokens, i)
                if c > 0:
                    i = c + 1
                    continue
            i += 1
        decl = self.tokens[start:i]
        self.pos = i + 1
        specifiers = {t.value for t in decl if t.value in DECL_SPECIFIERS}
        decl = [t for t in decl if t.value not in DECL_SPECIFIERS]
        groups = split_tokens(decl)
        if not groups:
            return
        first_name, first_type, first_size = _split_declarator(_strip_initializer(groups[0])[0])
        if not first_name or not first_type:
            self.pos = start
            self._skip("unrecognized declaration")
            return
        base_type = list(first_type)
        while base_type and (base_type[-1].is_op("*") or base_type[-1].is_op("&")):
            base_type.pop()
        for n, group in enumerate(groups):
            head, init = _strip_initializer(group)
            if n == 0:
                name, type_tokens, size = first_name, first_type, first_size
            else:
                name, own_type, size = _split_declarator(head)
                if not name and len(own_type) == 1 and own_type[0].type == TK_IDENT:
                    # Bare declarator after the first: `int a, c[4];`
                    name, own_type = own_type[0].value, []
                type_tokens = base_type + own_type
            if not name:
                continue
            typ = resolve_tokens(type_tokens, self.ir, template_names)
            if size is not None:
                typ = Type("array", join_tokens(head), element=typ, size=size)
            is_const = typ.is_const or "constexpr" in specifiers
            var = Variable(
                name,
                typ,
                is_mutable=not is_const or "mutable" in specifiers,
                is_static="static" in specifiers,
                is_const=is_const,
                initializer=init,
                access=access,
                line=line,
            )
            if cls is None:
                self.ir.add_global(var)
            else:
                cls.fields.append(var)


# ============================================================
# DECLARATOR HELPERS
# ============================================================


def parse_params(tokens: list[Token], ir: IR | None, template_names: set[str]) -> list[Parameter]:
    """Parameters of a declaration or lambda, split at top-level commas."""
    params: list[Parameter] = []
    if len(tokens) == 1 and tokens[0].value == "void":
        return params
    for part in split_tokens(tokens):
        if not part:
            continue
        if len(part) == 1 and part[0].is_op("..."):
            logger.debug("C variadic parameter ignored")
            continue
        default: str | None = None
        for idx, t in enumerate(part):
            if t.is_op("=") and _depth_zero(part, idx):
                default = join_tokens(part[idx + 1 :])
                part = part[:idx]
                break
        name, type_tokens, size = _split_declarator(part)
        if type_tokens and type_tokens[-1].is_op(")") and _is_function_pointer(type_tokens):
            typ = _function_pointer_type(type_tokens, ir, template_names)
            name = _function_pointer_name(type_tokens)
        else:
            typ = resolve_tokens(type_tokens, ir, template_names)
            if size is not None:
                typ = Type("array", join_tokens(part), element=typ, size=size)
        params.append(Parameter(name, typ, default))
    return params


def _depth_zero(tokens: list[Token], idx: int) -> bool:
    depth = 0
    for t in tokens[:idx]:
        if t.type != "OP":
            continue
        if t.value in ("(", "[", "{", "<"):
            depth += 1
        elif t.value in (")", "]", "}", ">"):
            depth -= 1
        elif t.value == ">>":
            depth -= 2
    return depth <= 0


def _strip_initializer(group: list[Token]) -> tuple[list[Token], str | None]:
    """Split `name = expr` / `name{expr}` / `name(expr)` into (declarator, init)."""
    for idx, t in enumerate(group):
        if t.is_op("=") and _depth_zero(group, idx):
            return group[:idx], join_tokens(group[idx + 1 :])
    if group and group[-1].is_op("}"):
        for idx, t in enumerate(group):
            if t.is_op("{") and _depth_zero(group, idx):
                return group[:idx], join_tokens(group[idx + 1 : -1])
    if group and group[-1].is_op(")") and len(group) >= 3:
        # Direct initialization `Foo f(1, 2)`; the name precedes the `(`.
        for idx, t in enumerate(group):
            if t.is_op("(") and idx > 0 and group[idx - 1].type == TK_IDENT and _depth_zero(group, idx):
                if idx >= 2 and not group[idx - 2].is_op("::"):
                    return group[:idx], join_tokens(group[idx + 1 : -1])
    return group, None


def _split_declarator(tokens: list[Token]) -> tuple[str, list[Token], str | None]:
    """Split `type name[N]` into (name, type tokens, array size or None)."""
    size: str | None = None
    end = len(tokens)
    if end and tokens[-1].is_op("]"):
        depth = 0
        k = end - 1
        while k >= 0:
            if tokens[k].is_op("]"):
                depth += 1
            elif tokens[k].is_op("["):
                depth -= 1
                if depth == 0:
                    break
            k -= 1
        if k > 0:
            size = join_tokens(tokens[k + 1 : end - 1])
            end = k
    if end == 0:
        return "", [], size
    last = tokens[end - 1]
    if last.type != TK_IDENT or end == 1:
        return "", tokens[:end], size
    if all(t.type == TK_IDENT and t.value in BUILTIN_WORDS for t in tokens[:end]):
        return "", tokens[:end], size
    prev = tokens[end - 2]
    if prev.is_op("::"):
        return "", tokens[:end], size
    return last.value, tokens[: end - 1], size


def _is_function_pointer(tokens: list[Token]) -> bool:
    for i in range(len(tokens) - 1):
        if tokens[i].is_op("(") and tokens[i + 1].is_op("*"):
            return True
    return False


def _function_pointer_name(tokens: list[Token]) -> str:
    for i in range(len(tokens) - 2):
        if tokens[i].is_op("(") and tokens[i + 1].is_op("*") and tokens[i + 2].type == TK_IDENT:
            return tokens[i + 2].value
    return ""


def _function_pointer_type(tokens: list[Token], ir: IR | None, template_names: set[str]) -> Type:
    """`R (*name)(A, B)` -> function type (R, A, B)."""
    open_idx = 0
    while open_idx < len(tokens) and not tokens[open_idx].is_op("("):
        open_idx += 1
    ret = resolve_tokens(tokens[:open_idx], ir, template_names)
    close = find_matching(tokens, open_idx)
    params_open = close + 1
    params_close = find_matching(tokens, params_open) if params_open < len(tokens) else -1
    params: list[Type] = []
    if params_close > 0:
        for part in split_tokens(tokens[params_open + 1 : params_close]):
            if len(part) == 1 and part[0].value == "void":
                continue
            _, type_tokens, _ = _split_declarator(part)
            params.append(resolve_tokens(type_tokens or part, ir, template_names))
    return Type("function", join_tokens(tokens), args=(ret, *params))


def _template_param_names(tokens: list[Token]) -> set[str]:
    """Names declared by a template parameter list (tokens inside <...>)."""
    names: set[str] = set()
    for part in split_tokens(tokens):
        for idx, t in enumerate(part):
            if t.is_op("="):
                part = part[:idx]
                break
        for t in reversed(part):
            if t.type == TK_IDENT:
                names.add(t.value)
                break
    return names


def _template_param_names_from_decl(decl: str) -> set[str]:
    if not decl:
        return set()
    tokens = tokenize(decl)
    if len(tokens) < 3 or not tokens[1].is_op("<"):
        return set()
    close = find_matching(tokens, 1)
    if close < 0:
        return set()
    return _template_param_names(tokens[2:close])


def _specialization_open(tokens: list[Token], paren: int) -> int:
    """For `name<Args>(`, the index of the `<`; otherwise -1."""
    k = paren - 1
    if k < 1 or not (tokens[k].is_op(">") or tokens[k].is_op(">>")):
        return -1
    depth = 0
    while k > 0:
        v = tokens[k].value
        if tokens[k].type == "OP":
            if v == ">":
                depth += 1
            elif v == ">>":
                depth += 2
            elif v == "<":
                depth -= 1
                if depth == 0:
                    break
            elif v in (";", "{", "}"):
                return -1
        k -= 1
    if depth != 0 or k < 1 or tokens[k - 1].type != TK_IDENT:
        return -1
    return k


def _is_operator_name(tokens: list[Token], paren: int) -> bool:
    k = paren - 1
    while k >= 0 and tokens[k].type == "OP":
        k -= 1
    return k >= 0 and tokens[k].type == "operator"


def _first_line(tokens: list[Token], pos: int, template_decl: str) -> int:
    """Line of the `template` keyword that introduced the declaration at pos."""
    k = pos
    while k > 0 and tokens[k].type != "template":
        k -= 1
    return tokens[k].line


def _dedent(body: str) -> str:
    lines = body.split("\n")
    indents = [len(ln) - len(ln.lstrip()) for ln in lines if ln.strip()]
    if not indents:
        return ""
    cut = min(indents)
    return "\n".join(ln[cut:] if ln.strip() else "" for ln in lines).strip("\n")

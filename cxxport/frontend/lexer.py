"""C++ lexer - comment stripping, tokenizing, depth-aware splitting."""

from __future__ import annotations

from cxxport.errors import TokenizeError


# Token type constants
TK_NUMBER = "NUMBER"
TK_STRING = "STRING"
TK_CHAR = "CHAR"
TK_IDENT = "IDENT"
TK_OP = "OP"
TK_EOF = "EOF"

# Words the structural parser dispatches on. Type words such as `int` stay IDENT.
KEYWORDS: set[str] = {
    "break",
    "case",
    "catch",
    "class",
    "co_await",
    "co_return",
    "co_yield",
    "concept",
    "const",
    "constexpr",
    "continue",
    "default",
    "delete",
    "do",
    "else",
    "enum",
    "explicit",
    "extern",
    "false",
    "final",
    "for",
    "friend",
    "if",
    "inline",
    "mutable",
    "namespace",
    "new",
    "noexcept",
    "nullptr",
    "operator",
    "override",
    "private",
    "protected",
    "public",
    "requires",
    "return",
    "static",
    "struct",
    "switch",
    "template",
    "this",
    "throw",
    "true",
    "try",
    "typedef",
    "typename",
    "union",
    "using",
    "virtual",
    "volatile",
    "while",
}

# Multi-character operators, sorted by length descending for greedy matching
MULTI_OPS: list[str] = [
    "<<=",
    ">>=",
    "<=>",
    "...",
    "->*",
    "::",
    "->",
    "&&",
    "||",
    "<=",
    ">=",
    "==",
    "!=",
    "<<",
    ">>",
    "++",
    "--",
    "+=",
    "-=",
    "*=",
    "/=",
    "%=",
    "&=",
    "|=",
    "^=",
]

SINGLE_OPS: set[str] = set("+-*/%&|^~!<>=()[]{},:;.?#")

OPENERS: dict[str, str] = {"(": ")", "[": "]", "{": "}", "<": ">"}


class Token:
    """A token with type, raw spelling and position.

    `pos` is the offset of the first character in the stripped source and
    `end` the offset just past the last one, so token runs can be sliced
    back to source text.
    """

    def __init__(self, type_: str, value: str, line: int, col: int, pos: int = 0):
        self.type: str = type_
        self.value: str = value
        self.line: int = line
        self.col: int = col
        self.pos: int = pos
        self.end: int = pos + len(value)

    def is_op(self, value: str) -> bool:
        return self.type == TK_OP and self.value == value

    def is_word(self) -> bool:
        return self.type == TK_IDENT or self.type in KEYWORDS

    def __repr__(self) -> str:
        return (
            "Token("
            + self.type
            + ", "
            + repr(self.value)
            + ", "
            + str(self.line)
            + ", "
            + str(self.col)
            + ")"
        )


class Comment:
    """A stripped comment and the lines it spanned."""

    def __init__(self, text: str, line: int, end_line: int):
        self.text: str = text
        self.line: int = line
        self.end_line: int = end_line

    def __repr__(self) -> str:
        return "Comment(" + repr(self.text) + ", " + str(self.line) + ")"


def _is_digit(c: str) -> bool:
    return c >= "0" and c <= "9"


def _is_alpha(c: str) -> bool:
    return (c >= "a" and c <= "z") or (c >= "A" and c <= "Z") or c == "_"


def _is_alnum(c: str) -> bool:
    return _is_alpha(c) or _is_digit(c)


def _blank(text: str) -> str:
    """Replace every character except newlines with a space."""
    return "".join("\n" if c == "\n" else " " for c in text)


def _skip_quoted(source: str, pos: int, quote: str, line: int) -> int:
    """Return the offset just past the literal opened at pos."""
    length = len(source)
    start_line = line
    pos += 1
    while pos < length and source[pos] != quote:
        if source[pos] == "\n":
            raise TokenizeError("unterminated literal", start_line, 0)
        if source[pos] == "\\":
            pos += 1
        pos += 1
    if pos >= length:
        raise TokenizeError("unterminated literal", start_line, 0)
    return pos + 1


def _raw_string_end(source: str, pos: int, line: int) -> int:
    """pos points at the opening quote of R"delim( ... )delim"."""
    paren = source.find("(", pos)
    if paren < 0:
        raise TokenizeError("malformed raw string literal", line, 0)
    delim = source[pos + 1 : paren]
    close = source.find(")" + delim + '"', paren)
    if close < 0:
        raise TokenizeError("unterminated raw string literal", line, 0)
    return close + len(delim) + 2


def strip_comments(source: str) -> tuple[str, list[Comment]]:
    """Blank out comments and preprocessor lines, keeping offsets and newlines.

    Returns the stripped text and the comments that were removed, so the
    parser can attach a preceding comment block to a declaration as its doc.
    Literals are skipped intact: `"//"` inside a string is not a comment.
    """
    out: list[str] = []
    comments: list[Comment] = []
    pos = 0
    line = 1
    length = len(source)
    at_line_start = True
    while pos < length:
        c = source[pos]
        if c == "\n":
            out.append(c)
            pos += 1
            line += 1
            at_line_start = True
            continue
        if c == " " or c == "\t" or c == "\r":
            out.append(c)
            pos += 1
            continue
        if c == "#" and at_line_start:
            # Preprocessor directive, including backslash continuations.
            end = pos
            while end < length:
                nl = source.find("\n", end)
                if nl < 0:
                    end = length
                    break
                if source[nl - 1] == "\\":
                    end = nl + 1
                    continue
                end = nl
                break
            text = source[pos:end]
            out.append(_blank(text))
            line += text.count("\n")
            pos = end
            continue
        at_line_start = False
        if c == "/" and pos + 1 < length and source[pos + 1] == "/":
            end = source.find("\n", pos)
            if end < 0:
                end = length
            comments.append(Comment(source[pos + 2 : end].strip(), line, line))
            out.append(" " * (end - pos))
            pos = end
            continue
        if c == "/" and pos + 1 < length and source[pos + 1] == "*":
            end = source.find("*/", pos + 2)
            if end < 0:
                raise TokenizeError("unterminated block comment", line, 0)
            text = source[pos : end + 2]
            body = "\n".join(
                ln.strip().lstrip("*").strip() for ln in text[2:-2].splitlines()
            ).strip()
            comments.append(Comment(body, line, line + text.count("\n")))
            out.append(_blank(text))
            line += text.count("\n")
            pos = end + 2
            continue
        if c == "R" and pos + 1 < length and source[pos + 1] == '"':
            end = _raw_string_end(source, pos + 1, line)
            text = source[pos:end]
            out.append(text)
            line += text.count("\n")
            pos = end
            continue
        if c == '"' or c == "'":
            # Digit separators (1'000'000) are not char literals.
            if c == "'" and pos > 0 and _is_alnum(source[pos - 1]) and _is_digit_run_end(source, pos):
                out.append(c)
                pos += 1
                continue
            end = _skip_quoted(source, pos, c, line)
            out.append(source[pos:end])
            pos = end
            continue
        out.append(c)
        pos += 1
    return "".join(out), comments


def _is_digit_run_end(source: str, pos: int) -> bool:
    """True when the quote at pos sits between two digits of a number literal."""
    i = pos - 1
    while i >= 0 and (_is_alnum(source[i]) or source[i] == "'"):
        i -= 1
    return _is_digit(source[i + 1]) and pos + 1 < len(source) and _is_alnum(source[pos + 1])


def tokenize(source: str) -> list[Token]:
    """Tokenize comment-free C++ text into a flat list ending with TK_EOF."""
    tokens: list[Token] = []
    pos = 0
    line = 1
    col = 1
    length = len(source)

    while pos < length:
        c = source[pos]

        if c == "\n":
            pos += 1
            line += 1
            col = 1
            continue

        if c == " " or c == "\t" or c == "\r" or c == "\\":
            pos += 1
            col += 1
            continue

        start_pos = pos
        start_line = line
        start_col = col

        # Encoding prefixes on string and char literals: L"", u8"", R"()"
        prefix_end = pos
        while prefix_end < length and prefix_end - pos < 3 and source[prefix_end] in "LuU8R":
            prefix_end += 1
        if prefix_end > pos and prefix_end < length and source[prefix_end] in "\"'":
            prefix = source[pos:prefix_end]
            if prefix in ("L", "u", "U", "u8", "R", "LR", "uR", "UR", "u8R"):
                quote = source[prefix_end]
                if prefix.endswith("R") and quote == '"':
                    end = _raw_string_end(source, prefix_end, line)
                else:
                    end = _skip_quoted(source, prefix_end, quote, line)
                raw = source[pos:end]
                kind = TK_STRING if quote == '"' else TK_CHAR
                tokens.append(Token(kind, raw, start_line, start_col, start_pos))
                line += raw.count("\n")
                col += len(raw)
                pos = end
                continue

        if _is_digit(c) or (c == "." and pos + 1 < length and _is_digit(source[pos + 1])):
            pos += 1
            while pos < length:
                ch = source[pos]
                if _is_alnum(ch) or ch == "." or ch == "'":
                    pos += 1
                elif (ch == "+" or ch == "-") and source[pos - 1] in "eEpP" and not source[start_pos:pos].lower().startswith("0x"):
                    pos += 1
                else:
                    break
            raw = source[start_pos:pos]
            tokens.append(Token(TK_NUMBER, raw, start_line, start_col, start_pos))
            col += pos - start_pos
            continue

        if c == '"' or c == "'":
            end = _skip_quoted(source, pos, c, line)
            raw = source[pos:end]
            kind = TK_STRING if c == '"' else TK_CHAR
            tokens.append(Token(kind, raw, start_line, start_col, start_pos))
            col += end - pos
            pos = end
            continue

        if _is_alpha(c):
            while pos < length and _is_alnum(source[pos]):
                pos += 1
                col += 1
            word = source[start_pos:pos]
            if word in KEYWORDS:
                tokens.append(Token(word, word, start_line, start_col, start_pos))
            else:
                tokens.append(Token(TK_IDENT, word, start_line, start_col, start_pos))
            continue

        matched = False
        for op in MULTI_OPS:
            op_len = len(op)
            if pos + op_len <= length and source[pos : pos + op_len] == op:
                tokens.append(Token(TK_OP, op, start_line, start_col, start_pos))
                pos += op_len
                col += op_len
                matched = True
                break
        if matched:
            continue

        if c in SINGLE_OPS:
            tokens.append(Token(TK_OP, c, start_line, start_col, start_pos))
            pos += 1
            col += 1
            continue

        raise TokenizeError("unexpected character: " + repr(c), line, col)

    tokens.append(Token(TK_EOF, "", line, col, length))
    return tokens


def lex(source: str) -> list[Token]:
    """Strip comments and tokenize in one step."""
    stripped, _ = strip_comments(source)
    return tokenize(stripped)


# ============================================================
# DEPTH-AWARE HELPERS
# ============================================================


def find_matching(tokens: list[Token], i: int) -> int:
    """Index of the token closing the bracket opened at tokens[i], or -1.

    `<` is matched as a template bracket: `>>` closes two levels, and a
    `;` or `{` at angle depth aborts the match (it was a comparison).
    """
    opener = tokens[i].value
    if opener == "<":
        return _find_angle_close(tokens, i)
    closer = OPENERS[opener]
    depth = 0
    j = i
    while j < len(tokens):
        tok = tokens[j]
        if tok.type == TK_OP:
            if tok.value == opener:
                depth += 1
            elif tok.value == closer:
                depth -= 1
                if depth == 0:
                    return j
        j += 1
    return -1


def _find_angle_close(tokens: list[Token], i: int) -> int:
    angle = 0
    nest = 0
    j = i
    while j < len(tokens):
        tok = tokens[j]
        if tok.type == TK_OP:
            v = tok.value
            if v in ("(", "["):
                nest += 1
            elif v in (")", "]"):
                nest -= 1
                if nest < 0:
                    return -1
            elif nest == 0:
                if v == "<":
                    angle += 1
                elif v == ">":
                    angle -= 1
                    if angle == 0:
                        return j
                elif v == ">>":
                    angle -= 2
                    if angle <= 0:
                        return j
                elif v in (";", "{", "}"):
                    return -1
        elif tok.type == TK_EOF:
            return -1
        j += 1
    return -1


def split_tokens(tokens: list[Token], sep: str = ",") -> list[list[Token]]:
    """Split a token run on top-level `sep`, tracking () [] {} <> depth."""
    parts: list[list[Token]] = []
    current: list[Token] = []
    depth = 0
    angle = 0
    for tok in tokens:
        if tok.type == TK_OP:
            v = tok.value
            if v in ("(", "[", "{"):
                depth += 1
            elif v in (")", "]", "}"):
                depth -= 1
            elif v == "<":
                angle += 1
            elif v == ">" and angle > 0:
                angle -= 1
            elif v == ">>" and angle > 0:
                angle = max(0, angle - 2)
            elif v == sep and depth == 0 and angle == 0:
                parts.append(current)
                current = []
                continue
        current.append(tok)
    if current:
        parts.append(current)
    return parts


def split_top_level(text: str, sep: str = ",") -> list[str]:
    """Split text on top-level `sep`, respecting nesting and string literals.

    `std::map<int, std::vector<int>> m, int x` yields two pieces. Empty
    pieces are dropped and each piece is stripped.
    """
    parts: list[str] = []
    depth = 0
    angle = 0
    start = 0
    i = 0
    length = len(text)
    while i < length:
        c = text[i]
        if c == '"' or c == "'":
            j = i + 1
            while j < length and text[j] != c:
                if text[j] == "\\":
                    j += 1
                j += 1
            i = j + 1
            continue
        if c in "([{":
            depth += 1
        elif c in ")]}":
            depth -= 1
        elif c == "<":
            if i + 1 < length and text[i + 1] in "<=":
                i += 2
                continue
            angle += 1
        elif c == ">":
            if i > 0 and text[i - 1] == "-":
                pass
            elif angle > 0:
                angle -= 1
        elif c == sep and depth == 0 and angle == 0:
            piece = text[start:i].strip()
            if piece:
                parts.append(piece)
            start = i + 1
        i += 1
    piece = text[start:].strip()
    if piece:
        parts.append(piece)
    return parts


def join_tokens(tokens: list[Token]) -> str:
    """Reassemble a token run, keeping a single space wherever the source had one."""
    out: list[str] = []
    prev: Token | None = None
    for tok in tokens:
        if tok.type == TK_EOF:
            break
        if prev is not None and tok.pos > prev.end:
            out.append(" ")
        out.append(tok.value)
        prev = tok
    return "".join(out)

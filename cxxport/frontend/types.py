"""Resolve C++ type spellings to IR types.

Indirection is peeled from the right one layer per call: `const T* const&`
is a reference to a const pointer to a const T. Whatever remains is a
base name, looked up among builtins, std library kinds, template
parameters and registered user types, in that order. Unrecognized names
become user-defined class types.
"""

from __future__ import annotations

from dataclasses import replace

from cxxport.frontend.lexer import (
    TK_EOF,
    TK_NUMBER,
    Token,
    find_matching,
    join_tokens,
    split_tokens,
    tokenize,
)
from cxxport.ir import IR, Type
from cxxport.typemap import BUILTIN_TYPES, normalize

# Words that may combine into one builtin spelling: `unsigned long long int`.
BUILTIN_WORDS: set[str] = {
    "void",
    "bool",
    "char",
    "short",
    "int",
    "long",
    "signed",
    "unsigned",
    "float",
    "double",
    "wchar_t",
    "char8_t",
    "char16_t",
    "char32_t",
}

# Specifiers that say nothing about the type itself.
IGNORED_SPECIFIERS: set[str] = {
    "volatile",
    "constexpr",
    "consteval",
    "constinit",
    "static",
    "inline",
    "mutable",
    "extern",
    "typename",
    "struct",
    "class",
    "enum",
    "virtual",
    "explicit",
    "friend",
    "thread_local",
    "register",
}

SMART_POINTERS: dict[str, str] = {
    "std::unique_ptr": "owned",
    "std::shared_ptr": "shared",
    "std::weak_ptr": "weak",
}

CONTAINERS: set[str] = {
    "std::vector",
    "std::list",
    "std::forward_list",
    "std::deque",
    "std::stack",
    "std::queue",
    "std::priority_queue",
    "std::map",
    "std::multimap",
    "std::unordered_map",
    "std::set",
    "std::unordered_set",
    "std::pair",
    "std::tuple",
    "std::optional",
    "std::array",
    "std::span",
    "std::string",
    "std::string_view",
    "std::wstring",
}

THREADING: set[str] = {
    "std::thread",
    "std::jthread",
    "std::mutex",
    "std::recursive_mutex",
    "std::timed_mutex",
    "std::recursive_timed_mutex",
    "std::shared_mutex",
    "std::shared_timed_mutex",
    "std::condition_variable",
    "std::condition_variable_any",
    "std::atomic",
    "std::lock_guard",
    "std::unique_lock",
    "std::shared_lock",
    "std::scoped_lock",
}

ASYNC: set[str] = {
    "std::future",
    "std::shared_future",
    "std::promise",
    "std::packaged_task",
}

# std::atomic_int and friends, as the value type they wrap.
ATOMIC_ALIASES: dict[str, str] = {
    "std::atomic_bool": "bool",
    "std::atomic_char": "char",
    "std::atomic_int": "int",
    "std::atomic_uint": "unsigned int",
    "std::atomic_long": "long",
    "std::atomic_ulong": "unsigned long",
    "std::atomic_llong": "long long",
    "std::atomic_ullong": "unsigned long long",
    "std::atomic_size_t": "size_t",
    "std::atomic_int32_t": "int32_t",
    "std::atomic_int64_t": "int64_t",
    "std::atomic_uint32_t": "uint32_t",
    "std::atomic_uint64_t": "uint64_t",
}


def resolve_type(
    text: str, ir: IR | None = None, template_params: set[str] | None = None
) -> Type:
    """Resolve a type spelling such as `const std::vector<int>&`."""
    tokens = [t for t in tokenize(text) if t.type != TK_EOF]
    return resolve_tokens(tokens, ir, template_params or set())


def resolve_tokens(tokens: list[Token], ir: IR | None, template_params: set[str]) -> Type:
    if not tokens:
        return Type("template", "auto")
    last = tokens[-1]
    spelling = join_tokens(tokens)
    if last.is_op("*"):
        return Type("pointer", spelling, element=resolve_tokens(tokens[:-1], ir, template_params))
    if last.is_op("&"):
        return Type("reference", spelling, element=resolve_tokens(tokens[:-1], ir, template_params))
    if last.is_op("&&"):
        inner = resolve_tokens(tokens[:-1], ir, template_params)
        return Type("reference", spelling, element=inner, is_rvalue=True)
    if last.value == "const" and len(tokens) > 1:
        return replace(resolve_tokens(tokens[:-1], ir, template_params), is_const=True)
    if last.is_op("]"):
        i = len(tokens) - 1
        depth = 0
        while i >= 0:
            if tokens[i].is_op("]"):
                depth += 1
            elif tokens[i].is_op("["):
                depth -= 1
                if depth == 0:
                    break
            i -= 1
        if i > 0:
            size = join_tokens(tokens[i + 1 : -1])
            inner = resolve_tokens(tokens[:i], ir, template_params)
            return Type("array", spelling, element=inner, size=size)
    return _resolve_base(tokens, ir, template_params)


def _resolve_base(tokens: list[Token], ir: IR | None, template_params: set[str]) -> Type:
    is_const = False
    words: list[Token] = []
    for tok in tokens:
        if tok.value == "const":
            is_const = True
        elif tok.value in IGNORED_SPECIFIERS:
            continue
        else:
            words.append(tok)
    if not words:
        return Type("template", "auto", is_const=is_const)

    if all(w.value in BUILTIN_WORDS for w in words):
        key = normalize(" ".join(w.value for w in words))
        entry = BUILTIN_TYPES.get(key)
        if entry is not None:
            return Type(entry.kind, key, is_const=is_const)

    # Qualified name, then optional <args>
    i = 0
    name_parts: list[str] = []
    if words[0].is_op("::"):
        i = 1
    while i < len(words):
        tok = words[i]
        if tok.is_word():
            name_parts.append(tok.value)
            i += 1
            if i < len(words) and words[i].is_op("::"):
                i += 1
                continue
        break
    name = "::".join(name_parts) if name_parts else join_tokens(words)
    args_tokens: list[list[Token]] = []
    if i < len(words) and words[i].is_op("<"):
        close = find_matching(words, i)
        if close < 0:
            # Inner half of a `>>` that closed the enclosing argument list.
            close = len(words)
        inner = words[i + 1 : close]
        args_tokens = split_tokens(inner)
        # Nested name after the args: typename Outer<T>::inner
        if close + 1 < len(words) and words[close + 1].is_op("::"):
            name = join_tokens(words)
            args_tokens = []

    key = normalize(name)
    entry = BUILTIN_TYPES.get(key)
    if entry is not None:
        return Type(entry.kind, key, is_const=is_const)
    if name == "auto" or name.startswith("decltype"):
        return Type("template", "auto", is_const=is_const)
    if name in template_params:
        return Type("template", name, is_const=is_const)

    if name in SMART_POINTERS:
        if args_tokens:
            inner = resolve_tokens(args_tokens[0], ir, template_params)
        else:
            inner = Type("void", "void")
        return Type(
            "pointer",
            join_tokens(words),
            element=inner,
            ownership=SMART_POINTERS[name],
            is_const=is_const,
        )
    if name == "std::function":
        return _resolve_function(args_tokens, ir, template_params, is_const)
    if name in ATOMIC_ALIASES:
        value_name = normalize(ATOMIC_ALIASES[name])
        value = Type(BUILTIN_TYPES[value_name].kind, value_name)
        return Type("threading", "std::atomic", args=(value,), is_const=is_const)

    args = tuple(_resolve_arg(a, ir, template_params) for a in args_tokens)
    if name in CONTAINERS:
        if name == "std::wstring":
            name = "std::string"
        return Type("container", name, args=args, is_const=is_const)
    if name in THREADING:
        return Type("threading", name, args=args, is_const=is_const)
    if name in ASYNC:
        return Type("async", name, args=args, is_const=is_const)
    if ir is not None:
        known = ir.find_type(name)
        if known is not None:
            if known.kind == "enum":
                return Type("enum", name, is_const=is_const)
            if known.kind in ("class", "struct"):
                return Type(known.kind, name, args=args, is_const=is_const)
            # using / typedef alias
            return replace(known, is_const=is_const or known.is_const)
    return Type("class", name, args=args, is_const=is_const)


def _resolve_arg(tokens: list[Token], ir: IR | None, template_params: set[str]) -> Type:
    """Template argument: a type, or a constant kept by spelling."""
    if len(tokens) == 1 and tokens[0].type == TK_NUMBER:
        return Type("template", tokens[0].value)
    if tokens and tokens[0].type == TK_NUMBER:
        return Type("template", join_tokens(tokens))
    return resolve_tokens(tokens, ir, template_params)


def _resolve_function(
    args_tokens: list[list[Token]], ir: IR | None, template_params: set[str], is_const: bool
) -> Type:
    """std::function<R(A, B)> -> function type with args (R, A, B)."""
    if not args_tokens:
        return Type("function", "std::function", is_const=is_const)
    sig = args_tokens[0]
    open_idx = -1
    for idx, tok in enumerate(sig):
        if tok.is_op("("):
            open_idx = idx
            break
    if open_idx < 0:
        return Type("function", "std::function", is_const=is_const)
    close = find_matching(sig, open_idx)
    ret = resolve_tokens(sig[:open_idx], ir, template_params)
    params = [
        resolve_tokens(p, ir, template_params)
        for p in split_tokens(sig[open_idx + 1 : close])
        if not (len(p) == 1 and p[0].value == "void")
    ]
    return Type("function", "std::function", args=(ret, *params), is_const=is_const)

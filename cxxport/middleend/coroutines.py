"""Async analyzer: coroutine operations, futures/promises and std::async launches.

A function is asynchronous when it uses any coroutine keyword, declares a
future or promise, or launches a std::async task. Both generators consult
that flag, not any explicit annotation.
"""

from __future__ import annotations

from cxxport.frontend.lexer import (
    TK_CHAR,
    TK_IDENT,
    TK_NUMBER,
    TK_STRING,
    Token,
    find_matching,
    join_tokens,
)
from cxxport.frontend.types import resolve_tokens
from cxxport.ir import IR, AsyncFeatures, AsyncOperation, AsyncTaskInfo, Function, FutureInfo, Type
from cxxport.middleend.scan import (
    assigned_name,
    at_statement_start,
    body_tokens,
    call_args,
    is_std,
    member_call,
    statement_end,
)

_COROUTINE_OPS: dict[str, str] = {
    "co_await": "await",
    "co_return": "return",
    "co_yield": "yield",
}


def analyze_async(ir: IR) -> None:
    for func in ir.all_functions():
        analyze_function(func)


def analyze_function(func: Function) -> None:
    tokens = body_tokens(func.body)
    feats = AsyncFeatures()
    func.asyncs = feats
    coro = feats.coroutine
    futures: dict[str, FutureInfo] = {}

    i = 0
    n = len(tokens)
    while i < n:
        tok = tokens[i]
        if tok.type in _COROUTINE_OPS:
            op = _COROUTINE_OPS[tok.type]
            if op == "await":
                end = _operand_end(tokens, i + 1)
                target = assigned_name(tokens, i)
            else:
                end = statement_end(tokens, i + 1)
                target = ""
            expr = join_tokens(tokens[i + 1 : end])
            coro.operations.append(AsyncOperation(op, expr, target))  # type: ignore[arg-type]
            if op == "await":
                coro.uses_co_await = True
            elif op == "return":
                coro.uses_co_return = True
            else:
                coro.uses_co_yield = True
                coro.is_generator = True
            i += 1
            continue

        if is_std(tokens, i, ("future", "shared_future", "promise")):
            info, after = _future_decl(tokens, i)
            if info is not None:
                futures[info.var_name] = info
                feats.futures.append(info)
            i = after
            continue

        if is_std(tokens, i, ("async",)) and i + 3 < n and tokens[i + 3].is_op("("):
            args, _ = call_args(tokens, i + 3)
            feats.tasks.append(_async_task(tokens, i, args))
            i += 4
            continue

        call = member_call(tokens, i)
        if call is not None and call[1] == "get_future":
            promise = call[0]
            var = assigned_name(tokens, i)
            if var and var in futures:
                futures[var].promise_var = promise
            elif var and promise in futures:
                value = futures[promise].value_type
                info = FutureInfo(var, value, promise_var=promise)
                futures[var] = info
                feats.futures.append(info)
            i = call[2]
            continue
        i += 1

    coro.is_coroutine = coro.uses_co_await or coro.uses_co_return or coro.uses_co_yield
    feats.is_async = coro.is_coroutine or bool(feats.futures) or bool(feats.tasks)


def _operand_end(tokens: list[Token], i: int) -> int:
    """End of the postfix expression starting at i: `a.b(x)[0]`, `ns::f<T>(y)`."""
    n = len(tokens)
    if i < n and tokens[i].is_op("("):
        close = find_matching(tokens, i)
        return close + 1 if close > 0 else n
    while i < n:
        tok = tokens[i]
        if tok.is_word() or tok.type in (TK_NUMBER, TK_STRING, TK_CHAR):
            i += 1
        elif tok.is_op("::") or tok.is_op(".") or tok.is_op("->"):
            i += 1
        elif tok.is_op("(") or tok.is_op("[") or tok.is_op("{"):
            close = find_matching(tokens, i)
            if close < 0:
                return n
            i = close + 1
        elif tok.is_op("<") and i > 0 and tokens[i - 1].is_word():
            close = find_matching(tokens, i)
            if close < 0:
                return i
            i = close + 1
        else:
            break
    return i


def _future_decl(tokens: list[Token], i: int) -> tuple[FutureInfo | None, int]:
    kind = tokens[i + 2].value
    j = i + 3
    value = Type("void", "void")
    if j < len(tokens) and tokens[j].is_op("<"):
        close = find_matching(tokens, j)
        if close < 0:
            return None, j
        value = resolve_tokens(tokens[j + 1 : close], None, set())
        j = close + 1
    if j >= len(tokens) or tokens[j].type != TK_IDENT:
        return None, j
    name = tokens[j].value
    info = FutureInfo(
        name,
        value,
        is_shared=kind == "shared_future",
        is_promise=kind == "promise",
    )
    return info, j + 1


def _async_task(tokens: list[Token], i: int, args: list[str]) -> AsyncTaskInfo:
    policy = ""
    if args and args[0].startswith("std::launch::"):
        parts = [p.strip() for p in args[0].split("|")]
        policy = "|".join(p[len("std::launch::") :] for p in parts if p.startswith("std::launch::"))
        args = args[1:]
    callable_text = args[0] if args else ""
    var = assigned_name(tokens, i)
    detached = not var and at_statement_start(tokens, i)
    return AsyncTaskInfo(callable_text, args[1:], var, policy, detached)

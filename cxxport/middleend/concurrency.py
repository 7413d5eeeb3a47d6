"""Threading analyzer: threads, locks, atomics and condition variables.

Field-level primitives (mutex, atomic and condition-variable members) are
recorded on the ClassDecl; each method then records the primitives it
touches, and every lock scope over a mutex field contributes the fields it
references to that mutex's guarded_fields.
"""

from __future__ import annotations

from cxxport.frontend.lexer import TK_IDENT, Token, find_matching, join_tokens, split_tokens
from cxxport.frontend.types import ATOMIC_ALIASES, resolve_tokens
from cxxport.ir import (
    IR,
    AtomicInfo,
    ClassDecl,
    ConditionVariableInfo,
    Function,
    LockInfo,
    MutexInfo,
    ThreadInfo,
    ThreadingFeatures,
    Type,
)
from cxxport.middleend.scan import (
    assigned_name,
    block_end,
    body_tokens,
    call_args,
    is_std,
    member_call,
    strip_this,
)

MUTEX_KINDS: set[str] = {
    "mutex",
    "recursive_mutex",
    "timed_mutex",
    "recursive_timed_mutex",
    "shared_mutex",
    "shared_timed_mutex",
}

LOCK_KINDS: set[str] = {"lock_guard", "unique_lock", "shared_lock", "scoped_lock"}

CONDVAR_KINDS: set[str] = {"condition_variable", "condition_variable_any"}

THREAD_KINDS: set[str] = {"thread", "jthread"}

ATOMIC_METHODS: set[str] = {
    "load",
    "store",
    "exchange",
    "fetch_add",
    "fetch_sub",
    "fetch_and",
    "fetch_or",
    "fetch_xor",
    "compare_exchange_weak",
    "compare_exchange_strong",
}

LOCK_TAGS: set[str] = {"std::defer_lock", "std::adopt_lock", "std::try_to_lock"}

_ATOMIC_OPERATORS: dict[str, str] = {
    "++": "increment",
    "--": "decrement",
    "+=": "add_assign",
    "-=": "sub_assign",
    "&=": "and_assign",
    "|=": "or_assign",
    "^=": "xor_assign",
    "=": "store",
}


def analyze_threading(ir: IR) -> None:
    for cls in ir.classes:
        collect_field_primitives(cls)
    for func in ir.functions:
        analyze_function(func, None)
    for cls in ir.classes:
        for method in cls.methods:
            analyze_function(method, cls)


def collect_field_primitives(cls: ClassDecl) -> None:
    feats = ThreadingFeatures()
    for f in cls.fields:
        t = f.typ
        if t.kind != "threading":
            continue
        short = t.name.split("::")[-1]
        if short in MUTEX_KINDS:
            feats.mutexes.append(MutexInfo(f.name, short, is_field=True))
        elif short == "atomic":
            value = t.args[0] if t.args else Type("integer", "int")
            feats.atomics.append(AtomicInfo(f.name, value, is_field=True))
        elif short in CONDVAR_KINDS:
            feats.condition_variables.append(ConditionVariableInfo(f.name, is_field=True))
    cls.threading = feats


class _Scope:
    """A lock region: tokens[start:end] hold the mutex."""

    def __init__(self, mutexes: list[str], start: int, end: int, lock_var: str):
        self.mutexes = mutexes
        self.start = start
        self.end = end
        self.lock_var = lock_var


def analyze_function(func: Function, cls: ClassDecl | None) -> None:
    tokens = body_tokens(func.body)
    feats = ThreadingFeatures()
    func.threading = feats
    if not tokens:
        return

    owner = cls.threading if cls is not None else ThreadingFeatures()
    field_mutexes = {m.name for m in owner.mutexes}
    field_atomics = {a.name: a for a in owner.atomics}
    field_condvars = {c.name: c for c in owner.condition_variables}
    local_mutexes: set[str] = set()
    atomics: dict[str, AtomicInfo] = {}
    condvars: dict[str, ConditionVariableInfo] = {}
    threads: dict[str, ThreadInfo] = {}
    locks: dict[str, LockInfo] = {}
    scopes: list[_Scope] = []
    manual: dict[str, int] = {}

    def atomic_for(name: str) -> AtomicInfo | None:
        if name in atomics:
            return atomics[name]
        if name in field_atomics:
            src = field_atomics[name]
            info = AtomicInfo(name, src.value_type, is_field=True)
            atomics[name] = info
            feats.atomics.append(info)
            return info
        return None

    def condvar_for(name: str) -> ConditionVariableInfo | None:
        if name in condvars:
            return condvars[name]
        if name in field_condvars:
            info = ConditionVariableInfo(name, is_field=True)
            condvars[name] = info
            feats.condition_variables.append(info)
            return info
        return None

    def record_atomic(name: str, op: str) -> None:
        info = atomic_for(name)
        if info is None:
            return
        info.operations.append(op)
        if name in field_atomics:
            field_atomics[name].operations.append(op)

    i = 0
    n = len(tokens)
    while i < n:
        tok = tokens[i]

        # Declarations: std::mutex m; std::thread t(f, a); std::lock_guard<...> lk(m); ...
        if is_std(tokens, i, MUTEX_KINDS) and i + 3 < n and tokens[i + 3].type == TK_IDENT:
            name = tokens[i + 3].value
            local_mutexes.add(name)
            feats.mutexes.append(MutexInfo(name, tokens[i + 2].value))
            i += 4
            continue
        if is_std(tokens, i, THREAD_KINDS):
            info = _thread_site(tokens, i)
            if info is not None:
                threads[info.var_name] = info
                feats.threads.append(info)
            i += 3
            continue
        if is_std(tokens, i, LOCK_KINDS):
            found = _lock_site(tokens, i)
            if found is not None:
                lock, open_idx = found
                locks[lock.var_name] = lock
                feats.locks.append(lock)
                scopes.append(_Scope(lock.mutex_names, open_idx, block_end(tokens, open_idx), lock.var_name))
            i += 3
            continue
        if is_std(tokens, i, CONDVAR_KINDS) and i + 3 < n and tokens[i + 3].type == TK_IDENT:
            name = tokens[i + 3].value
            cv = ConditionVariableInfo(name)
            condvars[name] = cv
            feats.condition_variables.append(cv)
            i += 4
            continue
        if is_std(tokens, i, ("atomic",)) or (
            i + 2 < n and tokens[i].value == "std" and "std::" + tokens[i + 2].value in ATOMIC_ALIASES
        ):
            found_atomic, after = _atomic_decl(tokens, i)
            if found_atomic is not None:
                atomics[found_atomic.name] = found_atomic
                feats.atomics.append(found_atomic)
            i = after
            continue

        call = member_call(tokens, i)
        if call is not None:
            obj, method, open_idx = call
            args, close = call_args(tokens, open_idx)
            if obj in threads:
                if method == "join":
                    threads[obj].is_joined = True
                elif method == "detach":
                    threads[obj].is_detached = True
            elif obj in locks and method == "unlock":
                locks[obj].unlocks_explicitly = True
                for scope in scopes:
                    if scope.lock_var == obj and scope.start < i < scope.end:
                        scope.end = i
            elif obj in field_mutexes or obj in local_mutexes:
                if method in ("lock", "lock_shared"):
                    lock = LockInfo(method, "", [obj])
                    feats.locks.append(lock)
                    manual[obj] = i
                elif method in ("unlock", "unlock_shared"):
                    for lock in feats.locks:
                        if lock.var_name == "" and obj in lock.mutex_names:
                            lock.unlocks_explicitly = True
                    if obj in manual:
                        scopes.append(_Scope([obj], manual.pop(obj), i, ""))
            elif atomic_for(obj) is not None and method in ATOMIC_METHODS:
                record_atomic(obj, method)
            elif condvar_for(obj) is not None:
                cv = condvar_for(obj)
                assert cv is not None
                if method in ("wait", "wait_for", "wait_until"):
                    if args:
                        lock_var = strip_this(args[0])
                        if lock_var not in cv.lock_vars:
                            cv.lock_vars.append(lock_var)
                    pred_at = 1 if method == "wait" else 2
                    if len(args) > pred_at:
                        cv.predicates.append(args[pred_at])
                elif method == "notify_one":
                    cv.notifies_one = True
                elif method == "notify_all":
                    cv.notifies_all = True
            i = open_idx + 1
            continue

        # Operator forms on atomics: counter++, ++counter, counter += n, counter = v
        name_idx = i
        if tok.type == "this" and i + 2 < n and tokens[i + 1].is_op("->"):
            name_idx = i + 2
        name_tok = tokens[name_idx] if name_idx < n else tok
        if name_tok.type == TK_IDENT and not _is_member_access(tokens, i):
            name = name_tok.value
            if atomic_for(name) is not None:
                nxt = tokens[name_idx + 1] if name_idx + 1 < n else None
                prev = tokens[i - 1] if i > 0 else None
                if nxt is not None and nxt.type == "OP" and nxt.value in _ATOMIC_OPERATORS:
                    record_atomic(name, _ATOMIC_OPERATORS[nxt.value])
                elif prev is not None and (prev.is_op("++") or prev.is_op("--")):
                    record_atomic(name, _ATOMIC_OPERATORS[prev.value])
                elif nxt is not None and not nxt.is_op("."):
                    record_atomic(name, "load")
        i += 1

    # Manual lock() without unlock() holds to the end of its block.
    for obj, start in manual.items():
        scopes.append(_Scope([obj], start, block_end(tokens, start), ""))

    if cls is not None:
        _record_guarded(cls, tokens, scopes)


def _thread_site(tokens: list[Token], i: int) -> ThreadInfo | None:
    """`std::thread t(f, a)`, `std::thread t{f}` or `auto t = std::thread(f, a)`."""
    kind = tokens[i + 2].value
    j = i + 3
    var = ""
    if j < len(tokens) and tokens[j].type == TK_IDENT and j + 1 < len(tokens):
        var = tokens[j].value
        j += 1
        if tokens[j].is_op("="):
            # std::thread t = std::thread(f); the right-hand side records it
            return None
    else:
        var = assigned_name(tokens, i)
    if j >= len(tokens) or not (tokens[j].is_op("(") or tokens[j].is_op("{")):
        return None
    close = find_matching(tokens, j)
    if close < 0:
        return None
    args = [join_tokens(p) for p in split_tokens(tokens[j + 1 : close])]
    if not args:
        return None
    return ThreadInfo(var, args[0], args[1:], is_jthread=kind == "jthread")


def _lock_site(tokens: list[Token], i: int) -> tuple[LockInfo, int] | None:
    kind = tokens[i + 2].value
    j = i + 3
    if j < len(tokens) and tokens[j].is_op("<"):
        close = find_matching(tokens, j)
        if close < 0:
            return None
        j = close + 1
    if j + 1 >= len(tokens) or tokens[j].type != TK_IDENT:
        return None
    var = tokens[j].value
    open_idx = j + 1
    if not (tokens[open_idx].is_op("(") or tokens[open_idx].is_op("{")):
        return None
    close = find_matching(tokens, open_idx)
    if close < 0:
        return None
    args = [join_tokens(p) for p in split_tokens(tokens[open_idx + 1 : close])]
    mutexes = [strip_this(a) for a in args if a not in LOCK_TAGS]
    return LockInfo(kind, var, mutexes), open_idx


def _atomic_decl(tokens: list[Token], i: int) -> tuple[AtomicInfo | None, int]:
    """`std::atomic<T> name` or `std::atomic_int name`; also the index to resume at."""
    j = i + 3
    if tokens[i + 2].value == "atomic":
        if j >= len(tokens) or not tokens[j].is_op("<"):
            return None, j
        close = find_matching(tokens, j)
        if close < 0:
            return None, j
        value = resolve_tokens(tokens[j + 1 : close], None, set())
        j = close + 1
    else:
        alias = "std::" + tokens[i + 2].value
        value = resolve_tokens(body_tokens(ATOMIC_ALIASES[alias]), None, set())
    if j < len(tokens) and tokens[j].type == TK_IDENT:
        return AtomicInfo(tokens[j].value, value), j + 1
    return None, j


def _is_member_access(tokens: list[Token], i: int) -> bool:
    return i > 0 and (tokens[i - 1].is_op(".") or tokens[i - 1].is_op("->") or tokens[i - 1].is_op("::"))


def _record_guarded(cls: ClassDecl, tokens: list[Token], scopes: list[_Scope]) -> None:
    mutexes = {m.name: m for m in cls.threading.mutexes}
    if not mutexes:
        return
    skip = set(mutexes)
    skip |= {a.name for a in cls.threading.atomics}
    skip |= {c.name for c in cls.threading.condition_variables}
    fields = {f.name for f in cls.fields if f.name not in skip and f.typ.kind != "threading"}
    for scope in scopes:
        owners = [mutexes[m] for m in scope.mutexes if m in mutexes]
        if not owners:
            continue
        for k in range(scope.start, min(scope.end, len(tokens))):
            tok = tokens[k]
            if tok.type != TK_IDENT or tok.value not in fields:
                continue
            if k > 0 and (tokens[k - 1].is_op(".") or tokens[k - 1].is_op("::")):
                continue
            if k > 0 and tokens[k - 1].is_op("->") and not (k > 1 and tokens[k - 2].type == "this"):
                continue
            for m in owners:
                if tok.value not in m.guarded_fields:
                    m.guarded_fields.append(tok.value)

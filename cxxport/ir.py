"""cxxport IR - language-neutral model of a C++ translation unit.

This module defines the complete IR and serves as its reference. Each node's
docstring documents its semantics and invariants.

Architecture:
    Source -> Frontend (parse) -> [IR] -> Middleend (analyzers) -> Backend -> Target

The frontend produces structural IR. Analyzers annotate it in place. Exactly
one backend then reads it; nothing mutates an IR once generation begins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


# ============================================================
# OWNERSHIP
#
# Recovered from pointer spelling by the frontend. Backends use
# these to pick the target's pointer representation.
# ============================================================

Ownership = Literal["owned", "borrowed", "shared", "weak"]
"""Ownership classification for pointer-like types.

| Kind     | C++ source          | C       | Go  | Rust                  |
|----------|---------------------|---------|-----|-----------------------|
| owned    | std::unique_ptr<T>  | T*      | *T  | Box<T>                |
| borrowed | T*, T&              | T*      | *T  | *mut T / &T / &mut T  |
| shared   | std::shared_ptr<T>  | T*      | *T  | Rc<T>                 |
| weak     | std::weak_ptr<T>    | T*      | *T  | Weak<T>               |
"""


# ============================================================
# TYPES
#
# Hashable and treated as immutable once built. The frontend resolves
# every type spelling it meets to one of these.
# ============================================================

TypeKind = Literal[
    "void",
    "bool",
    "integer",
    "float",
    "pointer",
    "reference",
    "array",
    "struct",
    "class",
    "enum",
    "function",
    "template",
    "container",
    "threading",
    "async",
]

COMPOSITE_KINDS: frozenset[str] = frozenset({"pointer", "reference", "array"})

# Kinds whose `args` may be non-empty (template arguments or signature parts).
ARG_KINDS: frozenset[str] = frozenset(
    {"container", "class", "struct", "threading", "async", "function"}
)


@dataclass(unsafe_hash=True)
class Type:
    """A resolved C++ type.

    `kind` is the tag of the union; it decides which optional fields carry
    meaning:

    | kind       | name                      | element | args                  |
    |------------|---------------------------|---------|-----------------------|
    | void       | "void"                    | -       | -                     |
    | bool       | "bool"                    | -       | -                     |
    | integer    | canonical spelling        | -       | -                     |
    | float      | "float"/"double"/...      | -       | -                     |
    | pointer    | source spelling           | pointee | -                     |
    | reference  | source spelling           | referee | -                     |
    | array      | source spelling           | element | -                     |
    | struct     | user type name            | -       | template args         |
    | class      | user type name            | -       | template args         |
    | enum       | user enum name            | -       | -                     |
    | function   | "std::function"           | -       | (ret, *params)        |
    | template   | template parameter name   | -       | -                     |
    | container  | "std::vector", ...        | -       | template args         |
    | threading  | "std::mutex", ...         | -       | (value type,) atomics |
    | async      | "std::future", ...        | -       | (value type,)         |

    Invariants:
    - element is not None iff kind in {pointer, reference, array}
    - args is empty unless kind in ARG_KINDS
    - ownership is meaningful only for pointer and reference kinds
    - size is meaningful only for arrays ("" means unsized, may name a
      non-type template parameter)
    """

    kind: TypeKind
    name: str
    element: Type | None = None
    args: tuple[Type, ...] = ()
    is_const: bool = False
    ownership: Ownership = "borrowed"
    size: str = ""
    is_rvalue: bool = False

    def __post_init__(self) -> None:
        has_element = self.element is not None
        if has_element != (self.kind in COMPOSITE_KINDS):
            raise ValueError(f"element_type mismatch for {self.kind} type '{self.name}'")
        if self.args and self.kind not in ARG_KINDS:
            raise ValueError(f"{self.kind} type '{self.name}' cannot carry template args")

    @property
    def is_smart_pointer(self) -> bool:
        return self.kind == "pointer" and self.ownership != "borrowed"

    def innermost(self) -> Type:
        """Strip every pointer/reference/array layer."""
        t = self
        while t.element is not None:
            t = t.element
        return t


# ============================================================
# DECLARATIONS
# ============================================================


AccessLevel = Literal["public", "protected", "private"]


@dataclass
class Variable:
    """Field, local or global variable.

    The initializer is opaque source text; nothing parses it further.
    """

    name: str
    typ: Type
    is_mutable: bool = True
    is_static: bool = False
    is_const: bool = False
    initializer: str | None = None
    access: AccessLevel = "private"
    line: int = 0


@dataclass
class Parameter:
    """Function parameter. `name` is "" for unnamed parameters."""

    name: str
    typ: Type
    default_value: str | None = None

    @property
    def has_default(self) -> bool:
        return self.default_value is not None


# ============================================================
# FEATURE ANNOTATIONS
#
# Flat records attached by the analyzers to the Function or ClassDecl
# they describe. No back-references, never shared between owners.
# ============================================================


@dataclass
class ExceptionSpec:
    """Declared exception specification.

    can_throw is False only for noexcept (or noexcept(true)) and throw().
    An empty throw_types list with can_throw means "may throw anything".
    """

    can_throw: bool = True
    throw_types: list[str] = field(default_factory=list)
    is_noexcept: bool = False


@dataclass
class CatchClause:
    """One catch handler. exception_type is "..." for catch-all."""

    exception_type: str
    exception_var: str
    handler_body: str


@dataclass
class TryCatchBlock:
    """A try region with its handlers, in source order."""

    try_body: str
    catch_clauses: list[CatchClause] = field(default_factory=list)

    @property
    def has_catch_all(self) -> bool:
        return any(c.exception_type == "..." for c in self.catch_clauses)


TemplateParamKind = Literal["type", "non_type", "template"]


@dataclass
class TemplateParameter:
    """One entry of a template parameter list.

    | kind     | C++ spelling                     | param_type |
    |----------|----------------------------------|------------|
    | type     | typename T / class T / Concept T | None       |
    | non_type | size_t N                         | resolved   |
    | template | template<typename> class C       | None       |
    """

    kind: TemplateParamKind
    name: str
    default_value: str = ""
    param_type: Type | None = None
    constraints: list[str] = field(default_factory=list)
    is_variadic: bool = False


@dataclass
class TemplateSpecialization:
    """Specialization info. specialized_args holds the argument spellings."""

    is_specialization: bool = False
    is_partial: bool = False
    specialized_args: list[str] = field(default_factory=list)


@dataclass
class ThreadInfo:
    """A std::thread / std::jthread creation site."""

    var_name: str
    callable: str
    arguments: list[str] = field(default_factory=list)
    is_joined: bool = False
    is_detached: bool = False
    is_jthread: bool = False


@dataclass
class MutexInfo:
    """A mutex declaration (field or local) and the fields its locks guard."""

    name: str
    kind: str = "mutex"
    is_field: bool = False
    guarded_fields: list[str] = field(default_factory=list)

    @property
    def is_shared(self) -> bool:
        return self.kind in ("shared_mutex", "shared_timed_mutex")


@dataclass
class LockInfo:
    """A scoped lock construct: lock_guard, unique_lock, shared_lock, scoped_lock."""

    lock_type: str
    var_name: str
    mutex_names: list[str] = field(default_factory=list)
    unlocks_explicitly: bool = False


@dataclass
class AtomicInfo:
    """A std::atomic<T> declaration and the operations applied to it, in order."""

    name: str
    value_type: Type
    operations: list[str] = field(default_factory=list)
    is_field: bool = False


@dataclass
class ConditionVariableInfo:
    """A condition variable and its wait/notify call sites."""

    name: str
    lock_vars: list[str] = field(default_factory=list)
    predicates: list[str] = field(default_factory=list)
    notifies_one: bool = False
    notifies_all: bool = False
    is_field: bool = False


AsyncOpKind = Literal["await", "return", "yield"]


@dataclass
class AsyncOperation:
    """One coroutine operation, with its operand text and assignment target."""

    op: AsyncOpKind
    expression: str
    target: str = ""


@dataclass
class CoroutineInfo:
    """Coroutine keyword usage. operations is in source order."""

    is_coroutine: bool = False
    uses_co_await: bool = False
    uses_co_return: bool = False
    uses_co_yield: bool = False
    is_generator: bool = False
    operations: list[AsyncOperation] = field(default_factory=list)


@dataclass
class FutureInfo:
    """A std::future / std::shared_future / std::promise declaration."""

    var_name: str
    value_type: Type
    promise_var: str = ""
    is_shared: bool = False
    is_promise: bool = False


@dataclass
class AsyncTaskInfo:
    """A std::async launch. detached means the result is not bound to a name."""

    callable: str
    arguments: list[str] = field(default_factory=list)
    var_name: str = ""
    launch_policy: str = ""
    detached: bool = False


# ============================================================
# FEATURE BUNDLES
# ============================================================


@dataclass
class ExceptionFeatures:
    spec: ExceptionSpec = field(default_factory=ExceptionSpec)
    try_catch_blocks: list[TryCatchBlock] = field(default_factory=list)
    may_throw: bool = False
    thrown_types: list[str] = field(default_factory=list)


@dataclass
class TemplateFeatures:
    is_template: bool = False
    declaration: str = ""
    parameters: list[TemplateParameter] = field(default_factory=list)
    specialization: TemplateSpecialization = field(default_factory=TemplateSpecialization)


@dataclass
class ThreadingFeatures:
    threads: list[ThreadInfo] = field(default_factory=list)
    mutexes: list[MutexInfo] = field(default_factory=list)
    locks: list[LockInfo] = field(default_factory=list)
    atomics: list[AtomicInfo] = field(default_factory=list)
    condition_variables: list[ConditionVariableInfo] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.threads
            or self.mutexes
            or self.locks
            or self.atomics
            or self.condition_variables
        )


@dataclass
class AsyncFeatures:
    coroutine: CoroutineInfo = field(default_factory=CoroutineInfo)
    futures: list[FutureInfo] = field(default_factory=list)
    tasks: list[AsyncTaskInfo] = field(default_factory=list)
    is_async: bool = False


# ============================================================
# FUNCTIONS AND CLASSES
# ============================================================


@dataclass
class Function:
    """Free function or method.

    Invariants:
    - is_pure_virtual implies is_virtual
    - is_constructor implies return_type is None
    - body is opaque text (no surrounding braces); "" for declarations
    - signature is the declaration head as written, qualifiers included
    """

    name: str
    return_type: Type | None = None
    params: list[Parameter] = field(default_factory=list)
    body: str = ""
    signature: str = ""
    has_body: bool = False
    is_const: bool = False
    is_static: bool = False
    is_virtual: bool = False
    is_pure_virtual: bool = False
    is_override: bool = False
    is_constructor: bool = False
    is_destructor: bool = False
    is_defaulted: bool = False
    is_deleted: bool = False
    access: AccessLevel = "public"
    initializers: list[tuple[str, str]] = field(default_factory=list)
    doc: str = ""
    line: int = 0
    exceptions: ExceptionFeatures = field(default_factory=ExceptionFeatures)
    templates: TemplateFeatures = field(default_factory=TemplateFeatures)
    threading: ThreadingFeatures = field(default_factory=ThreadingFeatures)
    asyncs: AsyncFeatures = field(default_factory=AsyncFeatures)

    def __post_init__(self) -> None:
        if self.is_pure_virtual:
            self.is_virtual = True
        if self.is_constructor and self.return_type is not None:
            raise ValueError(f"constructor '{self.name}' cannot have a return type")

    @property
    def may_throw(self) -> bool:
        return self.exceptions.may_throw

    @property
    def is_async(self) -> bool:
        return self.asyncs.is_async

    @property
    def is_template(self) -> bool:
        return self.templates.is_template

    @property
    def returns_void(self) -> bool:
        return self.return_type is None or self.return_type.kind == "void"


@dataclass
class EnumDecl:
    """enum / enum class. values holds (enumerator, initializer text or "")."""

    name: str
    values: list[tuple[str, str]] = field(default_factory=list)
    is_scoped: bool = False
    underlying: Type | None = None
    line: int = 0


@dataclass
class AccessSection:
    """Member names declared under one access marker (informational only)."""

    level: AccessLevel
    members: list[str] = field(default_factory=list)


@dataclass
class ClassDecl:
    """Class or struct declaration.

    Invariants:
    - base_classes holds names only; bases are never resolved to Types
    - fields and methods keep declaration order
    """

    name: str
    is_struct: bool = False
    fields: list[Variable] = field(default_factory=list)
    methods: list[Function] = field(default_factory=list)
    base_classes: list[str] = field(default_factory=list)
    access_sections: list[AccessSection] = field(default_factory=list)
    templates: TemplateFeatures = field(default_factory=TemplateFeatures)
    threading: ThreadingFeatures = field(default_factory=ThreadingFeatures)
    is_exception: bool = False
    doc: str = ""
    line: int = 0

    def field_named(self, name: str) -> Variable | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def method_named(self, name: str) -> Function | None:
        for m in self.methods:
            if m.name == name:
                return m
        return None

    def constructors(self) -> list[Function]:
        return [m for m in self.methods if m.is_constructor]

    def virtual_methods(self) -> list[Function]:
        return [m for m in self.methods if m.is_virtual and not m.is_destructor]

    @property
    def is_abstract(self) -> bool:
        return any(m.is_pure_virtual for m in self.methods)


# ============================================================
# DIAGNOSTICS
# ============================================================


Severity = Literal["error", "warning"]


@dataclass
class Diagnostic:
    """A non-fatal issue found while parsing, analyzing or generating."""

    severity: Severity
    phase: str
    message: str
    line: int = 0

    def __str__(self) -> str:
        return self.severity + ":" + str(self.line) + ": [" + self.phase + "] " + self.message


# ============================================================
# TRANSLATION UNIT
# ============================================================


@dataclass
class IR:
    """One translation unit.

    Lifecycle: created once per source file, populated by the parser and
    the analyzers, then read by exactly one code generator.

    `types` is the name -> Type registry used to deduplicate user types and
    to recognize enums and known classes while parsing.
    """

    classes: list[ClassDecl] = field(default_factory=list)
    functions: list[Function] = field(default_factory=list)
    globals: list[Variable] = field(default_factory=list)
    enums: list[EnumDecl] = field(default_factory=list)
    types: dict[str, Type] = field(default_factory=dict)
    concepts: list[str] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def add_class(self, cls: ClassDecl) -> None:
        self.classes.append(cls)
        kind = "struct" if cls.is_struct else "class"
        self.register_type(cls.name, Type(kind, cls.name))

    def add_enum(self, enum: EnumDecl) -> None:
        self.enums.append(enum)
        self.register_type(enum.name, Type("enum", enum.name))

    def add_function(self, func: Function) -> None:
        self.functions.append(func)

    def add_global(self, var: Variable) -> None:
        self.globals.append(var)

    def register_type(self, name: str, typ: Type) -> None:
        if name not in self.types:
            self.types[name] = typ

    def find_type(self, name: str) -> Type | None:
        return self.types.get(name)

    def find_class(self, name: str) -> ClassDecl | None:
        for cls in self.classes:
            if cls.name == name:
                return cls
        return None

    def warn(self, phase: str, message: str, line: int = 0) -> None:
        self.diagnostics.append(Diagnostic("warning", phase, message, line))

    def error(self, phase: str, message: str, line: int = 0) -> None:
        self.diagnostics.append(Diagnostic("error", phase, message, line))

    def all_functions(self) -> list[Function]:
        """Free functions followed by every method, in declaration order."""
        result = list(self.functions)
        for cls in self.classes:
            result.extend(cls.methods)
        return result

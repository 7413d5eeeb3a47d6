"""Inheritance model shared by the Rust and Go generators.

Every base class named in a class's base list becomes one trait (Rust) or
interface (Go). The method set of a trait comes from the base declaration
when it was parsed, otherwise from the union of the virtual methods that
derived classes override. Bases from the std:: namespace get no trait.

When two bases of one class declare a method with the same name, the base
listed first owns it. The later trait's implementation delegates to the
owner and the collision is reported as a warning.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from cxxport.ir import IR, ClassDecl, Function


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class TraitSpec:
    """One base class seen as a trait/interface.

    | Field     | Meaning                                                |
    |-----------|--------------------------------------------------------|
    | name      | base class name without template arguments             |
    | methods   | method set in declaration (or first override) order    |
    | parsed    | the base class declaration is part of this unit        |
    | has_state | the parsed base has instance fields to embed           |
    """

    name: str
    methods: list[Function] = field(default_factory=list)
    parsed: bool = False
    has_state: bool = False

    def method_names(self) -> list[str]:
        return [m.name for m in self.methods]


@dataclass
class Delegation:
    """Trait method of `trait` answered by the implementation from `owner`."""

    trait: str
    method: str
    owner: str


class HierarchyWarning:
    """A multiple-inheritance collision resolved by the first-base-wins rule."""

    def __init__(self, lineno: int, message: str) -> None:
        self.lineno: int = lineno
        self.message: str = message

    def __repr__(self) -> str:
        return "warning:" + str(self.lineno) + ": [hierarchy] " + self.message


class HierarchyResult:
    """Result of hierarchy analysis."""

    def __init__(self) -> None:
        self.traits: dict[str, TraitSpec] = {}
        self.implements: dict[str, list[str]] = {}
        self.delegations: dict[str, list[Delegation]] = {}
        self._warnings: list[HierarchyWarning] = []

    def add_warning(self, lineno: int, message: str) -> None:
        self._warnings.append(HierarchyWarning(lineno, message))

    def warnings(self) -> list[HierarchyWarning]:
        return self._warnings

    def is_trait(self, name: str) -> bool:
        return name in self.traits

    def bases_of(self, cls_name: str) -> list[TraitSpec]:
        return [self.traits[b] for b in self.implements.get(cls_name, [])]

    def state_bases(self, cls_name: str) -> list[TraitSpec]:
        """Bases whose fields the derived struct embeds, in base order."""
        return [t for t in self.bases_of(cls_name) if t.has_state]

    def delegation_for(self, cls_name: str, trait: str, method: str) -> Delegation | None:
        for d in self.delegations.get(cls_name, []):
            if d.trait == trait and d.method == method:
                return d
        return None

    def to_dict(self) -> dict[str, object]:
        """Serialize to nested dicts for test assertions."""
        return {
            "traits": {
                name: {
                    "methods": t.method_names(),
                    "parsed": t.parsed,
                    "has_state": t.has_state,
                }
                for name, t in self.traits.items()
            },
            "implements": {k: list(v) for k, v in self.implements.items()},
            "delegations": {
                k: [[d.trait, d.method, d.owner] for d in v] for k, v in self.delegations.items()
            },
        }


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


def base_name(base: str) -> str:
    """`ns::Shape<T>` -> `ns::Shape`."""
    return base.split("<", 1)[0].strip()


def analyze_hierarchy(ir: IR) -> HierarchyResult:
    result = HierarchyResult()
    for cls in ir.classes:
        names: list[str] = []
        for base in cls.base_classes:
            full = base_name(base)
            if full.startswith("std::"):
                continue
            name = full.rsplit("::", 1)[-1]
            if name not in result.traits:
                result.traits[name] = _build_trait(name, ir)
            if name not in names:
                names.append(name)
        if names:
            result.implements[cls.name] = names
    for cls in ir.classes:
        _resolve_collisions(cls, result)
    return result


def _build_trait(name: str, ir: IR) -> TraitSpec:
    parent = ir.find_class(name)
    if parent is not None:
        methods = parent.virtual_methods()
        if not methods:
            methods = [
                m
                for m in parent.methods
                if m.access == "public"
                and not m.is_constructor
                and not m.is_destructor
                and not m.is_static
            ]
        has_state = any(not f.is_static for f in parent.fields)
        return TraitSpec(name, list(methods), parsed=True, has_state=has_state)
    # Unparsed base: collect overriding virtual methods of every derived class.
    methods: list[Function] = []
    seen: set[str] = set()
    for cls in ir.classes:
        if name not in (base_name(b).rsplit("::", 1)[-1] for b in cls.base_classes):
            continue
        for m in cls.methods:
            if (m.is_virtual or m.is_override) and not m.is_destructor and m.name not in seen:
                seen.add(m.name)
                methods.append(m)
    return TraitSpec(name, methods, parsed=False, has_state=False)


def _resolve_collisions(cls: ClassDecl, result: HierarchyResult) -> None:
    owner_of: dict[str, str] = {}
    for trait in result.bases_of(cls.name):
        for method in trait.method_names():
            owner = owner_of.get(method)
            if owner is None:
                owner_of[method] = trait.name
                continue
            result.delegations.setdefault(cls.name, []).append(
                Delegation(trait.name, method, owner)
            )
            result.add_warning(
                cls.line,
                "method '"
                + method
                + "' of "
                + cls.name
                + " is declared by both "
                + owner
                + " and "
                + trait.name
                + "; using "
                + owner,
            )

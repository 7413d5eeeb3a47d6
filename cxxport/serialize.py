"""Serialization of IR objects to JSON-compatible dicts."""

from __future__ import annotations

import json
from dataclasses import MISSING, fields, is_dataclass

from .ir import IR, Diagnostic, Type


def serialize(obj: object) -> object:
    """Recursively serialize an object to a JSON-compatible structure.

    Dataclass nodes become dicts tagged with `_type`. Fields still at their
    default value are omitted, so analyzer annotations only appear on the
    declarations they apply to.
    """
    if obj is None:
        return None
    if isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, (list, tuple)):
        return [serialize(x) for x in obj]
    if isinstance(obj, (set, frozenset)):
        return sorted(serialize(x) for x in obj)  # type: ignore[type-var]
    if isinstance(obj, dict):
        return {str(k): serialize(v) for k, v in obj.items()}
    return _ir_serialize(obj)


def _ir_serialize(obj: object) -> object:
    if isinstance(obj, Type):
        return _serialize_type(obj)
    if isinstance(obj, Diagnostic):
        return str(obj)
    if isinstance(obj, IR):
        return {
            "_type": "IR",
            "classes": serialize(obj.classes),
            "functions": serialize(obj.functions),
            "globals": serialize(obj.globals),
            "enums": serialize(obj.enums),
            "concepts": serialize(obj.concepts),
            "diagnostics": serialize(obj.diagnostics),
        }
    if is_dataclass(obj):
        return _serialize_node(obj)
    raise TypeError("cannot serialize " + type(obj).__name__)


def _serialize_type(t: Type) -> dict[str, object]:
    d: dict[str, object] = {"kind": t.kind, "name": t.name}
    if t.element is not None:
        d["element"] = _serialize_type(t.element)
    if t.args:
        d["args"] = [_serialize_type(a) for a in t.args]
    if t.is_const:
        d["const"] = True
    if t.kind in ("pointer", "reference") or t.is_smart_pointer:
        d["ownership"] = t.ownership
    if t.size:
        d["size"] = t.size
    if t.is_rvalue:
        d["rvalue"] = True
    return d


def _serialize_node(obj: object) -> dict[str, object]:
    d: dict[str, object] = {"_type": type(obj).__name__}
    defaults = _defaults(type(obj))
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if f.name in defaults and value == defaults[f.name]:
            continue
        d[f.name] = serialize(value)
    return d


_DEFAULTS: dict[type, dict[str, object]] = {}


def _defaults(cls: type) -> dict[str, object]:
    """Default value of every field that has one, computed once per class."""
    if cls not in _DEFAULTS:
        out: dict[str, object] = {}
        for f in fields(cls):
            if f.default is not MISSING:
                out[f.name] = f.default
            elif f.default_factory is not MISSING:
                out[f.name] = f.default_factory()
        _DEFAULTS[cls] = out
    return _DEFAULTS[cls]


def to_json(ir: IR) -> str:
    """Pretty-printed JSON for an analyzed translation unit."""
    return json.dumps(serialize(ir), indent=2)

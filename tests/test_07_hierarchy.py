"""Inheritance model tests driven by 07_hierarchy/*.tests.

The expected section is `ok`, `error: <text>`, or one `path = value`
line per assertion. Paths walk the dict from `HierarchyResult.to_dict()`
plus a `warnings` list; a trailing `length` takes the size of the
container reached.
"""

from pathlib import Path

import pytest

from conftest import Case, case_params
from cxxport.frontend import parse
from cxxport.middleend import analyze, analyze_hierarchy

HIERARCHY_DIR = Path(__file__).parent / "07_hierarchy"


class SourceError(Exception):
    """The input did not parse cleanly."""


def hierarchy_of(source: str) -> dict[str, object]:
    ir = analyze(parse(source))
    for d in ir.diagnostics:
        if d.severity == "error":
            raise SourceError(d.message)
    hier = analyze_hierarchy(ir)
    out = hier.to_dict()
    out["warnings"] = [w.message for w in hier.warnings()]
    return out


def lookup(data: object, path: str) -> object:
    node = data
    for key in path.split("."):
        if key == "length":
            return len(node)  # type: ignore[arg-type]
        if isinstance(node, list):
            node = node[int(key)]
        elif isinstance(node, dict):
            node = node[key]
        else:
            raise KeyError(path)
    return node


def render(value: object) -> str:
    """Values as the .tests files spell them."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


@pytest.mark.parametrize("case", case_params(HIERARCHY_DIR))
def test_hierarchy(case: Case) -> None:
    expected = case.expected_lines()
    if expected and expected[0].startswith("error:"):
        wanted = expected[0][len("error:") :].strip()
        with pytest.raises(SourceError) as info:
            hierarchy_of(case.source)
        assert wanted.lower() in str(info.value).lower()
        return
    result = hierarchy_of(case.source)
    if expected == ["ok"]:
        return
    for line in expected:
        path, sep, value = line.partition("=")
        assert sep, "assertion needs '=': " + line
        path = path.strip()
        try:
            actual = lookup(result, path)
        except (KeyError, IndexError, TypeError):
            pytest.fail(path + " not in " + repr(result))
        assert render(actual) == value.strip(), path

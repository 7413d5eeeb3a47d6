"""Pytest configuration for the cxxport test suite."""

import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

# Make the cxxport package importable without installing it
sys.path.insert(0, str(Path(__file__).parent.parent))

POINT_SOURCE = """\
class Point {
public:
    Point(int x, int y) : x(x), y(y) {}
    int distance() const { return x * x + y * y; }
private:
    int x;
    int y;
};
"""


@dataclass
class Case:
    """One `=== name` block of a .tests file.

    The input section runs to the first `---`, the expected section to
    the next one.
    """

    id: str
    input: list[str]
    expected: list[str]

    @property
    def source(self) -> str:
        return "\n".join(self.input)

    def expected_lines(self) -> list[str]:
        return [line.strip() for line in self.expected if line.strip()]


def _section(lines: list[str], i: int) -> tuple[list[str], int]:
    out: list[str] = []
    while i < len(lines) and not lines[i].startswith("---"):
        out.append(lines[i])
        i += 1
    if i < len(lines) and lines[i] == "---":
        i += 1
    return out, i


def read_cases(directory: Path) -> list[Case]:
    """Every case under `directory`, ids as `<file stem>/<case name>`."""
    cases: list[Case] = []
    for path in sorted(directory.glob("*.tests")):
        lines = path.read_text().split("\n")
        i = 0
        while i < len(lines):
            if not lines[i].startswith("=== "):
                i += 1
                continue
            name = lines[i][4:].strip()
            given, i = _section(lines, i + 1)
            expected, i = _section(lines, i)
            cases.append(Case(path.stem + "/" + name, given, expected))
    return cases


def case_params(directory: Path) -> list:
    return [pytest.param(case, id=case.id) for case in read_cases(directory)]


@pytest.fixture
def point_source() -> str:
    """A two-field class with a constructor and one const method."""
    return POINT_SOURCE

"""Generator tests driven by codegen/*.tests.

    === test name
    target: go
    opt-level: 1
    gen-tests: true
    C++ source here
    ---
    expected snippet, matched line by line ignoring indentation
    ...
    another snippet
    !absent text
    ---

Leading `key: value` lines of the input section are options. In the
expected section `...` separates snippets that may appear anywhere in the
output, and a line starting with `!` names text that must not appear.
"""

from pathlib import Path

import pytest

from conftest import Case, case_params
from cxxport.driver import TranspileOptions, Transpiler

CODEGEN_DIR = Path(__file__).parent / "codegen"


def _flag(value: str) -> bool:
    return value == "true"


SETTERS = {
    "target": lambda o, v: setattr(o, "target", v),
    "opt-level": lambda o, v: setattr(o, "opt_level", int(v)),
    "gen-tests": lambda o, v: setattr(o, "generate_tests", _flag(v)),
    "package": lambda o, v: setattr(o, "package_name", v),
    "no-comments": lambda o, v: setattr(o, "preserve_comments", not _flag(v)),
    "no-safety-checks": lambda o, v: setattr(o, "safety_checks", not _flag(v)),
}


def options_and_source(case: Case) -> tuple[TranspileOptions, str]:
    options = TranspileOptions()
    lines = list(case.input)
    while lines:
        key, sep, value = lines[0].partition(":")
        if not sep or key.strip() not in SETTERS:
            break
        SETTERS[key.strip()](options, value.strip())
        lines.pop(0)
    return options, "\n".join(lines) + "\n"


def generate(case: Case) -> str:
    """Generated code, with any Go test companion appended."""
    options, source = options_and_source(case)
    result = Transpiler(options).transpile_source(source, "out")
    return "\n".join([result.code] + [text for _, text in result.companions])


def significant(text: str) -> list[str]:
    return [line.strip() for line in text.split("\n") if line.strip()]


def contains_block(output: list[str], block: list[str]) -> bool:
    """True when `block` occurs as consecutive lines of `output`."""
    if not block:
        return True
    width = len(block)
    return any(output[i : i + width] == block for i in range(len(output) - width + 1))


def expectations(case: Case) -> tuple[list[list[str]], list[str]]:
    """(snippets that must appear, texts that must not)."""
    snippets: list[list[str]] = [[]]
    absent: list[str] = []
    for line in case.expected:
        if line.strip() == "...":
            snippets.append([])
        elif line.startswith("!"):
            absent.append(line[1:].strip())
        elif line.strip():
            snippets[-1].append(line.strip())
    return snippets, absent


@pytest.mark.parametrize("case", case_params(CODEGEN_DIR))
def test_codegen(case: Case) -> None:
    output = generate(case)
    lines = significant(output)
    snippets, absent = expectations(case)
    for block in snippets:
        if not contains_block(lines, block):
            pytest.fail("missing:\n" + "\n".join(block) + "\n--- got ---\n" + output)
    for text in absent:
        assert text not in output, "unexpected " + repr(text)

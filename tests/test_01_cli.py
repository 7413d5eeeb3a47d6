"""CLI tests: run `python -m cxxport` in a scratch directory.

Cases live in 01_cli/*.tests. The first input line is `args: ...`; any
lines after it are written to input.cpp. Expected lines are checks:

    exit: N                 exact exit code
    exit-not: N             exit code must differ from N
    stderr: TEXT            whole stderr, trailing newline ignored
    stderr-contains: TEXT
    stderr-empty: true
    stdout-contains: TEXT
    stdout-empty: true
    file-contains: PATH: TEXT
"""

import os
import subprocess
import sys
from pathlib import Path

import pytest

from conftest import Case, case_params

CLI_DIR = Path(__file__).parent / "01_cli"
REPO_DIR = Path(__file__).parent.parent


def invoke(case: Case, workdir: Path) -> subprocess.CompletedProcess[str]:
    lines = list(case.input)
    args: list[str] = []
    if lines and lines[0].startswith("args:"):
        args = lines.pop(0)[len("args:") :].split()
    source = "\n".join(lines)
    if source.strip():
        (workdir / "input.cpp").write_text(source + "\n")
    env = dict(os.environ)
    env["PYTHONPATH"] = str(REPO_DIR) + os.pathsep + env.get("PYTHONPATH", "")
    return subprocess.run(
        [sys.executable, "-m", "cxxport", *args],
        input="",
        capture_output=True,
        text=True,
        errors="replace",
        cwd=workdir,
        env=env,
    )


def check(directive: str, arg: str, run: subprocess.CompletedProcess[str], workdir: Path) -> None:
    context = "\nstdout: " + run.stdout[:400] + "\nstderr: " + run.stderr
    if directive == "exit":
        assert run.returncode == int(arg), context
    elif directive == "exit-not":
        assert run.returncode != int(arg), context
    elif directive == "stderr":
        assert run.stderr.rstrip("\n") == arg
    elif directive == "stderr-contains":
        assert arg in run.stderr, context
    elif directive == "stderr-empty":
        assert run.stderr == ""
    elif directive == "stdout-contains":
        assert arg in run.stdout, context
    elif directive == "stdout-empty":
        assert run.stdout == ""
    elif directive == "file-contains":
        name, text = (part.strip() for part in arg.split(":", 1))
        written = workdir / name
        assert written.exists(), name + " was not written" + context
        assert text in written.read_text()
    else:
        pytest.fail("unknown directive " + directive)


@pytest.mark.parametrize("case", case_params(CLI_DIR))
def test_cli(case: Case, tmp_path: Path) -> None:
    run = invoke(case, tmp_path)
    for line in case.expected_lines():
        directive, _, arg = line.partition(":")
        check(directive, arg.strip(), run, tmp_path)

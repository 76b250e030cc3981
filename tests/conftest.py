# tests/conftest.py
"""
Shared fixtures for the bootstrapper tests.

No test talks to a real conda, pip or system package manager: every stage
receives a FakeRunner that records the commands it is asked to run and answers
with scripted CommandResults.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import pytest

import setup_pipeline
from common import CommandResult
from setup_pipeline import CondaEnvironment


@dataclass
class Call:
    args: List[str]
    env: Dict[str, str]
    capture: bool = False
    log_path: Optional[Path] = None
    requirements: Optional[str] = None

    @property
    def line(self) -> str:
        return " ".join(self.args)


@dataclass
class _Rule:
    fragment: str
    results: List[CommandResult] = field(default_factory=list)


class FakeRunner:
    """
    Scripted stand-in for common.CommandRunner.

    `on(fragment, *results)` queues results for any command whose joined
    command line contains `fragment`; each result is an exit code or an
    (exit code, output) pair, and the last one repeats. Commands without a
    rule succeed with empty output. Output for `log_path` runs is written to
    the log file the way the real tee does.
    """

    def __init__(self, tools=(), env=None, _rules=None, _calls=None):
        self.tools = set(tools)
        self.env = dict(env or {})
        self.rules: List[_Rule] = _rules if _rules is not None else []
        self.calls: List[Call] = _calls if _calls is not None else []

    def on(self, fragment: str, *results, output: str = "") -> "FakeRunner":
        rule = _Rule(fragment)
        for result in results or (0,):
            code, text = result if isinstance(result, tuple) else (result, output)
            rule.results.append(CommandResult([], code, text))
        self.rules.append(rule)
        return self

    def with_env(self, overlay):
        merged = dict(self.env)
        merged.update(overlay)
        return FakeRunner(self.tools, merged, _rules=self.rules, _calls=self.calls)

    def environ(self):
        return {"PATH": "/usr/bin:/bin", **self.env}

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.tools else None

    def run(self, cmd, capture=False, log_path=None, skip_blank_lines=False):
        args = [str(part) for part in cmd]
        call = Call(args, dict(self.env), capture, log_path)
        if "-r" in args:
            call.requirements = Path(args[args.index("-r") + 1]).read_bytes().decode("utf-8", errors="replace")
        self.calls.append(call)

        scripted = self._next(call.line)
        if log_path is not None:
            Path(log_path).write_text(scripted.output)
        return CommandResult(args, scripted.returncode, scripted.output)

    def _next(self, line: str) -> CommandResult:
        for rule in self.rules:
            if rule.fragment in line and rule.results:
                return rule.results.pop(0) if len(rule.results) > 1 else rule.results[0]
        return CommandResult([], 0, "")

    def commands(self, fragment: str) -> List[Call]:
        return [c for c in self.calls if fragment in c.line]


@pytest.fixture
def fake_runner():
    return FakeRunner(tools={"conda"})


@pytest.fixture
def conda_prefix(tmp_path) -> Path:
    """A fake environment prefix with an interpreter in bin/."""
    prefix = tmp_path / "envs" / "uvr_env"
    (prefix / "bin").mkdir(parents=True)
    (prefix / "bin" / "python").write_text("")
    return prefix


@pytest.fixture
def env_list_json(conda_prefix):
    return json.dumps({"envs": ["/opt/conda", str(conda_prefix)]})


@pytest.fixture
def environment(conda_prefix) -> CondaEnvironment:
    return CondaEnvironment("uvr_env", conda_prefix, conda="/usr/bin/conda")


@pytest.fixture
def requirements_file(tmp_path) -> Path:
    path = tmp_path / "requirements.txt"
    path.write_text(
        "numpy==1.23.5\n"
        "playsound==1.3.0\n"
        "pyglet==1.5.23\n"
        "soundfile==0.11.0\n"
        "Dora==0.0.3\n"
    )
    return path


@pytest.fixture(autouse=True)
def isolated_library_dirs(monkeypatch, tmp_path):
    """Keep libsndfile detection away from the host's real /usr/lib."""
    lib_dir = tmp_path / "system_lib"
    lib_dir.mkdir()
    monkeypatch.setattr(setup_pipeline, "LIBRARY_SEARCH_DIRS", [lib_dir])
    return lib_dir


@pytest.fixture
def temp_dir(tmp_path) -> Path:
    path = tmp_path / "tmp"
    path.mkdir()
    return path


@pytest.fixture
def make_runner():
    return FakeRunner

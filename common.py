#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
common.py
Shared configuration, constants, logging and subprocess helpers for the
UVR environment bootstrapper.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.prompt import Prompt


# --- Configuration Constants ---
DEFAULT_ENV_NAME = os.getenv("UVR_ENV_NAME", "uvr_env")
DEFAULT_PYTHON_VERSION = os.getenv("UVR_PYTHON_VERSION", "3.10")
DEFAULT_REQUIREMENTS = Path(os.getenv("UVR_REQUIREMENTS", "requirements.txt"))
DEFAULT_ENTRY_POINT = Path(os.getenv("UVR_ENTRY_POINT", "UVR.py"))

# Dora pulls in the deprecated 'sklearn' shim package; pip refuses it without this flag.
SKLEARN_DEPRECATION_ENV = {"SKLEARN_ALLOW_DEPRECATED_SKLEARN_PACKAGE_INSTALL": "True"}

PLAYSOUND_FALLBACK_SPEC = "playsound==1.2.2"
SKLEARN_STANDALONE_SPEC = "scikit-learn"
FILTERED_REQUIREMENTS_PREFIX = "requirements_no_playsound"

LIBRARY_SEARCH_DIRS = [
    Path("/usr/lib/x86_64-linux-gnu"),
    Path("/usr/lib"),
    Path("/usr/local/lib"),
]

COMMAND_NOT_FOUND = 127


# --- Console & Logging ---
console = Console(width=120)
logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console, markup=True)]
)
log = logging.getLogger("uvr_bootstrap")


# --- Subprocess Helpers ---
@dataclass
class CommandResult:
    args: list[str]
    returncode: int
    output: str = ""
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def format_command(cmd) -> str:
    return " ".join(str(part) for part in cmd)


@dataclass
class CommandRunner:
    """
    Runs external commands with an optional environment overlay.

    Every pipeline stage goes through a runner so the activated conda
    environment (and any exported flags) follow all later commands.
    """
    env: dict[str, str] = field(default_factory=dict)

    def with_env(self, overlay: dict[str, str]) -> "CommandRunner":
        merged = dict(self.env)
        merged.update(overlay)
        return type(self)(env=merged)

    def environ(self) -> dict[str, str]:
        full_env = os.environ.copy()
        full_env.update(self.env)
        return full_env

    def which(self, name: str) -> str | None:
        return shutil.which(name, path=self.environ().get("PATH"))

    def run(self, cmd, capture: bool = False, log_path: Path | None = None,
            skip_blank_lines: bool = False) -> CommandResult:
        """
        Runs `cmd` to completion and returns its exit status.

        capture=True collects stdout and stderr silently. With `log_path` the
        combined output is streamed to the terminal and written to that file,
        replacing whatever it held before. Otherwise output goes straight to the
        terminal.
        """
        args = [str(part) for part in cmd]
        log.debug(f"Running: {escape(format_command(args))}")
        try:
            if capture:
                proc = subprocess.run(args, env=self.environ(), capture_output=True,
                                      text=True, errors="replace")
                return CommandResult(args, proc.returncode, proc.stdout or "", proc.stderr or "")
            if log_path is None and not skip_blank_lines:
                return CommandResult(args, subprocess.call(args, env=self.environ()))
            return self._stream(args, log_path, skip_blank_lines)
        except FileNotFoundError:
            log.debug(f"Command not found: {args[0]}")
            return CommandResult(args, COMMAND_NOT_FOUND)

    def _stream(self, args: list[str], log_path: Path | None, skip_blank_lines: bool) -> CommandResult:
        collected = []
        log_file = open(log_path, "w", encoding="utf-8") if log_path else None
        try:
            with subprocess.Popen(args, env=self.environ(), stdout=subprocess.PIPE,
                                  stderr=subprocess.STDOUT, text=True, errors="replace",
                                  bufsize=1) as proc:
                for line in proc.stdout:
                    if skip_blank_lines and not line.strip():
                        continue
                    sys.stdout.write(line)
                    sys.stdout.flush()
                    collected.append(line)
                    if log_file:
                        log_file.write(line)
                returncode = proc.wait()
        finally:
            if log_file:
                log_file.close()
        return CommandResult(args, returncode, "".join(collected))


# --- General Utility Functions ---
def privileged(runner: CommandRunner, cmd: list[str]) -> list[str]:
    """Prefixes a system command with sudo unless already root or sudo is missing."""
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        return list(cmd)
    if runner.which("sudo") is None:
        return list(cmd)
    return ["sudo", *cmd]


def remove_file(path: Path | None):
    if path is None:
        return
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning(f"Could not remove temporary file {path}: {e}")


def pause_for_confirmation(message: str) -> bool:
    """Blocks until the operator presses Enter. Ctrl+C propagates as KeyboardInterrupt."""
    if not sys.stdin or not sys.stdin.isatty():
        log.warning("No interactive terminal available to confirm; not continuing. Use --yes to override.")
        return False
    Prompt.ask(message, default="", show_default=False, console=console)
    return True


def format_duration(seconds: float) -> str:
    ms = int((seconds - int(seconds)) * 1000)
    s = int(seconds)
    m, s = divmod(s, 60)
    h, m = divmod(m, 60)
    return f"{h:02d}:{m:02d}:{s:02d}.{ms:03d}"

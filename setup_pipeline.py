#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
setup_pipeline.py
Provisioning stages for the UVR bootstrapper.
Covers conda environment creation/activation, requirements installation with
remediation for known build failures, native library verification and the
final application launch.
"""
from __future__ import annotations
import json
import os
import re
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from common import (
    log, console, CommandRunner, CommandResult,
    SKLEARN_DEPRECATION_ENV, PLAYSOUND_FALLBACK_SPEC, SKLEARN_STANDALONE_SPEC,
    FILTERED_REQUIREMENTS_PREFIX, LIBRARY_SEARCH_DIRS,
    privileged, remove_file, format_command
)


# --- Errors ---
class BootstrapError(RuntimeError):
    """Fatal setup failure; the bootstrap stops with a non-zero exit status."""


class CondaNotFoundError(BootstrapError):
    pass


class EnvironmentCreationError(BootstrapError):
    pass


class EnvironmentActivationError(BootstrapError):
    pass


class BootstrapAborted(BootstrapError):
    """The operator declined to continue past a failed check."""


# --- Environment Ensurer ---
@dataclass
class CondaEnvironment:
    name: str
    prefix: Path
    conda: str = "conda"

    @property
    def bin_dir(self) -> Path:
        return self.prefix / "bin"

    @property
    def python(self) -> Path:
        return self.bin_dir / "python"

    @property
    def lib_dir(self) -> Path:
        return self.prefix / "lib"

    def activation_env(self, runner: CommandRunner) -> dict[str, str]:
        """Variables `conda activate` would export for this environment."""
        current_path = runner.environ().get("PATH", "")
        return {
            "CONDA_PREFIX": str(self.prefix),
            "CONDA_DEFAULT_ENV": self.name,
            "PATH": os.pathsep.join(p for p in [str(self.bin_dir), current_path] if p),
        }


def list_conda_environments(runner: CommandRunner, conda: str) -> dict[str, Path]:
    """
    Maps environment names to prefixes using `conda env list --json`.

    The root prefix (`root_prefix`, or the first listed env) is the `base` environment;
    every other prefix is named by its final path component.
    """
    result = runner.run([conda, "env", "list", "--json"], capture=True)
    if not result.ok:
        raise BootstrapError(f"'conda env list' failed (exit status {result.returncode}): {result.error.strip()}")
    try:
        listing = json.loads(result.output)
        env_prefixes = [Path(p) for p in listing.get("envs", [])]
    except (ValueError, AttributeError, TypeError) as e:
        raise BootstrapError(f"Could not parse 'conda env list --json' output: {e}") from e
    if not env_prefixes:
        return {}
    root_prefix = Path(listing.get("root_prefix") or env_prefixes[0])
    environments = {p.name: p for p in env_prefixes if p != root_prefix}
    environments["base"] = root_prefix
    return environments


def conda_env_exists(runner: CommandRunner, conda: str, env_name: str) -> bool:
    return env_name in list_conda_environments(runner, conda)


def ensure_conda_environment(runner: CommandRunner, env_name: str, python_version: str) -> CondaEnvironment:
    """
    Creates the named conda environment if it is missing and returns it activated.

    Raises CondaNotFoundError, EnvironmentCreationError or EnvironmentActivationError;
    all of them are fatal to the bootstrap.
    """
    conda = runner.which("conda")
    if conda is None:
        raise CondaNotFoundError("conda is not installed or not in PATH")

    if conda_env_exists(runner, conda, env_name):
        log.info(f"Conda environment '{env_name}' already exists. Skipping creation.")
    else:
        log.info(f"Creating conda environment '{env_name}' with Python {python_version}...")
        result = runner.run([conda, "create", "-n", env_name, f"python={python_version}", "-y"])
        if not result.ok:
            raise EnvironmentCreationError(f"Failed to create conda environment '{env_name}' (exit status {result.returncode})")
        log.info(f"[green]Conda environment '{env_name}' created successfully.[/]")

    log.info(f"Activating conda environment '{env_name}'...")
    prefix = list_conda_environments(runner, conda).get(env_name)
    if prefix is None:
        raise EnvironmentActivationError(f"Failed to activate conda environment '{env_name}': not listed by conda")
    environment = CondaEnvironment(env_name, prefix, conda=conda)
    if not environment.python.exists():
        raise EnvironmentActivationError(f"Failed to activate conda environment '{env_name}': no interpreter at {environment.python}")
    log.debug(f"Environment prefix: {prefix}")
    return environment


# --- Dependency Installer ---
PLAYSOUND_BUILD_FAILURE = re.compile(r"Failed to build.*playsound|ERROR.*playsound", re.IGNORECASE)
PLAYSOUND_ALREADY_SATISFIED = re.compile(r"Requirement already satisfied.*playsound", re.IGNORECASE)
SKLEARN_BUILD_FAILURE = re.compile(r"Failed to build.*sklearn|ERROR.*sklearn", re.IGNORECASE)


class InstallStage(Enum):
    ATTEMPTED = "attempted"
    REMEDIATED = "remediated"
    RETRIED = "retried"
    FINAL = "final"


@dataclass
class InstallOutcome:
    returncode: int = 1
    remediation: str | None = None
    stages: list[InstallStage] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class RemediationRule:
    name: str
    matches: Callable[[str], bool]
    apply: Callable[["RequirementsInstaller", InstallOutcome], int]


def playsound_build_failed(install_log: str) -> bool:
    # A satisfied playsound disqualifies the rule even if another package mentions it.
    return bool(PLAYSOUND_BUILD_FAILURE.search(install_log)) and not PLAYSOUND_ALREADY_SATISFIED.search(install_log)


def sklearn_build_failed(install_log: str) -> bool:
    return bool(SKLEARN_BUILD_FAILURE.search(install_log))


def write_requirements_without(requirements_path: Path, package: str, directory: Path | None = None) -> Path:
    """Writes a temp copy of the requirements with every line starting with `package` removed."""
    # Bytes, so a file in any encoding is filtered unchanged.
    prefix = package.encode()
    kept = [line for line in Path(requirements_path).read_bytes().splitlines(keepends=True)
            if not line.startswith(prefix)]
    fd, filtered_name = tempfile.mkstemp(prefix=FILTERED_REQUIREMENTS_PREFIX, suffix=".txt", dir=directory)
    with os.fdopen(fd, "wb") as f:
        f.writelines(kept)
    return Path(filtered_name)


class RequirementsInstaller:
    """
    Installs a requirements file into the active environment.

    A failed install is classified against REMEDIATION_RULES (first match wins);
    the matching remediation runs once and its retry status becomes final.
    The combined pip output of the latest attempt lives in a temp log that is
    removed when `run` returns.
    """

    def __init__(self, runner: CommandRunner, python: Path | str, requirements_path: Path,
                 extra_env: dict[str, str] | None = None, temp_dir: Path | None = None):
        self.runner = runner.with_env(SKLEARN_DEPRECATION_ENV if extra_env is None else extra_env)
        self.python = str(python)
        self.requirements_path = Path(requirements_path)
        self.temp_dir = temp_dir
        self.log_path: Path | None = None

    def pip_install(self, *specs: str) -> CommandResult:
        return self.runner.run([self.python, "-m", "pip", "install", *specs])

    def install_requirements(self, requirements_path: Path | None = None) -> CommandResult:
        path = requirements_path or self.requirements_path
        return self.runner.run([self.python, "-m", "pip", "install", "-r", str(path)], log_path=self.log_path)

    def read_log(self) -> str:
        try:
            return self.log_path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return ""

    def run(self) -> InstallOutcome:
        if not self.requirements_path.is_file():
            raise FileNotFoundError(f"Requirements file not found: {self.requirements_path}")
        log.info(f"Installing dependencies from {self.requirements_path}...")

        fd, log_name = tempfile.mkstemp(prefix="uvr_pip_", suffix=".log", dir=self.temp_dir)
        os.close(fd)
        self.log_path = Path(log_name)
        outcome = InstallOutcome()
        try:
            result = self.install_requirements()
            outcome.returncode = result.returncode
            outcome.stages.append(InstallStage.ATTEMPTED)
            if not result.ok:
                rule = classify_install_failure(self.read_log())
                if rule is None:
                    log.debug("Install failure did not match any known remediation.")
                else:
                    console.print()
                    outcome.remediation = rule.name
                    outcome.returncode = rule.apply(self, outcome)
        finally:
            remove_file(self.log_path)
            self.log_path = None
        outcome.stages.append(InstallStage.FINAL)
        return outcome

    def remediate_playsound(self, outcome: InstallOutcome) -> int:
        log.info("[yellow]Detected playsound installation issue. Attempting workaround...[/]")
        log.info(f"Trying {PLAYSOUND_FALLBACK_SPEC}...")
        pinned = self.pip_install(PLAYSOUND_FALLBACK_SPEC)
        outcome.stages.append(InstallStage.REMEDIATED)
        if pinned.ok:
            log.info("playsound installed successfully. Installing remaining packages...")
            retry = self.install_requirements()
        else:
            log.warning("playsound 1.2.2 also failed. Skipping playsound (it's optional for sound notifications)...")
            filtered = write_requirements_without(self.requirements_path, "playsound", self.temp_dir)
            try:
                log.info("Installing remaining packages without playsound...")
                retry = self.install_requirements(filtered)
            finally:
                remove_file(filtered)
        outcome.stages.append(InstallStage.RETRIED)
        return retry.returncode

    def remediate_sklearn(self, outcome: InstallOutcome) -> int:
        log.info("[yellow]Detected sklearn installation issue. Installing scikit-learn first...[/]")
        standalone = self.pip_install(SKLEARN_STANDALONE_SPEC)
        if not standalone.ok:
            log.warning("scikit-learn could not be installed on its own.")
            return outcome.returncode
        outcome.stages.append(InstallStage.REMEDIATED)
        log.info("Retrying installation with scikit-learn installed...")
        retry = self.install_requirements()
        outcome.stages.append(InstallStage.RETRIED)
        return retry.returncode


REMEDIATION_RULES = [
    RemediationRule("playsound", playsound_build_failed, RequirementsInstaller.remediate_playsound),
    RemediationRule("sklearn", sklearn_build_failed, RequirementsInstaller.remediate_sklearn),
]


def classify_install_failure(install_log: str) -> RemediationRule | None:
    for rule in REMEDIATION_RULES:
        if rule.matches(install_log):
            return rule
    return None


# --- System Library Verifier ---
@dataclass
class LibraryCheck:
    name: str
    status: str  # found | installed | missing
    detail: str = ""


@dataclass
class LibraryProbe:
    name: str
    search_dirs: list[Path]

    def found(self, runner: CommandRunner) -> bool:
        cache = runner.run(["ldconfig", "-p"], capture=True)
        if self.name.lower() in cache.output.lower():
            return True
        for directory in self.search_dirs:
            for candidate in (f"lib{self.name}.so", f"lib{self.name}.so.1"):
                if (Path(directory) / candidate).is_file():
                    return True
        return False


@dataclass(frozen=True)
class SystemPackageManager:
    name: str
    install: tuple[str, ...]
    opengl_package_sets: tuple[tuple[str, ...], ...]
    ffmpeg_packages: tuple[str, ...] = ("ffmpeg",)
    refresh: tuple[str, ...] = ()

    def refresh_index(self, runner: CommandRunner) -> CommandResult | None:
        if not self.refresh:
            return None
        return runner.run(privileged(runner, list(self.refresh)))

    def install_packages(self, runner: CommandRunner, packages) -> CommandResult:
        return runner.run(privileged(runner, [*self.install, *packages]), skip_blank_lines=True)


SYSTEM_PACKAGE_MANAGERS = (
    SystemPackageManager(
        "apt-get", ("apt-get", "install", "-y"),
        # Ubuntu 20.04+ names first, then the pre-20.04 GLX package.
        (("libglu1-mesa", "libgl1"), ("libglu1-mesa", "libgl1-mesa-glx")),
        refresh=("apt-get", "update", "-qq"),
    ),
    SystemPackageManager("yum", ("yum", "install", "-y"), (("mesa-libGLU", "mesa-libGL"),)),
    SystemPackageManager("pacman", ("pacman", "-S", "--noconfirm"), (("glu", "mesa"),)),
)

OPENGL_PROBE = "from pyglet.gl.lib import link_GL, link_GLU"
OPENGL_MANUAL_INSTRUCTIONS = [
    "Please install them manually using your system package manager:",
    "  Ubuntu/Debian (20.04+): sudo apt-get install libglu1-mesa libgl1",
    "  Ubuntu/Debian (older): sudo apt-get install libglu1-mesa libgl1-mesa-glx",
    "  Fedora/RHEL: sudo yum install mesa-libGLU mesa-libGL",
    "  Arch: sudo pacman -S glu mesa",
    "After installing, you may need to run: sudo ldconfig",
]
CONTINUE_PROMPT = "Press Enter to continue anyway (will likely fail), or Ctrl+C to exit..."


def detect_package_manager(runner: CommandRunner) -> SystemPackageManager | None:
    for manager in SYSTEM_PACKAGE_MANAGERS:
        if runner.which(manager.name):
            return manager
    return None


def ensure_libsndfile(runner: CommandRunner, environment: CondaEnvironment) -> LibraryCheck:
    probe = LibraryProbe("sndfile", [*LIBRARY_SEARCH_DIRS, environment.lib_dir])
    if probe.found(runner):
        return LibraryCheck("libsndfile", "found")
    log.info("libsndfile library not found. Installing via conda...")
    result = runner.run([environment.conda, "install", "-n", environment.name, "-c", "conda-forge", "libsndfile", "-y"])
    if result.ok:
        return LibraryCheck("libsndfile", "installed", "conda-forge")
    log.warning("Failed to install libsndfile via conda.")
    log.warning("Install manually: sudo apt-get install libsndfile1")
    return LibraryCheck("libsndfile", "missing", "sudo apt-get install libsndfile1")


def probe_opengl(runner: CommandRunner, environment: CondaEnvironment, quiet: bool = False) -> bool:
    """Checks that pyglet can actually link GL and GLU, not just that the files exist."""
    return runner.run([str(environment.python), "-c", OPENGL_PROBE], capture=quiet).ok


def install_opengl(runner: CommandRunner, manager: SystemPackageManager | None) -> bool:
    if manager is None:
        log.warning("No supported system package manager found (apt-get, yum, pacman).")
        return False
    log.info(f"Installing OpenGL libraries via {manager.name}...")
    manager.refresh_index(runner)
    for attempt, packages in enumerate(manager.opengl_package_sets):
        if attempt:
            log.info("Trying alternative package names...")
        if manager.install_packages(runner, packages).ok:
            return True
    return False


def _confirm_or_abort(confirm: Callable[[str], bool]):
    if not confirm(CONTINUE_PROMPT):
        raise BootstrapAborted("Stopped after OpenGL verification failed")


def ensure_opengl(runner: CommandRunner, environment: CondaEnvironment,
                  confirm: Callable[[str], bool]) -> LibraryCheck:
    log.info("Testing OpenGL library availability...")
    if probe_opengl(runner, environment):
        log.info("[green]✓ OpenGL libraries are available.[/]")
        return LibraryCheck("OpenGL", "found")

    log.warning("✗ OpenGL libraries test failed.")
    log.info("OpenGL libraries not accessible to pyglet. Attempting to install...")
    manager = detect_package_manager(runner)
    if not install_opengl(runner, manager):
        log.warning("[bold yellow]Failed to install OpenGL libraries automatically.[/]")
        for line in OPENGL_MANUAL_INSTRUCTIONS:
            log.warning(line)
        _confirm_or_abort(confirm)
        return LibraryCheck("OpenGL", "missing", "automatic install failed")

    runner.run(privileged(runner, ["ldconfig"]), capture=True)
    with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
                  TimeElapsedColumn(), console=console, transient=True) as progress:
        task = progress.add_task("Verifying installation...", total=None)
        verified = probe_opengl(runner, environment, quiet=True)
        progress.update(task, completed=1, total=1)
    if not verified:
        log.warning("Libraries installed but pyglet still cannot load them.")
        log.warning("Try running: sudo ldconfig")
        log.warning("Or restart your terminal and run the script again.")
        _confirm_or_abort(confirm)
        return LibraryCheck("OpenGL", "missing", f"installed via {manager.name}, still not loadable")
    log.info("[green]✓ OpenGL libraries verified successfully![/]")
    return LibraryCheck("OpenGL", "installed", manager.name)


def install_ffmpeg(runner: CommandRunner, manager: SystemPackageManager | None) -> bool:
    if manager is None:
        return False
    refreshed = manager.refresh_index(runner)
    if refreshed is not None and not refreshed.ok:
        return False
    return manager.install_packages(runner, manager.ffmpeg_packages).ok


def ensure_ffmpeg(runner: CommandRunner) -> LibraryCheck:
    if runner.which("ffmpeg") or runner.which("avconv"):
        log.info("[green]✓ ffmpeg is available.[/]")
        return LibraryCheck("ffmpeg", "found")
    log.info("ffmpeg not found. Installing ffmpeg for better audio support...")
    manager = detect_package_manager(runner)
    if install_ffmpeg(runner, manager):
        log.info("[green]✓ ffmpeg installed successfully.[/]")
        return LibraryCheck("ffmpeg", "installed", manager.name)
    log.info("Note: Failed to install ffmpeg automatically. Some audio features may be limited.")
    log.info("You can install it manually: sudo apt-get install ffmpeg")
    return LibraryCheck("ffmpeg", "missing", "sudo apt-get install ffmpeg")


def verify_system_libraries(runner: CommandRunner, environment: CondaEnvironment,
                            confirm: Callable[[str], bool]) -> list[LibraryCheck]:
    """Best-effort presence checks; only a declined OpenGL confirmation stops the run."""
    log.info("Checking for required system libraries...")
    checks = [
        ensure_libsndfile(runner, environment),
        ensure_opengl(runner, environment, confirm),
        ensure_ffmpeg(runner),
    ]

    status_styles = {"found": "green", "installed": "cyan", "missing": "bold red"}
    lib_table = Table(title="System Libraries", show_lines=True, highlight=True)
    lib_table.add_column("Library", style="cyan", justify="center")
    lib_table.add_column("Status", justify="center")
    lib_table.add_column("Detail", style="magenta")
    for check in checks:
        lib_table.add_row(check.name, f"[{status_styles[check.status]}]{check.status}[/]", check.detail)
    console.print(lib_table)
    return checks


# --- Launcher ---
def launch_application(runner: CommandRunner, environment: CondaEnvironment, entry_point: Path) -> int:
    """Clears the terminal and runs the application; its exit status is returned."""
    console.clear()
    log.info(f"Starting {Path(entry_point).name}...")
    cmd = [str(environment.python), str(entry_point)]
    log.debug(f"Launching: {format_command(cmd)}")
    return runner.run(cmd).returncode

#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
run_uvr.py - UVR Environment Bootstrapper

Prepares a conda environment for Ultimate Vocal Remover and launches it:
creates/activates the environment, installs requirements (working around
known playsound and scikit-learn build failures), checks libsndfile, OpenGL
and ffmpeg, then starts UVR.py with the environment's interpreter.
"""
import sys
import argparse
import logging
import time
from pathlib import Path

from common import (
    log, console, CommandRunner,
    DEFAULT_ENV_NAME, DEFAULT_PYTHON_VERSION, DEFAULT_REQUIREMENTS, DEFAULT_ENTRY_POINT,
    SKLEARN_DEPRECATION_ENV, pause_for_confirmation, format_duration
)
from setup_pipeline import (
    ensure_conda_environment, RequirementsInstaller,
    verify_system_libraries, launch_application
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bootstrap the UVR conda environment, install its dependencies and system libraries, "
                    "then launch UVR.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    env_group = parser.add_argument_group('Environment Arguments')
    env_group.add_argument("--env-name", type=str, default=DEFAULT_ENV_NAME, help="Name of the conda environment to create/reuse (env: UVR_ENV_NAME).")
    env_group.add_argument("--python-version", type=str, default=DEFAULT_PYTHON_VERSION, help="Python version for a newly created environment (env: UVR_PYTHON_VERSION).")

    path_group = parser.add_argument_group('Path Arguments')
    path_group.add_argument("--requirements", "-r", type=Path, default=DEFAULT_REQUIREMENTS, help="Requirements file to install (env: UVR_REQUIREMENTS).")
    path_group.add_argument("--entry-point", type=Path, default=DEFAULT_ENTRY_POINT, help="Application script launched after setup (env: UVR_ENTRY_POINT).")

    misc_group = parser.add_argument_group('Debugging and Miscellaneous')
    misc_group.add_argument("--yes", "-y", action="store_true", help="Continue past a failed OpenGL check without waiting for Enter.")
    misc_group.add_argument("--debug", action="store_true", help="Enable verbose DEBUG level logging and detailed tracebacks.")
    return parser


def make_confirm(assume_yes: bool):
    if assume_yes:
        def _confirm(message: str) -> bool:
            log.warning("Continuing anyway (--yes).")
            return True
        return _confirm
    return pause_for_confirmation


def main(args, runner: CommandRunner | None = None, confirm=None) -> int:
    """Runs every bootstrap stage in order and returns the process exit status."""
    start_time_total = time.time()
    runner = runner or CommandRunner()
    confirm = confirm or make_confirm(args.yes)

    log.info(f"[bold cyan]===== UVR Bootstrapper (environment: {args.env_name}) =====[/]")

    log.info("[bold magenta]== STAGE 1: Conda Environment ==[/]")
    environment = ensure_conda_environment(runner, args.env_name, args.python_version)
    runner = runner.with_env(environment.activation_env(runner))

    log.info("[bold magenta]== STAGE 2: Python Dependencies ==[/]")
    runner = runner.with_env(SKLEARN_DEPRECATION_ENV)
    outcome = RequirementsInstaller(runner, environment.python, args.requirements).run()
    if not outcome.ok:
        console.print()
        log.error("[bold red]Failed to install dependencies. Please check the errors above.[/]")
        return 1
    console.print()
    log.info("[green]Dependencies installed successfully.[/]")
    if outcome.remediation:
        log.debug(f"Remediation applied: {outcome.remediation} ({[s.value for s in outcome.stages]})")

    log.info("[bold magenta]== STAGE 3: System Libraries ==[/]")
    verify_system_libraries(runner, environment, confirm)
    log.info(f"Setup time: {format_duration(time.time() - start_time_total)}")

    log.info("[bold magenta]== STAGE 4: Launch ==[/]")
    return launch_application(runner, environment, args.entry_point)


def run(argv=None, runner: CommandRunner | None = None, confirm=None) -> int:
    args = build_parser().parse_args(argv)
    if args.debug:
        log.setLevel(logging.DEBUG)
        log.debug("Debug mode enabled. Logging will be verbose.")
        log.debug(f"Python version: {sys.version.split()[0]}")

    try:
        return main(args, runner=runner, confirm=confirm)
    except KeyboardInterrupt:
        log.warning("[bold yellow]\nProcess interrupted by user (Ctrl+C). Exiting.[/]")
        return 130
    except FileNotFoundError as e_fnf:
        log.error(f"[bold red][FILE NOT FOUND ERROR] {e_fnf}[/]")
        return 2
    except RuntimeError as e_rt:
        log.error(f"[bold red]Error: {e_rt}[/]")
        if args.debug: log.exception("Traceback for RuntimeError:")
        return 1
    except Exception as e_fatal:
        log.error(f"[bold red][FATAL SCRIPT ERROR] An unexpected error occurred: {e_fatal}[/]")
        if args.debug: log.exception("Full traceback for unexpected error:")
        return 1


# --- CLI Entry Point ---
if __name__ == "__main__":
    sys.exit(run())

from __future__ import annotations

import logging
import os
import shlex
import shutil
import signal
import subprocess
import sys
from typing import Iterable

import click

from dl_docker.options import (
    DEFAULT_GPUS,
    DEFAULT_NETWORK,
    DEFAULT_RUNTIME,
    DEFAULT_VOLUMES,
    LaunchError,
    RunOptions,
    build_command,
)


RUNTIME_ENV = "DL_DOCKER_RUNTIME"
LOG_LEVEL_ENV = "DL_DOCKER_LOG_LEVEL"
LOG_LEVEL_CHOICES = ("debug", "info", "warning", "error")
DEFAULT_LOG_LEVEL = "warning"
SIGNALED_EXIT_CODE = 1

LOGGER = logging.getLogger("dl_docker")
LOGGER.addHandler(logging.NullHandler())


def _normalize_log_level(value: object) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return DEFAULT_LOG_LEVEL


def _configure_logging(level: str) -> None:
    normalized = _normalize_log_level(level)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.WARNING))
    LOGGER.propagate = False


def _require_non_empty(_ctx: click.Context, param: click.Parameter, value: str) -> str:
    if not str(value or "").strip():
        raise click.BadParameter("must not be empty", param=param)
    return value


def _render_command(cmd: Iterable[str]) -> str:
    return " ".join(shlex.quote(str(part)) for part in cmd)


def _exit_code_from_returncode(returncode: int) -> int:
    # Negative return codes mean the child was killed by a signal.
    if returncode < 0:
        return SIGNALED_EXIT_CODE
    return returncode


def _wait_ignoring_interrupts(process: subprocess.Popen) -> int:
    # SIGINT reaches the child through the process group; the child decides how to exit.
    previous_handler = signal.signal(signal.SIGINT, signal.SIG_IGN)
    try:
        return process.wait()
    finally:
        signal.signal(signal.SIGINT, previous_handler)


def _launch(cmd: list[str]) -> int:
    executable = cmd[0]
    resolved = shutil.which(executable)
    if resolved is None:
        raise LaunchError(f"{executable} command not found in PATH")
    LOGGER.debug("Resolved runtime executable %s -> %s", executable, resolved)

    try:
        process = subprocess.Popen(cmd)
    except OSError as exc:
        raise LaunchError(f"Failed to run {executable}: {exc}") from exc

    returncode = _wait_ignoring_interrupts(process)
    exit_code = _exit_code_from_returncode(returncode)
    if returncode < 0:
        LOGGER.warning(
            "%s terminated by signal %d; exiting with %d",
            executable,
            -returncode,
            exit_code,
        )
    else:
        LOGGER.info("%s exited with code %d", executable, exit_code)
    return exit_code


@click.command(help="Run a deep learning container with host networking, all GPUs and a workspace mount.")
@click.argument("image_and_tag", callback=_require_non_empty)
@click.argument("network", required=False, default=DEFAULT_NETWORK)
@click.argument("gpus", required=False, default=DEFAULT_GPUS)
@click.argument("volumes", required=False, default=DEFAULT_VOLUMES)
@click.option("--name", required=True, callback=_require_non_empty, help="Name of the container.")
@click.option("--rm", "remove_on_exit", is_flag=True, default=False, help="Remove the container after it exits.")
@click.option(
    "--runtime",
    default=os.environ.get(RUNTIME_ENV, DEFAULT_RUNTIME),
    show_default=True,
    help="Container runtime executable.",
)
@click.option("--dry-run", is_flag=True, default=False, help="Print the command without running it.")
@click.option(
    "--log-level",
    default=_normalize_log_level(os.environ.get(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL)),
    show_default=True,
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
    help="Diagnostic logging verbosity (written to stderr).",
)
@click.pass_context
def main(
    ctx: click.Context,
    image_and_tag: str,
    network: str,
    gpus: str,
    volumes: str,
    name: str,
    remove_on_exit: bool,
    runtime: str,
    dry_run: bool,
    log_level: str,
) -> None:
    _configure_logging(log_level)

    options = RunOptions(
        image_and_tag=image_and_tag,
        name=name,
        remove_on_exit=remove_on_exit,
        network=network,
        gpus=gpus,
        volumes=volumes,
    )
    LOGGER.debug("Resolved run options: %s", options)

    cmd = build_command(options, runtime=runtime)
    click.echo(f"Running command: {_render_command(cmd)}")

    if dry_run:
        LOGGER.info("Dry run requested; not launching %s", runtime)
        return

    ctx.exit(_launch(cmd))


if __name__ == "__main__":
    main()

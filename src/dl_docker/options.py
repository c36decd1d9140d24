from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

import click


DEFAULT_RUNTIME = "docker"
DEFAULT_NETWORK = "host"
DEFAULT_GPUS = "all"
DEFAULT_VOLUMES = "~/workspace:/root/workspace"
HOME_ENV = "HOME"
HOME_MARKER = "~"


class HomeDirectoryError(click.ClickException):
    """Raised when the home directory needed for volume expansion is unavailable."""


class LaunchError(click.ClickException):
    """Raised when the container runtime cannot be found or spawned."""


@dataclass(frozen=True)
class RunOptions:
    image_and_tag: str
    name: str
    remove_on_exit: bool = False
    network: str | None = DEFAULT_NETWORK
    gpus: str | None = DEFAULT_GPUS
    volumes: str | None = DEFAULT_VOLUMES


def _home_directory(env: Mapping[str, str] | None = None) -> str:
    source = os.environ if env is None else env
    home = source.get(HOME_ENV)
    if home is None:
        raise HomeDirectoryError(f"{HOME_ENV} environment variable is not set; cannot expand volume path")
    return home


def expand_home_in_volume_spec(volume_spec: str, env: Mapping[str, str] | None = None) -> str:
    """Replace every ``~`` in ``volume_spec`` with the current home directory.

    The substitution is purely textual. Host and container halves are not
    inspected, so a ``~`` anywhere in the string is replaced.
    """
    home = _home_directory(env)
    return volume_spec.replace(HOME_MARKER, home)


def build_run_args(options: RunOptions, env: Mapping[str, str] | None = None) -> list[str]:
    args = ["run", "-it", "-d", "--name", options.name]

    if options.remove_on_exit:
        args.append("--rm")

    if options.gpus is not None:
        args.extend(["--gpus", options.gpus])

    if options.network is not None:
        args.extend(["--net", options.network])

    if options.volumes is not None:
        args.extend(["-v", expand_home_in_volume_spec(options.volumes, env)])

    args.append(options.image_and_tag)
    return args


def build_command(
    options: RunOptions,
    *,
    runtime: str = DEFAULT_RUNTIME,
    env: Mapping[str, str] | None = None,
) -> list[str]:
    return [runtime, *build_run_args(options, env)]

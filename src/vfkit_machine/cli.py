"""Command-line interface for vfkit-machine.

Usage:
    vfkit-machine create dev --cpus 2 --memory 2048    # Create and start
    vfkit-machine status dev                           # Running / Stopped / Error
    vfkit-machine url dev                              # tcp://192.168.64.5:2376
    vfkit-machine stop dev
    vfkit-machine rm dev
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from collections.abc import Awaitable, Callable, Coroutine
from pathlib import Path
from typing import NoReturn

import click
from pydantic import ValidationError

from vfkit_machine import (
    FirewallBlockedError,
    Machine,
    MachineConfig,
    MachineError,
    MachineExistsError,
    MachineNotFoundError,
    MachineRunningError,
    NetworkMode,
    PermanentError,
    Settings,
    TransientError,
    __version__,
)
from vfkit_machine._logging import configure_logging

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_TEMPFAIL = 75  # sysexits.h EX_TEMPFAIL: retrying may succeed
EXIT_MACHINE_ERROR = 125


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


async def run_machine_command(name: str, action: Callable[[], Awaitable[None]]) -> int:
    """Run one machine operation and map failures to an exit code."""
    try:
        await action()
        return EXIT_SUCCESS

    except MachineNotFoundError as e:
        click.echo(
            format_error(
                f"Machine {name!r} not found",
                e.message,
                [f"Create it with: vfkit-machine create {name}", "Check --store / VFKIT_MACHINE_STORE_PATH"],
            ),
            err=True,
        )
        return EXIT_CLI_ERROR

    except MachineExistsError as e:
        click.echo(
            format_error(
                f"Machine {name!r} already exists",
                e.message,
                [f"Start it with: vfkit-machine start {name}", f"Or remove it first: vfkit-machine rm {name}"],
            ),
            err=True,
        )
        return EXIT_CLI_ERROR

    except MachineRunningError as e:
        click.echo(
            format_error(
                f"Machine {name!r} is already running",
                e.message,
                [f"Restart it with: vfkit-machine restart {name}", f"Or stop it first: vfkit-machine stop {name}"],
            ),
            err=True,
        )
        return EXIT_CLI_ERROR

    except FirewallBlockedError as e:
        click.echo(
            format_error(
                "Guest IP address not found",
                f"{e.message}. bootpd was blocked by the macOS firewall and has been unblocked.",
                [f"Retry: vfkit-machine start {name}"],
            ),
            err=True,
        )
        return EXIT_TEMPFAIL

    except TransientError as e:
        click.echo(format_error("Machine not ready", e.message, [f"Retry: vfkit-machine restart {name}"]), err=True)
        return EXIT_TEMPFAIL

    except PermanentError as e:
        click.echo(
            format_error(
                "Machine configuration error",
                e.message,
                ["Set VFKIT_MACHINE_BOOT_ISO, VFKIT_MACHINE_BOOT_KERNEL and VFKIT_MACHINE_BOOT_INITRD"],
            ),
            err=True,
        )
        return EXIT_CLI_ERROR

    except MachineError as e:
        click.echo(
            format_error(
                "Machine error",
                e.message,
                [
                    "Check that vfkit is installed: brew install vfkit",
                    f"Inspect the logs with -v or in the machine directory of {name!r}",
                ],
            ),
            err=True,
        )
        return EXIT_MACHINE_ERROR


def _run(coro: Coroutine[object, object, int]) -> NoReturn:
    sys.exit(asyncio.run(coro))


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


async def _load(ctx: click.Context, name: str) -> Machine:
    settings = _settings(ctx)
    return await Machine.load(name, settings.store_path, settings=settings)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--store",
    "store_path",
    type=click.Path(file_okay=False, path_type=Path),
    help="Machine store directory (default: ~/.vfkit-machine)",
)
@click.option("-v", "--verbose", count=True, help="More output (-vv for debug)")
@click.option("-q", "--quiet", is_flag=True, help="Only print errors")
@click.version_option(__version__, "-V", "--version", prog_name="vfkit-machine")
@click.pass_context
def main(ctx: click.Context, store_path: Path | None, verbose: int, quiet: bool) -> None:
    """Manage vfkit virtual machines."""
    level: int | None = None
    if verbose:
        level = logging.DEBUG if verbose > 1 else logging.INFO
    configure_logging(level=level, quiet=quiet)
    settings = Settings()
    if store_path is not None:
        settings = settings.model_copy(update={"store_path": store_path})
    ctx.obj = {"settings": settings}


@main.command()
@click.argument("name")
@click.option("--cpus", default=2, show_default=True, help="Number of vCPUs")
@click.option("-m", "--memory", default=6000, show_default=True, help="Memory in MB")
@click.option("--disk-size", default=20000, show_default=True, help="Disk size in MB")
@click.option("--extra-disks", default=0, show_default=True, help="Additional raw disks")
@click.option(
    "--network",
    type=click.Choice([mode.value for mode in NetworkMode], case_sensitive=False),
    default=NetworkMode.NAT.value,
    show_default=True,
    help="Guest networking",
)
@click.pass_context
def create(
    ctx: click.Context,
    name: str,
    cpus: int,
    memory: int,
    disk_size: int,
    extra_disks: int,
    network: str,
) -> None:
    """Create a machine and start it."""
    try:
        config = MachineConfig(
            cpus=cpus,
            memory_mb=memory,
            disk_size_mb=disk_size,
            extra_disks=extra_disks,
            network=NetworkMode(network.lower()),
        )
    except ValidationError as exc:
        raise click.UsageError(str(exc)) from exc

    async def action() -> None:
        settings = _settings(ctx)
        machine = Machine.new(name, settings.store_path, config, settings=settings)
        await machine.create()
        click.echo(await machine.get_url())

    _run(run_machine_command(name, action))


@main.command()
@click.argument("name")
@click.pass_context
def start(ctx: click.Context, name: str) -> None:
    """Start a stopped machine."""

    async def action() -> None:
        await (await _load(ctx, name)).start()

    _run(run_machine_command(name, action))


@main.command()
@click.argument("name")
@click.pass_context
def stop(ctx: click.Context, name: str) -> None:
    """Stop a machine gracefully."""

    async def action() -> None:
        await (await _load(ctx, name)).stop()

    _run(run_machine_command(name, action))


@main.command()
@click.argument("name")
@click.pass_context
def restart(ctx: click.Context, name: str) -> None:
    """Stop a machine if it is running, then start it."""

    async def action() -> None:
        await (await _load(ctx, name)).restart()

    _run(run_machine_command(name, action))


@main.command()
@click.argument("name")
@click.pass_context
def kill(ctx: click.Context, name: str) -> None:
    """Stop a machine immediately."""

    async def action() -> None:
        await (await _load(ctx, name)).kill()

    _run(run_machine_command(name, action))


@main.command()
@click.argument("name")
@click.pass_context
def rm(ctx: click.Context, name: str) -> None:
    """Kill a machine if it is running and delete its files."""

    async def action() -> None:
        machine = await _load(ctx, name)
        await machine.remove()
        try:
            await asyncio.to_thread(shutil.rmtree, machine.paths.machine_dir)
        except OSError as e:
            raise MachineError(f"Failed to delete {machine.paths.machine_dir}: {e}") from e

    _run(run_machine_command(name, action))


@main.command()
@click.argument("name")
@click.pass_context
def status(ctx: click.Context, name: str) -> None:
    """Print Running, Stopped or Error."""

    async def action() -> None:
        click.echo((await (await _load(ctx, name)).get_state()).value)

    _run(run_machine_command(name, action))


@main.command()
@click.argument("name")
@click.pass_context
def url(ctx: click.Context, name: str) -> None:
    """Print the docker endpoint URL (empty when not started)."""

    async def action() -> None:
        click.echo(await (await _load(ctx, name)).get_url())

    _run(run_machine_command(name, action))


@main.command()
@click.argument("name")
@click.pass_context
def ip(ctx: click.Context, name: str) -> None:
    """Print the guest IP address (empty when not started)."""

    async def action() -> None:
        click.echo((await _load(ctx, name)).get_ip())

    _run(run_machine_command(name, action))


if __name__ == "__main__":
    main()

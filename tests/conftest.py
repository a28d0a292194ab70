"""Shared pytest fixtures for vfkit-machine tests."""

import asyncio
import os
import signal
import stat
import subprocess
from collections.abc import Iterator
from pathlib import Path

import pytest

from vfkit_machine.models import MachineState, ProcessHandle
from vfkit_machine.paths import MachinePaths
from vfkit_machine.process import ProcessSupervisor
from vfkit_machine.settings import Settings

# ============================================================================
# Fake Executables
# ============================================================================
# A shell script named like the real binary passes the supervisor's process
# name check (the script path is in argv, and on Linux it is also comm).
# The TERM trap lets the script exit cleanly within one sleep interval.

_FAKE_BINARY = """#!/bin/sh
trap 'exit 0' TERM
while :; do sleep 0.1; done
"""


def make_fake_binary(directory: Path, name: str) -> Path:
    """Write an executable that runs until SIGTERM/SIGKILL."""
    path = directory / name
    path.write_text(_FAKE_BINARY)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


async def wait_for_state(
    supervisor: ProcessSupervisor,
    handle: ProcessHandle,
    expected: MachineState,
    timeout: float = 5.0,
) -> None:
    """Poll query_state() until it reports ``expected``."""
    async with asyncio.timeout(timeout):
        while await supervisor.query_state(handle) != expected:
            await asyncio.sleep(0.05)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    """Empty machine store."""
    path = tmp_path / "store"
    path.mkdir()
    return path


@pytest.fixture
def machine_paths(store_path: Path) -> MachinePaths:
    """Layout of machine 'dev' with its directory created."""
    paths = MachinePaths.for_machine(store_path, "dev")
    paths.machine_dir.mkdir(parents=True)
    return paths


@pytest.fixture
def fake_vfkit(tmp_path: Path) -> Path:
    """Executable named 'vfkit' that idles until signalled."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)
    return make_fake_binary(bin_dir, "vfkit")


@pytest.fixture
def unit_test_settings(store_path: Path, fake_vfkit: Path, tmp_path: Path) -> Settings:
    """Settings with zero delays and the fake vfkit binary.

    Boot assets point at small files under tmp_path.
    """
    assets = tmp_path / "assets"
    assets.mkdir()
    for name in ("boot2docker.iso", "bzimage", "initrd"):
        (assets / name).write_bytes(name.encode())
    return Settings(
        store_path=store_path,
        vfkit_bin=str(fake_vfkit),
        boot_iso=assets / "boot2docker.iso",
        boot_kernel=assets / "bzimage",
        boot_initrd=assets / "initrd",
        dhcp_leases_file=tmp_path / "dhcpd_leases",
        ip_lookup_max_attempts=3,
        ip_lookup_interval_seconds=0,
        ssh_wait_delay_seconds=0,
        ssh_wait_max_attempts=1,
        stop_timeout_seconds=5.0,
        control_timeout_seconds=1.0,
        vmnet_ready_timeout_seconds=2.0,
    )


@pytest.fixture
def sleep_process() -> Iterator[subprocess.Popen[bytes]]:
    """A live 'sleep' process, killed and reaped on teardown."""
    proc = subprocess.Popen(["sleep", "60"], start_new_session=True)  # noqa: S607
    yield proc
    if proc.poll() is None:
        os.kill(proc.pid, signal.SIGKILL)
    proc.wait()


@pytest.fixture
def dead_pid() -> int:
    """A PID that belonged to a process which has exited and been reaped."""
    proc = subprocess.Popen(["true"])  # noqa: S607
    proc.wait()
    return proc.pid

"""Tests for VmnetHelper using fake helper scripts (no sudo, no vmnet)."""

from __future__ import annotations

import asyncio
import stat
from pathlib import Path

import pytest

from tests.conftest import wait_for_state
from vfkit_machine.exceptions import NetworkHelperError
from vfkit_machine.models import MachineState
from vfkit_machine.paths import MachinePaths
from vfkit_machine.process import ProcessSupervisor
from vfkit_machine.vmnet import VmnetHelper

INTERFACE_ID = "0a6e2a0c-5c57-4b8c-a0a7-3b1f6a4e8b52"

_REPORTING_HELPER = """#!/bin/sh
echo '{"vmnet_start_address": "192.168.105.1", "vmnet_mac_address": "92:c6:bd:55:e:a4", "vmnet_mtu": 1500}'
trap 'exit 0' TERM
while :; do sleep 0.1; done
"""

_MALFORMED_MAC_HELPER = """#!/bin/sh
echo '{"vmnet_start_address": "192.168.105.1", "vmnet_mac_address": "92:c6:bd", "vmnet_mtu": 1500}'
trap 'exit 0' TERM
while :; do sleep 0.1; done
"""

_SILENT_HELPER = """#!/bin/sh
trap 'exit 0' TERM
while :; do sleep 0.1; done
"""

_CRASHING_HELPER = """#!/bin/sh
echo "vmnet_start_interface failed" >&2
exit 1
"""


def _write_helper(directory: Path, script: str) -> Path:
    path = directory / "vmnet-helper"
    path.write_text(script)
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


def _helper(machine_paths: MachinePaths, executable: Path, **kwargs) -> VmnetHelper:  # type: ignore[no-untyped-def]
    return VmnetHelper(
        machine_paths,
        INTERFACE_ID,
        supervisor=ProcessSupervisor(),
        executable=executable,
        use_sudo=False,
        poll_interval=0.02,
        **kwargs,
    )


class TestCommand:
    """Helper command line."""

    def test_sudo_command(self, machine_paths: MachinePaths) -> None:
        """By default the helper runs under non-interactive sudo."""
        helper = VmnetHelper(machine_paths, INTERFACE_ID, supervisor=ProcessSupervisor())
        assert helper.command() == [
            "sudo", "--non-interactive",
            "/opt/vmnet-helper/bin/vmnet-helper",
            "--socket", str(machine_paths.vmnet_socket),
            "--interface-id", INTERFACE_ID,
        ]  # fmt: skip

    def test_without_sudo(self, machine_paths: MachinePaths, tmp_path: Path) -> None:
        """use_sudo=False runs the helper directly."""
        helper = _helper(machine_paths, tmp_path / "vmnet-helper")
        assert helper.command()[0] == str(tmp_path / "vmnet-helper")


class TestLifecycle:
    """Start/stop/kill against fake helper processes."""

    async def test_start_reports_mac(self, machine_paths: MachinePaths, tmp_path: Path) -> None:
        """start() waits for the interface description and exposes the MAC."""
        helper = _helper(machine_paths, _write_helper(tmp_path, _REPORTING_HELPER))
        await helper.start()
        try:
            assert helper.mac_address == "92:c6:bd:55:e:a4"
            assert await helper.get_state() == MachineState.RUNNING
            assert machine_paths.vmnet_pidfile.exists()
        finally:
            await helper.kill()
        assert await helper.get_state() == MachineState.STOPPED

    async def test_stop(self, machine_paths: MachinePaths, tmp_path: Path) -> None:
        """stop() terminates the helper; it is then reported Stopped."""
        supervisor = ProcessSupervisor()
        helper = VmnetHelper(
            machine_paths,
            INTERFACE_ID,
            supervisor=supervisor,
            executable=_write_helper(tmp_path, _REPORTING_HELPER),
            use_sudo=False,
        )
        await helper.start()
        await helper.stop()
        await wait_for_state(supervisor, helper.handle, MachineState.STOPPED)

    async def test_stop_and_kill_when_not_started(self, machine_paths: MachinePaths, tmp_path: Path) -> None:
        """Stopping a helper that never ran is a no-op."""
        helper = _helper(machine_paths, tmp_path / "vmnet-helper")
        await helper.stop()
        await helper.kill()
        assert await helper.get_state() == MachineState.STOPPED

    async def test_crashing_helper(self, machine_paths: MachinePaths, tmp_path: Path) -> None:
        """A helper that exits before reporting raises NetworkHelperError."""
        helper = _helper(machine_paths, _write_helper(tmp_path, _CRASHING_HELPER))
        with pytest.raises(NetworkHelperError, match="exited"):
            await helper.start()
        assert await helper.get_state() == MachineState.STOPPED

    async def test_silent_helper_times_out_and_is_killed(self, machine_paths: MachinePaths, tmp_path: Path) -> None:
        """No MAC within ready_timeout: NetworkHelperError and the helper is killed."""
        helper = _helper(machine_paths, _write_helper(tmp_path, _SILENT_HELPER), ready_timeout=0.3)
        with pytest.raises(NetworkHelperError, match="did not report"):
            await helper.start()
        assert not machine_paths.vmnet_pidfile.exists()

    async def test_malformed_mac_is_not_retried(self, machine_paths: MachinePaths, tmp_path: Path) -> None:
        """A malformed MAC fails at once, well before ready_timeout, and the helper is killed."""
        helper = _helper(machine_paths, _write_helper(tmp_path, _MALFORMED_MAC_HELPER), ready_timeout=30)
        with pytest.raises(NetworkHelperError, match="invalid MAC address"):
            await asyncio.wait_for(helper.start(), timeout=10)
        assert not machine_paths.vmnet_pidfile.exists()

    async def test_missing_binary(self, machine_paths: MachinePaths, tmp_path: Path) -> None:
        """A missing helper binary raises NetworkHelperError."""
        helper = _helper(machine_paths, tmp_path / "does-not-exist")
        with pytest.raises(NetworkHelperError, match="Failed to start"):
            await helper.start()

    async def test_missing_interface_id(self, machine_paths: MachinePaths, tmp_path: Path) -> None:
        """Shared mode without a persisted interface id cannot start."""
        helper = VmnetHelper(machine_paths, "", supervisor=ProcessSupervisor(), use_sudo=False)
        with pytest.raises(NetworkHelperError, match="interface id"):
            await helper.start()

    async def test_second_start_reuses_running_helper(self, machine_paths: MachinePaths, tmp_path: Path) -> None:
        """Starting again while the helper runs keeps the same process and MAC."""
        helper = _helper(machine_paths, _write_helper(tmp_path, _REPORTING_HELPER))
        await helper.start()
        try:
            first_pid = int(machine_paths.vmnet_pidfile.read_text())
            await helper.start()
            assert int(machine_paths.vmnet_pidfile.read_text()) == first_pid
            assert helper.mac_address == "92:c6:bd:55:e:a4"
        finally:
            await helper.kill()

    async def test_running_helper_without_interface_file(self, machine_paths: MachinePaths, tmp_path: Path) -> None:
        """A running helper whose interface description is gone cannot be reused."""
        helper = _helper(machine_paths, _write_helper(tmp_path, _REPORTING_HELPER))
        await helper.start()
        try:
            machine_paths.vmnet_interface_file.unlink()
            with pytest.raises(NetworkHelperError, match="interface is unknown"):
                await helper.start()
        finally:
            await helper.kill()

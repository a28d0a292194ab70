"""vmnet-helper network helper.

In shared mode the guest is attached to a vmnet network through a separate
helper process.  vmnet needs root, so the helper runs under sudo and serves
the guest's network traffic on a unix socket passed to vfkit.

The helper is always started with the machine's persisted interface id, so
vmnet hands out the same MAC address (and the guest keeps its DHCP lease)
across restarts.  Once the interface is up the helper prints a JSON object
describing it on stdout:

    {"vmnet_mac_address": "92:c6:bd:55:0e:a4", "vmnet_mtu": 1500, ...}
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Protocol

import aiofiles
import aiofiles.os
from tenacity import AsyncRetrying, retry_if_exception_type, wait_fixed

from vfkit_machine import constants
from vfkit_machine._logging import get_logger
from vfkit_machine.dhcp_leases import is_valid_mac
from vfkit_machine.exceptions import LaunchError, NetworkHelperError, ProcessSignalError
from vfkit_machine.models import MachineState, ProcessHandle
from vfkit_machine.paths import MachinePaths
from vfkit_machine.process import ProcessSupervisor

logger = get_logger(__name__)


class NetworkHelper(Protocol):
    """Network helper contract used by the lifecycle supervisor."""

    @property
    def socket_path(self) -> Path: ...

    @property
    def mac_address(self) -> str: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def kill(self) -> None: ...

    async def get_state(self) -> MachineState: ...


class VmnetHelper:
    """Supervise one vmnet-helper process for a machine.

    Args:
        paths: Machine file layout (pid, socket, log and interface files)
        interface_id: Persisted vmnet interface UUID
        supervisor: Process supervisor shared with the hypervisor
        executable: vmnet-helper binary
        use_sudo: Run the helper via ``sudo --non-interactive``
        ready_timeout: Seconds to wait for the interface description
    """

    def __init__(
        self,
        paths: MachinePaths,
        interface_id: str,
        *,
        supervisor: ProcessSupervisor,
        executable: Path = Path("/opt/vmnet-helper/bin/vmnet-helper"),
        use_sudo: bool = True,
        ready_timeout: float = constants.VMNET_READY_TIMEOUT_SECONDS,
        poll_interval: float = constants.VMNET_READY_POLL_SECONDS,
    ):
        self._paths = paths
        self._interface_id = interface_id
        self._supervisor = supervisor
        self._executable = executable
        self._use_sudo = use_sudo
        self._ready_timeout = ready_timeout
        self._poll_interval = poll_interval
        self._mac_address = ""
        self.handle = ProcessHandle(
            role=constants.NETWORK_HELPER_ROLE,
            name=constants.VMNET_HELPER_PROCESS_NAME,
            pidfile=paths.vmnet_pidfile,
        )

    @property
    def socket_path(self) -> Path:
        return self._paths.vmnet_socket

    @property
    def mac_address(self) -> str:
        """MAC address reported by the helper (empty until started)."""
        return self._mac_address

    def command(self) -> list[str]:
        """Full helper command line, including sudo when enabled."""
        cmd = [
            str(self._executable),
            "--socket", str(self.socket_path),
            "--interface-id", self._interface_id,
        ]  # fmt: skip
        if self._use_sudo:
            cmd = ["sudo", "--non-interactive", *cmd]
        return cmd

    async def start(self) -> None:
        """Start the helper and wait for its interface description.

        A helper that is already running is reused rather than started twice.

        Raises:
            NetworkHelperError: Interface id missing, helper failed to start,
                exited early, or never reported a MAC address in time
        """
        if not self._interface_id:
            raise NetworkHelperError("vmnet interface id is not set", context={"pidfile": str(self.handle.pidfile)})

        if await self._supervisor.query_state(self.handle) == MachineState.RUNNING:
            # Left running after vfkit exited; it still serves the same interface
            await self._adopt_running()
            return

        for leftover in (self.socket_path, self._paths.vmnet_interface_file):
            try:
                await aiofiles.os.remove(leftover)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise NetworkHelperError(f"Failed to remove {leftover}: {e}") from e

        command, *args = self.command()
        try:
            await self._supervisor.launch(
                command,
                args,
                self.handle,
                self._paths.vmnet_log,
                stdout_path=self._paths.vmnet_interface_file,
            )
        except LaunchError as e:
            raise NetworkHelperError(
                f"Failed to start vmnet-helper: {e}",
                context={"interface_id": self._interface_id},
            ) from e

        try:
            self._mac_address = await self._wait_for_interface()
        except BaseException:
            try:
                await self.kill()
            except ProcessSignalError as kill_err:
                logger.warning("Failed to kill vmnet-helper", extra={"error": str(kill_err)})
            raise

        logger.info(
            "vmnet-helper started",
            extra={"socket": str(self.socket_path), "mac": self._mac_address, "interface_id": self._interface_id},
        )

    async def _adopt_running(self) -> None:
        try:
            self._mac_address = await _read_mac_address(self._paths.vmnet_interface_file)
        except (OSError, ValueError) as e:
            raise NetworkHelperError(
                f"vmnet-helper is running but its interface is unknown: {e}",
                context={"interface_file": str(self._paths.vmnet_interface_file)},
            ) from e
        logger.info(
            "vmnet-helper already running",
            extra={"mac": self._mac_address, "interface_id": self._interface_id},
        )

    async def _wait_for_interface(self) -> str:
        context = {"interface_file": str(self._paths.vmnet_interface_file), "log": str(self._paths.vmnet_log)}
        try:
            async with asyncio.timeout(self._ready_timeout):
                async for attempt in AsyncRetrying(
                    retry=retry_if_exception_type((OSError, ValueError)),
                    wait=wait_fixed(self._poll_interval),
                    reraise=True,
                ):
                    with attempt:
                        if await self._supervisor.query_state(self.handle) != MachineState.RUNNING:
                            raise NetworkHelperError(
                                "vmnet-helper exited before reporting its interface", context=context
                            )
                        return await _read_mac_address(self._paths.vmnet_interface_file)
        except TimeoutError:
            raise NetworkHelperError(
                f"vmnet-helper did not report its interface within {self._ready_timeout}s", context=context
            ) from None

        # Unreachable: AsyncRetrying either returns or raises
        raise AssertionError("Unreachable: AsyncRetrying exhausted without exception")

    async def stop(self) -> None:
        """Ask the helper to exit; a helper that is not running is a no-op."""
        await self._supervisor.terminate(self.handle)

    async def kill(self) -> None:
        """Force the helper to exit; a helper that is not running is a no-op."""
        await self._supervisor.kill(self.handle)

    async def get_state(self) -> MachineState:
        return await self._supervisor.query_state(self.handle)


async def _read_mac_address(path: Path) -> str:
    """Read ``vmnet_mac_address`` from the helper's interface description.

    Raises:
        FileNotFoundError: Helper has not written anything yet
        ValueError: Output incomplete or without a MAC address
        NetworkHelperError: The reported MAC address is malformed
    """
    async with aiofiles.open(path) as f:
        content = await f.read()
    # json.JSONDecodeError is a ValueError, so partial output is retried
    interface = json.loads(content)
    mac = interface.get("vmnet_mac_address") if isinstance(interface, dict) else None
    if not isinstance(mac, str) or not mac:
        raise ValueError(f"no vmnet_mac_address in {path}")
    if not is_valid_mac(mac):
        # The output is complete here, so this is not retried
        raise NetworkHelperError(f"vmnet-helper reported an invalid MAC address {mac!r}", context={"path": str(path)})
    return mac

"""Lifecycle of one vfkit virtual machine.

A machine is two independently failing child processes (vfkit and, in
shared mode, vmnet-helper) plus a directory of persisted state.  Machine
turns them into one thing that can be created, started, stopped, restarted,
killed and removed, and whose state can be observed at any time.

State is never cached: get_state() asks the process supervisor about both
PID files on every call.

    Stopped --start()--> Running --stop()/kill()--> Stopped
                            |
                    process dies on its own
                            v
                         Stopped (stale PID file discarded on next query)

Stop and kill try the control channel first and fall back to signalling the
recorded PID.  Only exhausting both is an error; anything that shows the
machine already stopped counts as success.
"""

from __future__ import annotations

import asyncio
import functools
import secrets
import shutil
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from vfkit_machine import constants
from vfkit_machine._logging import get_logger
from vfkit_machine.boot_assets import BootAssets, LocalBootAssets
from vfkit_machine.config import MachineConfig, ResolverConfig
from vfkit_machine.control_channel import VmControlChannel
from vfkit_machine.dhcp_leases import get_ip_address_by_mac, is_valid_mac
from vfkit_machine.disk_image import create_raw_disk, write_bootstrap_image
from vfkit_machine.exceptions import (
    MachineConfigError,
    MachineError,
    MachineExistsError,
    MachineNotFoundError,
    MachineRunningError,
)
from vfkit_machine.ip_resolver import IPResolver
from vfkit_machine.models import MachineInstance, MachineState, NetworkMode, ProcessHandle
from vfkit_machine.paths import MachinePaths
from vfkit_machine.process import ProcessSupervisor
from vfkit_machine.settings import Settings
from vfkit_machine.ssh import generate_ssh_key, wait_for_tcp_with_delay
from vfkit_machine.vfkit_cmd import build_vfkit_args
from vfkit_machine.vmnet import NetworkHelper, VmnetHelper

logger = get_logger(__name__)

KeyGenerator = Callable[[Path], Awaitable[None]]
SSHWait = Callable[[str, int], Awaitable[None]]
Strategy = tuple[str, Callable[[], Awaitable[object]]]


def generate_mac_address() -> str:
    """Random locally administered unicast MAC address."""
    octets = bytearray(secrets.token_bytes(6))
    # Set the locally administered bit, clear the multicast bit
    octets[0] = (octets[0] | 0x02) & 0xFE
    return ":".join(f"{b:02x}" for b in octets)


class Machine:
    """Lifecycle supervisor for one persisted machine instance.

    Usage:
        machine = Machine.new("dev", store_path, MachineConfig(memory_mb=2048))
        await machine.create()          # provisions disks, then starts
        print(await machine.get_url())  # tcp://192.168.64.5:2376
        await machine.stop()

        machine = await Machine.load("dev", store_path)
        await machine.restart()

    Collaborators default to the real implementations built from
    ``settings``; tests inject fakes.  Operations on the same machine must
    not run concurrently.
    """

    def __init__(
        self,
        instance: MachineInstance,
        *,
        settings: Settings | None = None,
        supervisor: ProcessSupervisor | None = None,
        channel: VmControlChannel | None = None,
        resolver: IPResolver | None = None,
        network_helper: NetworkHelper | None = None,
        boot_assets: BootAssets | None = None,
        key_generator: KeyGenerator | None = None,
        ssh_wait: SSHWait | None = None,
    ):
        self.instance = instance
        self.settings = settings or Settings()
        self.paths = MachinePaths.for_machine(instance.store_path, instance.name)
        self.supervisor = supervisor or ProcessSupervisor()
        self.channel = channel or VmControlChannel(
            self.paths.vfkit_socket,
            timeout=self.settings.control_timeout_seconds,
        )
        self.resolver = resolver or IPResolver(
            functools.partial(get_ip_address_by_mac, leases_file=self.settings.dhcp_leases_file),
            config=ResolverConfig(
                max_attempts=self.settings.ip_lookup_max_attempts,
                interval_seconds=self.settings.ip_lookup_interval_seconds,
                nested_multiplier=self.settings.nested_vm_multiplier,
            ),
        )
        self.boot_assets = boot_assets or LocalBootAssets(
            self.settings.boot_iso,
            self.settings.boot_kernel,
            self.settings.boot_initrd,
        )
        self.key_generator = key_generator or generate_ssh_key
        self.ssh_wait = ssh_wait or functools.partial(
            wait_for_tcp_with_delay,
            delay=self.settings.ssh_wait_delay_seconds,
            max_attempts=self.settings.ssh_wait_max_attempts,
        )
        self._network_helper = network_helper
        self.vfkit_handle = ProcessHandle(
            role=constants.HYPERVISOR_ROLE,
            name=constants.VFKIT_PROCESS_NAME,
            pidfile=self.paths.vfkit_pidfile,
        )

    # =========================================================================
    # Construction and persistence
    # =========================================================================

    @classmethod
    def new(
        cls,
        name: str,
        store_path: Path,
        config: MachineConfig | None = None,
        **kwargs,
    ) -> Machine:
        """Machine that has not been created yet.

        Raises:
            MachineConfigError: Invalid machine name
        """
        config = config or MachineConfig()
        try:
            instance = MachineInstance(name=name, store_path=store_path, **config.model_dump())
        except ValidationError as e:
            raise MachineConfigError(f"Invalid machine {name!r}: {e}", context={"name": name}) from e
        return cls(instance, **kwargs)

    @classmethod
    async def load(cls, name: str, store_path: Path, **kwargs) -> Machine:
        """Re-open a persisted machine.

        Raises:
            MachineNotFoundError: No machine.json for ``name``
            MachineConfigError: machine.json unreadable or invalid
        """
        state_file = MachinePaths.for_machine(store_path, name).state_file
        try:
            async with aiofiles.open(state_file) as f:
                content = await f.read()
        except FileNotFoundError:
            raise MachineNotFoundError(f"Machine {name!r} does not exist", context={"store": str(store_path)}) from None
        except OSError as e:
            raise MachineConfigError(f"Cannot read {state_file}: {e}") from e

        try:
            instance = MachineInstance.model_validate_json(content)
        except ValidationError as e:
            raise MachineConfigError(f"Invalid machine state in {state_file}: {e}") from e
        if instance.name != name:
            raise MachineConfigError(
                f"{state_file} belongs to machine {instance.name!r}",
                context={"expected": name},
            )
        # The store may have moved since the instance was written
        instance = instance.model_copy(update={"store_path": store_path})
        return cls(instance, **kwargs)

    async def exists(self) -> bool:
        return await aiofiles.os.path.exists(self.paths.state_file)

    async def save(self) -> None:
        """Persist the instance to machine.json (write-then-rename)."""
        tmp = self.paths.state_file.with_suffix(".json.tmp")
        async with aiofiles.open(tmp, "w") as f:
            await f.write(self.instance.model_dump_json(indent=2))
        await aiofiles.os.replace(tmp, self.paths.state_file)

    @property
    def name(self) -> str:
        return self.instance.name

    @property
    def network_helper(self) -> NetworkHelper | None:
        """Network helper in shared mode, None otherwise."""
        if self.instance.network != NetworkMode.SHARED:
            return None
        if self._network_helper is None:
            self._network_helper = VmnetHelper(
                self.paths,
                self.instance.vmnet_interface_id,
                supervisor=self.supervisor,
                executable=self.settings.vmnet_helper_bin,
                use_sudo=self.settings.vmnet_helper_use_sudo,
                ready_timeout=self.settings.vmnet_ready_timeout_seconds,
            )
        return self._network_helper

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create(self) -> None:
        """Provision the machine directory, then start the machine.

        Anything failing before start removes the machine directory again.
        Start failures leave the instance in place so it can be restarted.

        Raises:
            MachineExistsError: The machine already exists
            MachineConfigError: Boot assets or SSH key unavailable
            BuildError: Disk image creation failed
        """
        if await self.exists():
            raise MachineExistsError(
                f"Machine {self.name!r} already exists",
                context={"path": str(self.paths.machine_dir)},
            )

        log_ctx = {"machine": self.name, "path": str(self.paths.machine_dir)}
        try:
            await aiofiles.os.makedirs(self.paths.machine_dir, exist_ok=True)

            logger.info("Copying boot assets...", extra=log_ctx)
            await self.boot_assets.provision(self.paths)

            logger.info("Creating SSH key...", extra=log_ctx)
            await self.key_generator(self.paths.ssh_key)

            logger.info("Creating disk image...", extra=log_ctx)
            await write_bootstrap_image(self.paths.disk, self.paths.ssh_public_key, self.instance.disk_size_mb)

            if self.instance.extra_disks > 0:
                logger.info("Creating extra disk images...", extra=log_ctx)
                for i in range(self.instance.extra_disks):
                    await create_raw_disk(self.paths.extra_disk(i), self.instance.disk_size_mb)

            self._assign_network_identity()
            await self.save()
        except BaseException:
            logger.debug("Create failed, removing machine directory", extra=log_ctx)
            await asyncio.to_thread(shutil.rmtree, self.paths.machine_dir, ignore_errors=True)
            raise

        logger.info("Starting vfkit VM...", extra=log_ctx)
        await self.start()

    def _assign_network_identity(self) -> None:
        if self.instance.network == NetworkMode.SHARED:
            if not self.instance.vmnet_interface_id:
                self.instance.vmnet_interface_id = str(uuid.uuid4())
        elif not self.instance.mac_address:
            self.instance.mac_address = generate_mac_address()

    async def start(self) -> None:
        """Start the network helper (shared mode) and vfkit, then wait for SSH.

        Raises:
            MachineRunningError: vfkit is already running for this machine
            MachineConfigError: No MAC address, or an invalid one, to boot with
            NetworkHelperError: vmnet-helper failed to come up
            LaunchError: vfkit could not be started
            FirewallBlockedError: bootpd was blocked; retry start
            IPResolutionError: Guest never got a DHCP lease
            SSHTimeoutError: Guest SSH never answered
        """
        # A second vfkit would overwrite the PID file and orphan the first
        if await self.supervisor.query_state(self.vfkit_handle) == MachineState.RUNNING:
            raise MachineRunningError(
                f"Machine {self.name!r} is already running",
                context={"pidfile": str(self.paths.vfkit_pidfile)},
            )

        vmnet_socket: Path | None = None
        mac = self.instance.mac_address
        helper = self.network_helper
        if helper is not None:
            await helper.start()
            vmnet_socket = helper.socket_path
            mac = helper.mac_address

        if not mac:
            raise MachineConfigError(
                f"Machine {self.name!r} has no MAC address",
                context={"network": self.instance.network.value},
            )
        if not is_valid_mac(mac):
            raise MachineConfigError(
                f"Machine {self.name!r} has an invalid MAC address {mac!r}",
                context={"network": self.instance.network.value},
            )
        self.instance.mac_address = mac

        await self._start_vfkit(vmnet_socket)

        ip = await self.resolver.resolve(self.instance.mac_address)
        self.instance.ip_address = ip
        await self.save()
        logger.debug(f"IP: {ip}", extra={"machine": self.name, "mac": self.instance.mac_address})

        port = self.get_ssh_port()
        logger.info(f"Waiting for VM to start (ssh -p {port} {self.get_ssh_username()}@{ip})...")
        await self.ssh_wait(ip, port)

    async def _start_vfkit(self, vmnet_socket: Path | None) -> None:
        args = build_vfkit_args(self.instance, self.paths, vmnet_socket=vmnet_socket)
        # vfkit refuses to listen on an existing socket path
        try:
            await aiofiles.os.remove(self.paths.vfkit_socket)
        except FileNotFoundError:
            pass
        await self.supervisor.launch(self.settings.vfkit_bin, args, self.vfkit_handle, self.paths.vfkit_log)

    async def stop(self) -> None:
        """Gracefully stop vfkit, then the network helper.  Idempotent.

        Raises:
            MachineError: Both the control channel and the SIGTERM fallback
                failed, or the network helper could not be stopped
        """
        await self._run_strategies(
            "stop",
            [
                ("vfkit state Stop", functools.partial(self.channel.set_vm_state, "Stop")),
                ("terminate vfkit", functools.partial(self.supervisor.terminate, self.vfkit_handle)),
            ],
        )
        helper = self.network_helper
        if helper is not None:
            await helper.stop()
        await self._clear_ip()

    async def kill(self) -> None:
        """Stop vfkit immediately, then kill the network helper.  Idempotent.

        Raises:
            MachineError: Both the control channel and the SIGKILL fallback
                failed, or the network helper could not be killed
        """
        await self._run_strategies(
            "kill",
            [
                ("vfkit state HardStop", functools.partial(self.channel.set_vm_state, "HardStop")),
                ("kill vfkit", functools.partial(self.supervisor.kill, self.vfkit_handle)),
            ],
        )
        helper = self.network_helper
        if helper is not None:
            await helper.kill()
        await self._clear_ip()

    async def _run_strategies(self, operation: str, strategies: list[Strategy]) -> None:
        """Run strategies in order until one succeeds; raise the last error if none does."""
        last_error: MachineError | None = None
        for description, strategy in strategies:
            try:
                await strategy()
            except MachineError as e:
                logger.debug(
                    f"{operation}: {description} failed",
                    extra={"machine": self.name, "error": str(e), "error_type": type(e).__name__},
                )
                last_error = e
                continue
            logger.debug(f"{operation}: {description} succeeded", extra={"machine": self.name})
            return
        if last_error is not None:
            raise last_error

    async def _clear_ip(self) -> None:
        if not self.instance.ip_address:
            return
        self.instance.ip_address = ""
        if await self.exists():
            await self.save()

    async def restart(self) -> None:
        """Stop (if running), wait for vfkit to exit, then start.

        If vfkit is still alive after ``stop_timeout_seconds`` it is killed.
        """
        if await self.get_state() == MachineState.RUNNING:
            await self.stop()
            await self._wait_for_vfkit_exit()
        await self.start()

    async def _wait_for_vfkit_exit(self) -> None:
        timeout = self.settings.stop_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                while await self.supervisor.query_state(self.vfkit_handle) == MachineState.RUNNING:
                    await asyncio.sleep(constants.STOP_POLL_INTERVAL_SECONDS)
        except TimeoutError:
            logger.warning(f"vfkit still running {timeout}s after stop, killing", extra={"machine": self.name})
            await self.kill()

    async def remove(self) -> None:
        """Kill the machine if it is running.  Files are left to the caller."""
        if await self.get_state() == MachineState.RUNNING:
            await self.kill()

    async def get_state(self) -> MachineState:
        """Combined state of vfkit and the network helper.

        vfkit Error wins, then vfkit Running; otherwise the helper's own
        state decides (a helper left running after vfkit died is Running).
        """
        vfkit_state = await self.supervisor.query_state(self.vfkit_handle)
        if vfkit_state != MachineState.STOPPED:
            return vfkit_state
        helper = self.network_helper
        if helper is None:
            return MachineState.STOPPED
        return await helper.get_state()

    # =========================================================================
    # Accessors
    # =========================================================================

    async def get_url(self) -> str:
        """Docker endpoint URL, empty when vfkit was never started or has no IP."""
        if not await aiofiles.os.path.exists(self.paths.vfkit_pidfile):
            return ""
        ip = self.get_ip()
        if not ip:
            return ""
        return f"tcp://{ip}:{constants.DOCKER_PORT}"

    def get_ip(self) -> str:
        return self.instance.ip_address

    def get_ssh_hostname(self) -> str:
        return self.instance.ip_address

    def get_ssh_port(self) -> int:
        return self.instance.ssh_port or constants.DEFAULT_SSH_PORT

    def get_ssh_username(self) -> str:
        return self.instance.ssh_user or constants.DEFAULT_SSH_USER

    def get_ssh_key_path(self) -> Path:
        return self.paths.ssh_key

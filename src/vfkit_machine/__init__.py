"""vfkit-machine: lifecycle supervisor for vfkit virtual machines on macOS.

Runs one boot2docker-style VM per machine with vfkit (Virtualization.framework)
and, for shared networking, vmnet-helper.  Creates the machine's disks and SSH
key, starts the two processes in order, discovers the guest IP from the host
DHCP lease file, and stops everything again, cleaning up after crashed
processes and stale PID files along the way.

Quick Start:
    ```python
    from vfkit_machine import Machine, MachineConfig

    machine = Machine.new("dev", store_path, MachineConfig(cpus=2, memory_mb=2048))
    await machine.create()
    print(await machine.get_url())  # "tcp://192.168.64.5:2376"
    await machine.stop()
    ```

Re-opening a machine:
    ```python
    machine = await Machine.load("dev", store_path)
    if await machine.get_state() == MachineState.RUNNING:
        await machine.restart()
    ```

Requirements:
    - macOS with vfkit on PATH
    - vmnet-helper and passwordless sudo for it (shared network only)
    - Python 3.12+
"""

from vfkit_machine.config import MachineConfig, ResolverConfig
from vfkit_machine.exceptions import (
    BuildError,
    ChannelError,
    FirewallBlockedError,
    FirewallError,
    IPResolutionError,
    LaunchError,
    LeaseError,
    LeaseFileError,
    LeaseNotFoundError,
    MachineConfigError,
    MachineError,
    MachineExistsError,
    MachineNotFoundError,
    MachineRunningError,
    NetworkHelperError,
    PermanentError,
    ProcessSignalError,
    SSHTimeoutError,
    TransientError,
)
from vfkit_machine.machine import Machine
from vfkit_machine.models import MachineInstance, MachineState, NetworkMode
from vfkit_machine.settings import Settings

__all__ = [
    "BuildError",
    "ChannelError",
    "FirewallBlockedError",
    "FirewallError",
    "IPResolutionError",
    "LaunchError",
    "LeaseError",
    "LeaseFileError",
    "LeaseNotFoundError",
    "Machine",
    "MachineConfig",
    "MachineConfigError",
    "MachineError",
    "MachineExistsError",
    "MachineInstance",
    "MachineNotFoundError",
    "MachineRunningError",
    "MachineState",
    "NetworkHelperError",
    "NetworkMode",
    "PermanentError",
    "ProcessSignalError",
    "ResolverConfig",
    "SSHTimeoutError",
    "Settings",
    "TransientError",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("vfkit-machine")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"

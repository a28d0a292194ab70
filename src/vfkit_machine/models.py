"""Data models for vfkit-machine."""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

from vfkit_machine import constants


class MachineState(str, Enum):
    """Observable state of a machine or of one of its processes."""

    RUNNING = "Running"
    STOPPED = "Stopped"
    ERROR = "Error"


class NetworkMode(str, Enum):
    """Guest networking.

    NONE and NAT both use the hypervisor's built-in NAT with a static MAC;
    SHARED attaches the guest to vmnet through the network helper.
    """

    NONE = "none"
    NAT = "nat"
    SHARED = "shared"


@dataclass(frozen=True, slots=True)
class ProcessHandle:
    """Weak reference to a supervised child process.

    The PID file is the only link to the process.  It is trusted only
    after the PID is confirmed alive and its name matches ``name``.
    """

    role: str
    name: str
    pidfile: Path


class MachineInstance(BaseModel):
    """Persisted identity, resources and network identity of one machine."""

    name: str = Field(min_length=1, pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
    store_path: Path
    cpus: int = Field(default=constants.DEFAULT_CPUS, ge=1)
    memory_mb: int = Field(default=constants.DEFAULT_MEMORY_MB, ge=128)
    disk_size_mb: int = Field(default=constants.DEFAULT_DISK_SIZE_MB, ge=1)
    extra_disks: int = Field(default=0, ge=0)
    network: NetworkMode = NetworkMode.NAT
    # Empty until the first start assigns one
    mac_address: str = Field(default="", pattern=rf"^$|{constants.MAC_ADDRESS_PATTERN}")
    vmnet_interface_id: str = ""
    ip_address: str = ""
    ssh_user: str = constants.DEFAULT_SSH_USER
    ssh_port: int = Field(default=constants.DEFAULT_SSH_PORT, ge=1, le=65535)

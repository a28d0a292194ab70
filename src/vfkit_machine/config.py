"""Machine and resolver configuration for vfkit-machine.

MachineConfig describes the resources of a machine to create; ResolverConfig
holds the guest IP lookup retry budget.

Example:
    ```python
    from vfkit_machine import Machine, MachineConfig, NetworkMode

    config = MachineConfig(cpus=2, memory_mb=2048, disk_size_mb=20000, network=NetworkMode.NAT)
    machine = Machine.new("dev", store_path, config)
    await machine.create()
    print(machine.get_url())  # tcp://192.168.64.5:2376
    ```
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from vfkit_machine import constants
from vfkit_machine.models import NetworkMode


class MachineConfig(BaseModel):
    """Resources and networking for a new machine.

    Attributes:
        cpus: Number of guest vCPUs. Default: 2.
        memory_mb: Guest memory in MB. Minimum 128. Default: 6000.
        disk_size_mb: Size of the root disk and of every extra disk in MB.
            Default: 20000.
        extra_disks: Number of additional raw disks attached after the root
            disk. Default: 0.
        network: Guest networking mode. Default: nat.
        ssh_user: User the guest authorizes with the generated key.
        ssh_port: Guest SSH port.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    cpus: int = Field(default=constants.DEFAULT_CPUS, ge=1, le=64, description="Guest vCPUs")
    memory_mb: int = Field(default=constants.DEFAULT_MEMORY_MB, ge=128, description="Guest memory in MB")
    disk_size_mb: int = Field(
        default=constants.DEFAULT_DISK_SIZE_MB,
        ge=1,
        description="Root (and extra) disk size in MB",
    )
    extra_disks: int = Field(default=0, ge=0, le=16, description="Additional raw disks")
    network: NetworkMode = Field(default=NetworkMode.NAT, description="Guest networking mode")
    ssh_user: str = Field(default=constants.DEFAULT_SSH_USER, min_length=1)
    ssh_port: int = Field(default=constants.DEFAULT_SSH_PORT, ge=1, le=65535)


class ResolverConfig(BaseModel):
    """Retry budget for guest IP discovery.

    The lookup is attempted ``max_attempts * multiplier`` times, where the
    multiplier is ``nested_multiplier`` when the host is itself a VM and 1
    otherwise.  Tests pass ``interval_seconds=0``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=constants.IP_LOOKUP_MAX_ATTEMPTS, ge=1)
    interval_seconds: float = Field(default=constants.IP_LOOKUP_INTERVAL_SECONDS, ge=0)
    nested_multiplier: int = Field(default=constants.NESTED_VM_MULTIPLIER, ge=1)

    def attempt_budget(self, nested: bool) -> int:
        """Total lookups allowed for the given environment."""
        return self.max_attempts * (self.nested_multiplier if nested else 1)

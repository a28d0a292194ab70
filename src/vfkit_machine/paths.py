"""Per-machine file layout.

Every artifact of a machine lives in ``<store>/machines/<name>/``: PID
files, the control socket, logs, boot assets, disks and the SSH key pair.
"""

from dataclasses import dataclass
from pathlib import Path

from vfkit_machine import constants


@dataclass(frozen=True, slots=True)
class MachinePaths:
    """Resolved paths for one machine directory."""

    machine_dir: Path

    @classmethod
    def for_machine(cls, store_path: Path, name: str) -> "MachinePaths":
        return cls(machine_dir=store_path / constants.MACHINES_DIRNAME / name)

    def resolve(self, filename: str) -> Path:
        return self.machine_dir / filename

    @property
    def state_file(self) -> Path:
        return self.resolve(constants.STATE_FILENAME)

    @property
    def iso(self) -> Path:
        return self.resolve(constants.ISO_FILENAME)

    @property
    def kernel(self) -> Path:
        return self.resolve(constants.KERNEL_FILENAME)

    @property
    def initrd(self) -> Path:
        return self.resolve(constants.INITRD_FILENAME)

    @property
    def disk(self) -> Path:
        return self.resolve(constants.DISK_FILENAME)

    def extra_disk(self, index: int) -> Path:
        """Path of the index-th extra raw disk (0-based)."""
        return self.resolve(f"{self.machine_dir.name}-{index}.rawdisk")

    @property
    def ssh_key(self) -> Path:
        return self.resolve(constants.SSH_KEY_FILENAME)

    @property
    def ssh_public_key(self) -> Path:
        return self.resolve(constants.SSH_KEY_FILENAME + ".pub")

    @property
    def vfkit_pidfile(self) -> Path:
        return self.resolve(constants.VFKIT_PIDFILE)

    @property
    def vfkit_socket(self) -> Path:
        return self.resolve(constants.VFKIT_SOCKFILE)

    @property
    def vfkit_log(self) -> Path:
        return self.resolve(constants.VFKIT_LOGFILE)

    @property
    def serial_log(self) -> Path:
        return self.resolve(constants.SERIAL_LOGFILE)

    @property
    def vmnet_pidfile(self) -> Path:
        return self.resolve(constants.VMNET_PIDFILE)

    @property
    def vmnet_socket(self) -> Path:
        return self.resolve(constants.VMNET_SOCKFILE)

    @property
    def vmnet_log(self) -> Path:
        return self.resolve(constants.VMNET_LOGFILE)

    @property
    def vmnet_interface_file(self) -> Path:
        return self.resolve(constants.VMNET_INTERFACE_FILE)

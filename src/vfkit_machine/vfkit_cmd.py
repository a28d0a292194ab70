"""vfkit command line builder.

Builds the argument list for one machine from its persisted instance and
file layout.  The device order matters to the guest: the ISO is the first
block device, the bootstrap disk the second, extra disks follow.
"""

from pathlib import Path

from vfkit_machine.models import MachineInstance
from vfkit_machine.paths import MachinePaths
from vfkit_machine.platform_utils import HostArch, detect_host_arch


def kernel_cmdline(arch: HostArch) -> str:
    """Kernel command line sending boot messages to the serial log.

    arm64 needs console=hvc0 to get anything in serial.log; on x86_64 the
    serial log stays empty either way.
    """
    match arch:
        case HostArch.AARCH64:
            return "console=hvc0"
        case HostArch.X86_64:
            return "console=ttyS0"
        case _:
            return ""


def build_vfkit_args(
    instance: MachineInstance,
    paths: MachinePaths,
    *,
    vmnet_socket: Path | None = None,
    arch: HostArch | None = None,
) -> list[str]:
    """Build vfkit arguments (without the executable).

    Args:
        instance: Machine resources, MAC address and extra disk count
        paths: Machine file layout
        vmnet_socket: Network helper socket. When set the guest joins the
            shared vmnet network through it, otherwise vfkit's built-in NAT
            is used (the guest cannot reach other guests).
        arch: Host architecture (auto-detected when None)

    Returns:
        vfkit argument list
    """
    arch = arch or detect_host_arch()
    args = [
        "--memory", str(instance.memory_mb),
        "--cpus", str(instance.cpus),
        "--restful-uri", f"unix://{paths.vfkit_socket}",
        "--log-level", "debug",
    ]  # fmt: skip

    # TODO: switch to --bootloader efi once the x86_64 ISO boots with EFI.
    args += [
        "--bootloader",
        f'linux,kernel={paths.kernel},initrd={paths.initrd},cmdline="{kernel_cmdline(arch)}"',
    ]

    if vmnet_socket is not None:
        args += ["--device", f"virtio-net,unixSocketPath={vmnet_socket},mac={instance.mac_address}"]
    else:
        args += ["--device", f"virtio-net,nat,mac={instance.mac_address}"]

    args += ["--device", "virtio-rng"]
    args += ["--device", f"virtio-blk,path={paths.iso}"]
    args += ["--device", f"virtio-blk,path={paths.disk}"]
    for i in range(instance.extra_disks):
        args += ["--device", f"virtio-blk,path={paths.extra_disk(i)}"]
    args += ["--device", f"virtio-serial,logFilePath={paths.serial_log}"]
    return args

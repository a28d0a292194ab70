"""Host OS/architecture detection and the nested-virtualization probe.

Uses psutil's OS detection constants for platform identification.
"""

import platform
import subprocess
from enum import Enum, auto
from functools import cache
from pathlib import Path

import psutil

from vfkit_machine._logging import get_logger

logger = get_logger(__name__)


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    MACOS = auto()
    UNKNOWN = auto()


class HostArch(Enum):
    """Host CPU architectures."""

    X86_64 = auto()
    AARCH64 = auto()
    UNKNOWN = auto()


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.MACOS:
        return HostOS.MACOS
    if psutil.LINUX:
        return HostOS.LINUX
    return HostOS.UNKNOWN


@cache
def detect_host_arch() -> HostArch:
    """Detect current host CPU architecture."""
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        return HostArch.X86_64
    if machine in ("arm64", "aarch64"):
        return HostArch.AARCH64
    return HostArch.UNKNOWN


def _macos_hv_vmm_present() -> bool:
    try:
        result = subprocess.run(
            ["sysctl", "-n", "kern.hv_vmm_present"],
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("sysctl kern.hv_vmm_present failed", extra={"error": str(e)})
        return False
    return result.returncode == 0 and result.stdout.strip() == "1"


def _linux_hypervisor_flag(cpuinfo: Path = Path("/proc/cpuinfo")) -> bool:
    try:
        text = cpuinfo.read_text()
    except OSError:
        return False
    for line in text.splitlines():
        if line.startswith("flags") and "hypervisor" in line.split(":", 1)[-1].split():
            return True
    return False


@cache
def is_nested_vm() -> bool:
    """Report whether this host is itself a virtual machine (cached).

    macOS: ``kern.hv_vmm_present`` sysctl. Linux: ``hypervisor`` CPU flag.
    """
    match detect_host_os():
        case HostOS.MACOS:
            nested = _macos_hv_vmm_present()
        case HostOS.LINUX:
            nested = _linux_hypervisor_flag()
        case _:
            nested = False
    logger.debug("Nested virtualization probe", extra={"nested_vm": nested})
    return nested

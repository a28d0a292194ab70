"""Constants for vfkit-machine file layout, defaults and limits."""

from typing import Final

# ============================================================================
# Machine Directory Layout
# ============================================================================

MACHINES_DIRNAME: Final[str] = "machines"
"""Subdirectory of the store path holding one directory per machine."""

STATE_FILENAME: Final[str] = "machine.json"
"""Persisted MachineInstance (presence means the machine exists)."""

ISO_FILENAME: Final[str] = "boot2docker.iso"
KERNEL_FILENAME: Final[str] = "bzimage"
INITRD_FILENAME: Final[str] = "initrd"
DISK_FILENAME: Final[str] = "disk.img"
SSH_KEY_FILENAME: Final[str] = "id_rsa"

VFKIT_PIDFILE: Final[str] = "vfkit.pid"
VFKIT_SOCKFILE: Final[str] = "vfkit.sock"
VFKIT_LOGFILE: Final[str] = "vfkit.log"
SERIAL_LOGFILE: Final[str] = "serial.log"

VMNET_PIDFILE: Final[str] = "vmnet-helper.pid"
VMNET_SOCKFILE: Final[str] = "vmnet-helper.sock"
VMNET_LOGFILE: Final[str] = "vmnet-helper.log"
VMNET_INTERFACE_FILE: Final[str] = "vmnet-helper.json"
"""Helper stdout capture: JSON object describing the vmnet interface."""

# ============================================================================
# Process Roles
# ============================================================================

HYPERVISOR_ROLE: Final[str] = "hypervisor"
NETWORK_HELPER_ROLE: Final[str] = "network-helper"

VFKIT_PROCESS_NAME: Final[str] = "vfkit"
VMNET_HELPER_PROCESS_NAME: Final[str] = "vmnet-helper"

# ============================================================================
# Machine Defaults
# ============================================================================

DEFAULT_CPUS: Final[int] = 2
DEFAULT_MEMORY_MB: Final[int] = 6000
DEFAULT_DISK_SIZE_MB: Final[int] = 20000

DEFAULT_SSH_USER: Final[str] = "docker"
DEFAULT_SSH_PORT: Final[int] = 22

DOCKER_PORT: Final[int] = 2376
"""Port used in the machine URL (tcp://<ip>:2376)."""

BYTES_PER_MB: Final[int] = 1024 * 1024

# ============================================================================
# Bootstrap Disk
# ============================================================================

BOOTSTRAP_MAGIC: Final[str] = "boot2docker, please format-me"
"""Sentinel the guest automount script looks for to format the disk."""

# ============================================================================
# Network Identity
# ============================================================================

DHCP_LEASES_FILE: Final[str] = "/var/db/dhcpd_leases"
"""bootpd lease database on macOS."""

MAC_ADDRESS_PATTERN: Final[str] = r"^[0-9a-fA-F]{1,2}(:[0-9a-fA-F]{1,2}){5}$"
"""Six colon-separated hex octets; bootpd and vmnet drop leading zeros."""

IP_LOOKUP_MAX_ATTEMPTS: Final[int] = 60
"""Lease lookups before giving up (multiplied on nested VMs)."""

IP_LOOKUP_INTERVAL_SECONDS: Final[float] = 2.0
"""Delay between failed lease lookups. The lease file is written a few
seconds after the guest requests an address."""

NESTED_VM_MULTIPLIER: Final[int] = 3
"""Budget multiplier when running inside a VM. Nested macOS CI runners
take 160+ attempts on average."""

BOOTPD_ERROR_SIGNATURE: Final[str] = "could not find an IP address"
"""Lookup error text that indicates bootpd never answered the guest."""

BOOTPD_PATH: Final[str] = "/usr/libexec/bootpd"
SOCKETFILTERFW_PATH: Final[str] = "/usr/libexec/ApplicationFirewall/socketfilterfw"

# ============================================================================
# Timeouts
# ============================================================================

CONTROL_TIMEOUT_SECONDS: Final[float] = 5.0
"""Per-request timeout for the hypervisor control channel."""

SSH_WAIT_DELAY_SECONDS: Final[float] = 1.0
"""Delay between SSH readiness probes."""

SSH_WAIT_MAX_ATTEMPTS: Final[int] = 600
"""SSH readiness probes before giving up (10 minutes at the default delay)."""

SSH_PROBE_TIMEOUT_SECONDS: Final[float] = 5.0
"""Per-probe timeout covering connect and the first read."""

STOP_TIMEOUT_SECONDS: Final[float] = 30.0
"""How long restart waits for the hypervisor to exit before killing it."""

STOP_POLL_INTERVAL_SECONDS: Final[float] = 0.5

VMNET_READY_TIMEOUT_SECONDS: Final[float] = 10.0
"""How long to wait for the helper to report its interface."""

VMNET_READY_POLL_SECONDS: Final[float] = 0.1

"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from vfkit_machine import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with VFKIT_MACHINE_ prefix.
    Example: VFKIT_MACHINE_VFKIT_BIN=/opt/homebrew/bin/vfkit
    """

    model_config = SettingsConfigDict(
        env_prefix="VFKIT_MACHINE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Store
    store_path: Path = Field(default_factory=lambda: Path.home() / ".vfkit-machine")

    # Binaries
    vfkit_bin: str = "vfkit"
    vmnet_helper_bin: Path = Path("/opt/vmnet-helper/bin/vmnet-helper")
    vmnet_helper_use_sudo: bool = True

    # Boot assets copied into the machine directory at create time
    boot_iso: Path | None = None
    boot_kernel: Path | None = None
    boot_initrd: Path | None = None

    # Network identity
    dhcp_leases_file: Path = Path(constants.DHCP_LEASES_FILE)
    ip_lookup_max_attempts: int = constants.IP_LOOKUP_MAX_ATTEMPTS
    ip_lookup_interval_seconds: float = constants.IP_LOOKUP_INTERVAL_SECONDS
    nested_vm_multiplier: int = constants.NESTED_VM_MULTIPLIER

    # Timeouts
    control_timeout_seconds: float = constants.CONTROL_TIMEOUT_SECONDS
    ssh_wait_delay_seconds: float = constants.SSH_WAIT_DELAY_SECONDS
    ssh_wait_max_attempts: int = constants.SSH_WAIT_MAX_ATTEMPTS
    stop_timeout_seconds: float = constants.STOP_TIMEOUT_SECONDS
    vmnet_ready_timeout_seconds: float = constants.VMNET_READY_TIMEOUT_SECONDS

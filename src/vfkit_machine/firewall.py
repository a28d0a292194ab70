"""macOS application firewall remediation for bootpd.

When the application firewall blocks incoming connections, bootpd never
answers the guest's DHCP request and no lease is written.  Adding bootpd to
the firewall's allow list fixes it.  This touches host security settings
and needs sudo, so it is only invoked when the lease lookup failure has the
bootpd signature.
"""

import asyncio

from vfkit_machine import constants
from vfkit_machine._logging import get_logger
from vfkit_machine.exceptions import FirewallError

logger = get_logger(__name__)


async def _socketfilterfw(*args: str) -> None:
    cmd = ["sudo", "--non-interactive", constants.SOCKETFILTERFW_PATH, *args]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
    except OSError as e:
        raise FirewallError(f"failed to run {' '.join(cmd)}: {e}") from e
    if proc.returncode != 0:
        raise FirewallError(
            f"{' '.join(cmd)} exited with {proc.returncode}: {stderr.decode(errors='replace').strip()}"
        )
    logger.debug("socketfilterfw", extra={"args": args, "output": stdout.decode(errors="replace").strip()})


async def unblock_bootpd() -> None:
    """Allow bootpd through the macOS application firewall.

    Raises:
        FirewallError: sudo or socketfilterfw failed
    """
    logger.info("Adding bootpd to the firewall allow list", extra={"path": constants.BOOTPD_PATH})
    await _socketfilterfw("--add", constants.BOOTPD_PATH)
    await _socketfilterfw("--unblock", constants.BOOTPD_PATH)

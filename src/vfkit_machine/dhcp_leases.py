"""macOS bootpd DHCP lease lookup.

bootpd records leases in /var/db/dhcpd_leases as brace-delimited blocks:

    {
        name=minikube
        ip_address=192.168.105.2
        hw_address=1,8a:2b:c:4d:5e:6f
        identifier=1,8a:2b:c:4d:5e:6f
        lease=0x6789abcd
    }

bootpd writes MAC octets without leading zeros, so lookups normalize the
requested address the same way before comparing.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

import aiofiles

from vfkit_machine import constants
from vfkit_machine._logging import get_logger
from vfkit_machine.exceptions import LeaseFileError, LeaseNotFoundError, MachineConfigError

logger = get_logger(__name__)

_MAC_RE = re.compile(constants.MAC_ADDRESS_PATTERN)


@dataclass(frozen=True, slots=True)
class DHCPLease:
    """One bootpd lease entry."""

    name: str
    ip_address: str
    hw_address: str
    lease: int


def is_valid_mac(mac: str) -> bool:
    """True for six colon-separated hex octets of one or two digits."""
    return _MAC_RE.fullmatch(mac.strip()) is not None


def normalize_mac(mac: str) -> str:
    """Lower-case a MAC address and strip leading zeros from each octet.

    Raises:
        ValueError: Not six colon-separated hex octets

    >>> normalize_mac("0A:0b:00:4D:5e:6F")
    'a:b:0:4d:5e:6f'
    """
    if not is_valid_mac(mac):
        raise ValueError(f"invalid MAC address {mac!r}")
    return ":".join(format(int(octet, 16), "x") for octet in mac.strip().split(":"))


def _parse_hw_address(value: str) -> str:
    # "1,8a:2b:..." -- hardware type prefix, then the address
    _, _, address = value.partition(",")
    try:
        return normalize_mac(address or value)
    except ValueError:
        return ""


def parse_leases(content: str) -> list[DHCPLease]:
    """Parse the bootpd lease database into lease entries.

    Blocks missing an IP or hardware address are skipped.
    """
    leases: list[DHCPLease] = []
    fields: dict[str, str] | None = None
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if line == "{":
            fields = {}
        elif line == "}":
            if fields and fields.get("ip_address") and fields.get("hw_address"):
                try:
                    lease_time = int(fields.get("lease", "0"), 16)
                except ValueError:
                    lease_time = 0
                leases.append(
                    DHCPLease(
                        name=fields.get("name", ""),
                        ip_address=fields["ip_address"],
                        hw_address=_parse_hw_address(fields["hw_address"]),
                        lease=lease_time,
                    )
                )
            fields = None
        elif fields is not None and "=" in line:
            key, _, value = line.partition("=")
            fields[key.strip()] = value.strip()
    return leases


async def get_ip_address_by_mac(mac: str, leases_file: Path = Path(constants.DHCP_LEASES_FILE)) -> str:
    """Look up the IP bootpd leased to ``mac``.

    When several leases exist for the address the most recent one wins.

    Raises:
        LeaseFileError: Lease file missing or unreadable
        MachineConfigError: ``mac`` is not a MAC address
        LeaseNotFoundError: No lease for the MAC address
    """
    try:
        wanted = normalize_mac(mac)
    except ValueError as e:
        raise MachineConfigError(f"Cannot look up a lease: {e}", context={"mac": mac}) from e

    try:
        async with aiofiles.open(leases_file) as f:
            content = await f.read()
    except OSError as e:
        raise LeaseFileError(
            f"failed to open lease file {leases_file}: {e}",
            context={"leases_file": str(leases_file)},
        ) from e

    matches = [lease for lease in parse_leases(content) if lease.hw_address == wanted]
    if not matches:
        raise LeaseNotFoundError(
            f"{constants.BOOTPD_ERROR_SIGNATURE} for {mac}",
            context={"mac": mac, "leases_file": str(leases_file)},
        )
    newest = max(matches, key=lambda lease: lease.lease)
    logger.debug("Found DHCP lease", extra={"mac": mac, "ip": newest.ip_address, "lease_name": newest.name})
    return newest.ip_address

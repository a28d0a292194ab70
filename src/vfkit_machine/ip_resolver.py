"""Guest IP discovery from the DHCP lease database.

The hypervisor never tells us the guest's address.  The guest asks the
host's bootpd for a lease, bootpd appends it to its lease file a few seconds
later, and we poll that file for the guest's MAC address.

Failure classification:
- Lookups that keep failing with the bootpd signature ("could not find an IP
  address") usually mean the application firewall is blocking bootpd.  The
  firewall exception is added once and FirewallBlockedError (transient) is
  raised so the caller retries start.
- Any other exhausted lookup is a hard IPResolutionError.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from vfkit_machine import constants
from vfkit_machine._logging import get_logger
from vfkit_machine.config import ResolverConfig
from vfkit_machine.exceptions import (
    FirewallBlockedError,
    FirewallError,
    IPResolutionError,
    LeaseError,
)
from vfkit_machine.firewall import unblock_bootpd
from vfkit_machine.platform_utils import is_nested_vm

logger = get_logger(__name__)

LeaseLookup = Callable[[str], Awaitable[str]]


def is_bootpd_error(err: BaseException) -> bool:
    """Whether a lookup failure looks like bootpd never answering the guest."""
    return constants.BOOTPD_ERROR_SIGNATURE in str(err)


class IPResolver:
    """Resolve a guest's IP address from its MAC address.

    Args:
        lookup: Single MAC -> IP lookup; raises a LeaseError subclass when
            no lease is available (yet)
        config: Retry budget (attempts, interval, nested multiplier)
        nested_vm: Probe reporting whether the host is itself a VM
        unblock_firewall: Remediation invoked on the bootpd signature
    """

    def __init__(
        self,
        lookup: LeaseLookup,
        *,
        config: ResolverConfig | None = None,
        nested_vm: Callable[[], bool] = is_nested_vm,
        unblock_firewall: Callable[[], Awaitable[None]] = unblock_bootpd,
    ):
        self._lookup = lookup
        self._config = config or ResolverConfig()
        self._nested_vm = nested_vm
        self._unblock_firewall = unblock_firewall

    async def resolve(self, mac: str) -> str:
        """Poll the lease lookup until ``mac`` has an address.

        Returns:
            Guest IP address

        Raises:
            FirewallBlockedError: bootpd was blocked; the firewall exception
                was added and start should be retried
            IPResolutionError: Budget exhausted for any other reason, or the
                firewall remediation itself failed
        """
        # is_nested_vm may shell out to sysctl
        budget = self._config.attempt_budget(await asyncio.to_thread(self._nested_vm))
        logger.debug("Resolving guest IP", extra={"mac": mac, "max_attempts": budget})
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(budget),
                wait=wait_fixed(self._config.interval_seconds),
                retry=retry_if_exception_type(LeaseError),
                before_sleep=before_sleep_log(logger, logging.DEBUG),
                reraise=True,
            ):
                with attempt:
                    ip = await self._lookup(mac)
                    logger.debug(
                        "Guest IP resolved",
                        extra={"mac": mac, "ip": ip, "attempt": attempt.retry_state.attempt_number},
                    )
                    return ip
        except LeaseError as e:
            await self._raise_classified(mac, e, budget)

        # Unreachable: AsyncRetrying either returns or raises
        raise AssertionError("Unreachable: AsyncRetrying exhausted without exception")

    async def _raise_classified(self, mac: str, err: LeaseError, attempts: int) -> None:
        context = {"mac": mac, "attempts": attempts, "last_error": str(err)}
        if not is_bootpd_error(err):
            raise IPResolutionError("IP address never found in dhcp leases file", context=context) from err

        try:
            await self._unblock_firewall()
        except FirewallError as unblock_err:
            logger.error("Failed unblocking bootpd from firewall", extra={**context, "error": str(unblock_err)})
            raise IPResolutionError(f"ip not found: {err}", context=context) from unblock_err

        logger.warning("Successfully unblocked bootpd process from firewall, retrying", extra=context)
        raise FirewallBlockedError(f"ip not found: {err}", context=context) from err

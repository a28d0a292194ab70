"""Guest SSH readiness and key generation."""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

import aiofiles.os

from vfkit_machine import constants
from vfkit_machine._logging import get_logger
from vfkit_machine.exceptions import MachineConfigError, SSHTimeoutError

logger = get_logger(__name__)


async def _probe(host: str, port: int, timeout: float) -> None:
    """Connect and read one byte.

    sshd sends its banner as soon as it accepts a connection.  EOF also
    counts as success: something accepted and closed the connection.

    Raises:
        OSError: Connection refused/reset or unreachable host
        TimeoutError: No connection or no data within ``timeout``
    """
    async with asyncio.timeout(timeout):
        reader, writer = await asyncio.open_connection(host, port)
        try:
            await reader.read(1)
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()


async def wait_for_tcp_with_delay(
    host: str,
    port: int,
    *,
    delay: float = constants.SSH_WAIT_DELAY_SECONDS,
    max_attempts: int = constants.SSH_WAIT_MAX_ATTEMPTS,
    probe_timeout: float = constants.SSH_PROBE_TIMEOUT_SECONDS,
) -> None:
    """Wait until ``host:port`` accepts a connection and answers a read.

    Args:
        host: Guest IP address
        port: Guest SSH port
        delay: Seconds to sleep after each failed attempt
        max_attempts: Attempts before giving up
        probe_timeout: Per-attempt connect and read timeout

    Raises:
        SSHTimeoutError: The endpoint never answered
    """
    last_error: BaseException | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            await _probe(host, port, probe_timeout)
        except (OSError, TimeoutError) as e:
            last_error = e
            logger.debug(
                f"Waiting for {host}:{port}",
                extra={"attempt": attempt, "max_attempts": max_attempts, "error": str(e)},
            )
            if attempt < max_attempts:
                await asyncio.sleep(delay)
            continue
        logger.debug(f"{host}:{port} is reachable", extra={"attempt": attempt})
        return

    raise SSHTimeoutError(
        f"{host}:{port} not reachable after {max_attempts} attempts: {last_error}",
        context={"host": host, "port": port, "attempts": max_attempts},
    ) from last_error


async def generate_ssh_key(path: Path) -> None:
    """Generate an RSA key pair at ``path`` and ``path.pub``.

    Raises:
        MachineConfigError: ssh-keygen missing or failed
    """
    cmd = ["ssh-keygen", "-q", "-t", "rsa", "-N", "", "-C", "vfkit-machine", "-f", str(path)]
    for stale in (path, path.with_name(path.name + ".pub")):
        with contextlib.suppress(FileNotFoundError):
            await aiofiles.os.remove(stale)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
    except OSError as e:
        raise MachineConfigError(f"Failed to run ssh-keygen: {e}") from e
    if proc.returncode != 0:
        raise MachineConfigError(
            f"ssh-keygen exited with {proc.returncode}: {stderr.decode(errors='replace').strip()}",
            context={"path": str(path)},
        )
    logger.debug("Generated SSH key", extra={"path": str(path)})

"""Detached child process supervision through PID files.

The hypervisor and the network helper outlive the CLI invocation that
started them, so the only durable link to them is a PID file.  A PID file
is a weak reference: before it is trusted the PID must be alive, not a
zombie, and its name must match the expected executable.  Anything else is
a stale PID file and is deleted, never reported as an error.

Blocking calls (Popen, psutil) run via asyncio.to_thread() so a hung
kernel call never stalls the event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shlex
import signal
import subprocess
from pathlib import Path
from typing import IO, TYPE_CHECKING

import aiofiles
import aiofiles.os
import psutil

from vfkit_machine._logging import get_logger
from vfkit_machine.exceptions import LaunchError, ProcessSignalError
from vfkit_machine.models import MachineState

if TYPE_CHECKING:
    from collections.abc import Sequence

    from vfkit_machine.models import ProcessHandle

logger = get_logger(__name__)


async def read_pidfile(path: Path) -> int:
    """Read a PID file.

    Raises:
        FileNotFoundError: PID file does not exist
        OSError: PID file cannot be read
        ValueError: PID file content is not a positive integer
    """
    async with aiofiles.open(path) as f:
        content = await f.read()
    pid = int(content.strip())
    if pid <= 0:
        raise ValueError(f"invalid pid {pid} in {path}")
    return pid


async def write_pidfile(path: Path, pid: int) -> None:
    """Write a PID file, replacing any previous content."""
    async with aiofiles.open(path, "w") as f:
        await f.write(f"{pid}\n")


def find_process(pid: int, name: str) -> psutil.Process | None:
    """Return ``pid`` as a psutil.Process if it is a live, non-zombie ``name``.

    The name matches the process name or the basename of any argv element,
    so ``sudo vmnet-helper ...`` matches ``vmnet-helper``.  When the OS
    refuses to show the process details the PID is trusted as is.
    """
    try:
        proc = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return None
    try:
        if proc.status() == psutil.STATUS_ZOMBIE:
            return None
        if proc.name() == name or any(Path(arg).name == name for arg in proc.cmdline()):
            return proc
        return None
    except psutil.NoSuchProcess:
        return None
    except psutil.AccessDenied:
        logger.debug("Cannot inspect process, trusting pidfile", extra={"pid": pid, "expected_name": name})
        return proc


def process_matches(pid: int, name: str) -> bool:
    """Check that ``pid`` is a live, non-zombie process named ``name``."""
    return find_process(pid, name) is not None


def _send_signal(proc: psutil.Process, sig: signal.Signals) -> None:
    # proc carries the creation time seen when its name was checked; psutil
    # raises NoSuchProcess if the PID has since been reused
    proc.send_signal(sig)


def _open_log(path: Path) -> IO[bytes]:
    return open(path, "wb", opener=lambda p, flags: os.open(p, flags, 0o600))  # noqa: SIM115


class ProcessSupervisor:
    """Launch, query and signal detached child processes by PID file.

    Usage:
        supervisor = ProcessSupervisor()
        handle = ProcessHandle("hypervisor", "vfkit", machine_dir / "vfkit.pid")
        await supervisor.launch("vfkit", args, handle, machine_dir / "vfkit.log")
        state = await supervisor.query_state(handle)
        await supervisor.terminate(handle)

    Every method is safe to call when nothing was ever launched: a missing
    PID file means Stopped.
    """

    def __init__(self) -> None:
        # Popen objects launched by this supervisor, polled so exited
        # children are reaped instead of lingering as zombies.
        self._children: dict[int, subprocess.Popen[bytes]] = {}

    async def launch(
        self,
        command: str,
        args: Sequence[str],
        handle: ProcessHandle,
        log_path: Path,
        *,
        stdout_path: Path | None = None,
    ) -> int:
        """Start ``command`` detached and record its PID.

        The child runs in a new session (and process group), so a caller
        signalling its own group with killpg() leaves it alone.  Stderr goes
        to ``log_path``, truncated on every launch.

        Args:
            command: Executable name or path
            args: Arguments after the executable
            handle: Role, expected name and PID file of the child
            log_path: File receiving the child's stderr
            stdout_path: Optional file receiving stdout (default /dev/null)

        Returns:
            PID of the launched process

        Raises:
            LaunchError: Executable missing/not executable, log file or PID
                file could not be written
        """
        cmd = [command, *args]
        context = {"role": handle.role, "command": command, "pidfile": str(handle.pidfile)}
        logger.debug(f"Launching {handle.role}: {shlex.join(cmd)}", extra=context)

        try:
            with contextlib.ExitStack() as stack:
                stderr = stack.enter_context(_open_log(log_path))
                stdout: IO[bytes] | int = subprocess.DEVNULL
                if stdout_path is not None:
                    stdout = stack.enter_context(_open_log(stdout_path))
                proc = await asyncio.to_thread(
                    subprocess.Popen,
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=stdout,
                    stderr=stderr,
                    start_new_session=True,  # New process group, survives caller's killpg
                    close_fds=True,
                )
        except OSError as e:
            raise LaunchError(f"Failed to start {handle.role} ({command}): {e}", context=context) from e

        try:
            await write_pidfile(handle.pidfile, proc.pid)
        except OSError as e:
            # Without a PID file nothing could ever stop this child again
            proc.kill()
            await asyncio.to_thread(proc.wait)
            raise LaunchError(
                f"Failed to write {handle.role} pidfile: {e}",
                context={**context, "pid": proc.pid},
            ) from e

        self._children[proc.pid] = proc
        logger.info(f"Started {handle.role}", extra={**context, "pid": proc.pid})
        return proc.pid

    async def query_state(self, handle: ProcessHandle) -> MachineState:
        """Report whether the recorded process is running.

        Returns:
            STOPPED when there is no PID file or it was stale (and has now
            been removed), RUNNING when the PID is alive and matches, ERROR
            when the PID file exists but cannot be read or parsed.
        """
        self._reap_children()
        try:
            pid = await read_pidfile(handle.pidfile)
        except FileNotFoundError:
            return MachineState.STOPPED
        except (OSError, ValueError) as e:
            logger.warning(
                f"Cannot read {handle.role} pidfile",
                extra={"pidfile": str(handle.pidfile), "error": str(e)},
            )
            return MachineState.ERROR

        if await asyncio.to_thread(process_matches, pid, handle.name):
            return MachineState.RUNNING

        logger.debug(f"Stale {handle.role} pidfile", extra={"pid": pid, "pidfile": str(handle.pidfile)})
        await self._discard_pidfile(handle)
        return MachineState.STOPPED

    async def terminate(self, handle: ProcessHandle) -> bool:
        """Ask the recorded process to exit (SIGTERM).

        Returns:
            True if a signal was delivered, False if there was nothing to
            stop (no PID file, or a stale one that was removed).

        Raises:
            ProcessSignalError: PID file unreadable or signal not permitted
        """
        return await self._signal(handle, signal.SIGTERM)

    async def kill(self, handle: ProcessHandle) -> bool:
        """Force the recorded process to exit (SIGKILL) and drop its PID file.

        Returns:
            True if a signal was delivered, False if there was nothing to kill.

        Raises:
            ProcessSignalError: PID file unreadable or signal not permitted
        """
        delivered = await self._signal(handle, signal.SIGKILL)
        if delivered:
            await self._discard_pidfile(handle)
        return delivered

    async def _signal(self, handle: ProcessHandle, sig: signal.Signals) -> bool:
        self._reap_children()
        try:
            pid = await read_pidfile(handle.pidfile)
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as e:
            raise ProcessSignalError(
                f"Cannot read {handle.role} pidfile: {e}",
                context={"pidfile": str(handle.pidfile)},
            ) from e

        proc = await asyncio.to_thread(find_process, pid, handle.name)
        if proc is None:
            logger.debug(f"Stale {handle.role} pidfile", extra={"pid": pid, "pidfile": str(handle.pidfile)})
            await self._discard_pidfile(handle)
            return False

        try:
            await asyncio.to_thread(_send_signal, proc, sig)
        except psutil.NoSuchProcess:
            await self._discard_pidfile(handle)
            return False
        except psutil.AccessDenied as e:
            raise ProcessSignalError(
                f"Not permitted to send {sig.name} to {handle.role}",
                pid=pid,
                context={"role": handle.role},
            ) from e

        logger.debug(f"Sent {sig.name} to {handle.role}", extra={"pid": pid, "role": handle.role})
        return True

    async def _discard_pidfile(self, handle: ProcessHandle) -> None:
        try:
            await aiofiles.os.remove(handle.pidfile)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug(f"Failed to remove {handle.pidfile}", extra={"error": str(e)})

    def _reap_children(self) -> None:
        for pid, proc in list(self._children.items()):
            if proc.poll() is not None:
                del self._children[pid]

"""Tests for the SSH readiness probe and key generation."""

from __future__ import annotations

import asyncio
import shutil
import socket
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from vfkit_machine.exceptions import MachineConfigError, SSHTimeoutError
from vfkit_machine.ssh import generate_ssh_key, wait_for_tcp_with_delay

Handler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]

# ============================================================================
# Helpers
# ============================================================================


async def _banner(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    writer.write(b"SSH-2.0-OpenSSH_9.6\r\n")
    await writer.drain()
    writer.close()


async def _close_immediately(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    writer.close()


async def _silent(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    # Hold the connection open without sending until the client gives up
    await reader.read()
    writer.close()


@pytest.fixture
async def serve() -> AsyncIterator[Callable[[Handler], Awaitable[int]]]:
    """Start TCP servers on 127.0.0.1; returns the bound port."""
    servers: list[asyncio.Server] = []

    async def _serve(handler: Handler) -> int:
        server = await asyncio.start_server(handler, "127.0.0.1", 0)
        servers.append(server)
        return server.sockets[0].getsockname()[1]

    yield _serve
    for server in servers:
        server.close()
        await server.wait_closed()


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# ============================================================================
# wait_for_tcp_with_delay
# ============================================================================


class TestWaitForTcp:
    """Tests for the connect-and-read readiness probe."""

    async def test_banner_succeeds(self, serve: Callable[[Handler], Awaitable[int]]) -> None:
        """A server sending its banner is ready."""
        port = await serve(_banner)
        await wait_for_tcp_with_delay("127.0.0.1", port, delay=0, max_attempts=1)

    async def test_eof_counts_as_success(self, serve: Callable[[Handler], Awaitable[int]]) -> None:
        """Accept-then-close (EOF on read) is success."""
        port = await serve(_close_immediately)
        await wait_for_tcp_with_delay("127.0.0.1", port, delay=0, max_attempts=1)

    async def test_refused_exhausts_attempts(self) -> None:
        """Nothing listening: SSHTimeoutError after max_attempts."""
        with pytest.raises(SSHTimeoutError) as exc_info:
            await wait_for_tcp_with_delay("127.0.0.1", _unused_port(), delay=0, max_attempts=3)
        assert exc_info.value.context["attempts"] == 3
        assert isinstance(exc_info.value.__cause__, OSError)

    async def test_silent_server_times_out(self, serve: Callable[[Handler], Awaitable[int]]) -> None:
        """Accepting without sending anything is not ready."""
        port = await serve(_silent)
        with pytest.raises(SSHTimeoutError):
            await wait_for_tcp_with_delay("127.0.0.1", port, delay=0, max_attempts=2, probe_timeout=0.1)

    async def test_retries_until_ready(self) -> None:
        """Failed probes are retried with the fixed delay until one succeeds."""
        probe = AsyncMock(side_effect=[ConnectionRefusedError(), ConnectionResetError(), TimeoutError(), None])
        with (
            patch("vfkit_machine.ssh._probe", probe),
            patch("vfkit_machine.ssh.asyncio.sleep", new_callable=AsyncMock) as sleep,
        ):
            await wait_for_tcp_with_delay("192.168.105.2", 22, delay=1.0, max_attempts=10)
        assert probe.await_count == 4
        assert sleep.await_count == 3
        sleep.assert_awaited_with(1.0)

    async def test_no_sleep_after_last_attempt(self) -> None:
        """The final failed attempt raises without sleeping."""
        probe = AsyncMock(side_effect=ConnectionRefusedError())
        with (
            patch("vfkit_machine.ssh._probe", probe),
            patch("vfkit_machine.ssh.asyncio.sleep", new_callable=AsyncMock) as sleep,
            pytest.raises(SSHTimeoutError),
        ):
            await wait_for_tcp_with_delay("192.168.105.2", 22, delay=1.0, max_attempts=2)
        assert probe.await_count == 2
        assert sleep.await_count == 1

    async def test_cancellation_propagates(self) -> None:
        """Cancelling the wait stops it promptly."""
        task = asyncio.create_task(
            wait_for_tcp_with_delay("127.0.0.1", _unused_port(), delay=10, max_attempts=100)
        )
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


# ============================================================================
# generate_ssh_key
# ============================================================================


class TestGenerateSshKey:
    """Tests for ssh-keygen key pair generation."""

    @pytest.mark.skipif(shutil.which("ssh-keygen") is None, reason="ssh-keygen not installed")
    async def test_generates_key_pair(self, tmp_path: Path) -> None:
        """Private and public keys are written."""
        key = tmp_path / "id_rsa"
        await generate_ssh_key(key)
        assert key.exists()
        assert (tmp_path / "id_rsa.pub").read_text().startswith("ssh-rsa ")

    @pytest.mark.skipif(shutil.which("ssh-keygen") is None, reason="ssh-keygen not installed")
    async def test_replaces_existing_key(self, tmp_path: Path) -> None:
        """Existing key files are replaced rather than prompting."""
        key = tmp_path / "id_rsa"
        key.write_text("old")
        (tmp_path / "id_rsa.pub").write_text("old")
        await generate_ssh_key(key)
        assert (tmp_path / "id_rsa.pub").read_text() != "old"

    async def test_missing_ssh_keygen(self, tmp_path: Path) -> None:
        """A missing ssh-keygen raises MachineConfigError."""
        with (
            patch("vfkit_machine.ssh.asyncio.create_subprocess_exec", side_effect=FileNotFoundError("ssh-keygen")),
            pytest.raises(MachineConfigError, match="ssh-keygen"),
        ):
            await generate_ssh_key(tmp_path / "id_rsa")

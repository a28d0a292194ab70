"""vfkit RESTful control channel.

vfkit serves a small HTTP API on the unix socket passed with
``--restful-uri unix://<path>``.  Only the VM state endpoint is used:

    GET  /vm/state                      -> {"state": "VirtualMachineStateRunning"}
    POST /vm/state {"state": "Stop"}     -> request a guest shutdown
    POST /vm/state {"state": "HardStop"} -> stop the VM immediately

The channel is best effort.  A vfkit that is already stopping (or stuck)
often refuses the connection or closes it mid-response, so callers treat
every ChannelError as a cue to fall back to signalling the PID.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import httpx

from vfkit_machine import constants
from vfkit_machine._logging import get_logger
from vfkit_machine.exceptions import ChannelError

logger = get_logger(__name__)

StateChange = Literal["Stop", "HardStop"]

_BASE_URL = "http://_"
_STATE_PATH = "/vm/state"


class VmControlChannel:
    """HTTP-over-unix-socket client for a running vfkit process.

    A fresh connection is opened per request: the socket is created by the
    hypervisor and may disappear or be replaced between calls.

    Args:
        socket_path: vfkit RESTful socket
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport override (tests use
            httpx.MockTransport)
    """

    def __init__(
        self,
        socket_path: Path,
        *,
        timeout: float = constants.CONTROL_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.socket_path = socket_path
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        transport = self._transport or httpx.AsyncHTTPTransport(uds=str(self.socket_path))
        return httpx.AsyncClient(transport=transport, base_url=_BASE_URL, timeout=self._timeout)

    async def get_vm_state(self) -> str:
        """Query the hypervisor's VM state.

        Returns:
            The ``state`` string reported by vfkit

        Raises:
            ChannelError: Socket unreachable, timeout, HTTP error status or
                malformed response body
        """
        try:
            async with self._client() as client:
                response = await client.get(_STATE_PATH)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPError as e:
            raise ChannelError(
                f"GET {_STATE_PATH} failed: {e}",
                context={"socket": str(self.socket_path), "error_type": type(e).__name__},
            ) from e
        except ValueError as e:
            # JSONDecodeError and UnicodeDecodeError (non UTF-8 body)
            raise ChannelError(f"Malformed vm state response: {e}", context={"socket": str(self.socket_path)}) from e

        if not isinstance(body, dict) or not isinstance(body.get("state"), str):
            raise ChannelError(
                "vm state response has no 'state' string",
                context={"socket": str(self.socket_path), "body": body},
            )
        logger.debug("Get vfkit state", extra={"state": body["state"]})
        return body["state"]

    async def set_vm_state(self, state: StateChange) -> None:
        """Request a VM state change.

        Args:
            state: "Stop" (guest shutdown) or "HardStop" (immediate stop)

        Raises:
            ChannelError: Socket unreachable, timeout or HTTP error status
        """
        try:
            async with self._client() as client:
                response = await client.post(_STATE_PATH, json={"state": state})
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ChannelError(
                f"POST {_STATE_PATH} {state} failed: {e}",
                context={"socket": str(self.socket_path), "state": state, "error_type": type(e).__name__},
            ) from e
        logger.info("Set vfkit state", extra={"state": state})

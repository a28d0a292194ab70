"""Boot asset provisioning.

A machine boots from three files in its own directory: the boot ISO, the
kernel and the initrd extracted from it.  Where they come from (a download
cache, a build tree) is up to the BootAssets implementation.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Protocol

import aiofiles.os

from vfkit_machine._logging import get_logger
from vfkit_machine.exceptions import MachineConfigError
from vfkit_machine.paths import MachinePaths

logger = get_logger(__name__)


class BootAssets(Protocol):
    """Places the ISO, kernel and initrd into a machine directory."""

    async def provision(self, paths: MachinePaths) -> None: ...


class LocalBootAssets:
    """Copy boot assets from local files.

    Raises MachineConfigError from provision() when a source is not
    configured or does not exist.
    """

    def __init__(self, iso: Path | None, kernel: Path | None, initrd: Path | None):
        self.iso = iso
        self.kernel = kernel
        self.initrd = initrd

    async def provision(self, paths: MachinePaths) -> None:
        pairs = {
            "iso": (self.iso, paths.iso),
            "kernel": (self.kernel, paths.kernel),
            "initrd": (self.initrd, paths.initrd),
        }
        for asset, (src, dst) in pairs.items():
            if src is None:
                raise MachineConfigError(
                    f"No boot {asset} configured",
                    context={"env": f"VFKIT_MACHINE_BOOT_{asset.upper()}"},
                )
            if not await aiofiles.os.path.isfile(src):
                raise MachineConfigError(f"Boot {asset} not found: {src}", context={"path": str(src)})
            try:
                await asyncio.to_thread(shutil.copyfile, src, dst)
            except OSError as e:
                raise MachineConfigError(f"Failed to copy boot {asset}: {e}", context={"src": str(src)}) from e
            logger.debug(f"Copied boot {asset}", extra={"src": str(src), "dst": str(dst)})

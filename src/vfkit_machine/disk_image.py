"""boot2docker-style bootstrap disk and raw extra disks.

The root disk starts life as a tiny tar archive followed by zeros.  On first
boot the guest's automount script finds the magic entry at the start of the
disk, formats the disk, and unpacks the archive into the new filesystem,
which installs the SSH public key for the docker user.

Archive layout (in order):
    boot2docker, please format-me   file, content = its own name
    .ssh/                           directory, mode 0700
    .ssh/authorized_keys            file, mode 0644, the public key
    .ssh/authorized_keys2           file, mode 0644, the public key

Archive metadata (mtime, owner) is zeroed so identical inputs give
identical bytes.
"""

from __future__ import annotations

import asyncio
import io
import os
import tarfile
from pathlib import Path

import aiofiles
import aiofiles.os

from vfkit_machine import constants
from vfkit_machine._logging import get_logger
from vfkit_machine.exceptions import BuildError

logger = get_logger(__name__)


def _tarinfo(name: str, *, size: int = 0, mode: int = 0o644, is_dir: bool = False) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.size = size
    info.mode = mode
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    if is_dir:
        info.type = tarfile.DIRTYPE
    return info


def build_bootstrap_archive(public_key: bytes) -> bytes:
    """Build the bootstrap tar archive for ``public_key``.

    Raises:
        BuildError: The archive could not be written
    """
    magic = constants.BOOTSTRAP_MAGIC.encode()
    buf = io.BytesIO()
    try:
        with tarfile.open(fileobj=buf, mode="w", format=tarfile.USTAR_FORMAT) as tar:
            # magic entry first so the automount script knows to format the disk
            tar.addfile(_tarinfo(constants.BOOTSTRAP_MAGIC, size=len(magic)), io.BytesIO(magic))
            tar.addfile(_tarinfo(".ssh", mode=0o700, is_dir=True))
            for name in (".ssh/authorized_keys", ".ssh/authorized_keys2"):
                tar.addfile(_tarinfo(name, size=len(public_key)), io.BytesIO(public_key))
    except (tarfile.TarError, ValueError) as e:
        raise BuildError(f"Failed to build bootstrap archive: {e}") from e
    return buf.getvalue()


def build_bootstrap_image(public_key: bytes, size_bytes: int) -> bytes:
    """Bootstrap archive truncated or zero-padded to exactly ``size_bytes``."""
    if size_bytes < 0:
        raise BuildError(f"Invalid disk size: {size_bytes} bytes")
    archive = build_bootstrap_archive(public_key)[:size_bytes]
    return archive + bytes(size_bytes - len(archive))


async def write_bootstrap_image(path: Path, public_key_path: Path, size_mb: int) -> None:
    """Write the bootstrap disk image at ``path``, sized to ``size_mb`` MB.

    The archive is written first and the file is then truncated/extended to
    the final size, so the tail of the disk stays sparse.

    Raises:
        BuildError: Public key unreadable, or the image could not be
            written or resized
    """
    size_bytes = size_mb * constants.BYTES_PER_MB
    logger.debug(f"Creating {size_mb} MB hard disk image...", extra={"path": str(path)})

    try:
        async with aiofiles.open(public_key_path, "rb") as f:
            public_key = await f.read()
    except OSError as e:
        raise BuildError(
            f"Failed to read public key: {e}",
            context={"public_key_path": str(public_key_path)},
        ) from e

    archive = build_bootstrap_archive(public_key)
    try:
        async with aiofiles.open(path, "wb") as f:
            await f.write(archive)
        await asyncio.to_thread(os.truncate, path, size_bytes)
    except OSError as e:
        raise BuildError(
            f"Failed to write disk image: {e}",
            context={"path": str(path), "size_bytes": size_bytes},
        ) from e

    logger.debug("Disk image written", extra={"path": str(path), "size_bytes": size_bytes})


async def create_raw_disk(path: Path, size_mb: int) -> None:
    """Create a sparse raw disk of ``size_mb`` MB; an existing file is kept.

    Raises:
        BuildError: The file could not be created or resized
    """
    if await aiofiles.os.path.exists(path):
        logger.debug("Raw disk already exists", extra={"path": str(path)})
        return
    size_bytes = size_mb * constants.BYTES_PER_MB
    try:
        async with aiofiles.open(path, "wb"):
            pass
        await asyncio.to_thread(os.truncate, path, size_bytes)
    except OSError as e:
        raise BuildError(f"Failed to create raw disk: {e}", context={"path": str(path)}) from e
    logger.debug("Raw disk created", extra={"path": str(path), "size_bytes": size_bytes})

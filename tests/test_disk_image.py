"""Tests for the bootstrap disk image and raw extra disks."""

from __future__ import annotations

import io
import tarfile
from pathlib import Path
from unittest.mock import patch

import pytest

from vfkit_machine.constants import BOOTSTRAP_MAGIC, BYTES_PER_MB
from vfkit_machine.disk_image import (
    build_bootstrap_archive,
    build_bootstrap_image,
    create_raw_disk,
    write_bootstrap_image,
)
from vfkit_machine.exceptions import BuildError

PUBLIC_KEY = b"ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAABAQC7 test@host\n"


def _members(data: bytes) -> list[tarfile.TarInfo]:
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
        return tar.getmembers()


# ============================================================================
# Archive
# ============================================================================


class TestBootstrapArchive:
    """Tests for build_bootstrap_archive."""

    def test_entry_order_and_types(self) -> None:
        """Magic file first, then .ssh dir, then both authorized_keys files."""
        members = _members(build_bootstrap_archive(PUBLIC_KEY))
        assert [m.name for m in members] == [
            "boot2docker, please format-me",
            ".ssh",
            ".ssh/authorized_keys",
            ".ssh/authorized_keys2",
        ]
        assert members[0].isfile()
        assert members[1].isdir()
        assert members[2].isfile()
        assert members[3].isfile()

    def test_modes(self) -> None:
        """.ssh is 0700, key files are 0644."""
        members = {m.name: m for m in _members(build_bootstrap_archive(PUBLIC_KEY))}
        assert members[".ssh"].mode == 0o700
        assert members[".ssh/authorized_keys"].mode == 0o644
        assert members[".ssh/authorized_keys2"].mode == 0o644

    def test_contents(self) -> None:
        """Magic file contains its own name; key files contain the key."""
        with tarfile.open(fileobj=io.BytesIO(build_bootstrap_archive(PUBLIC_KEY)), mode="r:") as tar:
            magic = tar.extractfile(BOOTSTRAP_MAGIC)
            keys = tar.extractfile(".ssh/authorized_keys")
            keys2 = tar.extractfile(".ssh/authorized_keys2")
            assert magic is not None and keys is not None and keys2 is not None
            assert magic.read() == BOOTSTRAP_MAGIC.encode()
            assert keys.read() == PUBLIC_KEY
            assert keys2.read() == PUBLIC_KEY

    def test_magic_at_start_of_disk(self) -> None:
        """The guest finds the magic string at offset 0."""
        assert build_bootstrap_archive(PUBLIC_KEY).startswith(BOOTSTRAP_MAGIC.encode())

    def test_deterministic(self) -> None:
        """Same key, same bytes (no timestamps or owners leak in)."""
        assert build_bootstrap_archive(PUBLIC_KEY) == build_bootstrap_archive(PUBLIC_KEY)
        for member in _members(build_bootstrap_archive(PUBLIC_KEY)):
            assert member.mtime == 0
            assert member.uid == member.gid == 0


# ============================================================================
# Image
# ============================================================================


class TestBootstrapImage:
    """Tests for build_bootstrap_image sizing."""

    @pytest.mark.parametrize("size", [BYTES_PER_MB, 20480, 100, 0])
    def test_exact_size(self, size: int) -> None:
        """Output is exactly size_bytes, truncated or zero-padded."""
        image = build_bootstrap_image(PUBLIC_KEY, size)
        assert len(image) == size

    def test_padding_is_zeros(self) -> None:
        """Bytes after the archive are zero."""
        archive = build_bootstrap_archive(PUBLIC_KEY)
        image = build_bootstrap_image(PUBLIC_KEY, len(archive) + 4096)
        assert image[: len(archive)] == archive
        assert image[len(archive) :] == bytes(4096)

    def test_truncation_keeps_prefix(self) -> None:
        """A size smaller than the archive keeps the archive prefix."""
        archive = build_bootstrap_archive(PUBLIC_KEY)
        assert build_bootstrap_image(PUBLIC_KEY, 512) == archive[:512]

    def test_deterministic(self) -> None:
        """Identical inputs give identical images."""
        assert build_bootstrap_image(PUBLIC_KEY, 8192) == build_bootstrap_image(PUBLIC_KEY, 8192)

    def test_negative_size(self) -> None:
        """Negative sizes are rejected."""
        with pytest.raises(BuildError):
            build_bootstrap_image(PUBLIC_KEY, -1)


class TestWriteBootstrapImage:
    """Tests for write_bootstrap_image."""

    async def test_writes_sized_file(self, tmp_path: Path) -> None:
        """File is size_mb MiB and starts with the archive."""
        key_path = tmp_path / "id_rsa.pub"
        key_path.write_bytes(PUBLIC_KEY)
        disk = tmp_path / "disk.img"

        await write_bootstrap_image(disk, key_path, 2)

        assert disk.stat().st_size == 2 * BYTES_PER_MB
        data = disk.read_bytes()
        assert data == build_bootstrap_image(PUBLIC_KEY, 2 * BYTES_PER_MB)

    async def test_missing_public_key(self, tmp_path: Path) -> None:
        """Unreadable public key raises BuildError and writes nothing."""
        disk = tmp_path / "disk.img"
        with pytest.raises(BuildError, match="public key"):
            await write_bootstrap_image(disk, tmp_path / "missing.pub", 1)
        assert not disk.exists()

    async def test_write_failure_propagates(self, tmp_path: Path) -> None:
        """Write errors raise BuildError instead of being ignored."""
        key_path = tmp_path / "id_rsa.pub"
        key_path.write_bytes(PUBLIC_KEY)
        with pytest.raises(BuildError, match="write disk image"):
            await write_bootstrap_image(tmp_path / "no-dir" / "disk.img", key_path, 1)

    async def test_truncate_failure_propagates(self, tmp_path: Path) -> None:
        """Resize errors raise BuildError."""
        key_path = tmp_path / "id_rsa.pub"
        key_path.write_bytes(PUBLIC_KEY)
        with (
            patch("vfkit_machine.disk_image.os.truncate", side_effect=OSError(28, "No space left on device")),
            pytest.raises(BuildError) as exc_info,
        ):
            await write_bootstrap_image(tmp_path / "disk.img", key_path, 1)
        assert exc_info.value.context["size_bytes"] == BYTES_PER_MB


class TestCreateRawDisk:
    """Tests for create_raw_disk."""

    async def test_creates_sized_file(self, tmp_path: Path) -> None:
        """A new raw disk has the requested size and reads as zeros."""
        path = tmp_path / "dev-0.rawdisk"
        await create_raw_disk(path, 3)
        assert path.stat().st_size == 3 * BYTES_PER_MB
        with path.open("rb") as f:
            assert f.read(4096) == bytes(4096)

    async def test_existing_disk_kept(self, tmp_path: Path) -> None:
        """An existing disk (with data) is not overwritten."""
        path = tmp_path / "dev-0.rawdisk"
        path.write_bytes(b"guest data")
        await create_raw_disk(path, 3)
        assert path.read_bytes() == b"guest data"

    async def test_failure_raises_build_error(self, tmp_path: Path) -> None:
        """Creation errors raise BuildError."""
        with pytest.raises(BuildError):
            await create_raw_disk(tmp_path / "no-dir" / "dev-0.rawdisk", 1)

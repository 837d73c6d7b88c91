"""GPT disks holding named partitions, and switching the UFS boot LUN."""

from __future__ import annotations

import errno
import fcntl
import os
import struct
import sys

from .gpt import (
    BOOT_DEV_DIR,
    BOOT_LUN_A_ID,
    BOOT_LUN_B_ID,
    EMMC_DEVICE,
    PARTITION_COUNT_OFFSET,
    PENTRIES_OFFSET,
    PENTRY_SIZE_OFFSET,
    BootChain,
    GptError,
    GptInstance,
    GptTables,
)
from .ufs_bsg import DEFAULT_BSG_DEVICE, UfsBsgError, set_boot_lun

__all__ = [
    "GptDisk",
    "block_size",
    "device_path_from_partition_name",
    "is_partition_backed_by_emmc",
    "set_xbl_boot_partition",
]

_BLKSSZGET = 0x1268


def device_path_from_partition_name(partname: str, partlabel_dir: str = BOOT_DEV_DIR) -> str:
    """Return the block device of the disk that holds ``partname``.

    The partition link is resolved and its trailing partition number
    removed, so ``/dev/sda12`` gives ``/dev/sda`` and ``/dev/mmcblk0p5``
    gives ``/dev/mmcblk0``.
    """
    if not partname:
        raise GptError("Invalid partition name")
    link = os.path.join(partlabel_dir, partname)
    try:
        resolved = os.path.realpath(link, strict=True)
    except OSError as exc:
        raise GptError(f"Failed to resolve path for {partname}: {exc.strerror}") from exc
    stem = resolved.rstrip("0123456789")
    if len(stem) >= 2 and stem[-1] == "p" and stem[-2].isdigit():
        stem = stem[:-1]
    return stem


def block_size(fd: int) -> int:
    """Return the logical sector size of the block device open on ``fd``."""
    if fd < 0:
        raise GptError("invalid descriptor")
    buf = bytearray(4)
    try:
        fcntl.ioctl(fd, _BLKSSZGET, buf, True)
    except OSError as exc:
        raise GptError(f"Failed to get GPT dev block size: {exc.strerror}") from exc
    size = int.from_bytes(buf, sys.byteorder)
    if size == 0:
        raise GptError("Failed to get GPT dev block size")
    return size


def _read_at(fd: int, offset: int, length: int) -> bytes:
    chunks = []
    remaining = length
    while remaining > 0:
        chunk = os.pread(fd, remaining, offset)
        if not chunk:
            break
        chunks.append(chunk)
        offset += len(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _write_at(fd: int, offset: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.pwrite(fd, view, offset)
        offset += written
        view = view[written:]
    os.fsync(fd)


def _entry_array_location(header: bytes | bytearray, sector: int) -> tuple[int, int]:
    start = struct.unpack_from("<Q", header, PENTRIES_OFFSET)[0] * sector
    count = struct.unpack_from("<I", header, PARTITION_COUNT_OFFSET)[0]
    size = struct.unpack_from("<I", header, PENTRY_SIZE_OFFSET)[0]
    return start, count * size


def _backup_header_offset(fd: int, sector: int) -> int:
    return os.lseek(fd, 0, os.SEEK_END) - sector


class GptDisk:
    """The GPT of one disk, loaded through the name of a partition on it.

    ``block_size`` overrides the sector size otherwise asked of the device.
    """

    def __init__(self, partlabel_dir: str = BOOT_DEV_DIR, block_size: int | None = None) -> None:
        self.partlabel_dir = partlabel_dir
        self._fixed_block_size = block_size
        self.block_size: int | None = block_size
        self.devpath = ""
        self.tables: GptTables | None = None

    def is_valid(self) -> bool:
        """Whether the disk's tables have been loaded."""
        return self.tables is not None

    def free(self) -> None:
        """Drop the loaded tables."""
        self.tables = None
        self.devpath = ""

    def is_for_partition(self, partname: str) -> bool:
        """Whether ``partname`` lies on the disk currently loaded."""
        return device_path_from_partition_name(partname, self.partlabel_dir) == self.devpath

    def load(self, partname: str) -> None:
        """Load the tables of the disk holding ``partname``.

        Nothing is read again if that disk is already loaded.
        """
        devpath = device_path_from_partition_name(partname, self.partlabel_dir)
        if self.is_valid() and devpath == self.devpath:
            return
        self.free()

        try:
            fd = os.open(devpath, os.O_RDONLY)
        except OSError as exc:
            raise GptError(f"Failed to open {devpath}: {exc.strerror}") from exc
        try:
            sector = self._fixed_block_size
            if sector is None:
                sector = block_size(fd)
            primary_header = _read_at(fd, sector, sector)
            backup_offset = _backup_header_offset(fd, sector)
            if backup_offset < 0:
                raise GptError("Failed to get gpt header offset")
            backup_header = _read_at(fd, backup_offset, sector)
            entries = []
            for header in (primary_header, backup_header):
                if len(header) < PENTRY_SIZE_OFFSET + 4:
                    raise GptError(f"Failed to read GPT header from {devpath}")
                start, size = _entry_array_location(header, sector)
                entries.append(_read_at(fd, start, size))
        except OSError as exc:
            raise GptError(f"Failed to read GPT from {devpath}: {exc.strerror}") from exc
        finally:
            os.close(fd)

        self.tables = GptTables(primary_header, backup_header, entries[0], entries[1])
        self.devpath = devpath
        self.block_size = sector

    def _require_tables(self) -> GptTables:
        if self.tables is None:
            raise GptError("disk handle not initialised")
        return self.tables

    def get_pentry(self, partname: str, instance: GptInstance) -> memoryview:
        """Return a writable view of ``partname``'s entry in the chosen table."""
        tables = self._require_tables()
        offset = tables.entry_offset(partname, instance)
        entries = (
            tables.primary_entries
            if GptInstance(instance) is GptInstance.PRIMARY
            else tables.backup_entries
        )
        return memoryview(entries)[offset : offset + tables.pentry_size]

    def commit(self) -> None:
        """Recompute checksums and write both tables back to the disk."""
        tables = self._require_tables()
        tables.update_crc()
        try:
            fd = os.open(self.devpath, os.O_RDWR)
        except OSError as exc:
            raise GptError(f"Failed to open {self.devpath}: {exc.strerror}") from exc
        try:
            sector = self.block_size
            if sector is None:
                sector = block_size(fd)
            _write_at(fd, sector, bytes(tables.primary_header[:sector]))
            start, size = _entry_array_location(tables.primary_header, sector)
            _write_at(fd, start, bytes(tables.primary_entries[:size]))

            backup_offset = _backup_header_offset(fd, sector)
            if backup_offset <= 0:
                raise GptError("Failed to get gpt header offset")
            _write_at(fd, backup_offset, bytes(tables.backup_header[:sector]))
            start, size = _entry_array_location(tables.backup_header, sector)
            _write_at(fd, start, bytes(tables.backup_entries[:size]))
            os.fsync(fd)
        except OSError as exc:
            raise GptError(f"Failed to write GPT to {self.devpath}: {exc.strerror}") from exc
        finally:
            os.close(fd)


def is_partition_backed_by_emmc(partname: str, partlabel_dir: str = BOOT_DEV_DIR) -> bool:
    """Whether ``partname`` lies on the eMMC device; unresolvable means no."""
    try:
        return device_path_from_partition_name(partname, partlabel_dir) == EMMC_DEVICE
    except GptError:
        return False


def set_xbl_boot_partition(
    chain: BootChain,
    partlabel_dir: str = BOOT_DEV_DIR,
    bsg_path: str = DEFAULT_BSG_DEVICE,
) -> None:
    """Make the UFS device boot XBL from the LUN belonging to ``chain``.

    Raises GptError if the XBL partitions are not laid out as expected, and
    UfsBsgError with errno ENODEV if the boot LUN cannot be changed.
    """
    xbl_primary = os.path.join(partlabel_dir, "xbl_a")
    xbl_backup = os.path.join(partlabel_dir, "xblbak")
    xbl_ab_primary = os.path.join(partlabel_dir, "xbl_a")
    xbl_ab_secondary = os.path.join(partlabel_dir, "xbl_b")
    exists = os.path.exists

    try:
        chain = BootChain(chain)
    except ValueError as exc:
        raise GptError("Invalid boot chain id") from exc

    if chain is BootChain.BACKUP:
        lun_id = BOOT_LUN_B_ID
        if not (exists(xbl_backup) or exists(xbl_ab_secondary)):
            raise GptError("Failed to locate secondary xbl")
    else:
        lun_id = BOOT_LUN_A_ID
        if not (exists(xbl_primary) or exists(xbl_ab_primary)):
            raise GptError("Failed to locate primary xbl")

    # Either xbl and xblbak, or xbl_a and xbl_b, must both be present.
    if not (exists(xbl_primary) and exists(xbl_backup)) and not (
        exists(xbl_ab_primary) and exists(xbl_ab_secondary)
    ):
        raise GptError("primary/secondary XBL partition not found")

    try:
        set_boot_lun(lun_id, bsg_path)
    except (UfsBsgError, ValueError) as exc:
        raise UfsBsgError(errno.ENODEV, f"Failed to set boot LUN {lun_id}: {exc}") from exc
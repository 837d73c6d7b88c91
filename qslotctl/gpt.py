"""In-memory GUID partition tables and the A/B attribute bits kept in them."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterator

from .crc32 import efi_crc32

__all__ = [
    "AB_FLAG_OFFSET",
    "AB_PARTITION_ATTR_BOOT_SUCCESSFUL",
    "AB_PARTITION_ATTR_SLOT_ACTIVE",
    "AB_PARTITION_ATTR_UNBOOTABLE",
    "AB_SLOT_ACTIVE_VAL",
    "AB_SLOT_A_SUFFIX",
    "AB_SLOT_B_SUFFIX",
    "AB_SLOT_INACTIVE_VAL",
    "ALL_PARTITIONS",
    "ATTRIBUTE_FLAG_OFFSET",
    "BAK_PTN_NAME_EXT",
    "BOOT_DEV_DIR",
    "BOOT_LUN_A_ID",
    "BOOT_LUN_B_ID",
    "BootChain",
    "EMMC_DEVICE",
    "GPT_SIGNATURE",
    "GptError",
    "GptInstance",
    "GptTables",
    "HEADER_CRC_OFFSET",
    "HEADER_SIZE_OFFSET",
    "MAX_GPT_NAME_SIZE",
    "PARTITION_COUNT_OFFSET",
    "PARTITION_CRC_OFFSET",
    "PARTITION_NAME_OFFSET",
    "PENTRIES_OFFSET",
    "PENTRY_SIZE_OFFSET",
    "PTN_SWAP_LIST",
    "PTN_XBL",
    "TYPE_GUID_OFFSET",
    "TYPE_GUID_SIZE",
    "XBL_AB_PRIMARY",
    "XBL_AB_SECONDARY",
    "XBL_BACKUP",
    "XBL_PRIMARY",
    "find_partition_entry",
    "hex_dump",
]

GPT_SIGNATURE = b"EFI PART"
HEADER_SIZE_OFFSET = 12
HEADER_CRC_OFFSET = 16
PRIMARY_HEADER_OFFSET = 24
BACKUP_HEADER_OFFSET = 32
FIRST_USABLE_LBA_OFFSET = 40
LAST_USABLE_LBA_OFFSET = 48
PENTRIES_OFFSET = 72
PARTITION_COUNT_OFFSET = 80
PENTRY_SIZE_OFFSET = 84
PARTITION_CRC_OFFSET = 88
_MIN_HEADER_SIZE = PARTITION_CRC_OFFSET + 4

TYPE_GUID_OFFSET = 0
TYPE_GUID_SIZE = 16
PTN_ENTRY_SIZE = 128
UNIQUE_GUID_OFFSET = 16
FIRST_LBA_OFFSET = 32
LAST_LBA_OFFSET = 40
ATTRIBUTE_FLAG_OFFSET = 48
PARTITION_NAME_OFFSET = 56
MAX_GPT_NAME_SIZE = 72

# Bits 48 and up of the attribute field hold the A/B attributes.
AB_FLAG_OFFSET = ATTRIBUTE_FLAG_OFFSET + 6
GPT_DISK_INIT_MAGIC = 0xABCD
AB_PARTITION_ATTR_SLOT_ACTIVE = 0x1 << 2
AB_PARTITION_ATTR_BOOT_SUCCESSFUL = 0x1 << 6
AB_PARTITION_ATTR_UNBOOTABLE = 0x1 << 7
AB_SLOT_ACTIVE_VAL = 0xF
AB_SLOT_INACTIVE_VAL = 0x0
AB_SLOT_ACTIVE = 1
AB_SLOT_INACTIVE = 0
AB_SLOT_A_SUFFIX = "_a"
AB_SLOT_B_SUFFIX = "_b"
PTN_XBL = "xbl"

# XBL is left out: which XBL boots is chosen by the UFS bBootLunEn attribute.
PTN_SWAP_LIST = (
    "abl_a",
    "aop_a",
    "apdp_a",
    "cmnlib_a",
    "cmnlib64_a",
    "devcfg_a",
    "dtbo_a",
    "hyp_a",
    "keymaster_a",
    "msadp_a",
    "qupfw_a",
    "storsec_a",
    "tz_a",
    "vbmeta_a",
    "vbmeta_system_a",
)

ALL_PARTITIONS = PTN_SWAP_LIST + (
    "boot_a",
    "system_a",
    "vendor_a",
    "modem_a",
    "system_ext_a",
    "product_a",
)

MAX_BLOCK_DEVICES = 10
BOOT_DEV_DIR = "/dev/disk/by-partlabel"
GPT_PTN_PATH_MAX = len(BOOT_DEV_DIR) + 1 + MAX_GPT_NAME_SIZE + 2
EMMC_DEVICE = "/dev/mmcblk0"

BAK_PTN_NAME_EXT = "bak"
XBL_PRIMARY = "/dev/disk/by-partlabel/xbl_a"
XBL_BACKUP = "/dev/disk/by-partlabel/xblbak"
XBL_AB_PRIMARY = "/dev/disk/by-partlabel/xbl_a"
XBL_AB_SECONDARY = "/dev/disk/by-partlabel/xbl_b"
MAX_LUNS = 26
BOOT_LUN_A_ID = 1
BOOT_LUN_B_ID = 2


class GptError(Exception):
    """Raised for malformed tables or partitions missing from them."""


class GptInstance(IntEnum):
    PRIMARY = 0
    SECONDARY = 1


class BootChain(IntEnum):
    NORMAL = 0
    BACKUP = 1


def _u32(buf: bytes | bytearray, offset: int) -> int:
    return struct.unpack_from("<I", buf, offset)[0]


def _put_u32(buf: bytearray, offset: int, value: int) -> None:
    struct.pack_into("<I", buf, offset, value & 0xFFFFFFFF)


def _hex_dump_lines(data: bytes) -> Iterator[str]:
    for start in range(0, len(data), 16):
        chunk = data[start : start + 16]
        n = len(chunk)
        parts = []
        for k, byte in enumerate(chunk, 1):
            parts.append(f"{byte:02X} ")
            if k % 8 == 0 or k == n:
                parts.append(" ")
        if n < 16:
            if n <= 8:
                parts.append(" ")
            parts.append("   " * (16 - n))
        ascii_text = "".join(chr(b) if 0x20 <= b <= 0x7E else "." for b in chunk)
        parts.append(f"|  {ascii_text} \n")
        yield "".join(parts)


def hex_dump(data: bytes | bytearray | memoryview) -> str:
    """Return a hex and ASCII dump of ``data``, sixteen bytes per line."""
    return "".join(_hex_dump_lines(bytes(data)))


def find_partition_entry(
    name: str, entries: bytes | bytearray | memoryview, entry_size: int
) -> int | None:
    """Return the offset of the first entry named ``name`` or ``name + "bak"``.

    Names are compared on the low byte of each UTF-16 code unit only.
    Returns None when no entry matches.
    """
    if entry_size <= 0:
        raise ValueError(f"invalid partition entry size {entry_size}")
    wanted = name.encode("latin-1")
    suffix = BAK_PTN_NAME_EXT.encode("ascii")
    table = bytes(entries)
    name_chars = MAX_GPT_NAME_SIZE // 2
    for offset in range(0, max(len(table) - PARTITION_NAME_OFFSET, 0), entry_size):
        raw = table[offset + PARTITION_NAME_OFFSET : offset + PARTITION_NAME_OFFSET + MAX_GPT_NAME_SIZE]
        name8 = raw[::2][:name_chars].split(b"\0", 1)[0]
        if name8[: len(wanted)] == wanted and name8[len(wanted) :] in (b"", suffix):
            return offset
    return None


@dataclass(eq=False)
class GptTables:
    """Primary and backup GPT headers with their partition entry arrays."""

    primary_header: bytearray
    backup_header: bytearray
    primary_entries: bytearray
    backup_entries: bytearray
    header_size: int = field(init=False)
    pentry_size: int = field(init=False)
    pentry_arr_size: int = field(init=False)
    hdr_crc: int = field(init=False)
    hdr_bak_crc: int = field(init=False)
    pentry_arr_crc: int = field(init=False)
    pentry_arr_bak_crc: int = field(init=False)

    def __post_init__(self) -> None:
        self.primary_header = bytearray(self.primary_header)
        self.backup_header = bytearray(self.backup_header)
        self.primary_entries = bytearray(self.primary_entries)
        self.backup_entries = bytearray(self.backup_entries)
        for label, header in (("primary", self.primary_header), ("backup", self.backup_header)):
            if len(header) < _MIN_HEADER_SIZE:
                raise GptError(f"{label} GPT header too short ({len(header)} bytes)")
        self.header_size = _u32(self.primary_header, HEADER_SIZE_OFFSET)
        self.pentry_size = _u32(self.primary_header, PENTRY_SIZE_OFFSET)
        if self.pentry_size == 0:
            raise GptError("GPT header gives a partition entry size of zero")
        self.pentry_arr_size = (
            _u32(self.primary_header, PARTITION_COUNT_OFFSET) * self.pentry_size
        )
        for label, entries in (("primary", self.primary_entries), ("backup", self.backup_entries)):
            if len(entries) < self.pentry_arr_size:
                raise GptError(
                    f"{label} partition entry array holds {len(entries)} bytes, "
                    f"header requires {self.pentry_arr_size}"
                )
        self.hdr_crc = efi_crc32(self.primary_header[: self.header_size])
        self.hdr_bak_crc = efi_crc32(self.backup_header[: self.header_size])
        self.pentry_arr_crc = _u32(self.primary_header, PARTITION_CRC_OFFSET)
        self.pentry_arr_bak_crc = _u32(self.backup_header, PARTITION_CRC_OFFSET)

    def _entries(self, instance: GptInstance) -> bytearray:
        if GptInstance(instance) is GptInstance.PRIMARY:
            return self.primary_entries
        return self.backup_entries

    def entry_offset(self, name: str, instance: GptInstance) -> int:
        """Return the byte offset of ``name``'s entry in the chosen array."""
        entries = self._entries(instance)
        offset = find_partition_entry(
            name, memoryview(entries)[: self.pentry_arr_size], self.pentry_size
        )
        if offset is None:
            raise GptError(
                f"partition {name!r} not found in {GptInstance(instance).name.lower()} GPT"
            )
        return offset

    def ab_flags(self, name: str, instance: GptInstance) -> int:
        """Return the A/B attribute byte of ``name``'s entry."""
        return self._entries(instance)[self.entry_offset(name, instance) + AB_FLAG_OFFSET]

    def set_ab_flags(self, name: str, instance: GptInstance, value: int) -> None:
        """Store ``value`` as the A/B attribute byte of ``name``'s entry."""
        if not 0 <= value <= 0xFF:
            raise ValueError(f"A/B attribute byte out of range: {value}")
        offset = self.entry_offset(name, instance)
        self._entries(instance)[offset + AB_FLAG_OFFSET] = value

    def type_guid(self, name: str, instance: GptInstance) -> bytes:
        """Return the 16-byte partition type GUID of ``name``'s entry."""
        offset = self.entry_offset(name, instance) + TYPE_GUID_OFFSET
        return bytes(self._entries(instance)[offset : offset + TYPE_GUID_SIZE])

    def set_type_guid(self, name: str, instance: GptInstance, guid: bytes) -> None:
        """Replace the partition type GUID of ``name``'s entry."""
        if len(guid) != TYPE_GUID_SIZE:
            raise ValueError(f"type GUID must be {TYPE_GUID_SIZE} bytes, got {len(guid)}")
        offset = self.entry_offset(name, instance) + TYPE_GUID_OFFSET
        self._entries(instance)[offset : offset + TYPE_GUID_SIZE] = guid

    def update_crc(self) -> None:
        """Recompute the entry array and header checksums in both headers."""
        self.pentry_arr_crc = efi_crc32(self.primary_entries[: self.pentry_arr_size])
        self.pentry_arr_bak_crc = efi_crc32(self.backup_entries[: self.pentry_arr_size])
        _put_u32(self.primary_header, PARTITION_CRC_OFFSET, self.pentry_arr_crc)
        _put_u32(self.backup_header, PARTITION_CRC_OFFSET, self.pentry_arr_bak_crc)

        self.header_size = _u32(self.primary_header, HEADER_SIZE_OFFSET)
        # A header's CRC is taken with its own CRC field zeroed.
        _put_u32(self.primary_header, HEADER_CRC_OFFSET, 0)
        _put_u32(self.backup_header, HEADER_CRC_OFFSET, 0)
        self.hdr_crc = efi_crc32(self.primary_header[: self.header_size])
        self.hdr_bak_crc = efi_crc32(self.backup_header[: self.header_size])
        _put_u32(self.primary_header, HEADER_CRC_OFFSET, self.hdr_crc)
        _put_u32(self.backup_header, HEADER_CRC_OFFSET, self.hdr_bak_crc)
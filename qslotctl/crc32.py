"""CRC-32 checksum as used by EFI/GPT headers and partition entry arrays."""

from __future__ import annotations

import zlib

__all__ = ["efi_crc32"]


def efi_crc32(data: bytes | bytearray | memoryview) -> int:
    """Return the 32-bit CRC (polynomial 0xEDB88320) of a bytes-like object.

    The register starts at all ones and the result is inverted, which is
    the checksum GPT stores for its header and partition entry array.
    """
    return zlib.crc32(data) & 0xFFFFFFFF
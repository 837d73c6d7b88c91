"""Query requests to a UFS device through its block SCSI generic (bsg) node."""

from __future__ import annotations

import array
import errno
import fcntl
import os
import struct
import sys
from enum import IntEnum

__all__ = [
    "DEFAULT_BSG_DEVICE",
    "SG_IO",
    "BsgIoctlDir",
    "QueryAttrIdn",
    "QueryDescIdn",
    "QueryDescSize",
    "QueryFunction",
    "QueryOpcode",
    "UpiuTransactionCode",
    "UfsBsgDevice",
    "UfsBsgError",
    "compose_query_request",
    "set_boot_lun",
]

DEFAULT_BSG_DEVICE = "/dev/bsg/ufs-bsg0"

SG_IO = 0x2285

BSG_PROTOCOL_SCSI = 0
BSG_SUB_PROTOCOL_SCSI_TRANSPORT = 2


class UpiuTransactionCode(IntEnum):
    NOP_OUT = 0x00
    COMMAND = 0x01
    DATA_OUT = 0x02
    TASK_REQ = 0x04
    QUERY_REQ = 0x16


class QueryFunction(IntEnum):
    STD_READ = 0x01
    STD_WRITE = 0x81


class QueryOpcode(IntEnum):
    READ_DESC = 0x1
    WRITE_DESC = 0x2
    READ_ATTR = 0x3
    WRITE_ATTR = 0x4
    READ_FLAG = 0x5
    SET_FLAG = 0x6
    CLEAR_FLAG = 0x7
    TOGGLE_FLAG = 0x8


class QueryDescIdn(IntEnum):
    DEVICE = 0x0
    UNIT = 0x2
    GEOMETRY = 0x7


class QueryDescSize(IntEnum):
    DEVICE = 0x40
    GEOMETRY = 0x48
    UNIT = 0x23


class BsgIoctlDir(IntEnum):
    TO_DEV = 0
    FROM_DEV = 1


class QueryAttrIdn(IntEnum):
    BOOT_LU_EN = 0x00
    RESERVED = 0x01
    POWER_MODE = 0x02
    ACTIVE_ICC_LVL = 0x03


class UfsBsgError(OSError):
    """Raised when the bsg node cannot be used or a query request fails."""


# struct ufs_bsg_request: host-endian msgcode, then the UPIU header
# (three big-endian dwords) and the 20-byte query body.
_REQUEST = struct.Struct("=I4s4s4sBBBBHHI8x")
# struct ufs_bsg_reply: result, reply_payload_rcv_len, UPIU response.
_REPLY_SIZE = 4 + 4 + 32

_SG_IO_V4_FIELDS = (
    ("guard", "i"),
    ("protocol", "I"),
    ("subprotocol", "I"),
    ("request_len", "I"),
    ("request", "Q"),
    ("request_tag", "Q"),
    ("request_attr", "I"),
    ("request_priority", "I"),
    ("request_extra", "I"),
    ("max_response_len", "I"),
    ("response", "Q"),
    ("dout_iovec_count", "I"),
    ("dout_xfer_len", "I"),
    ("din_iovec_count", "I"),
    ("din_xfer_len", "I"),
    ("dout_xferp", "Q"),
    ("din_xferp", "Q"),
    ("timeout", "I"),
    ("flags", "I"),
    ("usr_ptr", "Q"),
    ("spare_in", "I"),
    ("driver_status", "I"),
    ("transport_status", "I"),
    ("device_status", "I"),
    ("retry_delay", "I"),
    ("info", "I"),
    ("duration", "I"),
    ("response_len", "I"),
    ("din_resid", "i"),
    ("dout_resid", "i"),
    ("generated_tag", "Q"),
    ("spare_out", "I"),
    ("padding", "I"),
)
_SG_IO_V4 = struct.Struct("=" + "".join(fmt for _, fmt in _SG_IO_V4_FIELDS))
_SG_IO_V4_NAMES = tuple(name for name, _ in _SG_IO_V4_FIELDS)


def _dword(b3: int, b2: int, b1: int, b0: int) -> bytes:
    return bytes((b3, b2, b1, b0))


def compose_query_request(
    func: int,
    opcode: int,
    idn: int,
    index: int,
    selector: int,
    length: int = 0,
    value: int = 0,
) -> bytes:
    """Build the bytes of a UFS bsg query request."""
    try:
        header0 = _dword(UpiuTransactionCode.QUERY_REQ, 0, 0, 0)
        header1 = _dword(0, func, 0, 0)
        header2 = _dword(0, 0, (length >> 8) & 0xFF, length & 0xFF)
        body = _REQUEST.pack(
            UpiuTransactionCode.QUERY_REQ,
            header0,
            header1,
            header2,
            opcode,
            idn,
            index,
            selector,
            0,
            0,
            0,
        )
        # length and value are big-endian on the wire.
        tail = struct.pack(">HI", length, value)
    except (struct.error, ValueError) as exc:
        raise ValueError(f"query request field out of range: {exc}") from exc
    return body[:22] + tail + body[28:]


def _buffer_address(buf: array.array | None) -> int:
    return buf.buffer_info()[0] if buf is not None and len(buf) else 0


class UfsBsgDevice:
    """An open handle on a UFS bsg node."""

    def __init__(self, path: str = DEFAULT_BSG_DEVICE) -> None:
        self.path = path
        self._fd: int | None = None

    @property
    def is_open(self) -> bool:
        return self._fd is not None

    def open(self) -> None:
        """Open the node for reading and writing; does nothing if already open."""
        if self._fd is not None:
            return
        try:
            self._fd = os.open(self.path, os.O_RDWR)
        except OSError as exc:
            raise UfsBsgError(
                exc.errno,
                f"Unable to open '{self.path}': {exc.strerror}. "
                "Is CONFIG_SCSI_UFS_BSG enabled in your kernel?",
            ) from exc

    def close(self) -> None:
        """Close the node if it is open."""
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None

    def __enter__(self) -> "UfsBsgDevice":
        self.open()
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _sg_io(self, request: bytes, data: bytes, direction: BsgIoctlDir) -> None:
        if self._fd is None:
            raise UfsBsgError(errno.EBADF, f"'{self.path}' is not open")

        req_buf = array.array("B", request)
        rsp_buf = array.array("B", bytes(_REPLY_SIZE))
        data_buf = array.array("B", data) if data else None

        fields = dict.fromkeys(_SG_IO_V4_NAMES, 0)
        fields.update(
            guard=ord("Q"),
            protocol=BSG_PROTOCOL_SCSI,
            subprotocol=BSG_SUB_PROTOCOL_SCSI_TRANSPORT,
            request_len=len(req_buf),
            request=_buffer_address(req_buf),
            response=_buffer_address(rsp_buf),
            max_response_len=len(rsp_buf),
        )
        if direction == BsgIoctlDir.FROM_DEV:
            fields["din_xfer_len"] = len(data)
            fields["din_xferp"] = _buffer_address(data_buf)
        else:
            fields["dout_xfer_len"] = len(data)
            fields["dout_xferp"] = _buffer_address(data_buf)

        sg_io = bytearray(_SG_IO_V4.pack(*(fields[name] for name in _SG_IO_V4_NAMES)))
        try:
            fcntl.ioctl(self._fd, SG_IO, sg_io, True)
        except OSError as exc:
            raise UfsBsgError(
                exc.errno, f"Error from sg_io ioctl: {exc.strerror}"
            ) from exc

        out = dict(zip(_SG_IO_V4_NAMES, _SG_IO_V4.unpack(bytes(sg_io))))
        result = int.from_bytes(rsp_buf[:4].tobytes(), sys.byteorder)
        if out["info"] or result:
            raise UfsBsgError(
                errno.EAGAIN,
                "Error from sg_io info (device_status: 0x{:x}, transport_status: 0x{:x}, "
                "driver_status: 0x{:x}, reply result from LLD: {})".format(
                    out["device_status"],
                    out["transport_status"],
                    out["driver_status"],
                    result,
                ),
            )

    def query_attr(
        self,
        value: int,
        func: int,
        opcode: int,
        idn: int,
        index: int = 0,
        selector: int = 0,
    ) -> None:
        """Send an attribute query request carrying ``value``."""
        if opcode in (QueryOpcode.WRITE_DESC, QueryOpcode.WRITE_ATTR):
            direction = BsgIoctlDir.TO_DEV
        else:
            direction = BsgIoctlDir.FROM_DEV
        request = compose_query_request(func, opcode, idn, index, selector, 0, value)
        self._sg_io(request, b"", direction)


def set_boot_lun(lun_id: int, device_path: str = DEFAULT_BSG_DEVICE) -> None:
    """Write the bBootLunEn attribute so the device boots from ``lun_id``."""
    with UfsBsgDevice(device_path) as device:
        device.query_attr(
            lun_id,
            QueryFunction.STD_WRITE,
            QueryOpcode.WRITE_ATTR,
            QueryAttrIdn.BOOT_LU_EN,
            0,
            0,
        )
import errno
import sys

import pytest

from qslotctl.ufs_bsg import (
    QueryAttrIdn,
    QueryFunction,
    QueryOpcode,
    UfsBsgDevice,
    UfsBsgError,
    compose_query_request,
    set_boot_lun,
)


def _write_attr_request(value=0, length=0):
    return compose_query_request(
        QueryFunction.STD_WRITE,
        QueryOpcode.WRITE_ATTR,
        QueryAttrIdn.BOOT_LU_EN,
        0,
        0,
        length,
        value,
    )


def test_request_has_struct_size():
    assert len(_write_attr_request()) == 36


def test_msgcode_is_host_endian_query_code():
    req = _write_attr_request()
    assert int.from_bytes(req[:4], sys.byteorder) == 0x16


def test_header_dwords_are_big_endian():
    req = _write_attr_request(length=0x1234)
    assert req[4:8] == bytes([0x16, 0, 0, 0])
    assert req[8:12] == bytes([0, 0x81, 0, 0])
    assert req[12:16] == bytes([0, 0, 0x12, 0x34])


def test_query_body_fields():
    req = compose_query_request(
        QueryFunction.STD_READ, QueryOpcode.READ_ATTR, 0x02, 0x05, 0x07, 0x0102, 0x01020304
    )
    assert req[16:20] == bytes([QueryOpcode.READ_ATTR, 0x02, 0x05, 0x07])
    assert req[20:22] == b"\x00\x00"
    assert req[22:24] == b"\x01\x02"
    assert req[24:28] == b"\x01\x02\x03\x04"
    assert req[28:36] == bytes(8)


@pytest.mark.parametrize("lun", [1, 2])
def test_boot_lun_value_in_request(lun):
    req = _write_attr_request(value=lun)
    assert int.from_bytes(req[24:28], "big") == lun
    assert req[9] == QueryFunction.STD_WRITE


def test_out_of_range_value_rejected():
    with pytest.raises(ValueError):
        _write_attr_request(value=1 << 32)


def test_open_missing_node_raises(tmp_path):
    device = UfsBsgDevice(str(tmp_path / "ufs-bsg0"))
    with pytest.raises(UfsBsgError) as info:
        device.open()
    assert info.value.errno == errno.ENOENT
    assert device.is_open is False


def test_query_without_open_raises(tmp_path):
    device = UfsBsgDevice(str(tmp_path / "ufs-bsg0"))
    with pytest.raises(UfsBsgError) as info:
        device.query_attr(1, QueryFunction.STD_WRITE, QueryOpcode.WRITE_ATTR, 0, 0, 0)
    assert info.value.errno == errno.EBADF


def test_context_manager_opens_and_closes(tmp_path):
    node = tmp_path / "node"
    node.write_bytes(b"")
    device = UfsBsgDevice(str(node))
    with device as opened:
        assert opened is device
        assert device.is_open is True
    assert device.is_open is False
    device.close()
    assert device.is_open is False


def test_ioctl_on_regular_file_fails(tmp_path):
    node = tmp_path / "node"
    node.write_bytes(b"")
    with UfsBsgDevice(str(node)) as device:
        with pytest.raises(UfsBsgError) as info:
            device.query_attr(
                1, QueryFunction.STD_WRITE, QueryOpcode.WRITE_ATTR, QueryAttrIdn.BOOT_LU_EN
            )
    assert info.value.errno == errno.ENOTTY


def test_set_boot_lun_missing_device(tmp_path):
    with pytest.raises(UfsBsgError) as info:
        set_boot_lun(1, str(tmp_path / "missing"))
    assert info.value.errno == errno.ENOENT
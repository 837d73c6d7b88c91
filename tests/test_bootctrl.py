import struct

import pytest

from qslotctl.bootctrl import (
    BootControl,
    BootControlError,
    SlotInfo,
    get_kernel_cmdline_arg,
)
from qslotctl.crc32 import efi_crc32
from qslotctl.disk import GptDisk
from qslotctl.gpt import (
    AB_FLAG_OFFSET,
    AB_PARTITION_ATTR_BOOT_SUCCESSFUL,
    AB_PARTITION_ATTR_SLOT_ACTIVE,
    AB_PARTITION_ATTR_UNBOOTABLE,
    AB_SLOT_ACTIVE_VAL,
    GPT_SIGNATURE,
    HEADER_SIZE_OFFSET,
    PARTITION_COUNT_OFFSET,
    PARTITION_CRC_OFFSET,
    PARTITION_NAME_OFFSET,
    PENTRIES_OFFSET,
    PENTRY_SIZE_OFFSET,
    GptInstance,
)

SECTOR = 512
TOTAL_SECTORS = 64
ENTRY_COUNT = 32
ENTRY_SIZE = 128
PRIMARY_ENTRIES_LBA = 2
BACKUP_ENTRIES_LBA = 54

ACTIVE = AB_PARTITION_ATTR_SLOT_ACTIVE
CMDLINE_A = "console=ttyMSM0 androidboot.slot_suffix=_a rootwait\n"
CMDLINE_B = "console=ttyMSM0 androidboot.slot_suffix=_b rootwait\n"


def _header(entries_lba):
    hdr = bytearray(SECTOR)
    hdr[0:8] = GPT_SIGNATURE
    struct.pack_into("<I", hdr, HEADER_SIZE_OFFSET, 92)
    struct.pack_into("<Q", hdr, PENTRIES_OFFSET, entries_lba)
    struct.pack_into("<I", hdr, PARTITION_COUNT_OFFSET, ENTRY_COUNT)
    struct.pack_into("<I", hdr, PENTRY_SIZE_OFFSET, ENTRY_SIZE)
    return hdr


def _entries(parts):
    arr = bytearray(ENTRY_COUNT * ENTRY_SIZE)
    for i, (name, flags) in enumerate(parts.items()):
        off = i * ENTRY_SIZE
        arr[off : off + 16] = bytes([i + 1]) * 16
        arr[off + AB_FLAG_OFFSET] = flags
        encoded = name.encode("utf-16-le")
        arr[off + PARTITION_NAME_OFFSET : off + PARTITION_NAME_OFFSET + len(encoded)] = encoded
    return arr


def make_env(tmp_path, parts=None, extra_links=("xbl_a", "xbl_b"), cmdline=CMDLINE_A):
    if parts is None:
        parts = {"boot_a": ACTIVE, "boot_b": 0, "dtbo_a": ACTIVE, "dtbo_b": 0}
    dev = tmp_path / "dev"
    dev.mkdir()
    image = bytearray(TOTAL_SECTORS * SECTOR)
    entries = _entries(parts)
    image[SECTOR : 2 * SECTOR] = _header(PRIMARY_ENTRIES_LBA)
    start = PRIMARY_ENTRIES_LBA * SECTOR
    image[start : start + len(entries)] = entries
    start = BACKUP_ENTRIES_LBA * SECTOR
    image[start : start + len(entries)] = entries
    image[(TOTAL_SECTORS - 1) * SECTOR :] = _header(BACKUP_ENTRIES_LBA)
    image_path = dev / "sda"
    image_path.write_bytes(bytes(image))

    labels = tmp_path / "by-partlabel"
    labels.mkdir()
    for i, name in enumerate([*parts, *extra_links], 1):
        node = dev / f"sda{i}"
        node.touch()
        (labels / name).symlink_to(node)

    cmdline_path = tmp_path / "cmdline"
    cmdline_path.write_text(cmdline)
    control = BootControl(str(labels), str(cmdline_path), str(tmp_path / "no-bsg"), SECTOR)
    return control, labels, image_path


def read_flags(labels, name, instance=GptInstance.PRIMARY):
    disk = GptDisk(str(labels), SECTOR)
    disk.load(name)
    return disk.tables.ab_flags(name, instance)


def read_guid(labels, name, instance=GptInstance.PRIMARY):
    disk = GptDisk(str(labels), SECTOR)
    disk.load(name)
    return disk.tables.type_guid(name, instance)


def test_cmdline_arg_value(tmp_path):
    path = tmp_path / "cmdline"
    path.write_text(CMDLINE_B)
    assert get_kernel_cmdline_arg("slot_suffix", "_a", str(path)) == "_b"


def test_cmdline_arg_missing_gives_default(tmp_path):
    path = tmp_path / "cmdline"
    path.write_text("console=ttyMSM0 rootwait\n")
    assert get_kernel_cmdline_arg("slot_suffix", "_a", str(path)) == "_a"


def test_cmdline_unreadable_gives_default(tmp_path):
    assert get_kernel_cmdline_arg("slot_suffix", "N/A", str(tmp_path / "absent")) == "N/A"


def test_number_slots_skips_hidden_and_aging(tmp_path):
    control, labels, _ = make_env(tmp_path)
    (labels / "boot_aging").touch()
    (labels / ".boot_c").touch()
    assert control.number_slots() == 2


def test_no_partlabel_dir_means_no_slots(tmp_path):
    control = BootControl(str(tmp_path / "missing"), str(tmp_path / "cmdline"))
    assert control.number_slots() == 0
    assert control.current_slot() == 0
    assert control.active_boot_slot() == 0


@pytest.mark.parametrize(
    "cmdline, expected",
    [(CMDLINE_A, 0), (CMDLINE_B, 1), ("androidboot.slot_suffix=_z\n", 0), ("quiet\n", 0)],
)
def test_current_slot(tmp_path, cmdline, expected):
    control, _, _ = make_env(tmp_path, cmdline=cmdline)
    assert control.current_slot() == expected


def test_get_suffix(tmp_path):
    control, _, _ = make_env(tmp_path)
    assert control.get_suffix(0) == "_a"
    assert control.get_suffix(1) == "_b"
    assert control.get_suffix(2) == ""


def test_invalid_slot_raises(tmp_path):
    control, _, _ = make_env(tmp_path)
    with pytest.raises(BootControlError):
        control.is_slot_bootable(2)
    with pytest.raises(BootControlError):
        control.set_slot_as_unbootable(-1)


def test_is_slot_bootable(tmp_path):
    parts = {"boot_a": ACTIVE, "boot_b": AB_PARTITION_ATTR_UNBOOTABLE, "dtbo_a": ACTIVE, "dtbo_b": 0}
    control, _, _ = make_env(tmp_path, parts)
    assert control.is_slot_bootable(0) is True
    assert control.is_slot_bootable(1) is False


def test_is_slot_marked_successful(tmp_path):
    parts = {
        "boot_a": ACTIVE | AB_PARTITION_ATTR_BOOT_SUCCESSFUL,
        "boot_b": 0,
        "dtbo_a": ACTIVE,
        "dtbo_b": 0,
    }
    control, _, _ = make_env(tmp_path, parts)
    assert control.is_slot_marked_successful(0) is True
    assert control.is_slot_marked_successful(1) is False


@pytest.mark.parametrize("active_part, expected", [("boot_a", 0), ("boot_b", 1)])
def test_active_boot_slot(tmp_path, active_part, expected):
    parts = {"boot_a": 0, "boot_b": 0, "dtbo_a": 0, "dtbo_b": 0}
    parts[active_part] = ACTIVE
    control, _, _ = make_env(tmp_path, parts)
    assert control.active_boot_slot() == expected


def test_mark_boot_successful_writes_both_tables(tmp_path):
    control, labels, image_path = make_env(tmp_path)
    control.mark_boot_successful(1)

    fresh = BootControl(str(labels), control.cmdline_path, control.bsg_path, SECTOR)
    assert fresh.is_slot_marked_successful(1) is True
    assert fresh.is_slot_marked_successful(0) is False
    for name in ("boot_b", "dtbo_b"):
        for instance in GptInstance:
            assert read_flags(labels, name, instance) & AB_PARTITION_ATTR_BOOT_SUCCESSFUL

    image = image_path.read_bytes()
    start = PRIMARY_ENTRIES_LBA * SECTOR
    entries = image[start : start + ENTRY_COUNT * ENTRY_SIZE]
    stored = struct.unpack_from("<I", image, SECTOR + PARTITION_CRC_OFFSET)[0]
    assert stored == efi_crc32(entries)


def test_mark_boot_successful_clears_unbootable(tmp_path):
    parts = {
        "boot_a": ACTIVE,
        "boot_b": AB_PARTITION_ATTR_UNBOOTABLE,
        "dtbo_a": ACTIVE,
        "dtbo_b": AB_PARTITION_ATTR_UNBOOTABLE,
    }
    control, labels, _ = make_env(tmp_path, parts)
    control.mark_boot_successful(1)
    fresh = BootControl(str(labels), control.cmdline_path, control.bsg_path, SECTOR)
    assert fresh.is_slot_bootable(1) is True
    assert fresh.is_slot_marked_successful(1) is True


def test_mark_boot_successful_invalid_slot(tmp_path):
    control, _, _ = make_env(tmp_path)
    with pytest.raises(BootControlError):
        control.mark_boot_successful(5)


def test_set_slot_as_unbootable(tmp_path):
    control, labels, _ = make_env(tmp_path)
    control.set_slot_as_unbootable(0)
    fresh = BootControl(str(labels), control.cmdline_path, control.bsg_path, SECTOR)
    assert fresh.is_slot_bootable(0) is False
    assert fresh.is_slot_bootable(1) is True
    assert read_flags(labels, "dtbo_a", GptInstance.SECONDARY) & AB_PARTITION_ATTR_UNBOOTABLE


def test_set_active_boot_slot(tmp_path):
    control, labels, _ = make_env(tmp_path)
    guid_b = read_guid(labels, "boot_b")
    control.set_active_boot_slot(1, ignore_missing_bsg=True)

    fresh = BootControl(str(labels), control.cmdline_path, control.bsg_path, SECTOR)
    assert fresh.active_boot_slot() == 1
    for instance in GptInstance:
        assert read_flags(labels, "boot_b", instance) == AB_SLOT_ACTIVE_VAL
        assert read_flags(labels, "boot_a", instance) & ACTIVE == 0
    assert read_guid(labels, "boot_b") == guid_b


def test_set_active_round_trip(tmp_path):
    control, labels, _ = make_env(tmp_path)
    control.set_active_boot_slot(1, ignore_missing_bsg=True)
    control.set_active_boot_slot(0, ignore_missing_bsg=True)
    fresh = BootControl(str(labels), control.cmdline_path, control.bsg_path, SECTOR)
    assert fresh.active_boot_slot() == 0
    assert read_flags(labels, "dtbo_a") == AB_SLOT_ACTIVE_VAL


def test_set_active_without_bsg_leaves_disk_untouched(tmp_path):
    control, _, image_path = make_env(tmp_path)
    before = image_path.read_bytes()
    with pytest.raises(BootControlError):
        control.set_active_boot_slot(1)
    assert image_path.read_bytes() == before


def test_set_active_both_inactive(tmp_path):
    parts = {"boot_a": 0, "boot_b": 0, "dtbo_a": 0, "dtbo_b": 0}
    control, _, _ = make_env(tmp_path, parts)
    with pytest.raises(BootControlError, match="inactive"):
        control.set_active_boot_slot(0, ignore_missing_bsg=True)


def test_set_active_missing_required_partition(tmp_path):
    parts = {"boot_a": ACTIVE, "boot_b": 0}
    control, _, _ = make_env(tmp_path, parts)
    with pytest.raises(BootControlError, match="dtbo_a"):
        control.set_active_boot_slot(0, ignore_missing_bsg=True)


def test_set_active_missing_xbl(tmp_path):
    control, _, _ = make_env(tmp_path, extra_links=())
    with pytest.raises(BootControlError, match="xbl"):
        control.set_active_boot_slot(0, ignore_missing_bsg=True)


def test_slot_info_defaults():
    info = SlotInfo()
    assert (info.active, info.bootable, info.successful) == (False, False, False)
"""A/B slot control on top of the GPT attribute bits of the boot partitions."""

from __future__ import annotations

import errno
import logging
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

from .disk import GptDisk, is_partition_backed_by_emmc, set_xbl_boot_partition
from .gpt import (
    AB_PARTITION_ATTR_BOOT_SUCCESSFUL,
    AB_PARTITION_ATTR_SLOT_ACTIVE,
    AB_PARTITION_ATTR_UNBOOTABLE,
    AB_SLOT_A_SUFFIX,
    AB_SLOT_ACTIVE_VAL,
    AB_SLOT_B_SUFFIX,
    ALL_PARTITIONS,
    BOOT_DEV_DIR,
    MAX_GPT_NAME_SIZE,
    PTN_XBL,
    BootChain,
    GptError,
    GptInstance,
)
from .ufs_bsg import DEFAULT_BSG_DEVICE, UfsBsgDevice, UfsBsgError

__all__ = [
    "BOOT_SLOT_PROP",
    "DEFAULT_CMDLINE",
    "SLOT_SUFFIXES",
    "BootControl",
    "BootControlError",
    "SlotInfo",
    "get_kernel_cmdline_arg",
]

logger = logging.getLogger(__name__)

DEFAULT_CMDLINE = "/proc/cmdline"
BOOT_SLOT_PROP = "slot_suffix"
BOOT_IMG_PTN_NAME = "boot_"
SLOT_SUFFIXES = (AB_SLOT_A_SUFFIX, AB_SLOT_B_SUFFIX)
_REQUIRED_PARTITIONS = ("boot_a", "dtbo_a")


class BootControlError(Exception):
    """Raised when a slot cannot be read or changed."""


@dataclass
class SlotInfo:
    """State of one boot slot."""

    active: bool = False
    bootable: bool = False
    successful: bool = False


class _Attr(Enum):
    SLOT_ACTIVE = "slot_active"
    BOOT_SUCCESSFUL = "boot_successful"
    UNBOOTABLE = "unbootable"
    BOOTABLE = "bootable"


_READ_MASKS = {
    _Attr.SLOT_ACTIVE: AB_PARTITION_ATTR_SLOT_ACTIVE,
    _Attr.BOOT_SUCCESSFUL: AB_PARTITION_ATTR_BOOT_SUCCESSFUL,
    _Attr.UNBOOTABLE: AB_PARTITION_ATTR_UNBOOTABLE,
}


@contextmanager
def _reraise(message: str) -> Iterator[None]:
    try:
        yield
    except BootControlError:
        raise
    except (GptError, OSError, ValueError) as exc:
        raise BootControlError(f"{message}: {exc}") from exc


def get_kernel_cmdline_arg(
    arg: str, default: str = "", cmdline_path: str = DEFAULT_CMDLINE
) -> str:
    """Return the value following ``arg=`` on the kernel command line.

    The value runs up to the next whitespace; quotes are not handled.
    ``default`` is returned when the file cannot be read or holds no such
    argument.
    """
    try:
        with open(cmdline_path, encoding="utf-8", errors="replace") as fh:
            cmdline = fh.read(4096)
    except OSError as exc:
        logger.warning("Couldn't open %s: %s", cmdline_path, exc.strerror)
        return default
    found = cmdline.find(arg)
    eq = cmdline.find("=", found) if found >= 0 else -1
    if eq < 0:
        logger.warning("Couldn't find cmdline arg: '%s'", arg)
        return default
    match = re.match(r"\S*", cmdline[eq + 1 :])
    return match.group() if match else ""


def _set_slot_entry(disk: GptDisk, name: str, instance: GptInstance, guid: bytes, active: bool) -> None:
    tables = disk.tables
    tables.set_type_guid(name, instance, guid)
    if active:
        tables.set_ab_flags(name, instance, AB_SLOT_ACTIVE_VAL)
    else:
        flags = tables.ab_flags(name, instance)
        tables.set_ab_flags(name, instance, flags & ~AB_PARTITION_ATTR_SLOT_ACTIVE & 0xFF)


class BootControl:
    """Reads and changes the A/B slot state kept in the partition tables."""

    def __init__(
        self,
        partlabel_dir: str = BOOT_DEV_DIR,
        cmdline_path: str = DEFAULT_CMDLINE,
        bsg_path: str = DEFAULT_BSG_DEVICE,
        block_size: int | None = None,
    ) -> None:
        self.partlabel_dir = partlabel_dir
        self.cmdline_path = cmdline_path
        self.bsg_path = bsg_path
        self.block_size = block_size
        self._slot_count = 0

    def _new_disk(self) -> GptDisk:
        return GptDisk(self.partlabel_dir, self.block_size)

    def _label_exists(self, name: str) -> bool:
        return os.path.exists(os.path.join(self.partlabel_dir, name))

    def number_slots(self) -> int:
        """Count the ``boot_*`` partitions; 0 means the device has no slots.

        A non-zero count is remembered; a zero count is searched for again.
        """
        if self._slot_count > 0:
            return self._slot_count
        try:
            names = os.listdir(self.partlabel_dir)
        except OSError as exc:
            logger.warning("Failed to open bootdev dir (%s)", exc.strerror)
            return 0
        self._slot_count = sum(
            1
            for name in names
            if not name.startswith(".")
            and name.startswith(BOOT_IMG_PTN_NAME)
            and not name.startswith("boot_aging")
        )
        return self._slot_count

    def _check_slot(self, slot: int) -> str:
        num_slots = self.number_slots()
        if num_slots < 1 or slot < 0 or slot > num_slots - 1 or slot >= len(SLOT_SUFFIXES):
            raise BootControlError(f"Invalid slot number {slot}")
        return SLOT_SUFFIXES[slot]

    def _partition_attribute(self, disk: GptDisk, partname: str, attr: _Attr) -> bool:
        mask = _READ_MASKS.get(attr)
        if mask is None:
            raise BootControlError(f"Unreadable attribute {attr.value}")
        disk.load(partname)
        flags = disk.tables.ab_flags(partname, GptInstance.PRIMARY)
        logger.debug("partname = %s, attr = 0x%x", partname, flags)
        return bool(flags & mask)

    def _boot_attr(self, disk: GptDisk, slot: int, attr: _Attr) -> bool:
        suffix = self._check_slot(slot)
        with _reraise(f"Failed to read attributes of boot{suffix}"):
            return self._partition_attribute(disk, f"boot{suffix}", attr)

    @staticmethod
    def _commit_if_other_disk(disk: GptDisk, partname: str) -> None:
        if disk.is_valid() and not disk.is_for_partition(partname):
            disk.commit()

    def _update_slot_attribute(self, disk: GptDisk, slot: int, attr: _Attr) -> None:
        for name_a in ALL_PARTITIONS:
            name_b = name_a[:-1] + "b"
            if not (self._label_exists(name_a) and self._label_exists(name_b)):
                continue
            partname = name_a if slot == 0 else name_b
            logger.debug("partName = '%s'", partname)

            self._commit_if_other_disk(disk, partname)
            disk.load(partname)
            tables = disk.tables
            for instance in GptInstance:
                flags = tables.ab_flags(partname, instance)
                if attr is _Attr.BOOT_SUCCESSFUL:
                    flags |= AB_PARTITION_ATTR_BOOT_SUCCESSFUL
                elif attr is _Attr.UNBOOTABLE:
                    flags |= AB_PARTITION_ATTR_UNBOOTABLE
                elif attr is _Attr.BOOTABLE:
                    flags &= ~AB_PARTITION_ATTR_UNBOOTABLE & 0xFF
                elif attr is _Attr.SLOT_ACTIVE:
                    primary = tables.ab_flags(partname, GptInstance.PRIMARY)
                    flags = primary | AB_PARTITION_ATTR_SLOT_ACTIVE
                else:
                    raise BootControlError("Unrecognized attr")
                tables.set_ab_flags(partname, instance, flags)
        disk.commit()

    def current_slot(self) -> int:
        """Return the slot the system booted from, per the kernel command line."""
        if self.number_slots() <= 1:
            return 0
        prop = get_kernel_cmdline_arg(BOOT_SLOT_PROP, AB_SLOT_A_SUFFIX, self.cmdline_path)
        if prop.startswith("N/A"):
            logger.warning("Unable to read boot slot property")
            return 0
        for index, suffix in enumerate(SLOT_SUFFIXES):
            if prop.startswith(suffix):
                return index
        return 0

    def active_boot_slot(self) -> int:
        """Return the slot marked active, which boots next."""
        num_slots = self.number_slots()
        if num_slots <= 1:
            return 0
        disk = self._new_disk()
        for slot in range(num_slots):
            if self._boot_attr(disk, slot, _Attr.SLOT_ACTIVE):
                return slot
        logger.warning("Failed to find the active boot slot")
        return 0

    def get_suffix(self, slot: int) -> str:
        """Return the partition suffix of ``slot``, or "" for an invalid slot."""
        try:
            return self._check_slot(slot)
        except BootControlError:
            return ""

    def is_slot_bootable(self, slot: int) -> bool:
        """Whether ``slot`` is not marked unbootable."""
        return not self._boot_attr(self._new_disk(), slot, _Attr.UNBOOTABLE)

    def is_slot_marked_successful(self, slot: int) -> bool:
        """Whether ``slot`` has been marked as booted successfully."""
        self._check_slot(slot)
        return self._boot_attr(self._new_disk(), slot, _Attr.BOOT_SUCCESSFUL)

    def mark_boot_successful(self, slot: int) -> None:
        """Mark ``slot`` successful, clearing an unbootable mark first."""
        disk = self._new_disk()
        try:
            successful = self._boot_attr(disk, slot, _Attr.BOOT_SUCCESSFUL)
            unbootable = self._boot_attr(disk, slot, _Attr.UNBOOTABLE)
        except BootControlError as exc:
            raise BootControlError(
                f"SLOT {self.get_suffix(slot)}: Failed to read attributes: {exc}"
            ) from exc
        suffix = SLOT_SUFFIXES[slot]

        if unbootable:
            logger.warning(
                "SLOT %s: was marked unbootable, fixing this"
                " (I hope you know what you're doing...)",
                suffix,
            )
            try:
                self._update_slot_attribute(disk, slot, _Attr.BOOTABLE)
            except (GptError, OSError) as exc:
                logger.warning("SLOT %s: Failed to clear unbootable: %s", suffix, exc)

        if successful:
            logger.info("SLOT %s: already marked successful", suffix)
            return

        with _reraise(f"SLOT {suffix}: Failed to mark boot successful"):
            self._update_slot_attribute(disk, slot, _Attr.BOOT_SUCCESSFUL)

    def set_slot_as_unbootable(self, slot: int) -> None:
        """Mark every A/B partition of ``slot`` unbootable."""
        suffix = self._check_slot(slot)
        with _reraise(f"SLOT {suffix}: Failed to set as unbootable"):
            self._update_slot_attribute(self._new_disk(), slot, _Attr.UNBOOTABLE)

    def _set_active_slot_for_partitions(self, disk: GptDisk, slot: int) -> None:
        logger.debug("Marking slot %s as active", SLOT_SUFFIXES[slot])
        for name_a in ALL_PARTITIONS:
            stem_len = len(name_a) - len(AB_SLOT_A_SUFFIX)
            if stem_len + 1 < 3 or stem_len + 1 > MAX_GPT_NAME_SIZE:
                raise BootControlError(f"Invalid partition name: {name_a}")
            name_b = name_a[:-1] + "b"

            if not self._label_exists(name_a):
                if name_a in _REQUIRED_PARTITIONS:
                    raise BootControlError(f"Couldn't find required partition {name_a}")
                continue
            if not self._label_exists(name_b):
                raise BootControlError(
                    f"Partition {os.path.join(self.partlabel_dir, name_b)} does not exist"
                )

            self._commit_if_other_disk(disk, name_a)
            disk.load(name_a)
            tables = disk.tables
            try:
                for name in (name_a, name_b):
                    for instance in GptInstance:
                        tables.entry_offset(name, instance)
            except GptError as exc:
                raise BootControlError(f"Slot pentries for {name_a} not found.") from exc

            guid_a = tables.type_guid(name_a, GptInstance.PRIMARY)
            guid_b = tables.type_guid(name_b, GptInstance.PRIMARY)
            if self._partition_attribute(disk, name_a, _Attr.SLOT_ACTIVE):
                active_guid, inactive_guid = guid_a, guid_b
            elif self._partition_attribute(disk, name_b, _Attr.SLOT_ACTIVE):
                active_guid, inactive_guid = guid_b, guid_a
            else:
                raise BootControlError("Both A & B are inactive..Aborting")

            if slot > 1:
                raise BootControlError(f"Unknown slot {slot}!")

            for instance in GptInstance:
                _set_slot_entry(disk, name_a, instance, active_guid, slot == 0)
                _set_slot_entry(disk, name_b, instance, inactive_guid, slot == 1)

        disk.commit()

    def set_active_boot_slot(self, slot: int, ignore_missing_bsg: bool = False) -> None:
        """Make ``slot`` the one to boot next.

        On UFS devices the boot LUN is switched too; with
        ``ignore_missing_bsg`` the tables are still written when the bsg
        device cannot be used.
        """
        self._check_slot(slot)
        is_mmc = is_partition_backed_by_emmc(PTN_XBL + AB_SLOT_A_SUFFIX, self.partlabel_dir)

        # Check the bsg node before touching any slot attribute.
        if not is_mmc and not ignore_missing_bsg:
            with _reraise("Cannot use the UFS bsg device"):
                with UfsBsgDevice(self.bsg_path):
                    pass

        disk = self._new_disk()
        with _reraise("Failed to set active slot for partitions"):
            self._set_active_slot_for_partitions(disk, slot)

        # eMMC needs no boot LUN change.
        if is_mmc:
            return
        if slot > BootChain.BACKUP:
            raise BootControlError(f"Unknown slot {slot}!")

        try:
            set_xbl_boot_partition(BootChain(slot), self.partlabel_dir, self.bsg_path)
        except UfsBsgError as exc:
            if ignore_missing_bsg and exc.errno == errno.ENODEV:
                logger.info("Boot LUN not changed: %s", exc)
                return
            raise BootControlError(f"Failed to switch xbl boot partition: {exc}") from exc
        except GptError as exc:
            raise BootControlError(f"Failed to switch xbl boot partition: {exc}") from exc
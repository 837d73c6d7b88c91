"""Command line interface for inspecting and changing the A/B boot slots."""

from __future__ import annotations

import getopt
import logging
import os
import sys
from typing import Sequence

from .bootctrl import BootControl, BootControlError, SlotInfo

__all__ = ["dump_info", "get_slot_info", "main", "parse_slot", "usage"]

logger = logging.getLogger(__name__)

_NUM_SLOTS = 2
_SLOT_CHARS = frozenset("01abAB")
_SLOT_NUM_CHARS = frozenset("01")
_OPTSTRING = "hcmas:ub:n:x"

_USAGE = """\
qslotctl: A/B boot slot control for Qualcomm devices
-------------------------------------------
qslotctl [-c|-m|-s|-u|-b|-n|-x] [SLOT]

    <no args>        dump slot info (default)
    -h               this help text
    -c               get the current slot
    -a               get the active slot
    -b SLOT          check if SLOT is marked as bootable
    -n SLOT          check if SLOT is marked as successful
    -x [SLOT]        get the slot suffix for SLOT (default: current)
    -s SLOT          set to active slot to SLOT
    -m [SLOT]        mark a boot as successful (default: current)
    -u [SLOT]        mark SLOT as unbootable (default: current)
    -i               still write the GPT headers even if the UFS bLun can't be changed (default: false)
"""


def parse_slot(arg: str) -> int:
    """Turn a slot argument (``0``, ``1``, ``a``, ``b``, ...) into a slot number.

    Raises ValueError for anything that is not a slot.
    """
    chars = set(arg)
    if chars <= _SLOT_NUM_CHARS:
        if arg:
            return int(arg, 10)
    elif chars <= _SLOT_CHARS and arg[0] in "aAbB":
        return 0 if arg[0] in "aA" else 1
    raise ValueError(f"Expected slot not '{arg}'")


def usage() -> int:
    """Write the help text to standard error and return the failure status."""
    sys.stderr.write(_USAGE)
    return 1


def _fill_slot_info(control: BootControl, slots: list[SlotInfo]) -> None:
    active = control.active_boot_slot()
    if 0 <= active < len(slots):
        slots[active].active = True
    for slot, info in enumerate(slots):
        info.successful = bool(control.is_slot_marked_successful(slot))
        info.bootable = bool(control.is_slot_bootable(slot))


def get_slot_info(control: BootControl) -> list[SlotInfo]:
    """Return the state of both slots; raises BootControlError on failure."""
    slots = [SlotInfo() for _ in range(_NUM_SLOTS)]
    _fill_slot_info(control, slots)
    return slots


def dump_info(control: BootControl) -> None:
    """Print the current slot and the state of every slot.

    Whatever could be read is printed even if reading a slot fails.
    """
    slots = [SlotInfo() for _ in range(_NUM_SLOTS)]
    current = control.current_slot()
    try:
        _fill_slot_info(control, slots)
    except BootControlError as exc:
        logger.warning("%s", exc)

    lines = [f"Current slot: {control.get_suffix(current) if current >= 0 else 'N/A'}"]
    for slot, info in enumerate(slots):
        lines.append(f"SLOT {control.get_suffix(slot)}:")
        lines.append(f"\tActive      : {int(info.active)}")
        lines.append(f"\tSuccessful  : {int(info.successful)}")
        lines.append(f"\tBootable    : {int(info.bootable)}")
    print("\n".join(lines))


def _dispatch(option: str, slot: int, control: BootControl, ignore_missing_bsg: bool) -> int:
    suffix = control.get_suffix
    if option == "c":
        print(f"Current slot: {suffix(control.current_slot())}")
    elif option == "a":
        print(f"Active slot: {suffix(control.active_boot_slot())}")
    elif option == "b":
        try:
            bootable = control.is_slot_bootable(slot)
        except BootControlError:
            bootable = False
        print(f"SLOT {suffix(slot)}: is {'' if bootable else 'not '}marked bootable")
    elif option == "n":
        try:
            successful = control.is_slot_marked_successful(slot)
        except BootControlError:
            successful = False
        print(f"SLOT {suffix(slot)}: is {'' if successful else 'not '}marked successful")
    elif option == "x":
        print(suffix(slot))
    elif option == "s":
        try:
            control.set_active_boot_slot(slot, ignore_missing_bsg)
        except BootControlError as exc:
            print(exc, file=sys.stderr)
            print(f"SLOT {suffix(slot)}: Failed to set active", file=sys.stderr)
            return 1
        print(f"SLOT {slot}: Set as active slot")
    elif option == "m":
        try:
            control.mark_boot_successful(slot)
        except BootControlError as exc:
            print(exc, file=sys.stderr)
            return 1
        print(f"SLOT {suffix(slot)}: Marked boot successful")
    elif option == "u":
        try:
            control.set_slot_as_unbootable(slot)
        except BootControlError as exc:
            print(exc, file=sys.stderr)
            print(f"SLOT {suffix(slot)}: Failed to set as unbootable", file=sys.stderr)
            return 1
        print(f"SLOT {suffix(slot)}: Set as unbootable")
    else:
        usage()
    return 0


def _run_command(args: Sequence[str], control: BootControl) -> int:
    args = list(args)
    if not args:
        dump_info(control)
        return 0
    if len(args) == 1:
        slot = None
    elif len(args) == 2:
        try:
            slot = parse_slot(args[1])
        except ValueError as exc:
            print(exc, file=sys.stderr)
            return 1
    else:
        return usage()

    if slot is None:
        slot = control.current_slot()

    try:
        opts, _ = getopt.getopt(args, _OPTSTRING)
    except getopt.GetoptError as exc:
        print(f"qslotctl: {exc}", file=sys.stderr)
        usage()
        return 0

    option = opts[0][0].lstrip("-") if opts else "h"
    try:
        return _dispatch(option, slot, control, ignore_missing_bsg=False)
    except BootControlError as exc:
        print(exc, file=sys.stderr)
        return 1


def main(argv: Sequence[str] | None = None) -> int:
    """Run the command line tool and return its exit status."""
    args = list(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=logging.WARNING, format="%(message)s")
    if os.geteuid() != 0:
        print("This program must be run as root!", file=sys.stderr)
        return 1
    return _run_command(args, BootControl())


if __name__ == "__main__":
    raise SystemExit(main())
# qslotctl

Inspect and change the A/B boot slot state of Qualcomm-based Linux devices.

The slot state is kept in the attribute byte of GPT partition entries
(active, boot successful, unbootable). Both the primary and the backup
tables are updated, and their CRCs are recomputed before they are written
back. On UFS storage, setting the active slot also switches the boot LUN
used for XBL by writing the bBootLunEn attribute through the UFS bsg node
(`/dev/bsg/ufs-bsg0`). On eMMC (`/dev/mmcblk0`) no LUN switch is done.

Partitions are found through `/dev/disk/by-partlabel`, and the current slot
is read from the `slot_suffix=` argument on `/proc/cmdline`.

## Installation

    pip install .

The package has no dependencies outside the standard library and runs on
Linux only.

## Usage

The command must be run as root; otherwise it prints
`This program must be run as root!` and exits with status 1.

    qslotctl              # dump slot information (default)
    qslotctl -h           # help text
    qslotctl -c           # print the current slot
    qslotctl -a           # print the active slot
    qslotctl -b SLOT      # is SLOT marked bootable?
    qslotctl -n SLOT      # is SLOT marked successful?
    qslotctl -x [SLOT]    # print the suffix for SLOT (default: current)
    qslotctl -s SLOT      # set the active slot to SLOT
    qslotctl -m [SLOT]    # mark a boot as successful (default: current)
    qslotctl -u [SLOT]    # mark SLOT as unbootable (default: current)

`SLOT` is `0`, `1`, `a`, `b`, `A` or `B`. Only one option is handled per
run. Marking a slot successful also clears an unbootable mark on it.

Example output of a bare `qslotctl`:

    Current slot: _a
    SLOT _a:
        Active      : 1
        Successful  : 1
        Bootable    : 1
    SLOT _b:
        Active      : 0
        Successful  : 0
        Bootable    : 1

## Library use

    from qslotctl.bootctrl import BootControl, BootControlError

    control = BootControl()
    slot = control.current_slot()
    print(control.get_suffix(slot), control.is_slot_bootable(slot))

    try:
        control.set_active_boot_slot(1, ignore_missing_bsg=True)
    except BootControlError as exc:
        print("could not switch:", exc)

`BootControl` takes `partlabel_dir`, `cmdline_path`, `bsg_path` and
`block_size` so that it can be pointed at other paths or at image files.
Its methods are `number_slots`, `current_slot`, `active_boot_slot`,
`get_suffix` (returns `""` for an invalid slot), `is_slot_bootable`,
`is_slot_marked_successful`, `mark_boot_successful`,
`set_slot_as_unbootable` and `set_active_boot_slot`. Failures raise
`BootControlError`.

Lower-level modules:

- `qslotctl.gpt`: `GptTables` holds the primary and backup headers and
  entry arrays, reads and writes A/B flags and type GUIDs, and recomputes
  CRCs; `find_partition_entry` and `hex_dump` work on raw bytes.
- `qslotctl.disk`: `GptDisk` loads and commits the tables of the disk that
  holds a named partition; also `device_path_from_partition_name`,
  `is_partition_backed_by_emmc` and `set_xbl_boot_partition`.
- `qslotctl.ufs_bsg`: `UfsBsgDevice`, `compose_query_request` and
  `set_boot_lun` for UFS query requests.
- `qslotctl.crc32`: `efi_crc32`, the checksum GPT uses.

## Limitations

- The `-i` option shown in the help text is not accepted by the command;
  writing the tables while ignoring a missing bsg device is only possible
  through `BootControl.set_active_boot_slot(slot, ignore_missing_bsg=True)`.
- The command always uses the default paths; other paths can only be given
  through the library.

## Tests

    pip install .[test]
    pytest
# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import json
import logging
import os
import re
import stat
import subprocess
import sys
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any, Optional

from archlive.log import die
from archlive.run import run
from archlive.util import format_bytes

LSBLK_COLUMNS = "NAME,PATH,TYPE,SIZE,RM,HOTPLUG,TRAN,MODEL,MOUNTPOINTS"


def lsblk_bool(value: Any) -> bool:
    # Older util-linux releases report booleans as "0"/"1" strings.
    if isinstance(value, str):
        return value.strip() == "1"

    return bool(value)


@dataclasses.dataclass(frozen=True)
class BlockDevice:
    path: Path
    name: str
    type: str
    size: int
    removable: bool
    transport: Optional[str]
    model: Optional[str]
    mountpoints: tuple[str, ...]
    children: tuple["BlockDevice", ...]

    @classmethod
    def from_dict(cls, dict: Mapping[str, Any]) -> "BlockDevice":
        return cls(
            path=Path(dict.get("path") or f"/dev/{dict['name']}"),
            name=dict["name"],
            type=dict["type"],
            size=int(dict.get("size") or 0),
            removable=lsblk_bool(dict.get("rm")) or lsblk_bool(dict.get("hotplug")),
            transport=dict.get("tran"),
            model=(dict.get("model") or "").strip() or None,
            mountpoints=tuple(m for m in dict.get("mountpoints") or [] if m),
            children=tuple(cls.from_dict(c) for c in dict.get("children", [])),
        )

    def walk(self) -> Iterator["BlockDevice"]:
        yield self
        for child in self.children:
            yield from child.walk()

    def all_mountpoints(self) -> list[str]:
        return [m for d in self.walk() for m in d.mountpoints]

    def is_usb(self) -> bool:
        return self.removable or self.transport == "usb"

    def description(self) -> str:
        return f"{self.path} ({self.model or 'unknown model'}, {format_bytes(self.size)})"


def check_root() -> None:
    if os.getuid() != 0:
        die("Must be invoked as root.", hint="Run archlive with sudo")


def inspect_device(path: Path) -> BlockDevice:
    try:
        st = path.stat()
    except FileNotFoundError:
        die(f"Device {path} does not exist")

    if not stat.S_ISBLK(st.st_mode):
        die(f"{path} is not a block device")

    output = json.loads(
        run(
            ["lsblk", "--json", "--bytes", "--output", LSBLK_COLUMNS, path.resolve()],
            stdout=subprocess.PIPE,
        ).stdout
    )

    return BlockDevice.from_dict(output["blockdevices"][0])


def root_disks() -> set[Path]:
    """Return the disks backing the root filesystem of the running system."""
    source = run(
        ["findmnt", "--noheadings", "--output", "SOURCE", "--mountpoint", "/"],
        stdout=subprocess.PIPE,
        check=False,
    ).stdout.strip()

    if not source.startswith("/dev/"):
        return set()

    # btrfs reports subvolumes as /dev/sda2[/@].
    source = re.sub(r"\[.*\]$", "", source)

    result = run(
        ["lsblk", "--json", "--inverse", "--output", "NAME,PATH,TYPE", source],
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
        check=False,
    )
    if result.returncode != 0:
        return set()

    disks = set()
    for d in json.loads(result.stdout)["blockdevices"]:
        disks |= {c.path for c in BlockDevice.from_dict(d).walk() if c.type == "disk"}

    return disks


def check_device(device: BlockDevice, *, minimum_size: int, force: bool = False) -> None:
    if device.type != "disk":
        hint = None
        if device.type == "part" and (m := re.match(r"(.*?)p?[0-9]+$", os.fspath(device.path))):
            hint = f"Specify the whole disk, e.g. {m.group(1)}"

        die(f"{device.path} is a {device.type}, not a whole disk", hint=hint)

    if mountpoints := device.all_mountpoints():
        die(
            f"{device.path} is in use, mounted at {', '.join(mountpoints)}",
            hint=f"Unmount it first with umount --recursive {' '.join(mountpoints)}",
        )

    if device.size < minimum_size:
        die(
            f"{device.path} is too small ({format_bytes(device.size)}), "
            f"at least {format_bytes(minimum_size)} are required"
        )

    if device.path in root_disks():
        die(f"{device.path} holds the root filesystem of the running system")

    if not device.is_usb():
        if not force:
            die(
                f"{device.path} does not look like a removable USB device",
                hint="Use --force if you are sure you want to overwrite it",
            )

        logging.warning(f"{device.path} is not a removable USB device, continuing anyway because of --force")


def partition_path(device: Path, n: int) -> Path:
    # Kernel naming: a partition of a device whose name ends in a digit gets a "p" separator.
    name = os.fspath(device)
    if name[-1].isdigit():
        return Path(f"{name}p{n}")

    return Path(f"{name}{n}")


def confirm_destruction(device: BlockDevice, *, assume_yes: bool = False) -> None:
    if assume_yes:
        return

    if not sys.stdin.isatty():
        die("Refusing to wipe a device without confirmation", hint="Pass --yes to skip the confirmation")

    print(f"All data on {device.description()} will be destroyed.", file=sys.stderr)
    answer = input("Type 'yes' to continue: ")

    if answer.strip().lower() != "yes":
        die("Aborted")

# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import subprocess
import textwrap
from pathlib import Path
from typing import Final

from archlive.device import partition_path
from archlive.log import complete_step, die
from archlive.run import run

# MBR partition type IDs understood by sfdisk.
FAT32_LBA: Final[str] = "c"
LINUX: Final[str] = "83"

BOOT_LABEL: Final[str] = "ARCHBOOT"
ROOT_LABEL: Final[str] = "ARCHROOT"


@dataclasses.dataclass(frozen=True)
class PartitionLayout:
    """A dos label with a bootable FAT32 partition followed by a root partition filling the disk."""

    device: Path
    boot_size: int

    @property
    def boot(self) -> Path:
        return partition_path(self.device, 1)

    @property
    def root(self) -> Path:
        return partition_path(self.device, 2)


def sfdisk_script(layout: PartitionLayout) -> str:
    if layout.boot_size % 512 != 0:
        die(f"Boot partition size {layout.boot_size} is not a multiple of the sector size")

    return textwrap.dedent(
        f"""\
        label: dos

        size={layout.boot_size // 512}, type={FAT32_LBA}, bootable
        type={LINUX}
        """
    )


def wipe_device(device: Path) -> None:
    with complete_step(f"Wiping signatures on {device}"):
        run(["wipefs", "--all", "--force", device])


def reread_partitions(device: Path) -> None:
    run(["partprobe", device])
    run(["udevadm", "settle"])


def partition_device(layout: PartitionLayout) -> None:
    with complete_step(f"Partitioning {layout.device}"):
        run(
            ["sfdisk", "--wipe", "always", "--wipe-partitions", "always", layout.device],
            input=sfdisk_script(layout),
        )
        reread_partitions(layout.device)


def filesystem_uuid(device: Path) -> str:
    uuid = run(
        ["blkid", "--match-tag", "UUID", "--output", "value", device],
        stdout=subprocess.PIPE,
    ).stdout.strip()

    if not uuid:
        die(f"Could not determine the filesystem UUID of {device}")

    return uuid

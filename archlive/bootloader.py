# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import shutil
import textwrap
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

from archlive.log import complete_step, die
from archlive.run import run

SYSLINUX_BIOS = Path("/usr/lib/syslinux/bios")


@dataclasses.dataclass(frozen=True)
class BootEntry:
    label: str
    title: str
    kernel: str
    initrd: list[str]
    cmdline: str


def kernel_cmdline(root_uuid: str, *, luks_uuid: Optional[str] = None, mapping: str = "archlive-root") -> str:
    if luks_uuid:
        return f"cryptdevice=UUID={luks_uuid}:{mapping} root=/dev/mapper/{mapping} rw"

    return f"root=UUID={root_uuid} rw"


def boot_entries(kernel: str, cmdline: str, microcode: Sequence[str] = ()) -> list[BootEntry]:
    """The default entry and the fallback initramfs entry for the kernel image named @kernel."""
    flavor = kernel.removeprefix("vmlinuz-")

    return [
        BootEntry(
            label="arch",
            title="Arch Linux",
            kernel=kernel,
            initrd=[*microcode, f"initramfs-{flavor}.img"],
            cmdline=cmdline,
        ),
        BootEntry(
            label="archfallback",
            title="Arch Linux (fallback initramfs)",
            kernel=kernel,
            initrd=[*microcode, f"initramfs-{flavor}-fallback.img"],
            cmdline=cmdline,
        ),
    ]


def syslinux_config(entries: list[BootEntry], *, timeout: int = 5) -> str:
    # syslinux.cfg lives in /syslinux on the boot partition, the kernels one level up.
    config = textwrap.dedent(
        f"""\
        DEFAULT {entries[0].label}
        PROMPT 0
        TIMEOUT {timeout * 10}
        UI menu.c32
        MENU TITLE Arch Linux (persistent)
        """
    )

    for entry in entries:
        initrd = ",".join(f"../{i}" for i in entry.initrd)
        config += textwrap.dedent(
            f"""
            LABEL {entry.label}
                MENU LABEL {entry.title}
                LINUX ../{entry.kernel}
                APPEND {entry.cmdline}
                INITRD {initrd}
            """
        )

    return config


def install_syslinux_files(boot: Path, config: str) -> None:
    if not SYSLINUX_BIOS.exists():
        die(f"{SYSLINUX_BIOS} not found", hint="Install the syslinux package")

    with complete_step("Installing syslinux modules and configuration"):
        syslinux = boot / "syslinux"
        syslinux.mkdir(parents=True, exist_ok=True)

        for module in SYSLINUX_BIOS.glob("*.c32"):
            shutil.copy2(module, syslinux / module.name)

        (syslinux / "syslinux.cfg").write_text(config)


def install_syslinux(partition: Path) -> None:
    # The FAT variant of the installer must run on an unmounted filesystem.
    with complete_step(f"Installing syslinux to {partition}"):
        run(["syslinux", "--directory", "/syslinux", "--install", partition])


def write_mbr(device: Path) -> None:
    with complete_step(f"Writing MBR boot code to {device}"):
        run(
            [
                "dd",
                "bs=440",
                "count=1",
                "conv=notrunc",
                f"if={SYSLINUX_BIOS / 'mbr.bin'}",
                f"of={device}",
            ]
        )

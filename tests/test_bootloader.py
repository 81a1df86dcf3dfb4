# SPDX-License-Identifier: LGPL-2.1-or-later

import textwrap
from pathlib import Path

import pytest

import archlive.bootloader
from archlive.bootloader import (
    boot_entries,
    install_syslinux,
    install_syslinux_files,
    kernel_cmdline,
    syslinux_config,
    write_mbr,
)

from . import CommandRecorder


def test_kernel_cmdline() -> None:
    assert kernel_cmdline("1234") == "root=UUID=1234 rw"
    assert (
        kernel_cmdline("1234", luks_uuid="abcd", mapping="cryptroot")
        == "cryptdevice=UUID=abcd:cryptroot root=/dev/mapper/cryptroot rw"
    )


def test_boot_entries() -> None:
    default, fallback = boot_entries("vmlinuz-linux-lts", "root=UUID=1234 rw", ["intel-ucode.img"])

    assert default.label == "arch"
    assert default.kernel == "vmlinuz-linux-lts"
    assert default.initrd == ["intel-ucode.img", "initramfs-linux-lts.img"]
    assert fallback.label == "archfallback"
    assert fallback.initrd == ["intel-ucode.img", "initramfs-linux-lts-fallback.img"]


def test_syslinux_config() -> None:
    config = syslinux_config(boot_entries("vmlinuz-linux", "root=UUID=1234 rw", ["amd-ucode.img"]), timeout=3)

    assert config == textwrap.dedent(
        """\
        DEFAULT arch
        PROMPT 0
        TIMEOUT 30
        UI menu.c32
        MENU TITLE Arch Linux (persistent)

        LABEL arch
            MENU LABEL Arch Linux
            LINUX ../vmlinuz-linux
            APPEND root=UUID=1234 rw
            INITRD ../amd-ucode.img,../initramfs-linux.img

        LABEL archfallback
            MENU LABEL Arch Linux (fallback initramfs)
            LINUX ../vmlinuz-linux
            APPEND root=UUID=1234 rw
            INITRD ../amd-ucode.img,../initramfs-linux-fallback.img
        """
    )


def test_install_syslinux_files(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    bios = tmp_path / "bios"
    bios.mkdir()
    (bios / "menu.c32").write_bytes(b"menu")
    (bios / "libutil.c32").write_bytes(b"libutil")
    (bios / "mbr.bin").write_bytes(b"mbr")
    monkeypatch.setattr(archlive.bootloader, "SYSLINUX_BIOS", bios)

    boot = tmp_path / "boot"
    boot.mkdir()
    install_syslinux_files(boot, "DEFAULT arch\n")

    names = sorted(p.name for p in (boot / "syslinux").iterdir())
    assert names == ["libutil.c32", "menu.c32", "syslinux.cfg"]
    assert (boot / "syslinux/syslinux.cfg").read_text() == "DEFAULT arch\n"


def test_install_syslinux_files_missing_syslinux(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(archlive.bootloader, "SYSLINUX_BIOS", tmp_path / "missing")

    with pytest.raises(SystemExit):
        install_syslinux_files(tmp_path, "")


def test_install_boot_code(recorder: CommandRecorder, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(archlive.bootloader, "SYSLINUX_BIOS", Path("/usr/lib/syslinux/bios"))

    install_syslinux(Path("/dev/sdb1"))
    write_mbr(Path("/dev/sdb"))

    assert recorder.commands == [
        ["syslinux", "--directory", "/syslinux", "--install", "/dev/sdb1"],
        ["dd", "bs=440", "count=1", "conv=notrunc", "if=/usr/lib/syslinux/bios/mbr.bin", "of=/dev/sdb"],
    ]

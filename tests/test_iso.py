# SPDX-License-Identifier: LGPL-2.1-or-later

import datetime
import hashlib
import os
import textwrap
from pathlib import Path
from typing import Any

import pytest

import archlive.iso
from archlive.config import IsoProfile
from archlive.iso import (
    build_iso,
    configure_airootfs,
    iso_version,
    prepare_profile,
    profile_packages,
    write_package_list,
)

from . import CommandRecorder, make_config

PROFILEDEF = """\
#!/usr/bin/env bash
# shellcheck disable=SC2034

iso_name="archlinux"
iso_label="ARCH_$(date --date="@${SOURCE_DATE_EPOCH:-$(date +%s)}" +%Y%m)"
iso_publisher="Arch Linux <https://archlinux.org>"
iso_application="Arch Linux Live/Rescue DVD"
iso_version="$(date --date="@${SOURCE_DATE_EPOCH:-$(date +%s)}" +%Y.%m.%d)"
install_dir="arch"
bootmodes=('bios.syslinux.mbr' 'bios.syslinux.eltorito'
           'uefi-x64.systemd-boot.esp' 'uefi-x64.systemd-boot.eltorito')
arch="x86_64"
pacman_conf="pacman.conf"
"""


def make_base_profile(directory: Path) -> Path:
    profile = directory / "releng"
    (profile / "airootfs/etc").mkdir(parents=True)
    (profile / "profiledef.sh").write_text(PROFILEDEF)
    (profile / "packages.x86_64").write_text("base\nlinux\n# comment\nsyslinux\nvim\n")
    (profile / "pacman.conf").write_text(
        "[options]\nArchitecture = auto\n\n[core]\nInclude = /etc/pacman.d/mirrorlist\n"
    )
    (profile / "airootfs/etc/localtime").symlink_to("/usr/share/zoneinfo/UTC")
    return profile


@pytest.fixture(autouse=True)
def as_root(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(archlive.iso, "check_root", lambda: None)


def test_iso_version() -> None:
    assert iso_version(datetime.date(2024, 1, 5)) == "2024.01.05"


def test_profile_packages(resources: Path) -> None:
    assert "lightdm" in profile_packages(resources, IsoProfile.xfce)
    assert "sddm" in profile_packages(resources, IsoProfile.kde)
    assert "gdm" in profile_packages(resources, IsoProfile.gnome)
    assert all(not p.startswith("#") for p in profile_packages(resources, IsoProfile.base))


def test_write_package_list(tmp_path: Path, resources: Path) -> None:
    profile = make_base_profile(tmp_path)
    _, config = make_config(tmp_path, "--architecture", "x86_64", "--package", "vim,zfs-linux")

    packages = write_package_list(config, profile, resources)

    assert packages[:4] == ["base", "linux", "syslinux", "vim"]
    assert packages.count("vim") == 1
    assert packages[-1] == "zfs-linux"
    assert "xfce4" in packages
    assert (profile / "packages.x86_64").read_text().splitlines() == packages


def test_configure_airootfs(tmp_path: Path) -> None:
    profile = make_base_profile(tmp_path)

    _, config = make_config(tmp_path, "--profile", "kde", "--hostname", "stick")
    configure_airootfs(config, profile)

    units = profile / "airootfs/etc/systemd/system"
    assert (profile / "airootfs/etc/hostname").read_text() == "stick\n"
    assert os.readlink(units / "display-manager.service") == "/usr/lib/systemd/system/sddm.service"
    assert os.readlink(units / "default.target") == "/usr/lib/systemd/system/graphical.target"

    _, config = make_config(tmp_path, "--profile", "gnome")
    configure_airootfs(config, profile)
    assert os.readlink(units / "display-manager.service") == "/usr/lib/systemd/system/gdm.service"


def test_configure_airootfs_base_profile(tmp_path: Path) -> None:
    profile = make_base_profile(tmp_path)

    _, config = make_config(tmp_path, "--profile", "base")
    configure_airootfs(config, profile)

    assert not (profile / "airootfs/etc/systemd/system/display-manager.service").exists()


def test_prepare_profile_architecture(tmp_path: Path, resources: Path) -> None:
    base = make_base_profile(tmp_path)
    (base / "packages.aarch64").write_text("base\nlinux-aarch64\n")
    _, config = make_config(
        tmp_path, "--base-profile", "releng", "--architecture", "aarch64", "--package", "vim"
    )

    profile = tmp_path / "profile"
    prepare_profile(config, profile, resources, "2024.01.05")

    # mkarchiso picks the package list matching arch= in profiledef.sh.
    assert "arch=aarch64\n" in (profile / "profiledef.sh").read_text()
    packages = (profile / "packages.aarch64").read_text().splitlines()
    assert packages[:2] == ["base", "linux-aarch64"]
    assert "xfce4" in packages
    assert "vim" in packages
    assert (profile / "packages.x86_64").read_text() == (base / "packages.x86_64").read_text()


def test_build_iso_requires_architecture_package_list(
    tmp_path: Path,
    resources: Path,
    recorder: CommandRecorder,
) -> None:
    make_base_profile(tmp_path)
    args, config = make_config(tmp_path, "--base-profile", "releng", "--architecture", "aarch64", verb="iso")

    with pytest.raises(SystemExit):
        build_iso(args, config, resources=resources)

    assert recorder.names() == ["pacman"]


def test_build_iso_requires_archiso_profile(
    tmp_path: Path,
    resources: Path,
    recorder: CommandRecorder,
) -> None:
    args, config = make_config(tmp_path, "--base-profile", "does-not-exist", verb="iso")

    with pytest.raises(SystemExit):
        build_iso(args, config, resources=resources)


def test_build_iso_requires_local_repository(
    tmp_path: Path,
    resources: Path,
    recorder: CommandRecorder,
) -> None:
    make_base_profile(tmp_path)
    (tmp_path / "repo").mkdir()
    args, config = make_config(tmp_path, "--base-profile", "releng", "--local-repository", "repo", verb="iso")

    with pytest.raises(SystemExit):
        build_iso(args, config, resources=resources)


def test_build_iso(
    tmp_path: Path,
    resources: Path,
    recorder: CommandRecorder,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    make_base_profile(tmp_path)
    (tmp_path / "repo").mkdir()
    (tmp_path / "repo/archlive-local.db").write_text("")
    (tmp_path / "workspace").mkdir()
    monkeypatch.setenv("GNUPGHOME", os.fspath(tmp_path))

    args, config = make_config(
        tmp_path,
        "--workspace-dir", "workspace",
        "--base-profile", "releng",
        "--local-repository", "repo",
        "--architecture", "x86_64",
        "--profile", "xfce",
        "--iso-label", "ARCHLIVE_TEST",
        "--key", "0xDEADBEEF",
        verb="iso",
    )  # fmt: skip

    version = iso_version(datetime.date.today())
    seen: dict[str, Any] = {}

    def mkarchiso(cmd: list[str]) -> None:
        profile = Path(cmd[-1])
        seen["profiledef"] = (profile / "profiledef.sh").read_text()
        seen["pacman.conf"] = (profile / "pacman.conf").read_text()
        seen["packages"] = (profile / "packages.x86_64").read_text().splitlines()
        seen["localtime"] = os.readlink(profile / "airootfs/etc/localtime")
        (Path(cmd[5]) / f"archlive-xfce-{version}-x86_64.iso").write_bytes(b"iso")

    recorder.on("mkarchiso", callback=mkarchiso)

    image = build_iso(args, config, resources=resources)

    assert image == tmp_path / f"out/archlive-xfce-{version}-x86_64.iso"
    digest = hashlib.sha256(b"iso").hexdigest()
    assert image.with_name(f"{image.name}.sha256").read_text() == f"{digest}  {image.name}\n"

    assert textwrap.dedent(
        f"""\
        iso_name=archlive-xfce
        iso_label=ARCHLIVE_TEST
        iso_publisher=archlive
        iso_application="Arch Linux Live/Rescue DVD"
        iso_version={version}
        """
    ) in seen["profiledef"]
    assert "bootmodes=('bios.syslinux.mbr' 'bios.syslinux.eltorito'" in seen["profiledef"]
    assert "arch=x86_64\n" in seen["profiledef"]
    assert seen["pacman.conf"].index("[archlive-local]") < seen["pacman.conf"].index("[core]")
    assert f"Server = file://{tmp_path}/repo" in seen["pacman.conf"]
    assert "lightdm" in seen["packages"]
    assert seen["localtime"] == "/usr/share/zoneinfo/UTC"

    assert [c[0] for c in recorder.commands] == ["pacman", "mkarchiso", "gpg"]
    assert recorder.commands[1][:3] == ["mkarchiso", "-v", "-w"]
    assert recorder.commands[1][4:6] == ["-o", f"{tmp_path}/out"]

    # The workspace is gone.
    assert list((tmp_path / "workspace").iterdir()) == []


def test_build_iso_missing_image(
    tmp_path: Path,
    resources: Path,
    recorder: CommandRecorder,
) -> None:
    make_base_profile(tmp_path)
    args, config = make_config(
        tmp_path,
        "--workspace-dir", os.fspath(tmp_path),
        "--base-profile", "releng",
        verb="iso",
    )  # fmt: skip

    with pytest.raises(SystemExit):
        build_iso(args, config, resources=resources)

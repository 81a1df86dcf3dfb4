# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import logging
import re
import shutil
import tarfile
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Optional, Union

from archlive.config import Args, Config
from archlive.curl import curl
from archlive.gpg import gpg_sign, gpg_verify
from archlive.log import complete_step, die, log_notice
from archlive.pacman import (
    LOCAL_REPOSITORY,
    arch_nspawn_upgrade,
    check_packages,
    makechrootpkg,
    mkarchroot,
    repo_add,
    sync_version,
)
from archlive.util import hash_file, set_shell_variables
from archlive.workspace import setup_workspace

OPENZFS_RELEASES = "https://github.com/openzfs/zfs/releases/download"


@dataclasses.dataclass(frozen=True)
class KernelVersion:
    """A kernel package version as found in the sync database, e.g. linux 6.6.7.arch1-1."""

    package: str
    pkgver: str
    pkgrel: str

    @classmethod
    def parse(cls, package: str, version: str) -> "KernelVersion":
        m = re.fullmatch(r"(?:[0-9]+:)?([0-9][^-:]*)-([0-9]+(?:\.[0-9]+)?)", version)
        if not m:
            die(
                f"{version!r} is not a valid version of {package}",
                hint="Expected pkgver-pkgrel, e.g. 6.6.7.arch1-1",
            )

        return cls(package=package, pkgver=m.group(1), pkgrel=m.group(2))

    @property
    def full(self) -> str:
        return f"{self.pkgver}-{self.pkgrel}"

    @property
    def release(self) -> str:
        """The kernel release (uname -r), which names the module directory in /usr/lib/modules."""
        # 6.6.7.arch1 becomes 6.6.7-arch1, versions without a local suffix (linux-lts) stay as they are.
        base = re.sub(r"\.([a-z]+[0-9]+)$", r"-\1", self.pkgver)
        flavor = self.package.removeprefix("linux")

        return f"{base}-{self.pkgrel}{flavor}"

    @property
    def series(self) -> tuple[int, int]:
        major, minor = re.match(r"([0-9]+)\.([0-9]+)", self.pkgver).groups()  # type: ignore
        return int(major), int(minor)


def parse_series(s: str) -> tuple[int, int]:
    if not (m := re.match(r"([0-9]+)\.([0-9]+)", s)):
        die(f"{s!r} is not a valid kernel version")

    return int(m.group(1)), int(m.group(2))


def parse_meta(text: str) -> dict[str, str]:
    meta = {}

    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip() and not line.startswith("#"):
            meta[key.strip()] = value.strip()

    return meta


def read_meta(tarball: Path) -> dict[str, str]:
    with tarfile.open(tarball) as tar:
        for member in tar:
            if member.isfile() and member.name.count("/") == 1 and member.name.endswith("/META"):
                f = tar.extractfile(member)
                assert f
                return parse_meta(f.read().decode())

    die(f"No META file found in {tarball.name}")


def check_kernel_compat(meta: Mapping[str, str], kernel: KernelVersion, *, force: bool = False) -> None:
    problem = None

    if (minimum := meta.get("Linux-Minimum")) and kernel.series < parse_series(minimum):
        problem = f"older than the minimum supported version {minimum}"
    elif (maximum := meta.get("Linux-Maximum")) and kernel.series > parse_series(maximum):
        problem = f"newer than the maximum supported version {maximum}"

    if not problem:
        return

    message = f"{kernel.package} {kernel.full} is {problem} of OpenZFS {meta.get('Version', '')}".rstrip()
    if not force:
        die(message, hint="Use --force to build anyway")

    logging.warning(f"{message}, continuing anyway because of --force")


def check_zfs_inputs(config: Config) -> None:
    if not config.zfs_version:
        die("No OpenZFS version configured", hint="Set ZfsVersion= or pass --zfs-version=")

    check_packages("devtools", "curl", "gnupg", reason="build ZFS packages")


def fetch_source(version: str, directory: Path) -> Path:
    url = f"{OPENZFS_RELEASES}/zfs-{version}/zfs-{version}.tar.gz"

    with complete_step(f"Downloading OpenZFS {version}"):
        tarball = curl(url, directory)
        signature = curl(f"{url}.asc", directory)

    gpg_verify(signature, tarball)

    return tarball


def recipe_variables(
    config: Config,
    kernel: KernelVersion,
    checksum: str,
) -> dict[str, dict[str, Union[str, Sequence[str]]]]:
    assert config.zfs_version

    common: dict[str, Union[str, Sequence[str]]] = {
        "_zfsver": config.zfs_version,
        "pkgrel": config.pkgrel,
        "sha256sums": [checksum],
    }

    return {
        "zfs-utils": {
            **common,
            "pkgver": config.zfs_version,
        },
        "zfs-linux": {
            **common,
            # pkgver may not contain dashes, the kernel pkgver never does.
            "pkgver": f"{config.zfs_version}_{kernel.pkgver}",
            "_kernpkg": kernel.package,
            "_kernver": kernel.pkgver,
            "_kernrel": kernel.pkgrel,
            "_kernrelease": kernel.release,
        },
    }


def prepare_recipe(
    src: Path,
    dst: Path,
    variables: Mapping[str, Union[str, Sequence[str]]],
    tarball: Path,
) -> Path:
    if not (src / "PKGBUILD").exists():
        die(f"No PKGBUILD found in {src}")

    shutil.copytree(src, dst)

    pkgbuild = dst / "PKGBUILD"
    pkgbuild.write_text(set_shell_variables(pkgbuild.read_text(), variables))

    # makepkg picks up sources that are already present next to the PKGBUILD instead of downloading them.
    shutil.copyfile(tarball, dst / tarball.name)

    return dst


def prepare_recipes(
    config: Config,
    kernel: KernelVersion,
    tarball: Path,
    workspace: Path,
    resources: Path,
) -> list[Path]:
    recipes = config.recipe_dir or resources / "zfs"
    checksum = hash_file(tarball)

    with complete_step("Patching package recipes"):
        return [
            prepare_recipe(recipes / name, workspace / "recipes" / name, variables, tarball)
            for name, variables in recipe_variables(config, kernel, checksum).items()
        ]


def prepare_chroot(chroot: Path) -> None:
    if (chroot / "root").exists():
        arch_nspawn_upgrade(chroot / "root")
    else:
        mkarchroot(chroot / "root")


def publish_packages(config: Config, packages: Sequence[Path]) -> list[Path]:
    config.output_dir.mkdir(parents=True, exist_ok=True)
    published = []

    with complete_step(f"Copying packages to {config.output_dir}"):
        for p in packages:
            shutil.copyfile(p, config.output_dir / p.name)
            published.append(config.output_dir / p.name)

    if config.key:
        for p in published:
            gpg_sign(p, config.key)

    repo_add(config.output_dir / f"{LOCAL_REPOSITORY}.db.tar.gz", published, key=config.key)

    return published


def build_zfs(args: Args, config: Config, *, resources: Path) -> list[Path]:
    check_zfs_inputs(config)

    version: Optional[str] = config.kernel_version
    if not version:
        version = sync_version(config.kernel_package)

    kernel = KernelVersion.parse(config.kernel_package, version)
    log_notice(f"Building OpenZFS {config.zfs_version} for {kernel.package} {kernel.full} ({kernel.release})")

    with setup_workspace(args, config) as workspace:
        assert config.zfs_version
        tarball = fetch_source(config.zfs_version, workspace)
        check_kernel_compat(read_meta(tarball), kernel, force=args.force)

        utils, module = prepare_recipes(config, kernel, tarball, workspace, resources)

        chroot = config.chroot_dir
        prepare_chroot(chroot)

        with complete_step("Building zfs-utils"):
            utils_packages = makechrootpkg(chroot, utils)
        with complete_step(f"Building zfs-{kernel.package}"):
            module_packages = makechrootpkg(chroot, module, install=utils_packages)

        packages = publish_packages(config, [*utils_packages, *module_packages])

    log_notice(f"Built {', '.join(p.name for p in packages)}")
    return packages

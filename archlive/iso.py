# SPDX-License-Identifier: LGPL-2.1-or-later

import datetime
import os
import shutil
from pathlib import Path

from archlive.config import Args, Config, IsoProfile
from archlive.device import check_root
from archlive.gpg import gpg_sign
from archlive.log import complete_step, die, log_notice
from archlive.pacman import LOCAL_REPOSITORY, add_repository, check_packages
from archlive.run import run
from archlive.util import format_bytes, hash_file, read_list_file, set_shell_variables, unique
from archlive.workspace import setup_workspace


def profile_packages(resources: Path, profile: IsoProfile) -> list[str]:
    path = resources / "profiles" / f"{profile}.packages"
    if not path.exists():
        die(f"No package list found for profile {profile}")

    return read_list_file(path)


def check_iso_inputs(config: Config, resources: Path) -> None:
    check_root()
    check_packages("archiso", reason="build live images")

    if not (config.base_profile / "profiledef.sh").exists():
        die(
            f"{config.base_profile} is not an archiso profile",
            hint="Use BaseProfile= to point to e.g. /usr/share/archiso/configs/releng",
        )

    # mkarchiso reads packages.${arch} of the arch= it finds in profiledef.sh, which we set to Architecture=.
    if not (config.base_profile / f"packages.{config.architecture}").exists():
        die(
            f"{config.base_profile} has no package list for {config.architecture}",
            hint="Set Architecture= to an architecture the base profile supports",
        )

    if config.local_repository and not (config.local_repository / f"{LOCAL_REPOSITORY}.db").exists():
        die(
            f"No {LOCAL_REPOSITORY} repository found in {config.local_repository}",
            hint="Build packages into it with 'archlive zfs' first",
        )

    # Fail early on a missing package list rather than after copying the base profile.
    profile_packages(resources, config.profile)


def copy_base_profile(config: Config, dst: Path) -> None:
    with complete_step(f"Copying archiso profile {config.base_profile}"):
        shutil.copytree(config.base_profile, dst, symlinks=True)


def write_package_list(config: Config, profile: Path, resources: Path) -> list[str]:
    path = profile / f"packages.{config.architecture}"
    base = read_list_file(path)

    packages = unique([*base, *profile_packages(resources, config.profile), *config.packages])
    path.write_text("\n".join(packages) + "\n")

    return packages


def iso_version(today: datetime.date) -> str:
    return f"{today:%Y.%m.%d}"


def configure_profiledef(config: Config, profile: Path, version: str) -> None:
    profiledef = profile / "profiledef.sh"
    profiledef.write_text(
        set_shell_variables(
            profiledef.read_text(),
            {
                "arch": config.architecture,
                "iso_name": config.iso_name,
                "iso_label": config.iso_label,
                "iso_publisher": config.iso_publisher,
                "iso_version": version,
            },
        )
    )


def symlink(target: str, link: Path) -> None:
    link.parent.mkdir(parents=True, exist_ok=True)
    link.unlink(missing_ok=True)
    link.symlink_to(target)


def configure_airootfs(config: Config, profile: Path) -> None:
    airootfs = profile / "airootfs"
    (airootfs / "etc").mkdir(parents=True, exist_ok=True)
    (airootfs / "etc/hostname").write_text(f"{config.hostname}\n")

    if dm := config.profile.display_manager():
        units = airootfs / "etc/systemd/system"
        symlink(f"/usr/lib/systemd/system/{dm}.service", units / "display-manager.service")
        symlink("/usr/lib/systemd/system/graphical.target", units / "default.target")


def prepare_profile(config: Config, profile: Path, resources: Path, version: str) -> None:
    copy_base_profile(config, profile)

    with complete_step(f"Configuring the {config.profile} profile"):
        packages = write_package_list(config, profile, resources)
        configure_profiledef(config, profile, version)
        configure_airootfs(config, profile)

        if config.local_repository:
            add_repository(profile / "pacman.conf", LOCAL_REPOSITORY, config.local_repository)

    log_notice(f"{len(packages)} packages selected for the live image")


def run_mkarchiso(config: Config, profile: Path, workdir: Path) -> None:
    config.output_dir.mkdir(parents=True, exist_ok=True)

    with complete_step("Building live image with mkarchiso"):
        run(["mkarchiso", "-v", "-w", workdir, "-o", config.output_dir, profile])


def write_checksum(image: Path) -> Path:
    output = image.with_name(f"{image.name}.sha256")
    output.write_text(f"{hash_file(image)}  {image.name}\n")
    return output


def finalize_image(config: Config, image: Path) -> None:
    if not image.exists():
        die(f"mkarchiso did not produce {image}")

    if config.checksum:
        with complete_step("Calculating SHA256 checksum"):
            write_checksum(image)

    if config.key:
        gpg_sign(image, config.key)


def build_iso(args: Args, config: Config, *, resources: Path) -> Path:
    check_iso_inputs(config, resources)

    version = iso_version(datetime.date.today())
    image = config.output_dir / f"{config.iso_name}-{version}-{config.architecture}.iso"

    with setup_workspace(args, config) as workspace:
        profile = workspace / "profile"
        prepare_profile(config, profile, resources, version)
        run_mkarchiso(config, profile, workspace / "work")

    finalize_image(config, image)
    log_notice(f"{image} size is {format_bytes(os.stat(image).st_size)}")

    return image

# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import shutil
import textwrap
from pathlib import Path
from typing import Optional

from archlive.bootloader import (
    boot_entries,
    install_syslinux,
    install_syslinux_files,
    kernel_cmdline,
    syslinux_config,
    write_mbr,
)
from archlive.config import Args, Config
from archlive.device import BlockDevice, check_device, check_root, confirm_destruction, inspect_device
from archlive.log import complete_step, die, log_notice
from archlive.luks import luks_format, luks_open, luks_uuid
from archlive.mounts import loop_mount_iso, mount
from archlive.pacman import check_packages
from archlive.partition import (
    BOOT_LABEL,
    ROOT_LABEL,
    PartitionLayout,
    filesystem_uuid,
    partition_device,
    wipe_device,
)
from archlive.run import run
from archlive.workspace import setup_workspace

CRYPT_MAPPING = "archlive-root"

# Files of the live session that make no sense on a persistent installation.
LIVE_ONLY_FILES = (
    "etc/mkinitcpio.conf.d/archiso.conf",
    "etc/systemd/journald.conf.d/volatile-storage.conf",
    "etc/machine-id",
)


def finalize_image(config: Config) -> Path:
    if config.image:
        return config.image

    images = sorted(config.output_dir.glob("*.iso"), key=lambda p: p.stat().st_mtime)
    if not images:
        die(
            f"No ISO image found in {config.output_dir}",
            hint="Build one with 'archlive iso' or pass --image=",
        )

    return images[-1]


def required_packages(config: Config) -> list[str]:
    packages = [
        "arch-install-scripts",
        "syslinux",
        "dosfstools",
        "squashfs-tools",
        config.filesystem.package(),
    ]

    if config.encrypt:
        packages += ["cryptsetup"]

    return packages


def check_install_inputs(args: Args, config: Config, image: Path) -> BlockDevice:
    check_root()
    check_packages(*required_packages(config), reason="install to a USB device")

    if not image.is_file():
        die(f"Image {image} not found")

    device = inspect_device(Path(args.cmdline[0]))
    check_device(device, minimum_size=max(config.minimum_size, config.boot_size * 2), force=args.force)

    return device


def format_boot(partition: Path) -> None:
    with complete_step(f"Formatting {partition} as FAT32"):
        run(["mkfs.fat", "-F", "32", "-n", BOOT_LABEL, partition])


def format_root(config: Config, device: Path) -> None:
    with complete_step(f"Formatting {device} as {config.filesystem}"):
        run([*config.filesystem.mkfs(ROOT_LABEL), device])


def find_live_filesystem(config: Config, iso: Path) -> Path:
    for suffix in ("sfs", "erofs"):
        if (p := iso / "arch" / config.architecture / f"airootfs.{suffix}").exists():
            return p

    die(f"No airootfs image for {config.architecture} found in the ISO image")


def copy_live_filesystem(config: Config, iso: Path, root: Path, workspace: Path) -> None:
    airootfs = find_live_filesystem(config, iso)

    with complete_step(f"Copying live filesystem {airootfs.name}"):
        if airootfs.suffix == ".sfs":
            run(["unsquashfs", "-force", "-no-progress", "-dest", root, airootfs])
        else:
            with mount(airootfs, workspace / "airootfs", options=["loop", "ro"], type="erofs") as src:
                run(["cp", "--archive", "--no-target-directory", src, root])

    # The boot partition gets mounted here, anything the live filesystem put there would be hidden.
    boot = root / "boot"
    if boot.exists():
        shutil.rmtree(boot)
    boot.mkdir(mode=0o755)


def copy_boot_files(config: Config, iso: Path, boot: Path) -> tuple[str, list[str]]:
    kernels = sorted((iso / "arch/boot" / config.architecture).glob("vmlinuz-*"))
    if not kernels:
        die(f"No kernel for {config.architecture} found in the ISO image")

    microcode = sorted((iso / "arch/boot").glob("*-ucode.img"))

    with complete_step("Copying kernel and microcode"):
        for p in [kernels[0], *microcode]:
            shutil.copyfile(p, boot / p.name)

    return kernels[0].name, [p.name for p in microcode]


def mkinitcpio_hooks(encrypt: bool) -> list[str]:
    # No autodetect hook, the installation has to boot on whatever machine the USB device is plugged into.
    hooks = ["base", "udev", "modconf", "kms", "keyboard", "keymap", "consolefont", "block"]
    if encrypt:
        hooks += ["encrypt"]

    return hooks + ["filesystems", "fsck"]


def mkinitcpio_preset(kernel: str) -> str:
    flavor = kernel.removeprefix("vmlinuz-")

    return textwrap.dedent(
        f"""\
        ALL_kver="/boot/{kernel}"
        PRESETS=('default' 'fallback')
        default_image="/boot/initramfs-{flavor}.img"
        fallback_image="/boot/initramfs-{flavor}-fallback.img"
        fallback_options="-S autodetect"
        """
    )


def fstab(config: Config, *, root_uuid: str, boot_uuid: str) -> str:
    return textwrap.dedent(
        f"""\
        # Static information about the filesystems, see fstab(5)
        UUID={root_uuid} / {config.filesystem} rw,noatime 0 1
        UUID={boot_uuid} /boot vfat rw,noatime,fmask=0022,dmask=0022 0 2
        """
    )


def configure_installation(
    config: Config,
    root: Path,
    *,
    kernel: str,
    root_uuid: str,
    boot_uuid: str,
) -> None:
    with complete_step("Configuring the persistent installation"):
        for f in LIVE_ONLY_FILES:
            (root / f).unlink(missing_ok=True)

        # An empty machine-id makes systemd generate a new one on first boot.
        (root / "etc/machine-id").touch()
        (root / "etc/hostname").write_text(f"{config.hostname}\n")
        (root / "etc/fstab").write_text(fstab(config, root_uuid=root_uuid, boot_uuid=boot_uuid))

        conf = root / "etc/mkinitcpio.conf.d"
        conf.mkdir(parents=True, exist_ok=True)
        (conf / "archlive.conf").write_text(f"HOOKS=({' '.join(mkinitcpio_hooks(config.encrypt))})\n")

        preset = root / "etc/mkinitcpio.d" / f"{kernel.removeprefix('vmlinuz-')}.preset"
        preset.parent.mkdir(parents=True, exist_ok=True)
        preset.write_text(mkinitcpio_preset(kernel))


def run_mkinitcpio(root: Path) -> None:
    with complete_step("Generating initramfs images"):
        run(["arch-chroot", root, "mkinitcpio", "--allpresets"])


def install_usb(args: Args, config: Config) -> None:
    image = finalize_image(config)
    device = check_install_inputs(args, config, image)
    confirm_destruction(device, assume_yes=args.assume_yes)

    layout = PartitionLayout(device=device.path, boot_size=config.boot_size)
    passphrase = config.passphrase_or_none()

    with setup_workspace(args, config) as workspace:
        wipe_device(layout.device)
        partition_device(layout)
        format_boot(layout.boot)

        with contextlib.ExitStack() as stack:
            rootdev = layout.root
            luks: Optional[str] = None

            if config.encrypt:
                luks_format(layout.root, passphrase)
                luks = luks_uuid(layout.root)
                rootdev = stack.enter_context(luks_open(layout.root, CRYPT_MAPPING, passphrase))

            format_root(config, rootdev)
            root_uuid = filesystem_uuid(rootdev)
            boot_uuid = filesystem_uuid(layout.boot)

            iso = stack.enter_context(loop_mount_iso(image, workspace / "iso"))
            root = stack.enter_context(mount(rootdev, workspace / "root"))
            copy_live_filesystem(config, iso, root, workspace)

            boot = stack.enter_context(mount(layout.boot, root / "boot", type="vfat"))
            kernel, microcode = copy_boot_files(config, iso, boot)

            configure_installation(config, root, kernel=kernel, root_uuid=root_uuid, boot_uuid=boot_uuid)
            run_mkinitcpio(root)

            cmdline = kernel_cmdline(root_uuid, luks_uuid=luks, mapping=CRYPT_MAPPING)
            install_syslinux_files(boot, syslinux_config(boot_entries(kernel, cmdline, microcode)))

        # Everything is unmounted and closed at this point.
        install_syslinux(layout.boot)
        write_mbr(layout.device)
        run(["sync"])

    log_notice(f"Persistent installation on {device.description()} is ready")

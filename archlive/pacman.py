# SPDX-License-Identifier: LGPL-2.1-or-later

import subprocess
import textwrap
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

from archlive.log import complete_step, die
from archlive.run import find_binary, run
from archlive.util import PathString, chdir, flatten

LOCAL_REPOSITORY = "archlive-local"


def check_tools(*tools: str, reason: str, hint: Optional[str] = None) -> None:
    if missing := [tool for tool in tools if not find_binary(tool)]:
        die(f"Could not find {', '.join(repr(t) for t in missing)} which is required to {reason}.", hint=hint)


def missing_packages(*packages: str) -> list[str]:
    # pacman --deptest prints the packages that are not satisfied and exits with 127 if there are any.
    result = run(
        ["pacman", "--deptest", *packages],
        stdout=subprocess.PIPE,
        success_exit_status=(0, 127),
    )

    return result.stdout.split()


def check_packages(*packages: str, reason: str) -> None:
    if missing := missing_packages(*packages):
        die(
            f"Missing package(s) required to {reason}: {', '.join(missing)}",
            hint=f"Install them with pacman -S --needed {' '.join(missing)}",
        )


def sync_version(package: str) -> str:
    output = run(
        ["pacman", "--sync", "--info", package],
        stdout=subprocess.PIPE,
        env={"LANG": "C"},
    ).stdout

    for line in output.splitlines():
        key, _, value = line.partition(":")
        if key.strip() == "Version":
            return value.strip()

    die(f"Could not determine the version of {package} from the sync database")


def local_repository_section(name: str, path: Path) -> str:
    return textwrap.dedent(
        f"""\
        [{name}]
        SigLevel = Optional TrustAll
        Server = file://{path}
        """
    )


def add_repository(pacman_conf: Path, name: str, path: Path) -> None:
    """Add a repository in front of the official ones so that its packages take precedence."""
    lines = pacman_conf.read_text().splitlines(keepends=True)
    section = local_repository_section(name, path)

    for i, line in enumerate(lines):
        if line.strip().startswith("[") and line.strip() != "[options]":
            lines.insert(i, section + "\n")
            break
    else:
        lines.append("\n" + section)

    pacman_conf.write_text("".join(lines))


def repo_add(database: Path, packages: Sequence[Path], *, key: Optional[str] = None) -> None:
    cmdline: list[PathString] = ["repo-add", "--remove"]

    if key:
        cmdline += ["--sign", "--key", key]

    with complete_step(f"Adding {len(packages)} package(s) to {database.name}"):
        run([*cmdline, database, *packages])


def mkarchroot(root: Path, packages: Sequence[str] = ("base-devel",)) -> None:
    with complete_step(f"Creating build chroot in {root}"):
        root.parent.mkdir(parents=True, exist_ok=True)
        run(["mkarchroot", root, *packages])


def arch_nspawn_upgrade(root: Path) -> None:
    with complete_step(f"Upgrading build chroot in {root}"):
        run(["arch-nspawn", root, "pacman", "--sync", "--refresh", "--sysupgrade", "--noconfirm"])


def makechrootpkg(chroot: Path, recipe: Path, *, install: Sequence[Path] = ()) -> list[Path]:
    """Build the PKGBUILD in @recipe in a clean copy of @chroot and return the built packages."""
    with chdir(recipe):
        run(
            [
                "makechrootpkg",
                "-c",
                "-r", chroot,
                *flatten(["-I", p] for p in install),
            ]
        )  # fmt: skip

    return sorted(p for p in recipe.glob("*.pkg.tar*") if not p.name.endswith(".sig"))

# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import subprocess
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Optional

from archlive.log import complete_step
from archlive.run import run
from archlive.util import _FILE, PathString


def passphrase_input(passphrase: Optional[str]) -> tuple[list[PathString], _FILE, Optional[str]]:
    # Without a configured passphrase cryptsetup asks for one on the terminal.
    if passphrase is None:
        return [], sys.stdin, None

    return ["--key-file", "-"], None, passphrase


def luks_format(partition: Path, passphrase: Optional[str] = None) -> None:
    options, stdin, input = passphrase_input(passphrase)

    with complete_step(f"Encrypting {partition}"):
        run(
            [
                "cryptsetup", "luksFormat",
                "--type", "luks2",
                "--batch-mode",
                *(["--verify-passphrase"] if passphrase is None else []),
                *options,
                partition,
            ],
            stdin=stdin,
            input=input,
        )  # fmt: skip


@contextlib.contextmanager
def luks_open(partition: Path, name: str, passphrase: Optional[str] = None) -> Iterator[Path]:
    options, stdin, input = passphrase_input(passphrase)

    run(["cryptsetup", "open", *options, partition, name], stdin=stdin, input=input)

    try:
        yield Path("/dev/mapper") / name
    finally:
        with complete_step(f"Closing {name}"):
            run(["cryptsetup", "close", name])


def luks_uuid(partition: Path) -> str:
    return run(["cryptsetup", "luksUUID", partition], stdout=subprocess.PIPE).stdout.strip()

# SPDX-License-Identifier: LGPL-2.1-or-later

import os
import sys
from pathlib import Path

from archlive.log import complete_step, die
from archlive.run import run


def gpg_env() -> dict[str, str]:
    env = {}

    home = Path(os.getenv("GNUPGHOME", Path.home() / ".gnupg"))
    if home.exists():
        env["GNUPGHOME"] = os.fspath(home)

    if sys.stderr.isatty():
        env["GPG_TTY"] = os.ttyname(sys.stderr.fileno())

    return env


def gpg_verify(signature: Path, data: Path) -> None:
    with complete_step(f"Verifying signature of {data.name}"):
        run(
            ["gpg", "--batch", "--auto-key-retrieve", "--verify", signature, data],
            env=gpg_env(),
        )


def gpg_sign(path: Path, key: str) -> Path:
    env = gpg_env()
    if "GNUPGHOME" not in env:
        die("GPG home directory not found", hint="Import the signing key or set $GNUPGHOME")

    output = path.with_name(f"{path.name}.sig")

    with complete_step(f"Signing {path.name}"):
        run(
            [
                "gpg",
                "--detach-sign",
                "--pinentry-mode", "loopback",
                "--default-key", key,
                "--yes",
                "--output", output,
                path,
            ],
            env=env,
        )  # fmt: skip

    return output

# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Optional

from archlive.log import complete_step
from archlive.run import run
from archlive.util import PathString


@contextlib.contextmanager
def mount(
    what: PathString,
    where: Path,
    *,
    options: Sequence[str] = (),
    type: Optional[str] = None,
) -> Iterator[Path]:
    where.mkdir(parents=True, exist_ok=True)

    cmdline: list[PathString] = ["mount"]
    if type:
        cmdline += ["--types", type]
    if options:
        cmdline += ["--options", ",".join(options)]

    run([*cmdline, what, where])

    try:
        yield where
    finally:
        with complete_step(f"Unmounting {where}"):
            run(["umount", where])


def loop_mount_iso(image: Path, where: Path) -> contextlib.AbstractContextManager[Path]:
    return mount(image, where, options=["loop", "ro"], type="iso9660")

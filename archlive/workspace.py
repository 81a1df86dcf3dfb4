# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import logging
import shutil
import stat
import tempfile
from collections.abc import Iterator
from pathlib import Path

from archlive.config import Args, Config
from archlive.log import log_notice


def mounts_below(path: Path) -> list[Path]:
    mounts = []

    with open("/proc/self/mounts") as f:
        for line in f:
            # Whitespace in mount points is escaped as octal sequences.
            target = Path(line.split()[1].encode().decode("unicode_escape"))
            if target.is_relative_to(path):
                mounts.append(target)

    return mounts


@contextlib.contextmanager
def setup_workspace(args: Args, config: Config) -> Iterator[Path]:
    workspace = Path(tempfile.mkdtemp(dir=config.workspace_dir, prefix="archlive-workspace-"))
    # Discard setuid/setgid bits as these are inherited and can leak into the image.
    workspace.chmod(stat.S_IMODE(workspace.stat().st_mode) & ~(stat.S_ISGID | stat.S_ISUID))

    try:
        yield workspace
    finally:
        if args.keep_workspace:
            log_notice(f"Workspace: {workspace}")
        elif mounts := mounts_below(workspace):
            # Never recurse into a filesystem that failed to unmount, it is likely the target device.
            logging.warning(
                f"Not removing workspace {workspace}, still mounted: {', '.join(str(m) for m in mounts)}"
            )
        else:
            shutil.rmtree(workspace)

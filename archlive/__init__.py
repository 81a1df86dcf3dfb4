# SPDX-License-Identifier: LGPL-2.1-or-later

from pathlib import Path

from archlive.config import Args, Config, Verb, summary
from archlive.install import install_usb
from archlive.iso import build_iso
from archlive.zfs import build_zfs


def run_verb(args: Args, config: Config, *, resources: Path) -> None:
    if args.verb == Verb.summary:
        print(summary(config))
        return

    if args.verb == Verb.iso:
        build_iso(args, config, resources=resources)
    elif args.verb == Verb.install:
        install_usb(args, config)
    elif args.verb == Verb.zfs:
        build_zfs(args, config, resources=resources)

# SPDX-License-Identifier: LGPL-2.1-or-later

import faulthandler
import signal
import sys
from types import FrameType
from typing import Optional

import archlive.resources
from archlive import run_verb
from archlive.config import parse_config
from archlive.log import log_setup
from archlive.run import uncaught_exception_handler
from archlive.util import resource_path


def onsigterm(signal: int, frame: Optional[FrameType]) -> None:
    raise KeyboardInterrupt()


@uncaught_exception_handler()
def main() -> None:
    signal.signal(signal.SIGTERM, onsigterm)

    log_setup()

    with resource_path(archlive.resources) as resources:
        args, config = parse_config(sys.argv[1:])

        if args.debug:
            faulthandler.enable()

        run_verb(args, config, resources=resources)


if __name__ == "__main__":
    main()

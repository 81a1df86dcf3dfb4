# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import contextvars
import logging
import os
import sys
from collections.abc import Iterator
from typing import NoReturn, Optional

# Set from --debug once the command line has been parsed.
ARG_DEBUG = contextvars.ContextVar("debug", default=False)
# How many complete_step() blocks we are currently nested in.
STEP_DEPTH = contextvars.ContextVar("step-depth", default=0)


def use_colors() -> bool:
    if os.getenv("NO_COLOR") is not None or os.getenv("TERM", "") == "dumb":
        return False

    return sys.stdout.isatty() and sys.stderr.isatty()


def sgr(code: str) -> str:
    return f"\033[{code}m" if use_colors() else ""


class Style:
    bold = sgr("0;1;39")
    gray = sgr("0;38;5;245")
    red = sgr("31;1")
    yellow = sgr("33;1")
    reset = sgr("0")


def die(message: str, *, hint: Optional[str] = None) -> NoReturn:
    """Log an error and exit with status 1, without a traceback."""
    logging.error(message)
    if hint:
        logging.info(f"({hint})")

    sys.exit(1)


def log_step(text: str) -> None:
    indent = " " * STEP_DEPTH.get()

    # While unwinding after a failure, the steps that undo earlier work are shown in parentheses so
    # the step that actually failed stands out. The error itself is logged once cleanup is done.
    if sys.exc_info()[1] is not None:
        logging.info(f"{indent}({text})")
    else:
        logging.info(f"{indent}{Style.bold}{text}{Style.reset}")


def log_notice(text: str) -> None:
    logging.info(f"{Style.bold}{text}{Style.reset}")


@contextlib.contextmanager
def complete_step(text: str) -> Iterator[None]:
    """Log text as a step header and indent everything logged inside the block."""
    log_step(text)

    token = STEP_DEPTH.set(STEP_DEPTH.get() + 1)
    try:
        yield
    finally:
        STEP_DEPTH.reset(token)


class Formatter(logging.Formatter):
    LEVEL_STYLES = {
        logging.DEBUG: "gray",
        logging.WARNING: "yellow",
        logging.ERROR: "red",
        logging.CRITICAL: "red",
    }

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)

        if not (style := self.LEVEL_STYLES.get(record.levelno)):
            return f"‣ {message}"

        color = getattr(Style, style)
        if record.levelno == logging.CRITICAL:
            color += Style.bold

        return f"‣ {color}{message}{Style.reset}"


def log_setup(default_log_level: str = "info") -> None:
    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(Formatter("%(message)s"))

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(os.getenv("ARCHLIVE_LOG_LEVEL", default_log_level).upper())


def set_debug(enabled: bool) -> None:
    ARG_DEBUG.set(enabled)

    if enabled:
        logging.getLogger().setLevel(logging.DEBUG)

# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import enum
import hashlib
import importlib.resources
import itertools
import os
import re
import shlex
from collections.abc import Iterable, Iterator, Mapping, Sequence
from pathlib import Path
from types import ModuleType
from typing import IO, Any, TypeVar, Union

from archlive.log import die

T = TypeVar("T")

# Borrowed from https://github.com/python/typeshed/blob/3d14016085aed8bcf0cf67e9e5a70790ce1ad8ea/stdlib/3/subprocess.pyi#L24
_FILE = Union[None, int, IO[Any]]
PathString = Union[Path, str]

BYTE_UNITS = (("T", 1024**4), ("G", 1024**3), ("M", 1024**2), ("K", 1024))


def flatten(lists: Iterable[Iterable[T]]) -> list[T]:
    return [*itertools.chain.from_iterable(lists)]


def unique(seq: Iterable[T]) -> list[T]:
    """Drop duplicates, keeping the first occurrence of every item in place."""
    return [*dict.fromkeys(seq)]


def round_up(x: int, blocksize: int = 4096) -> int:
    return -(-x // blocksize) * blocksize


def format_bytes(num_bytes: int) -> str:
    for suffix, factor in BYTE_UNITS:
        if num_bytes >= factor:
            return f"{num_bytes / factor:0.1f}{suffix}"

    return f"{num_bytes}B"


@contextlib.contextmanager
def chdir(directory: PathString) -> Iterator[None]:
    previous = os.getcwd()
    os.chdir(directory)

    try:
        yield
    finally:
        os.chdir(previous)


class StrEnum(enum.Enum):
    """An enum whose members are named after their values, with "-" spelled as "_" in the member name."""

    @staticmethod
    def _generate_next_value_(name: str, start: int, count: int, last_values: Sequence[str]) -> str:
        return name.replace("_", "-")

    def __str__(self) -> str:
        return str(self.value)

    @classmethod
    def values(cls) -> list[str]:
        return [str(member) for member in cls]


@contextlib.contextmanager
def resource_path(mod: ModuleType) -> Iterator[Path]:
    """Make the data files shipped in a package available on disk, even when installed as a zip."""
    with importlib.resources.as_file(importlib.resources.files(mod)) as p:
        yield p


def hash_file(path: Path) -> str:
    h = hashlib.sha256()

    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024**2), b""):
            h.update(chunk)

    return h.hexdigest()


def read_list_file(path: Path) -> list[str]:
    """Read a package list, one entry per line, ignoring comments and blank lines."""
    entries = []

    for line in path.read_text().splitlines():
        line = line.partition("#")[0].strip()
        if line:
            entries.append(line)

    return entries


def shell_value(value: Union[str, Sequence[str]]) -> str:
    if isinstance(value, str):
        return shlex.quote(value) if value else "''"

    return "(" + " ".join(shlex.quote(v) for v in value) + ")"


def set_shell_variables(text: str, variables: Mapping[str, Union[str, Sequence[str]]]) -> str:
    """
    Rewrite top-level shell assignments (name=value) such as the ones found in PKGBUILD and archiso's
    profiledef.sh. Array assignments may span multiple lines. Every variable must already be assigned
    in the text.
    """
    lines = text.splitlines(keepends=True)
    out: list[str] = []
    seen: set[str] = set()
    i = 0

    while i < len(lines):
        line = lines[i]
        m = re.match(r"^([A-Za-z_][A-Za-z_0-9]*)=(.*)$", line.rstrip("\n"))
        if not m or m.group(1) not in variables:
            out.append(line)
            i += 1
            continue

        name, rest = m.groups()

        # Skip over the remaining lines of a multi-line array assignment.
        if rest.startswith("(") and ")" not in rest:
            i += 1
            while i < len(lines) and ")" not in lines[i]:
                i += 1

        out.append(f"{name}={shell_value(variables[name])}\n")
        seen.add(name)
        i += 1

    if missing := [name for name in variables if name not in seen]:
        die(f"Missing shell variable assignment(s): {', '.join(missing)}")

    return "".join(out)

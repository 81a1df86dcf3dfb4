# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Callable, Optional

from archlive.config import Args, Config, parse_config
from archlive.run import CompletedProcess
from archlive.util import PathString, chdir


@dataclasses.dataclass
class CommandRecorder:
    """Stand-in for archlive.run.run() that records command lines instead of executing them."""

    commands: list[list[str]] = dataclasses.field(default_factory=list)
    inputs: list[Optional[str]] = dataclasses.field(default_factory=list)
    outputs: dict[tuple[str, ...], tuple[int, str]] = dataclasses.field(default_factory=dict)
    failures: set[tuple[str, ...]] = dataclasses.field(default_factory=set)
    callbacks: dict[tuple[str, ...], Callable[[list[str]], None]] = dataclasses.field(default_factory=dict)

    def respond(self, *prefix: str, stdout: str = "", returncode: int = 0) -> None:
        self.outputs[prefix] = (returncode, stdout)

    def fail(self, *prefix: str) -> None:
        self.failures.add(prefix)

    def on(self, *prefix: str, callback: Callable[[list[str]], None]) -> None:
        self.callbacks[prefix] = callback

    def match(self, cmd: Sequence[str], prefixes: Any) -> Optional[tuple[str, ...]]:
        # The longest matching prefix wins.
        for prefix in sorted(prefixes, key=len, reverse=True):
            if tuple(cmd[: len(prefix)]) == prefix:
                return prefix

        return None

    def __call__(
        self,
        cmdline: Sequence[PathString],
        check: bool = True,
        stdin: Any = None,
        stdout: Any = None,
        stderr: Any = None,
        input: Optional[str] = None,
        env: Mapping[str, str] = {},
        log: bool = True,
        success_exit_status: Sequence[int] = (0,),
    ) -> CompletedProcess:
        cmd = [os.fspath(c) for c in cmdline]
        self.commands.append(cmd)
        self.inputs.append(input)

        if self.match(cmd, self.failures) is not None and check:
            raise subprocess.CalledProcessError(1, cmd)

        if (prefix := self.match(cmd, self.callbacks)) is not None:
            self.callbacks[prefix](cmd)

        returncode, out = 0, ""
        if (prefix := self.match(cmd, self.outputs)) is not None:
            returncode, out = self.outputs[prefix]

        if check and returncode not in success_exit_status:
            raise subprocess.CalledProcessError(returncode, cmd)

        return CompletedProcess(cmd, returncode, out, "")

    def names(self) -> list[str]:
        """The executable of every recorded command, with the subcommand for multi-call tools."""
        return [
            f"{c[0]} {c[1]}" if c[0] in ("cryptsetup",) and len(c) > 1 else c[0]
            for c in self.commands
        ]

    def find(self, *prefix: str) -> list[list[str]]:
        return [c for c in self.commands if tuple(c[: len(prefix)]) == prefix]


def make_config(directory: Path, *argv: str, verb: str = "summary") -> tuple[Args, Config]:
    with chdir(directory):
        return parse_config([verb, *argv])

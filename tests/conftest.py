# SPDX-License-Identifier: LGPL-2.1-or-later

from collections.abc import Iterator
from pathlib import Path

import pytest

import archlive.bootloader
import archlive.curl
import archlive.device
import archlive.gpg
import archlive.install
import archlive.iso
import archlive.luks
import archlive.mounts
import archlive.pacman
import archlive.partition
import archlive.resources
from archlive.util import resource_path

from . import CommandRecorder

MODULES_RUNNING_COMMANDS = (
    archlive.bootloader,
    archlive.curl,
    archlive.device,
    archlive.gpg,
    archlive.install,
    archlive.iso,
    archlive.luks,
    archlive.mounts,
    archlive.pacman,
    archlive.partition,
)


@pytest.fixture
def recorder(monkeypatch: pytest.MonkeyPatch) -> CommandRecorder:
    rec = CommandRecorder()

    for module in MODULES_RUNNING_COMMANDS:
        monkeypatch.setattr(module, "run", rec)

    return rec


@pytest.fixture
def resources() -> Iterator[Path]:
    with resource_path(archlive.resources) as p:
        yield p

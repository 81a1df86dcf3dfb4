# SPDX-License-Identifier: LGPL-2.1-or-later

from pathlib import Path

from archlive.log import complete_step
from archlive.run import run


def curl(url: str, output_dir: Path) -> Path:
    """Download url into output_dir, keeping the file name from the url."""
    output = output_dir / url.rpartition("/")[2]

    with complete_step(f"Downloading {output.name}"):
        run(
            [
                "curl",
                "--fail",
                "--location",
                "--silent",
                "--show-error",
                "--retry", "3",
                "--output", output,
                url,
            ],
        )  # fmt: skip

    return output

#!/usr/bin/python3
# SPDX-License-Identifier: LGPL-2.1-or-later

from setuptools import find_packages, setup

setup(
    name="archlive",
    version="3",
    description="Build Arch Linux live images, persistent USB installations and ZFS packages",
    license="LGPLv2+",
    python_requires=">=3.9",
    packages=find_packages(".", exclude=["tests", "tests.*"]),
    package_data={"archlive.resources": ["profiles/*.packages", "zfs/*/PKGBUILD"]},
    include_package_data=True,
    extras_require={"test": ["pytest"]},
    entry_points={"console_scripts": ["archlive = archlive.__main__:main"]},
)

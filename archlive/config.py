# SPDX-License-Identifier: LGPL-2.1-or-later

import argparse
import dataclasses
import datetime
import enum
import itertools
import logging
import math
import platform
import re
import sys
import textwrap
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any, Callable, Generic, Optional, TypeVar

from archlive.log import Style, die, set_debug
from archlive.util import PathString, StrEnum, chdir, format_bytes, round_up

__version__ = "3"

T = TypeVar("T")
SE = TypeVar("SE", bound=StrEnum)

ConfigParseCallback = Callable[[Optional[str], Optional[T]], Optional[T]]
ConfigDefaultCallback = Callable[[dict[str, Any]], T]


class Verb(StrEnum):
    iso = enum.auto()
    install = enum.auto()
    zfs = enum.auto()
    summary = enum.auto()
    help = enum.auto()

    def supports_cmdline(self) -> bool:
        return self == Verb.install


class IsoProfile(StrEnum):
    base = enum.auto()
    xfce = enum.auto()
    kde = enum.auto()
    gnome = enum.auto()

    def display_manager(self) -> Optional[str]:
        return {
            IsoProfile.xfce: "lightdm",
            IsoProfile.kde: "sddm",
            IsoProfile.gnome: "gdm",
        }.get(self)


class RootFilesystem(StrEnum):
    ext4 = enum.auto()
    btrfs = enum.auto()
    xfs = enum.auto()

    def package(self) -> str:
        return {
            RootFilesystem.ext4: "e2fsprogs",
            RootFilesystem.btrfs: "btrfs-progs",
            RootFilesystem.xfs: "xfsprogs",
        }[self]

    def mkfs(self, label: str) -> list[PathString]:
        # Each mkfs variant spells "force" and "label" slightly differently.
        return {
            RootFilesystem.ext4: ["mkfs.ext4", "-F", "-L", label],
            RootFilesystem.btrfs: ["mkfs.btrfs", "--force", "--label", label],
            RootFilesystem.xfs: ["mkfs.xfs", "-f", "-L", label],
        }[self]


TRUE_WORDS = frozenset({"1", "true", "yes", "y", "t", "on", "always"})
FALSE_WORDS = frozenset({"0", "false", "no", "n", "f", "off", "never"})

SIZE_SUFFIXES = {"K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}


def try_parse_boolean(s: str) -> Optional[bool]:
    word = s.strip().lower()

    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False

    return None


def parse_boolean(s: str) -> bool:
    if (b := try_parse_boolean(s)) is None:
        die(f"{s!r} is not a boolean", hint="Use yes or no")

    return b


def parse_path(value: str, *, required: bool = False, expanduser: bool = True) -> Path:
    path = Path(value).expanduser() if expanduser else Path(value)

    if required and not path.exists():
        die(f"{value} does not exist")

    return path.absolute()


def parse_bytes(value: str) -> int:
    """Parse a size such as 512M or 1.5G. The result is rounded up to a multiple of 4096 bytes."""
    factor = SIZE_SUFFIXES.get(value[-1:], 1)
    number = value[:-1] if factor > 1 else value

    try:
        size = math.ceil(float(number) * factor)
    except (ValueError, OverflowError):
        die(f"{value!r} is not a valid size", hint="Use a number, optionally suffixed with K, M, G or T")

    if size <= 0:
        die(f"Size {value!r} must be positive")

    return round_up(size)


# Every callback receives the assigned value and the value accumulated so far. An empty assignment
# resets the setting so that its default applies again.


def config_parse_string(value: Optional[str], old: Optional[str]) -> Optional[str]:
    return value if value else None


def config_parse_boolean(value: Optional[str], old: Optional[bool]) -> Optional[bool]:
    return parse_boolean(value) if value else None


def config_parse_bytes(value: Optional[str], old: Optional[int] = None) -> Optional[int]:
    return parse_bytes(value) if value else None


def config_make_enum_parser(type: type[SE]) -> ConfigParseCallback[SE]:
    def parse_enum(value: Optional[str], old: Optional[SE]) -> Optional[SE]:
        if not value:
            return None

        if value not in type.values():
            die(f"{value!r} is not a valid {type.__name__}", hint=f"Choose one of {', '.join(type.values())}")

        return type(value)

    return parse_enum


def config_make_path_parser(*, required: bool = False) -> ConfigParseCallback[Path]:
    return lambda value, old: parse_path(value, required=required) if value else None


def config_parse_list(value: Optional[str], old: Optional[list[str]]) -> Optional[list[str]]:
    if not value:
        return []

    return [*(old or []), *(v for v in re.split(r"[\s,]+", value) if v)]


def config_parse_pkgrel(value: Optional[str], old: Optional[str]) -> Optional[str]:
    if value and not re.fullmatch(r"[0-9]+(\.[0-9]+)?", value):
        die(f"{value!r} is not a valid package release", hint="Use a number such as 1 or 2.1")

    return value if value else None


def config_default_output_dir(namespace: dict[str, Any]) -> Path:
    return Path.cwd() / "out"


def config_default_chroot_dir(namespace: dict[str, Any]) -> Path:
    return namespace["workspace_dir"] / "archlive-chroot"


def config_default_iso_name(namespace: dict[str, Any]) -> str:
    return f"archlive-{namespace['profile']}"


def config_default_iso_label(namespace: dict[str, Any]) -> str:
    return f"ARCHLIVE_{datetime.date.today():%Y%m}"


@dataclasses.dataclass(frozen=True)
class ConfigSetting(Generic[T]):
    """A setting that can be assigned as Name= in [Section] of a configuration file and as --name."""

    dest: str
    section: str
    parse: ConfigParseCallback[T] = config_parse_string  # type: ignore
    name: str = ""
    default: Optional[T] = None
    default_factory: Optional[ConfigDefaultCallback[T]] = None

    short: Optional[str] = None
    long: str = ""
    choices: Optional[list[str]] = None
    metavar: Optional[str] = None
    help: Optional[str] = None

    def __post_init__(self) -> None:
        words = self.dest.split("_")

        if not self.name:
            object.__setattr__(self, "name", "".join(w.title() for w in words))
        if not self.long:
            object.__setattr__(self, "long", "--" + "-".join(words))

    @property
    def flags(self) -> list[str]:
        return [self.short, self.long] if self.short else [self.long]


@dataclasses.dataclass(frozen=True)
class Args:
    verb: Verb
    cmdline: list[str]
    directory: Path
    config_files: list[Path]
    debug: bool
    force: bool
    assume_yes: bool
    keep_workspace: bool

    @classmethod
    def default(cls) -> "Args":
        return cls(
            verb=Verb.help,
            cmdline=[],
            directory=Path.cwd(),
            config_files=[],
            debug=False,
            force=False,
            assume_yes=False,
            keep_workspace=False,
        )


@dataclasses.dataclass(frozen=True)
class Config:
    """Type-hinted storage for the settings of all verbs.

    Every field corresponds to an entry in SETTINGS, which defines how it is parsed from the command line
    and from configuration files.
    """

    output_dir: Path
    workspace_dir: Path

    profile: IsoProfile
    base_profile: Path
    packages: list[str]
    iso_name: str
    iso_label: str
    iso_publisher: str
    hostname: str
    architecture: str
    local_repository: Optional[Path]

    image: Optional[Path]
    filesystem: RootFilesystem
    encrypt: bool
    boot_size: int
    minimum_size: int
    passphrase: Optional[Path]

    kernel_package: str
    kernel_version: Optional[str]
    zfs_version: Optional[str]
    recipe_dir: Optional[Path]
    chroot_dir: Path
    pkgrel: str

    key: Optional[str]
    checksum: bool

    def passphrase_or_none(self) -> Optional[str]:
        if not self.passphrase:
            return None

        return self.passphrase.read_text().rstrip("\n")


SETTINGS: list[ConfigSetting[Any]] = [
    ConfigSetting(
        dest="output_dir",
        section="Output",
        name="OutputDirectory",
        short="-O",
        parse=config_make_path_parser(),
        default_factory=config_default_output_dir,
        metavar="DIR",
        help="Directory receiving ISO images and built packages",
    ),
    ConfigSetting(
        dest="workspace_dir",
        section="Output",
        name="WorkspaceDirectory",
        parse=config_make_path_parser(required=True),
        default=Path("/var/tmp"),
        metavar="DIR",
        help="Parent directory of the temporary workspace",
    ),
    ConfigSetting(
        dest="profile",
        section="Iso",
        short="-p",
        parse=config_make_enum_parser(IsoProfile),
        default=IsoProfile.xfce,
        choices=IsoProfile.values(),
        help="Desktop profile to bake into the live image",
    ),
    ConfigSetting(
        dest="base_profile",
        section="Iso",
        parse=config_make_path_parser(),
        default=Path("/usr/share/archiso/configs/releng"),
        metavar="DIR",
        help="archiso profile the live image is derived from",
    ),
    ConfigSetting(
        dest="packages",
        section="Iso",
        long="--package",
        parse=config_parse_list,
        default=[],
        metavar="PACKAGE",
        help="Additional packages to install into the live image",
    ),
    ConfigSetting(
        dest="iso_name",
        section="Iso",
        default_factory=config_default_iso_name,
        help="File name prefix of the ISO image",
    ),
    ConfigSetting(
        dest="iso_label",
        section="Iso",
        default_factory=config_default_iso_label,
        help="Volume label of the ISO image",
    ),
    ConfigSetting(
        dest="iso_publisher",
        section="Iso",
        default="archlive",
        help="Publisher recorded in the ISO image",
    ),
    ConfigSetting(
        dest="hostname",
        section="Iso",
        default="archlive",
        help="Hostname of the live session and the persistent installation",
    ),
    ConfigSetting(
        dest="architecture",
        section="Iso",
        default=platform.machine(),
        help="Architecture of the live image",
    ),
    ConfigSetting(
        dest="local_repository",
        section="Iso",
        parse=config_make_path_parser(required=True),
        metavar="DIR",
        help="Directory with a pacman repository (e.g. built ZFS packages) to add to the live image",
    ),
    ConfigSetting(
        dest="image",
        section="Install",
        short="-i",
        parse=config_make_path_parser(required=True),
        metavar="ISO",
        help="ISO image to install (defaults to the newest image in the output directory)",
    ),
    ConfigSetting(
        dest="filesystem",
        section="Install",
        parse=config_make_enum_parser(RootFilesystem),
        default=RootFilesystem.ext4,
        choices=RootFilesystem.values(),
        help="Filesystem of the persistent root partition",
    ),
    ConfigSetting(
        dest="encrypt",
        section="Install",
        parse=config_parse_boolean,
        default=False,
        help="Encrypt the root partition with LUKS",
    ),
    ConfigSetting(
        dest="boot_size",
        section="Install",
        parse=config_parse_bytes,
        default=parse_bytes("512M"),
        metavar="BYTES",
        help="Size of the boot partition",
    ),
    ConfigSetting(
        dest="minimum_size",
        section="Install",
        parse=config_parse_bytes,
        default=parse_bytes("8G"),
        metavar="BYTES",
        help="Refuse devices smaller than this",
    ),
    ConfigSetting(
        dest="passphrase",
        section="Install",
        parse=config_make_path_parser(required=True),
        metavar="PATH",
        help="File containing the LUKS passphrase",
    ),
    ConfigSetting(
        dest="kernel_package",
        section="Zfs",
        default="linux",
        help="Kernel package the ZFS modules are built for",
    ),
    ConfigSetting(
        dest="kernel_version",
        section="Zfs",
        help="Kernel package version (defaults to the version in the sync database)",
    ),
    ConfigSetting(
        dest="zfs_version",
        section="Zfs",
        name="ZfsVersion",
        help="OpenZFS release to build",
    ),
    ConfigSetting(
        dest="recipe_dir",
        section="Zfs",
        name="RecipeDirectory",
        parse=config_make_path_parser(required=True),
        metavar="DIR",
        help="Directory with zfs-utils/ and zfs-linux/ PKGBUILD recipes",
    ),
    ConfigSetting(
        dest="chroot_dir",
        section="Zfs",
        name="ChrootDirectory",
        parse=config_make_path_parser(),
        default_factory=config_default_chroot_dir,
        metavar="DIR",
        help="Clean chroot used to build packages, kept between builds",
    ),
    ConfigSetting(
        dest="pkgrel",
        section="Zfs",
        name="PackageRelease",
        parse=config_parse_pkgrel,
        default="1",
        help="Release number of the built ZFS packages",
    ),
    ConfigSetting(
        dest="key",
        section="Signing",
        help="GPG key used to sign images and packages",
    ),
    ConfigSetting(
        dest="checksum",
        section="Signing",
        parse=config_parse_boolean,
        default=True,
        help="Write a SHA256 checksum file next to the ISO image",
    ),
]
SETTINGS_LOOKUP_BY_NAME = {(s.section, s.name): s for s in SETTINGS}
SETTINGS_LOOKUP_BY_DEST = {s.dest: s for s in SETTINGS}


def parse_ini(path: Path) -> Iterator[tuple[str, str, str]]:
    """
    Yield (section, name, value) for every assignment in path, in file order. configparser can't be used
    because list settings may be assigned more than once. Indented lines continue the previous value and
    "#" starts a comment.
    """
    section: Optional[str] = None
    # (section, name, value lines) of the assignment that indented lines are still being added to.
    pending: Optional[tuple[str, str, list[str]]] = None

    for n, line in enumerate(textwrap.dedent(path.read_text()).splitlines(), start=1):
        line = line.partition("#")[0]
        if not line.strip():
            continue

        if pending and line[0].isspace():
            pending[2].append(line.strip())
            continue

        if pending:
            yield pending[0], pending[1], "\n".join(pending[2])
            pending = None

        line = line.strip()

        if line.startswith("["):
            if not line.endswith("]") or not line[1:-1].strip():
                die(f"{path}:{n}: {line} is not a valid section header")

            section = line[1:-1].strip()
            continue

        if section is None:
            die(f"{path}:{n}: {line} does not belong to any section")

        name, eq, value = line.partition("=")
        if not eq or not name.strip():
            die(f"{path}:{n}: Expected Name=Value, got {line}")

        pending = (section, name.strip(), [value.strip()])

    if pending:
        yield pending[0], pending[1], "\n".join(pending[2])


class ConfigAction(argparse.Action):
    """Record assignments in command line order so they can be applied on top of the configuration files."""

    def __call__(
        self,
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: Any,
        option_string: Optional[str] = None,
    ) -> None:
        namespace.assignments = [*getattr(namespace, "assignments", []), (self.dest, values)]


class ConfigBooleanAction(ConfigAction):
    """--name sets a boolean setting and --no-name clears it. Neither takes an argument."""

    def __call__(
        self,
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: Any,
        option_string: Optional[str] = None,
    ) -> None:
        assert option_string is not None
        value = "no" if option_string.startswith("--no-") else "yes"
        super().__call__(parser, namespace, value, option_string)


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="archlive",
        description="Build Arch Linux live images, persistent USB installations and ZFS packages",
        add_help=False,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "verb",
        type=Verb,
        choices=list(Verb),
        default=Verb.help,
        nargs="?",
        help="Operation to execute",
    )
    parser.add_argument(
        "cmdline",
        nargs="*",
        help="The device to install to (install verb only)",
    )
    parser.add_argument("-h", "--help", action="store_true", help="Show this help")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-C", "--directory",
        type=parse_path,
        default=Path.cwd(),
        metavar="PATH",
        help="Look for archlive.conf in this directory",
    )  # fmt: skip
    parser.add_argument(
        "-c", "--config",
        dest="config_files",
        type=parse_path,
        action="append",
        default=[],
        metavar="PATH",
        help="Read additional configuration from this file",
    )  # fmt: skip
    parser.add_argument("--debug", action="store_true", help="Turn on debugging output")
    parser.add_argument("-f", "--force", action="store_true", help="Skip safety checks")
    parser.add_argument(
        "-y", "--yes",
        dest="assume_yes",
        action="store_true",
        help="Do not ask for confirmation before wiping the target device",
    )  # fmt: skip
    parser.add_argument(
        "--keep-workspace",
        action="store_true",
        help="Do not remove the temporary workspace when done",
    )

    for section, settings in itertools.groupby(SETTINGS, key=lambda s: s.section):
        group = parser.add_argument_group(f"{section} configuration options")

        for s in settings:
            if s.parse is config_parse_boolean:
                group.add_argument(
                    *s.flags,
                    f"--no-{s.long.removeprefix('--')}",
                    dest=s.dest,
                    nargs=0,
                    help=s.help,
                    action=ConfigBooleanAction,
                    default=argparse.SUPPRESS,
                )
                continue

            group.add_argument(  # type: ignore
                *s.flags,
                dest=s.dest,
                choices=s.choices,
                metavar=s.metavar,
                help=s.help,
                action=ConfigAction,
                default=argparse.SUPPRESS,
            )

    return parser


def apply_assignment(namespace: dict[str, Any], dest: str, value: str) -> None:
    s = SETTINGS_LOOKUP_BY_DEST[dest]
    namespace[dest] = s.parse(value, namespace[dest])


def finalize_defaults(namespace: dict[str, Any]) -> None:
    for s in SETTINGS:
        if namespace[s.dest] is None and s.default_factory is None:
            namespace[s.dest] = s.default.copy() if isinstance(s.default, list) else s.default

    # Default factories may look at other settings so they run once all plain defaults are in place.
    for s in SETTINGS:
        if namespace[s.dest] is None and s.default_factory is not None:
            namespace[s.dest] = s.default_factory(namespace)


def config_files(directory: Path, extra: Sequence[Path] = ()) -> list[Path]:
    files = []

    if (p := directory / "archlive.conf").exists():
        files.append(p)

    if (d := directory / "archlive.conf.d").is_dir():
        files += sorted(p for p in d.iterdir() if p.suffix == ".conf")

    return files + list(extra)


def load_config_file(path: Path, namespace: dict[str, Any]) -> None:
    if not path.exists():
        die(f"Configuration file {path} does not exist")

    # Relative paths are resolved against the directory of the configuration file they appear in.
    with chdir(path.parent):
        for section, name, value in parse_ini(path):
            if not (s := SETTINGS_LOOKUP_BY_NAME.get((section, name))):
                logging.warning(f"{path}: Unknown setting {name} in section [{section}], ignoring")
                continue

            apply_assignment(namespace, s.dest, value)


def parse_config(argv: Sequence[str] = ()) -> tuple[Args, Config]:
    parser = create_argument_parser()
    namespace = parser.parse_intermixed_args(argv)

    if namespace.help or namespace.verb == Verb.help:
        parser.print_help()
        sys.exit(0)

    args = Args(
        verb=namespace.verb,
        cmdline=namespace.cmdline,
        directory=namespace.directory,
        config_files=namespace.config_files,
        debug=namespace.debug,
        force=namespace.force,
        assume_yes=namespace.assume_yes,
        keep_workspace=namespace.keep_workspace,
    )

    if args.debug:
        set_debug(True)

    if args.cmdline and not args.verb.supports_cmdline():
        die(f"{args.verb} does not accept positional arguments: {' '.join(args.cmdline)}")

    if args.verb == Verb.install and len(args.cmdline) != 1:
        die("Please specify the device to install to", hint="For example /dev/disk/by-id/usb-foobar")

    settings: dict[str, Any] = {s.dest: None for s in SETTINGS}

    for path in config_files(args.directory, args.config_files):
        load_config_file(path, settings)

    # Settings from the command line take precedence over the ones from configuration files.
    for dest, value in getattr(namespace, "assignments", []):
        apply_assignment(settings, dest, value)

    with chdir(args.directory):
        finalize_defaults(settings)

    return args, Config(**settings)


def format_setting(s: ConfigSetting[Any], value: Any) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, list):
        return " ".join(value) or "(none)"
    if value is None:
        return "n/a"
    if s.parse is config_parse_bytes:
        return format_bytes(value)

    return str(value)


def summary(config: Config) -> str:
    lines = [f"{Style.bold}ARCHLIVE CONFIGURATION:{Style.reset}"]

    for section, settings in itertools.groupby(SETTINGS, key=lambda s: s.section):
        lines += ["", f"    {Style.bold}{section.upper()}:{Style.reset}"]
        lines += [f"{s.name:>24}: {format_setting(s, getattr(config, s.dest))}" for s in settings]

    return "\n".join(lines)

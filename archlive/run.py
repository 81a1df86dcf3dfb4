# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import logging
import os
import shlex
import shutil
import signal
import subprocess
import sys
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Callable, NoReturn, Optional

from archlive.log import ARG_DEBUG, die
from archlive.util import _FILE, PathString, unique

# subprocess only supports subscripting these at type checking time.
if TYPE_CHECKING:
    CompletedProcess = subprocess.CompletedProcess[str]
    Popen = subprocess.Popen[str]
else:
    CompletedProcess = subprocess.CompletedProcess
    Popen = subprocess.Popen

# Taken over from our own environment unless the caller sets them.
PASSTHROUGH_ENV = ("HOME", "TMPDIR", "GNUPGHOME", "SOURCE_DATE_EPOCH")

# These prompt for and report on passphrases themselves, a traceback on top only adds noise.
SELF_REPORTING_TOOLS = ("cryptsetup",)


def exit_status(e: BaseException) -> int:
    if isinstance(e, SystemExit):
        if e.code is None:
            return 0
        return e.code if isinstance(e.code, int) else 1

    if isinstance(e, subprocess.CalledProcessError):
        return e.returncode

    return 1


def wants_traceback(e: BaseException) -> bool:
    if isinstance(e, (SystemExit, KeyboardInterrupt)):
        return ARG_DEBUG.get()

    # run() logged the failure already.
    if isinstance(e, subprocess.CalledProcessError):
        return ARG_DEBUG.get() and bool(e.cmd) and os.fspath(e.cmd[0]) not in SELF_REPORTING_TOOLS

    return True


@contextlib.contextmanager
def uncaught_exception_handler(exit: Callable[[int], NoReturn] = sys.exit) -> Iterator[None]:
    """
    Turn whatever escapes main() into an exit status. Failed commands exit with the command's status.
    Interrupts and die() exit quietly unless --debug is given. Anything else is a bug and gets a traceback.
    """
    rc = 0

    try:
        yield
    except BaseException as e:
        rc = exit_status(e)

        if isinstance(e, KeyboardInterrupt) and not ARG_DEBUG.get():
            logging.error("Interrupted")

        if wants_traceback(e):
            sys.excepthook(type(e), e, e.__traceback__)
    finally:
        sys.stdout.flush()
        sys.stderr.flush()
        exit(rc)


def log_process_failure(cmdline: Sequence[str], returncode: int) -> None:
    if returncode == 127:
        logging.error(f"{cmdline[0]} not found.")
    elif returncode < 0:
        sig = signal.Signals(-returncode)

        if sig in (signal.SIGINT, signal.SIGTERM):
            logging.error(f"Interrupted by {sig.name} signal")
        else:
            logging.error(f'"{shlex.join(cmdline)}" was killed by {sig.name} signal.')
    else:
        logging.error(f'"{shlex.join(cmdline)}" returned non-zero exit code {returncode}.')


def command_env(env: Mapping[str, str]) -> dict[str, str]:
    """Commands run with a minimal environment and the C.UTF-8 locale so their output can be parsed."""
    result = {
        "PATH": os.environ["PATH"],
        "TERM": os.getenv("TERM", "vt220"),
        "HOME": "/",
    }
    result.update((k, os.environ[k]) for k in PASSTHROUGH_ENV if k in os.environ)
    result.update((k, v) for k, v in env.items() if k != "LANG" and not k.startswith("LC_"))
    result["LANG"] = "C.UTF-8"

    return result


def stdio(stdin: _FILE, stdout: _FILE, stderr: _FILE) -> dict[str, _FILE]:
    # Output of commands goes to stderr along with our own log unless the caller captures it.
    if stdout is None and stderr is None:
        stdout = sys.stderr

    return dict(stdin=subprocess.DEVNULL if stdin is None else stdin, stdout=stdout, stderr=stderr)


def start(cmd: list[str]) -> None:
    if ARG_DEBUG.get():
        logging.info(f"+ {shlex.join(cmd)}")


def finish(
    cmdline: Sequence[PathString],
    returncode: int,
    *,
    check: bool,
    log: bool,
    success_exit_status: Sequence[int],
) -> None:
    if not check or returncode in success_exit_status:
        return

    if log:
        log_process_failure([os.fspath(c) for c in cmdline], returncode)

    raise subprocess.CalledProcessError(returncode, cmdline)


def run(
    cmdline: Sequence[PathString],
    *,
    input: Optional[str] = None,
    stdin: _FILE = None,
    stdout: _FILE = None,
    stderr: _FILE = None,
    env: Mapping[str, str] = {},
    check: bool = True,
    success_exit_status: Sequence[int] = (0,),
    log: bool = True,
) -> CompletedProcess:
    """
    Run a command to completion. A failure is logged and raised as CalledProcessError unless check is
    false or the exit status is listed in success_exit_status.
    """
    cmd = [os.fspath(c) for c in cmdline]
    start(cmd)

    io = stdio(stdin, stdout, stderr)
    if input is not None:
        assert stdin is None, "stdin and input are mutually exclusive"
        del io["stdin"]

    try:
        result = subprocess.run(cmd, input=input, text=True, env=command_env(env), **io)  # type: ignore
    except FileNotFoundError as e:
        die(f"{e.filename} not found.", hint="Install the package providing it")

    finish(cmdline, result.returncode, check=check, log=log, success_exit_status=success_exit_status)

    return CompletedProcess(cmdline, result.returncode, result.stdout, result.stderr)


@contextlib.contextmanager
def spawn(
    cmdline: Sequence[PathString],
    *,
    stdin: _FILE = None,
    stdout: _FILE = None,
    stderr: _FILE = None,
    env: Mapping[str, str] = {},
    check: bool = True,
    success_exit_status: Sequence[int] = (0,),
    log: bool = True,
) -> Iterator[Popen]:
    """Like run() but yields the running process. The command is waited for when the block exits."""
    cmd = [os.fspath(c) for c in cmdline]
    start(cmd)

    try:
        proc = subprocess.Popen(cmd, text=True, env=command_env(env), **stdio(stdin, stdout, stderr))
    except FileNotFoundError as e:
        die(f"{e.filename} not found.", hint="Install the package providing it")

    with proc:
        try:
            yield proc
        except KeyboardInterrupt:
            proc.send_signal(signal.SIGINT)
            raise
        except BaseException:
            proc.terminate()
            raise
        finally:
            proc.wait()

    finish(cmdline, proc.returncode, check=check, log=log, success_exit_status=success_exit_status)


def search_path(extra: Sequence[Path] = ()) -> str:
    dirs = [os.fspath(p) for p in extra]
    dirs += os.environ.get("PATH", "").split(os.pathsep)
    # Tools like sfdisk and mkfs live in sbin, which is not always in $PATH for non-root users.
    dirs += ["/usr/bin", "/usr/sbin"]

    return os.pathsep.join(unique([d for d in dirs if d]))


def find_binary(*names: PathString, extra: Sequence[Path] = ()) -> Optional[Path]:
    path = search_path(extra)

    for name in names:
        if found := shutil.which(os.fspath(name), path=path):
            return Path(found)

    return None

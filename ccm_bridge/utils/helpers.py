import argparse
import logging
import shlex
import socket
import subprocess
import typing as tp

from ccm_bridge import exceptions
from ccm_bridge.utils import types as ttypes

LOGGER = logging.getLogger(__name__)


def run_command(command: ttypes.ArgvType, *, workdir: ttypes.FileType = "") -> str:
    """Run command and return its combined stdout and stderr.

    The arguments are passed to the process as discrete tokens, no shell is involved.
    Non-zero return code is not considered a failure here, the output needs to be interpreted
    by the caller.
    """
    cmd = [str(c) for c in command]
    if not cmd:
        msg = "No command to run."
        raise ValueError(msg)
    cmd_str = shlex.join(cmd)

    LOGGER.debug("Running `%s`", cmd_str)

    try:
        with subprocess.Popen(
            cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, cwd=workdir or None
        ) as p:
            stdout, __ = p.communicate()
            retcode = p.returncode
    except OSError as exc:
        msg = f"An error occurred while running `{cmd_str}`: {exc}"
        raise exceptions.TransportError(msg) from exc

    LOGGER.debug("Command `%s` finished with return code %s", cmd_str, retcode)
    return stdout.decode(errors="replace")


def join_flag(flag: str, contents: tp.Iterable) -> list[str]:
    """Join flag with every item of the sequence using `=`.

    >>> join_flag("--jvm_arg", ["-Xmx1G", "-Dfoo=bar"])
    ['--jvm_arg=-Xmx1G', '--jvm_arg=-Dfoo=bar']
    """
    return [f"{flag}={x}" for x in contents]


def as_list(value: ttypes.JvmArgsType) -> list[str]:
    """Return list of arguments from a single argument, a sequence of arguments or `None`."""
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value if v]


def check_non_negative_int_arg(value: str) -> int:
    """Check that the value passed as argparse parameter is a non-negative integer."""
    try:
        num = int(value)
    except ValueError as exc:
        msg = f"check_non_negative_int_arg: '{value}' is not an integer"
        raise argparse.ArgumentTypeError(msg) from exc
    if num < 0:
        msg = f"check_non_negative_int_arg: '{value}' is negative"
        raise argparse.ArgumentTypeError(msg)
    return num


def is_port_open(host: str, port: int, *, timeout: float = 1.0) -> bool:
    """Check that a TCP connection to the address can be established."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        try:
            return sock.connect_ex((host, port)) == 0
        except OSError:
            return False

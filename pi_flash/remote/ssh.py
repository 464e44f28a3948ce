"""SSH transport to a running device.

This module handles:
- Building ssh/scp command vectors with connect-timeout and batch mode
- Reachability checks (ping + ``echo ok``)
- Querying uptime, free space and the boot device of the remote system

Remote commands are given as argument lists and quoted with shlex before
they reach the remote shell, so hostnames, paths and other values are
never interpreted by it.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from pi_flash.commands import run_capture, run_command
from pi_flash.flash.device import partition_to_whole_device

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 5
# Transfers and long-running remote commands get a more patient connect
TRANSFER_CONNECT_TIMEOUT = 10

DEFAULT_BOOT_DEVICE = "/dev/sda"


@dataclass(frozen=True)
class RemoteTarget:
    """A device reachable over SSH.

    Attributes:
        user: Remote login.
        host: Hostname or IP address.
        connect_timeout: ssh ConnectTimeout in seconds.
    """

    user: str
    host: str
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT

    @property
    def address(self) -> str:
        return f"{self.user}@{self.host}"

    def __str__(self) -> str:
        return self.address


def ssh_options(connect_timeout: int) -> list[str]:
    return ["-o", f"ConnectTimeout={connect_timeout}", "-o", "BatchMode=yes"]


def ssh_command(
    target: RemoteTarget,
    remote_cmd: Sequence[str],
    *,
    connect_timeout: int | None = None,
) -> list[str]:
    """Build the local argv that runs remote_cmd on target."""
    timeout = connect_timeout or target.connect_timeout
    return ["ssh", *ssh_options(timeout), target.address, shlex.join(remote_cmd)]


def ssh(
    target: RemoteTarget,
    remote_cmd: Sequence[str],
    *,
    timeout: float | None = None,
) -> str | None:
    """Run a remote command and capture its trimmed output.

    Returns:
        Output, or None if the connection or the command failed.
    """
    return run_capture(ssh_command(target, remote_cmd), timeout=timeout)


def ssh_run(
    target: RemoteTarget,
    remote_cmd: Sequence[str],
    *,
    input_text: str | None = None,
    capture: bool = False,
) -> subprocess.CompletedProcess[str]:
    """Run a remote command, raising on failure.

    Output is passed through to the terminal unless capture is set, so
    remote progress stays visible.

    Raises:
        ExternalCommandFailure: ssh failed or the remote command exited non-zero.
    """
    cmd = ssh_command(target, remote_cmd, connect_timeout=TRANSFER_CONNECT_TIMEOUT)
    return run_command(cmd, capture=capture or input_text is not None, input_text=input_text)


def scp_command(local_path: str, target: RemoteTarget, remote_path: str) -> list[str]:
    return [
        "scp",
        *ssh_options(TRANSFER_CONNECT_TIMEOUT),
        local_path,
        f"{target.address}:{remote_path}",
    ]


def scp(local_path: str, target: RemoteTarget, remote_path: str) -> None:
    """Copy a local file to the target.

    Raises:
        ExternalCommandFailure: Transfer failed.
    """
    run_command(scp_command(local_path, target, remote_path), capture=False)


def is_reachable(target: RemoteTarget) -> bool:
    """Check whether SSH answers with a trivial command."""
    return ssh(target, ["echo", "ok"]) == "ok"


def check_remote_reachable(target: RemoteTarget) -> bool:
    """Check that the host answers ping and SSH."""
    logger.info("Checking if %s is reachable...", target.host)
    if run_capture(["ping", "-c", "1", "-W", "2", target.host]) is None:
        return False
    return is_reachable(target)


def get_remote_uptime(target: RemoteTarget) -> float | None:
    """Read the remote uptime in seconds from /proc/uptime.

    Uptime does not depend on an RTC or NTP sync, unlike boot timestamps.

    Returns:
        Uptime, or None if it could not be read.
    """
    output = ssh(target, ["cat", "/proc/uptime"])
    if not output:
        return None
    try:
        return float(output.split()[0])
    except (IndexError, ValueError):
        logger.debug("Unparseable /proc/uptime from %s: %r", target, output)
        return None


def get_remote_tmp_space(target: RemoteTarget, remote_path: str = "/tmp") -> int:
    """Free space in bytes of the filesystem holding remote_path.

    ``df -k`` keeps this working on BusyBox systems.

    Returns:
        Available bytes, or 0 if unknown.
    """
    output = ssh(target, ["df", "-k", remote_path])
    if not output:
        return 0
    last = output.splitlines()[-1].split()
    try:
        return int(last[3]) * 1024
    except (IndexError, ValueError):
        logger.debug("Unparseable df output from %s: %r", target, output)
        return 0


def get_remote_boot_device(
    target: RemoteTarget, fallback: str = DEFAULT_BOOT_DEVICE
) -> str:
    """Detect the whole device the remote root filesystem is mounted from."""
    output = ssh(target, ["mount"])
    if output:
        for line in output.splitlines():
            parts = line.split()
            if len(parts) >= 3 and parts[1] == "on" and parts[2] == "/":
                return partition_to_whole_device(parts[0])
    return fallback


__all__ = [
    "DEFAULT_BOOT_DEVICE",
    "DEFAULT_CONNECT_TIMEOUT",
    "TRANSFER_CONNECT_TIMEOUT",
    "RemoteTarget",
    "check_remote_reachable",
    "get_remote_boot_device",
    "get_remote_tmp_space",
    "get_remote_uptime",
    "is_reachable",
    "scp",
    "scp_command",
    "ssh",
    "ssh_command",
    "ssh_run",
]

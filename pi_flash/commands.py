"""External command execution.

This module handles:
- Running system tools (mount, losetup, rsync, parted, ssh, ...) with
  discrete argument vectors, never composed shell strings
- Prefixing privileged commands with sudo when not already root
- Streaming data into a command's stdin (e.g., decompressed image into dd)
- Translating failures into ExternalCommandFailure
"""

from __future__ import annotations

import contextlib
import logging
import os
import shlex
import signal
import subprocess
from collections.abc import Sequence
from typing import BinaryIO

from pi_flash.errors import ExternalCommandFailure

logger = logging.getLogger(__name__)

# Chunk size for streaming into a subprocess (4 MiB, matches dd bs=4M)
STREAM_CHUNK_SIZE = 4 * 1024 * 1024


def privileged(cmd: Sequence[str]) -> list[str]:
    """Return cmd prefixed with sudo unless already running as root."""
    if os.geteuid() == 0:
        return list(cmd)
    return ["sudo", *cmd]


def render(cmd: Sequence[str]) -> str:
    """Render a command as a copy-pasteable shell line."""
    return shlex.join(cmd)


def _ignore_sigint() -> None:
    signal.signal(signal.SIGINT, signal.SIG_IGN)


def run_command(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture: bool = True,
    input_text: str | None = None,
    timeout: float | None = None,
    ignore_interrupt: bool = False,
) -> subprocess.CompletedProcess[str]:
    """Run a command.

    Args:
        cmd: Command as a list of arguments.
        check: Raise ExternalCommandFailure on non-zero exit.
        capture: Capture stdout/stderr; otherwise inherit the terminal.
        input_text: Optional text passed on stdin.
        timeout: Optional timeout in seconds.
        ignore_interrupt: Make the child ignore SIGINT so a terminal
            interrupt cannot kill it mid-operation.

    Returns:
        The completed process.

    Raises:
        ExternalCommandFailure: Command could not start, timed out, or
            (with check=True) exited non-zero.
    """
    cmd_str = render(cmd)
    logger.debug("Running command: %s", cmd_str)

    try:
        result = subprocess.run(
            list(cmd),
            capture_output=capture,
            text=True,
            input=input_text,
            timeout=timeout,
            check=False,
            preexec_fn=_ignore_sigint if ignore_interrupt else None,
        )
    except subprocess.TimeoutExpired as e:
        logger.debug("Command timed out after %ss: %s", timeout, cmd_str)
        raise ExternalCommandFailure(cmd_str, None, f"timed out after {timeout}s") from e
    except OSError as e:
        logger.debug("Failed to execute %s: %s", cmd_str, e)
        raise ExternalCommandFailure(cmd_str, None, str(e)) from e

    if result.returncode != 0:
        logger.debug("Command exited with %d: %s", result.returncode, cmd_str)
        if check:
            raise ExternalCommandFailure(cmd_str, result.returncode, result.stderr or "")

    return result


def run_capture(cmd: Sequence[str], *, timeout: float | None = None) -> str | None:
    """Run a command and return its trimmed stdout, or None on any failure."""
    try:
        result = run_command(cmd, timeout=timeout)
    except ExternalCommandFailure:
        return None
    return result.stdout.strip()


def stream_into(
    cmd: Sequence[str],
    source: BinaryIO,
    *,
    ignore_interrupt: bool = False,
    chunk_size: int = STREAM_CHUNK_SIZE,
) -> int:
    """Stream a binary source into a command's stdin.

    Args:
        cmd: Command that reads stdin (e.g., dd of=/dev/sdX).
        source: Readable binary file object.
        ignore_interrupt: Make the child ignore SIGINT.
        chunk_size: Bytes per write.

    Returns:
        Number of bytes streamed.

    Raises:
        ExternalCommandFailure: Command failed to start or exited non-zero.
    """
    cmd_str = render(cmd)
    logger.debug("Streaming into command: %s", cmd_str)

    try:
        proc = subprocess.Popen(
            list(cmd),
            stdin=subprocess.PIPE,
            preexec_fn=_ignore_sigint if ignore_interrupt else None,
        )
    except OSError as e:
        raise ExternalCommandFailure(cmd_str, None, str(e)) from e

    stdin = proc.stdin
    if stdin is None:
        proc.kill()
        proc.wait()
        raise ExternalCommandFailure(cmd_str, None, "no stdin pipe")

    total = 0
    try:
        while chunk := source.read(chunk_size):
            stdin.write(chunk)
            total += len(chunk)
    except BrokenPipeError:
        logger.debug("Command closed stdin early: %s", cmd_str)
    finally:
        with contextlib.suppress(BrokenPipeError):
            stdin.close()
        returncode = proc.wait()

    if returncode != 0:
        raise ExternalCommandFailure(cmd_str, returncode)

    return total


__all__ = [
    "STREAM_CHUNK_SIZE",
    "privileged",
    "render",
    "run_capture",
    "run_command",
    "stream_into",
]

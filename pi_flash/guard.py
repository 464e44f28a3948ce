"""Resource tracking and interrupt handling.

This module handles:
- Tracking the transient resources (loop device, mount point, temp
  directory) an in-flight operation has acquired
- A two-state interrupt guard: in NORMAL state Ctrl+C cleans up and exits
  with status 130; in CRITICAL state (raw device write) Ctrl+C is refused
- Best-effort cleanup where each step logs and swallows its own failure

The guard owns a ResourceSet; acquiring operations receive the guard and
register/unregister what they acquire. There is no module-level state.
"""

from __future__ import annotations

import logging
import shutil
import signal
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from types import FrameType
from typing import Any

from rich.console import Console

from pi_flash.commands import privileged, run_command
from pi_flash.errors import ExternalCommandFailure
from pi_flash.types import GuardState, ResourceKind

logger = logging.getLogger(__name__)

# Conventional exit status for a process terminated by SIGINT
INTERRUPTED_EXIT_CODE = 130


class ResourceAlreadyTrackedError(Exception):
    """A second resource of the same kind was registered without release."""

    def __init__(self, kind: ResourceKind, current: str, new: str) -> None:
        super().__init__(
            f"{kind.value} already tracked ({current}); "
            f"unregister it before tracking {new}"
        )
        self.kind = kind
        self.current = current
        self.new = new


class ResourceSet:
    """At most one tracked resource of each kind.

    register() and unregister() are the only mutators.
    """

    def __init__(self) -> None:
        self._resources: dict[ResourceKind, str | None] = {
            kind: None for kind in ResourceKind
        }

    def register(self, kind: ResourceKind | str, value: str) -> None:
        """Track a resource.

        Raises:
            ValueError: Unknown resource kind.
            ResourceAlreadyTrackedError: A resource of this kind is tracked.
        """
        kind = ResourceKind(kind)
        current = self._resources[kind]
        if current is not None:
            raise ResourceAlreadyTrackedError(kind, current, value)
        self._resources[kind] = value
        logger.debug("Tracking %s: %s", kind.value, value)

    def unregister(self, kind: ResourceKind | str) -> None:
        """Stop tracking the resource of this kind (no-op if none)."""
        kind = ResourceKind(kind)
        if self._resources[kind] is not None:
            logger.debug("Released %s: %s", kind.value, self._resources[kind])
        self._resources[kind] = None

    def get(self, kind: ResourceKind | str) -> str | None:
        return self._resources[ResourceKind(kind)]

    def is_empty(self) -> bool:
        return all(value is None for value in self._resources.values())


class SignalGuard:
    """Gate interrupt handling around destructive operations.

    Attributes:
        resources: The ResourceSet owned by the current operation.
        state: NORMAL or CRITICAL; the single authoritative flag read by
            the interrupt handler.
    """

    def __init__(
        self,
        console: Console | None = None,
        exit_func: Callable[[int], Any] = sys.exit,
    ) -> None:
        self.resources = ResourceSet()
        self.state = GuardState.NORMAL
        self._console = console or Console(stderr=True)
        self._exit = exit_func
        self._previous_handler: Any = None
        self._installed = False

    # Critical section

    def enter_critical_section(self) -> None:
        self.state = GuardState.CRITICAL

    def exit_critical_section(self) -> None:
        self.state = GuardState.NORMAL

    def in_critical_section(self) -> bool:
        return self.state is GuardState.CRITICAL

    @contextmanager
    def critical_section(self) -> Iterator[None]:
        """Refuse interrupts for the duration of the block.

        The exit always runs, including when the block raises.
        """
        self.enter_critical_section()
        try:
            yield
        finally:
            self.exit_critical_section()

    # Cleanup

    def _best_effort(self, description: str, action: Callable[[], object]) -> bool:
        """Run one cleanup step; log and swallow its failure."""
        try:
            action()
            return True
        except (ExternalCommandFailure, OSError) as e:
            logger.warning("Cleanup step failed (%s): %s", description, e)
            return False

    def cleanup(self, exit_code: int = INTERRUPTED_EXIT_CODE) -> bool:
        """Release every tracked resource, best effort.

        Unmounts the tracked mount, detaches the tracked loop device and
        removes the tracked temp directory, in that order. Refuses to run
        while in a critical section.

        Args:
            exit_code: Exit status the caller intends to use (logged only).

        Returns:
            True if every step succeeded (or there was nothing to do).
        """
        if self.in_critical_section():
            logger.warning("Cannot clean up during a critical section")
            return False

        logger.debug("Cleaning up resources (exit code %d)", exit_code)
        ok = True

        mount = self.resources.get(ResourceKind.MOUNT)
        if mount:
            logger.info("Unmounting %s...", mount)
            ok &= self._best_effort(
                f"umount {mount}",
                lambda: run_command(privileged(["umount", mount])),
            )
            self.resources.unregister(ResourceKind.MOUNT)

        loop = self.resources.get(ResourceKind.LOOP)
        if loop:
            logger.info("Detaching %s...", loop)
            ok &= self._best_effort(
                f"losetup -d {loop}",
                lambda: run_command(privileged(["losetup", "-d", loop])),
            )
            self.resources.unregister(ResourceKind.LOOP)

        tempdir = self.resources.get(ResourceKind.TEMPDIR)
        if tempdir:
            logger.info("Removing temp directory %s...", tempdir)
            ok &= self._best_effort(
                f"rm -rf {tempdir}",
                lambda: shutil.rmtree(tempdir),
            )
            self.resources.unregister(ResourceKind.TEMPDIR)

        return ok

    # Signal handling

    def handle_interrupt(
        self, signum: int | None = None, frame: FrameType | None = None
    ) -> None:
        """SIGINT handler.

        In CRITICAL state, prints a refusal notice and returns so the
        operation keeps running. Otherwise cleans up and exits with 130.
        """
        if self.in_critical_section():
            self._console.print()
            self._console.print(
                "[bold red]CANNOT INTERRUPT - CRITICAL OPERATION IN PROGRESS![/bold red]"
            )
            self._console.print(
                "[bold red]Ctrl+C disabled to prevent corruption. "
                "Wait for the operation to complete...[/bold red]"
            )
            self._console.print()
            return

        self._console.print()
        self._console.print("[yellow]Ctrl+C detected - cleaning up...[/yellow]")
        if self.cleanup(INTERRUPTED_EXIT_CODE):
            self._console.print("[green]Cleanup complete.[/green]")
        else:
            self._console.print("[red]Cleanup incomplete, see log.[/red]")
        self._exit(INTERRUPTED_EXIT_CODE)

    def install(self) -> None:
        """Install the SIGINT handler.

        Raises:
            RuntimeError: Handler already installed.
        """
        if self._installed:
            raise RuntimeError("Signal handlers already installed")
        self._previous_handler = signal.signal(signal.SIGINT, self.handle_interrupt)
        self._installed = True

    def uninstall(self) -> None:
        """Restore the previous SIGINT handler."""
        if self._installed:
            signal.signal(signal.SIGINT, self._previous_handler)
            self._previous_handler = None
            self._installed = False

    def __enter__(self) -> SignalGuard:
        self.install()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.uninstall()


__all__ = [
    "INTERRUPTED_EXIT_CODE",
    "ResourceAlreadyTrackedError",
    "ResourceSet",
    "SignalGuard",
]

"""Writer module for SD card / USB flashing.

This module handles the destructive write of a disk image to a device:
- Choosing bmaptool (block-map aware) or a dd fallback
- The typed confirmation gate
- Unmounting the device's partitions first
- Running the write inside the guard's critical section, then sync

Safety rules:
- The confirmation must equal the device path exactly
- Nothing touches the device before confirmation succeeds
- A dry run describes the same plan and executes nothing
- The write subprocess ignores SIGINT and the guard refuses interrupts
  until it finishes
"""

import gzip
import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from pi_flash.commands import privileged, render, run_command, stream_into
from pi_flash.errors import ConfirmationMismatch, ImageNotFoundError
from pi_flash.flash.device import unmount_commands, unmount_device
from pi_flash.flash.locator import bmap_path_for
from pi_flash.guard import SignalGuard
from pi_flash.types import WriteMethod

logger = logging.getLogger(__name__)

DD_BLOCK_SIZE = "4M"


@dataclass
class WritePlan:
    """Everything needed to write an image, decided before any side effect.

    Attributes:
        image: Image file (.wic.gz or raw .wic).
        device: Target whole-device path.
        method: bmaptool or dd.
        bmap_path: Block map used by bmaptool (None for dd).
        unmount: Commands unmounting the device's mounted partitions.
        write: The write command. For dd this is the dd side of the
            pipeline; the decompressed image is streamed into its stdin.
    """

    image: Path
    device: str
    method: WriteMethod
    bmap_path: Path | None = None
    unmount: list[list[str]] = field(default_factory=list)
    write: list[str] = field(default_factory=list)

    @property
    def compressed(self) -> bool:
        return self.image.name.endswith(".gz")

    def render_commands(self) -> list[str]:
        """Render the plan as shell lines, identical for dry and real runs."""
        lines = [render(cmd) for cmd in self.unmount]
        if self.method == WriteMethod.DD:
            reader = ["gunzip", "-c"] if self.compressed else ["cat"]
            lines.append(f"{render([*reader, str(self.image)])} | {render(self.write)}")
        else:
            lines.append(render(self.write))
        lines.append("sync")
        return lines

    def describe(self) -> list[str]:
        method = "bmaptool (fast)" if self.method == WriteMethod.BMAPTOOL else "dd (slower)"
        return [f"Image: {self.image}", f"Target: {self.device}", f"Method: {method}"]


@dataclass
class WriteResult:
    """Result of a write operation.

    Attributes:
        device: Device written.
        method: Method used.
        bytes_written: Bytes streamed into dd (None for bmaptool or dry run).
        dry_run: Nothing was executed.
    """

    device: str
    method: WriteMethod
    bytes_written: int | None = None
    dry_run: bool = False


def has_bmaptool() -> bool:
    """Check if bmaptool is installed."""
    return shutil.which("bmaptool") is not None


def plan_write(image: Path, device: str, bmap_path: Path | None = None) -> WritePlan:
    """Plan the write of an image to a device.

    bmaptool is chosen only when it is installed and the block map exists;
    otherwise the image is written with dd.

    Args:
        image: Image file.
        device: Target device.
        bmap_path: Block map; derived from the image name if omitted.

    Raises:
        ImageNotFoundError: Image file missing.
    """
    if not image.is_file():
        raise ImageNotFoundError(str(image))

    if bmap_path is None:
        bmap_path = bmap_path_for(image)

    unmount = unmount_commands(device)
    if has_bmaptool() and bmap_path.is_file():
        return WritePlan(
            image=image,
            device=device,
            method=WriteMethod.BMAPTOOL,
            bmap_path=bmap_path,
            unmount=unmount,
            write=privileged(["bmaptool", "copy", "--bmap", str(bmap_path), str(image), device]),
        )

    return WritePlan(
        image=image,
        device=device,
        method=WriteMethod.DD,
        unmount=unmount,
        write=privileged(
            [
                "dd",
                f"of={device}",
                f"bs={DD_BLOCK_SIZE}",
                "status=progress",
                "conv=fsync",
            ]
        ),
    )


def confirm_device(device: str, typed: str) -> None:
    """Check a typed confirmation against the device path.

    Exact equality only: no trimming and no case folding.

    Raises:
        ConfirmationMismatch: typed differs from device.
    """
    if typed != device:
        raise ConfirmationMismatch(device, typed)


def _open_image(plan: WritePlan) -> BinaryIO:
    if plan.compressed:
        return gzip.open(plan.image, "rb")  # type: ignore[return-value]
    return plan.image.open("rb")


def write_image(
    plan: WritePlan,
    *,
    guard: SignalGuard,
    confirm: Callable[[str], str] | None = None,
    skip_confirmation: bool = False,
    dry_run: bool = False,
) -> WriteResult:
    """Execute a write plan.

    Args:
        plan: Plan from plan_write().
        guard: Signal guard; the write runs in its critical section.
        confirm: Prompt returning the user's typed confirmation, given the
            device path.
        skip_confirmation: Skip the typed confirmation.
        dry_run: Log the plan and return without executing anything.

    Returns:
        WriteResult.

    Raises:
        ConfirmationMismatch: Confirmation did not match.
        ExternalCommandFailure: The write or sync failed.
    """
    for line in plan.describe():
        logger.info(line)

    if dry_run:
        logger.info("Dry run, would execute:")
        for line in plan.render_commands():
            logger.info("  %s", line)
        return WriteResult(device=plan.device, method=plan.method, dry_run=True)

    if not skip_confirmation:
        if confirm is None:
            raise ValueError("A confirmation prompt is required unless skip_confirmation is set")
        confirm_device(plan.device, confirm(plan.device))

    logger.info("Unmounting any mounted partitions...")
    unmount_device(plan.device)

    bytes_written: int | None = None
    with guard.critical_section():
        logger.info("Running: %s", plan.render_commands()[-2])
        if plan.method == WriteMethod.BMAPTOOL:
            run_command(plan.write, capture=False, ignore_interrupt=True)
        else:
            with _open_image(plan) as source:
                bytes_written = stream_into(plan.write, source, ignore_interrupt=True)

        logger.info("Syncing...")
        run_command(["sync"], capture=False, ignore_interrupt=True)

    logger.info("Wrote %s to %s", plan.image.name, plan.device)
    return WriteResult(device=plan.device, method=plan.method, bytes_written=bytes_written)


__all__ = [
    "DD_BLOCK_SIZE",
    "WritePlan",
    "WriteResult",
    "confirm_device",
    "has_bmaptool",
    "plan_write",
    "write_image",
]

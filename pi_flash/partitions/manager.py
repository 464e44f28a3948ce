"""Partition operations on a flashed (or about to be flashed) device.

This module handles:
- Scoped mounting of a partition on a fresh temporary mount point
- Backup and restore of the persistent data partition (index 4)
- Growing the data partition and its filesystem
- Writing the hostname into the boot partition (index 1)

Every mount is matched by an unmount on success, error and early return.
Only the backup treats failure as non-fatal.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from pi_flash.commands import privileged, run_command
from pi_flash.errors import ExternalCommandFailure, MountFailure, PiFlashError
from pi_flash.flash.device import (
    BOOT_PARTITION,
    DATA_PARTITION,
    is_block_device,
    partition_path,
)
from pi_flash.types import BackupResult, BackupStatus, GrowResult, ResourceKind

if TYPE_CHECKING:
    from pi_flash.guard import SignalGuard

logger = logging.getLogger(__name__)

# Prefix for temporary directories created by pi_flash
TEMP_PREFIX = "pi-flash-"

LOST_AND_FOUND = "lost+found"
HOSTNAME_FILE = "hostname.txt"

# e2fsck exit codes: 1 = errors corrected, 2 = corrected, reboot recommended
E2FSCK_OK_CODES = {0, 1, 2}

# Resize tool output meaning the partition already has its final size
NO_CHANGE_MARKERS = ("NOCHANGE", "nothing to do")

# RFC 1123 hostname label
_HOSTNAME_PATTERN = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


def has_data_partition(device: str) -> bool:
    """Check whether the device has a data partition block device."""
    return is_block_device(partition_path(device, DATA_PARTITION))


def _unmount(mount_point: Path) -> None:
    """Unmount; log failures instead of raising."""
    try:
        run_command(privileged(["umount", str(mount_point)]))
    except ExternalCommandFailure as e:
        logger.warning("Cleanup warning: %s", e.message)


@contextmanager
def mounted_partition(
    partition: str,
    purpose: str,
    *,
    guard: SignalGuard | None = None,
) -> Iterator[Path]:
    """Mount a partition on a fresh temporary directory for the block.

    The partition is always unmounted and the mount point removed on exit,
    whether the block returns, raises, or exits early.

    Args:
        partition: Partition device path.
        purpose: Short label used in the mount point name.
        guard: Optional guard; the mount is registered while active.

    Yields:
        The mount point.

    Raises:
        MountFailure: The mount command failed.
    """
    mount_point = Path(tempfile.mkdtemp(prefix=f"{TEMP_PREFIX}{purpose}-"))
    try:
        logger.info("Mounting %s...", partition)
        try:
            run_command(privileged(["mount", partition, str(mount_point)]))
        except ExternalCommandFailure as e:
            raise MountFailure(partition, str(mount_point), e.stderr.strip()) from e

        if guard is not None:
            guard.resources.register(ResourceKind.MOUNT, str(mount_point))
        try:
            yield mount_point
        finally:
            logger.debug("Unmounting %s", mount_point)
            _unmount(mount_point)
            if guard is not None:
                guard.resources.unregister(ResourceKind.MOUNT)
    finally:
        try:
            mount_point.rmdir()
        except OSError as e:
            logger.warning("Could not remove mount point %s: %s", mount_point, e)


def cleanup_backup(backup_dir: Path | str | None) -> None:
    """Remove a backup directory, best effort.

    Backups are written by a privileged rsync, so removal is privileged too.
    """
    if not backup_dir:
        return
    try:
        run_command(privileged(["rm", "-rf", str(backup_dir)]))
    except ExternalCommandFailure as e:
        logger.warning("Failed to remove backup %s: %s", backup_dir, e.message)


def backup_data_partition(
    device: str,
    *,
    guard: SignalGuard | None = None,
) -> BackupResult:
    """Back up the data partition to a fresh temporary directory.

    Ownership and permissions are preserved with rsync --fake-super, which
    stores them as extended attributes. A backup holding only lost+found is
    discarded and reported as EMPTY. Any failure is reported as FAILED and
    never raised: proceeding without a backup is preferred over blocking.

    Args:
        device: Whole-device path.
        guard: Optional guard for the temporary mount.

    Returns:
        BackupResult describing the outcome.
    """
    data_partition = partition_path(device, DATA_PARTITION)
    # Not registered with the guard: the backup must outlive an interrupt
    backup_dir = Path(tempfile.mkdtemp(prefix=f"{TEMP_PREFIX}data-backup-"))

    logger.info("Backing up data partition from %s...", data_partition)
    try:
        with mounted_partition(data_partition, "data-mount", guard=guard) as mount_point:
            run_command(
                privileged(
                    ["rsync", "-a", "--fake-super", f"{mount_point}/", f"{backup_dir}/"]
                )
            )
        # rsync copies the root directory's ownership; take it back so we can list it
        run_command(
            privileged(["chown", f"{os.getuid()}:{os.getgid()}", str(backup_dir)])
        )
        items = [name for name in os.listdir(backup_dir) if name != LOST_AND_FOUND]
    except (PiFlashError, OSError) as e:
        message = e.message if isinstance(e, PiFlashError) else str(e)
        logger.warning("Backup failed: %s", message)
        cleanup_backup(backup_dir)
        return BackupResult(status=BackupStatus.FAILED, message=message)

    if not items:
        logger.info("Data partition is empty (nothing to back up)")
        cleanup_backup(backup_dir)
        return BackupResult(status=BackupStatus.EMPTY)

    logger.info("Backed up %d items from data partition", len(items))
    return BackupResult(status=BackupStatus.OK, path=backup_dir, item_count=len(items))


def restore_data_partition(
    device: str,
    backup_dir: Path,
    *,
    dry_run: bool = False,
    guard: SignalGuard | None = None,
) -> bool:
    """Restore a backup into the data partition of a freshly flashed device.

    Failure is reported but does not roll back the flash.

    Returns:
        True if the data was restored.
    """
    data_partition = partition_path(device, DATA_PARTITION)

    if dry_run:
        logger.info("Would mount %s", data_partition)
        logger.info("Would restore data from %s", backup_dir)
        logger.info("Would unmount")
        return True

    logger.info("Restoring data to new image...")
    try:
        with mounted_partition(data_partition, "data-restore", guard=guard) as mount_point:
            logger.info("Copying backed up data...")
            run_command(
                privileged(
                    ["rsync", "-a", "--fake-super", f"{backup_dir}/", f"{mount_point}/"]
                )
            )
    except PiFlashError as e:
        logger.warning("Restore failed: %s", e.message)
        return False

    logger.info("Data restored")
    return True


def _read_layout(device: str) -> tuple[int, int, int]:
    """Read (disk sectors, sector size, data partition end sector) via parted."""
    result = run_command(privileged(["parted", "-s", "-m", device, "unit", "s", "print"]))
    disk_sectors = sector_size = data_end = -1
    for line in result.stdout.splitlines():
        fields = line.rstrip(";").split(":")
        if fields[0] == device and len(fields) >= 4:
            disk_sectors = int(fields[1].rstrip("s"))
            sector_size = int(fields[3])
        elif fields[0] == str(DATA_PARTITION) and len(fields) >= 3:
            data_end = int(fields[2].rstrip("s"))

    if disk_sectors < 0 or data_end < 0:
        raise ExternalCommandFailure(
            f"parted print {device}", 0, "could not find disk size or data partition"
        )
    return disk_sectors, sector_size, data_end


def _data_partition_at_target(device: str, free_percent: int) -> bool:
    disk_sectors, sector_size, data_end = _read_layout(device)
    target_end = disk_sectors * (100 - free_percent) // 100 - 1
    # Partition ends are aligned to 1 MiB
    tolerance = max((1024 * 1024) // max(sector_size, 1), 1)
    return data_end >= target_end - tolerance


def grow_data_partition(device: str, free_percent: int = 10) -> GrowResult:
    """Grow the data partition to (100 - free_percent)% of the disk.

    A partition already at its target is success with changed=False, also
    when parted exits non-zero because there is nothing to resize. The
    filesystem is always force-checked before growing; e2fsck's "errors
    fixed" codes count as success.

    Args:
        device: Whole-device path.
        free_percent: Percent of the disk left unallocated.

    Returns:
        GrowResult.

    Raises:
        ValueError: free_percent outside 0-90.
        ExternalCommandFailure: A tool failed for a reason other than
            "no change needed".
    """
    if not 0 <= free_percent <= 90:
        raise ValueError(f"free_percent must be 0-90, got {free_percent}")

    data_partition = partition_path(device, DATA_PARTITION)
    target = 100 - free_percent
    changed = False

    if _data_partition_at_target(device, free_percent):
        logger.info("%s already spans %d%% of %s (no change)", data_partition, target, device)
    else:
        logger.info("Growing %s to %d%% of %s...", data_partition, target, device)
        try:
            run_command(
                privileged(
                    ["parted", "-s", device, "resizepart", str(DATA_PARTITION), f"{target}%"]
                )
            )
            changed = True
        except ExternalCommandFailure as e:
            no_change = any(marker in e.stderr for marker in NO_CHANGE_MARKERS)
            if not no_change and not _data_partition_at_target(device, free_percent):
                raise
            logger.info("parted reported no resize needed for %s", data_partition)

    logger.info("Checking filesystem on %s...", data_partition)
    fsck = run_command(privileged(["e2fsck", "-f", "-y", data_partition]), check=False)
    if fsck.returncode not in E2FSCK_OK_CODES:
        raise ExternalCommandFailure(
            f"e2fsck -f -y {data_partition}", fsck.returncode, fsck.stderr or ""
        )
    if fsck.returncode:
        logger.info("e2fsck corrected errors on %s (exit %d)", data_partition, fsck.returncode)

    logger.info("Resizing filesystem on %s...", data_partition)
    run_command(privileged(["resize2fs", data_partition]))

    message = (
        f"{data_partition} grown to {target}% of {device}"
        if changed
        else f"{data_partition} already at {target}% of {device}"
    )
    return GrowResult(partition=data_partition, changed=changed, message=message)


def validate_hostname(hostname: str) -> str:
    """Validate a hostname label.

    Raises:
        ValueError: Not a valid RFC 1123 hostname label.
    """
    if not _HOSTNAME_PATTERN.match(hostname):
        raise ValueError(f"Invalid hostname: {hostname!r}")
    return hostname


def set_hostname(
    device: str,
    hostname: str,
    *,
    dry_run: bool = False,
    guard: SignalGuard | None = None,
) -> None:
    """Write the hostname into hostname.txt on the boot partition.

    Raises:
        ValueError: Invalid hostname.
        MountFailure: Boot partition could not be mounted.
        ExternalCommandFailure: Writing the file failed.
    """
    validate_hostname(hostname)
    boot_partition = partition_path(device, BOOT_PARTITION)

    if dry_run:
        logger.info("Would mount %s", boot_partition)
        logger.info('Would write hostname "%s" to %s', hostname, HOSTNAME_FILE)
        logger.info("Would unmount")
        return

    logger.info("Setting device hostname...")
    with mounted_partition(boot_partition, "boot", guard=guard) as mount_point:
        hostname_file = mount_point / HOSTNAME_FILE
        logger.info('Writing hostname "%s" to %s...', hostname, HOSTNAME_FILE)
        run_command(
            privileged(["tee", str(hostname_file)]),
            input_text=f"{hostname}\n",
        )
        run_command(privileged(["chmod", "644", str(hostname_file)]))

    logger.info("Hostname set to: %s", hostname)


__all__ = [
    "E2FSCK_OK_CODES",
    "HOSTNAME_FILE",
    "LOST_AND_FOUND",
    "NO_CHANGE_MARKERS",
    "TEMP_PREFIX",
    "backup_data_partition",
    "cleanup_backup",
    "grow_data_partition",
    "has_data_partition",
    "mounted_partition",
    "restore_data_partition",
    "set_hostname",
    "validate_hostname",
]

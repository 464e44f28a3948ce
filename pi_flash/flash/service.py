"""Flash service layer for SD card / USB flashing.

This module provides the end-to-end local flash workflow:
- plan_flash: validate the device and image and decide every step
- flash_device: confirm, back up /data, write, then re-provision the card
  (SSH key, data restore, hostname, WiFi, optional /data growth)

Safety rules:
- Explicit device paths only, validated before anything runs
- Typed confirmation before the first side effect
- A failed backup never blocks the flash; a failed restore keeps the
  backup on disk and reports where it is
- Dry run logs the same plan and executes nothing
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from pi_flash.config import WifiCredentials
from pi_flash.errors import PiFlashError
from pi_flash.flash.device import (
    DATA_PARTITION,
    ROOTFS_A_PARTITION,
    partition_path,
    validate_device,
)
from pi_flash.flash.writer import WritePlan, confirm_device, plan_write, write_image
from pi_flash.guard import SignalGuard
from pi_flash.image.prepare import inject_ssh_key
from pi_flash.partitions.manager import (
    backup_data_partition,
    cleanup_backup,
    grow_data_partition,
    has_data_partition,
    mounted_partition,
    restore_data_partition,
    set_hostname,
    validate_hostname,
)
from pi_flash.partitions.wifi import NetworkBackend, inject_wifi_credentials
from pi_flash.types import BackupResult, BackupStatus, GrowResult, WriteMethod

logger = logging.getLogger(__name__)


@dataclass
class FlashOptions:
    """What to do around the raw write.

    Attributes:
        ssh_key_path: Public key installed for username on rootfs A.
        username: Device user receiving the key.
        uid: UID/GID owning the key.
        hostname: Hostname written to the boot partition.
        wifi: WiFi credentials written to the data partition.
        backup_data: Preserve the data partition across the flash.
        grow_data: Grow the data partition after flashing.
        free_percent: Disk share left unallocated when growing.
    """

    ssh_key_path: Path | None = None
    username: str = "pi"
    uid: int = 1000
    hostname: str | None = None
    wifi: WifiCredentials | None = None
    backup_data: bool = True
    grow_data: bool = False
    free_percent: int = 10


@dataclass
class FlashPlan:
    """Plan for a flash operation (used for dry-run and before confirmation).

    Attributes:
        device_path: Validated target device.
        write: The raw write plan.
        steps: Human-readable step list, in execution order.
        backup_data: Whether a data backup will be attempted.
    """

    device_path: str
    write: WritePlan
    steps: list[str] = field(default_factory=list)
    backup_data: bool = False


@dataclass
class FlashResult:
    """Result of a flash operation.

    Attributes:
        device_path: Device written.
        image_path: Image written.
        method: Write method used.
        backup: Outcome of the data backup (None if not attempted).
        restored: Whether the backup was restored (None if nothing to restore).
        kept_backup: Backup left on disk because restoring it failed.
        grow: Outcome of growing /data (None if not requested).
        dry_run: Nothing was executed.
    """

    device_path: str
    image_path: Path
    method: WriteMethod
    backup: BackupResult | None = None
    restored: bool | None = None
    kept_backup: Path | None = None
    grow: GrowResult | None = None
    dry_run: bool = False


def plan_flash(
    image_path: Path,
    device_path: str,
    options: FlashOptions,
    *,
    bmap_path: Path | None = None,
    check_system_device: bool = True,
) -> FlashPlan:
    """Create a plan for a flash operation.

    This validates inputs and decides what would happen without touching
    the device.

    Raises:
        ImageNotFoundError: Image file not found.
        DeviceNotFoundError: Device not found.
        NotBlockDeviceError: Not a block device.
        PartitionDeviceError: Path is a partition.
        SystemDeviceError: Path is the system root device.
        ValueError: Invalid hostname.
    """
    device = validate_device(device_path, check_system_device=check_system_device)
    if options.hostname is not None:
        validate_hostname(options.hostname)
    write = plan_write(image_path, device, bmap_path)

    backup = options.backup_data and has_data_partition(device)
    steps: list[str] = []
    if backup:
        steps.append(f"Back up {partition_path(device, DATA_PARTITION)}")
    steps.append(f"Write {image_path.name} to {device} with {write.method.value}")
    if backup:
        steps.append("Restore data partition backup")
    if options.ssh_key_path is not None:
        steps.append(
            f"Install {options.ssh_key_path.name} for {options.username} "
            f"on {partition_path(device, ROOTFS_A_PARTITION)}"
        )
    if options.hostname:
        steps.append(f'Set hostname "{options.hostname}"')
    if options.wifi is not None:
        steps.append(f'Configure WiFi "{options.wifi.ssid}"')
    if options.grow_data:
        steps.append(f"Grow data partition to {100 - options.free_percent}% of {device}")

    return FlashPlan(device_path=device, write=write, steps=steps, backup_data=backup)


def _install_key(
    plan: FlashPlan, key_path: Path, options: FlashOptions, guard: SignalGuard
) -> None:
    key = key_path.expanduser().read_text(encoding="utf-8").strip()
    rootfs = partition_path(plan.device_path, ROOTFS_A_PARTITION)
    logger.info("Injecting SSH key into image...")
    with mounted_partition(rootfs, "rootfs", guard=guard) as mount_point:
        inject_ssh_key(mount_point, key, options.username, options.uid)
    logger.info("SSH key injected")


def flash_device(
    plan: FlashPlan,
    options: FlashOptions,
    *,
    guard: SignalGuard,
    confirm: Callable[[str], str] | None = None,
    skip_confirmation: bool = False,
    dry_run: bool = False,
    network: NetworkBackend | None = None,
) -> FlashResult:
    """Flash an image to a device and re-provision it.

    This is the main entry point for local flashing. It:
    1. Confirms the device (before any side effect)
    2. Backs up the data partition (failure is not fatal)
    3. Writes the image inside the guard's critical section
    4. Restores data, then installs the SSH key, hostname and WiFi
    5. Optionally grows the data partition

    Args:
        plan: Plan from plan_flash().
        options: Provisioning options used to build the plan.
        guard: Signal guard.
        confirm: Prompt returning the typed confirmation.
        skip_confirmation: Skip the typed confirmation.
        dry_run: Log the plan and return.
        network: Network backend for WiFi provisioning.

    Returns:
        FlashResult.

    Raises:
        ConfirmationMismatch: Confirmation did not match.
        ExternalCommandFailure: The write or a provisioning step failed.
        MountFailure: A partition could not be mounted.
    """
    device = plan.device_path
    logger.info(
        "Flash requested: image=%s, device=%s, dry_run=%s",
        plan.write.image.name,
        device,
        dry_run,
    )
    for number, step in enumerate(plan.steps, start=1):
        logger.info("%d. %s", number, step)

    if dry_run:
        write_image(plan.write, guard=guard, dry_run=True)
        if options.hostname:
            set_hostname(device, options.hostname, dry_run=True)
        if options.wifi is not None:
            inject_wifi_credentials(device, options.wifi, backend=network, dry_run=True)
        return FlashResult(
            device_path=device,
            image_path=plan.write.image,
            method=plan.write.method,
            dry_run=True,
        )

    if not skip_confirmation:
        if confirm is None:
            raise ValueError("A confirmation prompt is required unless skip_confirmation is set")
        confirm_device(device, confirm(device))

    result = FlashResult(device_path=device, image_path=plan.write.image, method=plan.write.method)

    if plan.backup_data:
        result.backup = backup_data_partition(device, guard=guard)
        if result.backup.status == BackupStatus.FAILED:
            logger.warning("Continuing without a data backup")

    # The backup belongs to this call until restored or reported as kept
    pending_backup: Path | None = None
    if result.backup is not None and result.backup.status == BackupStatus.OK:
        pending_backup = result.backup.path

    try:
        write_image(plan.write, guard=guard, skip_confirmation=True)

        if pending_backup is not None:
            result.restored = restore_data_partition(device, pending_backup, guard=guard)
            if result.restored:
                cleanup_backup(pending_backup)
            else:
                result.kept_backup = pending_backup
                logger.warning("Backup kept at %s", pending_backup)
            pending_backup = None

        if options.ssh_key_path is not None:
            _install_key(plan, options.ssh_key_path, options, guard)

        if options.hostname:
            set_hostname(device, options.hostname, guard=guard)

        if options.wifi is not None:
            inject_wifi_credentials(device, options.wifi, backend=network, guard=guard)

        if options.grow_data:
            result.grow = grow_data_partition(device, options.free_percent)
    except (PiFlashError, OSError):
        if pending_backup is not None:
            logger.error("Flash failed; data backup kept at %s", pending_backup)
        raise

    logger.info("Flash complete: %s", device)
    return result


__all__ = [
    "FlashOptions",
    "FlashPlan",
    "FlashResult",
    "flash_device",
    "plan_flash",
]

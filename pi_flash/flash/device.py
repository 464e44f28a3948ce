"""Block device discovery and validation.

This module handles:
- Enumerating candidate target disks (removable or USB, never loop/NVMe)
- Deriving partition paths from a whole-device path
- Validating a device path before flashing
- Finding and unmounting mounted partitions of a device

Devices are queried fresh on every call; nothing is cached because the
hardware can change between calls.
"""

import json
import logging
import os
import re
import stat
from pathlib import Path

from pi_flash.commands import privileged, run_command
from pi_flash.errors import DeviceNotFoundError, ExternalCommandFailure, PiFlashError
from pi_flash.types import BlockDevice

logger = logging.getLogger(__name__)

# Fixed partition layout
BOOT_PARTITION = 1
ROOTFS_A_PARTITION = 2
ROOTFS_B_PARTITION = 3
DATA_PARTITION = 4

LSBLK_COMMAND = ["lsblk", "-d", "-b", "-J", "-o", "NAME,SIZE,TYPE,RM,TRAN,MODEL"]

# Name prefixes treated as system disks, never flash targets
_EXCLUDED_PREFIXES = ("loop", "nvme")

# /dev/sdX1, /dev/hdX1, /dev/vdX1
_PARTITION_PATTERN_SD = re.compile(r"^/dev/[shv]d[a-z]+(\d+)$")
# /dev/nvme0n1p1, /dev/mmcblk0p1, /dev/loop0p1
_PARTITION_PATTERN_P = re.compile(r"^/dev/(nvme\d+n\d+|mmcblk\d+|loop\d+)p(\d+)$")


class NotBlockDeviceError(PiFlashError):
    """Path exists but is not a block device."""

    def __init__(self, device_path: str) -> None:
        super().__init__(f"Not a block device: {device_path}", "not_block_device")
        self.device_path = device_path


class PartitionDeviceError(PiFlashError):
    """Device appears to be a partition, not a whole device."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Device appears to be a partition, not a whole device: {device_path}. "
            "Only whole devices (e.g., /dev/sdb, /dev/mmcblk0) are supported.",
            "partition_not_allowed",
        )
        self.device_path = device_path


class SystemDeviceError(PiFlashError):
    """Device holds the running system's root filesystem."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Device {device_path} appears to be the system root device. "
            "Refusing to flash to avoid data loss.",
            "system_device",
        )
        self.device_path = device_path


def partition_path(device: str, index: int) -> str:
    """Resolve a (device, partition index) pair to a partition path.

    Device names ending in a digit (mmcblk0, loop3, nvme0n1) take a 'p'
    separator before the index; names ending in a letter (sdb) do not.

    Args:
        device: Whole-device path (e.g., '/dev/sdb').
        index: Partition index, 1-4.

    Returns:
        Partition path (e.g., '/dev/sdb4' or '/dev/mmcblk0p4').

    Raises:
        ValueError: Index outside 1-4 or empty device.
    """
    if not 1 <= index <= 4:
        raise ValueError(f"Partition index must be 1-4, got {index}")
    if not device:
        raise ValueError("Device path must not be empty")
    separator = "p" if device[-1].isdigit() else ""
    return f"{device}{separator}{index}"


def is_partition_path(device_path: str) -> bool:
    """Check if a device path looks like a partition.

    Recognizes /dev/sdb1 style and /dev/mmcblk0p1, /dev/nvme0n1p1,
    /dev/loop0p1 style names.
    """
    return bool(
        _PARTITION_PATTERN_SD.match(device_path)
        or _PARTITION_PATTERN_P.match(device_path)
    )


def is_block_device(device_path: str) -> bool:
    """Check if a path is a block special file."""
    try:
        mode = os.stat(device_path).st_mode
        return stat.S_ISBLK(mode)
    except OSError:
        return False


def _is_removable(value: object) -> bool:
    return value is True or value == "1" or value == 1


def _parse_size(value: object) -> int:
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return 0


def list_block_devices() -> list[BlockDevice]:
    """List whole-disk devices suitable as flash targets.

    Only whole disks are considered; loop and NVMe devices are skipped.
    A disk is included if it is removable or on USB transport.

    Returns:
        List of BlockDevice (empty, never raising, on enumeration failure).
    """
    try:
        result = run_command(LSBLK_COMMAND)
        data = json.loads(result.stdout)
        entries = data["blockdevices"]
    except (ExternalCommandFailure, json.JSONDecodeError, KeyError, TypeError) as e:
        logger.error("Failed to list block devices: %s", e)
        return []

    devices: list[BlockDevice] = []
    for dev in entries:
        name = dev.get("name", "")
        if dev.get("type") != "disk":
            continue
        if name.startswith(_EXCLUDED_PREFIXES):
            continue
        removable = _is_removable(dev.get("rm"))
        transport = dev.get("tran") or "unknown"
        if not removable and transport != "usb":
            continue
        devices.append(
            BlockDevice(
                path=f"/dev/{name}",
                size_bytes=_parse_size(dev.get("size")),
                model=(dev.get("model") or "Unknown").strip(),
                transport=transport,
                removable=removable,
            )
        )

    logger.debug("Found %d candidate device(s)", len(devices))
    return devices


def get_mount_points(device_path: str) -> list[str]:
    """Get mount points for a device and its partitions.

    Parses /proc/mounts for the device itself and any partition of it
    (sdb1, mmcblk0p1, ...).
    """
    mount_points: list[str] = []
    device_name = Path(device_path).name

    try:
        with open("/proc/mounts") as f:
            for line in f:
                parts = line.split()
                if len(parts) < 2:
                    continue
                mounted_name = Path(parts[0]).name
                if mounted_name == device_name:
                    mount_points.append(parts[1])
                elif mounted_name.startswith(device_name) and len(mounted_name) > len(
                    device_name
                ):
                    suffix = mounted_name[len(device_name) :]
                    if suffix.isdigit() or (suffix[0] == "p" and suffix[1:].isdigit()):
                        mount_points.append(parts[1])
    except OSError:
        logger.warning("Could not read /proc/mounts, skipping mount check")

    return mount_points


def get_root_device() -> str | None:
    """Get the whole device that holds the root filesystem, if known."""
    try:
        with open("/proc/mounts") as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2 and parts[1] == "/":
                    return partition_to_whole_device(parts[0])
    except OSError:
        logger.warning("Could not read /proc/mounts to determine root device")
    return None


def partition_to_whole_device(path: str) -> str:
    """Convert a partition path to its whole-device path.

    Paths that are not recognized partitions are returned unchanged.
    """
    match = _PARTITION_PATTERN_SD.match(path)
    if match:
        return path[: -len(match.group(1))]
    match = _PARTITION_PATTERN_P.match(path)
    if match:
        return f"/dev/{match.group(1)}"
    return path


def unmount_commands(device_path: str) -> list[list[str]]:
    """Commands that unmount every mounted partition of a device."""
    return [privileged(["umount", mp]) for mp in get_mount_points(device_path)]


def unmount_device(device_path: str) -> int:
    """Unmount all partitions of a device, best effort.

    Returns:
        Number of mount points successfully unmounted.
    """
    unmounted = 0
    for cmd in unmount_commands(device_path):
        try:
            run_command(cmd)
            unmounted += 1
        except ExternalCommandFailure as e:
            logger.warning("Unmount failed (continuing): %s", e.message)
    return unmounted


def validate_device(device_path: str, *, check_system_device: bool = True) -> str:
    """Validate a device path as a flash target.

    Args:
        device_path: Path to the device.
        check_system_device: Refuse the device holding the root filesystem.

    Returns:
        Normalized absolute device path.

    Raises:
        DeviceNotFoundError: Path does not exist.
        NotBlockDeviceError: Path is not a block device.
        PartitionDeviceError: Path is a partition.
        SystemDeviceError: Path is the system root device.
    """
    device_path = os.path.abspath(device_path)
    logger.debug("Validating device: %s", device_path)

    if not os.path.exists(device_path):
        raise DeviceNotFoundError(device_path)
    if not is_block_device(device_path):
        raise NotBlockDeviceError(device_path)
    if is_partition_path(device_path):
        raise PartitionDeviceError(device_path)
    if check_system_device and get_root_device() == device_path:
        raise SystemDeviceError(device_path)

    return device_path


def format_size(size_bytes: int) -> str:
    """Format a byte count as a human readable string like '14.8 GB'."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


__all__ = [
    "BOOT_PARTITION",
    "DATA_PARTITION",
    "ROOTFS_A_PARTITION",
    "ROOTFS_B_PARTITION",
    "NotBlockDeviceError",
    "PartitionDeviceError",
    "SystemDeviceError",
    "format_size",
    "get_mount_points",
    "get_root_device",
    "is_block_device",
    "is_partition_path",
    "list_block_devices",
    "partition_path",
    "partition_to_whole_device",
    "unmount_commands",
    "unmount_device",
    "validate_device",
]

"""SD card / USB flashing module.

This module handles:
- Device enumeration and validation (whole-device only)
- Image discovery
- The confirmed, interrupt-guarded raw write (bmaptool or dd)

Safety rules:
- Explicit device paths only, confirmed by typing them
- System and partition devices are refused
- Writes are synced before returning
"""

from pi_flash.flash.device import (
    NotBlockDeviceError,
    PartitionDeviceError,
    SystemDeviceError,
    list_block_devices,
    partition_path,
    validate_device,
)
from pi_flash.flash.locator import find_latest_image, list_images
from pi_flash.flash.writer import (
    WritePlan,
    WriteResult,
    confirm_device,
    plan_write,
    write_image,
)

__all__ = [
    # Device
    "NotBlockDeviceError",
    "PartitionDeviceError",
    "SystemDeviceError",
    "list_block_devices",
    "partition_path",
    "validate_device",
    # Locator
    "find_latest_image",
    "list_images",
    # Writer
    "WritePlan",
    "WriteResult",
    "confirm_device",
    "plan_write",
    "write_image",
]

# The end-to-end workflow lives in pi_flash.flash.service; it is not
# imported here because it depends on pi_flash.partitions.

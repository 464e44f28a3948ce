"""Partition provisioning module.

This module handles:
- Scoped mounting of card partitions
- Data partition backup, restore and growth
- Hostname and WiFi provisioning
"""

from pi_flash.partitions.manager import (
    backup_data_partition,
    cleanup_backup,
    grow_data_partition,
    has_data_partition,
    mounted_partition,
    restore_data_partition,
    set_hostname,
)

__all__ = [
    "backup_data_partition",
    "cleanup_backup",
    "grow_data_partition",
    "has_data_partition",
    "mounted_partition",
    "restore_data_partition",
    "set_hostname",
]

# WiFi provisioning: pi_flash.partitions.wifi

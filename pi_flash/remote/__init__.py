"""Remote A/B update module.

This module handles:
- SSH/SCP transport to a running device
- Checksum-verified transfer of a prepared rootfs
- Running ab-update and verifying the reboot
"""

from pi_flash.remote.ssh import RemoteTarget

__all__ = ["RemoteTarget"]

# Lazy imports for submodules to avoid circular imports
# Access via pi_flash.remote.orchestrator

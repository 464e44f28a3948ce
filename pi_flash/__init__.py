"""Pi Flash - imaging and A/B updates for Raspberry Pi devices.

This package discovers target disks, prepares and writes disk images,
preserves the persistent data partition across reflashes, and drives
remote A/B updates with post-reboot verification.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]

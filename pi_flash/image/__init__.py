"""Rootfs image preparation for remote updates."""

from pi_flash.image.prepare import PreparedRootfs, cleanup_prepared_image, prepare_rootfs

__all__ = ["PreparedRootfs", "cleanup_prepared_image", "prepare_rootfs"]

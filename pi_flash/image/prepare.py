"""Rootfs preparation for remote A/B updates.

This module handles:
- Decompressing a .wic.gz disk image into a working directory
- Extracting rootfs slot A (partition 2) through a partition-scanning
  loop device
- Injecting an SSH public key into the extracted filesystem
- Recompressing the result as rootfs.ext4.gz

Each loop device and mount is registered with the signal guard while held
and released in a finally block. If anything fails, a full best-effort
cleanup runs before the error propagates.
"""

from __future__ import annotations

import gzip
import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from pi_flash.commands import STREAM_CHUNK_SIZE, privileged, run_command
from pi_flash.errors import (
    ExternalCommandFailure,
    ImageNotFoundError,
    MountFailure,
    PiFlashError,
)
from pi_flash.flash.device import ROOTFS_A_PARTITION, partition_path
from pi_flash.partitions.manager import TEMP_PREFIX
from pi_flash.types import ResourceKind

if TYPE_CHECKING:
    from pi_flash.guard import SignalGuard

logger = logging.getLogger(__name__)

WIC_NAME = "image.wic"
ROOTFS_RAW_NAME = "rootfs.ext4"
PREPARED_NAME = "rootfs.ext4.gz"
MOUNT_DIR_NAME = "mnt"


@dataclass
class PreparedRootfs:
    """A compressed rootfs ready for transfer.

    Attributes:
        path: The rootfs.ext4.gz file.
        work_dir: Directory holding it; remove with cleanup_prepared_image().
    """

    path: Path
    work_dir: Path


def _attach_loop(backing_file: Path, *, scan_partitions: bool) -> str:
    flags = "-fP" if scan_partitions else "-f"
    result = run_command(privileged(["losetup", flags, "--show", str(backing_file)]))
    loop_device = result.stdout.strip()
    if not loop_device:
        raise ExternalCommandFailure(f"losetup {flags} --show {backing_file}", 0, "no device")
    logger.debug("Attached %s to %s", backing_file.name, loop_device)
    return loop_device


def _release(
    guard: SignalGuard | None, kind: ResourceKind, value: str, cmd: list[str]
) -> None:
    """Release a loop device or mount unless the guard already released it."""
    if guard is not None:
        if guard.resources.get(kind) != value:
            logger.debug("%s already released", value)
            return
        guard.resources.unregister(kind)
    run_command(privileged(cmd))


def _decompress(source: Path, dest: Path) -> None:
    with gzip.open(source, "rb") as src, dest.open("wb") as dst:
        shutil.copyfileobj(src, dst, STREAM_CHUNK_SIZE)


def _compress(source: Path, dest: Path) -> None:
    with source.open("rb") as src, gzip.open(dest, "wb") as dst:
        shutil.copyfileobj(src, dst, STREAM_CHUNK_SIZE)


def inject_ssh_key(root: Path, key: str, username: str, uid: int = 1000) -> Path:
    """Install a public key as the user's authorized_keys in a mounted rootfs.

    The .ssh directory is 700 and authorized_keys 600, both owned uid:uid.

    Returns:
        Path of authorized_keys inside root.
    """
    ssh_dir = root / "home" / username / ".ssh"
    authorized_keys = ssh_dir / "authorized_keys"
    owner = f"{uid}:{uid}"

    run_command(
        privileged(["install", "-d", "-m", "700", "-o", str(uid), "-g", str(uid), str(ssh_dir)])
    )
    run_command(privileged(["tee", str(authorized_keys)]), input_text=f"{key.strip()}\n")
    run_command(privileged(["chmod", "600", str(authorized_keys)]))
    run_command(privileged(["chown", owner, str(authorized_keys)]))
    return authorized_keys


def _emergency_cleanup(work_dir: Path, mount_point: Path, remove_work_dir: bool) -> None:
    """Undo everything prepare_rootfs may have left behind; never raises."""
    for cmd in (["umount", str(mount_point)], ["losetup", "-D"]):
        try:
            run_command(privileged(cmd))
        except ExternalCommandFailure as e:
            logger.debug("Cleanup step failed: %s", e.message)

    for name in (WIC_NAME, ROOTFS_RAW_NAME):
        (work_dir / name).unlink(missing_ok=True)
    shutil.rmtree(mount_point, ignore_errors=True)
    if remove_work_dir:
        shutil.rmtree(work_dir, ignore_errors=True)


def prepare_rootfs(
    image_path: Path,
    *,
    ssh_key_path: Path | None = None,
    username: str,
    uid: int = 1000,
    work_dir: Path | None = None,
    guard: SignalGuard | None = None,
) -> PreparedRootfs:
    """Extract rootfs slot A from a disk image and inject an SSH key.

    Args:
        image_path: Compressed disk image (.wic.gz).
        ssh_key_path: Public key to install; None skips injection.
        username: Device user receiving the key.
        uid: UID/GID owning the key.
        work_dir: Working directory; a temporary one is created if omitted.
        guard: Signal guard to register loop devices and mounts with.

    Returns:
        PreparedRootfs.

    Raises:
        ImageNotFoundError: Image missing.
        MountFailure: Extracted rootfs could not be mounted.
        ExternalCommandFailure: A system tool failed.
    """
    if not image_path.is_file():
        raise ImageNotFoundError(str(image_path))

    key: str | None = None
    key_name = ""
    if ssh_key_path is not None:
        key_file = Path(ssh_key_path).expanduser()
        key = key_file.read_text(encoding="utf-8").strip()
        key_name = key_file.name

    # A caller's existing directory is never removed, only our intermediates
    owns_work_dir = work_dir is None or not work_dir.exists()
    if work_dir is None:
        work_dir = Path(tempfile.mkdtemp(prefix=f"{TEMP_PREFIX}rootfs-"))
    else:
        work_dir.mkdir(parents=True, exist_ok=True)
    if owns_work_dir and guard is not None:
        guard.resources.register(ResourceKind.TEMPDIR, str(work_dir))

    wic_path = work_dir / WIC_NAME
    rootfs_raw = work_dir / ROOTFS_RAW_NAME
    mount_point = work_dir / MOUNT_DIR_NAME
    prepared_path = work_dir / PREPARED_NAME

    try:
        logger.info("Decompressing image...")
        _decompress(image_path, wic_path)

        logger.info("Setting up loop device...")
        image_loop = _attach_loop(wic_path, scan_partitions=True)
        if guard is not None:
            guard.resources.register(ResourceKind.LOOP, image_loop)
        try:
            logger.info("Extracting rootfs partition...")
            run_command(
                privileged(
                    [
                        "dd",
                        f"if={partition_path(image_loop, ROOTFS_A_PARTITION)}",
                        f"of={rootfs_raw}",
                        "bs=4M",
                    ]
                )
            )
        finally:
            logger.info("Detaching loop device...")
            _release(guard, ResourceKind.LOOP, image_loop, ["losetup", "-d", image_loop])

        rootfs_loop = _attach_loop(rootfs_raw, scan_partitions=False)
        if guard is not None:
            guard.resources.register(ResourceKind.LOOP, rootfs_loop)
        try:
            mount_point.mkdir(exist_ok=True)
            logger.info("Mounting extracted rootfs...")
            try:
                run_command(privileged(["mount", rootfs_loop, str(mount_point)]))
            except ExternalCommandFailure as e:
                raise MountFailure(rootfs_loop, str(mount_point), e.stderr.strip()) from e
            if guard is not None:
                guard.resources.register(ResourceKind.MOUNT, str(mount_point))
            try:
                if key is not None:
                    logger.info("Injecting SSH key: %s", key_name)
                    inject_ssh_key(mount_point, key, username, uid)
            finally:
                logger.info("Unmounting...")
                _release(
                    guard, ResourceKind.MOUNT, str(mount_point), ["umount", str(mount_point)]
                )

            run_command(["sync"])
        finally:
            _release(guard, ResourceKind.LOOP, rootfs_loop, ["losetup", "-d", rootfs_loop])

        logger.info("Compressing rootfs...")
        _compress(rootfs_raw, prepared_path)

        wic_path.unlink()
        rootfs_raw.unlink()
        mount_point.rmdir()
    except (PiFlashError, OSError):
        logger.error("Rootfs preparation failed, cleaning up")
        if guard is not None:
            guard.resources.unregister(ResourceKind.MOUNT)
            guard.resources.unregister(ResourceKind.LOOP)
            guard.resources.unregister(ResourceKind.TEMPDIR)
        _emergency_cleanup(work_dir, mount_point, remove_work_dir=owns_work_dir)
        raise

    if owns_work_dir and guard is not None:
        # Ownership of the work dir passes to the caller
        guard.resources.unregister(ResourceKind.TEMPDIR)

    logger.info("Rootfs prepared: %s", prepared_path)
    return PreparedRootfs(path=prepared_path, work_dir=work_dir)


def cleanup_prepared_image(work_dir: Path) -> None:
    """Remove a prepared image's work directory, best effort."""
    try:
        shutil.rmtree(work_dir)
    except OSError as e:
        logger.warning("Failed to clean up temp directory %s: %s", work_dir, e)


__all__ = [
    "PREPARED_NAME",
    "PreparedRootfs",
    "cleanup_prepared_image",
    "inject_ssh_key",
    "prepare_rootfs",
]

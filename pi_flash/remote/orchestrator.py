"""Remote A/B update of a running device.

This module handles:
- Transferring a prepared rootfs and its checksum sidecar
- Verifying the checksum on the device by recomputation
- Running ab-update (writes the inactive slot only) and rebooting
- Verifying the reboot from the device's uptime

With remote key injection the artifact is a ready rootfs image sent as
is; the public key travels separately and ab-update-with-key installs it
on the device, so no local loop devices or sudo are needed.

The reboot check distinguishes three outcomes: the device came back
freshly booted (VERIFIED), it answers but never rebooted
(DID_NOT_REBOOT, usually a failed slot switch), or it never came back
with a fresh uptime before the deadline (TIMEOUT).
"""

from __future__ import annotations

import logging
import posixpath
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from pi_flash.checksum import checksum_record, parse_sha256sum, sidecar_name
from pi_flash.commands import render, run_command
from pi_flash.errors import (
    ChecksumMismatch,
    ConfirmationMismatch,
    ExternalCommandFailure,
    ImageNotFoundError,
    InsufficientSpaceError,
    RebootDidNotHappen,
    RebootTimeout,
    RemoteUnreachableError,
)
from pi_flash.image.prepare import PREPARED_NAME, cleanup_prepared_image, prepare_rootfs
from pi_flash.partitions.wifi import NetworkBackend, NetworkManagerBackend, WifiStatus
from pi_flash.remote.ssh import (
    RemoteTarget,
    check_remote_reachable,
    get_remote_boot_device,
    get_remote_tmp_space,
    get_remote_uptime,
    is_reachable,
    scp,
    scp_command,
    ssh,
    ssh_command,
    ssh_run,
)
from pi_flash.types import ChecksumRecord, RebootOutcome

if TYPE_CHECKING:
    from pi_flash.guard import SignalGuard

logger = logging.getLogger(__name__)

AB_UPDATE_COMMAND = "ab-update"
AB_UPDATE_WITH_KEY_COMMAND = "ab-update-with-key"
REMOTE_KEY_NAME = "pi-flash-key.pub"
REBOOT_COMMAND = ["sudo", "systemctl", "reboot"]

DEFAULT_REBOOT_TIMEOUT = 120
DEFAULT_POLL_INTERVAL = 2.0
# A device counts as freshly booted below this uptime (seconds)
DEFAULT_FRESH_UPTIME = 120.0


@dataclass
class RemoteArtifact:
    """Paths of a transferred artifact on the device."""

    image_path: str
    checksum_path: str


@dataclass
class RebootReport:
    """Outcome of a reboot wait.

    Attributes:
        outcome: VERIFIED, DID_NOT_REBOOT or TIMEOUT.
        uptime: Last uptime read from the device, if any.
        saw_offline: Whether the device was observed going down.
    """

    outcome: RebootOutcome
    uptime: float | None = None
    saw_offline: bool = False


@dataclass
class UpdateOptions:
    """Options for remote_update()."""

    ssh_key_path: Path | None = None
    username: str = "pi"
    uid: int = 1000
    remote_tmp: str = "/tmp"
    reboot_timeout: float = DEFAULT_REBOOT_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    fresh_uptime: float = DEFAULT_FRESH_UPTIME
    remote_key_injection: bool = False
    check_wifi: bool = False
    dry_run: bool = False


@dataclass
class UpdateResult:
    """Result of a remote update.

    Attributes:
        target: Device updated.
        remote_path: Artifact path on the device.
        digest: SHA-256 of the transferred artifact (None on dry run).
        reboot: Reboot report (None on dry run).
        boot_device: Device the target was running from before the update.
        wifi: WiFi status after the reboot, when checked.
        dry_run: Nothing was executed.
    """

    target: str
    remote_path: str
    digest: str | None = None
    reboot: RebootReport | None = None
    boot_device: str | None = None
    wifi: WifiStatus | None = None
    dry_run: bool = False


def remote_paths(filename: str, remote_tmp: str) -> RemoteArtifact:
    image_path = posixpath.join(remote_tmp, filename)
    return RemoteArtifact(
        image_path=image_path,
        checksum_path=posixpath.join(remote_tmp, sidecar_name(filename)),
    )


def _remote_writer(remote_path: str) -> list[str]:
    # The path is a positional parameter, so it is never parsed as shell code
    return ["sh", "-c", 'cat > "$1"', "sh", remote_path]


def transfer_image(
    local_path: Path,
    record: ChecksumRecord,
    target: RemoteTarget,
    remote_tmp: str = "/tmp",
    *,
    dry_run: bool = False,
) -> RemoteArtifact:
    """Copy an artifact and its checksum sidecar to the device.

    The sidecar content travels on stdin of a remote ``cat``.

    Raises:
        ExternalCommandFailure: scp or the sidecar write failed.
    """
    artifact = remote_paths(local_path.name, remote_tmp)
    logger.info("Source: %s", local_path.name)
    logger.info("Target: %s:%s", target, artifact.image_path)

    if dry_run:
        scp_cmd = scp_command(str(local_path), target, artifact.image_path)
        logger.info("Would execute: %s", render(scp_cmd))
        logger.info(
            "Would execute: %s",
            render(ssh_command(target, _remote_writer(artifact.checksum_path))),
        )
        return artifact

    scp(str(local_path), target, artifact.image_path)
    logger.info("Image transferred")

    logger.info("Writing checksum file...")
    ssh_run(target, _remote_writer(artifact.checksum_path), input_text=record.to_sidecar())
    return artifact


def transfer_key(
    key_path: Path, target: RemoteTarget, remote_tmp: str = "/tmp", *, dry_run: bool = False
) -> str:
    """Copy a public key to the device for on-device injection.

    Returns:
        Remote path of the key.
    """
    remote_key = posixpath.join(remote_tmp, REMOTE_KEY_NAME)
    if dry_run:
        logger.info("Would execute: %s", render(ssh_command(target, _remote_writer(remote_key))))
        return remote_key

    key = key_path.expanduser().read_text(encoding="utf-8").strip()
    logger.info("Copying SSH key %s to device...", key_path.name)
    ssh_run(target, _remote_writer(remote_key), input_text=f"{key}\n")
    return remote_key


def remote_digest(target: RemoteTarget, remote_path: str) -> str | None:
    """Recompute a file's SHA-256 on the device."""
    output = ssh(target, ["sha256sum", remote_path])
    if output is None:
        return None
    record = parse_sha256sum(output)
    return record.digest if record else None


def checksum_matches(target: RemoteTarget, remote_path: str, expected: str) -> bool:
    """True only when the device's recomputed digest equals expected."""
    return remote_digest(target, remote_path) == expected.lower()


def verify_remote_checksum(target: RemoteTarget, remote_path: str, expected: str) -> None:
    """Verify a transferred file by recomputing its digest on the device.

    Raises:
        ChecksumMismatch: Digest differs or could not be computed.
    """
    logger.info("Verifying checksum on device...")
    actual = remote_digest(target, remote_path)
    if actual != expected.lower():
        raise ChecksumMismatch(remote_path, expected, actual)
    logger.info("Checksum verified")


def check_remote_space(target: RemoteTarget, remote_tmp: str, required: int) -> int:
    """Refuse a transfer the remote scratch directory cannot hold.

    Unknown free space (df unavailable or unparseable) is logged and
    allowed through.

    Returns:
        Available bytes (0 if unknown).

    Raises:
        InsufficientSpaceError: Known free space is below required.
    """
    available = get_remote_tmp_space(target, remote_tmp)
    if available == 0:
        logger.warning("Could not determine free space in %s on %s", remote_tmp, target.host)
    elif available < required:
        raise InsufficientSpaceError(f"{target.host}:{remote_tmp}", required, available)
    return available


def ab_update_command(
    remote_path: str, remote_key: str | None = None, username: str = "pi"
) -> list[str]:
    """Updater invocation; with a key, ab-update-with-key also installs it."""
    if remote_key is None:
        return [AB_UPDATE_COMMAND, remote_path]
    return [AB_UPDATE_WITH_KEY_COMMAND, remote_path, remote_key, username]


def run_ab_update(
    target: RemoteTarget,
    remote_path: str,
    *,
    remote_key: str | None = None,
    username: str = "pi",
) -> None:
    """Run the on-device A/B updater against the inactive slot.

    Never retried: a failed update leaves the running slot untouched.

    Raises:
        ExternalCommandFailure: ab-update exited non-zero.
    """
    if remote_key is None:
        logger.info("Running A/B update on device...")
    else:
        logger.info("Running A/B update with key injection on device...")
    ssh_run(target, ab_update_command(remote_path, remote_key, username))
    logger.info("A/B update complete")


def announce_update(target: RemoteTarget, options: UpdateOptions) -> str:
    """Log what is about to be overwritten on the device.

    Returns:
        The device the target is currently booted from.
    """
    boot_device = get_remote_boot_device(target)
    logger.warning("Flashing inactive slot on %s (booted from %s)", target.host, boot_device)
    if options.ssh_key_path is not None:
        logger.warning("SSH key will be injected for user: %s", options.username)
    logger.warning("The running slot remains bootable if this fails")
    return boot_device


def confirm_update(host: str, typed: str) -> None:
    """Require the host to be typed exactly.

    Raises:
        ConfirmationMismatch: typed differs from host.
    """
    if typed != host:
        raise ConfirmationMismatch(host, typed)


def trigger_reboot(target: RemoteTarget) -> None:
    """Ask the device to reboot; the dropped connection is expected."""
    logger.info("Rebooting to activate new rootfs...")
    try:
        run_command(ssh_command(target, REBOOT_COMMAND), check=False, timeout=30)
    except ExternalCommandFailure as e:
        logger.debug("Reboot command ended with: %s", e.message)


def wait_for_reboot(
    target: RemoteTarget,
    *,
    timeout: float = DEFAULT_REBOOT_TIMEOUT,
    interval: float = DEFAULT_POLL_INTERVAL,
    fresh_uptime: float = DEFAULT_FRESH_UPTIME,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> RebootReport:
    """Wait for the device to go down and come back freshly booted.

    Polls ``echo ok`` every interval. Once the device has been seen
    offline and answers again, its uptime decides: below fresh_uptime is
    VERIFIED, otherwise DID_NOT_REBOOT. When the deadline passes, one last
    uptime read catches a reboot fast enough to fall between polls.

    Args:
        target: Device.
        timeout: Deadline in seconds.
        interval: Seconds between polls.
        fresh_uptime: Uptime threshold for "freshly booted".
        clock: Monotonic clock.
        sleep: Sleep function.

    Returns:
        RebootReport.
    """
    start = clock()
    saw_offline = False
    logger.info("Waiting for shutdown...")

    while clock() - start < timeout:
        if not is_reachable(target):
            if not saw_offline:
                logger.info("System went offline...")
                saw_offline = True
        elif saw_offline:
            uptime = get_remote_uptime(target)
            if uptime is not None:
                if uptime < fresh_uptime:
                    logger.info("%s is back online (uptime %.1fs)", target.host, uptime)
                    return RebootReport(RebootOutcome.VERIFIED, uptime, saw_offline)
                logger.warning(
                    "System responded but uptime is %.1fs - reboot did not happen", uptime
                )
                return RebootReport(RebootOutcome.DID_NOT_REBOOT, uptime, saw_offline)
        sleep(interval)

    uptime = get_remote_uptime(target)
    if uptime is not None and uptime < fresh_uptime:
        logger.info("%s is back online (uptime %.1fs)", target.host, uptime)
        return RebootReport(RebootOutcome.VERIFIED, uptime, saw_offline)

    logger.warning("Timeout waiting for reboot after %.0fs", timeout)
    if uptime is not None:
        return RebootReport(RebootOutcome.DID_NOT_REBOOT, uptime, saw_offline)
    return RebootReport(RebootOutcome.TIMEOUT, None, saw_offline)


def verify_reboot(target: RemoteTarget, report: RebootReport, timeout: float) -> None:
    """Turn a failed reboot report into its error.

    Raises:
        RebootDidNotHappen: Device answered with a stale uptime.
        RebootTimeout: Device never answered with a fresh uptime.
    """
    if report.outcome == RebootOutcome.VERIFIED:
        return
    if report.outcome == RebootOutcome.DID_NOT_REBOOT and report.uptime is not None:
        raise RebootDidNotHappen(target.host, report.uptime)
    raise RebootTimeout(target.host, timeout)


def _log_dry_run(target: RemoteTarget, image_path: Path, options: UpdateOptions) -> UpdateResult:
    name = image_path.name if options.remote_key_injection else PREPARED_NAME
    artifact = remote_paths(name, options.remote_tmp)
    key = options.ssh_key_path.name if options.ssh_key_path else "no key"
    logger.info("Dry run, would:")
    if options.remote_key_injection:
        logger.info("  Send %s as is (%s, injected on device)", image_path.name, key)
    else:
        logger.info("  Prepare rootfs from %s (%s)", image_path.name, key)
    logger.info("  Check free space: %s", render(ssh_command(target, ["df", "-k", options.remote_tmp])))
    transfer_image(
        Path(name),
        ChecksumRecord(digest="<sha256>", filename=name),
        target,
        options.remote_tmp,
        dry_run=True,
    )
    logger.info("  Verify: %s", render(ssh_command(target, ["sha256sum", artifact.image_path])))
    remote_key = None
    if options.remote_key_injection and options.ssh_key_path is not None:
        remote_key = transfer_key(options.ssh_key_path, target, options.remote_tmp, dry_run=True)
    update_cmd = ab_update_command(artifact.image_path, remote_key, options.username)
    logger.info("  Update: %s", render(ssh_command(target, update_cmd)))
    logger.info("  Reboot: %s", render(ssh_command(target, REBOOT_COMMAND)))
    return UpdateResult(target=str(target), remote_path=artifact.image_path, dry_run=True)


def remote_update(
    image_path: Path,
    target: RemoteTarget,
    options: UpdateOptions,
    *,
    guard: SignalGuard | None = None,
    confirm: Callable[[str], str] | None = None,
    skip_confirmation: bool = False,
    network: NetworkBackend | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> UpdateResult:
    """Deploy a disk image's rootfs to a running device and verify it.

    Steps: reachability, notice and confirmation, prepare (or send the
    image as is with remote key injection), checksum, space check,
    transfer, remote verify, ab-update, reboot, reboot verification and
    an optional WiFi check. Failures are surfaced without retry.

    Args:
        image_path: Disk image (.wic.gz), or a rootfs image with remote key
            injection.
        target: Device to update.
        options: Update options.
        guard: Signal guard for local preparation.
        confirm: Prompt returning the typed host name.
        skip_confirmation: Skip the typed confirmation.
        network: Backend for the post-update WiFi check.
        clock: Monotonic clock for the reboot wait.
        sleep: Sleep function for the reboot wait.

    Raises:
        ValueError: No confirmation prompt and skip_confirmation not set.
        ConfirmationMismatch: Confirmation did not match the host.
        RemoteUnreachableError: Device not reachable.
        InsufficientSpaceError: Not enough remote scratch space.
        ChecksumMismatch: Transfer corrupted.
        ExternalCommandFailure: A step's command failed.
        RebootDidNotHappen: Device never rebooted.
        RebootTimeout: Device did not come back in time.
    """
    if options.dry_run:
        return _log_dry_run(target, image_path, options)

    if not skip_confirmation and confirm is None:
        raise ValueError("A confirmation prompt is required unless skip_confirmation is set")
    if options.remote_key_injection and not image_path.is_file():
        raise ImageNotFoundError(str(image_path))

    if not check_remote_reachable(target):
        raise RemoteUnreachableError(str(target))

    boot_device = announce_update(target, options)
    if not skip_confirmation and confirm is not None:
        confirm_update(target.host, confirm(target.host))

    work_dir: Path | None = None
    if options.remote_key_injection:
        local_path = image_path
    else:
        prepared = prepare_rootfs(
            image_path,
            ssh_key_path=options.ssh_key_path,
            username=options.username,
            uid=options.uid,
            guard=guard,
        )
        local_path, work_dir = prepared.path, prepared.work_dir

    remote_key: str | None = None
    try:
        record = checksum_record(local_path)
        check_remote_space(target, options.remote_tmp, local_path.stat().st_size)
        artifact = transfer_image(local_path, record, target, options.remote_tmp)
        verify_remote_checksum(target, artifact.image_path, record.digest)
        if options.remote_key_injection and options.ssh_key_path is not None:
            remote_key = transfer_key(options.ssh_key_path, target, options.remote_tmp)
    finally:
        if work_dir is not None:
            cleanup_prepared_image(work_dir)

    run_ab_update(target, artifact.image_path, remote_key=remote_key, username=options.username)
    trigger_reboot(target)

    report = wait_for_reboot(
        target,
        timeout=options.reboot_timeout,
        interval=options.poll_interval,
        fresh_uptime=options.fresh_uptime,
        clock=clock,
        sleep=sleep,
    )
    verify_reboot(target, report, options.reboot_timeout)

    wifi = None
    if options.check_wifi:
        wifi = (network or NetworkManagerBackend()).query_connectivity(target)

    return UpdateResult(
        target=str(target),
        remote_path=artifact.image_path,
        digest=record.digest,
        reboot=report,
        boot_device=boot_device,
        wifi=wifi,
    )


__all__ = [
    "AB_UPDATE_COMMAND",
    "AB_UPDATE_WITH_KEY_COMMAND",
    "REMOTE_KEY_NAME",
    "RebootReport",
    "RemoteArtifact",
    "UpdateOptions",
    "UpdateResult",
    "ab_update_command",
    "announce_update",
    "check_remote_space",
    "checksum_matches",
    "confirm_update",
    "remote_digest",
    "remote_update",
    "run_ab_update",
    "transfer_image",
    "transfer_key",
    "trigger_reboot",
    "verify_reboot",
    "verify_remote_checksum",
    "wait_for_reboot",
]

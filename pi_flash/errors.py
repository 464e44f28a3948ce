"""Error definitions for pi_flash.

Every error carries a human-readable message and a stable error code so
the CLI (and any other caller) can report failures uniformly.
"""

# Error code constants
DEVICE_NOT_FOUND = "device_not_found"
IMAGE_NOT_FOUND = "image_not_found"
CONFIRMATION_MISMATCH = "confirmation_mismatch"
MOUNT_FAILURE = "mount_failure"
CHECKSUM_MISMATCH = "checksum_mismatch"
REBOOT_TIMEOUT = "reboot_timeout"
REBOOT_DID_NOT_HAPPEN = "reboot_did_not_happen"
EXTERNAL_COMMAND_FAILURE = "external_command_failure"
INSUFFICIENT_SPACE = "insufficient_space"
REMOTE_UNREACHABLE = "remote_unreachable"


class PiFlashError(Exception):
    """Base exception for pi_flash errors."""

    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class DeviceNotFoundError(PiFlashError):
    """Target device or partition does not exist."""

    def __init__(self, device_path: str) -> None:
        super().__init__(f"Device not found: {device_path}", DEVICE_NOT_FOUND)
        self.device_path = device_path


class ImageNotFoundError(PiFlashError):
    """No image could be located, or the given image path does not exist."""

    def __init__(self, location: str) -> None:
        super().__init__(f"Image not found: {location}", IMAGE_NOT_FOUND)
        self.location = location


class ConfirmationMismatch(PiFlashError):
    """Typed confirmation did not exactly equal the target (device path or host)."""

    def __init__(self, device_path: str, typed: str) -> None:
        super().__init__(
            f"Confirmation failed: expected {device_path!r}, got {typed!r}. Aborting.",
            CONFIRMATION_MISMATCH,
        )
        self.device_path = device_path
        self.typed = typed


class MountFailure(PiFlashError):
    """A partition could not be mounted."""

    def __init__(self, source: str, mount_point: str, detail: str = "") -> None:
        message = f"Failed to mount {source} at {mount_point}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, MOUNT_FAILURE)
        self.source = source
        self.mount_point = mount_point


class ChecksumMismatch(PiFlashError):
    """Remote recomputed digest differs from the transmitted digest."""

    def __init__(self, path: str, expected: str, actual: str | None) -> None:
        shown = actual[:16] + "..." if actual else "unavailable"
        super().__init__(
            f"Checksum verification failed for {path}. "
            f"Expected: {expected[:16]}..., Got: {shown}",
            CHECKSUM_MISMATCH,
        )
        self.path = path
        self.expected = expected
        self.actual = actual


class RebootTimeout(PiFlashError):
    """The device did not come back with a fresh uptime before the deadline."""

    def __init__(self, host: str, timeout: float) -> None:
        super().__init__(
            f"Timeout waiting for {host} to reboot after {timeout:.0f}s",
            REBOOT_TIMEOUT,
        )
        self.host = host
        self.timeout = timeout


class RebootDidNotHappen(PiFlashError):
    """The device answers SSH but its uptime proves it never rebooted.

    This usually means the boot-slot switch did not take effect.
    """

    def __init__(self, host: str, uptime: float) -> None:
        super().__init__(
            f"{host} responded but uptime is {uptime:.1f}s - reboot did NOT happen",
            REBOOT_DID_NOT_HAPPEN,
        )
        self.host = host
        self.uptime = uptime


class ExternalCommandFailure(PiFlashError):
    """A wrapped system tool exited with a non-zero status."""

    def __init__(
        self,
        command: str,
        exit_code: int | None,
        stderr: str = "",
    ) -> None:
        if exit_code is None:
            message = f"Failed to execute: {command}"
        else:
            message = f"Command failed with exit code {exit_code}: {command}"
        if stderr:
            message = f"{message}\n{stderr.strip()}"
        super().__init__(message, EXTERNAL_COMMAND_FAILURE)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class InsufficientSpaceError(PiFlashError):
    """Remote scratch location cannot hold the artifact."""

    def __init__(self, location: str, required: int, available: int) -> None:
        super().__init__(
            f"Not enough space in {location}: need {required} bytes, "
            f"have {available} bytes",
            INSUFFICIENT_SPACE,
        )
        self.location = location
        self.required = required
        self.available = available


class RemoteUnreachableError(PiFlashError):
    """Remote host does not answer over SSH."""

    def __init__(self, target: str) -> None:
        super().__init__(f"Remote host is not reachable: {target}", REMOTE_UNREACHABLE)
        self.target = target


__all__ = [
    "ChecksumMismatch",
    "ConfirmationMismatch",
    "DeviceNotFoundError",
    "ExternalCommandFailure",
    "ImageNotFoundError",
    "InsufficientSpaceError",
    "MountFailure",
    "PiFlashError",
    "RebootDidNotHappen",
    "RebootTimeout",
    "RemoteUnreachableError",
]

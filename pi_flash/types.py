"""Shared type definitions for pi_flash.

This module contains dataclasses and enums shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class ResourceKind(str, Enum):
    """Kind of transient OS resource tracked by the signal guard."""

    LOOP = "loop"
    MOUNT = "mount"
    TEMPDIR = "tempdir"


class GuardState(str, Enum):
    """Interrupt handling state of the signal guard."""

    NORMAL = "normal"
    CRITICAL = "critical"


class BackupStatus(str, Enum):
    """Outcome of a data-partition backup."""

    OK = "ok"
    EMPTY = "empty"
    FAILED = "failed"


class WriteMethod(str, Enum):
    """Method used to write an image to a device."""

    BMAPTOOL = "bmaptool"
    DD = "dd"


class RebootOutcome(str, Enum):
    """Classification of a remote reboot."""

    VERIFIED = "verified"
    DID_NOT_REBOOT = "did_not_reboot"
    TIMEOUT = "timeout"


@dataclass
class BlockDevice:
    """A whole-disk block device that is a candidate flash target.

    Attributes:
        path: Absolute device path (e.g., '/dev/sdb').
        size_bytes: Total size in bytes (0 if unknown).
        model: Model string reported by the kernel.
        transport: Transport (usb, mmc, sata, ...).
        removable: Whether the kernel marks the device removable.
    """

    path: str
    size_bytes: int
    model: str
    transport: str
    removable: bool


@dataclass
class ImageArtifact:
    """A located image file and its modification time."""

    name: str
    path: Path
    mtime: float


@dataclass
class BackupResult:
    """Result of backing up the data partition.

    Attributes:
        status: OK, EMPTY (nothing but lost+found) or FAILED.
        path: Backup directory (only set when status is OK).
        item_count: Number of top-level entries backed up.
        message: Failure detail when status is FAILED.
    """

    status: BackupStatus
    path: Path | None = None
    item_count: int = 0
    message: str | None = None


@dataclass
class GrowResult:
    """Result of growing the data partition."""

    partition: str
    changed: bool
    message: str


@dataclass
class ChecksumRecord:
    """A SHA-256 digest paired with the artifact filename it describes."""

    digest: str
    filename: str

    def to_sidecar(self) -> str:
        """Render the sidecar line in sha256sum format."""
        return f"{self.digest}  {self.filename}\n"


__all__ = [
    "BackupResult",
    "BackupStatus",
    "BlockDevice",
    "ChecksumRecord",
    "GrowResult",
    "GuardState",
    "ImageArtifact",
    "RebootOutcome",
    "ResourceKind",
    "WriteMethod",
]

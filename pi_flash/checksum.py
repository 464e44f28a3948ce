"""Checksum utilities.

This module handles:
- Streaming SHA-256 of local files
- The ``<name>.sha256`` sidecar format (``<hex-digest>  <name>``)
- Parsing ``sha256sum`` output
"""

from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path

from pi_flash.types import ChecksumRecord

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

SIDECAR_SUFFIX = ".sha256"

_DIGEST_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def checksum_record(file_path: Path) -> ChecksumRecord:
    """Hash a file and pair the digest with its filename."""
    logger.info("Computing SHA256 of %s...", file_path.name)
    digest = compute_file_hash(file_path)
    logger.debug("SHA256 %s: %s", file_path.name, digest)
    return ChecksumRecord(digest=digest, filename=file_path.name)


def sidecar_name(filename: str) -> str:
    """Return the sidecar filename for an artifact name."""
    return f"{filename}{SIDECAR_SUFFIX}"


def parse_sha256sum(output: str) -> ChecksumRecord | None:
    """Parse one line of ``sha256sum`` output (also the sidecar format).

    Binary-mode markers ('*name') are accepted and stripped.

    Returns:
        ChecksumRecord, or None if the line is not a valid digest line.
    """
    line = output.strip().splitlines()[0] if output.strip() else ""
    parts = line.split(None, 1)
    if not parts or not _DIGEST_PATTERN.match(parts[0].lower()):
        return None
    filename = parts[1].lstrip("*") if len(parts) > 1 else ""
    return ChecksumRecord(digest=parts[0].lower(), filename=filename)


def write_sidecar(file_path: Path, record: ChecksumRecord | None = None) -> Path:
    """Write ``<file>.sha256`` next to a local file.

    Returns:
        Path of the sidecar.
    """
    if record is None:
        record = checksum_record(file_path)
    sidecar = file_path.with_name(sidecar_name(file_path.name))
    sidecar.write_text(record.to_sidecar(), encoding="utf-8")
    return sidecar


__all__ = [
    "HASH_CHUNK_SIZE",
    "SIDECAR_SUFFIX",
    "checksum_record",
    "compute_file_hash",
    "parse_sha256sum",
    "sidecar_name",
    "write_sidecar",
]

"""Tests for checksum.py."""

import hashlib

from pi_flash.checksum import (
    checksum_record,
    compute_file_hash,
    parse_sha256sum,
    sidecar_name,
    write_sidecar,
)

DIGEST = "a" * 64


class TestComputeFileHash:
    """Tests for compute_file_hash function."""

    def test_matches_hashlib(self, tmp_path):
        """Streaming hash equals a one-shot hash."""
        data = b"rootfs" * 50000
        path = tmp_path / "rootfs.ext4.gz"
        path.write_bytes(data)

        assert compute_file_hash(path, chunk_size=4096) == hashlib.sha256(data).hexdigest()

    def test_empty_file(self, tmp_path):
        """Empty files hash to the SHA-256 of nothing."""
        path = tmp_path / "empty"
        path.write_bytes(b"")
        assert compute_file_hash(path) == hashlib.sha256(b"").hexdigest()


class TestChecksumRecord:
    """Tests for checksum_record and the sidecar format."""

    def test_record(self, tmp_path):
        """The record pairs the digest with the bare filename."""
        path = tmp_path / "rootfs.ext4.gz"
        path.write_bytes(b"data")

        record = checksum_record(path)
        assert record.filename == "rootfs.ext4.gz"
        assert record.digest == hashlib.sha256(b"data").hexdigest()

    def test_sidecar_line(self, tmp_path):
        """The sidecar uses sha256sum's two-space format."""
        path = tmp_path / "rootfs.ext4.gz"
        path.write_bytes(b"data")

        sidecar = write_sidecar(path)
        assert sidecar.name == "rootfs.ext4.gz.sha256"
        digest = hashlib.sha256(b"data").hexdigest()
        assert sidecar.read_text() == f"{digest}  rootfs.ext4.gz\n"

    def test_sidecar_name(self):
        """Sidecar names append .sha256."""
        assert sidecar_name("image.wic.gz") == "image.wic.gz.sha256"


class TestParseSha256sum:
    """Tests for parse_sha256sum function."""

    def test_text_mode(self):
        """Standard output parses."""
        record = parse_sha256sum(f"{DIGEST}  /tmp/rootfs.ext4.gz\n")
        assert record is not None
        assert record.digest == DIGEST
        assert record.filename == "/tmp/rootfs.ext4.gz"

    def test_binary_marker(self):
        """The binary-mode '*' is stripped."""
        record = parse_sha256sum(f"{DIGEST} *rootfs.ext4.gz")
        assert record is not None
        assert record.filename == "rootfs.ext4.gz"

    def test_uppercase_normalized(self):
        """Digests are compared in lowercase."""
        record = parse_sha256sum(f"{'A' * 64}  f")
        assert record is not None
        assert record.digest == DIGEST

    def test_invalid(self):
        """Non-digest output is rejected."""
        assert parse_sha256sum("") is None
        assert parse_sha256sum("sha256sum: /tmp/x: No such file or directory") is None
        assert parse_sha256sum(f"{DIGEST[:-1]}  short") is None

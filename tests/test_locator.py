"""Tests for flash/locator.py - image discovery."""

import os
from pathlib import Path

from pi_flash.flash.locator import bmap_path_for, find_latest_image, list_images


def _image(directory: Path, name: str, mtime: float) -> Path:
    path = directory / name
    path.write_bytes(b"image")
    os.utime(path, (mtime, mtime))
    return path


class TestListImages:
    """Tests for list_images function."""

    def test_newest_first(self, tmp_path):
        """Images are sorted by modification time, descending."""
        _image(tmp_path, "old.wic.gz", 1000)
        _image(tmp_path, "new.wic.gz", 3000)
        _image(tmp_path, "mid.wic.gz", 2000)

        names = [img.name for img in list_images(tmp_path)]
        assert names == ["new.wic.gz", "mid.wic.gz", "old.wic.gz"]

    def test_suffix_filter(self, tmp_path):
        """Files without the suffix are ignored."""
        _image(tmp_path, "core-image.wic.gz", 1000)
        _image(tmp_path, "core-image.wic.bmap", 2000)
        _image(tmp_path, "core-image.ext4", 3000)

        assert [img.name for img in list_images(tmp_path)] == ["core-image.wic.gz"]

    def test_symlinks_skipped(self, tmp_path):
        """Symlinks are not returned."""
        real = _image(tmp_path, "real-20240101.wic.gz", 1000)
        (tmp_path / "latest.wic.gz").symlink_to(real)

        assert [img.name for img in list_images(tmp_path)] == ["real-20240101.wic.gz"]

    def test_missing_directory(self, tmp_path):
        """A missing directory has no images."""
        assert list_images(tmp_path / "nope") == []


class TestFindLatestImage:
    """Tests for find_latest_image function."""

    def test_most_recent(self, tmp_path):
        """Without preferences the newest image wins."""
        _image(tmp_path, "a.wic.gz", 1000)
        newest = _image(tmp_path, "b.wic.gz", 2000)

        found = find_latest_image(tmp_path)
        assert found is not None
        assert found.path == newest

    def test_preferred_name_wins(self, tmp_path):
        """A present preferred name beats a newer image."""
        preferred = _image(tmp_path, "pi-image-raspberrypi4.wic.gz", 1000)
        _image(tmp_path, "other.wic.gz", 5000)

        found = find_latest_image(
            tmp_path,
            preferred_names=["pi-image-raspberrypi5.wic.gz", "pi-image-raspberrypi4.wic.gz"],
        )
        assert found is not None
        assert found.path == preferred

    def test_absent_preferred_falls_back(self, tmp_path):
        """Missing preferred names fall back to the newest image."""
        newest = _image(tmp_path, "other.wic.gz", 5000)

        found = find_latest_image(tmp_path, preferred_names=["missing.wic.gz"])
        assert found is not None
        assert found.path == newest

    def test_empty_directory(self, tmp_path):
        """An empty directory yields None."""
        assert find_latest_image(tmp_path) is None

    def test_custom_suffix(self, tmp_path):
        """The suffix is configurable."""
        raw = _image(tmp_path, "disk.img", 1000)
        found = find_latest_image(tmp_path, suffix=".img")
        assert found is not None
        assert found.path == raw


class TestBmapPathFor:
    """Tests for bmap_path_for function."""

    def test_compressed_image(self):
        """The .gz suffix is dropped before adding .bmap."""
        assert bmap_path_for(Path("/imgs/core.wic.gz")) == Path("/imgs/core.wic.bmap")

    def test_raw_image(self):
        """Raw images get .bmap appended."""
        assert bmap_path_for(Path("/imgs/core.wic")) == Path("/imgs/core.wic.bmap")

"""Image discovery.

Finds the disk image to flash in a build output directory: the first
preferred name that is present, otherwise the most recently modified
file with the required suffix.
"""

import logging
from collections.abc import Sequence
from pathlib import Path

from pi_flash.types import ImageArtifact

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_SUFFIX = ".wic.gz"


def list_images(directory: Path, suffix: str = DEFAULT_IMAGE_SUFFIX) -> list[ImageArtifact]:
    """List image files in a directory, newest first.

    Symlinks are skipped so build-system "latest" links do not shadow the
    real files.

    Args:
        directory: Directory to search.
        suffix: Required filename suffix.

    Returns:
        Matching images sorted by modification time, descending.
    """
    if not directory.is_dir():
        return []

    images: list[ImageArtifact] = []
    for path in directory.iterdir():
        if not path.name.endswith(suffix):
            continue
        if path.is_symlink() or not path.is_file():
            continue
        images.append(ImageArtifact(name=path.name, path=path, mtime=path.stat().st_mtime))

    images.sort(key=lambda image: image.mtime, reverse=True)
    return images


def find_latest_image(
    directory: Path,
    suffix: str = DEFAULT_IMAGE_SUFFIX,
    preferred_names: Sequence[str] = (),
) -> ImageArtifact | None:
    """Find the image to flash.

    Args:
        directory: Directory to search.
        suffix: Required filename suffix.
        preferred_names: Exact filenames checked in order before falling
            back to modification time.

    Returns:
        The selected image, or None if the directory is absent or empty.
    """
    images = list_images(directory, suffix)
    if not images:
        logger.debug("No *%s images in %s", suffix, directory)
        return None

    by_name = {image.name: image for image in images}
    for name in preferred_names:
        if name in by_name:
            logger.debug("Using preferred image %s", name)
            return by_name[name]

    return images[0]


def bmap_path_for(image_path: Path) -> Path:
    """Return the block-map sidecar path for an image.

    'foo.wic.gz' -> 'foo.wic.bmap', 'foo.wic' -> 'foo.wic.bmap'.
    """
    name = image_path.name
    if name.endswith(".gz"):
        name = name[: -len(".gz")]
    return image_path.with_name(f"{name}.bmap")


__all__ = [
    "DEFAULT_IMAGE_SUFFIX",
    "bmap_path_for",
    "find_latest_image",
    "list_images",
]

"""Raw image file operations.

This module handles:
- Allocating the sparse image file at its exact configured size
- Choosing the bootloader blobs produced by the bootloader build
- Writing bootloader blobs at the layout's byte offsets with fsync

Offsets come only from ImageLayout. A blob that would reach the boot
partition is refused before anything is written.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from opi5_builder.errors import make_error
from opi5_builder.image.layout import BootloaderPlacement, ImageLayout
from opi5_builder.types import ErrorKind

logger = logging.getLogger(__name__)

# Block size for blob copies (1 MiB)
DEFAULT_BLOCK_SIZE = 1024 * 1024


@dataclass
class BlobWrite:
    """Record of one bootloader blob written into the image.

    Attributes:
        source: Blob file.
        placement: Layout placement used.
        bytes_written: Number of bytes written.
    """

    source: Path
    placement: BootloaderPlacement
    bytes_written: int


def allocate_image(path: Path, size_bytes: int) -> None:
    """Create a sparse image file of exactly size_bytes.

    An existing file at path is replaced.

    Raises:
        BuildError: ResourceUnavailable if the file cannot be created.
    """
    logger.info("Allocating %d MiB image %s", size_bytes // (1024 * 1024), path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("wb") as f:
            f.truncate(size_bytes)
    except OSError as e:
        raise make_error(ErrorKind.RESOURCE_UNAVAILABLE, f"Cannot allocate image {path}: {e}") from e


def select_bootloader(uboot_dir: Path, layout: ImageLayout) -> list[tuple[Path, BootloaderPlacement]]:
    """Pick the combined blob if present, otherwise the split pair.

    Raises:
        BuildError: PreconditionMissing when neither set is complete.
    """
    combined = uboot_dir / layout.combined_bootloader.filename
    if combined.is_file():
        return [(combined, layout.combined_bootloader)]

    split = [(uboot_dir / p.filename, p) for p in layout.split_bootloader]
    if all(path.is_file() for path, _ in split):
        return split

    wanted = " or ".join(
        [layout.combined_bootloader.filename, " + ".join(p.filename for p in layout.split_bootloader)]
    )
    raise make_error(ErrorKind.PRECONDITION_MISSING, f"No bootloader binaries in {uboot_dir} (need {wanted})")


def check_placements(blobs: list[tuple[Path, BootloaderPlacement]], limit: int) -> None:
    """Refuse blobs that overlap each other or reach byte offset limit.

    Raises:
        BuildError: ConfigurationError describing the first conflict.
    """
    spans: list[tuple[int, int, str]] = []
    for path, placement in blobs:
        size = path.stat().st_size
        start, end = placement.offset, placement.offset + size
        if end > limit:
            raise make_error(
                ErrorKind.CONFIGURATION_ERROR,
                f"{path.name} ({size} bytes at sector {placement.sector}) would overlap the boot partition",
                offset=start,
                limit=limit,
            )
        for other_start, other_end, other_name in spans:
            if start < other_end and other_start < end:
                raise make_error(
                    ErrorKind.CONFIGURATION_ERROR,
                    f"{path.name} overlaps {other_name} in the bootloader area",
                )
        spans.append((start, end, path.name))


def write_bootloader(
    image: Path,
    blobs: list[tuple[Path, BootloaderPlacement]],
    limit: int,
    block_size: int = DEFAULT_BLOCK_SIZE,
) -> list[BlobWrite]:
    """Write bootloader blobs into the raw image at their byte offsets.

    Args:
        image: Image file (not truncated).
        blobs: (blob path, placement) pairs.
        limit: First byte blobs must not reach.
        block_size: Copy block size.

    Returns:
        One BlobWrite per blob.

    Raises:
        BuildError: ConfigurationError on overlap, ResourceUnavailable on I/O errors.
    """
    check_placements(blobs, limit)
    written: list[BlobWrite] = []
    try:
        with image.open("r+b") as dest:
            for path, placement in blobs:
                dest.seek(placement.offset)
                count = 0
                with path.open("rb") as source:
                    while chunk := source.read(block_size):
                        dest.write(chunk)
                        count += len(chunk)
                dest.flush()
                os.fsync(dest.fileno())
                logger.info(
                    "Wrote %s (%d bytes) at sector %d (byte %d)",
                    path.name,
                    count,
                    placement.sector,
                    placement.offset,
                )
                written.append(BlobWrite(path, placement, count))
    except OSError as e:
        raise make_error(ErrorKind.RESOURCE_UNAVAILABLE, f"Failed writing bootloader into {image}: {e}") from e
    return written


__all__ = [
    "BlobWrite",
    "allocate_image",
    "check_placements",
    "select_bootloader",
    "write_bootloader",
]

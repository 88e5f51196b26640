"""Disk image assembly.

This module handles:
- The fixed partition layout and bootloader offsets
- GPT verification of the partitioned image
- Bootloader placement and boot configuration
- Compression, checksums and the artifact manifest
"""

from opi5_builder.image.layout import (
    ORANGEPI_5_PLUS_LAYOUT,
    SECTOR_SIZE,
    BootloaderPlacement,
    ImageLayout,
    PartitionSpec,
)

__all__ = [
    "ORANGEPI_5_PLUS_LAYOUT",
    "SECTOR_SIZE",
    "BootloaderPlacement",
    "ImageLayout",
    "PartitionSpec",
]

# Assembly imports the pipeline; access it via opi5_builder.image.assembly.

"""Orange Pi 5 Plus image builder.

This package orchestrates the build of a bootable Ubuntu image for the
Orange Pi 5 Plus: kernel and bootloader builds through external toolchains,
root filesystem bootstrap, and assembly of a partitioned, compressed disk image.
"""

__version__ = "3.0.0"
__all__ = ["__version__"]

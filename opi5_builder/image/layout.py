"""Fixed disk layout for the Orange Pi 5 Plus (RK3588) boot sequence.

Every sgdisk, mkfs and bootloader offset argument is derived from the table
below. Changing target hardware means revising this table; nothing here is
inferred at runtime.

Layout (512-byte sectors)::

    sector 0        protective MBR, GPT header at 1, entries at 2..33
    loader1         64 .. 7167       idbloader.img (TPL + SPL)
    loader2         16384 .. 24575   u-boot.itb
    trust           24576 .. 32767   reserved (BL31 is packed into u-boot.itb)
    boot            32768 .. 262143  FAT32, label BOOT (112 MiB)
    rootfs          262144 .. end    ext4, label ROOTFS
"""

from __future__ import annotations

from dataclasses import dataclass

SECTOR_SIZE = 512

# GPT type GUIDs as sgdisk hex codes
TYPE_LINUX_DATA = "8300"
TYPE_BASIC_DATA = "0700"


@dataclass(frozen=True)
class PartitionSpec:
    """One GPT partition.

    Attributes:
        number: GPT partition number (1-based).
        name: GPT partition name.
        start: First sector.
        size: Size in sectors; None extends to the end of the disk.
        type_code: sgdisk type code.
        filesystem: mkfs filesystem ('vfat' or 'ext4'); None for raw partitions.
        label: Filesystem label.
    """

    number: int
    name: str
    start: int
    size: int | None
    type_code: str = TYPE_LINUX_DATA
    filesystem: str | None = None
    label: str | None = None

    @property
    def end(self) -> int | None:
        """Last sector (inclusive); None when extending to the end of disk."""
        return None if self.size is None else self.start + self.size - 1

    @property
    def offset(self) -> int:
        return self.start * SECTOR_SIZE

    def sgdisk_new(self) -> str:
        end = "0" if self.end is None else str(self.end)
        return f"{self.number}:{self.start}:{end}"


@dataclass(frozen=True)
class BootloaderPlacement:
    """Where a bootloader blob is written into the raw image.

    Attributes:
        filename: Blob produced by the bootloader build.
        sector: Target sector.
    """

    filename: str
    sector: int

    @property
    def offset(self) -> int:
        return self.sector * SECTOR_SIZE


@dataclass(frozen=True)
class ImageLayout:
    """Immutable partition table plus bootloader placements.

    Attributes:
        name: Board identifier.
        partitions: Partitions in on-disk order.
        combined_bootloader: Single-file bootloader (SPL + U-Boot) placement.
        split_bootloader: Alternative two-file placement.
    """

    name: str
    partitions: tuple[PartitionSpec, ...]
    combined_bootloader: BootloaderPlacement
    split_bootloader: tuple[BootloaderPlacement, ...]

    def __post_init__(self) -> None:
        previous_end = 33  # last sector of the primary GPT entries
        for part in self.partitions:
            if part.start <= previous_end:
                raise ValueError(f"partition {part.name} overlaps the preceding region")
            if part.size is not None and part.size <= 0:
                raise ValueError(f"partition {part.name} has non-positive size")
            if part.end is None and part is not self.partitions[-1]:
                raise ValueError(f"only the last partition may extend to the end of disk ({part.name})")
            previous_end = part.end if part.end is not None else previous_end

    def partition(self, name: str) -> PartitionSpec:
        for part in self.partitions:
            if part.name == name:
                return part
        raise KeyError(name)

    @property
    def boot(self) -> PartitionSpec:
        return self.partition("boot")

    @property
    def rootfs(self) -> PartitionSpec:
        return self.partition("rootfs")

    @property
    def bootloader_limit(self) -> int:
        """First byte bootloader blobs must not reach (start of the boot partition)."""
        return self.boot.offset

    @property
    def minimum_sectors(self) -> int:
        """Smallest disk holding every fixed partition plus a backup GPT."""
        last = max((p.end for p in self.partitions if p.end is not None), default=0)
        return last + 1 + 2048 + 34

    def sgdisk_args(self) -> list[str]:
        """Arguments creating the whole table in one sgdisk invocation."""
        # sgdisk aligns starts to 2048 sectors by default, which would move loader1
        args = ["--clear", "--set-alignment=1"]
        for part in self.partitions:
            args += [
                f"--new={part.sgdisk_new()}",
                f"--change-name={part.number}:{part.name}",
                f"--typecode={part.number}:{part.type_code}",
            ]
        return args

    def placement_for(self, filename: str) -> BootloaderPlacement:
        for placement in (self.combined_bootloader, *self.split_bootloader):
            if placement.filename == filename:
                return placement
        raise KeyError(filename)


ORANGEPI_5_PLUS_LAYOUT = ImageLayout(
    name="orangepi-5-plus",
    partitions=(
        PartitionSpec(1, "loader1", start=64, size=7104),
        PartitionSpec(2, "loader2", start=16384, size=8192),
        PartitionSpec(3, "trust", start=24576, size=8192),
        PartitionSpec(4, "boot", start=32768, size=229376, type_code=TYPE_BASIC_DATA, filesystem="vfat", label="BOOT"),
        PartitionSpec(5, "rootfs", start=262144, size=None, filesystem="ext4", label="ROOTFS"),
    ),
    combined_bootloader=BootloaderPlacement("u-boot-rockchip.bin", sector=64),
    split_bootloader=(
        BootloaderPlacement("idbloader.img", sector=64),
        BootloaderPlacement("u-boot.itb", sector=16384),
    ),
)


__all__ = [
    "ORANGEPI_5_PLUS_LAYOUT",
    "SECTOR_SIZE",
    "BootloaderPlacement",
    "ImageLayout",
    "PartitionSpec",
]

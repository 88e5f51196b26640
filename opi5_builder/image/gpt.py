"""Read-only GUID partition table parser.

Used to verify that a freshly partitioned image matches ImageLayout exactly,
without depending on sgdisk's human-oriented output.
"""

from __future__ import annotations

import logging
import struct
import uuid
import zlib
from dataclasses import dataclass
from pathlib import Path

from opi5_builder.image.layout import SECTOR_SIZE, ImageLayout

logger = logging.getLogger(__name__)

GPT_SIGNATURE = b"EFI PART"
HEADER_FORMAT = "<8sIIII QQQQ 16s QIII"
ENTRY_FORMAT = "<16s16sQQQ72s"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
ENTRY_SIZE = struct.calcsize(ENTRY_FORMAT)

_EMPTY_GUID = b"\x00" * 16


class GptError(Exception):
    """Raised when an image does not carry a valid primary GPT."""


@dataclass(frozen=True)
class GptPartition:
    """One populated partition entry."""

    number: int
    name: str
    start: int
    end: int
    type_guid: str

    @property
    def size(self) -> int:
        return self.end - self.start + 1


def read_partitions(image: Path, sector_size: int = SECTOR_SIZE) -> list[GptPartition]:
    """Parse the primary GPT of an image file.

    Args:
        image: Image file path.
        sector_size: Logical sector size.

    Returns:
        Populated partitions in entry order.

    Raises:
        GptError: Missing signature, bad header CRC or truncated entry array.
    """
    with image.open("rb") as f:
        f.seek(sector_size)
        raw_header = f.read(sector_size)
        if len(raw_header) < HEADER_SIZE:
            raise GptError(f"{image}: too small to hold a GPT header")

        (
            signature,
            _revision,
            header_size,
            header_crc,
            _reserved,
            _current_lba,
            _backup_lba,
            _first_usable,
            _last_usable,
            _disk_guid,
            entries_lba,
            entry_count,
            entry_size,
            _entries_crc,
        ) = struct.unpack_from(HEADER_FORMAT, raw_header)

        if signature != GPT_SIGNATURE:
            raise GptError(f"{image}: no GPT signature at LBA 1")
        if header_size < HEADER_SIZE or header_size > sector_size:
            raise GptError(f"{image}: invalid GPT header size {header_size}")
        check = bytearray(raw_header[:header_size])
        check[16:20] = b"\x00\x00\x00\x00"
        if zlib.crc32(bytes(check)) & 0xFFFFFFFF != header_crc:
            raise GptError(f"{image}: GPT header CRC mismatch")
        if entry_size < ENTRY_SIZE:
            raise GptError(f"{image}: invalid partition entry size {entry_size}")

        f.seek(entries_lba * sector_size)
        entries = f.read(entry_count * entry_size)
        if len(entries) < entry_count * entry_size:
            raise GptError(f"{image}: truncated partition entry array")

    partitions: list[GptPartition] = []
    for index in range(entry_count):
        type_guid, _unique, first, last, _attrs, raw_name = struct.unpack_from(
            ENTRY_FORMAT, entries, index * entry_size
        )
        if type_guid == _EMPTY_GUID:
            continue
        name = raw_name.decode("utf-16-le").rstrip("\x00")
        partitions.append(
            GptPartition(
                number=index + 1,
                name=name,
                start=first,
                end=last,
                type_guid=str(uuid.UUID(bytes_le=type_guid)),
            )
        )
    return partitions


def compare_with_layout(partitions: list[GptPartition], layout: ImageLayout) -> list[str]:
    """Describe every difference between a parsed table and the layout.

    Returns:
        Human-readable mismatch descriptions; empty when the table matches.
    """
    by_number = {p.number: p for p in partitions}
    problems: list[str] = []
    for spec in layout.partitions:
        found = by_number.get(spec.number)
        if found is None:
            problems.append(f"partition {spec.number} ({spec.name}) missing")
            continue
        if found.start != spec.start:
            problems.append(f"{spec.name}: starts at sector {found.start}, expected {spec.start}")
        if spec.end is not None and found.end != spec.end:
            problems.append(f"{spec.name}: ends at sector {found.end}, expected {spec.end}")
        if found.name != spec.name:
            problems.append(f"partition {spec.number}: named {found.name!r}, expected {spec.name!r}")
    extra = sorted(set(by_number) - {s.number for s in layout.partitions})
    problems.extend(f"unexpected partition {n}" for n in extra)
    return problems


__all__ = [
    "ENTRY_FORMAT",
    "GPT_SIGNATURE",
    "HEADER_FORMAT",
    "GptError",
    "GptPartition",
    "compare_with_layout",
    "read_partitions",
]

"""Checksums and manifest for the finished image.

This module handles:
- Computing SHA-256 over the compressed image
- Writing a ``sha256sum``-compatible checksum file next to it
- Generating a JSON manifest of produced artifacts
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from opi5_builder.config import BuildConfig
from opi5_builder.image.layout import ImageLayout

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

CHECKSUM_SUFFIX = ".sha256"
MANIFEST_SUFFIX = ".manifest.json"


@dataclass
class ArtifactInfo:
    """A produced output file.

    Attributes:
        kind: Artifact kind (image, checksum, bootloader, script).
        filename: File name.
        path: Absolute path.
        size_bytes: File size.
        sha256: SHA-256 hex digest.
    """

    kind: str
    filename: str
    path: str
    size_bytes: int
    sha256: str


def compute_file_hash(file_path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def write_checksum(artifact: Path) -> Path:
    """Write ``<artifact>.sha256`` in sha256sum format (``<hex>  <name>``).

    Returns:
        Path to the checksum file.
    """
    digest = compute_file_hash(artifact)
    checksum_path = artifact.with_name(artifact.name + CHECKSUM_SUFFIX)
    checksum_path.write_text(f"{digest}  {artifact.name}\n")
    logger.info("SHA-256 %s: %s", artifact.name, digest)
    return checksum_path


def describe(path: Path, kind: str) -> ArtifactInfo:
    return ArtifactInfo(
        kind=kind,
        filename=path.name,
        path=str(path.resolve()),
        size_bytes=path.stat().st_size,
        sha256=compute_file_hash(path),
    )


def generate_manifest(
    artifacts: list[ArtifactInfo],
    config: BuildConfig,
    layout: ImageLayout,
) -> dict[str, Any]:
    """Generate the build manifest.

    Args:
        artifacts: Produced files.
        config: Build configuration used.
        layout: Partition layout of the image.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    return {
        "version": "1.0",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "board": layout.name,
        "build_inputs": {
            "ubuntu_release": config.ubuntu_release,
            "ubuntu_codename": config.ubuntu_codename,
            "distro_variant": config.distro_variant.value,
            "kernel_repo_url": config.kernel_repo_url,
            "kernel_branch": config.kernel_branch,
            "kernel_version": config.kernel_version,
            "uboot_repo_url": config.uboot_repo_url,
            "uboot_branch": config.uboot_branch,
            "image_size_mb": config.image_size_mb,
        },
        "partitions": [
            {
                "number": p.number,
                "name": p.name,
                "start_sector": p.start,
                "size_sectors": p.size,
                "filesystem": p.filesystem,
                "label": p.label,
            }
            for p in layout.partitions
        ],
        "artifacts": [asdict(a) for a in artifacts],
        "summary": {
            "total_artifacts": len(artifacts),
            "total_size_bytes": sum(a.size_bytes for a in artifacts),
        },
    }


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "CHECKSUM_SUFFIX",
    "MANIFEST_SUFFIX",
    "ArtifactInfo",
    "compute_file_hash",
    "describe",
    "generate_manifest",
    "write_checksum",
    "write_manifest",
]

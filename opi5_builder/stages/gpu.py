"""Mali G610 GPU blob downloads.

This module handles:
- Selecting the firmware and userspace blobs for the enabled GPU features
- Streaming downloads with httpx under the retry policy
- Installing staged blobs into the root filesystem

The CSF firmware is required; the userspace libraries are optional, so their
failure is logged and the stage continues.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

import httpx

from opi5_builder.config import BuildConfig
from opi5_builder.errors import BuildError
from opi5_builder.execution.retry import retry_call
from opi5_builder.pipeline.stage import StageContext
from opi5_builder.types import ErrorContext, ErrorKind

logger = logging.getLogger(__name__)

MIRROR_BASE = "https://github.com/JeffyCN/mirrors/raw/libmali"
LIBMALI_DIR = "usr/lib/aarch64-linux-gnu"

# Loader manifests, relative to the root filesystem
OPENCL_ICD = "etc/OpenCL/vendors/mali.icd"
VULKAN_ICD = "etc/vulkan/icd.d/mali_icd.json"
VULKAN_API_VERSION = "1.1.0"

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class GpuBlob:
    """A prebuilt GPU file fetched from the libmali mirror.

    Attributes:
        name: Short identifier for logs.
        url: Download URL.
        install_path: Destination relative to the root filesystem.
        required: Whether a failed download fails the stage.
        feature: BuildConfig flag that must be set for the blob to be fetched.
    """

    name: str
    url: str
    install_path: str
    required: bool = False
    feature: str | None = None

    @property
    def filename(self) -> str:
        return self.url.rsplit("/", 1)[-1]


MALI_BLOBS: tuple[GpuBlob, ...] = (
    GpuBlob(
        name="mali-csf-firmware",
        url=f"{MIRROR_BASE}/firmware/g610/mali_csffw.bin",
        install_path="lib/firmware/mali_csffw.bin",
        required=True,
    ),
    GpuBlob(
        name="libmali-opencl",
        url=f"{MIRROR_BASE}/lib/aarch64-linux-gnu/libmali-valhall-g610-g13p0-x11-wayland-gbm.so",
        install_path=f"{LIBMALI_DIR}/libmali-valhall-g610-g13p0-x11-wayland-gbm.so",
        feature="enable_opencl",
    ),
    GpuBlob(
        name="libmali-vulkan",
        url=f"{MIRROR_BASE}/lib/aarch64-linux-gnu/libmali-valhall-g610-g24p0-x11-wayland-gbm-vulkan.so",
        install_path=f"{LIBMALI_DIR}/libmali-valhall-g610-g24p0-x11-wayland-gbm-vulkan.so",
        feature="enable_vulkan",
    ),
)


def selected_blobs(config: BuildConfig, blobs: tuple[GpuBlob, ...] = MALI_BLOBS) -> list[GpuBlob]:
    """Blobs whose feature flag is enabled (or that have none)."""
    return [b for b in blobs if b.feature is None or getattr(config, b.feature)]


def download_blob(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> ErrorContext | None:
    """Download one file, writing to a temporary name first.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Final destination path.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        None on success, a NetworkFailure ErrorContext otherwise.
    """
    partial = dest_path.with_name(dest_path.name + ".part")
    logger.info("Downloading %s", url)
    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            sha256 = hashlib.sha256()
            total_bytes = 0
            with partial.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)
        partial.replace(dest_path)
    except httpx.HTTPStatusError as e:
        partial.unlink(missing_ok=True)
        return ErrorContext.create(
            ErrorKind.NETWORK_FAILURE,
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            command=url,
            status_code=e.response.status_code,
        )
    except httpx.TimeoutException:
        partial.unlink(missing_ok=True)
        return ErrorContext.create(ErrorKind.NETWORK_FAILURE, f"Timeout downloading {url}", command=url)
    except httpx.RequestError as e:
        partial.unlink(missing_ok=True)
        return ErrorContext.create(
            ErrorKind.NETWORK_FAILURE,
            f"Network error downloading {url}: {e}",
            command=url,
        )

    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        total_bytes,
        sha256.hexdigest()[:16] + "...",
    )
    return None


def fetch_gpu_blobs(ctx: StageContext) -> None:
    """Download the Mali blobs for the enabled features into the staging directory.

    Raises:
        BuildError: NetworkFailure when a required blob cannot be fetched,
            Cancelled when the build is interrupted.
    """
    config = ctx.config
    blobs = selected_blobs(config)
    skipped = [b.name for b in MALI_BLOBS if b not in blobs]
    if skipped:
        logger.info("Skipping disabled GPU features: %s", ", ".join(skipped))

    config.gpu_dir.mkdir(parents=True, exist_ok=True)
    with httpx.Client(follow_redirects=True) as client:
        for blob in blobs:
            dest = config.gpu_dir / blob.filename

            def attempt(blob: GpuBlob = blob, dest: Path = dest) -> ErrorContext | None:
                return download_blob(client, blob.url, dest)

            error = retry_call(
                attempt,
                config.max_retries,
                token=ctx.token,
                delay=config.retry_delay,
                description=f"download {blob.name}",
                command=blob.url,
            )
            if error is None:
                continue
            if error.kind is ErrorKind.CANCELLED:
                raise BuildError(error)
            if blob.required:
                raise BuildError(
                    ErrorContext.create(
                        ErrorKind.NETWORK_FAILURE,
                        f"Failed to download required GPU blob {blob.name}",
                        command=blob.url,
                        cause=error.kind.value,
                        attempts=error.details.get("attempts"),
                    )
                )
            logger.warning("Optional GPU blob %s unavailable, continuing", blob.name)


def staged_blobs(config: BuildConfig) -> list[tuple[GpuBlob, Path]]:
    """Selected blobs already present in the staging directory."""
    return [
        (blob, config.gpu_dir / blob.filename)
        for blob in selected_blobs(config)
        if (config.gpu_dir / blob.filename).is_file()
    ]


def install_staged_blobs(config: BuildConfig, rootfs: Path) -> int:
    """Copy staged blobs into a root filesystem.

    Registers the OpenCL and Vulkan libraries with their loaders when they
    were installed.

    Returns:
        Number of files installed.
    """
    installed = 0
    for blob, source in staged_blobs(config):
        target = rootfs / blob.install_path
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
        installed += 1
        logger.info("Installed %s to /%s", blob.name, blob.install_path)
        if blob.feature is not None:
            register_icd(rootfs, blob)
    return installed


def register_icd(rootfs: Path, blob: GpuBlob) -> Path | None:
    """Write the loader manifest pointing at an installed userspace blob.

    Returns:
        Path of the manifest, or None for blobs no loader needs to find.
    """
    library = f"/{blob.install_path}"
    if blob.feature == "enable_opencl":
        icd = rootfs / OPENCL_ICD
        content = f"{library}\n"
    elif blob.feature == "enable_vulkan":
        icd = rootfs / VULKAN_ICD
        manifest = {
            "file_format_version": "1.0.0",
            "ICD": {"library_path": library, "api_version": VULKAN_API_VERSION},
        }
        content = json.dumps(manifest, indent=4) + "\n"
    else:
        return None
    icd.parent.mkdir(parents=True, exist_ok=True)
    icd.write_text(content)
    logger.debug("Registered %s in /%s", blob.name, icd.relative_to(rootfs))
    return icd


__all__ = [
    "DOWNLOAD_TIMEOUT",
    "MALI_BLOBS",
    "OPENCL_ICD",
    "VULKAN_ICD",
    "GpuBlob",
    "download_blob",
    "fetch_gpu_blobs",
    "install_staged_blobs",
    "register_icd",
    "selected_blobs",
    "staged_blobs",
]

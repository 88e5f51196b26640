"""Tests for Mali GPU blob downloads.

These tests use mocked HTTP responses (respx).
"""

import json
from pathlib import Path

import httpx
import pytest
import respx

from opi5_builder.config import BuildConfig
from opi5_builder.errors import BuildError
from opi5_builder.pipeline.stage import StageContext
from opi5_builder.stages.gpu import (
    MALI_BLOBS,
    VULKAN_ICD,
    download_blob,
    fetch_gpu_blobs,
    install_staged_blobs,
    register_icd,
    selected_blobs,
)
from opi5_builder.types import ErrorKind

FIRMWARE, OPENCL, VULKAN = MALI_BLOBS


class TestSelectedBlobs:
    """Tests for selected_blobs."""

    def test_all_features(self, config: BuildConfig) -> None:
        assert selected_blobs(config) == list(MALI_BLOBS)

    def test_firmware_always_selected(self, config: BuildConfig) -> None:
        config = config.model_copy(update={"enable_opencl": False, "enable_vulkan": False})
        assert selected_blobs(config) == [FIRMWARE]


class TestDownloadBlob:
    """Tests for download_blob."""

    @respx.mock
    def test_success(self, tmp_path: Path) -> None:
        respx.get("https://example.com/blob.so").mock(return_value=httpx.Response(200, content=b"blob"))
        dest = tmp_path / "mali" / "blob.so"

        with httpx.Client() as client:
            error = download_blob(client, "https://example.com/blob.so", dest)

        assert error is None
        assert dest.read_bytes() == b"blob"
        assert not dest.with_name("blob.so.part").exists()

    @respx.mock
    def test_http_error(self, tmp_path: Path) -> None:
        respx.get("https://example.com/blob.so").mock(return_value=httpx.Response(404))
        dest = tmp_path / "blob.so"

        with httpx.Client() as client:
            error = download_blob(client, "https://example.com/blob.so", dest)

        assert error.kind is ErrorKind.NETWORK_FAILURE
        assert error.details["status_code"] == 404
        assert not dest.exists()

    @respx.mock
    def test_timeout(self, tmp_path: Path) -> None:
        respx.get("https://example.com/blob.so").mock(side_effect=httpx.ConnectTimeout("timed out"))

        with httpx.Client() as client:
            error = download_blob(client, "https://example.com/blob.so", tmp_path / "blob.so")

        assert error.kind is ErrorKind.NETWORK_FAILURE
        assert "Timeout" in error.message

    @respx.mock
    def test_connection_error(self, tmp_path: Path) -> None:
        respx.get("https://example.com/blob.so").mock(side_effect=httpx.ConnectError("refused"))

        with httpx.Client() as client:
            error = download_blob(client, "https://example.com/blob.so", tmp_path / "blob.so")

        assert error.kind is ErrorKind.NETWORK_FAILURE


class TestFetchGpuBlobs:
    """Tests for fetch_gpu_blobs."""

    @respx.mock
    def test_fetch_all(self, ctx: StageContext) -> None:
        for blob in MALI_BLOBS:
            respx.get(blob.url).mock(return_value=httpx.Response(200, content=blob.name.encode()))

        fetch_gpu_blobs(ctx)

        for blob in MALI_BLOBS:
            assert (ctx.config.gpu_dir / blob.filename).read_bytes() == blob.name.encode()

    @respx.mock
    def test_required_blob_failure(self, ctx: StageContext) -> None:
        route = respx.get(FIRMWARE.url).mock(return_value=httpx.Response(500))

        with pytest.raises(BuildError) as exc_info:
            fetch_gpu_blobs(ctx)

        assert exc_info.value.kind is ErrorKind.NETWORK_FAILURE
        assert exc_info.value.context.details["cause"] == "RetriesExhausted"
        assert route.call_count == ctx.config.max_retries

    @respx.mock
    def test_optional_blob_failure(self, ctx: StageContext) -> None:
        respx.get(FIRMWARE.url).mock(return_value=httpx.Response(200, content=b"fw"))
        respx.get(OPENCL.url).mock(return_value=httpx.Response(503))
        respx.get(VULKAN.url).mock(return_value=httpx.Response(200, content=b"vk"))

        fetch_gpu_blobs(ctx)

        assert (ctx.config.gpu_dir / FIRMWARE.filename).is_file()
        assert not (ctx.config.gpu_dir / OPENCL.filename).exists()
        assert (ctx.config.gpu_dir / VULKAN.filename).is_file()

    @respx.mock
    def test_retry_recovers(self, ctx: StageContext) -> None:
        ctx.config = ctx.config.model_copy(update={"enable_opencl": False, "enable_vulkan": False})
        route = respx.get(FIRMWARE.url).mock(
            side_effect=[httpx.Response(502), httpx.Response(200, content=b"fw")]
        )

        fetch_gpu_blobs(ctx)

        assert route.call_count == 2
        assert (ctx.config.gpu_dir / FIRMWARE.filename).read_bytes() == b"fw"

    def test_cancelled(self, ctx: StageContext) -> None:
        ctx.token.cancel()
        with pytest.raises(BuildError) as exc_info:
            fetch_gpu_blobs(ctx)
        assert exc_info.value.kind is ErrorKind.CANCELLED


class TestInstallStagedBlobs:
    """Tests for install_staged_blobs."""

    def test_install(self, config: BuildConfig, tmp_path: Path) -> None:
        config.gpu_dir.mkdir(parents=True)
        (config.gpu_dir / FIRMWARE.filename).write_bytes(b"fw")
        (config.gpu_dir / OPENCL.filename).write_bytes(b"cl")
        rootfs = tmp_path / "rootfs"

        assert install_staged_blobs(config, rootfs) == 2

        assert (rootfs / "lib" / "firmware" / "mali_csffw.bin").read_bytes() == b"fw"
        icd = rootfs / "etc" / "OpenCL" / "vendors" / "mali.icd"
        assert icd.read_text() == f"/{OPENCL.install_path}\n"

    def test_nothing_staged(self, config: BuildConfig, tmp_path: Path) -> None:
        assert install_staged_blobs(config, tmp_path / "rootfs") == 0

    def test_vulkan_icd_registered(self, config: BuildConfig, tmp_path: Path) -> None:
        config.gpu_dir.mkdir(parents=True)
        for blob in MALI_BLOBS:
            (config.gpu_dir / blob.filename).write_bytes(b"blob")
        rootfs = tmp_path / "rootfs"

        assert install_staged_blobs(config, rootfs) == 3

        manifest = json.loads((rootfs / VULKAN_ICD).read_text())
        assert manifest["ICD"]["library_path"] == f"/{VULKAN.install_path}"
        assert (rootfs / VULKAN.install_path).is_file()

    def test_vulkan_disabled(self, config: BuildConfig, tmp_path: Path) -> None:
        config = config.model_copy(update={"enable_vulkan": False})
        config.gpu_dir.mkdir(parents=True)
        (config.gpu_dir / VULKAN.filename).write_bytes(b"vk")
        rootfs = tmp_path / "rootfs"

        assert install_staged_blobs(config, rootfs) == 0
        assert not (rootfs / "etc" / "vulkan").exists()

    def test_firmware_needs_no_manifest(self, tmp_path: Path) -> None:
        assert register_icd(tmp_path, FIRMWARE) is None

"""Tests for host environment checks and prerequisite installation."""

from pathlib import Path
from unittest.mock import patch

import pytest

from opi5_builder.errors import BuildError
from opi5_builder.pipeline.stage import StageContext
from opi5_builder.stages.environment import (
    HOST_PACKAGES,
    free_space_mb,
    install_prerequisites,
    missing_tools,
    setup_environment,
)
from opi5_builder.types import ErrorKind
from tests.conftest import FakeExecutor

MODULE = "opi5_builder.stages.environment"


class TestSetupEnvironment:
    """Tests for setup_environment."""

    def test_requires_root(self, ctx: StageContext) -> None:
        with patch(f"{MODULE}.os.geteuid", return_value=1000):
            with pytest.raises(BuildError) as exc_info:
                setup_environment(ctx)
        assert exc_info.value.kind is ErrorKind.PERMISSION_DENIED
        assert not ctx.config.build_dir.exists()

    def test_creates_directories(self, ctx: StageContext) -> None:
        with (
            patch(f"{MODULE}.os.geteuid", return_value=0),
            patch(f"{MODULE}.free_space_mb", return_value=100_000),
            patch(f"{MODULE}.missing_tools", return_value=[]),
        ):
            setup_environment(ctx)
        assert ctx.config.build_dir.is_dir()
        assert ctx.config.output_dir.is_dir()

    def test_low_disk_space(self, ctx: StageContext) -> None:
        with (
            patch(f"{MODULE}.os.geteuid", return_value=0),
            patch(f"{MODULE}.free_space_mb", return_value=100),
        ):
            with pytest.raises(BuildError) as exc_info:
                setup_environment(ctx)
        assert exc_info.value.kind is ErrorKind.RESOURCE_UNAVAILABLE
        assert exc_info.value.context.details["available_mb"] == 100

    def test_low_disk_space_tolerated(self, ctx: StageContext, caplog: pytest.LogCaptureFixture) -> None:
        ctx.config = ctx.config.model_copy(update={"continue_on_error": True})
        with (
            patch(f"{MODULE}.os.geteuid", return_value=0),
            patch(f"{MODULE}.free_space_mb", return_value=100),
            patch(f"{MODULE}.missing_tools", return_value=["sgdisk"]),
        ):
            setup_environment(ctx)
        assert ctx.config.build_dir.is_dir()
        assert any("Insufficient disk space" in r.getMessage() for r in caplog.records)


class TestHelpers:
    """Tests for host checks."""

    def test_free_space_of_missing_path(self, tmp_path: Path) -> None:
        assert free_space_mb(str(tmp_path / "not" / "yet")) == free_space_mb(str(tmp_path))

    def test_missing_tools(self) -> None:
        assert missing_tools(("sh", "opi5-no-such-tool")) == ["opi5-no-such-tool"]


class TestInstallPrerequisites:
    """Tests for install_prerequisites."""

    def test_commands(self, ctx: StageContext, executor: FakeExecutor) -> None:
        install_prerequisites(ctx)

        assert executor.commands[0].argv == ["apt-get", "update"]
        install = executor.commands[1]
        assert install.argv[:4] == ["apt-get", "install", "-y", "--no-install-recommends"]
        assert set(HOST_PACKAGES) <= set(install.argv)
        assert install.env == {"DEBIAN_FRONTEND": "noninteractive"}

    def test_retried_then_exhausted(self, ctx: StageContext) -> None:
        executor = FakeExecutor(failures={"apt-get update"})
        ctx.executor = executor

        with pytest.raises(BuildError) as exc_info:
            install_prerequisites(ctx)

        assert exc_info.value.kind is ErrorKind.RETRIES_EXHAUSTED
        assert executor.lines == ["apt-get update"] * 3

"""Shared fixtures for opi5_builder tests.

Stage and image tests run against FakeExecutor, which records commands
instead of spawning them, so no root privileges or host tools are needed.
"""

import struct
import uuid
import zlib
from collections.abc import Callable
from pathlib import Path

import pytest

from opi5_builder.cancel import CancellationToken
from opi5_builder.config import BuildConfig
from opi5_builder.execution.command import Command
from opi5_builder.execution.runner import CommandExecutor, CommandResult
from opi5_builder.image.gpt import ENTRY_FORMAT, HEADER_FORMAT
from opi5_builder.image.layout import ORANGEPI_5_PLUS_LAYOUT, ImageLayout
from opi5_builder.pipeline.stage import StageContext
from opi5_builder.types import ErrorContext, ErrorKind

LINUX_DATA_GUID = uuid.UUID("0fc63daf-8483-4772-8e79-3d69d8477de4")


class FakeExecutor(CommandExecutor):
    """Executor that records commands and fakes their results.

    Args:
        token: Cancellation token.
        outputs: Output returned for a program name.
        failures: Command display prefixes that fail with exit code 1.
        on_run: Hook called with every command before its result is decided.
    """

    def __init__(
        self,
        token: CancellationToken | None = None,
        outputs: dict[str, str] | None = None,
        failures: set[str] | None = None,
        on_run: Callable[[Command], None] | None = None,
    ) -> None:
        super().__init__(token, retry_delay=0)
        self.outputs = {"losetup": "/dev/loop7\n", **(outputs or {})}
        self.failures = failures or set()
        self.on_run = on_run
        self.commands: list[Command] = []
        self.cancellable: list[bool] = []

    def run(self, command: Command, *, show_output: bool = False, cancellable: bool = True) -> CommandResult:
        self.commands.append(command)
        self.cancellable.append(cancellable)
        if self.on_run is not None:
            self.on_run(command)
        text = command.display()
        if cancellable and self.token.cancelled:
            error = ErrorContext.create(ErrorKind.CANCELLED, "Command interrupted by cancellation", command=text)
            return CommandResult(command=text, success=False, error=error)
        if any(text.startswith(prefix) for prefix in self.failures):
            error = ErrorContext.create(
                ErrorKind.PROCESS_EXITED_NON_ZERO,
                "Command failed with exit code 1",
                command=text,
                exit_code=1,
            )
            return CommandResult(command=text, success=False, exit_code=1, error=error)
        return CommandResult(command=text, success=True, exit_code=0, output=self.outputs.get(command.program, ""))

    @property
    def lines(self) -> list[str]:
        return [c.display() for c in self.commands]

    def index(self, prefix: str) -> int:
        """Position of the first recorded command starting with prefix."""
        for i, line in enumerate(self.lines):
            if line.startswith(prefix):
                return i
        raise ValueError(prefix)


@pytest.fixture
def config(tmp_path: Path) -> BuildConfig:
    """Configuration rooted in a temporary directory."""
    return BuildConfig(
        build_dir=tmp_path / "build",
        output_dir=tmp_path / "output",
        log_file=tmp_path / "logs" / "build.log",
        error_log_file=tmp_path / "logs" / "errors.log",
        build_jobs=4,
        max_retries=3,
        retry_delay=0,
    )


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def ctx(config: BuildConfig, executor: FakeExecutor) -> StageContext:
    return StageContext(config=config, executor=executor, token=executor.token)


@pytest.fixture
def gpt_image(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing an image file with a valid primary GPT."""

    def write(
        partitions: list[tuple[int, str, int, int]] | None = None,
        layout: ImageLayout = ORANGEPI_5_PLUS_LAYOUT,
        name: str = "disk.img",
        size: int = 1024 * 1024,
    ) -> Path:
        if partitions is None:
            partitions = [
                (p.number, p.name, p.start, p.end if p.end is not None else p.start + 1000)
                for p in layout.partitions
            ]
        entries = bytearray(128 * 128)
        for number, part_name, first, last in partitions:
            entry = struct.pack(
                ENTRY_FORMAT,
                LINUX_DATA_GUID.bytes_le,
                uuid.uuid4().bytes_le,
                first,
                last,
                0,
                part_name.encode("utf-16-le").ljust(72, b"\x00"),
            )
            entries[(number - 1) * 128 : number * 128] = entry

        header = struct.pack(
            HEADER_FORMAT,
            b"EFI PART",
            0x00010000,
            92,
            0,
            0,
            1,
            size // 512 - 1,
            34,
            size // 512 - 34,
            uuid.uuid4().bytes_le,
            2,
            128,
            128,
            zlib.crc32(bytes(entries)),
        )
        crc = zlib.crc32(header) & 0xFFFFFFFF
        header = header[:16] + struct.pack("<I", crc) + header[20:]

        path = tmp_path / name
        with path.open("wb") as f:
            f.truncate(size)
            f.seek(512)
            f.write(header)
            f.seek(1024)
            f.write(bytes(entries))
        return path

    return write

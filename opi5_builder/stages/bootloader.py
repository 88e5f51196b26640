"""U-Boot fetch, build and installation.

Produces the bootloader blobs consumed by image assembly and a standalone
flashing helper whose ``dd seek=`` values come from the image layout.
"""

import logging
import shutil
import stat
from pathlib import Path

from opi5_builder.config import BuildConfig
from opi5_builder.errors import BuildError, make_error
from opi5_builder.execution.command import Command
from opi5_builder.image.layout import ORANGEPI_5_PLUS_LAYOUT, ImageLayout
from opi5_builder.pipeline.stage import StageContext
from opi5_builder.types import ErrorContext, ErrorKind

logger = logging.getLogger(__name__)

FLASH_SCRIPT = "flash-uboot.sh"

# Tried in order when the configured defconfig is missing from the tree
FALLBACK_DEFCONFIGS = ("orangepi_5_defconfig", "rk3588_defconfig", "evb-rk3588_defconfig")


def bootloader_files(layout: ImageLayout = ORANGEPI_5_PLUS_LAYOUT) -> tuple[str, ...]:
    return (layout.combined_bootloader.filename, *(p.filename for p in layout.split_bootloader))


def bootloader_built(config: BuildConfig, layout: ImageLayout = ORANGEPI_5_PLUS_LAYOUT) -> bool:
    """Whether installed blobs are present in the output directory."""
    out = config.uboot_output_dir
    if (out / layout.combined_bootloader.filename).is_file():
        return True
    return all((out / p.filename).is_file() for p in layout.split_bootloader)


def render_flash_script(layout: ImageLayout = ORANGEPI_5_PLUS_LAYOUT) -> str:
    """Shell helper writing the bootloader to a card at the layout offsets."""
    combined = layout.combined_bootloader
    split_checks = " && ".join(f"[ -f {p.filename} ]" for p in layout.split_bootloader)
    split_writes = "".join(
        f'  dd if={p.filename} of="$1" seek={p.sector} conv=notrunc,fsync\n' for p in layout.split_bootloader
    )
    return (
        "#!/bin/sh\n"
        f"# Write the {layout.name} bootloader to a card or eMMC.\n"
        "# Usage: sudo ./flash-uboot.sh /dev/sdX\n"
        "set -e\n"
        'if [ -z "$1" ]; then\n'
        '  echo "usage: $0 <device>" >&2\n'
        "  exit 1\n"
        "fi\n"
        'cd "$(dirname "$0")"\n'
        f"if [ -f {combined.filename} ]; then\n"
        f'  dd if={combined.filename} of="$1" seek={combined.sector} conv=notrunc,fsync\n'
        f"elif {split_checks}; then\n"
        f"{split_writes}"
        "else\n"
        '  echo "bootloader files not found" >&2\n'
        "  exit 1\n"
        "fi\n"
        "sync\n"
        'echo "bootloader written to $1"\n'
    )


def fetch_uboot(ctx: StageContext) -> None:
    config = ctx.config
    target = config.uboot_dir
    if (target / ".git").is_dir() and not config.clean_build:
        logger.info("Reusing existing U-Boot tree at %s", target)
        return
    if target.exists():
        shutil.rmtree(target)
    logger.info("Cloning U-Boot from %s (branch: %s)", config.uboot_repo_url, config.uboot_branch)
    ctx.run_with_retry(
        Command.of(
            "git",
            "clone",
            "--depth",
            "1",
            "--branch",
            config.uboot_branch,
            config.uboot_repo_url,
            target,
        ),
        description="clone U-Boot source",
    )


def install_uboot(config: BuildConfig, layout: ImageLayout = ORANGEPI_5_PLUS_LAYOUT) -> list[Path]:
    """Copy built blobs and the flashing helper to the output directory.

    Returns:
        Installed blob paths.

    Raises:
        BuildError: PreconditionMissing when the build produced no usable blob set.
    """
    out = config.uboot_output_dir
    out.mkdir(parents=True, exist_ok=True)
    installed: list[Path] = []
    for name in bootloader_files(layout):
        source = config.uboot_dir / name
        if source.is_file():
            shutil.copy2(source, out / name)
            installed.append(out / name)

    if not bootloader_built(config, layout):
        raise make_error(
            ErrorKind.PRECONDITION_MISSING,
            f"U-Boot build in {config.uboot_dir} produced none of {', '.join(bootloader_files(layout))}",
        )

    script = out / FLASH_SCRIPT
    script.write_text(render_flash_script(layout))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    logger.info("Installed %d bootloader file(s) and %s to %s", len(installed), FLASH_SCRIPT, out)
    return installed


def uboot_make(config: BuildConfig, *targets: str, jobs: int | None = None) -> Command:
    """U-Boot make invocation; ARCH comes from the defconfig (arm for RK3588)."""
    args = [f"CROSS_COMPILE={config.cross_compile}"]
    if jobs is not None:
        args.append(f"-j{jobs}")
    return Command("make", (*args, *targets), cwd=config.uboot_dir)


def configure_uboot(ctx: StageContext) -> str:
    """Apply the configured defconfig, falling back to related RK3588 boards.

    Returns:
        The defconfig that succeeded.

    Raises:
        BuildError: The last failure when no candidate applies, or Cancelled.
    """
    config = ctx.config
    candidates = [config.uboot_defconfig, *(d for d in FALLBACK_DEFCONFIGS if d != config.uboot_defconfig)]
    error: ErrorContext | None = None
    for defconfig in candidates:
        result = ctx.executor.run(uboot_make(config, defconfig), show_output=ctx.show_output)
        if result.error is None:
            if defconfig == config.uboot_defconfig:
                logger.info("Configured U-Boot with %s", defconfig)
            else:
                logger.warning("Configured U-Boot with fallback %s instead of %s", defconfig, config.uboot_defconfig)
            return defconfig
        if result.error.kind is ErrorKind.CANCELLED:
            raise BuildError(result.error)
        logger.warning("U-Boot defconfig %s failed", defconfig)
        error = result.error
    raise BuildError(error)


def build_uboot(ctx: StageContext) -> None:
    """Fetch, configure, build and install U-Boot."""
    config = ctx.config
    fetch_uboot(ctx)
    configure_uboot(ctx)
    logger.info("Building U-Boot with %d jobs", config.build_jobs)
    ctx.run(uboot_make(config, jobs=config.build_jobs))
    install_uboot(config)


__all__ = [
    "FALLBACK_DEFCONFIGS",
    "FLASH_SCRIPT",
    "bootloader_built",
    "bootloader_files",
    "build_uboot",
    "configure_uboot",
    "fetch_uboot",
    "install_uboot",
    "render_flash_script",
    "uboot_make",
]

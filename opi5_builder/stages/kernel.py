"""Kernel fetch, configuration, build and installation.

Fetching is network-bound and goes through the retry policy; configuration
and compilation are deterministic and run once.
"""

import logging
import shutil
from pathlib import Path

from opi5_builder.config import BuildConfig
from opi5_builder.errors import make_error
from opi5_builder.execution.command import Command, make_command
from opi5_builder.pipeline.stage import StageContext
from opi5_builder.resources import ResourceScope, enter_chroot
from opi5_builder.types import ErrorKind

logger = logging.getLogger(__name__)

# Board options applied on top of the defconfig with scripts/config
KERNEL_OPTIONS: tuple[tuple[str, str], ...] = (
    ("--enable", "CONFIG_PREEMPT_VOLUNTARY"),
    ("--enable", "CONFIG_HIGH_RES_TIMERS"),
    ("--enable", "CONFIG_SCHED_AUTOGROUP"),
    ("--enable", "CONFIG_CFS_BANDWIDTH"),
    ("--enable", "CONFIG_RT_GROUP_SCHED"),
    ("--enable", "CONFIG_CPU_FREQ_DEFAULT_GOV_SCHEDUTIL"),
    ("--enable", "CONFIG_ARM_RK3588_CPUFREQ"),
    ("--enable", "CONFIG_DRM_ROCKCHIP"),
    ("--enable", "CONFIG_DRM_PANFROST"),
)

KERNEL_TARGETS = ("Image", "dtbs", "modules")


def kernel_image(config: BuildConfig) -> Path:
    return config.kernel_dir / "arch" / config.target_arch / "boot" / "Image"


def device_tree_dir(config: BuildConfig) -> Path:
    return config.kernel_dir / "arch" / config.target_arch / "boot" / "dts" / "rockchip"


def kernel_built(config: BuildConfig) -> bool:
    return kernel_image(config).is_file()


def kernel_installed(config: BuildConfig) -> bool:
    return (config.rootfs_dir / "boot" / "Image").is_file()


def fetch_kernel(ctx: StageContext) -> None:
    """Clone the kernel tree (shallow, single branch)."""
    config = ctx.config
    target = config.kernel_dir

    if (target / ".git").is_dir() and not config.clean_build:
        logger.info("Reusing existing kernel tree at %s", target)
        return
    if target.exists():
        logger.info("Removing previous kernel tree %s", target)
        shutil.rmtree(target)

    logger.info("Cloning kernel from %s (branch: %s)", config.kernel_repo_url, config.kernel_branch)
    ctx.run_with_retry(
        Command.of(
            "git",
            "clone",
            "--depth",
            "1",
            "--branch",
            config.kernel_branch,
            config.kernel_repo_url,
            target,
        ),
        description="clone kernel source",
    )


def configure_kernel(ctx: StageContext) -> None:
    """Apply the defconfig and board options, then resolve new symbols."""
    config = ctx.config
    tree = config.kernel_dir
    if not (tree / "Makefile").is_file():
        raise make_error(ErrorKind.PRECONDITION_MISSING, f"Kernel source not found in {tree}")

    if config.clean_build:
        ctx.run(make_command(config.target_arch, config.cross_compile, "mrproper", cwd=tree))
    ctx.run(make_command(config.target_arch, config.cross_compile, config.kernel_defconfig, cwd=tree))

    options = [arg for option in KERNEL_OPTIONS for arg in option]
    ctx.run(Command.of("scripts/config", "--file", ".config", *options, cwd=tree))
    ctx.run(make_command(config.target_arch, config.cross_compile, "olddefconfig", cwd=tree))
    logger.info("Kernel configured (%s + %d board options)", config.kernel_defconfig, len(KERNEL_OPTIONS))


def build_kernel(ctx: StageContext) -> None:
    """Compile the kernel image, device trees and modules."""
    config = ctx.config
    logger.info("Compiling kernel with %d jobs", config.build_jobs)
    ctx.run(
        make_command(
            config.target_arch,
            config.cross_compile,
            *KERNEL_TARGETS,
            cwd=config.kernel_dir,
            jobs=config.build_jobs,
        )
    )
    if not kernel_built(config):
        raise make_error(ErrorKind.UNKNOWN, f"Kernel build produced no image at {kernel_image(config)}")


def install_kernel(ctx: StageContext) -> None:
    """Install the kernel image, device trees and modules into the root filesystem."""
    config = ctx.config
    boot = config.rootfs_dir / "boot"
    dtb_target = boot / "dtbs" / "rockchip"
    dtb_target.mkdir(parents=True, exist_ok=True)

    shutil.copy2(kernel_image(config), boot / "Image")

    board_dtb = device_tree_dir(config) / config.device_tree
    if board_dtb.is_file():
        shutil.copy2(board_dtb, dtb_target / board_dtb.name)
    else:
        fallback = sorted(device_tree_dir(config).glob("rk3588*.dtb"))
        if not fallback:
            raise make_error(
                ErrorKind.PRECONDITION_MISSING,
                f"Device tree {config.device_tree} not found in {device_tree_dir(config)}",
            )
        logger.warning("Device tree %s not built; installing %d RK3588 trees", config.device_tree, len(fallback))
        for dtb in fallback:
            shutil.copy2(dtb, dtb_target / dtb.name)

    ctx.run(
        make_command(
            config.target_arch,
            config.cross_compile,
            "modules_install",
            cwd=config.kernel_dir,
            extra=(f"INSTALL_MOD_PATH={config.rootfs_dir}",),
        )
    )

    output = ctx.run(
        Command.of(
            "make",
            f"ARCH={config.target_arch}",
            f"CROSS_COMPILE={config.cross_compile}",
            "-s",
            "kernelrelease",
            cwd=config.kernel_dir,
            capture=True,
        )
    ).output.strip()
    release = output.splitlines()[-1] if output else ""
    if release:
        _build_initramfs(ctx, release)
    logger.info("Kernel %s installed into %s", release or config.kernel_version, config.rootfs_dir)


def _build_initramfs(ctx: StageContext, release: str) -> None:
    config = ctx.config
    with ResourceScope("initramfs") as scope:
        enter_chroot(scope, ctx.executor, config.rootfs_dir)
        built = ctx.optional(
            Command.chroot(config.rootfs_dir, "update-initramfs", "-c", "-k", release),
            f"generate initramfs for {release}",
        )
    initrd = config.rootfs_dir / "boot" / f"initrd.img-{release}"
    if built and initrd.is_file():
        shutil.copy2(initrd, config.rootfs_dir / "boot" / "initrd.img")


__all__ = [
    "KERNEL_OPTIONS",
    "KERNEL_TARGETS",
    "build_kernel",
    "configure_kernel",
    "device_tree_dir",
    "fetch_kernel",
    "install_kernel",
    "kernel_built",
    "kernel_image",
    "kernel_installed",
]

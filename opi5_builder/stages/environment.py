"""Host environment checks and prerequisite installation."""

import logging
import os
import shutil

from opi5_builder.errors import make_error
from opi5_builder.execution.command import Command
from opi5_builder.pipeline.stage import StageContext
from opi5_builder.types import ErrorKind

logger = logging.getLogger(__name__)

# Host packages for cross-compilation, bootstrap and image assembly
HOST_PACKAGES: tuple[str, ...] = (
    "build-essential",
    "git",
    "bc",
    "bison",
    "flex",
    "libssl-dev",
    "libncurses-dev",
    "device-tree-compiler",
    "u-boot-tools",
    "gcc-aarch64-linux-gnu",
    "g++-aarch64-linux-gnu",
    "python3-pyelftools",
    "debootstrap",
    "qemu-user-static",
    "gdisk",
    "dosfstools",
    "e2fsprogs",
    "rsync",
    "xz-utils",
)

# Tools invoked later in the pipeline; missing ones are reported up front
REQUIRED_TOOLS: tuple[str, ...] = (
    "git",
    "make",
    "debootstrap",
    "sgdisk",
    "losetup",
    "mkfs.fat",
    "mkfs.ext4",
    "rsync",
    "mkimage",
    "xz",
)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


def free_space_mb(path: str) -> int:
    """Free space in MiB on the filesystem holding path (or its nearest existing parent)."""
    existing = os.path.abspath(path)
    while not os.path.exists(existing):
        parent = os.path.dirname(existing)
        if parent == existing:
            break
        existing = parent
    return shutil.disk_usage(existing).free // (1024 * 1024)


def missing_tools(tools: tuple[str, ...] = REQUIRED_TOOLS) -> list[str]:
    return [tool for tool in tools if shutil.which(tool) is None]


def setup_environment(ctx: StageContext) -> None:
    """Validate the host and create the working directories.

    Raises:
        BuildError: PermissionDenied when not root, ResourceUnavailable when
            disk space is short (a warning under continue-on-error).
    """
    config = ctx.config

    if os.geteuid() != 0:
        raise make_error(
            ErrorKind.PERMISSION_DENIED,
            "Root privileges are required (loop devices, mounts and chroot)",
        )

    available = free_space_mb(str(config.build_dir))
    if available < config.min_free_space_mb:
        message = (
            f"Insufficient disk space in {config.build_dir}: "
            f"{available} MiB available, {config.min_free_space_mb} MiB required"
        )
        if not config.continue_on_error:
            raise make_error(
                ErrorKind.RESOURCE_UNAVAILABLE,
                message,
                available_mb=available,
                required_mb=config.min_free_space_mb,
            )
        logger.warning("%s; continuing", message)
    else:
        logger.info("Disk space OK: %d MiB available", available)

    for directory in (config.build_dir, config.output_dir):
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise make_error(
                ErrorKind.RESOURCE_UNAVAILABLE,
                f"Cannot create directory {directory}: {e}",
            ) from e

    missing = missing_tools()
    if missing:
        logger.warning("Host tools not found (install prerequisites first): %s", ", ".join(missing))

    logger.info(
        "Building Ubuntu %s (%s) %s image, kernel %s, %d jobs",
        config.ubuntu_release,
        config.ubuntu_codename,
        config.distro_variant.value,
        config.kernel_version,
        config.build_jobs,
    )


def install_prerequisites(ctx: StageContext) -> None:
    """Install host packages with apt-get (network step, retried)."""
    ctx.run_with_retry(
        Command.of("apt-get", "update", env=APT_ENV),
        description="update host package lists",
    )
    ctx.run_with_retry(
        Command.of("apt-get", "install", "-y", "--no-install-recommends", *HOST_PACKAGES, env=APT_ENV),
        description="install host packages",
    )
    logger.info("Prerequisites installed (%d packages)", len(HOST_PACKAGES))


__all__ = [
    "HOST_PACKAGES",
    "REQUIRED_TOOLS",
    "free_space_mb",
    "install_prerequisites",
    "missing_tools",
    "setup_environment",
]

"""Image assembly engine.

Turns the built root filesystem and bootloader into a flashable artifact:

1. allocate the sparse image file
2. partition it per ImageLayout and verify the table
3. format the boot (FAT32) and root (ext4) partitions
4. attach a loop device and mount root, then boot
5. mirror the root filesystem tree into the mounts
6. write the bootloader blobs at the layout's byte offsets
7. write and compile the boot configuration
8. release mounts and loop device in reverse order
9. compress, checksum and write the manifest

Steps 3 and 4-7 each run inside a ResourceScope, so step 8 runs on success,
on failure and on cancellation alike.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from opi5_builder.config import BuildConfig
from opi5_builder.errors import BuildError, make_error
from opi5_builder.execution.command import Command
from opi5_builder.image.artifacts import (
    MANIFEST_SUFFIX,
    ArtifactInfo,
    describe,
    generate_manifest,
    write_checksum,
    write_manifest,
)
from opi5_builder.image.bootcfg import mkimage_command, write_boot_files
from opi5_builder.image.gpt import GptError, compare_with_layout, read_partitions
from opi5_builder.image.layout import (
    ORANGEPI_5_PLUS_LAYOUT,
    SECTOR_SIZE,
    ImageLayout,
    PartitionSpec,
)
from opi5_builder.image.writer import allocate_image, select_bootloader, write_bootloader
from opi5_builder.pipeline.stage import StageContext
from opi5_builder.resources import (
    ResourceScope,
    acquire_directory,
    attach_loop_device,
    get_mount_points_under,
    mount,
    partition_device,
)
from opi5_builder.types import ErrorKind

logger = logging.getLogger(__name__)

MIB = 1024 * 1024


@dataclass
class AssemblyResult:
    """Files produced by a successful assembly.

    Attributes:
        compressed: The xz-compressed image.
        checksum: The sha256sum file for the compressed image.
        manifest: JSON manifest path.
        artifacts: Manifest entries.
    """

    compressed: Path
    checksum: Path
    manifest: Path
    artifacts: list[ArtifactInfo] = field(default_factory=list)


def mkfs_command(part: PartitionSpec, device: str) -> Command:
    """Format command for a partition's designated filesystem."""
    if part.filesystem == "vfat":
        return Command.of("mkfs.fat", "-F", "32", "-n", part.label or part.name.upper(), device)
    if part.filesystem == "ext4":
        return Command.of("mkfs.ext4", "-F", "-L", part.label or part.name, device)
    raise ValueError(f"unsupported filesystem {part.filesystem!r} for {part.name}")


def rsync_excludes(config: BuildConfig) -> list[str]:
    """Exclude patterns for build paths nested inside the root filesystem tree.

    Keeps the copy from descending into the image being built or the mount
    point it is being copied to.
    """
    root = config.rootfs_dir.resolve()
    excludes = ["/boot/*"]
    for path in (config.build_dir, config.output_dir, config.mount_point, config.image_path.parent):
        try:
            relative = path.resolve().relative_to(root)
        except ValueError:
            continue
        if str(relative) != ".":
            pattern = f"/{relative.as_posix()}/"
            if pattern not in excludes:
                excludes.append(pattern)
    return excludes


def rootfs_copy_command(config: BuildConfig, target: Path) -> Command:
    """Mirror the root filesystem, preserving ownership, ACLs and xattrs."""
    excludes = [f"--exclude={pattern}" for pattern in rsync_excludes(config)]
    return Command.of(
        "rsync",
        "-aHAX",
        "--numeric-ids",
        "--one-file-system",
        *excludes,
        f"{config.rootfs_dir}/",
        f"{target}/",
    )


def boot_copy_command(config: BuildConfig, target: Path) -> Command:
    """Copy /boot onto the FAT partition (no ownership or symlinks on FAT)."""
    return Command.of(
        "rsync",
        "-rtL",
        "--modify-window=2",
        f"{config.rootfs_dir / 'boot'}/",
        f"{target}/",
    )


def verify_partition_table(image: Path, layout: ImageLayout) -> None:
    """Check the written GPT against the layout constants.

    Raises:
        BuildError: Unknown when the table is unreadable or differs.
    """
    try:
        problems = compare_with_layout(read_partitions(image), layout)
    except (GptError, OSError) as e:
        raise make_error(ErrorKind.UNKNOWN, f"Cannot read partition table of {image}: {e}") from e
    if problems:
        raise make_error(
            ErrorKind.UNKNOWN,
            f"Partition table does not match layout {layout.name}: {'; '.join(problems)}",
        )
    logger.info("Partition table matches layout %s", layout.name)


def assemble_image(
    config: BuildConfig,
    ctx: StageContext,
    layout: ImageLayout = ORANGEPI_5_PLUS_LAYOUT,
) -> AssemblyResult:
    """Build, compress and checksum the disk image.

    Args:
        config: Build configuration.
        ctx: Stage context (executor and cancellation token).
        layout: Partition layout.

    Returns:
        AssemblyResult describing the produced files.

    Raises:
        BuildError: On any failed step; mounts and loop devices are already
            released when it propagates.
    """
    image = config.image_path
    size_bytes = config.image_size_mb * MIB
    if size_bytes // SECTOR_SIZE < layout.minimum_sectors:
        raise make_error(
            ErrorKind.CONFIGURATION_ERROR,
            f"Image size {config.image_size_mb} MiB is too small for layout {layout.name}",
        )
    if not config.rootfs_dir.is_dir():
        raise make_error(ErrorKind.PRECONDITION_MISSING, f"Root filesystem not found: {config.rootfs_dir}")
    blobs = select_bootloader(config.uboot_output_dir, layout)

    live = get_mount_points_under(config.mount_point)
    if live:
        raise make_error(
            ErrorKind.RESOURCE_UNAVAILABLE,
            f"Mount point {config.mount_point} is busy ({', '.join(live)})",
        )

    ctx.check_cancelled()
    allocate_image(image, size_bytes)

    ctx.run(Command.of("sgdisk", "--zap-all", image))
    ctx.run(Command.of("sgdisk", *layout.sgdisk_args(), image))
    verify_partition_table(image, layout)
    # raw regions in front of the boot partition, before any loop device sees the file
    write_bootloader(image, blobs, layout.bootloader_limit)

    _format(ctx, image, layout)
    _populate(ctx, config, image, layout)

    ctx.check_cancelled()
    return _compress(ctx, config, image, layout)


def build_image(ctx: StageContext) -> None:
    """Stage body for image assembly."""
    result = assemble_image(ctx.config, ctx)
    logger.info("Image ready: %s", result.compressed)


def _format(ctx: StageContext, image: Path, layout: ImageLayout) -> None:
    with ResourceScope("format") as scope:
        loop = attach_loop_device(scope, ctx.executor, image)
        for part in layout.partitions:
            if part.filesystem is None:
                continue
            device = partition_device(loop, part.number)
            logger.info("Formatting %s (%s) as %s", device, part.name, part.filesystem)
            ctx.run(mkfs_command(part, device))
    _raise_release_errors(scope)


def _populate(
    ctx: StageContext,
    config: BuildConfig,
    image: Path,
    layout: ImageLayout,
) -> None:
    root_mount = config.mount_point
    boot_mount = root_mount / "boot"

    with ResourceScope("populate") as scope:
        loop = attach_loop_device(scope, ctx.executor, image)
        acquire_directory(scope, root_mount, temporary=True)
        mount(scope, ctx.executor, partition_device(loop, layout.rootfs.number), root_mount, backing=loop)
        mount(scope, ctx.executor, partition_device(loop, layout.boot.number), boot_mount, backing=loop)

        logger.info("Copying root filesystem into image")
        ctx.run(rootfs_copy_command(config, root_mount))
        ctx.run(boot_copy_command(config, boot_mount))

        script = write_boot_files(boot_mount, config, layout)
        ctx.run(mkimage_command(script))
        ctx.run(Command.of("sync"), cancellable=False)
    _raise_release_errors(scope)


def _compress(ctx: StageContext, config: BuildConfig, image: Path, layout: ImageLayout) -> AssemblyResult:
    logger.info("Compressing %s", image.name)
    ctx.run(Command.of("xz", "-9", "-T0", "-f", image))
    compressed = image.with_name(image.name + ".xz")
    if not compressed.is_file():
        raise make_error(ErrorKind.UNKNOWN, f"Compressed image missing: {compressed}")

    checksum = write_checksum(compressed)
    artifacts = [describe(compressed, "image"), describe(checksum, "checksum")]
    manifest = write_manifest(
        generate_manifest(artifacts, config, layout),
        image.with_name(image.name + MANIFEST_SUFFIX),
    )
    return AssemblyResult(compressed=compressed, checksum=checksum, manifest=manifest, artifacts=artifacts)


def _raise_release_errors(scope: ResourceScope) -> None:
    if scope.release_errors:
        raise BuildError(scope.release_errors[0])


__all__ = [
    "AssemblyResult",
    "assemble_image",
    "boot_copy_command",
    "build_image",
    "mkfs_command",
    "rootfs_copy_command",
    "rsync_excludes",
    "verify_partition_table",
]

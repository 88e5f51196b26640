"""The fixed, dependency-ordered stage table."""

from opi5_builder.image.assembly import build_image
from opi5_builder.pipeline.stage import Stage
from opi5_builder.stages.bootloader import bootloader_built, build_uboot
from opi5_builder.stages.environment import install_prerequisites, setup_environment
from opi5_builder.stages.gpu import fetch_gpu_blobs
from opi5_builder.stages.kernel import (
    build_kernel,
    configure_kernel,
    fetch_kernel,
    install_kernel,
    kernel_built,
    kernel_installed,
)
from opi5_builder.stages.rootfs import bootstrap_rootfs, rootfs_bootstrapped

STAGES: tuple[Stage, ...] = (
    Stage(
        name="environment",
        ordinal=1,
        title="Environment setup",
        run=setup_environment,
        description="Check privileges and disk space, create build directories",
    ),
    Stage(
        name="prerequisites",
        ordinal=2,
        title="Prerequisite installation",
        run=install_prerequisites,
        gate="install_prerequisites",
        description="Install host packages with apt-get",
    ),
    Stage(
        name="kernel_fetch",
        ordinal=3,
        title="Kernel source fetch",
        run=fetch_kernel,
        gate="build_kernel",
        description="Clone the kernel tree",
    ),
    Stage(
        name="kernel_configure",
        ordinal=4,
        title="Kernel configuration",
        run=configure_kernel,
        gate="build_kernel",
        requires=("kernel_fetch",),
        description="Apply defconfig and board options",
    ),
    Stage(
        name="kernel_build",
        ordinal=5,
        title="Kernel build",
        run=build_kernel,
        gate="build_kernel",
        requires=("kernel_configure",),
        artifact_check=kernel_built,
        description="Compile Image, device trees and modules",
    ),
    Stage(
        name="gpu_blobs",
        ordinal=6,
        title="GPU blob fetch",
        run=fetch_gpu_blobs,
        gate="install_gpu_blobs",
        description="Download Mali firmware and userspace blobs",
    ),
    Stage(
        name="rootfs_bootstrap",
        ordinal=7,
        title="Root filesystem bootstrap",
        run=bootstrap_rootfs,
        gate="build_rootfs",
        artifact_check=rootfs_bootstrapped,
        description="debootstrap and configure Ubuntu",
    ),
    Stage(
        name="kernel_install",
        ordinal=8,
        title="Kernel installation",
        run=install_kernel,
        gate="build_kernel",
        requires=("kernel_build", "rootfs_bootstrap"),
        artifact_check=kernel_installed,
        description="Install kernel, device trees and modules into the root filesystem",
    ),
    Stage(
        name="bootloader",
        ordinal=9,
        title="Bootloader build",
        run=build_uboot,
        gate="build_uboot",
        artifact_check=bootloader_built,
        description="Build U-Boot and write the flashing helper",
    ),
    Stage(
        name="image_assembly",
        ordinal=10,
        title="Image assembly",
        run=build_image,
        gate="create_image",
        requires=("rootfs_bootstrap", "kernel_install", "bootloader"),
        description="Partition, format, populate and compress the disk image",
    ),
)


def stage_names() -> list[str]:
    return [stage.name for stage in STAGES]


__all__ = ["STAGES", "stage_names"]

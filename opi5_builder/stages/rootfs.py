"""Root filesystem bootstrap and configuration.

This module handles:
- Bootstrapping an Ubuntu arm64 tree with debootstrap
- Writing apt sources, hostname, hosts, fstab and network configuration
- Running user setup and package installation inside a scoped chroot
- Installing staged GPU blobs

Package downloads are network-bound and retried; service enablement and GPU
blob installation are optional steps whose failures are logged.
"""

import logging
import shutil
from pathlib import Path

from opi5_builder.config import BuildConfig
from opi5_builder.errors import make_error
from opi5_builder.execution.command import Command
from opi5_builder.pipeline.stage import StageContext
from opi5_builder.resources import ResourceScope, enter_chroot, get_mount_points_under
from opi5_builder.stages.gpu import install_staged_blobs
from opi5_builder.types import DistroVariant, ErrorKind

logger = logging.getLogger(__name__)

COMPONENTS = "main,restricted,universe,multiverse"

# Installed by debootstrap itself
BASE_PACKAGES: tuple[str, ...] = (
    "systemd",
    "udev",
    "kmod",
    "initramfs-tools",
    "openssh-server",
    "sudo",
    "nano",
    "wget",
    "curl",
    "ca-certificates",
    "gnupg",
    "lsb-release",
    "network-manager",
    "wpasupplicant",
)

# Board support installed for every variant
HARDWARE_PACKAGES: tuple[str, ...] = (
    "linux-firmware",
    "wireless-regdb",
    "bluez",
    "avahi-daemon",
    "i2c-tools",
    "device-tree-compiler",
    "alsa-utils",
)

GPU_PACKAGES: tuple[str, ...] = (
    "mesa-utils",
    "mesa-vulkan-drivers",
    "mesa-va-drivers",
    "libvulkan1",
    "vulkan-tools",
    "clinfo",
    "vainfo",
)

VARIANT_PACKAGES: dict[DistroVariant, tuple[str, ...]] = {
    DistroVariant.DESKTOP: ("ubuntu-desktop-minimal", "pulseaudio", *GPU_PACKAGES),
    DistroVariant.SERVER: ("ubuntu-server-minimal", "htop", "vim", "ufw"),
    DistroVariant.EMULATION: ("ubuntu-desktop-minimal", "retroarch", "libsdl2-2.0-0", "joystick", *GPU_PACKAGES),
    DistroVariant.MINIMAL: (),
}

SERVICES: tuple[str, ...] = ("ssh", "systemd-networkd", "systemd-resolved", "NetworkManager")

USER_GROUPS = "sudo,audio,video,plugdev"

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


def rootfs_bootstrapped(config: BuildConfig) -> bool:
    """Whether the root filesystem tree holds a bootstrapped system."""
    root = config.rootfs_dir
    return (root / "etc" / "os-release").exists() and (root / "usr" / "bin").is_dir()


def packages_for(variant: DistroVariant) -> tuple[str, ...]:
    return HARDWARE_PACKAGES + VARIANT_PACKAGES[variant]


def render_sources_list(mirror: str, codename: str) -> str:
    components = COMPONENTS.replace(",", " ")
    suites = (codename, f"{codename}-updates", f"{codename}-backports", f"{codename}-security")
    return "".join(f"deb {mirror} {suite} {components}\n" for suite in suites)


def render_hosts(hostname: str) -> str:
    return (
        "127.0.0.1   localhost\n"
        f"127.0.1.1   {hostname}\n"
        "::1         localhost ip6-localhost ip6-loopback\n"
        "ff02::1     ip6-allnodes\n"
        "ff02::2     ip6-allrouters\n"
    )


FSTAB = "LABEL=ROOTFS  /      ext4  defaults,noatime  0  1\nLABEL=BOOT    /boot  vfat  defaults          0  2\n"

WIRED_NETWORK = "[Match]\nName=e*\n\n[Network]\nDHCP=yes\n"


def write_system_files(config: BuildConfig, root: Path) -> None:
    """Write apt sources and host identity files into the tree."""
    etc = root / "etc"
    (etc / "apt").mkdir(parents=True, exist_ok=True)
    (etc / "apt" / "sources.list").write_text(render_sources_list(config.ubuntu_mirror, config.ubuntu_codename))
    (etc / "hostname").write_text(f"{config.hostname}\n")
    (etc / "hosts").write_text(render_hosts(config.hostname))
    (etc / "fstab").write_text(FSTAB)
    network = etc / "systemd" / "network"
    network.mkdir(parents=True, exist_ok=True)
    (network / "10-wired.network").write_text(WIRED_NETWORK)
    logger.info("Wrote apt sources and host configuration for %s", config.hostname)


def user_exists(root: Path, username: str) -> bool:
    passwd = root / "etc" / "passwd"
    if not passwd.is_file():
        return False
    return any(line.split(":", 1)[0] == username for line in passwd.read_text().splitlines())


def bootstrap_rootfs(ctx: StageContext) -> None:
    """Bootstrap and configure the Ubuntu root filesystem.

    Raises:
        BuildError: ResourceUnavailable when the tree still has live mounts,
            RetriesExhausted when debootstrap or package installation fails.
    """
    config = ctx.config
    root = config.rootfs_dir

    live = get_mount_points_under(root)
    if live:
        raise make_error(
            ErrorKind.RESOURCE_UNAVAILABLE,
            f"Refusing to touch {root}: live mounts under it ({', '.join(live)})",
            mounts=live,
        )

    if config.clean_build and root.exists():
        logger.info("Removing previous root filesystem %s", root)
        shutil.rmtree(root)

    if rootfs_bootstrapped(config):
        logger.info("Reusing bootstrapped root filesystem at %s", root)
    else:
        root.mkdir(parents=True, exist_ok=True)
        logger.info("Bootstrapping Ubuntu %s (%s), this takes several minutes", config.ubuntu_release, config.ubuntu_codename)
        ctx.run_with_retry(
            Command.of(
                "debootstrap",
                f"--arch={config.target_arch}",
                f"--components={COMPONENTS}",
                f"--include={','.join(BASE_PACKAGES)}",
                config.ubuntu_codename,
                root,
                config.ubuntu_mirror,
            ),
            description="debootstrap base system",
        )

    write_system_files(config, root)

    with ResourceScope("rootfs-chroot") as scope:
        enter_chroot(scope, ctx.executor, root)
        _configure_in_chroot(ctx, root)

    try:
        installed = install_staged_blobs(config, root)
    except OSError as e:
        logger.warning("Optional step failed, continuing: install GPU blobs (%s)", e)
    else:
        if installed:
            logger.info("Installed %d GPU blob(s)", installed)

    logger.info("Root filesystem ready at %s", root)


def _configure_in_chroot(ctx: StageContext, root: Path) -> None:
    config = ctx.config

    if user_exists(root, config.username):
        logger.info("User %s already exists", config.username)
    else:
        ctx.run(Command.chroot(root, "useradd", "-m", "-s", "/bin/bash", "-G", USER_GROUPS, config.username))
    ctx.run(
        Command.chroot(
            root,
            "chpasswd",
            input=f"{config.username}:{config.password}\nroot:{config.password}\n",
        )
    )

    ctx.run_with_retry(Command.chroot(root, "apt-get", "update", env=APT_ENV), "update package lists")
    packages = packages_for(config.distro_variant)
    ctx.run_with_retry(
        Command.chroot(root, "apt-get", "install", "-y", *packages, env=APT_ENV),
        f"install {config.distro_variant.value} packages",
    )

    for service in SERVICES:
        ctx.optional(Command.chroot(root, "systemctl", "enable", service), f"enable {service}")
    ctx.optional(Command.chroot(root, "apt-get", "clean"), "clean package cache")


__all__ = [
    "BASE_PACKAGES",
    "HARDWARE_PACKAGES",
    "SERVICES",
    "VARIANT_PACKAGES",
    "bootstrap_rootfs",
    "packages_for",
    "render_hosts",
    "render_sources_list",
    "rootfs_bootstrapped",
    "user_exists",
    "write_system_files",
]

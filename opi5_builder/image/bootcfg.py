"""Boot configuration for the boot partition.

The boot script loads the kernel, device tree and optional initramfs from the
boot partition named in ImageLayout and passes the root filesystem by label,
so it is independent of which device node the card appears as.
"""

from pathlib import Path

from opi5_builder.config import BuildConfig
from opi5_builder.execution.command import Command
from opi5_builder.image.layout import ImageLayout

BOOT_SCRIPT_SOURCE = "boot.cmd"
BOOT_SCRIPT = "boot.scr"
ENV_FILE = "orangepiEnv.txt"
CONSOLE = "ttyS2,1500000"


def root_device(layout: ImageLayout) -> str:
    return f"LABEL={layout.rootfs.label}"


def fdt_path(config: BuildConfig) -> str:
    return f"rockchip/{config.device_tree}"


def render_boot_script(config: BuildConfig, layout: ImageLayout) -> str:
    """Render the U-Boot script source (compiled to boot.scr by mkimage)."""
    part = layout.boot.number
    return f"""\
# Orange Pi 5 Plus boot script
# Compile with: mkimage -C none -A arm64 -T script -d {BOOT_SCRIPT_SOURCE} {BOOT_SCRIPT}

setenv bootpart "{part}"
setenv rootdev "{root_device(layout)}"
setenv rootfstype "{layout.rootfs.filesystem}"
setenv fdtfile "{fdt_path(config)}"
setenv console "{CONSOLE}"
setenv extraargs ""

if test -e ${{devtype}} ${{devnum}}:${{bootpart}} {ENV_FILE}; then
    load ${{devtype}} ${{devnum}}:${{bootpart}} ${{scriptaddr}} {ENV_FILE}
    env import -t ${{scriptaddr}} ${{filesize}}
fi

setenv bootargs "root=${{rootdev}} rootfstype=${{rootfstype}} rootwait rw console=${{console}} console=tty1 ${{extraargs}}"

load ${{devtype}} ${{devnum}}:${{bootpart}} ${{kernel_addr_r}} Image
load ${{devtype}} ${{devnum}}:${{bootpart}} ${{fdt_addr_r}} dtbs/${{fdtfile}}
if load ${{devtype}} ${{devnum}}:${{bootpart}} ${{ramdisk_addr_r}} initrd.img; then
    booti ${{kernel_addr_r}} ${{ramdisk_addr_r}}:${{filesize}} ${{fdt_addr_r}}
else
    booti ${{kernel_addr_r}} - ${{fdt_addr_r}}
fi
"""


def render_env_file(config: BuildConfig, layout: ImageLayout) -> str:
    """Render orangepiEnv.txt, imported by the boot script."""
    lines = [
        "verbosity=1",
        "bootlogo=false",
        f"fdtfile={fdt_path(config)}",
        f"rootdev={root_device(layout)}",
        f"rootfstype={layout.rootfs.filesystem}",
        f"console={CONSOLE}",
        "extraargs=",
    ]
    return "\n".join(lines) + "\n"


def write_boot_files(boot_dir: Path, config: BuildConfig, layout: ImageLayout) -> Path:
    """Write boot.cmd and orangepiEnv.txt into the mounted boot partition.

    Returns:
        Path of the boot script source.
    """
    script = boot_dir / BOOT_SCRIPT_SOURCE
    script.write_text(render_boot_script(config, layout))
    (boot_dir / ENV_FILE).write_text(render_env_file(config, layout))
    return script


def mkimage_command(script: Path) -> Command:
    """Command compiling the script source next to itself as boot.scr."""
    return Command.of(
        "mkimage",
        "-C",
        "none",
        "-A",
        "arm64",
        "-T",
        "script",
        "-d",
        script,
        script.with_name(BOOT_SCRIPT),
    )


__all__ = [
    "BOOT_SCRIPT",
    "BOOT_SCRIPT_SOURCE",
    "ENV_FILE",
    "mkimage_command",
    "render_boot_script",
    "render_env_file",
    "root_device",
    "write_boot_files",
]

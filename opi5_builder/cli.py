"""Thin CLI wrapper for opi5_builder.

This module provides the command-line interface using Typer.
All build logic is delegated to the pipeline.
"""

from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from opi5_builder import __version__
from opi5_builder.cancel import CancellationToken, handle_signals
from opi5_builder.config import UBUNTU_RELEASES, BuildConfig, load_config, print_config_json
from opi5_builder.errors import EXIT_CODES, BuildError, exit_code_for
from opi5_builder.image.layout import ORANGEPI_5_PLUS_LAYOUT, SECTOR_SIZE
from opi5_builder.logs import configure_logging
from opi5_builder.pipeline.stage import PipelineResult
from opi5_builder.types import DistroVariant, ErrorKind, StageStatus

app = typer.Typer(
    name="opi5-build",
    help="Orange Pi 5 Plus image builder - kernel, U-Boot, Ubuntu rootfs and disk image",
    no_args_is_help=True,
)
console = Console()

STATUS_STYLES = {
    StageStatus.SUCCEEDED: "green",
    StageStatus.FAILED: "red",
    StageStatus.SKIPPED: "yellow",
    StageStatus.RUNNING: "cyan",
    StageStatus.PENDING: "dim",
}

EnvFileOption = Annotated[
    Path | None,
    typer.Option("--env-file", "-e", help="KEY=value file with configuration overrides"),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"opi5-builder version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Orange Pi 5 Plus image builder."""


def _load(env_file: Path | None, **overrides: Any) -> BuildConfig:
    try:
        return load_config(env_file, **overrides)
    except BuildError as e:
        console.print(f"[red]Configuration error:[/red] {e.context.message}")
        raise typer.Exit(code=exit_code_for(e.context)) from None


def print_summary(result: PipelineResult) -> None:
    """Render the per-stage outcome table and the final verdict."""
    table = Table(title="Build summary")
    table.add_column("#", justify="right")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Time", justify="right")
    table.add_column("Error")
    for index, outcome in enumerate(result.outcomes, start=1):
        style = STATUS_STYLES[outcome.status]
        table.add_row(
            str(index),
            outcome.title,
            f"[{style}]{outcome.status.value}[/{style}]",
            f"{outcome.duration:.1f}s" if outcome.started_at else "-",
            outcome.error.kind.value if outcome.error else "",
        )
    console.print(table)

    if result.success:
        console.print("[green]Build completed successfully[/green]")
    elif result.cancelled:
        console.print(f"[yellow]Build cancelled:[/yellow] {escape(result.error.summary())}")
    else:
        console.print(f"[red]Build failed:[/red] {escape(result.error.summary())}")


@app.command()
def build(
    env_file: EnvFileOption = None,
    kernel_repo: Annotated[str | None, typer.Option("--kernel-repo", help="Kernel git URL")] = None,
    kernel_branch: Annotated[str | None, typer.Option("--kernel-branch", help="Kernel branch")] = None,
    uboot_repo: Annotated[str | None, typer.Option("--uboot-repo", help="U-Boot git URL")] = None,
    uboot_branch: Annotated[str | None, typer.Option("--uboot-branch", help="U-Boot branch")] = None,
    release: Annotated[
        str | None,
        typer.Option("--release", "-r", help="Ubuntu version or codename (e.g. 24.04 or noble)"),
    ] = None,
    variant: Annotated[
        DistroVariant | None,
        typer.Option("--variant", help="Distribution variant"),
    ] = None,
    prerequisites: Annotated[
        bool | None,
        typer.Option("--with-prerequisites/--without-prerequisites", help="Install host packages"),
    ] = None,
    kernel: Annotated[
        bool | None,
        typer.Option("--with-kernel/--without-kernel", help="Fetch, build and install the kernel"),
    ] = None,
    gpu: Annotated[
        bool | None,
        typer.Option("--with-gpu/--without-gpu", help="Download Mali GPU blobs"),
    ] = None,
    opencl: Annotated[
        bool | None,
        typer.Option("--with-opencl/--without-opencl", help="Include the OpenCL userspace blob"),
    ] = None,
    vulkan: Annotated[
        bool | None,
        typer.Option("--with-vulkan/--without-vulkan", help="Include the Vulkan userspace blob"),
    ] = None,
    rootfs: Annotated[
        bool | None,
        typer.Option("--with-rootfs/--without-rootfs", help="Bootstrap the Ubuntu root filesystem"),
    ] = None,
    uboot: Annotated[
        bool | None,
        typer.Option("--with-uboot/--without-uboot", help="Build U-Boot"),
    ] = None,
    image: Annotated[
        bool | None,
        typer.Option("--with-image/--without-image", help="Assemble the disk image"),
    ] = None,
    image_size: Annotated[int | None, typer.Option("--image-size", help="Image size in MiB")] = None,
    jobs: Annotated[int | None, typer.Option("--jobs", "-j", help="Parallel build jobs")] = None,
    build_dir: Annotated[Path | None, typer.Option("--build-dir", help="Working directory")] = None,
    output_dir: Annotated[Path | None, typer.Option("--output-dir", help="Artifact directory")] = None,
    max_retries: Annotated[
        int | None,
        typer.Option("--max-retries", help="Attempts for network steps"),
    ] = None,
    clean: Annotated[
        bool | None,
        typer.Option("--clean/--no-clean", help="Start from fresh source trees"),
    ] = None,
    continue_on_error: Annotated[
        bool | None,
        typer.Option("--continue-on-error", help="Log stage failures and keep going"),
    ] = None,
    verbose: Annotated[
        bool | None,
        typer.Option("--verbose", "-v", help="Echo command output and log at DEBUG"),
    ] = None,
) -> None:
    """Run the build pipeline.

    Exits 0 on success, 130 when cancelled, otherwise a code derived from
    the failure kind.
    """
    config = _load(
        env_file,
        kernel_repo_url=kernel_repo,
        kernel_branch=kernel_branch,
        uboot_repo_url=uboot_repo,
        uboot_branch=uboot_branch,
        ubuntu_release=release,
        distro_variant=variant,
        install_prerequisites=prerequisites,
        build_kernel=kernel,
        install_gpu_blobs=gpu,
        enable_opencl=opencl,
        enable_vulkan=vulkan,
        build_rootfs=rootfs,
        build_uboot=uboot,
        create_image=image,
        image_size_mb=image_size,
        build_jobs=jobs,
        build_dir=build_dir,
        output_dir=output_dir,
        max_retries=max_retries,
        clean_build=clean,
        continue_on_error=continue_on_error,
        verbose=verbose,
    )

    from opi5_builder.pipeline.controller import run_pipeline

    level = "DEBUG" if config.verbose else config.log_level
    token = CancellationToken()
    try:
        sinks = configure_logging(level, config.log_file, config.error_log_file, console=Console(stderr=True))
    except OSError as e:
        console.print(f"[red]Cannot open log files:[/red] {e}")
        raise typer.Exit(code=EXIT_CODES[ErrorKind.RESOURCE_UNAVAILABLE]) from None

    with sinks, handle_signals(token):
        result = run_pipeline(config, token=token)

    print_summary(result)
    if result.success:
        console.print(f"Output directory: {config.output_dir}")
    raise typer.Exit(code=exit_code_for(result.error))


@app.command()
def config(
    env_file: EnvFileOption = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = _load(env_file)
    if json_output:
        typer.echo(print_config_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Build directory:     {settings.build_dir}")
    console.print(f"  Output directory:    {settings.output_dir}")
    console.print(f"  Log file:            {settings.log_file}")
    console.print(f"  Error log file:      {settings.error_log_file}")
    console.print(f"  Image:               {settings.image_name}")
    console.print()
    console.print("[bold]Sources:[/bold]")
    console.print(f"  Kernel:              {settings.kernel_repo_url} ({settings.kernel_branch})")
    console.print(f"  U-Boot:              {settings.uboot_repo_url} ({settings.uboot_branch})")
    console.print(
        f"  Ubuntu:              {settings.ubuntu_release} ({settings.ubuntu_codename}), "
        f"{settings.distro_variant.value}"
    )
    console.print()
    console.print("[bold]Components:[/bold]")
    for flag in (
        "install_prerequisites",
        "build_kernel",
        "install_gpu_blobs",
        "enable_opencl",
        "enable_vulkan",
        "build_rootfs",
        "build_uboot",
        "create_image",
    ):
        console.print(f"  {flag:<21}{getattr(settings, flag)}")
    console.print()
    console.print("[bold]Execution:[/bold]")
    console.print(f"  Jobs:                {settings.build_jobs}")
    console.print(f"  Max retries:         {settings.max_retries}")
    console.print(f"  Continue on error:   {settings.continue_on_error}")
    console.print(f"  Clean build:         {settings.clean_build}")
    console.print(f"  Log level:           {settings.log_level}")


@app.command()
def layout() -> None:
    """Show the partition layout and bootloader offsets."""
    table = Table(title=f"{ORANGEPI_5_PLUS_LAYOUT.name} layout ({SECTOR_SIZE}-byte sectors)")
    table.add_column("#", justify="right")
    table.add_column("Name")
    table.add_column("Start", justify="right")
    table.add_column("End", justify="right")
    table.add_column("Filesystem")
    table.add_column("Label")
    for part in ORANGEPI_5_PLUS_LAYOUT.partitions:
        table.add_row(
            str(part.number),
            part.name,
            str(part.start),
            "end of disk" if part.end is None else str(part.end),
            part.filesystem or "raw",
            part.label or "",
        )
    console.print(table)

    console.print("[bold]Bootloader placement:[/bold]")
    for placement in (ORANGEPI_5_PLUS_LAYOUT.combined_bootloader, *ORANGEPI_5_PLUS_LAYOUT.split_bootloader):
        console.print(f"  {placement.filename:<22} sector {placement.sector} (byte {placement.offset})")


@app.command()
def releases() -> None:
    """List supported Ubuntu releases."""
    for release in UBUNTU_RELEASES:
        lts = " LTS" if release.is_lts else ""
        console.print(
            f"  [green]{release.version}[/green]  {release.codename:<10} "
            f"{release.full_name}{lts} (kernel {release.kernel_series})"
        )


@app.command()
def stages() -> None:
    """List pipeline stages with their gating flags."""
    from opi5_builder.pipeline.registry import STAGES

    for stage in STAGES:
        gate = stage.gate or "always"
        requires = f" (requires {', '.join(stage.requires)})" if stage.requires else ""
        console.print(f"  {stage.ordinal:>2}. [green]{stage.name}[/green] {escape(f'[{gate}]')}{requires}")
        console.print(f"      {stage.description}")


if __name__ == "__main__":
    app()

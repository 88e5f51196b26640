"""Build configuration for opi5_builder.

Uses pydantic-settings to assemble a single immutable BuildConfig from
defaults and an optional key=value environment file. Configuration precedence:
CLI flags > env file > defaults. The process environment is not consulted.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from opi5_builder.errors import BuildError
from opi5_builder.types import DistroVariant, ErrorContext, ErrorKind

DEFAULT_BUILD_DIR = Path("/tmp/opi5plus_build")
DEFAULT_LOG_FILE = Path("/tmp/opi5plus_build.log")
DEFAULT_ERROR_LOG_FILE = Path("/tmp/opi5plus_build_errors.log")


@dataclass(frozen=True)
class UbuntuRelease:
    """An Ubuntu release the builder can bootstrap."""

    version: str
    codename: str
    full_name: str
    kernel_series: str
    is_lts: bool


UBUNTU_RELEASES: tuple[UbuntuRelease, ...] = (
    UbuntuRelease("20.04", "focal", "Focal Fossa", "5.4", True),
    UbuntuRelease("22.04", "jammy", "Jammy Jellyfish", "5.15", True),
    UbuntuRelease("24.04", "noble", "Noble Numbat", "6.8", True),
    UbuntuRelease("24.10", "oracular", "Oracular Oriole", "6.11", False),
    UbuntuRelease("25.04", "plucky", "Plucky Puffin", "6.8", False),
)


def find_ubuntu_release(version_or_codename: str) -> UbuntuRelease | None:
    """Look up a release by version ('24.04') or codename ('noble').

    Args:
        version_or_codename: Release identifier, case-insensitive.

    Returns:
        Matching UbuntuRelease, or None if unknown.
    """
    needle = version_or_codename.strip().lower()
    for release in UBUNTU_RELEASES:
        if needle in (release.version, release.codename):
            return release
    return None


def _default_jobs() -> int:
    """Return the default build parallelism (CPU count)."""
    return os.cpu_count() or 4


class BuildConfig(BaseSettings):
    """Configuration threaded through every build stage.

    Instances are frozen: user choices are applied before the pipeline starts
    by constructing a new instance (see load_config / model_copy).
    """

    model_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Paths
    build_dir: Path = Field(
        default=DEFAULT_BUILD_DIR,
        description="Working directory for sources and the root filesystem",
    )
    output_dir: Path = Field(
        default=DEFAULT_BUILD_DIR / "output",
        description="Directory receiving images, bootloader binaries and checksums",
    )
    log_file: Path = Field(
        default=DEFAULT_LOG_FILE,
        description="Persistent full log",
    )
    error_log_file: Path = Field(
        default=DEFAULT_ERROR_LOG_FILE,
        description="Persistent error-only log",
    )

    # Target and toolchain
    target_arch: str = Field(default="arm64", description="Kernel ARCH value")
    cross_compile: str = Field(
        default="aarch64-linux-gnu-",
        description="Cross-toolchain prefix",
    )

    # Kernel sources
    kernel_repo_url: str = "https://github.com/Joshua-Riek/linux-rockchip.git"
    kernel_branch: str = "ubuntu-rockchip-6.8-opi5"
    kernel_defconfig: str = "defconfig"
    kernel_version: str = "6.8.0"
    device_tree: str = "rk3588-orangepi-5-plus.dtb"

    # Bootloader sources
    uboot_repo_url: str = "https://github.com/orangepi-xunlong/u-boot-orangepi.git"
    uboot_branch: str = "v2017.09-rk3588"
    uboot_defconfig: str = "orangepi_5_plus_defconfig"

    # Distribution
    ubuntu_release: str = Field(
        default="24.04",
        description="Ubuntu version or codename (normalized to the version)",
    )
    ubuntu_mirror: str = "http://ports.ubuntu.com/ubuntu-ports"
    distro_variant: DistroVariant = DistroVariant.DESKTOP
    hostname: str = "orangepi5plus"
    username: str = "orangepi"
    password: str = "orangepi"

    # Feature toggles
    install_prerequisites: bool = True
    build_kernel: bool = True
    install_gpu_blobs: bool = True
    enable_opencl: bool = True
    enable_vulkan: bool = True
    build_rootfs: bool = True
    build_uboot: bool = True
    create_image: bool = True

    # Image
    image_size_mb: int = Field(default=8192, ge=512, description="Image size in MiB")

    # Execution policy
    build_jobs: int = Field(default_factory=_default_jobs, ge=1)
    max_retries: int = Field(default=3, ge=1, le=20)
    retry_delay: float = Field(default=2.0, ge=0)
    continue_on_error: bool = False
    clean_build: bool = True
    verbose: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    min_free_space_mb: int = Field(default=15000, ge=0)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings, dotenv_settings)

    @model_validator(mode="before")
    @classmethod
    def _derive_output_dir(cls, data: Any) -> Any:
        # output_dir follows build_dir unless set explicitly
        if isinstance(data, dict) and data.get("build_dir") and not data.get("output_dir"):
            data = {**data, "output_dir": Path(data["build_dir"]) / "output"}
        return data

    @field_validator("ubuntu_release")
    @classmethod
    def _normalize_release(cls, value: str) -> str:
        release = find_ubuntu_release(value)
        if release is None:
            known = ", ".join(r.version for r in UBUNTU_RELEASES)
            raise ValueError(f"unknown Ubuntu release {value!r} (known: {known})")
        return release.version

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    # Derived values

    @property
    def release(self) -> UbuntuRelease:
        release = find_ubuntu_release(self.ubuntu_release)
        assert release is not None  # guaranteed by the validator
        return release

    @property
    def ubuntu_codename(self) -> str:
        return self.release.codename

    @property
    def kernel_dir(self) -> Path:
        return self.build_dir / "linux"

    @property
    def uboot_dir(self) -> Path:
        return self.build_dir / "u-boot"

    @property
    def rootfs_dir(self) -> Path:
        return self.build_dir / "rootfs"

    @property
    def gpu_dir(self) -> Path:
        return self.build_dir / "mali"

    @property
    def mount_point(self) -> Path:
        return self.build_dir / "mnt"

    @property
    def uboot_output_dir(self) -> Path:
        return self.output_dir / "uboot"

    @property
    def image_name(self) -> str:
        """Deterministic image filename from release codename and kernel version."""
        return f"orangepi-5-plus-ubuntu-{self.ubuntu_codename}-{self.kernel_version}.img"

    @property
    def image_path(self) -> Path:
        return self.output_dir / self.image_name


def load_config(env_file: Path | None = None, **overrides: Any) -> BuildConfig:
    """Build the configuration once at startup.

    Args:
        env_file: Optional key=value file (e.g. BUILD_JOBS=8, OUTPUT_DIR=/out).
        **overrides: Explicit values (CLI flags); None values are ignored.

    Returns:
        Frozen BuildConfig.

    Raises:
        BuildError: ConfigurationError when the env file is missing or a value
            fails validation.
    """
    if env_file is not None and not env_file.is_file():
        raise BuildError(
            ErrorContext.create(
                ErrorKind.CONFIGURATION_ERROR,
                f"Environment file not found: {env_file}",
            )
        )

    explicit = {key: value for key, value in overrides.items() if value is not None}
    try:
        return BuildConfig(_env_file=env_file, **explicit)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise BuildError(
            ErrorContext.create(
                ErrorKind.CONFIGURATION_ERROR,
                f"Invalid configuration: {problems}",
            )
        ) from e


def print_config_json(config: BuildConfig | None = None) -> str:
    """Render the effective configuration as JSON.

    Args:
        config: Optional config instance; uses defaults if not provided.

    Returns:
        JSON string of the effective configuration.
    """
    if config is None:
        config = BuildConfig()
    return config.model_dump_json(indent=2, exclude={"password"})


__all__ = [
    "UBUNTU_RELEASES",
    "BuildConfig",
    "UbuntuRelease",
    "find_ubuntu_release",
    "load_config",
    "print_config_json",
]

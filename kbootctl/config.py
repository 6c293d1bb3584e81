"""Configuration settings for kbootctl.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

These are host-side settings (where the sibling projects live, how the tool
itself logs). Per-build parameters live in kbootctl.params.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the KBOOT_ prefix.
    Relative directories are resolved against the current working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="KBOOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Project locations
    kernel_dir: Path = Field(
        default=Path("."),
        description="Kernel crate root (where targets/ and src/ live)",
    )
    bootloader_dir: Path = Field(
        default=Path("../bootloader"),
        description="Second-stage bootloader project (aarch64)",
    )
    proxy_kernel_dir: Path = Field(
        default=Path("../riscv-pk"),
        description="RISC-V proxy kernel source tree",
    )
    user_dir: Path = Field(
        default=Path("../user"),
        description="User program project that builds the filesystem image",
    )
    tools_dir: Path = Field(
        default=Path("../tools"),
        description="Helper scripts (gdbinit, addr2line.py, u540/mkimg.sh)",
    )
    tests_dir: Path = Field(
        default=Path("../tests"),
        description="Directory receiving test-run serial output",
    )

    # Artifact names
    kernel_name: str = Field(
        default="rcore",
        description="File name of the compiled kernel binary",
    )
    bootloader_name: str = Field(
        default="rcore-bootloader",
        description="File name of the bootloader ELF",
    )

    # Emulator
    memory: str = Field(
        default="4G",
        description="Guest memory size for x86_64",
    )

    # Operational
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    build_log: Path | None = Field(
        default=None,
        description="Append stage output to this file instead of the terminal",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]

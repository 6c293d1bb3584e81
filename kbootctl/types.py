"""Shared type definitions for kbootctl.

This module contains enums and small dataclasses shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class Arch(str, Enum):
    """Target instruction set the kernel is compiled for."""

    X86_64 = "x86_64"
    RISCV32 = "riscv32"
    RISCV64 = "riscv64"
    AARCH64 = "aarch64"

    @property
    def is_riscv(self) -> bool:
        return self in (Arch.RISCV32, Arch.RISCV64)


class Board(str, Enum):
    """Hardware profile layered on an architecture."""

    NONE = "none"
    U540 = "u540"
    RASPI3 = "raspi3"


class BuildMode(str, Enum):
    """Cargo build profile."""

    DEBUG = "debug"
    RELEASE = "release"


class KernelLogLevel(str, Enum):
    """Log level compiled into the kernel (exported as LOG)."""

    OFF = "off"
    ERROR = "error"
    WARN = "warn"
    INFO = "info"
    DEBUG = "debug"
    TRACE = "trace"


class TimerVariant(str, Enum):
    """Timer driven by the raspi3 board support."""

    GENERIC = "generic"
    SYSTEM = "system"


class ArtifactKind(str, Enum):
    """Kind of the final bootable artifact."""

    COMBINED_IMAGE = "combined-image"
    SUPERVISOR_IMAGE = "wrapped-supervisor-image"
    BOOTLOADER_BINARY = "converted-bootloader-binary"


class LogLevel(str, Enum):
    """Logging level of the tool itself."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LaunchVariant(str, Enum):
    """Flavour of emulator launch."""

    DEFAULT = "default"
    NET = "net"
    GUI = "gui"
    TEST = "test"
    GDB = "gdb"


@dataclass(frozen=True)
class BootArtifact:
    """Final bootable artifact of a completed boot chain.

    Attributes:
        arch: Architecture the artifact boots on.
        kind: Which boot chain produced it.
        path: Filesystem path, keyed by (arch, mode).
        stage: Name of the stage that published it.
    """

    arch: Arch
    kind: ArtifactKind
    path: str
    stage: str


__all__ = [
    "Arch",
    "ArtifactKind",
    "Board",
    "BootArtifact",
    "BuildMode",
    "KernelLogLevel",
    "LaunchVariant",
    "LogLevel",
    "TimerVariant",
]

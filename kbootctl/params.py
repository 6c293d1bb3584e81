"""Parameter normalization.

Turns raw user input (CLI options, environment) into a canonical,
immutable BuildConfig, and derives the on-disk layout keyed by
(architecture, mode).

Unsupported architecture/board pairs are rejected here instead of being
silently defaulted.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from kbootctl.errors import ConfigurationError
from kbootctl.types import Arch, Board, BuildMode, KernelLogLevel, TimerVariant

if TYPE_CHECKING:
    from kbootctl.config import Settings

logger = logging.getLogger(__name__)

# Recognized (architecture, board) pairs
SUPPORTED_BOARDS: dict[Arch, frozenset[Board]] = {
    Arch.X86_64: frozenset({Board.NONE}),
    Arch.RISCV32: frozenset({Board.NONE}),
    Arch.RISCV64: frozenset({Board.NONE, Board.U540}),
    Arch.AARCH64: frozenset({Board.RASPI3}),
}

# Architectures with exactly one board; "none" resolves to it
FORCED_BOARD: dict[Arch, Board] = {
    Arch.AARCH64: Board.RASPI3,
}

# Boards whose kernel runs with 39-bit virtual addressing
SV39_BOARDS = frozenset({Board.U540})

PCI_ADDRESS_PATTERN = re.compile(r"^[0-9a-fA-F]{4}:[0-9a-fA-F]{2}:[0-9a-fA-F]{2}\.[0-7]$")


class BuildParams(BaseModel):
    """Raw build parameters as given by the user.

    Attributes:
        arch: Target architecture.
        board: Board profile ("none" runs on the emulator's generic machine).
        mode: Build mode.
        log: Kernel log level.
        graphic: Enable the emulator's graphical output.
        net: Attach a network device when launching.
        smp: Number of emulated cores.
        pci_passthru: PCI bus address to pass through (x86_64 only).
        init: Program the kernel runs instead of the user shell.
        timer: Timer variant for raspi3.
        sfsimg: Filesystem image path override.
        trace: Emulator debug-trace selector passed through to ``-d``.
    """

    model_config = ConfigDict(extra="forbid")

    arch: Arch = Arch.RISCV64
    board: Board = Board.NONE
    mode: BuildMode = BuildMode.DEBUG
    log: KernelLogLevel = KernelLogLevel.DEBUG
    graphic: bool = False
    net: bool = False
    smp: int = Field(default=4, description="SMP core number")
    pci_passthru: str | None = None
    init: str | None = None
    timer: TimerVariant = TimerVariant.GENERIC
    sfsimg: Path | None = None
    trace: str | None = None

    @field_validator("pci_passthru", "init", "trace")
    @classmethod
    def empty_to_none(cls, v: str | None) -> str | None:
        """Treat empty strings like unset values."""
        if v is not None and not v.strip():
            return None
        return v


class BuildConfig(BaseModel):
    """Canonical, immutable configuration for one invocation."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    arch: Arch
    board: Board
    mode: BuildMode
    log: KernelLogLevel
    graphic: bool
    net: bool
    smp: int
    pci_passthru: str | None
    init: str | None
    timer: TimerVariant
    sv39: bool
    sfsimg: Path | None
    trace: str | None


def normalize(params: BuildParams | dict[str, object]) -> BuildConfig:
    """Validate and default raw parameters into a BuildConfig.

    Args:
        params: BuildParams instance or a mapping of raw values.

    Returns:
        Frozen BuildConfig.

    Raises:
        ConfigurationError: For any value outside its domain or any
            unsupported architecture/board combination.
    """
    if not isinstance(params, BuildParams):
        try:
            params = BuildParams.model_validate(params)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid build parameters: {e}") from e

    board = params.board
    forced = FORCED_BOARD.get(params.arch)
    if forced is not None and board == Board.NONE:
        logger.debug("Board for %s resolves to %s", params.arch.value, forced.value)
        board = forced

    if board not in SUPPORTED_BOARDS[params.arch]:
        supported = ", ".join(sorted(b.value for b in SUPPORTED_BOARDS[params.arch]))
        raise ConfigurationError(
            f"Board '{board.value}' is not supported on {params.arch.value} "
            f"(supported: {supported})"
        )

    if params.smp < 1:
        raise ConfigurationError(f"smp must be at least 1, got {params.smp}")

    if params.pci_passthru is not None:
        if params.arch != Arch.X86_64:
            raise ConfigurationError(
                f"PCI passthrough is only available on x86_64, not {params.arch.value}"
            )
        if not PCI_ADDRESS_PATTERN.match(params.pci_passthru):
            raise ConfigurationError(
                f"pci_passthru must look like 0000:00:00.1, got '{params.pci_passthru}'"
            )

    return BuildConfig(
        arch=params.arch,
        board=board,
        mode=params.mode,
        log=params.log,
        graphic=params.graphic,
        net=params.net,
        smp=params.smp,
        pci_passthru=params.pci_passthru,
        init=params.init,
        timer=params.timer,
        sv39=board in SV39_BOARDS,
        sfsimg=params.sfsimg,
        trace=params.trace,
    )


@dataclass(frozen=True)
class BuildLayout:
    """Filesystem layout for one (architecture, mode) key.

    Attributes:
        kernel_dir: Kernel crate root; stages run from here.
        build_dir: target/<arch>/<mode> output directory.
        kernel: Raw compiled kernel binary.
        kernel_img: Final artifact for direct-kernel-load architectures.
        bootimage: Final artifact for x86_64.
        bbl_dir: Scratch tree for the proxy kernel build (RISC-V).
        scratch_stripped: Transient stripped kernel copy (aarch64).
        bootloader: Bootloader ELF produced by the bootloader project.
        sfsimg: User-program filesystem image.
    """

    kernel_dir: Path
    build_dir: Path
    kernel: Path
    kernel_img: Path
    bootimage: Path
    bbl_dir: Path
    scratch_stripped: Path
    bootloader: Path
    sfsimg: Path


def default_sfsimg(user_dir: Path, arch: Arch) -> Path:
    """Return the filesystem image the user project builds for an arch."""
    suffix = "img" if arch == Arch.AARCH64 else "qcow2"
    return user_dir / "build" / f"{arch.value}.{suffix}"


def resolve_layout(config: BuildConfig, settings: Settings) -> BuildLayout:
    """Derive artifact paths from the config and host settings.

    Args:
        config: Normalized build configuration.
        settings: Host settings locating sibling projects.

    Returns:
        BuildLayout with absolute paths.
    """
    kernel_dir = settings.kernel_dir.resolve()
    target_dir = kernel_dir / "target" / config.arch.value
    build_dir = target_dir / config.mode.value
    kernel = build_dir / settings.kernel_name
    bootloader_dir = settings.bootloader_dir.resolve()

    sfsimg = config.sfsimg or default_sfsimg(settings.user_dir, config.arch)

    return BuildLayout(
        kernel_dir=kernel_dir,
        build_dir=build_dir,
        kernel=kernel,
        kernel_img=build_dir / "kernel.img",
        bootimage=build_dir / "bootimage.bin",
        bbl_dir=target_dir / "bbl",
        scratch_stripped=build_dir / f"{settings.kernel_name}_stripped",
        bootloader=bootloader_dir
        / "target"
        / config.arch.value
        / config.mode.value
        / settings.bootloader_name,
        sfsimg=sfsimg.resolve(),
    )


__all__ = [
    "FORCED_BOARD",
    "SUPPORTED_BOARDS",
    "BuildConfig",
    "BuildLayout",
    "BuildParams",
    "default_sfsimg",
    "normalize",
    "resolve_layout",
]

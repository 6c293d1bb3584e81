"""Toolchain selection.

Maps an architecture to the binutils/gcc program names used by the boot
chain and the inspection commands. Host inspection (OS identity, PATH
lookups, the Rust sysroot) goes through a HostProbe so selection stays a
pure function under test.
"""

from __future__ import annotations

import getpass
import logging
import platform
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from kbootctl.errors import ConfigurationError, ToolchainNotFoundError
from kbootctl.types import Arch

logger = logging.getLogger(__name__)


class HostProbe(Protocol):
    """Read-only view of the host environment."""

    def system(self) -> str:
        """Return the OS name as reported by uname (e.g. 'Linux', 'Darwin')."""
        ...

    def which(self, program: str) -> str | None:
        """Return the full path of an executable on PATH, or None."""
        ...

    def rust_sysroot(self) -> Path:
        """Return the active Rust toolchain sysroot."""
        ...

    def username(self) -> str:
        """Return the invoking user's login name."""
        ...


class SystemProbe:
    """HostProbe backed by the real host."""

    def system(self) -> str:
        return platform.system()

    def which(self, program: str) -> str | None:
        return shutil.which(program)

    def rust_sysroot(self) -> Path:
        try:
            result = subprocess.run(
                ["rustc", "--print", "sysroot"],
                capture_output=True,
                text=True,
                check=True,
            )
        except (OSError, subprocess.CalledProcessError) as e:
            raise ConfigurationError(f"Cannot locate Rust sysroot: {e}") from e
        return Path(result.stdout.strip())

    def username(self) -> str:
        return getpass.getuser()


# Default prefix per architecture
DEFAULT_PREFIXES: dict[Arch, str] = {
    Arch.X86_64: "",
    Arch.RISCV32: "riscv64-unknown-elf-",
    Arch.RISCV64: "riscv64-unknown-elf-",
    Arch.AARCH64: "aarch64-none-elf-",
}

# Host-OS dependent overrides: (arch, uname) -> prefix
HOST_OVERRIDES: dict[tuple[Arch, str], str] = {
    (Arch.X86_64, "Darwin"): "x86_64-elf-",
}

# Architectures whose prefix is probed on PATH, with their fallback
PROBED_FALLBACKS: dict[Arch, str] = {
    Arch.AARCH64: "aarch64-elf-",
}


@dataclass(frozen=True)
class Toolchain:
    """Program names for one architecture's cross toolchain."""

    prefix: str

    @property
    def ld(self) -> str:
        return f"{self.prefix}ld"

    @property
    def objdump(self) -> str:
        return f"{self.prefix}objdump"

    @property
    def objcopy(self) -> str:
        return f"{self.prefix}objcopy"

    @property
    def cc(self) -> str:
        return f"{self.prefix}gcc"

    @property
    def as_(self) -> str:
        return f"{self.prefix}as"

    @property
    def gdb(self) -> str:
        return f"{self.prefix}gdb"

    @property
    def strip(self) -> str:
        return f"{self.prefix}strip"

    @property
    def addr2line(self) -> str:
        return f"{self.prefix}addr2line"

    def as_dict(self) -> dict[str, str]:
        """Return every program name keyed by role."""
        return {
            "prefix": self.prefix,
            "ld": self.ld,
            "objdump": self.objdump,
            "objcopy": self.objcopy,
            "cc": self.cc,
            "as": self.as_,
            "gdb": self.gdb,
            "strip": self.strip,
            "addr2line": self.addr2line,
        }


def select_toolchain(
    arch: Arch,
    probe: HostProbe,
    prefix: str | None = None,
) -> Toolchain:
    """Select the toolchain for an architecture.

    Args:
        arch: Target architecture.
        probe: Host environment probe.
        prefix: Explicit prefix; replaces the table default (and, for
            probed architectures, becomes the primary candidate).

    Returns:
        Toolchain for the architecture.

    Raises:
        ToolchainNotFoundError: If a probed architecture has no candidate
            whose linker is on PATH.
    """
    primary = prefix
    if primary is None:
        primary = HOST_OVERRIDES.get((arch, probe.system()), DEFAULT_PREFIXES[arch])

    fallback = PROBED_FALLBACKS.get(arch)
    if fallback is None:
        return Toolchain(prefix=primary)

    candidates = [primary] if primary == fallback else [primary, fallback]
    for candidate in candidates:
        if probe.which(f"{candidate}ld"):
            logger.debug("Using %s toolchain prefix %s", arch.value, candidate)
            return Toolchain(prefix=candidate)
        logger.debug("%sld not found on PATH", candidate)

    raise ToolchainNotFoundError(arch.value, candidates)


__all__ = [
    "DEFAULT_PREFIXES",
    "HostProbe",
    "SystemProbe",
    "Toolchain",
    "select_toolchain",
]

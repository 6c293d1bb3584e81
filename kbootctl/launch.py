"""Emulator launch composition.

Builds the qemu-system argument list for a BuildConfig and a boot
artifact. Arguments are grouped into machine/device, storage, network and
debug segments; the final argv concatenates them in that order.

Device wiring per architecture:

- x86_64: boot image and filesystem image as drives, serial multiplexed
  with the monitor, isa-debug-exit for test completion. Networking uses an
  emulated e1000e, or VFIO passthrough (with KVM) when a PCI id is set.
- riscv32/riscv64: ``virt`` machine, direct kernel load, one virtio block
  device, virtio-net only when networking is requested.
- aarch64: board-named machine, two serial lines (null, then console),
  direct kernel load.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from kbootctl.params import BuildConfig, BuildLayout
from kbootctl.types import Arch, BootArtifact, LaunchVariant

logger = logging.getLogger(__name__)

TAP_NETDEV = "type=tap,id=net0,script=no,downscript=no"

# Architectures that boot through -kernel and therefore accept -append
DIRECT_KERNEL_ARCHES = frozenset({Arch.RISCV32, Arch.RISCV64, Arch.AARCH64})


@dataclass(frozen=True)
class LaunchSpec:
    """Fully resolved emulator invocation.

    Attributes:
        program: Emulator executable.
        machine: Machine model, CPU count, consoles and devices.
        storage: Boot and filesystem drives.
        network: Network backend and NIC.
        debug: Trace, gdb stub and test-run output options.
        privileged: Run through sudo (tap networking needs it).
    """

    program: str
    machine: tuple[str, ...] = ()
    storage: tuple[str, ...] = ()
    network: tuple[str, ...] = ()
    debug: tuple[str, ...] = ()
    privileged: bool = False

    @property
    def args(self) -> list[str]:
        return [*self.machine, *self.storage, *self.network, *self.debug]

    @property
    def argv(self) -> list[str]:
        prefix = ["sudo"] if self.privileged else []
        return [*prefix, self.program, *self.args]

    def render(self) -> str:
        return shlex.join(self.argv)


@dataclass
class _Segments:
    machine: list[str] = field(default_factory=list)
    storage: list[str] = field(default_factory=list)
    network: list[str] = field(default_factory=list)
    debug: list[str] = field(default_factory=list)


def _wire_x86_64(
    config: BuildConfig, artifact: Path, sfsimg: Path, memory: str, seg: _Segments
) -> None:
    seg.storage += [
        "-drive",
        f"format=raw,file={artifact}",
        "-drive",
        f"format=qcow2,file={sfsimg},media=disk,cache=writeback",
    ]
    seg.machine += [
        "-serial",
        "mon:stdio",
        "-m",
        memory,
        "-device",
        "isa-debug-exit",
    ]
    if config.pci_passthru:
        seg.machine += ["-machine", "ubuntu,accel=kvm"]
    if config.net:
        seg.network += ["-netdev", TAP_NETDEV]
        if config.pci_passthru:
            seg.network += ["-device", f"vfio-pci,host={config.pci_passthru}"]
        else:
            seg.network += ["-device", "e1000e,netdev=net0"]


def _wire_riscv(config: BuildConfig, artifact: Path, sfsimg: Path, seg: _Segments) -> None:
    seg.machine += ["-machine", "virt", "-kernel", str(artifact)]
    seg.storage += [
        "-drive",
        f"file={sfsimg},format=qcow2,id=sfs",
        "-device",
        "virtio-blk-device,drive=sfs",
    ]
    if config.net:
        seg.network += [
            "-netdev",
            TAP_NETDEV,
            "-device",
            "virtio-net-device,netdev=net0",
        ]


def _wire_aarch64(config: BuildConfig, artifact: Path, seg: _Segments) -> None:
    seg.machine += [
        "-machine",
        config.board.value,
        "-serial",
        "null",
        "-serial",
        "mon:stdio",
        "-kernel",
        str(artifact),
    ]
    if config.net:
        logger.warning("%s has no emulated NIC; ignoring networking", config.board.value)


def compose_launch(
    config: BuildConfig,
    artifact: BootArtifact,
    layout: BuildLayout,
    variant: LaunchVariant = LaunchVariant.DEFAULT,
    memory: str = "4G",
    tests_dir: Path | None = None,
) -> LaunchSpec:
    """Compose the emulator invocation for a build.

    Args:
        config: Normalized build configuration.
        artifact: Final artifact of the boot chain.
        layout: Paths for this (arch, mode); supplies the filesystem image.
        variant: Launch flavour.
        memory: Guest RAM for x86_64.
        tests_dir: Where test runs write serial output.

    Returns:
        LaunchSpec; equal inputs give equal specs.
    """
    if variant == LaunchVariant.NET and not config.net:
        config = config.model_copy(update={"net": True})

    seg = _Segments()
    seg.machine += ["-smp", f"cores={config.smp}"]
    artifact_path = Path(artifact.path)

    if config.arch == Arch.X86_64:
        _wire_x86_64(config, artifact_path, layout.sfsimg, memory, seg)
    elif config.arch.is_riscv:
        _wire_riscv(config, artifact_path, layout.sfsimg, seg)
    elif config.arch == Arch.AARCH64:
        _wire_aarch64(config, artifact_path, seg)

    if config.trace:
        seg.debug += ["-d", config.trace]

    if not config.graphic:
        seg.machine.append("-nographic")

    if variant == LaunchVariant.GUI:
        seg.machine += ["-device", "virtio-gpu-device", "-device", "virtio-mouse-device"]

    if config.init and config.arch in DIRECT_KERNEL_ARCHES:
        seg.machine += ["-append", config.init]

    if variant == LaunchVariant.TEST:
        stdout = (tests_dir or Path("../tests")) / "stdout"
        seg.debug += ["-serial", f"file:{stdout}", "-monitor", "null"]
    elif variant == LaunchVariant.GDB:
        seg.debug += ["-s", "-S"]

    return LaunchSpec(
        program=f"qemu-system-{config.arch.value}",
        machine=tuple(seg.machine),
        storage=tuple(seg.storage),
        network=tuple(seg.network),
        debug=tuple(seg.debug),
        privileged=bool(seg.network),
    )


__all__ = ["DIRECT_KERNEL_ARCHES", "LaunchSpec", "compose_launch"]

"""Per-architecture boot chain recipes.

Each architecture owns one recipe class that lists its stages. The set of
recipes is closed: RECIPES maps every Arch to exactly one recipe, and
compose_boot_chain() refuses anything else.

    x86_64           image                      -> bootimage.bin
    riscv32/riscv64  patch, compile, supervisor -> kernel.img (bbl)
    aarch64          compile, bootloader        -> kernel.img (raw binary)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from kbootctl.bootchain.models import (
    BootPlan,
    CopyStep,
    MkdirStep,
    PatchStep,
    PublishStep,
    RunStep,
    ScratchStep,
    Stage,
    StageKind,
)
from kbootctl.errors import ConfigurationError
from kbootctl.features import FeatureSet
from kbootctl.params import BuildConfig, BuildLayout
from kbootctl.toolchain import Toolchain
from kbootctl.types import Arch, ArtifactKind, BootArtifact, BuildMode

logger = logging.getLogger(__name__)

ATOMIC_SOURCE = Path("lib/rustlib/src/rust/src/libcore/sync/atomic.rs")
ATOMIC_PATCH = Path("src/arch/riscv32/atomic.patch")
U540_LINKER_SCRIPT = Path("src/arch/riscv32/board/u540/linker.ld")
RISCV64_LINKER_SCRIPT = Path("src/arch/riscv32/boot/linker64.ld")
PK_HOST_TRIPLE = "riscv64-unknown-elf"


@dataclass(frozen=True)
class ChainContext:
    """Everything a recipe needs to lay out its stages.

    Attributes:
        config: Normalized build configuration.
        features: Resolved feature set.
        toolchain: Selected toolchain.
        layout: Paths keyed by (arch, mode).
        bootloader_dir: Bootloader project root.
        proxy_kernel_dir: Proxy kernel source root.
        rust_sysroot: Rust sysroot (needed by the RISC-V atomics patch).
    """

    config: BuildConfig
    features: FeatureSet
    toolchain: Toolchain
    layout: BuildLayout
    bootloader_dir: Path
    proxy_kernel_dir: Path
    rust_sysroot: Path | None = None


def cargo_build_args(config: BuildConfig, features: FeatureSet) -> tuple[str, ...]:
    """Compose the target/feature/profile arguments shared by kernel builds."""
    args = [
        "--target",
        f"targets/{config.arch.value}.json",
        "--features",
        features.as_arg(),
    ]
    if config.mode == BuildMode.RELEASE:
        args.append("--release")
    return tuple(args)


def build_env(ctx: ChainContext) -> dict[str, str]:
    """Environment exported to every stage."""
    return {
        "ARCH": ctx.config.arch.value,
        "BOARD": ctx.config.board.value,
        "SMP": str(ctx.config.smp),
        "SFSIMG": str(ctx.layout.sfsimg),
        "LOG": ctx.config.log.value,
        "CC": ctx.toolchain.cc,
    }


class BootRecipe:
    """Base class for architecture recipes."""

    kind: ArtifactKind
    final_stage: str
    needs_sysroot = False

    def artifact_path(self, layout: BuildLayout) -> Path:
        return layout.kernel_img

    def stages(self, ctx: ChainContext) -> list[Stage]:
        raise NotImplementedError

    def compose(self, ctx: ChainContext) -> BootPlan:
        stages = self.stages(ctx)
        artifact = BootArtifact(
            arch=ctx.config.arch,
            kind=self.kind,
            path=str(self.artifact_path(ctx.layout)),
            stage=stages[-1].name,
        )
        return BootPlan(
            arch=ctx.config.arch,
            stages=tuple(stages),
            artifact=artifact,
            env=build_env(ctx),
        )


class CombinedImageRecipe(BootRecipe):
    """x86_64: bootimage links kernel and first-stage loader in one go."""

    kind = ArtifactKind.COMBINED_IMAGE
    final_stage = "image"

    def artifact_path(self, layout: BuildLayout) -> Path:
        return layout.bootimage

    def stages(self, ctx: ChainContext) -> list[Stage]:
        layout = ctx.layout
        produced = layout.kernel_dir / "target" / ctx.config.arch.value / "bootimage.bin"
        argv = ("bootimage", "build", *cargo_build_args(ctx.config, ctx.features))
        return [
            Stage(
                name="image",
                kind=StageKind.IMAGE,
                steps=(
                    RunStep(argv=argv, cwd=layout.kernel_dir),
                    PublishStep(src=produced, dst=layout.bootimage, move=True),
                ),
                produces=layout.bootimage,
            ),
        ]


class SupervisorRecipe(BootRecipe):
    """RISC-V: patch core atomics, compile, wrap in the proxy kernel (bbl)."""

    kind = ArtifactKind.SUPERVISOR_IMAGE
    final_stage = "supervisor-wrap"
    needs_sysroot = True

    def __init__(self, xlen: int) -> None:
        self.xlen = xlen

    def stages(self, ctx: ChainContext) -> list[Stage]:
        if ctx.rust_sysroot is None:
            raise ConfigurationError("RISC-V builds need the Rust sysroot to patch core")
        layout = ctx.layout
        kdir = layout.kernel_dir

        patch = Stage(
            name="patch",
            kind=StageKind.PATCH,
            steps=(
                PatchStep(
                    target=ctx.rust_sysroot / ATOMIC_SOURCE,
                    patch_file=kdir / ATOMIC_PATCH,
                    cwd=kdir,
                ),
            ),
        )

        compile_steps: list = []
        if self.xlen == 64:
            compile_steps.append(
                CopyStep(src=kdir / U540_LINKER_SCRIPT, dst=kdir / RISCV64_LINKER_SCRIPT)
            )
        compile_steps.append(
            RunStep(
                argv=("cargo", "xbuild", *cargo_build_args(ctx.config, ctx.features)),
                cwd=kdir,
            )
        )
        compile_stage = Stage(
            name="compile",
            kind=StageKind.COMPILE,
            steps=tuple(compile_steps),
            produces=layout.kernel,
        )

        configure = (
            str(ctx.proxy_kernel_dir / "configure"),
            *ctx.features.supervisor_flags,
            f"--with-arch=rv{self.xlen}imac",
            "--disable-fp-emulation",
            f"--host={PK_HOST_TRIPLE}",
            f"--with-payload={layout.kernel}",
        )
        wrap = Stage(
            name="supervisor-wrap",
            kind=StageKind.SUPERVISOR_WRAP,
            steps=(
                MkdirStep(path=layout.bbl_dir),
                RunStep(argv=configure, cwd=layout.bbl_dir),
                RunStep(argv=("make", "-j"), cwd=layout.bbl_dir),
                PublishStep(src=layout.bbl_dir / "bbl", dst=layout.kernel_img),
            ),
            requires=(layout.kernel,),
            produces=layout.kernel_img,
        )
        return [patch, compile_stage, wrap]


class BootloaderRecipe(BootRecipe):
    """aarch64: compile, then embed a stripped copy in the bootloader."""

    kind = ArtifactKind.BOOTLOADER_BINARY
    final_stage = "bootloader-wrap"

    def stages(self, ctx: ChainContext) -> list[Stage]:
        layout = ctx.layout
        tc = ctx.toolchain
        scratch = layout.scratch_stripped
        converted = layout.kernel_img.with_name(layout.kernel_img.name + ".partial")

        compile_stage = Stage(
            name="compile",
            kind=StageKind.COMPILE,
            steps=(
                RunStep(
                    argv=("cargo", "xbuild", *cargo_build_args(ctx.config, ctx.features)),
                    cwd=layout.kernel_dir,
                ),
            ),
            produces=layout.kernel,
        )

        bootloader_make = (
            "make",
            f"arch={ctx.config.arch.value}",
            f"mode={ctx.config.mode.value}",
            f"payload={scratch}",
        )
        wrap = Stage(
            name="bootloader-wrap",
            kind=StageKind.BOOTLOADER_WRAP,
            steps=(
                ScratchStep(
                    src=layout.kernel,
                    scratch=scratch,
                    steps=(
                        RunStep(argv=(tc.strip, "--strip-all", str(scratch)), cwd=layout.kernel_dir),
                        RunStep(argv=bootloader_make, cwd=ctx.bootloader_dir),
                    ),
                ),
                RunStep(
                    argv=(
                        tc.objcopy,
                        str(layout.bootloader),
                        "--strip-all",
                        "-O",
                        "binary",
                        str(converted),
                    ),
                    cwd=layout.kernel_dir,
                ),
                PublishStep(src=converted, dst=layout.kernel_img, move=True),
            ),
            requires=(layout.kernel,),
            produces=layout.kernel_img,
        )
        return [compile_stage, wrap]


RECIPES: dict[Arch, BootRecipe] = {
    Arch.X86_64: CombinedImageRecipe(),
    Arch.RISCV32: SupervisorRecipe(xlen=32),
    Arch.RISCV64: SupervisorRecipe(xlen=64),
    Arch.AARCH64: BootloaderRecipe(),
}


def recipe_for(arch: Arch) -> BootRecipe:
    """Return the recipe owning an architecture's boot chain.

    Raises:
        ConfigurationError: If the architecture has no recipe.
    """
    try:
        return RECIPES[arch]
    except KeyError:
        raise ConfigurationError(f"No boot chain for architecture {arch}") from None


def compose_boot_chain(ctx: ChainContext) -> BootPlan:
    """Compose the ordered stage list for the configured architecture.

    Args:
        ctx: Chain context.

    Returns:
        BootPlan whose last stage publishes the final artifact.
    """
    plan = recipe_for(ctx.config.arch).compose(ctx)
    logger.debug(
        "Boot chain for %s/%s: %s",
        ctx.config.arch.value,
        ctx.config.mode.value,
        " -> ".join(plan.stage_names),
    )
    return plan


def artifact_for(config: BuildConfig, layout: BuildLayout) -> BootArtifact:
    """Describe the artifact a successful chain leaves for this config.

    Used to launch the last build without rebuilding.
    """
    recipe = recipe_for(config.arch)
    return BootArtifact(
        arch=config.arch,
        kind=recipe.kind,
        path=str(recipe.artifact_path(layout)),
        stage=recipe.final_stage,
    )


__all__ = [
    "RECIPES",
    "BootRecipe",
    "BootloaderRecipe",
    "ChainContext",
    "CombinedImageRecipe",
    "SupervisorRecipe",
    "artifact_for",
    "build_env",
    "cargo_build_args",
    "compose_boot_chain",
    "recipe_for",
]

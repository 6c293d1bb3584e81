"""Build and launch orchestration.

The Orchestrator is the only component that runs external processes or
touches the filesystem. It sequences:

    normalize -> resolve_features -> select_toolchain -> compose_boot_chain
    -> ChainRunner -> compose_launch -> emulator

and stops at the first failure. The auxiliary operations (clean, install,
inspection, debugging) live here for the same reason.
"""

from __future__ import annotations

import logging
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from kbootctl.bootchain.models import BootPlan, CopyStep, RunStep, Stage, StageKind
from kbootctl.bootchain.recipes import (
    ChainContext,
    artifact_for,
    compose_boot_chain,
    recipe_for,
)
from kbootctl.bootchain.runner import ChainResult, ChainRunner
from kbootctl.config import Settings, get_settings
from kbootctl.errors import (
    EXECUTION_ERROR,
    ArtifactNotFoundError,
    ConfigurationError,
    StageFailedError,
)
from kbootctl.features import FeatureSet, resolve_features
from kbootctl.launch import LaunchSpec, compose_launch
from kbootctl.params import BuildConfig, BuildLayout, BuildParams, normalize, resolve_layout
from kbootctl.toolchain import HostProbe, SystemProbe, Toolchain, select_toolchain
from kbootctl.types import Board, BootArtifact, LaunchVariant

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

# objdump flags for the inspection commands
INSPECT_FLAGS = {
    "asm": "-d",
    "header": "-h",
    "sym": "-t",
}

# Default SD card boot partition mount per host OS (raspi3 install)
SD_CARD_MOUNTS = {
    "Darwin": "/Volumes/boot",
    "Linux": "/media/{user}/boot",
}

# The u540 loads the kernel at this physical address
U540_LOAD_OFFSET = "-0x80000000"

GDB_ATTACH_DELAY = 1.0


def _check_variant(config: BuildConfig, variant: LaunchVariant) -> None:
    if variant == LaunchVariant.TEST and not config.init:
        raise ConfigurationError("The test launch needs an init program (--init)")


@dataclass(frozen=True)
class Resolution:
    """Everything derived from one set of build parameters."""

    config: BuildConfig
    features: FeatureSet
    toolchain: Toolchain
    layout: BuildLayout
    plan: BootPlan


class Orchestrator:
    """Sequences the resolvers and executes the resulting work.

    Args:
        settings: Host settings; loaded from the environment if omitted.
        probe: Host environment probe; the real host if omitted.
        prefix: Toolchain prefix override.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        probe: HostProbe | None = None,
        prefix: str | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.probe = probe or SystemProbe()
        self.prefix = prefix
        self.runner = ChainRunner(log_path=self.settings.build_log)

    def resolve(self, params: BuildParams | dict[str, object]) -> Resolution:
        """Resolve parameters into a config, features, toolchain and plan.

        Raises:
            ConfigurationError: For unsupported parameters.
            ToolchainNotFoundError: If no toolchain candidate is on PATH.
        """
        config = normalize(params)
        features = resolve_features(config)
        toolchain = select_toolchain(config.arch, self.probe, prefix=self.prefix)
        layout = resolve_layout(config, self.settings)

        sysroot = None
        if recipe_for(config.arch).needs_sysroot:
            sysroot = self.probe.rust_sysroot()

        ctx = ChainContext(
            config=config,
            features=features,
            toolchain=toolchain,
            layout=layout,
            bootloader_dir=self.settings.bootloader_dir.resolve(),
            proxy_kernel_dir=self.settings.proxy_kernel_dir.resolve(),
            rust_sysroot=sysroot,
        )
        return Resolution(
            config=config,
            features=features,
            toolchain=toolchain,
            layout=layout,
            plan=compose_boot_chain(ctx),
        )

    def build(self, params: BuildParams | dict[str, object]) -> ChainResult:
        """Run the boot chain for the parameters.

        Raises:
            KbootError: The first configuration, probe or stage failure.
        """
        resolution = self.resolve(params)
        logger.info(
            "Building %s (%s, %s)",
            resolution.config.arch.value,
            resolution.config.board.value,
            resolution.config.mode.value,
        )
        return self.runner.run(resolution.plan)

    def launch_spec(
        self,
        resolution: Resolution,
        artifact: BootArtifact | None = None,
        variant: LaunchVariant = LaunchVariant.DEFAULT,
    ) -> LaunchSpec:
        """Compose the emulator invocation for a resolution.

        Raises:
            ConfigurationError: If the test variant has no init program.
        """
        _check_variant(resolution.config, variant)
        return compose_launch(
            resolution.config,
            artifact or resolution.plan.artifact,
            resolution.layout,
            variant=variant,
            memory=self.settings.memory,
            tests_dir=self.settings.tests_dir,
        )

    def run(
        self,
        params: BuildParams | dict[str, object],
        variant: LaunchVariant = LaunchVariant.DEFAULT,
        build: bool = True,
    ) -> int:
        """Optionally build, then boot the artifact in the emulator.

        Args:
            params: Build parameters.
            variant: Launch flavour.
            build: Run the boot chain first; otherwise boot the last build.

        Returns:
            The emulator's exit status.

        Raises:
            ConfigurationError: If the test variant has no init program.
        """
        resolution = self.resolve(params)
        _check_variant(resolution.config, variant)
        if build:
            artifact = self.runner.run(resolution.plan).artifact
        else:
            artifact = self._last_artifact(resolution)

        spec = self.launch_spec(resolution, artifact, variant)
        return self._launch(spec, resolution.layout.kernel_dir)

    def debug(self, params: BuildParams | dict[str, object], build: bool = True) -> int:
        """Boot halted with a gdb stub and attach the toolchain's gdb.

        Returns:
            gdb's exit status.
        """
        resolution = self.resolve(params)
        artifact = (
            self.runner.run(resolution.plan).artifact
            if build
            else self._last_artifact(resolution)
        )
        spec = self.launch_spec(resolution, artifact, LaunchVariant.GDB)
        cwd = resolution.layout.kernel_dir

        logger.info("Starting emulator: %s", spec.render())
        try:
            emulator = subprocess.Popen(spec.argv, cwd=cwd)
        except OSError as e:
            raise StageFailedError("debug", str(e), code=EXECUTION_ERROR) from e

        try:
            time.sleep(GDB_ATTACH_DELAY)
            gdbinit = self.settings.tools_dir.resolve() / "gdbinit"
            return self._call(
                [resolution.toolchain.gdb, str(resolution.layout.kernel), "-x", str(gdbinit)],
                cwd,
                "debug",
            )
        finally:
            emulator.terminate()
            emulator.wait()

    def inspect(self, params: BuildParams | dict[str, object], what: str) -> int:
        """Dump the kernel with objdump ('asm', 'header' or 'sym')."""
        try:
            flag = INSPECT_FLAGS[what]
        except KeyError:
            raise ConfigurationError(f"Unknown inspection '{what}'") from None
        resolution = self.resolve(params)
        kernel = resolution.layout.kernel
        if not kernel.exists():
            raise ArtifactNotFoundError(str(kernel))
        return self._call(
            [resolution.toolchain.objdump, flag, str(kernel)],
            resolution.layout.kernel_dir,
            what,
        )

    def clean(self) -> None:
        """Remove the kernel build tree and clean the sibling projects."""
        self.runner.run_stages(
            [
                Stage(
                    name="clean",
                    kind=StageKind.AUX,
                    steps=(
                        RunStep(("cargo", "clean"), self.settings.kernel_dir.resolve()),
                        RunStep(("make", "clean"), self.settings.bootloader_dir.resolve()),
                        RunStep(("make", "clean"), self.settings.user_dir.resolve()),
                    ),
                )
            ]
        )

    def sfsimg(self) -> None:
        """Build the user-program filesystem image."""
        self.runner.run_stages(
            [
                Stage(
                    name="sfsimg",
                    kind=StageKind.AUX,
                    steps=(RunStep(("make", "sfsimg"), self.settings.user_dir.resolve()),),
                )
            ]
        )

    def doc(self) -> None:
        """Generate the kernel's API documentation."""
        self.runner.run_stages(
            [
                Stage(
                    name="doc",
                    kind=StageKind.AUX,
                    steps=(
                        RunStep(
                            ("cargo", "rustdoc", "--", "--document-private-items"),
                            self.settings.kernel_dir.resolve(),
                        ),
                    ),
                )
            ]
        )

    def install_stages(self, resolution: Resolution, mount: Path | None = None) -> list[Stage]:
        """Compose the install stages for the configured board.

        Raises:
            ConfigurationError: If the board cannot be installed or the host
                has no default SD card mount.
        """
        config = resolution.config
        layout = resolution.layout
        image = layout.kernel_img

        if config.board == Board.RASPI3:
            if mount is None:
                template = SD_CARD_MOUNTS.get(self.probe.system())
                if template is None:
                    raise ConfigurationError(
                        "No default SD card mount on this host; pass --mount"
                    )
                mount = Path(template.format(user=self.probe.username()))
            return [
                Stage(
                    name="install",
                    kind=StageKind.AUX,
                    steps=(
                        CopyStep(src=image, dst=mount / "kernel8.img"),
                        RunStep(("sudo", "umount", str(mount)), layout.kernel_dir),
                    ),
                    requires=(image,),
                )
            ]

        if config.board == Board.U540:
            raw = layout.build_dir / "bin"
            sd_img = layout.build_dir / "sd.img"
            mkimg = self.settings.tools_dir.resolve() / "u540" / "mkimg.sh"
            return [
                Stage(
                    name="install",
                    kind=StageKind.AUX,
                    steps=(
                        RunStep(
                            (
                                resolution.toolchain.objcopy,
                                "-S",
                                "-O",
                                "binary",
                                "--change-addresses",
                                U540_LOAD_OFFSET,
                                str(image),
                                str(raw),
                            ),
                            layout.kernel_dir,
                        ),
                        RunStep((str(mkimg), str(raw), str(sd_img)), layout.kernel_dir),
                    ),
                    requires=(image,),
                    produces=sd_img,
                )
            ]

        raise ConfigurationError(
            f"install is only available for raspi3 and u540, not '{config.board.value}'"
        )

    def install(
        self,
        params: BuildParams | dict[str, object],
        mount: Path | None = None,
    ) -> None:
        """Build, then install the artifact onto the board's boot medium."""
        resolution = self.resolve(params)
        stages = self.install_stages(resolution, mount)
        self.runner.run(resolution.plan)
        self.runner.run_stages(stages, resolution.plan.env)

    def addr2line(self, params: BuildParams | dict[str, object]) -> int:
        """Run the offline backtrace resolver for the last build."""
        resolution = self.resolve(params)
        script = self.settings.tools_dir.resolve() / "addr2line.py"
        return self._call(
            [
                sys.executable,
                str(script),
                resolution.toolchain.addr2line,
                resolution.config.arch.value,
                resolution.config.mode.value,
            ],
            resolution.layout.kernel_dir,
            "addr2line",
        )

    def _last_artifact(self, resolution: Resolution) -> BootArtifact:
        artifact = artifact_for(resolution.config, resolution.layout)
        if not Path(artifact.path).exists():
            raise ArtifactNotFoundError(artifact.path)
        return artifact

    def _launch(self, spec: LaunchSpec, cwd: Path) -> int:
        logger.info("Launching: %s", spec.render())
        return self._call(spec.argv, cwd, "launch")

    @staticmethod
    def _call(cmd: Sequence[str], cwd: Path, stage: str) -> int:
        try:
            result = subprocess.run(list(cmd), cwd=cwd, check=False)
        except OSError as e:
            raise StageFailedError(
                stage, f"failed to execute {cmd[0]}: {e}", code=EXECUTION_ERROR
            ) from e
        return result.returncode


__all__ = ["INSPECT_FLAGS", "Orchestrator", "Resolution"]

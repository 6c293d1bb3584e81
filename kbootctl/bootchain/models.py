"""Data model for boot chains.

A BootPlan is a pure description: an ordered tuple of stages, each made of
steps, plus the artifact the last stage publishes. Nothing here touches the
filesystem; kbootctl.bootchain.runner interprets the steps.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Union

from kbootctl.types import Arch, BootArtifact


class StageKind(str, Enum):
    """Role of a stage in a boot chain."""

    IMAGE = "image"
    PATCH = "patch"
    COMPILE = "compile"
    SUPERVISOR_WRAP = "supervisor-wrap"
    BOOTLOADER_WRAP = "bootloader-wrap"
    AUX = "aux"


@dataclass(frozen=True)
class RunStep:
    """Run an external program; any non-zero exit fails the stage."""

    argv: tuple[str, ...]
    cwd: Path

    def describe(self) -> str:
        return f"(cd {self.cwd} && {shlex.join(self.argv)})"


@dataclass(frozen=True)
class PatchStep:
    """Apply a patch once; an already applied patch is not an error."""

    target: Path
    patch_file: Path
    cwd: Path

    def describe(self) -> str:
        return f"patch -p0 -N -b {self.target} {self.patch_file}"


@dataclass(frozen=True)
class CopyStep:
    """Copy a file, overwriting the destination."""

    src: Path
    dst: Path

    def describe(self) -> str:
        return f"cp {self.src} {self.dst}"


@dataclass(frozen=True)
class MkdirStep:
    """Create a directory and its parents."""

    path: Path

    def describe(self) -> str:
        return f"mkdir -p {self.path}"


@dataclass(frozen=True)
class ScratchStep:
    """Copy ``src`` to ``scratch``, run nested steps, always remove ``scratch``."""

    src: Path
    scratch: Path
    steps: tuple[Step, ...]

    def describe(self) -> str:
        inner = "; ".join(s.describe() for s in self.steps)
        return f"cp {self.src} {self.scratch}; {inner}; rm -f {self.scratch}"


@dataclass(frozen=True)
class PublishStep:
    """Atomically place ``src`` at ``dst`` (copy, or move when ``move``)."""

    src: Path
    dst: Path
    move: bool = False

    def describe(self) -> str:
        verb = "mv" if self.move else "cp"
        return f"{verb} {self.src} {self.dst}"


Step = Union[RunStep, PatchStep, CopyStep, MkdirStep, ScratchStep, PublishStep]


@dataclass(frozen=True)
class Stage:
    """One stage of a boot chain.

    Attributes:
        name: Stage name used in logs and error reports.
        kind: Role of the stage.
        steps: Steps executed in order.
        requires: Paths that must exist before the stage starts.
        produces: Path the stage is expected to leave behind.
    """

    name: str
    kind: StageKind
    steps: tuple[Step, ...]
    requires: tuple[Path, ...] = ()
    produces: Path | None = None


@dataclass(frozen=True)
class BootPlan:
    """Ordered stages for one architecture plus the artifact they yield."""

    arch: Arch
    stages: tuple[Stage, ...]
    artifact: BootArtifact
    env: dict[str, str] = field(default_factory=dict)

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]


__all__ = [
    "BootPlan",
    "CopyStep",
    "MkdirStep",
    "PatchStep",
    "PublishStep",
    "RunStep",
    "ScratchStep",
    "Stage",
    "StageKind",
    "Step",
]

"""Boot chain executor.

This module handles:
- Running each stage of a BootPlan in order, blocking on every step
- Capturing stage output to a log file when one is configured
- Guaranteed removal of scratch files, even when a nested step fails
- Publishing the final artifact with an atomic rename

The first failing step raises StageFailedError and no later stage starts.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO

from kbootctl.bootchain.models import (
    BootPlan,
    CopyStep,
    MkdirStep,
    PatchStep,
    PublishStep,
    RunStep,
    ScratchStep,
    Stage,
    Step,
)
from kbootctl.errors import (
    EXECUTION_ERROR,
    STAGE_INPUT_MISSING,
    StageFailedError,
)
from kbootctl.types import BootArtifact

logger = logging.getLogger(__name__)


@dataclass
class ChainResult:
    """Result of a completed boot chain.

    Attributes:
        artifact: The published bootable artifact.
        stages: Names of the stages that ran, in order.
        started_at: Chain start time.
        finished_at: Chain finish time.
    """

    artifact: BootArtifact
    stages: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None


@contextmanager
def scratch_copy(src: Path, scratch: Path) -> Iterator[Path]:
    """Copy ``src`` to ``scratch`` for the duration of the block.

    The scratch file is removed on every exit path. A failed removal is
    logged and never replaces the block's own outcome.

    Yields:
        Path of the scratch copy.
    """
    try:
        shutil.copyfile(src, scratch)
        yield scratch
    finally:
        try:
            scratch.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to remove scratch file %s: %s", scratch, e)


class ChainRunner:
    """Executes BootPlans.

    Args:
        log_path: Optional file receiving the output of every external
            command. Output goes to the terminal when unset.
        env: Base environment; defaults to the current process environment.
    """

    def __init__(
        self,
        log_path: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.log_path = log_path
        self.base_env = env

    def run(self, plan: BootPlan) -> ChainResult:
        """Run every stage of a plan in order.

        Args:
            plan: Composed boot plan.

        Returns:
            ChainResult naming the published artifact.

        Raises:
            StageFailedError: On the first failing stage.
        """
        started_at = datetime.now(timezone.utc)
        completed = self.run_stages(plan.stages, plan.env)

        finished_at = datetime.now(timezone.utc)
        logger.info(
            "Built %s in %.1fs",
            plan.artifact.path,
            (finished_at - started_at).total_seconds(),
        )
        return ChainResult(
            artifact=plan.artifact,
            stages=completed,
            started_at=started_at,
            finished_at=finished_at,
        )

    def run_stages(
        self,
        stages: Iterable[Stage],
        env: dict[str, str] | None = None,
    ) -> list[str]:
        """Run stages in order, stopping at the first failure.

        Args:
            stages: Stages to run.
            env: Variables added to the base environment.

        Returns:
            Names of the stages that completed.
        """
        full_env = dict(os.environ if self.base_env is None else self.base_env)
        full_env.update(env or {})

        completed: list[str] = []
        with self._open_log() as log_file:
            for stage in stages:
                logger.info("Stage %s", stage.name)
                self._run_stage(stage, full_env, log_file)
                completed.append(stage.name)
        return completed

    @contextmanager
    def _open_log(self) -> Iterator[IO[str] | None]:
        if self.log_path is None:
            yield None
            return
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a") as log_file:
            log_file.write(f"# Started: {datetime.now(timezone.utc).isoformat()}\n")
            yield log_file

    def _run_stage(
        self,
        stage: Stage,
        env: dict[str, str],
        log_file: IO[str] | None,
    ) -> None:
        for required in stage.requires:
            if not required.exists():
                raise StageFailedError(
                    stage.name,
                    f"required input missing: {required}",
                    code=STAGE_INPUT_MISSING,
                )

        for step in stage.steps:
            self._run_step(stage.name, step, env, log_file)

        if stage.produces is not None and not stage.produces.exists():
            raise StageFailedError(
                stage.name,
                f"stage finished but {stage.produces} was not produced",
                code=STAGE_INPUT_MISSING,
            )

    def _run_step(
        self,
        stage: str,
        step: Step,
        env: dict[str, str],
        log_file: IO[str] | None,
    ) -> None:
        if isinstance(step, RunStep):
            self._run_command(stage, list(step.argv), step.cwd, env, log_file)
        elif isinstance(step, PatchStep):
            self._apply_patch(stage, step, env, log_file)
        elif isinstance(step, MkdirStep):
            self._fs_op(stage, step, lambda: step.path.mkdir(parents=True, exist_ok=True))
        elif isinstance(step, CopyStep):
            self._fs_op(stage, step, lambda: shutil.copyfile(step.src, step.dst))
        elif isinstance(step, PublishStep):
            self._publish(stage, step)
        elif isinstance(step, ScratchStep):
            self._require(stage, step.src)
            try:
                with scratch_copy(step.src, step.scratch):
                    for inner in step.steps:
                        self._run_step(stage, inner, env, log_file)
            except OSError as e:
                raise StageFailedError(
                    stage, f"scratch stage failed: {e}", code=EXECUTION_ERROR
                ) from e
        else:
            raise TypeError(f"Unknown step type: {type(step).__name__}")

    def _run_command(
        self,
        stage: str,
        cmd: list[str],
        cwd: Path,
        env: dict[str, str],
        log_file: IO[str] | None,
        quiet: bool = False,
    ) -> int:
        cmd_str = shlex.join(cmd)
        if not quiet:
            logger.info("Executing: %s", cmd_str)
            logger.debug("Working directory: %s", cwd)

        if log_file is not None:
            log_file.write(f"# Command: {cmd_str}\n# CWD: {cwd}\n")
            log_file.flush()

        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                env=env,
                stdout=log_file,
                stderr=subprocess.STDOUT if log_file is not None else None,
                check=False,
            )
        except OSError as e:
            logger.error("Failed to execute %s: %s", cmd[0], e)
            raise StageFailedError(
                stage, f"failed to execute {cmd[0]}: {e}", code=EXECUTION_ERROR
            ) from e

        if log_file is not None:
            log_file.write(f"# Exit code: {result.returncode}\n\n")
            log_file.flush()

        if quiet:
            return result.returncode

        if result.returncode != 0:
            message = f"{cmd[0]} exited with code {result.returncode}"
            logger.error("Stage %s failed: %s", stage, message)
            raise StageFailedError(stage, message, exit_code=result.returncode)
        return result.returncode

    def _apply_patch(
        self,
        stage: str,
        step: PatchStep,
        env: dict[str, str],
        log_file: IO[str] | None,
    ) -> None:
        target, patch_file = str(step.target), str(step.patch_file)

        # A clean reverse dry run means the patch is already in place
        already = self._run_command(
            stage,
            ["patch", "-p0", "-R", "--dry-run", "-s", "-f", target, patch_file],
            step.cwd,
            env,
            log_file,
            quiet=True,
        )
        if already == 0:
            logger.info("Patch %s already applied to %s", patch_file, target)
            return

        self._run_command(
            stage,
            ["patch", "-p0", "-N", "-b", target, patch_file],
            step.cwd,
            env,
            log_file,
        )

    def _publish(self, stage: str, step: PublishStep) -> None:
        self._require(stage, step.src)
        tmp = step.dst.with_name(step.dst.name + ".tmp")

        def publish() -> None:
            step.dst.parent.mkdir(parents=True, exist_ok=True)
            if step.move:
                shutil.move(str(step.src), tmp)
            else:
                shutil.copyfile(step.src, tmp)
            os.replace(tmp, step.dst)

        self._fs_op(stage, step, publish)
        logger.debug("Published %s", step.dst)

    @staticmethod
    def _require(stage: str, path: Path) -> None:
        if not path.exists():
            raise StageFailedError(
                stage, f"required input missing: {path}", code=STAGE_INPUT_MISSING
            )

    @staticmethod
    def _fs_op(stage: str, step: Step, op: Callable[[], object]) -> None:
        logger.debug("%s", step.describe())
        try:
            op()
        except OSError as e:
            logger.error("Stage %s failed: %s", stage, e)
            raise StageFailedError(stage, str(e), code=EXECUTION_ERROR) from e


def run_chain(plan: BootPlan, log_path: Path | None = None) -> ChainResult:
    """Run a plan with a default ChainRunner."""
    return ChainRunner(log_path=log_path).run(plan)


__all__ = [
    "ChainResult",
    "ChainRunner",
    "run_chain",
    "scratch_copy",
]
